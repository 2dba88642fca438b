"""
Configuration loading: ``settings.toml`` plus typed sync settings.

Required keys raise ``KeyError``.  Optional values that are present but
malformed fall back to their defaults with a warning, and numeric values
are clamped into a sane range.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

import toml

logger = logging.getLogger("catalog_sync.settings")

DEFAULT_CONFIG_PATH = Path(
    os.environ.get("CATALOG_SYNC_CONFIG", "/etc/catalog-sync/settings.toml")
)
DEFAULT_CHECKPOINT_PATH = Path("/var/lib/catalog-sync/sync_progress.json")


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Returns:
        Parsed configuration dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    required = [
        ("storage", "bucket"),
        ("database",),
    ]
    for keys in required:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    return config


def _coerce_int(section: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s=%r; using default %d", key, raw, default)
        value = default
    return max(minimum, value)


def _coerce_float(
    section: Dict[str, Any], key: str, default: float, minimum: float = 0.0
) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s=%r; using default %s", key, raw, default)
        value = default
    return max(minimum, value)


def _coerce_extensions(value: Any) -> Tuple[str, ...]:
    if value is None:
        return (".mp3",)
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [str(part).strip() for part in value]
    else:
        logger.warning(
            "Invalid extensions config type (%s); defaulting to .mp3",
            type(value).__name__,
        )
        return (".mp3",)
    normalized = []
    for item in items:
        if not item:
            continue
        normalized.append(item.lower() if item.startswith(".") else f".{item.lower()}")
    return tuple(normalized)


@dataclass(frozen=True)
class SyncSettings:
    """Tunables for one synchronization run."""

    prefix: str = ""
    page_size: int = 1000
    extensions: Tuple[str, ...] = (".mp3",)
    min_size_bytes: int = 1
    batch_size: int = 1000
    max_pages_per_run: int = 0
    max_retry_attempts: int = 3
    retry_base_delay_seconds: float = 2.0
    retry_max_delay_seconds: float = 30.0
    throttle_interval_batches: int = 100
    throttle_delay_ms: int = 1000
    page_delay_ms: int = 0
    progress_log_interval_batches: int = 10
    progress_heartbeat_seconds: float = 30.0
    checkpoint_path: Path = field(default=DEFAULT_CHECKPOINT_PATH)
    title_separator: str = " - "
    unknown_value: str = "unknown"
    default_collection: str = "unknown"
    default_category: str = "unknown"
    enable_prescan: bool = False
    statement_timeout_seconds: float = 60.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        storage = config.get("storage", {}) or {}
        sync = config.get("sync", {}) or {}
        unknown = str(sync.get("unknown_value", "unknown")) or "unknown"
        return cls(
            prefix=str(storage.get("prefix", "") or ""),
            page_size=min(1000, _coerce_int(storage, "page_size", 1000, minimum=1)),
            extensions=_coerce_extensions(storage.get("extensions")),
            min_size_bytes=_coerce_int(storage, "min_size_bytes", 1),
            batch_size=_coerce_int(sync, "batch_size", 1000, minimum=1),
            max_pages_per_run=_coerce_int(sync, "max_pages_per_run", 0),
            max_retry_attempts=_coerce_int(sync, "max_retry_attempts", 3, minimum=1),
            retry_base_delay_seconds=_coerce_float(sync, "retry_base_delay_seconds", 2.0),
            retry_max_delay_seconds=_coerce_float(sync, "retry_max_delay_seconds", 30.0),
            throttle_interval_batches=_coerce_int(sync, "throttle_interval_batches", 100),
            throttle_delay_ms=_coerce_int(sync, "throttle_delay_ms", 1000),
            page_delay_ms=_coerce_int(sync, "page_delay_ms", 0),
            progress_log_interval_batches=_coerce_int(
                sync, "progress_log_interval_batches", 10
            ),
            progress_heartbeat_seconds=_coerce_float(
                sync, "progress_heartbeat_seconds", 30.0
            ),
            checkpoint_path=Path(sync.get("checkpoint_path", DEFAULT_CHECKPOINT_PATH)),
            title_separator=str(sync.get("title_separator", " - ")),
            unknown_value=unknown,
            default_collection=str(sync.get("default_collection", unknown)),
            default_category=str(sync.get("default_category", unknown)),
            enable_prescan=bool(sync.get("enable_prescan", False)),
            statement_timeout_seconds=_coerce_float(
                sync, "statement_timeout_seconds", 60.0
            ),
        )
