"""
Secrets and keychain integration: retrieves object-store and database
credentials from the system keychain at runtime.

Credentials are **never** stored in ``settings.toml`` or source code.
They live in the system keychain (``secret-tool`` / ``libsecret``); an
environment variable fallback exists for development and CI.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Optional

logger = logging.getLogger("shared.secrets")

_SERVICE = "catalog-sync"
_ENV_PREFIX = "CATALOG_SYNC_"


def _env_key(key_name: str) -> str:
    return f"{_ENV_PREFIX}{key_name.upper().replace('-', '_')}"


def _keychain_lookup(key_name: str, service: str) -> Optional[str]:
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except FileNotFoundError:
        logger.debug("secret-tool not found; falling back to environment variable")
        return None
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")
        return None
    secret = result.stdout.strip()
    return secret or None


def get_secret(key_name: str, service: str = _SERVICE) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool lookup service catalog-sync key <key_name>`` and
    falls back to ``CATALOG_SYNC_<KEY_NAME>`` in the environment.

    Args:
        key_name: The key identifier (e.g. ``"b2-access-key-id"``).
        service: The service label in the keychain.

    Returns:
        The secret value as a string.

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    secret = _keychain_lookup(key_name, service)
    if secret:
        return secret

    env_key = _env_key(key_name)
    env_val = os.environ.get(env_key)
    if env_val:
        logger.warning("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


def get_optional_secret(key_name: str, service: str = _SERVICE) -> Optional[str]:
    """Like :func:`get_secret` but returns ``None`` when the secret is unset.

    Used for the database password, which is absent under peer auth.
    """
    try:
        return get_secret(key_name, service)
    except RuntimeError:
        logger.debug("Optional secret '%s' not configured", key_name)
        return None
