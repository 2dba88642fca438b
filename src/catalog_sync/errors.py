"""
Exception types raised by the catalog synchronizer.

Per-batch failures are never raised past the pipeline; only the types
below reach the entry point, where they are mapped to exit codes.
"""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for synchronizer failures."""


class StartupError(SyncError):
    """Configuration, credentials, or connectivity failed before listing."""


class ListingError(SyncError):
    """The remote listing could not be completed for this run."""


class TransientError(SyncError):
    """Marker for failures that are always safe to retry."""
