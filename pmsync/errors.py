"""Exception types raised by the PM sync subsystem."""

from __future__ import annotations


class PMSyncError(Exception):
    """Base class for every error raised by pmsync."""


class ValidationError(PMSyncError, ValueError):
    """Malformed input, raised before any file or network I/O."""


class FeatureNotFoundError(PMSyncError, LookupError):
    """A referenced local ID (or parent ID) does not exist."""

    def __init__(self, feature_id: str, message: str | None = None):
        self.feature_id = feature_id
        super().__init__(message or f"Feature {feature_id} not found")


class StorageError(PMSyncError, RuntimeError):
    """Reading or writing a state file failed for a reason other than absence."""

    def __init__(self, message: str, path: object = None):
        self.path = path
        super().__init__(message)


class PMAdapterError(PMSyncError, RuntimeError):
    """An external PM tool call failed (network, auth, unsupported tool)."""

    def __init__(self, message: str, tool: str | None = None):
        self.tool = tool
        super().__init__(message)
