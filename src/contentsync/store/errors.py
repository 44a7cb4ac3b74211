"""Object store errors."""


class StoreError(Exception):
    """Base exception for object store operations."""


class ObjectNotFoundError(StoreError):
    """Raised when an object ID or path is not present in the store."""


class InvalidObjectError(StoreError):
    """Raised when an object violates the invariants required for persistence."""


class OverlappingAutoscanError(StoreError):
    """Raised when an autoscan directory would nest inside (or contain) another one."""
