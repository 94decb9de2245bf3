"""
Cache error taxonomy.

Only ProducerError reaches callers of CacheCoordinator.load; the others are
absorbed where they occur.
"""
from typing import Optional


class CacheError(Exception):
    """Base exception for the instant cache."""

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        self.message = message
        super().__init__(message)


class StoreError(CacheError):
    """Backing store unavailable or failed an I/O operation."""

    def __init__(self, operation: str, message: str = "Store operation failed", key: Optional[str] = None):
        self.operation = operation
        super().__init__(f"{operation}: {message}", key=key)


class CancellationError(CacheError):
    """A load was superseded or cancelled by its owner."""

    def __init__(self, key: Optional[str] = None, message: str = "Load cancelled"):
        super().__init__(message, key=key)


class ProducerError(CacheError):
    """The producer for a key failed for a reason other than cancellation."""

    def __init__(self, key: str, cause: Exception):
        self.cause = cause
        super().__init__(f"Producer failed for {key}: {cause}", key=key)


class RevalidationError(CacheError):
    """Background refresh of a key failed. Never raised to callers."""

    def __init__(self, key: str, cause: Exception):
        self.cause = cause
        super().__init__(f"Revalidation failed for {key}: {cause}", key=key)
