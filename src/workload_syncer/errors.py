"""
Error taxonomy for the workload syncer.

Recoverable errors (transient connectivity, optimistic conflicts) stay
inside the synchronizer retry loop. Everything else ends up as a
condition that operators can see on the affected object.
"""
from typing import Optional


class SyncerError(Exception):
    """Base exception for all syncer failures."""
    pass


class TransientConnectivityError(SyncerError):
    """Network failure or timeout talking to either cluster."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class OptimisticConflictError(SyncerError):
    """A write was rejected because the resource version moved."""
    pass


class AlreadyExistsError(OptimisticConflictError):
    """Create raced with another writer."""
    pass


class NotFoundError(SyncerError):
    """The requested object does not exist."""
    pass


class InvalidObjectError(SyncerError):
    """
    The receiving side rejected the object (schema or admission).

    Permanent: never retried automatically.
    """

    def __init__(self, message: str, reason: str = "Invalid"):
        self.reason = reason
        super().__init__(message)


class SemanticConflictError(SyncerError):
    """Both sides diverged independently since the last sync."""
    pass


class CleanupError(SyncerError):
    """A termination cleanup step failed; the finalizer must stay."""

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f"cleanup step '{step}' failed: {message}")


class InvalidSyncTargetError(SyncerError):
    """SyncTarget record or its connection parameters failed validation."""
    pass


__all__ = [
    "SyncerError",
    "TransientConnectivityError",
    "OptimisticConflictError",
    "AlreadyExistsError",
    "NotFoundError",
    "InvalidObjectError",
    "SemanticConflictError",
    "CleanupError",
    "InvalidSyncTargetError",
]
