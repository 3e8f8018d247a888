"""
Sync Error Taxonomy.

Every failure raised by the sync engine derives from SyncError, which carries
a stable error code, a retryable flag and a context dictionary that ends up in
the task's persisted error and in failed-operation events.
"""

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for sync engine errors."""

    code = "SYNC_ERROR"
    retryable = False
    http_status = 500

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for task error columns and API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


class SourceUnavailable(SyncError):
    """Source could not be reached (connectivity, authentication)."""
    code = "SOURCE_UNAVAILABLE"
    retryable = True
    http_status = 503


class SourceSchemaError(SyncError):
    """Source data could not be mapped onto entities."""
    code = "SOURCE_SCHEMA_ERROR"
    http_status = 422


class CyclicHierarchy(SyncError):
    """Organization parent graph contains a cycle."""
    code = "CYCLIC_HIERARCHY"
    http_status = 422


class TargetRejected(SyncError):
    """Target refused or failed an operation."""
    code = "TARGET_REJECTED"
    retryable = True
    http_status = 502

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        permanent: bool = False,
        status_code: Optional[int] = None
    ):
        super().__init__(message, context, retryable=not permanent)
        self.permanent = permanent
        self.status_code = status_code


class ConflictUnresolved(SyncError):
    """Entities awaiting a manual conflict decision."""
    code = "CONFLICT_UNRESOLVED"
    http_status = 409


class LockContention(SyncError):
    """Another task holds the entity-type lock."""
    code = "LOCK_CONTENTION"
    retryable = True
    http_status = 409


class TaskNotFound(SyncError):
    code = "TASK_NOT_FOUND"
    http_status = 404


class OperationNotFound(SyncError):
    code = "OPERATION_NOT_FOUND"
    http_status = 404


class ConflictNotFound(SyncError):
    code = "CONFLICT_NOT_FOUND"
    http_status = 404


class InvalidTaskState(SyncError):
    """Requested transition is not allowed from the current state."""
    code = "INVALID_TASK_STATE"
    http_status = 409


class ConfigurationError(SyncError):
    """Invalid source, target or strategy configuration."""
    code = "INVALID_CONFIGURATION"
    http_status = 400


class ExecutionStalled(SyncError):
    """Queued operations stopped making progress."""
    code = "EXECUTION_STALLED"
    retryable = True
    http_status = 504
