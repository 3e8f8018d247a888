"""
Intermediate Store Module.
"""

from dirsync.sync.store.base import (
    ChangeRecord,
    ConflictRecord,
    OperationRecord,
    TaskRecord,
)
from dirsync.sync.store.sqlalchemy_store import IntermediateStore

__all__ = [
    "ChangeRecord",
    "ConflictRecord",
    "OperationRecord",
    "TaskRecord",
    "IntermediateStore",
]
