"""
Diff Engine Module.
"""

from dirsync.sync.diff.engine import (
    DiffEngine,
    InMemoryDiffStrategy,
    Phase,
    PlannedOperation,
    build_operations,
    operation_id,
)
from dirsync.sync.diff.sql_join import SqlJoinDiffStrategy

__all__ = [
    "DiffEngine",
    "InMemoryDiffStrategy",
    "Phase",
    "PlannedOperation",
    "SqlJoinDiffStrategy",
    "build_operations",
    "operation_id",
]
