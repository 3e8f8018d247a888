"""
Operation Scheduler Module.

Provides operation execution, work queues, execution strategies and
distributed locks for directory synchronization.
"""

from dirsync.sync.scheduler.executor import (
    ExecutionOutcome,
    OperationExecutor,
    OperationOutcome,
)
from dirsync.sync.scheduler.lock import (
    DatabaseLockManager,
    LockManager,
    MemoryLockManager,
    RedisLockManager,
    lock_key,
)
from dirsync.sync.scheduler.queue import (
    Job,
    MemoryWorkQueue,
    QueueWorker,
    RedisWorkQueue,
    WorkQueue,
)
from dirsync.sync.scheduler.strategies import (
    BatchedStrategy,
    ExecutionReport,
    ExecutionStrategy,
    QueuedStrategy,
    RealtimeStrategy,
    create_strategy,
)

__all__ = [
    "ExecutionOutcome",
    "OperationExecutor",
    "OperationOutcome",
    "DatabaseLockManager",
    "LockManager",
    "MemoryLockManager",
    "RedisLockManager",
    "lock_key",
    "Job",
    "MemoryWorkQueue",
    "QueueWorker",
    "RedisWorkQueue",
    "WorkQueue",
    "BatchedStrategy",
    "ExecutionReport",
    "ExecutionStrategy",
    "QueuedStrategy",
    "RealtimeStrategy",
    "create_strategy",
]
