"""
Execution Strategies.

Queued, batched and realtime execution of an ordered operation list.
All strategies dispatch through OperationExecutor, never start a
dependency level before the previous one is finished, honour a
cancellation event and report checkpoints through a callback.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from itertools import groupby
from typing import Awaitable, Callable, Dict, List, Optional

from dirsync.sync.entities import EntityType
from dirsync.sync.errors import ConfigurationError, ExecutionStalled
from dirsync.sync.models import OperationStatus
from dirsync.sync.scheduler.executor import ExecutionOutcome, OperationExecutor, OperationOutcome
from dirsync.sync.scheduler.queue import Job, MemoryWorkQueue, QueueWorker, WorkQueue
from dirsync.sync.store import OperationRecord

logger = logging.getLogger(__name__)

# (batch_index, last_operation_id, processed_count)
CheckpointCallback = Callable[[int, Optional[str], int], Awaitable[None]]

_OPEN_STATUSES = [OperationStatus.PENDING, OperationStatus.RUNNING]


@dataclass
class ExecutionReport:
    """Summary of one strategy run."""
    strategy: str
    total: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    failed_operation_ids: List[str] = field(default_factory=list)
    cancelled: bool = False
    stopped_on_error: bool = False
    batch_index: Optional[int] = None
    last_operation_id: Optional[str] = None

    def record(self, outcome: OperationOutcome) -> None:
        key = outcome.outcome.value
        self.outcomes[key] = self.outcomes.get(key, 0) + 1
        if outcome.permanently_failed:
            self.failed_operation_ids.append(outcome.operation_id)

    @property
    def processed(self) -> int:
        return sum(self.outcomes.values())

    def to_dict(self) -> Dict:
        return {
            "strategy": self.strategy,
            "total": self.total,
            "outcomes": dict(self.outcomes),
            "failed_operation_ids": list(self.failed_operation_ids),
            "cancelled": self.cancelled,
            "stopped_on_error": self.stopped_on_error,
            "batch_index": self.batch_index,
            "last_operation_id": self.last_operation_id,
        }


def group_levels(operations: List[OperationRecord]) -> List[List[OperationRecord]]:
    """Split a sequence-ordered list into its dependency levels."""
    ordered = sorted(operations, key=lambda op: op.sequence)
    return [list(level) for _, level in groupby(ordered, key=lambda op: op.batch)]


class ExecutionStrategy(ABC):
    """Base class for execution strategies."""

    name: str = ""

    def __init__(self, executor: OperationExecutor, sleep: Optional[Callable] = None):
        self.executor = executor
        self._sleep = sleep or asyncio.sleep

    @abstractmethod
    async def run(
        self,
        operations: List[OperationRecord],
        cancel_event: Optional[asyncio.Event] = None,
        on_checkpoint: Optional[CheckpointCallback] = None
    ) -> ExecutionReport:
        """
        Execute operations in dependency order.

        Args:
            operations: Records to run, ordered by sequence
            cancel_event: Set to request a cooperative stop
            on_checkpoint: Called after each finished slice or level

        Returns:
            ExecutionReport
        """
        pass

    async def run_until_done(
        self,
        operation_id: str,
        cancel_event: Optional[asyncio.Event] = None
    ) -> OperationOutcome:
        """Execute one operation, retrying in-process with backoff."""
        while True:
            outcome = await self.executor.execute(operation_id)
            if outcome.outcome != ExecutionOutcome.RETRY_SCHEDULED:
                return outcome
            if cancel_event is not None and cancel_event.is_set():
                return outcome
            await self._sleep(outcome.retry_delay or 0)

    @staticmethod
    async def _checkpoint(
        on_checkpoint: Optional[CheckpointCallback],
        report: ExecutionReport,
        batch_index: int,
        last_operation_id: Optional[str]
    ) -> None:
        report.batch_index = batch_index
        report.last_operation_id = last_operation_id
        if on_checkpoint is not None:
            await on_checkpoint(batch_index, last_operation_id, report.processed)


class RealtimeStrategy(ExecutionStrategy):
    """Strictly sequential execution with in-process retries."""

    name = "realtime"

    def __init__(self, executor: OperationExecutor, checkpoint_interval: int = 20, sleep: Optional[Callable] = None):
        super().__init__(executor, sleep)
        self.checkpoint_interval = max(1, checkpoint_interval)

    async def run(self, operations, cancel_event=None, on_checkpoint=None) -> ExecutionReport:
        report = ExecutionReport(self.name, total=len(operations))
        since_checkpoint = 0
        last: Optional[OperationRecord] = None

        for op in sorted(operations, key=lambda o: o.sequence):
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                break

            report.record(await self.run_until_done(op.id, cancel_event))
            last = op
            since_checkpoint += 1
            if since_checkpoint >= self.checkpoint_interval:
                await self._checkpoint(on_checkpoint, report, op.batch, op.id)
                since_checkpoint = 0

        if last is not None and since_checkpoint:
            await self._checkpoint(on_checkpoint, report, last.batch, last.id)
        return report


class BatchedStrategy(ExecutionStrategy):
    """
    Fixed-size slices with bounded concurrency.

    Slices never span two dependency levels.
    """

    name = "batch"

    def __init__(
        self,
        executor: OperationExecutor,
        batch_size: int = 50,
        concurrency: int = 5,
        batch_delay: float = 0.0,
        stop_on_error: bool = False,
        sleep: Optional[Callable] = None
    ):
        super().__init__(executor, sleep)
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.batch_delay = batch_delay
        self.stop_on_error = stop_on_error

    def slices(self, operations: List[OperationRecord]) -> List[List[OperationRecord]]:
        result = []
        for level in group_levels(operations):
            for start in range(0, len(level), self.batch_size):
                result.append(level[start:start + self.batch_size])
        return result

    async def run(self, operations, cancel_event=None, on_checkpoint=None) -> ExecutionReport:
        report = ExecutionReport(self.name, total=len(operations))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(op: OperationRecord) -> OperationOutcome:
            async with semaphore:
                return await self.run_until_done(op.id, cancel_event)

        slices = self.slices(operations)
        for index, chunk in enumerate(slices):
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                break

            outcomes = await asyncio.gather(*(run_one(op) for op in chunk))
            for outcome in outcomes:
                report.record(outcome)
            await self._checkpoint(on_checkpoint, report, chunk[-1].batch, chunk[-1].id)

            if self.stop_on_error and any(o.permanently_failed for o in outcomes):
                report.stopped_on_error = True
                logger.warning(f"Stopping after slice {index}: permanent failure with stop_on_error set")
                break

            if self.batch_delay > 0 and index < len(slices) - 1:
                await self._sleep(self.batch_delay)

        return report


class QueuedStrategy(ExecutionStrategy):
    """
    Durable queue execution.

    Organizations and users (memberships included) go to separate queues
    with their own consumer pools. Each dependency level is enqueued only
    after the previous one has drained.
    """

    name = "queue"

    def __init__(
        self,
        executor: OperationExecutor,
        queue: Optional[WorkQueue] = None,
        queue_prefix: str = "sync",
        org_concurrency: int = 1,
        user_concurrency: int = 5,
        poll_interval: float = 0.05,
        stall_timeout: float = 300.0,
        sleep: Optional[Callable] = None
    ):
        super().__init__(executor, sleep)
        self.queue = queue or MemoryWorkQueue()
        self.stall_timeout = stall_timeout
        self.queue_prefix = queue_prefix
        self.org_concurrency = org_concurrency
        self.user_concurrency = user_concurrency
        self.poll_interval = poll_interval

    def queue_name(self, task_id: str, entity_type: EntityType) -> str:
        pool = "organizations" if entity_type == EntityType.ORGANIZATION else "users"
        return f"{self.queue_prefix}:{task_id}:{pool}"

    async def run(self, operations, cancel_event=None, on_checkpoint=None) -> ExecutionReport:
        report = ExecutionReport(self.name, total=len(operations))
        if not operations:
            return report

        task_id = operations[0].task_id
        operations_store = self.executor.store.operations
        wakeup = asyncio.Event()
        loop = asyncio.get_running_loop()
        errors: List[Exception] = []
        progress = {"at": loop.time()}
        cancelled_level: List[OperationRecord] = []
        aborted = False

        async def handle(job: Job) -> Optional[OperationOutcome]:
            if cancel_event is not None and cancel_event.is_set():
                return None
            try:
                return await self.executor.execute(job.id)
            except Exception as e:
                logger.error(f"Operation {job.id} raised during execution: {e}")
                errors.append(e)
                wakeup.set()
                return None

        def on_outcome(outcome: Optional[OperationOutcome]) -> None:
            if outcome is not None and outcome.done:
                report.record(outcome)
            progress["at"] = loop.time()
            wakeup.set()

        workers = [
            QueueWorker(self.queue, self.queue_name(task_id, EntityType.ORGANIZATION), handle,
                        concurrency=self.org_concurrency, poll_timeout=self.poll_interval, on_outcome=on_outcome),
            QueueWorker(self.queue, self.queue_name(task_id, EntityType.USER), handle,
                        concurrency=self.user_concurrency, poll_timeout=self.poll_interval, on_outcome=on_outcome),
        ]

        # Jobs left behind by an interrupted run would block re-enqueueing
        for op in operations:
            await self.queue.discard(self.queue_name(task_id, op.entity_type), op.id)

        for worker in workers:
            worker.start()
        try:
            for level in group_levels(operations):
                if cancel_event is not None and cancel_event.is_set():
                    report.cancelled = True
                    break

                for op in level:
                    await self.queue.enqueue(
                        self.queue_name(task_id, op.entity_type),
                        op.id,
                        {"operation_id": op.id, "task_id": task_id},
                    )

                level_ids = {op.id for op in level}
                progress["at"] = loop.time()
                while True:
                    if errors:
                        raise errors[0]
                    open_ids = {
                        record.id for record in operations_store.list_for_task(task_id, _OPEN_STATUSES)
                    } & level_ids
                    if not open_ids:
                        break
                    if cancel_event is not None and cancel_event.is_set():
                        report.cancelled = True
                        for op in level:
                            if op.id in open_ids:
                                await self.queue.discard(self.queue_name(task_id, op.entity_type), op.id)
                        break
                    if loop.time() - progress["at"] > self.stall_timeout:
                        raise ExecutionStalled(
                            f"No queued operation finished within {self.stall_timeout}s",
                            context={"task_id": task_id, "open_operation_ids": sorted(open_ids)[:50]},
                        )
                    wakeup.clear()
                    try:
                        await asyncio.wait_for(wakeup.wait(), timeout=self.poll_interval)
                    except asyncio.TimeoutError:
                        pass

                if report.cancelled:
                    cancelled_level = level
                    break
                await self._checkpoint(on_checkpoint, report, level[-1].batch, level[-1].id)
        except Exception:
            aborted = True
            raise
        finally:
            for worker in workers:
                await worker.stop()
            if aborted:
                # Workers are stopped, so nothing of this task is in flight
                operations_store.requeue_running(task_id)

        if cancelled_level:
            await self._checkpoint_cancelled_level(on_checkpoint, report, cancelled_level, operations_store)
        return report

    async def _checkpoint_cancelled_level(self, on_checkpoint, report, level, operations_store) -> None:
        """Checkpoint the last operation of a partly drained level that is no longer open."""
        open_ids = {record.id for record in operations_store.list_for_task(level[0].task_id, _OPEN_STATUSES)}
        finished = [op for op in level if op.id not in open_ids]
        if finished:
            await self._checkpoint(on_checkpoint, report, level[0].batch, finished[-1].id)


def create_strategy(name: str, executor: OperationExecutor, options, queue: Optional[WorkQueue] = None) -> ExecutionStrategy:
    """
    Build the strategy selected by configuration.

    Args:
        name: queue, batch or realtime
        executor: Operation executor
        options: Object carrying batch_size, concurrency, batch_delay_seconds,
            stop_on_error, org_concurrency, user_concurrency, checkpoint_interval,
            operation_timeout_seconds, backoff_max_seconds
        queue: Work queue for the queued strategy

    Raises:
        ConfigurationError: For an unknown strategy name
    """
    if name == QueuedStrategy.name:
        return QueuedStrategy(
            executor,
            queue=queue,
            org_concurrency=options.org_concurrency,
            user_concurrency=options.user_concurrency,
            # A retried job may wait out the longest backoff and then a full call timeout
            stall_timeout=max(60.0, 2 * (options.operation_timeout_seconds + options.backoff_max_seconds)),
        )
    if name == BatchedStrategy.name:
        return BatchedStrategy(
            executor,
            batch_size=options.batch_size,
            concurrency=options.concurrency,
            batch_delay=options.batch_delay_seconds,
            stop_on_error=options.stop_on_error,
        )
    if name == RealtimeStrategy.name:
        return RealtimeStrategy(executor, checkpoint_interval=options.checkpoint_interval)
    raise ConfigurationError(f"Unknown execution strategy: {name}", context={"strategy": name})
