"""
Task Manager.

Owns the sync task lifecycle: runs the fetch, normalize, diff, plan,
execute and finalize pipeline under per-entity-type locks, persists a
checkpoint after every step and every executed slice, and resumes
interrupted tasks from that checkpoint.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field

from dirsync.config.settings import SyncSettings, settings
from dirsync.sync.conflict.resolver import ConflictResolver
from dirsync.sync.connectors.base import BaseSourceConnector, BaseTargetConnector, ConnectorFactory
from dirsync.sync.diff.engine import DiffEngine
from dirsync.sync.entities import (
    ChangeSet,
    EntityChange,
    EntitySet,
    EntityType,
    Scope,
    parse_datetime,
    utcnow,
)
from dirsync.sync.errors import (
    ConfigurationError,
    ConflictNotFound,
    ConflictUnresolved,
    InvalidTaskState,
    OperationNotFound,
    SyncError,
    TaskNotFound,
)
from dirsync.sync.models import (
    ConflictResolution,
    ConflictStatus,
    ConflictStrategy,
    OperationStatus,
    TaskStatus,
    TaskStep,
    TaskType,
)
from dirsync.sync.orchestrator.event_manager import EventManager, EventPriority, EventType
from dirsync.sync.scheduler.executor import OperationExecutor, OperationOutcome
from dirsync.sync.scheduler.lock import DatabaseLockManager, LockManager, lock_key
from dirsync.sync.scheduler.queue import MemoryWorkQueue, WorkQueue
from dirsync.sync.scheduler.strategies import ExecutionReport, RealtimeStrategy, create_strategy
from dirsync.sync.store import (
    ConflictRecord,
    IntermediateStore,
    OperationRecord,
    TaskRecord,
)
from dirsync.utils.retry import RetryConfig

logger = logging.getLogger(__name__)

OPERATIONS_FAILED = "OPERATIONS_FAILED"
INTERNAL_ERROR = "INTERNAL_ERROR"

_STEP_PROGRESS = {
    TaskStep.FETCH: 10,
    TaskStep.NORMALIZE: 20,
    TaskStep.DIFF: 30,
    TaskStep.PLAN: 40,
    TaskStep.EXECUTE: 95,
    TaskStep.FINALIZE: 100,
}


# ============================================================================
# Task configuration
# ============================================================================

class StrategyConfig(BaseModel):
    """Execution strategy options; defaults come from SyncSettings."""
    name: str = Field(default_factory=lambda: settings.sync.strategy, pattern="^(queue|batch|realtime)$")
    batch_size: int = Field(default_factory=lambda: settings.sync.batch_size, ge=1)
    concurrency: int = Field(default_factory=lambda: settings.sync.concurrency, ge=1)
    batch_delay_seconds: float = Field(default_factory=lambda: settings.sync.batch_delay_seconds, ge=0)
    stop_on_error: bool = Field(default_factory=lambda: settings.sync.stop_on_error)
    org_concurrency: int = Field(default_factory=lambda: settings.sync.org_concurrency, ge=1)
    user_concurrency: int = Field(default_factory=lambda: settings.sync.user_concurrency, ge=1)
    max_attempts: int = Field(default_factory=lambda: settings.sync.max_attempts, ge=1)
    backoff_base_seconds: float = Field(default_factory=lambda: settings.sync.backoff_base_seconds, ge=0)
    backoff_max_seconds: float = Field(default_factory=lambda: settings.sync.backoff_max_seconds, ge=0)
    operation_timeout_seconds: float = Field(default_factory=lambda: settings.sync.operation_timeout_seconds, gt=0)
    checkpoint_interval: int = Field(default_factory=lambda: settings.sync.checkpoint_interval, ge=1)

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base_seconds,
            max_delay=self.backoff_max_seconds,
        )


class SyncTaskConfig(BaseModel):
    """Configuration persisted with every task."""
    entity_types: List[EntityType] = Field(default_factory=lambda: list(EntityType), min_length=1)
    # Connector configs with a registered "type"; an incremental task without
    # a source only consumes pushed change records
    source: Optional[Dict[str, Any]] = None
    target: Dict[str, Any] = Field(default_factory=lambda: {"type": "collecting"})
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    conflict_policy: ConflictStrategy = Field(
        default_factory=lambda: ConflictStrategy(settings.sync.conflict_policy)
    )
    filter: Optional[Dict[str, Any]] = None
    since: Optional[datetime] = None
    diff_strategy: Optional[str] = Field(default=None, pattern="^(memory|sql_join)$")

    def ordered_entity_types(self) -> List[EntityType]:
        return [t for t in EntityType if t in set(self.entity_types)]


class _RunState:
    """Per-run mutable state shared between pipeline steps."""

    def __init__(self, task: TaskRecord, config: SyncTaskConfig, checkpoint: Dict[str, Any]):
        self.task = task
        self.config = config
        self.entity_types = config.ordered_entity_types()
        self.checkpoint = checkpoint
        self.snapshot: Optional[EntitySet] = None
        self.local: Optional[EntitySet] = None
        self.remote: Optional[EntitySet] = None
        self.diff_summary: Dict[str, int] = {}
        self.superseded_records: List[int] = []
        self.report: Optional[ExecutionReport] = None

    @property
    def scope(self) -> Scope:
        return self.task.scope


class TaskManager:
    """
    Sync Task Manager.

    Features:
    - Full and incremental sync tasks, inline or in the background
    - Checkpoint after every step and every executed slice or level
    - Recovery of tasks interrupted by a crash
    - Cooperative cancellation, resume, operation replay
    - Manual conflict resolution
    """

    def __init__(
        self,
        store: IntermediateStore,
        connector_factory=ConnectorFactory,
        lock_manager: Optional[LockManager] = None,
        event_manager: Optional[EventManager] = None,
        diff_engine: Optional[DiffEngine] = None,
        work_queue: Optional[WorkQueue] = None,
        sync_settings: Optional[SyncSettings] = None
    ):
        """
        Initialize task manager.

        Args:
            store: Intermediate store
            connector_factory: Object with create_source/create_target
            lock_manager: Lock backend (defaults to the database backend)
            event_manager: Event manager for lifecycle events
            diff_engine: Diff engine
            work_queue: Queue used by the queued strategy
            sync_settings: Engine-wide settings
        """
        self.store = store
        self.connector_factory = connector_factory
        self.settings = sync_settings or settings.sync
        self.lock_manager = lock_manager or DatabaseLockManager(
            store.db, retry_config=RetryConfig(max_attempts=self.settings.lock_acquire_attempts)
        )
        self.event_manager = event_manager or EventManager()
        self.diff_engine = diff_engine or DiffEngine(large_dataset_threshold=self.settings.diff_join_threshold)
        self.work_queue = work_queue or MemoryWorkQueue()
        self._running: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    # ========================================================================
    # Starting tasks
    # ========================================================================

    def create_task(self, scope: Scope, task_type: TaskType, config: SyncTaskConfig) -> TaskRecord:
        """Persist a new pending task."""
        if task_type == TaskType.FULL and not config.source:
            raise ConfigurationError("A full sync needs a source configuration")

        task = self.store.tasks.create(TaskRecord(
            id=uuid4().hex,
            scope=scope,
            type=task_type,
            status=TaskStatus.PENDING,
            config=config.model_dump(mode="json"),
        ))
        logger.info(f"Created {task_type.value} sync task {task.id} for {scope.key}")
        return task

    async def start_full_sync(self, scope: Scope, config: SyncTaskConfig) -> TaskRecord:
        task = self.create_task(scope, TaskType.FULL, config)
        self._spawn(task.id, self._start_and_run(task.id))
        return task

    async def start_incremental_sync(self, scope: Scope, config: SyncTaskConfig) -> TaskRecord:
        task = self.create_task(scope, TaskType.INCREMENTAL, config)
        self._spawn(task.id, self._start_and_run(task.id))
        return task

    async def run_task(self, task_id: str) -> TaskRecord:
        """Run a pending task inline and return its final state."""
        return await self._start_and_run(task_id)

    async def wait_for_task(self, task_id: str, timeout: Optional[float] = None) -> TaskRecord:
        """Wait for a background run of the task to finish."""
        running = self._running.get(task_id)
        if running is not None:
            await asyncio.wait_for(asyncio.shield(running), timeout=timeout)
        return self.get_task(task_id)

    def _spawn(self, task_id: str, coro) -> None:
        self._cancel_events.setdefault(task_id, asyncio.Event())
        background = asyncio.create_task(coro, name=f"sync-task-{task_id}")
        self._running[task_id] = background

        def _done(finished: asyncio.Task) -> None:
            self._running.pop(task_id, None)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(f"Sync task {task_id} crashed: {finished.exception()}")

        background.add_done_callback(_done)

    async def _start_and_run(self, task_id: str) -> TaskRecord:
        task = self._require_task(task_id)
        if not self.store.tasks.transition(
            task_id, [TaskStatus.PENDING], TaskStatus.RUNNING, started_at=utcnow(), progress=0
        ):
            raise InvalidTaskState(
                f"Task {task_id} is {self.store.tasks.get(task_id).status.value}, expected pending",
                context={"task_id": task_id}
            )
        await self._publish(EventType.TASK_STARTED, task, {"type": task.type.value})
        return await self._run(task_id, resume=False)

    # ========================================================================
    # Pipeline
    # ========================================================================

    async def _run(self, task_id: str, resume: bool) -> TaskRecord:
        task = self._require_task(task_id)
        cancel_event = self._cancel_events.setdefault(task_id, asyncio.Event())
        state = _RunState(task, SyncTaskConfig(**task.config), dict(task.checkpoint or {}))
        owner = f"task:{task_id}"
        keys = [lock_key(entity_type, task.scope) for entity_type in state.entity_types]

        try:
            async with self.lock_manager.hold(keys, owner, self.settings.lock_ttl_seconds):
                async with AsyncExitStack() as stack:
                    source = None
                    if state.config.source:
                        source = self.connector_factory.create_source(state.config.source)
                        await stack.enter_async_context(source)
                    target = self.connector_factory.create_target(state.config.target)
                    await stack.enter_async_context(target)

                    await self._pipeline(state, source, target, cancel_event, resume)
        except SyncError as e:
            await self._fail(state.task, e.to_dict())
        except Exception as e:
            logger.exception(f"Sync task {task_id} failed unexpectedly")
            await self._fail(state.task, {"code": INTERNAL_ERROR, "message": str(e), "context": {}})
        finally:
            self._cancel_events.pop(task_id, None)

        return self.store.tasks.get(task_id)

    async def _pipeline(
        self,
        state: _RunState,
        source: Optional[BaseSourceConnector],
        target: BaseTargetConnector,
        cancel_event: asyncio.Event,
        resume: bool
    ) -> None:
        last_step = None
        if resume and state.checkpoint.get("step"):
            last_step = TaskStep(state.checkpoint["step"])
        done_index = last_step.index() if last_step is not None else -1
        incremental = state.task.type == TaskType.INCREMENTAL

        # The full snapshot lives in memory only, so a full task re-fetches
        # unless normalize already persisted it
        if done_index < TaskStep.NORMALIZE.index():
            if incremental and done_index == TaskStep.FETCH.index():
                logger.info(f"Task {state.task.id}: change records already fetched, resuming at normalize")
            else:
                await self._step_fetch(state, source, resume)
                if await self._paused_if_cancelled(state, cancel_event):
                    return
            await self._step_normalize(state)
            if await self._paused_if_cancelled(state, cancel_event):
                return

        if incremental:
            # A fresh target only knows what earlier tasks pushed to it
            target.seed_known_state(self.store.known_target_state(state.task.scope, state.entity_types))

        if done_index < TaskStep.PLAN.index():
            operations = await self._step_diff(state, target)
            if await self._paused_if_cancelled(state, cancel_event):
                return
            await self._step_plan(state, operations)
            if await self._paused_if_cancelled(state, cancel_event):
                return
        else:
            requeued = self.store.operations.requeue_running(state.task.id)
            if requeued:
                logger.info(f"Task {state.task.id}: returned {requeued} orphaned operations to pending")
            target.restore_operations(self._completed_operations(state.task.id))

        if done_index < TaskStep.EXECUTE.index():
            await self._step_execute(state, target, cancel_event)
            if state.report is not None and state.report.cancelled:
                await self._pause(state)
                return
            self._save_checkpoint(state, TaskStep.EXECUTE)
            await self._step_completed(state, TaskStep.EXECUTE)

        await self._step_finalize(state, target)

    async def _step_fetch(self, state: _RunState, source: Optional[BaseSourceConnector], resume: bool) -> None:
        task = state.task
        if task.type == TaskType.FULL:
            # Pending change records predate the snapshot and are settled by it
            types = set(state.entity_types)
            state.superseded_records = [
                r.id for r in self.store.change_records.list_unprocessed(task.scope)
                if r.entity_type in types
            ]
            snapshot = await source.fetch_full(state.entity_types, state.config.filter)
            state.snapshot = snapshot
            cursor = snapshot.cursor
            fetched = snapshot.total()
        else:
            if resume and state.checkpoint.get("cursor"):
                cursor = state.checkpoint["cursor"]
            else:
                cursor = self.store.tasks.last_completed_cursor(task.scope)
            fetched = 0
            if source is not None:
                changes: ChangeSet = await source.fetch_changes(
                    state.entity_types, since=state.config.since, cursor=cursor
                )
                self.store.change_records.add(task.scope, list(changes.iter_changes()))
                fetched = changes.count()
                cursor = changes.cursor or cursor

        logger.info(f"Task {task.id}: fetched {fetched} {'entities' if task.type == TaskType.FULL else 'changes'}")
        self._save_checkpoint(state, TaskStep.FETCH, cursor=cursor, source_state={"fetched": fetched})
        await self._step_completed(state, TaskStep.FETCH, {"fetched": fetched})

    async def _step_normalize(self, state: _RunState) -> None:
        task = state.task
        if task.type == TaskType.FULL:
            state.snapshot.validate(state.entity_types)
            stats = self.store.apply_snapshot(task.scope, state.snapshot, state.entity_types)
            source_state = {"applied": stats, "change_record_ids": state.superseded_records}
        else:
            types = set(state.entity_types)
            records = [
                r for r in self.store.change_records.list_unprocessed(task.scope)
                if r.entity_type in types
            ]
            current = self.store.snapshot(task.scope, state.entity_types)
            self.store.preview_changes(current, records).validate(state.entity_types)
            dirty = self.store.apply_changes(task.scope, records)
            source_state = {
                "change_records": len(records),
                "change_record_ids": [r.id for r in records],
                "dirty": dirty,
            }

        self._save_checkpoint(state, TaskStep.NORMALIZE, source_state=source_state)
        await self._step_completed(state, TaskStep.NORMALIZE)

    async def _step_diff(self, state: _RunState, target: BaseTargetConnector):
        task = state.task
        local = self.store.snapshot(task.scope, state.entity_types)
        remote = await target.fetch_current(state.entity_types)

        only_ids = None
        if task.type == TaskType.INCREMENTAL:
            only_ids = (state.checkpoint.get("source_state") or {}).get("dirty") or {}

        strategy = None
        if state.config.diff_strategy == "memory":
            strategy = self.diff_engine.memory_strategy
        elif state.config.diff_strategy == "sql_join":
            strategy = self.diff_engine.join_strategy

        operations = self.diff_engine.diff(local, remote, state.entity_types, only_ids=only_ids, strategy=strategy)
        state.local, state.remote = local, remote
        for op in operations:
            key = f"{op.entity_type.value}.{op.operation_type.value}"
            state.diff_summary[key] = state.diff_summary.get(key, 0) + 1

        self._save_checkpoint(state, TaskStep.DIFF, diff=state.diff_summary)
        await self._step_completed(state, TaskStep.DIFF, {"operations": len(operations)})
        return operations

    async def _step_plan(self, state: _RunState, operations) -> None:
        task = state.task
        resolver = ConflictResolver(self.store.conflicts, self.event_manager, state.config.conflict_policy)
        decisions = await resolver.evaluate(task.id, task.scope, operations, state.local, state.remote)

        records = []
        for op in operations:
            op_id = op.record_id(task.id)
            decision = decisions.get(op_id)
            records.append(OperationRecord(
                id=op_id,
                task_id=task.id,
                scope=task.scope,
                entity_type=op.entity_type,
                entity_id=op.entity_id,
                operation_type=op.operation_type,
                data=op.data,
                status=decision.status if decision is not None else OperationStatus.PENDING,
                priority=op.priority,
                batch=op.batch,
                sequence=op.sequence,
            ))
        self.store.operations.add_all(records)

        self._save_checkpoint(
            state,
            TaskStep.PLAN,
            operation_count=len(records),
            conflicts=len(decisions),
            batch_index=None,
            last_operation_id=None,
        )
        await self._step_completed(state, TaskStep.PLAN, {"operations": len(records), "conflicts": len(decisions)})

    async def _step_execute(self, state: _RunState, target: BaseTargetConnector, cancel_event: asyncio.Event) -> None:
        task = state.task
        tail = self.store.operations.list_for_task(task.id, [OperationStatus.PENDING, OperationStatus.FAILED])
        strategy = self._strategy(state.config, target)
        total = max(len(tail), 1)

        async def on_checkpoint(batch_index: int, last_operation_id: Optional[str], processed: int) -> None:
            progress = _STEP_PROGRESS[TaskStep.PLAN] + int(
                (_STEP_PROGRESS[TaskStep.EXECUTE] - _STEP_PROGRESS[TaskStep.PLAN]) * min(processed, total) / total
            )
            self._save_checkpoint(
                state,
                TaskStep.PLAN,
                progress=progress,
                current_step=TaskStep.EXECUTE,
                batch_index=batch_index,
                last_operation_id=last_operation_id,
            )

        logger.info(f"Task {task.id}: executing {len(tail)} operations with {strategy.name} strategy")
        state.report = await strategy.run(tail, cancel_event, on_checkpoint)

    async def _step_finalize(self, state: _RunState, target: BaseTargetConnector) -> None:
        task = state.task
        counts = self.store.operations.count_by_status(task.id)
        result: Dict[str, Any] = {
            "operations": counts,
            "total_operations": sum(counts.values()),
            "diff": state.checkpoint.get("diff", {}),
            "warnings": [],
        }
        if state.report is not None:
            result["execution"] = state.report.to_dict()

        pending_conflicts, _ = self.store.conflicts.list(
            task.scope, status=ConflictStatus.PENDING, task_id=task.id, page_size=1
        )
        blocked = counts.get(OperationStatus.BLOCKED.value, 0)
        if pending_conflicts or blocked:
            result["warnings"].append(ConflictUnresolved(
                f"{blocked} operations wait for a manual conflict decision",
                context={"blocked_operations": blocked},
            ).to_dict())

        collected = target.collected_result()
        if collected is not None:
            result["collected"] = self._collected(task.id, collected)

        failed = counts.get(OperationStatus.FAILED.value, 0)
        self._save_checkpoint(state, TaskStep.FINALIZE, progress=100)
        if failed:
            failed_ids = [r.id for r in self.store.operations.list_for_task(task.id, [OperationStatus.FAILED])]
            await self._fail(task, {
                "code": OPERATIONS_FAILED,
                "message": f"{failed} operations failed permanently; replay them after fixing the cause",
                "context": {"failed_operation_ids": failed_ids[:100]},
            }, result=result)
            return

        self._settle_change_records(task.id, state.checkpoint)

        self.store.tasks.transition(
            task.id, [TaskStatus.RUNNING], TaskStatus.COMPLETED,
            result=result, error=None, progress=100, completed_at=utcnow(),
        )
        logger.info(f"Task {task.id} completed: {counts}")
        await self._publish(EventType.TASK_COMPLETED, task, {"operations": counts})

    # ========================================================================
    # Helpers
    # ========================================================================

    def _strategy(self, config: SyncTaskConfig, target: BaseTargetConnector):
        executor = OperationExecutor(
            self.store,
            target,
            event_manager=self.event_manager,
            retry_config=config.strategy.retry_config(),
            operation_timeout=config.strategy.operation_timeout_seconds,
        )
        return create_strategy(config.strategy.name, executor, config.strategy, queue=self.work_queue)

    def _completed_operations(self, task_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "operation_id": op.id,
                "entity_type": op.entity_type.value,
                "entity_id": op.entity_id,
                "operation_type": op.operation_type.value,
                "payload": op.data.get("payload"),
            }
            for op in self.store.operations.list_for_task(task_id, [OperationStatus.COMPLETED])
        ]

    def _settle_change_records(self, task_id: str, checkpoint: Dict[str, Any]) -> None:
        # Only a successful task consumes its change records
        record_ids = (checkpoint.get("source_state") or {}).get("change_record_ids") or []
        if record_ids:
            marked = self.store.change_records.mark_processed(record_ids, task_id)
            logger.debug(f"Task {task_id}: marked {marked} change records processed")

    def _collected(self, task_id: str, collected: Dict[str, Any]) -> Dict[str, Any]:
        # Built from the records so a resumed task reports every operation
        operations = self._completed_operations(task_id)
        counts: Dict[str, int] = {}
        for op in operations:
            counts[op["operation_type"]] = counts.get(op["operation_type"], 0) + 1
        return {"operations": operations, "counts": counts, "directory": collected.get("directory", {})}

    def _save_checkpoint(
        self,
        state: _RunState,
        step: TaskStep,
        progress: Optional[int] = None,
        current_step: Optional[TaskStep] = None,
        **fields
    ) -> None:
        state.checkpoint.update(fields)
        state.checkpoint["step"] = step.value
        state.checkpoint["updated_at"] = utcnow().isoformat()
        self.store.tasks.update(
            state.task.id,
            checkpoint=dict(state.checkpoint),
            progress=progress if progress is not None else _STEP_PROGRESS[step],
            current_step=(current_step or step).value,
        )

    async def _step_completed(self, state: _RunState, step: TaskStep, data: Optional[Dict[str, Any]] = None) -> None:
        await self._publish(
            EventType.STEP_COMPLETED,
            state.task,
            {"step": step.value, **(data or {})},
            priority=EventPriority.LOW,
        )

    async def _paused_if_cancelled(self, state: _RunState, cancel_event: asyncio.Event) -> bool:
        if not cancel_event.is_set():
            return False
        await self._pause(state)
        return True

    async def _pause(self, state: _RunState) -> None:
        task = state.task
        self.store.tasks.transition(task.id, [TaskStatus.RUNNING], TaskStatus.PAUSED)
        logger.info(f"Task {task.id} paused at checkpoint {state.checkpoint.get('step')}")
        await self._publish(EventType.TASK_PAUSED, task, {"checkpoint": state.checkpoint})

    async def _fail(self, task: TaskRecord, error: Dict[str, Any], result: Optional[Dict[str, Any]] = None) -> None:
        values: Dict[str, Any] = {"error": error, "completed_at": utcnow()}
        if result is not None:
            values["result"] = result
        self.store.tasks.transition(task.id, [TaskStatus.RUNNING], TaskStatus.FAILED, **values)
        logger.error(f"Task {task.id} failed: [{error.get('code')}] {error.get('message')}")
        await self._publish(EventType.TASK_FAILED, task, {"error": error}, priority=EventPriority.HIGH)

    async def _publish(
        self,
        event_type: EventType,
        task: TaskRecord,
        data: Dict[str, Any],
        priority: EventPriority = EventPriority.NORMAL
    ) -> None:
        await self.event_manager.publish(
            event_type,
            source="task_manager",
            data={"task_id": task.id, **data},
            priority=priority,
            correlation_id=task.id,
            tenant=task.scope.key,
        )

    def _require_task(self, task_id: str, scope: Optional[Scope] = None) -> TaskRecord:
        task = self.store.tasks.get(task_id)
        if task is None or (scope is not None and task.scope != scope):
            raise TaskNotFound(f"Task not found: {task_id}", context={"task_id": task_id})
        return task

    # ========================================================================
    # Control
    # ========================================================================

    async def cancel_task(self, task_id: str, scope: Optional[Scope] = None) -> TaskRecord:
        """
        Request cooperative cancellation.

        Pending tasks pause immediately; running tasks stop dispatching and
        pause after in-flight operations finish.

        Raises:
            TaskNotFound: If the task does not exist in the scope
            InvalidTaskState: If the task is already finished or paused
        """
        task = self._require_task(task_id, scope)

        if task.status == TaskStatus.PENDING:
            if self.store.tasks.transition(task_id, [TaskStatus.PENDING], TaskStatus.PAUSED):
                await self._publish(EventType.TASK_PAUSED, task, {"checkpoint": None})
                return self.store.tasks.get(task_id)

        if task.status == TaskStatus.RUNNING:
            cancel_event = self._cancel_events.get(task_id)
            if cancel_event is not None:
                cancel_event.set()
                logger.info(f"Stop requested for task {task_id}")
                return self.store.tasks.get(task_id)
            # Not owned by this process: the run was interrupted
            if self.store.tasks.transition(task_id, [TaskStatus.RUNNING], TaskStatus.PAUSED):
                await self._publish(EventType.TASK_PAUSED, task, {"checkpoint": task.checkpoint})
                return self.store.tasks.get(task_id)

        raise InvalidTaskState(
            f"Task {task_id} cannot be cancelled in status {task.status.value}",
            context={"task_id": task_id, "status": task.status.value}
        )

    async def resume_task(self, task_id: str, scope: Optional[Scope] = None, background: bool = True) -> TaskRecord:
        """
        Resume a paused task from its checkpoint.

        Raises:
            TaskNotFound: If the task does not exist in the scope
            InvalidTaskState: If the task is not paused
        """
        task = self._require_task(task_id, scope)
        started_at = task.started_at or utcnow()
        if not self.store.tasks.transition(task_id, [TaskStatus.PAUSED], TaskStatus.RUNNING, started_at=started_at):
            raise InvalidTaskState(
                f"Task {task_id} is {task.status.value}, expected paused",
                context={"task_id": task_id, "status": task.status.value}
            )

        await self._publish(EventType.TASK_RESUMED, task, {"checkpoint": task.checkpoint})
        if background:
            self._spawn(task_id, self._run(task_id, resume=True))
            return self.store.tasks.get(task_id)
        return await self._run(task_id, resume=True)

    def is_resumable(self, task: TaskRecord) -> Tuple[bool, str]:
        """Whether an interrupted task can continue from its checkpoint."""
        checkpoint = task.checkpoint or {}
        step = checkpoint.get("step")
        if not step:
            return False, "no checkpoint"
        try:
            step = TaskStep(step)
        except ValueError:
            return False, f"unknown step {step}"

        updated_at = parse_datetime(checkpoint.get("updated_at"))
        max_age = timedelta(seconds=self.settings.max_resume_age_seconds)
        if updated_at is None or utcnow() - updated_at > max_age:
            return False, "checkpoint too old"

        if step.index() >= TaskStep.PLAN.index():
            stored = sum(self.store.operations.count_by_status(task.id).values())
            if stored < checkpoint.get("operation_count", 1):
                return False, "operation records missing"
        return True, ""

    async def recover_interrupted_tasks(self, background: bool = True) -> Dict[str, List[str]]:
        """
        Inspect tasks left running by a previous process.

        Resumable tasks continue from their checkpoint; the others are
        paused and announced with task.recovery_required.
        """
        outcome: Dict[str, List[str]] = {"resumed": [], "paused": []}
        for task in self.store.tasks.find_by_status(TaskStatus.RUNNING):
            if task.id in self._running:
                continue

            resumable, reason = self.is_resumable(task)
            if resumable:
                outcome["resumed"].append(task.id)
                await self._publish(EventType.TASK_RESUMED, task, {"checkpoint": task.checkpoint, "recovered": True})
                if background:
                    self._spawn(task.id, self._run(task.id, resume=True))
                else:
                    await self._run(task.id, resume=True)
            else:
                self.store.tasks.transition(task.id, [TaskStatus.RUNNING], TaskStatus.PAUSED)
                outcome["paused"].append(task.id)
                logger.warning(f"Task {task.id} needs manual recovery: {reason}")
                await self._publish(
                    EventType.TASK_RECOVERY_REQUIRED,
                    task,
                    {"reason": reason, "checkpoint": task.checkpoint},
                    priority=EventPriority.HIGH,
                )

        if outcome["resumed"] or outcome["paused"]:
            logger.info(f"Recovery: resumed {len(outcome['resumed'])}, paused {len(outcome['paused'])}")
        return outcome

    async def _run_single(self, task: TaskRecord, operation_id: str) -> OperationOutcome:
        config = SyncTaskConfig(**task.config)
        target = self.connector_factory.create_target(config.target)
        async with target:
            if task.type == TaskType.INCREMENTAL:
                target.seed_known_state(self.store.known_target_state(task.scope, config.ordered_entity_types()))
            target.restore_operations(self._completed_operations(task.id))
            strategy = RealtimeStrategy(self._strategy(config, target).executor)
            return await strategy.run_until_done(operation_id)

    def _refresh_after_operation(self, task: TaskRecord) -> None:
        counts = self.store.operations.count_by_status(task.id)
        current = self.store.tasks.get(task.id)
        result = dict(current.result or {})
        result["operations"] = counts
        result["total_operations"] = sum(counts.values())
        self.store.tasks.update(task.id, result=result)

        recovered = (
            current.status == TaskStatus.FAILED
            and (current.error or {}).get("code") == OPERATIONS_FAILED
            and counts.get(OperationStatus.FAILED.value, 0) == 0
            and counts.get(OperationStatus.PENDING.value, 0) == 0
        )
        if recovered:
            self._settle_change_records(task.id, current.checkpoint or {})
            self.store.tasks.transition(task.id, [TaskStatus.FAILED], TaskStatus.COMPLETED, error=None)
            logger.info(f"Task {task.id} completed after replaying its failed operations")

    async def replay_operation(self, operation_id: str, scope: Optional[Scope] = None) -> OperationRecord:
        """
        Reset a failed operation and execute it again.

        Raises:
            OperationNotFound: If the operation does not exist in the scope
            InvalidTaskState: If the operation is not failed or its task is running
        """
        record = self.store.operations.get(operation_id)
        if record is None or (scope is not None and record.scope != scope):
            raise OperationNotFound(f"Operation not found: {operation_id}", context={"operation_id": operation_id})
        if record.status != OperationStatus.FAILED:
            raise InvalidTaskState(
                f"Operation {operation_id} is {record.status.value}, only failed operations can be replayed",
                context={"operation_id": operation_id, "status": record.status.value}
            )

        task = self._require_task(record.task_id)
        if task.status == TaskStatus.RUNNING:
            raise InvalidTaskState(
                f"Task {task.id} is running; replay after it finishes",
                context={"task_id": task.id}
            )

        self.store.operations.set_status(
            operation_id, OperationStatus.PENDING, from_statuses=[OperationStatus.FAILED], reset_attempts=True
        )
        outcome = await self._run_single(task, operation_id)
        logger.info(f"Replayed operation {operation_id}: {outcome.outcome.value}")
        self._refresh_after_operation(task)
        return self.store.operations.get(operation_id)

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: ConflictResolution,
        notes: Optional[str] = None,
        scope: Optional[Scope] = None
    ) -> Dict[str, Any]:
        """
        Record a manual decision for a pending conflict.

        ``source`` executes the blocked operation, ``target`` skips it.

        Raises:
            ConflictNotFound: If the conflict does not exist in the scope
            InvalidTaskState: If the conflict was already resolved
        """
        resolution = ConflictResolution(resolution)
        conflict = self.store.conflicts.get(conflict_id)
        if conflict is None or (scope is not None and conflict.scope != scope):
            raise ConflictNotFound(f"Conflict not found: {conflict_id}", context={"conflict_id": conflict_id})
        if conflict.status != ConflictStatus.PENDING:
            raise InvalidTaskState(
                f"Conflict {conflict_id} is already resolved",
                context={"conflict_id": conflict_id, "resolution": conflict.resolution.value if conflict.resolution else None}
            )

        conflict = self.store.conflicts.resolve(conflict_id, resolution, notes)
        task = self._require_task(conflict.task_id)

        if resolution == ConflictResolution.SOURCE:
            released = self.store.operations.set_status(
                conflict.operation_id, OperationStatus.PENDING, from_statuses=[OperationStatus.BLOCKED]
            )
            if released and task.status != TaskStatus.RUNNING:
                await self._run_single(task, conflict.operation_id)
        else:
            self.store.operations.set_status(
                conflict.operation_id, OperationStatus.SKIPPED, from_statuses=[OperationStatus.BLOCKED]
            )

        self._refresh_after_operation(task)
        await self._publish(EventType.CONFLICT_RESOLVED, task, {
            "conflict_id": conflict_id,
            "operation_id": conflict.operation_id,
            "resolution": resolution.value,
        })
        return {
            "conflict": self.store.conflicts.get(conflict_id).to_dict(),
            "operation": self.store.operations.get(conflict.operation_id).to_dict(),
        }

    async def shutdown(self) -> None:
        """Request a stop of every running task and wait for them to pause."""
        for cancel_event in self._cancel_events.values():
            cancel_event.set()
        running = list(self._running.values())
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    # ========================================================================
    # Changes & queries
    # ========================================================================

    def ingest_changes(self, scope: Scope, changes: List[EntityChange], task_id: Optional[str] = None) -> List[int]:
        """Persist externally pushed changes for the next incremental task."""
        ids = self.store.change_records.add(scope, changes, task_id)
        logger.info(f"Ingested {len(ids)} pushed changes for {scope.key}")
        return ids

    def get_task(self, task_id: str, scope: Optional[Scope] = None) -> TaskRecord:
        return self._require_task(task_id, scope)

    def list_tasks(
        self,
        scope: Scope,
        task_type: Optional[TaskType] = None,
        status: Optional[TaskStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[TaskRecord], int]:
        return self.store.tasks.list(scope, task_type, status, date_from, date_to, page, page_size)

    def list_operations(
        self,
        task_id: str,
        scope: Optional[Scope] = None,
        status: Optional[OperationStatus] = None
    ) -> List[OperationRecord]:
        self._require_task(task_id, scope)
        return self.store.operations.list_for_task(task_id, [status] if status else None)

    def list_conflicts(
        self,
        scope: Scope,
        status: Optional[ConflictStatus] = None,
        task_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[ConflictRecord], int]:
        return self.store.conflicts.list(scope, status, task_id, page, page_size)

    def get_statistics(self, scope: Scope, days: int = 7) -> Dict[str, Any]:
        return self.store.tasks.statistics(scope, days)

    def find_long_running_tasks(self, threshold_seconds: int = 3600) -> List[TaskRecord]:
        return self.store.tasks.find_long_running(threshold_seconds)

    def cleanup_old_tasks(self, days: int = 30) -> int:
        return self.store.tasks.delete_older_than(days)
