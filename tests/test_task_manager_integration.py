"""
Integration tests for the task manager.

Runs complete sync tasks against an in-memory store with a static source
and a collecting target, covering full and incremental runs, pushed
changes, failures and replay, cancellation and resume, crash recovery,
manual conflict resolution and lock contention.
"""

import asyncio
from datetime import timedelta
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest

from dirsync.config.settings import SyncSettings
from dirsync.sync.connectors import CollectingTargetConnector, ConnectorFactory, CustomSourceRegistry
from dirsync.sync.connectors.base import BaseSourceConnector, SourceConfig
from dirsync.sync.entities import ChangeSet, ChangeType, EntityChange, EntityType, Snapshot, utcnow
from dirsync.sync.errors import ConfigurationError, InvalidTaskState, TargetRejected, TaskNotFound
from dirsync.sync.models import (
    ConflictResolution,
    ConflictStatus,
    ConflictStrategy,
    OperationStatus,
    TaskStatus,
    TaskType,
)
from dirsync.sync.orchestrator import EventType
from dirsync.sync.orchestrator.task_manager import StrategyConfig, SyncTaskConfig, TaskManager
from dirsync.sync.scheduler import MemoryLockManager, lock_key
from dirsync.utils.retry import RetryConfig

from conftest import org, sample_directory, user


class StaticSource(BaseSourceConnector):
    """Source serving a fixed snapshot and change set."""

    def __init__(self, entities: Optional[List] = None, cursor: str = "c-1"):
        super().__init__(SourceConfig(type="static"))
        self.entities = list(entities if entities is not None else sample_directory())
        self.cursor = cursor
        self.changes = ChangeSet()
        self.received_cursors = []

    async def fetch_full(self, entity_types, filter=None):
        snapshot = Snapshot.from_entities([e for e in self.entities if e.entity_type in entity_types])
        snapshot.cursor = self.cursor
        return snapshot

    async def fetch_changes(self, entity_types, since=None, cursor=None):
        self.received_cursors.append(cursor)
        return self.changes


class StubFactory:
    """Connector factory handing out fixed instances."""

    def __init__(self, source=None, target=None):
        self.source = source or StaticSource()
        self.target = target or CollectingTargetConnector()

    def create_source(self, config):
        return self.source

    def create_target(self, config):
        return self.target


def task_config(strategy="batch", source=True, **kwargs) -> SyncTaskConfig:
    return SyncTaskConfig(
        source={"type": "static"} if source else None,
        strategy=StrategyConfig(
            name=strategy,
            max_attempts=2,
            backoff_base_seconds=0,
            checkpoint_interval=1,
            batch_size=3,
        ),
        **kwargs
    )


def reject_entity(target, entity_id):
    """Permanently reject operations on one entity until ``fixed`` is set."""
    original = target.apply
    state = {"fixed": False}

    async def apply(entity_type, operation_type, op_entity_id, payload, operation_id=None):
        if op_entity_id == entity_id and not state["fixed"]:
            raise TargetRejected("rejected by target", permanent=True, status_code=422)
        return await original(entity_type, operation_type, op_entity_id, payload, operation_id=operation_id)

    target.apply = apply
    return state


@pytest.fixture
def factory():
    return StubFactory()


@pytest.fixture
def locks():
    return MemoryLockManager(RetryConfig(max_attempts=2, base_delay=0, jitter=False), sleep=AsyncMock())


@pytest.fixture
def manager(store, factory, locks):
    return TaskManager(store, connector_factory=factory, lock_manager=locks, sync_settings=SyncSettings())


async def run_full(manager, scope, **kwargs):
    task = manager.create_task(scope, TaskType.FULL, task_config(**kwargs))
    return await manager.run_task(task.id)


# ============================================================================
# Full and incremental runs
# ============================================================================

class TestFullSync:
    """Full snapshot runs."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", ["batch", "realtime", "queue"])
    async def test_full_sync_mirrors_source(self, manager, factory, store, scope, strategy):
        task = await asyncio.wait_for(run_full(manager, scope, strategy=strategy), timeout=10)

        assert task.status == TaskStatus.COMPLETED
        assert task.progress == 100
        assert task.checkpoint["step"] == "finalize"
        assert task.checkpoint["cursor"] == "c-1"
        assert task.result["operations"]["completed"] == 8
        assert task.result["collected"]["counts"] == {"create": 8}

        view = factory.target.view()
        assert set(view.organizations) == {"root", "sales", "emea", "hr"}
        assert view.organizations["emea"].parent_id == "sales"
        assert set(view.memberships) == {"m1", "m2"}
        assert all(u.synced for u in store.users.load(scope).values())

    @pytest.mark.asyncio
    async def test_publishes_lifecycle_events(self, manager, scope):
        task = await run_full(manager, scope)

        events = manager.event_manager.query_events(correlation_id=task.id, limit=100)
        types = [e.type for e in reversed(events)]
        assert types[0] == EventType.TASK_STARTED
        assert types[-1] == EventType.TASK_COMPLETED
        steps = [e.data["step"] for e in reversed(events) if e.type == EventType.STEP_COMPLETED]
        assert steps == ["fetch", "normalize", "diff", "plan", "execute"]

    @pytest.mark.asyncio
    async def test_second_run_without_changes_is_empty(self, manager, scope):
        await run_full(manager, scope)
        second = await run_full(manager, scope)

        assert second.status == TaskStatus.COMPLETED
        assert second.result["total_operations"] == 0

    @pytest.mark.asyncio
    async def test_entities_missing_from_source_are_deleted(self, manager, factory, scope):
        await run_full(manager, scope)
        factory.source.entities = [e for e in sample_directory() if e.id not in ("u2", "m2")]

        task = await run_full(manager, scope)

        assert task.result["diff"] == {"membership.delete": 1, "user.delete": 1}
        view = factory.target.view()
        assert "u2" not in view.users
        assert "m2" not in view.memberships

    @pytest.mark.asyncio
    async def test_background_run(self, manager, scope):
        task = await manager.start_full_sync(scope, task_config())
        finished = await manager.wait_for_task(task.id, timeout=10)
        assert finished.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_invalid_snapshot_fails_task(self, manager, factory, scope):
        factory.source.entities = [org("a", "missing-parent")]

        task = await run_full(manager, scope)

        assert task.status == TaskStatus.FAILED
        assert task.error["code"] == "SOURCE_SCHEMA_ERROR"
        assert factory.target.call_count == 0

    def test_full_sync_requires_source(self, manager, scope):
        with pytest.raises(ConfigurationError):
            manager.create_task(scope, TaskType.FULL, task_config(source=False))


class TestIncrementalSync:
    """Cursor based and pushed changes."""

    @pytest.mark.asyncio
    async def test_reads_from_last_completed_cursor(self, manager, factory, scope):
        await run_full(manager, scope)
        factory.source.changes.add_updated(user("u1", "alice", email="alice@new.example.com"))
        factory.source.changes.cursor = "c-2"

        task = manager.create_task(scope, TaskType.INCREMENTAL, task_config())
        task = await manager.run_task(task.id)

        assert task.status == TaskStatus.COMPLETED
        assert factory.source.received_cursors == ["c-1"]
        assert task.checkpoint["cursor"] == "c-2"
        operations = manager.list_operations(task.id)
        assert [(op.entity_id, op.operation_type.value) for op in operations] == [("u1", "update")]
        assert factory.target.view().users["u1"].email == "alice@new.example.com"

    @pytest.mark.asyncio
    async def test_pushed_changes_without_source(self, manager, factory, store, scope):
        await run_full(manager, scope)
        manager.ingest_changes(scope, [
            EntityChange(EntityType.USER, ChangeType.CREATED, "u9", user("u9", "zed")),
            EntityChange(EntityType.MEMBERSHIP, ChangeType.DELETED, "m2"),
        ])

        task = await manager.start_incremental_sync(scope, task_config(source=False))
        task = await manager.wait_for_task(task.id, timeout=10)

        assert task.status == TaskStatus.COMPLETED
        view = factory.target.view()
        assert view.users["u9"].username == "zed"
        assert "m2" not in view.memberships
        assert store.change_records.list_unprocessed(scope) == []

    @pytest.mark.asyncio
    async def test_pushed_change_breaking_invariants_fails(self, manager, scope):
        await run_full(manager, scope)
        manager.ingest_changes(scope, [
            EntityChange(EntityType.USER, ChangeType.CREATED, "u9", user("u9", "alice")),
        ])

        task = manager.create_task(scope, TaskType.INCREMENTAL, task_config(source=False))
        task = await manager.run_task(task.id)

        assert task.status == TaskStatus.FAILED
        assert task.error["code"] == "SOURCE_SCHEMA_ERROR"


class FreshTargetFactory(StubFactory):
    """Builds a new target through the registered factory for every run."""

    def __init__(self, source=None):
        super().__init__(source)
        self.targets = []
        self.prepare = None

    def create_target(self, config):
        self.target = ConnectorFactory.create_target(config)
        self.targets.append(self.target)
        if self.prepare is not None:
            self.prepare(self.target)
            self.prepare = None
        return self.target


def fresh_manager(store, locks):
    factory = FreshTargetFactory()
    return TaskManager(store, connector_factory=factory, lock_manager=locks, sync_settings=SyncSettings()), factory


def directory_state(view):
    return {
        entity_type.value: {entity_id: e.content_hash() for entity_id, e in view.of_type(entity_type).items()}
        for entity_type in EntityType
    }


@pytest.fixture
def feed():
    """Entities served by a registered custom source."""
    entities = list(sample_directory())
    CustomSourceRegistry.register(
        "directory-feed",
        lambda entity_types, filter, options: Snapshot.from_entities(entities),
    )
    yield entities
    CustomSourceRegistry.unregister("directory-feed")


class TestFreshTargets:
    """Every task builds its own target, as in production."""

    @pytest.mark.asyncio
    async def test_incremental_on_new_target_creates_updates_and_deletes(self, feed, store, locks, scope):
        manager = TaskManager(store, lock_manager=locks, sync_settings=SyncSettings())
        config = task_config(source=False)
        config.source = {"type": "custom", "handler": "directory-feed"}
        full = manager.create_task(scope, TaskType.FULL, config)
        assert (await manager.run_task(full.id)).status == TaskStatus.COMPLETED
        manager.ingest_changes(scope, [
            EntityChange(EntityType.USER, ChangeType.CREATED, "u9", user("u9", "zed")),
            EntityChange(EntityType.USER, ChangeType.UPDATED, "u1", user("u1", "alice", email="alice@new.example.com")),
            EntityChange(EntityType.MEMBERSHIP, ChangeType.DELETED, "m2"),
        ])

        task = manager.create_task(scope, TaskType.INCREMENTAL, task_config(source=False))
        task = await manager.run_task(task.id)

        assert task.status == TaskStatus.COMPLETED
        operations = {(op.entity_id, op.operation_type.value) for op in manager.list_operations(task.id)}
        assert operations == {("u9", "create"), ("u1", "update"), ("m2", "delete")}
        assert task.result["collected"]["counts"] == {"create": 1, "update": 1, "delete": 1}
        known = store.known_target_state(scope)
        assert known.users["u1"].email == "alice@new.example.com"
        assert "u9" in known.users
        assert "m2" not in known.memberships

    @pytest.mark.asyncio
    async def test_incremental_without_changes_is_empty(self, store, locks, scope):
        manager, factory = fresh_manager(store, locks)
        await run_full(manager, scope)
        factory.source.changes.cursor = "c-2"

        task = manager.create_task(scope, TaskType.INCREMENTAL, task_config())
        task = await manager.run_task(task.id)

        assert task.status == TaskStatus.COMPLETED
        assert task.result["total_operations"] == 0
        assert len(factory.targets) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", ["batch", "queue"])
    async def test_cancel_and_resume_matches_single_pass(self, store, locks, scope, other_scope, strategy):
        reference, reference_factory = fresh_manager(store, locks)
        done = await asyncio.wait_for(run_full(reference, other_scope, strategy=strategy), timeout=10)
        assert done.status == TaskStatus.COMPLETED

        manager, factory = fresh_manager(store, locks)
        task = manager.create_task(scope, TaskType.FULL, task_config(strategy=strategy))
        factory.prepare = lambda target: cancel_after_first_operation(manager, target, task.id)
        paused = await asyncio.wait_for(manager.run_task(task.id), timeout=10)

        assert paused.status == TaskStatus.PAUSED
        completed = manager.list_operations(task.id, status=OperationStatus.COMPLETED)
        assert 0 < len(completed) < 8
        assert paused.checkpoint["last_operation_id"] in {op.id for op in completed}

        resumed = await asyncio.wait_for(manager.resume_task(task.id, background=False), timeout=10)

        assert resumed.status == TaskStatus.COMPLETED
        assert len(factory.targets) == 2
        assert resumed.result["collected"]["counts"] == {"create": 8}
        assert directory_state(factory.target.view()) == directory_state(reference_factory.target.view())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", ["batch", "queue"])
    async def test_crash_recovery_matches_single_pass(self, store, locks, scope, other_scope, strategy):
        reference, reference_factory = fresh_manager(store, locks)
        await asyncio.wait_for(run_full(reference, other_scope, strategy=strategy), timeout=10)

        manager, factory = fresh_manager(store, locks)
        task = manager.create_task(scope, TaskType.FULL, task_config(strategy=strategy))
        factory.prepare = lambda target: cancel_after_first_operation(manager, target, task.id)
        await asyncio.wait_for(manager.run_task(task.id), timeout=10)
        store.tasks.transition(task.id, [TaskStatus.PAUSED], TaskStatus.RUNNING)

        restarted = TaskManager(store, connector_factory=factory, lock_manager=locks, sync_settings=SyncSettings())
        outcome = await asyncio.wait_for(restarted.recover_interrupted_tasks(background=False), timeout=10)

        assert outcome["resumed"] == [task.id]
        assert restarted.get_task(task.id).status == TaskStatus.COMPLETED
        assert directory_state(factory.target.view()) == directory_state(reference_factory.target.view())


class TestChangeRecordLifecycle:
    """Change records are consumed only by tasks that complete."""

    @pytest.mark.asyncio
    async def test_failed_task_keeps_records_for_the_next_one(self, manager, factory, store, scope):
        await run_full(manager, scope)
        manager.ingest_changes(scope, [EntityChange(EntityType.USER, ChangeType.CREATED, "u9", user("u9", "zed"))])
        factory.target.fetch_current = AsyncMock(side_effect=TargetRejected("target unavailable"))

        failed = manager.create_task(scope, TaskType.INCREMENTAL, task_config(source=False))
        failed = await manager.run_task(failed.id)

        assert failed.status == TaskStatus.FAILED
        assert [r.entity_id for r in store.change_records.list_unprocessed(scope)] == ["u9"]

        del factory.target.fetch_current
        task = manager.create_task(scope, TaskType.INCREMENTAL, task_config(source=False))
        task = await manager.run_task(task.id)

        assert task.status == TaskStatus.COMPLETED
        assert [(op.entity_id, op.operation_type.value) for op in manager.list_operations(task.id)] == [("u9", "create")]
        assert factory.target.view().users["u9"].username == "zed"
        assert store.change_records.list_unprocessed(scope) == []

    @pytest.mark.asyncio
    async def test_failed_operations_keep_records_until_replayed(self, manager, factory, store, scope):
        await run_full(manager, scope)
        manager.ingest_changes(scope, [EntityChange(EntityType.USER, ChangeType.CREATED, "u9", user("u9", "zed"))])
        state = reject_entity(factory.target, "u9")

        task = manager.create_task(scope, TaskType.INCREMENTAL, task_config(source=False))
        task = await manager.run_task(task.id)

        assert task.error["code"] == "OPERATIONS_FAILED"
        assert len(store.change_records.list_unprocessed(scope)) == 1

        state["fixed"] = True
        await manager.replay_operation(task.error["context"]["failed_operation_ids"][0], scope=scope)

        assert manager.get_task(task.id).status == TaskStatus.COMPLETED
        assert store.change_records.list_unprocessed(scope) == []

    @pytest.mark.asyncio
    async def test_full_sync_settles_pending_records(self, manager, store, scope):
        manager.ingest_changes(scope, [
            EntityChange(EntityType.USER, ChangeType.UPDATED, "u1", user("u1", "alice", email="stale@example.com")),
        ])

        task = await run_full(manager, scope)

        assert task.status == TaskStatus.COMPLETED
        assert store.change_records.list_unprocessed(scope) == []
        assert store.users.get(scope, "u1").email == "alice@example.com"


# ============================================================================
# Failures, replay and conflicts
# ============================================================================

class TestFailureAndReplay:
    @pytest.mark.asyncio
    async def test_failed_operations_fail_task_and_replay_completes_it(self, manager, factory, scope):
        state = reject_entity(factory.target, "u2")

        task = await run_full(manager, scope)

        assert task.status == TaskStatus.FAILED
        assert task.error["code"] == "OPERATIONS_FAILED"
        failed_ids = task.error["context"]["failed_operation_ids"]
        assert len(failed_ids) == 1
        assert (task.result["operations"]["completed"], task.result["operations"]["failed"]) == (7, 1)

        state["fixed"] = True
        record = await manager.replay_operation(failed_ids[0], scope=scope)

        assert record.status == OperationStatus.COMPLETED
        assert record.attempts == 1
        task = manager.get_task(task.id)
        assert task.status == TaskStatus.COMPLETED
        assert task.error is None
        assert task.result["operations"]["completed"] == 8
        assert "u2" in factory.target.view().users

    @pytest.mark.asyncio
    async def test_replay_rejects_operations_that_did_not_fail(self, manager, scope):
        task = await run_full(manager, scope)
        op = manager.list_operations(task.id)[0]

        with pytest.raises(InvalidTaskState):
            await manager.replay_operation(op.id)

    @pytest.mark.asyncio
    async def test_store_error_in_queued_run_fails_task(self, manager, store, scope):
        real_complete = store.operations.complete
        broken = []

        def complete(operation_id, result):
            if not broken:
                broken.append(operation_id)
                raise RuntimeError("connection reset")
            return real_complete(operation_id, result)

        store.operations.complete = complete

        task = await asyncio.wait_for(run_full(manager, scope, strategy="queue"), timeout=10)

        assert task.status == TaskStatus.FAILED
        assert task.error["code"] == "INTERNAL_ERROR"
        assert store.operations.get(broken[0]).status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_stop_on_error(self, manager, factory, scope):
        reject_entity(factory.target, "root")
        config = task_config()
        config.strategy.stop_on_error = True
        task = manager.create_task(scope, TaskType.FULL, config)

        task = await manager.run_task(task.id)

        assert task.status == TaskStatus.FAILED
        assert task.result["execution"]["stopped_on_error"] is True
        assert task.result["operations"]["pending"] == 7


class TestConflicts:
    """Both sides changed since the last push."""

    async def _diverge(self, manager, factory, scope):
        await run_full(manager, scope)
        await asyncio.sleep(0.01)
        await factory.target.update(EntityType.USER, "u1", {"email": "target@example.com"})
        factory.source.entities = [
            user("u1", "alice", email="source@example.com", source_updated_at=utcnow() + timedelta(minutes=1))
            if e.id == "u1" else e
            for e in sample_directory()
        ]

    @pytest.mark.asyncio
    async def test_manual_policy_blocks_until_resolved(self, manager, factory, scope):
        await self._diverge(manager, factory, scope)

        task = await run_full(manager, scope, conflict_policy=ConflictStrategy.MANUAL)

        assert task.status == TaskStatus.COMPLETED
        assert task.result["operations"]["blocked"] == 1
        assert task.result["warnings"][0]["code"] == "CONFLICT_UNRESOLVED"
        conflicts, total = manager.list_conflicts(scope, status=ConflictStatus.PENDING)
        assert total == 1
        assert factory.target.view().users["u1"].email == "target@example.com"

        outcome = await manager.resolve_conflict(conflicts[0].id, ConflictResolution.SOURCE, notes="source is right")

        assert outcome["conflict"]["status"] == "resolved"
        assert outcome["operation"]["status"] == "completed"
        assert factory.target.view().users["u1"].email == "source@example.com"
        assert manager.get_task(task.id).result["operations"]["completed"] == 1

    @pytest.mark.asyncio
    async def test_resolving_for_target_skips_operation(self, manager, factory, scope):
        await self._diverge(manager, factory, scope)
        await run_full(manager, scope, conflict_policy=ConflictStrategy.MANUAL)
        conflicts, _ = manager.list_conflicts(scope)

        outcome = await manager.resolve_conflict(conflicts[0].id, ConflictResolution.TARGET)

        assert outcome["operation"]["status"] == "skipped"
        assert factory.target.view().users["u1"].email == "target@example.com"
        with pytest.raises(InvalidTaskState):
            await manager.resolve_conflict(conflicts[0].id, ConflictResolution.SOURCE)

    @pytest.mark.asyncio
    async def test_target_wins_policy(self, manager, factory, scope):
        await self._diverge(manager, factory, scope)

        task = await run_full(manager, scope, conflict_policy=ConflictStrategy.TARGET_WINS)

        assert task.result["operations"]["skipped"] == 1
        conflicts, _ = manager.list_conflicts(scope, status=ConflictStatus.RESOLVED)
        assert conflicts[0].resolution == ConflictResolution.TARGET


# ============================================================================
# Cancellation, resume and recovery
# ============================================================================

def cancel_after_first_operation(manager, target, task_id):
    original = target.apply
    cancelled = []

    async def apply(*args, **kwargs):
        result = await original(*args, **kwargs)
        if not cancelled:
            cancelled.append(True)
            await manager.cancel_task(task_id)
        return result

    target.apply = apply


class TestCancelResume:
    @pytest.mark.asyncio
    async def test_cancel_pending_task(self, manager, scope):
        task = manager.create_task(scope, TaskType.FULL, task_config())

        paused = await manager.cancel_task(task.id)

        assert paused.status == TaskStatus.PAUSED
        with pytest.raises(InvalidTaskState):
            await manager.cancel_task(task.id)

    @pytest.mark.asyncio
    async def test_cancel_running_task_then_resume(self, manager, factory, scope):
        task = manager.create_task(scope, TaskType.FULL, task_config(strategy="realtime"))
        cancel_after_first_operation(manager, factory.target, task.id)

        paused = await manager.run_task(task.id)

        assert paused.status == TaskStatus.PAUSED
        assert paused.checkpoint["step"] == "plan"
        assert paused.checkpoint["last_operation_id"] is not None
        assert len(manager.list_operations(task.id, status=OperationStatus.COMPLETED)) == 1

        resumed = await manager.resume_task(task.id, background=False)

        assert resumed.status == TaskStatus.COMPLETED
        assert resumed.result["collected"]["counts"] == {"create": 8}
        assert len(factory.target.operations) == 8
        assert set(factory.target.view().users) == {"u1", "u2"}

    @pytest.mark.asyncio
    async def test_resume_requires_paused_task(self, manager, scope):
        task = await run_full(manager, scope)
        with pytest.raises(InvalidTaskState):
            await manager.resume_task(task.id)

    @pytest.mark.asyncio
    async def test_scope_isolation(self, manager, scope, other_scope):
        task = manager.create_task(scope, TaskType.FULL, task_config())
        with pytest.raises(TaskNotFound):
            manager.get_task(task.id, scope=other_scope)
        with pytest.raises(TaskNotFound):
            await manager.cancel_task(task.id, scope=other_scope)


class TestRecovery:
    """Tasks left running by a crashed process."""

    @pytest.mark.asyncio
    async def test_resumable_task_is_continued(self, manager, factory, store, locks, scope):
        task = manager.create_task(scope, TaskType.FULL, task_config(strategy="realtime"))
        cancel_after_first_operation(manager, factory.target, task.id)
        await manager.run_task(task.id)
        store.tasks.transition(task.id, [TaskStatus.PAUSED], TaskStatus.RUNNING)

        restarted = TaskManager(store, connector_factory=factory, lock_manager=locks, sync_settings=SyncSettings())
        outcome = await restarted.recover_interrupted_tasks(background=False)

        assert outcome == {"resumed": [task.id], "paused": []}
        assert restarted.get_task(task.id).status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_task_without_checkpoint_needs_manual_recovery(self, manager, store, scope):
        task = manager.create_task(scope, TaskType.FULL, task_config())
        store.tasks.transition(task.id, [TaskStatus.PENDING], TaskStatus.RUNNING)

        outcome = await manager.recover_interrupted_tasks(background=False)

        assert outcome == {"resumed": [], "paused": [task.id]}
        assert manager.get_task(task.id).status == TaskStatus.PAUSED
        events = manager.event_manager.query_events([EventType.TASK_RECOVERY_REQUIRED], correlation_id=task.id)
        assert events[0].data["reason"] == "no checkpoint"

    def test_is_resumable_checks(self, manager, store, scope):
        task = manager.create_task(scope, TaskType.FULL, task_config())

        store.tasks.update(task.id, checkpoint={
            "step": "plan",
            "updated_at": (utcnow() - timedelta(hours=2)).isoformat(),
            "operation_count": 8,
        })
        assert manager.is_resumable(store.tasks.get(task.id)) == (False, "checkpoint too old")

        store.tasks.update(task.id, checkpoint={
            "step": "plan",
            "updated_at": utcnow().isoformat(),
            "operation_count": 8,
        })
        assert manager.is_resumable(store.tasks.get(task.id)) == (False, "operation records missing")

        store.tasks.update(task.id, checkpoint={"step": "fetch", "updated_at": utcnow().isoformat()})
        assert manager.is_resumable(store.tasks.get(task.id)) == (True, "")


# ============================================================================
# Locks and queries
# ============================================================================

class TestLocking:
    @pytest.mark.asyncio
    async def test_held_entity_type_lock_fails_task(self, manager, factory, locks, scope):
        await locks.try_acquire(lock_key(EntityType.USER, scope), "task:other", 60)

        task = await run_full(manager, scope)

        assert task.status == TaskStatus.FAILED
        assert task.error["code"] == "LOCK_CONTENTION"
        assert factory.target.call_count == 0
        assert await locks.try_acquire(lock_key(EntityType.ORGANIZATION, scope), "task:other-run", 60)

    @pytest.mark.asyncio
    async def test_locks_are_released_after_run(self, manager, locks, scope):
        await run_full(manager, scope)
        for entity_type in EntityType:
            assert await locks.try_acquire(lock_key(entity_type, scope), "task:next", 60)


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_statistics_and_cleanup(self, manager, store, scope):
        first = await run_full(manager, scope)
        manager.create_task(scope, TaskType.INCREMENTAL, task_config())

        tasks, total = manager.list_tasks(scope, task_type=TaskType.FULL)
        assert total == 1
        assert tasks[0].id == first.id

        stats = manager.get_statistics(scope)
        assert stats["total"] == 2
        assert stats["by_status"]["completed"] == 1
        assert stats["success_rate"] == 1.0

        store.tasks.update(first.id, created_at=utcnow() - timedelta(days=40))
        assert manager.cleanup_old_tasks(days=30) == 1
        with pytest.raises(TaskNotFound):
            manager.get_task(first.id)
