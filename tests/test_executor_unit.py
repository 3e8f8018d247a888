"""
Unit tests for the operation executor.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from dirsync.sync.connectors import CollectingTargetConnector
from dirsync.sync.entities import EntityType, OperationType
from dirsync.sync.errors import OperationNotFound, TargetRejected
from dirsync.sync.models import OperationStatus
from dirsync.sync.orchestrator import EventManager, EventType
from dirsync.sync.scheduler import ExecutionOutcome, OperationExecutor
from dirsync.sync.store import OperationRecord
from dirsync.utils.retry import RetryConfig

from conftest import entity_set, user

NO_JITTER = RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0, jitter=False)


def add_user_create(store, scope, op_id="op-1", user_id="u1", task_id="task-1"):
    store.operations.add_all([OperationRecord(
        id=op_id,
        task_id=task_id,
        scope=scope,
        entity_type=EntityType.USER,
        entity_id=user_id,
        operation_type=OperationType.CREATE,
        data={"payload": {"id": user_id, "username": f"name-{user_id}"}, "previous": None},
    )])


class TestExecute:
    """Dispatch and idempotence."""

    @pytest.mark.asyncio
    async def test_success_completes_and_marks_synced(self, store, scope):
        store.apply_snapshot(scope, entity_set(user("u1", "name-u1")))
        add_user_create(store, scope)
        target = CollectingTargetConnector()
        executor = OperationExecutor(store, target, retry_config=NO_JITTER, worker_id="w1")

        outcome = await executor.execute("op-1")

        assert outcome.outcome == ExecutionOutcome.COMPLETED
        assert outcome.done
        assert outcome.record.status == OperationStatus.COMPLETED
        assert outcome.record.result["status"] == "created"
        assert outcome.record.worker_id == "w1"
        assert store.users.get(scope, "u1").synced is True
        assert target.view().users["u1"].username == "name-u1"
        assert store.known_target_state(scope).users["u1"].username == "name-u1"

    @pytest.mark.asyncio
    async def test_delete_clears_known_target_state(self, store, scope):
        store.apply_snapshot(scope, entity_set(user("u1", "name-u1")))
        add_user_create(store, scope)
        store.operations.add_all([OperationRecord(
            id="op-2",
            task_id="task-1",
            scope=scope,
            entity_type=EntityType.USER,
            entity_id="u1",
            operation_type=OperationType.DELETE,
            data={"payload": None, "previous": {"id": "u1", "username": "name-u1"}},
            sequence=1,
        )])
        executor = OperationExecutor(store, CollectingTargetConnector(), retry_config=NO_JITTER)

        await executor.execute("op-1")
        await executor.execute("op-2")

        assert "u1" not in store.known_target_state(scope).users

    @pytest.mark.asyncio
    async def test_completed_operation_is_not_dispatched_again(self, store, scope):
        add_user_create(store, scope)
        target = CollectingTargetConnector()
        executor = OperationExecutor(store, target, retry_config=NO_JITTER)

        await executor.execute("op-1")
        second = await executor.execute("op-1")

        assert second.outcome == ExecutionOutcome.ALREADY_COMPLETED
        assert target.call_count == 1

    @pytest.mark.asyncio
    async def test_claimed_operation_is_skipped(self, store, scope):
        add_user_create(store, scope)
        store.operations.claim("op-1", "other-worker")
        target = CollectingTargetConnector()

        outcome = await OperationExecutor(store, target).execute("op-1")

        assert outcome.outcome == ExecutionOutcome.ALREADY_CLAIMED
        assert not outcome.done
        assert target.call_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [OperationStatus.SKIPPED, OperationStatus.BLOCKED])
    async def test_skipped_and_blocked_are_not_dispatched(self, store, scope, status):
        add_user_create(store, scope)
        store.operations.set_status("op-1", status)
        target = CollectingTargetConnector()

        outcome = await OperationExecutor(store, target).execute("op-1")

        assert outcome.outcome == ExecutionOutcome.NOT_DISPATCHED
        assert target.call_count == 0

    @pytest.mark.asyncio
    async def test_unknown_operation(self, store):
        with pytest.raises(OperationNotFound):
            await OperationExecutor(store, CollectingTargetConnector()).execute("missing")

    @pytest.mark.asyncio
    async def test_concurrent_execution_dispatches_once(self, store, scope):
        add_user_create(store, scope)
        target = CollectingTargetConnector()
        executors = [OperationExecutor(store, target, worker_id=f"w{i}") for i in range(3)]

        outcomes = await asyncio.gather(*(e.execute("op-1") for e in executors))

        completed = [o for o in outcomes if o.outcome == ExecutionOutcome.COMPLETED]
        assert len(completed) == 1
        assert target.call_count == 1


class TestFailures:
    """Retry scheduling and permanent failure."""

    @pytest.mark.asyncio
    async def test_retryable_failure_schedules_retry(self, store, scope):
        add_user_create(store, scope)
        target = CollectingTargetConnector()
        target.apply = AsyncMock(side_effect=TargetRejected("503 from target"))
        executor = OperationExecutor(store, target, retry_config=NO_JITTER)

        outcome = await executor.execute("op-1")

        assert outcome.outcome == ExecutionOutcome.RETRY_SCHEDULED
        assert outcome.retry_delay == 0.5
        record = store.operations.get("op-1")
        assert record.status == OperationStatus.PENDING
        assert record.attempts == 1
        assert record.next_attempt_at is not None
        assert record.error["code"] == "TARGET_REJECTED"
        assert record.error["attempt"] == 1

    @pytest.mark.asyncio
    async def test_backoff_grows_with_attempts(self, store, scope):
        add_user_create(store, scope)
        target = CollectingTargetConnector()
        target.apply = AsyncMock(side_effect=TargetRejected("busy"))
        executor = OperationExecutor(store, target, retry_config=NO_JITTER)

        first = await executor.execute("op-1")
        second = await executor.execute("op-1")

        assert (first.retry_delay, second.retry_delay) == (0.5, 1.0)

    @pytest.mark.asyncio
    async def test_attempt_cap_fails_permanently_and_publishes(self, store, scope):
        add_user_create(store, scope)
        events = EventManager()
        target = CollectingTargetConnector()
        target.apply = AsyncMock(side_effect=TargetRejected("still down"))
        executor = OperationExecutor(store, target, events, retry_config=NO_JITTER)

        outcomes = [await executor.execute("op-1") for _ in range(3)]

        assert [o.outcome for o in outcomes] == [
            ExecutionOutcome.RETRY_SCHEDULED,
            ExecutionOutcome.RETRY_SCHEDULED,
            ExecutionOutcome.FAILED,
        ]
        assert outcomes[-1].permanently_failed
        assert store.operations.get("op-1").status == OperationStatus.FAILED
        failed = events.query_events([EventType.OPERATION_FAILED], correlation_id="task-1")
        assert len(failed) == 1
        assert failed[0].data["attempts"] == 3

    @pytest.mark.asyncio
    async def test_permanent_rejection_fails_at_once(self, store, scope):
        add_user_create(store, scope)
        target = CollectingTargetConnector()
        target.apply = AsyncMock(side_effect=TargetRejected("422", permanent=True, status_code=422))

        outcome = await OperationExecutor(store, target, retry_config=NO_JITTER).execute("op-1")

        assert outcome.outcome == ExecutionOutcome.FAILED
        assert store.operations.get("op-1").attempts == 1

    @pytest.mark.asyncio
    async def test_programming_error_is_not_retried(self, store, scope):
        add_user_create(store, scope)
        target = CollectingTargetConnector()
        target.apply = AsyncMock(side_effect=KeyError("id"))

        outcome = await OperationExecutor(store, target, retry_config=NO_JITTER).execute("op-1")

        assert outcome.outcome == ExecutionOutcome.FAILED
        assert outcome.error["code"] == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, store, scope):
        add_user_create(store, scope)
        target = CollectingTargetConnector()

        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        target.apply = hang
        executor = OperationExecutor(store, target, retry_config=NO_JITTER, operation_timeout=0.05)

        outcome = await executor.execute("op-1")

        assert outcome.outcome == ExecutionOutcome.RETRY_SCHEDULED
        assert "timed out" in outcome.error["message"]

    @pytest.mark.asyncio
    async def test_retry_after_failure_succeeds(self, store, scope):
        add_user_create(store, scope)
        target = CollectingTargetConnector()
        real_apply = target.apply

        async def flaky(*args, **kwargs):
            if not flaky.failed:
                flaky.failed = True
                raise TargetRejected("blip")
            return await real_apply(*args, **kwargs)

        flaky.failed = False
        target.apply = flaky
        executor = OperationExecutor(store, target, retry_config=NO_JITTER)

        await executor.execute("op-1")
        outcome = await executor.execute("op-1")

        assert outcome.outcome == ExecutionOutcome.COMPLETED
        assert outcome.record.attempts == 2
        assert outcome.record.error is None
