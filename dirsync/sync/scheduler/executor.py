"""
Operation Executor.

Executes single persisted operations against a target adapter with an
atomic claim, a per-call timeout and attempt accounting. Every strategy
dispatches through this executor.
"""

import asyncio
import logging
import os
import socket
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from dirsync.sync.connectors.base import BaseTargetConnector
from dirsync.sync.entities import OperationType, utcnow
from dirsync.sync.errors import OperationNotFound, SyncError, TargetRejected
from dirsync.sync.models import OperationStatus
from dirsync.sync.orchestrator.event_manager import EventManager, EventPriority, EventType
from dirsync.sync.store import IntermediateStore, OperationRecord
from dirsync.utils.retry import RetryConfig, is_retryable

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:6]}"


class ExecutionOutcome(str, Enum):
    """Result of one execute call."""
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"
    ALREADY_CLAIMED = "already_claimed"
    NOT_DISPATCHED = "not_dispatched"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


@dataclass
class OperationOutcome:
    """Outcome of executing one operation."""
    operation_id: str
    outcome: ExecutionOutcome
    record: Optional[OperationRecord] = None
    error: Optional[Dict[str, Any]] = None
    retry_delay: Optional[float] = None

    @property
    def done(self) -> bool:
        """True when no further dispatch of this operation is expected."""
        return self.outcome in (
            ExecutionOutcome.COMPLETED,
            ExecutionOutcome.ALREADY_COMPLETED,
            ExecutionOutcome.NOT_DISPATCHED,
            ExecutionOutcome.FAILED,
        )

    @property
    def permanently_failed(self) -> bool:
        return self.outcome == ExecutionOutcome.FAILED


def error_payload(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, SyncError):
        return exc.to_dict()
    return {"code": "INTERNAL_ERROR", "message": str(exc) or type(exc).__name__, "context": {}}


class OperationExecutor:
    """
    Operation Executor.

    Features:
    - Completed records are returned without calling the target
    - Atomic claim so concurrent workers never double-dispatch
    - Per-call timeout, treated as a retryable failure
    - Backoff scheduling below the attempt cap
    - operation.failed events for permanent failures
    """

    def __init__(
        self,
        store: IntermediateStore,
        target: BaseTargetConnector,
        event_manager: Optional[EventManager] = None,
        retry_config: Optional[RetryConfig] = None,
        operation_timeout: float = 30.0,
        worker_id: Optional[str] = None
    ):
        """
        Initialize executor.

        Args:
            store: Intermediate store holding the operation records
            target: Target adapter to dispatch to
            event_manager: Receives operation.failed events
            retry_config: Attempt cap and backoff
            operation_timeout: Per-call timeout in seconds
            worker_id: Claim owner recorded on the operation
        """
        self.store = store
        self.target = target
        self.event_manager = event_manager
        self.retry_config = retry_config or RetryConfig()
        self.operation_timeout = operation_timeout
        self.worker_id = worker_id or default_worker_id()

    @property
    def max_attempts(self) -> int:
        return self.retry_config.max_attempts

    async def execute(self, operation_id: str, worker_id: Optional[str] = None) -> OperationOutcome:
        """
        Execute one operation.

        Args:
            operation_id: Operation record id
            worker_id: Claim owner, defaults to the executor's

        Returns:
            OperationOutcome

        Raises:
            OperationNotFound: If no such record exists
        """
        operations = self.store.operations
        record = operations.get(operation_id)
        if record is None:
            raise OperationNotFound(f"Operation not found: {operation_id}", context={"operation_id": operation_id})

        if record.status == OperationStatus.COMPLETED:
            return OperationOutcome(operation_id, ExecutionOutcome.ALREADY_COMPLETED, record)
        if record.status in (OperationStatus.SKIPPED, OperationStatus.BLOCKED):
            return OperationOutcome(operation_id, ExecutionOutcome.NOT_DISPATCHED, record)

        if not operations.claim(operation_id, worker_id or self.worker_id):
            logger.debug(f"Operation {operation_id} already claimed")
            return OperationOutcome(operation_id, ExecutionOutcome.ALREADY_CLAIMED, operations.get(operation_id))

        record = operations.get(operation_id)
        payload = record.data.get("payload") or {}

        try:
            result = await asyncio.wait_for(
                self.target.apply(
                    record.entity_type,
                    record.operation_type,
                    record.entity_id,
                    payload,
                    operation_id=operation_id,
                ),
                timeout=self.operation_timeout
            )
        except asyncio.TimeoutError:
            exc = TargetRejected(
                f"Target call timed out after {self.operation_timeout}s",
                context={"operation_id": operation_id}
            )
            return await self._handle_failure(record, exc)
        except Exception as e:
            return await self._handle_failure(record, e)

        if not isinstance(result, dict):
            result = {"result": result}
        operations.complete(operation_id, result)
        self.store.mark_synced(
            record.scope,
            record.entity_type,
            record.entity_id,
            payload=None if record.operation_type == OperationType.DELETE else payload
        )
        logger.debug(
            f"Operation {operation_id} completed: {record.operation_type.value} "
            f"{record.entity_type.value} {record.entity_id}"
        )
        return OperationOutcome(operation_id, ExecutionOutcome.COMPLETED, operations.get(operation_id))

    async def _handle_failure(self, record: OperationRecord, exc: BaseException) -> OperationOutcome:
        operations = self.store.operations
        error = error_payload(exc)
        error["attempt"] = record.attempts

        if is_retryable(exc) and record.attempts < self.max_attempts:
            delay = self.retry_config.calculate_delay(record.attempts - 1)
            operations.release_for_retry(record.id, error, utcnow() + timedelta(seconds=delay))
            logger.warning(
                f"Operation {record.id} attempt {record.attempts} failed: {error['message']}. "
                f"Retrying in {delay:.2f} seconds"
            )
            return OperationOutcome(record.id, ExecutionOutcome.RETRY_SCHEDULED, operations.get(record.id), error, delay)

        operations.fail(record.id, error)
        logger.error(
            f"Operation {record.id} failed permanently after {record.attempts} attempts: {error['message']}"
        )
        if self.event_manager is not None:
            await self.event_manager.publish(
                EventType.OPERATION_FAILED,
                source="operation_executor",
                data={
                    "operation_id": record.id,
                    "entity_type": record.entity_type.value,
                    "entity_id": record.entity_id,
                    "operation_type": record.operation_type.value,
                    "attempts": record.attempts,
                    "error": error,
                },
                priority=EventPriority.HIGH,
                correlation_id=record.task_id,
                tenant=record.scope.key,
            )
        return OperationOutcome(record.id, ExecutionOutcome.FAILED, operations.get(record.id), error)
