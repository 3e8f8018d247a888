"""
Conflict Resolver.

Detects entities changed on both sides since their last successful push
and decides, per policy, whether the planned operation proceeds.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from dirsync.sync.diff.engine import PlannedOperation
from dirsync.sync.entities import EntitySet, OperationType, Scope, utcnow
from dirsync.sync.models import ConflictResolution, ConflictStatus, ConflictStrategy, OperationStatus
from dirsync.sync.orchestrator.event_manager import EventManager, EventPriority, EventType
from dirsync.sync.store.base import ConflictRecord, ConflictStore

logger = logging.getLogger(__name__)

_CHECKED_OPERATIONS = {
    OperationType.UPDATE,
    OperationType.MOVE,
    OperationType.RENAME,
    OperationType.DELETE,
}


def conflict_id(operation_id: str) -> str:
    return hashlib.sha1(f"conflict:{operation_id}".encode()).hexdigest()


@dataclass
class ConflictDecision:
    """Outcome for one conflicting operation."""
    operation_id: str
    status: OperationStatus
    resolution: Optional[ConflictResolution]
    source_updated_at: datetime
    target_updated_at: datetime


class ConflictResolver:
    """
    Conflict Resolver.

    An update, move, rename or delete is in conflict when the local entity
    was pushed before and both the source and the target changed it since.
    """

    def __init__(
        self,
        conflict_store: ConflictStore,
        event_manager: Optional[EventManager] = None,
        strategy: ConflictStrategy = ConflictStrategy.SOURCE_WINS
    ):
        self.conflict_store = conflict_store
        self.event_manager = event_manager
        self.strategy = ConflictStrategy(strategy)

    @staticmethod
    def decide(
        strategy: ConflictStrategy,
        source_updated_at: datetime,
        target_updated_at: datetime,
        operation_id: str = ""
    ) -> ConflictDecision:
        """Operation status and automatic resolution for a detected conflict."""
        if strategy == ConflictStrategy.SOURCE_WINS:
            status, resolution = OperationStatus.PENDING, ConflictResolution.SOURCE
        elif strategy == ConflictStrategy.TARGET_WINS:
            status, resolution = OperationStatus.SKIPPED, ConflictResolution.TARGET
        elif strategy == ConflictStrategy.NEWER_WINS:
            if source_updated_at >= target_updated_at:
                status, resolution = OperationStatus.PENDING, ConflictResolution.SOURCE
            else:
                status, resolution = OperationStatus.SKIPPED, ConflictResolution.TARGET
        else:
            status, resolution = OperationStatus.BLOCKED, None
        return ConflictDecision(operation_id, status, resolution, source_updated_at, target_updated_at)

    def detect(self, op: PlannedOperation, local: EntitySet, remote: EntitySet) -> Optional[tuple]:
        """
        Check one planned operation.

        Returns:
            (source_updated_at, target_updated_at) when in conflict, else None
        """
        if op.operation_type not in _CHECKED_OPERATIONS:
            return None

        mine = local.get(op.entity_type, op.entity_id)
        theirs = remote.get(op.entity_type, op.entity_id)
        if mine is None or theirs is None or mine.synced_at is None:
            return None
        if mine.source_updated_at is None or theirs.source_updated_at is None:
            return None

        if mine.source_updated_at > mine.synced_at and theirs.source_updated_at > mine.synced_at:
            return mine.source_updated_at, theirs.source_updated_at
        return None

    async def evaluate(
        self,
        task_id: str,
        scope: Scope,
        operations: List[PlannedOperation],
        local: EntitySet,
        remote: EntitySet,
        strategy: Optional[ConflictStrategy] = None
    ) -> Dict[str, ConflictDecision]:
        """
        Detect, record and decide conflicts for a planned operation list.

        Args:
            task_id: Owning task
            scope: Tenant/project scope
            operations: Planned operations
            local: Stored source-side entities, soft-deleted included
            remote: Target-side entities
            strategy: Policy override for this task

        Returns:
            Decisions keyed by operation id, for conflicting operations only
        """
        strategy = ConflictStrategy(strategy or self.strategy)
        decisions: Dict[str, ConflictDecision] = {}

        for op in operations:
            detected = self.detect(op, local, remote)
            if detected is None:
                continue

            op_id = op.record_id(task_id)
            decision = self.decide(strategy, *detected, operation_id=op_id)
            decisions[op_id] = decision

            record = ConflictRecord(
                id=conflict_id(op_id),
                task_id=task_id,
                operation_id=op_id,
                scope=scope,
                entity_type=op.entity_type,
                entity_id=op.entity_id,
                strategy=strategy,
                source_value=op.data.get("payload"),
                target_value=op.data.get("previous"),
                source_updated_at=decision.source_updated_at,
                target_updated_at=decision.target_updated_at,
                status=ConflictStatus.PENDING if decision.resolution is None else ConflictStatus.RESOLVED,
                resolution=decision.resolution,
                resolved_at=None if decision.resolution is None else utcnow(),
            )
            self.conflict_store.add(record)

            if self.event_manager is not None:
                await self.event_manager.publish(
                    EventType.CONFLICT_DETECTED,
                    source="conflict_resolver",
                    data={
                        "conflict_id": record.id,
                        "operation_id": op_id,
                        "entity_type": op.entity_type.value,
                        "entity_id": op.entity_id,
                        "operation_type": op.operation_type.value,
                        "strategy": strategy.value,
                        "operation_status": decision.status.value,
                    },
                    priority=EventPriority.HIGH,
                    correlation_id=task_id,
                    tenant=scope.key,
                )

        if decisions:
            logger.warning(
                f"Task {task_id}: {len(decisions)} conflicts detected with strategy {strategy.value}"
            )
        return decisions
