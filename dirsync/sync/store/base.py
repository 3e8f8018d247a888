"""
Intermediate Store Interfaces.

Abstract per-entity stores for normalized directory entities and the
sync bookkeeping records (tasks, operations, conflicts, change records).
Backends return plain dataclasses, never ORM instances.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from dirsync.sync.entities import (
    ChangeType,
    Entity,
    EntityChange,
    EntityType,
    OperationType,
    Scope,
    format_datetime,
)
from dirsync.sync.models import (
    ConflictResolution,
    ConflictStatus,
    ConflictStrategy,
    OperationStatus,
    TaskStatus,
    TaskType,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Records
# ============================================================================

@dataclass
class TaskRecord:
    """Persisted sync task."""
    id: str
    scope: Scope
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    current_step: Optional[str] = None
    checkpoint: Optional[Dict[str, Any]] = None
    config: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.scope.tenant_id,
            "project_id": self.scope.project_id,
            "type": self.type.value,
            "status": self.status.value,
            "progress": self.progress,
            "current_step": self.current_step,
            "checkpoint": self.checkpoint,
            "config": self.config,
            "result": self.result,
            "error": self.error,
            "created_at": format_datetime(self.created_at),
            "started_at": format_datetime(self.started_at),
            "completed_at": format_datetime(self.completed_at),
            "updated_at": format_datetime(self.updated_at),
        }


@dataclass
class OperationRecord:
    """Persisted target operation."""
    id: str
    task_id: str
    scope: Scope
    entity_type: EntityType
    entity_id: str
    operation_type: OperationType
    data: Dict[str, Any] = field(default_factory=dict)
    status: OperationStatus = OperationStatus.PENDING
    priority: int = 0
    batch: int = 0
    sequence: int = 0
    attempts: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    worker_id: Optional[str] = None
    claimed_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "tenant_id": self.scope.tenant_id,
            "project_id": self.scope.project_id,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "operation_type": self.operation_type.value,
            "data": self.data,
            "status": self.status.value,
            "priority": self.priority,
            "batch": self.batch,
            "sequence": self.sequence,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
            "worker_id": self.worker_id,
            "claimed_at": format_datetime(self.claimed_at),
            "next_attempt_at": format_datetime(self.next_attempt_at),
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "completed_at": format_datetime(self.completed_at),
        }


@dataclass
class ConflictRecord:
    """Persisted conflict between source and target changes."""
    id: str
    task_id: str
    operation_id: str
    scope: Scope
    entity_type: EntityType
    entity_id: str
    strategy: ConflictStrategy
    source_value: Optional[Dict[str, Any]] = None
    target_value: Optional[Dict[str, Any]] = None
    source_updated_at: Optional[datetime] = None
    target_updated_at: Optional[datetime] = None
    status: ConflictStatus = ConflictStatus.PENDING
    resolution: Optional[ConflictResolution] = None
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "operation_id": self.operation_id,
            "tenant_id": self.scope.tenant_id,
            "project_id": self.scope.project_id,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "strategy": self.strategy.value,
            "source_value": self.source_value,
            "target_value": self.target_value,
            "source_updated_at": format_datetime(self.source_updated_at),
            "target_updated_at": format_datetime(self.target_updated_at),
            "status": self.status.value,
            "resolution": self.resolution.value if self.resolution else None,
            "resolved_at": format_datetime(self.resolved_at),
            "notes": self.notes,
            "created_at": format_datetime(self.created_at),
        }


@dataclass
class ChangeRecord:
    """Persisted incremental change awaiting the next incremental task."""
    id: int
    scope: Scope
    entity_type: EntityType
    entity_id: str
    change_type: ChangeType
    changed_at: Optional[datetime] = None
    payload: Optional[Dict[str, Any]] = None
    processed: bool = False
    task_id: Optional[str] = None


# ============================================================================
# Entity Stores
# ============================================================================

class EntityStore(ABC):
    """Scoped storage of one entity type."""

    entity_type: EntityType

    @abstractmethod
    def load(self, scope: Scope, include_deleted: bool = True, session=None) -> Dict[str, Entity]:
        """
        Load every entity of the scope keyed by id.

        Args:
            scope: Tenant/project scope
            include_deleted: Include soft-deleted rows
            session: Optional open session to join

        Returns:
            Dictionary of entity id to entity
        """
        pass

    @abstractmethod
    def get(self, scope: Scope, entity_id: str, session=None) -> Optional[Entity]:
        pass

    @abstractmethod
    def upsert(self, scope: Scope, entities: List[Entity], session=None) -> Dict[str, int]:
        """
        Insert or update entities.

        Unchanged entities keep their sync state; changed or revived ones
        become unsynced.

        Returns:
            Counts of inserted, updated and unchanged entities
        """
        pass

    @abstractmethod
    def soft_delete(self, scope: Scope, entity_ids: List[str], session=None) -> int:
        pass

    @abstractmethod
    def mark_synced(
        self,
        scope: Scope,
        entity_id: str,
        synced: bool = True,
        payload: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Record the outcome of pushing an entity to the target.

        Args:
            payload: Entity payload now held by the target, None once deleted there
        """
        pass

    @abstractmethod
    def synced_payloads(self, scope: Scope, session=None) -> Dict[str, Tuple[Dict[str, Any], Optional[datetime]]]:
        """Payload and push time of every entity the target is known to hold."""
        pass


class OrganizationStore(EntityStore):
    """Organization storage."""

    entity_type = EntityType.ORGANIZATION

    @abstractmethod
    def children(self, scope: Scope, parent_id: Optional[str]) -> List[Entity]:
        """Active direct children of an organization (roots for None)."""
        pass


class UserStore(EntityStore):
    """User storage."""

    entity_type = EntityType.USER

    @abstractmethod
    def find_by_username(self, scope: Scope, username: str) -> Optional[Entity]:
        pass


class MembershipStore(EntityStore):
    """Membership storage."""

    entity_type = EntityType.MEMBERSHIP

    @abstractmethod
    def for_user(self, scope: Scope, user_id: str) -> List[Entity]:
        pass


# ============================================================================
# Bookkeeping Stores
# ============================================================================

class ChangeRecordStore(ABC):
    """Incremental change record storage."""

    @abstractmethod
    def add(self, scope: Scope, changes: List[EntityChange], task_id: Optional[str] = None) -> List[int]:
        pass

    @abstractmethod
    def list_unprocessed(self, scope: Scope, limit: Optional[int] = None) -> List[ChangeRecord]:
        pass

    @abstractmethod
    def mark_processed(self, record_ids: List[int], task_id: Optional[str] = None, session=None) -> int:
        pass


class TaskStore(ABC):
    """Sync task storage."""

    @abstractmethod
    def create(self, task: TaskRecord) -> TaskRecord:
        pass

    @abstractmethod
    def get(self, task_id: str) -> Optional[TaskRecord]:
        pass

    @abstractmethod
    def update(self, task_id: str, **values) -> Optional[TaskRecord]:
        pass

    @abstractmethod
    def transition(
        self,
        task_id: str,
        from_statuses: List[TaskStatus],
        to_status: TaskStatus,
        **values
    ) -> bool:
        """
        Conditionally move a task between statuses.

        Returns:
            True if the task was in one of from_statuses and was updated
        """
        pass

    @abstractmethod
    def list(
        self,
        scope: Scope,
        task_type: Optional[TaskType] = None,
        status: Optional[TaskStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[TaskRecord], int]:
        pass

    @abstractmethod
    def find_by_status(self, status: TaskStatus) -> List[TaskRecord]:
        pass

    @abstractmethod
    def last_completed_cursor(self, scope: Scope) -> Optional[str]:
        pass

    @abstractmethod
    def statistics(self, scope: Scope, days: int = 7) -> Dict[str, Any]:
        pass

    @abstractmethod
    def find_long_running(self, threshold_seconds: int) -> List[TaskRecord]:
        pass

    @abstractmethod
    def delete_older_than(self, days: int) -> int:
        pass


class OperationStore(ABC):
    """Operation record storage."""

    @abstractmethod
    def add_all(self, records: List[OperationRecord]) -> int:
        """Insert records whose id is not stored yet; returns inserted count."""
        pass

    @abstractmethod
    def get(self, operation_id: str) -> Optional[OperationRecord]:
        pass

    @abstractmethod
    def list_for_task(
        self,
        task_id: str,
        statuses: Optional[List[OperationStatus]] = None
    ) -> List[OperationRecord]:
        """Operations of a task ordered by sequence."""
        pass

    @abstractmethod
    def claim(self, operation_id: str, worker_id: str) -> bool:
        """
        Atomically claim a pending or failed operation.

        Returns:
            True if this caller won the claim
        """
        pass

    @abstractmethod
    def complete(self, operation_id: str, result: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def release_for_retry(self, operation_id: str, error: Dict[str, Any], next_attempt_at: datetime) -> None:
        pass

    @abstractmethod
    def fail(self, operation_id: str, error: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def set_status(
        self,
        operation_id: str,
        status: OperationStatus,
        from_statuses: Optional[List[OperationStatus]] = None,
        reset_attempts: bool = False
    ) -> bool:
        pass

    @abstractmethod
    def requeue_running(self, task_id: str) -> int:
        """Return operations orphaned in running back to pending."""
        pass

    @abstractmethod
    def count_by_status(self, task_id: str) -> Dict[str, int]:
        pass


class ConflictStore(ABC):
    """Conflict record storage."""

    @abstractmethod
    def add(self, conflict: ConflictRecord) -> ConflictRecord:
        pass

    @abstractmethod
    def get(self, conflict_id: str) -> Optional[ConflictRecord]:
        pass

    @abstractmethod
    def list(
        self,
        scope: Scope,
        status: Optional[ConflictStatus] = None,
        task_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[ConflictRecord], int]:
        pass

    @abstractmethod
    def find_by_operation(self, operation_id: str) -> Optional[ConflictRecord]:
        pass

    @abstractmethod
    def resolve(
        self,
        conflict_id: str,
        resolution: ConflictResolution,
        notes: Optional[str] = None
    ) -> Optional[ConflictRecord]:
        pass
