"""
SQLAlchemy Intermediate Store.

Implements the per-entity and bookkeeping store interfaces on top of the
DatabaseManager session lifecycle. All queries are filtered by the
tenant/project scope except the task recovery scans.
"""

import copy
import logging
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select, update

from dirsync.database.connection import DatabaseManager
from dirsync.sync.entities import (
    ENTITY_CLASSES,
    ChangeType,
    Entity,
    EntityChange,
    EntitySet,
    EntityType,
    Scope,
    entity_from_dict,
    utcnow,
)
from dirsync.sync.models import (
    ChangeRecordModel,
    ConflictResolution,
    ConflictStatus,
    MembershipModel,
    OperationStatus,
    OrganizationModel,
    SyncConflictModel,
    SyncOperationModel,
    SyncTaskModel,
    TaskStatus,
    TaskType,
    UserModel,
)
from dirsync.sync.store.base import (
    ChangeRecord,
    ChangeRecordStore,
    ConflictRecord,
    ConflictStore,
    EntityStore,
    MembershipStore,
    OperationRecord,
    OperationStore,
    OrganizationStore,
    TaskRecord,
    TaskStore,
    UserStore,
)

logger = logging.getLogger(__name__)

# Keeps IN clauses under the SQLite bound-parameter limit
_CHUNK_SIZE = 500

_SYNC_STATE_FIELDS = ("synced", "synced_at")


def _chunks(items: List[Any], size: int = _CHUNK_SIZE) -> Iterator[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class _SessionMixin:
    """Joins a caller's session or opens a short-lived one."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @contextmanager
    def _session(self, session=None):
        if session is not None:
            yield session
        else:
            with self.db.get_session() as new_session:
                yield new_session


# ============================================================================
# Entity Stores
# ============================================================================

class _SQLAlchemyEntityStore(_SessionMixin):
    """Shared implementation of the entity store operations."""

    model = None
    entity_class = None

    def _scoped(self, scope: Scope):
        return select(self.model).where(
            self.model.tenant_id == scope.tenant_id,
            self.model.project_id == scope.project_id,
        )

    def _to_entity(self, row) -> Entity:
        values = {f.name: getattr(row, f.name) for f in fields(self.entity_class)}
        if "extra" in values and values["extra"] is None:
            values["extra"] = {}
        return self.entity_class(**values)

    def _assign(self, row, entity: Entity) -> None:
        for name in self.entity_class.tracked_fields:
            setattr(row, name, copy.deepcopy(getattr(entity, name)))

    def load(self, scope: Scope, include_deleted: bool = True, session=None) -> Dict[str, Entity]:
        with self._session(session) as s:
            stmt = self._scoped(scope)
            if not include_deleted:
                stmt = stmt.where(self.model.deleted.is_(False))
            return {row.id: self._to_entity(row) for row in s.scalars(stmt)}

    def get(self, scope: Scope, entity_id: str, session=None) -> Optional[Entity]:
        with self._session(session) as s:
            row = s.get(self.model, (scope.tenant_id, scope.project_id, entity_id))
            return self._to_entity(row) if row is not None else None

    def upsert(self, scope: Scope, entities: List[Entity], session=None) -> Dict[str, int]:
        counts = {"inserted": 0, "updated": 0, "unchanged": 0}
        if not entities:
            return counts

        now = utcnow()
        with self._session(session) as s:
            existing = {}
            for chunk in _chunks([e.id for e in entities]):
                for row in s.scalars(self._scoped(scope).where(self.model.id.in_(chunk))):
                    existing[row.id] = row

            for entity in entities:
                digest = entity.content_hash()
                row = existing.get(entity.id)

                if row is None:
                    row = self.model(
                        tenant_id=scope.tenant_id,
                        project_id=scope.project_id,
                        id=entity.id,
                        synced=False,
                        synced_at=None,
                    )
                    s.add(row)
                    existing[entity.id] = row
                    counts["inserted"] += 1
                elif row.content_hash == digest and row.deleted == entity.deleted:
                    counts["unchanged"] += 1
                    continue
                else:
                    counts["updated"] += 1

                self._assign(row, entity)
                row.content_hash = digest
                row.source_updated_at = entity.source_updated_at or now
                row.synced = False
                row.deleted = entity.deleted
                row.deleted_at = (entity.deleted_at or now) if entity.deleted else None

        return counts

    def soft_delete(self, scope: Scope, entity_ids: List[str], session=None) -> int:
        if not entity_ids:
            return 0

        now = utcnow()
        total = 0
        with self._session(session) as s:
            for chunk in _chunks(list(entity_ids)):
                result = s.execute(
                    update(self.model)
                    .where(
                        self.model.tenant_id == scope.tenant_id,
                        self.model.project_id == scope.project_id,
                        self.model.id.in_(chunk),
                        self.model.deleted.is_(False),
                    )
                    .values(deleted=True, deleted_at=now, synced=False, source_updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                total += result.rowcount
        return total

    def mark_synced(
        self,
        scope: Scope,
        entity_id: str,
        synced: bool = True,
        payload: Optional[Dict[str, Any]] = None
    ) -> bool:
        values: Dict[str, Any] = {"synced": synced}
        if synced:
            values["synced_at"] = utcnow()
            values["synced_payload"] = copy.deepcopy(payload)
        with self._session() as s:
            result = s.execute(
                update(self.model)
                .where(
                    self.model.tenant_id == scope.tenant_id,
                    self.model.project_id == scope.project_id,
                    self.model.id == entity_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def synced_payloads(self, scope: Scope, session=None) -> Dict[str, Tuple[Dict[str, Any], Optional[datetime]]]:
        with self._session(session) as s:
            rows = s.execute(
                select(self.model.id, self.model.synced_payload, self.model.synced_at)
                .where(
                    self.model.tenant_id == scope.tenant_id,
                    self.model.project_id == scope.project_id,
                    self.model.synced_payload.is_not(None),
                )
            )
            return {entity_id: (payload, synced_at) for entity_id, payload, synced_at in rows}


class SQLAlchemyOrganizationStore(_SQLAlchemyEntityStore, OrganizationStore):
    model = OrganizationModel
    entity_class = ENTITY_CLASSES[EntityType.ORGANIZATION]

    def children(self, scope: Scope, parent_id: Optional[str]) -> List[Entity]:
        with self._session() as s:
            stmt = self._scoped(scope).where(self.model.deleted.is_(False))
            if parent_id is None:
                stmt = stmt.where(self.model.parent_id.is_(None))
            else:
                stmt = stmt.where(self.model.parent_id == parent_id)
            stmt = stmt.order_by(self.model.sort_order, self.model.id)
            return [self._to_entity(row) for row in s.scalars(stmt)]


class SQLAlchemyUserStore(_SQLAlchemyEntityStore, UserStore):
    model = UserModel
    entity_class = ENTITY_CLASSES[EntityType.USER]

    def find_by_username(self, scope: Scope, username: str) -> Optional[Entity]:
        with self._session() as s:
            row = s.scalars(
                self._scoped(scope).where(
                    self.model.username == username,
                    self.model.deleted.is_(False),
                )
            ).first()
            return self._to_entity(row) if row is not None else None


class SQLAlchemyMembershipStore(_SQLAlchemyEntityStore, MembershipStore):
    model = MembershipModel
    entity_class = ENTITY_CLASSES[EntityType.MEMBERSHIP]

    def for_user(self, scope: Scope, user_id: str) -> List[Entity]:
        with self._session() as s:
            stmt = self._scoped(scope).where(
                self.model.user_id == user_id,
                self.model.deleted.is_(False),
            ).order_by(self.model.id)
            return [self._to_entity(row) for row in s.scalars(stmt)]


# ============================================================================
# Change Records
# ============================================================================

class SQLAlchemyChangeRecordStore(_SessionMixin, ChangeRecordStore):

    @staticmethod
    def _to_record(row: ChangeRecordModel) -> ChangeRecord:
        return ChangeRecord(
            id=row.id,
            scope=Scope(row.tenant_id, row.project_id),
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            change_type=row.change_type,
            changed_at=row.changed_at,
            payload=row.payload,
            processed=row.processed,
            task_id=row.task_id,
        )

    def add(self, scope: Scope, changes: List[EntityChange], task_id: Optional[str] = None) -> List[int]:
        rows = []
        with self._session() as s:
            for change in changes:
                row = ChangeRecordModel(
                    tenant_id=scope.tenant_id,
                    project_id=scope.project_id,
                    entity_type=change.entity_type,
                    entity_id=change.entity_id,
                    change_type=change.change_type,
                    changed_at=change.changed_at or utcnow(),
                    payload=change.entity.to_dict() if change.entity is not None else None,
                    processed=False,
                    task_id=task_id,
                )
                s.add(row)
                rows.append(row)
            s.flush()
            return [row.id for row in rows]

    def list_unprocessed(self, scope: Scope, limit: Optional[int] = None) -> List[ChangeRecord]:
        with self._session() as s:
            stmt = (
                select(ChangeRecordModel)
                .where(
                    ChangeRecordModel.tenant_id == scope.tenant_id,
                    ChangeRecordModel.project_id == scope.project_id,
                    ChangeRecordModel.processed.is_(False),
                )
                .order_by(ChangeRecordModel.id)
            )
            if limit:
                stmt = stmt.limit(limit)
            return [self._to_record(row) for row in s.scalars(stmt)]

    def mark_processed(self, record_ids: List[int], task_id: Optional[str] = None, session=None) -> int:
        if not record_ids:
            return 0
        total = 0
        now = utcnow()
        with self._session(session) as s:
            for chunk in _chunks(list(record_ids)):
                result = s.execute(
                    update(ChangeRecordModel)
                    .where(ChangeRecordModel.id.in_(chunk))
                    .values(processed=True, processed_at=now, task_id=task_id)
                    .execution_options(synchronize_session=False)
                )
                total += result.rowcount
        return total


# ============================================================================
# Tasks
# ============================================================================

class SQLAlchemyTaskStore(_SessionMixin, TaskStore):

    @staticmethod
    def _to_record(row: SyncTaskModel) -> TaskRecord:
        return TaskRecord(
            id=row.id,
            scope=Scope(row.tenant_id, row.project_id),
            type=row.type,
            status=row.status,
            progress=row.progress or 0,
            current_step=row.current_step,
            checkpoint=copy.deepcopy(row.checkpoint),
            config=copy.deepcopy(row.config) or {},
            result=copy.deepcopy(row.result),
            error=copy.deepcopy(row.error),
            created_at=row.created_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            updated_at=row.updated_at,
        )

    def create(self, task: TaskRecord) -> TaskRecord:
        now = utcnow()
        with self._session() as s:
            row = SyncTaskModel(
                id=task.id,
                tenant_id=task.scope.tenant_id,
                project_id=task.scope.project_id,
                type=task.type,
                status=task.status,
                progress=task.progress,
                current_step=task.current_step,
                checkpoint=task.checkpoint,
                config=task.config,
                result=task.result,
                error=task.error,
                created_at=task.created_at or now,
                updated_at=now,
            )
            s.add(row)
            s.flush()
            return self._to_record(row)

    def get(self, task_id: str) -> Optional[TaskRecord]:
        with self._session() as s:
            row = s.get(SyncTaskModel, task_id)
            return self._to_record(row) if row is not None else None

    def update(self, task_id: str, **values) -> Optional[TaskRecord]:
        with self._session() as s:
            row = s.get(SyncTaskModel, task_id)
            if row is None:
                return None
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            s.flush()
            return self._to_record(row)

    def transition(
        self,
        task_id: str,
        from_statuses: List[TaskStatus],
        to_status: TaskStatus,
        **values
    ) -> bool:
        with self._session() as s:
            result = s.execute(
                update(SyncTaskModel)
                .where(
                    SyncTaskModel.id == task_id,
                    SyncTaskModel.status.in_(from_statuses),
                )
                .values(status=to_status, updated_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

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
        stmt = select(SyncTaskModel).where(
            SyncTaskModel.tenant_id == scope.tenant_id,
            SyncTaskModel.project_id == scope.project_id,
        )
        if task_type:
            stmt = stmt.where(SyncTaskModel.type == task_type)
        if status:
            stmt = stmt.where(SyncTaskModel.status == status)
        if date_from:
            stmt = stmt.where(SyncTaskModel.created_at >= date_from)
        if date_to:
            stmt = stmt.where(SyncTaskModel.created_at <= date_to)

        with self._session() as s:
            total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
            rows = s.scalars(
                stmt.order_by(SyncTaskModel.created_at.desc(), SyncTaskModel.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return [self._to_record(row) for row in rows], total

    def find_by_status(self, status: TaskStatus) -> List[TaskRecord]:
        with self._session() as s:
            rows = s.scalars(
                select(SyncTaskModel)
                .where(SyncTaskModel.status == status)
                .order_by(SyncTaskModel.created_at)
            )
            return [self._to_record(row) for row in rows]

    def last_completed_cursor(self, scope: Scope) -> Optional[str]:
        with self._session() as s:
            rows = s.scalars(
                select(SyncTaskModel)
                .where(
                    SyncTaskModel.tenant_id == scope.tenant_id,
                    SyncTaskModel.project_id == scope.project_id,
                    SyncTaskModel.status == TaskStatus.COMPLETED,
                )
                .order_by(SyncTaskModel.completed_at.desc())
                .limit(20)
            )
            for row in rows:
                cursor = (row.checkpoint or {}).get("cursor")
                if cursor:
                    return cursor
        return None

    def statistics(self, scope: Scope, days: int = 7) -> Dict[str, Any]:
        since = utcnow() - timedelta(days=days)
        with self._session() as s:
            rows = list(s.scalars(
                select(SyncTaskModel).where(
                    SyncTaskModel.tenant_id == scope.tenant_id,
                    SyncTaskModel.project_id == scope.project_id,
                    SyncTaskModel.created_at >= since,
                )
            ))

        by_status = {status.value: 0 for status in TaskStatus}
        by_type = {task_type.value: 0 for task_type in TaskType}
        durations = []
        for row in rows:
            by_status[row.status.value] += 1
            by_type[row.type.value] += 1
            if row.status == TaskStatus.COMPLETED and row.started_at and row.completed_at:
                durations.append((row.completed_at - row.started_at).total_seconds())

        finished = by_status[TaskStatus.COMPLETED.value] + by_status[TaskStatus.FAILED.value]
        return {
            "period_days": days,
            "total": len(rows),
            "by_status": by_status,
            "by_type": by_type,
            "average_duration_seconds": (sum(durations) / len(durations)) if durations else 0.0,
            "success_rate": (by_status[TaskStatus.COMPLETED.value] / finished) if finished else 0.0,
        }

    def find_long_running(self, threshold_seconds: int) -> List[TaskRecord]:
        cutoff = utcnow() - timedelta(seconds=threshold_seconds)
        with self._session() as s:
            rows = s.scalars(
                select(SyncTaskModel)
                .where(
                    SyncTaskModel.status == TaskStatus.RUNNING,
                    SyncTaskModel.started_at < cutoff,
                )
                .order_by(SyncTaskModel.started_at)
            )
            return [self._to_record(row) for row in rows]

    def delete_older_than(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        with self._session() as s:
            task_ids = list(s.scalars(
                select(SyncTaskModel.id).where(
                    SyncTaskModel.created_at < cutoff,
                    SyncTaskModel.status.in_([TaskStatus.COMPLETED, TaskStatus.FAILED]),
                )
            ))
            for chunk in _chunks(task_ids):
                s.execute(delete(SyncOperationModel).where(SyncOperationModel.task_id.in_(chunk)))
                s.execute(delete(SyncConflictModel).where(SyncConflictModel.task_id.in_(chunk)))
                s.execute(delete(SyncTaskModel).where(SyncTaskModel.id.in_(chunk)))
        logger.info(f"Deleted {len(task_ids)} sync tasks older than {days} days")
        return len(task_ids)


# ============================================================================
# Operations
# ============================================================================

class SQLAlchemyOperationStore(_SessionMixin, OperationStore):

    @staticmethod
    def _to_record(row: SyncOperationModel) -> OperationRecord:
        return OperationRecord(
            id=row.id,
            task_id=row.task_id,
            scope=Scope(row.tenant_id, row.project_id),
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            operation_type=row.operation_type,
            data=copy.deepcopy(row.data) or {},
            status=row.status,
            priority=row.priority,
            batch=row.batch,
            sequence=row.sequence,
            attempts=row.attempts or 0,
            result=copy.deepcopy(row.result),
            error=copy.deepcopy(row.error),
            worker_id=row.worker_id,
            claimed_at=row.claimed_at,
            next_attempt_at=row.next_attempt_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
        )

    def _update(self, operation_id: str, *criteria, **values) -> bool:
        values.setdefault("updated_at", utcnow())
        with self._session() as s:
            result = s.execute(
                update(SyncOperationModel)
                .where(SyncOperationModel.id == operation_id, *criteria)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def add_all(self, records: List[OperationRecord]) -> int:
        if not records:
            return 0
        inserted = 0
        now = utcnow()
        with self._session() as s:
            existing: Set[str] = set()
            for chunk in _chunks([r.id for r in records]):
                existing.update(s.scalars(
                    select(SyncOperationModel.id).where(SyncOperationModel.id.in_(chunk))
                ))
            for record in records:
                if record.id in existing:
                    continue
                s.add(SyncOperationModel(
                    id=record.id,
                    task_id=record.task_id,
                    tenant_id=record.scope.tenant_id,
                    project_id=record.scope.project_id,
                    entity_type=record.entity_type,
                    entity_id=record.entity_id,
                    operation_type=record.operation_type,
                    data=record.data,
                    status=record.status,
                    priority=record.priority,
                    batch=record.batch,
                    sequence=record.sequence,
                    attempts=record.attempts,
                    result=record.result,
                    error=record.error,
                    created_at=now,
                    updated_at=now,
                ))
                existing.add(record.id)
                inserted += 1
        return inserted

    def get(self, operation_id: str) -> Optional[OperationRecord]:
        with self._session() as s:
            row = s.get(SyncOperationModel, operation_id)
            return self._to_record(row) if row is not None else None

    def list_for_task(
        self,
        task_id: str,
        statuses: Optional[List[OperationStatus]] = None
    ) -> List[OperationRecord]:
        stmt = select(SyncOperationModel).where(SyncOperationModel.task_id == task_id)
        if statuses:
            stmt = stmt.where(SyncOperationModel.status.in_(statuses))
        with self._session() as s:
            rows = s.scalars(stmt.order_by(SyncOperationModel.sequence))
            return [self._to_record(row) for row in rows]

    def claim(self, operation_id: str, worker_id: str) -> bool:
        now = utcnow()
        return self._update(
            operation_id,
            SyncOperationModel.status.in_([OperationStatus.PENDING, OperationStatus.FAILED]),
            status=OperationStatus.RUNNING,
            worker_id=worker_id,
            claimed_at=now,
            attempts=SyncOperationModel.attempts + 1,
            updated_at=now,
        )

    def complete(self, operation_id: str, result: Dict[str, Any]) -> None:
        now = utcnow()
        self._update(
            operation_id,
            status=OperationStatus.COMPLETED,
            result=result,
            error=None,
            next_attempt_at=None,
            completed_at=now,
            updated_at=now,
        )

    def release_for_retry(self, operation_id: str, error: Dict[str, Any], next_attempt_at: datetime) -> None:
        self._update(
            operation_id,
            status=OperationStatus.PENDING,
            error=error,
            worker_id=None,
            next_attempt_at=next_attempt_at,
        )

    def fail(self, operation_id: str, error: Dict[str, Any]) -> None:
        self._update(
            operation_id,
            status=OperationStatus.FAILED,
            error=error,
            next_attempt_at=None,
        )

    def set_status(
        self,
        operation_id: str,
        status: OperationStatus,
        from_statuses: Optional[List[OperationStatus]] = None,
        reset_attempts: bool = False
    ) -> bool:
        criteria = []
        if from_statuses:
            criteria.append(SyncOperationModel.status.in_(from_statuses))
        values: Dict[str, Any] = {"status": status}
        if reset_attempts:
            values.update(attempts=0, error=None, next_attempt_at=None, worker_id=None)
        return self._update(operation_id, *criteria, **values)

    def requeue_running(self, task_id: str) -> int:
        with self._session() as s:
            result = s.execute(
                update(SyncOperationModel)
                .where(
                    SyncOperationModel.task_id == task_id,
                    SyncOperationModel.status == OperationStatus.RUNNING,
                )
                .values(status=OperationStatus.PENDING, worker_id=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def count_by_status(self, task_id: str) -> Dict[str, int]:
        counts = {status.value: 0 for status in OperationStatus}
        with self._session() as s:
            rows = s.execute(
                select(SyncOperationModel.status, func.count())
                .where(SyncOperationModel.task_id == task_id)
                .group_by(SyncOperationModel.status)
            )
            for status, count in rows:
                counts[status.value] = count
        return counts


# ============================================================================
# Conflicts
# ============================================================================

class SQLAlchemyConflictStore(_SessionMixin, ConflictStore):

    @staticmethod
    def _to_record(row: SyncConflictModel) -> ConflictRecord:
        return ConflictRecord(
            id=row.id,
            task_id=row.task_id,
            operation_id=row.operation_id,
            scope=Scope(row.tenant_id, row.project_id),
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            strategy=row.strategy,
            source_value=copy.deepcopy(row.source_value),
            target_value=copy.deepcopy(row.target_value),
            source_updated_at=row.source_updated_at,
            target_updated_at=row.target_updated_at,
            status=row.status,
            resolution=row.resolution,
            resolved_at=row.resolved_at,
            notes=row.notes,
            created_at=row.created_at,
        )

    def add(self, conflict: ConflictRecord) -> ConflictRecord:
        with self._session() as s:
            row = s.get(SyncConflictModel, conflict.id)
            if row is None:
                row = SyncConflictModel(id=conflict.id, created_at=conflict.created_at or utcnow())
                s.add(row)
            row.task_id = conflict.task_id
            row.operation_id = conflict.operation_id
            row.tenant_id = conflict.scope.tenant_id
            row.project_id = conflict.scope.project_id
            row.entity_type = conflict.entity_type
            row.entity_id = conflict.entity_id
            row.strategy = conflict.strategy
            row.source_value = conflict.source_value
            row.target_value = conflict.target_value
            row.source_updated_at = conflict.source_updated_at
            row.target_updated_at = conflict.target_updated_at
            row.status = conflict.status
            row.resolution = conflict.resolution
            row.resolved_at = conflict.resolved_at
            row.notes = conflict.notes
            s.flush()
            return self._to_record(row)

    def get(self, conflict_id: str) -> Optional[ConflictRecord]:
        with self._session() as s:
            row = s.get(SyncConflictModel, conflict_id)
            return self._to_record(row) if row is not None else None

    def list(
        self,
        scope: Scope,
        status: Optional[ConflictStatus] = None,
        task_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[ConflictRecord], int]:
        stmt = select(SyncConflictModel).where(
            SyncConflictModel.tenant_id == scope.tenant_id,
            SyncConflictModel.project_id == scope.project_id,
        )
        if status:
            stmt = stmt.where(SyncConflictModel.status == status)
        if task_id:
            stmt = stmt.where(SyncConflictModel.task_id == task_id)

        with self._session() as s:
            total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
            rows = s.scalars(
                stmt.order_by(SyncConflictModel.created_at.desc(), SyncConflictModel.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return [self._to_record(row) for row in rows], total

    def find_by_operation(self, operation_id: str) -> Optional[ConflictRecord]:
        with self._session() as s:
            row = s.scalars(
                select(SyncConflictModel)
                .where(SyncConflictModel.operation_id == operation_id)
                .order_by(SyncConflictModel.created_at.desc())
            ).first()
            return self._to_record(row) if row is not None else None

    def resolve(
        self,
        conflict_id: str,
        resolution: ConflictResolution,
        notes: Optional[str] = None
    ) -> Optional[ConflictRecord]:
        with self._session() as s:
            row = s.get(SyncConflictModel, conflict_id)
            if row is None:
                return None
            row.status = ConflictStatus.RESOLVED
            row.resolution = resolution
            row.resolved_at = utcnow()
            if notes:
                row.notes = notes
            s.flush()
            return self._to_record(row)


# ============================================================================
# Intermediate Store
# ============================================================================

def merge_change(existing: Optional[Entity], record: ChangeRecord) -> Optional[Entity]:
    """
    Apply one change record to the stored version of an entity.

    Payload fields override the stored ones; sync state is never taken from
    a payload. Returns None for a delete of an unknown entity.
    """
    if record.change_type == ChangeType.DELETED:
        if existing is None:
            return None
        merged = copy.deepcopy(existing)
        merged.deleted = True
        merged.deleted_at = merged.deleted_at or record.changed_at or utcnow()
        merged.source_updated_at = record.changed_at or utcnow()
        return merged

    base = existing.to_dict() if existing is not None else {}
    payload = {
        key: value for key, value in (record.payload or {}).items()
        if key not in _SYNC_STATE_FIELDS
    }
    base.update(payload)
    base["id"] = record.entity_id
    base.setdefault("deleted", False)
    if record.change_type == ChangeType.CREATED or existing is None:
        base["deleted"] = payload.get("deleted", False)
    if not base.get("source_updated_at"):
        base["source_updated_at"] = record.changed_at
    return entity_from_dict(record.entity_type, base)


class IntermediateStore:
    """
    Normalized store of directory entities plus sync bookkeeping.

    Bundles the per-entity stores and the task, operation, conflict and
    change record stores over one DatabaseManager.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.organizations = SQLAlchemyOrganizationStore(db)
        self.users = SQLAlchemyUserStore(db)
        self.memberships = SQLAlchemyMembershipStore(db)
        self.change_records = SQLAlchemyChangeRecordStore(db)
        self.tasks = SQLAlchemyTaskStore(db)
        self.operations = SQLAlchemyOperationStore(db)
        self.conflicts = SQLAlchemyConflictStore(db)

    def entity_store(self, entity_type: EntityType) -> EntityStore:
        entity_type = EntityType(entity_type)
        if entity_type == EntityType.ORGANIZATION:
            return self.organizations
        if entity_type == EntityType.USER:
            return self.users
        return self.memberships

    def snapshot(self, scope: Scope, entity_types: Optional[List[EntityType]] = None) -> EntitySet:
        """Load the stored entities of a scope, soft-deleted ones included."""
        result = EntitySet()
        with self.db.get_session() as session:
            for entity_type in entity_types or list(EntityType):
                result.of_type(entity_type).update(
                    self.entity_store(entity_type).load(scope, include_deleted=True, session=session)
                )
        return result

    def apply_snapshot(
        self,
        scope: Scope,
        snapshot: EntitySet,
        entity_types: Optional[List[EntityType]] = None
    ) -> Dict[str, Dict[str, int]]:
        """
        Replace the stored state with a full source snapshot.

        Entities absent from the snapshot are soft-deleted. Runs in one
        transaction.

        Returns:
            Per entity type counts of inserted, updated, unchanged and deleted
        """
        stats = {}
        with self.db.get_session() as session:
            for entity_type in entity_types or list(EntityType):
                store = self.entity_store(entity_type)
                incoming = snapshot.of_type(entity_type)
                counts = store.upsert(scope, list(incoming.values()), session=session)
                known = store.load(scope, include_deleted=False, session=session)
                missing = [entity_id for entity_id in known if entity_id not in incoming]
                counts["deleted"] = store.soft_delete(scope, missing, session=session)
                stats[entity_type.value] = counts
        logger.info(f"Applied snapshot for {scope.key}: {stats}")
        return stats

    @staticmethod
    def preview_changes(current: EntitySet, records: List[ChangeRecord]) -> EntitySet:
        """Entity set that results from applying change records in order."""
        result = current.copy()
        for record in records:
            merged = merge_change(result.get(record.entity_type, record.entity_id), record)
            if merged is not None:
                result.add(merged)
        return result

    def apply_changes(self, scope: Scope, records: List[ChangeRecord]) -> Dict[str, List[str]]:
        """
        Apply change records to the store.

        Records stay unprocessed; the task that consumed them marks them
        once it reaches finalize.

        Runs in one transaction.

        Returns:
            Entity ids touched per entity type
        """
        dirty: Dict[str, Set[str]] = {entity_type.value: set() for entity_type in EntityType}
        with self.db.get_session() as session:
            for record in records:
                store = self.entity_store(record.entity_type)
                if record.change_type == ChangeType.DELETED:
                    store.soft_delete(scope, [record.entity_id], session=session)
                else:
                    existing = store.get(scope, record.entity_id, session=session)
                    merged = merge_change(existing, record)
                    store.upsert(scope, [merged], session=session)
                dirty[record.entity_type.value].add(record.entity_id)
        return {key: sorted(ids) for key, ids in dirty.items()}

    def mark_synced(
        self,
        scope: Scope,
        entity_type: EntityType,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> bool:
        return self.entity_store(entity_type).mark_synced(scope, entity_id, payload=payload)

    def known_target_state(self, scope: Scope, entity_types: Optional[List[EntityType]] = None) -> EntitySet:
        """
        Directory as last pushed to the target.

        Rebuilt from the payload of the last completed operation of every
        entity; the push time stands in for the target's last-modified time.
        """
        result = EntitySet()
        with self.db.get_session() as session:
            for entity_type in entity_types or list(EntityType):
                pushed = self.entity_store(entity_type).synced_payloads(scope, session=session)
                for entity_id, (payload, synced_at) in pushed.items():
                    data = dict(payload)
                    data.update(id=entity_id, source_updated_at=synced_at, synced=True, synced_at=synced_at)
                    result.add(entity_from_dict(entity_type, data))
        return result
