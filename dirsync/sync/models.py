"""
SQLAlchemy ORM models for the Directory Sync Engine.

These models define the intermediate store (organizations, users,
memberships and incremental change records) and the sync bookkeeping
tables (tasks, operations, conflicts and locks). Every row carries the
tenant/project scope.
"""

from datetime import datetime
from sqlalchemy import (
    String, Text, Integer, DateTime, Boolean, Index, JSON,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column
import enum
from typing import Optional

from dirsync.database.connection import Base
from dirsync.sync.entities import ChangeType, EntityType, OperationType, utcnow


# ============================================================================
# Enumerations
# ============================================================================

class TaskType(str, enum.Enum):
    """Sync task type enumeration."""
    FULL = "full"
    INCREMENTAL = "incremental"


class TaskStatus(str, enum.Enum):
    """Sync task status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStep(str, enum.Enum):
    """Pipeline steps in execution order."""
    FETCH = "fetch"
    NORMALIZE = "normalize"
    DIFF = "diff"
    PLAN = "plan"
    EXECUTE = "execute"
    FINALIZE = "finalize"

    @classmethod
    def ordered(cls):
        return [cls.FETCH, cls.NORMALIZE, cls.DIFF, cls.PLAN, cls.EXECUTE, cls.FINALIZE]

    def index(self) -> int:
        return TaskStep.ordered().index(self)


class OperationStatus(str, enum.Enum):
    """Operation record status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class ConflictStatus(str, enum.Enum):
    """Conflict record status enumeration."""
    PENDING = "pending"
    RESOLVED = "resolved"


class ConflictStrategy(str, enum.Enum):
    """Conflict resolution policies."""
    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    NEWER_WINS = "newer_wins"
    MANUAL = "manual"


class ConflictResolution(str, enum.Enum):
    """Which side a resolved conflict kept."""
    SOURCE = "source"
    TARGET = "target"


# ============================================================================
# Intermediate Store Models
# ============================================================================

class OrganizationModel(Base):
    """
    Normalized organizations.

    Rows are soft-deleted when they disappear from the source so the
    diff engine can still emit the delete.
    """
    __tablename__ = "organizations"

    tenant_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    parent_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    code: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(50), default="active")
    extra: Mapped[dict] = mapped_column(JSON, default=dict)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Sync state
    source_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    synced: Mapped[bool] = mapped_column(Boolean, default=False)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Payload of the last operation that reached the target; null when absent there
    synced_payload: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_organizations_scope_parent', 'tenant_id', 'project_id', 'parent_id'),
    )


class UserModel(Base):
    """Normalized users."""
    __tablename__ = "users"

    tenant_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    username: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    display_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    mobile: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="active")
    extra: Mapped[dict] = mapped_column(JSON, default=dict)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    source_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    synced: Mapped[bool] = mapped_column(Boolean, default=False)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Payload of the last operation that reached the target; null when absent there
    synced_payload: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_users_scope_username', 'tenant_id', 'project_id', 'username'),
    )


class MembershipModel(Base):
    """Normalized user/organization memberships."""
    __tablename__ = "memberships"

    tenant_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(200), nullable=False)
    user_id: Mapped[str] = mapped_column(String(200), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    position: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    source_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    synced: Mapped[bool] = mapped_column(Boolean, default=False)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Payload of the last operation that reached the target; null when absent there
    synced_payload: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_memberships_scope_user', 'tenant_id', 'project_id', 'user_id'),
        Index('idx_memberships_scope_org', 'tenant_id', 'project_id', 'org_id'),
    )


class ChangeRecordModel(Base):
    """
    Incremental change records.

    Written by source polling and by external change notifications, consumed
    and marked processed by the next incremental task.
    """
    __tablename__ = "sync_change_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(SQLEnum(EntityType), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(200), nullable=False)
    change_type: Mapped[ChangeType] = mapped_column(SQLEnum(ChangeType), nullable=False)
    changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    task_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_change_records_scope_processed', 'tenant_id', 'project_id', 'processed'),
    )


# ============================================================================
# Sync Bookkeeping Models
# ============================================================================

class SyncTaskModel(Base):
    """
    Sync task table.

    Holds lifecycle state, progress and the checkpoint used for resume.
    """
    __tablename__ = "sync_tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TaskType] = mapped_column(SQLEnum(TaskType), nullable=False)
    status: Mapped[TaskStatus] = mapped_column(SQLEnum(TaskStatus), default=TaskStatus.PENDING)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    current_step: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    checkpoint: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    config: Mapped[dict] = mapped_column(JSON, default=dict)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Touched on every checkpoint, doubles as heartbeat
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_sync_tasks_scope_status', 'tenant_id', 'project_id', 'status'),
        Index('idx_sync_tasks_created', 'created_at'),
    )


class SyncOperationModel(Base):
    """
    Operation records produced by the diff engine.

    Mutated only by the operation executor once persisted.
    """
    __tablename__ = "sync_operations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    task_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(SQLEnum(EntityType), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(200), nullable=False)
    operation_type: Mapped[OperationType] = mapped_column(SQLEnum(OperationType), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, default=dict)

    status: Mapped[OperationStatus] = mapped_column(SQLEnum(OperationStatus), default=OperationStatus.PENDING)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    batch: Mapped[int] = mapped_column(Integer, default=0)
    sequence: Mapped[int] = mapped_column(Integer, default=0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)

    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    worker_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_sync_operations_task_seq', 'task_id', 'sequence'),
        Index('idx_sync_operations_task_status', 'task_id', 'status'),
    )


class SyncConflictModel(Base):
    """Conflicts between concurrent source and target modifications."""
    __tablename__ = "sync_conflicts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    task_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(SQLEnum(EntityType), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(200), nullable=False)

    source_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    target_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    source_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    target_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    strategy: Mapped[ConflictStrategy] = mapped_column(SQLEnum(ConflictStrategy), nullable=False)
    status: Mapped[ConflictStatus] = mapped_column(SQLEnum(ConflictStatus), default=ConflictStatus.PENDING)
    resolution: Mapped[Optional[ConflictResolution]] = mapped_column(SQLEnum(ConflictResolution), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_sync_conflicts_scope_status', 'tenant_id', 'project_id', 'status'),
        Index('idx_sync_conflicts_operation', 'operation_id'),
    )


class SyncLockModel(Base):
    """Database backend for per-entity-type sync locks."""
    __tablename__ = "sync_locks"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(100), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
