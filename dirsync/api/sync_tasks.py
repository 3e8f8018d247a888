"""
Sync Tasks API Routes.

Management endpoints for directory sync tasks: starting full and
incremental syncs, task history and control (cancel, resume), operation
replay, conflict resolution and external change notification.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from dirsync.sync.entities import ChangeType, EntityChange, EntityType, Scope, entity_from_dict
from dirsync.sync.models import (
    ConflictResolution,
    ConflictStatus,
    ConflictStrategy,
    OperationStatus,
    TaskStatus,
    TaskType,
)
from dirsync.sync.orchestrator.task_manager import StrategyConfig, SyncTaskConfig, TaskManager
from dirsync.sync.store import ConflictRecord, OperationRecord, TaskRecord

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sync", tags=["sync-tasks"])


# ============================================================================
# Request/Response Models
# ============================================================================

class CamelModel(BaseModel):
    """Base model with camelCase JSON aliases."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StrategyOptions(CamelModel):
    """Per-task overrides of the execution strategy."""
    name: Optional[str] = Field(None, pattern="^(queue|batch|realtime)$")
    batch_size: Optional[int] = Field(None, ge=1, le=10000)
    concurrency: Optional[int] = Field(None, ge=1, le=100)
    batch_delay_seconds: Optional[float] = Field(None, ge=0)
    stop_on_error: Optional[bool] = None
    org_concurrency: Optional[int] = Field(None, ge=1, le=100)
    user_concurrency: Optional[int] = Field(None, ge=1, le=100)
    max_attempts: Optional[int] = Field(None, ge=1, le=20)
    backoff_base_seconds: Optional[float] = Field(None, ge=0)
    backoff_max_seconds: Optional[float] = Field(None, ge=0)
    operation_timeout_seconds: Optional[float] = Field(None, gt=0)
    checkpoint_interval: Optional[int] = Field(None, ge=1)

    def to_config(self) -> StrategyConfig:
        return StrategyConfig(**self.model_dump(exclude_none=True))


class SyncRequest(CamelModel):
    """Request model for starting a sync task."""
    entity_types: List[EntityType] = Field(default_factory=lambda: list(EntityType), min_length=1)
    source: Optional[Dict[str, Any]] = None
    target: Dict[str, Any] = Field(default_factory=lambda: {"type": "collecting"})
    options: StrategyOptions = Field(default_factory=StrategyOptions)
    conflict_policy: Optional[ConflictStrategy] = None
    filter: Optional[Dict[str, Any]] = None
    since: Optional[datetime] = None
    diff_strategy: Optional[str] = Field(None, pattern="^(memory|sql_join)$")

    def to_config(self) -> SyncTaskConfig:
        values: Dict[str, Any] = {
            "entity_types": self.entity_types,
            "source": self.source,
            "target": self.target,
            "strategy": self.options.to_config(),
            "filter": self.filter,
            "since": self.since,
            "diff_strategy": self.diff_strategy,
        }
        if self.conflict_policy is not None:
            values["conflict_policy"] = self.conflict_policy
        return SyncTaskConfig(**values)


class SyncStartResponse(CamelModel):
    task_id: str
    status: str


class TaskResponse(CamelModel):
    """Response model for a sync task."""
    id: str
    tenant_id: str
    project_id: str
    type: str
    status: str
    progress: int
    current_step: Optional[str] = None
    checkpoint: Optional[Dict[str, Any]] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, task: TaskRecord) -> "TaskResponse":
        return cls(**task.to_dict())


class TaskListResponse(CamelModel):
    items: List[TaskResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class OperationResponse(CamelModel):
    """Response model for an operation record."""
    id: str
    task_id: str
    entity_type: str
    entity_id: str
    operation_type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    status: str
    batch: int
    sequence: int
    attempts: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_record(cls, op: OperationRecord) -> "OperationResponse":
        return cls(**{k: v for k, v in op.to_dict().items() if k in cls.model_fields})


class ConflictResponse(CamelModel):
    """Response model for a conflict record."""
    id: str
    task_id: str
    operation_id: str
    entity_type: str
    entity_id: str
    strategy: str
    source_value: Optional[Dict[str, Any]] = None
    target_value: Optional[Dict[str, Any]] = None
    source_updated_at: Optional[str] = None
    target_updated_at: Optional[str] = None
    status: str
    resolution: Optional[str] = None
    resolved_at: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_record(cls, conflict: ConflictRecord) -> "ConflictResponse":
        return cls(**{k: v for k, v in conflict.to_dict().items() if k in cls.model_fields})


class ConflictListResponse(CamelModel):
    items: List[ConflictResponse]
    total: int
    page: int
    page_size: int


class ConflictResolveRequest(CamelModel):
    resolution: ConflictResolution
    notes: Optional[str] = Field(None, max_length=2000)


class ChangeNotification(CamelModel):
    """One externally pushed change."""
    entity_type: EntityType
    change_type: ChangeType
    entity_id: str = Field(..., min_length=1)
    data: Optional[Dict[str, Any]] = None
    changed_at: Optional[datetime] = None

    def to_change(self) -> EntityChange:
        entity = None
        if self.change_type != ChangeType.DELETED:
            payload = dict(self.data or {})
            payload["id"] = self.entity_id
            if self.changed_at is not None:
                payload.setdefault("source_updated_at", self.changed_at)
            entity = entity_from_dict(self.entity_type, payload)
        return EntityChange(self.entity_type, self.change_type, self.entity_id, entity, self.changed_at)


class NotifyChangesRequest(CamelModel):
    changes: List[ChangeNotification] = Field(..., min_length=1)
    trigger_sync: bool = False
    target: Optional[Dict[str, Any]] = None
    options: StrategyOptions = Field(default_factory=StrategyOptions)


class NotifyChangesResponse(CamelModel):
    accepted: int
    task_id: Optional[str] = None


# ============================================================================
# Dependencies
# ============================================================================

def get_scope(
    x_tenant_id: str = Header(..., alias="X-Tenant-ID", min_length=1),
    x_project_id: str = Header(..., alias="X-Project-ID", min_length=1)
) -> Scope:
    """Tenant scope from request headers."""
    return Scope(x_tenant_id, x_project_id)


def get_task_manager(request: Request) -> TaskManager:
    return request.app.state.task_manager


# ============================================================================
# API Endpoints
# ============================================================================

@router.post("/sync/full", response_model=SyncStartResponse, status_code=202)
async def start_full_sync(
    body: SyncRequest,
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
):
    """Start a full sync task in the background."""
    task = await manager.start_full_sync(scope, body.to_config())
    return SyncStartResponse(task_id=task.id, status=task.status.value)


@router.post("/sync/incremental", response_model=SyncStartResponse, status_code=202)
async def start_incremental_sync(
    body: SyncRequest,
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
):
    """Start an incremental sync task in the background."""
    task = await manager.start_incremental_sync(scope, body.to_config())
    return SyncStartResponse(task_id=task.id, status=task.status.value)


@router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(
    type: Optional[TaskType] = None,
    status: Optional[TaskStatus] = None,
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
):
    """Paginated task history, newest first."""
    items, total = manager.list_tasks(scope, type, status, date_from, date_to, page, page_size)
    return TaskListResponse(
        items=[TaskResponse.from_record(task) for task in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=(total + page_size - 1) // page_size,
    )


@router.get("/tasks/statistics")
async def get_task_statistics(
    days: int = Query(7, ge=1, le=365),
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
) -> Dict[str, Any]:
    return manager.get_statistics(scope, days)


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: str,
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
):
    """Get status, progress, step, error and result of a task."""
    return TaskResponse.from_record(manager.get_task(task_id, scope))


@router.post("/tasks/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task(
    task_id: str,
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
):
    """
    Request cooperative cancellation.

    A running task stops dispatching new operations and pauses at its
    last checkpoint.
    """
    task = await manager.cancel_task(task_id, scope)
    logger.info(f"Cancel requested for task {task_id} by {scope.key}")
    return TaskResponse.from_record(task)


@router.post("/tasks/{task_id}/resume", response_model=TaskResponse)
async def resume_task(
    task_id: str,
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
):
    return TaskResponse.from_record(await manager.resume_task(task_id, scope))


@router.get("/tasks/{task_id}/operations", response_model=List[OperationResponse])
async def list_task_operations(
    task_id: str,
    status: Optional[OperationStatus] = None,
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
):
    return [OperationResponse.from_record(op) for op in manager.list_operations(task_id, scope, status)]


@router.post("/operations/{operation_id}/replay", response_model=OperationResponse)
async def replay_operation(
    operation_id: str,
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
):
    """Reset a permanently failed operation and execute it again."""
    return OperationResponse.from_record(await manager.replay_operation(operation_id, scope))


@router.get("/conflicts", response_model=ConflictListResponse)
async def list_conflicts(
    status: Optional[ConflictStatus] = None,
    task_id: Optional[str] = Query(None, alias="taskId"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
):
    items, total = manager.list_conflicts(scope, status, task_id, page, page_size)
    return ConflictListResponse(
        items=[ConflictResponse.from_record(c) for c in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/conflicts/{conflict_id}/resolve")
async def resolve_conflict(
    conflict_id: str,
    body: ConflictResolveRequest,
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
) -> Dict[str, Any]:
    """Record a manual decision for a pending conflict."""
    result = await manager.resolve_conflict(conflict_id, body.resolution, body.notes, scope)
    return {
        "success": True,
        "conflict": result["conflict"],
        "operation": result["operation"],
    }


@router.post("/notify/changes", response_model=NotifyChangesResponse, status_code=202)
async def notify_changes(
    body: NotifyChangesRequest,
    scope: Scope = Depends(get_scope),
    manager: TaskManager = Depends(get_task_manager)
):
    """
    Accept an externally pushed changeset.

    Changes are stored for the next incremental task; with triggerSync an
    incremental task without a source starts right away.
    """
    ids = manager.ingest_changes(scope, [change.to_change() for change in body.changes])

    task_id = None
    if body.trigger_sync:
        entity_types = [t for t in EntityType if t in {c.entity_type for c in body.changes}]
        config = SyncTaskConfig(
            entity_types=entity_types,
            target=body.target or {"type": "collecting"},
            strategy=body.options.to_config(),
        )
        task = await manager.start_incremental_sync(scope, config)
        task_id = task.id

    return NotifyChangesResponse(accepted=len(ids), task_id=task_id)
