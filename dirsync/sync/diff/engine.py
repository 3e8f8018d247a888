"""
Diff Engine.

Compares a local entity set (the normalized source state) with a remote
one (the target's current state) and produces an ordered operation list.

Classification is done either in memory or, for large inputs, through a
relational join; both feed the same operation builder so their output is
identical.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional, Set

from dirsync.sync.diff.hierarchy import compute_depths
from dirsync.sync.entities import EntitySet, EntityType, OperationType

logger = logging.getLogger(__name__)


class Phase(IntEnum):
    """Global execution phases; the value is the operation priority."""
    ORGANIZATION_UPSERT = 1
    USER_UPSERT = 2
    MEMBERSHIP_DELETE = 3
    MEMBERSHIP_UPSERT = 4
    USER_DELETE = 5
    ORGANIZATION_DELETE = 6


_UPSERT_ORDER = {
    OperationType.CREATE: 0,
    OperationType.MOVE: 1,
    OperationType.RENAME: 2,
    OperationType.UPDATE: 3,
}

# Organization fields compared for the generic update classification
ORGANIZATION_UPDATE_FIELDS = ("code", "sort_order", "status", "extra")


def operation_id(task_id: str, entity_type: EntityType, entity_id: str, op_type: OperationType) -> str:
    """Deterministic operation id, stable across resumes of one task."""
    raw = f"{task_id}:{EntityType(entity_type).value}:{entity_id}:{OperationType(op_type).value}"
    return hashlib.sha1(raw.encode()).hexdigest()


@dataclass
class PlannedOperation:
    """Operation produced by the diff engine, before persistence."""
    entity_type: EntityType
    entity_id: str
    operation_type: OperationType
    data: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    batch: int = 0
    sequence: int = 0
    depth: int = 0

    def key(self):
        return (self.entity_type.value, self.entity_id, self.operation_type.value)

    def record_id(self, task_id: str) -> str:
        return operation_id(task_id, self.entity_type, self.entity_id, self.operation_type)


@dataclass
class EntityClassification:
    """Ids per classification for one entity type."""
    create: Set[str] = field(default_factory=set)
    delete: Set[str] = field(default_factory=set)
    move: Set[str] = field(default_factory=set)
    rename: Set[str] = field(default_factory=set)
    update: Set[str] = field(default_factory=set)

    def restrict(self, ids: Iterable[str]) -> "EntityClassification":
        wanted = set(ids)
        return EntityClassification(
            create=self.create & wanted,
            delete=self.delete & wanted,
            move=self.move & wanted,
            rename=self.rename & wanted,
            update=self.update & wanted,
        )

    def total(self) -> int:
        return len(self.create) + len(self.delete) + len(self.move) + len(self.rename) + len(self.update)


Classification = Dict[EntityType, EntityClassification]


def organization_update_digest(org) -> str:
    """Hash of the organization fields that make up a plain update."""
    values = {name: getattr(org, name) for name in ORGANIZATION_UPDATE_FIELDS}
    return hashlib.sha256(json.dumps(values, sort_keys=True, default=str).encode()).hexdigest()


class InMemoryDiffStrategy:
    """Set comparison over Python dictionaries."""

    name = "memory"

    def classify(self, local: EntitySet, remote: EntitySet, entity_types: List[EntityType]) -> Classification:
        result: Classification = {}
        for entity_type in entity_types:
            local_active = local.active(entity_type)
            remote_active = remote.active(entity_type)
            local_ids = set(local_active)
            remote_ids = set(remote_active)
            classification = EntityClassification(
                create=local_ids - remote_ids,
                delete=remote_ids - local_ids,
            )
            for entity_id in local_ids & remote_ids:
                mine = local_active[entity_id]
                theirs = remote_active[entity_id]
                if entity_type == EntityType.ORGANIZATION:
                    if mine.parent_id != theirs.parent_id:
                        classification.move.add(entity_id)
                    if mine.name != theirs.name:
                        classification.rename.add(entity_id)
                    if organization_update_digest(mine) != organization_update_digest(theirs):
                        classification.update.add(entity_id)
                elif mine.content_hash() != theirs.content_hash():
                    classification.update.add(entity_id)
            result[entity_type] = classification
        return result


class DiffEngine:
    """
    Diff Engine.

    Features:
    - Create/delete/move/rename/update classification per entity type
    - Soft-deleted entities count as absent on both sides
    - Top-down organization upserts and bottom-up organization deletes
    - Phase ordering across organizations, users and memberships
    - Relational join strategy above a size threshold
    """

    def __init__(self, large_dataset_threshold: int = 50000, join_strategy=None):
        """
        Initialize diff engine.

        Args:
            large_dataset_threshold: Total entity count above which the join strategy is used
            join_strategy: Strategy used for large inputs (defaults to SqlJoinDiffStrategy)
        """
        self.large_dataset_threshold = large_dataset_threshold
        self.memory_strategy = InMemoryDiffStrategy()
        self._join_strategy = join_strategy

    @property
    def join_strategy(self):
        if self._join_strategy is None:
            from dirsync.sync.diff.sql_join import SqlJoinDiffStrategy
            self._join_strategy = SqlJoinDiffStrategy()
        return self._join_strategy

    def select_strategy(self, local: EntitySet, remote: EntitySet):
        if local.total() + remote.total() > self.large_dataset_threshold:
            return self.join_strategy
        return self.memory_strategy

    def diff(
        self,
        local: EntitySet,
        remote: EntitySet,
        entity_types: Optional[List[EntityType]] = None,
        only_ids: Optional[Dict[str, Iterable[str]]] = None,
        strategy=None
    ) -> List[PlannedOperation]:
        """
        Compute the ordered operation list turning remote into local.

        Args:
            local: Source-side entities
            remote: Target-side entities
            entity_types: Entity types to compare (default all)
            only_ids: Restrict emitted operations to these ids per entity type value
            strategy: Force a classification strategy

        Returns:
            Operations ordered by phase, then dependency level

        Raises:
            CyclicHierarchy: If either organization tree has a cycle
        """
        entity_types = [EntityType(t) for t in (entity_types or list(EntityType))]
        strategy = strategy or self.select_strategy(local, remote)

        classification = strategy.classify(local, remote, entity_types)
        if only_ids is not None:
            classification = {
                entity_type: c.restrict(only_ids.get(entity_type.value, ()))
                for entity_type, c in classification.items()
            }

        operations = build_operations(classification, local, remote)
        logger.info(
            f"Diff ({strategy.name}) produced {len(operations)} operations: "
            f"{summarize(operations)}"
        )
        return operations


def summarize(operations: List[PlannedOperation]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for op in operations:
        key = f"{op.entity_type.value}.{op.operation_type.value}"
        counts[key] = counts.get(key, 0) + 1
    return counts


def _payload(entity_set: EntitySet, entity_type: EntityType, entity_id: str) -> Optional[Dict[str, Any]]:
    entity = entity_set.get(entity_type, entity_id)
    return entity.to_payload() if entity is not None else None


def build_operations(classification: Classification, local: EntitySet, remote: EntitySet) -> List[PlannedOperation]:
    """
    Turn a classification into the ordered operation list.

    Depths are computed over the full active trees, so ordering holds even
    when the classification was restricted to a subset of ids.
    """
    operations: List[PlannedOperation] = []

    def planned(entity_type, entity_id, op_type, phase, depth=0):
        data = {
            "payload": _payload(local, entity_type, entity_id) if op_type != OperationType.DELETE else None,
            "previous": _payload(remote, entity_type, entity_id),
        }
        return PlannedOperation(
            entity_type=entity_type,
            entity_id=entity_id,
            operation_type=op_type,
            data=data,
            priority=int(phase),
            depth=depth,
        )

    org_cls = classification.get(EntityType.ORGANIZATION)
    if org_cls is not None:
        local_orgs = local.active(EntityType.ORGANIZATION)
        remote_orgs = remote.active(EntityType.ORGANIZATION)
        local_depths = compute_depths(local_orgs, "local")
        remote_depths = compute_depths(remote_orgs, "remote")

        upserts = []
        for op_type, ids in (
            (OperationType.CREATE, org_cls.create),
            (OperationType.MOVE, org_cls.move),
            (OperationType.RENAME, org_cls.rename),
            (OperationType.UPDATE, org_cls.update),
        ):
            for entity_id in ids:
                upserts.append(planned(
                    EntityType.ORGANIZATION, entity_id, op_type,
                    Phase.ORGANIZATION_UPSERT, local_depths[entity_id],
                ))
        upserts.sort(key=lambda op: (
            op.depth,
            local_orgs[op.entity_id].sort_order,
            op.entity_id,
            _UPSERT_ORDER[op.operation_type],
        ))
        operations.extend(upserts)

    user_cls = classification.get(EntityType.USER)
    membership_cls = classification.get(EntityType.MEMBERSHIP)

    if user_cls is not None:
        upserts = [planned(EntityType.USER, i, OperationType.CREATE, Phase.USER_UPSERT) for i in user_cls.create]
        upserts += [planned(EntityType.USER, i, OperationType.UPDATE, Phase.USER_UPSERT) for i in user_cls.update]
        upserts.sort(key=lambda op: (op.entity_id, _UPSERT_ORDER[op.operation_type]))
        operations.extend(upserts)

    if membership_cls is not None:
        deletes = [
            planned(EntityType.MEMBERSHIP, i, OperationType.DELETE, Phase.MEMBERSHIP_DELETE)
            for i in sorted(membership_cls.delete)
        ]
        operations.extend(deletes)
        upserts = [planned(EntityType.MEMBERSHIP, i, OperationType.CREATE, Phase.MEMBERSHIP_UPSERT) for i in membership_cls.create]
        upserts += [planned(EntityType.MEMBERSHIP, i, OperationType.UPDATE, Phase.MEMBERSHIP_UPSERT) for i in membership_cls.update]
        upserts.sort(key=lambda op: (op.entity_id, _UPSERT_ORDER[op.operation_type]))
        operations.extend(upserts)

    if user_cls is not None:
        operations.extend(
            planned(EntityType.USER, i, OperationType.DELETE, Phase.USER_DELETE)
            for i in sorted(user_cls.delete)
        )

    if org_cls is not None:
        deletes = [
            planned(EntityType.ORGANIZATION, i, OperationType.DELETE, Phase.ORGANIZATION_DELETE, remote_depths[i])
            for i in org_cls.delete
        ]
        deletes.sort(key=lambda op: (-op.depth, op.entity_id))
        operations.extend(deletes)

    _assign_levels(operations)
    return operations


def _assign_levels(operations: List[PlannedOperation]) -> None:
    """Number operations and their (phase, depth) levels in list order."""
    batch = -1
    previous = None
    for sequence, op in enumerate(operations):
        level = (op.priority, op.depth)
        if level != previous:
            batch += 1
            previous = level
        op.batch = batch
        op.sequence = sequence
