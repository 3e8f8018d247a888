"""
Collecting Target Connector.

Target that records operations instead of calling out. It keeps a
projected directory view, optionally seeded with a baseline, so repeated
runs and resumed tasks see the effect of operations already applied.
"""

import copy
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from pydantic import Field

from dirsync.sync.connectors.base import BaseTargetConnector, TargetConfig
from dirsync.sync.entities import EntitySet, EntityType, entity_from_dict, utcnow

logger = logging.getLogger(__name__)


class CollectingTargetConfig(TargetConfig):
    """Collecting target configuration."""
    # entity type value -> canonical entity dicts already present on the target
    baseline: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)


class CollectingTargetConnector(BaseTargetConnector):
    """
    Collecting target adapter.

    Operations are deduplicated by operation id; a create of an id that
    already exists in the view leaves the view unchanged.
    """

    config_class = CollectingTargetConfig

    def __init__(self, config: Optional[CollectingTargetConfig] = None):
        super().__init__(config or CollectingTargetConfig(type="collecting"))
        self._view = EntitySet()
        self._operations: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._calls = 0
        for key, items in self.config.baseline.items():
            for item in items:
                self._view.add(entity_from_dict(EntityType(key), item))

    @property
    def operations(self) -> List[Dict[str, Any]]:
        return list(self._operations.values())

    @property
    def call_count(self) -> int:
        """Mutating calls received, duplicates included."""
        return self._calls

    def view(self) -> EntitySet:
        return self._view.copy()

    def seed_known_state(self, entities: EntitySet) -> None:
        """
        Start the view from what earlier tasks pushed.

        Ignored once a baseline is configured or operations were recorded,
        since the view already describes the target then.
        """
        if self.config.baseline or self._operations:
            return
        seeded = 0
        for entity_type in EntityType:
            mine = self._view.of_type(entity_type)
            for entity_id, entity in entities.of_type(entity_type).items():
                if entity_id not in mine:
                    self._view.add(copy.deepcopy(entity))
                    seeded += 1
        logger.debug(f"Seeded collecting target with {seeded} known entities")

    def restore_operations(self, operations: List[Dict[str, Any]]) -> None:
        """Replay operations completed by an earlier run into the view."""
        for op in operations:
            self._record(
                op.get("operation_id"),
                EntityType(op["entity_type"]),
                op["operation_type"],
                op["entity_id"],
                op.get("payload") or {},
            )

    def _record(
        self,
        operation_id: Optional[str],
        entity_type: EntityType,
        operation_type: str,
        entity_id: str,
        payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        self._calls += 1
        key = operation_id or f"{entity_type.value}:{entity_id}:{operation_type}:{len(self._operations)}"
        if key in self._operations:
            return {"status": "duplicate", "operation_id": key}

        existing = self._view.get(entity_type, entity_id)
        if operation_type == "delete":
            self._view.of_type(entity_type).pop(entity_id, None)
            status = "deleted" if existing is not None else "absent"
        elif operation_type == "create" and existing is not None:
            status = "exists"
        else:
            base = existing.to_dict() if existing is not None else {}
            base.update(copy.deepcopy(payload))
            base["id"] = entity_id
            base["source_updated_at"] = utcnow()
            self._view.add(entity_from_dict(entity_type, base))
            status = "created" if existing is None else "updated"

        self._operations[key] = {
            "operation_id": operation_id,
            "entity_type": entity_type.value,
            "entity_id": entity_id,
            "operation_type": operation_type,
            "payload": copy.deepcopy(payload),
            "status": status,
        }
        return {"status": status, "operation_id": key}

    async def create(self, entity_type, payload, operation_id=None):
        entity_type = EntityType(entity_type)
        return self._record(operation_id, entity_type, "create", str(payload["id"]), payload)

    async def update(self, entity_type, entity_id, payload, operation_id=None):
        return self._record(operation_id, EntityType(entity_type), "update", entity_id, payload)

    async def delete(self, entity_type, entity_id, operation_id=None):
        return self._record(operation_id, EntityType(entity_type), "delete", entity_id, {})

    async def fetch_current(self, entity_types: List[EntityType]) -> EntitySet:
        return self._view.restricted_to(entity_types)

    def collected_result(self) -> Optional[Dict[str, Any]]:
        counts: Dict[str, int] = {}
        for op in self._operations.values():
            counts[op["operation_type"]] = counts.get(op["operation_type"], 0) + 1
        return {
            "operations": self.operations,
            "counts": counts,
            "directory": self._view.counts(),
        }
