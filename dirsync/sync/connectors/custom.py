"""
Custom Source Connector.

Lets applications plug arbitrary feeds in as sources by registering
callables under a name. Callables may be sync or async and may return
entity containers or raw records that go through the field mapper.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import Field

from dirsync.sync.connectors.base import BaseSourceConnector, SourceConfig
from dirsync.sync.entities import ChangeSet, EntitySet, EntityType, Snapshot
from dirsync.sync.errors import ConfigurationError, SourceSchemaError

logger = logging.getLogger(__name__)

_COLLECTION_KEYS = {
    EntityType.ORGANIZATION: "organizations",
    EntityType.USER: "users",
    EntityType.MEMBERSHIP: "memberships",
}


@dataclass
class CustomSourceHandler:
    """Callables backing one custom source."""
    name: str
    fetch_full: Callable
    fetch_changes: Optional[Callable] = None


class CustomSourceRegistry:
    """Registry of named custom source handlers."""

    _handlers: Dict[str, CustomSourceHandler] = {}

    @classmethod
    def register(
        cls,
        name: str,
        fetch_full: Callable,
        fetch_changes: Optional[Callable] = None
    ) -> None:
        cls._handlers[name] = CustomSourceHandler(name, fetch_full, fetch_changes)
        logger.info(f"Registered custom source handler: {name}")

    @classmethod
    def unregister(cls, name: str) -> None:
        cls._handlers.pop(name, None)

    @classmethod
    def get(cls, name: str) -> CustomSourceHandler:
        handler = cls._handlers.get(name)
        if handler is None:
            raise ConfigurationError(
                f"Unknown custom source handler: {name}",
                context={"available": sorted(cls._handlers.keys())}
            )
        return handler


class CustomSourceConfig(SourceConfig):
    """Custom source configuration."""
    handler: str
    options: Dict[str, Any] = Field(default_factory=dict)


async def _call(fn: Callable, *args, **kwargs) -> Any:
    if asyncio.iscoroutinefunction(fn):
        return await fn(*args, **kwargs)
    return fn(*args, **kwargs)


class CustomSourceConnector(BaseSourceConnector):
    """
    Custom source adapter.

    ``fetch_full(entity_types, filter, options)`` returns a Snapshot or a
    dict with ``organizations``/``users``/``memberships`` raw record lists
    and an optional ``cursor``. ``fetch_changes(entity_types, since, cursor,
    options)`` returns a ChangeSet or a dict with ``created``/``updated``
    raw records and ``deleted`` ids keyed by entity type value.
    """

    config_class = CustomSourceConfig

    def __init__(self, config: CustomSourceConfig):
        super().__init__(config)
        self.custom_config = config
        self.handler = CustomSourceRegistry.get(config.handler)

    def _entities(self, entity_type: EntityType, raws: List[Any]) -> List[Any]:
        entities = []
        for raw in raws or []:
            if isinstance(raw, dict):
                entities.append(self.mapper.to_entity(entity_type, raw))
            elif getattr(raw, "entity_type", None) == entity_type:
                entities.append(raw)
            else:
                raise SourceSchemaError(
                    f"Custom source {self.handler.name} returned an unsupported {entity_type.value} record",
                    context={"entity_type": entity_type.value}
                )
        return entities

    async def fetch_full(
        self,
        entity_types: List[EntityType],
        filter: Optional[Dict[str, Any]] = None
    ) -> Snapshot:
        result = await _call(self.handler.fetch_full, entity_types, filter, self.custom_config.options)
        if isinstance(result, Snapshot):
            return result
        if isinstance(result, EntitySet):
            return Snapshot(result.organizations, result.users, result.memberships)
        if not isinstance(result, dict):
            raise SourceSchemaError(f"Custom source {self.handler.name} returned {type(result).__name__}")

        snapshot = Snapshot(cursor=result.get("cursor"))
        for entity_type in entity_types:
            entity_type = EntityType(entity_type)
            for entity in self._entities(entity_type, result.get(_COLLECTION_KEYS[entity_type], [])):
                snapshot.add(entity)
        return snapshot

    async def fetch_changes(
        self,
        entity_types: List[EntityType],
        since: Optional[datetime] = None,
        cursor: Optional[str] = None
    ) -> ChangeSet:
        if self.handler.fetch_changes is None:
            raise ConfigurationError(f"Custom source {self.handler.name} does not support incremental reads")

        result = await _call(self.handler.fetch_changes, entity_types, since, cursor, self.custom_config.options)
        if isinstance(result, ChangeSet):
            return result
        if not isinstance(result, dict):
            raise SourceSchemaError(f"Custom source {self.handler.name} returned {type(result).__name__}")

        changes = ChangeSet(cursor=result.get("cursor"))
        for entity_type in entity_types:
            entity_type = EntityType(entity_type)
            for entity in self._entities(entity_type, (result.get("created") or {}).get(entity_type.value, [])):
                changes.add_created(entity)
            for entity in self._entities(entity_type, (result.get("updated") or {}).get(entity_type.value, [])):
                changes.add_updated(entity)
            for entity_id in (result.get("deleted") or {}).get(entity_type.value, []):
                changes.add_deleted(entity_type, str(entity_id))
        return changes
