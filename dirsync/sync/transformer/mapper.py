"""
Entity Mapper.

Maps raw source and target records onto normalized directory entities
through per-entity field mappings, with type conversion of the canonical
fields.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dirsync.sync.entities import ENTITY_CLASSES, Entity, EntityType, parse_datetime
from dirsync.sync.errors import SourceSchemaError

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("true", "1", "yes", "y", "on")


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return bool(value)


def _to_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(value)


def _to_optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


FIELD_CONVERTERS = {
    "id": str,
    "parent_id": _to_optional_str,
    "org_id": str,
    "user_id": str,
    "name": lambda v: "" if v is None else str(v),
    "username": lambda v: "" if v is None else str(v),
    "code": _to_optional_str,
    "display_name": _to_optional_str,
    "email": _to_optional_str,
    "mobile": _to_optional_str,
    "position": _to_optional_str,
    "status": lambda v: "active" if v is None or v == "" else str(v),
    "sort_order": _to_int,
    "is_primary": _to_bool,
    "deleted": _to_bool,
    "source_updated_at": parse_datetime,
    "deleted_at": parse_datetime,
    "extra": lambda v: dict(v) if v else {},
}

# Source roots use 0 or empty strings as "no parent"
_ROOT_PARENT_VALUES = ("", "0", None)


def get_path(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Resolve a dotted path such as ``profile.email`` inside a record."""
    current: Any = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return default
    return current


_MISSING = object()


class EntityMapping(BaseModel):
    """Field mapping of one entity type."""

    # canonical field -> source key (dotted paths allowed)
    field_map: Dict[str, str] = Field(default_factory=dict)
    id_field: str = "id"
    updated_at_field: Optional[str] = "updated_at"
    created_at_field: Optional[str] = None
    deleted_field: Optional[str] = None
    deleted_value: Any = True
    # Source keys copied verbatim into ``extra``
    extra_fields: List[str] = Field(default_factory=list)

    def source_key(self, canonical: str) -> str:
        if canonical == "id":
            return self.id_field
        if canonical == "source_updated_at" and self.updated_at_field:
            return self.field_map.get(canonical, self.updated_at_field)
        return self.field_map.get(canonical, canonical)


class EntityMapper:
    """
    Entity mapper.

    Converts raw records to entities and entities back to raw records
    using an EntityMapping per entity type.
    """

    def __init__(self, mappings: Optional[Dict[str, EntityMapping]] = None):
        self.mappings: Dict[EntityType, EntityMapping] = {}
        for key, mapping in (mappings or {}).items():
            if isinstance(mapping, dict):
                mapping = EntityMapping(**mapping)
            self.mappings[EntityType(key)] = mapping

    def mapping_for(self, entity_type: EntityType) -> EntityMapping:
        return self.mappings.get(EntityType(entity_type)) or EntityMapping()

    def to_entity(self, entity_type: EntityType, raw: Dict[str, Any]) -> Entity:
        """
        Map a raw record to an entity.

        Args:
            entity_type: Entity type of the record
            raw: Raw record from the source or target

        Returns:
            Normalized entity

        Raises:
            SourceSchemaError: If the id is missing or a value cannot be converted
        """
        entity_type = EntityType(entity_type)
        mapping = self.mapping_for(entity_type)
        entity_class = ENTITY_CLASSES[entity_type]

        raw_id = get_path(raw, mapping.id_field)
        if raw_id is None or raw_id == "":
            raise SourceSchemaError(
                f"{entity_type.value} record has no value for id field {mapping.id_field!r}",
                context={"entity_type": entity_type.value, "keys": sorted(raw.keys())}
            )

        values: Dict[str, Any] = {"id": raw_id}
        canonical_fields = list(entity_class.tracked_fields) + ["source_updated_at", "deleted_at"]
        for canonical in canonical_fields:
            value = get_path(raw, mapping.source_key(canonical), _MISSING)
            if value is _MISSING:
                continue
            values[canonical] = value

        if mapping.deleted_field:
            flag = get_path(raw, mapping.deleted_field, _MISSING)
            if flag is not _MISSING:
                values["deleted"] = flag == mapping.deleted_value or (
                    mapping.deleted_value is True and _to_bool(flag)
                )
        elif "deleted" in raw:
            values["deleted"] = raw["deleted"]

        if "extra" in entity_class.__dataclass_fields__:
            extra = dict(values.get("extra") or {})
            for key in mapping.extra_fields:
                value = get_path(raw, key, _MISSING)
                if value is not _MISSING:
                    extra[key] = value
            values["extra"] = extra

        converted = {}
        for key, value in values.items():
            converter = FIELD_CONVERTERS.get(key)
            try:
                converted[key] = converter(value) if converter else value
            except (TypeError, ValueError) as e:
                raise SourceSchemaError(
                    f"Cannot convert {entity_type.value}.{key} of record {raw_id}: {e}",
                    context={"entity_type": entity_type.value, "entity_id": str(raw_id), "field": key}
                )

        if entity_type == EntityType.ORGANIZATION and converted.get("parent_id") in _ROOT_PARENT_VALUES:
            converted["parent_id"] = None

        return entity_class(**converted)

    def to_raw(self, entity_type: EntityType, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Map an entity payload (id plus tracked fields) back to source keys."""
        mapping = self.mapping_for(entity_type)
        raw: Dict[str, Any] = {}
        for canonical, value in payload.items():
            key = mapping.source_key(canonical)
            target = raw
            parts = key.split(".")
            for part in parts[:-1]:
                target = target.setdefault(part, {})
            target[parts[-1]] = value
        return raw

    def to_entities(self, entity_type: EntityType, raws: List[Dict[str, Any]]) -> List[Entity]:
        return [self.to_entity(entity_type, raw) for raw in raws]
