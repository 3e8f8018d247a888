"""
Directory Entities.

Normalized domain objects shared by every layer of the sync engine:
organizations, users and memberships, plus the containers adapters
exchange with the task manager (entity sets, snapshots and changesets).
"""

import copy
import hashlib
import json
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Set, Tuple, Union

from dirsync.sync.errors import SourceSchemaError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every persisted datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Coerce a source value into a naive UTC datetime.

    Accepts datetimes, ISO-8601 strings and epoch seconds or milliseconds.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class EntityType(str, Enum):
    """Directory entity types."""
    ORGANIZATION = "organization"
    USER = "user"
    MEMBERSHIP = "membership"


class OperationType(str, Enum):
    """Operations the diff engine emits against the target."""
    CREATE = "create"
    UPDATE = "update"
    MOVE = "move"
    RENAME = "rename"
    DELETE = "delete"


class ChangeType(str, Enum):
    """Kinds of incremental change reported by a source."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class Scope:
    """Tenant/project pair every stored row and operation belongs to."""
    tenant_id: str
    project_id: str

    @property
    def key(self) -> str:
        return f"{self.tenant_id}.{self.project_id}"

    def to_dict(self) -> Dict[str, str]:
        return {"tenant_id": self.tenant_id, "project_id": self.project_id}


# ============================================================================
# Entities
# ============================================================================

_DATETIME_FIELDS = ("source_updated_at", "synced_at", "deleted_at")


class _EntityMixin:
    """Hashing and (de)serialization shared by the entity dataclasses."""

    entity_type: ClassVar[EntityType]
    tracked_fields: ClassVar[Tuple[str, ...]]

    @property
    def is_active(self) -> bool:
        return not self.deleted

    def tracked_values(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.tracked_fields}

    def content_hash(self) -> str:
        """Compute hash of tracked fields for change detection."""
        data_str = json.dumps(self.tracked_values(), sort_keys=True, default=str)
        return hashlib.sha256(data_str.encode()).hexdigest()

    def to_payload(self) -> Dict[str, Any]:
        """Entity id plus tracked fields, as sent to targets."""
        payload = {"id": self.id}
        payload.update(copy.deepcopy(self.tracked_values()))
        return payload

    def to_dict(self) -> Dict[str, Any]:
        """Convert entity to dictionary."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _DATETIME_FIELDS:
                value = format_datetime(value)
            elif isinstance(value, dict):
                value = copy.deepcopy(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create entity from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key in _DATETIME_FIELDS:
                value = parse_datetime(value)
            kwargs[key] = value
        if kwargs.get("extra") is None:
            kwargs.pop("extra", None)
        return cls(**kwargs)


@dataclass
class Organization(_EntityMixin):
    """Node of the organization tree."""
    id: str
    name: str = ""
    parent_id: Optional[str] = None
    code: Optional[str] = None
    sort_order: int = 0
    status: str = "active"
    extra: Dict[str, Any] = field(default_factory=dict)
    source_updated_at: Optional[datetime] = None
    synced: bool = False
    synced_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None

    entity_type: ClassVar[EntityType] = EntityType.ORGANIZATION
    tracked_fields: ClassVar[Tuple[str, ...]] = (
        "name", "parent_id", "code", "sort_order", "status", "extra"
    )


@dataclass
class User(_EntityMixin):
    """Directory user."""
    id: str
    username: str = ""
    display_name: Optional[str] = None
    email: Optional[str] = None
    mobile: Optional[str] = None
    status: str = "active"
    extra: Dict[str, Any] = field(default_factory=dict)
    source_updated_at: Optional[datetime] = None
    synced: bool = False
    synced_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None

    entity_type: ClassVar[EntityType] = EntityType.USER
    tracked_fields: ClassVar[Tuple[str, ...]] = (
        "username", "display_name", "email", "mobile", "status", "extra"
    )


@dataclass
class Membership(_EntityMixin):
    """Link between a user and an organization."""
    id: str
    org_id: str = ""
    user_id: str = ""
    is_primary: bool = False
    position: Optional[str] = None
    source_updated_at: Optional[datetime] = None
    synced: bool = False
    synced_at: Optional[datetime] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None

    entity_type: ClassVar[EntityType] = EntityType.MEMBERSHIP
    tracked_fields: ClassVar[Tuple[str, ...]] = (
        "org_id", "user_id", "is_primary", "position"
    )


Entity = Union[Organization, User, Membership]

ENTITY_CLASSES: Dict[EntityType, type] = {
    EntityType.ORGANIZATION: Organization,
    EntityType.USER: User,
    EntityType.MEMBERSHIP: Membership,
}


def entity_from_dict(entity_type: EntityType, data: Dict[str, Any]) -> Entity:
    return ENTITY_CLASSES[EntityType(entity_type)].from_dict(data)


# ============================================================================
# Containers
# ============================================================================

@dataclass
class EntitySet:
    """Entities of every type keyed by stable id."""
    organizations: Dict[str, Organization] = field(default_factory=dict)
    users: Dict[str, User] = field(default_factory=dict)
    memberships: Dict[str, Membership] = field(default_factory=dict)

    def of_type(self, entity_type: EntityType) -> Dict[str, Entity]:
        entity_type = EntityType(entity_type)
        if entity_type == EntityType.ORGANIZATION:
            return self.organizations
        if entity_type == EntityType.USER:
            return self.users
        return self.memberships

    def active(self, entity_type: EntityType) -> Dict[str, Entity]:
        """Entities of one type that are not soft-deleted."""
        return {
            entity_id: entity
            for entity_id, entity in self.of_type(entity_type).items()
            if not entity.deleted
        }

    def add(self, entity: Entity) -> None:
        self.of_type(entity.entity_type)[entity.id] = entity

    def get(self, entity_type: EntityType, entity_id: str) -> Optional[Entity]:
        return self.of_type(entity_type).get(entity_id)

    def total(self) -> int:
        return len(self.organizations) + len(self.users) + len(self.memberships)

    def counts(self) -> Dict[str, int]:
        return {
            entity_type.value: len(self.of_type(entity_type))
            for entity_type in EntityType
        }

    def copy(self) -> "EntitySet":
        return EntitySet(
            organizations=copy.deepcopy(self.organizations),
            users=copy.deepcopy(self.users),
            memberships=copy.deepcopy(self.memberships),
        )

    def restricted_to(self, entity_types: List[EntityType]) -> "EntitySet":
        """Copy holding only the requested entity types."""
        wanted = {EntityType(t) for t in entity_types}
        result = EntitySet()
        for entity_type in wanted:
            result.of_type(entity_type).update(copy.deepcopy(self.of_type(entity_type)))
        return result

    def validate(self, entity_types: Optional[List[EntityType]] = None) -> None:
        """
        Check the structural invariants of a directory snapshot.

        Only non-deleted entities participate. Membership references are
        checked against the entity types that were actually read.

        Args:
            entity_types: Entity types present in the snapshot (default all)

        Raises:
            SourceSchemaError: On a dangling parent or membership reference,
                a duplicate username, a duplicate (org, user) membership or
                more than one primary membership per user
        """
        checked = {EntityType(t) for t in (entity_types or list(EntityType))}
        orgs = self.active(EntityType.ORGANIZATION)
        users = self.active(EntityType.USER)

        for org in orgs.values():
            if org.parent_id and org.parent_id not in orgs:
                raise SourceSchemaError(
                    f"Organization {org.id} references unknown parent {org.parent_id}",
                    context={"entity_id": org.id, "parent_id": org.parent_id}
                )

        usernames: Dict[str, str] = {}
        for user in users.values():
            other = usernames.get(user.username)
            if other is not None:
                raise SourceSchemaError(
                    f"Duplicate username {user.username!r} on users {other} and {user.id}",
                    context={"username": user.username, "entity_ids": [other, user.id]}
                )
            usernames[user.username] = user.id

        pairs: Set[Tuple[str, str]] = set()
        primaries: Dict[str, str] = {}
        for membership in self.active(EntityType.MEMBERSHIP).values():
            if (
                (EntityType.ORGANIZATION in checked and membership.org_id not in orgs)
                or (EntityType.USER in checked and membership.user_id not in users)
            ):
                raise SourceSchemaError(
                    f"Membership {membership.id} references unknown "
                    f"organization {membership.org_id} or user {membership.user_id}",
                    context={"entity_id": membership.id}
                )
            pair = (membership.org_id, membership.user_id)
            if pair in pairs:
                raise SourceSchemaError(
                    f"Duplicate membership of user {membership.user_id} in {membership.org_id}",
                    context={"entity_id": membership.id}
                )
            pairs.add(pair)
            if membership.is_primary:
                if membership.user_id in primaries:
                    raise SourceSchemaError(
                        f"User {membership.user_id} has more than one primary membership",
                        context={"entity_ids": [primaries[membership.user_id], membership.id]}
                    )
                primaries[membership.user_id] = membership.id

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "organizations": [e.to_dict() for e in self.organizations.values()],
            "users": [e.to_dict() for e in self.users.values()],
            "memberships": [e.to_dict() for e in self.memberships.values()],
        }

    @classmethod
    def from_entities(cls, entities: List[Entity]) -> "EntitySet":
        result = cls()
        for entity in entities:
            result.add(entity)
        return result


@dataclass
class Snapshot(EntitySet):
    """Complete source read plus the watermark taken after it."""
    cursor: Optional[str] = None


@dataclass
class EntityChange:
    """One incremental change to one entity."""
    entity_type: EntityType
    change_type: ChangeType
    entity_id: str
    entity: Optional[Entity] = None
    changed_at: Optional[datetime] = None


@dataclass
class ChangeSet:
    """Incremental changes per entity type plus the next cursor."""
    created: Dict[EntityType, List[Entity]] = field(default_factory=dict)
    updated: Dict[EntityType, List[Entity]] = field(default_factory=dict)
    deleted: Dict[EntityType, List[str]] = field(default_factory=dict)
    cursor: Optional[str] = None

    def add_created(self, entity: Entity) -> None:
        self.created.setdefault(entity.entity_type, []).append(entity)

    def add_updated(self, entity: Entity) -> None:
        self.updated.setdefault(entity.entity_type, []).append(entity)

    def add_deleted(self, entity_type: EntityType, entity_id: str) -> None:
        self.deleted.setdefault(EntityType(entity_type), []).append(entity_id)

    def iter_changes(self) -> Iterator[EntityChange]:
        """Yield creates and updates before deletes, in entity-type order."""
        for entity_type in EntityType:
            for entity in self.created.get(entity_type, []):
                yield EntityChange(entity_type, ChangeType.CREATED, entity.id, entity, entity.source_updated_at)
            for entity in self.updated.get(entity_type, []):
                yield EntityChange(entity_type, ChangeType.UPDATED, entity.id, entity, entity.source_updated_at)
        for entity_type in EntityType:
            for entity_id in self.deleted.get(entity_type, []):
                yield EntityChange(entity_type, ChangeType.DELETED, entity_id)

    def is_empty(self) -> bool:
        return not any(
            self.created.get(t) or self.updated.get(t) or self.deleted.get(t)
            for t in EntityType
        )

    def count(self) -> int:
        return sum(1 for _ in self.iter_changes())
