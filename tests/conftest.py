"""
Shared fixtures for the directory sync test suite.
"""

from datetime import datetime
from typing import List, Optional

import pytest

from dirsync.database.connection import DatabaseManager
from dirsync.sync.entities import EntitySet, Membership, Organization, Scope, User
from dirsync.sync.store import IntermediateStore


@pytest.fixture
def db():
    """In-memory SQLite database with the sync schema."""
    manager = DatabaseManager("sqlite://")
    manager.create_tables()
    yield manager
    manager.close()


@pytest.fixture
def store(db):
    return IntermediateStore(db)


@pytest.fixture
def scope():
    return Scope("tenant-a", "project-1")


@pytest.fixture
def other_scope():
    return Scope("tenant-b", "project-1")


def org(org_id: str, parent_id: Optional[str] = None, name: Optional[str] = None, **kwargs) -> Organization:
    return Organization(id=org_id, parent_id=parent_id, name=name or f"Org {org_id}", **kwargs)


def user(user_id: str, username: Optional[str] = None, **kwargs) -> User:
    return User(id=user_id, username=username or f"user-{user_id}", **kwargs)


def membership(membership_id: str, org_id: str, user_id: str, **kwargs) -> Membership:
    return Membership(id=membership_id, org_id=org_id, user_id=user_id, **kwargs)


def entity_set(*entities) -> EntitySet:
    return EntitySet.from_entities(list(entities))


def sample_directory() -> List:
    """Small tree: root -> sales -> emea, root -> hr; two users, two memberships."""
    stamp = datetime(2024, 1, 1, 12, 0, 0)
    return [
        org("root", source_updated_at=stamp),
        org("sales", "root", source_updated_at=stamp),
        org("emea", "sales", source_updated_at=stamp),
        org("hr", "root", source_updated_at=stamp),
        user("u1", "alice", email="alice@example.com", source_updated_at=stamp),
        user("u2", "bob", email="bob@example.com", source_updated_at=stamp),
        membership("m1", "emea", "u1", is_primary=True, source_updated_at=stamp),
        membership("m2", "hr", "u2", is_primary=True, source_updated_at=stamp),
    ]
