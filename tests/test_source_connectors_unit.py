"""
Unit tests for the database, custom and collecting connectors and the
connector factory.
"""

from datetime import datetime

import pytest
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, create_engine, insert, text
from sqlalchemy.pool import StaticPool

from dirsync.sync.connectors import (
    CollectingTargetConfig,
    CollectingTargetConnector,
    ConnectorFactory,
    CustomSourceConfig,
    CustomSourceConnector,
    CustomSourceRegistry,
    DatabaseSourceConfig,
    DatabaseSourceConnector,
)
from dirsync.sync.entities import ChangeSet, ChangeType, EntitySet, EntityType, OperationType, Snapshot
from dirsync.sync.errors import ConfigurationError, SourceSchemaError
from dirsync.sync.transformer import EntityMapping

from conftest import org, user


# ============================================================================
# Database source
# ============================================================================

@pytest.fixture
def source_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata = MetaData()
    departments = Table(
        "departments", metadata,
        Column("dept_id", String(20), primary_key=True),
        Column("title", String(100)),
        Column("parent", String(20)),
        Column("modified", DateTime),
        Column("created", DateTime),
        Column("removed", Integer, default=0),
    )
    users = Table(
        "users", metadata,
        Column("id", String(20), primary_key=True),
        Column("username", String(100)),
        Column("email", String(100), nullable=True),
        Column("updated_at", DateTime),
    )
    metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(insert(departments), [
            {"dept_id": "d1", "title": "Head Office", "parent": "0", "modified": datetime(2024, 1, 1),
             "created": datetime(2023, 1, 1), "removed": 0},
            {"dept_id": "d2", "title": "Sales", "parent": "d1", "modified": datetime(2024, 1, 5),
             "created": datetime(2024, 1, 4), "removed": 0},
            {"dept_id": "d3", "title": "Legacy", "parent": "d1", "modified": datetime(2024, 1, 6),
             "created": datetime(2023, 1, 1), "removed": 1},
        ])
        conn.execute(insert(users), [
            {"id": "u1", "username": "alice", "email": "alice@example.com", "updated_at": datetime(2024, 1, 2)},
            {"id": "u2", "username": "bob", "email": None, "updated_at": datetime(2024, 1, 3)},
        ])
    yield engine
    engine.dispose()


def database_source(engine) -> DatabaseSourceConnector:
    config = DatabaseSourceConfig(
        type="database",
        url="sqlite://",
        tables={"organization": "departments", "user": "users"},
        mappings={
            "organization": EntityMapping(
                id_field="dept_id",
                field_map={"name": "title", "parent_id": "parent"},
                updated_at_field="modified",
                created_at_field="created",
                deleted_field="removed",
                deleted_value=1,
            )
        },
    )
    return DatabaseSourceConnector(config, engine=engine)


class TestDatabaseSourceConnector:
    """Reading entities from relational tables."""

    @pytest.mark.asyncio
    async def test_fetch_full(self, source_engine):
        connector = database_source(source_engine)
        async with connector:
            snapshot = await connector.fetch_full([EntityType.ORGANIZATION, EntityType.USER])

        assert set(snapshot.organizations) == {"d1", "d2", "d3"}
        assert snapshot.organizations["d1"].parent_id is None
        assert snapshot.organizations["d2"].name == "Sales"
        assert snapshot.organizations["d3"].deleted is True
        assert snapshot.users["u2"].email is None
        assert snapshot.cursor == "2024-01-06T00:00:00"

    @pytest.mark.asyncio
    async def test_fetch_full_with_filter(self, source_engine):
        connector = database_source(source_engine)
        snapshot = await connector.fetch_full([EntityType.USER], filter={"username": "bob", "unknown": 1})
        await connector.disconnect()
        assert list(snapshot.users) == ["u2"]

    @pytest.mark.asyncio
    async def test_fetch_changes_after_cursor(self, source_engine):
        connector = database_source(source_engine)
        changes = await connector.fetch_changes([EntityType.ORGANIZATION], cursor="2024-01-02T00:00:00")
        await connector.disconnect()

        kinds = [(c.change_type, c.entity_id) for c in changes.iter_changes()]
        assert kinds == [(ChangeType.CREATED, "d2"), (ChangeType.DELETED, "d3")]
        assert changes.cursor == "2024-01-06T00:00:00"

    @pytest.mark.asyncio
    async def test_fetch_changes_since(self, source_engine):
        connector = database_source(source_engine)
        changes = await connector.fetch_changes([EntityType.USER], since=datetime(2024, 1, 2, 12))
        await connector.disconnect()

        assert [(c.change_type, c.entity_id) for c in changes.iter_changes()] == [(ChangeType.UPDATED, "u2")]

    @pytest.mark.asyncio
    async def test_fetch_changes_needs_watermark(self, source_engine):
        connector = database_source(source_engine)
        with pytest.raises(SourceSchemaError):
            await connector.fetch_changes([EntityType.USER])

    @pytest.mark.asyncio
    async def test_missing_table(self, source_engine):
        connector = database_source(source_engine)
        with pytest.raises(SourceSchemaError) as exc_info:
            await connector.fetch_full([EntityType.MEMBERSHIP])
        assert exc_info.value.context["table"] == "memberships"

    @pytest.mark.asyncio
    async def test_injected_engine_is_not_disposed(self, source_engine):
        connector = database_source(source_engine)
        await connector.connect()
        await connector.disconnect()
        with source_engine.connect() as conn:
            assert conn.execute(text("SELECT COUNT(*) FROM users")).scalar() == 2


# ============================================================================
# Custom source
# ============================================================================

@pytest.fixture
def custom_handlers():
    names = []

    def register(name, fetch_full, fetch_changes=None):
        CustomSourceRegistry.register(name, fetch_full, fetch_changes)
        names.append(name)

    yield register
    for name in names:
        CustomSourceRegistry.unregister(name)


class TestCustomSourceConnector:
    """Application supplied feeds."""

    @pytest.mark.asyncio
    async def test_raw_records_go_through_mapper(self, custom_handlers):
        received = {}

        def fetch_full(entity_types, filter, options):
            received.update(filter=filter, options=options)
            return {
                "organizations": [{"id": "o1", "name": "Root"}],
                "users": [{"uid": "u1", "username": "alice"}],
                "cursor": "c-1",
            }

        custom_handlers("feed", fetch_full)
        connector = CustomSourceConnector(CustomSourceConfig(
            type="custom",
            handler="feed",
            options={"region": "emea"},
            mappings={"user": EntityMapping(id_field="uid")},
        ))
        snapshot = await connector.fetch_full([EntityType.ORGANIZATION, EntityType.USER], filter={"x": 1})

        assert snapshot.cursor == "c-1"
        assert snapshot.users["u1"].username == "alice"
        assert received == {"filter": {"x": 1}, "options": {"region": "emea"}}

    @pytest.mark.asyncio
    async def test_async_handler_returning_snapshot(self, custom_handlers):
        async def fetch_full(entity_types, filter, options):
            return Snapshot.from_entities([org("o1"), user("u1")])

        custom_handlers("async-feed", fetch_full)
        connector = CustomSourceConnector(CustomSourceConfig(type="custom", handler="async-feed"))
        snapshot = await connector.fetch_full(list(EntityType))
        assert snapshot.total() == 2

    @pytest.mark.asyncio
    async def test_changes_from_dict(self, custom_handlers):
        def fetch_changes(entity_types, since, cursor, options):
            assert cursor == "c-1"
            return {
                "created": {"user": [{"id": "u3", "username": "carol"}]},
                "updated": {"user": [user("u1", "alice")]},
                "deleted": {"user": ["u2"]},
                "cursor": "c-2",
            }

        custom_handlers("changes-feed", lambda *args: {}, fetch_changes)
        connector = CustomSourceConnector(CustomSourceConfig(type="custom", handler="changes-feed"))
        changes = await connector.fetch_changes([EntityType.USER], cursor="c-1")

        assert changes.cursor == "c-2"
        assert [(c.change_type, c.entity_id) for c in changes.iter_changes()] == [
            (ChangeType.CREATED, "u3"),
            (ChangeType.UPDATED, "u1"),
            (ChangeType.DELETED, "u2"),
        ]

    @pytest.mark.asyncio
    async def test_changeset_passthrough(self, custom_handlers):
        expected = ChangeSet(cursor="c-9")
        custom_handlers("cs-feed", lambda *args: {}, lambda *args: expected)
        connector = CustomSourceConnector(CustomSourceConfig(type="custom", handler="cs-feed"))
        assert await connector.fetch_changes([EntityType.USER]) is expected

    @pytest.mark.asyncio
    async def test_incremental_not_supported(self, custom_handlers):
        custom_handlers("full-only", lambda *args: {})
        connector = CustomSourceConnector(CustomSourceConfig(type="custom", handler="full-only"))
        with pytest.raises(ConfigurationError):
            await connector.fetch_changes([EntityType.USER])

    @pytest.mark.asyncio
    async def test_wrong_entity_kind_is_rejected(self, custom_handlers):
        custom_handlers("mixed", lambda *args: {"users": [org("o1")]})
        connector = CustomSourceConnector(CustomSourceConfig(type="custom", handler="mixed"))
        with pytest.raises(SourceSchemaError):
            await connector.fetch_full([EntityType.USER])

    @pytest.mark.asyncio
    async def test_unsupported_return_type(self, custom_handlers):
        custom_handlers("broken", lambda *args: [1, 2, 3])
        connector = CustomSourceConnector(CustomSourceConfig(type="custom", handler="broken"))
        with pytest.raises(SourceSchemaError):
            await connector.fetch_full([EntityType.USER])

    def test_unknown_handler(self):
        with pytest.raises(ConfigurationError):
            CustomSourceConnector(CustomSourceConfig(type="custom", handler="does-not-exist"))


# ============================================================================
# Collecting target
# ============================================================================

class TestCollectingTargetConnector:
    """Target that records operations."""

    @pytest.mark.asyncio
    async def test_operations_update_view(self):
        target = CollectingTargetConnector()
        await target.create(EntityType.ORGANIZATION, {"id": "o1", "name": "Root"}, operation_id="op-1")
        await target.update(EntityType.ORGANIZATION, "o1", {"id": "o1", "name": "HQ"}, operation_id="op-2")
        await target.create(EntityType.USER, {"id": "u1", "username": "alice"}, operation_id="op-3")
        await target.delete(EntityType.USER, "u1", operation_id="op-4")

        view = target.view()
        assert view.organizations["o1"].name == "HQ"
        assert "u1" not in view.users

        result = target.collected_result()
        assert result["counts"] == {"create": 2, "update": 1, "delete": 1}
        assert result["directory"] == {"organization": 1, "user": 0, "membership": 0}
        assert [op["status"] for op in result["operations"]] == ["created", "updated", "created", "deleted"]

    @pytest.mark.asyncio
    async def test_duplicate_operation_id(self):
        target = CollectingTargetConnector()
        first = await target.create(EntityType.USER, {"id": "u1", "username": "a"}, operation_id="op-1")
        second = await target.create(EntityType.USER, {"id": "u1", "username": "a"}, operation_id="op-1")

        assert first["status"] == "created"
        assert second["status"] == "duplicate"
        assert target.call_count == 2
        assert len(target.operations) == 1

    @pytest.mark.asyncio
    async def test_baseline_and_existing_create(self):
        target = CollectingTargetConnector(CollectingTargetConfig(
            type="collecting",
            baseline={"user": [{"id": "u1", "username": "alice"}]},
        ))
        result = await target.create(EntityType.USER, {"id": "u1", "username": "alice"}, operation_id="op-1")
        absent = await target.delete(EntityType.USER, "ghost", operation_id="op-2")

        assert result["status"] == "exists"
        assert absent["status"] == "absent"
        current = await target.fetch_current([EntityType.USER])
        assert list(current.users) == ["u1"]

    @pytest.mark.asyncio
    async def test_apply_dispatch(self):
        target = CollectingTargetConnector()
        await target.apply(EntityType.ORGANIZATION, OperationType.CREATE, "o1", {"id": "o1", "name": "A"})
        await target.apply(EntityType.ORGANIZATION, OperationType.RENAME, "o1", {"id": "o1", "name": "B"})
        assert target.view().organizations["o1"].name == "B"

    def test_restore_operations(self):
        target = CollectingTargetConnector()
        target.restore_operations([
            {"operation_id": "op-1", "entity_type": "user", "entity_id": "u1",
             "operation_type": "create", "payload": {"id": "u1", "username": "alice"}},
        ])
        assert target.view().users["u1"].username == "alice"
        assert target.operations[0]["operation_id"] == "op-1"

    @pytest.mark.asyncio
    async def test_seed_known_state(self):
        target = CollectingTargetConnector()
        target.seed_known_state(EntitySet.from_entities([org("root"), user("u1", "alice")]))

        result = await target.update(EntityType.USER, "u1", {"id": "u1", "email": "a@example.com"}, operation_id="op-1")

        assert result["status"] == "updated"
        assert target.view().users["u1"].username == "alice"
        assert set(target.view().organizations) == {"root"}

    @pytest.mark.asyncio
    async def test_seed_ignored_once_view_is_known(self):
        with_baseline = CollectingTargetConnector(CollectingTargetConfig(
            type="collecting",
            baseline={"user": [{"id": "u1", "username": "alice"}]},
        ))
        with_baseline.seed_known_state(EntitySet.from_entities([user("u2", "bob")]))
        used = CollectingTargetConnector()
        await used.create(EntityType.USER, {"id": "u1", "username": "alice"}, operation_id="op-1")
        used.seed_known_state(EntitySet.from_entities([user("u2", "bob")]))

        assert list(with_baseline.view().users) == ["u1"]
        assert list(used.view().users) == ["u1"]


# ============================================================================
# Factory
# ============================================================================

class TestConnectorFactory:
    def test_registered_types(self):
        assert {"database", "api", "custom"} <= set(ConnectorFactory.source_types())
        assert {"api", "collecting"} <= set(ConnectorFactory.target_types())

    def test_create_target_from_dict(self):
        target = ConnectorFactory.create_target({"type": "collecting"})
        assert isinstance(target, CollectingTargetConnector)

    def test_create_source_from_dict(self):
        source = ConnectorFactory.create_source({"type": "database", "url": "sqlite://"})
        assert isinstance(source, DatabaseSourceConnector)

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ConnectorFactory.create_source({"type": "ldap"})
        assert "database" in exc_info.value.context["available"]

    def test_invalid_config(self):
        with pytest.raises(ConfigurationError):
            ConnectorFactory.create_source({"type": "database"})
