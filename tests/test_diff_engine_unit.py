"""
Unit tests for the diff engine.

Covers classification, phase ordering, organization tree ordering, cycle
detection, id restriction and agreement of the two classification
strategies.
"""

import pytest

from dirsync.sync.diff import DiffEngine, InMemoryDiffStrategy, Phase, SqlJoinDiffStrategy, operation_id
from dirsync.sync.diff.hierarchy import compute_depths
from dirsync.sync.entities import EntitySet, EntityType, OperationType
from dirsync.sync.errors import CyclicHierarchy

from conftest import entity_set, membership, org, sample_directory, user


def ops_summary(operations):
    return [(op.entity_type.value, op.entity_id, op.operation_type.value) for op in operations]


@pytest.fixture
def engine():
    return DiffEngine()


class TestClassification:
    """Create, delete, move, rename and update detection."""

    def test_identical_sets_produce_nothing(self, engine):
        directory = entity_set(*sample_directory())
        assert engine.diff(directory, directory.copy()) == []

    def test_single_missing_child_is_one_create(self, engine):
        local = entity_set(org("A"), org("B", "A"))
        remote = entity_set(org("A"))

        operations = engine.diff(local, remote)

        assert ops_summary(operations) == [("organization", "B", "create")]
        op = operations[0]
        assert op.data["payload"]["parent_id"] == "A"
        assert op.data["previous"] is None
        assert op.priority == Phase.ORGANIZATION_UPSERT

    def test_soft_deleted_local_user_is_deleted_on_target(self, engine):
        local = entity_set(user("U", "alice", deleted=True))
        remote = entity_set(user("U", "alice"))

        operations = engine.diff(local, remote)

        assert ops_summary(operations) == [("user", "U", "delete")]
        assert operations[0].data["payload"] is None
        assert operations[0].data["previous"]["username"] == "alice"

    def test_soft_deleted_remote_counts_as_absent(self, engine):
        local = entity_set(user("U", "alice"))
        remote = entity_set(user("U", "alice", deleted=True))
        assert ops_summary(engine.diff(local, remote)) == [("user", "U", "create")]

    def test_organization_move_rename_and_update(self, engine):
        local = entity_set(org("root"), org("hq"), org("x", "hq", name="New name", code="X2"))
        remote = entity_set(org("root"), org("hq"), org("x", "root", name="Old name", code="X1"))

        operations = engine.diff(local, remote)

        assert ops_summary(operations) == [
            ("organization", "x", "move"),
            ("organization", "x", "rename"),
            ("organization", "x", "update"),
        ]
        assert operations[0].data["previous"]["parent_id"] == "root"

    def test_user_field_change_is_update(self, engine):
        local = entity_set(user("u1", "alice", email="new@example.com"))
        remote = entity_set(user("u1", "alice", email="old@example.com"))
        operations = engine.diff(local, remote)
        assert ops_summary(operations) == [("user", "u1", "update")]
        assert operations[0].data["payload"]["email"] == "new@example.com"

    def test_bookkeeping_fields_do_not_cause_updates(self, engine):
        local = entity_set(user("u1", "alice", synced=True))
        remote = entity_set(user("u1", "alice"))
        assert engine.diff(local, remote) == []

    def test_entity_type_restriction(self, engine):
        local = entity_set(*sample_directory())
        operations = engine.diff(local, EntitySet(), entity_types=[EntityType.USER])
        assert {op.entity_type for op in operations} == {EntityType.USER}


class TestOrdering:
    """Phase order and hierarchy order."""

    def test_phase_order(self, engine):
        local = entity_set(
            org("root"), org("new", "root"),
            user("u-new", "new-user"),
            membership("m-new", "new", "u-new"),
        )
        remote = entity_set(
            org("root"), org("gone", "root"),
            user("u-gone", "old-user"),
            membership("m-gone", "gone", "u-gone"),
        )

        operations = engine.diff(local, remote)

        assert ops_summary(operations) == [
            ("organization", "new", "create"),
            ("user", "u-new", "create"),
            ("membership", "m-gone", "delete"),
            ("membership", "m-new", "create"),
            ("user", "u-gone", "delete"),
            ("organization", "gone", "delete"),
        ]
        assert [op.priority for op in operations] == [1, 2, 3, 4, 5, 6]
        assert [op.sequence for op in operations] == list(range(6))

    def test_creates_are_top_down(self, engine):
        local = entity_set(org("c", "b"), org("b", "a"), org("a"), org("d", "a"))

        operations = engine.diff(local, EntitySet())

        assert [op.entity_id for op in operations] == ["a", "b", "d", "c"]
        assert [op.depth for op in operations] == [0, 1, 1, 2]

    def test_sort_order_within_level(self, engine):
        local = entity_set(org("root"), org("z", "root", sort_order=1), org("a", "root", sort_order=2))
        operations = engine.diff(local, EntitySet())
        assert [op.entity_id for op in operations] == ["root", "z", "a"]

    def test_deletes_are_bottom_up(self, engine):
        remote = entity_set(org("a"), org("b", "a"), org("c", "b"))
        operations = engine.diff(EntitySet(), remote)
        assert [op.entity_id for op in operations] == ["c", "b", "a"]

    def test_batches_follow_levels(self, engine):
        local = entity_set(org("a"), org("b", "a"), org("c", "a"), user("u1"), user("u2"))

        operations = engine.diff(local, EntitySet())

        batches = {op.entity_id: op.batch for op in operations}
        assert batches["a"] == 0
        assert batches["b"] == batches["c"] == 1
        assert batches["u1"] == batches["u2"] == 2

    def test_parent_created_before_child_when_child_is_moved(self, engine):
        local = entity_set(org("root"), org("new-parent", "root"), org("child", "new-parent"))
        remote = entity_set(org("root"), org("child", "root"))

        operations = engine.diff(local, remote)

        assert ops_summary(operations) == [
            ("organization", "new-parent", "create"),
            ("organization", "child", "move"),
        ]


class TestHierarchy:
    def test_depths(self):
        orgs = entity_set(org("a"), org("b", "a"), org("c", "b")).organizations
        assert compute_depths(orgs) == {"a": 0, "b": 1, "c": 2}

    def test_orphan_counts_as_root(self):
        orgs = entity_set(org("a", "outside")).organizations
        assert compute_depths(orgs) == {"a": 0}

    def test_cycle_raises(self):
        orgs = entity_set(org("root"), org("a", "b"), org("b", "a")).organizations
        with pytest.raises(CyclicHierarchy) as exc_info:
            compute_depths(orgs, "remote")
        assert exc_info.value.context == {"side": "remote", "entity_ids": ["a", "b"]}

    def test_cycle_in_diff_input(self, engine):
        local = entity_set(org("a", "b"), org("b", "a"))
        with pytest.raises(CyclicHierarchy):
            engine.diff(local, EntitySet())


class TestOnlyIds:
    def test_restricts_operations_but_keeps_depths(self, engine):
        local = entity_set(org("a"), org("b", "a"), org("c", "b"), user("u1"), user("u2"))

        operations = engine.diff(local, EntitySet(), only_ids={"organization": ["c"], "user": ["u2"]})

        assert ops_summary(operations) == [("organization", "c", "create"), ("user", "u2", "create")]
        assert operations[0].depth == 2

    def test_missing_type_means_nothing(self, engine):
        local = entity_set(user("u1"))
        assert engine.diff(local, EntitySet(), only_ids={}) == []


class TestStrategies:
    """Both classification strategies agree."""

    def test_sql_join_matches_memory(self):
        local = entity_set(
            org("root"), org("a", "root", name="A2"), org("b", "a", code="B2"), org("new", "root"),
            user("u1", "alice", email="a@example.com"), user("u3", "carol"),
            membership("m1", "a", "u1", is_primary=True), membership("m3", "new", "u3"),
        )
        remote = entity_set(
            org("root"), org("a", "root", name="A1"), org("b", "root", code="B1"), org("old", "root"),
            user("u1", "alice"), user("u2", "bob"),
            membership("m1", "a", "u1"), membership("m2", "old", "u2"),
        )
        engine = DiffEngine()

        memory = engine.diff(local, remote, strategy=InMemoryDiffStrategy())
        joined = engine.diff(local, remote, strategy=SqlJoinDiffStrategy())

        assert ops_summary(memory) == ops_summary(joined)
        assert [op.data for op in memory] == [op.data for op in joined]

    def test_threshold_selects_join_strategy(self):
        engine = DiffEngine(large_dataset_threshold=3)
        small = entity_set(user("u1"))
        large = entity_set(*sample_directory())
        assert engine.select_strategy(small, EntitySet()).name == "memory"
        assert engine.select_strategy(large, EntitySet()).name == "sql_join"


class TestOperationId:
    def test_deterministic(self):
        first = operation_id("task-1", EntityType.USER, "u1", OperationType.CREATE)
        assert first == operation_id("task-1", "user", "u1", "create")
        assert first != operation_id("task-2", EntityType.USER, "u1", OperationType.CREATE)
        assert len(first) == 40
