"""Tests for the computer group tree."""

import json

import pytest

from patchgate.errors import ConfigError
from patchgate.groups import GroupTree, load_tree, plan_import


SOURCE = [
    {"id": "1", "name": "All Computers", "parent_id": None},
    {"id": "2", "name": "Workstations", "parent_id": "1"},
    {"id": "3", "name": "Servers", "parent_id": "1"},
    {"id": "4", "name": "Pilot", "parent_id": "2"},
    {"id": "5", "name": "Accounting", "parent_id": "2"},
    {"id": "6", "name": "SQL", "parent_id": "3"},
]


class TestFromRecords:
    """Tests for building the tree."""

    def test_builds_hierarchy(self):
        tree = GroupTree.from_records(SOURCE)
        assert len(tree) == 6
        assert [root.name for root in tree.roots] == ["All Computers"]
        assert [child.name for child in tree.nodes["2"].children] == ["Accounting", "Pilot"]

    def test_duplicate_id(self):
        with pytest.raises(ConfigError):
            GroupTree.from_records(SOURCE + [{"id": "1", "name": "Again"}])

    def test_unknown_parent(self):
        with pytest.raises(ConfigError):
            GroupTree.from_records([{"id": "1", "name": "Orphan", "parent_id": "99"}])

    def test_cycle(self):
        records = [
            {"id": "1", "name": "Root", "parent_id": None},
            {"id": "2", "name": "A", "parent_id": "3"},
            {"id": "3", "name": "B", "parent_id": "2"},
        ]
        with pytest.raises(ConfigError) as exc_info:
            GroupTree.from_records(records)
        assert "cycle" in str(exc_info.value)

    def test_malformed_record(self):
        with pytest.raises(ConfigError):
            GroupTree.from_records([{"name": "no id"}])

    def test_integer_ids(self):
        tree = GroupTree.from_records([
            {"id": 1, "name": "Root", "parent_id": None},
            {"id": 2, "name": "Child", "parent_id": 1},
        ])
        assert tree.path("2") == ("Root", "Child")


class TestWalk:
    """Pre-order traversal, parents first, siblings by name."""

    def test_walk_order(self):
        tree = GroupTree.from_records(SOURCE)
        assert [(depth, node.name) for depth, node in tree.walk()] == [
            (0, "All Computers"),
            (1, "Servers"),
            (2, "SQL"),
            (1, "Workstations"),
            (2, "Accounting"),
            (2, "Pilot"),
        ]

    def test_deep_tree_does_not_recurse(self):
        records = [{"id": "0", "name": "g0", "parent_id": None}]
        records += [{"id": str(i), "name": f"g{i}", "parent_id": str(i - 1)} for i in range(1, 5000)]
        tree = GroupTree.from_records(records)
        assert sum(1 for _ in tree.walk()) == 5000

    def test_to_records_round_trip(self):
        tree = GroupTree.from_records(SOURCE)
        rebuilt = GroupTree.from_records(tree.to_records())
        assert [n.name for _, n in rebuilt.walk()] == [n.name for _, n in tree.walk()]

    def test_path(self):
        tree = GroupTree.from_records(SOURCE)
        assert tree.path("4") == ("All Computers", "Workstations", "Pilot")

    def test_path_unknown(self):
        with pytest.raises(KeyError):
            GroupTree.from_records(SOURCE).path("99")


class TestPlanImport:
    """Missing groups, matched by path, parents first."""

    def test_missing_groups(self):
        source = GroupTree.from_records(SOURCE)
        target = GroupTree.from_records([
            {"id": "a", "name": "All Computers", "parent_id": None},
            {"id": "b", "name": "Workstations", "parent_id": "a"},
        ])

        missing = plan_import(source, target)

        assert [source.path(n.id) for n in missing] == [
            ("All Computers", "Servers"),
            ("All Computers", "Servers", "SQL"),
            ("All Computers", "Workstations", "Accounting"),
            ("All Computers", "Workstations", "Pilot"),
        ]

    def test_same_name_under_other_parent_is_missing(self):
        source = GroupTree.from_records(SOURCE)
        target = GroupTree.from_records(SOURCE[:3] + [{"id": "9", "name": "Pilot", "parent_id": "3"}])

        missing = plan_import(source, target)

        names = [source.path(n.id) for n in missing]
        assert ("All Computers", "Workstations", "Pilot") in names

    def test_nothing_missing(self):
        tree = GroupTree.from_records(SOURCE)
        assert plan_import(tree, tree) == []


class TestLoadTree:
    """Tests for reading record files."""

    def test_load(self, tmp_path):
        path = tmp_path / "groups.json"
        path.write_text(json.dumps(SOURCE))
        assert len(load_tree(path)) == 6

    def test_not_a_list(self, tmp_path):
        path = tmp_path / "groups.json"
        path.write_text(json.dumps({"groups": SOURCE}))
        with pytest.raises(ConfigError):
            load_tree(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_tree(tmp_path / "absent.json")
