"""
Tests for algorithm.proctree - tree building and the traversal toolkit
"""

from __future__ import annotations

import pytest

from agent.records import parse_record
from algorithm.errors import CorruptedDataError
from algorithm.proctree import (
    ProcessTree,
    build_tree,
    clone_subtree,
    count_nodes,
    depth_first,
    dump_tree,
    height,
    image_name,
    level_histogram,
    prune_clone,
    tree_to_dict,
    walk,
)


def _proc(oid, pid, ppid, image="x.exe", created=0, main=False):
    return {
        "OID": oid,
        "ProcessID": pid,
        "ParentPID": ppid,
        "Image": f"C:\\Windows\\{image}",
        "ProcessType": "Main process" if main else "",
        "CreationTimestamp": created,
    }


def _build(processes, incidents=None, uuid="u-1") -> ProcessTree:
    return build_tree(
        parse_record({"UUID": uuid, "Processes": processes, "Incidents": incidents or []})
    )


def _images(nodes):
    return [image_name(n.image) for n in nodes]


class TestBuildTree:
    def test_missing_main_process_is_corrupted(self):
        with pytest.raises(CorruptedDataError):
            _build([_proc("a", 1, 0), _proc("b", 2, 1)])

    def test_root_does_not_need_to_come_first(self):
        tree = _build([_proc("child", 20, 10, "child.exe"), _proc("root", 10, 1, "root.exe", main=True)])
        assert tree.root.oid == "root"
        assert [c.oid for c in tree.root.children] == ["child"]
        assert tree.node("child").parent_oid == "root"

    def test_children_sorted_newest_first(self):
        tree = _build(
            [
                _proc("r", 1, 0, "r.exe", main=True),
                _proc("old", 2, 1, "old.exe", created=10),
                _proc("new", 3, 1, "new.exe", created=30),
                _proc("mid", 4, 1, "mid.exe", created=20),
            ]
        )
        assert [c.oid for c in tree.root.children] == ["new", "mid", "old"]

    def test_incident_techniques_are_unioned(self):
        tree = _build(
            [_proc("r", 1, 0, main=True), _proc("c", 2, 1)],
            incidents=[
                {"ProcessOID": "c", "MitreAttacks": ["T1059", "T1105"]},
                {"ProcessOID": "c", "MitreAttacks": ["T1105", "T1547"]},
                {"ProcessOID": "r", "MitreAttacks": []},
                {"ProcessOID": "ghost", "MitreAttacks": ["T1000"]},
            ],
        )
        assert tree.node("c").techniques == {"T1059", "T1105", "T1547"}
        assert tree.node("r").techniques == set()

    def test_orphans_are_indexed_but_unreachable(self, caplog):
        with caplog.at_level("WARNING", logger="prockin.proctree"):
            tree = _build(
                [_proc("r", 1, 0, main=True), _proc("c", 2, 1), _proc("lost", 9, 777)]
            )
        assert tree.node("lost") is not None
        assert tree.orphans == ["lost"]
        assert [n.oid for n in tree.depth_first()] == ["r", "c"]
        assert "not reachable" in caplog.text

    def test_pid_reuse_links_to_most_recent_earlier_parent(self):
        tree = _build(
            [
                _proc("r", 1, 0, main=True, created=0),
                _proc("first200", 200, 1, created=10),
                _proc("branch", 300, 1, created=5),
                _proc("second200", 200, 300, created=50),
                _proc("late_child", 400, 200, created=60),
                _proc("early_child", 500, 200, created=20),
            ]
        )
        assert len(tree.nodes_with_pid(200)) == 2
        assert tree.node("late_child").parent_oid == "second200"
        assert tree.node("early_child").parent_oid == "first200"
        assert tree.orphans == []

    def test_duplicate_oid_keeps_first(self):
        tree = _build(
            [_proc("r", 1, 0, "r.exe", main=True), _proc("c", 2, 1, "a.exe"), _proc("c", 3, 1, "b.exe")]
        )
        assert image_name(tree.node("c").image) == "a.exe"
        assert tree.size == 2

    def test_nodes_at_level(self, make_tree):
        tree = make_tree(("r.exe", set(), [("a.exe", set(), ["x.exe", "y.exe"]), "b.exe"]))
        assert tree.nodes_at_level == {1: 1, 2: 2, 3: 2}


class TestTraversal:
    @pytest.fixture
    def tree(self, make_tree):
        return make_tree(
            ("r.exe", set(), [("a.exe", set(), [("x.exe", set(), ["deep.exe"])]), "b.exe"])
        )

    def test_depth_first_is_preorder(self, tree):
        assert _images(tree.depth_first()) == ["r.exe", "a.exe", "x.exe", "deep.exe", "b.exe"]

    def test_walk_reports_parent_and_depth(self, tree):
        seen = []
        walk(tree.root, lambda n, p, d: seen.append((image_name(n.image), p and image_name(p.image), d)) or True)
        assert seen[0] == ("r.exe", None, 1)
        assert ("deep.exe", "x.exe", 4) in seen

    def test_walk_stops_descending_when_visitor_says_so(self, tree):
        seen = []

        def visitor(n, _p, d):
            seen.append(image_name(n.image))
            return d < 2

        walk(tree.root, visitor)
        assert seen == ["r.exe", "a.exe", "b.exe"]

    def test_excluded_subtrees_are_skipped(self, tree):
        a = tree.root.children[0]
        assert _images(depth_first(tree.root, {a.oid})) == ["r.exe", "b.exe"]
        assert count_nodes(tree.root, {a.oid}) == 2
        assert height(tree.root, {a.oid}) == 2
        assert level_histogram(tree.root, {a.oid}) == {1: 1, 2: 1}

    def test_height_and_count(self, tree):
        assert height(tree.root) == 4
        assert height(tree.root.children[1]) == 1
        assert height(None) == 0
        assert count_nodes(tree.root) == 5
        assert count_nodes(None) == 0

    def test_clone_is_independent_but_shares_records(self, tree):
        a = tree.root.children[0]
        clone = clone_subtree(a)
        assert clone.root is not a
        assert clone.root.record is a.record
        assert clone.root.techniques is a.techniques
        assert clone.root.parent_oid is None
        clone.root.children.clear()
        assert count_nodes(a) == 3

    def test_prune_clone_bounds_height(self, tree):
        pruned = prune_clone(tree.root, 2)
        assert pruned.height == 2
        assert _images(pruned.depth_first()) == ["r.exe", "a.exe", "b.exe"]
        assert set(pruned.nodes_by_oid) == {n.oid for n in pruned.depth_first()}
        assert pruned.nodes_at_level == {1: 1, 2: 2}
        assert tree.size == 5

    def test_dump_tree_logs_live_nodes(self, tree, caplog):
        a = tree.root.children[0]
        with caplog.at_level("DEBUG", logger="prockin.proctree"):
            dump_tree(tree, {a.oid})
        lines = [r.getMessage() for r in caplog.records]
        assert len(lines) == 2
        assert lines[0].startswith("level: 1, pid: ")
        assert lines[1].endswith("b.exe")

    def test_tree_to_dict(self, tree):
        data = tree_to_dict(tree)
        assert data["nodes"] == 5
        assert data["height"] == 4
        assert data["root"]["name"] == "r.exe"
        assert data["root"]["children"][0]["children"][0]["name"] == "x.exe"
        assert data["levels"] == {"1": 1, "2": 2, "3": 1, "4": 1}


def test_image_name_handles_both_separators():
    assert image_name("C:\\Windows\\System32\\cmd.exe") == "cmd.exe"
    assert image_name("/usr/bin/python3") == "python3"
    assert image_name("plain.exe") == "plain.exe"


def test_tree_to_dict_handles_deep_chains():
    # a chain far deeper than the interpreter's recursion limit
    depth = 3000
    procs = [_proc("n0", 1, 0, "n0.exe", main=True)]
    procs += [_proc(f"n{i}", i + 1, i, f"n{i}.exe") for i in range(1, depth)]
    tree = _build(procs)
    assert tree.height == depth

    data = tree_to_dict(tree)
    assert data["nodes"] == depth
    assert data["height"] == depth
    node, seen = data["root"], 1
    while node["children"]:
        assert len(node["children"]) == 1
        node = node["children"][0]
        seen += 1
    assert seen == depth
    assert node["oid"] == f"n{depth - 1}"
    assert node["ppid"] == depth - 1
