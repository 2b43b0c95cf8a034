"""
goal: process tree model for one sandbox run plus the traversal toolkit every comparison is built on.

how the tree is built
1. the process marked "Main process" becomes the root, a record without one is unusable
2. every process gets a node, indexed by OID (authoritative) and by PID (best effort, PIDs get reused)
3. each node's parent is resolved once from its parent PID and stored as an explicit parent OID.
   when several processes share that PID the most recent one created before the child wins
4. nodes whose parent cannot be found are orphans: still indexed, never reachable from the root
5. incident techniques are unioned onto the node with the matching OID
6. children are sorted newest first and the per-depth node histogram is computed

traversal
walk() is the single primitive: pre-order, children in stored order, with a visitor that decides
whether to descend. every query (height, node count, level histogram, cloning) goes through it.
all queries take an optional set of excluded OIDs; an excluded node is skipped together with its
whole subtree, which is how the loose matcher simulates deleting branches without touching the tree.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging  # for orphan warnings and tree dumps
from collections.abc import Callable, Iterable  # type hints for visitors and OID collections
from typing import Any  # type hint for flexible dictionary values

from agent.records import ProcessRecord, SampleRecord
from algorithm.errors import CorruptedDataError

log = logging.getLogger("prockin.proctree")

NO_EXCLUSIONS: frozenset[str] = frozenset()

# visitor signature: (node, parent, depth) -> descend into children?
Visitor = Callable[["ProcessNode", "ProcessNode | None", int], bool]


def image_name(path: str) -> str:
    # file name component of an image path, windows or posix separators
    return path.replace("\\", "/").rsplit("/", 1)[-1]


class ProcessNode:
    """one process of a run: the immutable record plus its children and observed techniques"""

    def __init__(self, record: ProcessRecord, techniques: set[str] | None = None) -> None:
        self.record = record
        self.children: list[ProcessNode] = []
        self.techniques: set[str] = techniques if techniques is not None else set()
        self.parent_oid: str | None = None

    @property
    def oid(self) -> str:
        return self.record.oid

    @property
    def pid(self) -> int:
        return self.record.pid

    @property
    def image(self) -> str:
        return self.record.image

    @property
    def created(self) -> int:
        return self.record.created

    def add_child(self, child: ProcessNode) -> None:
        child.parent_oid = self.oid
        self.children.append(child)

    def copy(self) -> ProcessNode:
        # same record and the same technique set object, no children
        return ProcessNode(self.record, self.techniques)

    def __repr__(self) -> str:
        return f"ProcessNode(oid={self.oid!r}, pid={self.pid}, image={image_name(self.image)!r})"


def walk(
    node: ProcessNode | None,
    visitor: Visitor,
    excluded: Iterable[str] = NO_EXCLUSIONS,
    parent: ProcessNode | None = None,
    depth: int = 1,
) -> None:
    """pre-order visit starting at node (depth 1 unless told otherwise)."""
    skip = excluded if isinstance(excluded, (set, frozenset)) else frozenset(excluded)
    if node is None or node.oid in skip:
        return
    stack: list[tuple[ProcessNode, ProcessNode | None, int]] = [(node, parent, depth)]
    while stack:
        cur, par, lvl = stack.pop()
        if not visitor(cur, par, lvl):
            continue
        # pushed in reverse so the first stored child is visited first
        for child in reversed(cur.children):
            if child.oid not in skip:
                stack.append((child, cur, lvl + 1))


def depth_first(
    node: ProcessNode | None, excluded: Iterable[str] = NO_EXCLUSIONS
) -> list[ProcessNode]:
    flat: list[ProcessNode] = []

    def _collect(n: ProcessNode, _p: ProcessNode | None, _d: int) -> bool:
        flat.append(n)
        return True

    walk(node, _collect, excluded)
    return flat


def count_nodes(node: ProcessNode | None, excluded: Iterable[str] = NO_EXCLUSIONS) -> int:
    return len(depth_first(node, excluded))


def height(node: ProcessNode | None, excluded: Iterable[str] = NO_EXCLUSIONS) -> int:
    """number of nodes on the longest downward path; a leaf is 1, no node is 0"""
    deepest = 0

    def _measure(_n: ProcessNode, _p: ProcessNode | None, d: int) -> bool:
        nonlocal deepest
        deepest = max(deepest, d)
        return True

    walk(node, _measure, excluded)
    return deepest


def level_histogram(
    node: ProcessNode | None, excluded: Iterable[str] = NO_EXCLUSIONS, depth: int = 1
) -> dict[int, int]:
    hist: dict[int, int] = {}

    def _tally(_n: ProcessNode, _p: ProcessNode | None, d: int) -> bool:
        hist[d] = hist.get(d, 0) + 1
        return True

    walk(node, _tally, excluded, depth=depth)
    return hist


class ProcessTree:
    def __init__(self, root: ProcessNode | None = None) -> None:
        self.root = root
        self.nodes_by_oid: dict[str, ProcessNode] = {}
        self.nodes_by_pid: dict[int, list[ProcessNode]] = {}  # PIDs collide, hence lists
        self.nodes_at_level: dict[int, int] = {}  # depth -> live node count, root is depth 1
        self.orphans: list[str] = []  # OIDs indexed but unreachable from the root

    def add(self, node: ProcessNode) -> bool:
        if node.oid in self.nodes_by_oid:
            return False
        self.nodes_by_oid[node.oid] = node
        self.nodes_by_pid.setdefault(node.pid, []).append(node)
        return True

    def node(self, oid: str) -> ProcessNode | None:
        return self.nodes_by_oid.get(oid)

    def nodes_with_pid(self, pid: int) -> list[ProcessNode]:
        return list(self.nodes_by_pid.get(pid, ()))

    def refresh(self) -> None:
        """re-sort children newest first and recompute the level histogram"""
        for n in self.nodes_by_oid.values():
            n.children.sort(key=lambda c: c.created, reverse=True)
        self.nodes_at_level = level_histogram(self.root)

    def walk(self, visitor: Visitor, excluded: Iterable[str] = NO_EXCLUSIONS) -> None:
        walk(self.root, visitor, excluded)

    def depth_first(self, excluded: Iterable[str] = NO_EXCLUSIONS) -> list[ProcessNode]:
        return depth_first(self.root, excluded)

    @property
    def size(self) -> int:
        return count_nodes(self.root)

    @property
    def height(self) -> int:
        return height(self.root)

    def __repr__(self) -> str:
        return f"ProcessTree(root={self.root!r}, size={self.size})"


def _resolve_parent(tree: ProcessTree, node: ProcessNode) -> ProcessNode | None:
    candidates = [n for n in tree.nodes_by_pid.get(node.record.parent_pid, ()) if n is not node]
    if not candidates:
        return None
    earlier = [n for n in candidates if n.created <= node.created]
    if earlier:
        return max(earlier, key=lambda n: n.created)
    return min(candidates, key=lambda n: n.created)


def build_tree(record: SampleRecord) -> ProcessTree:
    """convert an ingestion record into a rooted process tree.

    raises CorruptedDataError when the record has no "Main process" entry.
    """
    main = next((p for p in record.processes if p.is_main), None)
    if main is None:
        raise CorruptedDataError(f'{record.uuid or "<no uuid>"}: cannot find "Main process" process')

    tree = ProcessTree()
    for proc in record.processes:
        if not tree.add(ProcessNode(proc)):
            log.warning("%s: duplicate OID %s ignored", record.uuid, proc.oid)
    tree.root = tree.nodes_by_oid[main.oid]

    for node in list(tree.nodes_by_oid.values()):
        if node is tree.root:
            continue
        parent = _resolve_parent(tree, node)
        if parent is not None:
            parent.add_child(node)

    for incident in record.incidents:
        if not incident.techniques:
            continue
        target = tree.node(incident.process_oid)
        if target is None:
            log.debug("%s: incident for unknown process %s", record.uuid, incident.process_oid)
            continue
        target.techniques.update(incident.techniques)

    tree.refresh()
    reachable = {n.oid for n in tree.depth_first()}
    tree.orphans = [oid for oid in tree.nodes_by_oid if oid not in reachable]
    if tree.orphans:
        log.warning(
            "%s: %d process(es) not reachable from the main process", record.uuid, len(tree.orphans)
        )
    return tree


def clone_subtree(
    node: ProcessNode,
    max_depth: int | None = None,
    excluded: Iterable[str] = NO_EXCLUSIONS,
) -> ProcessTree:
    """structurally independent copy of the subtree under node.

    copies share records and technique sets with the originals. with max_depth, nothing deeper
    than that depth is copied (node itself is depth 1).
    """
    clone = ProcessTree()
    copies: dict[str, ProcessNode] = {}

    def _copy(n: ProcessNode, parent: ProcessNode | None, d: int) -> bool:
        c = n.copy()
        copies[n.oid] = c
        clone.add(c)
        if parent is None:
            clone.root = c
        else:
            copies[parent.oid].add_child(c)
        return max_depth is None or d < max_depth

    walk(node, _copy, excluded)
    clone.refresh()
    return clone


def prune_clone(node: ProcessNode, depth: int) -> ProcessTree:
    # bounded-height candidate: clone without anything below the given depth
    return clone_subtree(node, max_depth=depth)


def dump_tree(
    tree: ProcessTree, excluded: Iterable[str] = NO_EXCLUSIONS, logger: logging.Logger = log
) -> None:
    def _line(n: ProcessNode, _p: ProcessNode | None, d: int) -> bool:
        logger.debug("level: %d, pid: %d, image: %s", d, n.pid, n.image)
        return True

    tree.walk(_line, excluded)


def node_to_dict(node: ProcessNode) -> dict[str, Any]:
    """nested JSON-ready copy of the subtree under node, built without recursion"""
    built: dict[str, dict[str, Any]] = {}

    def _emit(n: ProcessNode, parent: ProcessNode | None, _d: int) -> bool:
        rec = n.record
        built[n.oid] = entry = {
            "oid": rec.oid,
            "pid": rec.pid,
            "ppid": rec.parent_pid,
            "name": image_name(rec.image),
            "image": rec.image,
            "cmdline": rec.command_line,
            "created": rec.created,
            "techniques": sorted(n.techniques),
            "children": [],
        }
        if parent is not None:
            built[parent.oid]["children"].append(entry)
        return True

    walk(node, _emit)
    return built[node.oid]


def tree_to_dict(tree: ProcessTree) -> dict[str, Any]:
    return {
        "nodes": tree.size,
        "height": tree.height,
        "levels": {str(k): v for k, v in sorted(tree.nodes_at_level.items())},
        "orphans": list(tree.orphans),
        "root": node_to_dict(tree.root) if tree.root is not None else None,
    }
