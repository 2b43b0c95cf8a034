"""
goal: decide how closely a candidate process tree resembles a profile tree. scores are in [0, 1].

node level
a profile node with techniques scores |profile ∩ candidate| / |profile|, so a candidate doing
everything the profile does (and more) still gets 1.0. a profile node with no techniques falls back
to comparing binary names, case-insensitive, and scores 1 or 0.

tree level
- profile bigger than candidate: 0, a profile cannot fit inside a smaller tree
- same size: both trees are flattened pre-order and compared index by index. equal-size trees of
  different shape get mis-aligned here; that is a known accuracy limit, not something to fix
- profile smaller: look for a place in the candidate where the profile's shape is embedded.
  nodes too short or too small are skipped, the rest are cut to the profile's height and handed to
  the loose alignment search. the first site that aligns wins unless exhaustive search is on

loose alignment
the search deletes whole branches from the cut candidate until it has exactly as many nodes as the
profile, with no depth holding more nodes than the profile has at that depth. deletions are never
applied to the tree: every step works on its own snapshot (excluded OIDs + level histogram). before a
cut is taken, the counts the remaining branches can still be trimmed to are worked out bottom-up, and
a cut that makes the profile's shape unreachable is passed over. a snapshot with any depth already
short of the profile is dropped at once, since cuts never add nodes.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from algorithm.proctree import (
    NO_EXCLUSIONS,
    ProcessNode,
    ProcessTree,
    count_nodes,
    dump_tree,
    height,
    image_name,
    level_histogram,
    prune_clone,
    walk,
)

log = logging.getLogger("prockin.similarity")


@dataclass(frozen=True)
class TreeMatch:
    score: float
    mode: str  # "exact", "loose" or "none"
    site_oid: str | None = None  # candidate node the profile was embedded under
    excluded: frozenset[str] = NO_EXCLUSIONS  # branches cut from the site to reach the profile's shape

    def as_dict(self) -> dict[str, object]:
        return {
            "score": round(self.score, 4),
            "mode": self.mode,
            "site": self.site_oid,
            "excluded": sorted(self.excluded),
        }


NO_MATCH = TreeMatch(0.0, "none")


def score_node(profile_node: ProcessNode, candidate_node: ProcessNode) -> float:
    if not profile_node.techniques:
        same = image_name(profile_node.image).lower() == image_name(candidate_node.image).lower()
        return 1.0 if same else 0.0
    shared = profile_node.techniques & candidate_node.techniques
    return len(shared) / len(profile_node.techniques)


def positional_score(
    flat_profile: Sequence[ProcessNode], flat_candidate: Sequence[ProcessNode]
) -> float:
    """mean node score of two pre-order sequences compared index by index"""
    if not flat_profile:
        return 0.0
    total = sum(score_node(p, c) for p, c in zip(flat_profile, flat_candidate))
    return total / len(flat_profile)


def _reachable_shapes(
    root: ProcessNode, excluded: frozenset[str], goal: tuple[int, ...]
) -> set[tuple[int, ...]]:
    """every per-depth node count the subtree under root can be cut down to, capped by goal.

    counts are tuples indexed by depth - 1. root is always kept and nodes deeper than goal
    can only be cut. children are folded into their parent bottom-up, no recursion.
    """
    order: list[tuple[ProcessNode, ProcessNode | None, int]] = []
    walk(root, lambda n, p, d: order.append((n, p, d)) or True, excluded)

    span = len(goal)
    shapes: dict[str, set[tuple[int, ...]]] = {}
    for n, _p, d in order:
        if d <= span and goal[d - 1] > 0:
            shapes[n.oid] = {tuple(1 if i == d - 1 else 0 for i in range(span))}
        else:
            shapes[n.oid] = set()

    for n, p, _d in reversed(order):
        if p is None:
            continue
        child, own = shapes[n.oid], shapes[p.oid]
        if not child or not own:
            continue  # keeping the child is impossible, cutting it changes nothing
        merged = set(own)
        for a in own:
            for b in child:
                s = tuple(x + y for x, y in zip(a, b))
                if all(x <= g for x, g in zip(s, goal)):
                    merged.add(s)
        shapes[p.oid] = merged
    return shapes[root.oid]


def loose_align(profile: ProcessTree, candidate: ProcessTree) -> frozenset[str] | None:
    """find branches of candidate whose removal leaves the profile's level shape.

    returns the OIDs of the removed branch roots, or None when no such reduction exists.
    neither tree is modified.

    walking pre-order, the first branch whose removal still leaves the exact shape reachable is
    cut, then the walk starts over on the reduced snapshot. that is the same set of cuts a full
    depth-first search over removals finds first, without ever backtracking.
    """
    root = candidate.root
    wanted = profile.nodes_at_level
    if root is None or not wanted:
        return None
    target = profile.size
    goal = tuple(wanted.get(d, 0) for d in range(1, max(wanted) + 1))

    def _feasible(excluded: frozenset[str], levels: dict[int, int]) -> bool:
        # cuts only lower counts, so a depth already short of the profile stays short
        if any(levels.get(d, 0) < n for d, n in wanted.items()):
            return False
        return goal in _reachable_shapes(root, excluded, goal)

    excluded = NO_EXCLUSIONS
    levels = dict(candidate.nodes_at_level)
    if not _feasible(excluded, levels):
        return None

    while sum(levels.values()) > target:
        step: tuple[frozenset[str], dict[int, int]] | None = None

        def _visit(node: ProcessNode, parent: ProcessNode | None, depth: int) -> bool:
            nonlocal step
            if step is not None:
                return False
            if parent is None:
                return True  # the site itself is never cut
            over = levels.get(depth, 0) - wanted.get(depth, 0)
            if over < 0:
                return False
            if over > 0:
                trial = excluded | {node.oid}
                cut = level_histogram(node, excluded, depth)
                reduced = {d: n - cut.get(d, 0) for d, n in levels.items() if n - cut.get(d, 0)}
                if _feasible(trial, reduced):
                    step = (trial, reduced)
                    return False
            return True

        walk(root, _visit, excluded)
        if step is None:
            return None
        excluded, levels = step
    return excluded


def match_tree(profile: ProcessTree, candidate: ProcessTree, exhaustive: bool = False) -> TreeMatch:
    n_profile = profile.size
    n_candidate = candidate.size
    if n_profile == 0 or n_profile > n_candidate:
        return NO_MATCH

    flat_profile = profile.depth_first()
    if n_profile == n_candidate:
        return TreeMatch(positional_score(flat_profile, candidate.depth_first()), "exact")

    h_profile = profile.height
    best = NO_MATCH

    def _visit(node: ProcessNode, _parent: ProcessNode | None, _depth: int) -> bool:
        nonlocal best
        if best.mode == "loose" and not exhaustive:
            return False
        if height(node) < h_profile or count_nodes(node) < n_profile:
            return False
        site = prune_clone(node, h_profile)
        if site.size < n_profile:
            return True
        excluded = loose_align(profile, site)
        if excluded is None:
            return True

        score = positional_score(flat_profile, site.depth_first(excluded))
        log.debug(
            "aligned at pid %d (%s), %d branch(es) cut, score %.2f",
            node.pid,
            image_name(node.image),
            len(excluded),
            score,
        )
        dump_tree(site, excluded, logger=log)
        if best.mode != "loose" or score > best.score:
            best = TreeMatch(score, "loose", node.oid, excluded)
        return exhaustive

    candidate.walk(_visit)
    return best


def score_tree(profile: ProcessTree, candidate: ProcessTree, exhaustive: bool = False) -> float:
    return match_tree(profile, candidate, exhaustive).score
