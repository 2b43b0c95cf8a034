"""
goal: run the tree comparator across a whole corpus of sandbox runs. three modes:
- compare two named runs and report one score
- evaluate one profile against every other run and report how much of the corpus it covers
- cluster the whole corpus greedily into family groups and report total coverage

clustering walks the corpus in uuid order so results are reproducible. a profile that gathers at
least one match leaves the pool together with its matches, so every run lands in at most one
group and total coverage never exceeds 100%. a profile without matches stays in the pool and can
still be picked up by a later profile (scores are asymmetric).
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import logging  # for reporting skipped records
from collections.abc import Iterator  # type hint for corpus iteration
from dataclasses import dataclass, field  # for the result containers
from pathlib import Path  # for corpus directories
from typing import Any  # type hint for flexible dictionary values

from agent.records import SampleRecord, list_record_files, load_record
from algorithm.errors import NotFoundError, ProcKinError
from algorithm.proctree import ProcessTree, build_tree
from algorithm.similarity import TreeMatch, match_tree

log = logging.getLogger("prockin.clustering")

DEFAULT_THRESHOLD = 0.7  # minimum score for a run to join a profile's group


@dataclass
class CorpusEntry:
    record: SampleRecord
    tree: ProcessTree

    @property
    def uuid(self) -> str:
        return self.record.uuid

    @property
    def stem(self) -> str:
        # file name without extension, the crawler uses the uuid but users rename files
        return Path(self.record.source).stem if self.record.source else self.record.uuid

    def summary(self) -> dict[str, Any]:
        out = self.record.summary()
        out["nodes"] = self.tree.size
        out["height"] = self.tree.height
        return out


def load_entry(path: str | Path) -> CorpusEntry:
    """read and build one run; every failure propagates"""
    record = load_record(path)
    return CorpusEntry(record, build_tree(record))


class Corpus:
    def __init__(
        self,
        entries: list[CorpusEntry],
        directory: Path | None = None,
        skipped: list[tuple[str, str]] | None = None,
    ) -> None:
        self.entries = sorted(entries, key=lambda e: e.uuid)  # stable order for greedy clustering
        self.directory = directory
        self.skipped = skipped or []  # (path, reason) for every file left out

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[CorpusEntry]:
        return iter(self.entries)

    def find(self, sample_id: str) -> CorpusEntry:
        for e in self.entries:
            if e.uuid == sample_id:
                return e
        for e in self.entries:
            if e.stem == sample_id:
                return e
        raise NotFoundError(f"sample {sample_id!r} is not in the corpus")


def load_corpus(directory: str | Path, min_nodes: int = 1) -> Corpus:
    """load every *.json run in directory, skipping (and logging) the ones that fail"""
    d = Path(directory)
    entries: list[CorpusEntry] = []
    skipped: list[tuple[str, str]] = []
    seen: set[str] = set()
    for path in list_record_files(d):
        try:
            entry = load_entry(path)
        except ProcKinError as exc:
            log.warning("cannot load process tree model at %s, %s", path.name, exc)
            skipped.append((str(path), str(exc)))
            continue
        if entry.tree.size < min_nodes:
            log.debug("%s: %d node(s), below minimum of %d", path.name, entry.tree.size, min_nodes)
            skipped.append((str(path), f"fewer than {min_nodes} nodes"))
            continue
        if entry.uuid in seen:
            log.warning("%s: duplicate uuid %s ignored", path.name, entry.uuid)
            skipped.append((str(path), "duplicate uuid"))
            continue
        seen.add(entry.uuid)
        entries.append(entry)
    log.info("considering %d tasks", len(entries))
    return Corpus(entries, directory=d, skipped=skipped)


def load_profile(corpus: Corpus, profile_id: str) -> CorpusEntry:
    """corpus lookup first, then an explicit <directory>/<id>.json load (errors are fatal)"""
    try:
        return corpus.find(profile_id)
    except NotFoundError:
        if corpus.directory is None:
            raise
        path = corpus.directory / f"{profile_id}.json"
        if not path.is_file():
            raise
        return load_entry(path)


@dataclass
class TreeGroup:
    profile: ProcessTree
    profile_record: SampleRecord
    members: list[SampleRecord] = field(default_factory=list)
    scores: list[float] = field(default_factory=list)
    includes_profile: bool = True  # whether the profile itself counts toward coverage

    def add(self, record: SampleRecord, score: float) -> None:
        self.members.append(record)
        self.scores.append(score)

    @property
    def size(self) -> int:
        return len(self.members) + (1 if self.includes_profile else 0)

    def ranked(self) -> list[tuple[SampleRecord, float]]:
        pairs = list(zip(self.members, self.scores))
        pairs.sort(key=lambda p: (-p[1], p[0].uuid))
        return pairs

    def coverage(self, total: int) -> float:
        return self.size / total if total else 0.0

    def as_dict(self, total: int) -> dict[str, Any]:
        return {
            "profile": self.profile_record.summary(),
            "size": self.size,
            "coverage": round(self.coverage(total), 4),
            "matches": [
                dict(rec.summary(), score=round(score, 4)) for rec, score in self.ranked()
            ],
        }


@dataclass
class ClusterReport:
    groups: list[TreeGroup]
    total: int

    @property
    def coverage(self) -> float:
        if not self.total:
            return 0.0
        return sum(g.size for g in self.groups) / self.total

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "profiles": len(self.groups),
            "coverage": round(self.coverage, 4),
            "groups": [g.as_dict(self.total) for g in self.groups],
        }


def match_against_corpus(
    profile_tree: ProcessTree,
    profile_record: SampleRecord,
    pool: dict[str, CorpusEntry],
    threshold: float = DEFAULT_THRESHOLD,
    consume: bool = False,
    exhaustive: bool = False,
) -> TreeGroup:
    """score the profile against every run in pool (uuid -> entry) except itself.

    with consume, matched runs are removed from pool so they cannot seed or join another group.
    """
    group = TreeGroup(profile_tree, profile_record)
    for uuid, entry in list(pool.items()):
        if uuid == profile_record.uuid:
            continue
        score = match_tree(profile_tree, entry.tree, exhaustive).score
        if score >= threshold:
            group.add(entry.record, score)
            if consume:
                del pool[uuid]
    return group


def cluster_all(
    corpus: Corpus, threshold: float = DEFAULT_THRESHOLD, exhaustive: bool = False
) -> ClusterReport:
    pool = {e.uuid: e for e in corpus}
    groups: list[TreeGroup] = []
    for entry in corpus:
        if entry.uuid not in pool:
            continue  # already claimed by an earlier profile
        group = match_against_corpus(
            entry.tree, entry.record, pool, threshold, consume=True, exhaustive=exhaustive
        )
        if not group.members:
            continue
        del pool[entry.uuid]
        groups.append(group)
    groups.sort(key=lambda g: (-g.size, g.profile_record.uuid))
    return ClusterReport(groups, len(corpus))


def evaluate_profile(
    corpus: Corpus,
    profile_id: str,
    threshold: float = DEFAULT_THRESHOLD,
    exhaustive: bool = False,
) -> TreeGroup:
    profile = load_profile(corpus, profile_id)
    pool = {e.uuid: e for e in corpus}
    group = match_against_corpus(
        profile.tree, profile.record, pool, threshold, consume=False, exhaustive=exhaustive
    )
    group.includes_profile = profile.uuid in pool
    return group


def compare_two(
    corpus: Corpus, id_a: str, id_b: str, exhaustive: bool = False
) -> tuple[CorpusEntry, CorpusEntry, TreeMatch]:
    """score run a (the profile) against run b"""
    a = load_profile(corpus, id_a)
    b = load_profile(corpus, id_b)
    return a, b, match_tree(a.tree, b.tree, exhaustive)
