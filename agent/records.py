"""
goal: reads the per-sample JSON documents written by the sandbox crawler and turns them into
immutable records. one document describes one sandbox run: the sample's name, md5 and run uuid,
the list of processes it spawned, and the incidents (MITRE ATT&CK techniques) observed per process.
network, dns, http and threat arrays are carried along untouched, nothing downstream reads them.

key matching is case-insensitive and ignores underscores, so the crawler's Go-style keys
("ParentPID", "EventsCounters_Network") and snake_case keys ("parent_pid") both work.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import json  # for decoding the record documents
import logging  # for reporting skipped entries
from dataclasses import dataclass, field  # for the immutable record types
from pathlib import Path  # for walking the corpus directory
from typing import Any  # type hint for flexible dictionary values

from algorithm.errors import CorruptedDataError, UnreadableError

log = logging.getLogger("prockin.records")

MAIN_PROCESS = "Main process"  # classification label that marks the root of a tree


def _norm_key(key: str) -> str:
    return key.replace("_", "").lower()


def _fields(obj: dict[str, Any]) -> dict[str, Any]:
    # re-key a JSON object so lookups do not depend on the writer's naming style
    return {_norm_key(str(k)): v for k, v in obj.items()}


def _int(obj: dict[str, Any], key: str, default: int = 0) -> int:
    val = obj.get(key)
    if val is None or isinstance(val, bool):  # bool is an int subclass, never a valid counter
        return default
    try:
        return int(val)
    except (TypeError, ValueError):
        return default


def _bool(obj: dict[str, Any], key: str) -> bool:
    val = obj.get(key)
    if isinstance(val, bool):
        return val
    if isinstance(val, int):
        return val == 1  # 0/1 flags from older dumps, any other number is not a flag
    if isinstance(val, str):
        return val.strip().lower() in ("true", "1", "yes")
    return False


def _str(obj: dict[str, Any], key: str) -> str:
    val = obj.get(key)
    return "" if val is None else str(val)


def _list(obj: dict[str, Any], key: str) -> list[Any]:
    val = obj.get(key)
    return val if isinstance(val, list) else []  # Go writes empty slices as null


@dataclass(frozen=True)
class ProcessRecord:
    oid: str  # unique object id of the process inside the run
    pid: int  # process id, not unique (reused across subtrees)
    parent_pid: int
    command_line: str = ""
    image: str = ""  # full path of the executable image
    process_type: str = ""  # "Main process" marks the root
    created: int = 0  # creation timestamp, ordering only
    # display counters, never compared
    registry: int = 0
    files: int = 0
    modules: int = 0
    dropped_files: int = 0
    debug_strings: int = 0
    network_events: int = 0
    network: bool = False
    autostart: bool = False
    low_access: bool = False
    file_type: str = ""

    @property
    def is_main(self) -> bool:
        return self.process_type == MAIN_PROCESS

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> ProcessRecord:
        f = _fields(obj)
        oid = _str(f, "oid")
        if not oid:
            raise CorruptedDataError("process entry without OID")
        return cls(
            oid=oid,
            pid=_int(f, "processid", _int(f, "pid")),
            parent_pid=_int(f, "parentpid", _int(f, "ppid")),
            command_line=_str(f, "commandline"),
            image=_str(f, "image"),
            process_type=_str(f, "processtype"),
            created=_int(f, "creationtimestamp", _int(f, "created")),
            registry=_int(f, "registry"),
            files=_int(f, "files"),
            modules=_int(f, "modules"),
            dropped_files=_int(f, "droppedfiles"),
            debug_strings=_int(f, "debugstrings"),
            network_events=_int(f, "eventscountersnetwork"),
            network=_bool(f, "scoresnetwork"),
            autostart=_bool(f, "autostart"),
            low_access=_bool(f, "lowaccess"),
            file_type=_str(f, "filetype"),
        )


@dataclass(frozen=True)
class Incident:
    process_oid: str
    threat_level: int = 0
    techniques: tuple[str, ...] = ()  # MITRE ATT&CK technique ids

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> Incident:
        f = _fields(obj)
        return cls(
            process_oid=_str(f, "processoid"),
            threat_level=_int(f, "threatlevel"),
            techniques=tuple(str(t) for t in _list(f, "mitreattacks") if t),
        )


@dataclass(frozen=True)
class SampleRecord:
    """one sandbox run as written by the crawler"""

    uuid: str
    name: str = ""
    md5: str = ""
    processes: tuple[ProcessRecord, ...] = ()
    incidents: tuple[Incident, ...] = ()
    # auxiliary arrays, kept verbatim
    ips: tuple[Any, ...] = field(default=(), repr=False)
    domains: tuple[Any, ...] = field(default=(), repr=False)
    http_requests: tuple[Any, ...] = field(default=(), repr=False)
    threats: tuple[Any, ...] = field(default=(), repr=False)
    source: str | None = field(default=None, compare=False)  # file the record came from

    @property
    def identity(self) -> str:
        return f"md5: {self.md5}, uuid: {self.uuid}, name: {self.name}"

    def summary(self) -> dict[str, Any]:
        return {"uuid": self.uuid, "name": self.name, "md5": self.md5}


def parse_record(data: Any, source: str | None = None) -> SampleRecord:
    """build a SampleRecord from a decoded JSON document.

    raises CorruptedDataError when the document is not an object or has no process list.
    a missing "Main process" is *not* checked here, that is the tree builder's call.
    """
    if not isinstance(data, dict):
        raise CorruptedDataError("record is not a JSON object")
    f = _fields(data)
    raw_procs = f.get("processes")
    if not isinstance(raw_procs, list):
        raise CorruptedDataError("record has no process list")

    processes = tuple(ProcessRecord.from_json(p) for p in raw_procs if isinstance(p, dict))
    if len(processes) != len(raw_procs):
        log.debug(
            "%s: dropped %d non-object process entries",
            source or "record",
            len(raw_procs) - len(processes),
        )
    incidents = tuple(
        Incident.from_json(i) for i in _list(f, "incidents") if isinstance(i, dict)
    )
    uuid = _str(f, "uuid")
    if not uuid and source:
        uuid = Path(source).stem  # crawler names files after the run uuid
    return SampleRecord(
        uuid=uuid,
        name=_str(f, "name"),
        md5=_str(f, "md5"),
        processes=processes,
        incidents=incidents,
        ips=tuple(_list(f, "ips")),
        domains=tuple(_list(f, "domain") or _list(f, "domains")),
        http_requests=tuple(_list(f, "httprequests")),
        threats=tuple(_list(f, "threats")),
        source=source,
    )


def load_record(path: str | Path) -> SampleRecord:
    p = Path(path)
    try:
        with open(p, encoding="utf-8") as fh:
            data = json.load(fh)
    except OSError as exc:
        raise UnreadableError(str(p), exc.strerror or str(exc)) from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise UnreadableError(str(p), f"invalid JSON ({exc})") from exc
    return parse_record(data, source=str(p))


def list_record_files(directory: str | Path) -> list[Path]:
    d = Path(directory)
    if not d.is_dir():
        raise UnreadableError(str(d), "not a directory")
    return sorted(p for p in d.iterdir() if p.is_file() and p.suffix == ".json")
