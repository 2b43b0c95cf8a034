from __future__ import annotations

import hashlib
import itertools
import json
import os
from pathlib import Path
from typing import Any

import pytest
import requests

from agent.records import parse_record
from algorithm.proctree import ProcessTree, build_tree

# ------------ Record builders ------------
#
# trees are written as nested specs:
#   "a.exe"                                  leaf, no techniques
#   ("a.exe", {"T1059"})                      leaf with techniques
#   ("a.exe", set(), ["b.exe", "c.exe"])      node with children
# siblings keep the order they are listed in (creation times are handed out newest first).


def _unpack(spec: Any) -> tuple[str, set[str], list[Any]]:
    if isinstance(spec, str):
        return spec, set(), []
    image = spec[0]
    techs = set(spec[1]) if len(spec) > 1 else set()
    children = list(spec[2]) if len(spec) > 2 else []
    return image, techs, children


def doc_from_spec(spec: Any, uuid: str = "run-1", name: str = "sample.exe") -> dict[str, Any]:
    processes: list[dict[str, Any]] = []
    incidents: list[dict[str, Any]] = []
    counter = itertools.count(1)

    def _add(node: Any, ppid: int) -> None:
        image, techs, children = _unpack(node)
        n = next(counter)
        oid = f"{uuid}-p{n}"
        pid = 1000 + n
        processes.append(
            {
                "OID": oid,
                "ProcessID": pid,
                "ParentPID": ppid,
                "CommandLine": image,
                "Image": f"C:\\Users\\admin\\AppData\\Local\\Temp\\{image}",
                "ProcessType": "Main process" if ppid == 4 else "",
                "CreationTimestamp": 1_000_000 - n,
            }
        )
        if techs:
            incidents.append({"ProcessOID": oid, "ThreatLevel": 1, "MitreAttacks": sorted(techs)})
        for child in children:
            _add(child, pid)

    _add(spec, 4)
    return {
        "Name": name,
        "Md5": hashlib.md5(uuid.encode()).hexdigest(),
        "UUID": uuid,
        "Processes": processes,
        "Incidents": incidents,
        "Ips": None,
        "Domain": None,
        "HttpRequests": None,
        "Threats": None,
    }


@pytest.fixture()
def make_tree():
    """build a ProcessTree straight from a nested spec"""

    def _make(spec: Any, uuid: str = "run-1") -> ProcessTree:
        return build_tree(parse_record(doc_from_spec(spec, uuid=uuid)))

    return _make


@pytest.fixture()
def write_doc(tmp_path: Path):
    """write one record document into tmp_path/corpus and return its path"""
    corpus = tmp_path / "corpus"
    corpus.mkdir(exist_ok=True)

    def _write(doc: dict[str, Any], filename: str | None = None) -> Path:
        path = corpus / (filename or f"{doc['UUID']}.json")
        path.write_text(json.dumps(doc, indent=1), encoding="utf-8")
        return path

    return _write


# five runs: 1 and 2 are the same family, 3, 4 and 5 share nothing with anyone
FAMILY_SPEC = ("dropper.exe", {"T1204"}, [("cmd.exe", {"T1059"}), "conhost.exe"])
LONER_SPECS = {
    "run-3": "three.exe",
    "run-4": ("four.exe", set(), ["four_child.exe"]),
    "run-5": ("five.exe", set(), ["f1.exe", "f2.exe"]),
}


@pytest.fixture()
def five_run_corpus(write_doc, tmp_path: Path) -> Path:
    write_doc(doc_from_spec(FAMILY_SPEC, uuid="run-1", name="invoice.exe"))
    write_doc(doc_from_spec(FAMILY_SPEC, uuid="run-2", name="invoice_copy.exe"))
    for uuid, spec in LONER_SPECS.items():
        write_doc(doc_from_spec(spec, uuid=uuid, name=f"{uuid}.exe"))
    return tmp_path / "corpus"


# ------------ Live API fixtures ------------


def _env_url() -> str:
    return os.getenv("PROCKIN_BASE_URL", "http://127.0.0.1:8765").rstrip("/")


@pytest.fixture(scope="session")
def base_url() -> str:
    return _env_url()


@pytest.fixture(scope="session")
def http():
    """Simple requests wrapper with a short timeout."""

    class _HTTP:
        def get(self, url: str, **kw):
            kw.setdefault("timeout", 5)
            return requests.get(url, **kw)

    return _HTTP()


@pytest.fixture(scope="session")
def server_up(base_url: str, http):
    """Skip the test session if the API isn't reachable."""
    try:
        r = http.get(f"{base_url}/api/ping")
        if r.status_code != 200:
            pytest.skip(f"Server reachable but non-200 from /api/ping: {r.status_code}")
        data = r.json()
        if isinstance(data, dict) and not data.get("ok"):
            pytest.skip("Ping responded but ok=false")
    except Exception as exc:
        pytest.skip(f"Server not reachable at {base_url} ({exc})")


def assert_has_keys(obj: dict[str, Any], required: tuple[str, ...]) -> None:
    missing = [k for k in required if k not in obj]
    assert not missing, f"Missing keys: {missing} in {obj}"
