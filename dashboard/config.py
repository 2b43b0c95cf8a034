"""
goal: configuration loader for ProcKin. loads settings from a JSON file and environment
      variables, with sensible defaults. handles PyInstaller frozen executables by detecting
      the base directory correctly. returns a frozen Config dataclass with the corpus location,
      clustering knobs and the local API's bind address.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path

# load environment variables from .env file before anything reads PROCKIN_* values
try:
    from dotenv import load_dotenv

    load_dotenv()  # load .env file if it exists
except ImportError:
    pass  # python-dotenv is optional, env vars still work without it


# figure out where the app is running from (handles PyInstaller bundles)
def _resolve_base_dir() -> Path:
    import sys

    # if we are frozen (PyInstaller), use the executable's directory
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent
    # otherwise, go up one level from this file (dashboard/config.py -> project root)
    return Path(__file__).resolve().parents[1]


# frozen dataclass to hold all config values (immutable once created)
@dataclass(frozen=True)
class Config:
    base_dir: Path  # root directory of the project
    corpus_dir: Path  # directory holding one JSON record per sandbox run
    threshold: float  # minimum similarity for a run to join a group
    min_nodes: int  # runs with fewer process nodes are left out of the corpus
    exhaustive_search: bool  # score every embedding site instead of the first one
    host: str  # web server host address
    port: int  # web server port number
    log_level: str  # root level for prockin.* loggers

    def with_overrides(self, **changes) -> Config:
        # CLI flags win over file/env values; None means "flag not given"
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def _coerce_bool(value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    return default


# get a config value with priority: environment variable > JSON file > default
def _get(obj: dict, key: str, default):
    # check for environment variable first (PROCKIN_* prefix)
    env = os.getenv(f"PROCKIN_{key.upper()}")
    raw = env if env is not None else obj.get(key, default)
    # bool must be checked before int, bool is an int subclass
    if isinstance(default, bool):
        return _coerce_bool(raw, default)
    # try to coerce to int/float when default is numeric
    if isinstance(default, int):
        try:
            return int(raw)
        except (TypeError, ValueError):
            return default
    if isinstance(default, float):
        try:
            return float(raw)
        except (TypeError, ValueError):
            return default
    # for strings, just return the value as-is
    return raw if raw is not None else default


# load configuration from JSON file and environment variables
def load_config() -> Config:
    # base directory can be overridden by env var, otherwise auto-detect
    base = Path(os.getenv("PROCKIN_BASE_DIR") or _resolve_base_dir())
    # config file lives in data/config.json
    cfg_file = base / "data" / "config.json"
    obj = {}
    # try to load the JSON config file if it exists
    if cfg_file.exists():
        try:
            obj = json.loads(cfg_file.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError):
            # if JSON is broken, just use empty dict (all defaults)
            obj = {}
        if not isinstance(obj, dict):
            obj = {}

    threshold = _get(obj, "threshold", 0.7)
    if not 0.0 <= threshold <= 1.0:
        threshold = 0.7  # out of range values fall back to the default

    # build the Config object, each value checks: env var > JSON file > default
    # relative corpus paths are resolved against the base directory
    return Config(
        base_dir=base,
        corpus_dir=base / _get(obj, "corpus_dir", "data/corpus"),
        threshold=threshold,
        min_nodes=max(1, _get(obj, "min_nodes", 1)),
        exhaustive_search=_get(obj, "exhaustive_search", False),
        host=_get(obj, "host", "127.0.0.1"),
        port=_get(obj, "port", 8765),
        log_level=str(_get(obj, "log_level", "INFO")).upper(),
    )
