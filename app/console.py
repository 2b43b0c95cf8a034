# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: command line launcher for ProcKin. loads a directory of sandbox runs and either compares two
runs, measures one profile's coverage, clusters the whole corpus, or serves the local JSON API.
results go to stdout, warnings about skipped records go to the log on stderr.

usage:
  prockin compare <dir> <idA> <idB>
  prockin profile <dir> <id>
  prockin cluster <dir>
  prockin serve   [dir]
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import argparse  # for parsing command line arguments
import logging  # for the colored log handler
import re  # for highlighting uuids and percentages in log lines
import sys  # for tty detection and exit codes
from pathlib import Path  # for working with file paths

from algorithm.clustering import (
    ClusterReport,
    Corpus,
    TreeGroup,
    cluster_all,
    compare_two,
    evaluate_profile,
    load_corpus,
)
from algorithm.errors import ProcKinError
from dashboard.config import Config, load_config

# silence waitress web server log messages so the console stays clean
logging.getLogger("waitress.queue").setLevel(logging.CRITICAL)  # suppress waitress queue messages
logging.getLogger("waitress").setLevel(logging.ERROR)  # only real waitress problems
logging.getLogger("waitress.access").setLevel(logging.CRITICAL)  # suppress waitress access logs


def _colors() -> dict[str, str]:
    # use ANSI color codes if available (Windows via colorama), otherwise plain text
    plain = dict.fromkeys(("cyan", "mag", "green", "yellow", "red", "dim", "bold", "reset"), "")
    if not sys.stdout.isatty():  # piped or captured output stays plain
        return plain
    try:
        from colorama import init as _colorama_init

        _colorama_init()  # enable ANSI color codes on Windows terminals
        return {
            "cyan": "\x1b[36m",
            "mag": "\x1b[35m",
            "green": "\x1b[32m",
            "yellow": "\x1b[33m",
            "red": "\x1b[31m",
            "dim": "\x1b[2m",
            "bold": "\x1b[1m",
            "reset": "\x1b[0m",
        }
    except Exception:  # if colorama is not available or import fails
        return plain


C = _colors()

_UUID_RE = re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.I)
_PCT_RE = re.compile(r"\b\d+(?:\.\d+)?\s?%")


class ColoredMessageFormatter(logging.Formatter):
    """message-only formatter: warnings yellow, errors red, uuids magenta, percentages cyan"""

    def __init__(self, *args, use_color: bool = True, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.use_color = use_color and bool(C["reset"])

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if not self.use_color:
            return msg if record.levelno < logging.WARNING else f"{record.levelname.lower()}: {msg}"

        msg = _UUID_RE.sub(lambda m: C["mag"] + m.group(0) + C["reset"], msg)
        msg = _PCT_RE.sub(lambda m: C["cyan"] + m.group(0) + C["reset"], msg)
        if record.levelno >= logging.ERROR:
            return f"{C['red']}error:{C['reset']} {msg}"
        if record.levelno >= logging.WARNING:
            return f"{C['yellow']}warn:{C['reset']} {msg}"
        return msg


def setup_logging(level: str | int = "INFO") -> logging.Logger:
    """attach one stderr handler to the prockin logger tree (idempotent)"""
    if isinstance(level, str):
        level = level.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            level = "INFO"  # unknown names from config fall back instead of raising
    logger = logging.getLogger("prockin")
    logger.setLevel(level)
    if not any(getattr(h, "_prockin", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(ColoredMessageFormatter("%(message)s", use_color=sys.stderr.isatty()))
        handler._prockin = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger


def print_banner() -> None:
    print(
        f"{C['dim']}┌──────────────────────────────────────────────┐{C['reset']}\n"
        f"{C['dim']}│{C['reset']}{C['cyan']}{C['bold']}          P  r  o  c  K  i  n{C['reset']}"
        f"{C['dim']}                 │{C['reset']}\n"
        f"{C['dim']}│{C['reset']}  {C['mag']}process-tree family clustering{C['reset']}"
        f"{C['dim']}              │{C['reset']}\n"
        f"{C['dim']}└──────────────────────────────────────────────┘{C['reset']}"
    )


# --- report formatting ---


def _profile_identity(record) -> str:
    return f"md5: {record.md5}, uuid: {record.uuid}, profile: {record.name}"


def format_score_line(score: float, identity: str) -> str:
    return f"P: {score:.2f}, {identity}"


def format_group(group: TreeGroup, total: int) -> list[str]:
    pct = group.coverage(total) * 100
    lines = [
        f"{C['green']}[*]{C['reset']} coverage: {pct:.2f}%, "
        f"{_profile_identity(group.profile_record)}"
    ]
    lines.extend(format_score_line(score, rec.identity) for rec, score in group.ranked())
    return lines


def format_cluster_report(report: ClusterReport) -> list[str]:
    lines: list[str] = []
    for group in report.groups:
        lines.append("")
        lines.extend(format_group(group, report.total))
    lines.append(
        f"{C['green']}[*]{C['reset']} total effective profile: "
        f"{len(report.groups)}/{report.total}, "
        f"total coverage: {report.coverage * 100:.2f} %"
    )
    return lines


# --- commands ---


def _load(args: argparse.Namespace, cfg: Config) -> Corpus:
    directory = Path(args.directory) if getattr(args, "directory", None) else cfg.corpus_dir
    return load_corpus(directory, min_nodes=cfg.min_nodes)


def cmd_compare(args: argparse.Namespace, cfg: Config) -> int:
    corpus = _load(args, cfg)
    a, b, match = compare_two(corpus, args.id_a, args.id_b, cfg.exhaustive_search)
    print(f"{C['green']}[*]{C['reset']} {_profile_identity(a.record)}")
    print(format_score_line(match.score, b.record.identity))
    if match.mode == "loose":
        cut = len(match.excluded)
        print(f"{C['dim']}  embedded under {match.site_oid}, {cut} branch(es) cut{C['reset']}")
    return 0


def cmd_profile(args: argparse.Namespace, cfg: Config) -> int:
    corpus = _load(args, cfg)
    group = evaluate_profile(corpus, args.profile_id, cfg.threshold, cfg.exhaustive_search)
    print("\n".join(format_group(group, len(corpus))))
    return 0


def cmd_cluster(args: argparse.Namespace, cfg: Config) -> int:
    corpus = _load(args, cfg)
    report = cluster_all(corpus, cfg.threshold, cfg.exhaustive_search)
    print("\n".join(format_cluster_report(report)))
    return 0


def cmd_serve(args: argparse.Namespace, cfg: Config) -> int:
    from dashboard.app import run_dashboard  # flask is only needed for this command

    corpus = _load(args, cfg)
    cfg = cfg.with_overrides(host=args.host, port=args.port)
    url = f"http://{cfg.host}:{cfg.port}/api/ping"
    print(f"{C['mag']}⬩{C['reset']}{C['cyan']}➢ {C['reset']} API on {url}\n")
    run_dashboard(corpus, cfg)
    return 0


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-t", "--threshold", type=float, default=None, help="similarity threshold (default 0.7)"
    )
    common.add_argument(
        "-m",
        "--min-nodes",
        type=int,
        default=None,
        help="only consider process trees with at least this many nodes",
    )
    common.add_argument(
        "--exhaustive",
        action="store_true",
        default=None,
        help="score every embedding site and keep the best instead of the first",
    )
    common.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    common.add_argument("--no-banner", action="store_true", help="do not print the banner")

    parser = argparse.ArgumentParser(prog="prockin", description="ProcKin")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("compare", parents=[common], help="score run A (profile) against run B")
    p.add_argument("directory")
    p.add_argument("id_a")
    p.add_argument("id_b")
    p.set_defaults(func=cmd_compare)

    p = sub.add_parser("profile", parents=[common], help="coverage of one profile across a corpus")
    p.add_argument("directory")
    p.add_argument("profile_id")
    p.set_defaults(func=cmd_profile)

    p = sub.add_parser("cluster", parents=[common], help="group a whole corpus into families")
    p.add_argument("directory")
    p.set_defaults(func=cmd_cluster)

    p = sub.add_parser("serve", parents=[common], help="serve the read-only JSON API")
    p.add_argument("directory", nargs="?", default=None)
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.set_defaults(func=cmd_serve)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.threshold is not None and not 0.0 <= args.threshold <= 1.0:
        parser.error("threshold must be between 0 and 1")
    if args.min_nodes is not None and args.min_nodes < 1:
        parser.error("min-nodes must be at least 1")

    cfg = load_config().with_overrides(
        threshold=args.threshold,
        min_nodes=args.min_nodes,
        exhaustive_search=args.exhaustive,
    )
    logger = setup_logging("DEBUG" if args.verbose else cfg.log_level)

    if not args.no_banner:
        print_banner()
    try:
        return args.func(args, cfg)
    except ProcKinError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
