"""
goal: small read-only flask API over a corpus loaded at start-up. lets a browser or a script look
at process trees and ask for comparisons, profile coverage and whole-corpus clustering without
re-running the CLI. runs entirely locally, nothing is written back to disk.

endpoints:
- /api/ping                 -> liveness plus corpus size
- /api/samples              -> one summary row per loaded run
- /api/proctree/<id>        -> nested process tree of one run (as=json downloads it)
- /api/compare?a=..&b=..    -> score of run a (profile) against run b
- /api/profile/<id>         -> coverage of one profile across the corpus
- /api/clusters             -> greedy clustering of the whole corpus

threshold-taking endpoints accept ?threshold=0..1, defaulting to the configured value.
"""

from __future__ import annotations

import json
import logging
from typing import Any

# --- third-party ---
from flask import Flask, jsonify, make_response, request

# --- local/project imports ---
from algorithm.clustering import Corpus, cluster_all, compare_two, evaluate_profile, load_profile
from algorithm.errors import NotFoundError, ProcKinError
from algorithm.proctree import tree_to_dict
from dashboard.config import Config

# single waitress optional block, flask's own server is the fallback
try:
    from waitress import serve as _serve  # type: ignore[import-untyped]

    HAVE_WAITRESS = True
except Exception:
    HAVE_WAITRESS = False
    _serve = None  # type: ignore

log = logging.getLogger("prockin.dashboard")


class BadQuery(ValueError):
    """query parameter that cannot be used"""


def _threshold_arg(cfg: Config) -> float:
    raw = request.args.get("threshold")
    if raw is None or raw == "":
        return cfg.threshold
    try:
        value = float(raw)
    except ValueError as exc:
        raise BadQuery(f"threshold must be a number, got {raw!r}") from exc
    if not 0.0 <= value <= 1.0:
        raise BadQuery("threshold must be between 0 and 1")
    return value


def build_app(corpus: Corpus, cfg: Config) -> Flask:
    app = Flask(__name__)

    # error mapping: unknown ids are 404, bad params 400, broken explicit loads 422
    @app.errorhandler(NotFoundError)
    def _not_found(exc: NotFoundError):
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(BadQuery)
    def _bad_request(exc: BadQuery):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(ProcKinError)
    def _unusable(exc: ProcKinError):
        log.warning("request failed: %s", exc)
        return jsonify({"error": str(exc)}), 422

    @app.get("/api/ping")
    def ping():
        return jsonify({"ok": True, "samples": len(corpus)})

    @app.get("/api/samples")
    def samples():
        return jsonify([e.summary() for e in corpus])

    @app.get("/api/proctree/<sample_id>")
    def proctree(sample_id: str):
        """
        return one run's process tree.

        query params:
          as=json  -> download pretty JSON (<uuid>.proctree.json)
          (none)   -> return JSON to the browser (not as attachment)
        """
        entry = load_profile(corpus, sample_id)
        data: dict[str, Any] = dict(entry.record.summary(), tree=tree_to_dict(entry.tree))

        fmt = (request.args.get("as") or "").lower()
        if fmt == "json":
            resp = make_response(json.dumps(data, indent=2, ensure_ascii=False))
            resp.headers["Content-Type"] = "application/json"
            resp.headers["Content-Disposition"] = (
                f'attachment; filename="{entry.uuid}.proctree.json"'
            )
            return resp
        return jsonify(data)

    @app.get("/api/compare")
    def compare():
        a_id = request.args.get("a") or ""
        b_id = request.args.get("b") or ""
        if not a_id or not b_id:
            raise BadQuery("both a and b are required")
        a, b, match = compare_two(corpus, a_id, b_id, cfg.exhaustive_search)
        return jsonify(
            {"profile": a.record.summary(), "candidate": b.record.summary(), **match.as_dict()}
        )

    @app.get("/api/profile/<sample_id>")
    def profile(sample_id: str):
        threshold = _threshold_arg(cfg)
        group = evaluate_profile(corpus, sample_id, threshold, cfg.exhaustive_search)
        return jsonify(dict(group.as_dict(len(corpus)), threshold=threshold))

    @app.get("/api/clusters")
    def clusters():
        threshold = _threshold_arg(cfg)
        report = cluster_all(corpus, threshold, cfg.exhaustive_search)
        return jsonify(dict(report.as_dict(), threshold=threshold))

    return app


# run the dashboard: start the Flask app with optional Waitress server
def run_dashboard(corpus: Corpus, cfg: Config) -> None:
    app = build_app(corpus, cfg)
    log.info("serving %d samples on http://%s:%d", len(corpus), cfg.host, cfg.port)
    if HAVE_WAITRESS:
        try:
            _serve(app, host=cfg.host, port=cfg.port)
        except KeyboardInterrupt:
            pass  # expected when shutting down
    else:
        try:
            app.run(host=cfg.host, port=cfg.port, debug=False)
        except KeyboardInterrupt:
            pass  # expected when shutting down
