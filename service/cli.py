# service/cli.py
"""
User-facing command-line entrypoints for the container.

Subcommands
-----------
serve
    - Starts the APScheduler service loop via service.scheduler.start()
    - Registers signal handlers for graceful shutdown

run [MODULE] [--kwargs k=v ...] [--no-email]
    - Executes a module ad-hoc via runner.run_module_once(...)
    - MODULE defaults to the ingestion pipeline (modules.job_ingest.main)

add-source ID ENDPOINT [--name NAME] [--kind html|api|text]
list-sources
latest [--limit N]
    - Inspect/maintain the job_ingest SQLite store (--db or JOB_INGEST_DB)

validate-config
    - Loads/validates config and returns nonzero on error
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from modules.job_ingest.lib.errors import ConfigError as IngestConfigError
from modules.job_ingest.lib.store import SqliteStore
from modules.job_ingest.lib.utils import to_iso
from service import config_schema as _config_schema
from service import logging_utils as L
from service import runner as _runner
from service import scheduler as _scheduler

LOG = logging.getLogger("service.cli")

DEFAULT_MODULE = "modules.job_ingest.main"
DEFAULT_DB = "/app/local/state/job_ingest.db"


# ----------------------------- Logging setup ---------------------------------
def _ensure_logging() -> None:
    """Initialize a reasonable logging setup if none exists yet."""
    root = logging.getLogger()
    if not root.handlers:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        logging.basicConfig(
            level=getattr(logging, level, logging.INFO),
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )


# -------------------------- Utility / glue code ------------------------------
def _parse_kv_pairs(pairs: Iterable[str]) -> dict[str, Any]:
    """
    Parse key=value strings into a dict.
    Values that look like JSON (true/false/null/number/object/array) are parsed;
    anything else stays a raw string.
    """
    out: dict[str, Any] = {}
    for raw in pairs:
        if "=" not in raw:
            raise argparse.ArgumentTypeError(f"--kwargs item must be key=value (got {raw!r})")
        k, v = raw.split("=", 1)
        k = k.strip()
        v = v.strip()
        if not k:
            raise argparse.ArgumentTypeError(f"Invalid key in --kwargs item {raw!r}")
        try:
            out[k] = json.loads(v)
        except json.JSONDecodeError:
            out[k] = v
    return out


def _print_table(rows: Sequence[Sequence[str]], headers: Sequence[str]) -> None:
    """Very simple fixed-width table printer."""
    widths = [max(len(headers[i]), *(len(r[i]) for r in rows)) if rows else len(headers[i]) for i in range(len(headers))]
    sep = "+" + "+".join("-" * (w + 2) for w in widths) + "+"
    print(sep)
    print("| " + " | ".join(h.ljust(w) for h, w in zip(headers, widths)) + " |")
    print(sep)
    for r in rows:
        print("| " + " | ".join(c.ljust(w) for c, w in zip(r, widths)) + " |")
    print(sep)


def _now_iso() -> str:
    return datetime.now().astimezone().isoformat()


def _store(args: argparse.Namespace) -> SqliteStore:
    return SqliteStore(args.db or os.getenv("JOB_INGEST_DB") or DEFAULT_DB)


# ------------------------------ Subcommands ----------------------------------
def cmd_validate_config(args: argparse.Namespace) -> int:
    try:
        cfg = _config_schema.load_config(args.config)
        tz = _scheduler._resolve_timezone(cfg)
        rows = []
        for job in cfg["jobs"]:
            trigger = _scheduler._build_trigger(job["trigger"], tz)
            upcoming = _scheduler._preview_trigger(trigger, tz, count=1)
            rows.append((job["id"], job["module"], upcoming[0].isoformat() if upcoming else "(none)"))
    except (_config_schema.ConfigError, ValueError) as e:
        print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
        return 1
    if rows:
        _print_table(rows, headers=("JOB", "MODULE", "NEXT RUN"))
    print(f"OK: configuration is valid ({len(cfg['jobs'])} job(s), timezone {cfg['timezone']}).")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    start_time = time.monotonic()
    kwargs = _parse_kv_pairs(args.kwargs or [])
    if args.no_email:
        kwargs["send_email"] = False
    LOG.debug("Run module %s with kwargs=%s", args.module, kwargs)

    try:
        result = _runner.run_module_once(module=args.module, kwargs=kwargs, trigger_type="adhoc")
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        print(f"FAILURE: {e}", file=sys.stderr)
        L.write_error_log({
            "ts": _now_iso(),
            "where": "cli.run",
            "module": args.module,
            "kwargs": kwargs,
            "error": repr(e),
            "duration_ms": int((time.monotonic() - start_time) * 1000),
        })
        return 1

    print(f"DONE: {result.message}")
    return 0


def cmd_add_source(args: argparse.Namespace) -> int:
    try:
        _store(args).upsert_source(args.id, args.name or args.id, args.endpoint, args.kind)
    except IngestConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    print(f"OK: source {args.id!r} saved.")
    return 0


def cmd_list_sources(args: argparse.Namespace) -> int:
    sources = _store(args).list_sources()
    if not sources:
        print("No sources registered.")
        return 0
    rows = [
        (s.id, s.name, s.kind, s.endpoint, to_iso(s.last_scraped) if s.last_scraped else "never")
        for s in sources
    ]
    _print_table(rows, headers=("ID", "NAME", "KIND", "ENDPOINT", "LAST SCRAPED"))
    return 0


def cmd_latest(args: argparse.Namespace) -> int:
    rows = _store(args).latest_postings(limit=args.limit)
    if not rows:
        print("No postings stored yet.")
        return 0
    _print_table(
        [(r["discovered_utc"], r["source"], r["title"] or "(no title)", r["posted_date"] or "", r["url"]) for r in rows],
        headers=("DISCOVERED", "SOURCE", "TITLE", "POSTED", "URL"),
    )
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the scheduler loop until a termination signal is received."""
    L.write_activity_log({"ts": _now_iso(), "event": "serve_start"})
    stop_event = threading.Event()

    def _graceful_shutdown(signum=None, frame=None):
        LOG.info("Signal %s received; initiating shutdown...", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _graceful_shutdown)

    try:
        controller = _scheduler.start(config_path=args.config)
    except (_config_schema.ConfigError, ValueError) as e:
        LOG.error("Cannot start scheduler: %s", e)
        return 1

    LOG.info("Scheduler started with jobs: %s", ", ".join(controller.get_job_ids()) or "(none)")
    while not stop_event.is_set():
        time.sleep(0.3)

    controller.stop()
    controller.join(timeout=10.0)
    L.write_activity_log({"ts": _now_iso(), "event": "serve_stop"})
    return 0


# ------------------------------- Argparse ------------------------------------
def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="python -m service.cli",
        description="Job ingestion service command-line tools",
    )
    p.add_argument("--config", help="Path to config file (fallbacks to CONFIG_PATH env or an empty config).")
    p.add_argument("--db", help=f"job_ingest SQLite path (fallbacks to JOB_INGEST_DB env or {DEFAULT_DB}).")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("serve", help="Run the main scheduler loop.")
    sp.set_defaults(func=cmd_serve)

    sp = sub.add_parser("run", help="Execute a module ad-hoc via runner.run_module_once().")
    sp.add_argument("module", nargs="?", default=DEFAULT_MODULE, help=f"Module path (default {DEFAULT_MODULE}).")
    sp.add_argument(
        "--kwargs",
        metavar="k=v",
        nargs="*",
        help="Extra keyword arguments for the module (JSON values supported).",
    )
    sp.add_argument("--no-email", action="store_true", help="Log the notification instead of emailing it.")
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("add-source", help="Register (or update) a careers page/API to poll.")
    sp.add_argument("id")
    sp.add_argument("endpoint")
    sp.add_argument("--name")
    sp.add_argument("--kind", default="html", choices=("html", "api", "text"))
    sp.set_defaults(func=cmd_add_source)

    sp = sub.add_parser("list-sources", help="Print registered sources and their watermarks.")
    sp.set_defaults(func=cmd_list_sources)

    sp = sub.add_parser("latest", help="Print the most recently discovered postings.")
    sp.add_argument("--limit", type=int, default=20)
    sp.set_defaults(func=cmd_latest)

    sp = sub.add_parser("validate-config", help="Verify configuration correctness.")
    sp.set_defaults(func=cmd_validate_config)

    return p


# --------------------------------- Main --------------------------------------
def main(argv: Iterable[str] | None = None) -> int:
    _ensure_logging()
    parser = _build_parser()
    args = parser.parse_args(args=list(argv) if argv is not None else None)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
