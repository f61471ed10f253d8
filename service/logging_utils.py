# service/logging_utils.py
from __future__ import annotations

import datetime as _dt
import json
import os
import socket
from collections.abc import Iterable
from typing import Any

# Settings are read per write so tests (and long-running services) can redirect logs:
#   LOG_DIR                  base directory (default /app/local/logs)
#   ACTIVITY_LOG_PREFIX      default "activity"
#   ERROR_LOG_PREFIX         default "error"
#   ACTIVITY_LOG_MAX_BYTES   size-based rotation threshold; <=0 disables (default 0)

_DEFAULT_REDACT_KEYS = {
    "password",
    "token",
    "apikey",
    "api_key",
    "secret",
    "smtp_",
    "authorization",
    "cookie",
    "set-cookie",
}

_HOSTNAME = socket.gethostname()
_PID = os.getpid()
_REDACTED = "***REDACTED***"


# ---- Public API --------------------------------------------------------------


def write_activity_log(record: dict[str, Any]) -> None:
    """
    Append one structured activity record (JSON-safe) to today's activity file.
    Never mutates the passed-in dict. May raise on unrecoverable I/O/serialization errors.
    """
    _write_jsonl(get_log_path(os.getenv("ACTIVITY_LOG_PREFIX", "activity")), record)


def write_error_log(record: dict[str, Any]) -> None:
    """Append one structured error record, parallel to the activity log."""
    _write_jsonl(get_log_path(os.getenv("ERROR_LOG_PREFIX", "error")), record)


def get_log_path(prefix: str, day: _dt.date | None = None) -> str:
    """<LOG_DIR>/<prefix>-YYYY-MM-DD.jsonl"""
    log_dir = os.getenv("LOG_DIR", "/app/local/logs")
    return os.path.join(log_dir, f"{prefix}-{(day or _dt.date.today()).isoformat()}.jsonl")


def read_records(path: str) -> list[dict[str, Any]]:
    """Load every record from a JSONL log file (diagnostics/tests); [] if missing."""
    if not os.path.exists(path):
        return []
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


def redact(record: dict[str, Any], keys: Iterable[str] | None = None) -> dict[str, Any]:
    """
    Redacted deep copy of `record`: values whose KEY contains any pattern
    (case-insensitive substring) are scrubbed, as are bearer tokens inside strings.
    """
    return _redact_deep(record, tuple(keys or _DEFAULT_REDACT_KEYS))


# ---- Internal helpers --------------------------------------------------------


def _redact_deep(value: Any, patterns: tuple[str, ...]) -> Any:
    if isinstance(value, dict):
        return {
            k: (_REDACTED if isinstance(k, str) and any(p in k.lower() for p in patterns) else _redact_deep(v, patterns))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact_deep(v, patterns) for v in value]
    if isinstance(value, str) and "bearer " in value.lower():
        scheme = value.split(" ", 1)[0]
        return f"{scheme} {_REDACTED}"
    return value


def _rotate_if_needed(path: str) -> None:
    max_bytes = int(os.getenv("ACTIVITY_LOG_MAX_BYTES", "0") or 0)
    if max_bytes <= 0:
        return
    try:
        if os.path.getsize(path) < max_bytes:
            return
    except FileNotFoundError:
        return
    ts = _dt.datetime.now().strftime("%Y%m%d-%H%M%S")
    os.replace(path, f"{path}.{ts}")


def _write_jsonl(path: str, record: dict[str, Any]) -> None:
    """
    Redact, stamp host/pid, optionally rotate by size, then append a single
    line with O_APPEND (atomic on POSIX). One retry on transient OSError.
    """
    payload = _redact_deep(record, tuple(_DEFAULT_REDACT_KEYS))
    meta = payload.get("_meta") if isinstance(payload.get("_meta"), dict) else {}
    payload["_meta"] = {**meta, "host": _HOSTNAME, "pid": _PID}

    # Serialize before touching the file so JSON errors leave nothing half-written.
    data = (json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str) + "\n").encode("utf-8")

    def _append_once() -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        _rotate_if_needed(path)
        fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
        try:
            os.write(fd, data)
        finally:
            os.close(fd)

    try:
        _append_once()
    except OSError:
        _append_once()
