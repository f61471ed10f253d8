from __future__ import annotations

import logging
from typing import Any

from service import logging_utils as _sink

# Top-level keys that never reach a log file as-is
_REDACT_KEYS = {
    "password",
    "token",
    "apikey",
    "api_key",
    "secret",
    "authorization",
    "auth",
    "bearer",
}


def _redact_record(record: dict[str, Any]) -> dict[str, Any]:
    """
    Shallow-copy record and redact obvious secret-like fields at top level.
    The JSONL sink applies a deeper pass of its own.
    """
    redacted = dict(record)
    for k in list(redacted.keys()):
        lk = str(k).lower()
        if lk in _REDACT_KEYS or lk.startswith("smtp_") or lk.endswith("_secret"):
            redacted[k] = "***REDACTED***"
    return redacted


def activity(record: dict[str, Any]) -> None:
    """
    Write a structured activity record to the JSONL activity log.
    Falls back to stdlib logging if the sink cannot write.
    """
    payload = _redact_record(record)
    try:
        _sink.write_activity_log(payload)
    except (OSError, TypeError, ValueError):
        logging.getLogger("job_ingest.activity").info(payload)


def error(record: dict[str, Any]) -> None:
    """
    Write a structured error record to the JSONL error log, mirrored to stdlib
    logging at WARNING so operators tailing the console see it too.
    """
    payload = _redact_record(record)
    logging.getLogger("job_ingest.error").warning(payload)
    try:
        _sink.write_error_log(payload)
    except (OSError, TypeError, ValueError):
        logging.getLogger("job_ingest.error").error("error log sink failed for %r", payload.get("op"))
