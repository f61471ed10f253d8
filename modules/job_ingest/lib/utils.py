from __future__ import annotations

import html
import os
from datetime import datetime, timezone
from typing import Any


def esc(s: Any) -> str:
    """
    Escape text for HTML contexts (titles, URLs). Do NOT wrap or add tags.
    """
    if s is None:
        return ""
    return html.escape(str(s), quote=True)


def truthy(v: Any) -> bool:
    """
    Normalize common truthy inputs from env/kwargs.
    Accepts bools or strings like: '1', 'true', 'yes', 'on'.
    """
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    if isinstance(v, (int, float)):
        return v != 0
    return str(v).strip().lower() in {"1", "true", "yes", "on", "y", "t"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """
    UTC ISO-8601 timestamp with 'Z' suffix. Naive datetimes are taken as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(value: str | None) -> datetime | None:
    """
    Parse an ISO-8601 timestamp (with or without 'Z') into an aware UTC datetime.
    Returns None for empty or unparsable input.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def getenv_str(name: str, default: str | None = None) -> str | None:
    """
    Typed wrapper for environment access; empty strings count as unset.
    """
    val = os.getenv(name)
    return val if val not in (None, "") else default
