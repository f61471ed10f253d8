# service/runner.py
from __future__ import annotations

import importlib
import json
import logging
import os
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from service.logging_utils import write_activity_log

log = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def now_iso() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


def _maybe_bool(v: Any) -> Any:
    if isinstance(v, str):
        low = v.strip().lower()
        if low in ("true", "t", "yes", "y"):
            return True
        if low in ("false", "f", "no", "n"):
            return False
    return v


def _maybe_number(v: Any) -> Any:
    if isinstance(v, str):
        s = v.strip()
        if s and (s.isdigit() or (s.startswith("-") and s[1:].isdigit())):
            return int(s)
        try:
            return float(s)
        except ValueError:
            pass
    return v


def _normalize_kwargs_types(kwargs: dict[str, object] | None) -> dict[str, object]:
    """
    Normalize job kwargs right before module.run(**kwargs):

      • Keys ending with "_env" (except `api_key_env`, which names the variable the
        provider reads itself): the string value is an ENV VAR NAME; it is replaced
        by os.getenv(<name>, "") and the key is renamed without the suffix
        (e.g. email_to_env -> email_to).

      • All other keys:
          - JSON-looking strings ({...} / [...]) are parsed.
          - Common bool/number string forms are coerced.
          - Non-strings are left unchanged.
    """
    if not kwargs:
        return {}

    normalized: dict[str, object] = {}
    for k, v in kwargs.items():
        if k.endswith("_env") and k != "api_key_env" and isinstance(v, str):
            normalized[k[: -len("_env")]] = os.getenv(v.strip(), "")
            continue

        if isinstance(v, str):
            s = v.strip()
            if (s.startswith("{") and s.endswith("}")) or (s.startswith("[") and s.endswith("]")):
                try:
                    normalized[k] = json.loads(s)
                    continue
                except json.JSONDecodeError:
                    pass
            normalized[k] = _maybe_number(_maybe_bool(s))
        else:
            normalized[k] = v

    return normalized


def _resolve_callable(module_path: str) -> Callable[..., Any]:
    """Import module and return its `run` callable."""
    mod = importlib.import_module(module_path)
    if not hasattr(mod, "run") or not callable(mod.run):
        raise AttributeError(f"Module {module_path!r} does not define a callable `run(**kwargs)`.")
    return mod.run  # type: ignore[no-any-return]


@dataclass
class RunResult:
    run_id: str
    ok: bool
    message: str
    meta: dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0


def _coerce_meta(value: Any) -> dict[str, Any]:
    """Modules return a meta dict or None."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    raise TypeError(f"Module return must be a dict or None, got {type(value).__name__}")


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def run_module_once(
    module: str,
    kwargs: dict[str, object] | None = None,
    trigger_type: str = "scheduled",
    job_context: dict[str, object] | None = None,  # e.g., {"job_id": "...", "now_iso": "..."}
    timeout_sec: int | None = None,
) -> RunResult:
    """
    Execute a module's run(**kwargs) once in a worker thread, bounded by timeout_sec.

    Writes one activity record either way.
    Raises:
        Propagates exceptions from module execution (TimeoutError on timeout);
        caller/CLI will catch and log.
    """
    run_id = uuid.uuid4().hex
    context: dict[str, Any] = {
        "run_id": run_id,
        "module": module,
        "trigger_type": trigger_type,
        "started_at": now_iso(),
    }
    if job_context:
        context.update({k: v for k, v in job_context.items() if k not in context})

    kw = _normalize_kwargs_types(kwargs)
    run_callable = _resolve_callable(module)

    exc: BaseException | None = None
    t0 = datetime.now()
    # Not a context manager: on timeout we must not block waiting for the worker.
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="runner")
    try:
        fut = pool.submit(run_callable, **kw)
        meta = _coerce_meta(fut.result(timeout=timeout_sec) if timeout_sec else fut.result())
        result = RunResult(run_id=run_id, ok=True, message=str(meta.get("message", "OK")), meta=meta)
    except FutureTimeout:
        exc = TimeoutError(f"Module run timed out after {timeout_sec}s")
        result = RunResult(run_id=run_id, ok=False, message=str(exc), meta={"timeout_sec": timeout_sec})
    except Exception as e:
        exc = e
        result = RunResult(run_id=run_id, ok=False, message=str(e), meta={"exception_type": type(e).__name__})
    finally:
        pool.shutdown(wait=False)
        result_ms = int((datetime.now() - t0).total_seconds() * 1000)
    result.duration_ms = result_ms

    record: dict[str, Any] = {
        "ts": now_iso(),
        "run_id": run_id,
        "module": module,
        "trigger_type": trigger_type,
        "ok": result.ok,
        "message": result.message,
        "duration_ms": result.duration_ms,
        "context": context,
        "kwargs": kw,
        "meta": result.meta,
    }
    try:
        write_activity_log(record)
    except (OSError, TypeError, ValueError) as e:
        log.warning("write_activity_log failed: %s", e)

    if exc:
        raise exc
    return result
