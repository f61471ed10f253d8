# service/config_schema.py
from __future__ import annotations

import json
import logging
import os
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the service config is invalid."""


_TRIGGER_KINDS = ("interval", "cron")
_INTERVAL_FIELDS = {"weeks", "days", "hours", "minutes", "seconds", "jitter"}
_CRON_FIELDS = {"second", "minute", "hour", "day", "day_of_week", "month", "jitter"}


def load_config(path: str | None = None) -> dict[str, Any]:
    """
    Load the service configuration.

    Resolution order:
      1) Explicit `path` argument (if provided)
      2) os.environ['CONFIG_PATH'] (if set)
      3) Internal default (empty config with empty jobs list)

    Returns a normalized dict: {"timezone": str, "jobs": [{"id", "module", "trigger",
    "kwargs", "timeout_sec"}, ...]}. Raises ConfigError if the file is unreadable
    or invalid.
    """
    resolved_path = path or os.environ.get("CONFIG_PATH")
    if not resolved_path:
        logger.info("CONFIG_PATH not provided; using empty default config.")
        cfg: dict[str, Any] = {"jobs": []}
    else:
        cfg = _read_any(resolved_path)

    validate(cfg)
    return _apply_defaults(cfg)


def validate(cfg: Any) -> None:
    """Raise ConfigError on any problem. No prints, no sys.exit()."""
    if not isinstance(cfg, dict):
        raise ConfigError("Config must be a mapping/object.")

    jobs = cfg.get("jobs")
    if jobs is None:
        raise ConfigError("Missing required top-level 'jobs' list.")
    if not isinstance(jobs, list):
        raise ConfigError("'jobs' must be a list.")

    tz = cfg.get("timezone")
    if tz is not None and not isinstance(tz, str):
        raise ConfigError("'timezone' must be a string if provided.")

    seen_ids: set[str] = set()
    for idx, job in enumerate(jobs):
        if not isinstance(job, dict):
            raise ConfigError(f"Job at index {idx} must be an object/dict.")

        module = job.get("module")
        if not isinstance(module, str) or not module.strip():
            raise ConfigError(f"Job {idx}: 'module' is required and must be a non-empty string.")

        job_id = _derive_job_id(job, idx)
        if job_id in seen_ids:
            raise ConfigError(f"Duplicate job id '{job_id}'.")
        seen_ids.add(job_id)

        _validate_trigger(job.get("trigger"), job_id)

        if "kwargs" in job and not isinstance(job["kwargs"], dict):
            raise ConfigError(f"Job '{job_id}': 'kwargs' must be a dict if provided.")
        if "timeout_sec" in job:
            _to_int(job["timeout_sec"], field="timeout_sec", job_id=job_id, allow_zero=True)


def _validate_trigger(trigger: Any, job_id: str) -> None:
    if not isinstance(trigger, dict):
        raise ConfigError(f"Job '{job_id}': 'trigger' object is required.")
    present = [k for k in _TRIGGER_KINDS if trigger.get(k) is not None]
    if len(present) != 1:
        raise ConfigError(f"Job '{job_id}': exactly one trigger required among {', '.join(_TRIGGER_KINDS)}.")

    kind = present[0]
    spec = trigger[kind]
    if kind == "interval":
        if not isinstance(spec, dict):
            raise ConfigError(f"Job '{job_id}': interval must be an object of time fields.")
        unknown = set(spec) - _INTERVAL_FIELDS
        if unknown:
            raise ConfigError(f"Job '{job_id}': interval has unknown field(s): {sorted(unknown)}")
        values = [
            _to_int(v, field=f"interval.{k}", job_id=job_id, allow_zero=True) for k, v in spec.items() if k != "jitter"
        ]
        if not any(values):
            raise ConfigError(f"Job '{job_id}': interval must be greater than 0.")
    else:
        if isinstance(spec, str):
            if len(spec.split()) != 5:
                raise ConfigError(f"Job '{job_id}': cron string must have 5 fields: {spec!r}")
        elif isinstance(spec, dict):
            unknown = set(spec) - _CRON_FIELDS
            if unknown:
                raise ConfigError(f"Job '{job_id}': cron has unknown field(s): {sorted(unknown)}")
        else:
            raise ConfigError(f"Job '{job_id}': cron must be a crontab string or an object.")


def _apply_defaults(cfg: dict[str, Any]) -> dict[str, Any]:
    tz = cfg.get("timezone")
    if not isinstance(tz, str) or not tz.strip():
        tz = os.environ.get("TZ", "UTC")

    jobs: list[dict[str, Any]] = []
    for idx, job in enumerate(cfg["jobs"]):
        job_id = _derive_job_id(job, idx)
        timeout = None
        if job.get("timeout_sec") is not None:
            # 0 means "no timeout"
            timeout = _to_int(job["timeout_sec"], field="timeout_sec", job_id=job_id, allow_zero=True) or None
        jobs.append({
            "id": job_id,
            "module": job["module"].strip(),
            "trigger": dict(job["trigger"]),
            "kwargs": dict(job.get("kwargs") or {}),
            "timeout_sec": timeout,
        })
    return {"timezone": tz, "jobs": jobs}


def _derive_job_id(job: dict[str, Any], idx: int) -> str:
    # id | module → id
    for key in ("id", "module"):
        v = job.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return f"job_{idx}"


def _to_int(value: Any, *, field: str, job_id: str, allow_zero: bool) -> int:
    try:
        iv = int(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"Job '{job_id}': '{field}' must be an integer.") from err
    if iv < 0 or (iv == 0 and not allow_zero):
        raise ConfigError(f"Job '{job_id}': '{field}' must be >= {'0' if allow_zero else '1'} (got {iv}).")
    return iv


def _read_any(path: str) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path}: {e}") from e

    if path.lower().endswith((".yml", ".yaml")):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        data = {} if data is None else data
        if not isinstance(data, dict):
            raise ConfigError("Top-level YAML must be a mapping/object.")
        return data

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
