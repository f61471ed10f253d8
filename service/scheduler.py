# service/scheduler.py
from __future__ import annotations

import logging
import threading
import time as _time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from . import config_schema, runner
from .logging_utils import write_activity_log

LOG = logging.getLogger(__name__)


# ---- Internal structures ----------------------------------------------------


@dataclass(frozen=True, slots=True)
class JobSpec:
    id: str
    trigger: Any  # apscheduler.triggers.base.BaseTrigger
    module: str
    kwargs: dict[str, Any]
    timeout_sec: int | None


# ---- Public controller ------------------------------------------------------


class SchedulerController:
    """A small façade around APScheduler so the CLI can manage lifecycle cleanly."""

    def __init__(self, scheduler: BackgroundScheduler) -> None:
        self._scheduler = scheduler
        self._stopped_evt = threading.Event()

    def stop(self) -> None:
        if self._scheduler.running:
            LOG.info("Shutting down scheduler...")
            # wait=False -> stop immediately; jobs in-flight are allowed to finish.
            self._scheduler.shutdown(wait=False)
        self._stopped_evt.set()
        LOG.info("Scheduler shut down complete.")

    def join(self, timeout: float | None = None) -> bool:
        """True if stopped before timeout."""
        return self._stopped_evt.wait(timeout=timeout)

    def get_job_ids(self) -> Iterable[str]:
        return (job.id for job in self._scheduler.get_jobs())


# ---- Module API -------------------------------------------------------------


def build_scheduler(cfg: dict[str, Any]) -> BackgroundScheduler:
    """APScheduler instance with every configured job registered (not started)."""
    tz = _resolve_timezone(cfg)
    scheduler = BackgroundScheduler(
        timezone=tz,
        job_defaults={"coalesce": True, "max_instances": 1},
        executors={"default": ThreadPoolExecutor(4)},
        jobstores={"default": MemoryJobStore()},
    )
    for raw in cfg.get("jobs", []):
        _add_job(scheduler, _make_job_spec(raw, tz))
    return scheduler


def start(config_path: str | None = None) -> SchedulerController:
    """
    Load configuration, build the scheduler, add jobs, and start.
    Raises config_schema.ConfigError before anything is scheduled if the config is bad.
    """
    scheduler = build_scheduler(config_schema.load_config(config_path))
    scheduler.start()
    LOG.info("Scheduler started with %d job(s).", len(scheduler.get_jobs()))
    return SchedulerController(scheduler)


# ---- Helpers ----------------------------------------------------------------


def _resolve_timezone(cfg: dict[str, Any]) -> ZoneInfo:
    tz_name = cfg.get("timezone") or "UTC"
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        LOG.warning("Falling back to UTC timezone (invalid tz '%s')", tz_name)
        return ZoneInfo("UTC")


def _make_job_spec(raw: dict[str, Any], tz: ZoneInfo) -> JobSpec:
    return JobSpec(
        id=str(raw["id"]),
        trigger=_build_trigger(raw["trigger"], tz),
        module=str(raw["module"]),
        kwargs=dict(raw.get("kwargs") or {}),
        timeout_sec=raw.get("timeout_sec"),
    )


def _build_trigger(trig_def: dict[str, Any], tz: ZoneInfo | None) -> Any:
    """
    Build an APScheduler trigger from a dict.

    Supported shapes:
      {"interval": {weeks|days|hours|minutes|seconds, jitter?}}
      {"cron":     {second?, minute?, hour?, day?, day_of_week?, month?, jitter?}}
      {"cron":     "0 7 * * *"}  # crontab, scheduler tz
    """
    if not isinstance(trig_def, dict):
        raise ValueError("trigger spec must be a dict")

    present = [k for k in ("interval", "cron") if trig_def.get(k) is not None]
    if len(present) != 1:
        raise ValueError("exactly one of {'interval','cron'} must be provided")

    # ---------- INTERVAL ----------
    if present[0] == "interval":
        spec = trig_def["interval"]
        if not isinstance(spec, dict):
            raise ValueError("interval must be an object with time fields")
        kwargs = {k: int(v) for k, v in spec.items() if k in {"weeks", "days", "hours", "minutes", "seconds"} and int(v)}
        if not kwargs:
            raise ValueError("interval must be greater than 0 (provide at least one nonzero time field)")
        if spec.get("jitter"):
            kwargs["jitter"] = int(spec["jitter"])
        return IntervalTrigger(timezone=tz, **kwargs)

    # ---------- CRON ----------
    cron_spec = trig_def["cron"]
    if isinstance(cron_spec, str):
        return CronTrigger.from_crontab(cron_spec, timezone=tz)
    if isinstance(cron_spec, dict):
        return CronTrigger(
            second=cron_spec.get("second", 0),
            minute=cron_spec.get("minute", 0),
            hour=cron_spec.get("hour", 0),
            day=cron_spec.get("day"),
            day_of_week=cron_spec.get("day_of_week"),
            month=cron_spec.get("month"),
            jitter=cron_spec.get("jitter"),
            timezone=tz,
        )
    raise ValueError("cron must be a crontab string or an object")


def _preview_trigger(trigger: Any, tz: Any, count: int = 6, start: datetime | None = None) -> list[datetime]:
    """
    Next `count` fire times, for `validate-config` output and tests.
    Seeds previous_fire_time = now = `start`, then steps 1µs past each hit.
    """
    now = start or datetime.now(tz=tz)
    prev = now
    times: list[datetime] = []
    for _ in range(count):
        nxt = trigger.get_next_fire_time(prev, now)
        if nxt is None:
            break
        times.append(nxt)
        prev = nxt
        now = nxt + timedelta(microseconds=1)
    return times


def _add_job(scheduler: BackgroundScheduler, spec: JobSpec) -> None:
    """Register a wrapper that runs the module via runner.run_module_once and logs the outcome."""

    def _job_wrapper() -> None:
        started = _time.monotonic()
        LOG.info("Job[%s] starting (module=%s)", spec.id, spec.module)
        try:
            runner.run_module_once(
                spec.module,
                kwargs=dict(spec.kwargs),
                trigger_type="scheduled",
                job_context={"job_id": spec.id, "now_iso": datetime.now(timezone.utc).isoformat()},
                timeout_sec=spec.timeout_sec,
            )
        except Exception:
            LOG.exception("Job[%s] raised an exception.", spec.id)
            _write_activity(spec, status="error", duration_s=_time.monotonic() - started)
            return
        duration = _time.monotonic() - started
        LOG.info("Job[%s] finished in %.3fs", spec.id, duration)
        _write_activity(spec, status="ok", duration_s=duration)

    scheduler.add_job(func=_job_wrapper, trigger=spec.trigger, id=spec.id, replace_existing=True)
    LOG.debug("Registered job[%s] (module=%s, trigger=%s)", spec.id, spec.module, spec.trigger)


def _write_activity(spec: JobSpec, status: str, duration_s: float) -> None:
    try:
        write_activity_log({
            "ts": datetime.now(timezone.utc).isoformat(),
            "source": "scheduler",
            "event": "job_run",
            "fields": {
                "job_id": spec.id,
                "module": spec.module,
                "status": status,
                "duration_ms": int(duration_s * 1000),
            },
        })
    except OSError:
        LOG.debug("write_activity_log failed for job[%s]", spec.id, exc_info=True)
