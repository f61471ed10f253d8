from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from service import config_schema
from service.scheduler import _build_trigger, _preview_trigger, _resolve_timezone, build_scheduler

UTC = ZoneInfo("UTC")


def test_build_trigger_accepts_interval_minutes():
    trig = _build_trigger({"interval": {"minutes": 5}}, UTC)
    assert trig.interval.total_seconds() == 300

    ts = datetime(2099, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
    times = _preview_trigger(trig, UTC, count=3, start=ts)
    assert times == [ts + timedelta(minutes=5), ts + timedelta(minutes=10), ts + timedelta(minutes=15)]


def test_build_trigger_accepts_cron_numeric_fields():
    trig = _build_trigger({"cron": {"second": 0, "minute": 0, "hour": 3, "day_of_week": "mon-fri"}}, UTC)

    # 2096-01-02 is a Monday
    start = datetime(2096, 1, 2, 0, 0, 0, tzinfo=timezone.utc)
    times = _preview_trigger(trig, UTC, count=3, start=start)
    assert times[0] == datetime(2096, 1, 2, 3, 0, 0, tzinfo=timezone.utc)
    assert times[1] == datetime(2096, 1, 3, 3, 0, 0, tzinfo=timezone.utc)
    assert times[2] == datetime(2096, 1, 4, 3, 0, 0, tzinfo=timezone.utc)


def test_build_trigger_accepts_cron_string_lists():
    trig = _build_trigger({"cron": {"second": 0, "minute": "0,45", "hour": "5-6", "day_of_week": "mon-sat"}}, UTC)
    # 2099-01-05 is a Monday
    start = datetime(2099, 1, 5, 4, 59, 0, tzinfo=timezone.utc)
    times = _preview_trigger(trig, UTC, count=4, start=start)
    assert [t.strftime("%H:%M") for t in times] == ["05:00", "05:45", "06:00", "06:45"]


def test_build_trigger_accepts_crontab_string():
    trig = _build_trigger({"cron": "30 6 * * *"}, UTC)
    start = datetime(2099, 1, 5, 7, 0, 0, tzinfo=timezone.utc)
    times = _preview_trigger(trig, UTC, count=2, start=start)
    assert times == [
        datetime(2099, 1, 6, 6, 30, tzinfo=timezone.utc),
        datetime(2099, 1, 7, 6, 30, tzinfo=timezone.utc),
    ]


@pytest.mark.parametrize(
    "spec",
    [
        "hourly",
        {},
        {"interval": {"minutes": 0}},
        {"interval": 5},
        {"interval": {"minutes": 5}, "cron": "* * * * *"},
        {"cron": 12},
    ],
)
def test_build_trigger_rejects_bad_specs(spec):
    with pytest.raises(ValueError):
        _build_trigger(spec, UTC)


def test_resolve_timezone_falls_back_to_utc():
    assert _resolve_timezone({"timezone": "Mars/Olympus_Mons"}) == UTC
    assert _resolve_timezone({"timezone": "America/New_York"}) == ZoneInfo("America/New_York")


def test_build_scheduler_registers_jobs(write_min_config):
    scheduler = build_scheduler(config_schema.load_config())
    try:
        assert [job.id for job in scheduler.get_jobs()] == ["job-ingest-hourly"]
    finally:
        if scheduler.running:
            scheduler.shutdown(wait=False)
