import json

import pytest

from service import config_schema
from service.config_schema import ConfigError


def test_load_and_validate_min_config(write_min_config):
    cfg = config_schema.load_config()  # CONFIG_PATH set by fixture
    assert cfg["timezone"] == "UTC"
    [job] = cfg["jobs"]
    assert job["id"] == "job-ingest-hourly"
    assert job["module"] == "modules.job_ingest.main"
    assert job["trigger"] == {"interval": {"hours": 1}}
    assert job["kwargs"]["skip_network"] is True
    assert job["timeout_sec"] is None  # 0 means no timeout


def test_missing_path_gives_empty_config(monkeypatch):
    monkeypatch.setenv("TZ", "Europe/Berlin")
    assert config_schema.load_config() == {"timezone": "Europe/Berlin", "jobs": []}


def test_json_config_and_derived_ids(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "jobs": [
            {"module": "modules.job_ingest.main", "trigger": {"cron": "0 7 * * *"}, "timeout_sec": 600},
        ]
    }))
    [job] = config_schema.load_config(str(path))["jobs"]
    assert job["id"] == "modules.job_ingest.main"
    assert job["timeout_sec"] == 600
    assert job["kwargs"] == {}


def _job(**overrides):
    job = {"id": "a", "module": "modules.job_ingest.main", "trigger": {"interval": {"minutes": 30}}}
    job.update(overrides)
    return job


@pytest.mark.parametrize(
    "cfg",
    [
        [],
        {},
        {"jobs": {}},
        {"jobs": [], "timezone": 5},
        {"jobs": ["nope"]},
        {"jobs": [_job(module="")]},
        {"jobs": [_job(), _job()]},
        {"jobs": [_job(trigger=None)]},
        {"jobs": [_job(trigger={})]},
        {"jobs": [_job(trigger={"interval": {"minutes": 5}, "cron": "* * * * *"})]},
        {"jobs": [_job(trigger={"interval": {"fortnights": 1}})]},
        {"jobs": [_job(trigger={"interval": {"minutes": 0}})]},
        {"jobs": [_job(trigger={"interval": {"minutes": "soon"}})]},
        {"jobs": [_job(trigger={"cron": "0 7 * *"})]},
        {"jobs": [_job(trigger={"cron": {"minute": 0, "weekday": 1}})]},
        {"jobs": [_job(trigger={"cron": 7})]},
        {"jobs": [_job(trigger={"date": "2099-01-01"})]},
        {"jobs": [_job(kwargs=["x"])]},
        {"jobs": [_job(timeout_sec=-1)]},
    ],
)
def test_validate_rejects(cfg):
    with pytest.raises(ConfigError):
        config_schema.validate(cfg)


@pytest.mark.parametrize(
    "name, content",
    [("bad.yml", "jobs: [unclosed"), ("list.yaml", "- a\n- b\n"), ("bad.json", "{not json")],
)
def test_unreadable_files_raise_config_error(tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content)
    with pytest.raises(ConfigError):
        config_schema.load_config(str(path))


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigError):
        config_schema.load_config(str(tmp_path / "absent.yml"))
