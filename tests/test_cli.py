import json

import pytest

from conftest import T0
from modules.job_ingest.lib.models import ExtractedPosting
from modules.job_ingest.lib.store import SqliteStore
from service import cli



@pytest.fixture
def db(tmp_path):
    return str(tmp_path / "cli.db")


def test_add_and_list_sources(db, capsys):
    assert cli.main(["--db", db, "add-source", "acme", "https://acme.example/careers", "--name", "Acme"]) == 0
    assert "OK: source 'acme' saved." in capsys.readouterr().out

    assert cli.main(["--db", db, "list-sources"]) == 0
    out = capsys.readouterr().out
    assert "| acme" in out
    assert "https://acme.example/careers" in out
    assert "never" in out


def test_db_from_env(db, monkeypatch, capsys):
    monkeypatch.setenv("JOB_INGEST_DB", db)
    assert cli.main(["list-sources"]) == 0
    assert "No sources registered." in capsys.readouterr().out


def test_latest(db, capsys):
    assert cli.main(["--db", db, "latest"]) == 0
    assert "No postings stored yet." in capsys.readouterr().out

    store = SqliteStore(db)
    store.upsert_source("acme", "Acme", "https://acme.example/careers")
    store.insert_posting(ExtractedPosting("https://acme.example/jobs/1", "acme", T0, {"title": "Developer"}))
    assert cli.main(["--db", db, "latest", "--limit", "5"]) == 0
    out = capsys.readouterr().out
    assert "Developer" in out and "Acme" in out


def test_validate_config_ok(write_min_config, capsys):
    assert cli.main(["validate-config"]) == 0
    out = capsys.readouterr().out
    assert "job-ingest-hourly" in out
    assert "OK: configuration is valid (1 job(s), timezone UTC)." in out


def test_validate_config_error(tmp_path, capsys):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"jobs": [{"module": "m", "trigger": {"interval": {"minutes": 0}}}]}))
    assert cli.main(["--config", str(path), "validate-config"]) == 1
    assert "ERROR: configuration invalid" in capsys.readouterr().err


def test_run_no_email_offline(db, capsys):
    cli.main(["--db", db, "add-source", "acme", "https://acme.example/careers"])
    capsys.readouterr()
    rc = cli.main(["run", "--kwargs", f"sqlite_path={db}", "skip_network=true", "--no-email"])
    assert rc == 0
    assert "DONE: 0 new postings" in capsys.readouterr().out


def test_run_failure_returns_1(db, capsys):
    rc = cli.main(["run", "--kwargs", f"sqlite_path={db}", "url_policy=fuzzy"])
    assert rc == 1
    assert "FAILURE" in capsys.readouterr().err


def test_parse_kv_pairs():
    assert cli._parse_kv_pairs(["a=1", "b=true", "c=hello", 'd=["x"]', "e=x=y"]) == {
        "a": 1,
        "b": True,
        "c": "hello",
        "d": ["x"],
        "e": "x=y",
    }
