# tests/conftest.py
import os
import re
from datetime import datetime, timezone

import pytest
from freezegun import freeze_time

from modules.job_ingest.lib.chunker import CharTokenizer, TokenBudgetChunker
from modules.job_ingest.lib.dedupe import Deduplicator
from modules.job_ingest.lib.errors import FetchError
from modules.job_ingest.lib.extraction import ExtractionEngine
from modules.job_ingest.lib.fetcher import ContentFetcher
from modules.job_ingest.lib.model_client import Completion, ModelClient, ModelProvider
from modules.job_ingest.lib.notifier import Notifier
from modules.job_ingest.lib.orchestrator import IngestionOrchestrator
from modules.job_ingest.lib.rate_limiter import RateLimiter
from modules.job_ingest.lib.store import SqliteStore

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

_ENDPOINT_RE = re.compile(r"fetched from (\S+?)\.\n")
_POSTING_RE = re.compile(r"job posting at (\S+?)\.\n")


# ---------------------------------------------------------------------
# Live tests are opt-in: use --live or RUN_LIVE_TESTS=1
# ---------------------------------------------------------------------
def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run tests marked as 'live' (network calls or external services).",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "live: marks tests that perform live network calls or hit external services (skipped by default).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_live = config.getoption("--live") or os.getenv("RUN_LIVE_TESTS") == "1"
    if run_live:
        return
    skip_live = pytest.mark.skip(reason="live tests disabled (use --live or RUN_LIVE_TESTS=1)")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------
# Test-wide env defaults (autouse, function-scoped)
# ---------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _env_defaults(monkeypatch, tmp_path):
    # Write logs to a throwaway dir so real logs stay clean (per test)
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("ACTIVITY_LOG_PREFIX", "activity-test")
    monkeypatch.setenv("ERROR_LOG_PREFIX", "error-test")
    monkeypatch.setenv("SEND_EMAIL", "0")
    monkeypatch.delenv("JOB_INGEST_DRY_RUN", raising=False)
    monkeypatch.delenv("LLM_MODEL", raising=False)
    monkeypatch.delenv("LLM_BASE_URL", raising=False)
    monkeypatch.delenv("NOTIFY_EMAIL", raising=False)
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    yield


@pytest.fixture
def frozen_utc():
    with freeze_time("2025-01-01T00:00:00Z"):
        yield


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------
class FakeClock:
    """Monotonic clock + sleep that only advance when the code under test sleeps."""

    def __init__(self, start: float = 0.0):
        self.t = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


class FakeProvider(ModelProvider):
    """
    Routes prompts to scripted responses.

    discovery: {endpoint: response}   extraction: {posting_url: response}
    A response is a str, an Exception (raised), a list (consumed one per call),
    or a callable(prompt) returning one of those.
    """

    def __init__(self, discovery=None, extraction=None, handler=None):
        self.discovery = dict(discovery or {})
        self.extraction = dict(extraction or {})
        self.handler = handler
        self.prompts: list[str] = []

    def complete(self, prompt, *, model, max_tokens, temperature):
        self.prompts.append(prompt)
        if self.handler is not None:
            response = self.handler(prompt)
        else:
            m = _ENDPOINT_RE.search(prompt)
            if m:
                response = self.discovery.get(m.group(1), "[]")
            else:
                m = _POSTING_RE.search(prompt)
                response = self.extraction.get(m.group(1) if m else "", "{}")
        if isinstance(response, list):
            response = response.pop(0)
        if callable(response):
            response = response(prompt)
        if isinstance(response, Exception):
            raise response
        return Completion(text=response, total_tokens=10)

    def calls_for(self, marker: str) -> int:
        return sum(1 for p in self.prompts if marker in p)


class FakeFetcher(ContentFetcher):
    """Serves canned pages by URL; values may be Exceptions to raise. Missing -> FetchError."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.calls: list[tuple[str, str]] = []

    def fetch(self, endpoint, kind="html"):
        self.calls.append((endpoint, kind))
        page = self.pages.get(endpoint)
        if page is None:
            raise FetchError(f"404 for {endpoint}", endpoint=endpoint)
        if isinstance(page, Exception):
            raise page
        return page

    def fetched(self, url: str) -> int:
        return sum(1 for u, _ in self.calls if u == url)


class RecordingNotifier(Notifier):
    def __init__(self, error: Exception | None = None):
        self.sent: list[list] = []
        self.error = error

    def send(self, items):
        self.sent.append(list(items))
        if self.error is not None:
            raise self.error


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------
@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return SqliteStore(str(tmp_path / "job_ingest.db"))


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


def make_client(provider: ModelProvider, **kw) -> ModelClient:
    limiter = RateLimiter(requests_per_minute=None, tokens_per_minute=None, min_interval_seconds=0)
    kw.setdefault("max_completion_tokens", 16)
    return ModelClient(provider, limiter, model="test-model", sleep=lambda s: None, **kw)


def make_engine(provider, fetcher, *, context_window=8192, prompt_overhead_tokens=1024, overlap_tokens=0, **kw):
    return ExtractionEngine(
        make_client(provider, max_completion_tokens=kw.pop("max_completion_tokens", 16)),
        fetcher,
        chunker=TokenBudgetChunker(CharTokenizer(4)),
        deduplicator=kw.pop("deduplicator", None) or Deduplicator(),
        context_window=context_window,
        prompt_overhead_tokens=prompt_overhead_tokens,
        overlap_tokens=overlap_tokens,
        max_workers=kw.pop("max_workers", 2),
        now=lambda: T0,
        **kw,
    )


@pytest.fixture
def pipeline(store, fetcher, provider, notifier):
    """Factory for an orchestrator wired to the shared fakes; kwargs go to the orchestrator."""

    def _make(**kw):
        dedup = Deduplicator()
        engine = make_engine(provider, fetcher, deduplicator=dedup)
        kw.setdefault("now", lambda: T0)
        return IngestionOrchestrator(store, engine, fetcher, dedup, notifier, **kw)

    return _make


@pytest.fixture
def write_min_config(tmp_path, monkeypatch):
    """YAML service config with one job_ingest job; CONFIG_PATH points at it."""
    path = tmp_path / "config.yml"
    path.write_text(
        "timezone: UTC\n"
        "jobs:\n"
        "  - id: job-ingest-hourly\n"
        "    module: modules.job_ingest.main\n"
        "    trigger:\n"
        "      interval: {hours: 1}\n"
        "    timeout_sec: 0\n"
        "    kwargs:\n"
        f"      sqlite_path: {tmp_path / 'cfg.db'}\n"
        "      skip_network: true\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("CONFIG_PATH", str(path))
    return path
