import pytest

from conftest import T0, FakeFetcher, FakeProvider, make_engine
from modules.job_ingest.lib.dedupe import Deduplicator, FirstPresentWins
from modules.job_ingest.lib.errors import AuthError, FatalChunkError, RetryableError
from modules.job_ingest.lib.config import Settings
from modules.job_ingest.lib.models import Source
from modules.job_ingest.lib.prompts import build_discovery_prompt, build_extraction_prompt

SRC = Source(id="acme", name="Acme", endpoint="https://acme.example/careers")


def _chunk_budget(engine, skeleton, tokens):
    """Size the window so each chunk carries exactly `tokens` char-tokens of content."""
    engine.context_window = engine.overhead_tokens(skeleton) + tokens
    return engine


def test_discover_resolves_normalizes_and_unions():
    provider = FakeProvider(
        discovery={
            SRC.endpoint: '["/jobs/1", "https://www.acme.example/jobs/1/", "https://acme.example/jobs/2?utm=x",'
            ' "mailto:hr@acme.example"]'
        }
    )
    engine = make_engine(provider, FakeFetcher())

    urls, errors = engine.discover(SRC, "<a href='/jobs/1'>One</a>")
    assert urls == {"https://acme.example/jobs/1", "https://acme.example/jobs/2"}
    assert errors == []


def test_discover_drops_only_the_failing_chunk():
    def handler(prompt):
        if "AAAA" in prompt:
            return "sorry, I cannot help with that"
        if "CCCC" in prompt:
            return FatalChunkError("context_length_exceeded")
        return '["https://acme.example/jobs/9"]'

    provider = FakeProvider(handler=handler)
    # 50 char-tokens (200 chars) per chunk, no overlap -> three chunks
    skeleton = build_discovery_prompt("", endpoint=SRC.endpoint)
    engine = _chunk_budget(make_engine(provider, FakeFetcher()), skeleton, 50)

    urls, errors = engine.discover(SRC, "A" * 200 + "B" * 200 + "C" * 200)
    assert urls == {"https://acme.example/jobs/9"}
    assert len(errors) == 2
    assert "chunk 0" in errors[0] and "Acme" in errors[0]
    assert "chunk 2" in errors[1] and "FatalChunkError" in errors[1]


def test_discover_survives_exhausted_retries():
    provider = FakeProvider(discovery={SRC.endpoint: RetryableError("503")})
    engine = make_engine(provider, FakeFetcher())
    urls, errors = engine.discover(SRC, "page")
    assert urls == set()
    assert len(errors) == 1


def test_discover_empty_content_makes_no_calls():
    provider = FakeProvider()
    urls, errors = make_engine(provider, FakeFetcher()).discover(SRC, "")
    assert (urls, errors) == (set(), [])
    assert provider.prompts == []


def test_discover_propagates_auth_error():
    provider = FakeProvider(discovery={SRC.endpoint: AuthError("401")})
    with pytest.raises(AuthError):
        make_engine(provider, FakeFetcher()).discover(SRC, "page")


def test_extract_merges_partials_across_chunks():
    url = "https://acme.example/jobs/1"

    def handler(prompt):
        if "XXXX" in prompt:
            return '{"title": "X"}'
        return '{"title": "Y", "location": "Z", "posted_date": "2025-01-03"}'

    provider = FakeProvider(handler=handler)
    fetcher = FakeFetcher({url: "X" * 200 + "Y" * 200})
    engine = _chunk_budget(make_engine(provider, fetcher), build_extraction_prompt("", url=url), 50)

    postings, errors = engine.extract(SRC, [url])
    assert errors == []
    [p] = postings
    assert (p.url, p.source_id, p.discovered_at) == (url, "acme", T0)
    assert p.title == "Y"
    assert p.location == "Z"
    assert p.posted_date == "2025-01-03"
    assert fetcher.calls == [(url, "text")]


def test_extract_honors_merge_policy():
    url = "https://acme.example/jobs/1"

    def handler(prompt):
        return '{"title": "X"}' if "XXXX" in prompt else '{"title": "Y", "location": "Z"}'

    engine = make_engine(
        FakeProvider(handler=handler),
        FakeFetcher({url: "X" * 200 + "Y" * 200}),
        deduplicator=Deduplicator(policy=FirstPresentWins()),
    )
    _chunk_budget(engine, build_extraction_prompt("", url=url), 50)
    [p], _ = engine.extract(SRC, [url])
    assert p.fields == {"title": "X", "location": "Z"}


def test_extract_skips_urls_that_fail_or_yield_nothing():
    ok, broken, empty = "https://acme.example/jobs/1", "https://acme.example/jobs/2", "https://acme.example/jobs/3"
    provider = FakeProvider(extraction={ok: '{"title": "Dev"}', empty: "not json at all"})
    fetcher = FakeFetcher({ok: "Dev role", empty: "???"})  # `broken` is missing -> FetchError

    postings, errors = make_engine(provider, fetcher).extract(SRC, [broken, ok, empty])
    assert [p.url for p in postings] == [ok]
    assert any(broken in e for e in errors)
    assert any(empty in e for e in errors)


def test_extract_preserves_input_order():
    urls = [f"https://acme.example/jobs/{i}" for i in range(6)]
    provider = FakeProvider(extraction={u: f'{{"title": "Job {i}"}}' for i, u in enumerate(urls)})
    fetcher = FakeFetcher({u: f"page {i}" for i, u in enumerate(urls)})

    postings, _ = make_engine(provider, fetcher, max_workers=3).extract(SRC, urls)
    assert [p.url for p in postings] == urls
    assert [p.title for p in postings] == [f"Job {i}" for i in range(6)]


def test_extract_aborts_on_auth_error():
    urls = [f"https://acme.example/jobs/{i}" for i in range(3)]
    provider = FakeProvider(extraction={u: AuthError("key revoked") for u in urls})
    fetcher = FakeFetcher({u: "page" for u in urls})
    with pytest.raises(AuthError):
        make_engine(provider, fetcher, max_workers=1).extract(SRC, urls)


def test_extract_contains_unexpected_failure_to_its_url():
    urls = [f"https://acme.example/jobs/{i}" for i in range(6)]
    provider = FakeProvider(extraction={u: '{"title": "Job"}' for u in urls})
    fetcher = FakeFetcher({u: "page" for u in urls})
    fetcher.pages[urls[0]] = RuntimeError("boom")

    postings, errors = make_engine(provider, fetcher, max_workers=1).extract(SRC, urls)
    assert [p.url for p in postings] == urls[1:]
    assert errors == [f"Acme: {urls[0]}: RuntimeError: boom"]


def _assert_prompts_fit(engine, prompts, window):
    assert prompts
    assert max(engine.client.estimate_tokens(p) for p in prompts) <= window


def test_full_chunks_fit_the_window_with_default_overhead():
    settings = Settings.from_env_and_kwargs({"model": "local-llm", "chunk_strategy": "chars"})
    window = settings.resolved_context_window()
    assert window == 8192
    url = "https://acme.example/jobs/1"
    provider = FakeProvider(discovery={SRC.endpoint: "[]"}, extraction={url: '{"title": "Dev"}'})
    engine = make_engine(
        provider,
        FakeFetcher({url: "lorem ipsum " * 10000}),
        context_window=window,
        prompt_overhead_tokens=settings.resolved_prompt_overhead(),
        max_completion_tokens=settings.max_completion_tokens,
    )

    engine.discover(SRC, "<li>opening</li> " * 8000)
    _assert_prompts_fit(engine, provider.prompts, window)

    provider.prompts.clear()
    [posting], _ = engine.extract(SRC, [url])
    assert posting.title == "Dev"
    assert len(provider.prompts) > 1
    _assert_prompts_fit(engine, provider.prompts, window)


def test_overhead_covers_a_small_configured_floor():
    engine = make_engine(FakeProvider(), FakeFetcher(), prompt_overhead_tokens=1024, max_completion_tokens=1024)
    skeleton = build_extraction_prompt("", url="https://acme.example/jobs/1")
    # 1024 would leave nothing for the template itself
    assert engine.overhead_tokens(skeleton) > engine.client.estimate_tokens(skeleton) > 1024
