import types

import httpx
import openai
import pytest

from modules.job_ingest.lib.errors import AuthError, FatalChunkError, RetryableError
from modules.job_ingest.lib.model_client import (
    DEFAULT_CONTEXT_WINDOW,
    Completion,
    ModelClient,
    ModelProvider,
    OpenAIProvider,
    classify_openai_error,
    context_window_for,
)
from modules.job_ingest.lib.rate_limiter import RateLimiter

_REQ = httpx.Request("POST", "https://llm.example/v1/chat/completions")


class SequenceProvider(ModelProvider):
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def complete(self, prompt, *, model, max_tokens, temperature):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(provider, fake_clock, **kw):
    limiter = RateLimiter(requests_per_minute=None, tokens_per_minute=None, clock=fake_clock, sleep=fake_clock.sleep)
    return ModelClient(provider, limiter, model="m", sleep=fake_clock.sleep, **kw)


def _status_error(cls, status):
    return cls("boom", response=httpx.Response(status, request=_REQ), body=None)


def test_retryable_errors_back_off_then_succeed(fake_clock):
    provider = SequenceProvider(RetryableError("503"), RetryableError("503"), Completion("ok", 7))
    client = _client(provider, fake_clock)

    assert client.complete("hello") == "ok"
    assert provider.calls == 3
    assert fake_clock.sleeps == [1.0, 2.0]


def test_retryable_error_surfaces_after_max_attempts(fake_clock):
    provider = SequenceProvider(*[RetryableError("503") for _ in range(3)])
    client = _client(provider, fake_clock, max_attempts=3)

    with pytest.raises(RetryableError):
        client.complete("hello")
    assert provider.calls == 3
    assert fake_clock.sleeps == [1.0, 2.0]


@pytest.mark.parametrize("err", [FatalChunkError("ctx"), AuthError("401")])
def test_fatal_and_auth_errors_are_not_retried(fake_clock, err):
    provider = SequenceProvider(err, Completion("unused"))
    client = _client(provider, fake_clock)

    with pytest.raises(type(err)):
        client.complete("hello")
    assert provider.calls == 1
    assert fake_clock.sleeps == []


def test_backoff_is_exponential_and_capped():
    client = ModelClient(SequenceProvider(), RateLimiter(), model="m", backoff_base=1.0, backoff_max=30.0)
    assert [client.backoff_delay(a) for a in range(7)] == [1, 2, 4, 8, 16, 30, 30]


def test_quota_accounting_follows_where_the_failure_happened(fake_clock):
    provider = SequenceProvider(
        RetryableError("connection reset", consumed_quota=False),
        RetryableError("502", consumed_quota=True),
        Completion("ok", total_tokens=5),
    )
    client = _client(provider, fake_clock, max_completion_tokens=10)
    client.complete("abcd")

    snap = client.limiter.snapshot()
    assert snap["pending_requests"] == 0
    # connection failure released, 502 recorded at the estimate, success recorded at actual usage
    assert snap["minute_requests"] == 2
    assert snap["minute_tokens"] == client.estimate_tokens("abcd") + 5


def test_estimate_includes_completion_allowance():
    client = ModelClient(SequenceProvider(), RateLimiter(), model="m", max_completion_tokens=100)
    assert client.estimate_tokens("x" * 40) == 110


def test_context_window_lookup():
    assert context_window_for("gpt-4o-mini") == 128000
    assert context_window_for("something-unknown") == DEFAULT_CONTEXT_WINDOW == 8192
    assert context_window_for("gpt-4o-mini", override=4096) == 4096


# ---- OpenAI adapter ----------------------------------------------------------


@pytest.mark.parametrize(
    "exc, expected, consumed",
    [
        (_status_error(openai.AuthenticationError, 401), AuthError, True),
        (_status_error(openai.PermissionDeniedError, 403), AuthError, True),
        (_status_error(openai.RateLimitError, 429), RetryableError, True),
        (_status_error(openai.InternalServerError, 500), RetryableError, True),
        (_status_error(openai.BadRequestError, 400), FatalChunkError, True),
        (openai.APIConnectionError(request=_REQ), RetryableError, False),
        (openai.APITimeoutError(request=_REQ), RetryableError, False),
    ],
)
def test_classify_openai_error(exc, expected, consumed):
    err = classify_openai_error(exc)
    assert type(err) is expected
    assert err.consumed_quota is consumed


def test_openai_provider_without_key_raises_auth_error(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(AuthError):
        OpenAIProvider().complete("hi", model="m", max_tokens=5, temperature=0)


def _fake_openai_client(create):
    return types.SimpleNamespace(chat=types.SimpleNamespace(completions=types.SimpleNamespace(create=create)))


def test_openai_provider_returns_text_and_usage():
    seen = {}

    def create(**kwargs):
        seen.update(kwargs)
        return types.SimpleNamespace(
            choices=[types.SimpleNamespace(message=types.SimpleNamespace(content='  ["https://a.example/1"] '))],
            usage=types.SimpleNamespace(total_tokens=33),
        )

    provider = OpenAIProvider(client=_fake_openai_client(create))
    result = provider.complete("prompt", model="gpt-4o-mini", max_tokens=50, temperature=0.0)

    assert result == Completion(text='["https://a.example/1"]', total_tokens=33)
    assert seen["model"] == "gpt-4o-mini"
    assert seen["messages"] == [{"role": "user", "content": "prompt"}]


def test_openai_provider_classifies_sdk_errors():
    def create(**kwargs):
        raise _status_error(openai.RateLimitError, 429)

    provider = OpenAIProvider(client=_fake_openai_client(create))
    with pytest.raises(RetryableError):
        provider.complete("prompt", model="m", max_tokens=5, temperature=0)


@pytest.mark.live
def test_openai_provider_live():
    provider = OpenAIProvider()
    client = ModelClient(provider, RateLimiter(), model="gpt-4o-mini", max_completion_tokens=20)
    assert client.complete('Reply with the JSON array ["ok"] and nothing else.')
