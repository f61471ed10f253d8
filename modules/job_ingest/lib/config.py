from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .chunker import Tokenizer, make_tokenizer
from .dedupe import MergePolicy, make_merge_policy
from .errors import ConfigError
from .model_client import context_window_for
from .prompts import TEMPLATE_RESERVE_TOKENS
from .urls import UrlNormalizer, make_normalizer
from .utils import getenv_str, truthy

_CHUNK_STRATEGIES = {"auto", "tiktoken", "chars", "words"}
_URL_POLICIES = {"strict", "loose"}
_MERGE_POLICIES = {"last", "first"}
_POSTING_CONTENT = {"text", "html"}


@dataclass
class Settings:
    """
    Canonical configuration for a 'job_ingest' run.

    Sources live in the SQLite store; `sources_path` (optional) points at a JSON
    list that is synced into the store before each run:
        [{"id": "acme", "name": "Acme", "endpoint": "https://acme.example/careers", "kind": "html"}, ...]
    """

    # Storage
    sqlite_path: str = "/app/local/state/job_ingest.db"
    sources_path: str | None = None

    # Model provider
    model: str = "gpt-4o-mini"
    api_key_env: str = "OPENAI_API_KEY"
    base_url: str | None = None
    temperature: float = 0.0
    max_completion_tokens: int = 1024

    # Chunking
    context_window: int | None = None
    prompt_overhead_tokens: int | None = None  # None: max_completion_tokens + template reserve
    overlap_tokens: int = 200
    chunk_strategy: str = "auto"
    chars_per_token: int = 4

    # Identity / merge
    url_policy: str = "strict"
    merge_policy: str = "last"

    # Rate limiting / retry
    requests_per_minute: int | None = 30
    tokens_per_minute: int | None = 60000
    min_interval_seconds: float = 1.0
    requests_per_day: int | None = None
    tokens_per_day: int | None = None
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    # Orchestration
    cooldown_minutes: float = 60.0
    max_workers: int = 4
    posting_content: str = "text"
    http_timeout: float = 15.0
    skip_network: bool = False

    # Notification
    send_email: bool = True
    email_to: list[str] = field(default_factory=list)

    # ------------- convenience -------------
    def resolved_context_window(self) -> int:
        return context_window_for(self.model, self.context_window)

    def resolved_prompt_overhead(self) -> int:
        """Tokens reserved per request besides the chunk: template text plus the completion allowance."""
        if self.prompt_overhead_tokens is not None:
            return self.prompt_overhead_tokens
        return self.max_completion_tokens + TEMPLATE_RESERVE_TOKENS

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self.cooldown_minutes)

    def tokenizer(self) -> Tokenizer:
        return make_tokenizer(self.chunk_strategy, chars_per_token=self.chars_per_token, model=self.model)

    def normalizer(self) -> UrlNormalizer:
        return make_normalizer(self.url_policy)

    def merge(self) -> MergePolicy:
        return make_merge_policy(self.merge_policy)

    def limiter_kwargs(self) -> dict[str, Any]:
        return {
            "requests_per_minute": self.requests_per_minute,
            "tokens_per_minute": self.tokens_per_minute,
            "min_interval_seconds": self.min_interval_seconds,
            "requests_per_day": self.requests_per_day,
            "tokens_per_day": self.tokens_per_day,
        }

    # ------------- constructors -------------
    @classmethod
    def from_env_and_kwargs(cls, kwargs: Mapping[str, Any] | None) -> Settings:
        """
        Build Settings from kwargs with validation. Unset kwargs fall back to
        the environment where one applies (LLM_MODEL, LLM_BASE_URL, SEND_EMAIL,
        JOB_INGEST_DRY_RUN, NOTIFY_EMAIL), then to the dataclass defaults.

        Numeric ceilings accept 0 / "" / None to mean "no ceiling" for the daily
        limits only; minute limits must stay positive.
        """
        kw = dict(kwargs or {})

        sources_path = kw.get("sources_path")
        if sources_path is not None:
            sources_path = str(sources_path).strip() or None

        send_email = truthy(kw["send_email"]) if "send_email" in kw else truthy(getenv_str("SEND_EMAIL", "1"))
        if truthy(getenv_str("JOB_INGEST_DRY_RUN", "0")):
            send_email = False

        settings = cls(
            sqlite_path=str(kw.get("sqlite_path") or "/app/local/state/job_ingest.db"),
            sources_path=sources_path,
            model=str(kw.get("model") or getenv_str("LLM_MODEL", "gpt-4o-mini")),
            api_key_env=str(kw.get("api_key_env") or "OPENAI_API_KEY"),
            base_url=str(kw.get("base_url") or getenv_str("LLM_BASE_URL", "") or "") or None,
            temperature=_float(kw, "temperature", 0.0),
            max_completion_tokens=_int(kw, "max_completion_tokens", 1024),
            context_window=_opt_int(kw, "context_window"),
            prompt_overhead_tokens=_opt_int(kw, "prompt_overhead_tokens"),
            overlap_tokens=_int(kw, "overlap_tokens", 200),
            chunk_strategy=str(kw.get("chunk_strategy") or "auto").strip().lower(),
            chars_per_token=_int(kw, "chars_per_token", 4),
            url_policy=str(kw.get("url_policy") or "strict").strip().lower(),
            merge_policy=str(kw.get("merge_policy") or "last").strip().lower(),
            requests_per_minute=_int(kw, "requests_per_minute", 30),
            tokens_per_minute=_int(kw, "tokens_per_minute", 60000),
            min_interval_seconds=_float(kw, "min_interval_seconds", 1.0),
            requests_per_day=_opt_int(kw, "requests_per_day"),
            tokens_per_day=_opt_int(kw, "tokens_per_day"),
            max_attempts=_int(kw, "max_attempts", 3),
            backoff_base_seconds=_float(kw, "backoff_base_seconds", 1.0),
            backoff_max_seconds=_float(kw, "backoff_max_seconds", 30.0),
            cooldown_minutes=_float(kw, "cooldown_minutes", 60.0),
            max_workers=_int(kw, "max_workers", 4),
            posting_content=str(kw.get("posting_content") or "text").strip().lower(),
            http_timeout=_float(kw, "http_timeout", 15.0),
            skip_network=truthy(kw.get("skip_network")),
            send_email=send_email,
            email_to=_parse_recipients(kw.get("email_to") or getenv_str("NOTIFY_EMAIL", "")),
        )
        _validate_settings(settings)
        return settings


# -----------------------------
# Helpers
# -----------------------------
def _int(kw: Mapping[str, Any], key: str, default: int) -> int:
    value = kw.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}.") from e


def _opt_int(kw: Mapping[str, Any], key: str) -> int | None:
    value = kw.get(key)
    if value is None or value == "" or value == 0:
        return None
    return _int(kw, key, 0)


def _float(kw: Mapping[str, Any], key: str, default: float) -> float:
    value = kw.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be a number, got {value!r}.") from e


def _parse_recipients(value: Any) -> list[str]:
    """Accepts a list or a comma/semicolon separated string."""
    if not value:
        return []
    if isinstance(value, str):
        parts = value.replace(";", ",").split(",")
    elif isinstance(value, (list, tuple)):
        parts = [str(v) for v in value]
    else:
        raise ConfigError("'email_to' must be a list or a comma-separated string.")
    return [p.strip() for p in parts if p.strip()]


def _validate_settings(s: Settings) -> None:
    if not s.sqlite_path.strip():
        raise ConfigError("'sqlite_path' cannot be empty.")
    if not s.model.strip():
        raise ConfigError("'model' cannot be empty.")

    if s.chunk_strategy not in _CHUNK_STRATEGIES:
        raise ConfigError(f"'chunk_strategy' must be one of {sorted(_CHUNK_STRATEGIES)}.")
    if s.url_policy not in _URL_POLICIES:
        raise ConfigError(f"'url_policy' must be one of {sorted(_URL_POLICIES)}.")
    if s.merge_policy not in _MERGE_POLICIES:
        raise ConfigError(f"'merge_policy' must be one of {sorted(_MERGE_POLICIES)}.")
    if s.posting_content not in _POSTING_CONTENT:
        raise ConfigError(f"'posting_content' must be one of {sorted(_POSTING_CONTENT)}.")

    if s.chars_per_token <= 0:
        raise ConfigError("'chars_per_token' must be >= 1.")
    if s.max_completion_tokens <= 0:
        raise ConfigError("'max_completion_tokens' must be >= 1.")
    if s.overlap_tokens < 0:
        raise ConfigError("'overlap_tokens' must be >= 0.")
    if s.prompt_overhead_tokens is not None and s.prompt_overhead_tokens < s.max_completion_tokens:
        raise ConfigError(
            f"'prompt_overhead_tokens' ({s.prompt_overhead_tokens}) must cover "
            f"'max_completion_tokens' ({s.max_completion_tokens}) plus the prompt template; "
            "leave it unset to derive it."
        )
    budget = s.resolved_context_window() - s.resolved_prompt_overhead()
    if budget <= 0:
        raise ConfigError("context window must exceed 'prompt_overhead_tokens'.")
    if s.overlap_tokens >= budget:
        raise ConfigError("'overlap_tokens' must be smaller than the per-chunk budget.")

    for key in ("requests_per_minute", "tokens_per_minute"):
        value = getattr(s, key)
        if value is not None and value <= 0:
            raise ConfigError(f"'{key}' must be >= 1.")
    for key in ("requests_per_day", "tokens_per_day"):
        value = getattr(s, key)
        if value is not None and value < 0:
            raise ConfigError(f"'{key}' must be >= 0.")
    if s.min_interval_seconds < 0:
        raise ConfigError("'min_interval_seconds' must be >= 0.")

    if s.max_attempts <= 0:
        raise ConfigError("'max_attempts' must be >= 1.")
    if s.backoff_base_seconds < 0 or s.backoff_max_seconds < 0:
        raise ConfigError("backoff delays must be >= 0.")
    if s.cooldown_minutes < 0:
        raise ConfigError("'cooldown_minutes' must be >= 0.")
    if s.max_workers <= 0:
        raise ConfigError("'max_workers' must be >= 1.")
    if s.http_timeout <= 0:
        raise ConfigError("'http_timeout' must be > 0.")
