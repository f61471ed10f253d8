from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import openai

from .chunker import CharTokenizer, Tokenizer
from .errors import AuthError, FatalChunkError, ProviderError, RetryableError
from .rate_limiter import RateLimiter, Reservation

log = logging.getLogger(__name__)

# Known context windows (tokens). Anything else falls back to DEFAULT_CONTEXT_WINDOW.
CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-4.1": 1047576,
    "gpt-4.1-mini": 1047576,
    "gpt-3.5-turbo": 16385,
    "llama-3.1-8b-instant": 131072,
    "llama-3.3-70b-versatile": 131072,
    "llama3-8b-8192": 8192,
    "gemma2-9b-it": 8192,
    "deepseek/deepseek-r1-0528:free": 163840,
}
DEFAULT_CONTEXT_WINDOW = 8192


def context_window_for(model: str, override: int | None = None) -> int:
    """Explicit override, else the known window for `model`, else 8192."""
    if override:
        return int(override)
    return CONTEXT_WINDOWS.get((model or "").strip().lower(), DEFAULT_CONTEXT_WINDOW)


@dataclass(frozen=True)
class Completion:
    text: str
    total_tokens: int | None = None


class ModelProvider(ABC):
    """A single text-completion call, failing only with classified ProviderErrors."""

    @abstractmethod
    def complete(self, prompt: str, *, model: str, max_tokens: int, temperature: float) -> Completion:
        raise NotImplementedError


@dataclass
class OpenAIProvider(ModelProvider):
    """
    Thin adapter over openai.chat.completions (any OpenAI-compatible endpoint).

      - api key read from `api_key_env` when the client is first needed
      - `base_url` points the SDK at Groq, OpenRouter, etc.
      - SDK retries are disabled; ModelClient owns retry/backoff
    """

    api_key_env: str = "OPENAI_API_KEY"
    base_url: str | None = None
    timeout: float = 60.0
    client: Any = None

    def _client(self) -> Any:
        if self.client is None:
            api_key = os.getenv(self.api_key_env)
            if not api_key:
                raise AuthError(f"{self.api_key_env} not set")
            kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": 0, "timeout": self.timeout}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self.client = openai.OpenAI(**kwargs)
        return self.client

    def complete(self, prompt: str, *, model: str, max_tokens: int, temperature: float) -> Completion:
        client = self._client()
        try:
            resp = client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

        content = ""
        if resp.choices:
            content = (resp.choices[0].message.content or "").strip()
        usage = getattr(resp, "usage", None)
        total = getattr(usage, "total_tokens", None) if usage is not None else None
        log.debug("OpenAIProvider.complete(model=%r) received %d chars", model, len(content))
        return Completion(text=content, total_tokens=total)


def classify_openai_error(e: Exception) -> ProviderError:
    msg = f"{type(e).__name__}: {e}"
    if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthError(msg, consumed_quota=True)
    if isinstance(e, openai.RateLimitError):
        return RetryableError(msg, consumed_quota=True)
    if isinstance(e, openai.APIStatusError):
        if e.status_code >= 500:
            return RetryableError(msg, consumed_quota=True)
        # context_length_exceeded, 413 payload too large, 422 and friends
        return FatalChunkError(msg, consumed_quota=True)
    if isinstance(e, openai.APIConnectionError):
        return RetryableError(msg, consumed_quota=False)
    return FatalChunkError(msg, consumed_quota=False)


class ModelClient:
    """
    complete(prompt) -> text, through the shared RateLimiter, with bounded
    exponential backoff on RetryableError. FatalChunkError and AuthError
    propagate on the first occurrence.
    """

    def __init__(
        self,
        provider: ModelProvider,
        limiter: RateLimiter,
        *,
        model: str,
        tokenizer: Tokenizer | None = None,
        max_completion_tokens: int = 1024,
        temperature: float = 0.0,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.limiter = limiter
        self.model = model
        self.tokenizer = tokenizer or CharTokenizer()
        self.max_completion_tokens = int(max_completion_tokens)
        self.temperature = float(temperature)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = float(backoff_base)
        self.backoff_max = float(backoff_max)
        self._sleep = sleep

    def estimate_tokens(self, prompt: str) -> int:
        return self.tokenizer.count(prompt) + self.max_completion_tokens

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (0-based): base, 2*base, 4*base ... capped."""
        return min(self.backoff_base * (2**attempt), self.backoff_max)

    def complete(self, prompt: str) -> str:
        estimate = self.estimate_tokens(prompt)
        for attempt in range(self.max_attempts):
            reservation = self.limiter.await_turn(estimate)
            try:
                result = self.provider.complete(
                    prompt,
                    model=self.model,
                    max_tokens=self.max_completion_tokens,
                    temperature=self.temperature,
                )
            except RetryableError as e:
                self._settle(reservation, e, estimate)
                if attempt + 1 >= self.max_attempts:
                    raise
                delay = self.backoff_delay(attempt)
                log.warning(
                    "Model call failed (%s); retrying in %.1fs (attempt %d/%d)",
                    e,
                    delay,
                    attempt + 1,
                    self.max_attempts,
                )
                self._sleep(delay)
                continue
            except ProviderError as e:
                self._settle(reservation, e, estimate)
                raise
            except BaseException:
                self.limiter.release(reservation)
                raise
            self.limiter.record(result.total_tokens or estimate, reservation)
            return result.text
        raise RetryableError("retry loop exhausted")  # pragma: no cover

    def _settle(self, reservation: Reservation, err: ProviderError, estimate: int) -> None:
        if err.consumed_quota:
            self.limiter.record(estimate, reservation)
        else:
            self.limiter.release(reservation)
