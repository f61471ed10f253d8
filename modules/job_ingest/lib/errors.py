from __future__ import annotations


class JobIngestError(Exception):
    """Base exception for the ingestion pipeline."""


class ConfigError(JobIngestError, ValueError):
    """Raised when provided kwargs/env cannot form a valid configuration."""


class FetchError(JobIngestError):
    """Content could not be retrieved for an endpoint."""

    def __init__(self, message: str, *, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint


class ModelParseError(JobIngestError):
    """Model output for one chunk was not the JSON shape we asked for."""


ChunkParseError = ModelParseError


# ---- Provider errors (classified by the model provider adapter) -------------


class ProviderError(JobIngestError):
    """
    Base for classified model-provider failures.

    consumed_quota tells the rate limiter whether the failed attempt still
    counts against the provider's ceilings (it reached the provider).
    """

    def __init__(self, message: str, *, consumed_quota: bool = False) -> None:
        super().__init__(message)
        self.consumed_quota = consumed_quota


class RetryableError(ProviderError):
    """Transient network/server fault; retried with backoff."""


RetryableProviderError = RetryableError


class FatalChunkError(ProviderError):
    """The request can never succeed for this chunk (e.g. context exceeded)."""


class AuthError(ProviderError):
    """Credentials or provider configuration are unusable; abort the whole run."""


# ---- Store / notifier ---------------------------------------------------------


class ConflictError(JobIngestError):
    """A posting with the same (source_id, url) key already exists."""


class NotifyError(JobIngestError):
    """The notification channel failed to deliver the run summary."""
