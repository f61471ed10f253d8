# modules/job_ingest/lib/__init__.py
from __future__ import annotations

# Re-export commonly-used types for convenience
from .chunker import CharTokenizer, TiktokenTokenizer, TokenBudgetChunker, WordTokenizer
from .config import Settings
from .dedupe import Deduplicator
from .errors import (
    AuthError,
    ConfigError,
    ConflictError,
    FatalChunkError,
    FetchError,
    JobIngestError,
    ModelParseError,
    NotifyError,
    RetryableError,
)
from .extraction import ExtractionEngine
from .model_client import ModelClient, OpenAIProvider
from .models import ExtractedPosting, RunSummary, Source, SourceState
from .orchestrator import IngestionOrchestrator
from .rate_limiter import RateLimiter
from .store import SqliteStore
from .urls import StrictUrlNormalizer, normalize

__all__ = [
    "AuthError",
    "CharTokenizer",
    "ConfigError",
    "ConflictError",
    "Deduplicator",
    "ExtractedPosting",
    "ExtractionEngine",
    "FatalChunkError",
    "FetchError",
    "IngestionOrchestrator",
    "JobIngestError",
    "ModelClient",
    "ModelParseError",
    "NotifyError",
    "OpenAIProvider",
    "RateLimiter",
    "RetryableError",
    "RunSummary",
    "Settings",
    "Source",
    "SourceState",
    "SqliteStore",
    "StrictUrlNormalizer",
    "TiktokenTokenizer",
    "TokenBudgetChunker",
    "WordTokenizer",
    "normalize",
]
