from __future__ import annotations

from typing import Any

from .lib.chunker import TokenBudgetChunker
from .lib.config import Settings
from .lib.dedupe import Deduplicator
from .lib.extraction import ExtractionEngine
from .lib.fetcher import HttpFetcher
from .lib.http_client import HttpClient
from .lib.logging_bridge import activity as log_activity
from .lib.model_client import ModelClient, OpenAIProvider
from .lib.notifier import EmailNotifier, LogNotifier, Notifier
from .lib.orchestrator import IngestionOrchestrator
from .lib.rate_limiter import RateLimiter
from .lib.store import SqliteStore


def build_orchestrator(settings: Settings) -> IngestionOrchestrator:
    """Wire production collaborators from validated Settings."""
    normalizer = settings.normalizer()
    tokenizer = settings.tokenizer()

    store = SqliteStore(settings.sqlite_path, normalizer=normalizer)
    if settings.sources_path:
        store.sync_sources(settings.sources_path)

    fetcher = HttpFetcher(HttpClient(timeout=settings.http_timeout))
    client = ModelClient(
        OpenAIProvider(api_key_env=settings.api_key_env, base_url=settings.base_url),
        RateLimiter(**settings.limiter_kwargs()),
        model=settings.model,
        tokenizer=tokenizer,
        max_completion_tokens=settings.max_completion_tokens,
        temperature=settings.temperature,
        max_attempts=settings.max_attempts,
        backoff_base=settings.backoff_base_seconds,
        backoff_max=settings.backoff_max_seconds,
    )
    deduplicator = Deduplicator(normalizer, settings.merge())
    engine = ExtractionEngine(
        client,
        fetcher,
        chunker=TokenBudgetChunker(tokenizer),
        deduplicator=deduplicator,
        context_window=settings.resolved_context_window(),
        prompt_overhead_tokens=settings.resolved_prompt_overhead(),
        overlap_tokens=settings.overlap_tokens,
        max_workers=settings.max_workers,
        posting_content=settings.posting_content,
    )
    notifier: Notifier = EmailNotifier(settings.email_to) if settings.send_email else LogNotifier()
    return IngestionOrchestrator(
        store,
        engine,
        fetcher,
        deduplicator,
        notifier,
        cooldown=settings.cooldown,
        skip_network=settings.skip_network,
    )


def run(**kwargs: Any) -> dict[str, Any]:
    """
    Entry point for the 'job_ingest' module.

    Accepts kwargs (from scheduler/runner), see Settings.from_env_and_kwargs, e.g.:
      sqlite_path: str = "/app/local/state/job_ingest.db"
      sources_path: str | None        # JSON list synced into the store first
      model: str = "gpt-4o-mini"       # or LLM_MODEL
      cooldown_minutes: float = 60
      skip_network: bool = False
      send_email: bool = True          # False -> log-only notifier

    Returns:
      meta dict (run summary counts). Notification is sent by the orchestrator,
      so the runner has nothing to email.
    """
    settings = Settings.from_env_and_kwargs(kwargs)

    log_activity({
        "component": "job_ingest.main",
        "op": "start",
        "model": settings.model,
        "context_window": settings.resolved_context_window(),
        "flags": {
            "skip_network": settings.skip_network,
            "send_email": settings.send_email,
        },
    })

    orchestrator = build_orchestrator(settings)
    try:
        summary = orchestrator.run()
    finally:
        orchestrator.fetcher.close()

    meta = summary.as_dict()
    meta["message"] = (
        f"{summary.postings_inserted} new postings from {summary.sources_polled} sources "
        f"({summary.sources_skipped} skipped, {summary.error_count} errors)"
    )
    return meta
