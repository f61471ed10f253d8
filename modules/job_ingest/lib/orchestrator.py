"""
Per-cycle driver: walks every Source through

    ELIGIBLE -> FETCHING -> EXTRACTING -> DEDUPLICATING -> PERSISTING -> WATERMARK_UPDATED

with short-circuits to WATERMARK_UPDATED when stage 1 finds nothing or nothing is
new, and to SKIPPED (watermark untouched) on cooldown, skip_network, a fetch
failure, or any unexpected Source-level error.

Features:
  - Sequential Sources; stage-2 parallelism lives in the ExtractionEngine
  - One aggregate notification per run, sent even when an AuthError aborts it
  - Collaborators injected (store, engine, fetcher, deduplicator, notifier)
  - Structured logging via `logging_bridge`
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timedelta

from . import logging_bridge
from .dedupe import Deduplicator
from .errors import AuthError, ConflictError, FetchError, NotifyError
from .extraction import ExtractionEngine
from .fetcher import ContentFetcher
from .models import RunSummary, Source, SourceReport, SourceState
from .notifier import Notifier
from .store import Store
from .utils import to_iso, utc_now


class IngestionOrchestrator:
    def __init__(
        self,
        store: Store,
        engine: ExtractionEngine,
        fetcher: ContentFetcher,
        deduplicator: Deduplicator,
        notifier: Notifier | None = None,
        *,
        cooldown: timedelta = timedelta(minutes=60),
        now: Callable[[], datetime] = utc_now,
        skip_network: bool = False,
    ) -> None:
        self.store = store
        self.engine = engine
        self.fetcher = fetcher
        self.deduplicator = deduplicator
        self.notifier = notifier
        self.cooldown = cooldown
        self.skip_network = skip_network
        self._now = now
        self.last_summary: RunSummary | None = None

    def is_eligible(self, source: Source, at: datetime) -> bool:
        return source.last_scraped is None or at - source.last_scraped >= self.cooldown

    # =============================================================================
    # MAIN LOOP
    # =============================================================================
    def run(self) -> RunSummary:
        """
        Run one cycle over every registered Source.

        Always produces a RunSummary (also kept as `last_summary`). An AuthError
        aborts the remaining Sources; postings inserted before it are still
        notified, then the error is re-raised.
        """
        start_ns = time.perf_counter_ns()
        summary = RunSummary(started_at=self._now())
        self.last_summary = summary
        try:
            sources = self.store.list_sources()
            for i, source in enumerate(sources):
                report = SourceReport(source_id=source.id, name=source.name)
                summary.reports.append(report)

                if self.skip_network:
                    self._skip(report, "skip_network")
                    continue
                if not self.is_eligible(source, summary.started_at):
                    self._skip(report, "cooldown")
                    continue

                try:
                    self._process(source, report)
                except AuthError as e:
                    summary.aborted = True
                    summary.abort_reason = f"{type(e).__name__}: {e}"
                    report.errors.append(summary.abort_reason)
                    self._skip(report, "aborted")
                    for rest in sources[i + 1 :]:
                        summary.reports.append(
                            SourceReport(source_id=rest.id, name=rest.name, state=SourceState.SKIPPED, reason="aborted")
                        )
                    logging_bridge.error({
                        "component": "job_ingest.orchestrator",
                        "op": "abort",
                        "source": source.name,
                        "error": repr(e),
                    })
                    raise
                except Exception as e:
                    report.errors.append(f"{type(e).__name__}: {e}")
                    self._skip(report, "error")
                    logging_bridge.error({
                        "component": "job_ingest.orchestrator",
                        "op": "source_failed",
                        "source": source.name,
                        "state": report.state.value,
                        "error": repr(e),
                    })
        finally:
            summary.finished_at = self._now()
            self._notify(summary)
            total_us = int((time.perf_counter_ns() - start_ns) // 1000)
            logging_bridge.activity({
                "component": "job_ingest.orchestrator",
                "op": "summary",
                "started_at": to_iso(summary.started_at),
                "skip_network": self.skip_network,
                **summary.as_dict(),
                "total_us": total_us,
            })
        return summary

    # =============================================================================
    # ONE SOURCE
    # =============================================================================
    def _process(self, source: Source, report: SourceReport) -> None:
        report.state = SourceState.FETCHING
        try:
            raw = self.fetcher.fetch(source.endpoint, kind=source.kind)
        except FetchError as e:
            report.errors.append(f"{source.name}: fetch failed: {e}")
            self._skip(report, "fetch_failed")
            logging_bridge.error({
                "component": "job_ingest.orchestrator",
                "op": "fetch_source",
                "source": source.name,
                "endpoint": source.endpoint,
                "error": repr(e),
            })
            return

        report.state = SourceState.EXTRACTING
        candidates, errors = self.engine.discover(source, raw)
        report.errors.extend(errors)
        report.candidates = len(candidates)
        if not candidates:
            self._advance(source, report)
            return

        report.state = SourceState.DEDUPLICATING
        known = self.store.list_known_urls(source.id)
        new_urls = self.deduplicator.filter_urls(sorted(candidates), known)
        report.new_candidates = len(new_urls)
        if not new_urls:
            self._advance(source, report)
            return

        postings, errors = self.engine.extract(source, new_urls)
        report.errors.extend(errors)
        fresh = self.deduplicator.resolve(postings, known)

        report.state = SourceState.PERSISTING
        for posting in fresh:
            try:
                self.store.insert_posting(posting)
            except ConflictError:
                # Someone else stored it first; nothing to do.
                logging_bridge.activity({
                    "component": "job_ingest.orchestrator",
                    "op": "conflict",
                    "source": source.name,
                    "url": posting.url,
                })
                continue
            report.inserted.append(posting)

        self._advance(source, report)

    def _advance(self, source: Source, report: SourceReport) -> None:
        ts = self._now()
        self.store.update_watermark(source.id, ts)
        report.state = SourceState.WATERMARK_UPDATED
        logging_bridge.activity({
            "component": "job_ingest.orchestrator",
            "op": "source_done",
            "source": source.name,
            "watermark": to_iso(ts),
            "candidates": report.candidates,
            "new": report.new_candidates,
            "inserted": len(report.inserted),
            "errors": len(report.errors),
        })

    def _skip(self, report: SourceReport, reason: str) -> None:
        report.state = SourceState.SKIPPED
        report.reason = reason
        logging_bridge.activity({
            "component": "job_ingest.orchestrator",
            "op": "skipped_source",
            "source": report.name,
            "reason": reason,
        })

    def _notify(self, summary: RunSummary) -> None:
        items = summary.notification_items()
        if not items or self.notifier is None:
            return
        try:
            self.notifier.send(items)
        except NotifyError as e:
            summary.notify_error = str(e)
            logging_bridge.error({
                "component": "job_ingest.orchestrator",
                "op": "notify",
                "count": len(items),
                "error": repr(e),
            })
            return
        summary.notified = True
