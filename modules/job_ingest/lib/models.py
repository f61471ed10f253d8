from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

_ISO_DATE_RE = re.compile(r"^\s*(\d{4}-\d{2}-\d{2})")


@dataclass(frozen=True)
class Source:
    """
    One careers page or API being polled.

    kind is a hint for the fetcher: "html" (free-form markup) or "api" (JSON).
    last_scraped is the watermark (aware UTC datetime) or None if never polled.
    """

    id: str
    name: str
    endpoint: str
    kind: str = "html"
    last_scraped: datetime | None = None


@dataclass(frozen=True)
class Chunk:
    """
    A token-bounded slice of content. The first `overlap_tokens` tokens
    (`overlap_chars` characters) repeat the tail of the previous chunk.
    """

    index: int
    text: str
    token_count: int
    overlap_tokens: int = 0
    overlap_chars: int = 0

    @property
    def fresh_text(self) -> str:
        return self.text[self.overlap_chars :]


@dataclass(frozen=True)
class ExtractedPosting:
    """
    A posting assembled from stage-2 partial objects.
    Identity is the normalized url; `fields` holds whatever the model inferred.
    """

    url: str
    source_id: str
    discovered_at: datetime
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str | None:
        return _as_text(self.fields.get("title"))

    @property
    def location(self) -> str | None:
        return _as_text(self.fields.get("location"))

    @property
    def summary(self) -> str | None:
        return _as_text(self.fields.get("summary"))

    @property
    def posted_date(self) -> str | None:
        """ISO date (YYYY-MM-DD) or None when absent or not a real date."""
        raw = self.fields.get("posted_date")
        if raw is None:
            return None
        m = _ISO_DATE_RE.match(str(raw))
        if not m:
            return None
        try:
            return date.fromisoformat(m.group(1)).isoformat()
        except ValueError:
            return None

    def with_fields(self, fields: dict[str, Any]) -> ExtractedPosting:
        return ExtractedPosting(
            url=self.url,
            source_id=self.source_id,
            discovered_at=self.discovered_at,
            fields=dict(fields),
        )


@dataclass(frozen=True)
class NotificationItem:
    source: str
    title: str | None
    url: str
    posted_date: str | None = None


class SourceState(str, Enum):
    ELIGIBLE = "eligible"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    DEDUPLICATING = "deduplicating"
    PERSISTING = "persisting"
    WATERMARK_UPDATED = "watermark_updated"
    SKIPPED = "skipped"


@dataclass
class SourceReport:
    """Per-source outcome for one cycle."""

    source_id: str
    name: str
    state: SourceState = SourceState.ELIGIBLE
    reason: str | None = None
    candidates: int = 0
    new_candidates: int = 0
    inserted: list[ExtractedPosting] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class RunSummary:
    """
    Aggregate of one orchestrator run. Always produced, even when sources
    failed or the run was aborted.
    """

    started_at: datetime
    finished_at: datetime | None = None
    reports: list[SourceReport] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str | None = None
    notified: bool = False
    notify_error: str | None = None

    @property
    def sources_polled(self) -> int:
        return sum(1 for r in self.reports if r.state is SourceState.WATERMARK_UPDATED)

    @property
    def sources_skipped(self) -> int:
        return sum(1 for r in self.reports if r.state is SourceState.SKIPPED)

    @property
    def postings_found(self) -> int:
        return sum(r.candidates for r in self.reports)

    @property
    def postings_inserted(self) -> int:
        return sum(len(r.inserted) for r in self.reports)

    @property
    def error_count(self) -> int:
        return sum(len(r.errors) for r in self.reports) + (1 if self.notify_error else 0)

    def notification_items(self) -> list[NotificationItem]:
        return [
            NotificationItem(source=r.name, title=p.title, url=p.url, posted_date=p.posted_date)
            for r in self.reports
            for p in r.inserted
        ]

    def as_dict(self) -> dict[str, Any]:
        return {
            "sources_polled": self.sources_polled,
            "sources_skipped": self.sources_skipped,
            "postings_found": self.postings_found,
            "postings_inserted": self.postings_inserted,
            "errors": self.error_count,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "notified": self.notified,
            "by_source": {
                r.name: {
                    "state": r.state.value,
                    "reason": r.reason,
                    "candidates": r.candidates,
                    "new": r.new_candidates,
                    "inserted": len(r.inserted),
                    "errors": len(r.errors),
                }
                for r in self.reports
            },
        }


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None
