"""
Two-stage extraction.

Stage 1 (discover): chunk a Source's raw content and ask the model for every
posting URL it links to. Stage 2 (extract): fetch each new URL, chunk its
content and ask the model for a free-form field object per chunk, then merge the
partials into one ExtractedPosting.

Chunk-level failures (unparseable output, exhausted retries, fatal chunk errors)
drop that chunk only and are reported back as error strings. AuthError always
propagates; in stage 2 it cancels the URLs still queued. Any other failure
while handling one stage-2 URL drops that URL only.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit

from . import logging_bridge
from .chunker import TokenBudgetChunker
from .dedupe import Deduplicator
from .errors import AuthError, ConfigError, FatalChunkError, FetchError, ModelParseError, RetryableError
from .fetcher import ContentFetcher
from .model_client import ModelClient
from .models import ExtractedPosting, Source
from .prompts import build_discovery_prompt, build_extraction_prompt, parse_fields_object, parse_url_array
from .urls import absolutize
from .utils import utc_now

log = logging.getLogger(__name__)

# Failures that cost one chunk, never the Source.
_CHUNK_FAILURES = (ModelParseError, RetryableError, FatalChunkError)

# BPE counts are not additive where chunk text meets the template.
_SEAM_TOKENS = 8


class ExtractionEngine:
    def __init__(
        self,
        client: ModelClient,
        fetcher: ContentFetcher,
        *,
        chunker: TokenBudgetChunker | None = None,
        deduplicator: Deduplicator | None = None,
        context_window: int = 8192,
        prompt_overhead_tokens: int = 0,
        overlap_tokens: int = 200,
        max_workers: int = 4,
        posting_content: str = "text",
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.fetcher = fetcher
        self.chunker = chunker or TokenBudgetChunker(client.tokenizer)
        self.deduplicator = deduplicator or Deduplicator()
        self.context_window = int(context_window)
        self.prompt_overhead_tokens = int(prompt_overhead_tokens)
        self.overlap_tokens = int(overlap_tokens)
        self.max_workers = max(1, int(max_workers))
        self.posting_content = posting_content
        self._now = now

    # ---- Stage 1 ---------------------------------------------------------------

    def discover(self, source: Source, raw_content: str) -> tuple[set[str], list[str]]:
        """Normalized absolute posting URLs found in `raw_content`, plus per-chunk error strings."""
        found: set[str] = set()
        errors: list[str] = []
        skeleton = build_discovery_prompt("", endpoint=source.endpoint)
        for chunk in self._chunks(raw_content, skeleton):
            prompt = build_discovery_prompt(chunk.text, endpoint=source.endpoint)
            try:
                urls = parse_url_array(self.client.complete(prompt))
            except _CHUNK_FAILURES as e:
                errors.append(self._chunk_failed("discover_chunk", source, chunk.index, e))
                continue
            for raw in urls:
                url = absolutize(raw, source.endpoint)
                if urlsplit(url).scheme.lower() not in ("http", "https"):
                    log.debug("discover: ignoring non-http link %r from %s", raw, source.name)
                    continue
                found.add(self.deduplicator.normalizer.normalize(url))
        logging_bridge.activity({
            "component": "job_ingest.extraction",
            "op": "discovered",
            "source": source.name,
            "candidates": len(found),
            "chunk_errors": len(errors),
        })
        return found, errors

    # ---- Stage 2 ---------------------------------------------------------------

    def extract(self, source: Source, urls: Sequence[str]) -> tuple[list[ExtractedPosting], list[str]]:
        """
        One ExtractedPosting per URL that produced at least one parseable chunk,
        in the order of `urls`. URLs run on a bounded thread pool.
        """
        if not urls:
            return [], []
        results: dict[str, ExtractedPosting] = {}
        errors: list[str] = []
        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(urls)), thread_name_prefix="extract"
        ) as pool:
            futures = {pool.submit(self._extract_one, source, url): url for url in urls}
            try:
                for fut in as_completed(futures):
                    posting, errs = fut.result()
                    errors.extend(errs)
                    if posting is not None:
                        results[futures[fut]] = posting
            except BaseException:
                for f in futures:
                    f.cancel()
                raise
        return [results[u] for u in urls if u in results], errors

    def _extract_one(self, source: Source, url: str) -> tuple[ExtractedPosting | None, list[str]]:
        """Failures cost this URL only; AuthError still aborts the whole stage."""
        try:
            return self._extract_url(source, url)
        except (AuthError, ConfigError):
            raise
        except Exception as e:
            logging_bridge.error({
                "component": "job_ingest.extraction",
                "op": "extract_posting",
                "source": source.name,
                "url": url,
                "error": repr(e),
            })
            return None, [f"{source.name}: {url}: {type(e).__name__}: {e}"]

    def _extract_url(self, source: Source, url: str) -> tuple[ExtractedPosting | None, list[str]]:
        errors: list[str] = []
        try:
            content = self.fetcher.fetch(url, kind=self.posting_content)
        except FetchError as e:
            logging_bridge.error({
                "component": "job_ingest.extraction",
                "op": "fetch_posting",
                "source": source.name,
                "url": url,
                "error": repr(e),
            })
            return None, [f"{source.name}: fetch {url}: {e}"]

        merged: dict[str, Any] = {}
        parsed_any = False
        for chunk in self._chunks(content, build_extraction_prompt("", url=url)):
            prompt = build_extraction_prompt(chunk.text, url=url)
            try:
                fields = parse_fields_object(self.client.complete(prompt))
            except _CHUNK_FAILURES as e:
                errors.append(self._chunk_failed("extract_chunk", source, chunk.index, e, url=url))
                continue
            parsed_any = True
            merged = self.deduplicator.policy.merge(merged, fields)

        if not parsed_any:
            errors.append(f"{source.name}: no fields extracted for {url}")
            return None, errors
        return ExtractedPosting(url=url, source_id=source.id, discovered_at=self._now(), fields=merged), errors

    # ---- Internals ---------------------------------------------------------------

    def overhead_tokens(self, skeleton: str) -> int:
        """
        Tokens a request spends besides its chunk: the prompt `skeleton` (the
        template with empty content) plus the completion allowance, never less
        than the configured floor.
        """
        measured = self.client.estimate_tokens(skeleton) + _SEAM_TOKENS
        return max(self.prompt_overhead_tokens, measured)

    def _chunks(self, text: str, skeleton: str):
        return self.chunker.chunk(text, self.context_window, self.overhead_tokens(skeleton), self.overlap_tokens)

    def _chunk_failed(
        self, op: str, source: Source, index: int, err: Exception, *, url: str | None = None
    ) -> str:
        record: dict[str, Any] = {
            "component": "job_ingest.extraction",
            "op": op,
            "source": source.name,
            "chunk": index,
            "error": repr(err),
        }
        if url:
            record["url"] = url
        logging_bridge.error(record)
        where = f"{url} " if url else ""
        return f"{source.name}: {where}chunk {index}: {type(err).__name__}: {err}"
