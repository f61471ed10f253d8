from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any

from .errors import ConfigError
from .models import ExtractedPosting
from .urls import StrictUrlNormalizer, UrlNormalizer


def is_present(value: Any) -> bool:
    """None, blank strings and empty containers carry no information."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return bool(value)
    return True


class MergePolicy(ABC):
    """Decides which value survives when two partials carry the same field."""

    name: str = ""

    @abstractmethod
    def merge(self, earlier: Mapping[str, Any], later: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError


class LastPresentWins(MergePolicy):
    """
    A later partial's present value overwrites the earlier one; absent or
    blank values in the later partial never erase what is already known.
    """

    name = "last"

    def merge(self, earlier: Mapping[str, Any], later: Mapping[str, Any]) -> dict[str, Any]:
        out = {k: v for k, v in earlier.items() if is_present(v)}
        out.update({k: v for k, v in later.items() if is_present(v)})
        return out


class FirstPresentWins(MergePolicy):
    """The first present value for a field is kept; later partials only fill gaps."""

    name = "first"

    def merge(self, earlier: Mapping[str, Any], later: Mapping[str, Any]) -> dict[str, Any]:
        out = {k: v for k, v in earlier.items() if is_present(v)}
        for k, v in later.items():
            if k not in out and is_present(v):
                out[k] = v
        return out


def make_merge_policy(name: str) -> MergePolicy:
    key = (name or "").strip().lower()
    if key == "last":
        return LastPresentWins()
    if key == "first":
        return FirstPresentWins()
    raise ConfigError(f"Unknown merge policy {name!r} (expected 'last' or 'first').")


class Deduplicator:
    """
    Collapses candidates to one entry per normalized URL and drops anything the
    store already holds for the source. Output never repeats a URL and never
    overlaps `already_persisted`, which is what makes re-runs converge.
    """

    def __init__(self, normalizer: UrlNormalizer | None = None, policy: MergePolicy | None = None) -> None:
        self.normalizer = normalizer or StrictUrlNormalizer()
        self.policy = policy or LastPresentWins()

    def collapse(self, candidates: Iterable[ExtractedPosting]) -> list[ExtractedPosting]:
        merged: dict[str, ExtractedPosting] = {}
        for p in candidates:
            key = self.normalizer.normalize(p.url)
            prior = merged.get(key)
            if prior is None:
                merged[key] = ExtractedPosting(
                    url=key,
                    source_id=p.source_id,
                    discovered_at=p.discovered_at,
                    fields={k: v for k, v in p.fields.items() if is_present(v)},
                )
            else:
                merged[key] = prior.with_fields(self.policy.merge(prior.fields, p.fields))
        return list(merged.values())

    def resolve(
        self,
        candidates: Iterable[ExtractedPosting],
        already_persisted: Iterable[str],
    ) -> list[ExtractedPosting]:
        known = self._known(already_persisted)
        return [p for p in self.collapse(candidates) if p.url not in known]

    def filter_urls(self, urls: Iterable[str], already_persisted: Iterable[str]) -> list[str]:
        """Normalized, de-duplicated URLs not yet in the store (first-seen order)."""
        known = self._known(already_persisted)
        out: list[str] = []
        seen: set[str] = set()
        for u in urls:
            key = self.normalizer.normalize(u)
            if key in known or key in seen:
                continue
            seen.add(key)
            out.append(key)
        return out

    def _known(self, already_persisted: Iterable[str]) -> set[str]:
        return {self.normalizer.normalize(u) for u in already_persisted}
