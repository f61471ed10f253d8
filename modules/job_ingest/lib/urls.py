"""
URL canonicalization used as the posting identity key.

Postings get re-linked with tracking parameters, mixed casing and host prefixes
across cycles; the strict policy folds those variants together. The loose policy
(lower-case + trim) is kept for stores populated under the older behavior.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from urllib.parse import urljoin, urlsplit, urlunsplit

from .errors import ConfigError

_SLASHES_RE = re.compile(r"/{2,}")


class UrlNormalizer(ABC):
    name: str = ""

    @abstractmethod
    def normalize(self, raw_url: str) -> str:
        """Total: never raises, always returns a usable key."""
        raise NotImplementedError

    def __call__(self, raw_url: str) -> str:
        return self.normalize(raw_url)


class LooseUrlNormalizer(UrlNormalizer):
    name = "loose"

    def normalize(self, raw_url: str) -> str:
        return _fallback(raw_url)


class StrictUrlNormalizer(UrlNormalizer):
    """
    Rules, in order:
      1. scheme forced to https
      2. leading "www." host label(s) stripped
      3. query dropped
      4. fragment dropped
      5. repeated path separators collapsed
      6. trailing "/" stripped (root path stays "/")
      7. whole result lower-cased
    Input without a host, or that urlsplit rejects, falls back to lower-case + trim.
    """

    name = "strict"

    def normalize(self, raw_url: str) -> str:
        text = str(raw_url or "").strip()
        try:
            parts = urlsplit(text)
            host = parts.hostname
        except ValueError:
            return _fallback(text)
        if not parts.netloc or not host:
            return _fallback(text)

        netloc = parts.netloc.lower()
        userinfo, _, hostport = netloc.rpartition("@")
        while hostport.startswith("www."):
            hostport = hostport[len("www.") :]
        if not hostport or hostport.startswith(":"):
            return _fallback(text)
        netloc = f"{userinfo}@{hostport}" if userinfo else hostport

        path = _SLASHES_RE.sub("/", parts.path or "")
        path = path.rstrip("/") or "/"

        return urlunsplit(("https", netloc, path, "", "")).lower()


def make_normalizer(policy: str) -> UrlNormalizer:
    key = (policy or "").strip().lower()
    if key == "strict":
        return StrictUrlNormalizer()
    if key == "loose":
        return LooseUrlNormalizer()
    raise ConfigError(f"Unknown url policy {policy!r} (expected 'strict' or 'loose').")


_default = StrictUrlNormalizer()


def normalize(raw_url: str) -> str:
    """Strict normalization (module-level convenience)."""
    return _default.normalize(raw_url)


def absolutize(raw_url: str, base_url: str) -> str:
    """
    Resolve a possibly relative link against the page it was found on.
    Absolute links pass through unchanged.
    """
    text = str(raw_url or "").strip()
    if not text or not base_url:
        return text
    try:
        return urljoin(base_url, text)
    except ValueError:
        return text


def _fallback(raw_url: str) -> str:
    return str(raw_url or "").strip().lower()
