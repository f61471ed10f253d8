from __future__ import annotations

import json
from abc import ABC, abstractmethod

from bs4 import BeautifulSoup

from .errors import FetchError
from .http_client import HttpClient

_NOISE_TAGS = ("script", "style", "noscript", "svg", "template")


class ContentFetcher(ABC):
    """
    Retrieves raw content for an endpoint as opaque text.

    kind:
      - "html": page <body> markup (links intact for URL discovery)
      - "api":  JSON response, re-serialized compactly
      - "text": visible text only (cheapest for field extraction)
    """

    @abstractmethod
    def fetch(self, endpoint: str, kind: str = "html") -> str:
        """Return content text; raise FetchError if it cannot be retrieved."""
        raise NotImplementedError

    def close(self) -> None:
        return None


class HttpFetcher(ContentFetcher):
    def __init__(self, client: HttpClient | None = None) -> None:
        self._client = client or HttpClient()

    def fetch(self, endpoint: str, kind: str = "html") -> str:
        if not endpoint:
            raise FetchError("empty endpoint", endpoint=endpoint)
        if kind == "api":
            data = self._client.get_json(endpoint, headers={"Accept": "application/json"})
            return json.dumps(data, ensure_ascii=False, separators=(",", ":"))
        html = self._client.get_text(endpoint)
        if kind == "text":
            return html_to_text(html)
        return body_markup(html)

    def close(self) -> None:
        self._client.close()


def _soup(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html, "html5lib")
    for tag in soup(_NOISE_TAGS):
        tag.decompose()
    return soup


def body_markup(html: str) -> str:
    """Inner markup of <body> with scripts/styles removed; the whole document if there is no body."""
    soup = _soup(html)
    body = soup.body
    if body is None:
        return str(soup)
    return body.decode_contents().strip()


def html_to_text(html: str) -> str:
    soup = _soup(html)
    lines = (line.strip() for line in soup.get_text("\n").splitlines())
    return "\n".join(line for line in lines if line)
