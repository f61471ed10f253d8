# job_ingest/http_client.py
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import FetchError


class HttpClient:
    """Shared HTTP session with transport-level retries; every failure surfaces as FetchError."""

    def __init__(
        self,
        timeout: float = 15.0,
        user_agent: str = "JobIngest/0.1 (+https://example.invalid)",
        retries: int = 3,
    ):
        self.timeout = float(timeout)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

        retry = Retry(
            total=retries,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset(["GET", "HEAD"]),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=20)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def get(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> requests.Response:
        try:
            resp = self.session.get(url, headers=headers, timeout=timeout or self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise FetchError(f"GET {url} failed: {e}", endpoint=url) from e
        return resp

    def get_text(self, url: str, **kwargs: Any) -> str:
        """GET and return decoded text, trusting the sniffed encoding when headers omit one."""
        resp = self.get(url, **kwargs)
        if not resp.encoding and resp.apparent_encoding:
            resp.encoding = resp.apparent_encoding
        return resp.text

    def get_json(self, url: str, **kwargs: Any) -> Any:
        resp = self.get(url, **kwargs)
        try:
            return resp.json()
        except ValueError as e:
            preview = resp.text[:200].replace("\n", " ")
            raise FetchError(f"JSON decode failed for {url!r}; body starts: {preview!r}", endpoint=url) from e

    def close(self) -> None:
        self.session.close()
