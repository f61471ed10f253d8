from __future__ import annotations

import contextlib
import json
import os
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from .errors import ConfigError, ConflictError
from .logging_bridge import error as log_error
from .models import ExtractedPosting, Source
from .urls import StrictUrlNormalizer, UrlNormalizer
from .utils import parse_iso, to_iso

_SOURCE_KINDS = {"html", "api", "text"}


class Store(ABC):
    """Durable record of Sources, their watermarks, and every posting ever inserted."""

    @abstractmethod
    def list_sources(self) -> list[Source]:
        raise NotImplementedError

    @abstractmethod
    def list_known_urls(self, source_id: str) -> set[str]:
        raise NotImplementedError

    @abstractmethod
    def insert_posting(self, posting: ExtractedPosting) -> None:
        """Insert one posting atomically; ConflictError if (source_id, url) exists."""
        raise NotImplementedError

    @abstractmethod
    def update_watermark(self, source_id: str, ts: datetime) -> None:
        raise NotImplementedError


class SqliteStore(Store):
    """
    SQLite-backed store. One connection per call; WAL journal so the CLI can
    read while a scheduled run writes.

    Known URLs are passed through the active normalizer on the way out, so rows
    written under an older (looser) policy still match today's keys.
    """

    def __init__(self, sqlite_path: str, normalizer: UrlNormalizer | None = None) -> None:
        self.sqlite_path = sqlite_path
        self.normalizer = normalizer or StrictUrlNormalizer()
        self.init()

    # ---- Store API ------------------------------------------------------------

    def init(self) -> None:
        """Ensure the database file and schema exist. Safe to call repeatedly."""
        _ensure_dir(self.sqlite_path)
        with contextlib.closing(_connect(self.sqlite_path)) as conn:
            _apply_pragmas(conn)
            _ensure_schema(conn)

    def list_sources(self) -> list[Source]:
        with contextlib.closing(self._open()) as conn:
            rows = conn.execute(
                "SELECT id, name, endpoint, kind, last_scraped_utc FROM sources ORDER BY name, id"
            ).fetchall()
        return [
            Source(id=r[0], name=r[1], endpoint=r[2], kind=r[3] or "html", last_scraped=parse_iso(r[4]))
            for r in rows
        ]

    def list_known_urls(self, source_id: str) -> set[str]:
        with contextlib.closing(self._open()) as conn:
            rows = conn.execute("SELECT url FROM postings WHERE source_id = ?", (source_id,)).fetchall()
        return {self.normalizer.normalize(r[0]) for r in rows}

    def insert_posting(self, posting: ExtractedPosting) -> None:
        try:
            with contextlib.closing(self._open()) as conn:
                conn.execute(
                    """
                    INSERT INTO postings
                      (source_id, url, title, location, posted_date, summary, fields_json, discovered_utc)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        posting.source_id,
                        posting.url,
                        posting.title,
                        posting.location,
                        posting.posted_date,
                        posting.summary,
                        json.dumps(posting.fields, ensure_ascii=False, sort_keys=True, default=str),
                        to_iso(posting.discovered_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"posting already stored: {posting.source_id} {posting.url}") from e
        except sqlite3.Error as e:
            log_error({
                "component": "job_ingest.store",
                "op": "insert_posting",
                "sqlite_path": self.sqlite_path,
                "source": posting.source_id,
                "url": posting.url,
                "error": repr(e),
            })
            raise

    def update_watermark(self, source_id: str, ts: datetime) -> None:
        with contextlib.closing(self._open()) as conn:
            conn.execute("UPDATE sources SET last_scraped_utc = ? WHERE id = ?", (to_iso(ts), source_id))

    # ---- Registry helpers (CLI / sync) -----------------------------------------

    def upsert_source(self, source_id: str, name: str, endpoint: str, kind: str = "html") -> None:
        """Add a Source or update its name/endpoint/kind. The watermark is left untouched."""
        source_id = (source_id or "").strip()
        endpoint = (endpoint or "").strip()
        kind = (kind or "html").strip().lower()
        if not source_id or not endpoint:
            raise ConfigError("A source requires 'id' and 'endpoint'.")
        if kind not in _SOURCE_KINDS:
            raise ConfigError(f"Source kind must be one of {sorted(_SOURCE_KINDS)}, got {kind!r}.")
        with contextlib.closing(self._open()) as conn:
            conn.execute(
                """
                INSERT INTO sources (id, name, endpoint, kind) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  name = excluded.name, endpoint = excluded.endpoint, kind = excluded.kind
                """,
                (source_id, (name or source_id).strip(), endpoint, kind),
            )

    def sync_sources(self, path: str) -> int:
        """
        Upsert every Source listed in a JSON file. Sources missing from the file
        are kept (the core never deletes Sources). Returns the number upserted.
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"job_ingest sources file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"job_ingest sources file is invalid JSON: {path}") from e

        if not isinstance(data, list):
            raise ConfigError("Expected a list of source objects.")
        for i, item in enumerate(data):
            if not isinstance(item, dict):
                raise ConfigError(f"Item[{i}] must be an object.")
            if not item.get("id") or not item.get("endpoint"):
                raise ConfigError(f"Item[{i}] requires 'id' and 'endpoint'.")
            self.upsert_source(
                str(item["id"]),
                str(item.get("name") or item["id"]),
                str(item["endpoint"]),
                str(item.get("kind") or "html"),
            )
        return len(data)

    # ---- Diagnostics -------------------------------------------------------------

    def count_postings(self, source_id: str | None = None) -> int:
        with contextlib.closing(self._open()) as conn:
            if source_id is None:
                (n,) = conn.execute("SELECT COUNT(*) FROM postings").fetchone()
            else:
                (n,) = conn.execute("SELECT COUNT(*) FROM postings WHERE source_id = ?", (source_id,)).fetchone()
        return int(n or 0)

    def latest_postings(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recently discovered postings, newest first, joined with the source name."""
        with contextlib.closing(self._open()) as conn:
            rows = conn.execute(
                """
                SELECT p.source_id, COALESCE(s.name, p.source_id), p.title, p.url, p.posted_date, p.discovered_utc
                FROM postings p LEFT JOIN sources s ON s.id = p.source_id
                ORDER BY p.discovered_utc DESC, p.id DESC
                LIMIT ?
                """,
                (int(limit),),
            ).fetchall()
        keys = ("source_id", "source", "title", "url", "posted_date", "discovered_utc")
        return [dict(zip(keys, r)) for r in rows]

    def _open(self) -> sqlite3.Connection:
        conn = _connect(self.sqlite_path)
        _apply_pragmas(conn)
        return conn


def reset_db(sqlite_path: str) -> None:
    """
    Remove the DB file (and WAL side files) entirely, for pytest fixtures.
    Safe if it doesn't exist.
    """
    for suffix in ("", "-wal", "-shm"):
        with contextlib.suppress(FileNotFoundError):
            os.remove(sqlite_path + suffix)


# ---- Internal utilities -----------------------------------------------------


def _ensure_dir(sqlite_path: str) -> None:
    d = os.path.dirname(os.path.abspath(sqlite_path)) or "."
    os.makedirs(d, exist_ok=True)


def _connect(sqlite_path: str) -> sqlite3.Connection:
    # Autocommit: every statement is its own transaction, so one insert is one atomic write.
    return sqlite3.connect(sqlite_path, timeout=30.0, isolation_level=None)


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA temp_store=MEMORY;")


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
          id       TEXT PRIMARY KEY,
          name     TEXT NOT NULL,
          endpoint TEXT NOT NULL,
          kind     TEXT NOT NULL DEFAULT 'html',
          last_scraped_utc TEXT
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS postings (
          id          INTEGER PRIMARY KEY,
          source_id   TEXT NOT NULL,
          url         TEXT NOT NULL,
          title       TEXT,
          location    TEXT,
          posted_date TEXT,
          summary     TEXT,
          fields_json TEXT NOT NULL DEFAULT '{}',
          discovered_utc TEXT NOT NULL,
          UNIQUE (source_id, url)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS ix_postings_discovered ON postings (discovered_utc);")
