#!/usr/bin/env python3
"""Forum magnet indexer: crawl -> parse -> resolve -> persist/park pipeline.

Architecture:
- Crawler: paginates forum listings and submits one task per thread to a
  bounded scheduler (fixed executor slots, bounded pending queue).
- Thread tasks: fetch the thread, derive a canonical key from its title,
  resolve the key to a show identity (manual hints, identity cache, primary
  provider, secondary provider) and persist one stream record per magnet.
- Orphan ledger: magnets that cannot be resolved are parked in SQLite and
  replayed periodically against the hints and the identity cache, without
  any external calls.

The page fetcher and the metadata provider clients are injected collaborators,
loaded from ``module:callable`` factory paths in the config file.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import copy
import functools
import importlib
import json
import logging
import random
import re
import signal
import socket
import sqlite3
import threading
import time
import unicodedata
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
    Union,
)
from urllib.parse import parse_qsl, urlsplit

import requests
from guessit import guessit
from guessit.api import GuessitException
from rich.console import Console
from rich.table import Table


LOGGER = logging.getLogger("magnet-indexer")


DEFAULT_CONFIG: Dict[str, Any] = {
    "runtime": {
        "database_path": "magnet_indexer.sqlite3",
        "log_file_path": "logs/magnet_indexer.log",
        "log_file_max_bytes": 10485760,
        "log_file_backup_count": 5,
        "log_level": "INFO",
        "run_mode": "continuous",
        "purge_orphans_on_start": False,
    },
    "crawler": {
        "initial_pages": 2,
        "page_delay_seconds": 0.5,
        "max_consecutive_page_errors": 3,
        "fetch_timeout_seconds": 15,
        "crawl_interval_seconds": 1800,
        "revisit_interval_seconds": 3600,
        "thread_revisit_hours": 24,
    },
    "scheduler": {
        "max_concurrency": 4,
        "max_queue_size": 200,
    },
    "resolver": {
        "cache_ttl_days": 30,
        "max_attempts": 3,
        "backoff_base_seconds": 0.5,
        "backoff_max_seconds": 8,
        "call_timeout_seconds": 10,
        "manual_hints": {},
    },
    "reconcile": {
        "interval_seconds": 3600,
    },
    "collaborators": {
        "fetcher": "",
        "primary_provider": "",
        "secondary_provider": "",
    },
}

SUPPORTED_RUN_MODES: Set[str] = {
    "continuous",
    "once",
}

COLLABORATOR_NAMES: Tuple[str, ...] = (
    "fetcher",
    "primary_provider",
    "secondary_provider",
)

DEFAULT_MAX_QUEUE_SIZE = 200

REASON_NO_METADATA_MATCH = "NO_METADATA_MATCH"
REASON_API_TIMEOUT = "API_TIMEOUT"
REASON_PROVIDER_ERROR = "PROVIDER_ERROR"
REASON_BAD_TITLE = "BAD_TITLE"
REASON_MAGNET_PARSE_FAILED = "MAGNET_PARSE_FAILED"
REASON_UNKNOWN_ERROR = "UNKNOWN_ERROR"

OUTCOME_STORED = "stored"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ORPHANED = "orphaned"

UNKNOWN_RESOLUTION = "unknown"
DEFAULT_LANGUAGES: Tuple[str, ...] = ("en",)


def now_epoch() -> int:
    return int(time.time())


def merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_dict(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class IndexerError(Exception):
    """Base class for pipeline errors that are downgraded, never fatal."""


class FetchError(IndexerError):
    pass


class ParseError(IndexerError):
    pass


class TitleNormalizationFailure(IndexerError):
    reason = REASON_BAD_TITLE


class MetadataResolutionFailure(IndexerError):
    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class MagnetParseFailure(IndexerError):
    reason = REASON_MAGNET_PARSE_FAILED


class ProviderError(IndexerError):
    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ProviderTimeout(ProviderError):
    def __init__(self, message: str):
        super().__init__(message, retryable=False)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamDescriptor:
    info_hash: str
    name: str
    season: Optional[int]
    episodes: Tuple[int, ...]
    resolution: str
    languages: Tuple[str, ...] = DEFAULT_LANGUAGES
    size_bytes: Optional[int] = None
    size_label: Optional[str] = None

    @property
    def is_pack(self) -> bool:
        return not self.episodes

    @property
    def stream_key(self) -> str:
        season = "x" if self.season is None else str(self.season)
        if self.episodes:
            episode_range = f"{self.episodes[0]}-{self.episodes[-1]}"
        else:
            episode_range = "pack"
        return f"{self.info_hash}:{season}:{episode_range}:{self.resolution}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "info_hash": self.info_hash,
            "name": self.name,
            "season": self.season,
            "episodes": list(self.episodes),
            "resolution": self.resolution,
            "languages": list(self.languages),
            "size_bytes": self.size_bytes,
            "size_label": self.size_label,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StreamDescriptor":
        return cls(
            info_hash=str(payload["info_hash"]),
            name=str(payload.get("name") or ""),
            season=payload.get("season"),
            episodes=tuple(int(ep) for ep in payload.get("episodes") or ()),
            resolution=str(payload.get("resolution") or UNKNOWN_RESOLUTION),
            languages=tuple(payload.get("languages") or DEFAULT_LANGUAGES),
            size_bytes=payload.get("size_bytes"),
            size_label=payload.get("size_label"),
        )


@dataclass
class ThreadDescriptor:
    url: str
    title: str
    poster_url: Optional[str] = None
    magnets: List[str] = field(default_factory=list)
    last_visited_at: Optional[int] = None


@dataclass
class FetchedThread:
    title: str
    poster_url: Optional[str] = None
    magnets: List[str] = field(default_factory=list)


@dataclass
class ShowIdentity:
    primary_id: Optional[str]
    secondary_id: Optional[str]
    name: str = ""
    poster: Optional[str] = None
    year: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.primary_id) and bool(self.secondary_id)


@dataclass
class ProviderDetails:
    primary_id: Optional[str]
    secondary_id: Optional[str]
    name: str = ""
    poster: Optional[str] = None
    date_info: Optional[str] = None


@dataclass
class SecondaryMatch:
    secondary_id: str
    primary_id: Optional[str] = None
    name: str = ""
    year: Optional[str] = None
    poster: Optional[str] = None


@dataclass
class ResolutionFailure:
    reason: str
    detail: str = ""


@dataclass
class CatalogEntry:
    id: str
    name: str
    poster: Optional[str] = None
    year: Optional[str] = None
    secondary_id: Optional[str] = None
    updated_at: int = 0


@dataclass
class OrphanRecord:
    magnet: str
    info_hash: Optional[str]
    display_name: str
    thread_title: str
    canonical_key: str
    source_url: str
    reason: str
    attempts: int = 1
    logged_at: int = 0
    ledger_id: Optional[int] = None


@dataclass
class ReconcileResult:
    scanned: int = 0
    rescued: int = 0
    retained: int = 0
    streams_added: int = 0


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------


class ThreadFetcher(Protocol):
    async def fetch_listing(self, page: int) -> Optional[List[str]]:
        ...

    async def fetch_thread(self, url: str) -> Optional[FetchedThread]:
        ...


class PrimaryProvider(Protocol):
    async def search_by_title(self, title: str, year: Optional[str] = None) -> List[str]:
        ...

    async def get_details(self, provider_id: str) -> Optional[ProviderDetails]:
        ...


class SecondaryProvider(Protocol):
    async def search_by_title(self, title: str) -> Optional[SecondaryMatch]:
        ...


# ---------------------------------------------------------------------------
# Title parsing
# ---------------------------------------------------------------------------


BTIH_REGEX = re.compile(
    r"btih:([a-f0-9]{40}|[a-z2-7]{32})(?![a-z0-9])",
    re.IGNORECASE,
)
YEAR_REGEX = re.compile(r"(?<!\d)((?:19|20)\d{2})(?!\d)")

LANG_MAP: Dict[str, str] = {
    "tam": "ta",
    "mal": "ml",
    "tel": "te",
    "hin": "hi",
    "eng": "en",
    "kor": "ko",
    "jap": "ja",
    "jpn": "ja",
    "chi": "zh",
    "kan": "kn",
    "ben": "bn",
}
LANG_NAMES: Tuple[str, ...] = (
    "tamil",
    "malayalam",
    "telugu",
    "hindi",
    "english",
    "korean",
    "japanese",
    "chinese",
    "kannada",
    "bengali",
)
# A code or full language name standing as a whole word.
LANG_CODE_REGEX = re.compile(
    r"(?<![a-z])(" + "|".join(sorted(set(LANG_MAP) | set(LANG_NAMES), key=len, reverse=True)) + r")(?![a-z])"
)
FIRST_BRACKET_REGEX = re.compile(r"\[([^\]]+)\]")
RESOLUTION_REGEX = re.compile(
    r"(?<![a-z0-9])(4320p|2160p|1440p|1080p|720p|576p|540p|480p|360p|4k|uhd)(?![a-z0-9])",
    re.IGNORECASE,
)
SIZE_REGEX = re.compile(r"(\d+(?:\.\d+)?)\s*(TB|GiB|GB|MiB|MB)(?![a-z])", re.IGNORECASE)
SIZE_MULTIPLIERS: Dict[str, int] = {
    "tb": 1024**4,
    "gb": 1024**3,
    "gib": 1024**3,
    "mb": 1024**2,
    "mib": 1024**2,
}

RULE_EPISODE_RANGE = "episode_range"
RULE_SINGLE_EPISODE = "single_episode"
RULE_SEASON_PACK = "season_pack"
RULE_COMPLETE_PACK = "complete_pack"

_SEASON = r"(?<![a-z0-9])(?:season\s*|s)(\d{1,2})"
_EPISODE = r"(?:episodes?\s*|ep\s?|e)"
_DASH = r"\s?[-‐‑–~]\s?"
# A spaced dash needs an episode marker after it; "S01E05 - 480p" is not a range.
_RANGE_JOIN = r"(?:" + _DASH + _EPISODE + r"|[-‐‑–~])"
_NOT_QUALITY = r"(?!\d|p(?![a-z])|\s?[kmgt]i?b(?![a-z]))"
MAX_PACK_EPISODES = 500

# Most specific first; the first matching rule wins.
PARSING_RULES: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    # S01EP(01-09), S01 EP (01-15)
    (
        RULE_EPISODE_RANGE,
        re.compile(_SEASON + r"\s?" + _EPISODE + r"\s?\((\d{1,3})" + _DASH + r"(\d{1,3})\)", re.IGNORECASE),
    ),
    # S01E01-E09, S02EP01-07, Season 1 Episode 1-5
    (
        RULE_EPISODE_RANGE,
        re.compile(
            _SEASON + r"\s?" + _EPISODE + r"(\d{1,3})" + _RANGE_JOIN + r"(\d{1,3})" + _NOT_QUALITY,
            re.IGNORECASE,
        ),
    ),
    # S01(01-24)
    (
        RULE_EPISODE_RANGE,
        re.compile(_SEASON + r"\s?\((\d{1,3})" + _DASH + r"(\d{1,3})\)", re.IGNORECASE),
    ),
    # S01EP06, S01 EP(06), S01E06; never the prefix of a range
    (
        RULE_SINGLE_EPISODE,
        re.compile(
            _SEASON + r"\s?" + _EPISODE + r"\s?\(?(\d{1,3})(?!\d)\)?(?!" + _RANGE_JOIN + r"\d{1,3}" + _NOT_QUALITY + r")",
            re.IGNORECASE,
        ),
    ),
    # S01, Season 1
    (RULE_SEASON_PACK, re.compile(_SEASON + r"(?!\d)", re.IGNORECASE)),
    (RULE_COMPLETE_PACK, re.compile(r"(?<![a-z])complete(?![a-z])", re.IGNORECASE)),
)


def _guess(text: str) -> Dict[str, Any]:
    if not text:
        return {}
    try:
        return dict(guessit(text))
    except GuessitException as exc:
        LOGGER.debug("guessit could not parse %r: %s", text, exc)
        return {}


def _first_int(value: Any) -> Optional[int]:
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _int_list(value: Any) -> List[int]:
    values = value if isinstance(value, list) else [value]
    result = []
    for item in values:
        parsed = _first_int(item)
        if parsed is not None:
            result.append(parsed)
    return result


def extract_info_hash(magnet: str) -> Optional[str]:
    match = BTIH_REGEX.search(magnet or "")
    if not match:
        return None
    raw = match.group(1)
    if len(raw) == 32:
        return base64.b32decode(raw.upper()).hex()
    return raw.lower()


def magnet_display_name(magnet: str) -> str:
    if not magnet or not magnet.lower().startswith("magnet:?"):
        return ""
    for key, value in parse_qsl(urlsplit(magnet).query, keep_blank_values=True):
        if key == "dn":
            return " ".join(value.split())
    return ""


def extract_year(title: str) -> Optional[str]:
    match = YEAR_REGEX.search(title or "")
    return match.group(1) if match else None


def _match_episode_rules(title: str) -> Optional[Tuple[Optional[int], List[int]]]:
    for kind, pattern in PARSING_RULES:
        match = pattern.search(title)
        if not match:
            continue
        if kind == RULE_EPISODE_RANGE:
            start, end = sorted((int(match.group(2)), int(match.group(3))))
            if end - start >= MAX_PACK_EPISODES:
                continue
            return int(match.group(1)), list(range(start, end + 1))
        if kind == RULE_SINGLE_EPISODE:
            return int(match.group(1)), [int(match.group(2))]
        if kind == RULE_SEASON_PACK:
            return int(match.group(1)), []
        if kind == RULE_COMPLETE_PACK:
            return _first_int(_guess(title).get("season")), []
    return None


def _language_codes(title: str, guessed: Any) -> Tuple[str, ...]:
    languages: Dict[str, None] = {}

    guessed_values = guessed if isinstance(guessed, list) else [guessed]
    for value in guessed_values:
        if value is None:
            continue
        code = str(value).strip().lower()
        if not code or code in ("und", "mul"):
            continue
        if len(code) >= 3:
            code = LANG_MAP.get(code[:3], code)
        languages[code] = None

    for match in LANG_CODE_REGEX.finditer(title.lower()):
        languages[LANG_MAP[match.group(1)[:3]]] = None

    bracket = FIRST_BRACKET_REGEX.search(title)
    if bracket:
        for token in re.split(r"[+,\s]", bracket.group(1)):
            word = token.strip().lower()
            if LANG_CODE_REGEX.fullmatch(word):
                languages[LANG_MAP[word[:3]]] = None

    return tuple(languages) or DEFAULT_LANGUAGES


def _resolution(title: str, guessed: Any) -> str:
    match = RESOLUTION_REGEX.search(title)
    if match:
        value = match.group(1).lower()
        return "2160p" if value in ("4k", "uhd") else value
    if guessed:
        return str(guessed).lower()
    return UNKNOWN_RESOLUTION


def _size(title: str) -> Tuple[Optional[int], Optional[str]]:
    match = SIZE_REGEX.search(title)
    if not match:
        return None, None
    number = float(match.group(1))
    unit = match.group(2).lower()
    return int(number * SIZE_MULTIPLIERS[unit]), match.group(0).strip()


class TitleParser:
    """Turns a magnet URI into a StreamDescriptor, or None when nothing matches."""

    def parse(self, magnet: str) -> Optional[StreamDescriptor]:
        info_hash = extract_info_hash(magnet)
        if not info_hash:
            return None
        name = magnet_display_name(magnet)
        if not name:
            return None

        guessed = _guess(name)
        matched = _match_episode_rules(name)
        if matched is None:
            season = _first_int(guessed.get("season"))
            episodes = _int_list(guessed.get("episode")) if guessed.get("episode") is not None else []
            if season is None and not episodes:
                return None
            matched = (season, episodes)

        season, episodes = matched
        size_bytes, size_label = _size(name)
        return StreamDescriptor(
            info_hash=info_hash,
            name=name,
            season=season,
            episodes=tuple(episodes),
            resolution=_resolution(name, guessed.get("screen_size")),
            languages=_language_codes(name, guessed.get("language")),
            size_bytes=size_bytes,
            size_label=size_label,
        )

    def parse_or_raise(self, magnet: str) -> StreamDescriptor:
        stream = self.parse(magnet)
        if stream is None:
            raise MagnetParseFailure(magnet_display_name(magnet) or magnet[:120])
        return stream


# ---------------------------------------------------------------------------
# Title normalization
# ---------------------------------------------------------------------------


BRACKETED_REGEX = re.compile(r"\[[^\]]*\]|\([^)]*\)|\{[^}]*\}")
TITLE_CUT_REGEX = re.compile(
    r"(?<!\S)(?:(?:19|20)\d{2}|s\d{1,2}(?:ep|e)?\d{0,3}|season\s*\d{1,2}|ep?\d{1,3}"
    r"|episode\s*\d{1,3}|\d{3,4}p|4k)(?!\S)"
)


def scrub_title(text: str) -> str:
    cleaned = unicodedata.normalize("NFKC", text or "")
    cleaned = unicodedata.normalize("NFKC", cleaned.casefold())
    cleaned = BRACKETED_REGEX.sub(" ", cleaned)
    cleaned = "".join(
        " " if unicodedata.category(ch)[0] in "PS" else ch for ch in cleaned
    )
    cleaned = " ".join(cleaned.split())

    match = TITLE_CUT_REGEX.search(cleaned)
    if match:
        head = cleaned[: match.start()].strip()
        cleaned = head if head else " ".join(TITLE_CUT_REGEX.sub(" ", cleaned).split())
    return cleaned


def normalize_title(title: str) -> str:
    if title == scrub_title(title):
        return title
    guessed = _guess(title).get("title")
    base = guessed if isinstance(guessed, str) and len(guessed) > 3 else title
    return scrub_title(base)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class LocalStore:
    def __init__(self, path: Union[Path, str]):
        self.path = path
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(str(path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.conn:
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS identities (
                    primary_id TEXT PRIMARY KEY,
                    secondary_id TEXT,
                    name TEXT,
                    poster TEXT,
                    year TEXT,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS identity_cache (
                    cache_key TEXT NOT NULL,
                    year TEXT NOT NULL DEFAULT '',
                    primary_id TEXT NOT NULL,
                    expires_at INTEGER NOT NULL,
                    PRIMARY KEY (cache_key, year)
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS streams (
                    primary_id TEXT NOT NULL,
                    stream_key TEXT NOT NULL,
                    info_hash TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY (primary_id, stream_key)
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS catalog (
                    id TEXT PRIMARY KEY,
                    secondary_id TEXT,
                    name TEXT NOT NULL,
                    poster TEXT,
                    year TEXT,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS threads (
                    url TEXT PRIMARY KEY,
                    title TEXT,
                    poster_url TEXT,
                    magnets TEXT NOT NULL DEFAULT '[]',
                    last_visited_at INTEGER NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS orphans (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    magnet TEXT NOT NULL,
                    info_hash TEXT,
                    display_name TEXT,
                    thread_title TEXT,
                    canonical_key TEXT NOT NULL DEFAULT '',
                    source_url TEXT,
                    reason TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 1,
                    logged_at INTEGER NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_catalog_year
                ON catalog (year DESC, name)
                """
            )
            self.conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_threads_last_visited
                ON threads (last_visited_at)
                """
            )

    # Identity cache

    @staticmethod
    def _row_to_identity(row: sqlite3.Row) -> ShowIdentity:
        return ShowIdentity(
            primary_id=row["primary_id"],
            secondary_id=row["secondary_id"],
            name=row["name"] or "",
            poster=row["poster"],
            year=row["year"],
        )

    def get_identity(self, primary_id: str) -> Optional[ShowIdentity]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM identities WHERE primary_id = ?",
                (str(primary_id),),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def get_cached_identity(
        self,
        key: str,
        year: Optional[str] = None,
        now_ts: Optional[int] = None,
    ) -> Optional[ShowIdentity]:
        ts = now_epoch() if now_ts is None else now_ts
        with self._lock:
            row = self.conn.execute(
                """
                SELECT i.*
                FROM identity_cache c
                JOIN identities i ON i.primary_id = c.primary_id
                WHERE c.cache_key = ? AND c.year = ? AND c.expires_at > ?
                """,
                (key, year or "", ts),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def cache_identity(
        self,
        key: str,
        year: Optional[str],
        identity: ShowIdentity,
        ttl_seconds: int,
        now_ts: Optional[int] = None,
    ) -> None:
        ts = now_epoch() if now_ts is None else now_ts
        expires_at = ts + max(1, int(ttl_seconds))
        years = {"", year or ""}
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO identities(primary_id, secondary_id, name, poster, year, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(primary_id) DO UPDATE SET
                    secondary_id=COALESCE(excluded.secondary_id, identities.secondary_id),
                    name=COALESCE(NULLIF(excluded.name, ''), identities.name),
                    poster=COALESCE(excluded.poster, identities.poster),
                    year=COALESCE(excluded.year, identities.year),
                    updated_at=excluded.updated_at
                """,
                (
                    str(identity.primary_id),
                    identity.secondary_id,
                    identity.name,
                    identity.poster,
                    identity.year,
                    ts,
                ),
            )
            for cache_year in years:
                self.conn.execute(
                    """
                    INSERT INTO identity_cache(cache_key, year, primary_id, expires_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(cache_key, year) DO UPDATE SET
                        primary_id=excluded.primary_id,
                        expires_at=excluded.expires_at
                    """,
                    (key, cache_year, str(identity.primary_id), expires_at),
                )

    def cached_key_mappings(self, now_ts: Optional[int] = None) -> Dict[str, str]:
        ts = now_epoch() if now_ts is None else now_ts
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT cache_key, primary_id
                FROM identity_cache
                WHERE expires_at > ?
                ORDER BY (year = '') ASC, year ASC
                """,
                (ts,),
            ).fetchall()
        # Key-only rows sort last and win.
        return {str(row["cache_key"]): str(row["primary_id"]) for row in rows}

    # Streams and catalog

    def upsert_stream(
        self,
        primary_id: str,
        stream: StreamDescriptor,
        now_ts: Optional[int] = None,
    ) -> None:
        ts = now_epoch() if now_ts is None else now_ts
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO streams(primary_id, stream_key, info_hash, payload, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(primary_id, stream_key) DO UPDATE SET
                    payload=excluded.payload,
                    updated_at=excluded.updated_at
                """,
                (
                    str(primary_id),
                    stream.stream_key,
                    stream.info_hash,
                    json.dumps(stream.to_payload(), ensure_ascii=False),
                    ts,
                ),
            )

    def list_streams(self, primary_id: str) -> List[StreamDescriptor]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT payload FROM streams WHERE primary_id = ? ORDER BY stream_key",
                (str(primary_id),),
            ).fetchall()
        return [StreamDescriptor.from_payload(json.loads(row["payload"])) for row in rows]

    def upsert_catalog(self, entry: CatalogEntry, now_ts: Optional[int] = None) -> None:
        ts = now_epoch() if now_ts is None else now_ts
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO catalog(id, secondary_id, name, poster, year, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    secondary_id=COALESCE(excluded.secondary_id, catalog.secondary_id),
                    name=excluded.name,
                    poster=COALESCE(excluded.poster, catalog.poster),
                    year=COALESCE(excluded.year, catalog.year),
                    updated_at=excluded.updated_at
                """,
                (entry.id, entry.secondary_id, entry.name, entry.poster, entry.year, ts),
            )

    def list_catalog(self, limit: int = 100, offset: int = 0) -> List[CatalogEntry]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM catalog
                ORDER BY COALESCE(year, '') DESC, name ASC
                LIMIT ? OFFSET ?
                """,
                (max(1, int(limit)), max(0, int(offset))),
            ).fetchall()
        return [self._row_to_catalog(row) for row in rows]

    @staticmethod
    def _row_to_catalog(row: sqlite3.Row) -> CatalogEntry:
        return CatalogEntry(
            id=row["id"],
            name=row["name"],
            poster=row["poster"],
            year=row["year"],
            secondary_id=row["secondary_id"],
            updated_at=int(row["updated_at"] or 0),
        )

    def get_catalog_entry(self, entry_id: str) -> Optional[CatalogEntry]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM catalog WHERE id = ?", (str(entry_id),)).fetchone()
        return self._row_to_catalog(row) if row else None

    # Threads

    def touch_thread(
        self,
        url: str,
        *,
        title: Optional[str] = None,
        poster_url: Optional[str] = None,
        magnets: Optional[Sequence[str]] = None,
        now_ts: Optional[int] = None,
    ) -> None:
        ts = now_epoch() if now_ts is None else now_ts
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO threads(url, title, poster_url, magnets, last_visited_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(url) DO UPDATE SET
                    title=COALESCE(excluded.title, threads.title),
                    poster_url=COALESCE(excluded.poster_url, threads.poster_url),
                    magnets=CASE WHEN excluded.magnets = '[]' THEN threads.magnets ELSE excluded.magnets END,
                    last_visited_at=excluded.last_visited_at
                """,
                (url, title, poster_url, json.dumps(list(magnets or [])), ts),
            )

    def get_thread(self, url: str) -> Optional[ThreadDescriptor]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM threads WHERE url = ?", (url,)).fetchone()
        if row is None:
            return None
        return ThreadDescriptor(
            url=row["url"],
            title=row["title"] or "",
            poster_url=row["poster_url"],
            magnets=list(json.loads(row["magnets"] or "[]")),
            last_visited_at=int(row["last_visited_at"]),
        )

    def stale_threads(self, cutoff_ts: int) -> List[str]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT url FROM threads
                WHERE last_visited_at < ?
                ORDER BY last_visited_at ASC
                """,
                (int(cutoff_ts),),
            ).fetchall()
        return [str(row["url"]) for row in rows]

    # Orphans

    def append_orphan(self, record: OrphanRecord) -> int:
        with self._lock, self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO orphans(
                    magnet,
                    info_hash,
                    display_name,
                    thread_title,
                    canonical_key,
                    source_url,
                    reason,
                    attempts,
                    logged_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._orphan_values(record),
            )
        return int(cursor.lastrowid)

    @staticmethod
    def _orphan_values(record: OrphanRecord) -> Tuple[Any, ...]:
        return (
            record.magnet,
            record.info_hash,
            record.display_name,
            record.thread_title,
            record.canonical_key,
            record.source_url,
            record.reason,
            max(1, int(record.attempts)),
            int(record.logged_at or now_epoch()),
        )

    @staticmethod
    def _row_to_orphan(row: sqlite3.Row) -> OrphanRecord:
        return OrphanRecord(
            magnet=row["magnet"],
            info_hash=row["info_hash"],
            display_name=row["display_name"] or "",
            thread_title=row["thread_title"] or "",
            canonical_key=row["canonical_key"] or "",
            source_url=row["source_url"] or "",
            reason=row["reason"],
            attempts=int(row["attempts"]),
            logged_at=int(row["logged_at"]),
            ledger_id=int(row["id"]),
        )

    def load_orphans(self) -> List[OrphanRecord]:
        with self._lock:
            rows = self.conn.execute("SELECT * FROM orphans ORDER BY id ASC").fetchall()
        return [self._row_to_orphan(row) for row in rows]

    def find_orphan(self, magnet_key: str, source_url: str) -> Optional[OrphanRecord]:
        with self._lock:
            row = self.conn.execute(
                """
                SELECT * FROM orphans
                WHERE COALESCE(info_hash, magnet) = ? AND source_url = ?
                ORDER BY id ASC
                LIMIT 1
                """,
                (magnet_key, source_url),
            ).fetchone()
        return self._row_to_orphan(row) if row else None

    def replace_orphans(
        self,
        snapshot_ids: Iterable[int],
        survivors: Sequence[OrphanRecord],
    ) -> None:
        """Swap the rows read in a snapshot for the surviving records.

        Rows appended after the snapshot was read are left alone.
        """
        ids = [(int(ledger_id),) for ledger_id in snapshot_ids]
        with self._lock, self.conn:
            self.conn.executemany("DELETE FROM orphans WHERE id = ?", ids)
            self.conn.executemany(
                """
                INSERT INTO orphans(
                    magnet,
                    info_hash,
                    display_name,
                    thread_title,
                    canonical_key,
                    source_url,
                    reason,
                    attempts,
                    logged_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [self._orphan_values(record) for record in survivors],
            )

    def purge_orphans(self) -> int:
        with self._lock, self.conn:
            cursor = self.conn.execute("DELETE FROM orphans")
        return int(cursor.rowcount)

    # Status

    def counts(self) -> Dict[str, int]:
        with self._lock:
            row = self.conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM catalog) AS catalog,
                    (SELECT COUNT(*) FROM streams) AS streams,
                    (SELECT COUNT(*) FROM threads) AS threads,
                    (SELECT COUNT(*) FROM identities) AS identities,
                    (SELECT COUNT(*) FROM identity_cache) AS cache_entries,
                    (SELECT COUNT(*) FROM orphans) AS orphans
                """
            ).fetchone()
        return {key: int(row[key] or 0) for key in row.keys()}

    def orphan_reason_counts(self) -> Dict[str, int]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT reason, COUNT(*) AS c, MAX(attempts) AS max_attempts
                FROM orphans
                GROUP BY reason
                ORDER BY c DESC
                """
            ).fetchall()
        return {str(row["reason"]): int(row["c"]) for row in rows}


# ---------------------------------------------------------------------------
# Provider retry policy
# ---------------------------------------------------------------------------


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    call_timeout_seconds: float = 10.0

    def delay_for(self, attempt: int) -> float:
        backoff = self.base_delay_seconds * (2**attempt)
        jitter = random.random() * self.base_delay_seconds
        return min(self.max_delay_seconds, backoff + jitter)


def is_network_unavailable_error(exc: requests.RequestException) -> bool:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    marker_text = str(exc).lower()
    markers = (
        "nameresolutionerror",
        "failed to resolve",
        "temporary failure in name resolution",
        "network is unreachable",
        "no route to host",
        "connection refused",
        "connection reset",
    )
    if any(marker in marker_text for marker in markers):
        return True
    cause = getattr(exc, "__cause__", None)
    return isinstance(cause, (socket.gaierror, TimeoutError, ConnectionError))


def is_timeout_error(exc: BaseException) -> bool:
    return isinstance(exc, (asyncio.TimeoutError, TimeoutError, requests.Timeout))


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, ProviderError):
        return exc.retryable
    if is_timeout_error(exc):
        return True
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        return response is not None and response.status_code >= 500
    if isinstance(exc, requests.RequestException):
        return is_network_unavailable_error(exc)
    return False


async def call_with_retries(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    policy: RetryPolicy,
    label: str,
) -> Any:
    attempts = max(1, int(policy.max_attempts))
    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(func(*args), timeout=policy.call_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            retryable = is_retryable_error(exc)
            if retryable and attempt < attempts - 1:
                sleep_for = policy.delay_for(attempt)
                LOGGER.warning(
                    "[Resolver] %s failed (attempt %s/%s). Retrying in %.1fs: %s",
                    label,
                    attempt + 1,
                    attempts,
                    sleep_for,
                    str(exc) or exc.__class__.__name__,
                )
                await asyncio.sleep(sleep_for)
                continue
            if is_timeout_error(exc):
                raise ProviderTimeout(f"{label} timed out after {attempt + 1} attempt(s)") from exc
            if isinstance(exc, ProviderError):
                raise
            raise ProviderError(f"{label} failed: {exc}", retryable=retryable) from exc
    raise ProviderError(f"{label} failed", retryable=False)


# ---------------------------------------------------------------------------
# Metadata resolution
# ---------------------------------------------------------------------------


def _year_from_date(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    match = YEAR_REGEX.search(str(value))
    return match.group(1) if match else None


class MetadataResolver:
    """Resolves a canonical key to a ShowIdentity that carries both ids.

    Stages run in order and stop at the first complete identity: manual hint,
    identity cache, primary provider with year, primary provider without year,
    secondary provider.
    """

    def __init__(
        self,
        *,
        store: LocalStore,
        primary: PrimaryProvider,
        secondary: SecondaryProvider,
        manual_hints: Optional[Mapping[str, str]] = None,
        cache_ttl_seconds: int = 30 * 86400,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.primary = primary
        self.secondary = secondary
        self.manual_hints: Dict[str, str] = dict(manual_hints or {})
        self.cache_ttl_seconds = cache_ttl_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.stage_hits: Counter = Counter()
        self._stages: Tuple[Tuple[str, Callable[[str, Optional[str]], Awaitable[Optional[ShowIdentity]]]], ...] = (
            ("hint", self._from_hint),
            ("cache", self._from_cache),
            ("primary+year", self._from_primary_with_year),
            ("primary", self._from_primary),
            ("secondary", self._from_secondary),
        )

    async def resolve(
        self, key: str, year: Optional[str] = None
    ) -> Union[ShowIdentity, ResolutionFailure]:
        if not key:
            return ResolutionFailure(REASON_BAD_TITLE, "empty canonical key")

        timed_out = False
        errored = False
        for stage_name, stage in self._stages:
            try:
                identity = await stage(key, year)
            except ProviderTimeout as exc:
                timed_out = True
                LOGGER.warning("[Resolver] Stage %s timed out for '%s': %s", stage_name, key, exc)
                continue
            except ProviderError as exc:
                errored = True
                LOGGER.warning("[Resolver] Stage %s failed for '%s': %s", stage_name, key, exc)
                continue

            if identity is None or not identity.is_complete:
                continue

            self.stage_hits[stage_name] += 1
            if stage_name != "cache":
                self.store.cache_identity(key, year, identity, self.cache_ttl_seconds)
            LOGGER.debug(
                "[Resolver] '%s' (%s) resolved via %s -> %s / %s",
                key,
                year or "-",
                stage_name,
                identity.primary_id,
                identity.secondary_id,
            )
            return identity

        if timed_out:
            reason = REASON_API_TIMEOUT
        elif errored:
            reason = REASON_PROVIDER_ERROR
        else:
            reason = REASON_NO_METADATA_MATCH
        self.stage_hits["failed"] += 1
        return ResolutionFailure(reason, f"no complete identity for '{key}' ({year or '-'})")

    async def _call(self, func: Callable[..., Awaitable[Any]], *args: Any, label: str) -> Any:
        return await call_with_retries(func, *args, policy=self.retry_policy, label=label)

    @staticmethod
    def _from_details(
        details: Optional[ProviderDetails],
        fallback_name: str,
        fallback_year: Optional[str],
    ) -> Optional[ShowIdentity]:
        if details is None:
            return None
        return ShowIdentity(
            primary_id=str(details.primary_id) if details.primary_id else None,
            secondary_id=details.secondary_id or None,
            name=details.name or fallback_name,
            poster=details.poster,
            year=_year_from_date(details.date_info) or fallback_year,
        )

    async def _from_hint(self, key: str, year: Optional[str]) -> Optional[ShowIdentity]:
        hint_id = self.manual_hints.get(key)
        if not hint_id:
            return None
        known = self.store.get_identity(hint_id)
        if known is not None and known.is_complete:
            return known
        details = await self._call(self.primary.get_details, hint_id, label=f"details {hint_id}")
        return self._from_details(details, key, year)

    async def _from_cache(self, key: str, year: Optional[str]) -> Optional[ShowIdentity]:
        if year:
            cached = self.store.get_cached_identity(key, year)
            if cached is not None:
                return cached
        return self.store.get_cached_identity(key)

    async def _primary_lookup(self, key: str, year: Optional[str]) -> Optional[ShowIdentity]:
        candidates = await self._call(
            self.primary.search_by_title,
            key,
            year,
            label=f"primary search '{key}' ({year or '-'})",
        )
        if not candidates:
            return None
        candidate_id = str(candidates[0])
        details = await self._call(
            self.primary.get_details,
            candidate_id,
            label=f"details {candidate_id}",
        )
        return self._from_details(details, key, year)

    async def _from_primary_with_year(self, key: str, year: Optional[str]) -> Optional[ShowIdentity]:
        if not year:
            return None
        return await self._primary_lookup(key, year)

    async def _from_primary(self, key: str, year: Optional[str]) -> Optional[ShowIdentity]:
        identity = await self._primary_lookup(key, None)
        if identity is not None and not identity.year:
            identity.year = year
        return identity

    async def _from_secondary(self, key: str, year: Optional[str]) -> Optional[ShowIdentity]:
        match = await self._call(self.secondary.search_by_title, key, label=f"secondary search '{key}'")
        if match is None or not match.secondary_id:
            return None

        identity = ShowIdentity(
            primary_id=str(match.primary_id) if match.primary_id else None,
            secondary_id=match.secondary_id,
            name=match.name or key,
            poster=match.poster,
            year=match.year or year,
        )
        if identity.primary_id:
            return identity

        details = await self._call(
            self.primary.get_details,
            match.secondary_id,
            label=f"details {match.secondary_id}",
        )
        if details is None or not details.primary_id:
            return identity
        identity.primary_id = str(details.primary_id)
        identity.poster = identity.poster or details.poster
        identity.year = identity.year or _year_from_date(details.date_info)
        return identity


# ---------------------------------------------------------------------------
# Orphan ledger
# ---------------------------------------------------------------------------


class OrphanLedger:
    def __init__(
        self,
        *,
        store: LocalStore,
        parser: TitleParser,
        manual_hints: Optional[Mapping[str, str]] = None,
    ):
        self.store = store
        self.parser = parser
        self.manual_hints: Dict[str, str] = dict(manual_hints or {})
        self._reconcile_lock = threading.Lock()

    def record(
        self,
        magnet: str,
        *,
        thread_title: str,
        canonical_key: str,
        source_url: str,
        reason: str,
    ) -> OrphanRecord:
        info_hash = extract_info_hash(magnet)
        parked = self.store.find_orphan(info_hash or magnet, source_url)
        if parked is not None:
            LOGGER.debug(
                "[Orphans] %s from %s is already parked (attempts=%s)",
                info_hash or parked.display_name,
                source_url,
                parked.attempts,
            )
            return parked

        record = OrphanRecord(
            magnet=magnet,
            info_hash=info_hash,
            display_name=magnet_display_name(magnet) or thread_title,
            thread_title=thread_title,
            canonical_key=canonical_key or "",
            source_url=source_url,
            reason=reason,
            attempts=1,
            logged_at=now_epoch(),
        )
        record.ledger_id = self.store.append_orphan(record)
        return record

    def snapshot_index(self) -> Dict[str, str]:
        index = self.store.cached_key_mappings()
        index.update(self.manual_hints)
        return index

    def reconcile(self) -> ReconcileResult:
        with self._reconcile_lock:
            index = self.snapshot_index()
            orphans = self.store.load_orphans()
            result = ReconcileResult(scanned=len(orphans))
            survivors: Dict[Tuple[str, str], OrphanRecord] = {}
            catalogued: Set[str] = set()

            for orphan in orphans:
                primary_id = index.get(orphan.canonical_key) if orphan.canonical_key else None
                stream = self.parser.parse(orphan.magnet) if primary_id else None
                if primary_id and stream is not None:
                    self.store.upsert_stream(primary_id, stream)
                    if primary_id not in catalogued:
                        self._ensure_catalog_entry(primary_id, orphan)
                        catalogued.add(primary_id)
                    result.rescued += 1
                    result.streams_added += 1
                    LOGGER.debug(
                        "[Orphans] Rescued %s for '%s' -> %s",
                        orphan.info_hash or orphan.display_name,
                        orphan.canonical_key,
                        primary_id,
                    )
                    continue

                # One record per magnet and thread; earlier passes may have left duplicates.
                key = (orphan.info_hash or orphan.magnet, orphan.source_url)
                kept = survivors.get(key)
                if kept is None:
                    survivors[key] = orphan
                else:
                    survivors[key] = replace(
                        kept,
                        attempts=max(kept.attempts, orphan.attempts),
                        logged_at=min(kept.logged_at, orphan.logged_at),
                    )

            retained = [replace(orphan, attempts=orphan.attempts + 1) for orphan in survivors.values()]
            self.store.replace_orphans(
                [orphan.ledger_id for orphan in orphans if orphan.ledger_id is not None],
                retained,
            )
            result.retained = len(retained)

        LOGGER.info(
            "[Orphans] Reconciled %s orphan(s): rescued=%s retained=%s (index=%s keys)",
            result.scanned,
            result.rescued,
            result.retained,
            len(index),
        )
        return result

    def _ensure_catalog_entry(self, primary_id: str, orphan: OrphanRecord) -> None:
        if self.store.get_catalog_entry(primary_id) is not None:
            return
        identity = self.store.get_identity(primary_id)
        if identity is not None:
            entry = CatalogEntry(
                id=primary_id,
                name=identity.name or orphan.canonical_key,
                poster=identity.poster,
                year=identity.year,
                secondary_id=identity.secondary_id,
            )
        else:
            # Hint-only id: placeholder row until the thread resolves normally.
            guessed = _guess(orphan.thread_title).get("title")
            entry = CatalogEntry(
                id=primary_id,
                name=guessed if isinstance(guessed, str) and guessed else orphan.canonical_key,
                year=extract_year(orphan.thread_title),
            )
        self.store.upsert_catalog(entry)

    def purge(self) -> int:
        removed = self.store.purge_orphans()
        LOGGER.warning("[Orphans] Purged %s orphan record(s).", removed)
        return removed


# ---------------------------------------------------------------------------
# Bounded task scheduler
# ---------------------------------------------------------------------------


class TaskScheduler:
    """Fixed executor slots fed from a bounded FIFO queue.

    Every task runs in a fresh asyncio.Task bound to one slot. Completion by
    result, error or cancellation frees the slot exactly once.
    """

    def __init__(
        self,
        handler: Callable[[Any], Awaitable[Any]],
        *,
        slots: int,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        name: str = "Scheduler",
    ):
        self.handler = handler
        self.name = name
        self.max_queue_size = max(1, int(max_queue_size))
        self.slots: List[Optional[asyncio.Task]] = [None] * max(1, int(slots))
        self._queue: Deque[Any] = deque()
        self._space_waiters: Deque[asyncio.Future] = deque()
        self._active = 0
        self._closed = False
        self._drained = asyncio.Event()
        self._drained.set()
        self.submitted = 0
        self.completed = 0
        self.failed = 0
        self.terminated = 0
        self.drain_notifications = 0

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def stats(self) -> Dict[str, int]:
        return {
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
            "terminated": self.terminated,
            "active": self._active,
            "queued": len(self._queue),
        }

    @property
    def closed(self) -> bool:
        return self._closed

    async def submit(self, task: Any) -> bool:
        while not self._closed and len(self._queue) >= self.max_queue_size:
            waiter = asyncio.get_running_loop().create_future()
            self._space_waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                if waiter in self._space_waiters:
                    self._space_waiters.remove(waiter)
                raise

        if self._closed:
            LOGGER.warning("[%s] Shut down; dropping %r", self.name, task)
            return False

        self._queue.append(task)
        self.submitted += 1
        self._drained.clear()
        self._dispatch()
        return True

    async def drain(self) -> None:
        await self._drained.wait()

    async def shutdown(self) -> None:
        self._closed = True
        self._queue.clear()
        running = [executor for executor in self.slots if executor is not None]
        for executor in running:
            executor.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        self._wake_submitters()

    def _dispatch(self) -> None:
        loop = asyncio.get_running_loop()
        while self._queue:
            try:
                slot = self.slots.index(None)
            except ValueError:
                break
            task = self._queue.popleft()
            self._active += 1
            executor = loop.create_task(self.handler(task), name=f"{self.name.lower()}-slot-{slot}")
            self.slots[slot] = executor
            executor.add_done_callback(functools.partial(self._on_executor_done, slot, task))
        self._wake_submitters()

    def _wake_submitters(self) -> None:
        while self._space_waiters and (self._closed or len(self._queue) < self.max_queue_size):
            waiter = self._space_waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    def _on_executor_done(self, slot: int, task: Any, executor: asyncio.Task) -> None:
        if self.slots[slot] is not executor:
            return
        self.slots[slot] = None
        self._active -= 1

        if executor.cancelled():
            self.terminated += 1
            LOGGER.warning("[%s] Executor in slot %s terminated before finishing %r", self.name, slot, task)
        else:
            exc = executor.exception()
            if exc is not None:
                self.failed += 1
                LOGGER.error(
                    "[%s] Task %r failed in slot %s: %s",
                    self.name,
                    task,
                    slot,
                    exc,
                    exc_info=(type(exc), exc, exc.__traceback__),
                )
            else:
                self.completed += 1

        if self._queue:
            self._dispatch()
        elif self._active == 0 and not self._drained.is_set():
            self._drained.set()
            self.drain_notifications += 1
            LOGGER.debug("[%s] Drained: %s", self.name, self.stats())


# ---------------------------------------------------------------------------
# Per-thread processing
# ---------------------------------------------------------------------------


class ThreadProcessor:
    def __init__(
        self,
        *,
        fetcher: ThreadFetcher,
        store: LocalStore,
        resolver: MetadataResolver,
        ledger: OrphanLedger,
        parser: TitleParser,
        fetch_timeout_seconds: float = 15,
    ):
        self.fetcher = fetcher
        self.store = store
        self.resolver = resolver
        self.ledger = ledger
        self.parser = parser
        self.fetch_timeout_seconds = fetch_timeout_seconds

    async def _fetch(self, url: str) -> ThreadDescriptor:
        try:
            fetched = await asyncio.wait_for(
                self.fetcher.fetch_thread(url),
                timeout=self.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise FetchError(f"timed out after {self.fetch_timeout_seconds}s") from exc
        except requests.RequestException as exc:
            raise FetchError(str(exc)) from exc
        if fetched is None:
            raise FetchError("not found")

        title = " ".join(str(fetched.title or "").split())
        if not title:
            raise ParseError("thread page has no title")
        magnets = list(dict.fromkeys(m.strip() for m in fetched.magnets if m and m.strip()))
        return ThreadDescriptor(
            url=url,
            title=title,
            poster_url=fetched.poster_url,
            magnets=magnets,
        )

    async def process(self, url: str) -> str:
        try:
            thread = await self._fetch(url)
        except FetchError as exc:
            LOGGER.warning("[Thread] Skipping %s: fetch failed (%s)", url, exc)
            self.store.touch_thread(url)
            return OUTCOME_SKIPPED
        except ParseError as exc:
            LOGGER.warning("[Thread] Skipping %s: %s", url, exc)
            self.store.touch_thread(url)
            return OUTCOME_SKIPPED

        if not thread.magnets:
            LOGGER.info("[Thread] No magnets on '%s' (%s)", thread.title, url)
            self._touch(thread)
            return OUTCOME_SKIPPED

        key = ""
        try:
            key = normalize_title(thread.title)
            if not key:
                raise TitleNormalizationFailure(thread.title)
            return await self._resolve_and_store(thread, key)
        except TitleNormalizationFailure:
            LOGGER.warning("[Thread] Could not normalize a title from '%s'", thread.title)
            self._park(thread, key, REASON_BAD_TITLE)
        except MetadataResolutionFailure as exc:
            LOGGER.warning(
                "[Thread] Could not resolve '%s' (%s). Logging %s magnet(s) as orphans.",
                key,
                exc.reason,
                len(thread.magnets),
            )
            self._park(thread, key, exc.reason)
        except Exception:
            LOGGER.exception("[Thread] Unexpected failure while processing %s", url)
            self._park(thread, key, REASON_UNKNOWN_ERROR)
        return OUTCOME_ORPHANED

    async def _resolve_and_store(self, thread: ThreadDescriptor, key: str) -> str:
        year = extract_year(thread.title)
        result = await self.resolver.resolve(key, year)
        if isinstance(result, ResolutionFailure):
            raise MetadataResolutionFailure(result.reason, result.detail)

        self.store.upsert_catalog(
            CatalogEntry(
                id=str(result.primary_id),
                name=result.name or thread.title,
                poster=result.poster or thread.poster_url,
                year=result.year or year,
                secondary_id=result.secondary_id,
            )
        )

        stored = 0
        for magnet in thread.magnets:
            try:
                stream = self.parser.parse_or_raise(magnet)
            except MagnetParseFailure as exc:
                LOGGER.info("[Thread] Unparseable magnet on '%s': %s", thread.title, exc)
                self.ledger.record(
                    magnet,
                    thread_title=thread.title,
                    canonical_key=key,
                    source_url=thread.url,
                    reason=MagnetParseFailure.reason,
                )
                continue
            self.store.upsert_stream(str(result.primary_id), stream)
            stored += 1

        self._touch(thread)
        LOGGER.info(
            "[Thread] '%s' -> %s: stored %s/%s stream(s)",
            result.name or key,
            result.primary_id,
            stored,
            len(thread.magnets),
        )
        return OUTCOME_STORED

    def _touch(self, thread: ThreadDescriptor) -> None:
        self.store.touch_thread(
            thread.url,
            title=thread.title,
            poster_url=thread.poster_url,
            magnets=thread.magnets,
        )

    def _park(self, thread: ThreadDescriptor, key: str, reason: str) -> None:
        for magnet in thread.magnets:
            self.ledger.record(
                magnet,
                thread_title=thread.title,
                canonical_key=key,
                source_url=thread.url,
                reason=reason,
            )


# ---------------------------------------------------------------------------
# Crawl orchestration
# ---------------------------------------------------------------------------


class IntervalSchedule:
    """Runs a job every ``interval_seconds``; a tick that overlaps a run is skipped."""

    def __init__(self, name: str, interval_seconds: float, job: Callable[[], Awaitable[Any]]):
        self.name = name
        self.interval_seconds = max(0.01, float(interval_seconds))
        self.job = job
        self.in_flight = False
        self.runs = 0
        self.skipped = 0
        self._current: Optional[asyncio.Task] = None

    def tick(self) -> bool:
        if self.in_flight:
            self.skipped += 1
            LOGGER.warning("[Schedule] %s is already in progress. Skipping this interval.", self.name)
            return False
        self.in_flight = True
        self._current = asyncio.get_running_loop().create_task(self._run_job(), name=f"schedule-{self.name}")
        return True

    async def _run_job(self) -> None:
        self.runs += 1
        try:
            LOGGER.info("[Schedule] Kicking off %s.", self.name)
            await self.job()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("[Schedule] %s failed.", self.name)
        finally:
            self.in_flight = False

    async def wait_current(self) -> None:
        if self._current is not None:
            await asyncio.gather(self._current, return_exceptions=True)

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
            self.tick()

        if self._current is not None and not self._current.done():
            self._current.cancel()
        await self.wait_current()


class CrawlOrchestrator:
    def __init__(
        self,
        *,
        config: Dict[str, Any],
        fetcher: ThreadFetcher,
        scheduler: TaskScheduler,
        store: LocalStore,
        ledger: OrphanLedger,
    ):
        crawler_cfg = config["crawler"]
        self.config = config
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.store = store
        self.ledger = ledger
        self.initial_pages = int(crawler_cfg["initial_pages"])
        self.page_delay_seconds = float(crawler_cfg["page_delay_seconds"])
        self.max_consecutive_page_errors = int(crawler_cfg["max_consecutive_page_errors"])
        self.thread_revisit_seconds = int(crawler_cfg["thread_revisit_hours"]) * 3600
        self.run_mode = str(config["runtime"].get("run_mode", "continuous"))
        self.schedules = [
            IntervalSchedule(
                "new content crawl",
                crawler_cfg["crawl_interval_seconds"],
                functools.partial(self.discover, self.initial_pages or None),
            ),
            IntervalSchedule(
                "old thread revisit",
                crawler_cfg["revisit_interval_seconds"],
                self.revisit,
            ),
            IntervalSchedule(
                "orphan reconciliation",
                config["reconcile"]["interval_seconds"],
                self.reconcile,
            ),
        ]

    async def discover(self, max_pages: Optional[int] = None) -> int:
        LOGGER.info("[Crawler] Discovery starting (max_pages=%s).", max_pages or "all")
        seen: Set[str] = set()
        page = 0
        consecutive_errors = 0

        while max_pages is None or page < max_pages:
            page += 1
            try:
                links = await self.fetcher.fetch_listing(page)
            except Exception as exc:
                consecutive_errors += 1
                LOGGER.error("[Crawler] Failed to fetch listing page %s: %s", page, exc)
                if consecutive_errors >= self.max_consecutive_page_errors:
                    LOGGER.error(
                        "[Crawler] %s consecutive listing failures. Ending discovery at page %s.",
                        consecutive_errors,
                        page,
                    )
                    break
                continue
            consecutive_errors = 0

            if links is None:
                LOGGER.info("[Crawler] Reached the end of pagination at page %s.", page)
                break

            new_links = [link for link in dict.fromkeys(links) if link not in seen]
            seen.update(new_links)
            LOGGER.info("[Crawler] Page %s: %s thread(s), %s new.", page, len(links), len(new_links))
            for link in new_links:
                await self.scheduler.submit(link)

            if self.page_delay_seconds > 0:
                await asyncio.sleep(self.page_delay_seconds)

        LOGGER.info(
            "[Crawler] Discovery queued %s thread(s). Waiting for workers to finish...",
            len(seen),
        )
        await self.scheduler.drain()
        LOGGER.info("[Crawler] Discovery finished: %s", self.scheduler.stats())
        return len(seen)

    async def revisit(self) -> int:
        cutoff = now_epoch() - self.thread_revisit_seconds
        stale = self.store.stale_threads(cutoff)
        if not stale:
            LOGGER.info("[Crawler] No old threads require revisiting.")
            return 0

        LOGGER.info("[Crawler] Revisiting %s old thread(s).", len(stale))
        for url in stale:
            await self.scheduler.submit(url)
        await self.scheduler.drain()
        LOGGER.info("[Crawler] Old thread revisit complete.")
        return len(stale)

    async def reconcile(self) -> ReconcileResult:
        return self.ledger.reconcile()

    async def run(self, stop_event: asyncio.Event) -> None:
        LOGGER.info("[Crawler] Initial crawl for %s page(s).", self.initial_pages or "all")
        initial = asyncio.create_task(self.discover(self.initial_pages or None))
        stop_waiter = asyncio.create_task(stop_event.wait())
        await asyncio.wait({initial, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)

        if not initial.done():
            initial.cancel()
            await asyncio.gather(initial, return_exceptions=True)
            stop_waiter.cancel()
            await self.scheduler.shutdown()
            return
        stop_waiter.cancel()
        if initial.exception() is not None:
            LOGGER.error("[Crawler] Initial crawl failed: %s", initial.exception())

        if self.run_mode == "once":
            await self.reconcile()
            LOGGER.info("[Crawler] run_mode=once: stopping after the initial pass.")
            return

        try:
            await asyncio.gather(*(schedule.run(stop_event) for schedule in self.schedules))
        finally:
            await self.scheduler.shutdown()


def select_streams(
    streams: Sequence[StreamDescriptor],
    season: Optional[int] = None,
    episode: Optional[int] = None,
) -> List[StreamDescriptor]:
    """Order stored streams for a request, best match first.

    Exact episode, then an episode pack containing it, then a season pack,
    then complete-series packs. Higher resolutions first within a group.
    """

    def rank(stream: StreamDescriptor) -> Optional[int]:
        if season is None:
            return 0
        if stream.season is None and not stream.episodes:
            return 3
        if stream.season != season:
            return None
        if not stream.episodes:
            return 2
        if episode is None:
            return None
        if stream.episodes == (episode,):
            return 0
        if episode in stream.episodes:
            return 1
        return None

    def resolution_value(stream: StreamDescriptor) -> int:
        match = re.search(r"\d{3,4}", stream.resolution)
        return int(match.group(0)) if match else 0

    ranked = [(rank(stream), stream) for stream in streams]
    selected = [(position, stream) for position, stream in ranked if position is not None]
    selected.sort(key=lambda item: (item[0], -resolution_value(item[1])))
    return [stream for _, stream in selected]


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


def load_config(path: Path, *, require_collaborators: bool = True) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found at {path}. Create one (for example from config.example.json)."
        )

    with path.open("r", encoding="utf-8") as handle:
        loaded = json.load(handle)

    return validate_config(merge_dict(DEFAULT_CONFIG, loaded), require_collaborators=require_collaborators)


def validate_config(config: Dict[str, Any], *, require_collaborators: bool = True) -> Dict[str, Any]:
    runtime = config["runtime"]
    crawler = config["crawler"]
    scheduler = config["scheduler"]
    resolver = config["resolver"]

    runtime["log_file_path"] = str(runtime.get("log_file_path", "")).strip() or "logs/magnet_indexer.log"
    runtime["log_file_max_bytes"] = max(1024, int(runtime.get("log_file_max_bytes", 10485760)))
    runtime["log_file_backup_count"] = max(0, int(runtime.get("log_file_backup_count", 5)))
    runtime["purge_orphans_on_start"] = bool(runtime.get("purge_orphans_on_start", False))

    run_mode = str(runtime.get("run_mode", "continuous")).strip().lower()
    if run_mode not in SUPPORTED_RUN_MODES:
        raise ValueError(
            "Invalid runtime.run_mode. Expected one of: " + ", ".join(sorted(SUPPORTED_RUN_MODES))
        )
    runtime["run_mode"] = run_mode

    crawler["initial_pages"] = max(0, int(crawler["initial_pages"]))
    crawler["page_delay_seconds"] = max(0.0, float(crawler["page_delay_seconds"]))
    crawler["max_consecutive_page_errors"] = max(1, int(crawler["max_consecutive_page_errors"]))
    crawler["fetch_timeout_seconds"] = max(1.0, float(crawler["fetch_timeout_seconds"]))
    crawler["crawl_interval_seconds"] = max(10, int(crawler["crawl_interval_seconds"]))
    crawler["revisit_interval_seconds"] = max(10, int(crawler["revisit_interval_seconds"]))
    crawler["thread_revisit_hours"] = max(1, int(crawler["thread_revisit_hours"]))

    scheduler["max_concurrency"] = max(1, int(scheduler["max_concurrency"]))
    scheduler["max_queue_size"] = max(1, int(scheduler["max_queue_size"]))

    resolver["cache_ttl_days"] = max(1, int(resolver["cache_ttl_days"]))
    resolver["max_attempts"] = max(1, int(resolver["max_attempts"]))
    resolver["backoff_base_seconds"] = max(0.0, float(resolver["backoff_base_seconds"]))
    resolver["backoff_max_seconds"] = max(0.0, float(resolver["backoff_max_seconds"]))
    resolver["call_timeout_seconds"] = max(1.0, float(resolver["call_timeout_seconds"]))

    raw_hints = resolver.get("manual_hints") or {}
    if not isinstance(raw_hints, dict):
        raise ValueError("resolver.manual_hints must be an object of title -> id")
    hints: Dict[str, str] = {}
    for title, hint_id in raw_hints.items():
        key = normalize_title(str(title))
        if not key or not str(hint_id).strip():
            raise ValueError(f"resolver.manual_hints entry {title!r} is empty after normalization")
        hints[key] = str(hint_id).strip()
    resolver["manual_hints"] = hints

    config["reconcile"]["interval_seconds"] = max(10, int(config["reconcile"]["interval_seconds"]))

    if require_collaborators:
        missing = []
        for name in COLLABORATOR_NAMES:
            value = str(config["collaborators"].get(name, "")).strip()
            module_name, _, attr = value.partition(":")
            if not module_name or not attr:
                missing.append(f"collaborators.{name}")
        if missing:
            raise ValueError(
                "Collaborator factories must be given as 'module:callable': " + ", ".join(missing)
            )

    return config


def load_collaborator(config: Dict[str, Any], name: str) -> Any:
    path = str(config["collaborators"][name]).strip()
    module_name, _, attr = path.partition(":")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    LOGGER.debug("Loaded %s from %s", name, path)
    return factory(config)


def configure_logging(config: Dict[str, Any]) -> Path:
    runtime_cfg = config.get("runtime", {})
    level_name = runtime_cfg.get("log_level", "INFO")
    level = getattr(logging, str(level_name).upper(), logging.INFO)

    log_path = Path(str(runtime_cfg.get("log_file_path", "logs/magnet_indexer.log"))).expanduser()
    if not log_path.is_absolute():
        log_path = (Path.cwd() / log_path).resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=int(runtime_cfg.get("log_file_max_bytes", 10485760)),
        backupCount=int(runtime_cfg.get("log_file_backup_count", 5)),
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    logging.captureWarnings(True)

    # Keep third-party debug noise out of terminal output.
    for noisy in ("urllib3", "requests", "asyncio", "rebulk", "guessit", "py.warnings"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return log_path


def open_store(config: Dict[str, Any]) -> LocalStore:
    db_path = Path(config["runtime"]["database_path"]).expanduser().resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return LocalStore(db_path)


def build_orchestrator(
    config: Dict[str, Any],
    *,
    store: LocalStore,
    fetcher: ThreadFetcher,
    primary: PrimaryProvider,
    secondary: SecondaryProvider,
) -> CrawlOrchestrator:
    resolver_cfg = config["resolver"]
    hints = resolver_cfg["manual_hints"]
    parser = TitleParser()
    ledger = OrphanLedger(store=store, parser=parser, manual_hints=hints)
    resolver = MetadataResolver(
        store=store,
        primary=primary,
        secondary=secondary,
        manual_hints=hints,
        cache_ttl_seconds=int(resolver_cfg["cache_ttl_days"]) * 86400,
        retry_policy=RetryPolicy(
            max_attempts=int(resolver_cfg["max_attempts"]),
            base_delay_seconds=float(resolver_cfg["backoff_base_seconds"]),
            max_delay_seconds=float(resolver_cfg["backoff_max_seconds"]),
            call_timeout_seconds=float(resolver_cfg["call_timeout_seconds"]),
        ),
    )
    processor = ThreadProcessor(
        fetcher=fetcher,
        store=store,
        resolver=resolver,
        ledger=ledger,
        parser=parser,
        fetch_timeout_seconds=float(config["crawler"]["fetch_timeout_seconds"]),
    )
    scheduler = TaskScheduler(
        processor.process,
        slots=int(config["scheduler"]["max_concurrency"]),
        max_queue_size=int(config["scheduler"]["max_queue_size"]),
    )
    return CrawlOrchestrator(
        config=config,
        fetcher=fetcher,
        scheduler=scheduler,
        store=store,
        ledger=ledger,
    )


async def run_app(config: Dict[str, Any]) -> None:
    store = open_store(config)
    try:
        orchestrator = build_orchestrator(
            config,
            store=store,
            fetcher=load_collaborator(config, "fetcher"),
            primary=load_collaborator(config, "primary_provider"),
            secondary=load_collaborator(config, "secondary_provider"),
        )
        if config["runtime"]["purge_orphans_on_start"]:
            orchestrator.ledger.purge()

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def _signal_stop() -> None:
            if not stop_event.is_set():
                LOGGER.info("Stop signal received. Beginning graceful shutdown...")
                stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_stop)
            except NotImplementedError:
                # Windows event loops may not support this.
                pass

        LOGGER.info("Database: %s", store.path)
        LOGGER.info(
            "Starting: run_mode=%s, workers=%s, queue=%s, initial_pages=%s, crawl_every=%ss, revisit_every=%ss, reconcile_every=%ss",
            config["runtime"]["run_mode"],
            config["scheduler"]["max_concurrency"],
            config["scheduler"]["max_queue_size"],
            config["crawler"]["initial_pages"] or "all",
            config["crawler"]["crawl_interval_seconds"],
            config["crawler"]["revisit_interval_seconds"],
            config["reconcile"]["interval_seconds"],
        )
        await orchestrator.run(stop_event)
        LOGGER.info("Shutdown complete.")
    finally:
        store.close()


def run_reconcile(config: Dict[str, Any]) -> ReconcileResult:
    store = open_store(config)
    try:
        ledger = OrphanLedger(
            store=store,
            parser=TitleParser(),
            manual_hints=config["resolver"]["manual_hints"],
        )
        return ledger.reconcile()
    finally:
        store.close()


def render_status(store: LocalStore, console: Optional[Console] = None) -> None:
    console = console or Console()

    totals = Table(title="Index")
    totals.add_column("Table")
    totals.add_column("Rows", justify="right")
    for name, value in store.counts().items():
        totals.add_row(name.replace("_", " "), f"{value:,}")
    console.print(totals)

    reasons = store.orphan_reason_counts()
    orphans = Table(title="Orphans by reason")
    orphans.add_column("Reason")
    orphans.add_column("Count", justify="right")
    if not reasons:
        orphans.add_row("-", "0")
    for reason, count in reasons.items():
        orphans.add_row(reason, f"{count:,}")
    console.print(orphans)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Forum magnet indexer: crawl, resolve and persist stream records",
    )
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to config JSON file (default: config.json)",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=("run", "reconcile", "status"),
        help="run the daemon (default), run one orphan reconciliation pass, or print index status",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    config_path = Path(args.config).expanduser().resolve()

    try:
        config = load_config(config_path, require_collaborators=args.command == "run")
    except Exception as exc:
        print(f"[FATAL] Could not load config: {exc}")
        return 1

    if args.command == "status":
        store = open_store(config)
        try:
            render_status(store)
        finally:
            store.close()
        return 0

    log_path = configure_logging(config)

    try:
        if args.command == "reconcile":
            run_reconcile(config)
        else:
            asyncio.run(run_app(config))
        LOGGER.info("Log file: %s", log_path)
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user")
        LOGGER.info("Log file: %s", log_path)
        return 0
    except Exception:
        LOGGER.exception("Fatal runtime error")
        LOGGER.info("Log file: %s", log_path)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
