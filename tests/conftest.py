from __future__ import annotations

import copy
from typing import Dict, List, Optional, Union
from urllib.parse import quote_plus

import pytest

import magnet_indexer as mi


def make_magnet(name: str, info_hash: str = "a" * 40) -> str:
    return f"magnet:?xt=urn:btih:{info_hash}&dn={quote_plus(name)}&tr=udp%3A%2F%2Ftracker.example%3A80"


class FakeFetcher:
    def __init__(
        self,
        listings: Optional[Dict[int, Union[List[str], None, Exception]]] = None,
        threads: Optional[Dict[str, Union[mi.FetchedThread, None, Exception]]] = None,
    ):
        self.listings = listings or {}
        self.threads = threads or {}
        self.listing_calls: List[int] = []
        self.thread_calls: List[str] = []

    async def fetch_listing(self, page: int):
        self.listing_calls.append(page)
        value = self.listings.get(page)
        if isinstance(value, Exception):
            raise value
        return value

    async def fetch_thread(self, url: str):
        self.thread_calls.append(url)
        value = self.threads.get(url)
        if isinstance(value, Exception):
            raise value
        return value


class FakePrimary:
    """Title -> candidate ids, id -> details. Errors may be queued per method."""

    def __init__(
        self,
        search: Optional[Dict[str, List[str]]] = None,
        details: Optional[Dict[str, mi.ProviderDetails]] = None,
        errors: Optional[List[Exception]] = None,
        default: Optional[List[str]] = None,
    ):
        self.search = search or {}
        self.default = list(default or [])
        self.details = details or {}
        self.errors = list(errors or [])
        self.search_calls: List[tuple] = []
        self.detail_calls: List[str] = []

    @property
    def calls(self) -> int:
        return len(self.search_calls) + len(self.detail_calls)

    async def search_by_title(self, title: str, year: Optional[str] = None) -> List[str]:
        self.search_calls.append((title, year))
        if self.errors:
            raise self.errors.pop(0)
        return list(self.search.get(title, self.default))

    async def get_details(self, provider_id: str) -> Optional[mi.ProviderDetails]:
        self.detail_calls.append(provider_id)
        return self.details.get(provider_id)


class FakeSecondary:
    def __init__(self, matches: Optional[Dict[str, mi.SecondaryMatch]] = None, error: Optional[Exception] = None):
        self.matches = matches or {}
        self.error = error
        self.calls: List[str] = []

    async def search_by_title(self, title: str) -> Optional[mi.SecondaryMatch]:
        self.calls.append(title)
        if self.error is not None:
            raise self.error
        return self.matches.get(title)


@pytest.fixture
def store(tmp_path):
    local = mi.LocalStore(tmp_path / "index.sqlite3")
    yield local
    local.close()


@pytest.fixture
def fast_retry():
    return mi.RetryPolicy(max_attempts=3, base_delay_seconds=0, max_delay_seconds=0, call_timeout_seconds=2)


@pytest.fixture
def config():
    cfg = copy.deepcopy(mi.DEFAULT_CONFIG)
    cfg["crawler"]["page_delay_seconds"] = 0
    cfg["crawler"]["fetch_timeout_seconds"] = 2
    cfg["resolver"]["backoff_base_seconds"] = 0
    cfg["resolver"]["backoff_max_seconds"] = 0
    cfg["resolver"]["call_timeout_seconds"] = 2
    return mi.validate_config(cfg, require_collaborators=False)
