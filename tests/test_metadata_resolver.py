from __future__ import annotations

import asyncio

import pytest
import requests

import magnet_indexer as mi
from conftest import FakePrimary, FakeSecondary


def http_error(status: int) -> requests.HTTPError:
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"{status} error", response=response)


def make_resolver(store, primary, secondary, retry, hints=None):
    return mi.MetadataResolver(
        store=store,
        primary=primary,
        secondary=secondary,
        manual_hints=hints,
        cache_ttl_seconds=3600,
        retry_policy=retry,
    )


SHOW = mi.ProviderDetails(
    primary_id="100",
    secondary_id="tt0100",
    name="Example Show",
    poster="https://img.example/100.jpg",
    date_info="2023-04-01",
)


def test_cached_identity_makes_no_provider_calls(store, fast_retry):
    store.cache_identity("example show", "2023", mi.ShowIdentity("100", "tt0100", "Example Show"), 3600)
    primary, secondary = FakePrimary(), FakeSecondary()
    resolver = make_resolver(store, primary, secondary, fast_retry)

    identity = asyncio.run(resolver.resolve("example show", "2023"))

    assert identity.primary_id == "100"
    assert identity.secondary_id == "tt0100"
    assert primary.calls == 0
    assert secondary.calls == []


def test_cache_falls_back_to_key_without_year(store, fast_retry):
    store.cache_identity("example show", "2023", mi.ShowIdentity("100", "tt0100", "Example Show"), 3600)
    primary = FakePrimary()
    resolver = make_resolver(store, primary, FakeSecondary(), fast_retry)

    identity = asyncio.run(resolver.resolve("example show", "2024"))

    assert identity.primary_id == "100"
    assert primary.calls == 0


def test_primary_with_year_then_cached(store, fast_retry):
    primary = FakePrimary(search={"example show": ["100"]}, details={"100": SHOW})
    resolver = make_resolver(store, primary, FakeSecondary(), fast_retry)

    first = asyncio.run(resolver.resolve("example show", "2023"))
    second = asyncio.run(resolver.resolve("example show", "2023"))

    assert first.primary_id == second.primary_id == "100"
    assert first.year == "2023"
    assert primary.search_calls == [("example show", "2023")]
    assert primary.detail_calls == ["100"]
    assert resolver.stage_hits["primary+year"] == 1
    assert resolver.stage_hits["cache"] == 1


def test_title_only_search_when_year_unknown(store, fast_retry):
    primary = FakePrimary(search={"example show": ["100"]}, details={"100": SHOW})
    resolver = make_resolver(store, primary, FakeSecondary(), fast_retry)

    identity = asyncio.run(resolver.resolve("example show"))

    assert identity.primary_id == "100"
    assert primary.search_calls == [("example show", None)]


def test_secondary_match_is_completed_with_details(store, fast_retry):
    primary = FakePrimary(
        details={"tt0900": mi.ProviderDetails("900", "tt0900", "Other Show", None, "2019-01-01")},
    )
    secondary = FakeSecondary(matches={"other show": mi.SecondaryMatch("tt0900", name="Other Show", year="2019")})
    resolver = make_resolver(store, primary, secondary, fast_retry)

    identity = asyncio.run(resolver.resolve("other show", "2019"))

    assert identity.primary_id == "900"
    assert identity.secondary_id == "tt0900"
    assert primary.detail_calls == ["tt0900"]
    assert store.get_cached_identity("other show").primary_id == "900"


def test_identity_without_both_ids_is_not_accepted(store, fast_retry):
    partial = mi.ProviderDetails("100", None, "Example Show")
    primary = FakePrimary(search={"example show": ["100"]}, details={"100": partial})
    resolver = make_resolver(store, primary, FakeSecondary(), fast_retry)

    result = asyncio.run(resolver.resolve("example show", "2023"))

    assert isinstance(result, mi.ResolutionFailure)
    assert result.reason == mi.REASON_NO_METADATA_MATCH
    assert store.get_cached_identity("example show") is None


def test_manual_hint_wins_over_search(store, fast_retry):
    primary = FakePrimary(search={"example show": ["999"]}, details={"555": mi.ProviderDetails("555", "tt0555", "Example Show")})
    resolver = make_resolver(store, primary, FakeSecondary(), fast_retry, hints={"example show": "555"})

    identity = asyncio.run(resolver.resolve("example show", "2023"))

    assert identity.primary_id == "555"
    assert primary.search_calls == []
    assert resolver.stage_hits["hint"] == 1


def test_timeouts_yield_api_timeout(store, fast_retry):
    primary = FakePrimary(errors=[requests.Timeout("slow")] * 6)
    resolver = make_resolver(store, primary, FakeSecondary(), fast_retry)

    result = asyncio.run(resolver.resolve("example show", "2023"))

    assert result.reason == mi.REASON_API_TIMEOUT
    # Three attempts for each primary stage.
    assert len(primary.search_calls) == 6


def test_client_errors_are_not_retried(store, fast_retry):
    secondary = FakeSecondary(error=http_error(404))
    resolver = make_resolver(store, FakePrimary(), secondary, fast_retry)

    result = asyncio.run(resolver.resolve("example show"))

    assert result.reason == mi.REASON_PROVIDER_ERROR
    assert len(secondary.calls) == 1


def test_server_errors_are_retried(store, fast_retry):
    primary = FakePrimary(search={"example show": ["100"]}, details={"100": SHOW}, errors=[http_error(503)])
    resolver = make_resolver(store, primary, FakeSecondary(), fast_retry)

    identity = asyncio.run(resolver.resolve("example show", "2023"))

    assert identity.primary_id == "100"
    assert len(primary.search_calls) == 2


def test_empty_key_is_bad_title(store, fast_retry):
    result = asyncio.run(make_resolver(store, FakePrimary(), FakeSecondary(), fast_retry).resolve(""))
    assert result.reason == mi.REASON_BAD_TITLE


def test_call_with_retries_enforces_per_call_timeout():
    calls = []

    async def slow():
        calls.append(1)
        await asyncio.sleep(5)

    policy = mi.RetryPolicy(max_attempts=2, base_delay_seconds=0, max_delay_seconds=0, call_timeout_seconds=0.05)

    with pytest.raises(mi.ProviderTimeout):
        asyncio.run(mi.call_with_retries(slow, policy=policy, label="slow call"))
    assert len(calls) == 2


def test_retry_classification():
    assert mi.is_retryable_error(requests.ConnectionError("refused"))
    assert mi.is_retryable_error(http_error(502))
    assert not mi.is_retryable_error(http_error(401))
    assert mi.is_retryable_error(mi.ProviderError("busy", retryable=True))
    assert not mi.is_retryable_error(ValueError("bad payload"))


def test_backoff_is_capped():
    policy = mi.RetryPolicy(base_delay_seconds=1, max_delay_seconds=4)
    assert 1 <= policy.delay_for(0) <= 2
    assert policy.delay_for(5) == 4
