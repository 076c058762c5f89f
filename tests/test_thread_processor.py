from __future__ import annotations

import asyncio

import pytest
import requests

import magnet_indexer as mi
from conftest import FakeFetcher, FakePrimary, FakeSecondary, make_magnet

THREAD_URL = "https://forum.example/t/example-show-s01"
THREAD_TITLE = "Example Show S01 (2023) [1080p][Tamil+Eng]"
MAGNETS = [
    make_magnet("Example.Show.S01E01.1080p.[Tam+Eng].mkv", "1" * 40),
    make_magnet("Example.Show.S01E02-E05.1080p.[Tam+Eng]", "2" * 40),
    make_magnet("Example Show S01 Season Pack 1080p", "3" * 40),
]
DETAILS = {
    "100": mi.ProviderDetails(
        primary_id="100",
        secondary_id="tt0100",
        name="Example Show",
        poster="https://img.example/100.jpg",
        date_info="2023-01-15",
    )
}


def build_processor(store, fetcher, primary, secondary=None, resolver=None):
    parser = mi.TitleParser()
    ledger = mi.OrphanLedger(store=store, parser=parser)
    resolver = resolver or mi.MetadataResolver(
        store=store,
        primary=primary,
        secondary=secondary or FakeSecondary(),
        cache_ttl_seconds=3600,
        retry_policy=mi.RetryPolicy(max_attempts=1, base_delay_seconds=0, max_delay_seconds=0, call_timeout_seconds=2),
    )
    return mi.ThreadProcessor(
        fetcher=fetcher,
        store=store,
        resolver=resolver,
        ledger=ledger,
        parser=parser,
        fetch_timeout_seconds=1,
    )


def example_fetcher(magnets=MAGNETS, title=THREAD_TITLE):
    return FakeFetcher(
        threads={THREAD_URL: mi.FetchedThread(title=title, poster_url="https://forum.example/p.jpg", magnets=list(magnets))}
    )


def test_resolved_thread_stores_one_stream_per_magnet(store):
    processor = build_processor(store, example_fetcher(), FakePrimary(default=["100"], details=DETAILS))

    outcome = asyncio.run(processor.process(THREAD_URL))

    assert outcome == mi.OUTCOME_STORED
    streams = store.list_streams("100")
    assert sorted(s.episodes for s in streams) == [(), (1,), (2, 3, 4, 5)]
    assert all(s.season == 1 for s in streams)
    assert all(s.resolution == "1080p" for s in streams)
    assert store.load_orphans() == []

    [entry] = store.list_catalog()
    assert (entry.id, entry.name, entry.year, entry.secondary_id) == ("100", "Example Show", "2023", "tt0100")
    assert store.get_thread(THREAD_URL).last_visited_at is not None

    best_for_e3 = mi.select_streams(streams, season=1, episode=3)
    assert [s.episodes for s in best_for_e3] == [(2, 3, 4, 5), ()]


def test_reprocessing_does_not_duplicate_streams(store):
    processor = build_processor(store, example_fetcher(), FakePrimary(default=["100"], details=DETAILS))

    asyncio.run(processor.process(THREAD_URL))
    asyncio.run(processor.process(THREAD_URL))

    assert len(store.list_streams("100")) == 3


def test_unresolvable_thread_parks_every_magnet(store):
    processor = build_processor(store, example_fetcher(), FakePrimary())

    outcome = asyncio.run(processor.process(THREAD_URL))

    assert outcome == mi.OUTCOME_ORPHANED
    orphans = store.load_orphans()
    assert len(orphans) == 3
    assert {o.reason for o in orphans} == {mi.REASON_NO_METADATA_MATCH}
    assert {o.attempts for o in orphans} == {1}
    assert {o.canonical_key for o in orphans} == {mi.normalize_title(THREAD_TITLE)}
    assert store.get_thread(THREAD_URL) is None
    assert store.list_catalog() == []


def test_orphans_are_rescued_once_the_key_is_cached(store):
    processor = build_processor(store, example_fetcher(), FakePrimary())
    asyncio.run(processor.process(THREAD_URL))

    key = mi.normalize_title(THREAD_TITLE)
    store.cache_identity(key, None, mi.ShowIdentity("100", "tt0100", "Example Show"), 3600)
    result = processor.ledger.reconcile()

    assert result.rescued == 3
    assert len(store.list_streams("100")) == 3


def test_unparseable_magnet_is_parked_alone(store):
    magnets = MAGNETS[:2] + ["magnet:?dn=Example+Show+S01E07"]
    processor = build_processor(store, example_fetcher(magnets), FakePrimary(default=["100"], details=DETAILS))

    outcome = asyncio.run(processor.process(THREAD_URL))

    assert outcome == mi.OUTCOME_STORED
    assert len(store.list_streams("100")) == 2
    [orphan] = store.load_orphans()
    assert orphan.reason == mi.REASON_MAGNET_PARSE_FAILED
    assert orphan.canonical_key == mi.normalize_title(THREAD_TITLE)


def test_title_without_show_name_is_bad_title(store):
    processor = build_processor(store, example_fetcher(title="[1080p] (2023)"), FakePrimary())

    assert asyncio.run(processor.process(THREAD_URL)) == mi.OUTCOME_ORPHANED
    orphans = store.load_orphans()
    assert len(orphans) == 3
    assert {o.reason for o in orphans} == {mi.REASON_BAD_TITLE}


def test_unexpected_error_parks_with_unknown_reason(store):
    class BrokenResolver:
        async def resolve(self, key, year=None):
            raise RuntimeError("resolver exploded")

    processor = build_processor(store, example_fetcher(), FakePrimary(), resolver=BrokenResolver())

    assert asyncio.run(processor.process(THREAD_URL)) == mi.OUTCOME_ORPHANED
    assert {o.reason for o in store.load_orphans()} == {mi.REASON_UNKNOWN_ERROR}


@pytest.mark.parametrize(
    "result",
    [None, requests.ConnectionError("connection refused")],
)
def test_fetch_failure_skips_and_advances_timestamp(store, result):
    fetcher = FakeFetcher(threads={THREAD_URL: result})
    processor = build_processor(store, fetcher, FakePrimary())

    assert asyncio.run(processor.process(THREAD_URL)) == mi.OUTCOME_SKIPPED
    assert store.get_thread(THREAD_URL).last_visited_at is not None
    assert store.load_orphans() == []


def test_slow_fetch_times_out(store):
    class SlowFetcher(FakeFetcher):
        async def fetch_thread(self, url):
            await asyncio.sleep(5)

    processor = build_processor(store, SlowFetcher(), FakePrimary())

    assert asyncio.run(processor.process(THREAD_URL)) == mi.OUTCOME_SKIPPED
    assert store.get_thread(THREAD_URL) is not None


def test_thread_without_magnets_only_updates_timestamp(store):
    processor = build_processor(store, example_fetcher(magnets=[]), FakePrimary(default=["100"], details=DETAILS))

    assert asyncio.run(processor.process(THREAD_URL)) == mi.OUTCOME_SKIPPED
    thread = store.get_thread(THREAD_URL)
    assert thread.title == THREAD_TITLE
    assert store.list_catalog() == []


def test_reprocessing_a_failing_thread_keeps_one_orphan_per_magnet(store):
    processor = build_processor(store, example_fetcher(), FakePrimary())

    asyncio.run(processor.process(THREAD_URL))
    asyncio.run(processor.process(THREAD_URL))
    processor.ledger.reconcile()
    asyncio.run(processor.process(THREAD_URL))
    processor.ledger.reconcile()

    orphans = store.load_orphans()
    assert sorted(o.info_hash for o in orphans) == ["1" * 40, "2" * 40, "3" * 40]
    assert {o.attempts for o in orphans} == {3}
