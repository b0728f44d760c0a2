from datetime import datetime, timezone

import pytest

from newbiz.models import (
    AgeEstimate,
    BusinessRecord,
    ConfidenceLevel,
    Region,
    RegionType,
    ReviewSpike,
    ScoringIndicators,
    SessionType,
)
from newbiz.store import InMemoryBusinessStore, SqliteBusinessStore

REGION = Region(
    id=1,
    name="Gianyar - Ubud & Sekitar",
    type=RegionType.TOP_LEVEL,
    center_lat=-8.5,
    center_lng=115.266667,
    search_radius_m=8000,
    priority_tier=2,
)

FIRST = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)
LATER = datetime(2026, 2, 5, 8, 0, tzinfo=timezone.utc)


def make_record(place_id="p1", lat=-8.51, lng=115.26, seen=FIRST, count=1, **kwargs):
    indicators = ScoringIndicators(
        recently_opened=True,
        business_age_estimate=AgeEstimate.VERY_NEW,
        confidence_level=ConfidenceLevel.HIGH,
        confidence_score=78,
        signals=["low_review_count", "newly_discovered"],
        review_spike_detail=ReviewSpike(10, 20, 100.0, 6),
    )
    return BusinessRecord(
        external_place_id=place_id,
        name=kwargs.pop("name", "Ubud Yoga Shala"),
        category="Lainnya",
        address="Jl. Hanoman, Ubud, Kabupaten Gianyar, Bali",
        area="Kabupaten Gianyar",
        lat=lat,
        lng=lng,
        rating=4.8,
        review_count=12,
        business_status="OPERATIONAL",
        first_seen=seen,
        last_fetched=seen,
        scraped_count=count,
        indicators=indicators,
        last_update_type=SessionType.INITIAL,
        **kwargs,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryBusinessStore()
        return
    sqlite_store = SqliteBusinessStore(str(tmp_path / "businesses.db"))
    yield sqlite_store
    sqlite_store.close()


def test_upsert_and_find(store):
    store.upsert(make_record())
    found = store.find_by_external_id("p1")
    assert found is not None
    assert found.name == "Ubud Yoga Shala"
    assert found.indicators.confidence_score == 78
    assert found.indicators.business_age_estimate is AgeEstimate.VERY_NEW
    assert found.indicators.review_spike_detail.growth_percent == 100.0
    assert found.last_update_type is SessionType.INITIAL
    assert store.find_by_external_id("missing") is None


def test_upsert_keeps_first_seen_and_scraped_count(store):
    store.upsert(make_record(seen=FIRST, count=3))
    store.upsert(make_record(seen=LATER, count=1, name="Ubud Yoga Shala & Cafe"))
    found = store.find_by_external_id("p1")
    assert found.name == "Ubud Yoga Shala & Cafe"
    assert found.first_seen == FIRST
    assert found.last_fetched == LATER
    assert found.scraped_count == 3


def test_region_listing_uses_geofence(store):
    store.upsert(make_record("inside", lat=-8.51, lng=115.26))
    store.upsert(make_record("edge", lat=-8.5 - 0.08, lng=115.266667))
    store.upsert(make_record("far", lat=-8.116667, lng=115.083333))
    store.upsert(make_record("nowhere", lat=None, lng=None))

    ids = store.batch_list_external_ids_for_region(REGION)
    assert ids == {"inside", "edge"}
    assert {r.external_place_id for r in store.list_records_for_region(REGION)} == ids


def test_sqlite_store_persists_across_connections(tmp_path):
    path = str(tmp_path / "businesses.db")
    first = SqliteBusinessStore(path)
    first.upsert(make_record())
    first.close()

    second = SqliteBusinessStore(path)
    found = second.find_by_external_id("p1")
    assert found.indicators == make_record().indicators
    second.close()
