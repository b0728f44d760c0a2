import copy
import threading
from datetime import datetime, timedelta, timezone

import pytest

from newbiz.directory import (
    CategoryNotFoundError,
    RegionNotFoundError,
    StaticCategoryDirectory,
    StaticRegionDirectory,
)
from newbiz.http import CostTracker, PlacesApiError, RequestMetrics, TransientApiError, price_for
from newbiz.models import (
    AgeEstimate,
    BusinessRecord,
    Category,
    Region,
    RegionType,
    ScoringIndicators,
    SessionStatus,
    SessionType,
)
from newbiz.pipeline import BudgetConfig, Orchestrator, RegionBusyError
from newbiz.places_client import CallResult, PaginatedResult
from newbiz.store import InMemoryBusinessStore

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)
CENTER = (-8.70, 115.17)
CAFE = Category(label="Café", external_type_tags=("cafe", "coffee_shop"), keyword_synonyms=("kopi",))


def ts(days_ago):
    return int((NOW - timedelta(days=days_ago)).timestamp())


def make_region(radius_m=1000):
    return Region(
        id=1,
        name="Testing - Pantai",
        type=RegionType.TOP_LEVEL,
        center_lat=CENTER[0],
        center_lng=CENTER[1],
        search_radius_m=radius_m,
        priority_tier=1,
    )


def place(place_id, name, reviews, rating=None, status="OPERATIONAL", offset=0.0):
    raw = {
        "place_id": place_id,
        "name": name,
        "user_ratings_total": reviews,
        "business_status": status,
        "geometry": {"location": {"lat": CENTER[0] + offset, "lng": CENTER[1]}},
    }
    if rating is not None:
        raw["rating"] = rating
    return raw


SEARCH_RESULTS = [
    place("new1", "Kopi Baru", 3, rating=4.8),
    place("busy", "Old Town Coffee", 80, rating=4.5),
    place("closed", "Kopi Tutup", 2, rating=4.0, status="CLOSED_PERMANENTLY"),
    place("far", "Kopi Jauh", 3, rating=4.2, offset=0.1),
    place("villa", "Sunset Villa", 2, rating=5.0),
    place("weak", "Warung Lama", 0),
]


def new_cafe_detail(**overrides):
    detail = {
        "place_id": "new1",
        "name": "Kopi Baru",
        "types": ["cafe", "food"],
        "formatted_address": "Jl. Pantai 5, Kuta, Kabupaten Badung, Bali 80361",
        "geometry": {"location": {"lat": CENTER[0], "lng": CENTER[1]}},
        "user_ratings_total": 3,
        "rating": 4.7,
        "business_status": "OPERATIONAL",
        "website": "https://www.instagram.com/kopibaru",
        "reviews": [{"time": ts(d), "rating": 5} for d in (2, 3, 5)],
        "photos": [
            {"time": ts(1), "author_name": "Ayu"},
            {"time": ts(2), "author_name": "Made"},
            {"time": ts(3), "author_name": "Ayu"},
        ],
    }
    detail.update(overrides)
    return detail


DETAILS = {
    "new1": new_cafe_detail(),
    "villa": {
        "place_id": "villa",
        "name": "Sunset Villa",
        "types": ["lodging"],
        "user_ratings_total": 2,
        "business_status": "OPERATIONAL",
    },
    "weak": {
        "place_id": "weak",
        "name": "Warung Lama",
        "types": ["cafe"],
        "user_ratings_total": 0,
        "business_status": "OPERATIONAL",
        "geometry": {"location": {"lat": CENTER[0], "lng": CENTER[1]}},
    },
}


class FakePlacesClient:
    """Stands in for PlacesClient; bills every call like the real one."""

    def __init__(self, search=None, details=None):
        self.search = search or (lambda query: list(SEARCH_RESULTS))
        self.details = DETAILS if details is None else details
        self.cost_tracker = CostTracker(now=lambda: NOW)
        self.metrics = RequestMetrics()
        self.search_calls = []
        self.detail_calls = []
        self._lock = threading.Lock()

    def for_session(self, metrics):
        scoped = copy.copy(self)
        scoped.metrics = metrics
        return scoped

    def _bill(self, endpoint):
        cost = self.cost_tracker.record(endpoint)
        self.metrics.inc_network(endpoint, cost)
        return cost

    def text_search(self, query, lat=None, lng=None, radius_m=None, place_type=None, max_pages=None):
        with self._lock:
            self.search_calls.append(query)
        cost = self._bill("text_search")
        outcome = self.search(query)
        if isinstance(outcome, Exception):
            return PaginatedResult(billable_calls=1, cost=cost, error=outcome)
        return PaginatedResult(results=outcome, billable_calls=1, pages_fetched=1, cost=cost)

    def place_details(self, place_id, full=False):
        with self._lock:
            self.detail_calls.append(place_id)
        cost = self._bill("place_details")
        detail = self.details.get(place_id)
        if detail is None:
            return CallResult(None, cost=cost, error=PlacesApiError("NOT_FOUND"), attempts=1)
        if isinstance(detail, Exception):
            return CallResult(None, cost=cost, error=detail, attempts=1)
        return CallResult({"status": "OK", "result": detail}, cost=cost, attempts=1)


def make_orchestrator(client, store=None, region=None, budget=None, max_workers=1):
    return Orchestrator(
        client,
        store if store is not None else InMemoryBusinessStore(),
        StaticRegionDirectory([region or make_region()]),
        StaticCategoryDirectory([CAFE]),
        budget=budget,
        max_workers=max_workers,
        clock=lambda: NOW,
    )


def test_new_business_run_end_to_end():
    client = FakePlacesClient()
    store = InMemoryBusinessStore()
    session = make_orchestrator(client, store).start_new_business_only("Testing - Pantai")

    assert session.status is SessionStatus.COMPLETED
    assert client.search_calls == [
        "Café Pantai",
        "new Café Pantai 2026",
        "Café baru buka Pantai 2026",
    ]
    assert session.businesses_found == 6
    assert session.businesses_new == 1
    assert session.rejection_counts == {
        "below_threshold": 1,
        "category_mismatch": 1,
        "closed": 1,
        "outside_geofence": 1,
        "too_many_reviews": 1,
    }
    assert sorted(client.detail_calls) == ["new1", "villa", "weak"]
    assert "busy" not in client.detail_calls
    assert session.api_calls_count == 6
    assert session.estimated_cost == pytest.approx(3 * price_for("text_search") + 3 * price_for("place_details"))
    assert session.estimated_cost == pytest.approx(0.147)

    record = store.find_by_external_id("new1")
    assert len(store) == 1
    assert record.indicators.confidence_score == 73
    assert record.indicators.business_age_estimate is AgeEstimate.ULTRA_NEW
    assert record.area == "Kabupaten Badung"
    assert record.first_seen == NOW
    assert record.scraped_count == 1
    assert record.last_update_type is SessionType.NEW_BUSINESS_ONLY


def test_rerun_skips_known_places():
    client = FakePlacesClient()
    store = InMemoryBusinessStore()
    orchestrator = make_orchestrator(client, store)
    orchestrator.start_new_business_only("Testing - Pantai")
    before = store.find_by_external_id("new1").scraped_count
    client.detail_calls.clear()

    second = orchestrator.start_new_business_only("Testing - Pantai")
    assert second.businesses_new == 0
    assert second.rejection_counts["already_known"] == 1
    assert "new1" not in client.detail_calls
    assert len(store) == 1
    assert before == 1
    assert store.find_by_external_id("new1").scraped_count >= before


def test_initial_mode_uses_low_threshold():
    client = FakePlacesClient()
    store = InMemoryBusinessStore()
    session = make_orchestrator(client, store).start_initial_scraping("Testing - Pantai")
    assert session.businesses_new == 2
    assert "below_threshold" not in session.rejection_counts
    assert store.find_by_external_id("weak").last_update_type is SessionType.INITIAL


def test_budget_guard_blocks_detail_calls():
    client = FakePlacesClient()
    session = make_orchestrator(
        client, budget=BudgetConfig(monthly_limit=0.05, warn_threshold=0.9)
    ).start_new_business_only("Testing - Pantai")

    assert client.detail_calls == []
    assert session.status is SessionStatus.FAILED
    assert "budget exceeded" in session.error_log
    assert session.businesses_new == 0


def test_budget_guard_trips_at_warn_threshold():
    # Three searches spend $0.096: under the $0.105 limit but past 90% of it.
    client = FakePlacesClient()
    session = make_orchestrator(
        client, budget=BudgetConfig(monthly_limit=0.105, warn_threshold=0.9)
    ).start_new_business_only("Testing - Pantai")

    assert len(client.search_calls) == 3
    assert client.detail_calls == []
    assert session.status is SessionStatus.FAILED
    assert "budget exceeded" in session.error_log


def test_budget_below_warn_threshold_lets_details_run():
    client = FakePlacesClient()
    session = make_orchestrator(
        client, budget=BudgetConfig(monthly_limit=0.2, warn_threshold=0.9)
    ).start_new_business_only("Testing - Pantai")

    assert sorted(client.detail_calls) == ["new1", "villa", "weak"]
    assert session.status is SessionStatus.COMPLETED


def test_malformed_detail_fields_do_not_abort_session():
    details = dict(DETAILS)
    details["new1"] = new_cafe_detail(
        editorial_summary="Recently opened cafe",
        reviews=[{"time": ts(2), "rating": 5}, "not a review", {"time": ts(5)}],
        photos=[None, {"time": ts(1), "author_name": "Ayu"}],
    )
    client = FakePlacesClient(details=details)
    store = InMemoryBusinessStore()
    session = make_orchestrator(client, store).start_initial_scraping("Testing - Pantai")

    assert session.status is SessionStatus.COMPLETED
    assert store.find_by_external_id("new1") is not None
    assert "processing_error" not in session.rejection_counts


def test_unprocessable_detail_is_counted_not_raised():
    details = dict(DETAILS)
    details["weak"] = dict(DETAILS["weak"], name=12345, types=["store"])
    client = FakePlacesClient(details=details)
    session = make_orchestrator(client).start_initial_scraping("Testing - Pantai")

    assert session.status is SessionStatus.COMPLETED
    assert session.rejection_counts["processing_error"] == 1
    assert any("weak" in e for e in session.error_log)
    assert session.businesses_new == 1


def test_quota_error_aborts_session():
    client = FakePlacesClient(search=lambda query: PlacesApiError("OVER_QUERY_LIMIT", "quota"))
    session = make_orchestrator(client).start_new_business_only("Testing - Pantai")

    assert session.status is SessionStatus.FAILED
    assert any("OVER_QUERY_LIMIT" in e for e in session.error_log)
    assert client.search_calls == ["Café Pantai"]
    assert client.detail_calls == []
    assert session.api_calls_count == 1


def test_transient_search_error_skips_query():
    def search(query):
        if query == "Café Pantai":
            return TransientApiError("HTTP 503 after 2 attempts")
        return [place("new1", "Kopi Baru", 3, rating=4.8)]

    client = FakePlacesClient(search=search)
    session = make_orchestrator(client).start_new_business_only("Testing - Pantai")

    assert session.status is SessionStatus.COMPLETED
    assert session.businesses_new == 1
    assert len(session.error_log) == 1
    assert "Café Pantai" in session.error_log[0]


def test_detail_failure_counts_as_processing_error():
    details = dict(DETAILS)
    details["new1"] = TransientApiError("timeout")
    client = FakePlacesClient(details=details)
    session = make_orchestrator(client).start_new_business_only("Testing - Pantai")

    assert session.status is SessionStatus.COMPLETED
    assert session.rejection_counts["processing_error"] == 1
    assert session.businesses_new == 0


def test_unknown_region_or_category_fails_before_any_call():
    client = FakePlacesClient()
    orchestrator = make_orchestrator(client)
    with pytest.raises(RegionNotFoundError):
        orchestrator.start_new_business_only("Lombok")
    with pytest.raises(CategoryNotFoundError):
        orchestrator.start_new_business_only("Testing - Pantai", ["Bakery"])
    assert client.search_calls == []
    assert client.cost_tracker.monthly_calls == 0


def test_second_session_for_busy_region_is_refused():
    client = FakePlacesClient()
    orchestrator = make_orchestrator(client)
    orchestrator._claim([make_region()])
    with pytest.raises(RegionBusyError):
        orchestrator.start_new_business_only("Testing - Pantai")
    orchestrator._release([make_region()])
    assert orchestrator.start_new_business_only("Testing - Pantai").status is SessionStatus.COMPLETED


def test_weekly_update_refreshes_stored_places():
    store = InMemoryBusinessStore()
    store.upsert(
        BusinessRecord(
            external_place_id="new1",
            name="Kopi Baru",
            category="Café",
            lat=CENTER[0],
            lng=CENTER[1],
            rating=4.0,
            review_count=100,
            business_status="OPERATIONAL",
            first_seen=NOW - timedelta(days=25),
            last_fetched=NOW - timedelta(days=25),
            scraped_count=1,
            indicators=ScoringIndicators(recently_opened=True, confidence_score=70),
            last_update_type=SessionType.INITIAL,
        )
    )
    details = dict(DETAILS)
    details["new1"] = new_cafe_detail(
        user_ratings_total=141,
        rating=4.1,
        reviews=[{"time": ts(d), "rating": 5} for d in (20, 100, 200)],
    )
    client = FakePlacesClient(details=details)
    session = make_orchestrator(client, store).start_weekly_update(["Testing - Pantai"])

    assert session.status is SessionStatus.COMPLETED
    assert session.session_type is SessionType.WEEKLY_UPDATE
    assert session.businesses_updated >= 1
    assert session.rejection_counts["already_processed"] == 1
    assert client.detail_calls.count("new1") == 1

    record = store.find_by_external_id("new1")
    assert record.indicators.review_spike
    assert record.review_count == 141
    assert record.scraped_count == 2
    assert record.first_seen == NOW - timedelta(days=25)
    assert record.last_fetched == NOW
    assert record.last_update_type is SessionType.WEEKLY_UPDATE


def test_recently_fetched_places_are_not_refreshed():
    store = InMemoryBusinessStore()
    store.upsert(
        BusinessRecord(
            external_place_id="new1",
            name="Kopi Baru",
            category="Café",
            lat=CENTER[0],
            lng=CENTER[1],
            last_fetched=NOW - timedelta(days=2),
            scraped_count=1,
            indicators=ScoringIndicators(recently_opened=True, confidence_score=80),
        )
    )
    client = FakePlacesClient()
    session = make_orchestrator(client, store).start_weekly_update(["Testing - Pantai"])
    assert "new1" not in client.detail_calls
    assert session.rejection_counts["already_known"] == 1


def test_parallel_search_matches_sequential():
    region = make_region(radius_m=3000)
    sequential_client = FakePlacesClient()
    parallel_client = FakePlacesClient()
    sequential = make_orchestrator(sequential_client, region=region).start_new_business_only(
        "Testing - Pantai"
    )
    parallel = make_orchestrator(parallel_client, region=region, max_workers=4).start_new_business_only(
        "Testing - Pantai"
    )

    assert len(sequential_client.search_calls) > 3
    assert sorted(parallel_client.search_calls) == sorted(sequential_client.search_calls)
    assert parallel_client.detail_calls == sequential_client.detail_calls
    assert parallel.summary()["rejection_counts"] == sequential.summary()["rejection_counts"]
    assert parallel.businesses_new == sequential.businesses_new == 1
