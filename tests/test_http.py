from datetime import datetime, timezone

import pytest
import requests

from newbiz import config
from newbiz.cache import Cache
from newbiz.http import (
    CostTracker,
    HttpClient,
    PlacesApiError,
    RateLimiter,
    RequestMetrics,
    TransientApiError,
    price_for,
)


class FakeResponse:
    def __init__(self, payload, status_code=200, headers=None):
        self._payload = payload
        self.status_code = status_code
        self.headers = headers or {}

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, dict(params or {})))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def make_http_client(responses, retry_max=2):
    client = HttpClient(
        api_key="dummy",
        timeout=1,
        retry_max=retry_max,
        backoff_base=0.5,
        backoff_max=2.0,
    )
    client.session = FakeSession(responses)
    return client


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr("newbiz.http.time.sleep", lambda s: recorded.append(s))
    return recorded


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_rate_limiter_waits_for_window():
    clock = FakeClock()
    limiter = RateLimiter(2, clock=clock, sleep=clock.sleep)
    limiter.acquire()
    limiter.acquire()
    limiter.acquire()
    assert clock.sleeps == [1.0]
    assert limiter.waits == 1


def test_rate_limiter_does_not_wait_after_window_passes():
    clock = FakeClock()
    limiter = RateLimiter(2, clock=clock, sleep=clock.sleep)
    limiter.acquire()
    limiter.acquire()
    clock.now = 1.5
    limiter.acquire()
    assert clock.sleeps == []


def test_rate_limiter_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        RateLimiter(0)


def test_retry_on_503_then_success(sleeps):
    client = make_http_client(
        [FakeResponse({}, status_code=503), FakeResponse({"status": "OK", "results": [1]})]
    )
    attempts = []
    payload = client.get_json(
        config.PLACES_TEXT_SEARCH_URL,
        {"query": "cafe"},
        after_attempt=attempts.append,
    )
    assert payload["results"] == [1]
    assert attempts == [False, True]
    assert len(sleeps) == 1
    assert 0 < sleeps[0] <= 2.0
    assert client.session.calls[0][1]["key"] == "dummy"
    assert client.session.calls[0][1]["query"] == "cafe"


def test_transient_status_exhausts_retries(sleeps):
    client = make_http_client(
        [FakeResponse({"status": "UNKNOWN_ERROR"}), FakeResponse({"status": "UNKNOWN_ERROR"})]
    )
    attempts = []
    with pytest.raises(TransientApiError):
        client.get_json(config.PLACES_TEXT_SEARCH_URL, {}, after_attempt=attempts.append)
    assert attempts == [False, False]
    assert len(client.session.calls) == 2


def test_connection_error_is_retried(sleeps):
    client = make_http_client(
        [requests.ConnectionError("boom"), FakeResponse({"status": "ZERO_RESULTS", "results": []})]
    )
    payload = client.get_json(config.PLACES_NEARBY_SEARCH_URL, {})
    assert payload["status"] == "ZERO_RESULTS"


def test_non_json_body_is_retried(sleeps):
    client = make_http_client([FakeResponse(ValueError("bad json")), FakeResponse({"status": "OK"})])
    assert client.get_json(config.PLACES_DETAILS_URL, {})["status"] == "OK"


def test_quota_error_is_not_retried(sleeps):
    client = make_http_client(
        [FakeResponse({"status": "OVER_QUERY_LIMIT", "error_message": "quota"}), FakeResponse({})]
    )
    attempts = []
    with pytest.raises(PlacesApiError) as excinfo:
        client.get_json(config.PLACES_TEXT_SEARCH_URL, {}, after_attempt=attempts.append)
    assert excinfo.value.is_quota_error
    assert excinfo.value.message == "quota"
    assert attempts == [False]
    assert len(client.session.calls) == 1
    assert sleeps == []


def test_invalid_request_is_not_quota_error(sleeps):
    client = make_http_client([FakeResponse({"status": "INVALID_REQUEST"})])
    with pytest.raises(PlacesApiError) as excinfo:
        client.get_json(config.PLACES_DETAILS_URL, {})
    assert excinfo.value.status == "INVALID_REQUEST"
    assert not excinfo.value.is_quota_error


def test_http_403_is_fatal(sleeps):
    client = make_http_client([FakeResponse({}, status_code=403)])
    with pytest.raises(PlacesApiError) as excinfo:
        client.get_json(config.PLACES_DETAILS_URL, {})
    assert excinfo.value.status == "HTTP_403"


def test_retry_after_header_is_honoured(sleeps):
    client = make_http_client(
        [
            FakeResponse({}, status_code=429, headers={"Retry-After": "1"}),
            FakeResponse({"status": "OK"}),
        ]
    )
    client.get_json(config.PLACES_TEXT_SEARCH_URL, {})
    assert sleeps == [1.0]


def test_price_table():
    assert price_for("text_search") == pytest.approx(0.032)
    assert price_for("nearby_search") == pytest.approx(0.032)
    assert price_for("place_details") == pytest.approx(0.017)
    assert price_for("place_details_full") == pytest.approx(0.025)
    with pytest.raises(ValueError):
        price_for("geocode")


def test_request_metrics_totals():
    metrics = RequestMetrics()
    metrics.inc_network("text_search", 0.032)
    metrics.inc_network("text_search", 0.032, failed=True)
    metrics.inc_network("place_details", 0.017)
    metrics.inc_cache_hit()
    assert metrics.total_calls == 3
    assert metrics.total_cost == pytest.approx(0.081)
    assert metrics.calls_by_endpoint == {"text_search": 2, "place_details": 1}
    assert metrics.failed_attempts == 1
    assert metrics.cache_hits == 1


class MutableNow:
    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value


def test_cost_tracker_budget_checks():
    tracker = CostTracker(now=MutableNow(datetime(2026, 3, 10, tzinfo=timezone.utc)))
    for _ in range(3):
        tracker.record("text_search")
    assert tracker.monthly_calls == 3
    assert tracker.monthly_cost == pytest.approx(0.096)
    assert tracker.remaining_budget(0.1) == pytest.approx(0.004)
    assert tracker.remaining_budget(0.05) == 0.0
    assert tracker.is_approaching_limit(0.1, 0.9)
    assert not tracker.is_approaching_limit(1.0, 0.9)


def test_cost_tracker_persists_usage_in_cache(tmp_path):
    cache = Cache(str(tmp_path / "cache.db"))
    now = MutableNow(datetime(2026, 3, 10, tzinfo=timezone.utc))
    tracker = CostTracker(cache, now=now)
    tracker.record("text_search")
    tracker.record("place_details")

    reloaded = CostTracker(cache, now=now)
    assert reloaded.monthly_calls == 2
    assert reloaded.monthly_cost == pytest.approx(0.049)
    usage = cache.get_monthly_usage("2026-03")
    assert usage["calls_by_endpoint"] == {"text_search": 1, "place_details": 1}
    assert cache.get_monthly_usage("2026-04")["total_calls"] == 0
    cache.close()


def test_cost_tracker_resets_on_new_month():
    now = MutableNow(datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc))
    tracker = CostTracker(now=now)
    tracker.record("place_details_full")
    assert tracker.monthly_cost == pytest.approx(0.025)
    now.value = datetime(2026, 4, 1, 0, 1, tzinfo=timezone.utc)
    assert tracker.monthly_cost == 0.0
    assert tracker.monthly_calls == 0
