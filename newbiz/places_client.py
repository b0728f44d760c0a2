"""Places API client with throttling, cost accounting, pagination and caching."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import config
from .cache import Cache, make_request_cache_key
from .http import (
    CostTracker,
    HttpClient,
    PlacesApiError,
    RateLimiter,
    RequestMetrics,
    TransientApiError,
)

logger = logging.getLogger(__name__)


@dataclass
class CallResult:
    response: Optional[Dict[str, Any]]
    cost: float = 0.0
    error: Optional[Exception] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None


@dataclass
class PaginatedResult:
    results: List[Dict[str, Any]] = field(default_factory=list)
    billable_calls: int = 0
    pages_fetched: int = 0
    cost: float = 0.0
    error: Optional[Exception] = None
    from_cache: bool = False


class PlacesClient:
    def __init__(
        self,
        http_client: HttpClient,
        limiter: RateLimiter,
        cost_tracker: CostTracker,
        cache: Optional[Cache] = None,
        metrics: Optional[RequestMetrics] = None,
        cache_max_age_seconds: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.http = http_client
        self.limiter = limiter
        self.cost_tracker = cost_tracker
        self.cache = cache
        self.metrics = metrics if metrics is not None else RequestMetrics()
        self.cache_max_age_seconds = (
            cache_max_age_seconds
            if cache_max_age_seconds is not None
            else config.SEARCH_CACHE_MAX_AGE_SECONDS
        )
        self._sleep = sleep

    def for_session(self, metrics: RequestMetrics) -> "PlacesClient":
        """Same transport, limiter, tracker and cache; separate counters."""
        return PlacesClient(
            self.http,
            self.limiter,
            self.cost_tracker,
            cache=self.cache,
            metrics=metrics,
            cache_max_age_seconds=self.cache_max_age_seconds,
            sleep=self._sleep,
        )

    def call(self, endpoint: str, params: Dict[str, Any]) -> CallResult:
        """Issue one request. API failures are returned, not raised."""
        url = config.ENDPOINT_URLS.get(endpoint)
        if url is None:
            raise ValueError(f"Unknown endpoint: {endpoint}")

        spent: List[float] = []

        def _bill(ok: bool) -> None:
            cost = self.cost_tracker.record(endpoint)
            self.metrics.inc_network(endpoint, cost, failed=not ok)
            spent.append(cost)

        try:
            payload = self.http.get_json(
                url, params, before_attempt=self.limiter.acquire, after_attempt=_bill
            )
        except (TransientApiError, PlacesApiError) as exc:
            logger.warning("%s call failed: %s", endpoint, exc)
            return CallResult(None, cost=sum(spent), error=exc, attempts=len(spent))
        return CallResult(payload, cost=sum(spent), attempts=len(spent))

    def call_with_pagination(
        self,
        endpoint: str,
        params: Dict[str, Any],
        max_pages: Optional[int] = None,
    ) -> PaginatedResult:
        if endpoint not in config.SEARCH_ENDPOINTS:
            raise ValueError(f"Endpoint does not paginate: {endpoint}")
        max_pages = max_pages or config.PLACES_MAX_PAGES_PER_QUERY

        key = make_request_cache_key(endpoint, dict(params, max_pages=max_pages))
        if self.cache is not None:
            cached = self.cache.get_search_cache(key, self.cache_max_age_seconds)
            if cached is not None:
                self.metrics.inc_cache_hit()
                return PaginatedResult(results=list(cached.get("results") or []), from_cache=True)

        out = PaginatedResult()
        page_params = dict(params)
        while out.pages_fetched < max_pages:
            if out.pages_fetched:
                # Page tokens only become valid after a short delay.
                self._sleep(config.PAGINATION_DELAY_SECONDS)
            result = self.call(endpoint, page_params)
            out.billable_calls += result.attempts
            out.cost += result.cost
            if not result.ok:
                out.error = result.error
                break
            response = result.response or {}
            out.pages_fetched += 1
            out.results.extend(response.get("results") or [])
            token = response.get("next_page_token")
            if not token:
                break
            page_params = {"pagetoken": token}

        if out.error is None and self.cache is not None:
            self.cache.set_search_cache(key, endpoint, {"results": out.results})
        return out

    def text_search(
        self,
        query: str,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        radius_m: Optional[float] = None,
        place_type: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> PaginatedResult:
        params = build_search_params(lat, lng, radius_m, place_type)
        params["query"] = query
        return self.call_with_pagination(config.ENDPOINT_TEXT_SEARCH, params, max_pages)

    def nearby_search(
        self,
        lat: float,
        lng: float,
        radius_m: float,
        place_type: Optional[str] = None,
        keyword: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> PaginatedResult:
        params = build_search_params(lat, lng, radius_m, place_type)
        if keyword:
            params["keyword"] = keyword
        return self.call_with_pagination(config.ENDPOINT_NEARBY_SEARCH, params, max_pages)

    def place_details(self, place_id: str, full: bool = False) -> CallResult:
        endpoint = config.ENDPOINT_PLACE_DETAILS_FULL if full else config.ENDPOINT_PLACE_DETAILS
        fields = config.DETAIL_FIELDS_FULL if full else config.DETAIL_FIELDS_BASIC
        params = {
            "place_id": place_id,
            "fields": ",".join(fields),
            "language": config.PLACES_LANGUAGE,
        }
        return self.call(endpoint, params)


def build_search_params(
    lat: Optional[float],
    lng: Optional[float],
    radius_m: Optional[float],
    place_type: Optional[str],
) -> Dict[str, Any]:
    params: Dict[str, Any] = {"language": config.PLACES_LANGUAGE}
    if lat is not None and lng is not None:
        params["location"] = f"{lat:.6f},{lng:.6f}"
        if radius_m is not None:
            params["radius"] = int(radius_m)
    if place_type:
        params["type"] = place_type
    return params


# Adapters for legacy Places payloads

def place_location(place: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    location = (place.get("geometry") or {}).get("location") or {}
    lat = location.get("lat")
    lng = location.get("lng")
    if lat is None or lng is None:
        return None
    return float(lat), float(lng)


def review_count(place: Dict[str, Any]) -> int:
    value = place.get("user_ratings_total")
    return int(value) if value is not None else 0


def detail_result(response: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    result = (response or {}).get("result")
    if not isinstance(result, dict) or not result.get("place_id"):
        raise ValueError("Place details response has no result")
    return result
