"""Project configuration.

Loads run overrides from scrape_config.json when available, falling back to
the defaults below. Keep API request shapes, prices and scoring constants
centralized here. The scoring weights, penalties, the subdivision trigger and
the review ceiling are empirically chosen and still need calibration against
real outcome data; change them here, not at the call sites.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

_REPO_ROOT = Path(__file__).resolve().parent.parent

# --- API endpoints ---

PLACES_TEXT_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/textsearch/json"
PLACES_NEARBY_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"
PLACES_DETAILS_URL = "https://maps.googleapis.com/maps/api/place/details/json"

ENDPOINT_TEXT_SEARCH = "text_search"
ENDPOINT_NEARBY_SEARCH = "nearby_search"
ENDPOINT_PLACE_DETAILS = "place_details"
ENDPOINT_PLACE_DETAILS_FULL = "place_details_full"

ENDPOINT_URLS: Dict[str, str] = {
    ENDPOINT_TEXT_SEARCH: PLACES_TEXT_SEARCH_URL,
    ENDPOINT_NEARBY_SEARCH: PLACES_NEARBY_SEARCH_URL,
    ENDPOINT_PLACE_DETAILS: PLACES_DETAILS_URL,
    ENDPOINT_PLACE_DETAILS_FULL: PLACES_DETAILS_URL,
}

# USD per request attempt
ENDPOINT_PRICES: Dict[str, float] = {
    ENDPOINT_TEXT_SEARCH: 0.032,
    ENDPOINT_NEARBY_SEARCH: 0.032,
    ENDPOINT_PLACE_DETAILS: 0.017,
    ENDPOINT_PLACE_DETAILS_FULL: 0.025,
}

SEARCH_ENDPOINTS = frozenset({ENDPOINT_TEXT_SEARCH, ENDPOINT_NEARBY_SEARCH})

# --- Detail field lists ---

DETAIL_FIELDS_BASIC: List[str] = [
    "place_id",
    "name",
    "rating",
    "user_ratings_total",
    "types",
    "formatted_address",
    "geometry",
    "business_status",
    "photos",
    "reviews",
    "editorial_summary",
]
DETAIL_FIELDS_FULL: List[str] = DETAIL_FIELDS_BASIC + [
    "formatted_phone_number",
    "website",
    "opening_hours",
    "price_level",
]

# --- Places API behaviour ---

API_OK_STATUSES = frozenset({"OK", "ZERO_RESULTS"})
API_TRANSIENT_STATUSES = frozenset({"UNKNOWN_ERROR"})
API_QUOTA_STATUSES = frozenset({"OVER_QUERY_LIMIT", "REQUEST_DENIED"})
PLACES_LANGUAGE = "id"
PAGINATION_DELAY_SECONDS = 2.0
PLACES_MAX_PAGES_PER_QUERY = 3
PLACES_RESULT_CAP = 60

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 30
HTTP_RETRY_MAX = 2
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 2.0
MAX_REQUESTS_PER_SECOND = 50

# --- Budget ---

MONTHLY_BUDGET_USD = 300.0
BUDGET_WARN_THRESHOLD = 0.9

# --- Grid planning ---

CELL_RADIUS_BY_TIER: Dict[int, int] = {1: 2000, 2: 2500, 3: 3000, 4: 3000, 5: 3500}
GRID_OVERLAP = 0.30
GEOFENCE_FACTOR = 1.2
SUBDIVISION_MIN_RADIUS_M = 1000
SUBDIVISION_MAX_DEPTH = 4

# --- Query templates ---

PLAIN_QUERY_TEMPLATE = "{label} {area}"
NEW_OPENING_QUERY_TEMPLATES: Tuple[str, ...] = (
    "new {label} {area} {year}",
    "{label} baru buka {area} {year}",
)

# --- Pre-filter ---

PREFILTER_MAX_REVIEWS = 50
PREFILTER_VERY_LOW_REVIEWS = 10
NEW_BUSINESS_NAME_PHRASES: List[str] = [
    "baru dibuka",
    "baru buka",
    "segera dibuka",
    "grand opening",
    "soft opening",
    "now open",
    "newly opened",
    "recently opened",
    "opening soon",
    "coming soon",
]
BUSINESS_STATUS_OPERATIONAL = "OPERATIONAL"
BUSINESS_STATUS_OPENED_RECENTLY = "OPENED_RECENTLY"
BUSINESS_STATUS_CLOSED_TEMPORARILY = "CLOSED_TEMPORARILY"
BUSINESS_STATUS_CLOSED_PERMANENTLY = "CLOSED_PERMANENTLY"
CLOSED_STATUSES = frozenset({BUSINESS_STATUS_CLOSED_TEMPORARILY, BUSINESS_STATUS_CLOSED_PERMANENTLY})

# --- Session thresholds ---

INITIAL_CONFIDENCE_THRESHOLD = 10
DEFAULT_CONFIDENCE_THRESHOLD = 60
WEEKLY_CONFIDENCE_THRESHOLD = 60
REFRESH_MIN_AGE_DAYS = 7

# --- Scoring ---

SCORE_WEIGHT_AGE = 0.45
SCORE_WEIGHT_SIGNALS = 0.35
SCORE_WEIGHT_ACTIVITY = 0.20

AGE_BASE_SCORES: Dict[str, float] = {
    "ultra_new": 95.0,
    "very_new": 85.0,
    "new": 70.0,
    "recent": 45.0,
    "established": 20.0,
    "old": 0.0,
    "unknown": 30.0,
}
CONFIDENCE_FACTORS: Dict[str, float] = {"high": 1.0, "medium": 0.85, "low": 0.65}

# (upper bound in days, bucket); anything older is "old"
AGE_BUCKETS_DAYS: List[Tuple[int, str]] = [
    (7, "ultra_new"),
    (30, "very_new"),
    (90, "new"),
    (365, "recent"),
    (1095, "established"),
]

SIGNAL_OFFICIAL_RECENTLY_OPENED = 35.0
# (exclusive upper bound on review count, points); first match wins
SIGNAL_REVIEW_BANDS: List[Tuple[int, float]] = [(5, 30.0), (15, 20.0), (30, 10.0)]
SIGNAL_BECAME_OPERATIONAL = 25.0
SIGNAL_STATUS_CHANGED = 12.0
SIGNAL_FIRST_DISCOVERY = 10.0

ACTIVITY_REVIEW_SPIKE = 30.0
ACTIVITY_RATING_IMPROVEMENT = 15.0
# (minimum exclusive count, points)
ACTIVITY_RECENT_PHOTO_TIERS: List[Tuple[int, float]] = [(5, 15.0), (2, 10.0), (0, 5.0)]
# (minimum inclusive uploaders, points)
ACTIVITY_UPLOADER_TIERS: List[Tuple[int, float]] = [(5, 12.0), (3, 8.0), (2, 4.0)]
# (exclusive upper bound in days, points)
ACTIVITY_PHOTO_AGE_TIERS: List[Tuple[int, float]] = [(7, 20.0), (30, 12.0), (90, 6.0)]
ACTIVITY_WEBSITE = 10.0
ACTIVITY_SOCIAL = 12.0

PENALTY_OLD_AGE = 40.0
PENALTY_RATING_DECLINE = 15.0
PENALTY_CLOSED_PERMANENTLY = 80.0
PENALTY_CLOSED_TEMPORARILY = 25.0
PENALTY_SUSPICIOUS_REVIEWS = 30.0

COMBO_BONUS = 8.0
COMBO_MIN_SCORE = 60.0
COMBO_MIN_INDICATORS = 5

RATING_CHANGE_THRESHOLD = 0.5
REVIEW_SPIKE_MIN_GROWTH_PERCENT = 40.0
REVIEW_SPIKE_WINDOW_DAYS = 30
REVIEW_SPIKE_MIN_REVIEWS = 5
SUSPICIOUS_REVIEW_COUNT = 100
FEW_REVIEWS_THRESHOLD = 15
LOW_RATING_COUNT_THRESHOLD = 5
RECENT_PHOTO_DAYS = 90

SOCIAL_HOSTS: List[str] = [
    "instagram.com",
    "facebook.com",
    "tiktok.com",
    "twitter.com",
    "x.com",
    "wa.me",
    "linktr.ee",
]
EDITORIAL_NEW_OPENING_HINTS: List[str] = [
    "recently opened",
    "newly opened",
    "new opening",
    "baru dibuka",
]

# --- Cache and outputs ---

CACHE_DB_PATH = "cache.db"
STORE_DB_PATH = "businesses.db"
SEARCH_CACHE_MAX_AGE_SECONDS = 3600


def load_scrape_config(path: Optional[str] = None) -> bool:
    """Load run overrides from a JSON file.

    Updates module-level globals with values from the config file.
    Returns True if config was loaded, False if file not found.
    """
    if path is None:
        path = str(_REPO_ROOT / "scrape_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    globals_ref = globals()

    budget = data.get("budget", {})
    if "monthly_usd" in budget:
        globals_ref["MONTHLY_BUDGET_USD"] = float(budget["monthly_usd"])
    if "warn_threshold" in budget:
        globals_ref["BUDGET_WARN_THRESHOLD"] = float(budget["warn_threshold"])

    rate = data.get("max_requests_per_second")
    if rate is not None:
        globals_ref["MAX_REQUESTS_PER_SECOND"] = int(rate)

    grid = data.get("grid", {})
    if "overlap" in grid:
        globals_ref["GRID_OVERLAP"] = float(grid["overlap"])
    if "cell_radius_by_tier" in grid:
        globals_ref["CELL_RADIUS_BY_TIER"] = {
            int(k): int(v) for k, v in grid["cell_radius_by_tier"].items()
        }
    if "min_radius_m" in grid:
        globals_ref["SUBDIVISION_MIN_RADIUS_M"] = int(grid["min_radius_m"])
    if "max_depth" in grid:
        globals_ref["SUBDIVISION_MAX_DEPTH"] = int(grid["max_depth"])

    prefilter = data.get("prefilter", {})
    if "max_reviews" in prefilter:
        globals_ref["PREFILTER_MAX_REVIEWS"] = int(prefilter["max_reviews"])
    phrases = prefilter.get("name_phrases", [])
    if phrases:
        globals_ref["NEW_BUSINESS_NAME_PHRASES"] = [str(p).lower() for p in phrases]

    threshold = data.get("confidence_threshold")
    if threshold is not None:
        globals_ref["DEFAULT_CONFIDENCE_THRESHOLD"] = int(threshold)

    scoring = data.get("scoring", {})
    if "age_weight" in scoring:
        globals_ref["SCORE_WEIGHT_AGE"] = float(scoring["age_weight"])
    if "signals_weight" in scoring:
        globals_ref["SCORE_WEIGHT_SIGNALS"] = float(scoring["signals_weight"])
    if "activity_weight" in scoring:
        globals_ref["SCORE_WEIGHT_ACTIVITY"] = float(scoring["activity_weight"])

    cache_path = data.get("cache_db_path")
    if cache_path:
        globals_ref["CACHE_DB_PATH"] = str(cache_path)
    store_path = data.get("store_db_path")
    if store_path:
        globals_ref["STORE_DB_PATH"] = str(store_path)

    return True
