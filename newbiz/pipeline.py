"""Discovery pipeline and session orchestration."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from . import config
from .directory import (
    CategoryDirectory,
    CategoryNotFoundError,
    RegionDirectory,
    RegionNotFoundError,
    extract_area_label,
    validate_category,
)
from .geo import haversine_m
from .grid import GridPlanner
from .http import PlacesApiError, RequestMetrics
from .models import (
    BusinessRecord,
    Candidate,
    Category,
    Cell,
    Region,
    ScoringIndicators,
    SessionType,
)
from .places_client import PlacesClient, detail_result, place_location, review_count
from .scoring import NewBusinessScorer, utc
from .session import ScrapeSession
from .store import BusinessStore

logger = logging.getLogger(__name__)

REJECT_ALREADY_KNOWN = "already_known"
REJECT_ALREADY_PROCESSED = "already_processed"
REJECT_OUTSIDE_GEOFENCE = "outside_geofence"
REJECT_CLOSED = "closed"
REJECT_TOO_MANY_REVIEWS = "too_many_reviews"
REJECT_NO_NEW_SIGNAL = "no_new_signal"
REJECT_CATEGORY_MISMATCH = "category_mismatch"
REJECT_BELOW_THRESHOLD = "below_threshold"
REJECT_PROCESSING_ERROR = "processing_error"

ACCEPT_NAME_PATTERN = "name_pattern"
ACCEPT_VERY_LOW_REVIEWS = "very_low_reviews"
ACCEPT_ZERO_REVIEWS = "zero_reviews"

BUDGET_EXCEEDED = "budget exceeded"


class RegionBusyError(RuntimeError):
    """Raised when a session is started for a region that already has one running."""


@dataclass
class BudgetConfig:
    monthly_limit: float = field(default_factory=lambda: config.MONTHLY_BUDGET_USD)
    warn_threshold: float = field(default_factory=lambda: config.BUDGET_WARN_THRESHOLD)


@dataclass
class SessionContext:
    session: ScrapeSession
    client: PlacesClient
    metrics: RequestMetrics
    budget: BudgetConfig
    confidence_threshold: int
    update_type: SessionType
    full_details: bool = False
    validate_categories: bool = True
    known_ids: Set[str] = field(default_factory=set)
    processed_ids: Set[str] = field(default_factory=set)
    saturated_cells: List[Cell] = field(default_factory=list)
    budget_exceeded: bool = False


@dataclass
class PrefilterDecision:
    accepted: bool
    reason: str


@dataclass
class SearchUnitResult:
    candidates: Dict[str, Candidate] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    cells_searched: int = 0
    saturated_cells: List[Cell] = field(default_factory=list)


def matches_new_business_name(name: str) -> bool:
    lowered = name.lower()
    return any(phrase in lowered for phrase in config.NEW_BUSINESS_NAME_PHRASES)


def prefilter_candidate(
    candidate: Candidate, region: Region, known_ids: Set[str]
) -> PrefilterDecision:
    """Decide from the search payload alone whether a place is worth a detail call.

    Checks run in order and the first decisive one wins. Candidates without a
    location skip the geofence check.
    """
    raw = candidate.raw
    if candidate.external_place_id in known_ids:
        return PrefilterDecision(False, REJECT_ALREADY_KNOWN)
    limit = region.search_radius_m * config.GEOFENCE_FACTOR
    if candidate.distance_m is not None and candidate.distance_m > limit:
        return PrefilterDecision(False, REJECT_OUTSIDE_GEOFENCE)
    if raw.get("business_status") in config.CLOSED_STATUSES:
        return PrefilterDecision(False, REJECT_CLOSED)

    reviews = review_count(raw)
    name_match = matches_new_business_name(candidate.name)
    if reviews > config.PREFILTER_MAX_REVIEWS:
        if name_match:
            return PrefilterDecision(True, ACCEPT_NAME_PATTERN)
        return PrefilterDecision(False, REJECT_TOO_MANY_REVIEWS)
    if name_match:
        return PrefilterDecision(True, ACCEPT_NAME_PATTERN)
    rating = raw.get("rating") or 0
    if 0 < reviews < config.PREFILTER_VERY_LOW_REVIEWS and rating > 0:
        return PrefilterDecision(True, ACCEPT_VERY_LOW_REVIEWS)
    if reviews == 0 and raw.get("business_status") == config.BUSINESS_STATUS_OPERATIONAL:
        return PrefilterDecision(True, ACCEPT_ZERO_REVIEWS)
    return PrefilterDecision(False, REJECT_NO_NEW_SIGNAL)


def build_queries(category: Category, area: str, year: int) -> List[str]:
    """Plain query first, then the new-opening variants."""
    queries = [config.PLAIN_QUERY_TEMPLATE.format(label=category.label, area=area)]
    for template in config.NEW_OPENING_QUERY_TEMPLATES:
        queries.append(template.format(label=category.label, area=area, year=year))
    return queries


def build_record(
    prior: Optional[BusinessRecord],
    detail: Dict[str, Any],
    category: str,
    indicators: ScoringIndicators,
    now: datetime,
    update_type: SessionType,
    fallback_location: Optional[Tuple[Optional[float], Optional[float]]] = None,
) -> BusinessRecord:
    location = place_location(detail) or fallback_location or (None, None)
    address = detail.get("formatted_address") or (prior.address if prior else "")
    return BusinessRecord(
        external_place_id=detail["place_id"],
        name=detail.get("name") or (prior.name if prior else ""),
        category=category,
        address=address,
        area=extract_area_label(address),
        lat=location[0],
        lng=location[1],
        rating=detail.get("rating"),
        review_count=review_count(detail),
        website=detail.get("website") or (prior.website if prior else None),
        phone=detail.get("formatted_phone_number") or (prior.phone if prior else None),
        business_status=detail.get("business_status"),
        first_seen=prior.first_seen if prior and prior.first_seen else now,
        last_fetched=now,
        scraped_count=(prior.scraped_count if prior else 0) + 1,
        indicators=indicators,
        last_update_type=update_type,
    )


class PlaceDiscoveryPipeline:
    def __init__(
        self,
        store: BusinessStore,
        planner: Optional[GridPlanner] = None,
        scorer: Optional[NewBusinessScorer] = None,
        max_workers: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.planner = planner or GridPlanner()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.scorer = scorer or NewBusinessScorer(clock=self.clock)
        self.max_workers = max(1, int(max_workers))

    # Budget

    def check_budget(self, ctx: SessionContext) -> bool:
        """False once spend reaches the warn threshold; no new detail phase may start."""
        if ctx.budget_exceeded:
            return False
        tracker = ctx.client.cost_tracker
        limit = ctx.budget.monthly_limit
        if tracker.remaining_budget(limit) <= 0 or tracker.is_approaching_limit(
            limit, ctx.budget.warn_threshold
        ):
            logger.error(
                "Budget guard tripped: spent $%.2f of $%.2f (threshold %.0f%%)",
                tracker.monthly_cost,
                limit,
                ctx.budget.warn_threshold * 100,
            )
            ctx.budget_exceeded = True
            return False
        return True

    # Discovery

    def discover(self, ctx: SessionContext, region: Region, categories: Sequence[Category]) -> None:
        now = self.clock()
        cells = self.planner.plan_cells(region)
        logger.info(
            "Stage 1: grid plan (%s cells, radius %sm) for %s",
            len(cells),
            self.planner.cell_radius_for(region.priority_tier),
            region.name,
        )
        ctx.known_ids |= self.store.batch_list_external_ids_for_region(region)

        logger.info(
            "Stage 2: search (%s categories x %s cells, workers=%s)",
            len(categories),
            len(cells),
            self.max_workers,
        )
        per_category = self._search(ctx, region, cells, categories, now.year)

        for category in categories:
            candidates = per_category[category.label]
            ctx.session.record_found(len(candidates))
            survivors = self._prefilter(ctx, region, candidates)
            logger.info(
                "Stage 3: pre-filter %s: %s candidates -> %s survivors",
                category.label,
                len(candidates),
                len(survivors),
            )
            if not survivors:
                continue
            if not self.check_budget(ctx):
                return
            logger.info("Stage 4: details + scoring for %s (%s places)", category.label, len(survivors))
            for candidate in survivors:
                self._process_candidate(ctx, candidate, category)

    def _search(
        self,
        ctx: SessionContext,
        region: Region,
        cells: List[Cell],
        categories: Sequence[Category],
        year: int,
    ) -> Dict[str, Dict[str, Candidate]]:
        units = [(cell, category) for category in categories for cell in cells]
        if self.max_workers > 1 and len(units) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [
                    executor.submit(self.search_unit, ctx.client, region, cell, category, year)
                    for cell, category in units
                ]
                try:
                    results = [f.result() for f in futures]
                except BaseException:
                    for f in futures:
                        f.cancel()
                    raise
        else:
            results = [
                self.search_unit(ctx.client, region, cell, category, year)
                for cell, category in units
            ]

        merged: Dict[str, Dict[str, Candidate]] = {c.label: {} for c in categories}
        for (_, category), result in zip(units, results):
            merged[category.label].update(result.candidates)
            ctx.saturated_cells.extend(result.saturated_cells)
            for message in result.errors:
                ctx.session.record_error(message)
        return merged

    def search_unit(
        self,
        client: PlacesClient,
        region: Region,
        cell: Cell,
        category: Category,
        year: int,
    ) -> SearchUnitResult:
        """Run every query of one (cell, category) pair.

        Quota errors propagate; other query failures are collected and the
        query is skipped.
        """
        out = SearchUnitResult()
        plain, *variants = build_queries(category, region.short_name, year)

        def fetch(target: Cell, query: str = plain) -> List[Dict[str, Any]]:
            result = client.text_search(
                query, target.lat, target.lng, target.radius_m, category.primary_type
            )
            if result.error is not None:
                if isinstance(result.error, PlacesApiError) and result.error.is_quota_error:
                    raise result.error
                logger.warning("Query %r skipped: %s", query, result.error)
                out.errors.append(f"search failed for {query!r}: {result.error}")
            return result.results

        adaptive = self.planner.search_adaptive(cell, fetch)
        out.cells_searched += adaptive.cells_searched
        out.saturated_cells.extend(adaptive.saturated_cells)
        self._collect(out, region, category, adaptive.results, plain)

        for query in variants:
            self._collect(out, region, category, fetch(cell, query), query)
        return out

    def _collect(
        self,
        out: SearchUnitResult,
        region: Region,
        category: Category,
        results: Iterable[Dict[str, Any]],
        query: str,
    ) -> None:
        for raw in results:
            place_id = raw.get("place_id")
            if not place_id:
                continue
            location = place_location(raw)
            distance = (
                haversine_m(region.center_lat, region.center_lng, location[0], location[1])
                if location
                else None
            )
            out.candidates[place_id] = Candidate(
                external_place_id=place_id,
                raw=raw,
                category=category.label,
                distance_m=distance,
                query=query,
            )

    def _prefilter(
        self, ctx: SessionContext, region: Region, candidates: Dict[str, Candidate]
    ) -> List[Candidate]:
        survivors: List[Candidate] = []
        for candidate in candidates.values():
            if candidate.external_place_id in ctx.processed_ids:
                ctx.session.record_rejected(REJECT_ALREADY_PROCESSED)
                continue
            decision = prefilter_candidate(candidate, region, ctx.known_ids)
            logger.debug(
                "Pre-filter %s (%s): %s",
                candidate.name,
                candidate.external_place_id,
                decision.reason,
            )
            if decision.accepted:
                survivors.append(candidate)
            else:
                ctx.session.record_rejected(decision.reason)
        return survivors

    def _fetch_detail(self, ctx: SessionContext, place_id: str) -> Optional[Dict[str, Any]]:
        result = ctx.client.place_details(place_id, full=ctx.full_details)
        if result.error is not None:
            if isinstance(result.error, PlacesApiError) and result.error.is_quota_error:
                raise result.error
            ctx.session.record_error(f"details failed for {place_id}: {result.error}")
            ctx.session.record_rejected(REJECT_PROCESSING_ERROR)
            return None
        try:
            return detail_result(result.response)
        except ValueError as exc:
            ctx.session.record_error(f"bad details payload for {place_id}: {exc}")
            ctx.session.record_rejected(REJECT_PROCESSING_ERROR)
            return None

    def _process_candidate(self, ctx: SessionContext, candidate: Candidate, category: Category) -> None:
        place_id = candidate.external_place_id
        ctx.processed_ids.add(place_id)
        detail = self._fetch_detail(ctx, place_id)
        if detail is None:
            return

        try:
            if ctx.validate_categories and not validate_category(detail, category):
                ctx.session.record_rejected(REJECT_CATEGORY_MISMATCH)
                return
            prior = self.store.find_by_external_id(place_id)
            indicators = self.scorer.score(prior, detail)
            if indicators.confidence_score < ctx.confidence_threshold:
                logger.info(
                    "Below threshold: %s scored %s (< %s)",
                    detail.get("name"),
                    indicators.confidence_score,
                    ctx.confidence_threshold,
                )
                ctx.session.record_rejected(REJECT_BELOW_THRESHOLD)
                return
            record = build_record(
                prior,
                detail,
                category.label,
                indicators,
                self.clock(),
                ctx.update_type,
                fallback_location=place_location(candidate.raw),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Failed to process %s: %s", place_id, exc)
            ctx.session.record_error(f"processing failed for {place_id}: {exc}")
            ctx.session.record_rejected(REJECT_PROCESSING_ERROR)
            return

        self.store.upsert(record)
        if prior is None:
            ctx.session.record_new()
        else:
            ctx.session.record_updated()
        logger.info(
            "Saved %s (%s) score=%s age=%s",
            record.name,
            place_id,
            indicators.confidence_score,
            indicators.business_age_estimate.value,
        )

    # Refresh

    def refresh(self, ctx: SessionContext, region: Region) -> None:
        """Re-fetch stored places that still look new so their deltas can be scored."""
        now = self.clock()
        cutoff = now - timedelta(days=config.REFRESH_MIN_AGE_DAYS)
        due = [
            r
            for r in self.store.list_records_for_region(region)
            if r.external_place_id not in ctx.processed_ids
            and (
                r.indicators.recently_opened
                or r.indicators.confidence_score >= ctx.confidence_threshold
            )
            and (r.last_fetched is None or utc(r.last_fetched) <= cutoff)
        ]
        logger.info("Stage 0: refresh %s stored places in %s", len(due), region.name)
        if not due:
            return
        if not self.check_budget(ctx):
            return
        for prior in due:
            place_id = prior.external_place_id
            ctx.processed_ids.add(place_id)
            detail = self._fetch_detail(ctx, place_id)
            if detail is None:
                continue
            try:
                indicators = self.scorer.score(prior, detail)
                record = build_record(
                    prior,
                    detail,
                    prior.category,
                    indicators,
                    self.clock(),
                    ctx.update_type,
                    fallback_location=(prior.lat, prior.lng),
                )
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Failed to refresh %s: %s", place_id, exc)
                ctx.session.record_error(f"refresh failed for {place_id}: {exc}")
                ctx.session.record_rejected(REJECT_PROCESSING_ERROR)
                continue
            self.store.upsert(record)
            ctx.session.record_updated()


class Orchestrator:
    def __init__(
        self,
        client: PlacesClient,
        store: BusinessStore,
        regions: RegionDirectory,
        categories: CategoryDirectory,
        planner: Optional[GridPlanner] = None,
        scorer: Optional[NewBusinessScorer] = None,
        budget: Optional[BudgetConfig] = None,
        max_workers: int = 1,
        full_details: bool = False,
        validate_categories: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.regions = regions
        self.categories = categories
        self.budget = budget or BudgetConfig()
        self.full_details = full_details
        self.validate_categories = validate_categories
        self.pipeline = PlaceDiscoveryPipeline(
            store, planner=planner, scorer=scorer, max_workers=max_workers, clock=clock
        )
        self._active_regions: Set[int] = set()
        self._lock = threading.Lock()

    def start_initial_scraping(
        self, region_name: str, categories: Optional[Sequence[str]] = None
    ) -> ScrapeSession:
        regions = self._resolve_regions([region_name])
        resolved = self._resolve_categories(categories)
        return self._run(
            SessionType.INITIAL, regions, resolved, config.INITIAL_CONFIDENCE_THRESHOLD
        )

    def start_new_business_only(
        self,
        region_name: str,
        categories: Optional[Sequence[str]] = None,
        confidence_threshold: Optional[int] = None,
    ) -> ScrapeSession:
        regions = self._resolve_regions([region_name])
        resolved = self._resolve_categories(categories)
        if confidence_threshold is None:
            confidence_threshold = config.DEFAULT_CONFIDENCE_THRESHOLD
        return self._run(SessionType.NEW_BUSINESS_ONLY, regions, resolved, confidence_threshold)

    def start_weekly_update(
        self,
        region_names: Optional[Sequence[str]] = None,
        categories: Optional[Sequence[str]] = None,
    ) -> ScrapeSession:
        if region_names:
            regions = self._resolve_regions(region_names)
        else:
            regions = self.regions.list_top_level_regions()
        resolved = self._resolve_categories(categories)
        return self._run(
            SessionType.WEEKLY_UPDATE,
            regions,
            resolved,
            config.WEEKLY_CONFIDENCE_THRESHOLD,
            refresh=True,
        )

    def _resolve_regions(self, names: Sequence[str]) -> List[Region]:
        regions: Dict[int, Region] = {}
        for name in names:
            matches = self.regions.list_regions_by_name_or_zone(name)
            if not matches:
                raise RegionNotFoundError(f"Region not found: {name}")
            for region in matches:
                regions.setdefault(region.id, region)
        return list(regions.values())

    def _resolve_categories(self, labels: Optional[Sequence[str]]) -> List[Category]:
        available = self.categories.list_categories()
        if not labels:
            return available
        by_label = {c.label.lower(): c for c in available}
        resolved = []
        for label in labels:
            category = by_label.get(label.strip().lower())
            if category is None:
                raise CategoryNotFoundError(f"Category not found: {label}")
            resolved.append(category)
        return resolved

    def _claim(self, regions: List[Region]) -> None:
        ids = {r.id for r in regions}
        with self._lock:
            busy = ids & self._active_regions
            if busy:
                names = sorted(r.name for r in regions if r.id in busy)
                raise RegionBusyError(f"Session already running for: {', '.join(names)}")
            self._active_regions |= ids

    def _release(self, regions: List[Region]) -> None:
        with self._lock:
            self._active_regions -= {r.id for r in regions}

    def _run(
        self,
        session_type: SessionType,
        regions: List[Region],
        categories: List[Category],
        threshold: int,
        refresh: bool = False,
    ) -> ScrapeSession:
        self._claim(regions)
        metrics = RequestMetrics()
        session = ScrapeSession(
            session_type=session_type,
            target_area=[r.name for r in regions],
            target_categories=[c.label for c in categories],
        )
        ctx = SessionContext(
            session=session,
            client=self.client.for_session(metrics),
            metrics=metrics,
            budget=self.budget,
            confidence_threshold=threshold,
            update_type=session_type,
            full_details=self.full_details,
            validate_categories=self.validate_categories,
        )
        logger.info(
            "Session %s (%s) started: %s regions, categories=%s, threshold=%s",
            session.id,
            session_type.value,
            len(regions),
            ",".join(session.target_categories),
            threshold,
        )
        try:
            for region in regions:
                if not self.pipeline.check_budget(ctx):
                    break
                if refresh:
                    self.pipeline.refresh(ctx, region)
                self.pipeline.discover(ctx, region, categories)
                if ctx.budget_exceeded:
                    break
        except PlacesApiError as exc:
            session.sync_usage(metrics)
            session.mark_failed(f"Places API error: {exc}")
            if not exc.is_quota_error:
                raise
            return session
        except Exception as exc:
            session.sync_usage(metrics)
            session.mark_failed(f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            self._release(regions)

        session.sync_usage(metrics)
        if ctx.saturated_cells:
            logger.warning("%s cells saturated at the subdivision limit", len(ctx.saturated_cells))
        if ctx.budget_exceeded:
            session.mark_failed(BUDGET_EXCEEDED)
        else:
            session.mark_completed()
        return session
