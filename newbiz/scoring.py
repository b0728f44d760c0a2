"""New-business confidence scoring.

The score is a weighted blend of three components, each on a 0-100 scale:

- age: how young the oldest visible review is, discounted by how much of the
  review history the sample covers
- signals: official "opened recently" flag, review count band, status
  changes and first discovery
- activity: review spikes, rating improvements, photo freshness and web
  presence

Penalties and a combo bonus are applied after weighting, and the result is
clamped to 0..100. All weights and thresholds live in ``config``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urlparse

from . import config
from .models import (
    AgeEstimate,
    BusinessRecord,
    ConfidenceLevel,
    PhotoAnalysis,
    ReviewAnalysis,
    ReviewSpike,
    ScoreBreakdown,
    ScoringIndicators,
    SocialPresence,
    StatusChange,
)

logger = logging.getLogger(__name__)

NEW_AGE_BUCKETS = (AgeEstimate.ULTRA_NEW, AgeEstimate.VERY_NEW, AgeEstimate.NEW)
MATURE_AGE_BUCKETS = (AgeEstimate.ESTABLISHED, AgeEstimate.OLD)


def utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def from_timestamp(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _dict_entries(items: Any) -> List[Dict[str, Any]]:
    # Malformed list entries in a payload are ignored.
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def age_bucket(age_days: Optional[int]) -> AgeEstimate:
    if age_days is None:
        return AgeEstimate.UNKNOWN
    for upper, bucket in config.AGE_BUCKETS_DAYS:
        if age_days < upper:
            return AgeEstimate(bucket)
    return AgeEstimate.OLD


def analyze_reviews(reviews: List[Dict[str, Any]], now: datetime) -> ReviewAnalysis:
    reviews = _dict_entries(reviews)
    dates = [d for d in (from_timestamp(r.get("time")) for r in reviews) if d is not None]
    if not dates:
        return ReviewAnalysis(sampled_reviews=len(reviews))
    oldest = min(dates)
    newest = max(dates)
    return ReviewAnalysis(
        sampled_reviews=len(reviews),
        oldest_review_date=oldest.date().isoformat(),
        newest_review_date=newest.date().isoformat(),
        oldest_review_age_days=max(0, (now - oldest).days),
    )


def analyze_photos(photos: List[Dict[str, Any]], now: datetime) -> PhotoAnalysis:
    photos = _dict_entries(photos)
    recent = 0
    newest: Optional[datetime] = None
    uploaders: Set[str] = set()
    for photo in photos:
        taken = from_timestamp(photo.get("time"))
        if taken is not None:
            if (now - taken).days < config.RECENT_PHOTO_DAYS:
                recent += 1
            if newest is None or taken > newest:
                newest = taken
        author = photo.get("author_name")
        if not author:
            attributions = photo.get("html_attributions") or []
            author = attributions[0] if attributions else None
        if author:
            uploaders.add(str(author))
    return PhotoAnalysis(
        total_photos=len(photos),
        recent_photo_count=recent,
        unique_uploaders=len(uploaders),
        newest_photo_age_days=max(0, (now - newest).days) if newest is not None else None,
    )


def analyze_social(detail: Dict[str, Any]) -> SocialPresence:
    website = detail.get("website")
    if not isinstance(website, str) or not website:
        website = None
    links: List[str] = []
    if website:
        host = (urlparse(website).hostname or "").lower()
        if any(host == h or host.endswith("." + h) for h in config.SOCIAL_HOSTS):
            links.append(website)
    return SocialPresence(website=website, social_links=links)


def has_official_new_flag(detail: Dict[str, Any]) -> bool:
    if detail.get("business_status") == config.BUSINESS_STATUS_OPENED_RECENTLY:
        return True
    summary = detail.get("editorial_summary")
    overview = summary.get("overview") if isinstance(summary, dict) else None
    if not isinstance(overview, str):
        return False
    overview = overview.lower()
    return any(hint in overview for hint in config.EDITORIAL_NEW_OPENING_HINTS)


def detect_review_spike(
    prior: Optional[BusinessRecord], current_count: int, now: datetime
) -> Optional[ReviewSpike]:
    """Growth since the prior fetch, or None when the prior is too old or empty."""
    if prior is None or prior.review_count <= 0 or prior.last_fetched is None:
        return None
    days = (now - utc(prior.last_fetched)).days
    if days > config.REVIEW_SPIKE_WINDOW_DAYS:
        return None
    growth = (current_count - prior.review_count) / prior.review_count * 100.0
    return ReviewSpike(
        previous_count=prior.review_count,
        current_count=current_count,
        growth_percent=round(growth, 2),
        days_since_last_fetch=days,
    )


def detect_status_change(
    prior: Optional[BusinessRecord], current_status: Optional[str]
) -> Optional[StatusChange]:
    if prior is None:
        return None
    previous = prior.business_status
    changed = previous is not None and current_status is not None and previous != current_status
    return StatusChange(
        previous_status=previous,
        current_status=current_status,
        changed=changed,
        became_operational=changed and current_status == config.BUSINESS_STATUS_OPERATIONAL,
    )


def _tiered_points(value: int, tiers, inclusive: bool) -> float:
    for minimum, points in tiers:
        if (value >= minimum) if inclusive else (value > minimum):
            return points
    return 0.0


class NewBusinessScorer:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def score(
        self,
        prior: Optional[BusinessRecord],
        detail: Dict[str, Any],
        reviews: Optional[List[Dict[str, Any]]] = None,
        photos: Optional[List[Dict[str, Any]]] = None,
        now: Optional[datetime] = None,
    ) -> ScoringIndicators:
        now = utc(now or self._clock())
        reviews = (detail.get("reviews") or []) if reviews is None else reviews
        photos = (detail.get("photos") or []) if photos is None else photos

        ind = ScoringIndicators()
        total_reviews = int(detail.get("user_ratings_total") or 0)
        rating = detail.get("rating")
        status = detail.get("business_status")

        # Age and initial confidence
        ind.review_analysis = analyze_reviews(reviews, now)
        ind.business_age_estimate = age_bucket(ind.review_analysis.oldest_review_age_days)
        official = has_official_new_flag(detail)
        ind.confidence_level = self._initial_confidence(
            ind.business_age_estimate, ind.review_analysis, total_reviews, official
        )

        # Raw indicators
        ind.recently_opened = official or ind.business_age_estimate in (
            AgeEstimate.ULTRA_NEW,
            AgeEstimate.VERY_NEW,
        )
        ind.few_reviews = total_reviews < config.FEW_REVIEWS_THRESHOLD
        ind.low_rating_count = total_reviews < config.LOW_RATING_COUNT_THRESHOLD
        ind.photo_analysis = analyze_photos(photos, now)
        ind.has_photos = ind.photo_analysis.total_photos > 0
        ind.has_recent_photo = ind.photo_analysis.recent_photo_count > 0
        ind.social = analyze_social(detail)
        ind.has_social = bool(ind.social.social_links)
        ind.has_website = bool(ind.social.website) and not ind.has_social
        ind.status_change = detect_status_change(prior, status)
        ind.newly_discovered = prior is None

        rating_delta = 0.0
        if prior is not None and prior.rating is not None and rating is not None:
            rating_delta = float(rating) - float(prior.rating)
        ind.rating_improvement = rating_delta > config.RATING_CHANGE_THRESHOLD
        rating_decline = rating_delta < -config.RATING_CHANGE_THRESHOLD

        ind.review_spike_detail = detect_review_spike(prior, total_reviews, now)
        ind.review_spike = (
            ind.review_spike_detail is not None
            and ind.review_spike_detail.growth_percent > config.REVIEW_SPIKE_MIN_GROWTH_PERCENT
        )

        self._validate(ind, total_reviews)
        if rating_decline:
            ind.warnings.append(f"rating declined by {abs(rating_delta):.1f}")

        # Weighted components
        breakdown = ScoreBreakdown(
            age_component=self._age_component(ind),
            signals_component=self._signals_component(ind, official, total_reviews),
            activity_component=self._activity_component(ind),
        )
        breakdown.weighted_sum = (
            breakdown.age_component * config.SCORE_WEIGHT_AGE
            + breakdown.signals_component * config.SCORE_WEIGHT_SIGNALS
            + breakdown.activity_component * config.SCORE_WEIGHT_ACTIVITY
        )
        breakdown.penalties = self._penalties(ind, status, rating_decline)
        after_penalties = breakdown.weighted_sum - breakdown.penalties
        if (
            after_penalties >= config.COMBO_MIN_SCORE
            and len(ind.signals) >= config.COMBO_MIN_INDICATORS
        ):
            breakdown.bonus = config.COMBO_BONUS
        ind.breakdown = breakdown
        ind.confidence_score = int(max(0.0, min(100.0, after_penalties + breakdown.bonus)))
        logger.debug(
            "Scored %s: %s (age=%s level=%s signals=%s)",
            detail.get("place_id"),
            ind.confidence_score,
            ind.business_age_estimate.value,
            ind.confidence_level.value,
            ",".join(ind.signals),
        )
        return ind

    def _initial_confidence(
        self,
        bucket: AgeEstimate,
        analysis: ReviewAnalysis,
        total_reviews: int,
        official: bool,
    ) -> ConfidenceLevel:
        if bucket is AgeEstimate.UNKNOWN:
            return ConfidenceLevel.LOW
        if analysis.sampled_reviews >= total_reviews:
            return ConfidenceLevel.HIGH
        if official and bucket in NEW_AGE_BUCKETS:
            return ConfidenceLevel.HIGH
        return ConfidenceLevel.MEDIUM

    def _validate(self, ind: ScoringIndicators, total_reviews: int) -> None:
        bucket = ind.business_age_estimate
        if bucket is AgeEstimate.OLD and ind.recently_opened:
            ind.recently_opened = False
            ind.warnings.append("recently_opened flag contradicts old review history; cleared")
        if (
            bucket in (AgeEstimate.ULTRA_NEW, AgeEstimate.VERY_NEW)
            and total_reviews > config.SUSPICIOUS_REVIEW_COUNT
        ):
            ind.confidence_level = ind.confidence_level.downgraded()
            ind.suspicious_review_count = True
            ind.warnings.append(
                f"{total_reviews} reviews is unusually many for a {bucket.value} business"
            )
        if ind.review_spike and total_reviews < config.REVIEW_SPIKE_MIN_REVIEWS:
            ind.review_spike = False
            ind.warnings.append("review spike ignored: too few reviews")
        if bucket in MATURE_AGE_BUCKETS and ind.newly_discovered:
            ind.warnings.append(f"newly discovered but review history looks {bucket.value}")

    def _age_component(self, ind: ScoringIndicators) -> float:
        base = config.AGE_BASE_SCORES[ind.business_age_estimate.value]
        return base * config.CONFIDENCE_FACTORS[ind.confidence_level.value]

    def _signals_component(
        self, ind: ScoringIndicators, official: bool, total_reviews: int
    ) -> float:
        score = 0.0
        if official and ind.recently_opened:
            score += config.SIGNAL_OFFICIAL_RECENTLY_OPENED
            ind.signals.append("official_recently_opened")
        for upper, points in config.SIGNAL_REVIEW_BANDS:
            if total_reviews < upper:
                score += points
                ind.signals.append("low_review_count")
                break
        if ind.status_change is not None and ind.status_change.changed:
            if ind.status_change.became_operational:
                score += config.SIGNAL_BECAME_OPERATIONAL
                ind.signals.append("became_operational")
            else:
                score += config.SIGNAL_STATUS_CHANGED
                ind.signals.append("status_changed")
        if ind.newly_discovered:
            score += config.SIGNAL_FIRST_DISCOVERY
            ind.signals.append("newly_discovered")
        return min(100.0, score)

    def _activity_component(self, ind: ScoringIndicators) -> float:
        score = 0.0
        if ind.review_spike:
            score += config.ACTIVITY_REVIEW_SPIKE
            ind.signals.append("review_spike")
        if ind.rating_improvement:
            score += config.ACTIVITY_RATING_IMPROVEMENT
            ind.signals.append("rating_improvement")

        photos = ind.photo_analysis
        points = _tiered_points(
            photos.recent_photo_count, config.ACTIVITY_RECENT_PHOTO_TIERS, inclusive=False
        )
        if points:
            score += points
            ind.signals.append("recent_photos")
        points = _tiered_points(
            photos.unique_uploaders, config.ACTIVITY_UPLOADER_TIERS, inclusive=True
        )
        if points:
            score += points
            ind.signals.append("multiple_uploaders")
        if photos.newest_photo_age_days is not None:
            for upper, points in config.ACTIVITY_PHOTO_AGE_TIERS:
                if photos.newest_photo_age_days < upper:
                    score += points
                    ind.signals.append("fresh_photo")
                    break

        if ind.has_website:
            score += config.ACTIVITY_WEBSITE
            ind.signals.append("website")
        if ind.has_social:
            score += config.ACTIVITY_SOCIAL
            ind.signals.append("social")
        return min(100.0, score)

    def _penalties(
        self, ind: ScoringIndicators, status: Optional[str], rating_decline: bool
    ) -> float:
        penalty = 0.0
        if ind.business_age_estimate is AgeEstimate.OLD:
            penalty += config.PENALTY_OLD_AGE
        if rating_decline:
            penalty += config.PENALTY_RATING_DECLINE
        if status == config.BUSINESS_STATUS_CLOSED_PERMANENTLY:
            penalty += config.PENALTY_CLOSED_PERMANENTLY
        elif status == config.BUSINESS_STATUS_CLOSED_TEMPORARILY:
            penalty += config.PENALTY_CLOSED_TEMPORARILY
        if ind.suspicious_review_count:
            penalty += config.PENALTY_SUSPICIOUS_REVIEWS
        return penalty
