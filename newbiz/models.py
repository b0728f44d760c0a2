"""Domain records shared by the planner, pipeline, scorer and stores."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class RegionType(str, Enum):
    TOP_LEVEL = "top_level"
    ZONE = "zone"


class SessionType(str, Enum):
    INITIAL = "initial"
    WEEKLY_UPDATE = "weekly_update"
    NEW_BUSINESS_ONLY = "new_business_only"


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AgeEstimate(str, Enum):
    ULTRA_NEW = "ultra_new"
    VERY_NEW = "very_new"
    NEW = "new"
    RECENT = "recent"
    ESTABLISHED = "established"
    OLD = "old"
    UNKNOWN = "unknown"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    def downgraded(self) -> "ConfidenceLevel":
        if self is ConfidenceLevel.HIGH:
            return ConfidenceLevel.MEDIUM
        return ConfidenceLevel.LOW


@dataclass(frozen=True)
class Region:
    id: int
    name: str
    type: RegionType
    center_lat: float
    center_lng: float
    search_radius_m: float
    priority_tier: int
    parent_id: Optional[int] = None

    @property
    def short_name(self) -> str:
        # "Badung - Kuta & Seminyak" -> "Kuta & Seminyak"
        if " - " in self.name:
            return self.name.split(" - ", 1)[1]
        return self.name


@dataclass(frozen=True)
class Category:
    label: str
    external_type_tags: Tuple[str, ...]
    keyword_synonyms: Tuple[str, ...] = ()

    @property
    def primary_type(self) -> Optional[str]:
        return self.external_type_tags[0] if self.external_type_tags else None


@dataclass(frozen=True)
class Cell:
    lat: float
    lng: float
    radius_m: float
    depth: int = 0


@dataclass
class Candidate:
    external_place_id: str
    raw: Dict[str, Any]
    category: str
    distance_m: Optional[float] = None
    query: Optional[str] = None

    @property
    def name(self) -> str:
        return str(self.raw.get("name") or "")


@dataclass
class PhotoAnalysis:
    total_photos: int = 0
    recent_photo_count: int = 0
    unique_uploaders: int = 0
    newest_photo_age_days: Optional[int] = None


@dataclass
class SocialPresence:
    website: Optional[str] = None
    social_links: List[str] = field(default_factory=list)


@dataclass
class StatusChange:
    previous_status: Optional[str]
    current_status: Optional[str]
    changed: bool
    became_operational: bool


@dataclass
class ReviewSpike:
    previous_count: int
    current_count: int
    growth_percent: float
    days_since_last_fetch: int


@dataclass
class ReviewAnalysis:
    sampled_reviews: int = 0
    oldest_review_date: Optional[str] = None
    newest_review_date: Optional[str] = None
    oldest_review_age_days: Optional[int] = None


@dataclass
class ScoreBreakdown:
    age_component: float = 0.0
    signals_component: float = 0.0
    activity_component: float = 0.0
    weighted_sum: float = 0.0
    penalties: float = 0.0
    bonus: float = 0.0


@dataclass
class ScoringIndicators:
    recently_opened: bool = False
    few_reviews: bool = False
    low_rating_count: bool = False
    has_photos: bool = False
    has_recent_photo: bool = False
    photo_analysis: PhotoAnalysis = field(default_factory=PhotoAnalysis)
    has_website: bool = False
    has_social: bool = False
    social: SocialPresence = field(default_factory=SocialPresence)
    status_change: Optional[StatusChange] = None
    rating_improvement: bool = False
    review_spike: bool = False
    review_spike_detail: Optional[ReviewSpike] = None
    newly_discovered: bool = False
    suspicious_review_count: bool = False
    business_age_estimate: AgeEstimate = AgeEstimate.UNKNOWN
    confidence_level: ConfidenceLevel = ConfidenceLevel.LOW
    confidence_score: int = 0
    signals: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    breakdown: ScoreBreakdown = field(default_factory=ScoreBreakdown)
    review_analysis: ReviewAnalysis = field(default_factory=ReviewAnalysis)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["business_age_estimate"] = self.business_age_estimate.value
        data["confidence_level"] = self.confidence_level.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoringIndicators":
        data = dict(data)
        status_change = data.pop("status_change", None)
        spike = data.pop("review_spike_detail", None)
        return cls(
            photo_analysis=PhotoAnalysis(**(data.pop("photo_analysis", None) or {})),
            social=SocialPresence(**(data.pop("social", None) or {})),
            status_change=StatusChange(**status_change) if status_change else None,
            review_spike_detail=ReviewSpike(**spike) if spike else None,
            breakdown=ScoreBreakdown(**(data.pop("breakdown", None) or {})),
            review_analysis=ReviewAnalysis(**(data.pop("review_analysis", None) or {})),
            business_age_estimate=AgeEstimate(data.pop("business_age_estimate", "unknown")),
            confidence_level=ConfidenceLevel(data.pop("confidence_level", "low")),
            **data,
        )


@dataclass
class BusinessRecord:
    external_place_id: str
    name: str
    category: str
    address: str = ""
    area: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    rating: Optional[float] = None
    review_count: int = 0
    website: Optional[str] = None
    phone: Optional[str] = None
    business_status: Optional[str] = None
    first_seen: Optional[datetime] = None
    last_fetched: Optional[datetime] = None
    scraped_count: int = 0
    indicators: ScoringIndicators = field(default_factory=ScoringIndicators)
    last_update_type: Optional[SessionType] = None
