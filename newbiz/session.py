"""Scrape session bookkeeping."""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .http import RequestMetrics
from .models import SessionStatus, SessionType

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


class SessionFinalizedError(RuntimeError):
    """Raised when a completed or failed session is modified."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScrapeSession:
    session_type: SessionType
    target_area: List[str]
    target_categories: List[str]
    id: int = field(default_factory=lambda: next(_session_ids))
    started_at: datetime = field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None
    status: SessionStatus = SessionStatus.RUNNING
    api_calls_count: int = 0
    estimated_cost: float = 0.0
    businesses_found: int = 0
    businesses_new: int = 0
    businesses_updated: int = 0
    businesses_rejected: int = 0
    rejection_counts: Dict[str, int] = field(default_factory=dict)
    error_log: List[str] = field(default_factory=list)

    @property
    def is_finalized(self) -> bool:
        return self.status is not SessionStatus.RUNNING

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def cost_per_business(self) -> Optional[float]:
        accepted = self.businesses_new + self.businesses_updated
        if accepted == 0:
            return None
        return self.estimated_cost / accepted

    def _ensure_running(self) -> None:
        if self.is_finalized:
            raise SessionFinalizedError(f"Session {self.id} is already {self.status.value}")

    def record_found(self, count: int = 1) -> None:
        self._ensure_running()
        self.businesses_found += count

    def record_new(self) -> None:
        self._ensure_running()
        self.businesses_new += 1

    def record_updated(self) -> None:
        self._ensure_running()
        self.businesses_updated += 1

    def record_rejected(self, reason: str, count: int = 1) -> None:
        self._ensure_running()
        self.businesses_rejected += count
        self.rejection_counts[reason] = self.rejection_counts.get(reason, 0) + count

    def record_error(self, message: str) -> None:
        self._ensure_running()
        self.error_log.append(message)

    def sync_usage(self, metrics: RequestMetrics) -> None:
        self._ensure_running()
        self.api_calls_count = metrics.total_calls
        self.estimated_cost = round(metrics.total_cost, 4)

    def mark_completed(self) -> None:
        self._ensure_running()
        self.status = SessionStatus.COMPLETED
        self.completed_at = _utc_now()
        logger.info(
            "Session %s completed: found=%s new=%s updated=%s rejected=%s calls=%s cost=$%.3f",
            self.id,
            self.businesses_found,
            self.businesses_new,
            self.businesses_updated,
            self.businesses_rejected,
            self.api_calls_count,
            self.estimated_cost,
        )

    def mark_failed(self, reason: str) -> None:
        self._ensure_running()
        self.error_log.append(reason)
        self.status = SessionStatus.FAILED
        self.completed_at = _utc_now()
        logger.error("Session %s failed: %s", self.id, reason)

    def summary(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "type": self.session_type.value,
            "status": self.status.value,
            "target_area": list(self.target_area),
            "target_categories": list(self.target_categories),
            "api_calls": self.api_calls_count,
            "estimated_cost": self.estimated_cost,
            "found": self.businesses_found,
            "new": self.businesses_new,
            "updated": self.businesses_updated,
            "rejected": self.businesses_rejected,
            "rejection_counts": dict(sorted(self.rejection_counts.items())),
            "duration_seconds": self.duration_seconds,
            "cost_per_business": self.cost_per_business,
            "errors": len(self.error_log),
        }
