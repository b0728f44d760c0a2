"""Business record stores keyed by Places id."""
from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Set

from . import config
from .geo import haversine_m
from .models import BusinessRecord, Region, ScoringIndicators, SessionType


class BusinessStore(Protocol):
    def find_by_external_id(self, external_place_id: str) -> Optional[BusinessRecord]:
        ...

    def upsert(self, record: BusinessRecord) -> None:
        ...

    def batch_list_external_ids_for_region(self, region: Region) -> Set[str]:
        ...

    def list_records_for_region(self, region: Region) -> List[BusinessRecord]:
        ...


def in_region(record: BusinessRecord, region: Region) -> bool:
    if record.lat is None or record.lng is None:
        return False
    limit = region.search_radius_m * config.GEOFENCE_FACTOR
    return haversine_m(region.center_lat, region.center_lng, record.lat, record.lng) <= limit


def merge_for_upsert(existing: Optional[BusinessRecord], record: BusinessRecord) -> BusinessRecord:
    """Keep ``first_seen`` from the stored row and never lower ``scraped_count``."""
    if existing is None:
        return record
    if existing.first_seen is not None:
        record.first_seen = existing.first_seen
    record.scraped_count = max(record.scraped_count, existing.scraped_count)
    return record


class InMemoryBusinessStore:
    def __init__(self) -> None:
        self._records: Dict[str, BusinessRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def find_by_external_id(self, external_place_id: str) -> Optional[BusinessRecord]:
        return self._records.get(external_place_id)

    def upsert(self, record: BusinessRecord) -> None:
        with self._lock:
            existing = self._records.get(record.external_place_id)
            self._records[record.external_place_id] = merge_for_upsert(existing, record)

    def batch_list_external_ids_for_region(self, region: Region) -> Set[str]:
        return {r.external_place_id for r in self.list_records_for_region(region)}

    def list_records_for_region(self, region: Region) -> List[BusinessRecord]:
        return [r for r in self._records.values() if in_region(r, region)]

    def all_records(self) -> List[BusinessRecord]:
        return list(self._records.values())


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteBusinessStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        cur = self.conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.fetchone()
        except sqlite3.DatabaseError:
            pass
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS businesses (
                place_id TEXT PRIMARY KEY,
                name TEXT,
                category TEXT,
                address TEXT,
                area TEXT,
                lat REAL,
                lng REAL,
                rating REAL,
                review_count INTEGER,
                website TEXT,
                phone TEXT,
                business_status TEXT,
                first_seen TEXT,
                last_fetched TEXT,
                scraped_count INTEGER,
                indicators_json TEXT,
                last_update_type TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_businesses_lat_lng ON businesses (lat, lng)")
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def find_by_external_id(self, external_place_id: str) -> Optional[BusinessRecord]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT * FROM businesses WHERE place_id = ?", (external_place_id,))
            row = cur.fetchone()
        return self._row_to_record(row) if row else None

    def upsert(self, record: BusinessRecord) -> None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                INSERT INTO businesses (
                    place_id, name, category, address, area, lat, lng, rating,
                    review_count, website, phone, business_status, first_seen,
                    last_fetched, scraped_count, indicators_json, last_update_type
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(place_id) DO UPDATE SET
                    name = excluded.name,
                    category = excluded.category,
                    address = excluded.address,
                    area = excluded.area,
                    lat = excluded.lat,
                    lng = excluded.lng,
                    rating = excluded.rating,
                    review_count = excluded.review_count,
                    website = excluded.website,
                    phone = excluded.phone,
                    business_status = excluded.business_status,
                    first_seen = COALESCE(businesses.first_seen, excluded.first_seen),
                    last_fetched = excluded.last_fetched,
                    scraped_count = MAX(businesses.scraped_count, excluded.scraped_count),
                    indicators_json = excluded.indicators_json,
                    last_update_type = excluded.last_update_type
                """,
                (
                    record.external_place_id,
                    record.name,
                    record.category,
                    record.address,
                    record.area,
                    record.lat,
                    record.lng,
                    record.rating,
                    record.review_count,
                    record.website,
                    record.phone,
                    record.business_status,
                    _to_iso(record.first_seen),
                    _to_iso(record.last_fetched),
                    record.scraped_count,
                    json.dumps(record.indicators.to_dict()),
                    record.last_update_type.value if record.last_update_type else None,
                ),
            )
            self.conn.commit()

    def batch_list_external_ids_for_region(self, region: Region) -> Set[str]:
        return {r.external_place_id for r in self.list_records_for_region(region)}

    def list_records_for_region(self, region: Region) -> List[BusinessRecord]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT * FROM businesses WHERE lat IS NOT NULL AND lng IS NOT NULL")
            rows = cur.fetchall()
        records = [self._row_to_record(row) for row in rows]
        return [r for r in records if in_region(r, region)]

    def _row_to_record(self, row: sqlite3.Row) -> BusinessRecord:
        indicators = json.loads(row["indicators_json"] or "{}")
        return BusinessRecord(
            external_place_id=row["place_id"],
            name=row["name"] or "",
            category=row["category"] or "",
            address=row["address"] or "",
            area=row["area"],
            lat=row["lat"],
            lng=row["lng"],
            rating=row["rating"],
            review_count=int(row["review_count"] or 0),
            website=row["website"],
            phone=row["phone"],
            business_status=row["business_status"],
            first_seen=_from_iso(row["first_seen"]),
            last_fetched=_from_iso(row["last_fetched"]),
            scraped_count=int(row["scraped_count"] or 0),
            indicators=ScoringIndicators.from_dict(indicators),
            last_update_type=SessionType(row["last_update_type"]) if row["last_update_type"] else None,
        )
