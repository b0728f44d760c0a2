"""Region and category directories, area labels and category validation."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .models import Category, Region, RegionType

logger = logging.getLogger(__name__)


class RegionNotFoundError(LookupError):
    pass


class CategoryNotFoundError(LookupError):
    pass


class RegionDirectory(Protocol):
    def list_regions_by_name_or_zone(self, name: str) -> List[Region]:
        ...

    def list_top_level_regions(self) -> List[Region]:
        ...


class CategoryDirectory(Protocol):
    def list_categories(self) -> List[Category]:
        ...


# name, center_lat, center_lng, search_radius_m, priority (1 = most important)
BALI_ZONES: List[Tuple[str, float, float, int, int]] = [
    ("Badung - Kuta & Seminyak", -8.716667, 115.166667, 8000, 1),
    ("Badung - Nusa Dua & Jimbaran", -8.800000, 115.200000, 8000, 1),
    ("Badung - Canggu & Berawa", -8.650000, 115.133333, 7000, 1),
    ("Badung - Mengwi & Abiansemal", -8.566667, 115.175000, 9000, 1),
    ("Badung - Petang & Pegunungan", -8.416667, 115.200000, 10000, 1),
    ("Badung - Border Timur & Tengah", -8.666667, 115.200000, 8000, 1),
    ("Denpasar - Selatan & Timur", -8.675000, 115.233333, 5000, 2),
    ("Denpasar - Barat & Utara", -8.625000, 115.200000, 5000, 2),
    ("Gianyar - Ubud & Sekitar", -8.500000, 115.266667, 8000, 3),
    ("Gianyar - Tegallalang & Payangan", -8.425000, 115.275000, 9000, 3),
    ("Gianyar - Sukawati & Blahbatuh", -8.575000, 115.325000, 7000, 3),
    ("Gianyar - Tampaksiring", -8.433333, 115.366667, 7000, 3),
    ("Tabanan - Kota & Kediri", -8.465000, 115.145000, 7000, 4),
    ("Tabanan - Selemadeg", -8.430000, 115.133333, 10000, 4),
    ("Tabanan - Pantai (Tanah Lot)", -8.620833, 115.086667, 8000, 4),
    ("Tabanan - Penebel & Baturiti", -8.445000, 115.185000, 9000, 4),
    ("Tabanan - Pupuan & Pegunungan", -8.383333, 115.100000, 10000, 4),
    ("Buleleng - Singaraja Pusat", -8.116667, 115.083333, 7000, 5),
    ("Buleleng - Lovina & Seririt", -8.150000, 115.016667, 10000, 5),
    ("Buleleng - Gerokgak (Barat)", -8.200000, 114.916667, 12000, 5),
    ("Buleleng - Sawan & Kubutambahan", -8.091667, 115.133333, 9000, 5),
    ("Buleleng - Tejakula (Timur)", -8.141667, 115.300000, 10000, 5),
    ("Buleleng - Busungbiu & Pegunungan", -8.250000, 115.050000, 11000, 5),
    ("Klungkung - Daratan", -8.533333, 115.400000, 7000, 6),
    ("Klungkung - Nusa Penida", -8.733333, 115.541667, 12000, 6),
    ("Klungkung - Nusa Lembongan & Ceningan", -8.683333, 115.450000, 5000, 6),
    ("Bangli - Kota & Susut", -8.425000, 115.325000, 8000, 7),
    ("Bangli - Kintamani & Danau Batur", -8.250000, 115.375000, 12000, 7),
    ("Bangli - Tembuku", -8.483333, 115.366667, 7000, 7),
    ("Karangasem - Amlapura & Manggis", -8.500000, 115.533333, 8000, 8),
    ("Karangasem - Candidasa", -8.516667, 115.566667, 7000, 8),
    ("Karangasem - Amed & Tulamben", -8.341667, 115.616667, 10000, 8),
    ("Karangasem - Bebandem & Sidemen", -8.458333, 115.466667, 9000, 8),
    ("Karangasem - Rendang & Gunung Agung", -8.366667, 115.433333, 10000, 8),
    ("Jembrana - Negara Pusat", -8.350000, 114.616667, 8000, 9),
    ("Jembrana - Pantai Barat (Medewi)", -8.466667, 114.933333, 10000, 9),
    ("Jembrana - Pekutatan & Melaya", -8.383333, 114.766667, 9000, 9),
    ("Jembrana - Mendoyo", -8.400000, 114.683333, 8000, 9),
]

# District zones nested under a parent zone: name, parent, center_lat, center_lng
BALI_DISTRICTS: List[Tuple[str, str, float, float]] = [
    ("Kuta", "Badung - Kuta & Seminyak", -8.716667, 115.166667),
    ("Kuta Selatan", "Badung - Nusa Dua & Jimbaran", -8.800000, 115.116667),
    ("Kuta Utara", "Badung - Canggu & Berawa", -8.650000, 115.100000),
    ("Mengwi", "Badung - Mengwi & Abiansemal", -8.583333, 115.150000),
    ("Abiansemal", "Badung - Mengwi & Abiansemal", -8.550000, 115.200000),
    ("Petang", "Badung - Petang & Pegunungan", -8.400000, 115.200000),
    ("Denpasar Selatan", "Denpasar - Selatan & Timur", -8.700000, 115.216667),
    ("Denpasar Timur", "Denpasar - Selatan & Timur", -8.650000, 115.250000),
    ("Denpasar Barat", "Denpasar - Barat & Utara", -8.650000, 115.183333),
    ("Denpasar Utara", "Denpasar - Barat & Utara", -8.600000, 115.216667),
    ("Ubud", "Gianyar - Ubud & Sekitar", -8.500000, 115.266667),
    ("Tegallalang", "Gianyar - Tegallalang & Payangan", -8.450000, 115.300000),
    ("Sukawati", "Gianyar - Sukawati & Blahbatuh", -8.600000, 115.300000),
    ("Tampaksiring", "Gianyar - Tampaksiring", -8.450000, 115.350000),
    ("Kediri", "Tabanan - Kota & Kediri", -8.480000, 115.140000),
    ("Penebel", "Tabanan - Penebel & Baturiti", -8.430000, 115.180000),
    ("Singaraja", "Buleleng - Singaraja Pusat", -8.116667, 115.083333),
    ("Seririt", "Buleleng - Lovina & Seririt", -8.150000, 114.950000),
    ("Nusa Penida", "Klungkung - Nusa Penida", -8.750000, 115.550000),
    ("Kintamani", "Bangli - Kintamani & Danau Batur", -8.300000, 115.350000),
    ("Sidemen", "Karangasem - Bebandem & Sidemen", -8.450000, 115.450000),
    ("Negara", "Jembrana - Negara Pusat", -8.350000, 114.666667),
]
DISTRICT_RADIUS_M = 3000


def priority_to_tier(priority: int) -> int:
    """Collapse the 1-9 zone priority onto the 1-5 grid tier scale."""
    if priority <= 2:
        return 1
    if priority == 3:
        return 2
    if priority <= 5:
        return 3
    if priority <= 7:
        return 4
    return 5


def build_bali_regions() -> List[Region]:
    regions: List[Region] = []
    ids_by_name: Dict[str, int] = {}
    priorities: Dict[str, int] = {}
    for name, lat, lng, radius, priority in BALI_ZONES:
        region = Region(
            id=len(regions) + 1,
            name=name,
            type=RegionType.TOP_LEVEL,
            center_lat=lat,
            center_lng=lng,
            search_radius_m=radius,
            priority_tier=priority_to_tier(priority),
        )
        regions.append(region)
        ids_by_name[name] = region.id
        priorities[name] = priority
    for name, parent, lat, lng in BALI_DISTRICTS:
        regions.append(
            Region(
                id=len(regions) + 1,
                name=name,
                type=RegionType.ZONE,
                center_lat=lat,
                center_lng=lng,
                search_radius_m=DISTRICT_RADIUS_M,
                priority_tier=priority_to_tier(priorities[parent]),
                parent_id=ids_by_name[parent],
            )
        )
    return regions


class StaticRegionDirectory:
    def __init__(self, regions: Optional[Iterable[Region]] = None) -> None:
        self.regions = list(regions) if regions is not None else build_bali_regions()

    def list_regions_by_name_or_zone(self, name: str) -> List[Region]:
        """Regions named exactly ``name`` or zones named ``"<name> - ..."``."""
        needle = name.strip().lower()
        prefix = needle + " - "
        return [
            r
            for r in self.regions
            if r.name.lower() == needle or r.name.lower().startswith(prefix)
        ]

    def list_top_level_regions(self) -> List[Region]:
        top = [r for r in self.regions if r.type is RegionType.TOP_LEVEL]
        return sorted(top, key=lambda r: (r.priority_tier, r.id))


DEFAULT_CATEGORIES: List[Category] = [
    Category(
        label="Café",
        external_type_tags=("cafe", "coffee_shop"),
        keyword_synonyms=(
            "warung kopi", "kedai kopi", "coffee roastery", "kopi susu", "kopi tubruk",
            "kopi hitam", "espresso", "latte", "cappuccino", "coffee shop", "coffee house",
            "roastery", "kopi lokal", "café", "espresso bar", "coffee bar", "coffee corner",
            "coffee stand",
        ),
    ),
    Category(
        label="Restoran",
        external_type_tags=("restaurant", "food"),
        keyword_synonyms=(
            "restoran", "rumah makan", "tempat makan", "warung makan", "kafe", "bistro",
            "dining", "kuliner", "masakan", "food court", "food truck", "warung nasi",
            "restaurant", "eatery", "cafe", "dining room", "kitchen",
        ),
    ),
    Category(
        label="Sekolah",
        external_type_tags=("school", "university"),
        keyword_synonyms=(
            "sekolah", "sd", "smp", "sma", "smk", "tk", "paud", "universitas", "institut",
            "akademi", "politeknik", "sekolah dasar", "sekolah menengah", "sekolah tinggi",
            "school", "university", "college", "academy", "institute", "elementary school",
            "high school", "middle school", "kindergarten", "preschool",
        ),
    ),
    Category(
        label="Villa",
        external_type_tags=("lodging",),
        keyword_synonyms=(
            "villa", "penginapan", "homestay", "guesthouse", "villa pribadi", "villa mewah",
            "villa resort", "private villa", "luxury villa", "beach villa", "mountain villa",
            "villa rental", "holiday villa", "vacation villa",
        ),
    ),
    Category(
        label="Hotel",
        external_type_tags=("lodging", "hotel"),
        keyword_synonyms=(
            "hotel", "resort", "penginapan", "akomodasi", "hotel bintang", "boutique hotel",
            "budget hotel", "hotel mewah", "resort hotel", "hotel internasional",
            "accommodation", "luxury hotel", "business hotel", "hotel chain",
        ),
    ),
    Category(
        label="Popular Spot",
        external_type_tags=("tourist_attraction", "point_of_interest", "park", "natural_feature"),
        keyword_synonyms=(
            "pantai", "beach", "gunung", "mountain", "air terjun", "waterfall", "trekking",
            "hiking", "surf", "surfing", "diving", "snorkeling", "temple", "pura",
            "monument", "museum", "gallery", "art", "nature", "alam", "adventure",
            "outdoor", "camping", "glamping", "tourist attraction", "landmark",
        ),
    ),
    Category(
        label="Lainnya",
        external_type_tags=("coworking_space", "shopping_mall", "gym", "spa", "bar", "night_club"),
        keyword_synonyms=(
            "coworking", "co-working", "workspace", "mall", "shopping", "gym", "fitness",
            "spa", "massage", "bar", "pub", "club", "nightclub", "entertainment", "hiburan",
            "olahraga", "kesehatan", "beauty", "kecantikan", "salon", "coworking space",
            "shopping mall", "fitness center", "beauty salon",
        ),
    ),
]

# Strong name keywords used to pick a dominant category when types are ambiguous
DOMINANT_NAME_KEYWORDS: Dict[str, Sequence[str]] = {
    "Hotel": ("hotel", "resort", "penginapan", "akomodasi", "inn", "hostel", "motel"),
    "Café": ("cafe", "coffee", "kopi", "espresso", "cappuccino", "latte", "barista", "roastery"),
    "Restoran": ("restaurant", "restoran", "rumah makan", "warung", "dining", "kuliner"),
    "Sekolah": ("school", "sekolah", "sd", "smp", "sma", "universitas", "kampus", "academy"),
    "Villa": ("villa", "private villa", "homestay", "vacation rental"),
    "Popular Spot": ("beach", "pantai", "waterfall", "temple", "pura", "museum", "gallery", "park"),
    "Lainnya": ("gym", "spa", "coworking", "mall", "bar", "club", "nightclub", "salon"),
}


class StaticCategoryDirectory:
    def __init__(self, categories: Optional[Iterable[Category]] = None) -> None:
        self.categories = list(categories) if categories is not None else list(DEFAULT_CATEGORIES)

    def list_categories(self) -> List[Category]:
        return list(self.categories)


def matches_google_types(types: Iterable[str], category: Category) -> bool:
    return bool(set(types) & set(category.external_type_tags))


def matches_keywords(name: str, category: Category) -> bool:
    lowered = name.lower()
    return any(keyword.lower() in lowered for keyword in category.keyword_synonyms)


def dominant_category_from_name(name: str) -> Optional[str]:
    lowered = name.lower()
    best: Optional[str] = None
    best_hits = 0
    for label, keywords in DOMINANT_NAME_KEYWORDS.items():
        hits = sum(1 for keyword in keywords if keyword in lowered)
        if hits > best_hits:
            best, best_hits = label, hits
    return best


def validate_category(detail: Dict[str, Any], category: Category) -> bool:
    """Post-detail check that a place really belongs to the requested category."""
    types = detail.get("types") or []
    name = detail.get("name") or ""
    if matches_google_types(types, category):
        return True
    if matches_keywords(name, category):
        return True
    if types and dominant_category_from_name(name) == category.label:
        return True
    logger.debug("Category mismatch: %s is not %s (types=%s)", name, category.label, types)
    return False


AREA_LABELS: List[Tuple[str, str]] = [
    ("denpasar", "Kota Denpasar"),
    ("badung", "Kabupaten Badung"),
    ("gianyar", "Kabupaten Gianyar"),
    ("tabanan", "Kabupaten Tabanan"),
    ("klungkung", "Kabupaten Klungkung"),
    ("bangli", "Kabupaten Bangli"),
    ("karangasem", "Kabupaten Karangasem"),
    ("buleleng", "Kabupaten Buleleng"),
    ("jembrana", "Kabupaten Jembrana"),
]

_POSTCODE_RE = re.compile(r"\s+\d+")


def extract_area_label(address: Optional[str]) -> Optional[str]:
    """Normalize a formatted address to its regency label.

    >>> extract_area_label("Jl. Raya Ubud No.8, Ubud, Kabupaten Gianyar, Bali 80571")
    'Kabupaten Gianyar'
    """
    if not address:
        return None
    for part in address.split(","):
        cleaned = _POSTCODE_RE.sub("", part.strip()).lower()
        for key, label in AREA_LABELS:
            if key in cleaned:
                return label
    if "bali" in address.lower():
        return "Bali"
    return None
