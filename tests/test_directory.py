from newbiz.directory import (
    BALI_DISTRICTS,
    BALI_ZONES,
    StaticCategoryDirectory,
    StaticRegionDirectory,
    build_bali_regions,
    dominant_category_from_name,
    extract_area_label,
    priority_to_tier,
    validate_category,
)
from newbiz.models import RegionType


def category(label):
    return next(c for c in StaticCategoryDirectory().list_categories() if c.label == label)


def test_seeded_regions():
    regions = build_bali_regions()
    assert len(regions) == len(BALI_ZONES) + len(BALI_DISTRICTS)
    assert len({r.id for r in regions}) == len(regions)
    by_id = {r.id: r for r in regions}
    for region in regions:
        if region.type is RegionType.ZONE:
            assert by_id[region.parent_id].type is RegionType.TOP_LEVEL
        else:
            assert region.parent_id is None


def test_priority_to_tier():
    assert [priority_to_tier(p) for p in range(1, 10)] == [1, 1, 2, 3, 3, 4, 4, 5, 5]


def test_lookup_by_regency_prefix_and_exact_name():
    directory = StaticRegionDirectory()
    badung = directory.list_regions_by_name_or_zone("badung")
    assert len(badung) == 6
    assert all(r.name.startswith("Badung - ") for r in badung)

    ubud = directory.list_regions_by_name_or_zone("Ubud")
    assert [r.name for r in ubud] == ["Ubud"]
    assert ubud[0].type is RegionType.ZONE

    assert directory.list_regions_by_name_or_zone("Lombok") == []


def test_top_level_regions_sorted_by_tier():
    top = StaticRegionDirectory().list_top_level_regions()
    assert len(top) == len(BALI_ZONES)
    assert all(r.type is RegionType.TOP_LEVEL for r in top)
    tiers = [r.priority_tier for r in top]
    assert tiers == sorted(tiers)


def test_category_validation_by_type_keyword_and_dominant_name():
    cafe = category("Café")
    assert validate_category({"name": "Dapur Kita", "types": ["cafe", "food"]}, cafe)
    assert validate_category({"name": "Kopi Susu Corner", "types": []}, cafe)
    assert validate_category({"name": "Barista Lab", "types": ["store"]}, cafe)
    assert not validate_category({"name": "Sunset Villa Canggu", "types": ["lodging"]}, cafe)


def test_dominant_category_from_name():
    assert dominant_category_from_name("Bali Beach Resort Hotel") == "Hotel"
    assert dominant_category_from_name("Xyz") is None


def test_extract_area_label():
    assert (
        extract_area_label("Jl. Raya Ubud No.8, Ubud, Kabupaten Gianyar, Bali 80571")
        == "Kabupaten Gianyar"
    )
    assert extract_area_label("Jl. Teuku Umar 10, Denpasar 80114") == "Kota Denpasar"
    assert extract_area_label("Somewhere, Bali") == "Bali"
    assert extract_area_label("Gili Trawangan, Lombok") is None
    assert extract_area_label(None) is None
