"""
Tests for resolving target report rows to target ids.
"""

from types import SimpleNamespace

import pytest

from app.errors import ResolutionError
from app.report_configs import HourlyTargetRow
from app.services.target_lookup import TargetCache, convert_match_type, parse_asin


def _target(target_id, ad_group_id="AG1", match_type="EXACT", keyword=None, asin=None, target_type="MANUAL"):
    return SimpleNamespace(
        target_id=target_id,
        ad_group_id=ad_group_id,
        target_match_type=match_type,
        target_keyword=keyword,
        target_asin=asin,
        target_type=target_type,
    )


def _row(**overrides):
    data = {
        "campaign.id": "C1",
        "adGroup.id": "AG1",
        "ad.id": "AD1",
        "hour.value": "2025-01-08T10:00:00",
        "metric.impressions": 10,
        "metric.clicks": 1,
        "metric.purchases": 0,
        "metric.sales": 0,
        "metric.totalCost": 0.5,
    }
    data.update(overrides)
    return HourlyTargetRow.model_validate(data)


@pytest.fixture
def cache():
    c = TargetCache()
    c.add_targets([
        _target("T-KW", keyword="running shoes", match_type="EXACT"),
        _target("T-PH", keyword="running shoes", match_type="PHRASE"),
        _target("T-ASIN", asin="B000X", match_type="PRODUCT_SIMILAR"),
        _target("T-ASIN-EXACT", asin="B000Y", match_type="PRODUCT_EXACT"),
        _target("T-AUTO", match_type="SEARCH_CLOSE_MATCH", target_type="AUTO"),
    ])
    return c


def test_parse_asin():
    assert parse_asin('asin="B0123ABC"') == "B0123ABC"
    assert parse_asin('asin-expanded="B000X"') == "B000X"
    assert parse_asin("category=123") is None


def test_convert_match_type():
    assert convert_match_type("BROAD", "shoes") == "BROAD"
    assert convert_match_type("TARGETING_EXPRESSION", 'asin-expanded="B000X"') == "PRODUCT_SIMILAR"
    assert convert_match_type("TARGETING_EXPRESSION", 'asin="B000X"') == "PRODUCT_EXACT"
    assert convert_match_type("TARGETING_EXPRESSION_PREDEFINED", "loose-match") == "SEARCH_LOOSE_MATCH"
    with pytest.raises(ValueError):
        convert_match_type("TARGETING_EXPRESSION_PREDEFINED", "anything")
    with pytest.raises(ValueError):
        convert_match_type("MYSTERY", "x")


def test_resolves_keyword(cache):
    resolved = cache.resolve(_row(**{"target.value": "running shoes", "target.matchType": "PHRASE"}))
    assert resolved.entity_id == "T-PH"
    assert resolved.match_type == "PHRASE"


def test_resolves_expanded_asin(cache):
    resolved = cache.resolve(_row(**{"target.value": 'asin-expanded="B000X"', "target.matchType": "TARGETING_EXPRESSION"}))
    assert resolved.entity_id == "T-ASIN"
    assert resolved.match_type == "PRODUCT_SIMILAR"


def test_resolves_predefined_to_auto_target(cache):
    resolved = cache.resolve(_row(**{
        "target.value": "close-match", "target.matchType": "TARGETING_EXPRESSION_PREDEFINED",
    }))
    assert resolved.entity_id == "T-AUTO"
    assert resolved.match_type == "SEARCH_CLOSE_MATCH"


def test_falls_back_to_matched_target_as_exact(cache):
    resolved = cache.resolve(_row(**{"matchedTarget.value": "running shoesé "}))
    assert resolved.entity_id == "T-KW"
    assert resolved.match_type == "EXACT"
    assert resolved.target_value == "running shoes"


def test_unknown_target_raises_with_row(cache):
    row = _row(**{"target.value": "sandals", "target.matchType": "EXACT"})
    with pytest.raises(ResolutionError) as exc_info:
        cache.resolve(row)
    assert exc_info.value.row["adGroup.id"] == "AG1"
    assert "Row:" in str(exc_info.value)


def test_invalid_predefined_value_raises(cache):
    with pytest.raises(ResolutionError, match="Invalid predefined expression"):
        cache.resolve(_row(**{"target.value": "nope", "target.matchType": "TARGETING_EXPRESSION_PREDEFINED"}))


def test_empty_row_without_fallback_raises(cache):
    with pytest.raises(ResolutionError, match="all empty"):
        cache.resolve(_row())


@pytest.mark.anyio
async def test_build_without_ad_groups_skips_query():
    cache = await TargetCache.build(None, set())
    assert cache.manual_keyword == {}
