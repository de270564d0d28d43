from decimal import Decimal

import pytest
from hypothesis import given, strategies as st

from shipsettle.core.exceptions import InvalidInput
from shipsettle.models.rate_card import Direction, MerchantTier, ZoneCode
from shipsettle.schemas.tariff import Dimensions
from shipsettle.services.tariff_engine import (
    TariffEngine,
    default_engine,
    resolve_tier,
    volumetric_weight_grams,
)

engine = TariffEngine()


@pytest.mark.parametrize("weight,expected", [
    (1, "40"),
    (250, "40"),
    (251, "51"),
    (500, "51"),
    (501, "79"),
    (1000, "79"),
    (1001, "107"),
    (5000, "232"),
    (5001, "268"),
    (6000, "268"),
    (9999, "412"),
    (10000, "340"),
    (10001, "366"),
    (11000, "366"),
])
def test_basic_forward_zone_c_ladder(weight, expected):
    breakdown = engine.price("BASIC_USER", "FORWARD", "C", weight)
    assert breakdown.forward_or_rto_charge == Decimal(expected)
    assert breakdown.cod_charge == 0
    assert breakdown.total == Decimal(expected)


def test_checkpoints_are_used_as_given():
    assert engine.price(MerchantTier.BASIC_USER, Direction.RTO, ZoneCode.C, 5000).total == Decimal("277")
    assert engine.price(MerchantTier.BASIC_USER, Direction.RTO, ZoneCode.C, 10000).total == Decimal("275")


def test_rto_uses_rto_table():
    assert engine.price("BASIC_USER", "RTO", "C", 500).total == Decimal("61")
    assert engine.price("BASIC_USER", "DTO", "C", 500).direction == Direction.RTO


def test_cod_minimum_with_gst():
    breakdown = engine.price("BASIC_USER", "FORWARD", "C", 500, cod_amount=1000)
    assert breakdown.cod_charge.quantize(Decimal("0.01")) == Decimal("41.30")
    assert breakdown.total.quantize(Decimal("0.01")) == Decimal("92.30")


def test_cod_percentage_above_minimum():
    fee = engine.cod_charge("BASIC_USER", 5000)
    assert fee.quantize(Decimal("0.01")) == Decimal("88.50")


def test_zero_cod_has_no_fee():
    assert engine.cod_charge("BASIC_USER", 0) == 0


def test_volumetric_weight_wins_when_heavier():
    breakdown = engine.price("BASIC_USER", "FORWARD", "C", 500, volumetric_weight_grams=1200)
    assert breakdown.chargeable_weight_grams == Decimal("1200")
    assert breakdown.total == Decimal("107")
    assert "add_500g_till_5kg" in breakdown.rule_trace


def test_quote_derives_volumetric_and_collapses_zone():
    breakdown = default_engine.quote(
        "Basic User", "FORWARD", "Zone C-2 (Metro to Metro)", 500,
        dimensions=Dimensions.of(30, 20, 10),
    )
    assert breakdown.zone == ZoneCode.C
    assert breakdown.volumetric_weight_grams == Decimal("1200")
    assert breakdown.total == Decimal("107")


def test_volumetric_weight_grams():
    assert volumetric_weight_grams(10, 10, 10) == Decimal("200")
    with pytest.raises(InvalidInput):
        volumetric_weight_grams(-1, 10, 10)


@pytest.mark.parametrize("alias", ["Basic User", "basic_user", "BASIC-USER", MerchantTier.BASIC_USER])
def test_resolve_tier_aliases(alias):
    assert resolve_tier(alias) == MerchantTier.BASIC_USER


def test_resolve_tier_advanced_display_name():
    assert resolve_tier("advanced") == MerchantTier.ADVANCED_USER


@pytest.mark.parametrize("kwargs", [
    dict(tier="GOLD", direction="FORWARD", zone="C", actual_weight_grams=500),
    dict(tier="BASIC_USER", direction="SIDEWAYS", zone="C", actual_weight_grams=500),
    dict(tier="BASIC_USER", direction="FORWARD", zone="Z", actual_weight_grams=500),
    dict(tier="BASIC_USER", direction="FORWARD", zone="C", actual_weight_grams=0),
    dict(tier="BASIC_USER", direction="FORWARD", zone="C", actual_weight_grams=-10),
    dict(tier="BASIC_USER", direction="FORWARD", zone="C", actual_weight_grams="heavy"),
    dict(tier="BASIC_USER", direction="FORWARD", zone="C", actual_weight_grams=500,
         volumetric_weight_grams=-1),
    dict(tier="BASIC_USER", direction="FORWARD", zone="C", actual_weight_grams=500, cod_amount=-5),
    dict(tier="BASIC_USER", direction="FORWARD", zone="C", actual_weight_grams=float("nan")),
])
def test_invalid_inputs_are_rejected(kwargs):
    with pytest.raises(InvalidInput):
        engine.price(**kwargs)


def test_price_rejects_uncollapsed_zone():
    with pytest.raises(InvalidInput):
        engine.price("BASIC_USER", "FORWARD", "C2", 500)


def test_missing_tier_table():
    partial = TariffEngine(tables={})
    with pytest.raises(InvalidInput):
        partial.price("BASIC_USER", "FORWARD", "C", 500)


# ==================== PROPERTIES ====================

tiers = st.sampled_from(list(MerchantTier))
directions = st.sampled_from(list(Direction))
zones = st.sampled_from(list(ZoneCode))

# Segments between checkpoints; prices never fall inside one segment
segments = st.sampled_from([(1, 250), (251, 500), (501, 4999), (5001, 9999), (10001, 60000)])


@given(tiers, directions, zones, segments, st.data())
def test_price_is_monotonic_within_a_segment(tier, direction, zone, segment, data):
    low, high = segment
    w1 = data.draw(st.integers(min_value=low, max_value=high))
    w2 = data.draw(st.integers(min_value=w1, max_value=high))
    p1 = engine.price(tier, direction, zone, w1).total
    p2 = engine.price(tier, direction, zone, w2).total
    assert p1 <= p2


@given(tiers, zones, st.integers(min_value=10001, max_value=50000))
def test_partial_kilogram_beyond_10kg_rounds_up(tier, zone, weight):
    rounded_up = 10000 + -(-(weight - 10000) // 1000) * 1000
    assert (
        engine.price(tier, "FORWARD", zone, weight).total
        == engine.price(tier, "FORWARD", zone, rounded_up).total
    )


@given(tiers, directions, zones, st.integers(min_value=1, max_value=30000),
       st.integers(min_value=0, max_value=30000))
def test_chargeable_weight_is_the_heavier_one(tier, direction, zone, actual, volumetric):
    breakdown = engine.price(tier, direction, zone, actual, volumetric)
    assert breakdown.chargeable_weight_grams == max(actual, volumetric)
    assert breakdown.total == breakdown.forward_or_rto_charge + breakdown.cod_charge


@given(tiers, st.decimals(min_value=1, max_value=100000, places=2))
def test_cod_fee_never_below_minimum(tier, cod_amount):
    rule = engine.table_for(tier).cod
    assert engine.cod_charge(tier, cod_amount) >= rule.minimum_amount
