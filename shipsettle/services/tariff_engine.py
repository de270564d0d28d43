"""
Tariff Engine.

Pure pricing: (tier, direction, zone, weights, COD amount) -> ChargeBreakdown.
No I/O and no rounding; callers that post money quantize the result.

Weight ladder (w = chargeable grams):
    w <= 250            upto_250g
    250 < w <= 500      upto_250g + upto_500g_add                 ("500 g price")
    500 < w < 5000      500 g price + ceil((w - 500) / 500) * add_500g_till_5kg
    w == 5000           upto_5kg                                   (checkpoint)
    5000 < w < 10000    upto_5kg + ceil((w - 5000) / 1000) * add_1kg_till_10kg
    w == 10000          upto_10kg                                  (checkpoint)
    w > 10000           upto_10kg + ceil((w - 10000) / 1000) * add_1kg_beyond_10kg
"""
import logging
from decimal import Decimal, ROUND_CEILING, InvalidOperation
from typing import Dict, Optional, Tuple, Union

from shipsettle.core.exceptions import InvalidInput
from shipsettle.models.rate_card import Direction, MerchantTier, SlabRule, ZoneCode, TIER_DISPLAY_NAMES
from shipsettle.schemas.tariff import ChargeBreakdown, Dimensions, TariffTable
from shipsettle.services.rate_card_data import BUILTIN_TARIFFS
from shipsettle.services.zone_service import collapse_zone

logger = logging.getLogger(__name__)

Number = Union[int, float, str, Decimal]

VOLUMETRIC_DIVISOR = Decimal("5000")  # cm^3 per kg
DEFAULT_GST_RATE = Decimal("18")

_250G = Decimal("250")
_500G = Decimal("500")
_5KG = Decimal("5000")
_10KG = Decimal("10000")
_1KG = Decimal("1000")


def _tier_aliases() -> Dict[str, MerchantTier]:
    aliases = {}
    for tier in MerchantTier:
        aliases[tier.value] = tier
        aliases[TIER_DISPLAY_NAMES[tier].upper().replace(" ", "_")] = tier
    aliases["ADVANCED_USER"] = MerchantTier.ADVANCED_USER
    return aliases


_TIER_ALIASES = _tier_aliases()

_DIRECTION_ALIASES = {
    "FORWARD": Direction.FORWARD,
    "FWD": Direction.FORWARD,
    "RTO": Direction.RTO,
    "DTO": Direction.RTO,
    "RETURN": Direction.RTO,
}


def resolve_tier(tier: Union[str, MerchantTier, None]) -> MerchantTier:
    """Accept a tier code or display name ("Basic User", "advanced")."""
    if isinstance(tier, MerchantTier):
        return tier
    if not isinstance(tier, str) or not tier.strip():
        raise InvalidInput(f"Unknown tier {tier!r}")
    key = "_".join(tier.strip().upper().replace("-", " ").split())
    try:
        return _TIER_ALIASES[key]
    except KeyError:
        raise InvalidInput(f"Unknown tier '{tier}'")


def resolve_direction(direction: Union[str, Direction, None]) -> Direction:
    if isinstance(direction, Direction):
        return direction
    if isinstance(direction, str):
        found = _DIRECTION_ALIASES.get(direction.strip().upper())
        if found:
            return found
    raise InvalidInput(f"Unknown direction {direction!r}")


def resolve_zone_letter(zone: Union[str, ZoneCode, None]) -> ZoneCode:
    """Accept only an already-collapsed zone letter A-F."""
    if isinstance(zone, ZoneCode):
        return zone
    if isinstance(zone, str):
        try:
            return ZoneCode(zone.strip().upper())
        except ValueError:
            pass
    raise InvalidInput(f"Unknown zone letter {zone!r}")


def to_decimal(value: Optional[Number], name: str) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, bool):
        raise InvalidInput(f"{name} must be a number, got {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidInput(f"{name} must be a number, got {value!r}")
    if not result.is_finite():
        raise InvalidInput(f"{name} must be finite, got {value!r}")
    return result


def _steps(excess: Decimal, step: Decimal) -> Decimal:
    """Number of started steps; a partial step counts as a full one."""
    return (excess / step).to_integral_value(rounding=ROUND_CEILING)


def volumetric_weight_grams(length_cm: Number, width_cm: Number, height_cm: Number) -> Decimal:
    """L x W x H / 5000 in kg, returned in grams."""
    dims = [to_decimal(v, name) for v, name in (
        (length_cm, "length_cm"), (width_cm, "width_cm"), (height_cm, "height_cm"),
    )]
    if any(d < 0 for d in dims):
        raise InvalidInput(f"Dimensions must not be negative: {dims}")
    length, width, height = dims
    return length * width * height / VOLUMETRIC_DIVISOR * _1KG


def ladder_price(slabs: Dict[SlabRule, Dict[ZoneCode, Decimal]], zone: ZoneCode,
                 weight_grams: Decimal) -> Tuple[Decimal, str]:
    """Walk the weight ladder for one zone. Returns (price, rule trace)."""
    def rate(rule: SlabRule) -> Decimal:
        return slabs[rule][zone]

    w = weight_grams
    if w <= _250G:
        return rate(SlabRule.UPTO_250G), "upto_250g"

    price_500g = rate(SlabRule.UPTO_250G) + rate(SlabRule.UPTO_500G_ADD)
    if w <= _500G:
        return price_500g, "upto_500g"

    if w < _5KG:
        steps = _steps(w - _500G, _500G)
        return (
            price_500g + steps * rate(SlabRule.ADD_500G_TILL_5KG),
            f"upto_500g + {steps} x add_500g_till_5kg",
        )

    if w == _5KG:
        return rate(SlabRule.UPTO_5KG), "upto_5kg"

    if w < _10KG:
        steps = _steps(w - _5KG, _1KG)
        return (
            rate(SlabRule.UPTO_5KG) + steps * rate(SlabRule.ADD_1KG_TILL_10KG),
            f"upto_5kg + {steps} x add_1kg_till_10kg",
        )

    if w == _10KG:
        return rate(SlabRule.UPTO_10KG), "upto_10kg"

    steps = _steps(w - _10KG, _1KG)
    return (
        rate(SlabRule.UPTO_10KG) + steps * rate(SlabRule.ADD_1KG_BEYOND_10KG),
        f"upto_10kg + {steps} x add_1kg_beyond_10kg",
    )


class TariffEngine:
    """
    Prices shipments against per-tier tariff tables.

    Usage:
        engine = TariffEngine()
        breakdown = engine.price("Basic User", "FORWARD", "C", 5000)
        breakdown.total  # Decimal('232')
    """

    def __init__(
        self,
        tables: Optional[Dict[MerchantTier, TariffTable]] = None,
        gst_rate: Decimal = DEFAULT_GST_RATE,
    ):
        self.tables = dict(BUILTIN_TARIFFS if tables is None else tables)
        self.cod_gst_multiplier = Decimal("1") + Decimal(gst_rate) / Decimal("100")

    def table_for(self, tier: Union[str, MerchantTier]) -> TariffTable:
        resolved = resolve_tier(tier)
        table = self.tables.get(resolved)
        if table is None:
            raise InvalidInput(f"No tariff configured for tier '{resolved.value}'")
        return table

    def cod_charge(self, tier: Union[str, MerchantTier], cod_amount: Number) -> Decimal:
        """max(cod * pct / 100, minimum), plus GST when the rule says so. 0 for no COD."""
        amount = to_decimal(cod_amount, "cod_amount")
        if amount < 0:
            raise InvalidInput(f"COD amount must not be negative, got {amount}")
        if amount == 0:
            return Decimal("0")
        rule = self.table_for(tier).cod
        fee = max(amount * rule.percentage / Decimal("100"), rule.minimum_amount)
        if rule.gst_applies:
            fee = fee * self.cod_gst_multiplier
        return fee

    def price(
        self,
        tier: Union[str, MerchantTier],
        direction: Union[str, Direction],
        zone: Union[str, ZoneCode],
        actual_weight_grams: Number,
        volumetric_weight_grams: Number = 0,
        cod_amount: Number = 0,
    ) -> ChargeBreakdown:
        """
        Price one shipment. Every input is validated before any computation.

        Raises:
            InvalidInput: unknown tier/direction/zone, non-positive actual
                weight, negative volumetric weight or COD amount.
        """
        resolved_tier = resolve_tier(tier)
        resolved_direction = resolve_direction(direction)
        resolved_zone = resolve_zone_letter(zone)

        actual = to_decimal(actual_weight_grams, "actual_weight_grams")
        if actual <= 0:
            raise InvalidInput(f"Weight must be positive, got {actual_weight_grams!r}")
        volumetric = to_decimal(volumetric_weight_grams, "volumetric_weight_grams")
        if volumetric < 0:
            raise InvalidInput(f"Volumetric weight must not be negative, got {volumetric_weight_grams!r}")
        cod = to_decimal(cod_amount, "cod_amount")
        if cod < 0:
            raise InvalidInput(f"COD amount must not be negative, got {cod_amount!r}")

        table = self.table_for(resolved_tier)
        chargeable = max(actual, volumetric)
        base, trace = ladder_price(table.slabs(resolved_direction), resolved_zone, chargeable)
        cod_fee = self.cod_charge(resolved_tier, cod)

        return ChargeBreakdown(
            tier=resolved_tier,
            direction=resolved_direction,
            zone=resolved_zone,
            actual_weight_grams=actual,
            volumetric_weight_grams=volumetric,
            chargeable_weight_grams=chargeable,
            forward_or_rto_charge=base,
            cod_charge=cod_fee,
            total=base + cod_fee,
            cod_amount=cod,
            rule_trace=trace,
        )

    def quote(
        self,
        tier: Union[str, MerchantTier],
        direction: Union[str, Direction],
        zone: Union[str, ZoneCode],
        weight_grams: Number,
        dimensions: Optional[Dimensions] = None,
        cod_amount: Number = 0,
    ) -> ChargeBreakdown:
        """Read-only pricing from raw inputs: collapses the zone and derives volumetric weight."""
        volumetric = Decimal("0")
        if dimensions is not None:
            volumetric = volumetric_weight_grams(
                dimensions.length_cm, dimensions.width_cm, dimensions.height_cm
            )
        return self.price(
            tier,
            direction,
            collapse_zone(zone),
            weight_grams,
            volumetric,
            cod_amount,
        )


# Engine over the built-in tables, for callers that do not need persisted overrides
default_engine = TariffEngine()
