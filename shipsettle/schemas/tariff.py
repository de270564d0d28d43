"""Tariff tables and charge breakdown schemas."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict

from shipsettle.core.exceptions import InvalidInput
from shipsettle.models.rate_card import Direction, MerchantTier, SlabRule, ZoneCode

# {rule: {zone: price}}
SlabTable = Dict[SlabRule, Dict[ZoneCode, Decimal]]


@dataclass(frozen=True)
class CodRule:
    """COD fee rule: max(cod * percentage / 100, minimum_amount), +GST if gst_applies."""
    percentage: Decimal
    minimum_amount: Decimal
    gst_applies: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "CodRule":
        try:
            return cls(
                percentage=Decimal(str(data["percentage"])),
                minimum_amount=Decimal(str(data["minimum_amount"])),
                gst_applies=bool(data.get("gst_applies", True)),
            )
        except (KeyError, ArithmeticError) as e:
            raise InvalidInput(f"Malformed COD rule {data!r}: {e}") from e

    def to_dict(self) -> dict:
        return {
            "percentage": str(self.percentage),
            "minimum_amount": str(self.minimum_amount),
            "gst_applies": self.gst_applies,
        }


@dataclass
class TariffTable:
    """Forward and RTO slab tables plus the COD rule for one tier."""
    tier: MerchantTier
    name: str
    forward: SlabTable
    rto: SlabTable
    cod: CodRule
    source: str = "builtin"

    def slabs(self, direction: Direction) -> SlabTable:
        return self.forward if direction == Direction.FORWARD else self.rto

    def validate(self) -> "TariffTable":
        """Every direction must carry all seven rules for all six zones."""
        for direction, table in ((Direction.FORWARD, self.forward), (Direction.RTO, self.rto)):
            for rule in SlabRule:
                row = table.get(rule)
                if row is None:
                    raise InvalidInput(
                        f"Tariff '{self.name}' {direction.value} is missing rule {rule.value}"
                    )
                missing = [z.value for z in ZoneCode if z not in row]
                if missing:
                    raise InvalidInput(
                        f"Tariff '{self.name}' {direction.value} rule {rule.value} "
                        f"is missing zones {', '.join(missing)}"
                    )
                negative = [z.value for z, price in row.items() if price < 0]
                if negative:
                    raise InvalidInput(
                        f"Tariff '{self.name}' {direction.value} rule {rule.value} "
                        f"has negative prices for zones {', '.join(negative)}"
                    )
        return self

    @staticmethod
    def slabs_from_json(data: dict) -> SlabTable:
        table: SlabTable = {}
        for rule_key, row in (data or {}).items():
            try:
                rule = SlabRule(rule_key)
            except ValueError:
                raise InvalidInput(f"Unknown slab rule '{rule_key}'")
            table[rule] = {}
            for zone_key, price in row.items():
                try:
                    table[rule][ZoneCode(zone_key)] = Decimal(str(price))
                except (ValueError, ArithmeticError):
                    raise InvalidInput(f"Bad price {price!r} for zone '{zone_key}' in {rule_key}")
        return table

    @staticmethod
    def slabs_to_json(table: SlabTable) -> dict:
        return {
            rule.value: {zone.value: str(price) for zone, price in row.items()}
            for rule, row in table.items()
        }


@dataclass(frozen=True)
class Dimensions:
    """Package dimensions in centimetres."""
    length_cm: Decimal
    width_cm: Decimal
    height_cm: Decimal

    @classmethod
    def of(cls, length, width, height) -> "Dimensions":
        return cls(Decimal(str(length)), Decimal(str(width)), Decimal(str(height)))


class ChargeBreakdown(BaseModel):
    """Result of pricing one shipment. Amounts are unrounded Decimals."""
    model_config = ConfigDict(frozen=True)

    tier: MerchantTier
    direction: Direction
    zone: ZoneCode
    actual_weight_grams: Decimal
    volumetric_weight_grams: Decimal
    chargeable_weight_grams: Decimal
    forward_or_rto_charge: Decimal
    cod_charge: Decimal
    total: Decimal
    cod_amount: Decimal = Decimal("0")
    rule_trace: Optional[str] = None
