import copy
from dataclasses import replace
from decimal import Decimal

import pytest

from shipsettle.core.exceptions import InvalidInput
from shipsettle.models.rate_card import MerchantTier, SlabRule, ZoneCode
from shipsettle.services.rate_card_data import BUILTIN_TARIFFS
from shipsettle.services.rate_card_service import RateCardService
from shipsettle.services.settlement_service import SettlementService
from tests.conftest import charge_request


def basic_with_zone_c_checkpoint(price: str):
    table = BUILTIN_TARIFFS[MerchantTier.BASIC_USER]
    forward = copy.deepcopy(table.forward)
    forward[SlabRule.UPTO_5KG][ZoneCode.C] = Decimal(price)
    return replace(table, name="Basic User (festive)", forward=forward)


async def test_seed_builtin_rate_cards(db):
    service = RateCardService(db)
    assert await service.seed_builtin_rate_cards() == 4
    assert await service.seed_builtin_rate_cards() == 0

    cards = await service.list_rate_cards()
    assert {c.tier for c in cards} == {t.value for t in MerchantTier}

    card = await service.get_rate_card("Basic User")
    table = RateCardService.to_tariff_table(card)
    assert table.forward[SlabRule.UPTO_5KG][ZoneCode.C] == Decimal("232")
    assert table.cod.minimum_amount == Decimal("35")


async def test_persisted_rate_card_overrides_builtin(db, merchant):
    await RateCardService(db).upsert_rate_card(basic_with_zone_c_checkpoint("250"))

    service = SettlementService(db)
    breakdown = await service.quote(merchant.id, charge_request())
    assert breakdown.total == Decimal("250")


async def test_deactivated_rate_card_falls_back(db, merchant):
    rate_cards = RateCardService(db)
    await rate_cards.upsert_rate_card(basic_with_zone_c_checkpoint("250"))
    assert await rate_cards.deactivate_rate_card(MerchantTier.BASIC_USER)
    assert not await rate_cards.deactivate_rate_card(MerchantTier.BASIC_USER)

    engine = await rate_cards.get_engine()
    assert engine.price("BASIC_USER", "FORWARD", "C", 5000).total == Decimal("232")


async def test_incomplete_table_is_rejected(db):
    table = basic_with_zone_c_checkpoint("250")
    del table.forward[SlabRule.UPTO_10KG][ZoneCode.F]
    with pytest.raises(InvalidInput):
        await RateCardService(db).upsert_rate_card(table)
    assert await RateCardService(db).list_rate_cards() == []
