"""Service for persisted tier rate cards (overrides of the built-in tariffs)."""
import logging
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipsettle.models.rate_card import RateCard, MerchantTier, TIER_DISPLAY_NAMES
from shipsettle.schemas.tariff import CodRule, TariffTable
from shipsettle.services.rate_card_data import BUILTIN_TARIFFS
from shipsettle.services.tariff_engine import TariffEngine, resolve_tier
from shipsettle.config import settings

logger = logging.getLogger(__name__)


class RateCardService:
    """Service for rate card management."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ============================================
    # RATE CARD CRUD
    # ============================================

    async def get_rate_card(self, tier) -> Optional[RateCard]:
        """Get the persisted rate card for a tier (active or not)."""
        resolved = resolve_tier(tier)
        result = await self.db.execute(
            select(RateCard).where(RateCard.tier == resolved.value)
        )
        return result.scalar_one_or_none()

    async def list_rate_cards(self, is_active: Optional[bool] = True) -> List[RateCard]:
        stmt = select(RateCard).order_by(RateCard.tier)
        if is_active is not None:
            stmt = stmt.where(RateCard.is_active == is_active)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def upsert_rate_card(
        self,
        table: TariffTable,
        description: Optional[str] = None,
        commit: bool = True,
    ) -> RateCard:
        """Store a tariff for its tier. The table is validated before it is written."""
        table.validate()
        rate_card = await self.get_rate_card(table.tier)
        if rate_card is None:
            rate_card = RateCard(tier=table.tier.value)
            self.db.add(rate_card)

        rate_card.name = table.name
        rate_card.description = description
        rate_card.forward_slabs = TariffTable.slabs_to_json(table.forward)
        rate_card.rto_slabs = TariffTable.slabs_to_json(table.rto)
        rate_card.cod_rule = table.cod.to_dict()
        rate_card.is_active = True

        if commit:
            await self.db.commit()
            await self.db.refresh(rate_card)
        else:
            await self.db.flush()

        logger.info(f"Rate card for tier {table.tier.value} saved")
        return rate_card

    async def deactivate_rate_card(self, tier, commit: bool = True) -> bool:
        """Fall back to the built-in tariff for a tier."""
        rate_card = await self.get_rate_card(tier)
        if rate_card is None or not rate_card.is_active:
            return False
        rate_card.is_active = False
        if commit:
            await self.db.commit()
        else:
            await self.db.flush()
        logger.info(f"Rate card for tier {rate_card.tier} deactivated")
        return True

    async def seed_builtin_rate_cards(self, overwrite: bool = False) -> int:
        """Persist the built-in tariffs so that operators can edit them."""
        created = 0
        for tier, table in BUILTIN_TARIFFS.items():
            existing = await self.get_rate_card(tier)
            if existing is not None and not overwrite:
                continue
            await self.upsert_rate_card(
                table,
                description=f"{TIER_DISPLAY_NAMES[tier]} tariff",
                commit=False,
            )
            created += 1
        await self.db.commit()
        logger.info(f"Seeded {created} rate cards")
        return created

    # ============================================
    # TARIFF RESOLUTION
    # ============================================

    @staticmethod
    def to_tariff_table(rate_card: RateCard) -> TariffTable:
        tier = MerchantTier(rate_card.tier)
        return TariffTable(
            tier=tier,
            name=rate_card.name,
            forward=TariffTable.slabs_from_json(rate_card.forward_slabs),
            rto=TariffTable.slabs_from_json(rate_card.rto_slabs),
            cod=CodRule.from_dict(rate_card.cod_rule),
            source="rate_card",
        ).validate()

    async def get_tariff_tables(self) -> Dict[MerchantTier, TariffTable]:
        """Built-in tables with active persisted rate cards layered on top."""
        tables = dict(BUILTIN_TARIFFS)
        for rate_card in await self.list_rate_cards(is_active=True):
            tables[MerchantTier(rate_card.tier)] = self.to_tariff_table(rate_card)
        return tables

    async def get_engine(self) -> TariffEngine:
        return TariffEngine(await self.get_tariff_tables(), gst_rate=settings.GST_RATE)
