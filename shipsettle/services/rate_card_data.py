"""Built-in tier tariffs.

Rows are per-zone prices in the order A, B, C, D, E, F. Legacy C1/C2 and
D1/D2 columns are already folded into C and D. The "upto 5 kg" and
"upto 10 kg" rows are checkpoint prices and are used as given.
"""
from decimal import Decimal
from typing import Dict, List

from shipsettle.models.rate_card import MerchantTier, SlabRule, ZoneCode
from shipsettle.schemas.tariff import CodRule, SlabTable, TariffTable

ZONE_ORDER = [ZoneCode.A, ZoneCode.B, ZoneCode.C, ZoneCode.D, ZoneCode.E, ZoneCode.F]


def _row(prices: List[int]) -> Dict[ZoneCode, Decimal]:
    return {zone: Decimal(price) for zone, price in zip(ZONE_ORDER, prices)}


def _slabs(
    upto_250g, upto_500g_add, add_500g_till_5kg, upto_5kg,
    add_1kg_till_10kg, upto_10kg, add_1kg_beyond_10kg,
) -> SlabTable:
    return {
        SlabRule.UPTO_250G: _row(upto_250g),
        SlabRule.UPTO_500G_ADD: _row(upto_500g_add),
        SlabRule.ADD_500G_TILL_5KG: _row(add_500g_till_5kg),
        SlabRule.UPTO_5KG: _row(upto_5kg),
        SlabRule.ADD_1KG_TILL_10KG: _row(add_1kg_till_10kg),
        SlabRule.UPTO_10KG: _row(upto_10kg),
        SlabRule.ADD_1KG_BEYOND_10KG: _row(add_1kg_beyond_10kg),
    }


# ==================== NEW USER ====================

NEW_USER = TariffTable(
    tier=MerchantTier.NEW_USER,
    name="New User",
    forward=_slabs(
        upto_250g=[36, 42, 43, 46, 56, 62],
        upto_500g_add=[6, 8, 12, 13, 13, 14],
        add_500g_till_5kg=[10, 17, 28, 32, 40, 44],
        upto_5kg=[135, 188, 263, 278, 337, 375],
        add_1kg_till_10kg=[27, 30, 39, 46, 55, 65],
        upto_10kg=[221, 277, 387, 411, 498, 554],
        add_1kg_beyond_10kg=[19, 23, 29, 33, 46, 48],
    ),
    rto=_slabs(
        upto_250g=[43, 51, 52, 55, 68, 75],
        upto_500g_add=[7, 7, 14, 14, 16, 17],
        add_500g_till_5kg=[12, 20, 36, 42, 51, 55],
        upto_5kg=[156, 217, 302, 321, 389, 432],
        add_1kg_till_10kg=[33, 36, 46, 55, 66, 78],
        upto_10kg=[254, 319, 300, 474, 573, 638],
        add_1kg_beyond_10kg=[23, 27, 35, 40, 55, 58],
    ),
    cod=CodRule(percentage=Decimal("1.8"), minimum_amount=Decimal("45"), gst_applies=True),
)

# ==================== BASIC USER ====================

BASIC_USER = TariffTable(
    tier=MerchantTier.BASIC_USER,
    name="Basic User",
    forward=_slabs(
        upto_250g=[33, 38, 40, 42, 52, 57],
        upto_500g_add=[5, 5, 11, 11, 12, 13],
        add_500g_till_5kg=[9, 16, 28, 32, 38, 42],
        upto_5kg=[119, 165, 232, 245, 297, 330],
        add_1kg_till_10kg=[25, 28, 36, 42, 50, 60],
        upto_10kg=[195, 244, 340, 361, 438, 487],
        add_1kg_beyond_10kg=[17, 21, 26, 30, 42, 44],
    ),
    rto=_slabs(
        upto_250g=[40, 46, 48, 50, 62, 69],
        upto_500g_add=[7, 7, 13, 13, 15, 16],
        add_500g_till_5kg=[11, 19, 33, 38, 46, 50],
        upto_5kg=[143, 199, 277, 294, 356, 396],
        add_1kg_till_10kg=[30, 33, 42, 50, 61, 71],
        upto_10kg=[233, 293, 275, 434, 526, 585],
        add_1kg_beyond_10kg=[21, 25, 32, 37, 50, 53],
    ),
    cod=CodRule(percentage=Decimal("1.5"), minimum_amount=Decimal("35"), gst_applies=True),
)

# ==================== LITE USER ====================

LITE_USER = TariffTable(
    tier=MerchantTier.LITE_USER,
    name="Lite User",
    forward=_slabs(
        upto_250g=[34, 39, 42, 44, 53, 59],
        upto_500g_add=[6, 6, 11, 11, 12, 14],
        add_500g_till_5kg=[10, 17, 28, 32, 39, 44],
        upto_5kg=[125, 173, 242, 256, 310, 345],
        add_1kg_till_10kg=[26, 29, 37, 44, 53, 62],
        upto_10kg=[203, 255, 356, 378, 458, 509],
        add_1kg_beyond_10kg=[18, 22, 28, 32, 44, 46],
    ),
    rto=_slabs(
        upto_250g=[42, 48, 50, 53, 65, 72],
        upto_500g_add=[7, 7, 14, 14, 15, 17],
        add_500g_till_5kg=[11, 19, 35, 40, 48, 53],
        upto_5kg=[149, 208, 289, 307, 372, 414],
        add_1kg_till_10kg=[32, 35, 44, 53, 64, 75],
        upto_10kg=[244, 306, 288, 454, 550, 612],
        add_1kg_beyond_10kg=[22, 26, 33, 39, 53, 55],
    ),
    cod=CodRule(percentage=Decimal("1.8"), minimum_amount=Decimal("40"), gst_applies=True),
)

# ==================== ADVANCED ====================

ADVANCED_USER = TariffTable(
    tier=MerchantTier.ADVANCED_USER,
    name="Advanced",
    forward=_slabs(
        upto_250g=[32, 37, 38, 40, 49, 54],
        upto_500g_add=[5, 5, 10, 10, 11, 13],
        add_500g_till_5kg=[9, 15, 27, 30, 37, 40],
        upto_5kg=[114, 158, 221, 234, 283, 315],
        add_1kg_till_10kg=[24, 27, 34, 40, 48, 57],
        upto_10kg=[186, 233, 325, 345, 418, 465],
        add_1kg_beyond_10kg=[16, 20, 25, 29, 40, 42],
    ),
    rto=_slabs(
        upto_250g=[38, 44, 45, 48, 59, 66],
        upto_500g_add=[6, 6, 13, 13, 14, 15],
        add_500g_till_5kg=[10, 18, 32, 37, 44, 48],
        upto_5kg=[136, 190, 264, 281, 340, 378],
        add_1kg_till_10kg=[29, 32, 40, 48, 58, 68],
        upto_10kg=[222, 279, 263, 415, 502, 559],
        add_1kg_beyond_10kg=[20, 24, 30, 35, 48, 51],
    ),
    cod=CodRule(percentage=Decimal("1.25"), minimum_amount=Decimal("25"), gst_applies=True),
)


BUILTIN_TARIFFS: Dict[MerchantTier, TariffTable] = {
    table.tier: table.validate()
    for table in (NEW_USER, BASIC_USER, LITE_USER, ADVANCED_USER)
}
