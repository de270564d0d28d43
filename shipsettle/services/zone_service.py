"""Zone canonicalisation.

Carriers report zones in two vocabularies: the six letters A-F and legacy
sub-coded forms (C1/C2 for metro bands, D1/D2 for rest-of-India bands),
often wrapped in display text such as "Zone C-2 (Metro to Metro)".
Everything is collapsed to one ZoneCode here, once, at ingestion.
"""
import logging
import re
from typing import Union

from shipsettle.core.exceptions import InvalidInput
from shipsettle.models.rate_card import ZoneCode

logger = logging.getLogger(__name__)

_PARENTHETICAL = re.compile(r"\([^)]*\)")
_ZONE_PREFIX = re.compile(r"^ZONE")
_SEPARATORS = re.compile(r"[\s\-_:.]+")
_ZONE_CODE = re.compile(r"^([A-F])([12])?$")

# Letters that had distance sub-bands in the legacy vocabulary
_SUB_CODED = {"C", "D"}


def collapse_zone(raw: Union[str, ZoneCode, None]) -> ZoneCode:
    """
    Collapse any carrier zone representation to A-F.

    Case-insensitive, whitespace-tolerant and idempotent:
    ``collapse_zone(collapse_zone(x)) == collapse_zone(x)``.

    Raises:
        InvalidInput: if the value does not name one of the six zones.
    """
    if isinstance(raw, ZoneCode):
        return raw
    if raw is None or not isinstance(raw, str) or not raw.strip():
        raise InvalidInput(f"Zone is required, got {raw!r}")

    text = raw.strip().upper()
    text = _PARENTHETICAL.sub("", text).strip()
    text = _SEPARATORS.sub("", text)
    text = _ZONE_PREFIX.sub("", text)

    match = _ZONE_CODE.match(text)
    if not match:
        raise InvalidInput(f"Unknown zone '{raw}'")

    letter, band = match.groups()
    if band and letter not in _SUB_CODED:
        raise InvalidInput(f"Unknown zone '{raw}': only C and D carry sub-codes")

    zone = ZoneCode(letter)
    if band:
        logger.debug(f"Collapsed legacy zone '{raw}' to {zone.value}")
    return zone


def is_valid_zone(raw: Union[str, ZoneCode, None]) -> bool:
    try:
        collapse_zone(raw)
        return True
    except InvalidInput:
        return False
