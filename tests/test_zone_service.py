import pytest
from hypothesis import given, strategies as st

from shipsettle.core.exceptions import InvalidInput
from shipsettle.models.rate_card import ZoneCode
from shipsettle.services.zone_service import collapse_zone, is_valid_zone


@pytest.mark.parametrize("raw,expected", [
    ("A", ZoneCode.A),
    ("f", ZoneCode.F),
    ("  c  ", ZoneCode.C),
    ("C1", ZoneCode.C),
    ("c2", ZoneCode.C),
    ("D1", ZoneCode.D),
    ("D-2", ZoneCode.D),
    ("Zone C-2 (Metro to Metro)", ZoneCode.C),
    ("zone e (North East)", ZoneCode.E),
    ("ZONE_B", ZoneCode.B),
    (ZoneCode.A, ZoneCode.A),
])
def test_collapse_zone(raw, expected):
    assert collapse_zone(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", None, "G", "Z1", "E2", "A1", "C3", "Metro", 7])
def test_collapse_zone_rejects_unknown(raw):
    with pytest.raises(InvalidInput):
        collapse_zone(raw)
    assert not is_valid_zone(raw)


@given(st.sampled_from(["A", "B", "C", "D", "E", "F", "C1", "C2", "D1", "D2"]),
       st.sampled_from(["", "Zone ", "zone-"]),
       st.sampled_from(["", " (Metro to Metro)", "  "]),
       st.booleans())
def test_collapse_zone_is_idempotent(code, prefix, suffix, lower):
    raw = f"{prefix}{code}{suffix}"
    if lower:
        raw = raw.lower()
    once = collapse_zone(raw)
    assert collapse_zone(once) == once
    assert collapse_zone(once.value) == once
    assert once.value == code[0]
