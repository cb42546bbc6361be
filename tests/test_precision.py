"""
Tests for escrowflow_core.precision — XRP <-> drops conversion.
"""

from decimal import Decimal

import pytest

from escrowflow_core.errors import InvalidAmount
from escrowflow_core.precision import (
    DROPS_PER_XRP,
    MIN_XRP_AMOUNT,
    drops_to_xrp,
    format_amount,
    xrp_to_drops,
)


class TestXrpToDrops:

    @pytest.mark.parametrize("value, drops", [
        ("10", 10_000_000),
        (10, 10_000_000),
        (0.1, 100_000),
        ("0.000001", 1),
        (Decimal("2.5"), 2_500_000),
        (" 3 ", 3_000_000),
    ])
    def test_exact_conversion(self, value, drops):
        assert xrp_to_drops(value) == drops

    def test_zero_is_zero_drops(self):
        assert xrp_to_drops(0) == 0

    @pytest.mark.parametrize("bad", ["abc", None, True, "nan", "inf", []])
    def test_non_numeric_rejected(self, bad):
        with pytest.raises(InvalidAmount):
            xrp_to_drops(bad)

    def test_negative_rejected(self):
        with pytest.raises(InvalidAmount, match="negative"):
            xrp_to_drops("-1")

    def test_sub_drop_rejected_not_rounded(self):
        with pytest.raises(InvalidAmount, match="decimal places"):
            xrp_to_drops("0.0000001")

    def test_field_name_in_details(self):
        with pytest.raises(InvalidAmount) as exc:
            xrp_to_drops("x", "reserve")
        assert exc.value.details["field"] == "reserve"


class TestDropsToXrp:

    def test_constants(self):
        assert DROPS_PER_XRP == 1_000_000
        assert MIN_XRP_AMOUNT == Decimal("0.000001")

    def test_drops_to_xrp(self):
        assert drops_to_xrp(1_500_000) == Decimal("1.5")

    def test_format_amount(self):
        assert format_amount(10_000_000) == "10.000000 XRP"
        assert format_amount(1, "XLUSD") == "0.000001 XLUSD"
