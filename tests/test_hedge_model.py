"""Hedge sizing and account-slot bookkeeping."""

from decimal import Decimal

import pytest

from lp_hedger.models.hedge import Hedge


def _hedge(target="0.5", tolerance="0.05", **kwargs):
    return Hedge(position_id=1, target=Decimal(target), tolerance=Decimal(tolerance), **kwargs)


class TestNeedsRebalance:
    def test_target_short(self):
        assert _hedge().target_short(Decimal("10")) == Decimal("5")

    def test_boundary_is_inclusive(self):
        # target 5.0, band 0.25
        hedge = _hedge()
        assert hedge.needs_rebalance(Decimal("10"), Decimal("4.75"))
        assert hedge.needs_rebalance(Decimal("10"), Decimal("5.25"))
        assert not hedge.needs_rebalance(Decimal("10"), Decimal("4.76"))

    def test_both_zero_is_balanced(self):
        assert not _hedge().needs_rebalance(Decimal("0"), Decimal("0"))

    def test_zero_target_with_open_short(self):
        assert _hedge().needs_rebalance(Decimal("0"), Decimal("0.5"))

    def test_first_open(self):
        assert _hedge().needs_rebalance(Decimal("10"), Decimal("0"))

    def test_accepts_floats(self):
        assert not _hedge().needs_rebalance(10, 5.0)


class TestTokenMapping:
    @pytest.mark.parametrize("symbol, mappings, expected", [
        ("WETH", {}, "ETH"),
        ("weth", {}, "ETH"),
        ("USDC", {}, None),
        ("PEPE", {}, "PEPE"),
        ("WETH", {"WETH": "BTC"}, "BTC"),
        ("ARB", {"arb": None}, None),
        (None, {}, None),
    ])
    def test_exchange_asset_for(self, symbol, mappings, expected):
        assert _hedge(token_mappings=mappings).exchange_asset_for(symbol) == expected


class TestAccountSlots:
    def test_unassigned_by_default(self):
        hedge = _hedge()
        assert not hedge.account_assigned(0)
        assert hedge.hl_account_for(0) is None

    def test_assign_main_account(self):
        hedge = _hedge()
        hedge.assign_account(1, None)
        assert hedge.account_assigned(1)
        assert hedge.hl_account_for(1) is None
        assert not hedge.account_assigned(0)

    def test_assign_and_clear_sub_account(self):
        hedge = _hedge()
        hedge.assign_account(0, "0xsub1")
        assert hedge.hl_account_for(0) == "0xsub1"
        hedge.clear_account(0)
        assert not hedge.account_assigned(0)
        assert hedge.hl_account_for(0) is None
