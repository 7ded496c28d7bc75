"""
Unit tests for fee-aware PnL accounting.
"""

import pytest

from copytrail.models import Position, Venue
from copytrail.pnl import PnLCalculator, venue_fee

from helpers import MINT, TRACKED_WALLET


REFERENCE_TRADE = dict(
    entry_price=0.0001,
    exit_price=0.00015,
    token_amount=1_000_000,
    sol_spent=100,
)


class TestRealizedPnL:
    """Fee order: venue fee, then slippage, then network + priority fee."""

    def test_reference_round_trip(self):
        result = PnLCalculator().realized_pnl(**REFERENCE_TRADE, venue=Venue.BONDING_CURVE)

        # gross 150, sell fee 1.75% = 2.625, network 0.000005
        assert result.pnl_percent == 47.37
        assert result.pnl_sol == pytest.approx(47.374995, abs=1e-6)
        assert result.net_received == pytest.approx(147.374995, abs=1e-6)
        assert result.price_change_percent == 50.0
        assert result.breakdown["exit"]["sell_fee_amount"] == pytest.approx(2.625)

    def test_fee_impact_counts_both_sides(self):
        result = PnLCalculator().realized_pnl(**REFERENCE_TRADE, venue="pump")

        # buy fee 1.75 + sell fee 2.625 + network fee, over 100 SOL
        assert result.fee_impact_percent == pytest.approx(4.38, abs=0.01)

    def test_aggregator_venue_is_cheaper(self):
        calc = PnLCalculator()

        curve = calc.realized_pnl(**REFERENCE_TRADE, venue=Venue.BONDING_CURVE)
        exchange = calc.realized_pnl(**REFERENCE_TRADE, venue=Venue.EXCHANGE)

        assert exchange.pnl_sol > curve.pnl_sol
        assert exchange.breakdown["exit"]["sell_fee_amount"] == pytest.approx(0.45)

    def test_slippage_applied_after_venue_fee(self):
        result = PnLCalculator().realized_pnl(**REFERENCE_TRADE, slippage=0.02)

        after_fee = 150 - 2.625
        assert result.breakdown["exit"]["slippage_amount"] == pytest.approx(after_fee * 0.02)
        assert result.net_received == pytest.approx(after_fee * 0.98 - 0.000005, abs=1e-6)

    def test_negligible_slippage_ignored(self):
        calc = PnLCalculator()

        tiny = calc.realized_pnl(**REFERENCE_TRADE, slippage=0.00005)
        none = calc.realized_pnl(**REFERENCE_TRADE)

        assert tiny.net_received == none.net_received
        assert tiny.breakdown["exit"]["slippage_amount"] == 0

    def test_priority_fee_reduces_proceeds(self):
        calc = PnLCalculator()

        base = calc.realized_pnl(**REFERENCE_TRADE)
        with_fee = calc.realized_pnl(**REFERENCE_TRADE, priority_fee=0.01)

        assert base.pnl_sol - with_fee.pnl_sol == pytest.approx(0.01, abs=1e-6)

    def test_losing_trade(self):
        result = PnLCalculator().realized_pnl(
            entry_price=0.0001, exit_price=0.00008, token_amount=1_000_000, sol_spent=100
        )

        assert result.pnl_sol < 0
        assert not result.is_profit
        assert result.price_change_percent == -20.0

    @pytest.mark.parametrize("field", ["entry_price", "exit_price", "token_amount", "sol_spent"])
    def test_non_positive_inputs_rejected(self, field):
        trade = dict(REFERENCE_TRADE, **{field: 0})

        with pytest.raises(ValueError):
            PnLCalculator().realized_pnl(**trade)

    def test_unknown_venue_uses_default_fee(self):
        assert venue_fee("raydium") == 0.01
        assert venue_fee(Venue.BONDING_CURVE) == 0.0175


class TestSettledPnL:

    def test_verified_proceeds_are_not_charged_again(self):
        result = PnLCalculator().settled_pnl(
            entry_price=0.0001, exit_price=0.00015, token_amount=1000, sol_spent=0.1, sol_received=0.15,
        )

        assert result.pnl_sol == pytest.approx(0.05)
        assert result.pnl_percent == 50.0
        assert result.net_received == 0.15
        assert result.price_change_percent == 50.0
        assert result.breakdown["settled"]["modeled_net_received"] < 0.15

    def test_fee_figures_come_from_the_model(self):
        calc = PnLCalculator()

        settled = calc.settled_pnl(**REFERENCE_TRADE, sol_received=140)
        modeled = calc.realized_pnl(**REFERENCE_TRADE)

        assert settled.fee_impact_percent == modeled.fee_impact_percent
        assert settled.pnl_sol == 40

    def test_negative_proceeds_rejected(self):
        with pytest.raises(ValueError):
            PnLCalculator().settled_pnl(**REFERENCE_TRADE, sol_received=-1)


class TestUnrealizedPnL:

    def test_mirrors_realized_with_estimated_slippage(self):
        position = Position(
            mint=MINT,
            wallet_source=TRACKED_WALLET,
            entry_price=0.0001,
            sol_spent=100,
            token_amount=1_000_000,
            max_price=0.0001,
            entry_time=0,
        )
        calc = PnLCalculator()

        unrealized = calc.unrealized_pnl(position, 0.00015)
        realized = calc.realized_pnl(**REFERENCE_TRADE, slippage=0.02)

        assert unrealized == realized


class TestDiscrepancyCheck:

    def test_normal_fee_drag_is_ok(self):
        check = PnLCalculator().check_discrepancy(**REFERENCE_TRADE)

        assert check.severity == "OK"
        assert not check.has_high_impact
        assert check.discrepancy == pytest.approx(2.63, abs=0.01)

    def test_excessive_slippage_is_flagged(self):
        check = PnLCalculator().check_discrepancy(**REFERENCE_TRADE, slippage=0.3)

        assert check.severity == "HIGH"
        assert check.has_high_impact
        assert check.discrepancy > 5

    def test_settled_proceeds_are_compared(self):
        calc = PnLCalculator()

        # Price up 50% but only 100 SOL came back
        check = calc.check_discrepancy(**REFERENCE_TRADE, sol_received=100)
        in_line = calc.check_discrepancy(**REFERENCE_TRADE, sol_received=147)

        assert check.severity == "HIGH"
        assert check.discrepancy == pytest.approx(50.0)
        assert in_line.severity == "OK"
