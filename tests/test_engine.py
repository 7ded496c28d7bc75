"""
Unit tests for the strategy engine: entry, monitoring, graduation and close.
"""

import asyncio
import pytest
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

from copytrail.engine import StrategyEngine
from copytrail.executor import SELL_ALL
from copytrail.graduation import GraduationStatus
from copytrail.models import (
    ExecutionResult,
    PositionState,
    PositionStatus,
    PriceQuote,
    TradeAction,
    TradeSignal,
    Venue,
)
from copytrail.pnl import PnLCalculator
from copytrail.store import InMemoryPositionStore, day_key
from copytrail.strategy import CopyStrategy

from helpers import MINT, OTHER_MINT, OTHER_WALLET, TRACKED_WALLET, FakeClock

ENTRY_PRICE = 0.0001


def quote(price, mint=MINT, source="pump.fun", graduated=False, stale=False):
    return PriceQuote(mint=mint, price=price, source=source, graduated=graduated, stale=stale)


def bought(mint=MINT, sol=0.5, tokens=5000.0, simulated=False):
    return ExecutionResult(
        success=True, action=TradeAction.BUY, mint=mint, signature="buy-sig",
        sol_spent=sol, tokens_received=tokens, simulated=simulated,
    )


def sold(mint=MINT, sol=1.0, tokens=5000.0, venue=Venue.BONDING_CURVE):
    return ExecutionResult(
        success=True, action=TradeAction.SELL, mint=mint, signature="sell-sig",
        venue=venue, sol_received=sol, tokens_sold=tokens,
    )


def sell_failed(mint=MINT):
    return ExecutionResult(success=False, action=TradeAction.SELL, mint=mint, error="verification_failed")


def buy_signal(mint=MINT, wallet=TRACKED_WALLET):
    return TradeSignal(mint=mint, action=TradeAction.BUY, wallet_address=wallet, amount_sol=0.5, upvotes=2)


class Harness:
    """Engine over an in-memory store with mocked execution and pricing."""

    def __init__(self, config, price=ENTRY_PRICE):
        self.clock = FakeClock()
        self.config = replace(config, dry_run=False, wallet_private_key="unused")
        self.store = InMemoryPositionStore(clock=self.clock)
        self.strategy = CopyStrategy(self.config, self.store, clock=self.clock)

        self.executor = MagicMock()
        self.executor.buy = AsyncMock(return_value=bought())
        self.executor.sell = AsyncMock(return_value=sold())

        self.resolver = MagicMock()
        self.resolver.resolve = AsyncMock(return_value=quote(price))

        self.detector = MagicMock()
        self.detector.has_graduated = AsyncMock(
            return_value=GraduationStatus(graduated=False, reason="on_bonding_curve")
        )

        self.trade_logger = MagicMock()
        self.events = AsyncMock()

        self.engine = StrategyEngine(
            config=self.config,
            store=self.store,
            strategy=self.strategy,
            executor=self.executor,
            resolver=self.resolver,
            detector=self.detector,
            trade_logger=self.trade_logger,
            on_event=self.events,
            clock=self.clock,
        )

    def set_price(self, price, **kwargs):
        self.resolver.resolve.return_value = quote(price, **kwargs)

    def event_names(self):
        return [c.args[0] for c in self.events.await_args_list]


@pytest.fixture
def harness(config):
    return Harness(config)


class TestEntry:

    @pytest.mark.asyncio
    async def test_verified_buy_opens_position(self, harness):
        result = await harness.engine.handle_signal(buy_signal())

        assert result.opened
        position = await harness.store.get_position(MINT)
        assert position.entry_price == pytest.approx(ENTRY_PRICE)
        assert position.sol_spent == 0.5
        assert position.token_amount == 5000.0
        assert position.max_price == position.entry_price
        assert position.wallet_source == TRACKED_WALLET
        assert position.venue == Venue.BONDING_CURVE
        assert await harness.store.is_open(MINT)
        assert await harness.store.has_cooldown(MINT)
        assert harness.event_names() == ["position_opened"]
        assert await harness.engine.position_state(MINT) == PositionState.OPEN

    @pytest.mark.asyncio
    async def test_graduated_token_bought_on_exchange(self, harness):
        harness.set_price(ENTRY_PRICE, source="jupiter", graduated=True)

        await harness.engine.handle_signal(buy_signal())

        assert harness.executor.buy.await_args.kwargs["venue"] == Venue.EXCHANGE
        position = await harness.store.get_position(MINT)
        assert position.graduated

    @pytest.mark.asyncio
    async def test_rejected_signal_does_not_trade(self, harness):
        await harness.store.set_cooldown(MINT, 60)

        result = await harness.engine.handle_signal(buy_signal())

        assert not result.opened
        assert result.reason == "cooldown"
        harness.executor.buy.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_buy_leaves_no_position(self, harness):
        harness.executor.buy.return_value = ExecutionResult(
            success=False, action=TradeAction.BUY, mint=MINT, error="verification_failed: zero tokens received"
        )

        result = await harness.engine.handle_signal(buy_signal())

        assert not result.opened
        assert not await harness.store.is_open(MINT)
        assert await harness.store.get_position(MINT) is None
        assert await harness.engine.position_state(MINT) == PositionState.NO_POSITION
        harness.trade_logger.log_buy.assert_called_once()

    @pytest.mark.asyncio
    async def test_paper_entry_marked_at_quote(self, config):
        h = Harness(config)
        h.engine.config = replace(h.config, dry_run=True)
        h.executor.buy.return_value = bought(sol=0.5, tokens=500_000, simulated=True)
        h.set_price(0.000002)

        await h.engine.handle_signal(buy_signal())

        position = await h.store.get_position(MINT)
        assert position.entry_price == pytest.approx(0.000002)
        assert position.token_amount == pytest.approx(250_000)

    @pytest.mark.asyncio
    async def test_second_entry_while_buy_in_flight(self, harness):
        release = asyncio.Event()

        async def slow_buy(*args, **kwargs):
            await release.wait()
            return bought()

        harness.executor.buy.side_effect = slow_buy

        first = asyncio.create_task(harness.engine.handle_signal(buy_signal()))
        await asyncio.sleep(0)
        while not harness.executor.buy.await_count:
            await asyncio.sleep(0)

        assert await harness.engine.position_state(MINT) == PositionState.EVALUATING
        second = await harness.engine.handle_signal(buy_signal(wallet=OTHER_WALLET))

        release.set()
        first_result = await first

        assert second.reason == "in_flight"
        assert first_result.opened
        assert harness.executor.buy.await_count == 1

    @pytest.mark.asyncio
    async def test_sell_signal_counts_seller(self, harness):
        await harness.engine.handle_signal(buy_signal())
        signal = TradeSignal(mint=MINT, action=TradeAction.SELL, wallet_address=TRACKED_WALLET)

        assert await harness.engine.handle_signal(signal) is None
        assert await harness.store.count_sellers(MINT) == 1

    @pytest.mark.asyncio
    async def test_sell_signal_without_position_is_ignored(self, harness):
        signal = TradeSignal(mint=MINT, action=TradeAction.SELL, wallet_address=OTHER_WALLET)

        assert await harness.engine.handle_signal(signal) is None
        assert await harness.store.count_sellers(MINT) == 0

    @pytest.mark.asyncio
    async def test_sells_before_entry_do_not_close_new_position(self, harness):
        await harness.engine.handle_signal(
            TradeSignal(mint=MINT, action=TradeAction.SELL, wallet_address=OTHER_WALLET)
        )
        # Seller recorded by an earlier process, before this entry
        await harness.store.add_seller(MINT, OTHER_WALLET)

        await harness.engine.handle_signal(buy_signal())
        tick = await harness.engine.evaluate_position(MINT)

        assert tick.status == "holding"
        assert tick.decision.seller_count == 0
        harness.executor.sell.assert_not_awaited()


class TestMonitoring:

    async def _open(self, harness, mint=MINT):
        await harness.engine.handle_signal(buy_signal(mint=mint))

    @pytest.mark.asyncio
    async def test_holding(self, harness):
        await self._open(harness)
        harness.set_price(ENTRY_PRICE * 1.05)

        tick = await harness.engine.evaluate_position(MINT)

        assert tick.status == "holding"
        assert tick.decision.pnl_percent == pytest.approx(5.0)
        assert (await harness.store.get_position(MINT)).max_price == pytest.approx(ENTRY_PRICE * 1.05)
        harness.executor.sell.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_take_profit_closes_position(self, harness):
        await self._open(harness)
        harness.set_price(ENTRY_PRICE * 2)

        tick = await harness.engine.evaluate_position(MINT)

        assert tick.status == "closed"
        harness.executor.sell.assert_awaited_once_with(
            MINT, SELL_ALL, venue=Venue.BONDING_CURVE, tracked_quantity=5000.0
        )
        assert not await harness.store.is_open(MINT)
        assert await harness.engine.position_state(MINT) == PositionState.NO_POSITION

        position = await harness.store.get_position(MINT)
        assert position.status == PositionStatus.CLOSED
        assert position.close_reason == "take_profit"

        trades = await harness.store.get_trades(day_key(int(harness.clock() * 1000)))
        assert len(trades) == 1
        assert trades[0].wallet_source == TRACKED_WALLET
        assert trades[0].close_reason == "take_profit"
        assert trades[0].sol_received == 1.0
        assert trades[0].pnl_percent is not None

        assert await harness.store.has_cooldown(MINT)
        assert "position_closed" in harness.event_names()
        harness.trade_logger.log_close.assert_called_once()

    @pytest.mark.asyncio
    async def test_closed_pair_is_blocked_from_rebuy(self, harness):
        await self._open(harness)
        harness.set_price(ENTRY_PRICE * 2)
        await harness.engine.evaluate_position(MINT)
        harness.clock.advance(120)

        result = await harness.engine.handle_signal(buy_signal())

        assert result.reason == "rebuy_blocked"

    @pytest.mark.asyncio
    async def test_failed_sell_keeps_position_open(self, harness):
        await self._open(harness)
        harness.executor.sell.return_value = sell_failed()
        harness.set_price(ENTRY_PRICE * 0.5)

        tick = await harness.engine.evaluate_position(MINT)

        assert tick.status == "close_failed"
        assert await harness.store.is_open(MINT)
        assert (await harness.store.get_position(MINT)).status == PositionStatus.OPEN
        assert harness.engine.stats["close_failures"] == 1

        harness.executor.sell.return_value = sold(sol=0.25)
        retry = await harness.engine.evaluate_position(MINT)

        assert retry.status == "closed"

    @pytest.mark.asyncio
    async def test_stale_price_skips_exit_checks(self, harness):
        await self._open(harness)
        harness.set_price(ENTRY_PRICE * 0.1, stale=True)

        tick = await harness.engine.evaluate_position(MINT)

        assert tick.status == "no_price"
        harness.executor.sell.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_traders_selling_closes_position(self, harness):
        await self._open(harness)
        await harness.engine.handle_signal(
            TradeSignal(mint=MINT, action=TradeAction.SELL, wallet_address=TRACKED_WALLET)
        )

        tick = await harness.engine.evaluate_position(MINT)

        assert tick.status == "closed"
        assert tick.decision.reason.value == "traders_sold"
        assert await harness.store.count_sellers(MINT) == 0

    @pytest.mark.asyncio
    async def test_tick_errors_are_contained(self, harness):
        await self._open(harness, MINT)
        await self._open(harness, OTHER_MINT)

        async def resolve(mint, force_fresh=False):
            if mint == MINT:
                raise RuntimeError("boom")
            return quote(ENTRY_PRICE, mint=mint)

        harness.resolver.resolve.side_effect = resolve

        results = {r.mint: r for r in await harness.engine.monitor_all()}

        assert results[MINT].status == "error"
        assert "boom" in results[MINT].error
        assert results[OTHER_MINT].status == "holding"
        assert harness.engine.stats["tick_errors"] == 1

    @pytest.mark.asyncio
    async def test_busy_token_is_skipped(self, harness):
        await self._open(harness)
        harness.resolver.resolve.reset_mock()
        harness.engine._in_flight.add(MINT)

        tick = await harness.engine.evaluate_position(MINT)

        assert tick.status == "busy"
        assert await harness.engine.position_state(MINT) == PositionState.CLOSING
        harness.resolver.resolve.assert_not_awaited()


class TestGraduation:

    async def _open(self, harness):
        await harness.engine.handle_signal(buy_signal())

    @pytest.mark.asyncio
    async def test_marked_exactly_once(self, harness):
        await self._open(harness)
        harness.detector.has_graduated.return_value = GraduationStatus(True, "bonding_curve_complete")
        harness.set_price(ENTRY_PRICE * 1.1, source="jupiter", graduated=True)

        first = await harness.engine.evaluate_position(MINT)
        second = await harness.engine.evaluate_position(MINT)

        assert first.graduated and not second.graduated
        assert first.status == "holding"
        position = await harness.store.get_position(MINT)
        assert position.venue == Venue.EXCHANGE
        assert position.graduated
        assert position.graduation_price == pytest.approx(ENTRY_PRICE * 1.1)
        assert position.graduation_time == int(harness.clock() * 1000)
        assert harness.detector.has_graduated.await_count == 1
        assert harness.event_names().count("graduated") == 1

    @pytest.mark.asyncio
    async def test_graduated_position_exits_on_exchange(self, harness):
        await self._open(harness)
        harness.detector.has_graduated.return_value = GraduationStatus(True, "source=jupiter")
        harness.set_price(ENTRY_PRICE, source="jupiter", graduated=True)
        await harness.engine.evaluate_position(MINT)

        harness.set_price(ENTRY_PRICE * 2, source="jupiter", graduated=True)
        await harness.engine.evaluate_position(MINT)

        assert harness.executor.sell.await_args.kwargs["venue"] == Venue.EXCHANGE

    @pytest.mark.asyncio
    async def test_graduation_without_price_uses_entry_price(self, harness):
        await self._open(harness)
        harness.detector.has_graduated.return_value = GraduationStatus(True, "bonding_curve_complete")
        harness.resolver.resolve.return_value = PriceQuote(mint=MINT, price=None, source="none", graduated=True)

        tick = await harness.engine.evaluate_position(MINT)

        assert tick.status == "no_price"
        assert tick.graduated
        position = await harness.store.get_position(MINT)
        assert position.graduation_price == pytest.approx(ENTRY_PRICE)


class TestOperatorActions:

    @pytest.mark.asyncio
    async def test_abandon_without_trading(self, harness):
        await harness.engine.handle_signal(buy_signal())

        result = await harness.engine.abandon_position(MINT, reason="rugged")

        assert result.success
        harness.executor.sell.assert_not_awaited()
        assert not await harness.store.is_open(MINT)
        trades = await harness.store.get_trades(day_key(int(harness.clock() * 1000)))
        assert trades[0].close_reason == "rugged"
        harness.trade_logger.log_abandon.assert_called_once()

    @pytest.mark.asyncio
    async def test_manual_close(self, harness):
        await harness.engine.handle_signal(buy_signal())

        result = await harness.engine.close_position(MINT)

        assert result.success
        assert result.reason == "manual"
        assert result.pnl is not None
        assert not await harness.store.is_open(MINT)

    @pytest.mark.asyncio
    async def test_close_without_position(self, harness):
        result = await harness.engine.close_position(MINT)

        assert not result.success
        assert result.error == "no_open_position"


class TestClosePnL:

    @pytest.mark.asyncio
    async def test_live_close_reports_verified_proceeds(self, harness):
        harness.executor.buy.return_value = bought(sol=0.1, tokens=1000)
        await harness.engine.handle_signal(buy_signal())
        harness.executor.sell.return_value = sold(sol=0.15, tokens=1000)
        harness.set_price(ENTRY_PRICE * 1.5)

        result = await harness.engine.close_position(MINT)

        # Fees are already out of the 0.15 SOL received
        assert result.pnl.pnl_sol == pytest.approx(0.05)
        assert result.pnl.pnl_percent == pytest.approx(50.0)
        assert result.pnl.net_received == pytest.approx(0.15)
        assert result.pnl.price_change_percent == pytest.approx(50.0)

        trade = (await harness.store.get_trades(day_key(int(harness.clock() * 1000))))[0]
        assert trade.sol_received == 0.15
        assert trade.pnl_sol == pytest.approx(0.05)

        args = harness.trade_logger.log_close.call_args.args
        assert args[5:7] == (0.15, 1000)

    @pytest.mark.asyncio
    async def test_paper_close_uses_marked_quantity(self, config):
        h = Harness(config)
        h.engine.config = replace(h.config, dry_run=True)
        h.executor.buy.return_value = bought(sol=0.5, tokens=500_000, simulated=True)
        h.set_price(0.000002)
        await h.engine.handle_signal(buy_signal())

        # Simulated fill at the dry-run price, which does not track the quote
        h.executor.sell.return_value = ExecutionResult(
            success=True, action=TradeAction.SELL, mint=MINT, signature="DRY_RUN_SELL",
            sol_received=0.5, tokens_sold=500_000, simulated=True,
        )
        h.set_price(0.000004)

        tick = await h.engine.evaluate_position(MINT)

        assert tick.status == "closed"
        expected = PnLCalculator().realized_pnl(0.000002, 0.000004, 250_000, 0.5)
        trade = (await h.store.get_trades(day_key(int(h.clock() * 1000))))[0]
        assert trade.sol_received == pytest.approx(expected.net_received)
        assert trade.pnl_sol == pytest.approx(expected.pnl_sol)

        args = h.trade_logger.log_close.call_args.args
        assert args[5] == pytest.approx(expected.net_received)
        assert args[6] == pytest.approx(250_000)
