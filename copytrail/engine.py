"""
Strategy Engine - drives each token through
NoPosition -> Evaluating -> Open -> Closing -> NoPosition.

Only one buy or sell may be in flight per token. Positions are always re-read
from the store before they are mutated, and a failure while evaluating one
token never stops the others.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
import structlog

from .config import Config
from .executor import ExecutionClient, SELL_ALL
from .graduation import GraduationDetector
from .models import (
    ClosedTrade,
    EntryDecision,
    ExecutionResult,
    ExitDecision,
    ExitReason,
    Position,
    PositionState,
    PositionStatus,
    PriceQuote,
    TradeSignal,
    Venue,
)
from .pnl import PnLCalculator, PnLResult
from .price_resolver import PriceResolver
from .store import PositionStore, day_key
from .strategy import CopyStrategy
from .trade_logger import TradeLogger

logger = structlog.get_logger(__name__)

EventCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]


@dataclass
class EntryResult:
    mint: str
    opened: bool
    reason: str
    decision: Optional[EntryDecision] = None
    execution: Optional[ExecutionResult] = None
    position: Optional[Position] = None


@dataclass
class CloseResult:
    success: bool
    mint: str
    reason: str
    execution: Optional[ExecutionResult] = None
    pnl: Optional[PnLResult] = None
    error: Optional[str] = None


@dataclass
class TickResult:
    """Outcome of evaluating one open position."""
    mint: str
    status: str     # holding | closed | close_failed | no_price | busy | missing | error
    price: Optional[float] = None
    decision: Optional[ExitDecision] = None
    graduated: bool = False
    error: Optional[str] = None


class StrategyEngine:
    """Opens, monitors and closes copy-trade positions."""

    def __init__(
        self,
        config: Config,
        store: PositionStore,
        strategy: CopyStrategy,
        executor: ExecutionClient,
        resolver: PriceResolver,
        detector: GraduationDetector,
        pnl: Optional[PnLCalculator] = None,
        trade_logger: Optional[TradeLogger] = None,
        on_event: Optional[EventCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.strategy = strategy
        self.executor = executor
        self.resolver = resolver
        self.detector = detector
        self.pnl = pnl or PnLCalculator()
        self.trade_logger = trade_logger
        self.on_event = on_event
        self._clock = clock

        # Tokens with an execution (or evaluation) outstanding
        self._in_flight: Set[str] = set()
        self.running = False

        # Stats
        self.stats = {
            "entries": 0,
            "entries_rejected": 0,
            "closes": 0,
            "close_failures": 0,
            "graduations": 0,
            "tick_errors": 0,
        }

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def position_state(self, mint: str) -> PositionState:
        is_open = await self.store.is_open(mint)
        if mint in self._in_flight:
            return PositionState.CLOSING if is_open else PositionState.EVALUATING
        return PositionState.OPEN if is_open else PositionState.NO_POSITION

    # ------------------------------------------------------------------
    # Signals and entries
    # ------------------------------------------------------------------

    async def handle_signal(self, signal: TradeSignal) -> Optional[EntryResult]:
        """Buys go through the entry flow; sells are counted toward signal-follow exits."""
        if signal.is_sell:
            # Only sells after our entry count toward a signal-follow exit
            if not await self.store.is_open(signal.mint):
                logger.debug("sell_signal_without_position", token=signal.mint[:8], wallet=signal.wallet_address[:8])
                return None
            count = await self.store.add_seller(signal.mint, signal.wallet_address)
            logger.info(
                "trader_sold",
                token=signal.mint[:8],
                wallet=signal.wallet_address[:8],
                sellers=count
            )
            return None
        return await self.open_position(signal)

    async def open_position(self, signal: TradeSignal) -> EntryResult:
        mint = signal.mint
        if mint in self._in_flight:
            logger.info("entry_skipped_in_flight", token=mint[:8])
            return EntryResult(mint=mint, opened=False, reason="in_flight")

        self._in_flight.add(mint)
        try:
            return await self._open(signal)
        finally:
            self._in_flight.discard(mint)

    async def _open(self, signal: TradeSignal) -> EntryResult:
        mint = signal.mint
        decision = await self.strategy.should_copy(signal)
        if not decision.copy:
            self.stats["entries_rejected"] += 1
            return EntryResult(mint=mint, opened=False, reason=decision.reason, decision=decision)

        if decision.amount_sol <= 0:
            self.stats["entries_rejected"] += 1
            return EntryResult(mint=mint, opened=False, reason="invalid_amount", decision=decision)

        quote = await self.resolver.resolve(mint)
        venue = Venue.EXCHANGE if quote.graduated else Venue.BONDING_CURVE

        result = await self.executor.buy(mint, decision.amount_sol, venue=venue)
        if self.trade_logger:
            self.trade_logger.log_buy(signal, result)

        if not result.success:
            logger.warning("entry_failed", token=mint[:8], error=result.error)
            return EntryResult(
                mint=mint, opened=False, reason=f"buy_failed: {result.error}",
                decision=decision, execution=result,
            )

        entry_price = result.sol_spent / result.tokens_received
        token_amount = result.tokens_received
        if result.simulated and quote.has_price and not quote.stale:
            # Paper fills are marked at the live quote
            entry_price = quote.price
            token_amount = result.sol_spent / entry_price

        now = self._now_ms()
        position = Position(
            mint=mint,
            wallet_source=signal.wallet_address,
            entry_price=entry_price,
            sol_spent=result.sol_spent,
            token_amount=token_amount,
            max_price=entry_price,
            entry_time=now,
            entry_signature=result.signature,
            wallet_name=signal.wallet_name,
            venue=venue,
            graduated=venue == Venue.EXCHANGE,
            graduation_time=now if venue == Venue.EXCHANGE else None,
            graduation_price=entry_price if venue == Venue.EXCHANGE else None,
        )

        await self.store.save_position(position)
        await self.store.clear_sellers(mint)
        await self.store.add_open(mint)
        await self.store.set_cooldown(mint, self.config.cooldown_seconds)
        self.stats["entries"] += 1

        logger.info(
            "position_opened",
            token=mint[:8],
            wallet=signal.wallet_address[:8] if signal.wallet_address else None,
            sol_spent=f"{position.sol_spent:.4f}",
            tokens=position.token_amount,
            entry_price=f"{entry_price:.10f}",
            venue=venue.value,
            confidence=decision.confidence,
            simulated=result.simulated
        )
        await self._emit("position_opened", {
            "mint": mint,
            "wallet": signal.wallet_address,
            "sol_spent": position.sol_spent,
            "entry_price": entry_price,
            "venue": venue.value,
            "signature": result.signature,
            "simulated": result.simulated,
        })

        return EntryResult(
            mint=mint, opened=True, reason="opened",
            decision=decision, execution=result, position=position,
        )

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def monitor_all(self) -> List[TickResult]:
        """Evaluate every open position concurrently."""
        try:
            mints = await self.store.list_open()
        except Exception as e:
            logger.error("list_open_positions_failed", error=str(e))
            return []

        if not mints:
            return []

        return list(await asyncio.gather(*(self.evaluate_position(m) for m in mints)))

    async def evaluate_position(self, mint: str) -> TickResult:
        """One monitoring tick for one token. Never raises."""
        if mint in self._in_flight:
            return TickResult(mint=mint, status="busy")

        self._in_flight.add(mint)
        try:
            return await self._evaluate(mint)
        except Exception as e:
            self.stats["tick_errors"] += 1
            logger.error("evaluate_position_failed", token=mint[:8], error=str(e), exc_info=True)
            return TickResult(mint=mint, status="error", error=str(e))
        finally:
            self._in_flight.discard(mint)

    async def _evaluate(self, mint: str) -> TickResult:
        position = await self.store.get_position(mint)
        if position is None or not position.is_open:
            logger.warning("open_position_record_missing", token=mint[:8])
            return TickResult(mint=mint, status="missing")

        quote = await self.resolver.resolve(mint)

        graduated_now = False
        if not position.graduated and position.venue == Venue.BONDING_CURVE:
            position, graduated_now = await self._check_graduation(position, quote)

        if not quote.has_price or quote.stale:
            logger.debug("tick_without_fresh_price", token=mint[:8], source=quote.source, stale=quote.stale)
            return TickResult(mint=mint, status="no_price", graduated=graduated_now, error=quote.error)

        price = quote.price
        if price > position.max_price:
            await self.store.update_fields(mint, {"max_price": str(price)})
            position.max_price = price

        decision = await self.strategy.should_exit(position, price)
        if not decision.exit:
            logger.debug(
                "position_holding",
                token=mint[:8],
                pnl=f"{decision.pnl_percent:+.2f}%",
                max_pnl=f"{decision.max_pnl_percent:+.2f}%",
                hold_seconds=round(decision.hold_seconds),
                sellers=decision.seller_count
            )
            return TickResult(mint=mint, status="holding", price=price, decision=decision, graduated=graduated_now)

        close = await self._close(position, decision.reason.value, price)
        return TickResult(
            mint=mint,
            status="closed" if close.success else "close_failed",
            price=price,
            decision=decision,
            graduated=graduated_now,
            error=close.error,
        )

    async def _check_graduation(self, position: Position, quote: PriceQuote):
        """Flip the venue once when the token has left its bonding curve."""
        mint = position.mint
        status = await self.detector.has_graduated(mint)
        if not status.graduated:
            return position, False

        latest = await self.store.get_position(mint)
        if latest is None or latest.graduated:
            return latest or position, False

        graduation_price = quote.price if quote.has_price else latest.entry_price
        now = self._now_ms()
        await self.store.update_fields(mint, {
            "venue": Venue.EXCHANGE.value,
            "graduated": "true",
            "graduation_time": str(now),
            "graduation_price": str(graduation_price),
        })
        self.stats["graduations"] += 1

        logger.info(
            "position_graduated",
            token=mint[:8],
            reason=status.reason,
            graduation_price=f"{graduation_price:.10f}"
        )
        await self._emit("graduated", {
            "mint": mint,
            "reason": status.reason,
            "graduation_price": graduation_price,
            "graduation_time": now,
        })

        refreshed = await self.store.get_position(mint)
        return refreshed or latest, True

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    async def close_position(self, mint: str, reason: str = ExitReason.MANUAL.value) -> CloseResult:
        """Sell a position now, outside the monitoring tick."""
        if mint in self._in_flight:
            return CloseResult(success=False, mint=mint, reason=reason, error="in_flight")

        self._in_flight.add(mint)
        try:
            position = await self.store.get_position(mint)
            if position is None or not position.is_open or not await self.store.is_open(mint):
                return CloseResult(success=False, mint=mint, reason=reason, error="no_open_position")

            quote = await self.resolver.resolve(mint)
            return await self._close(position, reason, quote.price if quote.has_price else None)
        finally:
            self._in_flight.discard(mint)

    async def _close(self, position: Position, reason: str, current_price: Optional[float]) -> CloseResult:
        mint = position.mint
        result = await self.executor.sell(
            mint,
            SELL_ALL,
            venue=position.venue,
            tracked_quantity=position.token_amount,
        )

        if not result.success:
            # Position stays open; the next tick retries
            self.stats["close_failures"] += 1
            logger.warning("close_failed", token=mint[:8], reason=reason, error=result.error)
            return CloseResult(success=False, mint=mint, reason=reason, execution=result, error=result.error)

        if result.simulated:
            exit_price = current_price or position.entry_price
            tokens_sold = position.token_amount
            pnl = self._realized_pnl(position, exit_price, tokens_sold)
            sol_received = pnl.net_received if pnl else tokens_sold * exit_price
        else:
            tokens_sold = result.tokens_sold
            sol_received = result.sol_received
            # Fees are already netted out of the fill, so the quote is the exit mark
            exit_price = current_price or sol_received / tokens_sold
            pnl = self._realized_pnl(position, exit_price, tokens_sold, sol_received)

        closed_at = self._now_ms()
        trade = ClosedTrade(
            mint=mint,
            wallet_source=position.wallet_source,
            close_reason=reason,
            closed_at=closed_at,
            sol_spent=position.sol_spent,
            sol_received=sol_received,
            pnl_sol=pnl.pnl_sol if pnl else None,
            pnl_percent=pnl.pnl_percent if pnl else None,
            signature=result.signature,
        )
        await self._finalize(position, trade)
        self.stats["closes"] += 1

        hold_seconds = position.hold_seconds(self._clock())
        if self.trade_logger:
            self.trade_logger.log_close(
                position, result, reason, pnl, exit_price, sol_received, tokens_sold, hold_seconds
            )

        logger.info(
            "position_closed",
            token=mint[:8],
            reason=reason,
            sol_spent=f"{position.sol_spent:.4f}",
            sol_received=f"{sol_received:.4f}",
            pnl=f"{pnl.pnl_percent:+.2f}%" if pnl else None,
            hold_seconds=round(hold_seconds),
            signature=result.signature
        )
        await self._emit("position_closed", {
            "mint": mint,
            "reason": reason,
            "sol_spent": position.sol_spent,
            "sol_received": sol_received,
            "pnl_sol": trade.pnl_sol,
            "pnl_percent": trade.pnl_percent,
            "signature": result.signature,
            "simulated": result.simulated,
        })

        return CloseResult(success=True, mint=mint, reason=reason, execution=result, pnl=pnl)

    def _realized_pnl(
        self,
        position: Position,
        exit_price: float,
        tokens_sold: float,
        sol_received: Optional[float] = None,
    ) -> Optional[PnLResult]:
        """Modeled PnL for paper closes; settled PnL from the verified proceeds otherwise."""
        try:
            if sol_received is None:
                return self.pnl.realized_pnl(
                    entry_price=position.entry_price,
                    exit_price=exit_price,
                    token_amount=tokens_sold,
                    sol_spent=position.sol_spent,
                    venue=position.venue,
                )

            priority_fee = self.config.priority_fee_sol
            pnl = self.pnl.settled_pnl(
                entry_price=position.entry_price,
                exit_price=exit_price,
                token_amount=tokens_sold,
                sol_spent=position.sol_spent,
                sol_received=sol_received,
                venue=position.venue,
                priority_fee=priority_fee,
            )
            self.pnl.check_discrepancy(
                position.entry_price, exit_price, tokens_sold, position.sol_spent,
                venue=position.venue, priority_fee=priority_fee, sol_received=sol_received,
            )
            return pnl
        except ValueError as e:
            logger.warning("pnl_unavailable", token=position.mint[:8], error=str(e))
            return None

    async def abandon_position(self, mint: str, reason: str = ExitReason.MANUAL.value) -> CloseResult:
        """Operator action: drop a position from the open set without trading."""
        if mint in self._in_flight:
            return CloseResult(success=False, mint=mint, reason=reason, error="in_flight")

        self._in_flight.add(mint)
        try:
            position = await self.store.get_position(mint)
            if position is None or not await self.store.is_open(mint):
                return CloseResult(success=False, mint=mint, reason=reason, error="no_open_position")

            trade = ClosedTrade(
                mint=mint,
                wallet_source=position.wallet_source,
                close_reason=reason,
                closed_at=self._now_ms(),
                sol_spent=position.sol_spent,
            )
            await self._finalize(position, trade)

            if self.trade_logger:
                self.trade_logger.log_abandon(position, reason)

            logger.info("position_abandoned", token=mint[:8], reason=reason, sol_spent=f"{position.sol_spent:.4f}")
            await self._emit("position_closed", {
                "mint": mint,
                "reason": reason,
                "sol_spent": position.sol_spent,
                "abandoned": True,
            })
            return CloseResult(success=True, mint=mint, reason=reason)
        finally:
            self._in_flight.discard(mint)

    async def _finalize(self, position: Position, trade: ClosedTrade) -> None:
        """Record history and return the token to NoPosition."""
        mint = position.mint
        await self.store.append_trade(day_key(trade.closed_at), trade)
        await self.store.update_fields(mint, {
            "status": PositionStatus.CLOSED.value,
            "close_reason": trade.close_reason,
            "closed_at": str(trade.closed_at),
        })
        await self.store.remove_open(mint)
        await self.store.set_cooldown(mint, self.config.cooldown_seconds)
        await self.store.clear_sellers(mint)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Monitor open positions until stop() is called."""
        self.running = True
        logger.info("monitor_loop_started", interval_seconds=self.config.monitor_interval_seconds)

        while self.running:
            results = await self.monitor_all()
            if results:
                logger.debug(
                    "monitor_tick",
                    positions=len(results),
                    statuses={r.mint[:8]: r.status for r in results}
                )
            await asyncio.sleep(self.config.monitor_interval_seconds)

        logger.info("monitor_loop_stopped", **self.stats)

    def stop(self) -> None:
        self.running = False

    async def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        if self.on_event is None:
            return
        try:
            await self.on_event(event, payload)
        except Exception as e:
            logger.error("event_callback_failed", event=event, token=payload.get("mint", "")[:8], error=str(e))
