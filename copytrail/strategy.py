"""
Copy strategy - entry rules (anti-rebuy, cooldown, position limits) and
dynamic exits evaluated in a fixed priority order.

Exit priority (first match wins):
1. Take profit
2. Trailing stop (armed only once the position has been in profit)
3. Stop loss
4. Tracked traders selling
5. Max hold time (off by default)
"""

import time
from typing import Callable, Dict, Any
import structlog

from .config import Config
from .models import (
    EntryDecision,
    ExitDecision,
    ExitReason,
    Position,
    TradeSignal,
)
from .store import PositionStore, history_day_keys

logger = structlog.get_logger(__name__)


class CopyStrategy:
    """Decides whether to copy a buy and when to leave a position."""

    def __init__(
        self,
        config: Config,
        store: PositionStore,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self._clock = clock

        logger.info("copy_strategy_initialized", **self.describe())

    def describe(self) -> Dict[str, Any]:
        """Snapshot of the active rules, for operator logs."""
        c = self.config
        return {
            "mode": "live" if c.is_live else "paper",
            "min_wallets_to_buy": c.min_wallets_to_buy,
            "min_wallets_to_sell": c.min_wallets_to_sell,
            "max_positions": c.max_positions,
            "cooldown_seconds": c.cooldown_seconds,
            "block_rebuys": c.block_rebuys,
            "rebuy_window_seconds": c.rebuy_window_seconds,
            "take_profit": f"+{c.take_profit_pct}%" if c.take_profit_enabled else "disabled",
            "trailing_stop": f"-{c.trailing_stop_pct}% from max" if c.trailing_stop_enabled else "disabled",
            "stop_loss": f"-{c.stop_loss_pct}%" if c.stop_loss_enabled else "disabled",
            "max_hold": f"{c.max_hold_seconds}s" if c.max_hold_enabled else "disabled",
        }

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # =========================================================
    # Entry
    # =========================================================

    async def should_copy(self, signal: TradeSignal) -> EntryDecision:
        """Run the entry checks in order; the first failing check rejects."""
        mint = signal.mint
        mode = "live" if self.config.is_live else "paper"

        logger.info(
            "evaluating_copy_signal",
            token=mint[:8],
            wallet=signal.wallet_address[:8] if signal.wallet_address else None,
            upvotes=signal.upvotes,
            min_upvotes=self.config.min_wallets_to_buy
        )

        # 1) Corroboration is enforced in live mode only
        if signal.upvotes < self.config.min_wallets_to_buy:
            if self.config.is_live:
                return self._reject(
                    mint, f"low_upvotes ({signal.upvotes}/{self.config.min_wallets_to_buy})", signal, mode
                )
            logger.info("low_upvotes_ignored_in_paper", token=mint[:8], upvotes=signal.upvotes)

        # 2) Anti-rebuy per wallet + token
        if self.config.block_rebuys and await self.is_rebuy_signal(mint, signal.wallet_address):
            return self._reject(mint, "rebuy_blocked", signal, mode)

        # 3) Per-token cooldown, independent of wallet
        if await self.store.has_cooldown(mint):
            return self._reject(mint, "cooldown", signal, mode)

        # 4) One position per token
        if await self.store.is_open(mint):
            return self._reject(mint, "duplicate_position", signal, mode)

        # 5) Position limit
        open_count = await self.store.count_open()
        if open_count >= self.config.max_positions:
            return self._reject(
                mint, f"max_positions ({open_count}/{self.config.max_positions})", signal, mode
            )

        confidence = self.calculate_confidence(signal.upvotes)
        logger.info(
            "copy_approved",
            token=mint[:8],
            mode=mode,
            amount_sol=f"{signal.amount_sol:.4f}",
            confidence=confidence
        )
        return EntryDecision(
            copy=True,
            amount_sol=signal.amount_sol,
            confidence=confidence,
            upvotes=signal.upvotes,
            mode=mode,
        )

    def _reject(self, mint: str, reason: str, signal: TradeSignal, mode: str) -> EntryDecision:
        logger.info("copy_rejected", token=mint[:8], reason=reason)
        return EntryDecision(copy=False, reason=reason, upvotes=signal.upvotes, mode=mode)

    async def is_rebuy_signal(self, mint: str, wallet_address: str) -> bool:
        """
        True when this wallet already has the open position on this token, or
        a trade on it from this wallet closed within the rebuy window.
        """
        if not wallet_address:
            return False

        if await self.store.is_open(mint):
            position = await self.store.get_position(mint)
            if position is not None and position.wallet_source == wallet_address:
                logger.info("rebuy_open_position", token=mint[:8], wallet=wallet_address[:8])
                return True

        now = self._now_ms()
        window_ms = self.config.rebuy_window_seconds * 1000

        for day in history_day_keys(now, self.config.rebuy_history_days):
            for trade in await self.store.get_trades(day):
                if trade.mint != mint or trade.wallet_source != wallet_address:
                    continue
                elapsed_ms = now - trade.closed_at
                if elapsed_ms < window_ms:
                    logger.info(
                        "rebuy_within_window",
                        token=mint[:8],
                        wallet=wallet_address[:8],
                        closed_minutes_ago=round(elapsed_ms / 60000, 1),
                        window_minutes=round(self.config.rebuy_window_seconds / 60, 1)
                    )
                    return True

        return False

    @staticmethod
    def calculate_confidence(upvotes: int) -> int:
        """Confidence (0-100) from the number of wallets that bought."""
        if upvotes >= 3:
            return 95
        if upvotes == 2:
            return 70
        if upvotes == 1:
            return 30
        return 50

    # =========================================================
    # Exit
    # =========================================================

    async def should_exit(self, position: Position, current_price: float) -> ExitDecision:
        c = self.config
        entry_price = position.entry_price
        max_price = max(position.max_price or entry_price, entry_price)

        pnl_percent = (current_price - entry_price) / entry_price * 100
        max_pnl_percent = (max_price - entry_price) / entry_price * 100
        hold_seconds = position.hold_seconds(self._clock())

        def exit_with(reason: ExitReason, description: str, seller_count: int = 0) -> ExitDecision:
            logger.info(
                "exit_triggered",
                token=position.mint[:8],
                reason=reason.value,
                pnl=f"{pnl_percent:+.2f}%",
                max_pnl=f"{max_pnl_percent:+.2f}%",
                hold_seconds=round(hold_seconds)
            )
            return ExitDecision(
                exit=True,
                pnl_percent=pnl_percent,
                reason=reason,
                description=description,
                max_pnl_percent=max_pnl_percent,
                hold_seconds=hold_seconds,
                seller_count=seller_count,
            )

        # 1) Take profit
        if c.take_profit_enabled and pnl_percent >= c.take_profit_pct:
            return exit_with(
                ExitReason.TAKE_PROFIT,
                f"Take profit: +{pnl_percent:.2f}% (target: +{c.take_profit_pct}%)",
            )

        # 2) Trailing stop
        if c.trailing_stop_enabled and max_pnl_percent > 0:
            trailing_price = max_price * (1 - c.trailing_stop_pct / 100)
            if current_price <= trailing_price:
                return exit_with(
                    ExitReason.TRAILING_STOP,
                    f"Trailing stop: protecting {pnl_percent:+.2f}% (was +{max_pnl_percent:.2f}%)",
                )

        # 3) Stop loss
        if c.stop_loss_enabled and pnl_percent <= -c.stop_loss_pct:
            return exit_with(
                ExitReason.STOP_LOSS,
                f"Stop loss: {pnl_percent:.2f}% (limit: -{c.stop_loss_pct}%)",
            )

        # 4) Tracked traders selling
        seller_count = await self.store.count_sellers(position.mint)
        if seller_count >= c.min_wallets_to_sell:
            return exit_with(
                ExitReason.TRADERS_SOLD,
                f"{seller_count} trader(s) sold - following exit",
                seller_count,
            )

        # 5) Max hold
        if c.max_hold_enabled and hold_seconds > c.max_hold_seconds:
            return exit_with(
                ExitReason.MAX_HOLD_TIME,
                f"Max hold time: {hold_seconds:.0f}s (PnL: {pnl_percent:.2f}%)",
            )

        return ExitDecision(
            exit=False,
            pnl_percent=pnl_percent,
            max_pnl_percent=max_pnl_percent,
            hold_seconds=hold_seconds,
            seller_count=seller_count,
        )
