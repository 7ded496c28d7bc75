"""
Trade Logger - Records entries and closes with their fee-aware PnL.
Saves trade history to JSON for later review.
"""

import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from dataclasses import dataclass, asdict
from pathlib import Path
import structlog

from .models import ExecutionResult, Position, TradeSignal
from .pnl import PnLResult

logger = structlog.get_logger(__name__)


@dataclass
class TradeRecord:
    """Single trade record for history."""
    timestamp: str
    trade_type: str  # "buy", "sell" or "abandon"
    token_mint: str
    venue: str

    # Our trade details
    sol_amount: float
    token_amount: float
    signature: Optional[str]
    simulated: bool

    # Copied trader details
    copied_wallet: str
    wallet_name: Optional[str] = None
    upvotes: Optional[int] = None

    # Result
    success: bool = True
    error: Optional[str] = None

    # For sells - P&L
    entry_sol: Optional[float] = None
    exit_sol: Optional[float] = None
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    pnl_sol: Optional[float] = None
    pnl_percent: Optional[float] = None
    price_change_percent: Optional[float] = None
    fee_impact_percent: Optional[float] = None
    hold_seconds: Optional[float] = None
    exit_reason: Optional[str] = None


class TradeLogger:
    """Logs all trades for analysis."""

    def __init__(self, history_file: str):
        self.history_file = Path(history_file)
        self._load_history()

    def _load_history(self) -> None:
        """Report existing trade history."""
        if self.history_file.exists():
            try:
                with open(self.history_file, 'r') as f:
                    data = json.load(f)
                    # Don't load into memory - just append new trades
                    logger.info("trade_history_loaded", count=len(data))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("history_load_failed", error=str(e))

    def _read_all(self) -> list:
        if not self.history_file.exists():
            return []
        with open(self.history_file, 'r') as f:
            return json.load(f)

    def _save_trade(self, trade: TradeRecord) -> None:
        """Append trade to history file."""
        try:
            existing = self._read_all()
            existing.append(asdict(trade))

            with open(self.history_file, 'w') as f:
                json.dump(existing, f, indent=2)

            logger.debug("trade_saved", token=trade.token_mint[:8])
        except (OSError, json.JSONDecodeError) as e:
            logger.error("trade_save_failed", token=trade.token_mint[:8], error=str(e))

    def log_buy(self, signal: TradeSignal, result: ExecutionResult) -> None:
        """Log a buy attempt, successful or not."""
        trade = TradeRecord(
            timestamp=_utc_now(),
            trade_type="buy",
            token_mint=result.mint,
            venue=result.venue.value,
            sol_amount=result.sol_spent if result.success else signal.amount_sol,
            token_amount=result.tokens_received,
            signature=result.signature,
            simulated=result.simulated,
            copied_wallet=signal.wallet_address,
            wallet_name=signal.wallet_name,
            upvotes=signal.upvotes,
            success=result.success,
            error=result.error,
        )

        self._save_trade(trade)

        logger.info(
            "trade_logged",
            type="buy",
            token=result.mint[:8],
            sol=f"{trade.sol_amount:.4f}",
            outcome=result.outcome
        )

    def log_close(
        self,
        position: Position,
        result: ExecutionResult,
        exit_reason: str,
        pnl: Optional[PnLResult],
        exit_price: Optional[float],
        sol_received: float,
        tokens_sold: float,
        hold_seconds: float,
    ) -> None:
        """
        Log a verified close with P&L.

        sol_received and tokens_sold are the figures the P&L was computed from;
        for paper closes they differ from the simulated fill in result.
        """
        trade = TradeRecord(
            timestamp=_utc_now(),
            trade_type="sell",
            token_mint=position.mint,
            venue=result.venue.value,
            sol_amount=sol_received,
            token_amount=tokens_sold,
            signature=result.signature,
            simulated=result.simulated,
            copied_wallet=position.wallet_source,
            wallet_name=position.wallet_name,
            success=result.success,
            error=result.error,
            entry_sol=position.sol_spent,
            exit_sol=sol_received,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl_sol=pnl.pnl_sol if pnl else None,
            pnl_percent=pnl.pnl_percent if pnl else None,
            price_change_percent=pnl.price_change_percent if pnl else None,
            fee_impact_percent=pnl.fee_impact_percent if pnl else None,
            hold_seconds=round(hold_seconds, 1),
            exit_reason=exit_reason,
        )

        self._save_trade(trade)

        logger.info(
            "trade_logged",
            type="sell",
            token=position.mint[:8],
            entry=f"{position.sol_spent:.4f}",
            exit=f"{sol_received:.4f}",
            pnl=f"{trade.pnl_sol or 0:+.4f} SOL ({trade.pnl_percent or 0:+.1f}%)",
            reason=exit_reason
        )

    def log_abandon(self, position: Position, reason: str) -> None:
        """Log a position dropped without a sell."""
        trade = TradeRecord(
            timestamp=_utc_now(),
            trade_type="abandon",
            token_mint=position.mint,
            venue=position.venue.value,
            sol_amount=0,
            token_amount=0,
            signature=None,
            simulated=False,
            copied_wallet=position.wallet_source,
            wallet_name=position.wallet_name,
            entry_sol=position.sol_spent,
            exit_sol=0,
            pnl_sol=-position.sol_spent,  # Total loss
            pnl_percent=-100,
            exit_reason=reason,
        )

        self._save_trade(trade)

        logger.info(
            "trade_logged",
            type="abandon",
            token=position.mint[:8],
            lost=f"{position.sol_spent:.4f} SOL",
            reason=reason
        )

    def get_summary(self) -> Dict[str, Any]:
        """Get trading summary statistics."""
        try:
            trades = self._read_all()
        except (OSError, json.JSONDecodeError) as e:
            logger.error("summary_failed", error=str(e))
            return {"error": str(e)}

        if not trades:
            return {"total_trades": 0}

        buys = [t for t in trades if t.get("trade_type") == "buy" and t.get("success")]
        sells = [t for t in trades if t.get("trade_type") == "sell" and t.get("success")]
        abandons = [t for t in trades if t.get("trade_type") == "abandon"]

        total_invested = sum(t.get("sol_amount", 0) for t in buys)
        total_returned = sum(t.get("sol_amount", 0) for t in sells)
        total_abandoned = sum(t.get("entry_sol", 0) for t in abandons)
        total_pnl = sum(t.get("pnl_sol") or 0 for t in sells)

        winning_sells = [t for t in sells if (t.get("pnl_sol") or 0) > 0]
        losing_sells = [t for t in sells if (t.get("pnl_sol") or 0) < 0]

        exit_reasons: Dict[str, int] = {}
        for t in sells:
            reason = t.get("exit_reason") or "unknown"
            exit_reasons[reason] = exit_reasons.get(reason, 0) + 1

        return {
            "total_trades": len(trades),
            "buys": len(buys),
            "sells": len(sells),
            "abandons": len(abandons),
            "total_invested_sol": total_invested,
            "total_returned_sol": total_returned,
            "total_abandoned_sol": total_abandoned,
            "realized_pnl_sol": total_pnl,
            "net_pnl_sol": total_pnl - total_abandoned,
            "win_rate": len(winning_sells) / len(sells) * 100 if sells else 0,
            "winning_trades": len(winning_sells),
            "losing_trades": len(losing_sells),
            "exit_reasons": exit_reasons,
        }


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
