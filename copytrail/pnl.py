"""
Fee-aware PnL accounting.

Gross proceeds are reduced in a fixed order: venue sell fee, then slippage,
then the fixed network fee plus priority fee. The buy-side fee is already
inside the SOL spent and only shows up in the fee impact figure.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Union
import structlog

from .config import VENUE_FEE_PCT, DEFAULT_VENUE_FEE_PCT, NETWORK_BASE_FEE_SOL
from .models import Position, Venue

logger = structlog.get_logger(__name__)

DISCREPANCY_TOLERANCE_PCT = 5.0
ESTIMATED_EXIT_SLIPPAGE = 0.02
MIN_SLIPPAGE = 0.0001


@dataclass
class PnLResult:
    """Realized or hypothetical PnL of one round trip."""
    pnl_sol: float
    pnl_percent: float
    price_change_percent: float
    net_received: float
    total_fee_amount: float
    fee_impact_percent: float
    breakdown: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_profit(self) -> bool:
        return self.pnl_sol > 0


@dataclass
class DiscrepancyCheck:
    """Realized PnL drifting from the raw price move by more than fees explain."""
    has_high_impact: bool
    discrepancy: float
    severity: str               # OK | HIGH
    reason: Optional[str] = None


def venue_fee(venue: Union[Venue, str]) -> float:
    """Per-side fee fraction for a venue."""
    key = venue.value if isinstance(venue, Venue) else str(venue)
    return VENUE_FEE_PCT.get(key, DEFAULT_VENUE_FEE_PCT)


class PnLCalculator:
    """Computes realized and unrealized PnL with fee and slippage modeling."""

    def __init__(self, network_fee: float = NETWORK_BASE_FEE_SOL):
        self.network_fee = network_fee

    def realized_pnl(
        self,
        entry_price: float,
        exit_price: float,
        token_amount: float,
        sol_spent: float,
        venue: Union[Venue, str] = Venue.BONDING_CURVE,
        slippage: float = 0.0,
        network_fee: Optional[float] = None,
        priority_fee: float = 0.0,
    ) -> PnLResult:
        """
        PnL of selling token_amount at exit_price.

        Args:
            slippage: Fraction of proceeds lost to slippage (0.02 = 2%)

        Raises:
            ValueError: If any price or amount is missing or not positive
        """
        for name, value in (
            ("entry_price", entry_price),
            ("exit_price", exit_price),
            ("token_amount", token_amount),
            ("sol_spent", sol_spent),
        ):
            if not value or value <= 0:
                raise ValueError(f"{name} must be positive (got {value})")

        network_fee = self.network_fee if network_fee is None else network_fee
        fee_pct = venue_fee(venue)

        gross_value = token_amount * exit_price

        sell_fee_amount = gross_value * fee_pct
        value_after_sell_fee = gross_value - sell_fee_amount

        value_after_slippage = value_after_sell_fee
        if abs(slippage) > MIN_SLIPPAGE:
            value_after_slippage -= value_after_sell_fee * abs(slippage)

        total_network_fee = network_fee + priority_fee
        net_received = value_after_slippage - total_network_fee

        pnl_sol = net_received - sol_spent
        pnl_percent = pnl_sol / sol_spent * 100
        price_change_percent = (exit_price - entry_price) / entry_price * 100

        total_fee_amount = sol_spent * fee_pct + sell_fee_amount + total_network_fee
        fee_impact_percent = total_fee_amount / sol_spent * 100

        return PnLResult(
            pnl_sol=round(pnl_sol, 6),
            pnl_percent=round(pnl_percent, 2),
            price_change_percent=round(price_change_percent, 2),
            net_received=round(net_received, 6),
            total_fee_amount=round(total_fee_amount, 6),
            fee_impact_percent=round(fee_impact_percent, 2),
            breakdown={
                "venue": venue.value if isinstance(venue, Venue) else str(venue),
                "entry": {
                    "price": entry_price,
                    "tokens": token_amount,
                    "sol_spent": sol_spent,
                    "buy_fee_pct": fee_pct,
                    "buy_fee_amount": sol_spent * fee_pct,
                },
                "exit": {
                    "price": exit_price,
                    "gross_value": gross_value,
                    "sell_fee_pct": fee_pct,
                    "sell_fee_amount": sell_fee_amount,
                    "value_after_sell_fee": value_after_sell_fee,
                    "slippage_pct": slippage,
                    "slippage_amount": value_after_sell_fee - value_after_slippage,
                    "value_after_slippage": value_after_slippage,
                    "network_fee": network_fee,
                    "priority_fee": priority_fee,
                    "net_received": net_received,
                },
            },
        )

    def settled_pnl(
        self,
        entry_price: float,
        exit_price: float,
        token_amount: float,
        sol_spent: float,
        sol_received: float,
        venue: Union[Venue, str] = Venue.BONDING_CURVE,
        priority_fee: float = 0.0,
    ) -> PnLResult:
        """
        PnL of a verified sell.

        sol_received is the signer's balance change, so every fee is already
        out of it. The fee model only supplies the fee figures and the
        modeled proceeds kept in the breakdown.
        """
        if sol_received is None or sol_received < 0:
            raise ValueError(f"sol_received must not be negative (got {sol_received})")

        model = self.realized_pnl(
            entry_price, exit_price, token_amount, sol_spent,
            venue=venue, priority_fee=priority_fee,
        )
        pnl_sol = sol_received - sol_spent

        breakdown = dict(model.breakdown)
        breakdown["settled"] = {
            "sol_received": sol_received,
            "modeled_net_received": model.net_received,
        }

        return PnLResult(
            pnl_sol=round(pnl_sol, 6),
            pnl_percent=round(pnl_sol / sol_spent * 100, 2),
            price_change_percent=model.price_change_percent,
            net_received=round(sol_received, 6),
            total_fee_amount=model.total_fee_amount,
            fee_impact_percent=model.fee_impact_percent,
            breakdown=breakdown,
        )

    def unrealized_pnl(
        self,
        position: Position,
        current_price: float,
        estimated_slippage: float = ESTIMATED_EXIT_SLIPPAGE,
        priority_fee: float = 0.0,
    ) -> PnLResult:
        """PnL of a hypothetical immediate sell at current_price."""
        return self.realized_pnl(
            entry_price=position.entry_price,
            exit_price=current_price,
            token_amount=position.token_amount,
            sol_spent=position.sol_spent,
            venue=position.venue,
            slippage=estimated_slippage,
            priority_fee=priority_fee,
        )

    def check_discrepancy(
        self,
        entry_price: float,
        exit_price: float,
        token_amount: float,
        sol_spent: float,
        venue: Union[Venue, str] = Venue.BONDING_CURVE,
        slippage: float = 0.0,
        priority_fee: float = 0.0,
        tolerance: float = DISCREPANCY_TOLERANCE_PCT,
        sol_received: Optional[float] = None,
    ) -> DiscrepancyCheck:
        """
        Diagnostic only: flags a realized PnL that diverges from the price move
        by more than the tolerance and by more than twice the fee impact.

        With sol_received the actual proceeds are compared; without it the
        modeled proceeds are.
        """
        if sol_received is None:
            result = self.realized_pnl(
                entry_price, exit_price, token_amount, sol_spent,
                venue=venue, slippage=slippage, priority_fee=priority_fee,
            )
        else:
            result = self.settled_pnl(
                entry_price, exit_price, token_amount, sol_spent, sol_received,
                venue=venue, priority_fee=priority_fee,
            )
        discrepancy = abs(result.price_change_percent - result.pnl_percent)

        if discrepancy > tolerance and discrepancy > result.fee_impact_percent * 2:
            logger.warning(
                "pnl_discrepancy_detected",
                price_change=f"{result.price_change_percent:.2f}%",
                pnl=f"{result.pnl_percent:.2f}%",
                discrepancy=f"{discrepancy:.2f}%",
                expected_fees=f"{result.fee_impact_percent:.2f}%"
            )
            return DiscrepancyCheck(
                has_high_impact=True,
                discrepancy=discrepancy,
                severity="HIGH",
                reason="Fees exceed expected amount",
            )

        return DiscrepancyCheck(has_high_impact=False, discrepancy=discrepancy, severity="OK")
