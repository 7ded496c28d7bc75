"""
Domain types shared by the resolver, executor, strategy and engine.
"""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Dict, Any


class Venue(Enum):
    """Trading mechanism currently authoritative for a token."""
    BONDING_CURVE = "pump"      # pump.fun curve, traded through PumpPortal
    EXCHANGE = "jupiter"        # graduated, traded through the aggregator


class TradeAction(Enum):
    BUY = "buy"
    SELL = "sell"


class PositionStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


class PositionState(Enum):
    """Per-token state machine."""
    NO_POSITION = "no_position"
    EVALUATING = "evaluating"
    OPEN = "open"
    CLOSING = "closing"


class ExitReason(Enum):
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    STOP_LOSS = "stop_loss"
    TRADERS_SOLD = "traders_sold"
    MAX_HOLD_TIME = "max_hold_time"
    MANUAL = "manual"


# Lower rank wins when several triggers fire on the same tick
EXIT_PRIORITY = {
    ExitReason.TAKE_PROFIT: 1,
    ExitReason.TRAILING_STOP: 2,
    ExitReason.STOP_LOSS: 3,
    ExitReason.TRADERS_SOLD: 4,
    ExitReason.MAX_HOLD_TIME: 5,
}


# Price source identifiers
SOURCE_BONDING_CURVE = "pump.fun"
SOURCE_AGGREGATOR = "jupiter"
SOURCE_MARKET_DATA = "dexscreener"
SOURCE_NONE = "none"
SOURCE_SKIPPED = "skipped"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PriceQuote:
    """Result of one price resolution attempt."""
    mint: str
    price: Optional[float]
    source: str
    bonding_progress: Optional[float] = None
    graduated: bool = False
    ts: float = field(default_factory=time.time)
    stale: bool = False
    error: Optional[str] = None

    @property
    def has_price(self) -> bool:
        return self.price is not None and self.price > 0


@dataclass
class FailureBackoffEntry:
    """Consecutive resolution failures for one token."""
    count: int = 0
    last_failure: float = 0.0


@dataclass
class TradeSignal:
    """A trade observed from a tracked wallet."""
    mint: str
    action: TradeAction
    wallet_address: str
    amount_sol: float = 0.0
    upvotes: int = 1
    wallet_name: Optional[str] = None

    @property
    def is_buy(self) -> bool:
        return self.action == TradeAction.BUY

    @property
    def is_sell(self) -> bool:
        return self.action == TradeAction.SELL

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'TradeSignal':
        """Build a signal from the tracker's JSON payload."""
        action = payload.get("action") or payload.get("type") or "buy"
        return cls(
            mint=payload["mint"],
            action=TradeAction(str(action).lower()),
            wallet_address=payload.get("walletAddress") or payload.get("wallet", ""),
            amount_sol=float(payload.get("copyAmount", payload.get("solAmount", 0)) or 0),
            upvotes=int(payload.get("upvotes", 1) or 1),
            wallet_name=payload.get("walletName"),
        )


@dataclass
class ExecutionResult:
    """
    Outcome of one trade attempt.

    success is only ever True when balance deltas observed on-chain (or the
    dry-run simulation) show movement in the expected direction.
    """
    success: bool
    action: TradeAction
    mint: str
    signature: Optional[str] = None
    venue: Venue = Venue.BONDING_CURVE
    sol_spent: float = 0.0
    sol_received: float = 0.0
    tokens_received: float = 0.0
    tokens_sold: float = 0.0
    simulated: bool = False
    error: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    @property
    def outcome(self) -> str:
        if not self.success:
            return "failed"
        return "simulated" if self.simulated else "success"


@dataclass
class ExitDecision:
    """Whether to close a position now, and why."""
    exit: bool
    pnl_percent: float
    reason: Optional[ExitReason] = None
    description: str = ""
    max_pnl_percent: float = 0.0
    hold_seconds: float = 0.0
    seller_count: int = 0

    @property
    def priority(self) -> Optional[int]:
        if self.reason is None:
            return None
        return EXIT_PRIORITY.get(self.reason)

    @property
    def status(self) -> str:
        return "exit" if self.exit else "holding"


@dataclass
class EntryDecision:
    """Whether to copy a buy signal."""
    copy: bool
    reason: str = "ok"
    amount_sol: float = 0.0
    confidence: int = 0
    upvotes: int = 0
    mode: str = "paper"


@dataclass
class Position:
    """One tracked position per token."""
    mint: str
    wallet_source: str
    entry_price: float
    sol_spent: float
    token_amount: float
    max_price: float
    entry_time: int             # epoch ms
    strategy: str = "copy"
    entry_signature: Optional[str] = None
    wallet_name: Optional[str] = None
    venue: Venue = Venue.BONDING_CURVE
    graduated: bool = False
    graduation_time: Optional[int] = None
    graduation_price: Optional[float] = None
    status: PositionStatus = PositionStatus.OPEN
    close_reason: Optional[str] = None
    closed_at: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def hold_seconds(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.entry_time / 1000.0)

    def to_mapping(self) -> Dict[str, str]:
        """Flatten to a string map for hash-style storage."""
        data = asdict(self)
        data["venue"] = self.venue.value
        data["status"] = self.status.value
        data["graduated"] = "true" if self.graduated else "false"
        return {k: str(v) for k, v in data.items() if v is not None}

    @classmethod
    def from_mapping(cls, data: Dict[str, str]) -> 'Position':
        def opt_float(key: str) -> Optional[float]:
            value = data.get(key)
            return float(value) if value not in (None, "", "None") else None

        def opt_int(key: str) -> Optional[int]:
            value = data.get(key)
            return int(float(value)) if value not in (None, "", "None") else None

        entry_price = float(data["entry_price"])
        return cls(
            mint=data["mint"],
            wallet_source=data.get("wallet_source", ""),
            entry_price=entry_price,
            sol_spent=float(data["sol_spent"]),
            token_amount=float(data["token_amount"]),
            max_price=opt_float("max_price") or entry_price,
            entry_time=int(float(data["entry_time"])),
            strategy=data.get("strategy", "copy"),
            entry_signature=data.get("entry_signature"),
            wallet_name=data.get("wallet_name"),
            venue=Venue(data.get("venue", Venue.BONDING_CURVE.value)),
            graduated=data.get("graduated") == "true",
            graduation_time=opt_int("graduation_time"),
            graduation_price=opt_float("graduation_price"),
            status=PositionStatus(data.get("status", PositionStatus.OPEN.value)),
            close_reason=data.get("close_reason"),
            closed_at=opt_int("closed_at"),
        )


@dataclass
class ClosedTrade:
    """History record used by the rebuy window check and reporting."""
    mint: str
    wallet_source: str
    close_reason: str
    closed_at: int              # epoch ms
    sol_spent: float = 0.0
    sol_received: float = 0.0
    pnl_sol: Optional[float] = None
    pnl_percent: Optional[float] = None
    signature: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClosedTrade':
        return cls(
            mint=data["mint"],
            wallet_source=data.get("wallet_source", ""),
            close_reason=data.get("close_reason", ""),
            closed_at=int(data.get("closed_at") or 0),
            sol_spent=float(data.get("sol_spent") or 0),
            sol_received=float(data.get("sol_received") or 0),
            pnl_sol=data.get("pnl_sol"),
            pnl_percent=data.get("pnl_percent"),
            signature=data.get("signature"),
        )
