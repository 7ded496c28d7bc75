"""
Position store - the single source of truth for positions, trade history,
cooldowns and seller sets.

Every engine mutation is a read-modify-write against the store; nothing keeps
a private copy of a Position between ticks.
"""

import json
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set
import redis.asyncio as redis
import structlog

from .models import Position, ClosedTrade

logger = structlog.get_logger(__name__)

OPEN_POSITIONS_KEY = "open_positions"


def position_key(mint: str) -> str:
    return f"position:{mint}"


def trades_key(day: str) -> str:
    return f"trades:{day}"


def cooldown_key(mint: str) -> str:
    return f"copy_cooldown:{mint}"


def sellers_key(mint: str) -> str:
    return f"upvotes:{mint}:sellers"


def day_key(ts_ms: int) -> str:
    """UTC calendar day (YYYY-MM-DD) of an epoch-ms timestamp."""
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def history_day_keys(now_ms: int, prior_days: int) -> List[str]:
    """Today plus prior_days previous UTC days, newest first."""
    today = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)
    return [(today - timedelta(days=i)).strftime("%Y-%m-%d") for i in range(prior_days + 1)]


class PositionStore(ABC):
    """Storage contract used by the strategy engine."""

    # Open set
    @abstractmethod
    async def add_open(self, mint: str) -> None: ...

    @abstractmethod
    async def remove_open(self, mint: str) -> None: ...

    @abstractmethod
    async def is_open(self, mint: str) -> bool: ...

    @abstractmethod
    async def list_open(self) -> List[str]: ...

    async def count_open(self) -> int:
        return len(await self.list_open())

    # Position records
    @abstractmethod
    async def get_position(self, mint: str) -> Optional[Position]: ...

    @abstractmethod
    async def save_position(self, position: Position) -> None: ...

    @abstractmethod
    async def update_fields(self, mint: str, fields: Dict[str, str]) -> None:
        """Write a subset of a position's fields."""

    # Trade history
    @abstractmethod
    async def append_trade(self, day: str, trade: ClosedTrade) -> None: ...

    @abstractmethod
    async def get_trades(self, day: str) -> List[ClosedTrade]: ...

    # Cooldowns
    @abstractmethod
    async def set_cooldown(self, mint: str, seconds: int) -> None: ...

    @abstractmethod
    async def has_cooldown(self, mint: str) -> bool: ...

    # Sell signals
    @abstractmethod
    async def add_seller(self, mint: str, wallet: str) -> int:
        """Record a selling wallet; returns the seller count."""

    @abstractmethod
    async def count_sellers(self, mint: str) -> int: ...

    @abstractmethod
    async def clear_sellers(self, mint: str) -> None: ...

    async def close(self) -> None:
        return None


class InMemoryPositionStore(PositionStore):
    """Process-local store for tests and paper runs."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._open: Set[str] = set()
        self._positions: Dict[str, Dict[str, str]] = {}
        self._trades: Dict[str, List[str]] = {}
        self._cooldowns: Dict[str, float] = {}
        self._sellers: Dict[str, Set[str]] = {}

    async def add_open(self, mint: str) -> None:
        self._open.add(mint)

    async def remove_open(self, mint: str) -> None:
        self._open.discard(mint)

    async def is_open(self, mint: str) -> bool:
        return mint in self._open

    async def list_open(self) -> List[str]:
        return sorted(self._open)

    async def get_position(self, mint: str) -> Optional[Position]:
        data = self._positions.get(mint)
        if not data:
            return None
        return Position.from_mapping(dict(data))

    async def save_position(self, position: Position) -> None:
        # Mirror hash semantics: unset optional fields are dropped
        self._positions[position.mint] = position.to_mapping()

    async def update_fields(self, mint: str, fields: Dict[str, str]) -> None:
        self._positions.setdefault(mint, {}).update(fields)

    async def append_trade(self, day: str, trade: ClosedTrade) -> None:
        self._trades.setdefault(day, []).append(json.dumps(trade.to_dict()))

    async def get_trades(self, day: str) -> List[ClosedTrade]:
        return [ClosedTrade.from_dict(json.loads(raw)) for raw in self._trades.get(day, [])]

    async def set_cooldown(self, mint: str, seconds: int) -> None:
        self._cooldowns[mint] = self._clock() + seconds

    async def has_cooldown(self, mint: str) -> bool:
        expires = self._cooldowns.get(mint)
        if expires is None:
            return False
        if self._clock() >= expires:
            del self._cooldowns[mint]
            return False
        return True

    async def add_seller(self, mint: str, wallet: str) -> int:
        sellers = self._sellers.setdefault(mint, set())
        sellers.add(wallet)
        return len(sellers)

    async def count_sellers(self, mint: str) -> int:
        return len(self._sellers.get(mint, ()))

    async def clear_sellers(self, mint: str) -> None:
        self._sellers.pop(mint, None)


class RedisPositionStore(PositionStore):
    """Redis-backed store using the deployment's key layout."""

    def __init__(self, client):
        """
        Args:
            client: A redis.asyncio.Redis created with decode_responses=True
        """
        self.redis = client

    @classmethod
    def from_url(cls, url: str) -> 'RedisPositionStore':
        return cls(redis.from_url(url, decode_responses=True))

    async def close(self) -> None:
        await self.redis.aclose()

    async def add_open(self, mint: str) -> None:
        await self.redis.sadd(OPEN_POSITIONS_KEY, mint)

    async def remove_open(self, mint: str) -> None:
        await self.redis.srem(OPEN_POSITIONS_KEY, mint)

    async def is_open(self, mint: str) -> bool:
        return bool(await self.redis.sismember(OPEN_POSITIONS_KEY, mint))

    async def list_open(self) -> List[str]:
        return sorted(await self.redis.smembers(OPEN_POSITIONS_KEY))

    async def count_open(self) -> int:
        return int(await self.redis.scard(OPEN_POSITIONS_KEY))

    async def get_position(self, mint: str) -> Optional[Position]:
        data = await self.redis.hgetall(position_key(mint))
        if not data:
            return None
        try:
            return Position.from_mapping(data)
        except (KeyError, ValueError) as e:
            logger.error("position_record_invalid", token=mint[:8], error=str(e))
            return None

    async def save_position(self, position: Position) -> None:
        await self.redis.hset(position_key(position.mint), mapping=position.to_mapping())

    async def update_fields(self, mint: str, fields: Dict[str, str]) -> None:
        if fields:
            await self.redis.hset(position_key(mint), mapping=fields)

    async def append_trade(self, day: str, trade: ClosedTrade) -> None:
        await self.redis.rpush(trades_key(day), json.dumps(trade.to_dict()))

    async def get_trades(self, day: str) -> List[ClosedTrade]:
        trades = []
        for raw in await self.redis.lrange(trades_key(day), 0, -1):
            try:
                trades.append(ClosedTrade.from_dict(json.loads(raw)))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.debug("trade_record_skipped", day=day, error=str(e))
        return trades

    async def set_cooldown(self, mint: str, seconds: int) -> None:
        await self.redis.set(cooldown_key(mint), "1", ex=max(1, int(seconds)))

    async def has_cooldown(self, mint: str) -> bool:
        return bool(await self.redis.exists(cooldown_key(mint)))

    async def add_seller(self, mint: str, wallet: str) -> int:
        key = sellers_key(mint)
        await self.redis.sadd(key, wallet)
        return int(await self.redis.scard(key))

    async def count_sellers(self, mint: str) -> int:
        return int(await self.redis.scard(sellers_key(mint)))

    async def clear_sellers(self, mint: str) -> None:
        await self.redis.delete(sellers_key(mint))
