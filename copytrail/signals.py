"""
Trade signal intake. The wallet tracker pushes JSON payloads onto a Redis list;
each payload becomes a TradeSignal for the strategy engine.
"""

import json
from typing import Optional
import redis.asyncio as redis
import structlog

from .models import TradeSignal

logger = structlog.get_logger(__name__)

SIGNAL_QUEUE_KEY = "copy_signals"


class RedisSignalSource:
    """Blocking pop of signals from a Redis list."""

    def __init__(self, client, queue_key: str = SIGNAL_QUEUE_KEY, timeout_seconds: int = 1):
        self.redis = client
        self.queue_key = queue_key
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_url(cls, url: str, queue_key: str = SIGNAL_QUEUE_KEY) -> 'RedisSignalSource':
        return cls(redis.from_url(url, decode_responses=True), queue_key)

    async def next_signal(self) -> Optional[TradeSignal]:
        """Wait up to timeout_seconds for the next signal; malformed payloads are dropped."""
        item = await self.redis.blpop([self.queue_key], timeout=self.timeout_seconds)
        if not item:
            return None

        _key, raw = item
        try:
            return TradeSignal.from_payload(json.loads(raw))
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            logger.warning("signal_payload_invalid", error=str(e), payload=str(raw)[:200])
            return None

    async def close(self) -> None:
        await self.redis.aclose()
