"""
Price Resolver - unified token pricing with caching and failure backoff.

Sources are tried in a fixed order (bonding curve, aggregator, market data)
and the first one with a price wins. The price cache and the failure map are
owned by the resolver instance; call reset() to clear them.
"""

import asyncio
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional
import aiohttp
import structlog

from .models import (
    PriceQuote,
    FailureBackoffEntry,
    SOURCE_BONDING_CURVE,
    SOURCE_NONE,
    SOURCE_SKIPPED,
)
from .price_sources import PriceSource, PriceCapability
from .rpc import RPCError

logger = structlog.get_logger(__name__)

CACHE_TTL_SECONDS = 5.0
MAX_FAILED_ATTEMPTS = 3
FAILED_ATTEMPTS_RESET_SECONDS = 60.0

SOURCE_ORDER = [PriceCapability.NATIVE, PriceCapability.AGGREGATOR, PriceCapability.FALLBACK]


class PriceResolver:
    """Resolves a token's SOL price from the first viable source."""

    def __init__(
        self,
        sources: List[PriceSource],
        cache_ttl: float = CACHE_TTL_SECONDS,
        max_failed_attempts: int = MAX_FAILED_ATTEMPTS,
        failure_reset_seconds: float = FAILED_ATTEMPTS_RESET_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        capabilities = [s.capability for s in sources]
        if len(set(capabilities)) != len(capabilities):
            raise ValueError("Each price capability may only be configured once")

        # Priority is fixed by capability, not by the order the caller passed
        self.sources = sorted(sources, key=lambda s: SOURCE_ORDER.index(s.capability))
        self.cache_ttl = cache_ttl
        self.max_failed_attempts = max_failed_attempts
        self.failure_reset_seconds = failure_reset_seconds
        self._clock = clock

        self._cache: Dict[str, PriceQuote] = {}
        self._failures: Dict[str, FailureBackoffEntry] = {}

        logger.info(
            "price_resolver_initialized",
            sources=[s.name for s in self.sources],
            cache_ttl=cache_ttl,
            max_failed_attempts=max_failed_attempts
        )

    def source_for(self, capability: PriceCapability) -> Optional[PriceSource]:
        for source in self.sources:
            if source.capability == capability:
                return source
        return None

    async def resolve(self, mint: str, force_fresh: bool = False) -> PriceQuote:
        """
        Get the current price of a token.

        Args:
            mint: Token mint address
            force_fresh: Bypass the cache and the failure backoff

        Returns:
            PriceQuote; price is None when no source answered
        """
        now = self._clock()

        if not force_fresh:
            skipped = self._check_backoff(mint, now)
            if skipped is not None:
                return skipped

            cached = self._cache.get(mint)
            if cached is not None and now - cached.ts < self.cache_ttl:
                return cached

        curve_graduated = False

        for source in self.sources:
            reading = await self._fetch(source, mint)
            if reading is None:
                continue

            if reading.graduated:
                curve_graduated = True

            if reading.price is None or reading.price <= 0:
                continue

            # Any price that is not the live curve means the token trades on a DEX
            graduated = reading.graduated or reading.source != SOURCE_BONDING_CURVE
            quote = PriceQuote(
                mint=mint,
                price=reading.price,
                source=reading.source,
                bonding_progress=reading.bonding_progress,
                graduated=graduated,
                ts=now,
            )
            self._cache[mint] = quote
            self._failures.pop(mint, None)
            return quote

        # All sources missed
        self._record_failure(mint, now)

        cached = self._cache.get(mint)
        if cached is not None:
            logger.warning(
                "price_sources_exhausted_using_stale",
                token=mint[:8],
                age_seconds=round(now - cached.ts, 1)
            )
            return replace(cached, stale=True)

        logger.info("price_unavailable", token=mint[:8])
        return PriceQuote(
            mint=mint,
            price=None,
            source=SOURCE_NONE,
            graduated=curve_graduated,
            ts=now,
            error="No price source available",
        )

    async def has_price_available(self, mint: str) -> bool:
        quote = await self.resolve(mint)
        return quote.has_price and quote.source != SOURCE_NONE

    @staticmethod
    def current_value(token_amount: float, price: float) -> float:
        """Value in SOL of a token amount at a price."""
        return float(token_amount) * price

    def reset(self) -> None:
        """Clear the price cache and all failure counters."""
        self._cache.clear()
        self._failures.clear()
        logger.debug("price_cache_cleared")

    def failure_entry(self, mint: str) -> Optional[FailureBackoffEntry]:
        return self._failures.get(mint)

    async def close(self) -> None:
        for source in self.sources:
            await source.close()

    def _check_backoff(self, mint: str, now: float) -> Optional[PriceQuote]:
        """Return a quote without touching the network if this token keeps failing."""
        entry = self._failures.get(mint)
        if entry is None:
            return None

        if now - entry.last_failure > self.failure_reset_seconds:
            del self._failures[mint]
            return None

        if entry.count < self.max_failed_attempts:
            return None

        cached = self._cache.get(mint)
        if cached is not None:
            logger.debug("price_backoff_using_stale", token=mint[:8], failures=entry.count)
            return replace(cached, stale=True)

        retry_in = self.failure_reset_seconds - (now - entry.last_failure)
        logger.debug("price_backoff_skipping", token=mint[:8], retry_in=round(retry_in))
        return PriceQuote(
            mint=mint,
            price=None,
            source=SOURCE_SKIPPED,
            ts=now,
            error="Too many failed attempts",
        )

    def _record_failure(self, mint: str, now: float) -> None:
        entry = self._failures.setdefault(mint, FailureBackoffEntry())
        entry.count += 1
        entry.last_failure = now

    async def _fetch(self, source: PriceSource, mint: str):
        try:
            return await source.fetch(mint)
        except (RPCError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("price_source_error", source=source.name, token=mint[:8], error=str(e))
            return None
