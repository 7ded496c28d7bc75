"""
Price sources consulted by the resolver, in a fixed priority order:
pump.fun bonding curve (raw account read), Jupiter quote probe, DexScreener.

Each source returns a SourceReading, or None for a soft miss (no account,
no route, no listing). Soft misses are never errors.
"""

import asyncio
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any
import aiohttp
from solders.pubkey import Pubkey
import structlog

from .config import (
    Config,
    NATIVE_SOL_MINT,
    LAMPORTS_PER_SOL,
    PUMP_PROGRAM_ID,
    PUMP_CURVE_SEED,
    PUMP_TOKEN_DECIMALS,
    INITIAL_REAL_TOKEN_RESERVES,
)
from .models import SOURCE_BONDING_CURVE, SOURCE_AGGREGATOR, SOURCE_MARKET_DATA
from .rpc import RPCClient

logger = structlog.get_logger(__name__)

# Anchor account discriminator of the BondingCurve account
BONDING_CURVE_DISCRIMINATOR = bytes([0x17, 0xb7, 0xf8, 0x37, 0x60, 0xd8, 0xac, 0x60])

# discriminator, virtual token, virtual sol, real token, real sol, total supply, complete
BONDING_CURVE_LAYOUT = struct.Struct("<8sQQQQQ?")

# One whole 6-decimal token
AGGREGATOR_PROBE_AMOUNT = 10 ** PUMP_TOKEN_DECIMALS

HTTP_RETRIES = 3
HTTP_RETRY_DELAY_SECONDS = 1.0
HTTP_TIMEOUT_SECONDS = 5.0


class BondingCurveError(Exception):
    """Account data is not a valid bonding curve."""


class PriceCapability(Enum):
    NATIVE = "resolve-native"
    AGGREGATOR = "resolve-aggregator"
    FALLBACK = "resolve-fallback"


@dataclass
class SourceReading:
    """What a single source saw for a token."""
    price: Optional[float]
    source: str
    bonding_progress: Optional[float] = None
    graduated: bool = False


@dataclass
class BondingCurveState:
    """Decoded pump.fun BondingCurve account."""
    virtual_token_reserves: int
    virtual_sol_reserves: int
    real_token_reserves: int
    real_sol_reserves: int
    token_total_supply: int
    complete: bool

    @classmethod
    def from_bytes(cls, data: bytes) -> 'BondingCurveState':
        if len(data) < BONDING_CURVE_LAYOUT.size:
            raise BondingCurveError(f"Account too small ({len(data)} bytes)")

        (
            discriminator,
            virtual_token,
            virtual_sol,
            real_token,
            real_sol,
            total_supply,
            complete,
        ) = BONDING_CURVE_LAYOUT.unpack_from(data)

        if discriminator != BONDING_CURVE_DISCRIMINATOR:
            raise BondingCurveError("Invalid bonding curve discriminator")

        return cls(
            virtual_token_reserves=virtual_token,
            virtual_sol_reserves=virtual_sol,
            real_token_reserves=real_token,
            real_sol_reserves=real_sol,
            token_total_supply=total_supply,
            complete=complete,
        )

    @property
    def has_reserves(self) -> bool:
        return self.virtual_token_reserves > 0 and self.virtual_sol_reserves > 0

    @property
    def price(self) -> Optional[float]:
        """SOL per whole token."""
        if not self.has_reserves:
            return None
        # Scale both sides in integers first; int / int rounds once at the end
        numerator = self.virtual_sol_reserves * 10 ** PUMP_TOKEN_DECIMALS
        denominator = self.virtual_token_reserves * LAMPORTS_PER_SOL
        return numerator / denominator

    @property
    def bonding_progress(self) -> float:
        """Fraction of the sellable supply already bought off the curve, in [0, 1]."""
        progress = 1 - self.real_token_reserves / INITIAL_REAL_TOKEN_RESERVES
        return min(1.0, max(0.0, progress))


def find_bonding_curve_address(mint: str) -> Pubkey:
    """Derive the bonding curve PDA for a mint (no network call)."""
    address, _bump = Pubkey.find_program_address(
        [PUMP_CURVE_SEED, bytes(Pubkey.from_string(mint))],
        Pubkey.from_string(PUMP_PROGRAM_ID),
    )
    return address


class PriceSource(ABC):
    """One entry of the resolver's ordered source list."""

    capability: PriceCapability
    name: str

    @abstractmethod
    async def fetch(self, mint: str) -> Optional[SourceReading]:
        """Return a reading, or None on a soft miss."""

    async def close(self) -> None:
        return None


class HTTPPriceSource(PriceSource):
    """Shared aiohttp plumbing for the HTTP sources."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT_SECONDS)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if we created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Optional[Dict[str, Any]]:
        """
        GET a JSON document.

        Returns None for 4xx responses (not listed, no route). Server errors and
        connection failures are retried with a fixed delay, then reported as a miss.
        """
        session = await self._get_session()
        last_error = None

        for attempt in range(HTTP_RETRIES):
            try:
                async with session.get(url, params=params) as resp:
                    if resp.status == 200:
                        return await resp.json()
                    if 400 <= resp.status < 500:
                        logger.debug("price_source_no_data", source=self.name, status=resp.status)
                        return None
                    last_error = f"HTTP {resp.status}"
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = str(e) or type(e).__name__

            if attempt < HTTP_RETRIES - 1:
                await asyncio.sleep(HTTP_RETRY_DELAY_SECONDS)

        logger.warning("price_source_unavailable", source=self.name, error=last_error)
        return None


class BondingCurveSource(PriceSource):
    """Reads price and progress straight from the pump.fun curve account."""

    capability = PriceCapability.NATIVE
    name = SOURCE_BONDING_CURVE

    def __init__(self, rpc_client: RPCClient):
        self.rpc = rpc_client

    async def read_curve(self, mint: str) -> Optional[BondingCurveState]:
        """Fetch and decode the curve account, None if it does not exist."""
        address = find_bonding_curve_address(mint)
        data = await self.rpc.get_account_info(address)
        if data is None:
            return None
        return BondingCurveState.from_bytes(data)

    async def fetch(self, mint: str) -> Optional[SourceReading]:
        try:
            state = await self.read_curve(mint)
        except BondingCurveError as e:
            logger.warning("bonding_curve_invalid", token=mint[:8], error=str(e))
            return None

        if state is None:
            logger.debug("bonding_curve_missing", token=mint[:8])
            return None

        if state.complete:
            logger.info("bonding_curve_complete", token=mint[:8])
            return SourceReading(price=None, source=self.name, bonding_progress=1.0, graduated=True)

        if not state.has_reserves:
            logger.debug("bonding_curve_empty_reserves", token=mint[:8])
            return None

        return SourceReading(
            price=state.price,
            source=self.name,
            bonding_progress=state.bonding_progress,
            graduated=False,
        )


class AggregatorQuoteSource(HTTPPriceSource):
    """Prices a token by quoting a small token -> SOL swap on Jupiter."""

    capability = PriceCapability.AGGREGATOR
    name = SOURCE_AGGREGATOR

    def __init__(self, config: Config, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(session)
        self.quote_api = config.jupiter_quote_api

    async def fetch(self, mint: str) -> Optional[SourceReading]:
        params = {
            "inputMint": mint,
            "outputMint": NATIVE_SOL_MINT,
            "amount": str(AGGREGATOR_PROBE_AMOUNT),
            "swapMode": "ExactIn",
            "slippageBps": "50",
        }
        quote = await self._get_json(self.quote_api, params=params)
        if not quote or not quote.get("outAmount"):
            return None

        sol_out = int(quote["outAmount"]) / LAMPORTS_PER_SOL
        tokens_in = AGGREGATOR_PROBE_AMOUNT / 10 ** PUMP_TOKEN_DECIMALS
        price = sol_out / tokens_in
        if price <= 0:
            return None

        return SourceReading(price=price, source=self.name)


class MarketDataSource(HTTPPriceSource):
    """DexScreener fallback: price of the most liquid pair."""

    capability = PriceCapability.FALLBACK
    name = SOURCE_MARKET_DATA

    def __init__(self, config: Config, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(session)
        self.api_url = config.dexscreener_api.rstrip("/")

    async def fetch(self, mint: str) -> Optional[SourceReading]:
        data = await self._get_json(f"{self.api_url}/{mint}")
        pairs = (data or {}).get("pairs") or []
        if not pairs:
            logger.debug("market_data_no_pairs", token=mint[:8])
            return None

        best = max(pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0))
        try:
            price = float(best.get("priceNative") or best.get("priceUsd") or 0)
        except (TypeError, ValueError):
            return None

        if price <= 0:
            return None

        logger.debug("market_data_price", token=mint[:8], price=price, dex=best.get("dexId"))
        return SourceReading(price=price, source=self.name)
