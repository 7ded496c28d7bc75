"""
Graduation Detector - notices when a token leaves the pump.fun bonding curve
for general DEX trading.

Detection only. Marking the position (venue switch, graduation fields) is done
by the strategy engine against the position store, exactly once per position.
"""

from dataclasses import dataclass
from typing import Optional
import aiohttp
import structlog

from .models import SOURCE_AGGREGATOR
from .price_resolver import PriceResolver
from .price_sources import BondingCurveSource, BondingCurveError, PriceCapability
from .rpc import RPCError

logger = structlog.get_logger(__name__)


@dataclass
class GraduationStatus:
    graduated: bool
    reason: str
    price: Optional[float] = None


class GraduationDetector:
    """Checks whether a token has graduated off its bonding curve."""

    def __init__(self, resolver: PriceResolver, curve_source: Optional[BondingCurveSource] = None):
        self.resolver = resolver
        if curve_source is None:
            source = resolver.source_for(PriceCapability.NATIVE)
            curve_source = source if isinstance(source, BondingCurveSource) else None
        self.curve_source = curve_source

    async def has_graduated(self, mint: str) -> GraduationStatus:
        """
        Prefer the curve account itself (complete flag); fall back to the latest
        quote when the curve cannot be read.
        """
        status = await self._check_curve(mint)
        if status is not None:
            return status

        quote = await self.resolver.resolve(mint)
        graduated = quote.graduated or quote.source == SOURCE_AGGREGATOR
        reason = f"source={quote.source}" if graduated else "no dex markets"
        return GraduationStatus(graduated=graduated, reason=reason, price=quote.price)

    async def _check_curve(self, mint: str) -> Optional[GraduationStatus]:
        if self.curve_source is None:
            return None

        try:
            state = await self.curve_source.read_curve(mint)
        except (BondingCurveError, RPCError, aiohttp.ClientError) as e:
            logger.debug("graduation_curve_check_failed", token=mint[:8], error=str(e))
            return None

        if state is None:
            return None

        if state.complete:
            return GraduationStatus(graduated=True, reason="bonding_curve_complete")

        return GraduationStatus(graduated=False, reason="on_bonding_curve", price=state.price)
