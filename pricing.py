"""Per-call pricing: cached per-API price lookup and the cost formula."""
import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Callable, Dict, Optional, Tuple

from models import ApiRecord, Pricing

logger = logging.getLogger("runmeter.pricing")

COST_QUANTUM = Decimal("0.000001")


def _dec(value) -> Decimal:
    # str() keeps 0.0001 as 0.0001 instead of its binary expansion
    return Decimal(str(value))


def calculate_cost(pricing: Pricing, duration_ms: int, bytes_in: int, bytes_out: int) -> float:
    """Price one call.

    cost = basePrice + (durationMs / 1000) * durationPrice
           + ((bytesIn + bytesOut) / 1024) * dataPrice

    Rounded half-up to 6 decimal places. Pure: identical inputs always give
    the identical result.
    """
    base_cost = _dec(pricing.base_price)
    duration_cost = (_dec(duration_ms) / Decimal(1000)) * _dec(pricing.duration_price)
    data_cost = (_dec(bytes_in + bytes_out) / Decimal(1024)) * _dec(pricing.data_price)
    total = base_cost + duration_cost + data_cost
    return float(total.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP))


ApiLookup = Callable[[str], Awaitable[Optional[ApiRecord]]]


class PricingResolver:
    """Resolves pricing per API with a freshness-bounded cache.

    Lookups never raise: a missing API or a failing lookup falls back to the
    default pricing so that metering is never blocked.
    """

    def __init__(self, default_pricing: Pricing, lookup: Optional[ApiLookup] = None,
                 ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.default_pricing = default_pricing
        self.lookup = lookup
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[Pricing, float]] = {}

    async def get_pricing(self, api_id: str) -> Pricing:
        cached = self._cache.get(api_id)
        now = self._clock()
        if cached and now - cached[1] < self.ttl_seconds:
            return cached[0]

        if self.lookup is None:
            return self.default_pricing

        try:
            api = await self.lookup(api_id)
            if api is None:
                raise LookupError(f"API {api_id} not found")
            # The catalog's own price field is not billed yet; every API pays the defaults.
            pricing = self.default_pricing
            self._cache[api_id] = (pricing, now)
            return pricing
        except Exception as e:
            logger.error(f"Error getting pricing for API {api_id}: {e}")
            return self.default_pricing

    def invalidate(self, api_id: Optional[str] = None):
        if api_id is None:
            self._cache.clear()
        else:
            self._cache.pop(api_id, None)

    @property
    def cache_size(self) -> int:
        return len(self._cache)
