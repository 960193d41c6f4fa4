from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional, Protocol

from orderflow.orders.models import Quote

logger = logging.getLogger(__name__)

# Reference prices per "FROM-TO" pair; unseen pairs use DEFAULT_BASE_PRICE.
BASE_PRICES: Mapping[str, Decimal] = {
    "SOL-USDC": Decimal("100"),
    "USDC-SOL": Decimal("0.01"),
    "SOL-USDT": Decimal("100"),
    "USDT-SOL": Decimal("0.01"),
}
DEFAULT_BASE_PRICE = Decimal("100")

_PRICE_QUANTUM = Decimal("0.000000000001")


def base_price(from_token: str, to_token: str, prices: Mapping[str, Decimal] = BASE_PRICES) -> Decimal:
    return prices.get(f"{from_token}-{to_token}".upper(), DEFAULT_BASE_PRICE)


class Venue(Protocol):
    """A liquidity source that prices a trade."""

    name: str

    async def quote(self, from_token: str, to_token: str, amount: Decimal) -> Quote: ...


@dataclass(frozen=True)
class VenueProfile:
    """
    Simulation parameters for one venue.

    The effective price is base * uniform(variance_low, variance_high).
    """

    name: str
    fee_rate: Decimal
    variance_low: Decimal
    variance_high: Decimal


RAYDIUM = VenueProfile(name="raydium", fee_rate=Decimal("0.003"), variance_low=Decimal("0.98"), variance_high=Decimal("1.02"))
METEORA = VenueProfile(name="meteora", fee_rate=Decimal("0.002"), variance_low=Decimal("0.97"), variance_high=Decimal("1.02"))

DEFAULT_PROFILES: tuple[VenueProfile, ...] = (RAYDIUM, METEORA)


def price_quote(*, venue: str, amount: Decimal, price: Decimal, fee_rate: Decimal) -> Quote:
    """output = amount * price * (1 - fee_rate); fee = amount * price * fee_rate."""
    gross = Decimal(amount) * price
    return Quote(
        venue=venue,
        output_amount=gross * (Decimal(1) - fee_rate),
        price=price,
        fee=gross * fee_rate,
    )


class SimulatedVenue:
    """
    Synthetic venue: no network, a fixed latency, and a randomized price band.

    Stateless across calls; safe to call concurrently and repeatedly.
    """

    def __init__(
        self,
        profile: VenueProfile,
        *,
        delay_s: float = 0.2,
        rng: Optional[random.Random] = None,
        prices: Mapping[str, Decimal] = BASE_PRICES,
    ) -> None:
        self.profile = profile
        self.name = profile.name
        self._delay_s = max(0.0, float(delay_s))
        self._rng = rng or random.Random()
        self._prices = prices

    async def quote(self, from_token: str, to_token: str, amount: Decimal) -> Quote:
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        p = self.profile
        factor = Decimal(str(self._rng.uniform(float(p.variance_low), float(p.variance_high))))
        price = (base_price(from_token, to_token, self._prices) * factor).quantize(_PRICE_QUANTUM)
        q = price_quote(venue=self.name, amount=amount, price=price, fee_rate=p.fee_rate)
        logger.debug(
            "venue_quote venue=%s pair=%s-%s amount=%s output=%s price=%s fee=%s",
            self.name,
            from_token,
            to_token,
            amount,
            q.output_amount,
            q.price,
            q.fee,
        )
        return q
