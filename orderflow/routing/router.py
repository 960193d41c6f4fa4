from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Sequence

from orderflow.common.logging import log_event
from orderflow.errors import TransientPipelineError
from orderflow.orders.models import Quote
from orderflow.routing.venues import Venue

logger = logging.getLogger(__name__)


def _priority_key(venue: str, priority: Sequence[str]) -> tuple[int, str]:
    name = venue.lower()
    try:
        return (list(priority).index(name), name)
    except ValueError:
        # Unlisted venues rank after every listed one, then by name.
        return (len(priority), name)


def select_best(quotes: Sequence[Quote], priority: Sequence[str] = ()) -> Quote:
    """
    Winning quote: highest output amount. Exact ties go to the venue listed
    first in `priority`, so the result never depends on arrival order.
    """
    if not quotes:
        raise ValueError("select_best requires at least one quote")
    prio = [p.lower() for p in priority]
    return min(quotes, key=lambda q: (-q.output_amount, _priority_key(q.venue, prio)))


class PriceRouter:
    """Fans a quote request out to every configured venue and picks the winner."""

    def __init__(self, venues: Sequence[Venue], *, priority: Sequence[str] = ()) -> None:
        if not venues:
            raise ValueError("PriceRouter needs at least one venue")
        names = [v.name for v in venues]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate venue names: {names}")
        self._venues = tuple(venues)
        self._priority = tuple(p.lower() for p in priority)

    @property
    def venue_names(self) -> tuple[str, ...]:
        return tuple(v.name for v in self._venues)

    @property
    def priority(self) -> tuple[str, ...]:
        return self._priority

    async def quote_all(self, from_token: str, to_token: str, amount: Decimal) -> list[Quote]:
        # Barrier: every venue must answer before routing can proceed.
        results = await asyncio.gather(
            *(v.quote(from_token, to_token, amount) for v in self._venues),
            return_exceptions=True,
        )
        quotes: list[Quote] = []
        for venue, res in zip(self._venues, results):
            if isinstance(res, asyncio.CancelledError):
                raise res
            if isinstance(res, BaseException):
                raise TransientPipelineError(f"quote from {venue.name} failed: {res}") from res
            quotes.append(res)
        return quotes

    async def route(self, from_token: str, to_token: str, amount: Decimal) -> Quote:
        quotes = await self.quote_all(from_token, to_token, amount)
        best = select_best(quotes, self._priority)
        log_event(
            logger,
            "router.selected",
            severity="DEBUG",
            venue=best.venue,
            output_amount=best.output_amount,
            quotes={q.venue: q.output_amount for q in quotes},
        )
        return best
