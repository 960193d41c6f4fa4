from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementReceipt:
    reference: str
    venue: str


class Settlement(Protocol):
    async def submit(self, *, order_id: str, venue: str) -> SettlementReceipt: ...


class SimulatedSettlement:
    """
    Stand-in for submitting a swap to the selected venue.

    Waits base delay plus up to `jitter_s`, then returns a synthetic
    transaction reference ("0x" + 64 hex chars).
    """

    def __init__(self, *, delay_s: float = 2.0, jitter_s: float = 1.0, rng: Optional[random.Random] = None) -> None:
        self._delay_s = max(0.0, float(delay_s))
        self._jitter_s = max(0.0, float(jitter_s))
        self._rng = rng or random.Random()

    def _reference(self) -> str:
        return "0x" + "".join(self._rng.choice("0123456789abcdef") for _ in range(64))

    async def submit(self, *, order_id: str, venue: str) -> SettlementReceipt:
        wait_s = self._delay_s + (self._rng.random() * self._jitter_s if self._jitter_s else 0.0)
        if wait_s:
            await asyncio.sleep(wait_s)
        receipt = SettlementReceipt(reference=self._reference(), venue=venue)
        logger.info("settlement_submitted order_id=%s venue=%s reference=%s", order_id, venue, receipt.reference)
        return receipt
