"""
Order number allocation.

The shared counter at metadata/lastOrderNumber holds the highest number
handed out so far.  A session reserves the next number when it opens a new
draft, and after the order is saved it raises the counter to at least the
number it used.  The floor-raise heals any gap left by the degraded
fallback below.
"""
import logging
from typing import Optional

from .errors import TransactionConflict
from .store import Store

logger = logging.getLogger(__name__)

COUNTER_SEED = 999   # the first order is number 1000


class OrderNumberingService:
    """Owns the shared counter and this session's reserved draft number."""

    def __init__(self, store: Store, counter_path: str, seed: int = COUNTER_SEED) -> None:
        self.store = store
        self.counter_path = counter_path
        self.seed = seed
        self._reserved: Optional[int] = None

    @property
    def reserved(self) -> Optional[int]:
        """Number reserved for the in-progress draft, if any."""
        return self._reserved

    def _base(self, current) -> int:
        return current if isinstance(current, int) else self.seed

    async def reserve_next(self) -> int:
        """
        Atomically increment the counter and reserve the result.

        If the transaction keeps conflicting until the store gives up, fall
        back to a plain read-then-write.  That path can hand the same number
        to two sessions; reconcile_counter_floor on save limits the damage.
        """
        try:
            number = await self.store.atomic_update(
                self.counter_path, lambda current: self._base(current) + 1
            )
        except TransactionConflict as exc:
            logger.warning("Order counter transaction failed (%s); using non-atomic fallback", exc)
            number = self._base(await self.store.get(self.counter_path)) + 1
            await self.store.set(self.counter_path, number)

        self._reserved = number
        logger.info("Reserved order number %d", number)
        return number

    async def reconcile_counter_floor(self, used_number: int) -> int:
        """Raise the counter to at least `used_number`.  Never lowers it."""
        value = await self.store.atomic_update(
            self.counter_path, lambda current: max(self._base(current), used_number)
        )
        logger.debug("Counter floor reconciled with %d -> %d", used_number, value)
        return value

    def consume(self) -> int:
        """Hand the reserved number to a save.  Raises if nothing is reserved."""
        if self._reserved is None:
            raise RuntimeError("No order number reserved for this draft")
        number, self._reserved = self._reserved, None
        return number

    def discard(self) -> None:
        """Drop the reserved number without using it (form reset, sign-out)."""
        if self._reserved is not None:
            logger.debug("Discarded reserved order number %d", self._reserved)
        self._reserved = None
