"""
Order repository: the session's snapshot of all orders and the
create / update / delete protocol against the store.

Snapshots are immutable mappings {order id: Order}.  Both read paths, the
one-shot load_snapshot() and the live subscription, replace the cached
snapshot wholesale through the pure reducer apply_snapshot(); nothing
merges incrementally.  The two paths are independent and can briefly
disagree, so callers reload after their own writes.
"""
import asyncio
import logging
from datetime import date as date_type
from types import MappingProxyType
from typing import Any, AsyncIterator, Callable, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from models.order import Order
from models.user import ResolvedSession
from .errors import FetchTimeout, NotFound, StoreError, TransactionConflict, ValidationError
from .numbering import OrderNumberingService
from .role_gate import require_admin
from .store import Store, join_path
from .validator import OrderValidator, build_line_items, compute_totals

logger = logging.getLogger(__name__)

OrderSnapshot = Mapping[str, Order]

EMPTY_SNAPSHOT: OrderSnapshot = MappingProxyType({})

DEFAULT_LOAD_TIMEOUT = 10.0


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def apply_snapshot(previous: OrderSnapshot, raw: Any) -> OrderSnapshot:
    """
    Reduce a pushed collection into the next snapshot.

    The store always sends the entire collection, so the previous snapshot
    is simply replaced.  Documents that do not parse are left out.
    """
    if not isinstance(raw, dict):
        return EMPTY_SNAPSHOT
    orders: dict[str, Order] = {}
    for order_id, document in raw.items():
        if not isinstance(document, dict):
            logger.warning("Skipping order %s: not a document", order_id)
            continue
        try:
            orders[order_id] = Order.from_document(order_id, document)
        except PydanticValidationError as exc:
            logger.warning("Skipping unreadable order %s: %s", order_id, exc)
    return MappingProxyType(orders)


def filter_orders(
    snapshot: OrderSnapshot,
    search_text: Optional[str] = None,
    expense_type: Optional[str] = None,
    date: Union[str, date_type, None] = None,
) -> list[Order]:
    """
    Filter and sort orders for listing.

    Args:
        search_text:   case-insensitive substring of the supplier name,
                       the order number or the expense type.
        expense_type:  exact expense type.
        date:          calendar day (YYYY-MM-DD or date); time is ignored.
                       Orders without a readable date are not excluded by it.

    All given filters must match.  Results are newest first; orders with a
    missing or unparseable date sort last, as the epoch.
    """
    needle = (search_text or "").strip().lower()
    day = date.isoformat() if isinstance(date, date_type) else (date or "")

    def matches(order: Order) -> bool:
        if needle:
            haystacks = (
                order.supplier.name or "",
                str(order.order_number) if order.order_number is not None else "",
                order.expense_type or "",
            )
            if not any(needle in h.lower() for h in haystacks):
                return False
        if expense_type and order.expense_type != expense_type:
            return False
        if day:
            parsed = order.parsed_date
            if parsed is not None and parsed.date().isoformat() != day:
                return False
        return True

    selected = [order for order in snapshot.values() if matches(order)]
    return sorted(selected, key=lambda o: o.sort_date, reverse=True)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class OrderRepository:
    """Owns the order snapshot for one session."""

    def __init__(
        self,
        store: Store,
        numbering: OrderNumberingService,
        orders_path: str,
        validator: Optional[OrderValidator] = None,
        load_timeout: float = DEFAULT_LOAD_TIMEOUT,
    ) -> None:
        self.store = store
        self.numbering = numbering
        self.orders_path = orders_path
        self.validator = validator or OrderValidator()
        self.load_timeout = load_timeout
        self._snapshot: OrderSnapshot = EMPTY_SNAPSHOT

    @property
    def snapshot(self) -> OrderSnapshot:
        return self._snapshot

    def _path(self, order_id: str) -> str:
        return join_path(self.orders_path, order_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load_snapshot(self) -> OrderSnapshot:
        """One-shot read of every order.  Raises FetchTimeout past load_timeout."""
        try:
            raw = await asyncio.wait_for(self.store.get(self.orders_path), self.load_timeout)
        except asyncio.TimeoutError:
            logger.error("Timed out loading orders after %ss", self.load_timeout)
            raise FetchTimeout(self.orders_path, self.load_timeout) from None
        self._snapshot = apply_snapshot(self._snapshot, raw)
        logger.debug("Loaded %d orders", len(self._snapshot))
        return self._snapshot

    def subscribe(self, on_change: Callable[[OrderSnapshot], None]) -> Callable[[], None]:
        """Follow the live feed; every push replaces the snapshot, then calls on_change."""
        def _on_value(raw: Any) -> None:
            self._snapshot = apply_snapshot(self._snapshot, raw)
            on_change(self._snapshot)

        return self.store.subscribe(self.orders_path, _on_value)

    async def watch(self) -> AsyncIterator[OrderSnapshot]:
        """The live feed as an async iterator of snapshots."""
        queue: asyncio.Queue = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _prepare(self, order: Order) -> dict:
        """Validate, rebuild items and totals from inputs, return the document."""
        totals = order.totals
        self.validator.validate(
            order.items,
            totals.tax_percent,
            totals.withholding_income,
            totals.withholding_turnover,
        )
        order.items = build_line_items(order.items)
        order.totals = compute_totals(
            order.items,
            totals.tax_percent,
            totals.withholding_income,
            totals.withholding_turnover,
        )
        return order.to_document()

    async def create(self, order: Order) -> str:
        """
        Store a new order under a fresh push key and return the key.

        After the write the counter floor is raised to the order's number,
        so the counter never trails a number that is actually in use.  The
        order is already stored by then, so a failed floor-raise is logged
        and the key still returned; the next successful save heals it.
        """
        if order.order_number is None:
            raise ValidationError(["The order has no order number"])
        document = self._prepare(order)
        order_id = await self.store.push(self.orders_path)
        await self.store.set(self._path(order_id), document)
        order.id = order_id
        logger.info("Created order #%s (%s)", order.order_number, order_id)
        try:
            await self.numbering.reconcile_counter_floor(order.order_number)
        except (StoreError, TransactionConflict) as exc:
            logger.warning(
                "Order #%s saved but the counter floor was not raised: %s",
                order.order_number, exc,
            )
        return order_id

    async def update(self, session: Optional[ResolvedSession], order_id: str, order: Order) -> None:
        """
        Overwrite an existing order document (admin only).

        The stored order number is kept whatever the input says; the
        counter is not touched.
        """
        require_admin(session, "edit orders")
        existing = await self.store.get(self._path(order_id))
        if not isinstance(existing, dict):
            raise NotFound(f"Order not found: {order_id}")
        order.order_number = existing.get("numeroOrden", order.order_number)
        document = self._prepare(order)
        await self.store.set(self._path(order_id), document)
        order.id = order_id
        logger.info("Updated order #%s (%s)", order.order_number, order_id)

    async def delete(
        self,
        session: Optional[ResolvedSession],
        order_id: str,
        confirm: Callable[[Optional[Order]], bool],
    ) -> bool:
        """
        Remove an order (admin only) once `confirm` agrees.

        Returns False, without writing, when confirmation is refused.  The
        order number is not reclaimed.
        """
        require_admin(session, "delete orders")
        if not confirm(self._snapshot.get(order_id)):
            logger.debug("Delete of %s not confirmed", order_id)
            return False
        await self.store.remove(self._path(order_id))
        logger.info("Deleted order %s", order_id)
        return True
