"""
Order draft workflow: the new / edit form lifecycle around the repository.

A new draft reserves the next order number when it is opened, so the user
sees the number before saving.  Submitting consumes that reservation; a
draft that is reset or abandoned leaves a gap in the numbering, never a
duplicate.  Editing keeps the stored number and does not touch the counter.
"""
import logging
from typing import Awaitable, Callable, Optional

from models.order import (
    EXPENSE_PURCHASE, STATUS_ACTIVE,
    CreatedBy, Order, OrderForm, OrgInfo, utc_now_iso,
)
from models.user import ResolvedSession
from .errors import NotFound, PermissionDenied, ValidationError
from .numbering import OrderNumberingService
from .repository import OrderRepository
from .role_gate import require_admin
from .validator import build_line_items, compute_totals

logger = logging.getLogger(__name__)

AfterSave = Callable[[], Awaitable[None]]


class OrderDraftWorkflow:
    """
    Holds the one in-progress draft of a session.

    Usage:
        number = await drafts.open_new()
        order = await drafts.submit(session, OrderForm(...))
    """

    def __init__(
        self,
        repository: OrderRepository,
        numbering: OrderNumberingService,
        buyer: OrgInfo,
        default_tax_percent: float = 19.0,
        default_expense_type: str = EXPENSE_PURCHASE,
        after_save: Optional[AfterSave] = None,
    ) -> None:
        self.repository = repository
        self.numbering = numbering
        self.buyer = buyer
        self.default_tax_percent = default_tax_percent
        self.default_expense_type = default_expense_type
        self.after_save = after_save
        self._editing: Optional[Order] = None

    @property
    def editing_id(self) -> Optional[str]:
        return self._editing.id if self._editing is not None else None

    @property
    def is_editing(self) -> bool:
        return self._editing is not None

    @property
    def order_number(self) -> Optional[int]:
        """Number shown on the form: the stored one when editing, else the reservation."""
        if self._editing is not None:
            return self._editing.order_number
        return self.numbering.reserved

    async def open_new(self) -> int:
        """Start a new draft, reserving a number unless one is already held."""
        self._editing = None
        if self.numbering.reserved is not None:
            return self.numbering.reserved
        return await self.numbering.reserve_next()

    def open_edit(self, session: Optional[ResolvedSession], order_id: str) -> OrderForm:
        """Load an order from the snapshot into an edit draft (admin only)."""
        require_admin(session, "edit orders")
        order = self.repository.snapshot.get(order_id)
        if order is None:
            raise NotFound(f"Order not found: {order_id}")
        self._editing = order
        logger.debug("Editing order #%s (%s)", order.order_number, order_id)
        return OrderForm.from_order(order)

    def reset(self) -> None:
        """Clear the draft and drop any reserved number."""
        self._editing = None
        self.numbering.discard()

    def _build(self, form: OrderForm, tax_percent: float):
        self.repository.validator.validate(
            form.items, tax_percent, form.withholding_income, form.withholding_turnover
        )
        items = build_line_items(form.items)
        totals = compute_totals(
            items, tax_percent, form.withholding_income, form.withholding_turnover
        )
        return items, totals

    async def submit(self, session: Optional[ResolvedSession], form: OrderForm) -> Order:
        """
        Validate the form and save it as a new order or over the edited one.

        Validation happens before any write and before the reservation is
        consumed, so a rejected form keeps its number.  On success the draft
        is reset and `after_save` (normally a snapshot reload) runs.
        """
        if session is None:
            raise PermissionDenied("save orders")

        tax_percent = form.tax_percent if form.tax_percent is not None else self.default_tax_percent
        items, totals = self._build(form, tax_percent)
        now = utc_now_iso()
        expense_type = form.expense_type or self.default_expense_type

        if self._editing is not None:
            original = self._editing
            order = Order(
                order_number=original.order_number,
                date=original.date or now,
                buyer=original.buyer,
                supplier=form.supplier,
                expense_type=expense_type,
                items=items,
                notes=form.notes,
                totals=totals,
                status=original.status or STATUS_ACTIVE,
                created_by=original.created_by,
                last_modified=now,
            )
            await self.repository.update(session, original.id, order)
        else:
            if self.numbering.reserved is None:
                raise ValidationError(["No order number reserved; open a new order first"])
            # Taken before the first await: a concurrent submit on this draft
            # finds no reservation, and a failed write leaves a gap.
            number = self.numbering.consume()
            order = Order(
                order_number=number,
                date=now,
                buyer=self.buyer,
                supplier=form.supplier,
                expense_type=expense_type,
                items=items,
                notes=form.notes,
                totals=totals,
                status=STATUS_ACTIVE,
                created_by=CreatedBy(
                    user_id=session.user.uid,
                    email=session.user.email,
                    display_name=session.display_name,
                ),
                last_modified=now,
            )
            await self.repository.create(order)

        self.reset()
        if self.after_save is not None:
            await self.after_save()
        return order
