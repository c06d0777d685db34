"""
Order input validation and totals arithmetic.

Validation runs before anything is written and before a counter number is
consumed.  Totals are always rebuilt from the line items and rates, so a
stale grand total from a form can never reach the store.
"""
import logging
import math
from typing import Iterable, Mapping, Union

from models.order import ItemForm, LineItem, Totals
from .errors import ValidationError

logger = logging.getLogger(__name__)

ItemInput = Union[LineItem, ItemForm, Mapping]


def _field(item: ItemInput, name: str, alias: str):
    if isinstance(item, Mapping):
        return item.get(name, item.get(alias))
    return getattr(item, name, None)


def _number(value) -> float:
    """Coerce form input to a number; blanks and junk count as zero."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class OrderValidator:
    """
    Rejects an order's input when:
      - the item list is empty
      - an item description is blank after trimming
      - an item quantity is <= 0
      - an item unit price is <= 0
      - the tax percent or a withholding is negative
      - any of those numbers is NaN or infinite

    Usage:
        OrderValidator().validate(items, tax_percent=19)
    """

    def validate(
        self,
        items: Iterable[ItemInput],
        tax_percent: float = 0,
        withholding_income: float = 0,
        withholding_turnover: float = 0,
    ) -> None:
        problems = self.check(items, tax_percent, withholding_income, withholding_turnover)
        if problems:
            logger.debug("Order rejected: %s", problems)
            raise ValidationError(problems)

    def check(
        self,
        items: Iterable[ItemInput],
        tax_percent: float = 0,
        withholding_income: float = 0,
        withholding_turnover: float = 0,
    ) -> list[str]:
        """Return every problem found (empty list when the input is valid)."""
        items = list(items)
        problems: list[str] = []

        if not items:
            problems.append("The order must have at least one item")

        for i, item in enumerate(items, start=1):
            description = str(_field(item, "description", "descripcion") or "").strip()
            if not description:
                problems.append(f"Item {i}: every item needs a description")
            quantity = _number(_field(item, "quantity", "cantidad"))
            if not math.isfinite(quantity):
                problems.append(f"Item {i}: quantity must be a finite number")
            elif quantity <= 0:
                problems.append(f"Item {i}: quantity must be greater than zero")
            unit_price = _number(_field(item, "unit_price", "pUnit"))
            if not math.isfinite(unit_price):
                problems.append(f"Item {i}: unit price must be a finite number")
            elif unit_price <= 0:
                problems.append(f"Item {i}: unit price must be greater than zero")

        for label, value in (
            ("Tax percent", tax_percent),
            ("Income withholding", withholding_income),
            ("Turnover withholding", withholding_turnover),
        ):
            value = _number(value)
            if not math.isfinite(value):
                problems.append(f"{label} must be a finite number")
            elif value < 0:
                problems.append(f"{label} cannot be negative")

        return problems


def build_line_items(items: Iterable[ItemInput]) -> list[LineItem]:
    """
    Build line items with dense 1-based sequence numbers and cached totals.

    Sequence numbers are re-derived from list position, whatever the input
    carried, so they stay dense after rows are added or removed.
    """
    built = []
    for i, item in enumerate(items, start=1):
        quantity = _number(_field(item, "quantity", "cantidad"))
        unit_price = _number(_field(item, "unit_price", "pUnit"))
        built.append(LineItem(
            sequence=i,
            description=str(_field(item, "description", "descripcion") or "").strip(),
            quantity=quantity,
            unit_price=unit_price,
            line_total=quantity * unit_price,
        ))
    return built


def compute_totals(
    items: Iterable[LineItem],
    tax_percent: float = 0,
    withholding_income: float = 0,
    withholding_turnover: float = 0,
) -> Totals:
    """grand_total = subtotal + tax_value - withholding_income - withholding_turnover."""
    tax_percent = _number(tax_percent)
    withholding_income = _number(withholding_income)
    withholding_turnover = _number(withholding_turnover)

    subtotal = math.fsum(item.line_total for item in items)
    tax_value = subtotal * (tax_percent / 100)
    return Totals(
        subtotal=subtotal,
        tax_percent=tax_percent,
        tax_value=tax_value,
        withholding_income=withholding_income,
        withholding_turnover=withholding_turnover,
        grand_total=subtotal + tax_value - withholding_income - withholding_turnover,
    )
