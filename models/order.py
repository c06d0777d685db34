from datetime import datetime, timezone
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field


EXPENSE_PURCHASE = "COMPRA"   # default expense type
EXPENSE_OTHER    = "OTROS"    # bucket for orders without a type
STATUS_ACTIVE    = "ACTIVA"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as stored on order documents.

    Returns an aware UTC datetime, or None when the value is missing or
    cannot be parsed.  Naive values are taken to be UTC.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now_iso() -> str:
    """Current time in the stored timestamp format (millisecond precision, Z suffix)."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class OrgInfo(BaseModel):
    """Buyer or supplier details.  No field is required."""
    model_config = ConfigDict(populate_by_name=True)

    name:    str = Field(default="", alias="razonSocial")
    tax_id:  str = Field(default="", alias="nit")
    address: str = Field(default="", alias="direccion")
    phone:   str = Field(default="", alias="telefono")
    email:   str = Field(default="", alias="correo")


class LineItem(BaseModel):
    """A single line on a purchase order.  line_total is cached at build time."""
    model_config = ConfigDict(populate_by_name=True)

    sequence:    int   = Field(default=0, alias="numero")         # 1-based, dense
    description: str   = Field(default="", alias="descripcion")
    quantity:    float = Field(default=0, alias="cantidad")
    unit_price:  float = Field(default=0, alias="pUnit")
    line_total:  float = Field(default=0, alias="total")          # quantity * unit_price


class Totals(BaseModel):
    """
    Order totals.

    grand_total = subtotal + tax_value - withholding_income - withholding_turnover.
    Always rebuilt with procurement.validator.compute_totals before a save.
    """
    model_config = ConfigDict(populate_by_name=True)

    subtotal:             float = 0
    tax_percent:          float = Field(default=0, alias="ivaPercent")
    tax_value:            float = Field(default=0, alias="ivaValue")
    withholding_income:   float = Field(default=0, alias="reteFuente")
    withholding_turnover: float = Field(default=0, alias="reteIca")
    grand_total:          float = Field(default=0, alias="total")


class CreatedBy(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id:      str = Field(default="", alias="uid")
    email:        str = ""
    display_name: str = Field(default="", alias="nombre")


class Order(BaseModel):
    """
    A purchase order document.

    `id` is the opaque key assigned by the store and is never written into
    the document itself; order_number is the human-facing sequential number.
    Dates are ISO-8601 strings as stored.
    """
    model_config = ConfigDict(populate_by_name=True)

    id:            Optional[str] = Field(default=None, exclude=True)
    order_number:  Optional[int] = Field(default=None, alias="numeroOrden")
    date:          Optional[str] = Field(default=None, alias="fecha")
    buyer:         OrgInfo = Field(default_factory=OrgInfo, alias="comprador")
    supplier:      OrgInfo = Field(default_factory=OrgInfo, alias="proveedor")
    expense_type:  Optional[str] = Field(default=None, alias="tipoGasto")
    items:         List[LineItem] = Field(default_factory=list)
    notes:         str = Field(default="", alias="observaciones")
    totals:        Totals = Field(default_factory=Totals, alias="totales")
    status:        str = Field(default=STATUS_ACTIVE, alias="estado")
    created_by:    Optional[CreatedBy] = Field(default=None, alias="creadoPor")
    last_modified: Optional[str] = Field(default=None, alias="ultimaModificacion")

    @property
    def parsed_date(self) -> Optional[datetime]:
        return parse_timestamp(self.date)

    @property
    def sort_date(self) -> datetime:
        """Order date for sorting; missing or unparseable dates sort as the epoch."""
        return self.parsed_date or EPOCH

    def to_document(self) -> dict:
        """Serialise to the store document shape (aliased keys, no id)."""
        return self.model_dump(mode="json", by_alias=True, exclude={"id"})

    @classmethod
    def from_document(cls, order_id: Optional[str], document: dict) -> "Order":
        order = cls.model_validate(document)
        order.id = order_id
        return order


class ItemForm(BaseModel):
    """One item row as entered on the order form (not yet validated)."""
    description: str = ""
    quantity: float = 1
    unit_price: float = 0


class OrderForm(BaseModel):
    """
    The editable part of an order, as submitted by a client.

    Number, dates, buyer, status and creator are filled in by the draft
    workflow; line totals and the order totals are always recomputed.
    tax_percent falls back to Config.default_tax_percent when omitted.
    """
    supplier: OrgInfo = Field(default_factory=OrgInfo)
    expense_type: Optional[str] = None
    items: List[ItemForm] = Field(default_factory=list)
    tax_percent: Optional[float] = None
    withholding_income: float = 0
    withholding_turnover: float = 0
    notes: str = ""

    @classmethod
    def from_order(cls, order: Order) -> "OrderForm":
        """Pre-fill a form from a stored order (edit)."""
        return cls(
            supplier=order.supplier.model_copy(),
            expense_type=order.expense_type,
            items=[
                ItemForm(description=i.description, quantity=i.quantity, unit_price=i.unit_price)
                for i in order.items
            ],
            tax_percent=order.totals.tax_percent,
            withholding_income=order.totals.withholding_income,
            withholding_turnover=order.totals.withholding_turnover,
            notes=order.notes,
        )
