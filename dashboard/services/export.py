"""
Export service: spreadsheet rows and per-order XML documents.
"""
import csv
import io
import logging
from datetime import date
from pathlib import Path
from typing import Iterable, Mapping, Optional, Union

from jinja2 import BaseLoader, Environment, FileSystemLoader

from models.order import STATUS_ACTIVE, Order

logger = logging.getLogger(__name__)

# Fixed column set, in sheet order
EXPORT_COLUMNS = [
    "Order No.",
    "Date",
    "Time",
    "Supplier",
    "Tax ID",
    "Expense Type",
    "Status",
    "Subtotal",
    "Tax %",
    "Tax Value",
    "Income Withholding",
    "Turnover Withholding",
    "Total",
    "Created By",
    "Notes",
]

MISSING = "N/A"

# Default XML order template
DEFAULT_ORDER_XML_TEMPLATE = """\
<?xml version="1.0" encoding="UTF-8"?>
<!--
  Purchase order export template.  Edit config/order_template.xml.j2 to customise.
  Values are XML-escaped automatically.

  Variables: order (the order document, aliased keys), order_id, exported_at
-->
<PurchaseOrder id="{{ order_id }}">
  <Number>{{ order.numeroOrden }}</Number>
  {% if order.fecha %}<Date>{{ order.fecha }}</Date>
  {% endif %}
  <Status>{{ order.estado }}</Status>
  {% if order.tipoGasto %}<ExpenseType>{{ order.tipoGasto }}</ExpenseType>
  {% endif %}
  <ExportedAt>{{ exported_at }}</ExportedAt>

  {% for role, org in (("Buyer", order.comprador), ("Supplier", order.proveedor)) %}
  <{{ role }}>
    <Name>{{ org.razonSocial }}</Name>
    {% if org.nit %}<TaxId>{{ org.nit }}</TaxId>
    {% endif %}
    {% if org.direccion %}<Address>{{ org.direccion }}</Address>
    {% endif %}
    {% if org.telefono %}<Phone>{{ org.telefono }}</Phone>
    {% endif %}
    {% if org.correo %}<Email>{{ org.correo }}</Email>
    {% endif %}
  </{{ role }}>
  {% endfor %}

  <LineItems>
    {% for item in order["items"] %}
    <LineItem number="{{ item.numero }}">
      <Description>{{ item.descripcion }}</Description>
      <Quantity>{{ item.cantidad }}</Quantity>
      <UnitPrice>{{ item.pUnit }}</UnitPrice>
      <LineTotal>{{ item.total }}</LineTotal>
    </LineItem>
    {% endfor %}
  </LineItems>

  {% set t = order.totales %}
  <Totals>
    <Subtotal>{{ t.subtotal }}</Subtotal>
    <TaxPercent>{{ t.ivaPercent }}</TaxPercent>
    <TaxValue>{{ t.ivaValue }}</TaxValue>
    <IncomeWithholding>{{ t.reteFuente }}</IncomeWithholding>
    <TurnoverWithholding>{{ t.reteIca }}</TurnoverWithholding>
    <Total>{{ t.total }}</Total>
  </Totals>

  {% if order.observaciones %}<Notes>{{ order.observaciones }}</Notes>
  {% endif %}
  {% if order.creadoPor %}<CreatedBy uid="{{ order.creadoPor.uid }}">{{ order.creadoPor.email }}</CreatedBy>
  {% endif %}
</PurchaseOrder>
"""

OrdersInput = Union[Mapping[str, Order], Iterable[Order]]


def _orders(orders: OrdersInput) -> list[Order]:
    if isinstance(orders, Mapping):
        return list(orders.values())
    return list(orders)


def build_export_row(order: Order) -> dict:
    """One spreadsheet row.  Missing text shows as N/A, missing amounts as 0."""
    parsed = order.parsed_date
    totals = order.totals
    supplier = order.supplier
    return {
        "Order No.":            order.order_number if order.order_number is not None else MISSING,
        "Date":                 parsed.strftime("%Y-%m-%d") if parsed else MISSING,
        "Time":                 parsed.strftime("%H:%M:%S") if parsed else MISSING,
        "Supplier":             supplier.name or MISSING,
        "Tax ID":               supplier.tax_id or MISSING,
        "Expense Type":         order.expense_type or MISSING,
        "Status":               order.status or STATUS_ACTIVE,
        "Subtotal":             totals.subtotal or 0,
        "Tax %":                totals.tax_percent or 0,
        "Tax Value":            totals.tax_value or 0,
        "Income Withholding":   totals.withholding_income or 0,
        "Turnover Withholding": totals.withholding_turnover or 0,
        "Total":                totals.grand_total or 0,
        "Created By":           (order.created_by.email if order.created_by else "") or MISSING,
        "Notes":                order.notes or "",
    }


def build_export_rows(orders: OrdersInput) -> list[dict]:
    """Rows for every order, in snapshot order."""
    return [build_export_row(order) for order in _orders(orders)]


def _write_rows(rows: list[dict], f) -> None:
    writer = csv.DictWriter(f, fieldnames=EXPORT_COLUMNS)
    writer.writeheader()
    writer.writerows(rows)


def orders_csv_text(orders: OrdersInput) -> str:
    rows = build_export_rows(orders)
    if not rows:
        raise ValueError("No orders to export")
    buf = io.StringIO()
    _write_rows(rows, buf)
    return buf.getvalue()


def write_orders_csv(orders: OrdersInput, path: Path) -> int:
    """Write the export to *path*.  Returns the number of rows written."""
    rows = build_export_rows(orders)
    if not rows:
        raise ValueError("No orders to export")
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        _write_rows(rows, f)
    logger.info("Exported %d orders to %s", len(rows), path)
    return len(rows)


def default_export_filename(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"purchase_orders_{today.isoformat()}.csv"


def render_order_xml(
    order: Order,
    exported_at: str,
    template_file: Optional[Path] = None,
) -> str:
    """
    Render one order as XML using the operator template (or built-in default).

    Args:
        order: The order to render; its store document is the template context
        exported_at: ISO-8601 timestamp stamped into the document
        template_file: Optional path to a custom Jinja2 template file
    """
    if template_file and template_file.exists():
        env = Environment(
            loader=FileSystemLoader(str(template_file.parent)),
            autoescape=True,
            keep_trailing_newline=True,
        )
        tmpl = env.get_template(template_file.name)
    else:
        env = Environment(loader=BaseLoader(), autoescape=True, keep_trailing_newline=True)
        tmpl = env.from_string(DEFAULT_ORDER_XML_TEMPLATE)
    return tmpl.render(order=order.to_document(), order_id=order.id or "", exported_at=exported_at)
