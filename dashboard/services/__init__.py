"""
Dashboard business logic services.
"""
from .export import (
    EXPORT_COLUMNS,
    build_export_row,
    build_export_rows,
    orders_csv_text,
    write_orders_csv,
    default_export_filename,
    render_order_xml,
    DEFAULT_ORDER_XML_TEMPLATE,
)

__all__ = [
    "EXPORT_COLUMNS",
    "build_export_row",
    "build_export_rows",
    "orders_csv_text",
    "write_orders_csv",
    "default_export_filename",
    "render_order_xml",
    "DEFAULT_ORDER_XML_TEMPLATE",
]
