"""
Dashboard statistics, derived purely from an order snapshot.
"""
import math
from datetime import date, datetime, timezone
from typing import Iterable, Optional

from models.dashboard import DashboardStats, MonthlyBucket
from models.order import EXPENSE_OTHER, Order

MONTHS = 6
RECENT_LIMIT = 5


def last_months(today: date, count: int = MONTHS) -> list[tuple[int, int]]:
    """(year, month) pairs for the `count` months ending at today's month, oldest first."""
    index = today.year * 12 + (today.month - 1)
    return [(i // 12, i % 12 + 1) for i in range(index - count + 1, index + 1)]


def aggregate(
    orders: Iterable[Order],
    today: Optional[date] = None,
    months: int = MONTHS,
    recent_limit: int = RECENT_LIMIT,
) -> DashboardStats:
    """
    Compute dashboard statistics.

    Totals use each order's stored grand total (missing counts as 0).
    Orders without a readable date count toward totals and types but fall
    in no monthly bucket.  `recent` is stable: ties keep snapshot order.
    """
    orders = list(orders)
    today = today or datetime.now(timezone.utc).date()

    total_orders = len(orders)
    total_amount = math.fsum(o.totals.grand_total or 0 for o in orders)
    avg_amount = total_amount / total_orders if total_orders else 0.0

    by_type: dict[str, int] = {}
    for order in orders:
        kind = order.expense_type or EXPENSE_OTHER
        by_type[kind] = by_type.get(kind, 0) + 1

    monthly: dict[tuple[int, int], list[float]] = {}
    for order in orders:
        parsed = order.parsed_date
        if parsed is None:
            continue
        monthly.setdefault((parsed.year, parsed.month), []).append(order.totals.grand_total or 0)

    series = []
    for year, month in last_months(today, months):
        series.append(MonthlyBucket(
            year=year,
            month=month,
            label=date(year, month, 1).strftime("%b %Y"),
            total=math.fsum(monthly.get((year, month), [])),
        ))

    recent = sorted(orders, key=lambda o: o.sort_date, reverse=True)[:recent_limit]

    return DashboardStats(
        total_orders=total_orders,
        total_amount=total_amount,
        avg_amount=avg_amount,
        by_type=by_type,
        monthly_series=series,
        recent=recent,
    )
