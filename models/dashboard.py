from typing import Dict, List

from pydantic import BaseModel, Field

from .order import Order


class MonthlyBucket(BaseModel):
    """Spend for one calendar month of the dashboard series."""
    year: int
    month: int          # 1-12
    label: str          # e.g. "Oct 2026"
    total: float = 0.0


class DashboardStats(BaseModel):
    """
    Statistics derived from the current order snapshot.

    Computed by procurement.aggregator.aggregate; holds no state of its own.
    """
    total_orders: int = 0
    total_amount: float = 0.0
    avg_amount: float = 0.0
    by_type: Dict[str, int] = Field(default_factory=dict)
    monthly_series: List[MonthlyBucket] = Field(default_factory=list)
    recent: List[Order] = Field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return self.total_orders > 0
