from .order import OrgInfo, LineItem, Totals, CreatedBy, Order, ItemForm, OrderForm
from .user import UserProfile, SessionUser, ResolvedSession
from .dashboard import DashboardStats, MonthlyBucket

__all__ = [
    "OrgInfo", "LineItem", "Totals", "CreatedBy", "Order", "ItemForm", "OrderForm",
    "UserProfile", "SessionUser", "ResolvedSession",
    "DashboardStats", "MonthlyBucket",
]
