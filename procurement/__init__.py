from .errors import (
    PanelError, AuthError, AccessDenied, PermissionDenied, ValidationError,
    FetchTimeout, TransactionConflict, StoreError, NotFound,
)
from .store import Store, MemoryStore
from .sqlite_store import SQLiteStore
from .identity import IdentityProvider, LocalIdentityProvider
from .role_gate import RoleGate, require_admin
from .validator import OrderValidator, build_line_items, compute_totals
from .numbering import OrderNumberingService
from .repository import OrderRepository, apply_snapshot, filter_orders
from .aggregator import aggregate
from .user_admin import UserAdministration
from .drafts import OrderDraftWorkflow
from .context import AppContext, build_store, build_identity

__all__ = [
    "PanelError", "AuthError", "AccessDenied", "PermissionDenied", "ValidationError",
    "FetchTimeout", "TransactionConflict", "StoreError", "NotFound",
    "Store", "MemoryStore", "SQLiteStore",
    "IdentityProvider", "LocalIdentityProvider", "RoleGate", "require_admin",
    "OrderValidator", "build_line_items", "compute_totals",
    "OrderNumberingService", "OrderRepository", "apply_snapshot", "filter_orders",
    "aggregate", "UserAdministration", "OrderDraftWorkflow",
    "AppContext", "build_store", "build_identity",
]
