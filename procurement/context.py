"""
Per-session application context.

An AppContext exists only while a user is signed in and resolved through
the role gate.  It owns the session's numbering service, order repository,
draft and user administration, and the dashboard derived from the current
snapshot.  close() unsubscribes the live feed and drops any reserved number.
"""
import logging
from typing import Callable, Optional

from config import Config
from models.dashboard import DashboardStats
from models.user import ResolvedSession, SessionUser
from .aggregator import aggregate
from .drafts import OrderDraftWorkflow
from .errors import AccessDenied
from .identity import IdentityProvider, LocalIdentityProvider
from .numbering import OrderNumberingService
from .repository import OrderRepository, OrderSnapshot, filter_orders
from .role_gate import RoleGate
from .sqlite_store import SQLiteStore
from .store import MemoryStore, Store
from .user_admin import UserAdministration

logger = logging.getLogger(__name__)

StatsListener = Callable[[DashboardStats], None]


def build_store(config: Config) -> Store:
    """Create the store selected by config.store_backend."""
    retry = dict(
        max_retries=config.transaction_max_retries,
        backoff=config.transaction_backoff_seconds,
        backoff_max=config.transaction_backoff_max_seconds,
    )
    if config.store_backend == "memory":
        return MemoryStore(**retry)
    if config.store_backend == "sqlite":
        return SQLiteStore(config.db_path, poll_interval=config.subscription_poll_seconds, **retry)
    raise ValueError(f"Unknown store backend {config.store_backend!r}. Use 'sqlite' or 'memory'")


def build_identity(config: Config) -> LocalIdentityProvider:
    return LocalIdentityProvider(
        config.identities_file,
        max_failed_attempts=config.max_failed_sign_ins,
        lockout_seconds=config.sign_in_lockout_seconds,
    )


class AppContext:
    def __init__(
        self,
        config: Config,
        store: Store,
        identity: IdentityProvider,
        session: ResolvedSession,
    ) -> None:
        self.config = config
        self.store = store
        self.identity = identity
        self.session = session

        self.numbering = OrderNumberingService(store, config.counter_path, config.counter_seed)
        self.repository = OrderRepository(
            store, self.numbering, config.orders_path, load_timeout=config.load_timeout_seconds
        )
        self.users = UserAdministration(store, config.users_path)
        self.drafts = OrderDraftWorkflow(
            self.repository,
            self.numbering,
            buyer=config.buyer,
            default_tax_percent=config.default_tax_percent,
            default_expense_type=config.default_expense_type,
            after_save=self.refresh,
        )

        self.stats = DashboardStats()
        self._listeners: list[StatsListener] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    async def sign_in(
        cls,
        config: Config,
        store: Store,
        identity: IdentityProvider,
        email: str,
        password: str,
        follow: bool = True,
    ) -> "AppContext":
        """Authenticate, then start a context for the signed-in user."""
        user = await identity.sign_in(email, password)
        return await cls.start(config, store, identity, user, follow=follow)

    @classmethod
    async def start(
        cls,
        config: Config,
        store: Store,
        identity: IdentityProvider,
        user: SessionUser,
        follow: bool = True,
    ) -> "AppContext":
        """
        Resolve the session, load the snapshot, compute the dashboard and,
        when `follow` is set, subscribe to the live order feed.

        Raises AccessDenied (identity already signed out) or FetchTimeout.
        """
        gate = RoleGate(store, identity, config.users_path)
        session = await gate.resolve_session(user)
        ctx = cls(config, store, identity, session)
        await ctx.refresh()
        if follow:
            ctx._unsubscribe = ctx.repository.subscribe(ctx._on_snapshot)
        return ctx

    async def revalidate(self) -> ResolvedSession:
        """
        Resolve the session again from the stored profile, so a role change
        or a deactivation reaches a context that is already open.

        Raises AccessDenied, and closes the context, once the profile is gone
        or inactive.
        """
        gate = RoleGate(self.store, self.identity, self.config.users_path)
        try:
            self.session = await gate.resolve_session(self.session.user)
        except AccessDenied:
            await self.close(sign_out=False)
            raise
        return self.session

    async def close(self, sign_out: bool = True) -> None:
        if self.closed:
            return
        self.closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.drafts.reset()
        self._listeners.clear()
        if sign_out:
            await self.identity.sign_out()
        logger.debug("Context closed for %s", self.session.user.email)

    # ------------------------------------------------------------------
    # Snapshot and dashboard
    # ------------------------------------------------------------------

    @property
    def is_admin(self) -> bool:
        return self.session.is_admin

    @property
    def snapshot(self) -> OrderSnapshot:
        return self.repository.snapshot

    async def refresh(self) -> DashboardStats:
        """Reload the snapshot from the store and recompute the dashboard."""
        await self.repository.load_snapshot()
        self._recompute()
        return self.stats

    def _on_snapshot(self, _snapshot: OrderSnapshot) -> None:
        self._recompute()

    def _recompute(self) -> None:
        self.stats = aggregate(
            self.repository.snapshot.values(),
            months=self.config.dashboard_months,
            recent_limit=self.config.recent_orders_limit,
        )
        for listener in list(self._listeners):
            listener(self.stats)

    def on_change(self, listener: StatsListener) -> Callable[[], None]:
        """Call `listener` with fresh stats whenever the dashboard is recomputed."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def list_orders(self, search_text=None, expense_type=None, date=None):
        return filter_orders(self.repository.snapshot, search_text, expense_type, date)

    async def delete_order(self, order_id: str, confirm) -> bool:
        """Delete through the repository, then reload the snapshot."""
        deleted = await self.repository.delete(self.session, order_id, confirm)
        if deleted:
            await self.refresh()
        return deleted
