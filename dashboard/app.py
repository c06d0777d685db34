"""
Purchase Order Panel — FastAPI backend.

JSON endpoints over the same procurement services the CLI uses.  Each
signed-in client gets its own AppContext, keyed by an opaque token that is
returned from POST /api/session and sent back in the X-Session-Token header.
Every request re-reads the caller's profile, so a demotion or deactivation
takes effect on tokens already issued, and every read reloads the order
snapshot from the store first, so clients always see the store of record.

Endpoints
---------
  GET    /api/health                     → liveness probe
  POST   /api/session                    → sign in, returns a session token
  DELETE /api/session                    → sign out
  GET    /api/stats                      → dashboard statistics
  GET    /api/orders                     → list (supports ?search=, ?type=, ?date=)
  GET    /api/orders/{id}                → one order
  GET    /api/orders/{id}/xml            → one order rendered as XML
  POST   /api/orders/next-number         → reserve the number for a new draft
  POST   /api/orders                     → create an order from a form
  PUT    /api/orders/{id}                → replace an order (admin)
  DELETE /api/orders/{id}?confirm=true   → delete an order (admin)
  GET    /api/users                      → profiles and counts (admin)
  POST   /api/users                      → register an identity and profile (admin)
  PATCH  /api/users/{uid}/role           → change role (admin)
  PATCH  /api/users/{uid}/active         → activate / deactivate (admin)
  GET    /api/export.csv                 → spreadsheet export of all orders
"""
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from config import Config
from dashboard.models import ActiveUpdate, RoleUpdate, SignInRequest, UserCreate
from dashboard.services.export import default_export_filename, orders_csv_text, render_order_xml
from models.order import Order, OrderForm, utc_now_iso
from models.user import SessionUser
from procurement.context import AppContext, build_identity, build_store
from procurement.errors import (
    AccessDenied, AuthError, FetchTimeout, NotFound, PanelError,
    PermissionDenied, TransactionConflict, ValidationError,
)
from procurement.identity import IdentityProvider, LocalIdentityProvider
from procurement.role_gate import require_admin
from procurement.store import Store

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Backend, created on first request so importing the module has no side effects
# ---------------------------------------------------------------------------
_config: Optional[Config] = None
_store: Optional[Store] = None
_identity: Optional[IdentityProvider] = None
_sessions: dict[str, AppContext] = {}


def configure(
    config: Optional[Config] = None,
    store: Optional[Store] = None,
    identity: Optional[IdentityProvider] = None,
) -> None:
    """Replace the backend (used by tests and by `main.py serve`)."""
    global _config, _store, _identity
    _config, _store, _identity = config, store, identity
    _sessions.clear()


def get_config() -> Config:
    global _config
    if _config is None:
        _config = Config()
    return _config


def get_store() -> Store:
    global _store
    if _store is None:
        config = get_config()
        config.ensure_dirs()
        _store = build_store(config)
    return _store


def get_identity() -> IdentityProvider:
    global _identity
    if _identity is None:
        _identity = build_identity(get_config())
    return _identity


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    for ctx in list(_sessions.values()):
        await ctx.close()
    _sessions.clear()
    if _store is not None:
        await _store.close()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(title="Purchase Order Panel", docs_url=None, redoc_url=None, lifespan=lifespan)

_STATUS_FOR = [
    (AuthError,           401),
    (AccessDenied,        403),
    (PermissionDenied,    403),
    (ValidationError,     422),
    (NotFound,            404),
    (FetchTimeout,        504),
    (TransactionConflict, 503),
]


@app.exception_handler(PanelError)
async def panel_error_handler(_request: Request, exc: PanelError):
    status = next((code for kind, code in _STATUS_FOR if isinstance(exc, kind)), 500)
    if status == 500:
        logger.error("Store failure: %s", exc)
    body: dict = {"detail": str(exc)}
    if isinstance(exc, ValidationError):
        body["problems"] = exc.problems
    if isinstance(exc, AuthError):
        body["kind"] = exc.kind
    return JSONResponse(status_code=status, content=body)


def _lookup(token: Optional[str]) -> AppContext:
    ctx = _sessions.get(token or "")
    if ctx is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return ctx


async def _context(token: Optional[str]) -> AppContext:
    """The token's context with its role re-read from the stored profile."""
    ctx = _lookup(token)
    try:
        await ctx.revalidate()
    except AccessDenied:
        _sessions.pop(token, None)
        raise
    return ctx


def _order_json(order: Order) -> dict:
    return {"id": order.id, **order.to_document()}


async def _find_order(ctx: AppContext, order_id: str) -> Order:
    await ctx.refresh()
    order = ctx.snapshot.get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order not found: {order_id}")
    return order


# ── Session ──────────────────────────────────────────────────────────────────

@app.get("/api/health")
def health():
    return {"status": "ok", "backend": get_config().store_backend, "sessions": len(_sessions)}


@app.post("/api/session")
async def sign_in(body: SignInRequest):
    ctx = await AppContext.sign_in(
        get_config(), get_store(), get_identity(), body.email, body.password, follow=False
    )
    token = secrets.token_urlsafe(32)
    _sessions[token] = ctx
    return {
        "token": token,
        "uid": ctx.session.user.uid,
        "email": ctx.session.user.email,
        "display_name": ctx.session.display_name,
        "role": ctx.session.role,
    }


@app.delete("/api/session")
async def sign_out(x_session_token: Optional[str] = Header(None)):
    ctx = _lookup(x_session_token)
    _sessions.pop(x_session_token, None)
    await ctx.close()
    return {"ok": True}


# ── Dashboard ────────────────────────────────────────────────────────────────

@app.get("/api/stats")
async def stats(x_session_token: Optional[str] = Header(None)):
    ctx = await _context(x_session_token)
    result = await ctx.refresh()
    return {**result.model_dump(mode="json", by_alias=True), "has_data": result.has_data}


# ── Orders ───────────────────────────────────────────────────────────────────

@app.get("/api/orders")
async def list_orders(
    search: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    date: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    x_session_token: Optional[str] = Header(None),
):
    ctx = await _context(x_session_token)
    await ctx.refresh()
    return [_order_json(o) for o in ctx.list_orders(search, type, date)]


@app.post("/api/orders/next-number")
async def next_number(x_session_token: Optional[str] = Header(None)):
    ctx = await _context(x_session_token)
    return {"order_number": await ctx.drafts.open_new()}


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, x_session_token: Optional[str] = Header(None)):
    ctx = await _context(x_session_token)
    return _order_json(await _find_order(ctx, order_id))


@app.get("/api/orders/{order_id}/xml")
async def get_order_xml(order_id: str, x_session_token: Optional[str] = Header(None)):
    ctx = await _context(x_session_token)
    order = await _find_order(ctx, order_id)
    xml = render_order_xml(
        order, utc_now_iso(), template_file=ctx.config.config_dir / "order_template.xml.j2"
    )
    return Response(content=xml, media_type="application/xml")


@app.post("/api/orders", status_code=201)
async def create_order(form: OrderForm, x_session_token: Optional[str] = Header(None)):
    ctx = await _context(x_session_token)
    if ctx.drafts.is_editing or ctx.numbering.reserved is None:
        await ctx.drafts.open_new()
    order = await ctx.drafts.submit(ctx.session, form)
    return _order_json(order)


@app.put("/api/orders/{order_id}")
async def update_order(
    order_id: str,
    form: OrderForm,
    x_session_token: Optional[str] = Header(None),
):
    ctx = await _context(x_session_token)
    await ctx.refresh()
    ctx.drafts.open_edit(ctx.session, order_id)
    order = await ctx.drafts.submit(ctx.session, form)
    order.id = order_id
    return _order_json(order)


@app.delete("/api/orders/{order_id}")
async def delete_order(
    order_id: str,
    confirm: bool = Query(False),
    x_session_token: Optional[str] = Header(None),
):
    ctx = await _context(x_session_token)
    require_admin(ctx.session, "delete orders")
    await _find_order(ctx, order_id)
    if not await ctx.delete_order(order_id, lambda _order: confirm):
        raise HTTPException(400, "Deletion not confirmed (pass ?confirm=true)")
    return {"ok": True, "id": order_id}


# ── Users ────────────────────────────────────────────────────────────────────

@app.get("/api/users")
async def list_users(x_session_token: Optional[str] = Header(None)):
    ctx = await _context(x_session_token)
    profiles = await ctx.users.list_profiles(ctx.session)
    counts = ctx.users.counts(profiles)
    manageable = {p.uid for p in ctx.users.manageable(profiles, ctx.session)}
    return {
        "counts": {"total": counts.total, "active": counts.active, "admins": counts.admins},
        "users": [
            {**p.model_dump(mode="json"), "manageable": p.uid in manageable}
            for p in profiles
        ],
    }


@app.post("/api/users", status_code=201)
async def create_user(body: UserCreate, x_session_token: Optional[str] = Header(None)):
    ctx = await _context(x_session_token)
    require_admin(ctx.session, "register users")
    identity = ctx.identity
    if not isinstance(identity, LocalIdentityProvider):
        raise HTTPException(400, "This identity provider does not support registration")
    try:
        user: SessionUser = identity.register(body.email, body.password, body.display_name)
        profile = await ctx.users.create_profile(ctx.session, user, body.role, body.department)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return profile.model_dump(mode="json")


@app.patch("/api/users/{uid}/role")
async def change_role(uid: str, body: RoleUpdate, x_session_token: Optional[str] = Header(None)):
    ctx = await _context(x_session_token)
    try:
        await ctx.users.change_role(ctx.session, uid, body.role)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return {"ok": True, "uid": uid, "role": body.role}


@app.patch("/api/users/{uid}/active")
async def set_active(uid: str, body: ActiveUpdate, x_session_token: Optional[str] = Header(None)):
    ctx = await _context(x_session_token)
    await ctx.users.set_active(ctx.session, uid, body.active)
    return {"ok": True, "uid": uid, "active": body.active}


# ── Export ───────────────────────────────────────────────────────────────────

@app.get("/api/export.csv")
async def export_csv(x_session_token: Optional[str] = Header(None)):
    ctx = await _context(x_session_token)
    await ctx.refresh()
    try:
        text = orders_csv_text(ctx.snapshot)
    except ValueError as exc:
        raise HTTPException(404, str(exc))
    return Response(
        content=text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{default_export_filename()}"'},
    )
