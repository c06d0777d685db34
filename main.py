#!/usr/bin/env python3
"""
Purchase Order Panel — CLI entry point.

Usage examples:
  python main.py init                                   # Create directories and the store schema
  python main.py users add boss@acme.co --role admin    # Bootstrap the first admin
  python main.py users list                             # Admin: list profiles
  python main.py users role <uid> admin --yes           # Admin: change a role

  python main.py orders next                            # Reserve and show the next number
  python main.py orders create --supplier "ACME" --item "Bolts:10:2500" --tax 19
  python main.py orders list --search acme --date 2026-10-18
  python main.py orders show <id> --xml
  python main.py orders delete <id> --yes               # Admin

  python main.py dashboard                              # Spend statistics
  python main.py export                                 # CSV of every order
  python main.py serve --port 8080                      # JSON API

Credentials come from --email / --password or PANEL_EMAIL / PANEL_PASSWORD.
"""
import asyncio
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import click

from config import Config
from dashboard.services.export import default_export_filename, render_order_xml, write_orders_csv
from models.order import ItemForm, Order, OrderForm, OrgInfo, utc_now_iso
from models.user import ALL_ROLES, ROLE_ADMIN, ROLE_USER
from procurement.context import AppContext, build_identity, build_store
from procurement.errors import PanelError
from procurement.role_gate import require_admin
from procurement.user_admin import UserAdministration

T = TypeVar("T")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def _fail(message: str) -> None:
    click.secho(f"✗ {message}", fg="red", err=True)
    sys.exit(1)


def _run(config: Config, email: Optional[str], password: Optional[str],
         fn: Callable[[AppContext], Awaitable[T]]) -> T:
    """Sign in, run `fn` with the session context, always tear down."""
    async def main() -> T:
        store = build_store(config)
        try:
            ctx = await AppContext.sign_in(
                config, store, build_identity(config), email or "", password or "", follow=False
            )
            try:
                return await fn(ctx)
            finally:
                await ctx.close()
        finally:
            await store.close()

    try:
        return asyncio.run(main())
    except PanelError as exc:
        _fail(str(exc))


def _credentials(f):
    f = click.option(
        "--password", envvar="PANEL_PASSWORD", prompt=True, hide_input=True,
        help="Password (or PANEL_PASSWORD)",
    )(f)
    f = click.option(
        "--email", envvar="PANEL_EMAIL", prompt=True, help="Sign-in email (or PANEL_EMAIL)",
    )(f)
    return f


def _parse_item(text: str) -> ItemForm:
    """'Description:quantity:unit_price' (the description may itself contain colons)."""
    parts = text.rsplit(":", 2)
    if len(parts) != 3:
        raise click.BadParameter(f"Expected DESCRIPTION:QTY:PRICE, got {text!r}", param_hint="--item")
    description, quantity, unit_price = parts
    try:
        return ItemForm(description=description, quantity=float(quantity), unit_price=float(unit_price))
    except ValueError:
        raise click.BadParameter(f"Quantity and price must be numbers in {text!r}", param_hint="--item")


def _money(value: float) -> str:
    return f"${value:,.2f}"


def _print_order(order: Order) -> None:
    click.echo(f"\n  Order #{order.order_number}   ({order.id})")
    click.echo(f"  Date:       {order.date or '(none)'}")
    click.echo(f"  Supplier:   {order.supplier.name or '(none)'}  {order.supplier.tax_id}")
    click.echo(f"  Type:       {order.expense_type or '(none)'}")
    click.echo(f"  Status:     {order.status}")
    if order.created_by:
        click.echo(f"  Created by: {order.created_by.email}")
    click.echo()
    for item in order.items:
        click.echo(
            f"    {item.sequence:>3}. {item.description:<36} "
            f"{item.quantity:>8g} x {_money(item.unit_price):>14} = {_money(item.line_total):>14}"
        )
    t = order.totals
    click.echo()
    click.echo(f"  Subtotal:             {_money(t.subtotal):>16}")
    click.echo(f"  Tax ({t.tax_percent:g}%):".ljust(24) + f"{_money(t.tax_value):>16}")
    click.echo(f"  Income withholding:   {_money(t.withholding_income):>16}")
    click.echo(f"  Turnover withholding: {_money(t.withholding_turnover):>16}")
    click.echo(f"  Total:                {_money(t.grand_total):>16}")
    if order.notes:
        click.echo(f"\n  Notes: {order.notes}")
    click.echo()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Purchase Order Panel — orders, users and spend statistics."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = Config()
    _setup_logging(verbose)


# --------------------------------------------------------------------
# init command
# --------------------------------------------------------------------

@cli.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the data directories and the store schema."""
    config: Config = ctx.obj["config"]
    config.ensure_dirs()

    async def main() -> None:
        await build_store(config).close()

    asyncio.run(main())
    click.echo(f"  Store backend:   {config.store_backend}")
    if config.store_backend == "sqlite":
        click.echo(f"  Database:        {config.db_path}")
    click.echo(f"  Identities:      {config.identities_file}")
    click.echo("\n✓ Ready. Register the first admin with: python main.py users add EMAIL --role admin")


# --------------------------------------------------------------------
# users commands
# --------------------------------------------------------------------

@cli.group()
def users() -> None:
    """Manage panel users (admin)."""


@users.command("add")
@click.argument("new_email")
@click.option("--new-password", prompt=True, hide_input=True, confirmation_prompt=True,
              help="Password for the new user")
@click.option("--name", default=None, help="Display name")
@click.option("--role", type=click.Choice(sorted(ALL_ROLES)), default=ROLE_USER, show_default=True)
@click.option("--department", default=None, help="Area / department")
@click.option("--email", envvar="PANEL_EMAIL", default=None, help="Admin email (not needed for the first admin)")
@click.option("--password", envvar="PANEL_PASSWORD", default=None, help="Admin password")
@click.pass_context
def users_add(ctx: click.Context, new_email: str, new_password: str, name: Optional[str],
              role: str, department: Optional[str], email: Optional[str],
              password: Optional[str]) -> None:
    """Register an identity and its profile."""
    config: Config = ctx.obj["config"]
    config.ensure_dirs()

    async def main():
        store = build_store(config)
        identity = build_identity(config)
        admin_ctx: Optional[AppContext] = None
        try:
            admin = UserAdministration(store, config.users_path)
            bootstrap = role == ROLE_ADMIN and not await admin.has_admin()
            if not bootstrap:
                if not email:
                    raise click.UsageError("Sign in as an admin (--email / --password) to register users")
                admin_ctx = await AppContext.sign_in(
                    config, store, identity, email, password or "", follow=False
                )
                require_admin(admin_ctx.session, "register users")
            user = identity.register(new_email, new_password, name)
            return await admin.create_profile(
                admin_ctx.session if admin_ctx else None, user, role, department
            )
        finally:
            if admin_ctx is not None:
                await admin_ctx.close()
            await store.close()

    try:
        profile = asyncio.run(main())
    except (PanelError, ValueError) as exc:
        _fail(str(exc))
    click.echo(f"✓ Registered {profile.email} as {profile.role} (uid {profile.uid})")


@users.command("list")
@_credentials
@click.pass_context
def users_list(ctx: click.Context, email: str, password: str) -> None:
    """List every profile, most recently registered first."""
    async def main(app: AppContext):
        profiles = await app.users.list_profiles(app.session)
        return profiles, app.users.counts(profiles)

    profiles, counts = _run(ctx.obj["config"], email, password, main)
    click.echo(f"\n  {counts.total} users — {counts.active} active, {counts.admins} admins\n")
    for p in profiles:
        status = "active" if p.is_active else "INACTIVE"
        click.echo(
            f"  {p.uid:<30} {p.email:<32} {p.effective_role:<6} {status:<9} "
            f"{p.department or '':<16} {p.registered_at or ''}"
        )
    click.echo()


@users.command("role")
@click.argument("uid")
@click.argument("role", type=click.Choice(sorted(ALL_ROLES)))
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@_credentials
@click.pass_context
def users_role(ctx: click.Context, uid: str, role: str, yes: bool, email: str, password: str) -> None:
    """Change a user's role."""
    def confirm(profile) -> bool:
        return yes or click.confirm(f"Change role of {profile.email} to {role}?")

    async def main(app: AppContext):
        return await app.users.change_role(app.session, uid, role, confirm)

    if _run(ctx.obj["config"], email, password, main):
        click.echo(f"✓ Role updated to {role}")
    else:
        click.echo("Cancelled.")


def _set_active(ctx: click.Context, uid: str, active: bool, yes: bool, email: str, password: str) -> None:
    verb = "activate" if active else "deactivate"

    def confirm(profile) -> bool:
        return yes or click.confirm(f"{verb.capitalize()} {profile.email}?")

    async def main(app: AppContext):
        return await app.users.set_active(app.session, uid, active, confirm)

    if _run(ctx.obj["config"], email, password, main):
        click.echo(f"✓ User {verb}d")
    else:
        click.echo("Cancelled.")


@users.command("activate")
@click.argument("uid")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@_credentials
@click.pass_context
def users_activate(ctx: click.Context, uid: str, yes: bool, email: str, password: str) -> None:
    """Re-enable a user's access."""
    _set_active(ctx, uid, True, yes, email, password)


@users.command("deactivate")
@click.argument("uid")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@_credentials
@click.pass_context
def users_deactivate(ctx: click.Context, uid: str, yes: bool, email: str, password: str) -> None:
    """Block a user's access (they are signed out on their next session)."""
    _set_active(ctx, uid, False, yes, email, password)


# --------------------------------------------------------------------
# orders commands
# --------------------------------------------------------------------

@cli.group()
def orders() -> None:
    """Create, list, edit and delete purchase orders."""


def _order_options(f):
    options = [
        click.option("--supplier", default=None, help="Supplier name"),
        click.option("--nit", default=None, help="Supplier tax id"),
        click.option("--address", default=None, help="Supplier address"),
        click.option("--phone", default=None, help="Supplier phone"),
        click.option("--supplier-email", default=None, help="Supplier email"),
        click.option("--item", "items", multiple=True, help="DESCRIPTION:QTY:PRICE (repeatable)"),
        click.option("--tax", type=float, default=None, help="Tax percent (default from config)"),
        click.option("--retefuente", type=float, default=None, help="Income withholding"),
        click.option("--reteica", type=float, default=None, help="Turnover withholding"),
        click.option("--type", "expense_type", default=None, help="Expense type"),
        click.option("--notes", default=None, help="Notes"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _apply_options(form: OrderForm, supplier, nit, address, phone, supplier_email,
                   items, tax, retefuente, reteica, expense_type, notes) -> OrderForm:
    """Overlay the options that were given onto `form`."""
    changes = {
        "name": supplier, "tax_id": nit, "address": address,
        "phone": phone, "email": supplier_email,
    }
    org = form.supplier.model_copy(update={k: v for k, v in changes.items() if v is not None})
    update = {"supplier": org}
    if items:
        update["items"] = [_parse_item(text) for text in items]
    if tax is not None:
        update["tax_percent"] = tax
    if retefuente is not None:
        update["withholding_income"] = retefuente
    if reteica is not None:
        update["withholding_turnover"] = reteica
    if expense_type is not None:
        update["expense_type"] = expense_type
    if notes is not None:
        update["notes"] = notes
    return form.model_copy(update=update)


@orders.command("next")
@_credentials
@click.pass_context
def orders_next(ctx: click.Context, email: str, password: str) -> None:
    """Reserve the next order number."""
    async def main(app: AppContext):
        return await app.drafts.open_new()

    number = _run(ctx.obj["config"], email, password, main)
    click.echo(f"Next order number: {number}")


@orders.command("create")
@_order_options
@_credentials
@click.pass_context
def orders_create(ctx: click.Context, email: str, password: str, **options) -> None:
    """Create a new order."""
    form = _apply_options(OrderForm(supplier=OrgInfo()), **options)

    async def main(app: AppContext):
        await app.drafts.open_new()
        return await app.drafts.submit(app.session, form)

    order = _run(ctx.obj["config"], email, password, main)
    click.echo(f"✓ Created order #{order.order_number} ({order.id}) — total {_money(order.totals.grand_total)}")


@orders.command("edit")
@click.argument("order_id")
@_order_options
@_credentials
@click.pass_context
def orders_edit(ctx: click.Context, order_id: str, email: str, password: str, **options) -> None:
    """Replace fields of an existing order (admin). Unset options keep their value."""
    async def main(app: AppContext):
        form = app.drafts.open_edit(app.session, order_id)
        return await app.drafts.submit(app.session, _apply_options(form, **options))

    order = _run(ctx.obj["config"], email, password, main)
    click.echo(f"✓ Updated order #{order.order_number} — total {_money(order.totals.grand_total)}")


@orders.command("list")
@click.option("--search", "-s", default=None, help="Supplier, number or type contains")
@click.option("--type", "expense_type", default=None, help="Exact expense type")
@click.option("--date", default=None, type=click.DateTime(formats=["%Y-%m-%d"]), help="YYYY-MM-DD")
@_credentials
@click.pass_context
def orders_list(ctx: click.Context, search, expense_type, date, email: str, password: str) -> None:
    """List orders, newest first."""
    async def main(app: AppContext):
        return app.list_orders(search, expense_type, date.date() if date else None)

    found = _run(ctx.obj["config"], email, password, main)
    if not found:
        click.echo("No orders found.")
        return
    click.echo()
    for o in found:
        parsed = o.parsed_date
        click.echo(
            f"  #{o.order_number!s:<6} {parsed.strftime('%Y-%m-%d') if parsed else 'N/A':<10}  "
            f"{(o.supplier.name or 'N/A')[:32]:<32} {o.expense_type or '':<14} "
            f"{_money(o.totals.grand_total):>16}  {o.id}"
        )
    click.echo(f"\n  {len(found)} orders")


@orders.command("show")
@click.argument("order_id")
@click.option("--xml", "as_xml", is_flag=True, help="Print the XML export document instead")
@_credentials
@click.pass_context
def orders_show(ctx: click.Context, order_id: str, as_xml: bool, email: str, password: str) -> None:
    """Show one order."""
    async def main(app: AppContext):
        return app.snapshot.get(order_id)

    config: Config = ctx.obj["config"]
    order = _run(config, email, password, main)
    if order is None:
        _fail(f"Order not found: {order_id}")
    if as_xml:
        click.echo(render_order_xml(order, utc_now_iso(), config.config_dir / "order_template.xml.j2"))
    else:
        _print_order(order)


@orders.command("delete")
@click.argument("order_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@_credentials
@click.pass_context
def orders_delete(ctx: click.Context, order_id: str, yes: bool, email: str, password: str) -> None:
    """Delete an order (admin). Its number is not reused."""
    def confirm(order) -> bool:
        if order is None:
            return False
        return yes or click.confirm(f"Delete order #{order.order_number}?")

    async def main(app: AppContext):
        return await app.delete_order(order_id, confirm)

    if _run(ctx.obj["config"], email, password, main):
        click.echo("✓ Order deleted")
    else:
        click.echo("Nothing deleted.")


# --------------------------------------------------------------------
# dashboard / export / serve
# --------------------------------------------------------------------

@cli.command()
@_credentials
@click.pass_context
def dashboard(ctx: click.Context, email: str, password: str) -> None:
    """Print spend statistics."""
    async def main(app: AppContext):
        return app.stats

    stats = _run(ctx.obj["config"], email, password, main)
    click.echo("\n=== Purchase Orders ===\n")
    click.echo(f"  Orders:          {stats.total_orders}")
    click.echo(f"  Total spend:     {_money(stats.total_amount)}")
    click.echo(f"  Average order:   {_money(stats.avg_amount)}")

    click.echo("\n  By expense type:")
    if not stats.by_type:
        click.echo("    (no data)")
    for kind, count in sorted(stats.by_type.items(), key=lambda kv: -kv[1]):
        click.echo(f"    {kind:<16} {count}")

    click.echo("\n  Monthly spend:")
    if not stats.has_data:
        click.echo("    (no data)")
    else:
        for bucket in stats.monthly_series:
            click.echo(f"    {bucket.label:<10} {_money(bucket.total):>16}")

    click.echo("\n  Recent orders:")
    if not stats.recent:
        click.echo("    (no orders yet)")
    for o in stats.recent:
        click.echo(f"    #{o.order_number!s:<6} {(o.supplier.name or 'N/A')[:32]:<32} {_money(o.totals.grand_total):>16}")
    click.echo()


@cli.command()
@click.argument("destination", type=click.Path(), required=False)
@_credentials
@click.pass_context
def export(ctx: click.Context, destination: Optional[str], email: str, password: str) -> None:
    """Write every order to a CSV file."""
    config: Config = ctx.obj["config"]
    path = Path(destination) if destination else config.export_dir / default_export_filename()

    async def main(app: AppContext):
        return app.snapshot

    snapshot = _run(config, email, password, main)
    try:
        count = write_orders_csv(snapshot, path)
    except ValueError as exc:
        _fail(str(exc))
    click.echo(f"✓ Exported {count} orders to {path}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, type=int, show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start the JSON API."""
    import uvicorn

    from dashboard import app as api

    api.configure(ctx.obj["config"])
    click.echo(f"Starting API on http://{host}:{port}/api/health")
    click.echo("Press Ctrl-C to stop.\n")
    uvicorn.run(api.app, host=host, port=port)


if __name__ == "__main__":
    cli()
