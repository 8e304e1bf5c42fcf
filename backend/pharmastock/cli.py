# Overview: Flask CLI command groups for inspection and maintenance.

# backend/pharmastock/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Catalog:
# - python -m flask catalog add-product --name "Amoxicillin 500mg" --barcode 7891234567890
#   Create a product lots can be received against.
#
# Lots:
# - python -m flask lots near-expiry --days 30
#   List active lots with stock expiring within the window (expired lots included).
# - python -m flask lots verify-ledger
#   Rebuild every lot's quantities from its movements; exits non-zero on mismatch.
#
# Scan sessions:
# - python -m flask scans sweep
#   Evict expired two-scan sessions now instead of waiting for the sweeper.

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import catalog_service, lot_service, ledger_service
from .services.scan_session_service import get_scan_sessions
from .errors import StockError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('catalog')
def catalog_group():
    """Product catalog commands."""


@catalog_group.command('add-product')
@click.option('--name', required=True, help='Product display name')
@click.option('--barcode', default=None, help='Product barcode (EAN/GTIN)')
@click.option('--prescription', is_flag=True, help='Requires a prescription')
@with_appcontext
def add_product(name, barcode, prescription):
    """Create a product."""
    try:
        product = catalog_service.create_product(name=name, barcode=barcode, requires_prescription=prescription)
    except StockError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created product {product.name} (ID: {product.id}, barcode: {product.barcode or '-'})")


@click.group('lots')
def lots_group():
    """Lot inspection commands."""


@lots_group.command('near-expiry')
@click.option('--days', type=int, default=None, help='Window in days (default NEAR_EXPIRY_ALERT_DAYS)')
@with_appcontext
def near_expiry(days):
    """List lots expiring within the window."""
    if days is None:
        days = current_app.config.get("NEAR_EXPIRY_ALERT_DAYS", 30)
    try:
        lots = lot_service.list_near_expiry(days)
    except StockError as e:
        raise click.ClickException(e.message)

    if not lots:
        click.echo(f"No lots expiring within {days} day(s).")
        return

    click.echo(f"{len(lots)} lot(s) expiring within {days} day(s):")
    for lot in lots:
        click.echo(
            f"  [{lot.status(alert_days=days).value:<11}] lot {lot.id} {lot.lot_number} "
            f"product={lot.product_id} exp={lot.expiration_date.isoformat()} "
            f"current={lot.current_quantity} reserved={lot.reserved_quantity}"
        )


@lots_group.command('verify-ledger')
@with_appcontext
def verify_ledger():
    """Check every lot against the sum of its movements."""
    bad = ledger_service.find_inconsistent_lots()
    if not bad:
        click.echo("PASS Ledger matches stored quantities for every lot.")
        return

    for balance in bad:
        click.echo(
            f"FAIL lot {balance.lot_id}: stored current={balance.stored_current} reserved={balance.stored_reserved}, "
            f"ledger current={balance.ledger_current} reserved={balance.ledger_reserved}"
        )
    raise click.ClickException(f"{len(bad)} lot(s) disagree with the ledger")


@click.group('scans')
def scans_group():
    """Two-scan session commands."""


@scans_group.command('sweep')
@with_appcontext
def sweep_sessions():
    """Evict expired scan sessions."""
    removed = get_scan_sessions().sweep()
    click.echo(f"PASS Evicted {removed} expired session(s).")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(lots_group)
    app.cli.add_command(scans_group)
