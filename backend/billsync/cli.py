# Overview: Flask CLI command groups for totals maintenance, cache inspection and database reset.

# backend/billsync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to billsync (PowerShell: $env:FLASK_APP="billsync").
# - Use: python -m flask <group> <command> [options]
#
# Bills:
# - python -m flask bills recalc [--bill-id <id>]
#   Recalculate stored totals for one bill (or all bills) from their products.
# - python -m flask bills check-totals
#   Report bills whose stored totals drift from their products by more than 0.01.
# - python -m flask bills grouping
#   Products grouped by bill number, plus the orphaned products.
#
# Caches:
# - python -m flask cache stats
#   Size, capacity/TTL and hit rate of every cache.
# - python -m flask cache cleanup
#   Drop expired query/analytics entries now.
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).

import click
from flask.cli import with_appcontext

from .extensions import db, get_services
from .validation import NotFoundError


@click.group('bills')
def bills_group():
    """Bill totals and grouping commands."""


@bills_group.command('recalc')
@click.option('--bill-id', default=None, help='Only this bill (default: all bills)')
@with_appcontext
def recalc_cli(bill_id):
    """Recalculate stored totals from each bill's products."""
    bills = get_services().bills
    ids = [bill_id] if bill_id else [b["id"] for b in bills.list_bills()]

    failed = 0
    for current_id in ids:
        try:
            bill = bills.recalculate_totals(current_id)
        except NotFoundError:
            click.echo(f"FAIL Bill {current_id} not found")
            failed += 1
            continue
        click.echo(
            f"PASS {bill['bill_number']:<10} products={bill['product_count']:<4} "
            f"amount={bill['total_amount']:.2f} profit={bill['total_profit']:.2f}"
        )

    click.echo(f"DONE Recalculated {len(ids) - failed} bill(s), {failed} failed.")


@bills_group.command('check-totals')
@with_appcontext
def check_totals_cli():
    """Report bills whose stored totals drift from their products."""
    bills = get_services().bills
    drifted = 0
    for bill in bills.list_bills():
        report = bills.check_totals(bill["id"])
        if report["in_sync"]:
            continue
        drifted += 1
        click.echo(f"WARN {report['bill_number']}:")
        for field, values in report["drift"].items():
            click.echo(f"   {field:<15} stored={values['stored']:.2f} computed={values['computed']:.2f}")

    if drifted:
        click.echo(f"WARN {drifted} bill(s) out of sync. Run 'python -m flask bills recalc' to fix.")
    else:
        click.echo("PASS All bill totals match their products.")


@bills_group.command('grouping')
@with_appcontext
def grouping_cli():
    """Show products grouped by bill number and list orphans."""
    grouping = get_services().products.group_products_by_bill_number()

    click.echo("\n" + "=" * 60)
    click.echo(f"{'Bill Number':<15} {'Products'}")
    click.echo("=" * 60)
    for bill_number, products in sorted(grouping["grouped"].items()):
        click.echo(f"{bill_number:<15} {len(products)}")
    click.echo("=" * 60)
    click.echo(
        f"Total: {grouping['total_products']} products, {grouping['group_count']} groups, "
        f"{len(grouping['orphaned'])} orphaned"
    )
    for product in grouping["orphaned"]:
        click.echo(f"   ORPHAN {product['id']} {product['product_name']}")


@click.group('cache')
def cache_group():
    """Cache inspection and maintenance commands."""


@cache_group.command('stats')
@with_appcontext
def cache_stats_cli():
    """Show size, capacity/TTL and hit rate for every cache."""
    stats = get_services().caches.stats()
    for name, info in stats.items():
        bound = f"max={info['max_size']}" if "max_size" in info else f"ttl={info['ttl']}s"
        click.echo(f"{name:<10} size={info['size']:<5} {bound:<12} hit_rate={info['hit_rate']:.2%}")


@cache_group.command('cleanup')
@with_appcontext
def cache_cleanup_cli():
    """Drop expired query and analytics entries."""
    removed = get_services().caches.cleanup()
    click.echo(f"Removed {removed['queries']} query and {removed['analytics']} analytics entries.")


@click.group('system')
def system_group():
    """Database maintenance commands."""


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

    get_services().reset()
    click.echo("PASS Database reset complete.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(bills_group)
    app.cli.add_command(cache_group)
    app.cli.add_command(system_group)
