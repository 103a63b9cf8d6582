# Overview: Flask CLI command groups for scheduled jobs, ledger maintenance, and demo data.

# backend/marketcore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: python -m flask --app marketcore <group> <command> [options]
#
# Scheduled jobs (cron or a long-lived worker):
# - python -m flask --app marketcore jobs release-expired [--limit 500]
#   Cancel pending orders whose stock reservation expired and restore their stock.
# - python -m flask --app marketcore jobs reconcile
#   Poll the bank for every pending withdrawal and settle completed/failed ones.
# - python -m flask --app marketcore jobs run [--reap-interval 60] [--reconcile-interval 300]
#   Run both jobs in a loop at their intervals (Ctrl+C to stop).
#
# Ledger maintenance:
# - python -m flask --app marketcore ledger verify [--fix]
#   Compare cached balances with their transaction rows (and rewrite them with --fix).
# - python -m flask --app marketcore ledger settle-delivered
#   Record missing commissions, settle earnings and approve commissions the order hooks missed.
#
# Stock maintenance:
# - python -m flask --app marketcore inventory verify [--fix]
#   Compare variant products' flat stock with their variant sum (and resync with --fix).
#
# Development:
# - python -m flask --app marketcore system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask --app marketcore seed demo
#   Create a seller, a sales manager, a customer and a few products.

import logging
import time

import click
from flask.cli import with_appcontext
from flask import current_app

from .extensions import db
from .models import BalanceAccount, BalanceTransaction, Commission, Order, OrderLine, Product, ProductVariant, User
from .models.accounts import ROLE_CUSTOMER, ROLE_SALES_MANAGER, ROLE_SELLER
from .models.catalog import DELIVERY_PLATFORM, DELIVERY_SELLER
from .models.ledger import COMMISSION_PENDING, KIND_EARNING
from .models.orders import STATUS_DELIVERED, STATUS_PAID
from .services import balance_service, commission_service, inventory_service, ledger_service
from .services.reconciliation_service import reconcile_pending_transfers
from .services.reservation_service import release_expired_reservations

logger = logging.getLogger(__name__)


@click.group('jobs')
def jobs_group():
    """Scheduled background jobs."""


@jobs_group.command('release-expired')
@click.option('--limit', type=int, default=None, help='Maximum orders to release in this run')
@with_appcontext
def release_expired_command(limit):
    """Cancel expired pending orders and restore their stock."""
    summary = release_expired_reservations(limit=limit)
    click.echo(
        f"Scanned {summary['scanned']}: released {summary['released']}, "
        f"skipped {summary['skipped']}, failed {summary['failed']}"
    )


@jobs_group.command('reconcile')
@with_appcontext
def reconcile_command():
    """Settle pending bank withdrawals."""
    summary = reconcile_pending_transfers()
    click.echo(
        f"Checked {summary['checked']}: completed {summary['completed']}, failed {summary['failed']}, "
        f"pending {summary['still_pending']}, skipped {summary['skipped']}, errors {summary['errors']}"
    )


@jobs_group.command('run')
@click.option('--reap-interval', type=int, default=None, help='Seconds between reservation sweeps')
@click.option('--reconcile-interval', type=int, default=None, help='Seconds between reconciliation sweeps')
@click.option('--max-cycles', type=int, default=0, help='Stop after N loop cycles (0 = run forever)')
@with_appcontext
def run_jobs_command(reap_interval, reconcile_interval, max_cycles):
    """Run the reservation reaper and the reconciliation job in one loop."""
    reap_interval = reap_interval or current_app.config["REAP_INTERVAL_SECONDS"]
    reconcile_interval = reconcile_interval or current_app.config["RECONCILE_INTERVAL_SECONDS"]
    jobs = [
        ("release-expired", reap_interval, release_expired_reservations),
        ("reconcile", reconcile_interval, reconcile_pending_transfers),
    ]
    next_run = {name: 0.0 for name, _, _ in jobs}
    click.echo(f"Job loop started (reap every {reap_interval}s, reconcile every {reconcile_interval}s)")

    cycles = 0
    try:
        while True:
            now = time.monotonic()
            for name, interval, job in jobs:
                if now < next_run[name]:
                    continue
                try:
                    job()
                except Exception:
                    # A failing sweep must not stop the worker; the next cycle retries.
                    db.session.rollback()
                    logger.exception("Scheduled job %s failed", name)
                finally:
                    db.session.remove()
                next_run[name] = now + interval

            cycles += 1
            if max_cycles and cycles >= max_cycles:
                break
            time.sleep(max(min(next_run.values()) - time.monotonic(), 0.5))
    except KeyboardInterrupt:
        click.echo("Job loop stopped")


@click.group('ledger')
def ledger_group():
    """Balance ledger maintenance."""


@ledger_group.command('verify')
@click.option('--fix', is_flag=True, help='Rewrite drifted cached balances from transaction rows')
@with_appcontext
def verify_ledger_command(fix):
    """Compare every cached balance with its transaction rows."""
    accounts = db.session.query(BalanceAccount).order_by(BalanceAccount.id).all()
    drifted = 0
    for account in accounts:
        drift = ledger_service.repair_account(account) if fix else ledger_service.verify_account(account)
        if drift:
            drifted += 1
            click.echo(f"{'FIXED' if fix else 'DRIFT'} owner={account.owner_id} ledger={account.ledger}: {drift}")
    if fix:
        db.session.commit()

    click.echo(f"Checked {len(accounts)} account(s), {drifted} with drift")
    if drifted and not fix:
        raise SystemExit(1)


@ledger_group.command('settle-delivered')
@with_appcontext
def settle_delivered_command():
    """Settle paid/delivered orders that are missing earnings, commission rows or commission approval."""
    referred_without_commission = [
        (row[0], row[1])
        for row in db.session.query(Order.id, Order.sales_ref_code)
        .outerjoin(Commission, Commission.order_id == Order.id)
        .filter(
            Order.status.in_([STATUS_PAID, STATUS_DELIVERED]),
            Order.sales_ref_code.isnot(None),
            Commission.id.is_(None),
        )
        .order_by(Order.id)
        .all()
    ]

    failures = 0
    created_commissions = 0
    for order_id, ref_code in referred_without_commission:
        try:
            commission = commission_service.process_order_commission(order_id, ref_code)
        except Exception as e:
            failures += 1
            click.echo(f"FAIL order {order_id} commission: {e}")
            continue
        if commission is None:
            click.echo(f"WARN  Order {order_id}: ref code {ref_code!r} earns no commission, skipping...")
            continue
        created_commissions += 1
        click.echo(f"PASS order {order_id}: commission recorded ({commission.amount_cents} cents)")

    settled_lines = db.session.query(BalanceTransaction.order_line_id).filter(
        BalanceTransaction.kind == KIND_EARNING,
        BalanceTransaction.order_line_id.isnot(None),
    )
    unsettled_ids = [
        row[0]
        for row in db.session.query(Order.id)
        .join(OrderLine, OrderLine.order_id == Order.id)
        .filter(Order.status == STATUS_DELIVERED, OrderLine.id.notin_(settled_lines))
        .distinct()
        .all()
    ]
    pending_commission_ids = [
        row[0]
        for row in db.session.query(Commission.order_id)
        .join(Order, Order.id == Commission.order_id)
        .filter(Order.status == STATUS_DELIVERED, Commission.status == COMMISSION_PENDING)
        .all()
    ]

    for order_id in unsettled_ids:
        try:
            created = balance_service.accrue_earnings(order_id)
            click.echo(f"PASS order {order_id}: {len(created)} line(s) settled")
        except Exception as e:
            failures += 1
            click.echo(f"FAIL order {order_id}: {e}")
    for order_id in pending_commission_ids:
        try:
            commission_service.approve_commission(order_id)
            click.echo(f"PASS order {order_id}: commission approved")
        except Exception as e:
            failures += 1
            click.echo(f"FAIL order {order_id} commission: {e}")

    click.echo(
        f"Recorded {created_commissions} commission(s), settled {len(unsettled_ids)} order(s), "
        f"approved {len(pending_commission_ids)} commission(s), {failures} failure(s)"
    )


@click.group('inventory')
def inventory_group():
    """Stock maintenance."""


@inventory_group.command('verify')
@click.option('--fix', is_flag=True, help='Resync drifted flat stock from variant rows')
@with_appcontext
def verify_inventory_command(fix):
    """Compare each variant product's flat stock with the sum of its variants."""
    drifted = inventory_service.flat_stock_drift()
    for product_id, flat, variant_sum in drifted:
        if fix:
            inventory_service.resync_flat_stock(product_id)
            click.echo(f"FIXED product={product_id}: {flat} -> {variant_sum}")
        else:
            click.echo(f"DRIFT product={product_id}: flat {flat}, variants {variant_sum}")

    click.echo(f"{len(drifted)} product(s) with drift")
    if drifted and not fix:
        raise SystemExit(1)


@click.group('system')
def system_group():
    """Database bootstrap commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("Refusing to reset without --yes")
        raise SystemExit(1)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


@click.group('seed')
def seed_group():
    """Demo data."""


@seed_group.command('demo')
@with_appcontext
def seed_demo():
    """Create demo users and products (idempotent by email)."""
    def _user(email, name, role, **fields):
        user = db.session.query(User).filter_by(email=email).first()
        if user:
            click.echo(f"WARN  User '{email}' already exists, skipping...")
            return user
        user = User(email=email, name=name, role=role, **fields)
        db.session.add(user)
        db.session.flush()
        click.echo(f"PASS Created user: {email} ({role})")
        return user

    seller = _user(
        "seller@marketcore.local", "Demo Seller", ROLE_SELLER,
        account_number="GE29NB0000000101904917",
        identification_number="01001000001",
        beneficiary_bank_code=current_app.config["BANK_DEFAULT_BANK_CODE"],
    )
    manager = _user(
        "manager@marketcore.local", "Demo Sales Manager", ROLE_SALES_MANAGER,
        account_number="GE60BG0000000123456789",
        identification_number="01001000002",
    )
    _user("customer@marketcore.local", "Demo Customer", ROLE_CUSTOMER)
    db.session.commit()

    code = commission_service.generate_ref_code(manager.id)
    click.echo(f"PASS Sales manager referral code: {code}")

    if db.session.query(Product).filter_by(seller_id=seller.id).count() == 0:
        painting = Product(
            seller_id=seller.id, name="Oil Painting", price_cents=25000,
            count_in_stock=3, delivery_type=DELIVERY_PLATFORM,
            min_delivery_days=1, max_delivery_days=3,
        )
        shirt = Product(
            seller_id=seller.id, name="Printed T-Shirt", price_cents=4500,
            delivery_type=DELIVERY_SELLER, min_delivery_days=2, max_delivery_days=5,
        )
        for size in ("S", "M", "L"):
            shirt.variants.append(ProductVariant(size=size, color="Black", age_group="ADULTS", stock=5))
        shirt.sync_flat_stock()
        db.session.add_all([painting, shirt])
        db.session.commit()
        click.echo(f"PASS Created products: {painting.id}, {shirt.id}")
    else:
        click.echo("WARN  Seller already has products, skipping...")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(jobs_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(system_group)
    app.cli.add_command(seed_group)
