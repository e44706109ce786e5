# Overview: Flask CLI command groups for bootstrap, sync inspection, and ledger maintenance.

# backend/stockroom/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init
#   Create tables and seed the default categories (idempotent).
#
# Sync queue:
# - python -m flask sync status
#   Connectivity state and queue counts; --list shows outstanding entries.
# - python -m flask sync drain
#   Replay pending/error operations now (marks the monitor online first).
# - python -m flask sync pull
#   Replace the local cache with the remote copies (only with an empty queue).
# - python -m flask sync online | offline
#   Emit a network-available / network-lost signal.
# - python -m flask sync purge --older-than-days 30
#   Delete synced queue entries older than the retention window.
#
# Ledger maintenance:
# - python -m flask ledger verify
#   List products whose cached quantity differs from the ledger.
# - python -m flask ledger rebuild [--product-id ID]
#   Reset cached quantities from the ledger.
#
# Export:
# - python -m flask movements export --output movements.csv [--kind withdrawal] [--collaborator CODE]

import click
from flask.cli import with_appcontext

from .connectivity import get_monitor
from .extensions import db
from .models import DEFAULT_CATEGORIES, Category
from .services import local_store, movement_service, sync_service
from .services.export_service import export_movements_csv


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create tables and seed default categories."""
    click.echo("START Initializing stockroom...")
    db.create_all()

    existing = {c.name for c in db.session.query(Category).all()}
    created = 0
    for name in DEFAULT_CATEGORIES:
        if name in existing:
            continue
        db.session.add(Category(id=local_store.new_temp_id(), name=name))
        created += 1
    db.session.commit()
    click.echo(f"PASS Categories: {created} created, {len(existing)} already present")
    click.echo("DONE")


@click.group('sync')
def sync_group():
    """Sync queue and connectivity commands."""


@sync_group.command('status')
@click.option('--list', 'show_list', is_flag=True, help='List outstanding operations')
@with_appcontext
def sync_status(show_list):
    snapshot = get_monitor().snapshot()
    click.echo(f"State:   {snapshot['state']}")
    click.echo(f"Pending: {sync_service.pending_count()} (errors: {sync_service.error_count()})")
    if snapshot["last_drain_at"]:
        click.echo(f"Last drain: {snapshot['last_drain_at']} {snapshot['last_result']}")
    if show_list:
        for op in sync_service.list_operations():
            if op.status == "synced":
                continue
            error = f" - {op.last_error}" if op.last_error else ""
            click.echo(f"  #{op.id} {op.kind} {op.collection} {op.record_id} [{op.status}, {op.attempts} attempts]{error}")


@sync_group.command('drain')
@with_appcontext
def sync_drain():
    """Replay the queue now."""
    monitor = get_monitor()
    result = monitor.network_available() if not monitor.is_online else monitor.sync_now()
    if result is None:
        click.echo("FAIL Drain did not run (see log)")
        raise SystemExit(1)
    click.echo(f"PASS synced={result.succeeded} failed={result.failed} skipped={result.skipped}")
    for err in result.errors:
        click.echo(f"  #{err['operation_id']}: {err['error']}")


@sync_group.command('pull')
@with_appcontext
def sync_pull():
    """Replace the local cache with the remote copies."""
    result = sync_service.pull_remote_snapshot()
    if not result["pulled"]:
        click.echo(f"FAIL Not pulled: {result['reason']}")
        raise SystemExit(1)
    for name, count in result["counts"].items():
        click.echo(f"PASS {name}: {count}")


@sync_group.command('online')
@with_appcontext
def sync_online():
    result = get_monitor().network_available()
    click.echo(f"State: {get_monitor().state.value}")
    if result is not None:
        click.echo(f"synced={result.succeeded} failed={result.failed} skipped={result.skipped}")


@sync_group.command('offline')
@with_appcontext
def sync_offline():
    get_monitor().network_lost()
    click.echo(f"State: {get_monitor().state.value}")


@sync_group.command('purge')
@click.option('--older-than-days', type=int, default=30, show_default=True)
@with_appcontext
def sync_purge(older_than_days):
    deleted = sync_service.purge_synced(older_than_days=older_than_days)
    click.echo(f"Deleted {deleted} synced operations older than {older_than_days} days.")


@click.group('ledger')
def ledger_group():
    """Ledger projection checks."""


@ledger_group.command('verify')
@with_appcontext
def ledger_verify():
    drift = movement_service.verify_projection()
    if not drift:
        click.echo("PASS Every cached quantity matches the ledger")
        return
    for row in drift:
        click.echo(f"DRIFT {row['product_id']}: cached={row['cached']:g} ledger={row['ledger']:g}")
    raise SystemExit(1)


@ledger_group.command('rebuild')
@click.option('--product-id', default=None)
@with_appcontext
def ledger_rebuild(product_id):
    changed = movement_service.rebuild_projection(product_id)
    click.echo(f"PASS {changed} product(s) updated")


@click.group('movements')
def movements_group():
    """Movement history commands."""


@movements_group.command('export')
@click.option('--output', type=click.Path(dir_okay=False, writable=True), default=None)
@click.option('--kind', default=None)
@click.option('--collaborator', 'collaborator_code', default=None)
@click.option('--period-days', type=int, default=None)
@with_appcontext
def movements_export(output, kind, collaborator_code, period_days):
    body = export_movements_csv(kind=kind, collaborator_code=collaborator_code, period_days=period_days)
    if output:
        with open(output, "w", encoding="utf-8", newline="") as fh:
            fh.write(body)
        click.echo(f"PASS Wrote {output}")
    else:
        click.echo(body, nl=False)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sync_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(movements_group)
