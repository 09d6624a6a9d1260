"""
Management commands for deployment and maintenance
"""
import json

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services.audit_sink import get_audit_sink
from .services.catalog_service import seed_catalog
from .services.errors import LedgerError
from .services.provenance import trace_batch


@click.command('seed-catalog')
@with_appcontext
def seed_catalog_command():
    """Create the built-in statuses and event types (idempotent)"""
    try:
        created = seed_catalog()
    except Exception:
        db.session.rollback()
        raise
    click.echo(
        f"Catalog seeded: {created['statuses']} new statuses, "
        f"{created['event_types']} new event types"
    )


@click.command('trace')
@click.argument('batch_code')
@click.option('--audit/--no-audit', default=False, help='Include audit-service transactions')
@with_appcontext
def trace_command(batch_code, audit):
    """Print the traceability story for a batch code as JSON"""
    try:
        story = trace_batch(batch_code, include_audit=audit)
    except LedgerError as err:
        raise click.ClickException(err.message)
    finally:
        db.session.rollback()
    click.echo(json.dumps(story, indent=2, default=str))


@click.command('audit-health')
@with_appcontext
def audit_health_command():
    """Check that the audit service answers"""
    sink = get_audit_sink()
    if not sink.enabled:
        click.echo(f"Audit sink disabled (AUDIT_SINK_URL={current_app.config.get('AUDIT_SINK_URL')!r})")
        return
    if sink.is_healthy():
        click.echo(f"Audit sink reachable at {sink.base_url}")
        return
    raise click.ClickException(f"Audit sink at {sink.base_url} is not reachable")


def register_commands(app):
    """Register CLI commands"""
    app.cli.add_command(seed_catalog_command)
    app.cli.add_command(trace_command)
    app.cli.add_command(audit_health_command)
