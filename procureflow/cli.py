"""Flask CLI commands for scheduled and maintenance jobs."""
from __future__ import annotations

import json

import click
from flask import current_app
from flask.cli import AppGroup

from procureflow.services import escalation_service
from procureflow.services.audit_service import audit_recorder, diff_snapshots, get_matrix_version, snapshot_catalog
from procureflow.services.catalog_service import invalidate_catalog_cache
from procureflow.services.errors import ApprovalEngineError
from procureflow.services.transactions import commit_or_conflict
from procureflow.utils.helpers import parse_datetime

escalations_cli = AppGroup("escalations", help="Approval escalation jobs.")
audit_cli = AppGroup("audit", help="Audit trail maintenance.")
catalog_cli = AppGroup("catalog", help="Approval matrix versioning.")


def echo_header(title):
    click.echo(click.style(title, fg="green"))
    click.echo(click.style("-" * len(title), fg="green"))


@escalations_cli.command("sweep")
@click.option("--now", "now", default=None, help="Evaluate SLAs as of this ISO-8601 UTC timestamp.")
def sweep_escalations(now):
    """Escalate pending approval steps past their rule's escalation window."""
    try:
        as_of = parse_datetime(now, "now")
    except ApprovalEngineError as exc:
        raise click.BadParameter(exc.message, param_hint="--now")
    escalated = escalation_service.sweep(as_of)
    current_app.logger.info("Escalation sweep finished: %s escalated", len(escalated))
    click.echo(f"Escalated {len(escalated)} approval step(s).")


@audit_cli.command("retry")
def retry_audit():
    """Write audit entries that previously failed to persist."""
    pending = audit_recorder.pending_count
    written = audit_recorder.flush_pending()
    click.echo(f"Wrote {written} of {pending} pending audit entries.")
    for payload in audit_recorder.dead_letters:
        click.echo(f"Parked: {payload['action']} {payload['entity_type']}#{payload['entity_id']}", err=True)
    if audit_recorder.pending_count:
        raise click.ClickException(f"{audit_recorder.pending_count} audit entries still pending.")


@catalog_cli.command("snapshot")
@click.option("--summary", default="Manual snapshot", show_default=True, help="Change summary to record.")
def snapshot(summary):
    """Record the current approval matrix as a new version."""
    version = snapshot_catalog(change_summary=summary)
    commit_or_conflict("approval matrix")
    invalidate_catalog_cache()
    click.echo(f"Recorded approval matrix version {version.version_number}.")


@catalog_cli.command("diff")
@click.argument("old_version", type=int)
@click.argument("new_version", type=int)
def diff(old_version, new_version):
    """Show which catalog entries changed between two matrix versions."""
    try:
        old = get_matrix_version(old_version)
        new = get_matrix_version(new_version)
    except ApprovalEngineError as exc:
        raise click.ClickException(exc.message)
    echo_header(f"Approval matrix v{old_version} -> v{new_version}")
    click.echo(json.dumps(diff_snapshots(old.snapshot, new.snapshot), indent=2))


def register_commands(app) -> None:
    app.cli.add_command(escalations_cli)
    app.cli.add_command(audit_cli)
    app.cli.add_command(catalog_cli)
