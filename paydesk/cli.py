import json

import click
from flask import current_app
from flask.cli import with_appcontext

from paydesk.errors import VaultKeyError
from paydesk.extensions import db
from paydesk.models import Invoice, PaymentEvent, Project, RecordStatus
from paydesk.services import vault

@click.group("vault")
def vault_group():
    """Field-encryption key management."""

@vault_group.command("generate-key")
def vault_generate_key():
    # Fresh base64 256-bit master key; set it as ENCRYPTION_KEY
    click.echo(vault.generate_key())

@vault_group.command("status")
@with_appcontext
def vault_status():
    try:
        vault.Vault(current_app.config.get("ENCRYPTION_KEY"))
    except VaultKeyError as exc:
        raise click.ClickException(f"Encryption key not usable: {exc}")
    click.echo("Encryption key OK (AES-256-GCM)")

@click.group()
def payments():
    """Payment reconciliation ops."""

@payments.command("unmatched")
@click.option("--limit", type=int, default=50, show_default=True)
@with_appcontext
def payments_unmatched(limit):
    """List events that need a human: UNMATCHED and DISPUTE records, newest first."""
    rows = (
        db.session.query(PaymentEvent)
        .filter(PaymentEvent.status.in_((RecordStatus.UNMATCHED.value, RecordStatus.DISPUTE.value)))
        .order_by(PaymentEvent.created_at.desc(), PaymentEvent.id.desc())
        .limit(limit)
        .all()
    )
    if not rows:
        click.echo("Nothing to review")
        return
    for row in rows:
        click.echo(
            f"{row.created_at:%Y-%m-%d %H:%M} {row.status:<9} {row.event_type:<28} "
            f"{row.event_id} {row.error_message or ''}".rstrip()
        )
        if row.details:
            click.echo(f"    {json.dumps(row.details, sort_keys=True, default=str)}")

@payments.command("checkout-link")
@click.option("--project", "project_public_id", help="Project public id")
@click.option("--invoice", "invoice_public_id", help="Invoice public id")
@click.option("--amount", type=int, help="Amount in minor units (defaults to the invoice amount due)")
@click.option("--currency", default=None)
@with_appcontext
def payments_checkout_link(project_public_id, invoice_public_id, amount, currency):
    from paydesk.services.billing import create_checkout_session

    if not project_public_id and not invoice_public_id:
        raise click.ClickException("Pass --project and/or --invoice")

    project = invoice = None
    if project_public_id:
        project = db.session.query(Project).filter_by(public_id=project_public_id).one_or_none()
        if not project:
            raise click.ClickException(f"Project {project_public_id} not found")
    if invoice_public_id:
        invoice = db.session.query(Invoice).filter_by(public_id=invoice_public_id).one_or_none()
        if not invoice:
            raise click.ClickException(f"Invoice {invoice_public_id} not found")

    try:
        session = create_checkout_session(project=project, invoice=invoice, amount_minor=amount, currency=currency)
    except ValueError as exc:
        raise click.ClickException(str(exc))
    click.echo(f"Checkout session {session['id']}: {session['url']}")

@click.group()
def leads():
    """Lead intake ops."""

@leads.command("lookup")
@click.argument("email")
@with_appcontext
def leads_lookup(email):
    """Show leads for an email address. Every lead shown is audited as LEAD_VIEWED."""
    from paydesk.services.audit import AuditEvent, log_audit_event
    from paydesk.services.leads import find_leads_by_email

    found = find_leads_by_email(email)
    if not found:
        click.echo("No leads for that address")
        return
    for lead in found:
        log_audit_event(
            AuditEvent.LEAD_VIEWED,
            ip="cli",
            success=True,
            resource_type="LEAD",
            resource_id=lead["id"],
            details={"via": "flask leads lookup"},
        )
        spam = " [spam]" if lead["is_spam"] else ""
        click.echo(f"#{lead['id']} {lead['created_at']:%Y-%m-%d} {lead['name'] or '-'} <{lead['email']}> {lead['service'] or ''}{spam}".rstrip())

def register_cli(app):
    app.cli.add_command(vault_group)
    app.cli.add_command(payments)
    app.cli.add_command(leads)
