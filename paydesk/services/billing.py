from typing import Dict, Any, Optional
from urllib.parse import urljoin
from flask import current_app
from stripe import StripeClient
import hashlib, json

from paydesk.models import Project, Invoice
from paydesk.services.reconciler import (
    METADATA_ENVIRONMENT_KEY,
    METADATA_INVOICE_KEY,
    METADATA_PROJECT_KEY,
)


def _client() -> StripeClient:
    key = current_app.config.get("STRIPE_SECRET_KEY")
    if not key:
        raise RuntimeError("STRIPE_SECRET_KEY is not configured")
    return StripeClient(key)


def _absolute_url(path: str) -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/") + "/"
    return urljoin(base, path.lstrip("/"))


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "checkout:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]

def _params_hash(d: Dict[str, Any]) -> str:
    # Stable across runs if params identical; changes when you change fields
    return hashlib.sha256(json.dumps(d, sort_keys=True, separators=(",", ":")).encode("utf-8")).hexdigest()[:16]


def checkout_metadata(project: Optional[Project], invoice: Optional[Invoice]) -> Dict[str, str]:
    """Correlation ids the webhook reconciler reads back from the completed session."""
    meta = {METADATA_ENVIRONMENT_KEY: current_app.config.get("STRIPE_ENVIRONMENT", "development")}
    if project is not None:
        meta[METADATA_PROJECT_KEY] = project.public_id
    if invoice is not None:
        meta[METADATA_INVOICE_KEY] = invoice.public_id
    return meta


def create_checkout_session(
    *,
    project: Optional[Project] = None,
    invoice: Optional[Invoice] = None,
    amount_minor: Optional[int] = None,
    currency: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a one-time Stripe Checkout Session paying for a project and/or invoice.
    Amount defaults to the invoice's amount_due. Metadata is mirrored onto the
    PaymentIntent so refunds and disputes can be traced back as well.
    Returns: {"id": <session_id>, "url": <redirect_url or None>}
    """
    if project is None and invoice is None:
        raise ValueError("checkout needs a project or an invoice")
    if project is None and invoice.project is not None:
        project = invoice.project

    amount = amount_minor if amount_minor is not None else (invoice.amount_due if invoice else None)
    if not amount or amount <= 0:
        raise ValueError("checkout amount must be a positive number of minor units")
    currency = (currency or (invoice.currency if invoice else None) or (project.currency if project else None)
                or current_app.config.get("DEFAULT_CURRENCY", "CAD"))

    if invoice is not None:
        label = f"Invoice {invoice.invoice_number}"
        if invoice.description:
            label += f" - {invoice.description}"
    else:
        label = project.name

    metadata = checkout_metadata(project, invoice)
    params: Dict[str, Any] = {
        "mode": "payment",
        "line_items": [{
            "quantity": 1,
            "price_data": {
                "currency": currency.lower(),
                "unit_amount": int(amount),
                "product_data": {"name": label[:250]},
            },
        }],
        "success_url": _absolute_url("payments/success?session_id={CHECKOUT_SESSION_ID}"),
        "cancel_url": _absolute_url("payments/cancelled"),
        "metadata": metadata,
        "payment_intent_data": {"metadata": metadata},
    }
    if customer_email:
        params["customer_email"] = customer_email

    # Param-aware idempotency: same project/invoice/amount -> same session
    idem = make_idempotency_key(
        "checkout", "v1",
        metadata.get(METADATA_PROJECT_KEY), metadata.get(METADATA_INVOICE_KEY), amount,
        _params_hash(params),
    )
    session = _client().checkout.sessions.create(params=params, options={"idempotency_key": idem})
    current_app.logger.info(json.dumps({
        "event": "checkout_session_created",
        "session_id": session.id,
        "project_public_id": metadata.get(METADATA_PROJECT_KEY),
        "invoice_id": metadata.get(METADATA_INVOICE_KEY),
        "amount": amount,
        "currency": currency.upper(),
    }))
    return {"id": session.id, "url": getattr(session, "url", None)}
