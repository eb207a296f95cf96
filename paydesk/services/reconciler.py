"""
Payment state machine: verified, de-duplicated Stripe events -> project/invoice state.

    UNPAID -> PAID -> {PARTIALLY_REFUNDED, REFUNDED}
    PAID | PARTIALLY_REFUNDED | REFUNDED -> DISPUTED   (flag for operator attention)

Every transition is a conditional UPDATE ("... WHERE status IN (allowed)") issued
in the same transaction as the ledger insert, so two racing deliveries converge
on one applied transition and one payment_events row. Notifications go out only
after commit.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from paydesk.errors import DuplicateEvent, TransientPersistenceError, UnmatchedResource
from paydesk.models import Invoice, InvoiceStatus, PaymentStatus, Project, RecordStatus
from paydesk.models.enums import DISPUTABLE_FROM, REFUNDABLE_FROM
from paydesk.observability import structured
from paydesk.services import notifier as notices
from paydesk.services.ledger import EventLedger
from paydesk.services.webhook_verifier import EventType, PaymentEvent
from paydesk.utils.validators import email_domain

logger = logging.getLogger(__name__)

# Correlation keys embedded in checkout metadata (see services.billing)
METADATA_PROJECT_KEY = "project_public_id"
METADATA_INVOICE_KEY = "invoice_id"
METADATA_ENVIRONMENT_KEY = "environment"

_PAYABLE_INVOICE_STATES = (InvoiceStatus.DRAFT.value, InvoiceStatus.SENT.value)


@dataclass
class ReconciliationOutcome:
    # success | skipped | unmatched | logged | failed | already_processed | unhandled | wrong_environment
    status: str
    event_id: str
    event_type: str
    record_status: Optional[str] = None
    project_id: Optional[int] = None
    invoice_id: Optional[int] = None
    detail: Optional[str] = None
    notification: Optional[notices.Notification] = field(default=None, repr=False)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"received": True, "status": self.status}
        if self.project_id is not None:
            body["project_id"] = self.project_id
        if self.invoice_id is not None:
            body["invoice_id"] = self.invoice_id
        return body


def _id_of(value) -> Optional[str]:
    """Stripe expandable field: either an id string or an object with an id."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentReconciler:
    def __init__(
        self,
        session,
        notifier,
        *,
        environment: str = "development",
        dashboard_url: str = "",
        default_currency: str = "CAD",
        ledger: Optional[EventLedger] = None,
    ):
        self.session = session
        self.notifier = notifier
        self.environment = environment
        self.dashboard_url = dashboard_url or ""
        self.default_currency = default_currency
        self.ledger = ledger or EventLedger(session)
        self._handlers = {
            EventType.CHECKOUT_COMPLETED: self._checkout_completed,
            EventType.CHECKOUT_EXPIRED: self._checkout_expired,
            EventType.PAYMENT_FAILED: self._payment_failed,
            EventType.CHARGE_REFUNDED: self._charge_refunded,
            EventType.DISPUTE_CREATED: self._dispute_created,
        }

    # ---- entry point ----

    def reconcile(self, event: PaymentEvent) -> ReconciliationOutcome:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info(structured("reconcile.unhandled", event_id=event.event_id, event_type=event.type_name))
            return self._outcome(event, "unhandled")

        try:
            outcome = handler(event)
            self.session.commit()
        except DuplicateEvent:
            return self._outcome(event, "already_processed")
        except IntegrityError as exc:
            # Lost a race on commit; the winner's row is the record of truth
            self.session.rollback()
            if self._processed_after_rollback(event):
                return self._outcome(event, "already_processed")
            raise TransientPersistenceError(f"persisting {event.type_name} failed") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(structured("reconcile.persist_failed", event_id=event.event_id, event_type=event.type_name, error=type(exc).__name__))
            raise TransientPersistenceError(f"persisting {event.type_name} failed") from exc
        except Exception as exc:
            # A handler bug on one event's payload; redelivery would fail the same way
            self.session.rollback()
            logger.exception(structured("reconcile.handler_error", event_id=event.event_id, event_type=event.type_name))
            outcome = self._record_handler_failure(event, exc)

        self._log_outcome(outcome)
        if outcome.notification is not None:
            self.notifier.notify(outcome.notification)
        return outcome

    def _record_handler_failure(self, event: PaymentEvent, exc: Exception) -> ReconciliationOutcome:
        try:
            self.ledger.record(event, RecordStatus.FAILED, {"handler_error": type(exc).__name__},
                               error_message=f"handler_error:{type(exc).__name__}", commit=True)
        except DuplicateEvent:
            return self._outcome(event, "already_processed")
        except SQLAlchemyError as db_exc:
            self.session.rollback()
            raise TransientPersistenceError(f"persisting {event.type_name} failed") from db_exc
        return self._outcome(event, "failed", RecordStatus.FAILED, detail=type(exc).__name__)

    def _processed_after_rollback(self, event: PaymentEvent) -> bool:
        try:
            return self.ledger.is_event_processed(event.event_id)
        except SQLAlchemyError as exc:
            raise TransientPersistenceError("ledger unavailable") from exc

    # ---- handlers ----

    def _checkout_completed(self, event: PaymentEvent) -> ReconciliationOutcome:
        obj = event.data_object
        meta = event.metadata

        env = meta.get(METADATA_ENVIRONMENT_KEY)
        if env and env != self.environment:
            return self._outcome(event, "wrong_environment", detail=f"event for {env}, running {self.environment}")

        project_public_id = meta.get(METADATA_PROJECT_KEY)
        invoice_public_id = meta.get(METADATA_INVOICE_KEY)
        amount = obj.get("amount_total")
        currency = (obj.get("currency") or self.default_currency).upper()
        customer_email = obj.get("customer_email") or (obj.get("customer_details") or {}).get("email")
        snapshot = {
            "session_id": obj.get("id"),
            "payment_intent_id": _id_of(obj.get("payment_intent")),
            "amount_total": amount,
            "currency": currency,
            "customer_email_domain": email_domain(customer_email),
            "project_public_id": project_public_id,
            "invoice_id": invoice_public_id,
        }

        if not project_public_id:
            if invoice_public_id:
                return self._invoice_only_payment(event, invoice_public_id, snapshot)
            return self._unmatched(event, "Missing project_public_id in session metadata", snapshot)

        try:
            project = self._require_project(project_public_id)
        except UnmatchedResource as exc:
            return self._unmatched(event, exc.reason, snapshot)

        now = _utcnow()
        applied = self._transition(
            Project, project.id, Project.payment_status, (PaymentStatus.UNPAID.value,),
            payment_status=PaymentStatus.PAID.value,
            paid_at=now,
            stripe_checkout_session_id=snapshot["session_id"],
            stripe_payment_intent_id=snapshot["payment_intent_id"],
            amount_paid=amount,
            currency=currency,
        )
        if not applied:
            # A different event already confirmed this project: record, but never re-count
            reason = "already paid" if project.payment_status == PaymentStatus.PAID.value else f"status is {project.payment_status}"
            self.ledger.record(event, RecordStatus.SUCCESS, {**snapshot, "skipped": True, "reason": reason}, project_id=project.id)
            return self._outcome(event, "skipped", RecordStatus.SUCCESS, project_id=project.id, detail=reason)

        invoice = self._mark_invoice_paid(invoice_public_id, now) if invoice_public_id else None
        self.ledger.record(
            event, RecordStatus.SUCCESS, snapshot,
            project_id=project.id,
            invoice_id=invoice.id if invoice else None,
        )
        notification = None
        if amount:
            notification = notices.payment_received(
                amount, currency, project.name, project_id=project.id, dashboard_url=self.dashboard_url,
            )
        return self._outcome(
            event, "success", RecordStatus.SUCCESS,
            project_id=project.id,
            invoice_id=invoice.id if invoice else None,
            notification=notification,
        )

    def _invoice_only_payment(self, event: PaymentEvent, invoice_public_id: str, snapshot: Dict[str, Any]) -> ReconciliationOutcome:
        invoice = self.session.query(Invoice).filter_by(public_id=invoice_public_id).first()
        if invoice is None:
            return self._unmatched(event, f"No invoice with id {invoice_public_id}", snapshot)

        applied = self._transition(
            Invoice, invoice.id, Invoice.status, _PAYABLE_INVOICE_STATES,
            status=InvoiceStatus.PAID.value,
            paid_at=_utcnow(),
        )
        if not applied:
            reason = f"invoice status is {invoice.status}"
            self.ledger.record(event, RecordStatus.SUCCESS, {**snapshot, "skipped": True, "reason": reason}, invoice_id=invoice.id)
            return self._outcome(event, "skipped", RecordStatus.SUCCESS, invoice_id=invoice.id, detail=reason)

        self.ledger.record(
            event, RecordStatus.SUCCESS, {**snapshot, "note": "Invoice paid without linked project"},
            invoice_id=invoice.id,
        )
        notification = None
        if snapshot["amount_total"]:
            notification = notices.payment_received(
                snapshot["amount_total"], snapshot["currency"], f"Invoice {invoice.invoice_number}",
                dashboard_url=self.dashboard_url,
            )
        return self._outcome(event, "success", RecordStatus.SUCCESS, invoice_id=invoice.id, notification=notification)

    def _checkout_expired(self, event: PaymentEvent) -> ReconciliationOutcome:
        obj = event.data_object
        self.ledger.record(event, RecordStatus.SUCCESS, {
            "session_id": obj.get("id"),
            "project_public_id": event.metadata.get(METADATA_PROJECT_KEY),
            "reason": "Session expired before completion",
        })
        return self._outcome(event, "logged", RecordStatus.SUCCESS)

    def _payment_failed(self, event: PaymentEvent) -> ReconciliationOutcome:
        obj = event.data_object
        last_error = obj.get("last_payment_error") or {}
        self.ledger.record(
            event, RecordStatus.FAILED,
            {
                "payment_intent_id": obj.get("id"),
                "error_code": last_error.get("code"),
                "error_type": last_error.get("type"),
            },
            error_message=last_error.get("message") or "Payment failed",
        )
        return self._outcome(event, "logged", RecordStatus.FAILED)

    def _charge_refunded(self, event: PaymentEvent) -> ReconciliationOutcome:
        charge = event.data_object
        refunded = charge.get("amount_refunded") or 0
        original = charge.get("amount") or 0
        # Stripe's own flag; amounts are ambiguous across several partial refunds
        is_full = bool(charge.get("refunded"))
        currency = (charge.get("currency") or self.default_currency).upper()
        payment_intent_id = _id_of(charge.get("payment_intent"))
        snapshot = {
            "charge_id": charge.get("id"),
            "payment_intent_id": payment_intent_id,
            "amount_refunded": refunded,
            "amount": original,
            "currency": currency,
            "refund_type": "full" if is_full else "partial",
        }

        project = self._project_by_payment_intent(payment_intent_id)
        notification = notices.refund_processed(
            refunded, currency, project.name if project else "Unknown Project",
            is_partial=not is_full,
            original_minor=original,
            charge_id=charge.get("id"),
            project_id=project.id if project else None,
            dashboard_url=self.dashboard_url,
        )

        if project is None:
            # Money moved even if we cannot attribute it: record and still alert
            outcome = self._unmatched(event, f"No project for payment intent {payment_intent_id}", snapshot)
            outcome.notification = notification
            return outcome

        target = PaymentStatus.REFUNDED if is_full else PaymentStatus.PARTIALLY_REFUNDED
        applied = self._transition(
            Project, project.id, Project.payment_status, REFUNDABLE_FROM,
            payment_status=target.value,
            amount_refunded=refunded,
        )
        if applied:
            status, detail = "success", target.value
        else:
            status, detail = "skipped", f"status is {project.payment_status}"
            snapshot = {**snapshot, "skipped": True, "reason": detail}

        self.ledger.record(event, RecordStatus.SUCCESS, snapshot, project_id=project.id)
        return self._outcome(event, status, RecordStatus.SUCCESS, project_id=project.id, detail=detail, notification=notification)

    def _dispute_created(self, event: PaymentEvent) -> ReconciliationOutcome:
        dispute = event.data_object
        amount = dispute.get("amount") or 0
        currency = (dispute.get("currency") or self.default_currency).upper()
        reason = dispute.get("reason")
        payment_intent_id = _id_of(dispute.get("payment_intent"))

        # Resolution is context only; it must never stop the dispute from being recorded
        project = None
        try:
            project = self._project_by_payment_intent(payment_intent_id)
        except SQLAlchemyError:
            logger.exception(structured("reconcile.dispute_lookup_failed", event_id=event.event_id))
            self.session.rollback()

        flagged = False
        if project is not None:
            flagged = self._transition(
                Project, project.id, Project.payment_status, DISPUTABLE_FROM,
                payment_status=PaymentStatus.DISPUTED.value,
            )

        self.ledger.record(
            event, RecordStatus.DISPUTE,
            {
                "dispute_id": dispute.get("id"),
                "charge_id": _id_of(dispute.get("charge")),
                "payment_intent_id": payment_intent_id,
                "amount": amount,
                "currency": currency,
                "reason": reason,
                "project_name": project.name if project else None,
                "flagged": flagged,
            },
            project_id=project.id if project else None,
            error_message=f"Dispute: {reason}",
        )
        notification = notices.dispute_alert(
            amount, currency, project.name if project else "Unknown Project",
            dispute_id=dispute.get("id"),
            reason=reason,
        )
        return self._outcome(
            event, "logged", RecordStatus.DISPUTE,
            project_id=project.id if project else None,
            notification=notification,
        )

    # ---- helpers ----

    def _require_project(self, public_id: str) -> Project:
        project = self.session.query(Project).filter_by(public_id=public_id).first()
        if project is None:
            raise UnmatchedResource(f"No project with public id {public_id}")
        return project

    def _project_by_payment_intent(self, payment_intent_id: Optional[str]) -> Optional[Project]:
        if not payment_intent_id:
            return None
        return self.session.query(Project).filter_by(stripe_payment_intent_id=payment_intent_id).first()

    def _mark_invoice_paid(self, invoice_public_id: str, when: datetime) -> Optional[Invoice]:
        invoice = self.session.query(Invoice).filter_by(public_id=invoice_public_id).first()
        if invoice is None:
            logger.warning(structured("reconcile.invoice_not_found", invoice_id=invoice_public_id))
            return None
        self._transition(
            Invoice, invoice.id, Invoice.status, _PAYABLE_INVOICE_STATES,
            status=InvoiceStatus.PAID.value,
            paid_at=when,
        )
        return invoice

    def _transition(self, model, ident: int, status_column, allowed_from: Iterable[str], **values) -> bool:
        """Atomic "UPDATE ... WHERE id = :id AND status IN (:allowed)". True when one row moved."""
        stmt = (
            update(model)
            .where(model.id == ident, status_column.in_(tuple(allowed_from)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def _unmatched(self, event: PaymentEvent, reason: str, snapshot: Dict[str, Any]) -> ReconciliationOutcome:
        self.ledger.record(event, RecordStatus.UNMATCHED, snapshot, error_message=reason)
        return self._outcome(event, "unmatched", RecordStatus.UNMATCHED, detail=reason)

    @staticmethod
    def _outcome(event: PaymentEvent, status: str, record_status: Optional[RecordStatus] = None, **kwargs) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            status=status,
            event_id=event.event_id,
            event_type=event.type_name,
            record_status=record_status.value if record_status else None,
            **kwargs,
        )

    @staticmethod
    def _log_outcome(outcome: ReconciliationOutcome) -> None:
        line = structured(
            "reconcile.outcome",
            event_id=outcome.event_id,
            event_type=outcome.event_type,
            status=outcome.status,
            record_status=outcome.record_status,
            project_id=outcome.project_id,
            invoice_id=outcome.invoice_id,
            detail=outcome.detail,
        )
        if outcome.record_status == RecordStatus.DISPUTE.value:
            logger.error(line)
        elif outcome.status == "unmatched":
            logger.warning(line)
        else:
            logger.info(line)


def reconciler_for_app(session, notifier) -> PaymentReconciler:
    cfg = current_app.config
    return PaymentReconciler(
        session,
        notifier,
        environment=cfg.get("STRIPE_ENVIRONMENT", "development"),
        dashboard_url=cfg.get("DASHBOARD_BASE_URL", ""),
        default_currency=cfg.get("DEFAULT_CURRENCY", "CAD"),
    )
