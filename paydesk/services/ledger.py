from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from paydesk.errors import DuplicateEvent
from paydesk.models import PaymentEvent, PROVIDER_STRIPE, RecordStatus
from paydesk.services.webhook_verifier import PaymentEvent as VerifiedEvent


class EventLedger:
    """
    Idempotency + audit trail over payment_events.

    is_event_processed() is a fast pre-check only. The unique index on
    event_id is what stops two racing deliveries from both landing; record()
    turns that constraint violation into DuplicateEvent.
    """

    def __init__(self, session):
        self.session = session

    def is_event_processed(self, event_id: str) -> bool:
        return self.session.query(PaymentEvent.id).filter_by(event_id=event_id).first() is not None

    def record(
        self,
        event: VerifiedEvent,
        status: RecordStatus,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        project_id: Optional[int] = None,
        invoice_id: Optional[int] = None,
        error_message: Optional[str] = None,
        provider: str = PROVIDER_STRIPE,
        commit: bool = False,
    ) -> PaymentEvent:
        """
        Insert the one row for this event inside the caller's transaction.
        Flushes immediately so a duplicate surfaces here, before anything else
        in the transaction is committed.
        """
        row = PaymentEvent(
            event_id=event.event_id,
            provider=provider,
            event_type=event.type_name,
            status=RecordStatus(status).value,
            error_message=error_message[:500] if error_message else None,
            details=metadata or {},
            project_id=project_id,
            invoice_id=invoice_id,
        )
        self.session.add(row)
        try:
            self.session.flush()
            if commit:
                self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateEvent(event.event_id) from exc
        return row
