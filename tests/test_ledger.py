from datetime import datetime, timezone

import pytest

from paydesk.errors import DuplicateEvent
from paydesk.extensions import db
from paydesk.models import PaymentEvent, RecordStatus
from paydesk.services.ledger import EventLedger
from paydesk.services.webhook_verifier import PaymentEvent as VerifiedEvent, EventType


def _event(event_id="evt_ledger_1", type_name="checkout.session.expired"):
    return VerifiedEvent(
        event_id=event_id,
        type_name=type_name,
        event_type=EventType.parse(type_name),
        data_object={},
        raw_payload=b"{}",
        signature="t=1,v1=x",
        received_at=datetime.now(timezone.utc),
    )


def test_record_then_processed(app):
    with app.app_context():
        ledger = EventLedger(db.session)
        assert not ledger.is_event_processed("evt_ledger_1")

        row = ledger.record(_event(), RecordStatus.SUCCESS, {"reason": "expired"}, commit=True)
        assert row.id is not None
        assert ledger.is_event_processed("evt_ledger_1")

        stored = db.session.query(PaymentEvent).filter_by(event_id="evt_ledger_1").one()
        assert stored.provider == "STRIPE"
        assert stored.status == "SUCCESS"
        assert stored.details == {"reason": "expired"}

def test_unique_constraint_turns_second_insert_into_duplicate(app):
    with app.app_context():
        ledger = EventLedger(db.session)
        ledger.record(_event(), RecordStatus.SUCCESS, commit=True)

        # Bypasses the pre-check on purpose: the storage constraint must still hold
        with pytest.raises(DuplicateEvent) as exc:
            ledger.record(_event(), RecordStatus.FAILED, commit=True)
        assert exc.value.event_id == "evt_ledger_1"
        assert db.session.query(PaymentEvent).count() == 1

def test_error_message_truncated(app):
    with app.app_context():
        row = EventLedger(db.session).record(
            _event("evt_long"), RecordStatus.FAILED, error_message="x" * 900, commit=True,
        )
        assert len(row.error_message) == 500
