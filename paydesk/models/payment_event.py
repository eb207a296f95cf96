from sqlalchemy import func
from paydesk.extensions import db


class PaymentEvent(db.Model):
    """
    One row per processed provider event (the reconciliation record).
    The unique event_id is the idempotency key; rows are never updated or deleted.
    """
    __tablename__ = "payment_events"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    provider = db.Column(db.String(32), nullable=False)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, index=True)  # SUCCESS|FAILED|UNMATCHED|DISPUTE
    error_message = db.Column(db.String(500), nullable=True)
    # "metadata" is reserved on declarative models
    details = db.Column("metadata", db.JSON, nullable=False, default=dict)

    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<PaymentEvent id={self.id} event_id={self.event_id!r} type={self.event_type!r} status={self.status!r}>"
