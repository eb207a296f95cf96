from sqlalchemy import func, text
from paydesk.extensions import db


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    # Correlation id echoed back in Stripe metadata (project_public_id)
    public_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)

    # UNPAID|PAID|PARTIALLY_REFUNDED|REFUNDED|DISPUTED; written only by the reconciler
    payment_status = db.Column(db.String(32), nullable=False, index=True, default="UNPAID", server_default=text("'UNPAID'"))
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True, index=True)
    stripe_checkout_session_id = db.Column(db.String(255), nullable=True, index=True)

    # Minor currency units (cents)
    amount_paid = db.Column(db.Integer, nullable=True)
    amount_refunded = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))
    currency = db.Column(db.String(3), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    invoices = db.relationship("Invoice", back_populates="project", lazy="select")

    def __repr__(self) -> str:
        return f"<Project id={self.id} public_id={self.public_id!r} payment_status={self.payment_status!r}>"
