from sqlalchemy import func, text
from paydesk.extensions import db


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    # Correlation id echoed back in Stripe metadata (invoice_id)
    public_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    invoice_number = db.Column(db.String(32), nullable=False, unique=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, index=True, default="DRAFT", server_default=text("'DRAFT'"))  # DRAFT|SENT|PAID|CANCELLED
    amount_due = db.Column(db.Integer, nullable=False)  # minor units
    currency = db.Column(db.String(3), nullable=False, default="CAD", server_default=text("'CAD'"))
    description = db.Column(db.String(255), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    project = db.relationship("Project", back_populates="invoices")

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} number={self.invoice_number!r} status={self.status!r}>"
