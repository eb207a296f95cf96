from sqlalchemy import func, text
from paydesk.extensions import db


class Lead(db.Model):
    __tablename__ = "leads"

    id = db.Column(db.Integer, primary_key=True)

    # Encrypted at rest when ENCRYPTION_KEY is set; read through safe_decrypt
    email = db.Column(db.Text, nullable=False)
    phone = db.Column(db.Text, nullable=True)
    message = db.Column(db.Text, nullable=True)
    # Keyed HMAC of the normalized email, for lookups without plaintext
    email_hash = db.Column(db.String(64), nullable=True, index=True)

    name = db.Column(db.String(200), nullable=True)
    company_name = db.Column(db.String(200), nullable=True)
    website = db.Column(db.String(500), nullable=True)
    service = db.Column(db.String(100), nullable=True)

    source = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(20), nullable=False, index=True, default="NEW", server_default=text("'NEW'"))
    is_spam = db.Column(db.Boolean, nullable=False, default=False, server_default=text("false"))
    form_data = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)

    def __repr__(self) -> str:
        return f"<Lead id={self.id} source={self.source!r} status={self.status!r} spam={self.is_spam}>"
