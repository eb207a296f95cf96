from datetime import datetime, timezone
from paydesk.extensions import db


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(40), nullable=False, index=True)
    severity = db.Column(db.String(10), nullable=False, index=True)  # INFO|WARNING|ERROR|CRITICAL
    ip = db.Column(db.String(64), nullable=False, index=True)
    path = db.Column(db.String(255), nullable=True)
    method = db.Column(db.String(10), nullable=True)
    resource_type = db.Column(db.String(20), nullable=True)
    resource_id = db.Column(db.String(64), nullable=True)
    success = db.Column(db.Boolean, nullable=False)
    details = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} event={self.event_type} severity={self.severity}>"
