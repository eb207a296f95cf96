"""
Security audit trail: one JSON log line per event, plus a best-effort audit_logs row.

Called at request boundaries (rate-limit rejections, bad signatures, lead
intake), never from inside a reconciliation transaction.
"""
import enum
import logging
from typing import Any, Dict, Optional

from flask import has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from paydesk.extensions import db
from paydesk.models import AuditLog
from paydesk.observability import structured

logger = logging.getLogger(__name__)


class AuditEvent(str, enum.Enum):
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"
    LEAD_CREATED = "LEAD_CREATED"
    LEAD_VIEWED = "LEAD_VIEWED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"


DEFAULT_SEVERITY = {
    AuditEvent.RATE_LIMIT_EXCEEDED: "WARNING",
    AuditEvent.WEBHOOK_SIGNATURE_INVALID: "WARNING",
    AuditEvent.LEAD_CREATED: "INFO",
    AuditEvent.LEAD_VIEWED: "INFO",
    AuditEvent.SUSPICIOUS_ACTIVITY: "CRITICAL",
}

_LEVELS = {
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def log_audit_event(
    event_type: AuditEvent,
    *,
    ip: str,
    success: bool,
    severity: Optional[str] = None,
    path: Optional[str] = None,
    method: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    persist: bool = True,
) -> None:
    event_type = AuditEvent(event_type)
    severity = severity or DEFAULT_SEVERITY.get(event_type, "INFO")
    if has_request_context():
        path = path or request.path
        method = method or request.method

    logger.log(_LEVELS.get(severity, logging.INFO), structured(
        "audit",
        audit_event=event_type.value,
        severity=severity,
        ip=ip,
        path=path,
        method=method,
        resource_type=resource_type,
        resource_id=resource_id,
        success=success,
        details=details or None,
    ))

    if not persist:
        return
    try:
        db.session.add(AuditLog(
            event_type=event_type.value,
            severity=severity,
            ip=ip,
            path=path,
            method=method,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            success=success,
            details=details or {},
        ))
        db.session.commit()
    except SQLAlchemyError as exc:
        # The log line above is the record of last resort
        db.session.rollback()
        logger.warning(structured("audit.persist_failed", audit_event=event_type.value, error=type(exc).__name__))


def log_rate_limit_exceeded(ip: str, preset: str, namespace: Optional[str] = None) -> None:
    log_audit_event(
        AuditEvent.RATE_LIMIT_EXCEEDED,
        ip=ip,
        success=False,
        details={"limit_type": preset, "namespace": namespace},
    )
