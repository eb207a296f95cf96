from .enums import PaymentStatus, InvoiceStatus, RecordStatus, LeadStatus, PROVIDER_STRIPE
from .project import Project
from .invoice import Invoice
from .payment_event import PaymentEvent
from .lead import Lead
from .audit_log import AuditLog

__all__ = [
    "PaymentStatus",
    "InvoiceStatus",
    "RecordStatus",
    "LeadStatus",
    "PROVIDER_STRIPE",
    "Project",
    "Invoice",
    "PaymentEvent",
    "Lead",
    "AuditLog",
]
