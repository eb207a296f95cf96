import enum


class PaymentStatus(str, enum.Enum):
    """paymentStatus of a payable project."""
    UNPAID = "UNPAID"
    PAID = "PAID"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class RecordStatus(str, enum.Enum):
    """Outcome stored on a payment_events row."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    UNMATCHED = "UNMATCHED"
    DISPUTE = "DISPUTE"


class LeadStatus(str, enum.Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    CONVERTED = "CONVERTED"
    CLOSED = "CLOSED"


PROVIDER_STRIPE = "STRIPE"

# Sources from which a refund may move a project
REFUNDABLE_FROM = (PaymentStatus.PAID.value, PaymentStatus.PARTIALLY_REFUNDED.value)
# DISPUTED is an overlay over any settled state
DISPUTABLE_FROM = (
    PaymentStatus.PAID.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.REFUNDED.value,
)
