"""
Stripe webhook authentication and decoding.

The signature is checked over the exact raw body bytes (Stripe's
`t=<ts>,v1=<hmac>` scheme with a timestamp tolerance) before any field of the
payload is read. Only the returned PaymentEvent may be used for routing.
"""
import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from paydesk.errors import MalformedEvent, SignatureInvalid

DEFAULT_TOLERANCE = 300


class EventType(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    CHECKOUT_EXPIRED = "checkout.session.expired"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"
    DISPUTE_CREATED = "charge.dispute.created"

    @classmethod
    def parse(cls, value: str) -> Optional["EventType"]:
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class PaymentEvent:
    """A verified provider notification. Immutable once built."""
    event_id: str
    type_name: str
    event_type: Optional[EventType]  # None for types this core does not handle
    data_object: Dict[str, Any]
    raw_payload: bytes = field(repr=False)
    signature: str = field(repr=False)
    received_at: datetime
    livemode: bool = False

    @property
    def metadata(self) -> Dict[str, Any]:
        meta = self.data_object.get("metadata")
        return meta if isinstance(meta, dict) else {}


def verify_stripe_event(
    raw_body: bytes,
    sig_header: str,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE,
) -> PaymentEvent:
    if not sig_header:
        raise SignatureInvalid("missing Stripe-Signature header")
    if not secret:
        raise SignatureInvalid("webhook secret not configured")

    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureInvalid("payload is not UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise SignatureInvalid(str(exc) or "signature mismatch") from exc

    try:
        body = json.loads(payload)
    except ValueError as exc:
        raise MalformedEvent("payload is not JSON") from exc
    if not isinstance(body, dict):
        raise MalformedEvent("payload is not a JSON object")

    event_id = body.get("id")
    type_name = body.get("type")
    if not event_id or not type_name:
        raise MalformedEvent("event id/type missing")

    data = body.get("data") or {}
    if not isinstance(data, dict):
        raise MalformedEvent("event data is not an object")
    obj = data.get("object") or {}
    if not isinstance(obj, dict):
        raise MalformedEvent("event data.object is not an object")

    return PaymentEvent(
        event_id=str(event_id),
        type_name=str(type_name),
        event_type=EventType.parse(str(type_name)),
        data_object=obj,
        raw_payload=raw_body,
        signature=sig_header,
        received_at=datetime.now(timezone.utc),
        livemode=bool(body.get("livemode")),
    )
