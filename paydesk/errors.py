"""
Error taxonomy for the payment core.

Boundary errors (signature, rate limit) are handled by the webhook views and
never reach reconciliation. DuplicateEvent and UnmatchedResource are control-flow
signals, not failures. TransientPersistenceError is the only retryable error.
"""
from typing import Optional


class PaydeskError(Exception):
    """Base class for every error raised by the payment core."""


class SignatureInvalid(PaydeskError):
    """Webhook envelope failed authentication; reject with 401, do not process."""


class MalformedEvent(PaydeskError):
    """Authentic envelope whose body is not a usable event (no id/type, bad JSON)."""


class VaultKeyError(PaydeskError):
    """ENCRYPTION_KEY missing or not exactly 32 bytes after base64 decoding."""


class AuthenticationFailure(PaydeskError):
    """Encrypted blob is malformed or its authentication tag did not verify."""


class DuplicateEvent(PaydeskError):
    """The event id already has a ledger row; resolve to a success response."""

    def __init__(self, event_id: str):
        super().__init__(f"event already processed: {event_id}")
        self.event_id = event_id


class UnmatchedResource(PaydeskError):
    """No project/invoice could be attributed; recorded for manual follow-up."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class TransientPersistenceError(PaydeskError):
    """Storage failed mid-reconciliation; the provider's redelivery is the retry."""


class RateLimitExceeded(PaydeskError):
    """Request rejected by the rate limiter; carries the limit result for headers."""

    def __init__(self, result, preset: Optional[str] = None):
        super().__init__("rate limit exceeded")
        self.result = result
        self.preset = preset
