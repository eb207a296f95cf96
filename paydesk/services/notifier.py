"""
Best-effort operator alerts (Pushover).

Delivery runs off the request path when an executor is configured. Every
failure is caught and logged here; nothing in this module raises into the
caller, so an alert can never mark a committed reconciliation as failed.
"""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

import requests
from flask import current_app

from paydesk.extensions import NOTIFIER_KEY
from paydesk.observability import structured

logger = logging.getLogger(__name__)

PRIORITY_NORMAL = 0
PRIORITY_HIGH = 1


@dataclass(frozen=True)
class Notification:
    title: str
    message: str
    url: Optional[str] = None
    url_title: Optional[str] = None
    priority: int = PRIORITY_NORMAL
    sound: Optional[str] = None
    kind: str = "generic"


class PushoverSink:
    API_URL = "https://api.pushover.net/1/messages.json"

    def __init__(self, token: Optional[str], user: Optional[str], timeout: float = 5.0, http=None):
        self.token = token
        self.user = user
        self.timeout = timeout
        self._http = http or requests

    @property
    def configured(self) -> bool:
        return bool(self.token and self.user)

    def send(self, notification: Notification) -> bool:
        resp = self._http.post(
            self.API_URL,
            json={
                "token": self.token,
                "user": self.user,
                "title": notification.title,
                "message": notification.message,
                "url": notification.url,
                "url_title": notification.url_title,
                "priority": notification.priority,
                "sound": notification.sound,
            },
            timeout=self.timeout,
        )
        if not resp.ok:
            logger.error(structured("notify.provider_error", status=resp.status_code, body=resp.text[:200]))
            return False
        return True


class Notifier:
    def __init__(self, sink, executor: Optional[ThreadPoolExecutor] = None):
        self.sink = sink
        self.executor = executor

    def notify(self, notification: Notification) -> Optional[Future]:
        if not getattr(self.sink, "configured", False):
            logger.warning(structured("notify.skipped", kind=notification.kind, reason="credentials_not_configured"))
            return None
        if self.executor is None:
            self._deliver(notification)
            return None
        try:
            return self.executor.submit(self._deliver, notification)
        except RuntimeError:
            # executor already shut down (process exiting)
            logger.warning(structured("notify.skipped", kind=notification.kind, reason="executor_shutdown"))
            return None

    def _deliver(self, notification: Notification) -> bool:
        try:
            ok = self.sink.send(notification)
        except Exception:
            logger.exception(structured("notify.failed", kind=notification.kind))
            return False
        if ok:
            logger.info(structured("notify.sent", kind=notification.kind, title=notification.title))
        return bool(ok)


def init_notifier(app) -> Notifier:
    sink = PushoverSink(
        token=app.config.get("PUSHOVER_API_TOKEN"),
        user=app.config.get("PUSHOVER_USER_KEY"),
        timeout=float(app.config.get("PUSHOVER_TIMEOUT_SECONDS", 5)),
    )
    executor = None
    if app.config.get("NOTIFY_ASYNC", True):
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="paydesk-notify")
    notifier = Notifier(sink, executor=executor)
    app.extensions[NOTIFIER_KEY] = notifier
    return notifier


def get_notifier() -> Notifier:
    return current_app.extensions[NOTIFIER_KEY]


# ---- message builders ----

def format_amount(amount_minor: Optional[int], currency: str) -> str:
    value = (amount_minor or 0) / 100
    return f"${value:,.2f} {(currency or 'CAD').upper()}"


def _project_link(dashboard_url: str, project_id: Optional[int]):
    if not project_id or not dashboard_url:
        return None, None
    return f"{dashboard_url.rstrip('/')}/projects/{project_id}", "View Project"


def payment_received(amount_minor, currency, resource_name, *, project_id=None, dashboard_url="") -> Notification:
    url, url_title = _project_link(dashboard_url, project_id)
    return Notification(
        title="Payment Received",
        message=f"{format_amount(amount_minor, currency)} received for {resource_name}",
        url=url,
        url_title=url_title,
        sound="cashregister",
        kind="payment",
    )


def refund_processed(
    amount_minor,
    currency,
    resource_name,
    *,
    is_partial: bool,
    original_minor=None,
    charge_id=None,
    project_id=None,
    dashboard_url="",
) -> Notification:
    amount = format_amount(amount_minor, currency)
    if is_partial:
        title = "Partial Refund"
        original = format_amount(original_minor, currency) if original_minor else "original"
        message = f"{amount} of {original} refunded for {resource_name}"
    else:
        title = "Full Refund"
        message = f"{amount} refunded for {resource_name}"
    if charge_id:
        message += f"\nCharge: {charge_id}"
    url, url_title = _project_link(dashboard_url, project_id)
    return Notification(title=title, message=message, url=url, url_title=url_title, sound="cashregister", kind="refund")


def dispute_alert(amount_minor, currency, resource_name, *, dispute_id=None, reason=None) -> Notification:
    message = f"{format_amount(amount_minor, currency)} disputed for {resource_name}"
    if reason:
        message += f"\nReason: {reason}"
    url = url_title = None
    if dispute_id:
        message += f"\nDispute ID: {dispute_id}"
        url, url_title = f"https://dashboard.stripe.com/disputes/{dispute_id}", "View in Stripe"
    return Notification(
        title="DISPUTE ALERT",
        message=message,
        url=url,
        url_title=url_title,
        priority=PRIORITY_HIGH,
        sound="siren",
        kind="dispute",
    )


def new_lead(display_name: str, *, service=None, lead_id=None, dashboard_url="") -> Notification:
    message = f"New lead: {display_name}"
    if service:
        message += f"\nService: {service}"
    url = f"{dashboard_url.rstrip('/')}/leads/{lead_id}" if (lead_id and dashboard_url) else None
    return Notification(
        title="New Lead Submitted",
        message=message,
        url=url,
        url_title="View Lead" if url else None,
        kind="lead",
    )
