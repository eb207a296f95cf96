import os
import json
import logging
from logging.config import dictConfig

import sentry_sdk
from pythonjsonlogger import jsonlogger
from sentry_sdk.integrations.flask import FlaskIntegration

def init_logging(app):
    """Structured logs (JSON) in staging/prod; keep default console in dev/tests."""
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    level = app.config.get("LOG_LEVEL", "INFO")
    if app_env in ("staging", "production"):
        fmt = "%(asctime)s %(levelname)s %(name)s %(message)s"
        formatter = jsonlogger.JsonFormatter
        dictConfig({
            "version": 1,
            "formatters": {"json": {"()": formatter, "fmt": fmt}},
            "handlers": {"wsgi": {"class": "logging.StreamHandler", "formatter": "json"}},
            "root": {"level": level, "handlers": ["wsgi"]},
        })
    else:
        logging.getLogger("paydesk").setLevel(level)

def _scrub_request_body(event, hint):
    # Webhook bodies carry lead PII and raw Stripe payloads
    request = event.get("request")
    if request:
        request.pop("data", None)
        request.pop("cookies", None)
    return event

def init_sentry(app):
    """Wire Sentry if SENTRY_DSN is configured."""
    dsn = app.config.get("SENTRY_DSN")
    if not dsn:
        return
    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=app.config.get("SENTRY_TRACES_SAMPLE_RATE", 0.0),
        environment=app.config.get("STRIPE_ENVIRONMENT", "development"),
        send_default_pii=False,
        before_send=_scrub_request_body,
    )
    app.logger.info(structured("sentry.enabled", environment=app.config.get("STRIPE_ENVIRONMENT")))

def structured(event: str, **fields) -> str:
    """
    One JSON object per log line: {"event": ..., **fields}.
    Callers pass identifiers and outcomes only, never plaintext personal data.
    """
    return json.dumps({"event": event, **fields}, default=str, sort_keys=False)
