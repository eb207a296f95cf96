import hashlib
import json
from datetime import datetime, timezone

from flask import current_app, jsonify, make_response, request

from . import bp
from paydesk.errors import MalformedEvent, RateLimitExceeded, SignatureInvalid, TransientPersistenceError
from paydesk.extensions import csrf, db
from paydesk.services import leads, vault
from paydesk.services.audit import AuditEvent, log_audit_event, log_rate_limit_exceeded
from paydesk.services.notifier import get_notifier, new_lead
from paydesk.services.rate_limit import check_rate_limit, client_ip
from paydesk.services.reconciler import reconciler_for_app
from paydesk.services.webhook_verifier import verify_stripe_event
from paydesk.utils.validators import email_domain, is_valid_email

TRUSTED_INTAKE_ORIGINS = ("formspree.io", "www.formspree.io", "api.formspree.io")


def _enforce_rate_limit(ip: str, preset: str, namespace: str):
    result = check_rate_limit(ip, preset, namespace=namespace)
    if not result.allowed:
        log_rate_limit_exceeded(ip, preset, namespace)
        raise RateLimitExceeded(result, preset=preset)
    return result


# ----- Stripe Webhook (payments lifecycle) -----
@csrf.exempt
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe -> /webhooks/stripe
    Rate-limit, verify signature over the raw body, short-circuit re-deliveries,
    then hand the verified event to the reconciler.
    """
    ip = client_ip()
    _enforce_rate_limit(ip, "WEBHOOK", "stripe")

    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error(json.dumps({"event": "stripe_webhook_not_configured"}))
        return jsonify({"error": "webhook_not_configured"}), 500

    # 1) Verify signature (exact bytes Stripe signed)
    raw = request.get_data(cache=False, as_text=False) or b""
    try:
        event = verify_stripe_event(
            raw,
            request.headers.get("Stripe-Signature", ""),
            secret,
            tolerance=int(current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300)),
        )
    except SignatureInvalid as exc:
        log_audit_event(
            AuditEvent.WEBHOOK_SIGNATURE_INVALID,
            ip=ip,
            success=False,
            details={"reason": str(exc), "payload_sha256": hashlib.sha256(raw).hexdigest()[:32]},
        )
        return jsonify({"error": "invalid_signature"}), 401
    except MalformedEvent as exc:
        current_app.logger.warning(json.dumps({"event": "stripe_webhook_malformed", "reason": str(exc)}))
        return jsonify({"error": "malformed_event"}), 400

    reconciler = reconciler_for_app(db.session, get_notifier())

    # 2) Idempotency guard (fast path; the unique index is the real guarantee)
    if reconciler.ledger.is_event_processed(event.event_id):
        current_app.logger.info(json.dumps({
            "event": "stripe_webhook_duplicate",
            "event_id": event.event_id,
            "type": event.type_name,
        }))
        return jsonify({"received": True, "status": "already_processed"}), 200

    # 3) Reconcile; a storage failure is the only path that asks Stripe to retry
    try:
        outcome = reconciler.reconcile(event)
    except TransientPersistenceError:
        current_app.logger.exception(json.dumps({
            "event": "stripe_webhook_persist_failed",
            "event_id": event.event_id,
            "type": event.type_name,
        }))
        return jsonify({"error": "processing_failed"}), 500

    return jsonify(outcome.to_response()), 200


# ----- Formspree lead intake (Resthook) -----
def _trusted_intake_source() -> bool:
    configured = current_app.config.get("FORMSPREE_WEBHOOK_SECRET")
    presented = request.headers.get("X-Hook-Secret")
    if configured and presented and vault.secure_compare(presented, configured):
        return True

    if "formspree" in (request.headers.get("User-Agent") or "").lower():
        return True
    origin = request.headers.get("Origin") or request.headers.get("Referer") or ""
    if any(trusted in origin for trusted in TRUSTED_INTAKE_ORIGINS):
        return True

    if not configured:
        if current_app.config.get("STRIPE_ENVIRONMENT") == "production":
            current_app.logger.error(json.dumps({"event": "intake_secret_missing", "action": "reject"}))
            return False
        current_app.logger.warning(json.dumps({"event": "intake_secret_missing", "action": "relaxed_origin_check"}))
        return True
    return False


@csrf.exempt
@bp.get("/formspree")
def formspree_handshake():
    # Resthook handshake: echo the secret back to confirm ownership of the URL
    hook_secret = request.headers.get("X-Hook-Secret")
    if hook_secret:
        current_app.logger.info(json.dumps({"event": "intake_handshake"}))
        resp = make_response("", 200)
        resp.headers["X-Hook-Secret"] = hook_secret
        return resp
    return jsonify({
        "endpoint": "/webhooks/formspree",
        "accepts": "POST",
        "description": "Formspree webhook intake endpoint",
    })


@csrf.exempt
@bp.post("/formspree")
def formspree_intake():
    ip = client_ip()
    if not _trusted_intake_source():
        log_audit_event(
            AuditEvent.SUSPICIOUS_ACTIVITY,
            ip=ip,
            success=False,
            details={
                "reason": "invalid_webhook_origin",
                "user_agent": request.headers.get("User-Agent"),
                "origin": request.headers.get("Origin"),
                "referer": request.headers.get("Referer"),
            },
        )
        return jsonify({"error": "unauthorized_source"}), 403

    max_bytes = int(current_app.config.get("INTAKE_MAX_BODY_BYTES", 100 * 1024))
    if (request.content_length or 0) > max_bytes or len(request.get_data(cache=True)) > max_bytes:
        return jsonify({"error": "payload_too_large"}), 413

    _enforce_rate_limit(ip, "INTAKE", leads.SOURCE_FORMSPREE)

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify({"error": "invalid_json"}), 400

    if leads.is_test_submission(body):
        lead = leads.create_test_lead(datetime.now(timezone.utc).isoformat())
        return jsonify({"success": True, "id": lead.id, "test": True}), 200

    form_data = leads.unwrap_submission(body)
    fields = leads.extract_fields(form_data)
    if not is_valid_email(fields["email"]):
        return jsonify({"error": "valid_email_required"}), 400

    spam = leads.looks_like_spam(form_data)
    lead = leads.create_lead(fields, form_data, is_spam=spam)

    log_audit_event(
        AuditEvent.LEAD_CREATED,
        ip=ip,
        success=True,
        severity="WARNING" if spam else "INFO",
        resource_type="LEAD",
        resource_id=lead.id,
        details={
            "source": leads.SOURCE_FORMSPREE,
            "email_domain": email_domain(fields["email"]),
            "is_spam": spam,
            "encrypted": bool(lead.form_data.get("_encrypted")),
        },
    )

    if not spam:
        get_notifier().notify(new_lead(
            fields["name"] or fields["email"],
            service=fields["service"] or None,
            lead_id=lead.id,
            dashboard_url=current_app.config.get("DASHBOARD_BASE_URL", ""),
        ))

    return jsonify({"success": True, "id": lead.id, "is_spam": spam}), 200
