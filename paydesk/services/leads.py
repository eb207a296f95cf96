"""
Lead intake and read path.

Formspree forms are not consistent about field names, so each logical field has
an ordered list of candidate keys; the first non-empty one wins and goes
through a single sanitize-and-truncate step. Email, phone and message are
encrypted at rest whenever a vault key is configured.
"""
import re
from typing import Any, Dict, List, Optional

from sqlalchemy import or_

from paydesk.extensions import db
from paydesk.models import Lead, LeadStatus
from paydesk.services import vault
from paydesk.utils.validators import sanitize

SOURCE_FORMSPREE = "formspree"
TEST_LEAD_EMAIL = "formspree-test@example.invalid"

FIELD_CANDIDATES = {
    "email": ("email", "Email", "EMAIL", "em", "e", "_replyto",
              "contact_email", "contact-email", "user_email", "user-email"),
    "name": ("name", "Name", "na", "n", "full-name"),
    "company_name": ("company", "Company", "co", "c", "company-name"),
    "website": ("website", "Website", "we", "w", "url"),
    "phone": ("phone", "Phone", "ph", "p", "tel"),
    "service": ("service", "Service", "se", "s", "service-type"),
    "message": ("message", "Message", "me", "m", "details"),
}

FIELD_LIMITS = {
    "email": 254,
    "name": 200,
    "company_name": 200,
    "website": 500,
    "phone": 50,
    "service": 100,
    "message": 5000,
}

ENCRYPTED_FIELDS = ("email", "phone", "message")

SPAM_PATTERNS = (
    re.compile(r"\b(viagra|cialis|casino|poker|lottery|winner)\b", re.I),
    re.compile(r"\b(click here|act now|limited time|free money)\b", re.I),
    re.compile(r"<script|javascript:|data:", re.I),
    re.compile(r"\[url=|<a href=", re.I),
)


def unwrap_submission(body: Dict[str, Any]) -> Dict[str, Any]:
    """Formspree nests the fields under `submission` (older payloads use other wrappers)."""
    for key in ("submission", "_formspree_submission", "data"):
        inner = body.get(key)
        if isinstance(inner, dict):
            return inner
    return body


def is_test_submission(body: Dict[str, Any]) -> bool:
    return body.get("test") is True or body.get("_test") is True


def extract_fields(form_data: Dict[str, Any]) -> Dict[str, str]:
    fields = {}
    for name, candidates in FIELD_CANDIDATES.items():
        raw = next((form_data[k] for k in candidates if form_data.get(k)), None)
        fields[name] = sanitize(raw, FIELD_LIMITS[name])
    fields["email"] = fields["email"].lower()
    return fields


def looks_like_spam(form_data: Dict[str, Any]) -> bool:
    text = " ".join(v for v in form_data.values() if isinstance(v, str))
    return any(p.search(text) for p in SPAM_PATTERNS)


def _stored_form_data(form_data: Dict[str, Any], encrypted: bool) -> Dict[str, Any]:
    snapshot = dict(form_data)
    if encrypted:
        for field in ENCRYPTED_FIELDS:
            for key in FIELD_CANDIDATES[field]:
                snapshot.pop(key, None)
        snapshot["_encrypted"] = True
    return snapshot


def create_lead(
    fields: Dict[str, str],
    form_data: Dict[str, Any],
    *,
    source: str = SOURCE_FORMSPREE,
    is_spam: bool = False,
) -> Lead:
    encrypted = vault.is_configured()

    def _protect(value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return vault.encrypt(value) if encrypted else value

    lead = Lead(
        email=_protect(fields["email"]),
        email_hash=vault.secure_hash(fields["email"]) if encrypted else None,
        phone=_protect(fields.get("phone")),
        message=_protect(fields.get("message")),
        name=fields.get("name") or None,
        company_name=fields.get("company_name") or None,
        website=fields.get("website") or None,
        service=fields.get("service") or None,
        source=source,
        status=LeadStatus.NEW.value,
        is_spam=is_spam,
        form_data=_stored_form_data(form_data, encrypted),
    )
    db.session.add(lead)
    db.session.commit()
    return lead


def create_test_lead(received_at: str) -> Lead:
    fields = {"email": TEST_LEAD_EMAIL, "name": "Formspree Test"}
    return create_lead(fields, {"test": True, "received_at": received_at})


def decrypt_lead_fields(lead: Lead) -> Dict[str, Any]:
    """
    Plain dict view of a lead with the encrypted columns decrypted.
    The ORM object is left untouched so plaintext is never flushed back.
    """
    return {
        "id": lead.id,
        "email": vault.safe_decrypt(lead.email),
        "phone": vault.safe_decrypt(lead.phone),
        "message": vault.safe_decrypt(lead.message),
        "name": lead.name,
        "company_name": lead.company_name,
        "website": lead.website,
        "service": lead.service,
        "source": lead.source,
        "status": lead.status,
        "is_spam": lead.is_spam,
        "created_at": lead.created_at,
    }


def find_leads_by_email(email: str) -> List[Dict[str, Any]]:
    normalized = (email or "").strip().lower()
    if not normalized:
        return []
    q = Lead.query
    if vault.is_configured():
        # Hash for encrypted rows; plaintext match for rows written before the key existed
        q = q.filter(or_(Lead.email_hash == vault.secure_hash(normalized), Lead.email == normalized))
    else:
        q = q.filter(Lead.email == normalized)
    return [decrypt_lead_fields(lead) for lead in q.order_by(Lead.created_at.desc()).all()]
