import re

# Simple, pragmatic patterns
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def sanitize(val, max_len: int) -> str:
    """
    Trim, enforce max length, drop NUL bytes. Non-strings become "".
    """
    if not isinstance(val, str):
        return ""
    return val.strip()[:max_len].replace("\0", "")


def is_valid_email(val: str | None) -> bool:
    if not val:
        return False
    return bool(_EMAIL_RE.match(val))


def email_domain(val: str | None) -> str | None:
    """Domain part only; the one piece of an address that is safe to log."""
    if not val or "@" not in val:
        return None
    return val.rsplit("@", 1)[1].lower() or None
