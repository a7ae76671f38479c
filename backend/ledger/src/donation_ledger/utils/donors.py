"""Donor identity helpers: anonymity rules and email address hygiene."""

from pydantic import EmailStr, TypeAdapter, ValidationError

ANONYMOUS_EMAIL_PLACEHOLDER = "anonymous@donation.com"
ANONYMOUS_NAME = "anonymous"

_email_adapter: TypeAdapter[str] = TypeAdapter(EmailStr)


def normalize_email(email: str | None) -> str | None:
    """Trim and lowercase an email address; blank becomes None."""
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def is_valid_email(email: str | None) -> bool:
    """Check that an address is syntactically valid (no DNS lookup)."""
    normalized = normalize_email(email)
    if normalized is None:
        return False
    try:
        _email_adapter.validate_python(normalized)
    except ValidationError:
        return False
    return True


def is_anonymous_donor(email: str | None, name: str | None) -> bool:
    """Classify a donor as anonymous.

    A donor is anonymous when no email was given, when the checkout used the
    placeholder address, or when the name is literally "anonymous".
    """
    normalized = normalize_email(email)
    if normalized is None or normalized == ANONYMOUS_EMAIL_PLACEHOLDER:
        return True
    return (name or "").strip().lower() == ANONYMOUS_NAME


def is_receipt_deliverable(email: str | None) -> bool:
    """Receipts go only to real, syntactically valid addresses."""
    normalized = normalize_email(email)
    return normalized != ANONYMOUS_EMAIL_PLACEHOLDER and is_valid_email(normalized)
