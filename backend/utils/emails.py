"""Email normalisation and log-safe correlation ids."""
import hashlib
from typing import Optional

from email_validator import validate_email, EmailNotValidError

from errors import ValidationError


def normalize_email(raw: Optional[str]) -> str:
    """Trim, lowercase and syntax-check an email address.

    Raises ValidationError for missing or malformed input.
    """
    if raw is None or not isinstance(raw, str) or not raw.strip():
        raise ValidationError("Valid email required")
    candidate = raw.strip().lower()
    try:
        result = validate_email(candidate, check_deliverability=False)
    except EmailNotValidError:
        raise ValidationError("Valid email required")
    return result.normalized.lower()


def email_hash(email: Optional[str]) -> str:
    """Short stable hash used in logs and audit entries instead of the address."""
    if not email:
        return "-"
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]
