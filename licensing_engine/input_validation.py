"""
Input Validation
Sanitising helpers for user supplied emails and license codes
"""

import re
from typing import Optional

_EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


def sanitize_string_input(value, max_length=255) -> Optional[str]:
    """Sanitize string input"""
    if not isinstance(value, str):
        return None
    # Strip whitespace and limit length
    sanitized = value.strip()[:max_length]
    # Remove null bytes and control characters
    sanitized = ''.join(c for c in sanitized if ord(c) >= 32)
    return sanitized if sanitized else None


def validate_email(email) -> bool:
    """Basic email validation"""
    if not email or not isinstance(email, str):
        return False
    if len(email) > 254:  # RFC 5321 limit
        return False
    return _EMAIL_PATTERN.match(email) is not None


def validate_license_code(license_code) -> bool:
    """License codes are non-empty alphanumeric strings, dashes allowed"""
    if not license_code or not isinstance(license_code, str):
        return False
    if len(license_code) > 128:
        return False
    return all(c.isalnum() or c in '-_' for c in license_code)


def mask_email(email: Optional[str]) -> str:
    """Mask an email address for log output"""
    if not email:
        return "<none>"
    return f"{email[:5]}***"
