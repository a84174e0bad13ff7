# /flowbot/workflows/validator.py

"""
Answer validators for question nodes.

Pure functions: fixed-format matching only, no I/O and no logging.
"""

import re
from typing import Callable, Dict, Optional, TypedDict


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")
PHONE_PATTERN = re.compile(r"^\+?\d{10,15}$")
URL_PATTERN = re.compile(r"^https?://[A-Za-z0-9\-._~%]+(\.[A-Za-z0-9\-._~%]+)+(:\d+)?(/\S*)?$", re.IGNORECASE)


def _valid() -> ValidationResult:
    return {"is_valid": True, "error_code": None, "message": None}


def validate_email(answer: str) -> ValidationResult:
    if not EMAIL_PATTERN.match(answer):
        return {"is_valid": False, "error_code": "INVALID_EMAIL", "message": "email address"}
    return _valid()


def validate_phone_number(answer: str) -> ValidationResult:
    # Spaces, dashes, dots and brackets are common separators
    digits = re.sub(r"[\s\-().]", "", answer)
    if not PHONE_PATTERN.match(digits):
        return {"is_valid": False, "error_code": "INVALID_PHONE_NUMBER", "message": "phone number"}
    return _valid()


def validate_url(answer: str) -> ValidationResult:
    if not URL_PATTERN.match(answer):
        return {"is_valid": False, "error_code": "INVALID_URL", "message": "URL"}
    return _valid()


VALIDATORS: Dict[str, Callable[[str], ValidationResult]] = {
    "email": validate_email,
    "phonenumber": validate_phone_number,
    "url": validate_url,
}


def normalize_validation_kind(kind: Optional[str]) -> str:
    """'Phone Number', 'phone_number' and 'phonenumber' all name the same validator."""
    return re.sub(r"[\s_\-]", "", (kind or "").lower())


def is_known_validation(kind: Optional[str]) -> bool:
    normalized = normalize_validation_kind(kind)
    return normalized in ("", "none") or normalized in VALIDATORS


def validate_answer(kind: Optional[str], answer: str) -> ValidationResult:
    """
    Apply the configured validator to a (stripped) answer.
    No validator, 'none', or an unrecognized kind passes every answer through.
    """
    validator = VALIDATORS.get(normalize_validation_kind(kind))
    if validator is None:
        return _valid()
    return validator(answer.strip())
