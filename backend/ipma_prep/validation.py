"""Input sanitisation and field validation for content and account mutations."""

from __future__ import annotations

import re
from typing import Any, Optional

from .errors import ValidationError

MAX_INPUT_LENGTH = 10_000
MAX_EMAIL_LENGTH = 254

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_ANGLE_BRACKETS = re.compile(r"[<>]")


def sanitize_input(value: Any) -> str:
    """Trim, drop angle brackets and cap the length. Non-strings become ``""``."""
    if not isinstance(value, str):
        return ""
    return _ANGLE_BRACKETS.sub("", value.strip())[:MAX_INPUT_LENGTH]


def is_valid_email(email: Any) -> bool:
    return isinstance(email, str) and len(email) <= MAX_EMAIL_LENGTH and bool(_EMAIL_PATTERN.match(email))


def _bounded_text(value: Any, *, label: str, field: str, minimum: int, maximum: int) -> str:
    sanitized = sanitize_input(value)
    if not sanitized:
        raise ValidationError(f"{label} is required", field=field)
    if len(sanitized) < minimum:
        raise ValidationError(f"{label} must be at least {minimum} characters long", field=field)
    if len(sanitized) > maximum:
        raise ValidationError(f"{label} must be less than {maximum} characters", field=field)
    return sanitized


def validate_topic_title(title: Any) -> str:
    return _bounded_text(title, label="Title", field="title", minimum=3, maximum=200)


def validate_subtopic_title(title: Any) -> str:
    return _bounded_text(title, label="Subtopic title", field="title", minimum=1, maximum=200)


def validate_question_prompt(prompt: Any) -> str:
    return _bounded_text(prompt, label="Question", field="prompt", minimum=10, maximum=5000)


def validate_kpi_name(name: Any) -> str:
    return _bounded_text(name, label="KPI name", field="name", minimum=2, maximum=100)


def validate_answer(answer: Any) -> str:
    return _bounded_text(answer, label="Answer", field="answer", minimum=10, maximum=MAX_INPUT_LENGTH)


def validate_email(email: Any, *, field: str = "email") -> str:
    normalized = sanitize_input(email).lower()
    if not normalized:
        raise ValidationError("Email is required", field=field)
    if not is_valid_email(normalized):
        raise ValidationError(f"'{normalized}' is not a valid email address", field=field)
    return normalized


def validate_company_code(code: Any) -> str:
    sanitized = sanitize_input(code).upper()
    if not sanitized:
        raise ValidationError("Company code is required", field="code")
    if len(sanitized) > 64:
        raise ValidationError("Company code must be less than 64 characters", field="code")
    return sanitized


def validate_quality_rating(rating: Any) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 0 <= rating <= 3:
        raise ValidationError("Quality rating must be an integer between 0 and 3", field="quality_rating")
    return rating


def require_reference(exists: bool, *, label: str, value: Optional[str], field: str) -> None:
    if not value:
        raise ValidationError(f"{label} is required", field=field)
    if not exists:
        raise ValidationError(f"{label} '{value}' does not exist", field=field)


__all__ = [
    "MAX_INPUT_LENGTH",
    "is_valid_email",
    "require_reference",
    "sanitize_input",
    "validate_answer",
    "validate_company_code",
    "validate_email",
    "validate_kpi_name",
    "validate_question_prompt",
    "validate_quality_rating",
    "validate_subtopic_title",
    "validate_topic_title",
]
