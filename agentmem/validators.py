"""
Shared validation helpers for memory services.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Type

from agentmem.config import MAX_EMBEDDING_TEXT_LENGTH
from agentmem.errors import ValidationIssue


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_percentage(value: float, field: str) -> None:
    if value < 0.0 or value > 100.0:
        raise ValidationIssue(f"{field} must be between 0 and 100", field=field, error_type="out_of_range")


def validate_similarity(value: float, field: str) -> None:
    if value < 0.0 or value > 1.0:
        raise ValidationIssue(f"{field} must be between 0.0 and 1.0", field=field, error_type="out_of_range")


def validate_choice(value: str, field: str, choices: Type[Enum]) -> str:
    allowed = {item.value for item in choices}
    if not isinstance(value, str) or value.strip().lower() not in allowed:
        raise ValidationIssue(
            f"{field} must be one of: {', '.join(sorted(allowed))}",
            field=field,
            error_type="invalid_choice",
        )
    return value.strip().lower()


def validate_embedding_text(text: str) -> None:
    validate_required_text(text, "text", MAX_EMBEDDING_TEXT_LENGTH)
