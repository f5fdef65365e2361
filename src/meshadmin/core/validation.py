"""
Schema-driven validation of module settings candidates.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict

from .schema import FieldDescriptor, ValidationRules


class ValidationIssue(BaseModel):
    """Field-scoped validation failure."""

    model_config = ConfigDict(frozen=True)

    field: str
    message: str


def is_empty(value: Any) -> bool:
    """Missing, ``None`` and ``""`` all count as "no value"."""
    return value is None or (isinstance(value, str) and value == "")


def _length(value: Any) -> int:
    if isinstance(value, (str, list, tuple, dict)):
        return len(value)
    return len(str(value))


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def check_rules(label: str, value: Any, rules: ValidationRules) -> str | None:
    """Return the first rule violation message for ``value``, if any."""
    if rules.min_length is not None and _length(value) < rules.min_length:
        return f"{label} must be at least {rules.min_length} characters"
    if rules.max_length is not None and _length(value) > rules.max_length:
        return f"{label} must be at most {rules.max_length} characters"
    if rules.pattern is not None:
        try:
            matched = re.search(rules.pattern, str(value)) is not None
        except re.error:
            matched = False
        if not matched:
            return rules.pattern_message or f"{label} format is invalid"
    if rules.min is not None or rules.max is not None:
        number = _number(value)
        if number is None:
            return f"{label} must be a number"
        if rules.min is not None and number < rules.min:
            return f"{label} must be at least {rules.min:g}"
        if rules.max is not None and number > rules.max:
            return f"{label} must be at most {rules.max:g}"
    return None


def validate_settings(
    schema: Iterable[FieldDescriptor], candidate: Mapping[str, Any]
) -> list[ValidationIssue]:
    """
    Validate ``candidate`` against ``schema`` without mutating it.

    Required fields with an empty value yield exactly one issue; empty
    optional fields skip rule checks entirely.
    """
    issues: list[ValidationIssue] = []
    for field in schema:
        if field.is_layout:
            continue
        label = field.display_label()
        value = candidate.get(field.key)
        if is_empty(value):
            if field.required:
                issues.append(ValidationIssue(field=field.key, message=f"{label} is required"))
            continue
        if field.validation is None:
            continue
        message = check_rules(label, value, field.validation)
        if message:
            issues.append(ValidationIssue(field=field.key, message=message))
    return issues


__all__ = ["ValidationIssue", "check_rules", "is_empty", "validate_settings"]
