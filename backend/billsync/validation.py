from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping


class ValidationError(ValueError):
    """400-level input problem; `errors` maps field -> message."""

    def __init__(self, message: str = "Validation failed", errors: dict | None = None):
        super().__init__(message)
        self.errors = dict(errors or {})


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate bill number)."""


class NotFoundError(LookupError):
    """404-level missing entity."""

    def __init__(self, message: str, kind: str | None = None):
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class EntityValidationPolicy:
    """
    Central policy layer for one entity kind:
    - required: fields that must be present and non-blank
    - max_lengths: string length bounds
    - choices: enum membership for optional fields
    - non_negative: numeric fields that must parse and be >= 0 when present
    - numeric: numeric fields that must parse when present (sign unrestricted)
    - labels: human-facing field names used in messages
    """
    required: frozenset[str] = frozenset()
    max_lengths: Mapping[str, int] = field(default_factory=dict)
    choices: Mapping[str, tuple] = field(default_factory=dict)
    non_negative: frozenset[str] = frozenset()
    numeric: frozenset[str] = frozenset()
    labels: Mapping[str, str] = field(default_factory=dict)

    def label(self, key: str) -> str:
        return self.labels.get(key, key.replace("_", " ").capitalize())


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def parse_number(value: Any) -> float | None:
    """Lenient numeric parse: None/""/garbage -> None, bools are not numbers."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            parsed = float(stripped)
        except ValueError:
            return None
        return None if math.isnan(parsed) else parsed
    return None


def to_number(value: Any) -> float:
    """parse_number with 0 for anything unreadable (aggregation semantics)."""
    parsed = parse_number(value)
    return 0.0 if parsed is None else parsed


def collect_errors(data: Mapping[str, Any], policy: EntityValidationPolicy) -> dict:
    """Apply a policy to a full (merged) record and return a field -> message map."""
    errors: dict[str, str] = {}

    for key in sorted(policy.required):
        if is_blank(data.get(key)):
            errors[key] = f"{policy.label(key)} is required"

    for key, limit in policy.max_lengths.items():
        if key in errors:
            continue
        value = data.get(key)
        if isinstance(value, str) and len(value) > limit:
            errors[key] = f"{policy.label(key)} must be less than {limit} characters"

    for key, allowed in policy.choices.items():
        value = data.get(key)
        if not is_blank(value) and value not in allowed:
            errors[key] = f"Invalid {key}. Must be {', '.join(allowed[:-1])}, or {allowed[-1]}"

    for key in sorted(policy.non_negative | policy.numeric):
        if key not in data or data[key] is None:
            continue
        parsed = parse_number(data[key])
        if key in policy.non_negative and (parsed is None or parsed < 0):
            errors[key] = f"{policy.label(key)} must be a valid positive number"
        elif parsed is None:
            errors[key] = f"{policy.label(key)} must be a valid number"

    return errors


def merge_patch(record: Mapping[str, Any], patch: Mapping[str, Any], fields: Iterable[str] | None = None) -> dict:
    """
    Field-by-field merge of a partial update over a full record.

    Only keys in `fields` (all patch keys when None) are taken from the patch;
    neither input is mutated.
    """
    allowed = None if fields is None else set(fields)
    merged = dict(record)
    for key, value in patch.items():
        if allowed is not None and key not in allowed:
            continue
        merged[key] = value
    return merged


def pick_fields(data: Mapping[str, Any], fields: Iterable[str]) -> dict:
    """Whitelist copy: only the listed keys that are present in data."""
    return {key: data[key] for key in fields if key in data}
