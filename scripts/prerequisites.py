#!/usr/bin/env python3
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


@dataclass(frozen=True)
class Requirement:
    """``all_of`` fields AND at least one fully populated group of ``any_of``."""

    all_of: tuple[str, ...] = ()
    any_of: tuple[tuple[str, ...], ...] = ()

    @classmethod
    def from_config(cls, payload: Any) -> "Requirement":
        if not isinstance(payload, dict):
            return cls()
        all_of = tuple(str(item) for item in payload.get("allOf", []) if isinstance(item, str))
        groups = []
        for group in payload.get("anyOf", []):
            if isinstance(group, str):
                groups.append((group,))
            elif isinstance(group, list):
                names = tuple(str(item) for item in group if isinstance(item, str))
                if names:
                    groups.append(names)
        return cls(all_of=all_of, any_of=tuple(groups))

    @property
    def empty(self) -> bool:
        return not self.all_of and not self.any_of


@dataclass
class RequirementCheck:
    satisfied: bool
    missing: list[str] = field(default_factory=list)
    missing_groups: list[list[str]] = field(default_factory=list)

    def skip_reason(self, subject: str) -> str:
        parts = []
        if self.missing:
            parts.append(f"missing required fields: {', '.join(self.missing)}")
        if self.missing_groups:
            options = " or ".join("[" + ", ".join(group) + "]" for group in self.missing_groups)
            parts.append(f"none of the alternative field groups is set: {options}")
        return f"{subject}: credentials not configured ({'; '.join(parts)})"


def evaluate(requirement: Requirement, values: dict[str, Any]) -> RequirementCheck:
    """Evaluate against a field map; lookups are case-insensitive."""
    lowered = {str(key).lower(): value for key, value in values.items()}
    missing = [name for name in requirement.all_of if not has_value(lowered.get(name.lower()))]
    missing_groups: list[list[str]] = []
    if requirement.any_of:
        satisfied_group = any(
            all(has_value(lowered.get(name.lower())) for name in group) for group in requirement.any_of
        )
        if not satisfied_group:
            missing_groups = [list(group) for group in requirement.any_of]
    return RequirementCheck(
        satisfied=not missing and not missing_groups,
        missing=missing,
        missing_groups=missing_groups,
    )
