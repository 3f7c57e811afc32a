"""Duplicate detection for policy templates and legacy records.

Templates are unique by ``policy_number_key``.  When a legacy record is
matched against an existing template, the number/type/provider triple
decides whether the template can be reused as-is, merged into (allowed
only when duplicates are allowed), or is a conflict.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class TemplateMatch(StrEnum):
    """What to do with an incoming template relative to what is stored."""

    CREATE = "create"       # nothing stored under this policy number
    REUSE = "reuse"         # stored template is the same policy
    MERGE = "merge"         # same number, different type/provider, duplicates allowed
    CONFLICT = "conflict"   # same number, different type/provider, duplicates not allowed


def policy_number_key(policy_number: str) -> str:
    """Case-insensitive uniqueness key for a policy number."""
    return policy_number.strip().lower()


def legacy_match_key(policy_number: str, policy_type: str, provider: str) -> str:
    """Composite key a legacy record is matched on: number|type|provider."""
    return "|".join(
        (policy_number_key(policy_number), policy_type.strip().lower(), provider.strip().lower())
    )


def match_template(existing: Any | None, incoming: dict[str, Any], *, allow_duplicates: bool) -> TemplateMatch:
    """
    Classify ``incoming`` (cleaned template fields) against ``existing``.

    ``existing`` is the template stored under the same policy number key,
    or None.
    """
    if existing is None:
        return TemplateMatch.CREATE
    same = legacy_match_key(existing.policy_number, existing.policy_type, existing.provider) == legacy_match_key(
        incoming["policy_number"], incoming["policy_type"], incoming["provider"]
    )
    if same:
        return TemplateMatch.REUSE
    return TemplateMatch.MERGE if allow_duplicates else TemplateMatch.CONFLICT


def find_duplicate_keys(rows: list[dict[str, Any]], key_field: str = "policy_number") -> dict[str, list[Any]]:
    """Group row ids by case-insensitive ``key_field``; only keys seen more than once."""
    groups: dict[str, list[Any]] = {}
    for row in rows:
        value = row.get(key_field)
        if not value:
            continue
        groups.setdefault(policy_number_key(value), []).append(row.get("id"))
    return {key: ids for key, ids in groups.items() if len(ids) > 1}
