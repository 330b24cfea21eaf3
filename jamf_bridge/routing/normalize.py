"""
Enum-like string normalization.

The backend accepts unknown enum strings and silently ignores them, so common
aliases are mapped to their canonical spelling before a write is sent.
Unrecognized values pass through stripped; caller intent is preserved.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

POLICY_FREQUENCY_ALIASES: Mapping[str, str] = {
    "once per computer": "Once per computer",
    "once per user per computer": "Once per user per computer",
    "once per user": "Once per user",
    # Tenants vary; both spellings exist, so only casing and shorthands are changed.
    "once per day": "Once per day",
    "once every day": "Once every day",
    "daily": "Once per day",
    "once per week": "Once per week",
    "once every week": "Once every week",
    "weekly": "Once per week",
    "once per month": "Once per month",
    "once every month": "Once every month",
    "monthly": "Once per month",
    "ongoing": "Ongoing",
}

NETWORK_REQUIREMENT_ALIASES: Mapping[str, str] = {
    "any": "Any",
    "ethernet": "Ethernet",
}

SCRIPT_PRIORITY_ALIASES: Mapping[str, str] = {
    "before": "Before",
    "after": "After",
    "at reboot": "At Reboot",
    "at_reboot": "At Reboot",
}


def normalize_enum(value: Any, aliases: Mapping[str, str]) -> Optional[str]:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    return aliases.get(raw.lower(), raw)


def normalize_policy_frequency(value: Any) -> Optional[str]:
    return normalize_enum(value, POLICY_FREQUENCY_ALIASES)


def normalize_network_requirements(value: Any) -> Optional[str]:
    return normalize_enum(value, NETWORK_REQUIREMENT_ALIASES)


def normalize_script_priority(value: Any) -> Optional[str]:
    return normalize_enum(value, SCRIPT_PRIORITY_ALIASES)
