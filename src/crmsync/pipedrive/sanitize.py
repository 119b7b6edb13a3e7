"""Outbound payload sanitization.

Free-text values are stripped of script blocks and HTML tags, trimmed, and
truncated to the configured maximum length before they are sent to
Pipedrive. Disabled entirely when enable_data_sanitization is off.
"""

from __future__ import annotations

import re
from typing import Any

from src.crmsync.config import PipedriveLimits

_SCRIPT_RE = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")


def sanitize_text(value: str | None, max_length: int) -> str | None:
    """Strip markup and truncate; None and non-strings pass through unchanged."""
    if value is None or not isinstance(value, str):
        return value
    cleaned = _SCRIPT_RE.sub("", value)
    cleaned = _TAG_RE.sub("", cleaned)
    cleaned = cleaned.strip()
    return cleaned[:max_length]


class Sanitizer:
    """Applies per-field limits to person, organization and activity payloads.

    Args:
        limits: Maximum lengths per field.
        enabled: When False every method returns its input unchanged.
    """

    def __init__(self, limits: PipedriveLimits, enabled: bool = True) -> None:
        self._limits = limits
        self._enabled = enabled

    def text(self, value: str | None, field: str) -> str | None:
        if not self._enabled:
            return value
        return sanitize_text(value, getattr(self._limits, field))

    def person(self, payload: dict[str, Any]) -> dict[str, Any]:
        if not self._enabled:
            return payload
        result = dict(payload)
        if "name" in result:
            result["name"] = self.text(result["name"], "name")
        for key, limit_field in (("email", "email"), ("phone", "phone")):
            if key in result and result[key] is not None:
                result[key] = self._contact_values(result[key], limit_field)
        if "org_name" in result:
            result["org_name"] = self.text(result["org_name"], "org_name")
        return result

    def organization(self, payload: dict[str, Any]) -> dict[str, Any]:
        if not self._enabled:
            return payload
        result = dict(payload)
        if "name" in result:
            result["name"] = self.text(result["name"], "org_name")
        return result

    def activity(self, payload: dict[str, Any]) -> dict[str, Any]:
        if not self._enabled:
            return payload
        result = dict(payload)
        if "subject" in result:
            result["subject"] = self.text(result["subject"], "subject")
        if "note" in result:
            result["note"] = self.text(result["note"], "note")
        return result

    def _contact_values(self, value: Any, field: str) -> Any:
        if isinstance(value, str):
            return self.text(value, field)
        if isinstance(value, list):
            cleaned = []
            for entry in value:
                if isinstance(entry, dict):
                    cleaned.append({**entry, "value": self.text(entry.get("value"), field)})
                else:
                    cleaned.append(self.text(entry, field))
            return cleaned
        return value
