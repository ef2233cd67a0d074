from __future__ import annotations

import json
import re
from typing import Any

from clear_terms.analysis.provider import ProviderFailure

REQUIRED_FIELDS = ("site_name", "categories")

_FENCE_RE = re.compile(r"```(?:json)?\s*")


def _parse_json_object(content: str) -> Any:
    c = (content or "").strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except ValueError:
        pass

    # Fallback: extract the first {...} block.
    m = re.search(r"\{.*\}", c, re.S)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except ValueError:
        return None


def parse_report(text: str) -> dict[str, Any]:
    """Turn raw provider text into a report dict, or raise ``ProviderFailure``."""
    cleaned = _FENCE_RE.sub("", text or "").strip()
    lowered = cleaned[:32].lower()
    if lowered.startswith("<!doctype") or lowered.startswith("<html"):
        raise ProviderFailure("Provider returned HTML instead of JSON")

    report = _parse_json_object(cleaned)
    if not isinstance(report, dict):
        raise ProviderFailure("Unable to parse provider response as a JSON object")
    validate_report(report)
    return report


def validate_report(report: dict[str, Any]) -> None:
    missing = [name for name in REQUIRED_FIELDS if not report.get(name)]
    if missing:
        raise ProviderFailure(f"Invalid report: missing required fields {', '.join(missing)}")
    if not isinstance(report["site_name"], str):
        raise ProviderFailure("Invalid report: site_name must be a string")
    if not isinstance(report["categories"], (dict, list)):
        raise ProviderFailure("Invalid report: categories must be an object or a list")
