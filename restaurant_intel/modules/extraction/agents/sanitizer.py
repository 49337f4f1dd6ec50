"""Sanitizer: post-processing of reasoning-service output.

Fixes common LLM output errors before pydantic validation:
  1. Markdown code fences around the JSON body
  2. Price tier spelled differently ("Fine Dining", "moderate", ...)
  3. List fields returned as a comma-separated string or list of dicts
  4. Operating hours as "10:00 - 22:00" strings or abbreviated day keys
  5. Numbers returned as strings (rating, confidence)
  6. Invented provenance: dataSources always come from the inputs

Key casing is left alone: the pydantic models accept camelCase and
snake_case alike.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from restaurant_intel.modules.extraction.schemas import PRICE_RANGES, WEEKDAYS

# Map free-form price labels to the canonical tiers
PRICE_ALIASES: dict[str, str] = {
    "cheap": "budget",
    "inexpensive": "budget",
    "affordable": "budget",
    "moderate": "mid-range",
    "midrange": "mid-range",
    "mid": "mid-range",
    "casual": "mid-range",
    "fine": "fine-dining",
    "finedining": "fine-dining",
    "upscale": "fine-dining",
    "premium": "fine-dining",
    "expensive": "fine-dining",
}

_HOURS_RANGE = re.compile(r"(\d{1,2}:\d{2})\s*(?:-|–|to)\s*(\d{1,2}:\d{2})")
_DAY_ALIASES = {day[:3]: day for day in WEEKDAYS}


# ---------------------------------------------------------------------------
# Helper: strip markdown code fences from LLM response
# ---------------------------------------------------------------------------

def strip_code_fences(raw_text: str) -> str:
    """Strip markdown code fences (```json ... ```) from LLM response."""
    text = raw_text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        text = text[first_newline + 1:] if first_newline != -1 else text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


# ---------------------------------------------------------------------------
# Field normalizers
# ---------------------------------------------------------------------------

def normalize_price_range(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    key = re.sub(r"[\s_]+", "-", value.strip().lower())
    if key in PRICE_RANGES:
        return key
    return PRICE_ALIASES.get(key.replace("-", ""))


def coerce_string_list(value: Any) -> list[str]:
    """Accept a list, a comma-separated string or a list of {name|value} dicts."""
    if value is None:
        return []
    if isinstance(value, str):
        items: list[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        return []

    cleaned: list[str] = []
    for item in items:
        if isinstance(item, dict):
            item = item.get("name", item.get("value"))
        if item is None:
            continue
        text = str(item).strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned


def normalize_hours(value: Any) -> dict[str, dict[str, Any]] | None:
    if not isinstance(value, dict):
        return None
    hours: dict[str, dict[str, Any]] = {}
    for raw_day, raw_entry in value.items():
        day = _DAY_ALIASES.get(str(raw_day).strip().lower()[:3])
        if day is None:
            continue
        if isinstance(raw_entry, dict):
            if raw_entry.get("closed") in (True, "true", "True"):
                hours[day] = {"closed": True}
            elif raw_entry.get("open") and raw_entry.get("close"):
                hours[day] = {"open": str(raw_entry["open"]), "close": str(raw_entry["close"])}
        elif isinstance(raw_entry, str):
            if "closed" in raw_entry.lower():
                hours[day] = {"closed": True}
                continue
            match = _HOURS_RANGE.search(raw_entry)
            if match:
                hours[day] = {"open": match.group(1), "close": match.group(2)}
    return hours or None


def to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def clamp_confidence(value: Any, default: float = 0.5) -> float:
    number = to_float(value)
    if number is None:
        return default
    # Some models answer on a 0-100 scale
    if number > 1:
        number = number / 100
    return max(0.0, min(1.0, number))


# ---------------------------------------------------------------------------
# Response sanitizers
# ---------------------------------------------------------------------------

def sanitize_record(data: dict[str, Any]) -> dict[str, Any]:
    """Clean one restaurant record dict as returned by the model."""
    record = dict(data)
    record.pop("restaurantId", None)
    record.pop("restaurant_id", None)

    for key in ("priceRange", "price_range"):
        if key in record:
            record[key] = normalize_price_range(record[key])

    for key in ("cuisineTypes", "cuisine_types", "amenities"):
        if key in record:
            record[key] = coerce_string_list(record[key])

    for key in ("operatingHours", "operating_hours"):
        if key in record:
            record[key] = normalize_hours(record[key])

    ratings = record.get("ratings")
    if isinstance(ratings, dict):
        ratings = dict(ratings)
        if "average" in ratings:
            ratings["average"] = to_float(ratings["average"])
        if "total" in ratings:
            total = to_float(ratings["total"])
            ratings["total"] = int(total) if total is not None else None
        if not isinstance(ratings.get("sources"), dict):
            ratings["sources"] = {}
        record["ratings"] = ratings
    elif ratings is not None:
        record["ratings"] = None

    for key in ("address", "contactInfo", "contact_info"):
        if key in record and not isinstance(record[key], dict):
            record[key] = None

    return record


def sanitize_synthesis_response(
    data: dict[str, Any],
    provenance: Sequence[dict[str, Any]],
) -> dict[str, Any]:
    """Clean a conflict-synthesis response.

    ``provenance`` is the union of the input sources' dataSources; it
    replaces whatever the model returned.
    """
    raw_record = data.get("synthesizedData", data.get("synthesized_data"))
    record = sanitize_record(raw_record) if isinstance(raw_record, dict) else {}
    record.pop("data_sources", None)
    record["dataSources"] = list(provenance)

    conflicts = data.get("conflictsResolved", data.get("conflicts_resolved"))
    if isinstance(conflicts, list):
        conflicts = [
            "; ".join(f"{k}: {v}" for k, v in item.items()) if isinstance(item, dict) else str(item)
            for item in conflicts
            if item
        ]
    else:
        conflicts = coerce_string_list(conflicts)

    reasoning = data.get("reasoning")
    return {
        "synthesizedData": record,
        "confidence": clamp_confidence(data.get("confidence")),
        "reasoning": str(reasoning).strip() if reasoning else "No rationale provided",
        "conflictsResolved": conflicts,
    }


def sanitize_cuisine_response(data: Any) -> list[str]:
    """Accept a bare list or an object wrapping it."""
    if isinstance(data, dict):
        for key in ("cuisineTypes", "cuisine_types", "cuisines", "cuisine"):
            if key in data:
                return coerce_string_list(data[key])
        return []
    return coerce_string_list(data)


def sanitize_address_response(data: dict[str, Any]) -> dict[str, Any]:
    address: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str):
            value = value.strip() or None
        address[key] = value
    if "postal_code" in address and "postalCode" not in address:
        address["postalCode"] = address.pop("postal_code")
    if address.get("postalCode") is not None:
        address["postalCode"] = str(address["postalCode"])
    if not address.get("formatted"):
        parts = [address.get(k) for k in ("street", "city", "state", "postalCode", "country")]
        address["formatted"] = ", ".join(str(p) for p in parts if p)
    address["confidence"] = clamp_confidence(address.get("confidence"))
    return address


def fallback_provenance(source: str, reliability: float) -> dict[str, Any]:
    return {
        "source": source,
        "extractedAt": datetime.now(timezone.utc).isoformat(),
        "reliability": reliability,
    }
