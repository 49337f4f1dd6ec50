"""Stage 3: Schema Validator.

Checks a CandidateRecord against the canonical RestaurantRecord schema and
scores it:
  - completeness: 70% from required fields, 30% from optional fields
  - accuracy: 100 minus fixed penalties for specific defects
  - warnings: advisory quality flags that never affect validity

Scoring runs on the raw payload regardless of structural validity, so an
invalid record still gets a best-effort completeness estimate. The
Validator is pure and never raises.
"""

from __future__ import annotations

import math
import re
from typing import Any

import structlog
from pydantic import ValidationError

from restaurant_intel.modules.extraction.schemas import (
    CandidateRecord,
    RestaurantRecord,
    ValidationOutcome,
    is_valid_email,
)

logger = structlog.get_logger()

REQUIRED_FIELDS: tuple[str, ...] = (
    "name", "address.city", "address.state", "address.country",
    "cuisineTypes", "contactInfo", "ratings", "operatingHours",
    "priceRange", "amenities", "dataSources",
)
OPTIONAL_FIELDS: tuple[str, ...] = (
    "address.street", "address.postalCode", "address.coordinates",
    "contactInfo.phone", "contactInfo.email", "contactInfo.website",
    "ratings.average", "ratings.total",
)

REQUIRED_WEIGHT = 70.0
OPTIONAL_WEIGHT = 30.0

# Accuracy penalties
PENALTY_NAME = 10
PENALTY_LOCALITY = 15
PENALTY_PHONE = 5
PENALTY_EMAIL = 5
PENALTY_CUISINE = 10
PENALTY_RATING = 5
PENALTY_HOURS = 10

# Warning texts (the Orchestrator keys synthesis decisions off these)
WARNING_LONG_NAME = "Restaurant name is unusually long"
WARNING_TOO_MANY_CUISINES = "Too many cuisine types specified"
WARNING_PHONE_FORMAT = "Phone number may not be Indian format"
WARNING_MISSING_COORDINATES = "Missing geographical coordinates"
WARNING_RATING_WITHOUT_TOTAL = "Average rating provided without total count"

_VALID_PHONE = re.compile(r"^(\+91|0)?[6-9]\d{9}$")
_INDIAN_MOBILE = re.compile(r"^[6-9]\d{9}$")


class SchemaValidator:
    """Pure validator; the same input always yields an equal outcome."""

    agent_name = "SchemaValidator"

    async def process(self, candidate: CandidateRecord) -> ValidationOutcome:
        return self.validate(candidate)

    def validate(self, candidate: CandidateRecord | dict[str, Any]) -> ValidationOutcome:
        if isinstance(candidate, CandidateRecord):
            payload = candidate.to_payload()
            defaulted = list(candidate.defaulted_fields)
        else:
            payload = dict(candidate)
            defaulted = []

        errors: list[str] = []
        missing: list[str] = []
        try:
            RestaurantRecord.model_validate(payload)
        except ValidationError as exc:
            for err in exc.errors():
                path = ".".join(str(part) for part in err["loc"])
                errors.append(f"{path}: {err['msg']}")
                if err["type"] == "missing":
                    missing.append(path)

        outcome = ValidationOutcome(
            valid=not errors,
            completeness=compute_completeness(payload),
            accuracy=compute_accuracy(payload),
            errors=errors,
            warnings=collect_warnings(payload),
            missing_fields=missing,
            defaulted_fields=defaulted,
        )
        logger.debug(
            "SchemaValidator: record validated",
            valid=outcome.valid,
            completeness=outcome.completeness,
            accuracy=outcome.accuracy,
            errors=len(outcome.errors),
            warnings=len(outcome.warnings),
        )
        return outcome


# ------------------------------------------------------------------
# Scoring (pure functions over the camelCase payload)
# ------------------------------------------------------------------


def compute_completeness(payload: dict[str, Any]) -> float:
    required = sum(1 for path in REQUIRED_FIELDS if has_field(payload, path))
    optional = sum(1 for path in OPTIONAL_FIELDS if has_field(payload, path))
    score = (
        required / len(REQUIRED_FIELDS) * REQUIRED_WEIGHT
        + optional / len(OPTIONAL_FIELDS) * OPTIONAL_WEIGHT
    )
    # Round half up, matching how scores are displayed elsewhere
    return float(min(100, max(0, math.floor(score + 0.5))))


def compute_accuracy(payload: dict[str, Any]) -> float:
    score = 100

    name = payload.get("name")
    if not isinstance(name, str) or len(name.strip()) < 2:
        score -= PENALTY_NAME

    if not has_field(payload, "address.city") or not has_field(payload, "address.state"):
        score -= PENALTY_LOCALITY

    phone = get_path(payload, "contactInfo.phone")
    if phone and not is_valid_phone(phone):
        score -= PENALTY_PHONE

    email = get_path(payload, "contactInfo.email")
    if email and not (isinstance(email, str) and is_valid_email(email)):
        score -= PENALTY_EMAIL

    if not has_field(payload, "cuisineTypes"):
        score -= PENALTY_CUISINE

    average = get_path(payload, "ratings.average")
    if average is not None and not _in_rating_range(average):
        score -= PENALTY_RATING

    if not has_field(payload, "operatingHours"):
        score -= PENALTY_HOURS

    return float(min(100, max(0, score)))


def collect_warnings(payload: dict[str, Any]) -> list[str]:
    warnings: list[str] = []

    name = payload.get("name")
    if isinstance(name, str) and len(name) > 100:
        warnings.append(WARNING_LONG_NAME)

    cuisines = payload.get("cuisineTypes")
    if isinstance(cuisines, list) and len(cuisines) > 10:
        warnings.append(WARNING_TOO_MANY_CUISINES)

    phone = get_path(payload, "contactInfo.phone")
    if phone and not is_indian_phone(phone):
        warnings.append(WARNING_PHONE_FORMAT)

    if not has_field(payload, "address.coordinates"):
        warnings.append(WARNING_MISSING_COORDINATES)

    if get_path(payload, "ratings.average") and not get_path(payload, "ratings.total"):
        warnings.append(WARNING_RATING_WITHOUT_TOTAL)

    return warnings


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def get_path(payload: Any, path: str) -> Any:
    current = payload
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def is_empty(value: Any) -> bool:
    """None, blank strings, empty collections and dicts of empty values."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, dict):
        return all(is_empty(v) for v in value.values())
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


def has_field(payload: dict[str, Any], path: str) -> bool:
    return not is_empty(get_path(payload, path))


def is_valid_phone(phone: Any) -> bool:
    if not isinstance(phone, str):
        return False
    return bool(_VALID_PHONE.match(re.sub(r"[\s-]", "", phone)))


def is_indian_phone(phone: Any) -> bool:
    if not isinstance(phone, str):
        return False
    digits = re.sub(r"[\s+-]", "", phone)
    return digits.startswith("91") or bool(_INDIAN_MOBILE.match(digits))


def _in_rating_range(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return 0 <= value <= 5
