"""Restaurant record schemas.

Two families of models live here:

  - The canonical schema (``RestaurantRecord`` and its parts) is the contract
    the Validator enforces and every persisted record satisfies.
  - ``CandidateRecord`` is the lenient in-flight shape the stages pass
    around. It accepts anything the heuristics or the reasoning service may
    produce so that defects can be *reported* rather than raised.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model: snake_case attributes, camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Shared vocabularies
# ---------------------------------------------------------------------------

PriceRange = Literal["budget", "mid-range", "fine-dining", "luxury"]
PRICE_RANGES: tuple[str, ...] = ("budget", "mid-range", "fine-dining", "luxury")

WEEKDAYS: tuple[str, ...] = (
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_TIME_PATTERN = re.compile(r"^\d{1,2}:\d{2}$")

# Top-level keys of the canonical schema
CANONICAL_FIELDS: frozenset[str] = frozenset({
    "name", "address", "cuisine_types", "contact_info", "ratings",
    "operating_hours", "price_range", "amenities", "data_sources",
})


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# ---------------------------------------------------------------------------
# Canonical schema
# ---------------------------------------------------------------------------


class Coordinates(CamelModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Address(CamelModel):
    street: str | None = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str | None = None
    country: str = Field(..., min_length=1)
    coordinates: Coordinates | None = None
    formatted: str | None = None


class ContactInfo(CamelModel):
    phone: str | None = None
    email: str | None = None
    website: str | None = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str | None) -> str | None:
        if value is not None and not is_valid_email(value):
            raise ValueError("invalid email address")
        return value

    @field_validator("website")
    @classmethod
    def _check_website(cls, value: str | None) -> str | None:
        if value is not None and not is_valid_url(value):
            raise ValueError("invalid URL")
        return value


class SourceRating(CamelModel):
    rating: float = Field(..., ge=0, le=5)
    count: int = Field(..., ge=0)


class Ratings(CamelModel):
    average: float | None = Field(None, ge=0, le=5)
    total: int | None = Field(None, ge=0)
    sources: dict[str, SourceRating] = Field(default_factory=dict)


class DayHours(CamelModel):
    """Either an open/close pair (``HH:MM``) or ``closed=True``."""

    open: str | None = None
    close: str | None = None
    closed: bool = False

    @model_validator(mode="after")
    def _check_shape(self) -> DayHours:
        if self.closed:
            return self
        if not self.open or not self.close:
            raise ValueError("open and close are required unless closed is true")
        for value in (self.open, self.close):
            if not _TIME_PATTERN.match(value):
                raise ValueError(f"invalid time '{value}', expected HH:MM")
        return self


class DataSource(CamelModel):
    """Provenance entry: who produced the data, when, and how trustworthy."""

    source: str = Field(..., min_length=1)
    url: str | None = None
    extracted_at: datetime
    reliability: float = Field(..., ge=0.0, le=1.0)


class RestaurantRecord(CamelModel):
    """The canonical restaurant schema."""

    name: str = Field(..., min_length=2, max_length=200)
    address: Address
    cuisine_types: list[str] = Field(..., min_length=1)
    contact_info: ContactInfo
    ratings: Ratings
    operating_hours: dict[str, DayHours]
    price_range: PriceRange
    amenities: list[str]
    data_sources: list[DataSource] = Field(..., min_length=1)

    @field_validator("operating_hours")
    @classmethod
    def _check_weekdays(cls, value: dict[str, DayHours]) -> dict[str, DayHours]:
        unknown = sorted(set(value) - set(WEEKDAYS))
        if unknown:
            raise ValueError(f"unknown weekday(s): {', '.join(unknown)}")
        return value


class PersistedRestaurant(RestaurantRecord):
    """A canonical record as stored by the repository."""

    id: str
    status: Literal["pending", "validated", "failed"] = "pending"
    completeness: float = Field(0.0, ge=0, le=100)
    accuracy: float = Field(0.0, ge=0, le=100)
    extracted_at: datetime
    validated_at: datetime | None = None
    website: str | None = None
    description: str | None = None
    defaulted_fields: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# In-flight shapes
# ---------------------------------------------------------------------------


class CandidateAddress(CamelModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    coordinates: Coordinates | None = None
    formatted: str | None = None


class CandidateContactInfo(CamelModel):
    phone: str | None = None
    email: str | None = None
    website: str | None = None


class CandidateSourceRating(CamelModel):
    rating: float
    count: int = 0


class CandidateRatings(CamelModel):
    average: float | None = None
    total: int | None = None
    sources: dict[str, CandidateSourceRating] = Field(default_factory=dict)


class CandidateRecord(CamelModel):
    """A partially filled restaurant record under construction.

    ``defaulted_fields`` lists the canonical paths whose value was assumed by
    a fallback rather than observed in the source.
    """

    name: str | None = None
    address: CandidateAddress | None = None
    cuisine_types: list[str] | None = None
    contact_info: CandidateContactInfo | None = None
    ratings: CandidateRatings | None = None
    operating_hours: dict[str, dict[str, Any]] | None = None
    price_range: str | None = None
    amenities: list[str] | None = None
    data_sources: list[DataSource] = Field(default_factory=list)

    description: str | None = None
    menu_items: list[str] = Field(default_factory=list)
    defaulted_fields: list[str] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """Canonical-shaped JSON dict (camelCase, no nulls)."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            include=set(CANONICAL_FIELDS),
        )

    def mark_defaulted(self, path: str) -> None:
        if path not in self.defaulted_fields:
            self.defaulted_fields.append(path)

    def clear_defaulted(self, path: str) -> None:
        if path in self.defaulted_fields:
            self.defaulted_fields.remove(path)


class ScrapedPage(CamelModel):
    """Structural data pulled from one fetched page."""

    url: str
    title: str
    description: str | None = None
    address: str | None = None
    phone: str | None = None
    email: str | None = None
    hours_text: str | None = None
    menu_items: list[str] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)
    social_links: dict[str, str] = Field(default_factory=dict)
    raw_content: str
    fetched_at: datetime


class ValidationOutcome(CamelModel):
    """Result of validating one CandidateRecord. Never mutated afterwards."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    valid: bool
    completeness: float = Field(..., ge=0, le=100)
    accuracy: float = Field(..., ge=0, le=100)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    missing_fields: list[str] = Field(default_factory=list)
    defaulted_fields: list[str] = Field(default_factory=list)
