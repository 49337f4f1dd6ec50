"""Stage 2: Field Extractor.

Turns raw page content into a partially filled CandidateRecord using
keyword and pattern heuristics:
  - name from heading selectors
  - address parsed against a fixed gazetteer of Indian states/cities
  - contact info (tel:/mailto: links before text patterns)
  - rating from JSON-LD aggregateRating, then rating widgets
  - weekly hours (day names, abbreviations, ranges, "closed")
  - price tier, amenities and cuisine tags from keyword lists

Missing data never fails this stage. Assumed values (generic cuisine tag,
default weekly hours, ...) are recorded in ``defaulted_fields`` so callers
can tell observed data from fallbacks.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Any

import structlog
from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup

from restaurant_intel.core.config import settings
from restaurant_intel.modules.extraction.agents.page_parsing import (
    body_text,
    element_text,
    find_address_text,
    find_email,
    find_phone,
    first_text,
    json_ld_aggregate_rating,
    make_soup,
)
from restaurant_intel.modules.extraction.errors import ExtractionError
from restaurant_intel.modules.extraction.schemas import (
    WEEKDAYS,
    CandidateAddress,
    CandidateContactInfo,
    CandidateRatings,
    CandidateRecord,
    CandidateSourceRating,
    DataSource,
    ScrapedPage,
)

logger = structlog.get_logger()

WEB_SCRAPING_SOURCE = "web-scraping"
UNKNOWN_RESTAURANT = "Unknown Restaurant"
UNKNOWN_LOCALITY = "Unknown"

NAME_SELECTORS: tuple[str, ...] = (
    "h1.restaurant-name",
    "h1",
    '[data-testid="restaurant-name"]',
    ".restaurant-title",
    "title",
)

RATING_SELECTORS: tuple[str, ...] = (
    ".rating",
    ".stars",
    '[data-testid="rating"]',
    ".review-score",
)

HOURS_SELECTORS: tuple[str, ...] = (
    ".hours",
    ".operating-hours",
    ".business-hours",
    '[data-testid="hours"]',
)

# Gazetteers: first hit wins, in list order
KNOWN_STATES: tuple[str, ...] = (
    "maharashtra", "delhi", "karnataka", "tamil nadu", "gujarat", "rajasthan",
    "punjab", "haryana", "uttar pradesh", "bihar", "west bengal",
)
KNOWN_CITIES: tuple[str, ...] = (
    "mumbai", "delhi", "bangalore", "chennai", "kolkata", "hyderabad", "pune",
    "ahmedabad", "surat", "jaipur", "lucknow", "kanpur", "nagpur",
)

CUISINE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "North Indian": ("north indian", "punjabi", "dal", "naan", "tandoor", "butter chicken"),
    "South Indian": ("south indian", "dosa", "idli", "sambar", "vada", "uttapam"),
    "Chinese": ("chinese", "chow mein", "fried rice", "manchurian", "hakka"),
    "Italian": ("italian", "pizza", "pasta", "lasagna", "spaghetti"),
    "Continental": ("continental", "continental food"),
    "Fast Food": ("fast food", "burger", "sandwich", "fries"),
    "Vegetarian": ("vegetarian", "veg only", "pure veg"),
    "Bakery": ("bakery", "cakes", "pastries", "bread", "cookies"),
    "Street Food": ("street food", "chaat", "pani puri", "bhel puri"),
    "Seafood": ("seafood", "fish", "prawns", "crab", "lobster"),
}

# Checked in order; first tier with a matching keyword wins
PRICE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("luxury", ("luxury", "fine dining", "₹₹₹₹")),
    ("fine-dining", ("fine", "premium", "₹₹₹")),
    ("budget", ("affordable", "budget", "₹")),
)
DEFAULT_PRICE_RANGE = "mid-range"

AMENITY_KEYWORDS: tuple[str, ...] = (
    "wifi", "parking", "air conditioning", "delivery", "takeaway",
    "credit card", "cash only", "outdoor seating", "bar", "live music",
    "kids friendly", "pet friendly", "wheelchair accessible", "vegan",
    "vegetarian", "halal", "buffet", "catering", "private dining",
)

DEFAULT_WEEKLY_HOURS: dict[str, dict[str, Any]] = {
    **{day: {"open": "10:00", "close": "22:00"} for day in WEEKDAYS[:5]},
    **{day: {"open": "10:00", "close": "23:00"} for day in WEEKDAYS[5:]},
}

_PIN_CODE = re.compile(r"\b\d{6}\b")
_RATING_TEXT = re.compile(r"(\d+(?:\.\d+)?)\s*(?:/\s*5|stars?)", re.IGNORECASE)

_DAY_TOKEN = re.compile(
    r"\b(mon(?:day)?|tue(?:s(?:day)?)?|wed(?:nesday)?|thu(?:r(?:s(?:day)?)?)?"
    r"|fri(?:day)?|sat(?:urday)?|sun(?:day)?)\b\.?",
    re.IGNORECASE,
)
_DAY_INDEX = {day[:3]: i for i, day in enumerate(WEEKDAYS)}
_RANGE_SEP = re.compile(r"\s*(?:-|–|—|to|through)\s*", re.IGNORECASE)
_LIST_SEP = re.compile(r"\s*(?:,|&|/|and)\s*", re.IGNORECASE)
_CLOSED = re.compile(r"\bclosed\b", re.IGNORECASE)
_TIME = re.compile(
    r"\b(\d{1,2})(?:[:.](\d{2}))?\s*([ap])\.?\s*m\b\.?|\b(\d{1,2})[:.](\d{2})\b",
    re.IGNORECASE,
)


class FieldExtractor:
    """Heuristic field extraction from one page."""

    agent_name = "FieldExtractor"

    def __init__(
        self,
        *,
        default_country: str | None = None,
        default_cuisine_tag: str | None = None,
        reliability: float | None = None,
    ) -> None:
        self.default_country = default_country or settings.default_country
        self.default_cuisine_tag = default_cuisine_tag or settings.default_cuisine_tag
        self.reliability = (
            reliability if reliability is not None else settings.web_scraping_reliability
        )

    async def process(self, page: ScrapedPage) -> CandidateRecord:
        candidate = self.extract(page.raw_content, page.url)
        candidate.description = page.description
        candidate.menu_items = list(page.menu_items)
        return candidate

    def extract(self, raw_content: str, source_url: str) -> CandidateRecord:
        """Build a CandidateRecord with exactly one web-scraping provenance entry."""
        if not isinstance(raw_content, str) or not raw_content.strip():
            raise ExtractionError(f"No parseable content for {source_url}")

        start = time.time()
        try:
            soup = make_soup(raw_content)
        except ParserRejectedMarkup as exc:
            raise ExtractionError(f"Unparseable content for {source_url}: {exc}") from exc

        text = body_text(soup)
        if not text and soup.title is None:
            raise ExtractionError(f"Page {source_url} has no text content")

        candidate = CandidateRecord(
            data_sources=[
                DataSource(
                    source=WEB_SCRAPING_SOURCE,
                    url=source_url,
                    extracted_at=datetime.now(timezone.utc),
                    reliability=self.reliability,
                )
            ],
        )

        name = first_text(soup, NAME_SELECTORS, max_length=200)
        if name:
            candidate.name = name
        else:
            candidate.name = UNKNOWN_RESTAURANT
            candidate.mark_defaulted("name")

        address_text = find_address_text(soup)
        if address_text:
            candidate.address = self.parse_address(address_text)
        else:
            candidate.address = CandidateAddress(
                city=UNKNOWN_LOCALITY, state=UNKNOWN_LOCALITY, country=self.default_country,
            )
            candidate.mark_defaulted("address")

        candidate.contact_info = CandidateContactInfo(
            phone=find_phone(soup),
            email=find_email(soup),
            website=source_url,
        )
        candidate.ratings = _extract_ratings(soup)

        hours = parse_operating_hours(_hours_text(soup))
        if hours:
            candidate.operating_hours = hours
        else:
            candidate.operating_hours = {day: dict(v) for day, v in DEFAULT_WEEKLY_HOURS.items()}
            candidate.mark_defaulted("operatingHours")

        lowered = text.lower()
        price = classify_price(lowered)
        candidate.price_range = price or DEFAULT_PRICE_RANGE
        if price is None:
            candidate.mark_defaulted("priceRange")

        candidate.amenities = detect_amenities(lowered)

        cuisines = classify_cuisine(f"{lowered} {candidate.name.lower()}")
        if cuisines:
            candidate.cuisine_types = cuisines
        else:
            candidate.cuisine_types = [self.default_cuisine_tag]
            candidate.mark_defaulted("cuisineTypes")

        logger.info(
            "FieldExtractor: fields extracted",
            url=source_url,
            name=candidate.name,
            city=candidate.address.city,
            cuisines=candidate.cuisine_types,
            defaulted=candidate.defaulted_fields,
            duration_ms=int((time.time() - start) * 1000),
        )
        return candidate

    def parse_address(self, address_text: str) -> CandidateAddress:
        lowered = address_text.lower()

        pin = _PIN_CODE.search(address_text)
        state = next((s for s in KNOWN_STATES if s in lowered), None)
        city = next((c for c in KNOWN_CITIES if c in lowered), None)

        city_name = city.title() if city else None
        if city_name is None:
            parts = [p.strip() for p in address_text.split(",")]
            if len(parts) > 1 and parts[-2]:
                city_name = parts[-2]

        return CandidateAddress(
            street=address_text,
            city=city_name,
            state=state.title() if state else None,
            postal_code=pin.group(0) if pin else None,
            country=self.default_country,
            formatted=address_text,
        )


# ------------------------------------------------------------------
# Keyword classifiers (pure)
# ------------------------------------------------------------------


def classify_cuisine(text: str) -> list[str]:
    """All tags whose keywords occur in ``text`` (lower-cased)."""
    return [
        tag for tag, keywords in CUISINE_KEYWORDS.items()
        if any(keyword in text for keyword in keywords)
    ]


def classify_price(text: str) -> str | None:
    for tier, keywords in PRICE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return tier
    return None


def detect_amenities(text: str) -> list[str]:
    found: list[str] = []
    for keyword in AMENITY_KEYWORDS:
        label = keyword[0].upper() + keyword[1:]
        if keyword in text and label not in found:
            found.append(label)
    return found


# ------------------------------------------------------------------
# Ratings
# ------------------------------------------------------------------


def _extract_ratings(soup: BeautifulSoup) -> CandidateRatings:
    structured = json_ld_aggregate_rating(soup)
    if structured is not None:
        value, count = structured
        return CandidateRatings(
            average=value,
            total=count or None,
            sources={"website": CandidateSourceRating(rating=value, count=count)},
        )

    for selector in RATING_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        match = _RATING_TEXT.search(element_text(element))
        if match:
            value = float(match.group(1))
            return CandidateRatings(
                average=value,
                sources={"website": CandidateSourceRating(rating=value, count=1)},
            )
    return CandidateRatings()


# ------------------------------------------------------------------
# Operating hours
# ------------------------------------------------------------------


def _hours_text(soup: BeautifulSoup) -> str:
    for selector in HOURS_SELECTORS:
        element = soup.select_one(selector)
        if element is not None:
            text = element_text(element)
            if _DAY_TOKEN.search(text):
                return text
    return ""


def parse_operating_hours(text: str) -> dict[str, dict[str, Any]]:
    """Parse free-text hours into ``{weekday: {open, close} | {closed: True}}``.

    Handles full and abbreviated day names, ranges ("Mon - Fri"), lists
    ("Sat & Sun"), 24h and am/pm times. The first statement about a day wins.
    """
    hours: dict[str, dict[str, Any]] = {}
    if not text:
        return hours

    tokens = list(_DAY_TOKEN.finditer(text))
    i = 0
    while i < len(tokens):
        days = [_day_key(tokens[i])]
        last = tokens[i]
        j = i + 1
        while j < len(tokens):
            gap = text[last.end():tokens[j].start()]
            if _RANGE_SEP.fullmatch(gap):
                days.extend(_day_span(days[-1], _day_key(tokens[j]))[1:])
            elif _LIST_SEP.fullmatch(gap):
                days.append(_day_key(tokens[j]))
            else:
                break
            last = tokens[j]
            j += 1

        segment_end = tokens[j].start() if j < len(tokens) else len(text)
        segment = text[last.end():segment_end]
        entry = _parse_segment(segment)
        if entry is not None:
            for day in days:
                hours.setdefault(day, dict(entry))
        i = j

    return hours


def _day_key(match: re.Match[str]) -> str:
    return WEEKDAYS[_DAY_INDEX[match.group(1)[:3].lower()]]


def _day_span(first: str, last: str) -> list[str]:
    start, end = WEEKDAYS.index(first), WEEKDAYS.index(last)
    if end < start:
        end += len(WEEKDAYS)
    return [WEEKDAYS[k % len(WEEKDAYS)] for k in range(start, end + 1)]


def _parse_segment(segment: str) -> dict[str, Any] | None:
    times = [t for t in (_normalize_time(m) for m in _TIME.finditer(segment)) if t]
    if len(times) >= 2:
        return {"open": times[0], "close": times[1]}
    if _CLOSED.search(segment):
        return {"closed": True}
    return None


def _normalize_time(match: re.Match[str]) -> str | None:
    if match.group(3):
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        meridiem = match.group(3).lower()
        if hour > 12:
            return None
        if meridiem == "p" and hour < 12:
            hour += 12
        elif meridiem == "a" and hour == 12:
            hour = 0
    else:
        hour = int(match.group(4))
        minute = int(match.group(5))
    if hour > 24 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"
