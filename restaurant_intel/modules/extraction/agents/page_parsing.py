"""BeautifulSoup helpers shared by the Fetcher and the Field Extractor.

Every helper is best-effort: it walks an ordered list of strategies and
returns the first plausible match, or None. Nothing here raises on odd
markup.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterator, Sequence
from typing import Any

import structlog
from bs4 import BeautifulSoup, Tag

logger = structlog.get_logger()

# Indian mobile/landline pattern, optional +91 / 0 trunk prefix
PHONE_PATTERN = re.compile(r"(\+91|0)?[\s-]?[6-9]\d{2}[\s-]?\d{3}[\s-]?\d{4}")
EMAIL_TEXT_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

ADDRESS_SELECTORS: tuple[str, ...] = (
    ".address",
    ".location",
    '[itemtype*="PostalAddress"]',
    '[data-testid="address"]',
    ".restaurant-address",
    ".contact-address",
)

_JSON_LD_ADDRESS_PARTS = (
    "streetAddress", "addressLocality", "addressRegion", "postalCode", "addressCountry",
)


def make_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def clean_text(value: str) -> str:
    """Collapse runs of whitespace into single spaces."""
    return " ".join(value.split())


def element_text(element: Tag) -> str:
    return clean_text(element.get_text(" ", strip=True))


def body_text(soup: BeautifulSoup) -> str:
    root = soup.body or soup
    return element_text(root)


def first_text(
    soup: BeautifulSoup,
    selectors: Sequence[str],
    *,
    min_length: int = 1,
    max_length: int | None = None,
    attribute: str | None = None,
) -> str | None:
    """Return the first selector match whose text fits the length bounds.

    With ``attribute`` set, the attribute value is preferred over the
    element text (``<meta content=...>``).
    """
    for selector in selectors:
        element = soup.select_one(selector)
        if element is None:
            continue
        raw = element.get(attribute) if attribute else None
        text = clean_text(raw) if isinstance(raw, str) else element_text(element)
        if len(text) < min_length:
            continue
        if max_length is not None and len(text) >= max_length:
            continue
        return text
    return None


# ---------------------------------------------------------------------------
# Structured data (JSON-LD)
# ---------------------------------------------------------------------------


def json_ld_blocks(soup: BeautifulSoup) -> Iterator[dict[str, Any]]:
    """Yield every JSON-LD object on the page, flattening lists and @graph."""
    for script in soup.select('script[type="application/ld+json"]'):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Skipping malformed JSON-LD block", length=len(raw))
            continue
        yield from _flatten_json_ld(data)


def _flatten_json_ld(data: Any) -> Iterator[dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            yield from _flatten_json_ld(item)
    elif isinstance(data, dict):
        yield data
        graph = data.get("@graph")
        if isinstance(graph, list):
            yield from _flatten_json_ld(graph)


def json_ld_address(soup: BeautifulSoup) -> str | None:
    for block in json_ld_blocks(soup):
        address = block.get("address")
        if isinstance(address, str) and address.strip():
            return clean_text(address)
        if isinstance(address, dict):
            parts = [
                str(address[key]).strip()
                for key in _JSON_LD_ADDRESS_PARTS
                if isinstance(address.get(key), (str, int)) and str(address[key]).strip()
            ]
            if parts:
                return ", ".join(parts)
    return None


def json_ld_aggregate_rating(soup: BeautifulSoup) -> tuple[float, int] | None:
    """Return (ratingValue, reviewCount) from the first aggregateRating block."""
    for block in json_ld_blocks(soup):
        rating = block.get("aggregateRating")
        if not isinstance(rating, dict):
            continue
        try:
            value = float(rating.get("ratingValue"))
        except (TypeError, ValueError):
            continue
        count_raw = rating.get("reviewCount", rating.get("ratingCount", 0))
        try:
            count = int(count_raw)
        except (TypeError, ValueError):
            count = 0
        return value, count
    return None


# ---------------------------------------------------------------------------
# Address / contact lookups
# ---------------------------------------------------------------------------


def find_address_text(soup: BeautifulSoup) -> str | None:
    """Structured data first, then loose selector matches longer than 10 chars."""
    structured = json_ld_address(soup)
    if structured:
        return structured
    return first_text(soup, ADDRESS_SELECTORS, min_length=11)


def find_phone(soup: BeautifulSoup) -> str | None:
    link = soup.select_one('a[href^="tel:"]')
    if link is not None:
        href = str(link.get("href", ""))
        phone = href.removeprefix("tel:").strip() or element_text(link)
        if phone:
            return phone
    match = PHONE_PATTERN.search(body_text(soup))
    return match.group(0).strip() if match else None


def find_email(soup: BeautifulSoup) -> str | None:
    link = soup.select_one('a[href^="mailto:"]')
    if link is not None:
        href = str(link.get("href", ""))
        email = href.removeprefix("mailto:").split("?", 1)[0].strip()
        if email:
            return email
    match = EMAIL_TEXT_PATTERN.search(body_text(soup))
    return match.group(0) if match else None
