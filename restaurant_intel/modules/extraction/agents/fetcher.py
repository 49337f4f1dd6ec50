"""Stage 1: Fetcher.

Retrieves a restaurant page over HTTP and performs a shallow structural
scan (title, description, address text, phone, email, hours block, menu
items, images, social links). Every field is best-effort; only the network
call itself can fail, and it fails with FetchError.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from urllib.parse import urljoin

import httpx
import structlog

from restaurant_intel.core.config import settings
from restaurant_intel.modules.extraction.agents.page_parsing import (
    clean_text,
    element_text,
    find_address_text,
    find_email,
    find_phone,
    first_text,
    make_soup,
)
from restaurant_intel.modules.extraction.errors import FetchError
from restaurant_intel.modules.extraction.schemas import ScrapedPage

logger = structlog.get_logger()

TITLE_SELECTORS: tuple[str, ...] = (
    "h1",
    "title",
    '[data-testid="restaurant-name"]',
    ".restaurant-name",
    ".title",
    "h1.name",
    ".main-title",
)

META_DESCRIPTION_SELECTORS: tuple[str, ...] = (
    'meta[name="description"]',
    'meta[property="og:description"]',
)
DESCRIPTION_SELECTORS: tuple[str, ...] = (
    ".description",
    ".about",
    ".restaurant-description",
    "p.description",
)

HOURS_SELECTORS: tuple[str, ...] = (
    ".hours",
    ".operating-hours",
    ".business-hours",
    '[data-testid="hours"]',
)

MENU_SELECTORS: tuple[str, ...] = (
    ".menu-item",
    ".dish",
    ".food-item",
    '[data-testid="menu-item"]',
)

SOCIAL_PATTERNS: dict[str, re.Pattern[str]] = {
    "facebook": re.compile(r"facebook\.com/[^\s\"'<>]+", re.IGNORECASE),
    "twitter": re.compile(r"(?:twitter\.com|(?<![\w-])x\.com)/[^\s\"'<>]+", re.IGNORECASE),
    "instagram": re.compile(r"instagram\.com/[^\s\"'<>]+", re.IGNORECASE),
}

_DAY_MENTION = re.compile(r"\b(mon|tue|wed|thu|fri|sat|sun)", re.IGNORECASE)
_MAX_TITLE_LENGTH = 200
_MAX_MENU_ITEM_LENGTH = 100
_MIN_DESCRIPTION_LENGTH = 21


class WebFetcher:
    """Fetches one URL and returns a ScrapedPage.

    ``transport`` lets tests swap in ``httpx.MockTransport``.
    """

    agent_name = "Fetcher"

    def __init__(
        self,
        *,
        timeout: float | None = None,
        user_agent: str | None = None,
        max_images: int | None = None,
        max_menu_items: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout if timeout is not None else settings.fetch_timeout_seconds
        self.user_agent = user_agent or settings.fetch_user_agent
        self.max_images = max_images if max_images is not None else settings.fetch_max_images
        self.max_menu_items = (
            max_menu_items if max_menu_items is not None else settings.fetch_max_menu_items
        )
        self._transport = transport

    async def process(self, url: str) -> ScrapedPage:
        return await self.fetch(url)

    async def fetch(self, url: str) -> ScrapedPage:
        start = time.time()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
                headers={
                    "User-Agent": self.user_agent,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": "en-US,en;q=0.5",
                },
            ) as client:
                resp = await client.get(url)
                resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise FetchError(f"Timed out fetching {url} after {self.timeout:g}s") from exc
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                f"Failed to fetch {url}: HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc

        page = parse_page(
            resp.text,
            str(resp.url),
            max_images=self.max_images,
            max_menu_items=self.max_menu_items,
        )
        logger.info(
            "Fetcher: page fetched",
            url=url,
            status=resp.status_code,
            size=len(resp.text),
            title=page.title,
            duration_ms=int((time.time() - start) * 1000),
        )
        return page


# ------------------------------------------------------------------
# Structural scan
# ------------------------------------------------------------------


def parse_page(
    html: str,
    url: str,
    *,
    max_images: int = 10,
    max_menu_items: int = 20,
) -> ScrapedPage:
    """Scan fetched HTML. Pure function of its input."""
    soup = make_soup(html)

    title = first_text(soup, TITLE_SELECTORS, max_length=_MAX_TITLE_LENGTH)
    if not title:
        title = clean_text(soup.title.get_text()) if soup.title else ""
    description = first_text(
        soup, META_DESCRIPTION_SELECTORS,
        min_length=_MIN_DESCRIPTION_LENGTH, attribute="content",
    ) or first_text(soup, DESCRIPTION_SELECTORS, min_length=_MIN_DESCRIPTION_LENGTH)

    return ScrapedPage(
        url=url,
        title=title or "Unknown Restaurant",
        description=description,
        address=find_address_text(soup),
        phone=find_phone(soup),
        email=find_email(soup),
        hours_text=_find_hours_text(soup),
        menu_items=_find_menu_items(soup, max_menu_items),
        images=_find_images(soup, url, max_images),
        social_links=_find_social_links(soup),
        raw_content=html,
        fetched_at=datetime.now(timezone.utc),
    )


def _find_hours_text(soup) -> str | None:
    for selector in HOURS_SELECTORS:
        for element in soup.select(selector):
            text = element.get_text("\n", strip=True)
            if _DAY_MENTION.search(text):
                return text
    return None


def _find_menu_items(soup, limit: int) -> list[str]:
    items: list[str] = []
    for selector in MENU_SELECTORS:
        for element in soup.select(selector):
            text = element_text(element)
            if text and len(text) < _MAX_MENU_ITEM_LENGTH and text not in items:
                items.append(text)
    return items[:limit]


def _find_images(soup, base_url: str, limit: int) -> list[str]:
    images: list[str] = []
    for img in soup.select("img[src]"):
        src = str(img.get("src", "")).strip()
        if not src or src.startswith("data:"):
            continue
        absolute = urljoin(base_url, src)
        if absolute not in images:
            images.append(absolute)
        if len(images) >= limit:
            break
    return images


def _find_social_links(soup) -> dict[str, str]:
    links: dict[str, str] = {}
    for anchor in soup.select("a[href]"):
        href = str(anchor.get("href", ""))
        for platform, pattern in SOCIAL_PATTERNS.items():
            if platform not in links and pattern.search(href):
                links[platform] = href
    return links
