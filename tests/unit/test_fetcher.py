"""Unit tests for the Fetcher (HTTP retrieval + structural scan)."""

from __future__ import annotations

import httpx
import pytest

from restaurant_intel.modules.extraction.agents.fetcher import WebFetcher, parse_page
from restaurant_intel.modules.extraction.errors import FetchError

URL = "https://spice-route.example/"


async def test_fetch_returns_scanned_page(fetcher: WebFetcher) -> None:
    """A 200 page is scanned for title, contact details, hours and menu."""
    page = await fetcher.fetch(URL)

    assert page.url == URL
    assert page.title == "Spice Route"
    assert page.description.startswith("Authentic North Indian kitchen")
    assert page.address == "12 MG Road, Camp, Pune, Maharashtra 411001"
    assert page.phone == "+919876543210"
    assert page.email == "hello@spiceroute.in"
    assert "Mon - Fri" in page.hours_text
    assert page.menu_items == ["Butter Chicken", "Garlic Naan", "Paneer Tikka"]
    assert page.images == ["https://spice-route.example/img/front.jpg"]
    assert page.social_links == {"instagram": "https://www.instagram.com/spiceroutepune"}
    assert "<h1" in page.raw_content


async def test_fetch_sends_browser_headers() -> None:
    seen: dict[str, httpx.Headers] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        return httpx.Response(200, text="<html><body><h1>Tiny Place</h1></body></html>")

    fetcher = WebFetcher(transport=httpx.MockTransport(handler), user_agent="TestAgent/1.0")
    await fetcher.fetch("https://tiny.example/")

    assert seen["headers"]["User-Agent"] == "TestAgent/1.0"
    assert "text/html" in seen["headers"]["Accept"]


async def test_non_2xx_raises_fetch_error(fetcher: WebFetcher) -> None:
    with pytest.raises(FetchError, match="HTTP 404"):
        await fetcher.fetch("https://gone.example/")


async def test_timeout_raises_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    fetcher = WebFetcher(transport=httpx.MockTransport(handler), timeout=2.0)
    with pytest.raises(FetchError, match="Timed out") as exc_info:
        await fetcher.fetch("https://slow.example/")

    assert exc_info.value.stage == "fetching"
    assert isinstance(exc_info.value.__cause__, httpx.TimeoutException)


async def test_connection_error_raises_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = WebFetcher(transport=httpx.MockTransport(handler))
    with pytest.raises(FetchError, match="connection refused"):
        await fetcher.fetch("https://down.example/")


# ---------------------------------------------------------------------------
# parse_page: pure scan
# ---------------------------------------------------------------------------


def test_title_falls_back_to_unknown_restaurant() -> None:
    page = parse_page("<html><body><p>Nothing here</p></body></html>", "https://x.example/")
    assert page.title == "Unknown Restaurant"


def test_short_descriptions_are_ignored() -> None:
    html = '<html><head><meta name="description" content="Too short"></head><body></body></html>'
    assert parse_page(html, "https://x.example/").description is None


def test_images_are_absolute_and_capped() -> None:
    imgs = "".join(f'<img src="/photos/{i}.jpg">' for i in range(15))
    html = f'<html><body><img src="data:image/png;base64,AAAA">{imgs}</body></html>'

    page = parse_page(html, "https://x.example/menu/", max_images=10)

    assert len(page.images) == 10
    assert page.images[0] == "https://x.example/photos/0.jpg"


def test_menu_items_skip_long_entries_and_cap() -> None:
    long_item = "x" * 120
    items = "".join(f'<li class="dish">Dish {i}</li>' for i in range(25))
    html = f'<html><body><li class="dish">{long_item}</li>{items}</body></html>'

    page = parse_page(html, "https://x.example/", max_menu_items=20)

    assert len(page.menu_items) == 20
    assert long_item not in page.menu_items


def test_social_links_recognise_x_dot_com() -> None:
    html = """
    <html><body>
      <a href="https://x.com/spiceroute">X</a>
      <a href="https://fedex.com/track">Parcel</a>
      <a href="https://facebook.com/spiceroute">FB</a>
    </body></html>
    """
    links = parse_page(html, "https://x.example/").social_links
    assert links == {
        "twitter": "https://x.com/spiceroute",
        "facebook": "https://facebook.com/spiceroute",
    }


def test_json_ld_address_preferred_over_selectors() -> None:
    html = """
    <html><head><script type="application/ld+json">
      {"@graph": [{"@type": "Restaurant", "address": {
        "@type": "PostalAddress", "streetAddress": "4 Park Street",
        "addressLocality": "Kolkata", "postalCode": "700016"}}]}
    </script></head>
    <body><div class="address">Somewhere else entirely, 000000</div></body></html>
    """
    page = parse_page(html, "https://x.example/")
    assert page.address == "4 Park Street, Kolkata, 700016"
