"""Shared test fixtures for the Restaurant Intelligence test suite.

Pages are served by ``httpx.MockTransport`` so no test touches the network,
and the synthesizer runs offline unless a test swaps in a double.
"""

from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from restaurant_intel.main import create_app
from restaurant_intel.modules.extraction.agents.fetcher import WebFetcher
from restaurant_intel.modules.extraction.agents.orchestrator import PipelineOrchestrator
from restaurant_intel.modules.extraction.agents.registry import AgentRegistry, build_registry
from restaurant_intel.modules.extraction.agents.synthesizer import SynthesizerAgent
from restaurant_intel.modules.extraction.repository import InMemoryRepository

SPICE_ROUTE_URL = "https://spice-route.example/"
CORNER_CAFE_URL = "https://corner-cafe.example/"
GONE_URL = "https://gone.example/"

# A well-formed page: every required field observable, no coordinates
SPICE_ROUTE_HTML = """
<html>
<head>
  <title>Spice Route | Pune</title>
  <meta name="description" content="Authentic North Indian kitchen serving butter chicken and tandoori specialities in Pune.">
  <script type="application/ld+json">
    {"@type": "Restaurant", "name": "Spice Route",
     "aggregateRating": {"ratingValue": "4.5", "reviewCount": "230"}}
  </script>
</head>
<body>
  <h1 class="restaurant-name">Spice Route</h1>
  <p class="address">12 MG Road, Camp, Pune, Maharashtra 411001</p>
  <a href="tel:+919876543210">Call us</a>
  <a href="mailto:hello@spiceroute.in">Email</a>
  <div class="hours">Mon - Fri: 11:00 - 23:00, Sat &amp; Sun: 10:00 - 23:30</div>
  <ul>
    <li class="menu-item">Butter Chicken</li>
    <li class="menu-item">Garlic Naan</li>
    <li class="menu-item">Paneer Tikka</li>
  </ul>
  <p>Affordable family dining with free wifi and parking.</p>
  <img src="/img/front.jpg">
  <a href="https://www.instagram.com/spiceroutepune">Instagram</a>
</body>
</html>
"""

# A thin page: name only, everything else falls back to defaults
CORNER_CAFE_HTML = """
<html>
<head><title>Corner Cafe</title></head>
<body>
  <h1>Corner Cafe</h1>
  <p>Open daily for coffee and snacks.</p>
</body>
</html>
"""


def _serve(request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    if url == SPICE_ROUTE_URL:
        return httpx.Response(200, text=SPICE_ROUTE_HTML)
    if url == CORNER_CAFE_URL:
        return httpx.Response(200, text=CORNER_CAFE_HTML)
    return httpx.Response(404, text="Not Found")


@pytest.fixture
def site_transport() -> httpx.MockTransport:
    return httpx.MockTransport(_serve)


@pytest.fixture
def fetcher(site_transport: httpx.MockTransport) -> WebFetcher:
    return WebFetcher(transport=site_transport, timeout=5.0)


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def registry(fetcher: WebFetcher) -> AgentRegistry:
    """Real stages, offline synthesizer."""
    return build_registry(fetcher=fetcher, synthesizer=SynthesizerAgent(None))


@pytest.fixture
def orchestrator(registry: AgentRegistry, repository: InMemoryRepository) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        registry,
        repository,
        completeness_threshold=80.0,
        max_concurrent_jobs=1,
        demo_source_urls=[SPICE_ROUTE_URL, CORNER_CAFE_URL],
        default_country="India",
        default_cuisine_tag="Indian",
    )


@pytest.fixture
async def client(
    registry: AgentRegistry,
    repository: InMemoryRepository,
    orchestrator: PipelineOrchestrator,
) -> AsyncClient:
    """Async HTTP client that talks directly to a fresh FastAPI app."""
    app = create_app()
    app.state.registry = registry
    app.state.repository = repository
    app.state.orchestrator = orchestrator
    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac  # type: ignore[misc]


@pytest.fixture
def spice_route_html() -> str:
    return SPICE_ROUTE_HTML


@pytest.fixture
def corner_cafe_html() -> str:
    return CORNER_CAFE_HTML
