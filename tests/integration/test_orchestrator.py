"""End-to-end pipeline scenarios through the Orchestrator.

Pages come from ``httpx.MockTransport`` (see conftest); the synthesizer
is either offline or an ``AsyncMock`` double.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from restaurant_intel.modules.extraction.agent_schemas import (
    AddressValidationRequest,
    CuisineClassificationRequest,
    NormalizedAddress,
    WorkItemStage,
)
from restaurant_intel.modules.extraction.agents.fetcher import WebFetcher
from restaurant_intel.modules.extraction.agents.orchestrator import PipelineOrchestrator
from restaurant_intel.modules.extraction.agents.registry import build_registry
from restaurant_intel.modules.extraction.agents.synthesizer import SynthesizerAgent
from restaurant_intel.modules.extraction.errors import (
    FetchError,
    PipelineBusyError,
    RepositoryError,
    SynthesisError,
)
from restaurant_intel.modules.extraction.repository import InMemoryRepository
from restaurant_intel.modules.extraction.schemas import (
    CandidateRecord,
    RestaurantRecord,
    ValidationOutcome,
)

SPICE_ROUTE_URL = "https://spice-route.example/"
CORNER_CAFE_URL = "https://corner-cafe.example/"
GONE_URL = "https://gone.example/"

S = WorkItemStage


def _synthesizer_double(side_effect) -> MagicMock:
    stage = MagicMock()
    stage.agent_name = "Synthesizer"
    stage.available = True
    stage.process = AsyncMock(side_effect=side_effect)
    return stage


def _orchestrator(fetcher, repository, synthesizer) -> PipelineOrchestrator:
    registry = build_registry(fetcher=fetcher, synthesizer=synthesizer)
    return PipelineOrchestrator(
        registry, repository, completeness_threshold=80.0, max_concurrent_jobs=1,
    )


class FlakyLogRepository(InMemoryRepository):
    """Log store that rejects entries with the given statuses."""

    def __init__(self, error: Exception, statuses: tuple[str, ...] = ("success",)) -> None:
        super().__init__()
        self.error = error
        self.statuses = statuses

    async def append_extraction_log(self, entry):
        if entry.status in self.statuses:
            raise self.error
        return await super().append_extraction_log(entry)


class BlockingFetcher:
    """Fetch double that parks every call until released, then fails."""

    agent_name = "Fetcher"

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def process(self, url: str):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        raise FetchError(f"Failed to fetch {url}: HTTP 503")


# ---------------------------------------------------------------------------
# Single work items
# ---------------------------------------------------------------------------


async def test_well_formed_page_is_validated_without_synthesis(
    orchestrator: PipelineOrchestrator, repository: InMemoryRepository,
) -> None:
    item = await orchestrator.process_source(SPICE_ROUTE_URL)

    assert item.stage == S.completed
    assert item.stage_history == [S.queued, S.fetching, S.extracting, S.validating, S.completed]
    assert item.restaurant_name == "Spice Route"
    assert item.location == "Pune"

    restaurant = await repository.get_restaurant(item.restaurant_id)
    assert restaurant.status == "validated"
    assert restaurant.name == "Spice Route"
    assert restaurant.address.city == "Pune"
    assert restaurant.address.state == "Maharashtra"
    assert restaurant.cuisine_types == ["North Indian"]
    assert restaurant.completeness >= 80
    assert restaurant.accuracy == 100
    assert restaurant.website == SPICE_ROUTE_URL
    assert restaurant.validated_at is not None
    assert restaurant.data_sources[0].source == "web-scraping"

    stored = await repository.get_queue_item(item.id)
    assert stored.stage == S.completed


async def test_persisted_record_round_trips_through_the_schema(
    orchestrator: PipelineOrchestrator, repository: InMemoryRepository,
) -> None:
    await orchestrator.process_source(SPICE_ROUTE_URL)
    await orchestrator.process_source(CORNER_CAFE_URL)

    for restaurant in await repository.list_restaurants():
        RestaurantRecord.model_validate(restaurant.model_dump(by_alias=True))


async def test_low_completeness_escalates_but_offline_keeps_heuristics(
    orchestrator: PipelineOrchestrator, repository: InMemoryRepository,
) -> None:
    """Synthesis is skipped without a transport; the record is still stored."""
    item = await orchestrator.process_source(CORNER_CAFE_URL)

    assert item.stage == S.completed
    assert S.synthesizing in item.stage_history

    restaurant = await repository.get_restaurant(item.restaurant_id)
    assert restaurant.cuisine_types == ["Indian"]
    assert "cuisineTypes" in restaurant.defaulted_fields
    assert restaurant.completeness < 80


async def test_escalation_classifies_cuisine(
    fetcher: WebFetcher, repository: InMemoryRepository,
) -> None:
    synthesizer = _synthesizer_double(lambda task: ["Cafe"])
    orchestrator = _orchestrator(fetcher, repository, synthesizer)

    item = await orchestrator.process_source(CORNER_CAFE_URL)

    assert item.stage == S.completed
    assert item.stage_history[-2:] == [S.synthesizing, S.completed]

    # The address was assumed, so only cuisine classification runs
    synthesizer.process.assert_awaited_once()
    request = synthesizer.process.await_args.args[0]
    assert isinstance(request, CuisineClassificationRequest)
    assert request.restaurant_name == "Corner Cafe"

    restaurant = await repository.get_restaurant(item.restaurant_id)
    assert restaurant.cuisine_types == ["Cafe"]
    assert "cuisineTypes" not in restaurant.defaulted_fields


async def test_escalation_normalizes_observed_address(
    fetcher: WebFetcher, repository: InMemoryRepository,
) -> None:
    """An invalid record with a real address triggers address validation."""
    broken = CandidateRecord(
        name="Spice Route",
        address={"street": "12 MG Road, Camp", "city": "Camp", "country": "India"},
        cuisine_types=["North Indian"],
        contact_info={"website": SPICE_ROUTE_URL},
        price_range="budget",
        amenities=["Wifi"],
        operating_hours={"monday": {"open": "11:00", "close": "23:00"}},
    )
    extractor = MagicMock()
    extractor.agent_name = "FieldExtractor"
    extractor.process = AsyncMock(return_value=broken)

    def reason(task):
        assert isinstance(task, AddressValidationRequest)
        return NormalizedAddress(
            street="12 MG Road", city="Pune", state="Maharashtra",
            postal_code="411001", country="India",
            formatted="12 MG Road, Camp, Pune, Maharashtra 411001", confidence=0.9,
        )

    synthesizer = _synthesizer_double(reason)
    registry = build_registry(fetcher=fetcher, extractor=extractor, synthesizer=synthesizer)
    orchestrator = PipelineOrchestrator(registry, repository, completeness_threshold=80.0)

    item = await orchestrator.process_source(SPICE_ROUTE_URL)

    assert item.stage == S.completed
    restaurant = await repository.get_restaurant(item.restaurant_id)
    assert restaurant.address.city == "Pune"
    assert restaurant.address.state == "Maharashtra"
    assert restaurant.address.postal_code == "411001"


async def test_synthesis_failure_fails_the_item(
    fetcher: WebFetcher, repository: InMemoryRepository,
) -> None:
    synthesizer = _synthesizer_double(SynthesisError("google call timed out after 30s"))
    orchestrator = _orchestrator(fetcher, repository, synthesizer)

    item = await orchestrator.process_source(CORNER_CAFE_URL)

    assert item.stage == S.failed
    assert item.stage_history[-2:] == [S.synthesizing, S.failed]
    assert item.error_message == "google call timed out after 30s"
    assert item.restaurant_id is None
    assert await repository.count_restaurants() == 0
    assert orchestrator.registry.get("reasoning-llm").status == "error"


async def test_fetch_failure_fails_the_item(
    orchestrator: PipelineOrchestrator, repository: InMemoryRepository,
) -> None:
    item = await orchestrator.process_source(GONE_URL)

    assert item.stage == S.failed
    assert item.stage_history == [S.queued, S.fetching, S.failed]
    assert "HTTP 404" in item.error_message
    assert await repository.count_restaurants() == 0

    logs = await repository.list_extraction_logs()
    assert len(logs) == 1
    assert logs[0].status == "failed"
    assert logs[0].work_item_id == item.id
    assert "HTTP 404" in logs[0].error_message


async def test_success_is_logged_with_scores(
    orchestrator: PipelineOrchestrator, repository: InMemoryRepository,
) -> None:
    item = await orchestrator.process_source(SPICE_ROUTE_URL)

    (entry,) = await repository.list_extraction_logs()
    assert entry.status == "success"
    assert entry.action == "full_extraction"
    assert entry.restaurant_id == item.restaurant_id
    assert entry.metadata["completeness"] >= 80
    assert entry.metadata["synthesized"] is False
    assert entry.duration_ms >= 0
    assert entry.metadata["stages"][-1] == "completed"


async def test_failed_success_log_leaves_no_restaurant_behind(fetcher: WebFetcher) -> None:
    """A restaurant is only kept when its work item actually completes."""
    repository = FlakyLogRepository(RepositoryError("log table unavailable"))
    orchestrator = _orchestrator(fetcher, repository, SynthesizerAgent(None))

    item = await orchestrator.process_source(SPICE_ROUTE_URL)

    assert item.stage == S.failed
    assert item.stage_history[-2:] == [S.validating, S.failed]
    assert item.error_message == "log table unavailable"
    assert item.restaurant_id is None
    assert await repository.count_restaurants() == 0
    assert (await repository.get_queue_item(item.id)).stage == S.failed

    (entry,) = await repository.list_extraction_logs()
    assert entry.status == "failed"
    assert entry.restaurant_id is None


async def test_failed_completion_update_leaves_no_restaurant_behind(
    fetcher: WebFetcher, repository: InMemoryRepository,
) -> None:
    orchestrator = _orchestrator(fetcher, repository, SynthesizerAgent(None))
    original_update = repository.update_queue_item

    async def reject_completion(item):
        if item.stage == S.completed:
            raise RepositoryError("queue table unavailable")
        return await original_update(item)

    repository.update_queue_item = reject_completion

    item = await orchestrator.process_source(SPICE_ROUTE_URL)

    assert item.stage == S.failed
    assert item.restaurant_id is None
    assert await repository.count_restaurants() == 0
    assert [e.status for e in await repository.list_extraction_logs()] == ["failed"]


# ---------------------------------------------------------------------------
# Finalization
# ---------------------------------------------------------------------------


def test_finalize_applies_defaults_and_drops_invalid_values(
    orchestrator: PipelineOrchestrator,
) -> None:
    candidate = CandidateRecord(
        name=" ",
        address={"street": "1 Road"},
        cuisine_types=[],
        contact_info={"email": "not-an-email", "website": "ftp://files.example"},
        ratings={"average": 7.5, "total": 10, "sources": {"zomato": {"rating": 9, "count": 1}}},
        operating_hours={
            "monday": {"open": "10:00"},
            "funday": {"open": "10:00", "close": "12:00"},
            "tuesday": {"closed": True},
        },
        price_range="expensive",
    )
    outcome = ValidationOutcome(valid=False, completeness=30, accuracy=70)

    restaurant = orchestrator.build_restaurant(candidate, outcome, "https://x.example/")

    assert restaurant.status == "pending"
    assert restaurant.validated_at is None
    assert restaurant.name == "Unknown Restaurant"
    assert restaurant.address.city == "Unknown"
    assert restaurant.address.country == "India"
    assert restaurant.cuisine_types == ["Indian"]
    assert restaurant.contact_info.email is None
    assert restaurant.contact_info.website is None
    assert restaurant.ratings.average is None
    assert restaurant.ratings.total == 10
    assert restaurant.ratings.sources == {}
    assert set(restaurant.operating_hours) == {"tuesday"}
    assert restaurant.price_range == "mid-range"
    assert restaurant.data_sources[0].source == "web-scraping"
    assert {"name", "address", "cuisineTypes", "priceRange"} <= set(restaurant.defaulted_fields)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


async def test_run_reports_per_item_outcomes(
    orchestrator: PipelineOrchestrator, repository: InMemoryRepository,
) -> None:
    result = await orchestrator.start_run([SPICE_ROUTE_URL, GONE_URL])

    assert result.success
    assert result.total_processed == 2
    assert result.successful_extractions == 1
    assert result.failed_extractions == 1
    assert len(result.errors) == 1
    assert GONE_URL in result.errors[0]
    assert [item.source_url for item in result.work_items] == [SPICE_ROUTE_URL, GONE_URL]
    assert result.finished_at is not None

    metrics = await repository.get_system_metrics()
    assert metrics.total_restaurants == 1
    assert metrics.success_rate == 50.0
    assert metrics.processing_rate > 0


async def test_run_with_only_failures_is_unsuccessful(
    orchestrator: PipelineOrchestrator,
) -> None:
    result = await orchestrator.start_run([GONE_URL])

    assert not result.success
    assert result.failed_extractions == 1


async def test_empty_run_uses_demonstration_sources(
    orchestrator: PipelineOrchestrator, repository: InMemoryRepository,
) -> None:
    result = await orchestrator.start_run([])

    assert [item.source_url for item in result.work_items] == [SPICE_ROUTE_URL, CORNER_CAFE_URL]
    assert await repository.count_restaurants() == 2


async def test_concurrent_run_keeps_submission_order(
    fetcher: WebFetcher, repository: InMemoryRepository,
) -> None:
    registry = build_registry(fetcher=fetcher, synthesizer=SynthesizerAgent(None))
    orchestrator = PipelineOrchestrator(
        registry, repository, completeness_threshold=80.0, max_concurrent_jobs=3,
    )

    result = await orchestrator.start_run([CORNER_CAFE_URL, GONE_URL, SPICE_ROUTE_URL])

    assert [item.source_url for item in result.work_items] == [
        CORNER_CAFE_URL, GONE_URL, SPICE_ROUTE_URL,
    ]
    assert result.successful_extractions == 2


@pytest.mark.parametrize("max_concurrent_jobs", [1, 2])
async def test_unexpected_errors_fail_items_without_aborting_the_run(
    fetcher: WebFetcher, max_concurrent_jobs: int,
) -> None:
    repository = FlakyLogRepository(
        RuntimeError("log store offline"), statuses=("success", "failed"),
    )
    registry = build_registry(fetcher=fetcher, synthesizer=SynthesizerAgent(None))
    orchestrator = PipelineOrchestrator(
        registry, repository,
        completeness_threshold=80.0, max_concurrent_jobs=max_concurrent_jobs,
    )

    result = await orchestrator.start_run([GONE_URL, SPICE_ROUTE_URL])

    assert not result.success
    assert result.total_processed == 2
    assert result.failed_extractions == 2
    assert [item.source_url for item in result.work_items] == [GONE_URL, SPICE_ROUTE_URL]
    assert all(item.stage == S.failed for item in result.work_items)
    assert all("log store offline" in error for error in result.errors)
    assert await repository.count_restaurants() == 0
    assert not orchestrator.is_running


async def test_second_run_fails_fast_while_busy(repository: InMemoryRepository) -> None:
    fetcher = BlockingFetcher()
    orchestrator = _orchestrator(fetcher, repository, SynthesizerAgent(None))

    running = asyncio.create_task(orchestrator.start_run([GONE_URL]))
    await fetcher.started.wait()

    with pytest.raises(PipelineBusyError, match="already running"):
        await orchestrator.start_run([SPICE_ROUTE_URL])

    status = await orchestrator.get_status()
    assert status.is_running
    assert status.queue_length == 1
    assert status.active_agents == 1

    fetcher.release.set()
    result = await running

    assert result.failed_extractions == 1
    assert not orchestrator.is_running
    assert (await orchestrator.get_status()).queue_length == 0


async def test_stop_prevents_new_items(repository: InMemoryRepository) -> None:
    fetcher = BlockingFetcher()
    orchestrator = _orchestrator(fetcher, repository, SynthesizerAgent(None))

    running = asyncio.create_task(
        orchestrator.start_run([GONE_URL, SPICE_ROUTE_URL, CORNER_CAFE_URL])
    )
    await fetcher.started.wait()
    orchestrator.stop_run()
    fetcher.release.set()

    result = await running

    assert fetcher.calls == 1
    assert result.total_processed == 1
