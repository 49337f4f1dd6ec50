"""Orchestrator: pipeline controller.

Drives each WorkItem through the fixed state machine:
  queued -> fetching -> extracting -> validating -> (synthesizing)? -> completed | failed

This controller makes NO LLM calls itself. It dispatches to the stage
handles in the AgentRegistry and:
  - escalates to the Synthesizer only when validation is invalid or
    completeness is below the threshold
  - marks the WorkItem failed on the first stage error (no retries)
  - applies safe defaults before persisting, so every stored record
    satisfies the canonical schema
  - appends one extraction-log entry per terminal WorkItem
  - updates aggregate metrics after each run

Only one run may be active per process; a second ``start_run`` fails fast.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from typing import Any

import structlog
from pydantic import ValidationError

from restaurant_intel.core.config import settings
from restaurant_intel.modules.extraction.agent_schemas import (
    AddressValidationRequest,
    CuisineClassificationRequest,
    ExtractionLogEntry,
    RunResult,
    RunStatus,
    StageType,
    SystemMetrics,
    WorkItem,
    WorkItemStage,
    new_id,
    utcnow,
)
from restaurant_intel.modules.extraction.agents.field_extractor import (
    DEFAULT_PRICE_RANGE,
    UNKNOWN_LOCALITY,
    UNKNOWN_RESTAURANT,
    WEB_SCRAPING_SOURCE,
)
from restaurant_intel.modules.extraction.agents.registry import AgentRegistry
from restaurant_intel.modules.extraction.agents.synthesizer import should_synthesize
from restaurant_intel.modules.extraction.agents.validator import WARNING_MISSING_COORDINATES
from restaurant_intel.modules.extraction.errors import (
    PipelineBusyError,
    PipelineError,
    RepositoryError,
)
from restaurant_intel.modules.extraction.repository import Repository
from restaurant_intel.modules.extraction.schemas import (
    PRICE_RANGES,
    WEEKDAYS,
    CandidateAddress,
    CandidateRecord,
    Coordinates,
    DataSource,
    DayHours,
    PersistedRestaurant,
    RestaurantRecord,
    SourceRating,
    ValidationOutcome,
    is_valid_email,
    is_valid_url,
)

logger = structlog.get_logger()

EXTRACTION_ACTION = "full_extraction"


class PipelineOrchestrator:
    """Runs batches of sources through the stage handles."""

    def __init__(
        self,
        registry: AgentRegistry,
        repository: Repository,
        *,
        completeness_threshold: float | None = None,
        max_concurrent_jobs: int | None = None,
        demo_source_urls: Sequence[str] | None = None,
        default_country: str | None = None,
        default_cuisine_tag: str | None = None,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.completeness_threshold = (
            completeness_threshold
            if completeness_threshold is not None
            else settings.completeness_threshold
        )
        self.max_concurrent_jobs = max(1, max_concurrent_jobs or settings.max_concurrent_jobs)
        self.demo_source_urls = list(demo_source_urls or settings.demo_source_urls)
        self.default_country = default_country or settings.default_country
        self.default_cuisine_tag = default_cuisine_tag or settings.default_cuisine_tag

        self._running = False
        self._stop_requested = False

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Run control (trigger surface)
    # ------------------------------------------------------------------

    async def start_run(
        self,
        urls: Sequence[str] | None = None,
        *,
        location_hint: str | None = None,
    ) -> RunResult:
        """Process a batch of sources. An empty list uses the demo set."""
        if self._running:
            raise PipelineBusyError("Extraction pipeline is already running")

        self._running = True
        self._stop_requested = False
        sources = list(urls) if urls else list(self.demo_source_urls)
        result = RunResult()
        run_start = time.time()

        logger.info(
            "Orchestrator: run started",
            sources=len(sources),
            demo=not urls,
            max_concurrent_jobs=self.max_concurrent_jobs,
        )

        try:
            if self.max_concurrent_jobs > 1:
                items = await self._run_pool(sources, location_hint)
            else:
                items = []
                for url in sources:
                    if self._stop_requested:
                        logger.info("Orchestrator: stop requested, not accepting more sources")
                        break
                    try:
                        items.append(await self.process_source(url, location_hint))
                    except Exception as exc:
                        items.append(self._stray_failure(url, exc))

            for item in items:
                result.work_items.append(item)
                result.total_processed += 1
                if item.stage == WorkItemStage.completed:
                    result.successful_extractions += 1
                else:
                    result.failed_extractions += 1
                    result.errors.append(
                        f"Failed to process {item.source_url}: {item.error_message}"
                    )

            result.success = result.successful_extractions > 0
            await self._update_system_metrics(result, time.time() - run_start)
        finally:
            self._running = False
            self._stop_requested = False

        result.finished_at = utcnow()
        logger.info(
            "Orchestrator: run finished",
            total=result.total_processed,
            successful=result.successful_extractions,
            failed=result.failed_extractions,
            duration_ms=int((time.time() - run_start) * 1000),
        )
        return result

    def stop_run(self) -> None:
        """Stop accepting new WorkItems; stages already in flight finish."""
        if self._running:
            self._stop_requested = True
            logger.info("Orchestrator: stop requested")

    async def get_status(self) -> RunStatus:
        pending = await self.repository.list_queue(include_terminal=False)
        return RunStatus(
            is_running=self._running,
            queue_length=len(pending),
            active_agents=self.registry.active_count(),
        )

    async def _run_pool(
        self, sources: list[str], location_hint: str | None,
    ) -> list[WorkItem]:
        semaphore = asyncio.Semaphore(self.max_concurrent_jobs)

        async def worker(url: str) -> WorkItem | None:
            async with semaphore:
                if self._stop_requested:
                    return None
                return await self.process_source(url, location_hint)

        results = await asyncio.gather(
            *(worker(url) for url in sources), return_exceptions=True,
        )
        # gather keeps submission order
        items: list[WorkItem] = []
        for url, result in zip(sources, results):
            if isinstance(result, Exception):
                items.append(self._stray_failure(url, result))
            elif isinstance(result, BaseException):
                raise result
            elif result is not None:
                items.append(result)
        return items

    # ------------------------------------------------------------------
    # One unit of work
    # ------------------------------------------------------------------

    async def process_source(self, url: str, location_hint: str | None = None) -> WorkItem:
        """Drive one source through the state machine. Never raises for stage errors."""
        item = WorkItem(source_url=url, location=location_hint or UNKNOWN_LOCALITY)
        start = time.time()
        outcome: ValidationOutcome | None = None
        synthesized = False

        try:
            await self.repository.add_to_queue(item)

            await self._advance(item, WorkItemStage.fetching)
            page = await self._handle(StageType.fetch).process(url)
            item.restaurant_name = page.title

            await self._advance(item, WorkItemStage.extracting)
            candidate: CandidateRecord = await self._handle(StageType.extract).process(page)
            if candidate.address and candidate.address.city and item.location == UNKNOWN_LOCALITY:
                item.location = candidate.address.city

            await self._advance(item, WorkItemStage.validating)
            validator = self._handle(StageType.validate)
            outcome = await validator.process(candidate)

            escalate, reasons = should_synthesize(outcome, self.completeness_threshold)
            if escalate:
                logger.info(
                    "Orchestrator: escalating to synthesizer",
                    work_item=item.id,
                    url=url,
                    reasons=reasons,
                )
                await self._advance(item, WorkItemStage.synthesizing)
                candidate, synthesized = await self._synthesize(candidate, outcome, item)
                outcome = await validator.process(candidate)

            restaurant = await self.repository.create_restaurant(
                self.build_restaurant(candidate, outcome, url)
            )
            item.restaurant_id = restaurant.id
            try:
                # The completed stage is adopted only once it is stored
                completed = item.model_copy(deep=True)
                completed.transition(WorkItemStage.completed)
                await self.repository.update_queue_item(completed)
                await self._log_extraction(
                    completed, start, outcome=outcome, synthesized=synthesized,
                )
            except Exception:
                await self._discard_restaurant(item)
                raise
            item = completed

        except Exception as exc:
            await self._fail(item, exc)
            await self._log_extraction(item, start, outcome=outcome, synthesized=synthesized)
            return item

        logger.info(
            "Orchestrator: work item completed",
            work_item=item.id,
            url=url,
            restaurant_id=item.restaurant_id,
            status=restaurant.status,
            completeness=outcome.completeness,
            synthesized=synthesized,
            duration_ms=int((time.time() - start) * 1000),
        )
        return item

    def _handle(self, stage_type: StageType):
        return self.registry.handle_for(stage_type)

    async def _advance(self, item: WorkItem, stage: WorkItemStage) -> None:
        item.transition(stage)
        logger.info("Orchestrator: work item advanced", work_item=item.id, stage=stage.value)
        await self.repository.update_queue_item(item)

    async def _discard_restaurant(self, item: WorkItem) -> None:
        """Remove the record stored for an item that did not complete."""
        restaurant_id, item.restaurant_id = item.restaurant_id, None
        if restaurant_id is None:
            return
        try:
            await self.repository.delete_restaurant(restaurant_id)
        except RepositoryError as exc:
            logger.error(
                "Orchestrator: could not discard restaurant",
                work_item=item.id,
                restaurant_id=restaurant_id,
                error=str(exc),
            )
            return
        logger.warning(
            "Orchestrator: discarded restaurant of unfinished work item",
            work_item=item.id,
            restaurant_id=restaurant_id,
        )

    def _stray_failure(self, url: str, exc: Exception) -> WorkItem:
        """Failed WorkItem for an error that escaped process_source."""
        logger.error(
            "Orchestrator: unexpected error outside the stage pipeline",
            url=url,
            error=str(exc),
            exc_info=exc,
        )
        item = WorkItem(source_url=url)
        item.transition(WorkItemStage.failed, error=str(exc) or type(exc).__name__)
        return item

    async def _fail(self, item: WorkItem, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        if isinstance(exc, PipelineError):
            logger.warning(
                "Orchestrator: work item failed",
                work_item=item.id,
                url=item.source_url,
                stage=item.stage.value,
                error_type=type(exc).__name__,
                error=message,
            )
        else:
            logger.error(
                "Orchestrator: work item failed unexpectedly",
                work_item=item.id,
                url=item.source_url,
                stage=item.stage.value,
                error=message,
                exc_info=exc,
            )

        if item.is_terminal:
            return
        item.transition(WorkItemStage.failed, error=message)
        try:
            await self.repository.update_queue_item(item)
        except RepositoryError as repo_exc:
            logger.error(
                "Orchestrator: could not record failure",
                work_item=item.id,
                error=str(repo_exc),
            )

    # ------------------------------------------------------------------
    # Synthesis step
    # ------------------------------------------------------------------

    async def _synthesize(
        self,
        candidate: CandidateRecord,
        outcome: ValidationOutcome,
        item: WorkItem,
    ) -> tuple[CandidateRecord, bool]:
        """Run the targeted synthesis operations the outcome calls for.

        Returns the updated candidate and whether the Synthesizer contributed.
        """
        handle = self._handle(StageType.synthesize)
        updated = candidate.model_copy(deep=True)

        needs_cuisine = (
            not candidate.cuisine_types or "cuisineTypes" in candidate.defaulted_fields
        )
        raw_address = _raw_address(candidate)
        needs_address = bool(raw_address) and (
            WARNING_MISSING_COORDINATES in outcome.warnings
            or any(path.startswith("address") for path in outcome.missing_fields)
        )
        if not (needs_cuisine or needs_address):
            return updated, False

        if not getattr(handle.stage, "available", True):
            logger.info(
                "Orchestrator: synthesizer unavailable, keeping heuristic record",
                work_item=item.id,
                cuisine=needs_cuisine,
                address=needs_address,
            )
            return updated, False

        name = candidate.name or UNKNOWN_RESTAURANT
        city = candidate.address.city if candidate.address else None
        state = candidate.address.state if candidate.address else None

        if needs_cuisine:
            tags = await handle.process(CuisineClassificationRequest(
                restaurant_name=name,
                description=candidate.description,
                menu_items=candidate.menu_items or None,
                location=city,
            ))
            updated.cuisine_types = list(tags)
            updated.clear_defaulted("cuisineTypes")

        if needs_address:
            normalized = await handle.process(AddressValidationRequest(
                raw_address=raw_address,
                restaurant_name=name,
                city=city,
                state=state,
            ))
            current = updated.address.model_dump() if updated.address else {}
            current.update(normalized.model_dump(exclude={"confidence"}, exclude_none=True))
            updated.address = CandidateAddress.model_validate(current)
            updated.clear_defaulted("address")

        return updated, True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def build_restaurant(
        self,
        candidate: CandidateRecord,
        outcome: ValidationOutcome,
        url: str,
    ) -> PersistedRestaurant:
        """Finalize a candidate into a schema-conformant PersistedRestaurant."""
        payload, defaulted = self.finalize_payload(candidate, url)
        try:
            record = RestaurantRecord.model_validate(payload)
        except ValidationError as exc:
            raise RepositoryError(
                f"Finalized record for {url} violates the canonical schema: {exc}"
            ) from exc

        now = utcnow()
        return PersistedRestaurant(
            **record.model_dump(),
            id=new_id(),
            status="validated" if outcome.valid else "pending",
            completeness=outcome.completeness,
            accuracy=outcome.accuracy,
            extracted_at=now,
            validated_at=now if outcome.valid else None,
            website=url,
            description=candidate.description,
            defaulted_fields=defaulted,
        )

    def finalize_payload(
        self, candidate: CandidateRecord, url: str,
    ) -> tuple[dict[str, Any], list[str]]:
        """Apply safe defaults and drop invalid optional values.

        Returns the canonical payload and the full list of defaulted fields.
        """
        payload = candidate.to_payload()
        defaulted = list(candidate.defaulted_fields)

        def assume(field: str) -> None:
            if field not in defaulted:
                defaulted.append(field)

        name = payload.get("name")
        if not isinstance(name, str) or len(name.strip()) < 2:
            payload["name"] = UNKNOWN_RESTAURANT
            assume("name")
        else:
            payload["name"] = name.strip()[:200]

        address = dict(payload.get("address") or {})
        for key, fallback in (
            ("city", UNKNOWN_LOCALITY),
            ("state", UNKNOWN_LOCALITY),
            ("country", self.default_country),
        ):
            if not str(address.get(key) or "").strip():
                address[key] = fallback
                assume("address")
        if "coordinates" in address and not _validates(Coordinates, address["coordinates"]):
            _drop(address, "coordinates", url)
        payload["address"] = address

        if not payload.get("cuisineTypes"):
            payload["cuisineTypes"] = [self.default_cuisine_tag]
            assume("cuisineTypes")

        contact = dict(payload.get("contactInfo") or {})
        if contact.get("email") and not is_valid_email(contact["email"]):
            _drop(contact, "email", url)
        if contact.get("website") and not is_valid_url(contact["website"]):
            _drop(contact, "website", url)
        payload["contactInfo"] = contact

        ratings = dict(payload.get("ratings") or {})
        average = ratings.get("average")
        if average is not None and not 0 <= average <= 5:
            _drop(ratings, "average", url)
        total = ratings.get("total")
        if total is not None and total < 0:
            _drop(ratings, "total", url)
        ratings["sources"] = {
            key: entry
            for key, entry in (ratings.get("sources") or {}).items()
            if _validates(SourceRating, entry)
        }
        payload["ratings"] = ratings

        payload["operatingHours"] = {
            day: entry
            for day, entry in (payload.get("operatingHours") or {}).items()
            if day in WEEKDAYS and _validates(DayHours, entry)
        }

        if payload.get("priceRange") not in PRICE_RANGES:
            payload["priceRange"] = DEFAULT_PRICE_RANGE
            assume("priceRange")

        payload["amenities"] = [a for a in payload.get("amenities") or [] if a]

        if not payload.get("dataSources"):
            payload["dataSources"] = [
                DataSource(
                    source=WEB_SCRAPING_SOURCE,
                    url=url,
                    extracted_at=utcnow(),
                    reliability=settings.web_scraping_reliability,
                ).model_dump(mode="json", by_alias=True)
            ]

        return payload, defaulted

    async def _log_extraction(
        self,
        item: WorkItem,
        start: float,
        *,
        outcome: ValidationOutcome | None,
        synthesized: bool,
    ) -> None:
        failed = item.stage == WorkItemStage.failed
        metadata: dict[str, Any] = {
            "url": item.source_url,
            "stages": [stage.value for stage in item.stage_history],
            "synthesized": synthesized,
        }
        if outcome is not None:
            metadata["completeness"] = outcome.completeness
            metadata["accuracy"] = outcome.accuracy

        entry = ExtractionLogEntry(
            restaurant_id=item.restaurant_id,
            work_item_id=item.id,
            action=EXTRACTION_ACTION,
            status="failed" if failed else "success",
            duration_ms=int((time.time() - start) * 1000),
            error_message=item.error_message if failed else None,
            metadata=metadata,
        )
        if not failed:
            await self.repository.append_extraction_log(entry)
            return
        try:
            await self.repository.append_extraction_log(entry)
        except RepositoryError as exc:
            logger.error(
                "Orchestrator: could not append extraction log",
                work_item=item.id,
                error=str(exc),
            )

    async def _update_system_metrics(self, result: RunResult, elapsed_seconds: float) -> None:
        current = await self.repository.get_system_metrics()
        hours = max(elapsed_seconds, 1.0) / 3600
        processed = result.total_processed
        metrics = SystemMetrics(
            total_restaurants=await self.repository.count_restaurants(),
            active_agents=self.registry.active_count(),
            processing_rate=int(round(processed / hours)) if processed else 0,
            success_rate=(
                round(result.successful_extractions / processed * 100, 2)
                if processed else current.success_rate
            ),
            updated_at=utcnow(),
        )
        await self.repository.update_system_metrics(metrics)
        logger.info(
            "Orchestrator: system metrics updated",
            total_restaurants=metrics.total_restaurants,
            processing_rate=metrics.processing_rate,
            success_rate=metrics.success_rate,
        )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _raw_address(candidate: CandidateRecord) -> str:
    if candidate.address is None or "address" in candidate.defaulted_fields:
        return ""
    return candidate.address.street or candidate.address.formatted or ""


def _validates(model: type, value: Any) -> bool:
    try:
        model.model_validate(value)
    except ValidationError:
        return False
    return True


def _drop(container: dict[str, Any], key: str, url: str) -> None:
    logger.warning(
        "Orchestrator: dropping invalid optional value",
        field=key,
        value=container.get(key),
        url=url,
    )
    container.pop(key, None)
