"""Agent Registry: one long-lived handle per stage type.

A handle wraps a stage object behind the common ``process(payload)``
capability and owns its status and rolling metrics. Metrics are updated on
both the success and the failure path before the call returns or
re-raises. Success rate is always derived from the running totals.

The registry is an explicit object built once at process start and passed
to the Orchestrator; tests build a fresh one each time.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from datetime import date, datetime, timezone
from typing import Any, Protocol

import structlog

from restaurant_intel.modules.extraction.agent_schemas import (
    AgentMetricsSnapshot,
    AgentSnapshot,
    AgentStatus,
    StageType,
)
from restaurant_intel.modules.extraction.agents.fetcher import WebFetcher
from restaurant_intel.modules.extraction.agents.field_extractor import FieldExtractor
from restaurant_intel.modules.extraction.agents.synthesizer import SynthesizerAgent
from restaurant_intel.modules.extraction.agents.transport import get_transport
from restaurant_intel.modules.extraction.agents.validator import SchemaValidator

logger = structlog.get_logger()

BUSY_STATUSES: frozenset[str] = frozenset({"active", "processing"})


class Stage(Protocol):
    agent_name: str

    async def process(self, payload: Any) -> Any: ...


class AgentHandle:
    """Status and metrics wrapper around one stage instance."""

    def __init__(
        self,
        agent_id: str,
        name: str,
        stage_type: StageType,
        stage: Stage,
        *,
        busy_status: AgentStatus = "active",
    ) -> None:
        self.id = agent_id
        self.name = name
        self.type = stage_type
        self.stage = stage
        self.busy_status: AgentStatus = busy_status

        self.status: AgentStatus = "idle"
        self.last_error: str | None = None
        self.last_activity: datetime | None = None

        self._attempts = 0
        self._successes = 0
        self._errors = 0
        self._total_latency = 0.0
        self._requests_today = 0
        self._day: date = datetime.now(timezone.utc).date()
        self._in_flight = 0

    async def process(self, payload: Any) -> Any:
        self._roll_day()
        self._in_flight += 1
        self.status = self.busy_status
        start = time.perf_counter()
        try:
            result = await self.stage.process(payload)
        except Exception as exc:
            self._record(time.perf_counter() - start, error=exc)
            raise
        self._record(time.perf_counter() - start)
        return result

    def _record(self, elapsed: float, error: BaseException | None = None) -> None:
        self._in_flight -= 1
        self._attempts += 1
        self._requests_today += 1
        self._total_latency += elapsed
        self.last_activity = datetime.now(timezone.utc)

        if error is None:
            self._successes += 1
            self.status = self.busy_status if self._in_flight else "idle"
            return

        self._errors += 1
        self.last_error = str(error) or type(error).__name__
        self.status = self.busy_status if self._in_flight else "error"
        logger.warning(
            "Agent call failed",
            agent=self.id,
            error=self.last_error,
            error_count=self._errors,
        )

    def _roll_day(self) -> None:
        today = datetime.now(timezone.utc).date()
        if today != self._day:
            self._day = today
            self._requests_today = 0

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def is_busy(self) -> bool:
        return self.status in BUSY_STATUSES

    @property
    def success_rate(self) -> float:
        if not self._attempts:
            return 100.0
        return round(self._successes / self._attempts * 100, 2)

    @property
    def avg_response_time(self) -> float:
        """Mean latency over all attempts, in seconds."""
        if not self._attempts:
            return 0.0
        return round(self._total_latency / self._attempts, 4)

    def metrics(self) -> AgentMetricsSnapshot:
        self._roll_day()
        return AgentMetricsSnapshot(
            requests_today=self._requests_today,
            success_rate=self.success_rate,
            avg_response_time=self.avg_response_time,
            total_processed=self._attempts,
            error_count=self._errors,
            last_error=self.last_error,
        )

    def snapshot(self) -> AgentSnapshot:
        return AgentSnapshot(
            id=self.id,
            name=self.name,
            type=self.type,
            status=self.status,
            metrics=self.metrics(),
            last_activity=self.last_activity,
        )


class AgentRegistry:
    """Exactly one handle per stage type."""

    def __init__(self, handles: Iterable[AgentHandle]) -> None:
        self._by_id: dict[str, AgentHandle] = {}
        self._by_type: dict[StageType, AgentHandle] = {}
        for handle in handles:
            if handle.type in self._by_type:
                raise ValueError(f"Duplicate handle for stage type {handle.type.value}")
            self._by_id[handle.id] = handle
            self._by_type[handle.type] = handle

        missing = set(StageType) - set(self._by_type)
        if missing:
            raise ValueError(
                f"Missing handles for: {', '.join(sorted(t.value for t in missing))}"
            )

    def get(self, agent_id: str) -> AgentHandle | None:
        return self._by_id.get(agent_id)

    def all(self) -> list[AgentHandle]:
        return list(self._by_id.values())

    def by_type(self, stage_type: StageType) -> list[AgentHandle]:
        handle = self._by_type.get(stage_type)
        return [handle] if handle else []

    def handle_for(self, stage_type: StageType) -> AgentHandle:
        return self._by_type[stage_type]

    def snapshots(self) -> list[AgentSnapshot]:
        return [handle.snapshot() for handle in self._by_id.values()]

    def active_count(self) -> int:
        return sum(1 for handle in self._by_id.values() if handle.is_busy)

    async def aclose(self) -> None:
        """Release resources held by stages (SDK clients)."""
        for handle in self._by_id.values():
            close = getattr(handle.stage, "aclose", None)
            if close is not None:
                await close()


def build_registry(
    *,
    fetcher: Stage | None = None,
    extractor: Stage | None = None,
    validator: Stage | None = None,
    synthesizer: Stage | None = None,
) -> AgentRegistry:
    """Build the registry with the default stage implementations.

    Any stage can be replaced (tests pass doubles).
    """
    registry = AgentRegistry([
        AgentHandle(
            "web-scraper", "Web Scraper Agent", StageType.fetch,
            fetcher or WebFetcher(),
        ),
        AgentHandle(
            "data-extractor", "Data Extractor Agent", StageType.extract,
            extractor or FieldExtractor(),
        ),
        AgentHandle(
            "schema-validator", "Schema Validator Agent", StageType.validate,
            validator or SchemaValidator(), busy_status="processing",
        ),
        AgentHandle(
            "reasoning-llm", "Reasoning LLM Agent", StageType.synthesize,
            synthesizer or SynthesizerAgent(get_transport()),
        ),
    ])
    logger.info("Agent registry initialized", agents=[h.id for h in registry.all()])
    return registry
