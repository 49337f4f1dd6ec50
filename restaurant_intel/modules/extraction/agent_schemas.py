"""Agent contracts: pydantic models for inter-agent communication.

Defines the data structures that flow between the stages:
  Orchestrator -> Synthesizer:  SynthesisRequest / CuisineClassificationRequest
                                / AddressValidationRequest
  Synthesizer  -> Orchestrator: SynthesisResult / cuisine tags / NormalizedAddress
  Registry     -> callers:      AgentSnapshot
  Orchestrator -> Repository:   WorkItem, ExtractionLogEntry, SystemMetrics
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import Field

from restaurant_intel.modules.extraction.errors import InvalidTransitionError
from restaurant_intel.modules.extraction.schemas import CamelModel, CandidateRecord


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# ---------------------------------------------------------------------------
# Agent registry
# ---------------------------------------------------------------------------


class StageType(str, Enum):
    fetch = "web-scraper"
    extract = "data-extractor"
    validate = "schema-validator"
    synthesize = "reasoning-llm"


AgentStatus = Literal["idle", "active", "processing", "error"]


class AgentMetricsSnapshot(CamelModel):
    requests_today: int = 0
    success_rate: float = 100.0
    avg_response_time: float = 0.0  # seconds
    total_processed: int = 0
    error_count: int = 0
    last_error: str | None = None


class AgentSnapshot(CamelModel):
    id: str
    name: str
    type: StageType
    status: AgentStatus
    metrics: AgentMetricsSnapshot
    last_activity: datetime | None = None


# ---------------------------------------------------------------------------
# Synthesizer input/output
# ---------------------------------------------------------------------------


class ConflictSource(CamelModel):
    """One source's view of the restaurant, weighted by its reliability."""

    source: str
    data: CandidateRecord
    reliability: float = Field(..., ge=0.0, le=1.0)


class SynthesisRequest(CamelModel):
    kind: Literal["synthesis"] = "synthesis"
    restaurant_name: str
    conflicting_data: list[ConflictSource] = Field(..., min_length=1)


class SynthesisResult(CamelModel):
    synthesized_data: CandidateRecord
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str
    conflicts_resolved: list[str] = Field(default_factory=list)


class CuisineClassificationRequest(CamelModel):
    kind: Literal["cuisine"] = "cuisine"
    restaurant_name: str
    description: str | None = None
    menu_items: list[str] | None = None
    location: str | None = None


class AddressValidationRequest(CamelModel):
    kind: Literal["address"] = "address"
    raw_address: str
    restaurant_name: str
    city: str | None = None
    state: str | None = None


class NormalizedAddress(CamelModel):
    street: str | None = None
    city: str
    state: str
    postal_code: str | None = None
    country: str
    formatted: str
    confidence: float = Field(..., ge=0.0, le=1.0)


SynthesisTask = SynthesisRequest | CuisineClassificationRequest | AddressValidationRequest


# ---------------------------------------------------------------------------
# Work items (processing queue)
# ---------------------------------------------------------------------------


class WorkItemStage(str, Enum):
    queued = "queued"
    fetching = "fetching"
    extracting = "extracting"
    validating = "validating"
    synthesizing = "synthesizing"
    completed = "completed"
    failed = "failed"


TERMINAL_STAGES = frozenset({WorkItemStage.completed, WorkItemStage.failed})

ALLOWED_TRANSITIONS: dict[WorkItemStage, frozenset[WorkItemStage]] = {
    WorkItemStage.queued: frozenset({WorkItemStage.fetching, WorkItemStage.failed}),
    WorkItemStage.fetching: frozenset({WorkItemStage.extracting, WorkItemStage.failed}),
    WorkItemStage.extracting: frozenset({WorkItemStage.validating, WorkItemStage.failed}),
    WorkItemStage.validating: frozenset({
        WorkItemStage.synthesizing, WorkItemStage.completed, WorkItemStage.failed,
    }),
    WorkItemStage.synthesizing: frozenset({WorkItemStage.completed, WorkItemStage.failed}),
    WorkItemStage.completed: frozenset(),
    WorkItemStage.failed: frozenset(),
}


class WorkItem(CamelModel):
    """One unit of pipeline work tracking a single source through the stages.

    Only the Orchestrator calls ``transition``; stages never touch work items.
    """

    id: str = Field(default_factory=new_id)
    restaurant_name: str = "Processing..."
    source_url: str
    location: str = "Unknown"
    stage: WorkItemStage = WorkItemStage.queued
    stage_history: list[WorkItemStage] = Field(
        default_factory=lambda: [WorkItemStage.queued]
    )
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    restaurant_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def transition(self, stage: WorkItemStage, *, error: str | None = None) -> None:
        if stage not in ALLOWED_TRANSITIONS[self.stage]:
            raise InvalidTransitionError(
                f"Work item {self.id} cannot move from {self.stage.value} to {stage.value}"
            )
        now = utcnow()
        if self.stage == WorkItemStage.queued:
            self.started_at = now
        self.stage = stage
        self.stage_history.append(stage)
        if stage in TERMINAL_STAGES:
            self.completed_at = now
        if stage == WorkItemStage.failed:
            self.error_message = error or "Unknown error"


# ---------------------------------------------------------------------------
# Runs, logs, aggregate metrics
# ---------------------------------------------------------------------------


class RunResult(CamelModel):
    success: bool = False
    total_processed: int = 0
    successful_extractions: int = 0
    failed_extractions: int = 0
    errors: list[str] = Field(default_factory=list)
    work_items: list[WorkItem] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None


class RunStatus(CamelModel):
    is_running: bool
    queue_length: int
    active_agents: int


class ExtractionLogEntry(CamelModel):
    """Immutable audit entry appended once per terminal work item."""

    id: str = Field(default_factory=new_id)
    restaurant_id: str | None = None
    work_item_id: str | None = None
    agent_id: str | None = None
    action: str
    status: Literal["success", "failed"]
    duration_ms: int | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class SystemMetrics(CamelModel):
    total_restaurants: int = 0
    active_agents: int = 0
    processing_rate: int = 0  # work items per hour, last run
    success_rate: float = 0.0
    updated_at: datetime = Field(default_factory=utcnow)
