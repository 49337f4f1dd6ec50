"""Restaurant Intelligence API.

Pipeline control:
  - /pipeline/runs      - Trigger a run (empty body → demonstration sources)
  - /pipeline/stop      - Stop accepting new work items
  - /pipeline/status    - Running flag, queue length, active agents
  - /pipeline/queue     - Work items and their stage history

Read side:
  - /agents             - Agent snapshots (status + rolling metrics)
  - /restaurants        - Persisted records (GET/PATCH/DELETE per id)
  - /metrics            - Aggregate system metrics
  - /extraction-logs    - Audit trail, newest first

  - /synthesis/resolve  - Conflict synthesis on caller-supplied sources

The pipeline objects (registry, repository, orchestrator) live on
``app.state`` and are built by the application lifespan.
"""

from __future__ import annotations

from typing import Any, Literal

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, ValidationError

from restaurant_intel.modules.extraction.agent_schemas import (
    AgentSnapshot,
    ExtractionLogEntry,
    RunResult,
    RunStatus,
    StageType,
    SynthesisRequest,
    SynthesisResult,
    SystemMetrics,
    WorkItem,
)
from restaurant_intel.modules.extraction.agents.orchestrator import PipelineOrchestrator
from restaurant_intel.modules.extraction.agents.registry import AgentRegistry
from restaurant_intel.modules.extraction.errors import (
    PipelineBusyError,
    RecordNotFoundError,
    SynthesisError,
)
from restaurant_intel.modules.extraction.repository import Repository
from restaurant_intel.modules.extraction.schemas import PersistedRestaurant

logger = structlog.get_logger()

router = APIRouter(tags=["extraction"])


class RunRequest(BaseModel):
    urls: list[str] = Field(default_factory=list)
    location_hint: str | None = None


class StopResponse(BaseModel):
    stopping: bool


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def get_repository(request: Request) -> Repository:
    return request.app.state.repository


def get_registry(request: Request) -> AgentRegistry:
    return request.app.state.registry


# ---------------------------------------------------------------------------
# Pipeline control
# ---------------------------------------------------------------------------


@router.post("/pipeline/runs", response_model=RunResult)
async def start_run(
    payload: RunRequest | None = None,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> RunResult:
    """Run one batch to completion and return its summary.

    Returns 409 while another run is active.
    """
    payload = payload or RunRequest()
    logger.info("Run requested", sources=len(payload.urls))
    try:
        return await orchestrator.start_run(payload.urls, location_hint=payload.location_hint)
    except PipelineBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/pipeline/stop", response_model=StopResponse)
async def stop_run(
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> StopResponse:
    stopping = orchestrator.is_running
    orchestrator.stop_run()
    return StopResponse(stopping=stopping)


@router.get("/pipeline/status", response_model=RunStatus)
async def pipeline_status(
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> RunStatus:
    return await orchestrator.get_status()


@router.get("/pipeline/queue", response_model=list[WorkItem])
async def list_queue(
    include_terminal: bool = Query(True),
    repository: Repository = Depends(get_repository),
) -> list[WorkItem]:
    return await repository.list_queue(include_terminal=include_terminal)


@router.delete("/pipeline/queue/{item_id}", status_code=204)
async def remove_queue_item(
    item_id: str,
    repository: Repository = Depends(get_repository),
) -> None:
    try:
        await repository.remove_from_queue(item_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


@router.get("/agents", response_model=list[AgentSnapshot])
async def list_agents(registry: AgentRegistry = Depends(get_registry)) -> list[AgentSnapshot]:
    return registry.snapshots()


@router.get("/agents/{agent_id}", response_model=AgentSnapshot)
async def get_agent(
    agent_id: str,
    registry: AgentRegistry = Depends(get_registry),
) -> AgentSnapshot:
    handle = registry.get(agent_id)
    if handle is None:
        raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
    return handle.snapshot()


# ---------------------------------------------------------------------------
# Restaurants
# ---------------------------------------------------------------------------


@router.get("/restaurants", response_model=list[PersistedRestaurant])
async def list_restaurants(
    status: Literal["pending", "validated", "failed"] | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    repository: Repository = Depends(get_repository),
) -> list[PersistedRestaurant]:
    return await repository.list_restaurants(status=status, limit=limit, offset=offset)


@router.get("/restaurants/{restaurant_id}", response_model=PersistedRestaurant)
async def get_restaurant(
    restaurant_id: str,
    repository: Repository = Depends(get_repository),
) -> PersistedRestaurant:
    try:
        return await repository.get_restaurant(restaurant_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.patch("/restaurants/{restaurant_id}", response_model=PersistedRestaurant)
async def update_restaurant(
    restaurant_id: str,
    changes: dict[str, Any] = Body(...),
    repository: Repository = Depends(get_repository),
) -> PersistedRestaurant:
    """Operator correction. The merged record must still satisfy the schema."""
    try:
        updated = await repository.update_restaurant(restaurant_id, changes)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc
    logger.info("Restaurant updated", restaurant_id=restaurant_id, fields=sorted(changes))
    return updated


@router.delete("/restaurants/{restaurant_id}", status_code=204)
async def delete_restaurant(
    restaurant_id: str,
    repository: Repository = Depends(get_repository),
) -> None:
    try:
        await repository.delete_restaurant(restaurant_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Metrics and audit trail
# ---------------------------------------------------------------------------


@router.get("/metrics", response_model=SystemMetrics)
async def system_metrics(repository: Repository = Depends(get_repository)) -> SystemMetrics:
    return await repository.get_system_metrics()


@router.get("/extraction-logs", response_model=list[ExtractionLogEntry])
async def extraction_logs(
    limit: int = Query(50, ge=1, le=500),
    repository: Repository = Depends(get_repository),
) -> list[ExtractionLogEntry]:
    return await repository.list_extraction_logs(limit=limit)


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


@router.post("/synthesis/resolve", response_model=SynthesisResult)
async def resolve_conflicts(
    payload: SynthesisRequest,
    registry: AgentRegistry = Depends(get_registry),
) -> SynthesisResult:
    """Merge conflicting candidate records from several sources into one."""
    handle = registry.handle_for(StageType.synthesize)
    try:
        return await handle.process(payload)
    except SynthesisError as exc:
        logger.error("Conflict synthesis failed", error=str(exc))
        raise HTTPException(status_code=502, detail=str(exc)) from exc
