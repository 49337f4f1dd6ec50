"""SQLAlchemy-backed Repository (PostgreSQL in production, SQLite in tests)."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restaurant_intel.core.database import session_scope
from restaurant_intel.modules.extraction.agent_schemas import (
    ExtractionLogEntry,
    SystemMetrics,
    WorkItem,
    utcnow,
)
from restaurant_intel.modules.extraction.errors import RecordNotFoundError, RepositoryError
from restaurant_intel.modules.extraction.models import (
    ExtractionLogRow,
    QueueItemRow,
    RestaurantRow,
    SystemMetricsRow,
)
from restaurant_intel.modules.extraction.repository import (
    Repository,
    apply_restaurant_changes,
)
from restaurant_intel.modules.extraction.schemas import PersistedRestaurant

logger = structlog.get_logger()

_METRICS_ROW_ID = 1


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


class SqlAlchemyRepository(Repository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Session scope that translates driver errors into RepositoryError."""
        try:
            async with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Repository operation failed", error=str(exc))
            raise RepositoryError(f"Database error: {exc}") from exc

    # ------------------------------------------------------------------
    # Restaurants
    # ------------------------------------------------------------------

    async def create_restaurant(self, restaurant: PersistedRestaurant) -> PersistedRestaurant:
        async with self._session() as session:
            session.add(RestaurantRow(
                id=restaurant.id,
                name=restaurant.name,
                city=restaurant.address.city,
                status=restaurant.status,
                completeness=restaurant.completeness,
                accuracy=restaurant.accuracy,
                record=_dump(restaurant),
                extracted_at=restaurant.extracted_at,
            ))
        logger.info("Restaurant stored", restaurant_id=restaurant.id, name=restaurant.name)
        return restaurant.model_copy(deep=True)

    async def get_restaurant(self, restaurant_id: str) -> PersistedRestaurant:
        async with self._session() as session:
            row = await session.get(RestaurantRow, restaurant_id)
            if row is None:
                raise RecordNotFoundError(f"Restaurant {restaurant_id} not found")
            return PersistedRestaurant.model_validate(row.record)

    async def list_restaurants(
        self, *, status: str | None = None, limit: int = 100, offset: int = 0,
    ) -> list[PersistedRestaurant]:
        stmt = select(RestaurantRow).order_by(RestaurantRow.extracted_at.desc())
        if status is not None:
            stmt = stmt.where(RestaurantRow.status == status)
        stmt = stmt.offset(offset).limit(limit)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [PersistedRestaurant.model_validate(row.record) for row in rows]

    async def update_restaurant(
        self, restaurant_id: str, changes: dict[str, Any],
    ) -> PersistedRestaurant:
        async with self._session() as session:
            row = await session.get(RestaurantRow, restaurant_id)
            if row is None:
                raise RecordNotFoundError(f"Restaurant {restaurant_id} not found")
            updated = apply_restaurant_changes(
                PersistedRestaurant.model_validate(row.record), changes
            )
            row.name = updated.name
            row.city = updated.address.city
            row.status = updated.status
            row.completeness = updated.completeness
            row.accuracy = updated.accuracy
            row.record = _dump(updated)
        return updated

    async def delete_restaurant(self, restaurant_id: str) -> None:
        async with self._session() as session:
            row = await session.get(RestaurantRow, restaurant_id)
            if row is None:
                raise RecordNotFoundError(f"Restaurant {restaurant_id} not found")
            await session.delete(row)

            metrics_row = await session.get(SystemMetricsRow, _METRICS_ROW_ID)
            if metrics_row is not None:
                metrics = SystemMetrics.model_validate(metrics_row.metrics)
                metrics.total_restaurants = max(0, metrics.total_restaurants - 1)
                metrics.updated_at = utcnow()
                metrics_row.metrics = _dump(metrics)
        logger.info("Restaurant deleted", restaurant_id=restaurant_id)

    async def count_restaurants(self) -> int:
        async with self._session() as session:
            result = await session.execute(select(func.count()).select_from(RestaurantRow))
            return int(result.scalar_one())

    # ------------------------------------------------------------------
    # Processing queue
    # ------------------------------------------------------------------

    async def add_to_queue(self, item: WorkItem) -> WorkItem:
        async with self._session() as session:
            session.add(QueueItemRow(
                id=item.id,
                source_url=item.source_url,
                stage=item.stage.value,
                item=_dump(item),
                created_at=item.created_at,
            ))
        return item.model_copy(deep=True)

    async def update_queue_item(self, item: WorkItem) -> WorkItem:
        async with self._session() as session:
            row = await session.get(QueueItemRow, item.id)
            if row is None:
                raise RecordNotFoundError(f"Queue item {item.id} not found")
            row.stage = item.stage.value
            row.item = _dump(item)
        return item.model_copy(deep=True)

    async def get_queue_item(self, item_id: str) -> WorkItem:
        async with self._session() as session:
            row = await session.get(QueueItemRow, item_id)
            if row is None:
                raise RecordNotFoundError(f"Queue item {item_id} not found")
            return WorkItem.model_validate(row.item)

    async def list_queue(self, *, include_terminal: bool = True) -> list[WorkItem]:
        stmt = select(QueueItemRow).order_by(QueueItemRow.created_at)
        if not include_terminal:
            stmt = stmt.where(QueueItemRow.stage.not_in(("completed", "failed")))
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [WorkItem.model_validate(row.item) for row in rows]

    async def remove_from_queue(self, item_id: str) -> None:
        async with self._session() as session:
            result = await session.execute(
                delete(QueueItemRow).where(QueueItemRow.id == item_id)
            )
            if result.rowcount == 0:
                raise RecordNotFoundError(f"Queue item {item_id} not found")

    # ------------------------------------------------------------------
    # Extraction logs
    # ------------------------------------------------------------------

    async def append_extraction_log(self, entry: ExtractionLogEntry) -> ExtractionLogEntry:
        async with self._session() as session:
            session.add(ExtractionLogRow(
                id=entry.id,
                restaurant_id=entry.restaurant_id,
                status=entry.status,
                entry=_dump(entry),
                created_at=entry.created_at,
            ))
        return entry.model_copy(deep=True)

    async def list_extraction_logs(self, *, limit: int = 50) -> list[ExtractionLogEntry]:
        stmt = select(ExtractionLogRow).order_by(ExtractionLogRow.created_at.desc()).limit(limit)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [ExtractionLogEntry.model_validate(row.entry) for row in rows]

    # ------------------------------------------------------------------
    # Aggregate metrics
    # ------------------------------------------------------------------

    async def get_system_metrics(self) -> SystemMetrics:
        async with self._session() as session:
            row = await session.get(SystemMetricsRow, _METRICS_ROW_ID)
            if row is None:
                return SystemMetrics()
            return SystemMetrics.model_validate(row.metrics)

    async def update_system_metrics(self, metrics: SystemMetrics) -> SystemMetrics:
        async with self._session() as session:
            row = await session.get(SystemMetricsRow, _METRICS_ROW_ID)
            if row is None:
                session.add(SystemMetricsRow(id=_METRICS_ROW_ID, metrics=_dump(metrics)))
            else:
                row.metrics = _dump(metrics)
        return metrics.model_copy(deep=True)
