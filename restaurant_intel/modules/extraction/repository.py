"""Repository abstraction for the extraction pipeline.

The pipeline only talks to ``Repository``; the storage engine is chosen at
startup (``settings.repository_backend``). Reads always return copies, so
callers cannot mutate stored state by accident.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import structlog

from restaurant_intel.modules.extraction.agent_schemas import (
    ExtractionLogEntry,
    SystemMetrics,
    WorkItem,
    utcnow,
)
from restaurant_intel.modules.extraction.errors import RecordNotFoundError
from restaurant_intel.modules.extraction.schemas import PersistedRestaurant

logger = structlog.get_logger()

# Fields an operator correction may never touch
IMMUTABLE_RESTAURANT_FIELDS = frozenset({"id", "extracted_at", "extractedAt"})


def apply_restaurant_changes(
    current: PersistedRestaurant,
    changes: dict[str, Any],
) -> PersistedRestaurant:
    """Merge operator changes into a stored record and re-validate.

    Raises pydantic.ValidationError when the result violates the schema.
    """
    data = current.model_dump(by_alias=True)
    for key, value in changes.items():
        if key in IMMUTABLE_RESTAURANT_FIELDS:
            continue
        field = PersistedRestaurant.model_fields.get(key)
        target = field.alias if field and field.alias else key
        # Nested objects (address, contactInfo, ratings) are patched, not replaced
        if isinstance(value, dict) and isinstance(data.get(target), dict):
            data[target] = {**data[target], **value}
        else:
            data[target] = value
    return PersistedRestaurant.model_validate(data)


class Repository(ABC):
    """Async storage contract used by the Orchestrator and the API."""

    # --- restaurants ---

    @abstractmethod
    async def create_restaurant(self, restaurant: PersistedRestaurant) -> PersistedRestaurant: ...

    @abstractmethod
    async def get_restaurant(self, restaurant_id: str) -> PersistedRestaurant: ...

    @abstractmethod
    async def list_restaurants(
        self, *, status: str | None = None, limit: int = 100, offset: int = 0,
    ) -> list[PersistedRestaurant]: ...

    @abstractmethod
    async def update_restaurant(
        self, restaurant_id: str, changes: dict[str, Any],
    ) -> PersistedRestaurant: ...

    @abstractmethod
    async def delete_restaurant(self, restaurant_id: str) -> None: ...

    @abstractmethod
    async def count_restaurants(self) -> int: ...

    # --- processing queue ---

    @abstractmethod
    async def add_to_queue(self, item: WorkItem) -> WorkItem: ...

    @abstractmethod
    async def update_queue_item(self, item: WorkItem) -> WorkItem: ...

    @abstractmethod
    async def get_queue_item(self, item_id: str) -> WorkItem: ...

    @abstractmethod
    async def list_queue(self, *, include_terminal: bool = True) -> list[WorkItem]: ...

    @abstractmethod
    async def remove_from_queue(self, item_id: str) -> None: ...

    # --- extraction logs (append-only) ---

    @abstractmethod
    async def append_extraction_log(self, entry: ExtractionLogEntry) -> ExtractionLogEntry: ...

    @abstractmethod
    async def list_extraction_logs(self, *, limit: int = 50) -> list[ExtractionLogEntry]: ...

    # --- aggregate metrics ---

    @abstractmethod
    async def get_system_metrics(self) -> SystemMetrics: ...

    @abstractmethod
    async def update_system_metrics(self, metrics: SystemMetrics) -> SystemMetrics: ...


class InMemoryRepository(Repository):
    """Process-local repository. Default backend and the one tests use."""

    def __init__(self) -> None:
        self._restaurants: dict[str, PersistedRestaurant] = {}
        self._queue: dict[str, WorkItem] = {}
        self._logs: list[ExtractionLogEntry] = []
        self._metrics = SystemMetrics()
        self._lock = asyncio.Lock()

    # --- restaurants ---

    async def create_restaurant(self, restaurant: PersistedRestaurant) -> PersistedRestaurant:
        async with self._lock:
            self._restaurants[restaurant.id] = restaurant.model_copy(deep=True)
        logger.info("Restaurant stored", restaurant_id=restaurant.id, name=restaurant.name)
        return restaurant.model_copy(deep=True)

    async def get_restaurant(self, restaurant_id: str) -> PersistedRestaurant:
        restaurant = self._restaurants.get(restaurant_id)
        if restaurant is None:
            raise RecordNotFoundError(f"Restaurant {restaurant_id} not found")
        return restaurant.model_copy(deep=True)

    async def list_restaurants(
        self, *, status: str | None = None, limit: int = 100, offset: int = 0,
    ) -> list[PersistedRestaurant]:
        items = [
            r for r in self._restaurants.values()
            if status is None or r.status == status
        ]
        items.sort(key=lambda r: r.extracted_at, reverse=True)
        return [r.model_copy(deep=True) for r in items[offset:offset + limit]]

    async def update_restaurant(
        self, restaurant_id: str, changes: dict[str, Any],
    ) -> PersistedRestaurant:
        async with self._lock:
            current = self._restaurants.get(restaurant_id)
            if current is None:
                raise RecordNotFoundError(f"Restaurant {restaurant_id} not found")
            updated = apply_restaurant_changes(current, changes)
            self._restaurants[restaurant_id] = updated
        return updated.model_copy(deep=True)

    async def delete_restaurant(self, restaurant_id: str) -> None:
        async with self._lock:
            if self._restaurants.pop(restaurant_id, None) is None:
                raise RecordNotFoundError(f"Restaurant {restaurant_id} not found")
            self._metrics = self._metrics.model_copy(update={
                "total_restaurants": max(0, self._metrics.total_restaurants - 1),
                "updated_at": utcnow(),
            })
        logger.info("Restaurant deleted", restaurant_id=restaurant_id)

    async def count_restaurants(self) -> int:
        return len(self._restaurants)

    # --- processing queue ---

    async def add_to_queue(self, item: WorkItem) -> WorkItem:
        async with self._lock:
            self._queue[item.id] = item.model_copy(deep=True)
        return item.model_copy(deep=True)

    async def update_queue_item(self, item: WorkItem) -> WorkItem:
        async with self._lock:
            if item.id not in self._queue:
                raise RecordNotFoundError(f"Queue item {item.id} not found")
            self._queue[item.id] = item.model_copy(deep=True)
        return item.model_copy(deep=True)

    async def get_queue_item(self, item_id: str) -> WorkItem:
        item = self._queue.get(item_id)
        if item is None:
            raise RecordNotFoundError(f"Queue item {item_id} not found")
        return item.model_copy(deep=True)

    async def list_queue(self, *, include_terminal: bool = True) -> list[WorkItem]:
        items = [
            item for item in self._queue.values()
            if include_terminal or not item.is_terminal
        ]
        items.sort(key=lambda item: item.created_at)
        return [item.model_copy(deep=True) for item in items]

    async def remove_from_queue(self, item_id: str) -> None:
        async with self._lock:
            if self._queue.pop(item_id, None) is None:
                raise RecordNotFoundError(f"Queue item {item_id} not found")

    # --- extraction logs ---

    async def append_extraction_log(self, entry: ExtractionLogEntry) -> ExtractionLogEntry:
        async with self._lock:
            self._logs.append(entry.model_copy(deep=True))
        return entry.model_copy(deep=True)

    async def list_extraction_logs(self, *, limit: int = 50) -> list[ExtractionLogEntry]:
        newest_first = sorted(self._logs, key=lambda e: e.created_at, reverse=True)
        return [entry.model_copy(deep=True) for entry in newest_first[:limit]]

    # --- aggregate metrics ---

    async def get_system_metrics(self) -> SystemMetrics:
        return self._metrics.model_copy(deep=True)

    async def update_system_metrics(self, metrics: SystemMetrics) -> SystemMetrics:
        async with self._lock:
            self._metrics = metrics.model_copy(deep=True)
        return metrics.model_copy(deep=True)
