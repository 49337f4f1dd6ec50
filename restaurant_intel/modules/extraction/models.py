"""Extraction persistence models.

Restaurant records, queue entries and log entries are stored as JSON
documents next to a few indexed columns, so new record attributes need no
schema migration. JSON maps to JSONB on PostgreSQL.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from restaurant_intel.core.database import Base

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class RestaurantRow(Base):
    """One persisted restaurant (PersistedRestaurant as JSON)."""

    __tablename__ = "restaurants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    city: Mapped[Optional[str]] = mapped_column(String(120))
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending | validated | failed
    completeness: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    accuracy: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    record: Mapped[dict] = mapped_column(JSONDocument, nullable=False)
    extracted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_restaurants_status", "status"),
        Index("ix_restaurants_city", "city"),
    )


class QueueItemRow(Base):
    """One WorkItem in the processing queue."""

    __tablename__ = "processing_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    stage: Mapped[str] = mapped_column(String(20), nullable=False)
    item: Mapped[dict] = mapped_column(JSONDocument, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_processing_queue_stage", "stage"),)


class ExtractionLogRow(Base):
    """Append-only audit entry, one per terminal WorkItem."""

    __tablename__ = "extraction_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    restaurant_id: Mapped[Optional[str]] = mapped_column(String(36))
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    entry: Mapped[dict] = mapped_column(JSONDocument, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_extraction_logs_created_at", "created_at"),)


class SystemMetricsRow(Base):
    """Single-row table holding the aggregate metrics."""

    __tablename__ = "system_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    metrics: Mapped[dict] = mapped_column(JSONDocument, nullable=False)
