"""Reliability Merger: deterministic conflict synthesis.

Combines several partial records for the same restaurant into one
CandidateRecord without calling the reasoning service. Used when no
transport is configured.

This merger is PURELY PROGRAMMATIC; no LLM calls.

Merge Strategy:
  - Sources are ranked by reliability (input order breaks ties).
  - Scalar fields: value from the most reliable source that actually
    observed it; defaulted values only fill gaps.
  - Union fields (cuisine tags, amenities, menu items, provenance):
    combined from all sources.
  - Conflicts: every disagreement is reported, naming the adopted and
    the discarded value.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic.alias_generators import to_camel

from restaurant_intel.modules.extraction.agent_schemas import ConflictSource, SynthesisResult
from restaurant_intel.modules.extraction.schemas import CandidateRecord

logger = structlog.get_logger()

SCALAR_PATHS: tuple[str, ...] = (
    "name",
    "price_range",
    "address.street",
    "address.city",
    "address.state",
    "address.postal_code",
    "address.country",
    "address.coordinates",
    "address.formatted",
    "contact_info.phone",
    "contact_info.email",
    "contact_info.website",
    "ratings.average",
    "ratings.total",
    "operating_hours",
    "description",
)

UNION_FIELDS: tuple[str, ...] = ("cuisine_types", "amenities", "menu_items")


def display_path(path: str) -> str:
    """``address.postal_code`` -> ``address.postalCode``."""
    return ".".join(to_camel(part) for part in path.split("."))


class ReliabilityMerger:
    """Merges ConflictSources into one record, reliability first."""

    agent_name = "Merger"

    def merge(
        self,
        restaurant_name: str,
        sources: Sequence[ConflictSource],
    ) -> SynthesisResult:
        if not sources:
            raise ValueError(f"No sources to merge for {restaurant_name}")

        ranked = sorted(
            enumerate(sources), key=lambda pair: (-pair[1].reliability, pair[0])
        )
        ordered = [source for _, source in ranked]
        payloads = [s.data.model_dump(exclude_none=True) for s in ordered]

        merged: dict[str, Any] = {}
        conflicts: list[str] = []
        field_confidence: list[float] = []
        defaulted: list[str] = []

        for path in SCALAR_PATHS:
            candidates = [
                (source, _get_path(payload, path))
                for source, payload in zip(ordered, payloads)
            ]
            candidates = [(s, v) for s, v in candidates if not _is_blank(v)]
            if not candidates:
                continue

            observed = [c for c in candidates if not _is_defaulted(c[0], path)]
            pool = observed or candidates
            winner_source, winner_value = pool[0]
            _set_path(merged, path, winner_value)
            if not observed:
                _add_unique(defaulted, to_camel(path.split(".")[0]))

            pool_mass = sum(s.reliability for s, _ in pool)
            agreeing_mass = sum(s.reliability for s, v in pool if _same(v, winner_value))
            support = agreeing_mass / pool_mass if pool_mass else 1.0
            field_confidence.append(support * winner_source.reliability)

            for loser_source, loser_value in pool[1:]:
                if not _same(loser_value, winner_value):
                    conflicts.append(
                        f"{display_path(path)}: adopted {_show(winner_value)} from "
                        f"{winner_source.source} ({winner_source.reliability:.2f}) over "
                        f"{_show(loser_value)} from {loser_source.source} "
                        f"({loser_source.reliability:.2f})"
                    )

        for field in UNION_FIELDS:
            observed_lists = [
                payload.get(field) or []
                for source, payload in zip(ordered, payloads)
                if not _is_defaulted(source, field)
            ]
            lists = observed_lists if any(observed_lists) else [
                payload.get(field) or [] for payload in payloads
            ]
            combined = _union(lists)
            if combined:
                merged[field] = combined
                if not any(observed_lists) and field != "menu_items":
                    _add_unique(defaulted, to_camel(field))
            elif field == "amenities":
                merged[field] = []

        rating_sources: dict[str, Any] = {}
        for payload in payloads:
            for key, entry in (payload.get("ratings", {}).get("sources") or {}).items():
                rating_sources.setdefault(key, entry)
        if rating_sources or "ratings" in merged:
            merged.setdefault("ratings", {})["sources"] = rating_sources

        merged["data_sources"] = _merge_provenance(ordered)
        merged["defaulted_fields"] = defaulted

        record = CandidateRecord.model_validate(merged)
        confidence = (
            sum(field_confidence) / len(field_confidence)
            if field_confidence else ordered[0].reliability
        )

        logger.info(
            "Merger: sources merged",
            restaurant=restaurant_name,
            sources=[f"{s.source}({s.reliability:.2f})" for s in ordered],
            conflicts=len(conflicts),
            confidence=round(confidence, 3),
        )
        return SynthesisResult(
            synthesized_data=record,
            confidence=round(max(0.0, min(1.0, confidence)), 3),
            reasoning=(
                f"Deterministic reliability-weighted merge of {len(ordered)} source(s); "
                f"{len(conflicts)} conflict(s) resolved in favour of the more reliable source."
            ),
            conflicts_resolved=conflicts,
        )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _get_path(payload: dict[str, Any], path: str) -> Any:
    current: Any = payload
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _set_path(payload: dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    current = payload
    for key in parents:
        current = current.setdefault(key, {})
    current[leaf] = value


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _is_defaulted(source: ConflictSource, path: str) -> bool:
    return to_camel(path.split(".")[0]) in source.data.defaulted_fields


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.strip().casefold() == b.strip().casefold()
    return a == b


def _show(value: Any) -> str:
    if isinstance(value, str):
        return f"'{value}'"
    text = json.dumps(value, default=str, sort_keys=True)
    return text if len(text) <= 60 else text[:57] + "..."


def _union(lists: Sequence[Sequence[str]]) -> list[str]:
    seen: set[str] = set()
    combined: list[str] = []
    for items in lists:
        for item in items:
            key = item.strip().casefold()
            if key and key not in seen:
                seen.add(key)
                combined.append(item.strip())
    return combined


def _add_unique(items: list[str], value: str) -> None:
    if value not in items:
        items.append(value)


def _merge_provenance(sources: Sequence[ConflictSource]) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    seen: set[tuple[str, str | None, str]] = set()
    for source in sources:
        provenance = source.data.data_sources
        if not provenance:
            entries.append({
                "source": source.source,
                "extracted_at": datetime.now(timezone.utc),
                "reliability": source.reliability,
            })
            continue
        for entry in provenance:
            key = (entry.source, entry.url, entry.extracted_at.isoformat())
            if key not in seen:
                seen.add(key)
                entries.append(entry.model_dump())
    return entries
