"""Stage 4: Synthesizer (external reasoning agent).

Invoked CONDITIONALLY, only when the Validator reports the record as
invalid or below the completeness threshold. Three independent, stateless
operations:
  - conflict synthesis: merge partial records from several sources,
    reliability first
  - cuisine classification: name/description/menu -> cuisine tags
  - address validation: raw address text -> normalized components

Without a configured transport, conflict synthesis falls back to the
deterministic ReliabilityMerger; the other two operations are unavailable.
A configured transport that fails always raises SynthesisError.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from restaurant_intel.core.config import settings
from restaurant_intel.modules.extraction.agent_schemas import (
    AddressValidationRequest,
    ConflictSource,
    CuisineClassificationRequest,
    NormalizedAddress,
    SynthesisRequest,
    SynthesisResult,
    SynthesisTask,
)
from restaurant_intel.modules.extraction.agents.merger import ReliabilityMerger
from restaurant_intel.modules.extraction.agents.sanitizer import (
    fallback_provenance,
    sanitize_address_response,
    sanitize_cuisine_response,
    sanitize_synthesis_response,
)
from restaurant_intel.modules.extraction.agents.transport import ReasoningTransport
from restaurant_intel.modules.extraction.errors import SynthesisError
from restaurant_intel.modules.extraction.schemas import ValidationOutcome

logger = structlog.get_logger()

# Directory where prompt templates live
_PROMPTS_DIR = Path(__file__).parent / "prompts"

SYNTHESIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "synthesizedData": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "address": {"type": "object"},
                "cuisineTypes": {"type": "array", "items": {"type": "string"}},
                "contactInfo": {"type": "object"},
                "ratings": {"type": "object"},
                "operatingHours": {"type": "object"},
                "priceRange": {"type": "string"},
                "amenities": {"type": "array", "items": {"type": "string"}},
            },
            "required": [
                "name", "address", "cuisineTypes", "contactInfo", "ratings",
                "operatingHours", "priceRange", "amenities",
            ],
        },
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "reasoning": {"type": "string"},
        "conflictsResolved": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["synthesizedData", "confidence", "reasoning", "conflictsResolved"],
}

CUISINE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"cuisineTypes": {"type": "array", "items": {"type": "string"}}},
    "required": ["cuisineTypes"],
}

ADDRESS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "street": {"type": "string"},
        "city": {"type": "string"},
        "state": {"type": "string"},
        "postalCode": {"type": "string"},
        "country": {"type": "string"},
        "formatted": {"type": "string"},
        "confidence": {"type": "number"},
    },
    "required": ["city", "state", "country", "formatted", "confidence"],
}


def should_synthesize(
    outcome: ValidationOutcome,
    threshold: float | None = None,
) -> tuple[bool, list[str]]:
    """Determine if a validated candidate needs the Synthesizer.

    Returns:
        (should_synthesize, reasons): whether to escalate and why.
    """
    limit = settings.completeness_threshold if threshold is None else threshold
    reasons: list[str] = []

    if not outcome.valid:
        reasons.append(f"schema validation failed ({len(outcome.errors)} errors)")

    if outcome.completeness < limit:
        reasons.append(f"completeness {outcome.completeness:g} below {limit:g}")

    return len(reasons) > 0, reasons


class SynthesizerAgent:
    """Conflict synthesis, cuisine classification and address validation."""

    agent_name = "Synthesizer"

    def __init__(
        self,
        transport: ReasoningTransport | None = None,
        *,
        merger: ReliabilityMerger | None = None,
    ) -> None:
        self.transport = transport
        self.merger = merger or ReliabilityMerger()

        logger.info(
            f"{self.agent_name} initialized",
            provider=transport.provider if transport else "offline",
            model=transport.model if transport else None,
        )

    @property
    def available(self) -> bool:
        """True when a reasoning transport is configured."""
        return self.transport is not None

    async def aclose(self) -> None:
        if self.transport is not None:
            await self.transport.aclose()

    # ------------------------------------------------------------------
    # Prompt loading
    # ------------------------------------------------------------------

    @staticmethod
    def load_prompt(filename: str) -> str:
        """Load a prompt template from the prompts/ directory."""
        path = _PROMPTS_DIR / filename
        if not path.exists():
            raise FileNotFoundError(f"Prompt file not found: {path}")
        return path.read_text(encoding="utf-8").strip()

    # ------------------------------------------------------------------
    # Stage entry point
    # ------------------------------------------------------------------

    async def process(self, task: SynthesisTask) -> Any:
        if isinstance(task, SynthesisRequest):
            return await self.synthesize(task)
        if isinstance(task, CuisineClassificationRequest):
            return await self.classify_cuisine(task)
        if isinstance(task, AddressValidationRequest):
            return await self.validate_address(task)
        raise SynthesisError(f"Unknown synthesis task: {type(task).__name__}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        if self.transport is None:
            return self.merger.merge(request.restaurant_name, request.conflicting_data)

        data = await self.transport.complete(
            self.load_prompt("synthesis.txt"),
            _synthesis_content(request),
            response_schema=SYNTHESIS_SCHEMA,
        )
        if not isinstance(data, dict):
            raise SynthesisError("Synthesis response is not a JSON object")

        cleaned = sanitize_synthesis_response(
            data, _input_provenance(request.conflicting_data)
        )
        try:
            result = SynthesisResult.model_validate(cleaned)
        except ValidationError as exc:
            raise SynthesisError(f"Synthesis response failed validation: {exc}") from exc

        logger.info(
            "Synthesizer: conflicts synthesized",
            restaurant=request.restaurant_name,
            sources=len(request.conflicting_data),
            confidence=result.confidence,
            conflicts=len(result.conflicts_resolved),
        )
        return result

    async def classify_cuisine(self, request: CuisineClassificationRequest) -> list[str]:
        transport = self._require_transport("cuisine classification")

        lines = [f"Restaurant: {request.restaurant_name}"]
        if request.description:
            lines.append(f"Description: {request.description}")
        if request.menu_items:
            lines.append(f"Menu Items: {', '.join(request.menu_items)}")
        if request.location:
            lines.append(f"Location: {request.location}")
        lines.append("")
        lines.append("Classify the cuisine types for this restaurant.")

        data = await transport.complete(
            self.load_prompt("cuisine.txt"),
            "\n".join(lines),
            response_schema=CUISINE_SCHEMA,
        )
        cuisines = sanitize_cuisine_response(data)
        if not cuisines:
            raise SynthesisError("Cuisine classification returned no tags")

        logger.info(
            "Synthesizer: cuisine classified",
            restaurant=request.restaurant_name,
            cuisines=cuisines,
        )
        return cuisines

    async def validate_address(self, request: AddressValidationRequest) -> NormalizedAddress:
        transport = self._require_transport("address validation")

        content = (
            f"Raw Address: {request.raw_address}\n"
            f"Restaurant: {request.restaurant_name}\n"
            f"City: {request.city or 'Unknown'}\n"
            f"State: {request.state or 'Unknown'}\n\n"
            "Parse and validate this address, correcting any obvious errors."
        )
        data = await transport.complete(
            self.load_prompt("address.txt"), content, response_schema=ADDRESS_SCHEMA,
        )
        if not isinstance(data, dict):
            raise SynthesisError("Address response is not a JSON object")

        cleaned = sanitize_address_response(data)
        if not cleaned.get("city") and request.city:
            cleaned["city"] = request.city
        if not cleaned.get("state") and request.state:
            cleaned["state"] = request.state
        if not cleaned.get("country"):
            cleaned["country"] = settings.default_country
        try:
            address = NormalizedAddress.model_validate(cleaned)
        except ValidationError as exc:
            raise SynthesisError(f"Address response failed validation: {exc}") from exc

        logger.info(
            "Synthesizer: address validated",
            restaurant=request.restaurant_name,
            city=address.city,
            state=address.state,
            confidence=address.confidence,
        )
        return address

    def _require_transport(self, operation: str) -> ReasoningTransport:
        if self.transport is None:
            raise SynthesisError(f"No reasoning transport configured for {operation}")
        return self.transport


# ------------------------------------------------------------------
# Prompt content builders
# ------------------------------------------------------------------


def _synthesis_content(request: SynthesisRequest) -> str:
    blocks = []
    for index, source in enumerate(request.conflicting_data, start=1):
        data = source.data.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"defaulted_fields", "menu_items", "data_sources"},
        )
        block = (
            f"Source {index}: {source.source} (Reliability: {source.reliability:.2f})\n"
            f"Data: {json.dumps(data, indent=2, ensure_ascii=False)}"
        )
        if source.data.defaulted_fields:
            block += (
                "\nAssumed (not observed) fields: "
                + ", ".join(source.data.defaulted_fields)
            )
        blocks.append(block)

    return (
        f"Restaurant: {request.restaurant_name}\n\n"
        "Conflicting data sources:\n"
        + "\n\n".join(blocks)
        + "\n\nSynthesize this data into a single, accurate restaurant profile. "
        "Resolve conflicts using the reliability scores first and logical reasoning second."
    )


def _input_provenance(sources: list[ConflictSource]) -> list[dict[str, Any]]:
    provenance: list[dict[str, Any]] = []
    for source in sources:
        if not source.data.data_sources:
            provenance.append(fallback_provenance(source.source, source.reliability))
            continue
        for entry in source.data.data_sources:
            dumped = entry.model_dump(mode="json", by_alias=True, exclude_none=True)
            if dumped not in provenance:
                provenance.append(dumped)
    return provenance
