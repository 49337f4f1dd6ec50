"""Unit tests for the Synthesizer and its reasoning transport.

A scripted transport stands in for the provider SDKs: ``_generate``
returns canned text, so everything from prompt assembly to sanitizing
and validation runs for real.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from restaurant_intel.modules.extraction.agent_schemas import (
    AddressValidationRequest,
    ConflictSource,
    CuisineClassificationRequest,
    SynthesisRequest,
)
from restaurant_intel.modules.extraction.agents.registry import build_registry
from restaurant_intel.modules.extraction.agents.synthesizer import (
    SynthesizerAgent,
    should_synthesize,
)
from restaurant_intel.modules.extraction.agents.transport import (
    AnthropicTransport,
    ReasoningTransport,
    get_transport,
)
from restaurant_intel.modules.extraction.errors import SynthesisError
from restaurant_intel.modules.extraction.schemas import CandidateRecord, ValidationOutcome


class ScriptedTransport(ReasoningTransport):
    provider = "scripted"

    def __init__(self, replies: list[Any], *, delay: float = 0.0, timeout: float = 5.0) -> None:
        super().__init__("scripted-model", api_key="test-key", timeout=timeout)
        self.replies = list(replies)
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def _generate(self, system_prompt: str, user_content: str) -> str | None:
        self.calls.append((system_prompt, user_content))
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)


def _conflict_request() -> SynthesisRequest:
    return SynthesisRequest(
        restaurant_name="Spice Route",
        conflicting_data=[
            ConflictSource(
                source="official-site",
                reliability=0.9,
                data=CandidateRecord(name="Spice Route", price_range="luxury"),
            ),
            ConflictSource(
                source="review-site",
                reliability=0.3,
                data=CandidateRecord(name="Spice Route", price_range="budget"),
            ),
        ],
    )


# ---------------------------------------------------------------------------
# Escalation decision
# ---------------------------------------------------------------------------


def _outcome(valid: bool, completeness: float) -> ValidationOutcome:
    return ValidationOutcome(valid=valid, completeness=completeness, accuracy=100)


@pytest.mark.parametrize(
    ("valid", "completeness", "expected"),
    [
        (True, 96, False),
        (True, 80, False),
        (True, 79, True),
        (False, 96, True),
    ],
)
def test_should_synthesize(valid: bool, completeness: float, expected: bool) -> None:
    escalate, reasons = should_synthesize(_outcome(valid, completeness), 80.0)
    assert escalate is expected
    assert bool(reasons) is expected


def test_should_synthesize_lists_every_reason() -> None:
    _, reasons = should_synthesize(_outcome(False, 40), 80.0)
    assert len(reasons) == 2
    assert "completeness 40 below 80" in reasons


# ---------------------------------------------------------------------------
# Conflict synthesis
# ---------------------------------------------------------------------------


async def test_offline_synthesis_uses_reliability_merge() -> None:
    agent = SynthesizerAgent(None)

    result = await agent.process(_conflict_request())

    assert not agent.available
    assert result.synthesized_data.price_range == "luxury"
    assert len(result.conflicts_resolved) == 1


async def test_transport_synthesis_is_sanitized() -> None:
    transport = ScriptedTransport([
        "```json\n" + json.dumps({
            "synthesizedData": {
                "name": "Spice Route",
                "priceRange": "Fine Dining",
                "cuisineTypes": "North Indian, Mughlai",
                "ratings": {"average": "4.4", "total": "120"},
                "dataSources": [{"source": "invented", "reliability": 1.0}],
            },
            "confidence": "0.85",
            "reasoning": "Official site is more reliable.",
            "conflictsResolved": [{"field": "priceRange", "choice": "official-site"}],
        }) + "\n```"
    ])
    agent = SynthesizerAgent(transport)

    result = await agent.synthesize(_conflict_request())

    data = result.synthesized_data
    assert data.price_range == "fine-dining"
    assert data.cuisine_types == ["North Indian", "Mughlai"]
    assert data.ratings.average == 4.4
    assert data.ratings.total == 120
    # provenance comes from the inputs, never from the model
    assert [s.source for s in data.data_sources] == ["official-site", "review-site"]
    assert result.confidence == 0.85
    assert result.conflicts_resolved == ["field: priceRange; choice: official-site"]

    system_prompt, user_content = transport.calls[0]
    assert "Respond with JSON only" in system_prompt
    assert "Source 1: official-site (Reliability: 0.90)" in user_content


async def test_transport_failure_raises_synthesis_error() -> None:
    agent = SynthesizerAgent(ScriptedTransport([RuntimeError("quota exceeded")]))

    with pytest.raises(SynthesisError, match="quota exceeded"):
        await agent.synthesize(_conflict_request())


async def test_malformed_json_raises_synthesis_error() -> None:
    agent = SynthesizerAgent(ScriptedTransport(["this is not json"]))

    with pytest.raises(SynthesisError, match="malformed JSON"):
        await agent.synthesize(_conflict_request())


async def test_empty_response_raises_synthesis_error() -> None:
    agent = SynthesizerAgent(ScriptedTransport(["   "]))

    with pytest.raises(SynthesisError, match="empty response"):
        await agent.synthesize(_conflict_request())


async def test_slow_transport_times_out() -> None:
    agent = SynthesizerAgent(ScriptedTransport([{}], delay=0.5, timeout=0.05))

    with pytest.raises(SynthesisError, match="timed out"):
        await agent.synthesize(_conflict_request())


# ---------------------------------------------------------------------------
# Cuisine classification / address validation
# ---------------------------------------------------------------------------


async def test_classify_cuisine() -> None:
    transport = ScriptedTransport([{"cuisineTypes": ["North Indian", "Punjabi"]}])
    agent = SynthesizerAgent(transport)

    tags = await agent.process(CuisineClassificationRequest(
        restaurant_name="Spice Route",
        description="Tandoori specialities",
        menu_items=["Butter Chicken", "Garlic Naan"],
        location="Pune",
    ))

    assert tags == ["North Indian", "Punjabi"]
    assert "Menu Items: Butter Chicken, Garlic Naan" in transport.calls[0][1]


async def test_classify_cuisine_requires_tags() -> None:
    agent = SynthesizerAgent(ScriptedTransport([{"cuisineTypes": []}]))

    with pytest.raises(SynthesisError):
        await agent.classify_cuisine(CuisineClassificationRequest(restaurant_name="X"))


async def test_validate_address_fills_gaps_from_request() -> None:
    agent = SynthesizerAgent(ScriptedTransport([{
        "street": "12 MG Road",
        "postal_code": 411001,
        "formatted": "",
        "confidence": 0.9,
    }]))

    address = await agent.process(AddressValidationRequest(
        raw_address="12 MG Road, Camp",
        restaurant_name="Spice Route",
        city="Pune",
        state="Maharashtra",
    ))

    assert address.city == "Pune"
    assert address.state == "Maharashtra"
    assert address.postal_code == "411001"
    assert address.country == "India"
    assert address.formatted == "12 MG Road, 411001"
    assert address.confidence == 0.9


async def test_operations_without_transport_are_unavailable() -> None:
    agent = SynthesizerAgent(None)

    with pytest.raises(SynthesisError, match="No reasoning transport"):
        await agent.classify_cuisine(CuisineClassificationRequest(restaurant_name="X"))
    with pytest.raises(SynthesisError, match="No reasoning transport"):
        await agent.validate_address(
            AddressValidationRequest(raw_address="1 Road", restaurant_name="X")
        )


def test_prompts_are_packaged() -> None:
    for name in ("synthesis.txt", "cuisine.txt", "address.txt"):
        assert SynthesizerAgent.load_prompt(name)


# ---------------------------------------------------------------------------
# Transport factory
# ---------------------------------------------------------------------------


def test_get_transport_offline() -> None:
    assert get_transport("offline") is None


def test_get_transport_without_key_is_offline() -> None:
    assert get_transport("google", api_key="") is None


def test_get_transport_builds_provider() -> None:
    transport = get_transport("anthropic", "claude-test", api_key="sk-test")

    assert isinstance(transport, AnthropicTransport)
    assert transport.model == "claude-test"


def test_get_transport_unknown_provider() -> None:
    with pytest.raises(ValueError, match="Unsupported synthesis provider"):
        get_transport("carrier-pigeon", api_key="x")


# ---------------------------------------------------------------------------
# SDK client lifecycle
# ---------------------------------------------------------------------------


class ClientBackedTransport(ReasoningTransport):
    provider = "client-backed"

    def __init__(self) -> None:
        super().__init__("client-model", api_key="test-key", timeout=5.0)
        self.builds = 0
        self.sdk = MagicMock()
        self.sdk.close = AsyncMock()
        self.sdk.generate = AsyncMock(return_value='{"cuisineTypes": ["Cafe"]}')

    def _build_client(self) -> Any:
        self.builds += 1
        return self.sdk

    async def _generate(self, system_prompt: str, user_content: str) -> str | None:
        return await self._get_client().generate(system_prompt, user_content)


async def test_sdk_client_is_built_once_and_closed() -> None:
    transport = ClientBackedTransport()
    agent = SynthesizerAgent(transport)

    for _ in range(3):
        await agent.classify_cuisine(CuisineClassificationRequest(restaurant_name="Corner Cafe"))

    assert transport.builds == 1
    assert transport.sdk.generate.await_count == 3

    await agent.aclose()
    await agent.aclose()

    transport.sdk.close.assert_awaited_once()


async def test_registry_close_releases_synthesizer_client() -> None:
    transport = ClientBackedTransport()
    registry = build_registry(synthesizer=SynthesizerAgent(transport))
    await transport.complete("system", "user")

    await registry.aclose()

    transport.sdk.close.assert_awaited_once()


async def test_closing_unused_transport_is_a_no_op() -> None:
    transport = ClientBackedTransport()

    await transport.aclose()

    assert transport.builds == 0


@pytest.mark.parametrize("provider", ["anthropic", "openai"])
async def test_provider_client_is_reused(provider: str) -> None:
    transport = get_transport(provider, "test-model", api_key="sk-test")

    client = transport._get_client()

    assert transport._get_client() is client
    await transport.aclose()
    assert transport._client is None
