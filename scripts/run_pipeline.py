#!/usr/bin/env python3
"""Restaurant Intelligence batch runner.

Runs one batch of source URLs through the pipeline against an in-memory
repository:
  1. Fetch each page
  2. Extract a candidate record
  3. Validate (and escalate to the Synthesizer when needed)
  4. Persist and print a JSON summary

Usage:
    # Demonstration sources
    python -m scripts.run_pipeline

    # Specific pages
    python -m scripts.run_pipeline https://spice-route.example https://another.example

    # Specific provider/model, export the summary
    python -m scripts.run_pipeline --provider anthropic --model claude-sonnet-4-20250514 --output out.json

    # No LLM at all
    python -m scripts.run_pipeline --provider offline
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

# Add project root to path for imports
_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_root))

# Load .env before importing app modules
from dotenv import load_dotenv
load_dotenv(_root / ".env")

import structlog

from restaurant_intel.core.logging import configure_logging
from restaurant_intel.modules.extraction.agents.orchestrator import PipelineOrchestrator
from restaurant_intel.modules.extraction.agents.registry import build_registry
from restaurant_intel.modules.extraction.agents.synthesizer import SynthesizerAgent
from restaurant_intel.modules.extraction.agents.transport import get_transport
from restaurant_intel.modules.extraction.repository import InMemoryRepository

logger = structlog.get_logger()


async def run(urls: list[str], provider: str | None, model: str | None) -> dict[str, Any]:
    repository = InMemoryRepository()
    registry = build_registry(synthesizer=SynthesizerAgent(get_transport(provider, model)))
    orchestrator = PipelineOrchestrator(registry, repository)

    try:
        result = await orchestrator.start_run(urls)
    finally:
        await registry.aclose()
    restaurants = await repository.list_restaurants()
    metrics = await repository.get_system_metrics()

    return {
        "run": result.model_dump(mode="json", by_alias=True),
        "restaurants": [r.model_dump(mode="json", by_alias=True) for r in restaurants],
        "metrics": metrics.model_dump(mode="json", by_alias=True),
        "agents": [s.model_dump(mode="json", by_alias=True) for s in registry.snapshots()],
    }


def print_summary(summary: dict[str, Any]) -> None:
    run_data = summary["run"]
    print(f"\n{'='*60}")
    print("  PIPELINE SUMMARY")
    print(f"{'='*60}")
    print(f"  Processed:     {run_data['totalProcessed']}")
    print(f"  Successful:    {run_data['successfulExtractions']}")
    print(f"  Failed:        {run_data['failedExtractions']}")
    for error in run_data["errors"]:
        print(f"    - {error}")
    print(f"{'='*60}")
    for restaurant in summary["restaurants"]:
        print(
            f"  {restaurant['name']} ({restaurant['address']['city']}): "
            f"{restaurant['completeness']:.0f}% complete [{restaurant['status']}]"
        )
    print(f"{'='*60}\n")


def main() -> None:
    parser = argparse.ArgumentParser(description="Restaurant Intelligence batch extraction")
    parser.add_argument("urls", nargs="*",
                        help="Source URLs (default: demonstration set)")
    parser.add_argument("--provider", type=str, default=None,
                        help="Synthesis provider: google|anthropic|openai|offline")
    parser.add_argument("--model", type=str, default=None,
                        help="Synthesis model override")
    parser.add_argument("--output", type=Path, default=None,
                        help="Write the JSON summary to this file")
    args = parser.parse_args()

    configure_logging()
    summary = asyncio.run(run(args.urls, args.provider, args.model))
    print_summary(summary)

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(summary, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info("Summary exported", path=str(args.output))
    else:
        print(json.dumps(summary["run"], indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
