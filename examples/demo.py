#!/usr/bin/env python3
"""
Quorum Demo -- consensus valuation with scripted providers.

Run:
    python examples/demo.py
    python examples/demo.py 1

No API keys needed: every provider is a local stand-in that answers the
way a real model would, including one that times out and one that returns
prose instead of JSON. The staged fan-out, category routing and consensus
math are the real ones.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

# Ensure quorum is importable when running from the repo root.
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from quorum.pipeline import ValuationPipeline
from quorum.providers.parsing import parse_analysis
from quorum.providers.registry import Provider, ProviderRegistry
from quorum.votes import Capability


class ScriptedClient:
    """Answers from a per-item script instead of calling a model."""

    def __init__(self, answers: dict, delay: float = 0.05) -> None:
        self.answers = answers
        self.delay = delay

    async def analyze(self, images, prompt, timeout):
        await asyncio.sleep(self.delay)
        for key, answer in self.answers.items():
            if key in prompt:
                return parse_analysis(answer)
        return parse_analysis("I am not sure what this is.")


def _answer(name: str, value: float, decision: str, confidence: float, category: str, reasoning: str = "") -> str:
    return json.dumps({
        "itemName": name,
        "estimatedValue": value,
        "decision": decision,
        "confidence": confidence,
        "category": category,
        "summary_reasoning": reasoning,
    })


DEMO_ITEMS = [
    {
        "hint": "Star Wars lego set, sealed",
        "description": "Sealed LEGO set identified from the box art.",
        "answers": {
            "image": _answer("LEGO 75192 Millennium Falcon", 850, "BUY", 0.9, "lego", "Sealed UCS set."),
            "text": _answer("LEGO 75192 Millennium Falcon", 800, "BUY", 0.8, "lego"),
            "search": "Recent eBay sales: $780, $820, $845. " + _answer("LEGO 75192", 815, "BUY", 0.85, "toys"),
        },
    },
    {
        "hint": "old vinyl record",
        "description": "Split decision on a common record triggers the tiebreaker.",
        "answers": {
            "image": _answer("Fleetwood Mac - Rumours LP", 25, "BUY", 0.7, "vehicles", "1977 pressing, worn sleeve."),
            "text": _answer("Fleetwood Mac - Rumours LP", 15, "SELL", 0.7, "music"),
            "text_b": _answer("Fleetwood Mac - Rumours", 20, "BUY", 0.7, "vinyl"),
            "search": _answer("Fleetwood Mac Rumours vinyl", 20, "SELL", 0.6, "vinyl"),
            "tiebreak": _answer("Fleetwood Mac Rumours", 22, "BUY", 0.8, "vinyl_records"),
        },
    },
]


def _registry(answers: dict) -> ProviderRegistry:
    # Every stage prompt carries the seller hint, so scripts key on stage wording.
    by_stage = {
        "image": {"seller describes": answers["image"]},
        "text": {"identified as": answers["text"], "seller describes": answers["text"]},
        "search": {"Search for recent": answers["search"], "seller describes": answers["search"]},
        "tiebreak": {"break the tie": answers.get("tiebreak", answers["text"])},
    }
    # without a scripted answer text-b rambles and its vote is dropped
    text_b = {"identified as": answers["text_b"]} if "text_b" in answers else {}
    providers = [
        Provider("vision-a", "Vision A", frozenset({Capability.IMAGE, Capability.TEXT}), 1.0,
                 client=ScriptedClient(by_stage["image"])),
        Provider("vision-b", "Vision B", frozenset({Capability.IMAGE, Capability.TEXT}), 1.0,
                 client=ScriptedClient(by_stage["image"], delay=5.0), timeout_seconds=0.5),
        Provider("text-a", "Text A", frozenset({Capability.TEXT}), 0.75,
                 client=ScriptedClient(by_stage["text"])),
        Provider("text-b", "Text B", frozenset({Capability.TEXT}), 0.8,
                 client=ScriptedClient(text_b)),
        Provider("market", "Market", frozenset({Capability.TEXT, Capability.SEARCH}), 0.85,
                 market_lookup=True, client=ScriptedClient(by_stage["search"])),
        Provider("judge", "Judge", frozenset({Capability.TEXT}), 1.0,
                 tiebreaker=True, client=ScriptedClient(by_stage["tiebreak"])),
    ]
    return ProviderRegistry(providers)


def run_demo(index: int | None = None) -> None:
    """Run one or all demo items through the pipeline."""
    items = DEMO_ITEMS if index is None else [DEMO_ITEMS[index]]
    for item in items:
        print(f"\n=== {item['hint']} ===")
        print(item["description"])
        pipeline = ValuationPipeline(_registry(item["answers"]), run_timeout=10.0)
        report = pipeline.valuate_detailed([b"\xff\xd8\xff demo photo"], item["hint"])
        for stage in report.stages:
            if stage.attempted:
                print(f"  {stage.stage:<9} {stage.succeeded}/{stage.attempted} ok  {stage.failures or ''}")
        result = report.result
        print(f"  -> {result.item_name}: ${result.estimated_value:.2f} {result.decision.value}")
        print(f"     confidence {result.confidence} ({result.quality_tier.value}), {result.total_votes} votes")
        print(f"     category {report.category.category} via {report.category.source.value}")


def main() -> None:
    logging.basicConfig(level=logging.WARNING)
    index = int(sys.argv[1]) if len(sys.argv) > 1 else None
    run_demo(index)


if __name__ == "__main__":
    main()
