"""Prompt builders for each orchestration stage."""
from __future__ import annotations

from typing import Optional

RESPONSE_FORMAT = (
    "Respond with JSON only:\n"
    "{\n"
    '  "itemName": "specific item name",\n'
    '  "estimatedValue": 0.00,\n'
    '  "decision": "BUY" or "SELL",\n'
    '  "valuation_factors": ["factor 1", "factor 2", "factor 3"],\n'
    '  "summary_reasoning": "one or two sentences",\n'
    '  "confidence": 0.0 to 1.0,\n'
    '  "category": "item category"\n'
    "}"
)


def base_prompt(item_hint: str | None = None, category_hint: str | None = None) -> str:
    lines = [
        "You are an expert appraiser of collectibles, resale goods and household items.",
        "Identify the item as specifically as possible and estimate its current resale value in USD.",
        "Decide BUY if it is worth acquiring for resale at a typical asking price, otherwise SELL.",
    ]
    if item_hint:
        lines.append(f'The seller describes the item as: "{item_hint.strip()}"')
    if category_hint:
        lines.append(f"Suggested category: {category_hint.strip()}")
    lines.append("")
    lines.append(RESPONSE_FORMAT)
    return "\n".join(lines)


def best_description(item_name: str, reasoning: str) -> str:
    return f"{item_name}: {reasoning}"


def enriched_prompt(prompt: str, description: Optional[str], item_name: Optional[str]) -> str:
    """Text-only stage prompt carrying the visual identification forward."""
    if not description or not item_name:
        return prompt
    return (
        f"{prompt}\n\n"
        "Based on expert visual analysis by multiple AI systems, this item has been "
        f'identified as: "{description}"\n\n'
        f"Please provide your valuation analysis for this {item_name}."
    )


def market_prompt(prompt: str, item_name: Optional[str]) -> str:
    if not item_name:
        return prompt
    return (
        f"{prompt}\n\n"
        "Search for recent eBay sold listings, Amazon prices, and current market values for: "
        f'"{item_name}"\n\n'
        "Base estimatedValue on actual recent sale prices, and mention the prices you found "
        "in summary_reasoning."
    )


def tiebreak_prompt(
    prompt: str,
    item_name: str,
    buy_votes: int,
    sell_votes: int,
    buy_weight: float,
    sell_weight: float,
) -> str:
    return (
        f"{prompt}\n\n"
        f'Other appraisers are split on "{item_name}": '
        f"{buy_votes} voted BUY (weight {buy_weight:.2f}) and "
        f"{sell_votes} voted SELL (weight {sell_weight:.2f}).\n"
        "Give your own independent analysis to break the tie."
    )
