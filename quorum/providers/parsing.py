"""Turn free-form model output into an AnalysisResult.

Models are asked for JSON but answer in many shapes: fenced blocks, prose
around the object, trailing commas, and their own field names. The parser
extracts the first JSON object, maps known field aliases onto the canonical
names and normalizes the decision. A response without a usable item name,
value or decision comes back with those fields empty, and the orchestrator
drops it.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional
import json
import logging
import re

from quorum.votes import AnalysisResult, Decision

logger = logging.getLogger(__name__)

FIELD_ALIASES: Dict[str, List[str]] = {
    "item_name": ["itemName", "item_name", "item", "name", "product_name", "productName", "title", "product"],
    "estimated_value": [
        "estimatedValue", "estimated_value", "value", "price", "estimated_price",
        "estimatedPrice", "market_value", "marketValue",
    ],
    "decision": ["decision", "recommendation", "action", "buy_sell", "buySell", "verdict", "assessment"],
    "valuation_factors": [
        "valuation_factors", "factors", "reasons", "valuation_reasons", "valuationFactors",
        "key_factors", "keyFactors", "pricing_factors",
    ],
    "reasoning": [
        "summary_reasoning", "summary", "reasoning", "explanation", "analysis",
        "summaryReasoning", "description", "rationale",
    ],
    "confidence": ["confidence", "confidence_score", "confidenceScore", "certainty", "accuracy"],
    "category": ["category", "item_category", "itemCategory", "type", "product_category", "productCategory"],
}

DECISION_SYNONYMS: Dict[str, Decision] = {
    "BUY": Decision.BUY,
    "BUY IT": Decision.BUY,
    "PURCHASE": Decision.BUY,
    "ACQUIRE": Decision.BUY,
    "YES": Decision.BUY,
    "GOOD DEAL": Decision.BUY,
    "RECOMMENDED": Decision.BUY,
    "SELL": Decision.SELL,
    "PASS": Decision.SELL,
    "SKIP": Decision.SELL,
    "AVOID": Decision.SELL,
    "NO": Decision.SELL,
    "OVERPRICED": Decision.SELL,
    "NOT RECOMMENDED": Decision.SELL,
}

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)
_CITATION = re.compile(r"\[\d+\]")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_PRICE = re.compile(r"\$\s*([0-9][0-9,]*(?:\.[0-9]+)?)")
_NUMBER = re.compile(r"[0-9][0-9,]*(?:\.[0-9]+)?")
_RANGE = re.compile(r"[0-9]\s*(?:-|–|to)\s*\$?\s*[0-9]")


def _extract_object(text: str) -> Optional[str]:
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


def load_json_object(text: str) -> Optional[Dict[str, Any]]:
    cleaned = _CITATION.sub("", _FENCE.sub("", text or ""))
    candidate = _extract_object(cleaned)
    if candidate is None:
        return None
    for attempt in (candidate, _TRAILING_COMMA.sub(r"\1", candidate)):
        try:
            data = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _field(data: Dict[str, Any], canonical: str) -> Any:
    for key in FIELD_ALIASES[canonical]:
        if key in data and data[key] not in (None, ""):
            return data[key]
    return None


def normalize_decision(value: Any) -> Optional[Decision]:
    if value is None:
        return None
    text = re.sub(r"\s+", " ", str(value)).strip().upper()
    return DECISION_SYNONYMS.get(text)


def parse_value(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return float(value)
        except OverflowError:
            return None
    if isinstance(value, dict):
        for key in ("value", "amount", "mid", "average", "estimate"):
            if key in value:
                return parse_value(value[key])
        low, high = parse_value(value.get("low")), parse_value(value.get("high"))
        if low is not None and high is not None:
            return (low + high) / 2
        return None
    if isinstance(value, str):
        numbers = [float(n.replace(",", "")) for n in _NUMBER.findall(value)]
        if not numbers:
            return None
        if value.strip().startswith("-"):
            return -numbers[0]
        # "$40-60" style ranges resolve to the midpoint
        if len(numbers) >= 2 and _RANGE.search(value):
            return (numbers[0] + numbers[1]) / 2
        return numbers[0]
    return None


def parse_confidence(value: Any) -> Optional[float]:
    number = parse_value(value)
    if number is None:
        return None
    if number > 1:
        number = number / 100.0
    return max(0.0, min(1.0, number))


def price_from_text(text: str) -> Optional[float]:
    prices = [float(p.replace(",", "")) for p in _PRICE.findall(text or "")]
    positive = [p for p in prices if p > 0]
    if not positive:
        return None
    return sum(positive) / len(positive)


def completeness_confidence(data: Dict[str, Any]) -> float:
    """Self-confidence for responses that did not report one."""
    score = 0.5
    if _field(data, "item_name"):
        score += 0.1
    if parse_value(_field(data, "estimated_value")) is not None:
        score += 0.15
    factors = _field(data, "valuation_factors")
    if isinstance(factors, list) and factors:
        score += 0.15
    if _field(data, "reasoning"):
        score += 0.1
    if normalize_decision(_field(data, "decision")) is not None:
        score += 0.05
    return min(0.95, score)


def parse_analysis(content: str, latency_ms: float = 0.0, raw: Any = None) -> AnalysisResult:
    data = load_json_object(content)
    if data is None:
        logger.debug(f"No JSON object in response: {(content or '')[:120]!r}")
        return AnalysisResult(content=content or "", latency_ms=latency_ms, raw=raw)

    item_name = _field(data, "item_name")
    value = parse_value(_field(data, "estimated_value"))
    if value is None:
        # search models often put the price in prose next to the JSON
        value = price_from_text(content)
    confidence = parse_confidence(_field(data, "confidence"))
    if confidence is None:
        confidence = completeness_confidence(data)
    category = _field(data, "category")
    reasoning = _field(data, "reasoning")

    return AnalysisResult(
        item_name=str(item_name).strip() if item_name else "",
        estimated_value=value,
        decision=normalize_decision(_field(data, "decision")),
        self_confidence=confidence,
        latency_ms=latency_ms,
        content=content,
        reasoning=str(reasoning).strip() if reasoning else "",
        category=str(category).strip() if category else None,
        raw=raw if raw is not None else data,
    )
