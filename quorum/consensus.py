"""Weighted consensus over provider votes.

Votes are fused into one result:

* the value is the weight-averaged estimate;
* the decision is the side with strictly more weight, and a tie goes to SELL;
* the item name is a plurality scored by ``weight * self_confidence``;
* confidence blends four agreement metrics and an optional authority boost,
  then is capped when too few providers voted.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from decimal import Context, Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging
import math

from quorum.votes import (
    AuthorityRecord,
    ConsensusMetrics,
    ConsensusResult,
    Decision,
    QualityTier,
    Vote,
)

logger = logging.getLogger(__name__)

UNKNOWN_ITEM = "Unknown Item"


@dataclass(frozen=True)
class ConsensusSettings:
    target_provider_count: int = 10
    min_votes: int = 3
    low_vote_cap: int = 75
    confidence_weight: float = 0.35
    decision_weight: float = 0.25
    value_weight: float = 0.25
    participation_weight: float = 0.15
    authority_boost: float = 0.05
    optimal_threshold: int = 97
    degraded_threshold: int = 90
    max_confidence: int = 99
    plausibility_band: Tuple[float, float] = (0.3, 3.0)
    blend_weights: Tuple[float, float] = (0.6, 0.4)
    close_vote_threshold: float = 0.15
    min_tiebreak_votes: int = 4

    def __post_init__(self) -> None:
        low, high = self.plausibility_band
        if not 0 < low < high:
            raise ValueError(f"plausibility_band must satisfy 0 < low < high, got ({low}, {high})")

    @classmethod
    def from_config(cls, config: Dict[str, Any] | None) -> "ConsensusSettings":
        config = config or {}
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in config.items():
            if key not in known:
                logger.warning(f"Ignoring unknown consensus setting: {key}")
                continue
            if key in ("plausibility_band", "blend_weights"):
                value = tuple(float(v) for v in value)
                if len(value) != 2:
                    raise ValueError(f"{key} must have exactly two entries")
            kwargs[key] = value
        return cls(**kwargs)


DEFAULT_SETTINGS = ConsensusSettings()


@dataclass(frozen=True)
class VoteTally:
    buy_weight: float = 0.0
    sell_weight: float = 0.0
    buy_votes: int = 0
    sell_votes: int = 0
    total_weight: float = 0.0
    decision: Decision = Decision.SELL
    weight_difference: float = 0.0
    is_close: bool = True


# floats reach 309 integer digits, past the default 28-digit context
_WIDE_CONTEXT = Context(prec=400)


def round_half_up(value: float, places: int = 0) -> float:
    if not math.isfinite(value):
        return value
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP, context=_WIDE_CONTEXT))


def tally_votes(votes: Sequence[Vote], settings: ConsensusSettings = DEFAULT_SETTINGS) -> VoteTally:
    buy_weight = sum(v.weight for v in votes if v.decision == Decision.BUY)
    sell_weight = sum(v.weight for v in votes if v.decision == Decision.SELL)
    total = buy_weight + sell_weight
    decision = Decision.BUY if buy_weight > sell_weight else Decision.SELL
    difference = abs(buy_weight - sell_weight) / total if total > 0 else 0.0
    return VoteTally(
        buy_weight=buy_weight,
        sell_weight=sell_weight,
        buy_votes=sum(1 for v in votes if v.decision == Decision.BUY),
        sell_votes=sum(1 for v in votes if v.decision == Decision.SELL),
        total_weight=total,
        decision=decision,
        weight_difference=difference,
        is_close=difference < settings.close_vote_threshold,
    )


def should_tiebreak(votes: Sequence[Vote], settings: ConsensusSettings = DEFAULT_SETTINGS) -> bool:
    """A split vote with enough voters gets one more opinion."""
    if len(votes) < settings.min_tiebreak_votes:
        return False
    return tally_votes(votes, settings).is_close


def _plurality(scored: Iterable[Tuple[str, float]]) -> Optional[str]:
    totals: Dict[str, float] = {}
    for key, score in scored:
        if key not in totals:
            totals[key] = 0.0
        totals[key] += score
    best: Optional[str] = None
    for key, score in totals.items():
        if best is None or score > totals[best]:
            best = key
    return best


def consensus_item_name(votes: Sequence[Vote]) -> str:
    name = _plurality((v.item_name, v.weight * v.self_confidence) for v in votes)
    return name or UNKNOWN_ITEM


def consensus_category(votes: Sequence[Vote]) -> Optional[str]:
    """Weighted plurality of categories the models reported, if any did."""
    return _plurality((v.category, v.weight) for v in votes if v.category)


def quality_tier(confidence: int, total_votes: int, settings: ConsensusSettings = DEFAULT_SETTINGS) -> QualityTier:
    if total_votes < settings.min_votes:
        return QualityTier.FALLBACK
    if confidence >= settings.optimal_threshold:
        return QualityTier.OPTIMAL
    if confidence >= settings.degraded_threshold:
        return QualityTier.DEGRADED
    return QualityTier.FALLBACK


def empty_consensus() -> ConsensusResult:
    return ConsensusResult(
        item_name=UNKNOWN_ITEM,
        estimated_value=0.0,
        decision=Decision.SELL,
        confidence=0,
        total_votes=0,
        quality_tier=QualityTier.FALLBACK,
        metrics=ConsensusMetrics(),
    )


def _weighted_mean(values: Sequence[float], weights: Sequence[float], total: float) -> float:
    mean = sum(v * w for v, w in zip(values, weights)) / total
    if math.isfinite(mean):
        return mean
    # the plain sum overflowed; scale each term first
    return sum(v * (w / total) for v, w in zip(values, weights))


def _value_agreement(values: List[float]) -> float:
    """One minus the coefficient of variation, computed on ratios to the mean."""
    mean = _weighted_mean(values, [1.0] * len(values), len(values))
    if mean == 0:
        return 1.0
    ratios = [v / mean for v in values]
    variance = sum((r - 1.0) ** 2 for r in ratios) / len(ratios)
    cv = math.sqrt(variance)
    return max(0.0, 1.0 - cv)


def _blend_authority(
    ai_value: float,
    authority: AuthorityRecord,
    settings: ConsensusSettings,
) -> float:
    if authority.point_value is None:
        return ai_value
    low, high = settings.plausibility_band
    point = float(authority.point_value)
    if not (low * ai_value <= point <= high * ai_value):
        logger.info(
            f"Authority value {point:.2f} outside plausibility band of AI value {ai_value:.2f}; not blended"
        )
        return ai_value
    ai_share, authority_share = settings.blend_weights
    blended = ai_share * ai_value + authority_share * point
    return blended if math.isfinite(blended) else ai_value


@dataclass
class ConsensusCalculator:
    settings: ConsensusSettings = field(default_factory=ConsensusSettings)

    def compute(self, votes: Sequence[Vote], authority: AuthorityRecord | None = None) -> ConsensusResult:
        votes = list(votes)
        if not votes:
            logger.warning("No votes collected; returning fallback consensus")
            return empty_consensus()

        s = self.settings
        tally = tally_votes(votes, s)
        values = [v.estimated_value for v in votes]

        if tally.total_weight > 0:
            estimated = _weighted_mean(values, [v.weight for v in votes], tally.total_weight)
            decision_agreement = max(tally.buy_weight, tally.sell_weight) / tally.total_weight
        else:
            estimated = _weighted_mean(values, [1.0] * len(values), len(values))
            decision_agreement = 0.0

        avg_confidence = sum(v.self_confidence for v in votes) / len(votes)
        value_agreement = _value_agreement(values)
        participation = min(1.0, len(votes) / s.target_provider_count)

        verified = bool(authority is not None and authority.verified)
        if verified:
            estimated = _blend_authority(estimated, authority, s)
        boost = s.authority_boost if verified else 0.0

        base = (
            s.confidence_weight * avg_confidence
            + s.decision_weight * decision_agreement
            + s.value_weight * value_agreement
            + s.participation_weight * participation
        )
        confidence = int(min(s.max_confidence, round_half_up(100 * (base + boost))))
        confidence = max(0, confidence)
        if len(votes) < s.min_votes:
            confidence = min(confidence, s.low_vote_cap)

        tier = quality_tier(confidence, len(votes), s)
        metrics = ConsensusMetrics(
            avg_confidence=avg_confidence,
            decision_agreement=decision_agreement,
            value_agreement=value_agreement,
            participation_rate=participation,
            authority_verified=verified,
        )
        result = ConsensusResult(
            item_name=consensus_item_name(votes),
            estimated_value=round_half_up(estimated, 2),
            decision=tally.decision,
            confidence=confidence,
            total_votes=len(votes),
            quality_tier=tier,
            metrics=metrics,
        )

        logger.info(
            f"Consensus: {result.item_name} ${result.estimated_value:.2f} {result.decision.value} "
            f"confidence={confidence} tier={tier.value} votes={len(votes)} "
            f"(conf={avg_confidence:.2f} decision={decision_agreement:.2f} "
            f"value={value_agreement:.2f} participation={participation:.2f})"
        )
        if confidence < s.optimal_threshold:
            causes = self._diagnose(metrics, len(votes))
            if causes:
                logger.warning(f"Confidence {confidence} below {s.optimal_threshold}: {', '.join(causes)}")
        return result

    def _diagnose(self, metrics: ConsensusMetrics, vote_count: int) -> List[str]:
        causes = []
        if vote_count < self.settings.min_votes:
            causes.append(f"only {vote_count} votes")
        if metrics.participation_rate < 0.5:
            causes.append(f"low participation ({metrics.participation_rate:.0%})")
        if metrics.value_agreement < 0.7:
            causes.append(f"value variance (agreement {metrics.value_agreement:.2f})")
        if metrics.decision_agreement < 0.7:
            causes.append(f"decision split (agreement {metrics.decision_agreement:.2f})")
        if metrics.avg_confidence < 0.7:
            causes.append(f"low model confidence ({metrics.avg_confidence:.2f})")
        if not metrics.authority_verified:
            causes.append("no authority data")
        return causes


def compute(
    votes: Sequence[Vote],
    authority: AuthorityRecord | None = None,
    settings: ConsensusSettings = DEFAULT_SETTINGS,
) -> ConsensusResult:
    return ConsensusCalculator(settings).compute(votes, authority)
