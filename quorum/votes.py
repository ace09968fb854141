"""Vote, analysis and consensus result types."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple
import math


class Capability(str, Enum):
    IMAGE = "IMAGE"
    TEXT = "TEXT"
    SEARCH = "SEARCH"


class Decision(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class QualityTier(str, Enum):
    OPTIMAL = "OPTIMAL"
    DEGRADED = "DEGRADED"
    FALLBACK = "FALLBACK"


class CategorySource(str, Enum):
    NAME_OVERRIDE = "NAME_OVERRIDE"
    AI_VOTE = "AI_VOTE"
    HINT = "HINT"
    NAME_PARSE = "NAME_PARSE"
    KEYWORDS = "KEYWORDS"
    DEFAULT = "DEFAULT"


@dataclass(frozen=True)
class AnalysisResult:
    """Parsed output of one provider call."""
    item_name: str = ""
    estimated_value: float | None = None
    decision: Decision | None = None
    self_confidence: float = 0.5
    latency_ms: float = 0.0
    content: str = ""
    reasoning: str = ""
    category: str | None = None
    raw: Any = None

    @property
    def well_formed(self) -> bool:
        if not self.item_name or not self.item_name.strip():
            return False
        if self.decision is None:
            return False
        if isinstance(self.estimated_value, bool):
            return False
        if not isinstance(self.estimated_value, (int, float)):
            return False
        if not math.isfinite(self.estimated_value) or self.estimated_value < 0:
            return False
        return True


@dataclass(frozen=True)
class Vote:
    provider_id: str
    item_name: str
    estimated_value: float
    decision: Decision
    self_confidence: float
    weight: float
    latency_ms: float = 0.0
    raw: Any = field(default=None, compare=False, repr=False)
    provider_name: str = ""
    stage: str = ""
    category: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "provider_name": self.provider_name,
            "stage": self.stage,
            "item_name": self.item_name,
            "estimated_value": self.estimated_value,
            "decision": self.decision.value,
            "self_confidence": self.self_confidence,
            "weight": self.weight,
            "latency_ms": round(self.latency_ms, 1),
            "category": self.category,
        }


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class _StageVote:
    """Common shape of a successful provider call before it becomes a Vote."""
    provider: Any
    analysis: AnalysisResult

    stage = ""

    def multiplier(self, weights: "VoteWeights") -> float:
        return 1.0

    def confidence(self, weights: "VoteWeights") -> float:
        return _clamp_unit(self.analysis.self_confidence)

    def to_vote(self, weights: "VoteWeights") -> Vote:
        confidence = self.confidence(weights)
        weight = float(self.provider.base_weight) * confidence * self.multiplier(weights)
        return Vote(
            provider_id=self.provider.id,
            provider_name=self.provider.name,
            stage=self.stage,
            item_name=self.analysis.item_name.strip(),
            estimated_value=float(self.analysis.estimated_value),
            decision=self.analysis.decision,
            self_confidence=confidence,
            weight=max(0.0, weight),
            latency_ms=self.analysis.latency_ms,
            raw=self.analysis.raw if self.analysis.raw is not None else self.analysis.content,
            category=self.analysis.category,
        )


@dataclass(frozen=True)
class VoteWeights:
    market_lookup_bonus: float = 1.2
    tiebreak_weight_factor: float = 0.6
    tiebreak_confidence_factor: float = 0.8


@dataclass(frozen=True)
class ImageVote(_StageVote):
    stage = "image"


@dataclass(frozen=True)
class TextVote(_StageVote):
    stage = "text"


@dataclass(frozen=True)
class SearchVote(_StageVote):
    identity_established: bool = False

    stage = "search"

    def multiplier(self, weights: VoteWeights) -> float:
        if self.identity_established and getattr(self.provider, "market_lookup", False):
            return weights.market_lookup_bonus
        return 1.0


@dataclass(frozen=True)
class TiebreakVote(_StageVote):
    stage = "tiebreak"

    def multiplier(self, weights: VoteWeights) -> float:
        return weights.tiebreak_weight_factor

    def confidence(self, weights: VoteWeights) -> float:
        return _clamp_unit(self.analysis.self_confidence * weights.tiebreak_confidence_factor)


@dataclass(frozen=True)
class AuthorityRecord:
    verified: bool
    point_value: float | None = None
    source: str = ""
    raw: Any = field(default=None, compare=False, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"verified": self.verified, "point_value": self.point_value, "source": self.source}


@dataclass(frozen=True)
class CategoryDetection:
    category: str
    confidence: float
    source: CategorySource
    matched_terms: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "confidence": self.confidence,
            "source": self.source.value,
            "matched_terms": list(self.matched_terms),
        }


@dataclass(frozen=True)
class ConsensusMetrics:
    avg_confidence: float = 0.0
    decision_agreement: float = 0.0
    value_agreement: float = 0.0
    participation_rate: float = 0.0
    authority_verified: bool = False


@dataclass(frozen=True)
class ConsensusResult:
    item_name: str
    estimated_value: float
    decision: Decision
    confidence: int
    total_votes: int
    quality_tier: QualityTier
    metrics: ConsensusMetrics = field(default_factory=ConsensusMetrics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_name": self.item_name,
            "estimated_value": self.estimated_value,
            "decision": self.decision.value,
            "confidence": self.confidence,
            "total_votes": self.total_votes,
            "quality_tier": self.quality_tier.value,
            "metrics": asdict(self.metrics),
        }


def parse_capability(value: Any) -> Optional[Capability]:
    try:
        return Capability(str(value).strip().upper())
    except ValueError:
        return None
