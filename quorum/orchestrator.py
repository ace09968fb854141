"""Staged fan-out of provider calls.

Providers run in capability order:

1. image   IMAGE-capable providers see the photos and the base prompt
2. text    text-only providers get the prompt enriched with stage 1's best description
3. search  search-capable providers get a market-lookup prompt for the identified item
4. tiebreak  tiebreaker providers run only when the BUY/SELL split is close

Within a stage every call runs concurrently under its own timeout. The stage
waits for all of them (gather with return_exceptions) before any vote is
appended, so the run's vote list is only written between stages.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import asyncio
import logging
import time

from quorum import prompts
from quorum.consensus import DEFAULT_SETTINGS, ConsensusSettings, consensus_item_name, should_tiebreak, tally_votes
from quorum.providers.base import ProviderError
from quorum.providers.registry import Provider
from quorum.votes import (
    AnalysisResult,
    Capability,
    ImageVote,
    SearchVote,
    TextVote,
    TiebreakVote,
    Vote,
    VoteWeights,
)

logger = logging.getLogger(__name__)

Observer = Callable[[str, Dict[str, Any]], None]


@dataclass(frozen=True)
class StageReport:
    stage: str
    attempted: int = 0
    succeeded: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failures": dict(self.failures),
            "skipped": self.skipped,
        }


@dataclass
class OrchestrationResult:
    votes: List[Vote] = field(default_factory=list)
    stages: List[StageReport] = field(default_factory=list)
    best_description: Optional[str] = None
    identity: Optional[str] = None
    deadline_hit: bool = False


def partition(providers: Sequence[Provider]) -> Dict[str, List[Provider]]:
    """Assign each provider to exactly one stage, keeping declaration order."""
    stages: Dict[str, List[Provider]] = {"image": [], "text": [], "search": [], "tiebreak": []}
    for provider in providers:
        if provider.tiebreaker:
            stages["tiebreak"].append(provider)
        elif provider.has(Capability.IMAGE):
            stages["image"].append(provider)
        elif provider.has(Capability.SEARCH):
            stages["search"].append(provider)
        elif provider.has(Capability.TEXT):
            stages["text"].append(provider)
    return stages


class StageOrchestrator:
    def __init__(
        self,
        weights: VoteWeights | None = None,
        consensus: ConsensusSettings = DEFAULT_SETTINGS,
        run_timeout: float = 90.0,
        tiebreak_enabled: bool = True,
        observer: Observer | None = None,
    ) -> None:
        self.weights = weights or VoteWeights()
        self.consensus = consensus
        self.run_timeout = run_timeout
        self.tiebreak_enabled = tiebreak_enabled
        self.observer = observer

    def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if self.observer is None:
            return
        try:
            self.observer(event, data)
        except Exception:
            logger.warning(f"Observer failed for {event}", exc_info=True)

    async def run(self, images: List[bytes], base_prompt: str, providers: Sequence[Provider]) -> List[Vote]:
        result = await self.execute(images, base_prompt, providers)
        return result.votes

    async def execute(
        self,
        images: List[bytes],
        base_prompt: str,
        providers: Sequence[Provider],
    ) -> OrchestrationResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.run_timeout
        stages = partition(providers)
        result = OrchestrationResult()

        # Stage 1: vision
        successes, report = await self._run_stage("image", stages["image"], images, base_prompt, deadline)
        result.stages.append(report)
        for provider, analysis in successes:
            if analysis.item_name and analysis.reasoning:
                result.identity = analysis.item_name.strip()
                result.best_description = prompts.best_description(result.identity, analysis.reasoning)
                break
        result.votes.extend(ImageVote(p, a).to_vote(self.weights) for p, a in successes)
        if result.identity:
            logger.info(f"Identified as: {result.best_description[:120]}")
        else:
            logger.info("No usable stage 1 description; later stages use the base prompt")

        # Stage 2: text-only reasoning
        text_prompt = prompts.enriched_prompt(base_prompt, result.best_description, result.identity)
        successes, report = await self._run_stage("text", stages["text"], [], text_prompt, deadline)
        result.stages.append(report)
        result.votes.extend(TextVote(p, a).to_vote(self.weights) for p, a in successes)

        # Stage 3: market lookup
        search_prompt = prompts.market_prompt(base_prompt, result.identity)
        successes, report = await self._run_stage(
            "search", stages["search"], [], search_prompt, deadline, fallback_name=result.identity
        )
        result.stages.append(report)
        identified = bool(result.identity)
        result.votes.extend(
            SearchVote(p, a, identity_established=identified).to_vote(self.weights) for p, a in successes
        )

        # Stage 4: tiebreak on a close split
        if stages["tiebreak"] and self.tiebreak_enabled:
            if should_tiebreak(result.votes, self.consensus):
                tally = tally_votes(result.votes, self.consensus)
                logger.info(
                    f"Close vote (difference {tally.weight_difference:.3f}); asking "
                    f"{', '.join(p.id for p in stages['tiebreak'])}"
                )
                tie_prompt = prompts.tiebreak_prompt(
                    base_prompt,
                    consensus_item_name(result.votes),
                    tally.buy_votes,
                    tally.sell_votes,
                    tally.buy_weight,
                    tally.sell_weight,
                )
                successes, report = await self._run_stage(
                    "tiebreak", stages["tiebreak"], [], tie_prompt, deadline, fallback_name=result.identity
                )
                result.stages.append(report)
                result.votes.extend(TiebreakVote(p, a).to_vote(self.weights) for p, a in successes)

        result.deadline_hit = any(r.skipped for r in result.stages) or loop.time() >= deadline
        if result.deadline_hit:
            logger.warning(
                f"Run ceiling of {self.run_timeout}s reached; continuing with {len(result.votes)} votes"
            )
        return result

    async def _run_stage(
        self,
        stage: str,
        providers: Sequence[Provider],
        images: List[bytes],
        prompt: str,
        deadline: float,
        fallback_name: Optional[str] = None,
    ) -> Tuple[List[Tuple[Provider, AnalysisResult]], StageReport]:
        if not providers:
            return [], StageReport(stage)
        loop = asyncio.get_running_loop()
        if loop.time() >= deadline:
            logger.warning(f"Skipping {stage} stage: run ceiling reached")
            report = StageReport(stage, attempted=0, skipped=True)
            self._emit("stage.complete", report.to_dict())
            return [], report

        outcomes = await asyncio.gather(
            *(self._call(p, images, prompt, deadline) for p in providers),
            return_exceptions=True,
        )

        successes: List[Tuple[Provider, AnalysisResult]] = []
        failures: Dict[str, str] = {}
        for provider, outcome in zip(providers, outcomes):
            analysis, error = self._classify(provider, outcome, fallback_name)
            if analysis is not None:
                successes.append((provider, analysis))
                logger.info(
                    f"{provider.name}: {analysis.item_name} ${float(analysis.estimated_value):.2f} "
                    f"{analysis.decision.value} ({analysis.self_confidence:.2f}, {analysis.latency_ms:.0f}ms)"
                )
            else:
                failures[provider.id] = error
                logger.warning(f"{provider.name} failed in {stage} stage: {error}")
            self._emit("provider.call", {
                "stage": stage,
                "provider": provider.id,
                "ok": analysis is not None,
                "error": error,
                "latency_ms": analysis.latency_ms if analysis is not None else None,
            })

        report = StageReport(stage, attempted=len(providers), succeeded=len(successes), failures=failures)
        self._emit("stage.complete", report.to_dict())
        logger.info(f"Stage {stage}: {len(successes)}/{len(providers)} succeeded")
        return successes, report

    async def _call(
        self,
        provider: Provider,
        images: List[bytes],
        prompt: str,
        deadline: float,
    ) -> AnalysisResult:
        remaining = deadline - asyncio.get_running_loop().time()
        timeout = max(0.001, min(provider.timeout_seconds, remaining))
        start = time.perf_counter()
        analysis = await asyncio.wait_for(provider.client.analyze(images, prompt, timeout), timeout)
        if isinstance(analysis, AnalysisResult) and not analysis.latency_ms:
            analysis = replace(analysis, latency_ms=(time.perf_counter() - start) * 1000)
        return analysis

    @staticmethod
    def _classify(
        provider: Provider,
        outcome: Any,
        fallback_name: Optional[str],
    ) -> Tuple[Optional[AnalysisResult], Optional[str]]:
        if isinstance(outcome, asyncio.TimeoutError):
            return None, "timeout"
        if isinstance(outcome, asyncio.CancelledError):
            return None, "cancelled"
        if isinstance(outcome, ProviderError):
            return None, outcome.message
        if isinstance(outcome, Exception):
            return None, f"{type(outcome).__name__}: {outcome}"
        if isinstance(outcome, BaseException):
            raise outcome
        if not isinstance(outcome, AnalysisResult):
            return None, f"unexpected result type {type(outcome).__name__}"
        if fallback_name and not (outcome.item_name or "").strip():
            outcome = replace(outcome, item_name=fallback_name)
        if not outcome.well_formed:
            return None, "malformed response"
        return outcome, None

