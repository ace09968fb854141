"""Valuation pipeline: providers -> votes -> category/authority -> consensus."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
import asyncio
import logging
import time

from quorum import prompts
from quorum.audit import AuditLog
from quorum.authority import AuthorityBlender
from quorum.categories import CategoryClassifier, CategoryTable, load_table
from quorum.config import Config
from quorum.consensus import (
    ConsensusCalculator,
    ConsensusSettings,
    consensus_category,
    consensus_item_name,
)
from quorum.errors import ConfigurationError, InputValidationError, QuorumError
from quorum.orchestrator import StageOrchestrator, StageReport
from quorum.providers.registry import ClientFactory, ProviderRegistry
from quorum.store import BackgroundSink, ValuationSink, ValuationStore, new_run_id
from quorum.votes import AuthorityRecord, CategoryDetection, ConsensusResult, Vote, VoteWeights

logger = logging.getLogger(__name__)

__all__ = [
    "ConfigurationError",
    "InputValidationError",
    "QuorumError",
    "ValuationPipeline",
    "ValuationReport",
]


@dataclass
class ValuationReport:
    run_id: str
    result: ConsensusResult
    category: CategoryDetection
    authority: AuthorityRecord | None = None
    votes: List[Vote] = field(default_factory=list)
    stages: List[StageReport] = field(default_factory=list)
    identity: str | None = None
    deadline_hit: bool = False
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "result": self.result.to_dict(),
            "category": self.category.to_dict(),
            "authority": self.authority.to_dict() if self.authority else None,
            "votes": [v.to_dict() for v in self.votes],
            "stages": [s.to_dict() for s in self.stages],
            "identity": self.identity,
            "deadline_hit": self.deadline_hit,
            "duration_ms": round(self.duration_ms, 1),
        }


class ValuationPipeline:
    def __init__(
        self,
        registry: ProviderRegistry,
        classifier: CategoryClassifier | None = None,
        settings: ConsensusSettings | None = None,
        blender: AuthorityBlender | None = None,
        sink: ValuationSink | None = None,
        run_timeout: float = 90.0,
        weights: VoteWeights | None = None,
        tiebreak_enabled: bool = True,
    ) -> None:
        if registry.count == 0:
            raise ConfigurationError("No providers available: configure at least one provider credential")
        self.registry = registry
        self.classifier = classifier or CategoryClassifier()
        self.settings = settings or ConsensusSettings()
        self.calculator = ConsensusCalculator(self.settings)
        self.blender = blender
        self.sink = BackgroundSink(sink) if sink is not None else None
        self.run_timeout = run_timeout
        self.weights = weights or VoteWeights()
        self.tiebreak_enabled = tiebreak_enabled

    @classmethod
    def from_config(
        cls,
        config: Config,
        environ: Mapping[str, str] | None = None,
        client_factory: ClientFactory | None = None,
    ) -> "ValuationPipeline":
        table: CategoryTable = (
            CategoryTable.load(config.category_table_path) if config.category_table_path else load_table()
        )
        try:
            settings = ConsensusSettings.from_config(config.consensus)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid consensus settings: {exc}") from exc
        registry = ProviderRegistry.load(
            config.providers,
            environ=environ,
            client_factory=client_factory,
            min_providers=settings.min_votes,
        )
        blender = AuthorityBlender.from_config(config.authority, table) if config.authority_enabled else None
        sink = ValuationStore(config.data_dir) if config.persist_runs else None
        return cls(
            registry,
            classifier=CategoryClassifier(table),
            settings=settings,
            blender=blender,
            sink=sink,
            run_timeout=config.run_timeout_seconds,
            weights=VoteWeights(**config.vote_weights),
            tiebreak_enabled=config.tiebreak_enabled,
        )

    def valuate(
        self,
        images: Sequence[bytes] | None,
        item_hint: str | None,
        category_hint: str | None = None,
    ) -> ConsensusResult:
        """Blocking entry point. Use ``avaluate`` from inside a running event loop."""
        return asyncio.run(self.avaluate(images, item_hint, category_hint))

    def valuate_detailed(
        self,
        images: Sequence[bytes] | None,
        item_hint: str | None,
        category_hint: str | None = None,
    ) -> ValuationReport:
        return asyncio.run(self.avaluate_detailed(images, item_hint, category_hint))

    async def avaluate(
        self,
        images: Sequence[bytes] | None,
        item_hint: str | None,
        category_hint: str | None = None,
    ) -> ConsensusResult:
        report = await self.avaluate_detailed(images, item_hint, category_hint)
        return report.result

    async def avaluate_detailed(
        self,
        images: Sequence[bytes] | None,
        item_hint: str | None,
        category_hint: str | None = None,
    ) -> ValuationReport:
        image_list = self._validate(images, item_hint)
        hint = (item_hint or "").strip()
        start = time.perf_counter()

        run_id = new_run_id()
        emit = self._audit_emitter(run_id)
        if self.sink is not None:
            self.sink.start_run(run_id, {
                "item_hint": hint,
                "category_hint": category_hint,
                "images": len(image_list),
                "providers": [p.id for p in self.registry.providers],
            })
        emit("run.start", {"item_hint": hint, "images": len(image_list), "timeout": self.run_timeout})

        try:
            report = await self._run(run_id, image_list, hint, category_hint, emit)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.error(f"Valuation run {run_id} failed: {error}")
            emit("run.failed", {"error": error})
            if self.sink is not None:
                self.sink.fail_run(run_id, error)
            raise
        report.duration_ms = (time.perf_counter() - start) * 1000
        return report

    async def _run(
        self,
        run_id: str,
        image_list: List[bytes],
        hint: str,
        category_hint: str | None,
        emit: Callable[[str, Dict[str, Any]], None],
    ) -> ValuationReport:
        orchestrator = StageOrchestrator(
            weights=self.weights,
            consensus=self.settings,
            run_timeout=self.run_timeout,
            tiebreak_enabled=self.tiebreak_enabled,
            observer=emit,
        )
        prompt = prompts.base_prompt(hint or None, category_hint)
        orchestration = await orchestrator.execute(image_list, prompt, self.registry.providers)
        votes = orchestration.votes
        if self.sink is not None:
            for vote in votes:
                self.sink.record_vote(run_id, vote)

        item_name = consensus_item_name(votes) if votes else hint
        detection = self.classifier.classify(item_name, hint=category_hint, ai_vote=consensus_category(votes))
        emit("category.detected", detection.to_dict())
        if self.sink is not None:
            self.sink.update_meta(run_id, {"item_name": item_name, "category": detection.category})

        authority = None
        if votes and self.blender is not None:
            authority = await self.blender.maybe_enrich(detection.category, item_name or hint)
            emit("authority.lookup", {
                "category": detection.category,
                "item_key": item_name or hint,
                "record": authority.to_dict() if authority else None,
            })

        result = self.calculator.compute(votes, authority)
        emit("consensus.final", result.to_dict())
        if self.sink is not None:
            self.sink.record_result(run_id, result)

        return ValuationReport(
            run_id=run_id,
            result=result,
            category=detection,
            authority=authority,
            votes=list(votes),
            stages=list(orchestration.stages),
            identity=orchestration.identity,
            deadline_hit=orchestration.deadline_hit,
        )

    def _validate(self, images: Sequence[bytes] | None, item_hint: str | None) -> List[bytes]:
        image_list = list(images or [])
        for index, image in enumerate(image_list):
            if not isinstance(image, (bytes, bytearray)) or not image:
                raise InputValidationError(f"Image {index} is empty or not bytes")
        if not image_list and not (item_hint or "").strip():
            raise InputValidationError("Provide at least one image or an item name")
        return [bytes(image) for image in image_list]

    def _audit_emitter(self, run_id: str) -> Callable[[str, Dict[str, Any]], None]:
        run_dir: Optional[Callable[[str], Path]] = getattr(self.sink.sink, "run_dir", None) if self.sink else None
        if run_dir is None:
            return lambda event, data: None
        audit = AuditLog(run_dir(run_id) / "audit.jsonl")

        def emit(event: str, data: Dict[str, Any]) -> None:
            self.sink.submit(audit.log, event, data)

        return emit

    def close(self) -> None:
        if self.sink is not None:
            self.sink.close()
