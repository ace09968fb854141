"""Tests for quorum.orchestrator module."""
import asyncio
import unittest

from quorum.orchestrator import StageOrchestrator, partition
from quorum.providers.base import ProviderError
from quorum.providers.registry import Provider
from quorum.votes import AnalysisResult, Capability, Decision


def _analysis(name="Widget", value=10.0, decision=Decision.BUY, confidence=0.8, reasoning=""):
    return AnalysisResult(
        item_name=name,
        estimated_value=value,
        decision=decision,
        self_confidence=confidence,
        reasoning=reasoning,
    )


class FakeClient:
    """Returns a canned analysis or raises, recording what it was asked."""

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result if result is not None else _analysis()
        self.error = error
        self.delay = delay
        self.calls = []

    async def analyze(self, images, prompt, timeout):
        self.calls.append({"images": list(images), "prompt": prompt, "timeout": timeout})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def _provider(provider_id, capabilities, client, weight=1.0, timeout=5.0, **extra):
    return Provider(
        id=provider_id,
        name=provider_id.title(),
        capabilities=frozenset(Capability(c) for c in capabilities),
        base_weight=weight,
        timeout_seconds=timeout,
        client=client,
        **extra,
    )


def _run(orchestrator, providers, images=(b"\x89PNG\r\n\x1a\nfake",), prompt="base prompt"):
    return asyncio.run(orchestrator.execute(list(images), prompt, providers))


class TestPartition(unittest.TestCase):
    def test_each_provider_gets_one_stage(self):
        client = FakeClient()
        providers = [
            _provider("vision", ["IMAGE", "TEXT"], client),
            _provider("search", ["TEXT", "SEARCH"], client),
            _provider("text", ["TEXT"], client),
            _provider("judge", ["IMAGE", "TEXT"], client, tiebreaker=True),
            _provider("both", ["IMAGE", "SEARCH"], client),
        ]
        stages = partition(providers)
        self.assertEqual([p.id for p in stages["image"]], ["vision", "both"])
        self.assertEqual([p.id for p in stages["search"]], ["search"])
        self.assertEqual([p.id for p in stages["text"]], ["text"])
        self.assertEqual([p.id for p in stages["tiebreak"]], ["judge"])


class TestStageExecution(unittest.TestCase):
    def test_failures_are_isolated(self):
        providers = [
            _provider("ok", ["IMAGE"], FakeClient(_analysis("Widget", 10.0))),
            _provider("http", ["IMAGE"], FakeClient(error=ProviderError("http", "HTTP 500: oops"))),
            _provider("bug", ["IMAGE"], FakeClient(error=RuntimeError("kaboom"))),
            _provider("junk", ["IMAGE"], FakeClient(AnalysisResult(content="no json"))),
        ]
        result = _run(StageOrchestrator(), providers)
        self.assertEqual([v.provider_id for v in result.votes], ["ok"])
        image = result.stages[0]
        self.assertEqual(image.stage, "image")
        self.assertEqual(image.attempted, 4)
        self.assertEqual(image.succeeded, 1)
        self.assertEqual(image.failures["http"], "HTTP 500: oops")
        self.assertEqual(image.failures["bug"], "RuntimeError: kaboom")
        self.assertEqual(image.failures["junk"], "malformed response")

    def test_provider_timeout(self):
        providers = [
            _provider("slow", ["IMAGE"], FakeClient(delay=2.0), timeout=0.05),
            _provider("fast", ["IMAGE"], FakeClient()),
        ]
        result = _run(StageOrchestrator(), providers)
        self.assertEqual([v.provider_id for v in result.votes], ["fast"])
        self.assertEqual(result.stages[0].failures["slow"], "timeout")

    def test_only_image_stage_sees_images(self):
        vision = FakeClient(_analysis("Widget", reasoning="Blue widget, boxed."))
        text = FakeClient()
        providers = [_provider("vision", ["IMAGE"], vision), _provider("text", ["TEXT"], text)]
        _run(StageOrchestrator(), providers, images=[b"img"])
        self.assertEqual(vision.calls[0]["images"], [b"img"])
        self.assertEqual(text.calls[0]["images"], [])

    def test_text_stage_gets_identification(self):
        text = FakeClient()
        providers = [
            _provider("vision", ["IMAGE"], FakeClient(_analysis("Lego 75192", reasoning="Sealed UCS set."))),
            _provider("text", ["TEXT"], text),
        ]
        result = _run(StageOrchestrator(), providers)
        self.assertEqual(result.identity, "Lego 75192")
        self.assertEqual(result.best_description, "Lego 75192: Sealed UCS set.")
        self.assertIn("Lego 75192: Sealed UCS set.", text.calls[0]["prompt"])

    def test_without_identification_text_stage_uses_base_prompt(self):
        text = FakeClient()
        providers = [
            _provider("vision", ["IMAGE"], FakeClient(_analysis("Widget", reasoning=""))),
            _provider("text", ["TEXT"], text),
        ]
        result = _run(StageOrchestrator(), providers, prompt="base prompt")
        self.assertIsNone(result.identity)
        self.assertEqual(text.calls[0]["prompt"], "base prompt")

    def test_vote_weight(self):
        providers = [_provider("a", ["TEXT"], FakeClient(_analysis(confidence=0.5)), weight=0.75)]
        result = _run(StageOrchestrator(), providers)
        vote = result.votes[0]
        self.assertAlmostEqual(vote.weight, 0.375)
        self.assertEqual(vote.stage, "text")
        self.assertEqual(vote.provider_name, "A")

    def test_observer_failure_does_not_break_run(self):
        def observer(event, data):
            raise RuntimeError("observer down")

        providers = [_provider("a", ["TEXT"], FakeClient())]
        result = _run(StageOrchestrator(observer=observer), providers)
        self.assertEqual(len(result.votes), 1)

    def test_observer_sees_calls(self):
        events = []
        providers = [
            _provider("a", ["TEXT"], FakeClient()),
            _provider("b", ["TEXT"], FakeClient(error=ProviderError("b", "down"))),
        ]
        _run(StageOrchestrator(observer=lambda e, d: events.append((e, d))), providers)
        calls = [d for e, d in events if e == "provider.call"]
        self.assertEqual({c["provider"]: c["ok"] for c in calls}, {"a": True, "b": False})
        self.assertIn("stage.complete", [e for e, _ in events])


class TestMarketStage(unittest.TestCase):
    def test_bonus_applies_with_identity(self):
        search = FakeClient(_analysis("Lego 75192", confidence=0.8))
        providers = [
            _provider("vision", ["IMAGE"], FakeClient(_analysis("Lego 75192", reasoning="Sealed."))),
            _provider("pplx", ["TEXT", "SEARCH"], search, market_lookup=True),
        ]
        result = _run(StageOrchestrator(), providers)
        vote = [v for v in result.votes if v.provider_id == "pplx"][0]
        self.assertEqual(vote.stage, "search")
        self.assertAlmostEqual(vote.weight, 0.96)
        self.assertIn('"Lego 75192"', search.calls[0]["prompt"])

    def test_no_bonus_without_identity(self):
        providers = [
            _provider("vision", ["IMAGE"], FakeClient(_analysis("Lego 75192", reasoning=""))),
            _provider("pplx", ["TEXT", "SEARCH"], FakeClient(_analysis(confidence=0.8)), market_lookup=True),
        ]
        result = _run(StageOrchestrator(), providers)
        vote = [v for v in result.votes if v.provider_id == "pplx"][0]
        self.assertAlmostEqual(vote.weight, 0.8)

    def test_no_bonus_without_market_lookup_flag(self):
        providers = [
            _provider("vision", ["IMAGE"], FakeClient(_analysis("Lego 75192", reasoning="Sealed."))),
            _provider("search", ["SEARCH"], FakeClient(_analysis(confidence=0.8))),
        ]
        result = _run(StageOrchestrator(), providers)
        self.assertAlmostEqual(result.votes[-1].weight, 0.8)

    def test_missing_name_filled_from_identity(self):
        providers = [
            _provider("vision", ["IMAGE"], FakeClient(_analysis("Lego 75192", reasoning="Sealed."))),
            _provider("pplx", ["SEARCH"], FakeClient(_analysis(name="")), market_lookup=True),
        ]
        result = _run(StageOrchestrator(), providers)
        self.assertEqual(result.votes[-1].item_name, "Lego 75192")

    def test_missing_name_without_identity_is_malformed(self):
        providers = [_provider("pplx", ["SEARCH"], FakeClient(_analysis(name="")), market_lookup=True)]
        result = _run(StageOrchestrator(), providers)
        self.assertEqual(result.votes, [])
        self.assertEqual(result.stages[2].failures["pplx"], "malformed response")


class TestTiebreak(unittest.TestCase):
    def _split(self, buy, sell):
        providers = [_provider(f"b{i}", ["TEXT"], FakeClient(_analysis(decision=Decision.BUY))) for i in range(buy)]
        providers += [_provider(f"s{i}", ["TEXT"], FakeClient(_analysis(decision=Decision.SELL))) for i in range(sell)]
        return providers

    def test_close_split_calls_tiebreaker(self):
        judge = FakeClient(_analysis(decision=Decision.BUY, confidence=0.8))
        providers = self._split(2, 2) + [_provider("judge", ["TEXT"], judge, tiebreaker=True)]
        result = _run(StageOrchestrator(), providers)
        self.assertEqual(len(judge.calls), 1)
        self.assertIn("2 voted BUY", judge.calls[0]["prompt"])
        self.assertEqual(result.stages[-1].stage, "tiebreak")
        vote = result.votes[-1]
        self.assertEqual(vote.stage, "tiebreak")
        self.assertAlmostEqual(vote.self_confidence, 0.64)
        self.assertAlmostEqual(vote.weight, 0.384)
        self.assertEqual(len(result.votes), 5)

    def test_clear_majority_skips_tiebreaker(self):
        judge = FakeClient()
        providers = self._split(4, 0) + [_provider("judge", ["TEXT"], judge, tiebreaker=True)]
        result = _run(StageOrchestrator(), providers)
        self.assertEqual(judge.calls, [])
        self.assertEqual(len(result.votes), 4)
        self.assertNotIn("tiebreak", [s.stage for s in result.stages])

    def test_too_few_votes_skips_tiebreaker(self):
        judge = FakeClient()
        providers = self._split(1, 1) + [_provider("judge", ["TEXT"], judge, tiebreaker=True)]
        _run(StageOrchestrator(), providers)
        self.assertEqual(judge.calls, [])

    def test_disabled_tiebreak(self):
        judge = FakeClient()
        providers = self._split(2, 2) + [_provider("judge", ["TEXT"], judge, tiebreaker=True)]
        _run(StageOrchestrator(tiebreak_enabled=False), providers)
        self.assertEqual(judge.calls, [])


class TestRunCeiling(unittest.TestCase):
    def test_ceiling_keeps_collected_votes(self):
        text = FakeClient(delay=1.0)
        providers = [
            _provider("fast", ["IMAGE"], FakeClient(_analysis("Widget", reasoning="ok"))),
            _provider("stuck", ["IMAGE"], FakeClient(delay=5.0), timeout=30.0),
            _provider("text", ["TEXT"], text),
        ]
        result = _run(StageOrchestrator(run_timeout=0.2), providers)
        self.assertTrue(result.deadline_hit)
        self.assertEqual([v.provider_id for v in result.votes], ["fast"])
        self.assertEqual(result.stages[0].failures["stuck"], "timeout")

    def test_timeout_is_clamped_to_remaining_time(self):
        client = FakeClient()
        providers = [_provider("a", ["TEXT"], client, timeout=30.0)]
        _run(StageOrchestrator(run_timeout=1.0), providers)
        self.assertLessEqual(client.calls[0]["timeout"], 1.0)

    def test_run_helper_returns_votes(self):
        providers = [_provider("a", ["TEXT"], FakeClient())]
        votes = asyncio.run(StageOrchestrator().run([], "prompt", providers))
        self.assertEqual(len(votes), 1)


if __name__ == "__main__":
    unittest.main()
