"""Provider health summary for CLI and HTTP callers."""
from __future__ import annotations

from typing import Any, Dict

from quorum.consensus import ConsensusSettings
from quorum.orchestrator import partition
from quorum.providers.registry import ProviderRegistry


def health_payload(registry: ProviderRegistry, settings: ConsensusSettings | None = None) -> Dict[str, Any]:
    settings = settings or ConsensusSettings()
    statuses = registry.statuses()
    stages = partition(registry.providers)
    voting = sum(len(stages[name]) for name in ("image", "text", "search"))
    if registry.count == 0:
        outlook = "unavailable"
    elif voting < settings.min_votes:
        outlook = f"capped at {settings.low_vote_cap} (fewer than {settings.min_votes} voting providers)"
    else:
        outlook = "full"
    return {
        "ok": registry.count > 0,
        "providers": registry.count,
        "target_provider_count": settings.target_provider_count,
        "max_participation": round(min(1.0, voting / settings.target_provider_count), 2),
        "confidence_outlook": outlook,
        "stages": {name: [p.id for p in members] for name, members in stages.items()},
        "statuses": [s.to_dict() for s in statuses],
        "missing_credentials": [s.id for s in statuses if not s.has_credential],
    }
