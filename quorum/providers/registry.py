"""Provider registry: configured model services and their health."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple
import logging
import os

from quorum.errors import ConfigurationError
from quorum.providers.anthropic import AnthropicClient
from quorum.providers.base import ProviderClient
from quorum.providers.gemini import GeminiClient
from quorum.providers.ollama import OllamaClient
from quorum.providers.openai_compat import OpenAICompatClient
from quorum.votes import Capability, parse_capability

logger = logging.getLogger(__name__)

MISSING_CREDENTIAL = "missing credential"

ClientFactory = Callable[[Dict[str, Any], Optional[str]], ProviderClient]


@dataclass(frozen=True)
class Provider:
    id: str
    name: str
    capabilities: FrozenSet[Capability]
    base_weight: float
    kind: str = "openai"
    model: str = ""
    timeout_seconds: float = 30.0
    market_lookup: bool = False
    tiebreaker: bool = False
    client: Any = field(default=None, compare=False, repr=False)

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities


@dataclass(frozen=True)
class ProviderStatus:
    id: str
    name: str
    has_credential: bool
    initialized: bool
    last_error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "has_credential": self.has_credential,
            "initialized": self.initialized,
            "last_error": self.last_error,
        }


def default_client_factory(entry: Dict[str, Any], api_key: Optional[str]) -> ProviderClient:
    kind = str(entry.get("kind", "openai")).lower()
    provider_id = str(entry["id"])
    model = str(entry.get("model", ""))
    base_url = entry.get("base_url")
    if kind == "gemini":
        kwargs: Dict[str, Any] = {"provider_id": provider_id, "api_key": api_key or "", "model": model or "2.0-flash"}
        if base_url:
            kwargs["base_url"] = base_url
        return GeminiClient(**kwargs)
    if kind == "anthropic":
        kwargs = {"provider_id": provider_id, "api_key": api_key or "", "model": model}
        if base_url:
            kwargs["base_url"] = base_url
        return AnthropicClient(**kwargs)
    if kind == "ollama":
        return OllamaClient(
            provider_id=provider_id,
            model=model or "llava",
            base_url=base_url or "http://localhost:11434",
        )
    if kind == "openai":
        kwargs = {
            "provider_id": provider_id,
            "api_key": api_key or "",
            "model": model,
            "json_mode": bool(entry.get("json_mode", True)),
        }
        if base_url:
            kwargs["base_url"] = base_url
        return OpenAICompatClient(**kwargs)
    raise ConfigurationError(f"Provider {provider_id}: unknown kind {kind!r}")


def _env_keys(entry: Dict[str, Any]) -> List[str]:
    keys = entry.get("env_keys") or []
    if isinstance(keys, str):
        keys = [keys]
    return [str(k) for k in keys]


def _resolve_credential(entry: Dict[str, Any], environ: Mapping[str, str]) -> Optional[str]:
    for key in _env_keys(entry):
        value = environ.get(str(key), "")
        if value.strip():
            return value.strip()
    return None


def _parse_entry(entry: Dict[str, Any]) -> Tuple[str, str, FrozenSet[Capability], float]:
    if not isinstance(entry, dict) or not entry.get("id"):
        raise ConfigurationError(f"Provider config without id: {entry!r}")
    provider_id = str(entry["id"])
    raw_caps = entry.get("capabilities") or []
    capabilities = []
    for raw in raw_caps:
        capability = parse_capability(raw)
        if capability is None:
            raise ConfigurationError(f"Provider {provider_id}: unknown capability {raw!r}")
        capabilities.append(capability)
    if not capabilities:
        raise ConfigurationError(f"Provider {provider_id}: no capabilities")
    try:
        weight = float(entry.get("base_weight", 1.0))
    except (TypeError, ValueError):
        raise ConfigurationError(f"Provider {provider_id}: base_weight must be a number")
    if weight <= 0:
        raise ConfigurationError(f"Provider {provider_id}: base_weight must be > 0")
    return provider_id, str(entry.get("name", provider_id)), frozenset(capabilities), weight


class ProviderRegistry:
    """Read-only set of providers that initialized, plus status for every configured one."""

    def __init__(self, providers: Iterable[Provider], statuses: Iterable[ProviderStatus] = ()) -> None:
        self._providers: Tuple[Provider, ...] = tuple(providers)
        self._statuses: Tuple[ProviderStatus, ...] = tuple(statuses) or tuple(
            ProviderStatus(p.id, p.name, has_credential=True, initialized=True) for p in self._providers
        )

    @classmethod
    def load(
        cls,
        configs: Iterable[Dict[str, Any]],
        environ: Mapping[str, str] | None = None,
        client_factory: ClientFactory | None = None,
        min_providers: int = 3,
    ) -> "ProviderRegistry":
        environ = os.environ if environ is None else environ
        factory = client_factory or default_client_factory
        providers: List[Provider] = []
        statuses: List[ProviderStatus] = []
        seen: set = set()

        for entry in configs:
            provider_id, name, capabilities, weight = _parse_entry(entry)
            if provider_id in seen:
                raise ConfigurationError(f"Duplicate provider id: {provider_id}")
            seen.add(provider_id)
            if not entry.get("enabled", True):
                logger.info(f"Provider {provider_id} disabled in config")
                continue

            needs_credential = bool(entry.get("requires_credential", True))
            api_key = _resolve_credential(entry, environ)
            if needs_credential and not api_key:
                keys = ", ".join(_env_keys(entry)) or "no env_keys configured"
                logger.warning(f"Provider {provider_id} excluded: no credential ({keys})")
                statuses.append(ProviderStatus(provider_id, name, False, False, MISSING_CREDENTIAL))
                continue

            try:
                client = factory(entry, api_key)
            except ConfigurationError:
                raise
            except Exception as exc:
                logger.warning(f"Provider {provider_id} failed to initialize: {exc}")
                statuses.append(ProviderStatus(provider_id, name, True, False, str(exc)))
                continue

            providers.append(Provider(
                id=provider_id,
                name=name,
                capabilities=capabilities,
                base_weight=weight,
                kind=str(entry.get("kind", "openai")),
                model=str(entry.get("model", "")),
                timeout_seconds=float(entry.get("timeout_seconds", 30.0)),
                market_lookup=bool(entry.get("market_lookup", False)),
                tiebreaker=bool(entry.get("tiebreaker", False)),
                client=client,
            ))
            statuses.append(ProviderStatus(provider_id, name, True, True))

        if len(providers) < min_providers:
            logger.warning(
                f"Only {len(providers)} provider(s) initialized; consensus confidence will be capped"
            )
        else:
            logger.info(f"Loaded {len(providers)} providers: {', '.join(p.id for p in providers)}")
        return cls(providers, statuses)

    @property
    def providers(self) -> Tuple[Provider, ...]:
        return self._providers

    @property
    def count(self) -> int:
        return len(self._providers)

    def by_capability(self, capability: Capability | str) -> List[Provider]:
        tag = parse_capability(capability) if not isinstance(capability, Capability) else capability
        if tag is None:
            raise ValueError(f"Unknown capability: {capability!r}")
        return [p for p in self._providers if tag in p.capabilities]

    def get(self, provider_id: str) -> Provider | None:
        for provider in self._providers:
            if provider.id == provider_id:
                return provider
        return None

    def statuses(self) -> List[ProviderStatus]:
        return list(self._statuses)
