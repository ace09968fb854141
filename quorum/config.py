"""Configuration loader for Quorum."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List
import os
import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "quorum" / "config.yaml"

TRUE_VALUES = ("true", "1", "yes", "on")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _env_number(name: str, cast):
    value = os.getenv(name)
    if not value:
        return None
    try:
        return cast(value)
    except ValueError:
        return None


def load_config(
    default_path: Path | None = None,
    user_path: Path | None = None,
) -> Dict[str, Any]:
    default_path = default_path or DEFAULT_CONFIG_PATH
    user_path = user_path or USER_CONFIG_PATH
    data: Dict[str, Any] = {}
    if default_path.exists():
        data = yaml.safe_load(default_path.read_text()) or {}
    if user_path.exists():
        override = yaml.safe_load(user_path.read_text()) or {}
        data = _deep_merge(data, override)

    # Environment overrides - Server
    host = os.getenv("QUORUM_HOST")
    if host:
        data.setdefault("server", {})["host"] = host
    port = _env_number("QUORUM_PORT", int)
    if port is not None:
        data.setdefault("server", {})["port"] = port

    # Environment overrides - Data directory
    data_dir = os.getenv("QUORUM_DATA_DIR")
    if data_dir:
        data["data_dir"] = data_dir

    # Environment overrides - Orchestration
    run_timeout = _env_number("QUORUM_RUN_TIMEOUT", float)
    if run_timeout is not None:
        data.setdefault("orchestration", {})["run_timeout_seconds"] = run_timeout
    provider_timeout = _env_number("QUORUM_PROVIDER_TIMEOUT", float)
    if provider_timeout is not None:
        for entry in data.get("providers", []) or []:
            if isinstance(entry, dict):
                entry["timeout_seconds"] = provider_timeout

    # Environment overrides - Consensus
    target = _env_number("QUORUM_TARGET_PROVIDERS", int)
    if target is not None:
        data.setdefault("consensus", {})["target_provider_count"] = target

    # Environment overrides - Authority lookups
    authority = os.getenv("QUORUM_AUTHORITY")
    if authority is not None:
        data.setdefault("authority", {})["enabled"] = authority.lower() in TRUE_VALUES

    log_level = os.getenv("QUORUM_LOG_LEVEL")
    if log_level:
        data.setdefault("logging", {})["level"] = log_level.upper()

    return data


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def server(self) -> Dict[str, Any]:
        return self.raw.get("server", {})

    @property
    def host(self) -> str:
        return str(self.server.get("host", "127.0.0.1"))

    @property
    def port(self) -> int:
        return int(self.server.get("port", 8099))

    @property
    def data_dir(self) -> Path:
        default = str(Path.home() / ".quorum")
        return Path(self.raw.get("data_dir", default)).expanduser()

    @property
    def providers(self) -> List[Dict[str, Any]]:
        return list(self.raw.get("providers", []) or [])

    @property
    def consensus(self) -> Dict[str, Any]:
        return self.raw.get("consensus", {}) or {}

    @property
    def orchestration(self) -> Dict[str, Any]:
        return self.raw.get("orchestration", {}) or {}

    @property
    def run_timeout_seconds(self) -> float:
        """Ceiling for one valuation's provider stages. Default 90 seconds."""
        return float(self.orchestration.get("run_timeout_seconds", 90))

    @property
    def tiebreak_enabled(self) -> bool:
        return bool(self.orchestration.get("tiebreak_enabled", True))

    @property
    def vote_weights(self) -> Dict[str, float]:
        keys = ("market_lookup_bonus", "tiebreak_weight_factor", "tiebreak_confidence_factor")
        return {k: float(self.orchestration[k]) for k in keys if k in self.orchestration}

    @property
    def authority(self) -> Dict[str, Any]:
        return self.raw.get("authority", {}) or {}

    @property
    def authority_enabled(self) -> bool:
        return bool(self.authority.get("enabled", True))

    @property
    def category_table_path(self) -> Path | None:
        path = (self.raw.get("categories", {}) or {}).get("table_path")
        return Path(path).expanduser() if path else None

    @property
    def persist_runs(self) -> bool:
        return bool((self.raw.get("store", {}) or {}).get("enabled", True))

    @property
    def log_level(self) -> str:
        return str((self.raw.get("logging", {}) or {}).get("level", "INFO")).upper()


def get_config() -> Config:
    return Config(load_config())
