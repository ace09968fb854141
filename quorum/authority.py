"""Authority lookups: one reference record per run, when the category has a source."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib.parse import quote
import asyncio
import logging

import httpx

from quorum.categories import CategoryTable, load_table
from quorum.votes import AuthorityRecord

logger = logging.getLogger(__name__)


class AuthorityFetcher(Protocol):
    async def fetch(self, category: str, item_key: str) -> Optional[AuthorityRecord]:
        ...


def _dig(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
        if current is None:
            return None
    return current


@dataclass
class JsonEndpointFetcher:
    """Fetch a reference record from a JSON HTTP endpoint.

    ``url`` is a template with ``{item_key}`` and ``{category}`` placeholders.
    ``value_field`` and ``verified_field`` are dotted paths into the response;
    list indexes are allowed (``results.0.price``). Without a ``verified_field``
    any record with a value counts as verified.
    """
    name: str
    url: str
    value_field: str = "value"
    verified_field: str | None = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 8.0

    @classmethod
    def from_config(cls, name: str, config: Mapping[str, Any]) -> "JsonEndpointFetcher":
        if not config.get("url"):
            raise ValueError(f"Authority fetcher {name} has no url")
        return cls(
            name=name,
            url=str(config["url"]),
            value_field=str(config.get("value_field", "value")),
            verified_field=config.get("verified_field"),
            headers=dict(config.get("headers") or {}),
            timeout_seconds=float(config.get("timeout_seconds", 8.0)),
        )

    async def fetch(self, category: str, item_key: str) -> Optional[AuthorityRecord]:
        url = self.url.format(item_key=quote(item_key), category=quote(category))
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            resp = await client.get(url, headers=self.headers)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        data = resp.json()

        raw_value = _dig(data, self.value_field)
        try:
            point_value = float(raw_value) if raw_value is not None else None
        except (TypeError, ValueError):
            point_value = None
        if point_value is not None and point_value < 0:
            point_value = None
        if self.verified_field:
            verified = bool(_dig(data, self.verified_field))
        else:
            verified = point_value is not None
        if not verified and point_value is None:
            return None
        return AuthorityRecord(verified=verified, point_value=point_value, source=self.name, raw=data)


class AuthorityBlender:
    def __init__(
        self,
        fetchers: Mapping[str, AuthorityFetcher] | None = None,
        table: CategoryTable | None = None,
        timeout: float = 8.0,
    ) -> None:
        self.fetchers: Dict[str, AuthorityFetcher] = dict(fetchers or {})
        self.table = table or load_table()
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Mapping[str, Any], table: CategoryTable | None = None) -> "AuthorityBlender":
        fetchers: Dict[str, AuthorityFetcher] = {}
        for name, entry in (config.get("fetchers") or {}).items():
            fetchers[str(name)] = JsonEndpointFetcher.from_config(str(name), entry or {})
        return cls(fetchers, table=table, timeout=float(config.get("timeout_seconds", 8.0)))

    def source_for(self, category: str) -> Optional[str]:
        for source in self.table.authority_sources(category):
            if source in self.fetchers:
                return source
        return None

    async def maybe_enrich(self, category: str, item_key: str) -> Optional[AuthorityRecord]:
        if not category or not item_key or not item_key.strip():
            return None
        source = self.source_for(category)
        if source is None:
            logger.debug(f"No authority source configured for category {category}")
            return None
        try:
            record = await asyncio.wait_for(
                self.fetchers[source].fetch(category, item_key.strip()),
                self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Authority lookup via {source} timed out after {self.timeout}s")
            return None
        except Exception as exc:
            logger.warning(f"Authority lookup via {source} failed: {exc}")
            return None
        if record is None:
            logger.info(f"Authority {source}: no match for {item_key!r}")
            return None
        logger.info(
            f"Authority {source}: verified={record.verified} value={record.point_value}"
        )
        return record
