"""Minimal Ollama client for local vision models."""
from __future__ import annotations

from typing import Any, Dict, List
import httpx
import time

from quorum.providers.base import ProviderError, encode_image
from quorum.providers.parsing import parse_analysis
from quorum.votes import AnalysisResult


class OllamaClient:
    def __init__(
        self,
        provider_id: str = "ollama",
        model: str = "llava",
        base_url: str = "http://localhost:11434",
        temperature: float = 0.1,
    ) -> None:
        self.provider_id = provider_id
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature

    async def analyze(self, images: List[bytes], prompt: str, timeout: float) -> AnalysisResult:
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {"temperature": self.temperature},
        }
        if images:
            payload["images"] = [encode_image(img) for img in images]

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(f"{self.base_url}/api/generate", json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException:
            raise ProviderError(self.provider_id, f"timeout after {timeout}s")
        except httpx.HTTPError as exc:
            raise ProviderError(self.provider_id, str(exc)) from exc
        duration = (time.perf_counter() - start) * 1000
        return parse_analysis(data.get("response", ""), latency_ms=duration)
