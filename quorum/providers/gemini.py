"""Native Gemini API client."""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List

import httpx

from quorum.providers.base import ProviderError, encode_image, image_mime_type
from quorum.providers.parsing import parse_analysis
from quorum.votes import AnalysisResult

logger = logging.getLogger(__name__)


class GeminiClient:
    """Gemini generateContent client using httpx."""

    MODEL_MAP = {
        "2.5-flash": "gemini-2.5-flash",
        "2.5-pro": "gemini-2.5-pro",
        "2.0-flash": "gemini-2.0-flash",
        "1.5-flash": "gemini-1.5-flash",
        "1.5-pro": "gemini-1.5-pro",
    }

    def __init__(
        self,
        provider_id: str = "google",
        api_key: str | None = None,
        model: str = "2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        temperature: float = 0.1,
    ) -> None:
        self.provider_id = provider_id
        self.api_key = api_key or ""
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _body(self, images: List[bytes], prompt: str) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        for image in images:
            parts.append({"inline_data": {"mime_type": image_mime_type(image), "data": encode_image(image)}})
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": self.temperature,
                "responseMimeType": "application/json",
            },
        }

    async def analyze(self, images: List[bytes], prompt: str, timeout: float) -> AnalysisResult:
        if not self.api_key:
            raise ProviderError(self.provider_id, "no API key configured")

        model_id = self.MODEL_MAP.get(self.model, self.model)
        url = f"{self.base_url}/models/{model_id}:generateContent"

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    url,
                    json=self._body(images, prompt),
                    headers={"x-goog-api-key": self.api_key},
                )
        except httpx.TimeoutException:
            raise ProviderError(self.provider_id, f"Gemini API timeout after {timeout}s")
        except httpx.HTTPError as exc:
            raise ProviderError(self.provider_id, str(exc)) from exc
        duration_ms = (time.perf_counter() - start) * 1000

        if response.status_code != 200:
            raise ProviderError(self.provider_id, f"HTTP {response.status_code}: {response.text[:500]}")

        data = response.json()
        candidates = data.get("candidates", [])
        if not candidates:
            raise ProviderError(self.provider_id, "No candidates in response")
        parts = candidates[0].get("content", {}).get("parts", [])
        text = "".join(p.get("text", "") for p in parts)
        return parse_analysis(text, latency_ms=duration_ms)
