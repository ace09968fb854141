"""Anthropic Messages API client."""
from __future__ import annotations

import time
from typing import Any, Dict, List

import httpx

from quorum.providers.base import ProviderError, encode_image, image_mime_type
from quorum.providers.openai_compat import SYSTEM_PROMPT
from quorum.providers.parsing import parse_analysis
from quorum.votes import AnalysisResult

API_VERSION = "2023-06-01"


class AnthropicClient:
    def __init__(
        self,
        provider_id: str,
        api_key: str,
        model: str,
        base_url: str = "https://api.anthropic.com/v1",
        max_tokens: int = 800,
    ) -> None:
        self.provider_id = provider_id
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_tokens = max_tokens

    def _payload(self, images: List[bytes], prompt: str) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": image_mime_type(img), "data": encode_image(img)},
            }
            for img in images
        ]
        content.append({"type": "text", "text": prompt})
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": content}],
        }

    async def analyze(self, images: List[bytes], prompt: str, timeout: float) -> AnalysisResult:
        headers = {"x-api-key": self.api_key, "anthropic-version": API_VERSION}
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    f"{self.base_url}/messages",
                    json=self._payload(images, prompt),
                    headers=headers,
                )
        except httpx.TimeoutException:
            raise ProviderError(self.provider_id, f"timeout after {timeout}s")
        except httpx.HTTPError as exc:
            raise ProviderError(self.provider_id, str(exc)) from exc
        duration_ms = (time.perf_counter() - start) * 1000

        if response.status_code != 200:
            raise ProviderError(self.provider_id, f"HTTP {response.status_code}: {response.text[:500]}")

        blocks = response.json().get("content") or []
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        if not text:
            raise ProviderError(self.provider_id, "Empty response")
        return parse_analysis(text, latency_ms=duration_ms)
