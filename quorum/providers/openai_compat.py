"""Client for OpenAI-compatible chat completion APIs.

OpenAI, xAI, Groq, Mistral, DeepSeek and Perplexity all accept the same
request shape; only the base URL, model and credential differ.
"""
from __future__ import annotations

import time
from typing import Any, Dict, List

import httpx

from quorum.providers.base import ProviderError, data_url
from quorum.providers.parsing import parse_analysis
from quorum.votes import AnalysisResult


SYSTEM_PROMPT = (
    "You are an expert appraiser. Respond with a single JSON object containing "
    "itemName, estimatedValue, decision (BUY or SELL), valuation_factors, "
    "summary_reasoning, confidence (0-1) and category."
)


class OpenAICompatClient:
    def __init__(
        self,
        provider_id: str,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.1,
        max_tokens: int = 800,
        json_mode: bool = True,
    ) -> None:
        self.provider_id = provider_id
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.json_mode = json_mode

    def _payload(self, images: List[bytes], prompt: str) -> Dict[str, Any]:
        if images:
            content: Any = [{"type": "text", "text": prompt}]
            content.extend({"type": "image_url", "image_url": {"url": data_url(img)}} for img in images)
        else:
            content = prompt
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def analyze(self, images: List[bytes], prompt: str, timeout: float) -> AnalysisResult:
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=self._payload(images, prompt),
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.TimeoutException:
            raise ProviderError(self.provider_id, f"timeout after {timeout}s")
        except httpx.HTTPError as exc:
            raise ProviderError(self.provider_id, str(exc)) from exc
        duration_ms = (time.perf_counter() - start) * 1000

        if response.status_code != 200:
            raise ProviderError(self.provider_id, f"HTTP {response.status_code}: {response.text[:500]}")

        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(self.provider_id, "No choices in response")
        text = (choices[0].get("message") or {}).get("content") or ""
        return parse_analysis(text, latency_ms=duration_ms)
