"""Tests for quorum.providers.gemini module."""
import asyncio
import json
import os
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from quorum.providers.base import ProviderError
from quorum.providers.gemini import GeminiClient
from quorum.votes import Decision


ANSWER = json.dumps({
    "itemName": "Nintendo 64 console",
    "estimatedValue": 95,
    "decision": "BUY",
    "confidence": 0.75,
})


def _mock_client(mock_client_cls, status_code=200, payload=None, text=""):
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.text = text
    mock_response.json.return_value = payload
    mock_client = MagicMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.post = AsyncMock(return_value=mock_response)
    mock_client_cls.return_value = mock_client
    return mock_client


class TestGeminiClient(unittest.TestCase):
    def test_no_api_key_raises(self):
        client = GeminiClient(api_key="")
        with self.assertRaises(ProviderError) as ctx:
            asyncio.run(client.analyze([], "Hello", 5.0))
        self.assertIn("no API key", ctx.exception.message)

    def test_environment_key_is_not_picked_up(self):
        with patch.dict(os.environ, {"GEMINI_API_KEY": "env-key"}, clear=True):
            client = GeminiClient(api_key=None)
        self.assertEqual(client.api_key, "")
        self.assertFalse(client.available)

    def test_available_property(self):
        client = GeminiClient(api_key="test-key")
        self.assertTrue(client.available)

        client_no_key = GeminiClient(api_key="")
        self.assertFalse(client_no_key.available)

    @patch("quorum.providers.gemini.httpx.AsyncClient")
    def test_successful_analysis(self, mock_client_cls):
        mock_client = _mock_client(mock_client_cls, payload={
            "candidates": [{
                "content": {
                    "parts": [{"text": ANSWER}]
                }
            }],
        })

        client = GeminiClient(api_key="test-key")
        result = asyncio.run(client.analyze([b"\x89PNG\r\n\x1a\nxx"], "Value this", 10.0))

        self.assertEqual(result.item_name, "Nintendo 64 console")
        self.assertEqual(result.estimated_value, 95.0)
        self.assertEqual(result.decision, Decision.BUY)
        self.assertTrue(result.well_formed)

        url = mock_client.post.call_args[0][0]
        self.assertTrue(url.endswith("/models/gemini-2.0-flash:generateContent"))
        kwargs = mock_client.post.call_args[1]
        self.assertEqual(kwargs["headers"]["x-goog-api-key"], "test-key")
        parts = kwargs["json"]["contents"][0]["parts"]
        self.assertEqual(parts[0]["text"], "Value this")
        self.assertEqual(parts[1]["inline_data"]["mime_type"], "image/png")

    @patch("quorum.providers.gemini.httpx.AsyncClient")
    def test_http_error(self, mock_client_cls):
        _mock_client(mock_client_cls, status_code=401, text="Unauthorized")

        client = GeminiClient(api_key="bad-key")
        with self.assertRaises(ProviderError) as ctx:
            asyncio.run(client.analyze([], "test", 5.0))
        self.assertIn("401", ctx.exception.message)

    @patch("quorum.providers.gemini.httpx.AsyncClient")
    def test_no_candidates(self, mock_client_cls):
        _mock_client(mock_client_cls, payload={"candidates": []})

        client = GeminiClient(api_key="test-key")
        with self.assertRaises(ProviderError) as ctx:
            asyncio.run(client.analyze([], "test", 5.0))
        self.assertIn("No candidates", ctx.exception.message)

    @patch("quorum.providers.gemini.httpx.AsyncClient")
    def test_timeout(self, mock_client_cls):
        mock_client = _mock_client(mock_client_cls)
        mock_client.post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))

        client = GeminiClient(api_key="test-key")
        with self.assertRaises(ProviderError) as ctx:
            asyncio.run(client.analyze([], "test", 2.0))
        self.assertIn("timeout", ctx.exception.message)

    def test_model_map_contains_expected_models(self):
        self.assertIn("2.5-flash", GeminiClient.MODEL_MAP)
        self.assertIn("2.5-pro", GeminiClient.MODEL_MAP)
        self.assertIn("2.0-flash", GeminiClient.MODEL_MAP)


if __name__ == "__main__":
    unittest.main()
