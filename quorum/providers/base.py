"""Provider client contract shared by all model adapters."""
from __future__ import annotations

from typing import List, Protocol, runtime_checkable
import base64

from quorum.votes import AnalysisResult


class ProviderError(Exception):
    """Raised by a provider client when a call cannot produce an analysis."""

    def __init__(self, provider_id: str, message: str) -> None:
        super().__init__(f"{provider_id}: {message}")
        self.provider_id = provider_id
        self.message = message


@runtime_checkable
class ProviderClient(Protocol):
    async def analyze(self, images: List[bytes], prompt: str, timeout: float) -> AnalysisResult:
        ...


_MAGIC = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


def image_mime_type(data: bytes) -> str:
    for magic, mime in _MAGIC:
        if data.startswith(magic):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def encode_image(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def data_url(data: bytes) -> str:
    return f"data:{image_mime_type(data)};base64,{encode_image(data)}"
