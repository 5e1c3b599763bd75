from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class OcrResult:
    text: str
    confidence: float = 0.0


class TextExtractor(Protocol):
    """
    OCR capability. Implementations raise NoTextDetectedError when the image
    holds no readable text, and InappropriateContentError when they reject it.
    """

    async def extract_text(self, image: bytes) -> OcrResult: ...
