from __future__ import annotations

from typing import Any, Dict, Protocol


class Classifier(Protocol):
    """
    Semantic classification capability.

    Returns a dict shaped like
    {type, title, summary, confidence, fields?, <type>: {...}}
    and raises ClassificationError (or InappropriateContentError) on failure.
    """

    async def classify(self, text: str, lang: str) -> Dict[str, Any]: ...
