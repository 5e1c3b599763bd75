from __future__ import annotations

from typing import Optional

SUPPORTED_UI_LANGS = ("en", "ar")


def detect_ui_lang(header: Optional[str]) -> str:
    """Map an Accept-Language header to one of the supported UI languages."""
    if not header:
        return "en"

    lower = header.lower()
    first = lower.split(",")[0].strip()
    if first.startswith("ar"):
        return "ar"

    # "ar" may appear later with a lower q-value
    for part in lower.split(","):
        if part.strip().split(";")[0].startswith("ar"):
            return "ar"

    return "en"
