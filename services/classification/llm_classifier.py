# services/classification/llm_classifier.py
from __future__ import annotations

import json
import os
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional

from starlette.concurrency import run_in_threadpool

from services.errors.taxonomy import ClassificationError


DEFAULT_OLLAMA_BASE_URL = (os.getenv("PICDO_OLLAMA_URL") or "http://host.docker.internal:11434").strip()
DEFAULT_OLLAMA_MODEL = (os.getenv("PICDO_OLLAMA_MODEL") or "llama3.2:3b").strip()
DEFAULT_TIMEOUT_S = float((os.getenv("PICDO_OLLAMA_TIMEOUT_S") or "60").strip() or "60")

OLLAMA_GENERATE_PATH = "/api/generate"
OLLAMA_FORMAT_JSON = "json"
TEMPERATURE = 0.05
MAX_TOKENS = 1000
MAX_INPUT_CHARS = 8000

SECTIONS = ("event", "expense", "contact", "address", "note", "document")

SYSTEM_PROMPT = (
    "You turn OCR text taken from a photo or screenshot into one actionable item.\n"
    "The text may contain browser chrome, tabs, usernames and other UI noise: ignore it "
    "and work from the main content only.\n"
    "Pick exactly one type: event, expense, contact, address, note, document.\n"
    "  names + phone numbers -> contact; amounts + merchant -> expense;\n"
    "  date/time + place -> event; street address or place name -> address;\n"
    "  personal lists, quotes, recipes -> note; formal or official text -> document.\n"
    "Fill only the section for the chosen type; leave the others as empty objects.\n"
    "Copy numbers, dates and phone numbers exactly as they appear. Never invent data.\n"
    "Dates are YYYY-MM-DD, times are 24h HH:mm.\n"
    "The title is short (under 40 characters) and uses names or places from the text.\n"
    "Return ONLY a JSON object with this shape, no markdown, no commentary:\n"
    "{\n"
    '  "type": "event|expense|contact|address|note|document",\n'
    '  "title": "string",\n'
    '  "summary": "string",\n'
    '  "confidence": 0.0,\n'
    '  "event": {"date": "", "time": "", "location": "", "url": ""},\n'
    '  "expense": {"amount": 0, "currency": "", "merchant": "", "date": ""},\n'
    '  "contact": {"name": "", "phone": ""},\n'
    '  "address": {"full": "", "mapsQuery": ""},\n'
    '  "note": {"content": "", "category": ""},\n'
    '  "document": {"title": "", "content": "", "category": ""}\n'
    "}\n"
)

ARABIC_HINT = (
    "The text may be Arabic, English or mixed. Write title and summary in the dominant "
    "language of the content; keep JSON keys in English; convert Eastern Arabic numerals "
    "to 0-9 in dates and amounts.\n"
)


@dataclass(frozen=True)
class LLMClassifierConfig:
    base_url: str = DEFAULT_OLLAMA_BASE_URL
    model: str = DEFAULT_OLLAMA_MODEL
    timeout_s: float = DEFAULT_TIMEOUT_S


class LLMClassifier:
    """
    Thin Ollama wrapper for OCR-text classification.
    Contract:
      - Input: OCR text + UI language ("en" | "ar")
      - Output: parsed JSON object with every type section present
      - Raises ClassificationError on any transport or payload problem
    """

    def __init__(self, config: Optional[LLMClassifierConfig] = None) -> None:
        self.config = config or LLMClassifierConfig()

    async def classify(self, text: str, lang: str) -> Dict[str, Any]:
        return await run_in_threadpool(self.classify_sync, text, lang)

    def classify_sync(self, text: str, lang: str) -> Dict[str, Any]:
        if not isinstance(text, str) or not text.strip():
            raise ClassificationError("Classification input text is empty")

        payload = {
            "model": self.config.model,
            "system": self._build_system(lang),
            "prompt": self._build_prompt(text),
            "stream": False,
            "format": OLLAMA_FORMAT_JSON,
            "options": {"temperature": TEMPERATURE, "num_predict": MAX_TOKENS},
        }

        resp = self._post_json(self._build_url(OLLAMA_GENERATE_PATH), payload, timeout_s=self.config.timeout_s)

        if resp.get("done") is not True:
            raise ClassificationError(f"Ollama generation not done: done={resp.get('done')}")

        raw = resp.get("response")
        if not isinstance(raw, str) or not raw.strip():
            raise ClassificationError("Ollama returned empty 'response'")

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ClassificationError(f"Ollama response was not valid JSON: {e}") from e

        if not isinstance(parsed, dict):
            raise ClassificationError("Ollama JSON was not an object")

        if isinstance(parsed.get("type"), str):
            parsed["type"] = parsed["type"].strip().lower()
        for section in SECTIONS:
            if not isinstance(parsed.get(section), dict):
                parsed[section] = {}
        return parsed

    def _build_url(self, path: str) -> str:
        base = (self.config.base_url or "").strip()
        if not base:
            raise ClassificationError("Missing Ollama base_url (PICDO_OLLAMA_URL)")
        return base.rstrip("/") + path

    def _post_json(self, url: str, payload: Dict[str, Any], *, timeout_s: float) -> Dict[str, Any]:
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(
            url=url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=timeout_s) as r:
                body = r.read().decode("utf-8", errors="replace")
        except (urllib.error.HTTPError, urllib.error.URLError, TimeoutError) as e:
            raise ClassificationError(f"Ollama request failed: {e}") from e

        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as e:
            raise ClassificationError(f"Ollama HTTP 200 but body was not JSON: {e}") from e

        if not isinstance(parsed, dict):
            raise ClassificationError("Ollama HTTP 200 but JSON was not an object")

        err = parsed.get("error")
        if isinstance(err, str) and err.strip():
            raise ClassificationError(f"Ollama error: {err.strip()}")

        if "response" not in parsed and "done" not in parsed:
            raise ClassificationError(f"Ollama unexpected response keys: {list(parsed.keys())}")

        return parsed

    @staticmethod
    def _build_system(lang: str) -> str:
        return SYSTEM_PROMPT + (ARABIC_HINT if lang == "ar" else "")

    @staticmethod
    def _build_prompt(text: str) -> str:
        clipped = text.strip()[:MAX_INPUT_CHARS]
        return (
            "Here is the OCR text. Classify it according to the instructions.\n\n"
            f"{clipped}\n\n"
            "Return ONLY the JSON object now."
        )
