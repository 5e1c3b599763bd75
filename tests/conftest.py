from __future__ import annotations

from io import BytesIO
from typing import Any, Callable, Dict, List, Optional

import pytest
from PIL import Image

from services.errors.taxonomy import ImageProcessingError
from services.jobs.store import LocalJobStore
from services.ocr.base import OcrResult
from services.pipeline import JobOrchestrator


EVENT_CLASSIFICATION: Dict[str, Any] = {
    "type": "event",
    "title": "Meeting with Sarah",
    "summary": "Meeting with Sarah – 2025-01-10 15:00",
    "confidence": 0.92,
    "event": {"date": "2025-01-10", "time": "15:00", "location": "Cairo", "url": ""},
    "expense": {},
    "contact": {},
    "address": {},
    "note": {},
    "document": {},
}


class FakeImageProcessor:
    def __init__(self, *, fail_preprocess: bool = False, fail_thumb: bool = False) -> None:
        self.fail_preprocess = fail_preprocess
        self.fail_thumb = fail_thumb

    async def preprocess(self, contents: bytes) -> bytes:
        if self.fail_preprocess:
            raise ImageProcessingError("Failed to compress image")
        return contents

    async def make_thumbnail(self, contents: bytes) -> str:
        if self.fail_thumb:
            raise ImageProcessingError("Failed to create thumbnail")
        return "dGh1bWI="


class FakeOCR:
    def __init__(self, text: str = "", exc: Optional[BaseException] = None) -> None:
        self.text = text
        self.exc = exc
        self.calls = 0

    async def extract_text(self, image: bytes) -> OcrResult:
        self.calls += 1
        if self.exc is not None:
            raise self.exc
        return OcrResult(text=self.text, confidence=0.9)


class FakeClassifier:
    def __init__(self, result: Any = None, exc: Optional[BaseException] = None) -> None:
        self.result = result
        self.exc = exc
        self.calls: List[tuple] = []

    async def classify(self, text: str, lang: str) -> Dict[str, Any]:
        self.calls.append((text, lang))
        if self.exc is not None:
            raise self.exc
        return self.result


class RecordingStore(LocalJobStore):
    """LocalJobStore that remembers every status it wrote, per job."""

    def __init__(self, root_dir: str) -> None:
        super().__init__(root_dir)
        self.history: Dict[str, List[str]] = {}

    def create(self, job):
        out = super().create(job)
        self.history.setdefault(job.job_id, []).append(job.status.value)
        return out

    def transition(self, *, job_id, owner_id, expected, target, changes=None):
        out = super().transition(job_id=job_id, owner_id=owner_id, expected=expected, target=target, changes=changes)
        self.history.setdefault(job_id, []).append(target.value)
        return out


def _image_bytes(fmt: str = "PNG", size=(64, 48), color="white") -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    return _image_bytes


@pytest.fixture
def png_bytes() -> bytes:
    return _image_bytes("PNG")


@pytest.fixture
def job_store(tmp_path) -> RecordingStore:
    return RecordingStore(root_dir=str(tmp_path / "store"))


@pytest.fixture
def build_orchestrator(job_store) -> Callable[..., tuple]:
    """
    Returns a factory: build_orchestrator(ocr_text=..., classification=..., ...)
    -> (orchestrator, fake_ocr, fake_classifier)
    """

    def factory(
        *,
        ocr_text: str = "Meeting with Sarah at 3pm on 2025-01-10, location: Cairo",
        ocr_exc: Optional[BaseException] = None,
        classification: Any = None,
        classify_exc: Optional[BaseException] = None,
        fail_preprocess: bool = False,
        fail_thumb: bool = False,
    ):
        ocr = FakeOCR(text=ocr_text, exc=ocr_exc)
        clf = FakeClassifier(
            result=EVENT_CLASSIFICATION if classification is None else classification,
            exc=classify_exc,
        )
        orch = JobOrchestrator(
            store=job_store,
            image_processor=FakeImageProcessor(fail_preprocess=fail_preprocess, fail_thumb=fail_thumb),
            ocr=ocr,
            classifier=clf,
        )
        return orch, ocr, clf

    return factory
