import cv2
import numpy as np
from starlette.concurrency import run_in_threadpool
from typing import List, Tuple

from services.errors.taxonomy import ImageProcessingError, NoTextDetectedError
from services.ocr.base import OcrResult


class PaddleTextExtractor:
    """Full-image OCR. Lines are returned top-to-bottom, left-to-right."""

    def __init__(self, lang="en", min_line_conf: float = 0.30, engine=None):
        if engine is None:
            from paddleocr import PaddleOCR

            engine = PaddleOCR(use_angle_cls=True, lang=lang, show_log=False)
        self.ocr = engine
        self.min_line_conf = float(min_line_conf)

    def _preprocess(self, img: np.ndarray) -> np.ndarray:
        h, w = img.shape[:2]
        if h < 400 or w < 400:
            img = cv2.resize(img, None, fx=2.0, fy=2.0, interpolation=cv2.INTER_CUBIC)
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        enhanced = clahe.apply(gray)
        return cv2.cvtColor(enhanced, cv2.COLOR_GRAY2BGR)

    def _lines(self, img: np.ndarray) -> List[Tuple[float, float, str, float]]:
        ocr_out = self.ocr.ocr(self._preprocess(img), cls=True)
        lines = []
        if ocr_out and ocr_out[0]:
            for box, (text, conf) in ocr_out[0]:
                text = (text or "").strip()
                if not text or float(conf) < self.min_line_conf:
                    continue
                top = min(p[1] for p in box)
                left = min(p[0] for p in box)
                lines.append((top, left, text, float(conf)))
        # rough reading order: bucket rows by ~10px
        lines.sort(key=lambda r: (round(r[0] / 10), r[1]))
        return lines

    def extract_sync(self, image: bytes) -> OcrResult:
        img = cv2.imdecode(np.frombuffer(image, np.uint8), cv2.IMREAD_COLOR)
        if img is None:
            raise ImageProcessingError("OCR failed: could not decode image")

        lines = self._lines(img)
        if not lines:
            raise NoTextDetectedError()

        text = "\n".join(r[2] for r in lines)
        conf = sum(r[3] for r in lines) / len(lines)
        return OcrResult(text=text, confidence=conf)

    async def extract_text(self, image: bytes) -> OcrResult:
        return await run_in_threadpool(self.extract_sync, image)
