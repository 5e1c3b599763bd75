# services/preprocessing/image.py
import base64
from io import BytesIO
from pathlib import Path
from typing import Any, Dict

import cv2
import numpy as np
import yaml
from PIL import Image, ImageOps, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from services.errors.taxonomy import ImageProcessingError

# Find project root (3 levels up from services/preprocessing/image.py)
PROJECT_ROOT = Path(__file__).resolve().parents[2]
CONFIG_PATH = PROJECT_ROOT / "config" / "thresholds.yaml"


def _load_thresholds(path: Path = CONFIG_PATH) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


_CFG = _load_thresholds()
_PRE = _CFG.get("preprocess", {})
_THUMB = _CFG.get("thumbnail", {})

# DEFAULTS
MAX_DIM = int(_PRE.get("max_dimension", 1920))
MAX_BYTES = int(_PRE.get("max_bytes", 2048 * 1024))
START_QUALITY = int(_PRE.get("start_quality", 85))
MIN_QUALITY = int(_PRE.get("min_quality", 20))
QUALITY_STEP = int(_PRE.get("quality_step", 5))
THUMB_DIM = int(_THUMB.get("max_dimension", 512))
THUMB_QUALITY = int(_THUMB.get("quality", 95))
ALLOWED_FORMATS = tuple(f.upper() for f in _CFG.get("allowed_formats", ["JPEG", "PNG", "WEBP"]))


class InvalidImageError(ValueError):
    """Upload is not a decodable image in a supported format. Non-retriable."""


def validate_image_format(contents: bytes) -> str:
    """Returns the detected format name (e.g. 'JPEG')."""
    if not contents:
        raise InvalidImageError("Empty image")
    try:
        with Image.open(BytesIO(contents)) as img:
            fmt = (img.format or "").upper()
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, EOFError) as e:
        raise InvalidImageError(f"Invalid image file: {e}") from e

    if fmt not in ALLOWED_FORMATS:
        raise InvalidImageError(f"Unsupported image format: {fmt or 'unknown'}")
    return fmt


def decode_image_with_exif(contents: bytes) -> np.ndarray:
    img_pil = Image.open(BytesIO(contents))
    img_pil = ImageOps.exif_transpose(img_pil)
    img_rgb = np.array(img_pil.convert("RGB"))
    return cv2.cvtColor(img_rgb, cv2.COLOR_RGB2BGR)


def _decode(contents: bytes) -> np.ndarray:
    try:
        img = decode_image_with_exif(contents)
    except Exception:
        img = cv2.imdecode(np.frombuffer(contents, np.uint8), cv2.IMREAD_COLOR)
    if img is None or img.size == 0:
        raise ImageProcessingError("Failed to decode image")
    return img


def resize_if_huge(img: np.ndarray, max_dim: int = MAX_DIM) -> np.ndarray:
    h, w = img.shape[:2]
    if max(h, w) > max_dim:
        scale = max_dim / max(h, w)
        return cv2.resize(img, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA)
    return img


def encode_jpeg(img: np.ndarray, quality: int) -> bytes:
    ok, buf = cv2.imencode(".jpg", img, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality), int(cv2.IMWRITE_JPEG_PROGRESSIVE), 1])
    if not ok:
        raise ImageProcessingError("Failed to encode JPEG")
    return buf.tobytes()


def compress_for_ocr(contents: bytes, max_dim: int = MAX_DIM, max_bytes: int = MAX_BYTES) -> bytes:
    """
    Downscale to max_dim and re-encode as JPEG, lowering quality in steps
    until the result fits max_bytes or MIN_QUALITY is reached.
    """
    img = resize_if_huge(_decode(contents), max_dim)

    quality = START_QUALITY
    out = encode_jpeg(img, quality)
    while len(out) > max_bytes and quality > MIN_QUALITY:
        quality = max(quality - QUALITY_STEP, MIN_QUALITY)
        out = encode_jpeg(img, quality)
    return out


def make_thumbnail(contents: bytes, max_dim: int = THUMB_DIM, quality: int = THUMB_QUALITY) -> str:
    """Small JPEG preview, base64-encoded."""
    img = resize_if_huge(_decode(contents), max_dim)
    return base64.b64encode(encode_jpeg(img, quality)).decode("ascii")


class ImageProcessor:
    """Async facade over the blocking OpenCV/PIL work."""

    def __init__(self, *, max_dim: int = MAX_DIM, max_bytes: int = MAX_BYTES, thumb_dim: int = THUMB_DIM) -> None:
        self.max_dim = max_dim
        self.max_bytes = max_bytes
        self.thumb_dim = thumb_dim

    async def preprocess(self, contents: bytes) -> bytes:
        try:
            return await run_in_threadpool(compress_for_ocr, contents, self.max_dim, self.max_bytes)
        except ImageProcessingError:
            raise
        except Exception as e:
            raise ImageProcessingError(f"Failed to compress image: {e}") from e

    async def make_thumbnail(self, contents: bytes) -> str:
        return await run_in_threadpool(make_thumbnail, contents, self.thumb_dim)
