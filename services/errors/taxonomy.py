# services/errors/taxonomy.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple


class ErrorCode(str, Enum):
    MISSING_USER_ID = "missing_user_id"
    MISSING_IMAGE = "missing_image"
    INVALID_IMAGE = "invalid_image"
    FILE_TOO_LARGE = "file_too_large"
    MAINTENANCE_MODE = "maintenance_mode"
    LIMIT_REACHED = "limit_reached"
    NO_TEXT_DETECTED = "no_text_detected"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    PROCESSING_FAILED = "processing_failed"
    NETWORK_ERROR = "network_error"
    JOB_NOT_FOUND = "job_not_found"
    INVALID_CURSOR = "invalid_cursor"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SERVER_ERROR = "server_error"


RETRYABLE_CODES = frozenset({
    ErrorCode.PROCESSING_FAILED,
    ErrorCode.NETWORK_ERROR,
    ErrorCode.MAINTENANCE_MODE,
})


class CapabilityError(RuntimeError):
    """Base for failures raised by the preprocess / OCR / classify capabilities."""


class NoTextDetectedError(CapabilityError):
    def __init__(self, message: str = "No text detected in image") -> None:
        super().__init__(message)


class InappropriateContentError(CapabilityError):
    def __init__(self, message: str = "Content not suitable for processing") -> None:
        super().__init__(message)


class ImageProcessingError(CapabilityError):
    pass


class ClassificationError(CapabilityError):
    pass


@dataclass(frozen=True)
class JobError:
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# Evaluated top to bottom; first substring hit wins.
RULES: List[Tuple[str, ErrorCode]] = [
    ("not suitable for processing", ErrorCode.INAPPROPRIATE_CONTENT),
    ("inappropriate", ErrorCode.INAPPROPRIATE_CONTENT),
    ("content policy", ErrorCode.INAPPROPRIATE_CONTENT),
    ("content_policy", ErrorCode.INAPPROPRIATE_CONTENT),
    ("safety", ErrorCode.INAPPROPRIATE_CONTENT),
    ("no text detected", ErrorCode.NO_TEXT_DETECTED),
    ("no text found", ErrorCode.NO_TEXT_DETECTED),
]

_MAX_MESSAGE_LEN = 300


def classify_message(message: str) -> ErrorCode:
    m = (message or "").lower()
    for pattern, code in RULES:
        if pattern in m:
            return code
    return ErrorCode.PROCESSING_FAILED


def normalize(exc: BaseException) -> JobError:
    """
    Map any failure raised while processing a job to a stable {code, message}.

    Typed capability errors map directly; everything else goes through the
    RULES text match and falls back to processing_failed.
    """
    message = str(exc).strip() or exc.__class__.__name__

    if isinstance(exc, InappropriateContentError):
        code = ErrorCode.INAPPROPRIATE_CONTENT
    elif isinstance(exc, NoTextDetectedError):
        code = ErrorCode.NO_TEXT_DETECTED
    else:
        code = classify_message(message)

    return JobError(code=code.value, message=message[:_MAX_MESSAGE_LEN])


def is_retryable(code: str) -> bool:
    try:
        return ErrorCode(code) in RETRYABLE_CODES
    except ValueError:
        return False
