"""Job and user records as persisted by the job store."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class JobStatus(str, Enum):
    RECEIVED = "received"
    OCR_IN_PROGRESS = "ocr_in_progress"
    OCR_DONE = "ocr_done"
    AI_IN_PROGRESS = "ai_in_progress"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.READY, JobStatus.FAILED)


# The only forward path; FAILED is reachable from any non-terminal status.
STATUS_PATH = (
    JobStatus.RECEIVED,
    JobStatus.OCR_IN_PROGRESS,
    JobStatus.OCR_DONE,
    JobStatus.AI_IN_PROGRESS,
    JobStatus.READY,
)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    if current.is_terminal:
        return False
    if target == JobStatus.FAILED:
        return True
    return STATUS_PATH.index(target) == STATUS_PATH.index(current) + 1


ITEM_TYPES = ("event", "expense", "contact", "address", "note", "document")
ACTION_TYPES = ("calendar", "expense", "contact", "maps", "note", "document")
SOURCES = ("share", "picker")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def parse_ts(v: Any) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        dt = v
    else:
        dt = datetime.fromisoformat(str(v).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class JobAction:
    applied: bool = False
    type: Optional[str] = None
    applied_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"applied": self.applied, "type": self.type, "appliedAt": _iso(self.applied_at)}

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "JobAction":
        d = d or {}
        return cls(
            applied=bool(d.get("applied", False)),
            type=d.get("type"),
            applied_at=parse_ts(d.get("appliedAt")),
        )


@dataclass
class Job:
    job_id: str
    owner_id: str
    status: JobStatus = JobStatus.RECEIVED
    source: str = "picker"
    ocr_text: str = ""
    type: Optional[str] = None
    classification: Optional[Dict[str, Any]] = None
    fields: Optional[Dict[str, Any]] = None
    summary: Optional[str] = None
    thumb: Optional[str] = None
    is_favorite: bool = False
    action: JobAction = field(default_factory=JobAction)
    error: Optional[Dict[str, str]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        """Full persisted shape (camelCase keys, ISO timestamps)."""
        return {
            "jobId": self.job_id,
            "ownerId": self.owner_id,
            "status": self.status.value,
            "source": self.source,
            "ocrText": self.ocr_text,
            "type": self.type,
            "classification": self.classification,
            "fields": self.fields,
            "summary": self.summary,
            "thumb": self.thumb,
            "isFavorite": self.is_favorite,
            "action": self.action.to_dict(),
            "error": self.error,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, d: Dict[str, Any]) -> "Job":
        return cls(
            job_id=d["jobId"],
            owner_id=d["ownerId"],
            status=JobStatus(d.get("status", JobStatus.RECEIVED.value)),
            source=d.get("source") or "picker",
            ocr_text=d.get("ocrText") or "",
            type=d.get("type"),
            classification=d.get("classification"),
            fields=d.get("fields"),
            summary=d.get("summary"),
            thumb=d.get("thumb"),
            is_favorite=bool(d.get("isFavorite", False)),
            action=JobAction.from_dict(d.get("action")),
            error=d.get("error"),
            created_at=parse_ts(d.get("createdAt")) or utcnow(),
            updated_at=parse_ts(d.get("updatedAt")) or utcnow(),
        )

    def to_view(self) -> Dict[str, Any]:
        """What GET /jobs/{id} exposes. ocrText and the raw classification stay server-side."""
        view = {
            "jobId": self.job_id,
            "status": self.status.value,
            "source": self.source,
            "type": self.type,
            "fields": self.fields,
            "summary": self.summary,
            "thumb": self.thumb,
            "isFavorite": self.is_favorite,
            "action": self.action.to_dict(),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if self.error and self.error.get("code"):
            view["error"] = dict(self.error)
        return view

    def to_history_item(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "type": self.type,
            "summary": self.summary,
            "fields": self.fields,
            "thumb": self.thumb,
            "action": self.action.to_dict(),
            "isFavorite": self.is_favorite,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class UserRecord:
    user_id: str
    lang: str = "en"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "lang": self.lang,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, d: Dict[str, Any]) -> "UserRecord":
        return cls(
            user_id=d["userId"],
            lang=d.get("lang") or "en",
            created_at=parse_ts(d.get("createdAt")) or utcnow(),
            updated_at=parse_ts(d.get("updatedAt")) or utcnow(),
        )
