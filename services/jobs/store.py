from __future__ import annotations

import copy
import hashlib
import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol
from uuid import UUID, uuid4

from filelock import FileLock, Timeout

from services.jobs.models import Job, JobStatus, UserRecord, can_transition, utcnow


class StoreError(RuntimeError):
    pass


class JobExistsError(StoreError):
    """create() refuses to overwrite an existing jobId."""


class JobNotFoundError(StoreError):
    pass


class StaleTransitionError(StoreError):
    """The job is no longer in the status the caller expected."""

    def __init__(self, job_id: str, expected: Optional[JobStatus], actual: JobStatus) -> None:
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        exp = expected.value if expected else "non-terminal"
        super().__init__(f"job {job_id}: expected status {exp}, found {actual.value}")


class JobStore(Protocol):
    def create(self, job: Job) -> Job: ...
    def get(self, *, job_id: str, owner_id: str) -> Optional[Job]: ...
    def update(self, *, job_id: str, owner_id: str, mutate: Callable[[Job], None]) -> Optional[Job]: ...
    def transition(
        self,
        *,
        job_id: str,
        owner_id: str,
        expected: Optional[JobStatus],
        target: JobStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Job: ...
    def delete(self, *, job_id: str, owner_id: str) -> bool: ...
    def list_by_owner(
        self,
        *,
        owner_id: str,
        limit: int,
        before: Optional[datetime] = None,
        status: Optional[JobStatus] = None,
        item_type: Optional[str] = None,
    ) -> List[Job]: ...
    def count(
        self,
        *,
        owner_id: str,
        status: Optional[JobStatus] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> int: ...
    def count_by_type(self, *, owner_id: str, status: Optional[JobStatus] = None) -> Dict[str, int]: ...
    def list_unfinished(self) -> List[Job]: ...
    def upsert_user(self, *, owner_id: str, lang: str) -> UserRecord: ...
    def get_user(self, *, owner_id: str) -> Optional[UserRecord]: ...


# What PATCH, favorite and mark-action may change; everything else belongs to the pipeline.
USER_FIELDS = ("fields", "summary", "is_favorite", "action")


def new_job_id() -> str:
    return str(uuid4())


def _is_job_id(job_id: str) -> bool:
    try:
        return str(UUID(job_id)) == job_id
    except (TypeError, ValueError, AttributeError):
        return False


class LocalJobStore:
    """
    One JSON document per job under <root>/jobs, one per user under <root>/users.

    Writes go through a temp file + rename so readers never see a partial
    document. Every read-modify-write of a job holds that job's lock file
    under <root>/locks, so an API process and a Celery worker sharing the
    directory never interleave their writes.
    """

    def __init__(self, root_dir: str, *, lock_timeout_s: float = 10.0) -> None:
        self.root = Path(root_dir)
        self.jobs_dir = self.root / "jobs"
        self.users_dir = self.root / "users"
        self.locks_dir = self.root / "locks"
        for d in (self.jobs_dir, self.users_dir, self.locks_dir):
            d.mkdir(parents=True, exist_ok=True)
        self.lock_timeout_s = lock_timeout_s
        self._lock = threading.RLock()

    # --- file helpers ---

    def _job_path(self, job_id: str) -> Path:
        return self.jobs_dir / f"{job_id}.json"

    def _user_path(self, owner_id: str) -> Path:
        digest = hashlib.sha256(owner_id.encode("utf-8")).hexdigest()
        return self.users_dir / f"{digest}.json"

    @contextmanager
    def _job_lock(self, job_id: str) -> Iterator[None]:
        lock = FileLock(str(self.locks_dir / f"{job_id}.lock"), timeout=self.lock_timeout_s)
        try:
            lock.acquire()
        except Timeout as e:
            raise StoreError(f"job is locked by another writer: {job_id}") from e
        try:
            yield
        finally:
            lock.release()

    @staticmethod
    def _tmp_for(out: Path) -> Path:
        return out.with_name(f".{out.name}.{uuid4().hex}.tmp")

    def _write_atomic(self, out: Path, obj: dict) -> None:
        tmp = self._tmp_for(out)
        tmp.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
        tmp.replace(out)  # atomic on same filesystem

    def _write_exclusive(self, out: Path, obj: dict) -> None:
        tmp = self._tmp_for(out)
        tmp.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
        try:
            os.link(tmp, out)  # fails if out already exists
        finally:
            tmp.unlink(missing_ok=True)

    def _read(self, path: Path) -> Optional[dict]:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            # deleted between exists() and read
            return None

    def _load(self, job_id: str) -> Optional[Job]:
        if not _is_job_id(job_id):
            return None
        d = self._read(self._job_path(job_id))
        return Job.from_record(d) if d else None

    def _iter_jobs(self) -> Iterator[Job]:
        for p in self.jobs_dir.glob("*.json"):
            d = self._read(p)
            if d:
                yield Job.from_record(d)

    def _save(self, job: Job) -> None:
        job.updated_at = utcnow()
        self._write_atomic(self._job_path(job.job_id), job.to_record())

    # --- jobs ---

    def create(self, job: Job) -> Job:
        if not _is_job_id(job.job_id):
            raise StoreError(f"invalid job id: {job.job_id!r}")
        with self._lock:
            try:
                self._write_exclusive(self._job_path(job.job_id), job.to_record())
            except FileExistsError as e:
                raise JobExistsError(f"job already exists: {job.job_id}") from e
        return job

    def get(self, *, job_id: str, owner_id: str) -> Optional[Job]:
        job = self._load(job_id)
        if job is None or job.owner_id != owner_id:
            return None
        return job

    def update(self, *, job_id: str, owner_id: str, mutate: Callable[[Job], None]) -> Optional[Job]:
        """
        Owner-scoped write for user-initiated edits. `mutate` runs on a fresh
        copy taken under the job lock; only USER_FIELDS are kept from it, so an
        edit can never move status or clobber what the pipeline wrote.
        """
        if not _is_job_id(job_id):
            return None
        with self._job_lock(job_id):
            job = self.get(job_id=job_id, owner_id=owner_id)
            if job is None:
                return None
            edited = copy.deepcopy(job)
            mutate(edited)
            for name in USER_FIELDS:
                setattr(job, name, getattr(edited, name))
            self._save(job)
            return job

    def transition(
        self,
        *,
        job_id: str,
        owner_id: str,
        expected: Optional[JobStatus],
        target: JobStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """
        Conditional status write. `expected=None` means "any non-terminal
        status" (used when failing a job). Status and `changes` land in the
        same document write.
        """
        if not _is_job_id(job_id):
            raise JobNotFoundError(f"job not found: {job_id}")
        with self._job_lock(job_id):
            job = self.get(job_id=job_id, owner_id=owner_id)
            if job is None:
                raise JobNotFoundError(f"job not found: {job_id}")

            if expected is not None and job.status != expected:
                raise StaleTransitionError(job_id, expected, job.status)
            if not can_transition(job.status, target):
                raise StaleTransitionError(job_id, expected, job.status)

            for k, v in (changes or {}).items():
                if not hasattr(job, k) or k in ("job_id", "owner_id", "status", "created_at"):
                    raise StoreError(f"field not writable by transition: {k}")
                setattr(job, k, v)
            job.status = target
            self._save(job)
            return job

    def delete(self, *, job_id: str, owner_id: str) -> bool:
        if not _is_job_id(job_id):
            return False
        with self._job_lock(job_id):
            if self.get(job_id=job_id, owner_id=owner_id) is None:
                return False
            self._job_path(job_id).unlink(missing_ok=True)
            return True

    def list_by_owner(
        self,
        *,
        owner_id: str,
        limit: int,
        before: Optional[datetime] = None,
        status: Optional[JobStatus] = None,
        item_type: Optional[str] = None,
    ) -> List[Job]:
        """Newest first; `before` is an exclusive upper bound on createdAt."""
        out = []
        for job in self._iter_jobs():
            if job.owner_id != owner_id:
                continue
            if status is not None and job.status != status:
                continue
            if item_type is not None and job.type != item_type:
                continue
            if before is not None and not job.created_at < before:
                continue
            out.append(job)
        out.sort(key=lambda j: (j.created_at, j.job_id), reverse=True)
        return out[: max(0, limit)]

    def count(
        self,
        *,
        owner_id: str,
        status: Optional[JobStatus] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> int:
        """Bounds are inclusive."""
        n = 0
        for job in self._iter_jobs():
            if job.owner_id != owner_id:
                continue
            if status is not None and job.status != status:
                continue
            if created_from is not None and job.created_at < created_from:
                continue
            if created_to is not None and job.created_at > created_to:
                continue
            n += 1
        return n

    def count_by_type(self, *, owner_id: str, status: Optional[JobStatus] = None) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for job in self._iter_jobs():
            if job.owner_id != owner_id or not job.type:
                continue
            if status is not None and job.status != status:
                continue
            counts[job.type] = counts.get(job.type, 0) + 1
        return counts

    def list_unfinished(self) -> List[Job]:
        return [j for j in self._iter_jobs() if not j.status.is_terminal]

    # --- users ---

    def upsert_user(self, *, owner_id: str, lang: str) -> UserRecord:
        with self._lock:
            path = self._user_path(owner_id)
            d = self._read(path)
            if d:
                user = UserRecord.from_record(d)
                user.lang = lang
                user.updated_at = utcnow()
            else:
                user = UserRecord(user_id=owner_id, lang=lang)
            self._write_atomic(path, user.to_record())
            return user

    def get_user(self, *, owner_id: str) -> Optional[UserRecord]:
        d = self._read(self._user_path(owner_id))
        return UserRecord.from_record(d) if d else None
