from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse, unquote
from urllib.request import url2pathname


@dataclass(frozen=True)
class StoredObject:
    uri: str


class BlobStorage(Protocol):
    def put_bytes(self, *, job_id: str, blob: bytes) -> StoredObject: ...
    def get_bytes(self, *, uri: str) -> bytes: ...
    def discard(self, *, job_id: str) -> None: ...


class LocalStorage:
    """Upload bytes parked on disk while a queued job waits for a worker."""

    def __init__(self, root_dir: str) -> None:
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _job_dir(self, job_id: str) -> Path:
        return self.root / job_id

    def put_bytes(self, *, job_id: str, blob: bytes) -> StoredObject:
        p = self._job_dir(job_id) / "input.bin"
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(".tmp")
        tmp.write_bytes(blob)
        tmp.replace(p)
        return StoredObject(uri=p.resolve().as_uri())

    def get_bytes(self, *, uri: str) -> bytes:
        u = urlparse(uri)
        if u.scheme != "file":
            raise ValueError(f"unsupported uri scheme: {u.scheme}")
        path = url2pathname(unquote(u.path))
        if len(path) >= 3 and (path[0] in ("\\", "/")) and path[2] == ":":
            path = path[1:]
        if u.netloc:
            path = f"\\\\{u.netloc}{path}"
        return Path(path).read_bytes()

    def discard(self, *, job_id: str) -> None:
        shutil.rmtree(self._job_dir(job_id), ignore_errors=True)
