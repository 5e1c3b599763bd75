from __future__ import annotations

import asyncio
from typing import Any, Protocol, Set

from starlette.concurrency import run_in_threadpool

from apps.common.logging import get_logger
from services.ingestion.storage import BlobStorage
from services.pipeline import JobOrchestrator

logger = get_logger(__name__)

PROCESS_JOB_TASK = "picdo.process_job"


class JobLauncher(Protocol):
    async def launch(self, *, job_id: str, owner_id: str, image: bytes, want_thumb: bool, lang: str) -> None: ...


class InProcessLauncher:
    """
    One detached asyncio task per job on the server's event loop. The caller
    never awaits it; the launcher only keeps a reference until it finishes.
    """

    def __init__(self, orchestrator: JobOrchestrator) -> None:
        self.orchestrator = orchestrator
        self._tasks: Set["asyncio.Task[Any]"] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def launch(self, *, job_id: str, owner_id: str, image: bytes, want_thumb: bool, lang: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self.orchestrator.run(
                job_id=job_id,
                owner_id=owner_id,
                image=image,
                want_thumb=want_thumb,
                lang=lang,
            ),
            name=f"job-{job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("job_run_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("job_run_crashed", task=task.get_name(), exc_info=exc)

    async def drain(self) -> None:
        """Wait for every in-flight run. Used at shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class CeleryLauncher:
    """Parks the upload on disk and hands the job to a Celery worker."""

    def __init__(self, *, celery_app: Any, storage: BlobStorage) -> None:
        self.celery_app = celery_app
        self.storage = storage

    def _enqueue(self, job_id: str, owner_id: str, image: bytes, want_thumb: bool, lang: str) -> str:
        stored = self.storage.put_bytes(job_id=job_id, blob=image)
        async_result = self.celery_app.send_task(
            PROCESS_JOB_TASK,
            args=[job_id, owner_id, stored.uri, bool(want_thumb), lang],
        )
        return str(async_result.id)

    async def launch(self, *, job_id: str, owner_id: str, image: bytes, want_thumb: bool, lang: str) -> None:
        task_id = await run_in_threadpool(self._enqueue, job_id, owner_id, image, want_thumb, lang)
        logger.info("job_enqueued", job_id=job_id, celery_task_id=task_id)
