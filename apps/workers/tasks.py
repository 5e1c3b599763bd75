from __future__ import annotations

import asyncio

from apps.common.logging import get_logger, setup_logging
from apps.workers.celery_app import celery_app
from apps.workers.launcher import PROCESS_JOB_TASK
from apps.workers.pipeline_loader import get_blob_storage, get_orchestrator, get_settings
from services.errors.taxonomy import ImageProcessingError

_settings = get_settings()
setup_logging(_settings.log_level, json_format=_settings.log_json)
logger = get_logger(__name__)


# No autoretry: a failed job stays failed and the client submits again.
@celery_app.task(name=PROCESS_JOB_TASK, bind=True)
def process_job(
    self,
    job_id: str,
    owner_id: str,
    input_uri: str,
    want_thumb: bool = False,
    lang: str = "en",
) -> dict:
    storage = get_blob_storage()
    orchestrator = get_orchestrator()
    try:
        try:
            blob = storage.get_bytes(uri=input_uri)
        except (OSError, ValueError) as e:
            job = asyncio.run(
                orchestrator.fail(job_id, owner_id, ImageProcessingError(f"Upload not available: {e}"))
            )
        else:
            job = asyncio.run(
                orchestrator.run(
                    job_id=job_id,
                    owner_id=owner_id,
                    image=blob,
                    want_thumb=want_thumb,
                    lang=lang,
                )
            )
    finally:
        storage.discard(job_id=job_id)

    status = job.status.value if job is not None else "abandoned"
    logger.info("celery_job_finished", job_id=job_id, status=status, celery_task_id=self.request.id)
    return {"job_id": job_id, "status": status}
