from __future__ import annotations

from apps.common.logging import get_logger
from services.errors.taxonomy import ErrorCode
from services.jobs.models import JobStatus
from services.jobs.store import JobNotFoundError, JobStore, StaleTransitionError

logger = get_logger(__name__)

INTERRUPTED_MESSAGE = "Processing was interrupted"


def fail_unfinished_jobs(store: JobStore) -> int:
    """
    Mark every job left in a non-terminal status as failed. Only valid when no
    run can still be alive for those jobs, i.e. at startup of the single
    in-process dispatcher.
    """
    n = 0
    for job in store.list_unfinished():
        try:
            store.transition(
                job_id=job.job_id,
                owner_id=job.owner_id,
                expected=None,
                target=JobStatus.FAILED,
                changes={"error": {"code": ErrorCode.PROCESSING_FAILED.value, "message": INTERRUPTED_MESSAGE}},
            )
        except (JobNotFoundError, StaleTransitionError):
            continue
        n += 1
        logger.warning("job_recovered_as_failed", job_id=job.job_id, owner_id=job.owner_id, was=job.status.value)
    return n
