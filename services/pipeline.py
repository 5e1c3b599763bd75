# services/pipeline.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from apps.common.logging import get_logger
from services.classification.base import Classifier
from services.classification.fields import build_summary, project_fields
from services.errors.taxonomy import NoTextDetectedError, normalize
from services.jobs.models import Job, JobStatus
from services.jobs.store import JobNotFoundError, JobStore, StaleTransitionError
from services.ocr.base import TextExtractor
from services.preprocessing.image import ImageProcessor
from services.validation.schema_validation import validate_classification

logger = get_logger(__name__)


class PipelineError(RuntimeError):
    """The classifier answered, but with something we cannot use."""


@dataclass(frozen=True)
class PipelineConfig:
    max_summary_chars: int = 200


class JobOrchestrator:
    """
    Drives one job along received -> ocr_in_progress -> ocr_done ->
    ai_in_progress -> ready, or into failed from any of the non-terminal steps.

    Every write is conditional on the status the previous step left behind,
    so a run never skips a state and never touches a job that already reached
    a terminal state (or was deleted by its owner). No retries.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        image_processor: ImageProcessor,
        ocr: TextExtractor,
        classifier: Classifier,
        config: Optional[PipelineConfig] = None,
    ) -> None:
        self.store = store
        self.image_processor = image_processor
        self.ocr = ocr
        self.classifier = classifier
        self.config = config or PipelineConfig()

    async def _advance(
        self,
        job_id: str,
        owner_id: str,
        expected: Optional[JobStatus],
        target: JobStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Job:
        job = await run_in_threadpool(
            self.store.transition,
            job_id=job_id,
            owner_id=owner_id,
            expected=expected,
            target=target,
            changes=changes,
        )
        logger.info("job_status_changed", job_id=job_id, owner_id=owner_id, status=target.value)
        return job

    async def fail(self, job_id: str, owner_id: str, exc: BaseException) -> Optional[Job]:
        err = normalize(exc)
        logger.warning(
            "job_failed",
            job_id=job_id,
            owner_id=owner_id,
            code=err.code,
            error=err.message,
            exc_type=exc.__class__.__name__,
        )
        try:
            return await self._advance(job_id, owner_id, None, JobStatus.FAILED, {"error": err.to_dict()})
        except (JobNotFoundError, StaleTransitionError) as e:
            logger.warning("job_fail_skipped", job_id=job_id, owner_id=owner_id, reason=str(e))
            return None

    async def _thumbnail(self, job_id: str, image: bytes) -> Optional[str]:
        try:
            return await self.image_processor.make_thumbnail(image)
        except Exception as e:
            logger.warning("thumbnail_failed", job_id=job_id, error=str(e))
            return None

    def interpret(self, classification: Any) -> Tuple[str, Dict[str, Any], str]:
        """Validate a classifier answer; returns (type, fields, summary)."""
        if not isinstance(classification, dict):
            raise PipelineError("Classification result is not an object")

        ok, msg = validate_classification(classification)
        if not ok:
            raise PipelineError(f"Invalid classification: {msg}")

        item_type = classification["type"]
        fields = project_fields(classification)

        summary = classification.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            summary = build_summary(item_type, fields)
        return item_type, fields, summary.strip()[: self.config.max_summary_chars]

    async def run(
        self,
        *,
        job_id: str,
        owner_id: str,
        image: bytes,
        want_thumb: bool = False,
        lang: str = "en",
    ) -> Optional[Job]:
        """
        Must be started exactly once per job, right after the job record was
        created. Returns the terminal job, or None if the run was abandoned
        because the record changed underneath it.
        """
        try:
            await self._advance(job_id, owner_id, JobStatus.RECEIVED, JobStatus.OCR_IN_PROGRESS)

            prepared = await self.image_processor.preprocess(image)
            ocr = await self.ocr.extract_text(prepared)
            text = (ocr.text or "").strip()
            if not text:
                raise NoTextDetectedError()

            await self._advance(
                job_id, owner_id, JobStatus.OCR_IN_PROGRESS, JobStatus.OCR_DONE, {"ocr_text": text}
            )
            logger.info("ocr_completed", job_id=job_id, text_length=len(text), confidence=ocr.confidence)

            changes: Dict[str, Any] = {}
            if want_thumb:
                thumb = await self._thumbnail(job_id, image)
                if thumb:
                    changes["thumb"] = thumb

            await self._advance(job_id, owner_id, JobStatus.OCR_DONE, JobStatus.AI_IN_PROGRESS, changes)

            classification = await self.classifier.classify(text, lang)
            item_type, fields, summary = self.interpret(classification)

            return await self._advance(
                job_id,
                owner_id,
                JobStatus.AI_IN_PROGRESS,
                JobStatus.READY,
                {
                    "type": item_type,
                    "classification": classification,
                    "fields": fields,
                    "summary": summary,
                },
            )

        except (JobNotFoundError, StaleTransitionError) as e:
            logger.warning("job_run_abandoned", job_id=job_id, owner_id=owner_id, reason=str(e))
            return None
        except Exception as e:
            return await self.fail(job_id, owner_id, e)
