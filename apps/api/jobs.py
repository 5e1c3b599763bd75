from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, File, Form, Header, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from apps.api.errors import ApiError
from apps.common.lang import detect_ui_lang
from apps.common.logging import get_logger
from apps.common.settings import AppSettings
from apps.workers.launcher import JobLauncher
from services.errors.taxonomy import ErrorCode
from services.jobs.models import ACTION_TYPES, SOURCES, Job, JobStatus, utcnow
from services.jobs.store import JobExistsError, JobStore, new_job_id
from services.preprocessing.image import InvalidImageError, validate_image_format
from services.quota.guard import QuotaGuard, limit_message, remaining_message

logger = get_logger(__name__)

_CREATE_ATTEMPTS = 3


class JobPatch(BaseModel):
    fields: Optional[Dict[str, Any]] = None
    summary: Optional[str] = None


class MarkActionBody(BaseModel):
    applied: bool = False
    type: Optional[str] = None


class FavoriteBody(BaseModel):
    isFavorite: bool


def require_owner(x_user_id: Optional[str]) -> str:
    owner = (x_user_id or "").strip()
    if not owner:
        raise ApiError(ErrorCode.MISSING_USER_ID, 400)
    return owner


def _not_found() -> ApiError:
    return ApiError(ErrorCode.JOB_NOT_FOUND, 404)


def create_jobs_router(
    *,
    store: JobStore,
    quota: QuotaGuard,
    launcher: JobLauncher,
    settings: AppSettings,
) -> APIRouter:
    router = APIRouter()

    async def _create_job(owner_id: str, source: str) -> Job:
        for _ in range(_CREATE_ATTEMPTS):
            job = Job(job_id=new_job_id(), owner_id=owner_id, source=source)
            try:
                return await run_in_threadpool(store.create, job)
            except JobExistsError:
                logger.warning("job_id_collision", job_id=job.job_id)
        raise RuntimeError("could not allocate a unique job id")

    async def _mark_launch_failed(job: Job, exc: Exception) -> None:
        await run_in_threadpool(
            store.transition,
            job_id=job.job_id,
            owner_id=job.owner_id,
            expected=JobStatus.RECEIVED,
            target=JobStatus.FAILED,
            changes={"error": {"code": ErrorCode.PROCESSING_FAILED.value, "message": f"Could not start processing: {exc}"[:300]}},
        )

    # --- Submission ---
    @router.post("/jobs")
    async def submit_job(
        image: Optional[UploadFile] = File(None),
        wantThumb: Optional[str] = Form(None),
        source: Optional[str] = Form(None),
        x_user_id: Optional[str] = Header(None),
        accept_language: Optional[str] = Header(None),
    ):
        owner_id = require_owner(x_user_id)
        lang = detect_ui_lang(accept_language)

        if image is None:
            raise ApiError(ErrorCode.MISSING_IMAGE, 400)
        blob = await image.read()
        if not blob:
            raise ApiError(ErrorCode.MISSING_IMAGE, 400)
        if len(blob) > settings.max_upload_bytes:
            raise ApiError(ErrorCode.FILE_TOO_LARGE, 413)

        if settings.maintenance_mode:
            raise ApiError(ErrorCode.MAINTENANCE_MODE, 503)

        limit = await run_in_threadpool(quota.check, owner_id)
        if not limit.allowed:
            raise ApiError(ErrorCode.LIMIT_REACHED, 429, limit_message(lang, limit.limit))

        content_type = (image.content_type or "").lower()
        if content_type and not content_type.startswith("image/"):
            raise ApiError(ErrorCode.INVALID_IMAGE, 400, "Only image files are allowed")
        try:
            fmt = await run_in_threadpool(validate_image_format, blob)
        except InvalidImageError as e:
            raise ApiError(ErrorCode.INVALID_IMAGE, 400, str(e)) from e

        src = source if source in SOURCES else "picker"
        want_thumb = (wantThumb or "").strip().lower() == "true"

        job = await _create_job(owner_id, src)
        try:
            await launcher.launch(
                job_id=job.job_id,
                owner_id=owner_id,
                image=blob,
                want_thumb=want_thumb,
                lang=lang,
            )
        except Exception as e:
            await _mark_launch_failed(job, e)
            raise

        logger.info(
            "job_submitted",
            job_id=job.job_id,
            owner_id=owner_id,
            source=src,
            format=fmt,
            size=len(blob),
            want_thumb=want_thumb,
            quota_used=limit.used,
        )

        try:
            await run_in_threadpool(store.upsert_user, owner_id=owner_id, lang=lang)
        except Exception:
            # job is already running; a stale user record is not worth a 500
            logger.exception("user_upsert_failed", owner_id=owner_id)

        return JSONResponse(status_code=202, content={"jobId": job.job_id, "status": job.status.value})

    # --- Quota ---
    @router.get("/jobs/check-limit")
    async def check_limit(
        x_user_id: Optional[str] = Header(None),
        accept_language: Optional[str] = Header(None),
    ):
        owner_id = require_owner(x_user_id)
        lang = detect_ui_lang(accept_language)
        q = await run_in_threadpool(quota.check, owner_id)
        return {
            "allowed": q.allowed,
            "used": q.used,
            "limit": q.limit,
            "remaining": q.remaining,
            "resetDate": q.resets_at.isoformat(),
            "message": remaining_message(lang, q.remaining, q.limit) if q.allowed else limit_message(lang, q.limit),
        }

    # --- Polling ---
    @router.get("/jobs/{job_id}")
    async def job_status(job_id: str, x_user_id: Optional[str] = Header(None)):
        owner_id = require_owner(x_user_id)
        job = await run_in_threadpool(store.get, job_id=job_id, owner_id=owner_id)
        if job is None:
            raise _not_found()
        return job.to_view()

    # --- User edits (never touch status) ---
    @router.patch("/jobs/{job_id}")
    async def update_job(job_id: str, body: JobPatch, x_user_id: Optional[str] = Header(None)):
        owner_id = require_owner(x_user_id)

        def mutate(job: Job) -> None:
            if body.fields:
                job.fields = {**(job.fields or {}), **body.fields}
            if body.summary is not None:
                job.summary = body.summary

        job = await run_in_threadpool(store.update, job_id=job_id, owner_id=owner_id, mutate=mutate)
        if job is None:
            raise _not_found()
        return {"success": True, "jobId": job.job_id, "fields": job.fields, "summary": job.summary}

    @router.post("/jobs/{job_id}/mark-action")
    async def mark_action(job_id: str, body: MarkActionBody, x_user_id: Optional[str] = Header(None)):
        owner_id = require_owner(x_user_id)
        if body.type is not None and body.type not in ACTION_TYPES:
            raise ApiError(ErrorCode.VALIDATION_ERROR, 422, f"type must be one of {', '.join(ACTION_TYPES)}")

        def mutate(job: Job) -> None:
            job.action.applied = body.applied
            job.action.type = body.type
            job.action.applied_at = utcnow() if body.applied else None

        job = await run_in_threadpool(store.update, job_id=job_id, owner_id=owner_id, mutate=mutate)
        if job is None:
            raise _not_found()
        return {"ok": True}

    @router.post("/jobs/{job_id}/favorite")
    async def toggle_favorite(job_id: str, body: FavoriteBody, x_user_id: Optional[str] = Header(None)):
        owner_id = require_owner(x_user_id)

        def mutate(job: Job) -> None:
            job.is_favorite = body.isFavorite

        job = await run_in_threadpool(store.update, job_id=job_id, owner_id=owner_id, mutate=mutate)
        if job is None:
            raise _not_found()
        return {"isFavorite": job.is_favorite}

    @router.delete("/jobs/{job_id}")
    async def delete_job(job_id: str, x_user_id: Optional[str] = Header(None)):
        owner_id = require_owner(x_user_id)
        deleted = await run_in_threadpool(store.delete, job_id=job_id, owner_id=owner_id)
        if not deleted:
            raise _not_found()
        logger.info("job_deleted", job_id=job_id, owner_id=owner_id)
        return {"ok": True}

    return router
