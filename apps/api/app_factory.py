# apps/api/app_factory.py
from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import RedirectResponse
from filelock import FileLock, Timeout
from starlette.concurrency import run_in_threadpool

from apps.api.errors import install_exception_handlers
from apps.api.history import create_history_router
from apps.api.jobs import create_jobs_router
from apps.api.rate_limit import RateLimiter, RateLimitMiddleware
from apps.common.logging import RequestContextMiddleware, get_logger
from apps.common.settings import AppSettings
from apps.workers.launcher import JobLauncher
from services.jobs.recovery import fail_unfinished_jobs
from services.jobs.store import JobStore
from services.quota.guard import QuotaGuard

logger = get_logger(__name__)

# Held by the one process allowed to recover orphans and run jobs in-process.
RUNNER_LOCK_NAME = "inprocess.lock"


def acquire_runner_lock(data_dir: Path) -> FileLock:
    """
    Claim the data directory for this process. A second uvicorn worker (or a
    second server on the same directory) would fail the first one's running
    jobs during its own startup recovery, so it is refused instead.
    """
    data_dir.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(data_dir / RUNNER_LOCK_NAME), timeout=0)
    try:
        lock.acquire()
    except Timeout as e:
        raise RuntimeError(
            f"{data_dir} is already served by another in-process runner; "
            "run a single API process or switch to PICDO_DISPATCH=celery"
        ) from e
    return lock


def create_app(
    *,
    store: JobStore,
    launcher: JobLauncher,
    settings: AppSettings,
    quota: QuotaGuard | None = None,
    recover_on_startup: bool = False,
) -> FastAPI:
    quota = quota or QuotaGuard(store, limit=settings.monthly_limit, fail_open=settings.quota_fail_open)
    started = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runner_lock = acquire_runner_lock(settings.data_dir) if recover_on_startup else None
        try:
            if recover_on_startup:
                n = await run_in_threadpool(fail_unfinished_jobs, store)
                if n:
                    logger.warning("orphaned_jobs_failed", count=n)
            logger.info("api_started", dispatch=settings.dispatch, maintenance_mode=settings.maintenance_mode)
            yield
            await _drain_launcher(launcher, settings.shutdown_grace_s)
        finally:
            if runner_lock is not None:
                runner_lock.release()

    app = FastAPI(title="PicDo Jobs API", lifespan=lifespan)
    install_exception_handlers(app)

    app.add_middleware(RequestContextMiddleware)
    if settings.rate_limit_enabled:
        limiter = RateLimiter(limit=settings.rate_limit_max, window_s=settings.rate_limit_window_s)
        app.add_middleware(RateLimitMiddleware, limiter=limiter)
    app.add_middleware(GZipMiddleware, minimum_size=settings.gzip_min_bytes)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_origin_regex=settings.cors_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        return RedirectResponse(url="/docs")

    @app.get("/health")
    async def health_check():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - started, 3),
        }

    app.include_router(create_jobs_router(store=store, quota=quota, launcher=launcher, settings=settings))
    app.include_router(create_history_router(store=store, settings=settings))
    return app


async def _drain_launcher(launcher: JobLauncher, grace_s: float) -> None:
    """Give in-process runs up to `grace_s` to finish before the loop goes away."""
    drain = getattr(launcher, "drain", None)
    pending = getattr(launcher, "pending", 0)
    if drain is None or not pending:
        return
    logger.info("api_draining_jobs", count=pending, grace_s=grace_s)
    try:
        await asyncio.wait_for(drain(), timeout=grace_s)
    except asyncio.TimeoutError:
        logger.warning("api_stopping_with_running_jobs", count=getattr(launcher, "pending", 0))
