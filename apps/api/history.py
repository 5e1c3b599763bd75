from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, Query
from starlette.concurrency import run_in_threadpool

from apps.api.errors import ApiError
from apps.api.jobs import require_owner
from apps.common.settings import AppSettings
from services.errors.taxonomy import ErrorCode
from services.jobs.models import ITEM_TYPES, JobStatus, parse_ts, utcnow
from services.jobs.store import JobStore
from services.quota.guard import month_bounds

DEFAULT_PAGE = 50
MAX_PAGE = 100


def _page_size(raw: Optional[str]) -> int:
    try:
        n = int(raw) if raw is not None else DEFAULT_PAGE
    except ValueError:
        n = DEFAULT_PAGE
    if n <= 0:
        n = DEFAULT_PAGE
    return min(n, MAX_PAGE)


def create_history_router(*, store: JobStore, settings: AppSettings) -> APIRouter:
    router = APIRouter()

    @router.get("/history")
    async def history(
        limit: Optional[str] = Query(None),
        cursor: Optional[str] = Query(None),
        type: Optional[str] = Query(None),
        x_user_id: Optional[str] = Header(None),
    ):
        """Completed jobs, newest first. `cursor` is the createdAt of the last item seen."""
        owner_id = require_owner(x_user_id)
        page = _page_size(limit)

        before = None
        if cursor:
            try:
                # an unencoded "+00:00" offset arrives as " 00:00"
                before = parse_ts(cursor.strip().replace(" ", "+"))
            except ValueError as e:
                raise ApiError(ErrorCode.INVALID_CURSOR, 400) from e

        item_type = type if type in ITEM_TYPES else None

        # one extra row tells us whether another page exists
        jobs = await run_in_threadpool(
            store.list_by_owner,
            owner_id=owner_id,
            limit=page + 1,
            before=before,
            status=JobStatus.READY,
            item_type=item_type,
        )
        has_next = len(jobs) > page
        items = jobs[:page]
        next_cursor = items[-1].created_at.isoformat() if has_next else None

        return {"items": [j.to_history_item() for j in items], "nextCursor": next_cursor}

    @router.get("/history/stats")
    async def stats(x_user_id: Optional[str] = Header(None)):
        owner_id = require_owner(x_user_id)
        month_start, month_end, next_month = month_bounds(utcnow())

        monthly = await run_in_threadpool(
            store.count,
            owner_id=owner_id,
            status=JobStatus.READY,
            created_from=month_start,
            created_to=month_end,
        )
        by_type = await run_in_threadpool(store.count_by_type, owner_id=owner_id, status=JobStatus.READY)

        return {
            "monthlyCount": monthly,
            "totalCount": sum(by_type.values()),
            "monthlyLimit": settings.monthly_limit,
            "breakdown": {t: by_type.get(t, 0) for t in ITEM_TYPES},
            "monthStart": month_start.isoformat(),
            "monthEnd": next_month.isoformat(),
        }

    return router
