from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from apps.common.logging import get_logger
from services.jobs.models import JobStatus, utcnow
from services.jobs.store import JobStore

logger = get_logger(__name__)

_LIMIT_MESSAGES = {
    "en": "You reached this month's limit ({limit}). It resets next month.",
    "ar": "لقد وصلت إلى الحد الشهري ({limit}). سيتم إعادة تعيينه الشهر القادم.",
}


def month_bounds(now: datetime) -> Tuple[datetime, datetime, datetime]:
    """
    Returns (month_start, month_end, next_month_start) for the UTC calendar
    month containing `now`. month_end is the last microsecond of the month.
    """
    now = now.astimezone(timezone.utc)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        nxt = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        nxt = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return start, nxt - timedelta(microseconds=1), nxt


_REMAINING_MESSAGES = {
    "en": "{remaining} of {limit} left this month.",
    "ar": "متبقي {remaining} من {limit} هذا الشهر.",
}


def limit_message(lang: str, limit: int) -> str:
    return _LIMIT_MESSAGES.get(lang, _LIMIT_MESSAGES["en"]).format(limit=limit)


def remaining_message(lang: str, remaining: int, limit: int) -> str:
    return _REMAINING_MESSAGES.get(lang, _REMAINING_MESSAGES["en"]).format(remaining=remaining, limit=limit)


@dataclass(frozen=True)
class QuotaStatus:
    allowed: bool
    used: int
    limit: int
    resets_at: datetime
    degraded: bool = False

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


class QuotaGuard:
    """
    Monthly submission quota: counts the owner's `ready` jobs created in the
    current calendar month.

    With fail_open=True an error while counting lets the submission through
    (logged as quota_check_degraded); with fail_open=False it propagates.
    """

    def __init__(self, store: JobStore, *, limit: int = 50, fail_open: bool = True) -> None:
        self.store = store
        self.limit = int(limit)
        self.fail_open = fail_open

    def check(self, owner_id: str, *, limit: Optional[int] = None, now: Optional[datetime] = None) -> QuotaStatus:
        lim = self.limit if limit is None else int(limit)
        month_start, month_end, resets_at = month_bounds(now or utcnow())

        try:
            used = self.store.count(
                owner_id=owner_id,
                status=JobStatus.READY,
                created_from=month_start,
                created_to=month_end,
            )
        except Exception as e:
            if not self.fail_open:
                raise
            logger.warning("quota_check_degraded", owner_id=owner_id, error=str(e))
            return QuotaStatus(allowed=True, used=0, limit=lim, resets_at=resets_at, degraded=True)

        return QuotaStatus(allowed=used < lim, used=used, limit=lim, resets_at=resets_at)
