from __future__ import annotations

import os
from celery import Celery

from apps.common.settings import load_settings

REDIS_URL = os.getenv("REDIS_URL") or load_settings().redis_url

celery_app = Celery(
    "picdo_workers",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["apps.workers.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES_S", "86400")),  # 1 day
    # a job runs once; a lost worker leaves it non-terminal instead of replaying it
    task_acks_late=False,
    worker_prefetch_multiplier=1,
)
celery_app.conf.broker_connection_retry_on_startup = True
