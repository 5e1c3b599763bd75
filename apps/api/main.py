# apps/api/main.py
from apps.api.app_factory import create_app
from apps.common.logging import setup_logging
from apps.workers.launcher import CeleryLauncher, InProcessLauncher
from apps.workers.pipeline_loader import get_blob_storage, get_orchestrator, get_settings, get_store

settings = get_settings()
setup_logging(settings.log_level, json_format=settings.log_json)

if settings.dispatch == "celery":
    from apps.workers.celery_app import celery_app

    launcher = CeleryLauncher(celery_app=celery_app, storage=get_blob_storage())
else:
    launcher = InProcessLauncher(get_orchestrator())

app = create_app(
    store=get_store(),
    launcher=launcher,
    settings=settings,
    recover_on_startup=settings.dispatch == "inprocess",
)
