from __future__ import annotations

from functools import lru_cache

from apps.common.settings import AppSettings, load_settings
from services.classification.llm_classifier import LLMClassifier, LLMClassifierConfig
from services.ingestion.storage import LocalStorage
from services.jobs.store import LocalJobStore
from services.ocr.paddle_ocr import PaddleTextExtractor
from services.pipeline import JobOrchestrator, PipelineConfig
from services.preprocessing.image import ImageProcessor


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_store() -> LocalJobStore:
    return LocalJobStore(root_dir=str(get_settings().store_dir))


@lru_cache(maxsize=1)
def get_blob_storage() -> LocalStorage:
    return LocalStorage(root_dir=str(get_settings().uploads_dir))


def build_orchestrator(settings: AppSettings, store: LocalJobStore) -> JobOrchestrator:
    return JobOrchestrator(
        store=store,
        image_processor=ImageProcessor(),
        ocr=PaddleTextExtractor(lang=settings.ocr_lang),
        classifier=LLMClassifier(
            LLMClassifierConfig(
                base_url=settings.ollama_url,
                model=settings.ollama_model,
                timeout_s=settings.ollama_timeout_s,
            )
        ),
        config=PipelineConfig(),
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> JobOrchestrator:
    return build_orchestrator(get_settings(), get_store())
