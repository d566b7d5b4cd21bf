"""
Per-process dependencies for stage handlers.

A worker process builds one `PipelineRuntime` when it starts and every stage
it runs receives that same object. Tests build their own runtime with fake
providers and temporary storage and pass it in directly.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from celery.signals import worker_process_init
from sqlalchemy.orm import Session, sessionmaker

from kcs.core.celery_app import enqueue_stage
from kcs.core.config import Settings, settings
from kcs.core.logging_config import configure_logging
from kcs.db.base import SessionLocal
from kcs.services.providers import ProviderRegistry, build_registry
from kcs.services.storage import DeliveryService, StorageService

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    settings: Settings
    providers: ProviderRegistry
    storage: StorageService
    delivery: DeliveryService
    session_factory: Callable[[], Session] | sessionmaker
    enqueue: Callable[[str, object], None]


_runtime: PipelineRuntime | None = None


def build_runtime(app_settings: Settings = settings) -> PipelineRuntime:
    return PipelineRuntime(
        settings=app_settings,
        providers=build_registry(app_settings),
        storage=StorageService(app_settings),
        delivery=DeliveryService(app_settings),
        session_factory=SessionLocal,
        enqueue=enqueue_stage,
    )


def get_runtime() -> PipelineRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: PipelineRuntime | None) -> None:
    global _runtime
    _runtime = runtime


@worker_process_init.connect
def _init_worker_runtime(**kwargs):
    configure_logging()
    set_runtime(build_runtime())
    logger.info("Pipeline runtime ready")
