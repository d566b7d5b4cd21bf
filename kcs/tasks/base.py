"""
What every stage worker does around its own unit of work.

A job carries only the order id. `execute_stage` opens a session, hands the
stage handler a `StageContext`, and after the handler returns checks that it
wrote exactly one event, commits, records metrics and enqueues the next
stage. Any exception rolls the stage back (provider calls already paid for
are still kept in the call ledger), is logged with the order and stage, and
is re-raised so Celery can apply its retry policy.
"""

import logging
import time
import uuid
from typing import Callable

import requests
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from kcs.core.celery_app import celery_app
from kcs.core.config import settings
from kcs.core.exceptions import PipelineIntegrityError, TransientProviderError
from kcs.core.metrics import record_job
from kcs.core.stages import next_stage
from kcs.models.event import Event
from kcs.models.order import Order
from kcs.models.story import Story
from kcs.services.call_ledger import CallLedger
from kcs.services.print_finishing import decode_base64_image, open_image, to_png_bytes
from kcs.services.providers import StageRoute
from kcs.tasks.runtime import PipelineRuntime, get_runtime

logger = logging.getLogger(__name__)

# Errors the queue retries with exponential backoff. Integrity errors and
# permanent provider errors fail the job straight away.
RETRYABLE_ERRORS = (
    TransientProviderError,
    requests.RequestException,
    StaleDataError,
    OperationalError,
)


class StageContext:
    """Session, dependencies and helpers for one run of one stage."""

    def __init__(self, stage: str, order_id: uuid.UUID, db: Session, runtime: PipelineRuntime):
        self.stage = stage
        self.order_id = order_id
        self.db = db
        self.runtime = runtime
        self.settings = runtime.settings
        self.providers = runtime.providers
        self.storage = runtime.storage
        self.ledger = CallLedger(db, order_id, stage)
        self.events_written = 0

    @property
    def log_extra(self) -> dict:
        return {"order_id": str(self.order_id), "stage": self.stage}

    # -- loading ---------------------------------------------------------

    def load_order(self) -> Order:
        order = self.db.query(Order).filter(Order.id == self.order_id).first()
        if order is None:
            raise PipelineIntegrityError(f"{self.stage}: order {self.order_id} not found")
        return order

    def load_story(self) -> Story:
        story = self.db.query(Story).filter(Story.order_id == self.order_id).first()
        if story is None:
            raise PipelineIntegrityError(f"{self.stage}: order {self.order_id} has no story")
        return story

    def require(self, value, what: str):
        """Return `value`, or fail the stage if an upstream stage did not produce it."""
        if value is None or value == "" or value == [] or value == {}:
            raise PipelineIntegrityError(f"{self.stage}: {what} missing for order {self.order_id}")
        return value

    # -- provider calls (all go through the ledger) ----------------------

    def text(self, logical_stage: str, prompt: str, system_prompt: str | None = None, slot: int = 0) -> dict:
        def call():
            response = self.providers.call(logical_stage, prompt, system_prompt=system_prompt)
            return {"output": response.output, "provider": response.provider, "model": response.model}

        return self.ledger.run(logical_stage, prompt, call, slot=slot)

    def vision(
        self,
        logical_stage: str,
        prompt: str,
        image_urls: list[str],
        route: StageRoute | None = None,
        slot: int = 0,
    ) -> dict:
        def call():
            response = self.providers.analyze_images(logical_stage, prompt, image_urls, route=route)
            return {"output": response.output, "provider": response.provider, "model": response.model}

        content = prompt + "\n" + "\n".join(image_urls)
        return self.ledger.run(logical_stage, content, call, slot=slot)

    def image(
        self,
        logical_stage: str,
        prompt: str,
        key: str,
        route: StageRoute | None = None,
        slot: int = 0,
    ) -> dict:
        """
        Generate an image and store it under `key`.

        The ledger output is the stored URL, so a redelivered stage neither
        regenerates nor re-uploads it.
        """
        size = self.settings.PRINT_PAGE_PX

        def call():
            result = self.providers.generate_image(logical_stage, prompt, size, size, route=route)
            if result.image_base64:
                content = decode_base64_image(result.image_base64)
            else:
                content = self.storage.download(result.url)
            png = to_png_bytes(open_image(content))
            url = self.storage.upload_bytes(png, key, "image/png")
            return {
                "output": url,
                "provider": result.provider,
                "model": result.model,
                "meta": {"generation_id": result.generation_id, "key": key},
            }

        return self.ledger.run(logical_stage, prompt, call, slot=slot)

    # -- persistence -----------------------------------------------------

    def record_event(self, event_type: str, payload: dict | None = None) -> Event:
        event = Event(order_id=self.order_id, type=event_type, payload=payload or {})
        self.db.add(event)
        self.events_written += 1
        return event


StageHandler = Callable[[StageContext], None]


def execute_stage(
    stage: str,
    order_id,
    handler: StageHandler,
    runtime: PipelineRuntime | None = None,
) -> str | None:
    """Run one stage for one order and enqueue its successor. Returns the successor name."""
    runtime = runtime or get_runtime()
    order_uuid = uuid.UUID(str(order_id))
    extra = {"order_id": str(order_uuid), "stage": stage}
    started = time.monotonic()
    db = runtime.session_factory()
    ctx = None
    try:
        ctx = StageContext(stage, order_uuid, db, runtime)
        logger.info(f"{stage} started", extra=extra)
        handler(ctx)
        if ctx.events_written != 1:
            raise PipelineIntegrityError(f"{stage} wrote {ctx.events_written} events, expected 1")
        ctx.ledger.flush()
        db.commit()
    except Exception as exc:
        db.rollback()
        if ctx is not None:
            _save_ledger_after_failure(ctx)
        record_job(stage, "failed", time.monotonic() - started)
        logger.error(f"{stage} failed: {type(exc).__name__}: {exc}", extra=extra, exc_info=True)
        raise
    finally:
        db.close()

    record_job(stage, "completed", time.monotonic() - started)
    successor = next_stage(stage)
    if successor is not None:
        runtime.enqueue(successor, order_uuid)
    logger.info(f"{stage} completed, next: {successor or 'none'}", extra=extra)
    return successor


def _save_ledger_after_failure(ctx: StageContext) -> None:
    """Keep outputs of provider calls that succeeded before the stage failed."""
    try:
        if ctx.ledger.flush():
            ctx.db.commit()
    except Exception:
        ctx.db.rollback()
        logger.warning("Could not save provider call ledger", extra=ctx.log_extra, exc_info=True)


def stage_task(stage: str, handler: StageHandler):
    """Register `handler` as the Celery task (and queue) named `stage`."""

    @celery_app.task(
        bind=True,
        name=stage,
        autoretry_for=RETRYABLE_ERRORS,
        retry_backoff=True,
        retry_backoff_max=settings.RETRY_BACKOFF_MAX,
        retry_jitter=False,
        max_retries=settings.STAGE_MAX_RETRIES,
    )
    def run(self, order_id: str):
        return execute_stage(stage, order_id, handler)

    return run
