"""
Handoff: the last stage.

Copies the cover spread and the interior PDF into the partner's delivery
folder, tells the partner through a signed webhook and settles the final
print status. Whatever happens, the story leaves this stage with a terminal
status: `completed`, `partial_upload` or `upload_failed`.
"""

import logging
from datetime import datetime, timezone

import requests

from kcs.core.exceptions import PipelineIntegrityError
from kcs.core.metrics import record_handoff
from kcs.core.stages import STORY_HANDOFF
from kcs.models.order import Order, OrderStatus
from kcs.models.story import PrintStatus, Story
from kcs.schemas.story import HandoffResult, HandoffView
from kcs.services.webhooks import send_signed_webhook
from kcs.tasks.base import StageContext, stage_task

logger = logging.getLogger(__name__)

DELIVERABLES = (
    ("cover_spread", "cover-spread.pdf"),
    ("inside_book_pdf", "inside-book.pdf"),
)


def upload_deliverables(ctx: StageContext, folder: str, urls: dict[str, str]) -> tuple[dict, dict]:
    """Upload each deliverable on its own. Returns (file ids, errors) keyed by deliverable."""
    file_ids: dict[str, str] = {}
    errors: dict[str, str] = {}
    target = f"{folder.strip('/')}/{ctx.order_id}"
    for field, name in DELIVERABLES:
        try:
            content = ctx.storage.download(urls[field])
            file_ids[field] = ctx.runtime.delivery.upload(target, name, content, "application/pdf")
        except (OSError, requests.RequestException) as exc:
            errors[field] = str(exc)
            logger.warning(f"Delivery of {name} failed: {exc}", extra=ctx.log_extra)
    return file_ids, errors


def handoff_status(has_folder: bool, uploaded: int) -> PrintStatus:
    if not has_folder or uploaded == len(DELIVERABLES):
        return PrintStatus.COMPLETED
    if uploaded == 0:
        return PrintStatus.UPLOAD_FAILED
    return PrintStatus.PARTIAL_UPLOAD


def webhook_payload(order, status: PrintStatus, urls: dict, folder: str | None, file_ids: dict, completed_at: str) -> dict:
    return {
        "orderId": str(order.id),
        "orderNumber": order.order_number,
        "status": status.value,
        "coverSpreadUrl": urls["cover_spread"],
        "insideBookUrl": urls["inside_book_pdf"],
        "driveFolderId": folder,
        "driveFileIds": file_ids,
        "completedAt": completed_at,
    }


def run_handoff(ctx: StageContext) -> None:
    folder, has_webhook = None, False
    try:
        order = ctx.load_order()
        story = ctx.load_story()
        meta = story.print_meta
        if not meta.cover_spread or not meta.inside_book_pdf:
            raise PipelineIntegrityError(f"{ctx.stage}: nothing to deliver for order {order.id}")
        partner = order.partner
        folder = partner.delivery_folder or None
        has_webhook = bool(partner.webhook_url)

        urls = {"cover_spread": meta.cover_spread, "inside_book_pdf": meta.inside_book_pdf}
        file_ids, errors = {}, {}
        if folder:
            file_ids, errors = upload_deliverables(ctx, folder, urls)
        status = handoff_status(folder is not None, len(file_ids))
        completed_at = datetime.now(timezone.utc).isoformat()

        delivered = None
        if has_webhook and status != PrintStatus.UPLOAD_FAILED:
            result = send_signed_webhook(
                partner.webhook_url,
                webhook_payload(order, status, urls, folder, file_ids, completed_at),
                partner.webhook_secret,
                timeout=ctx.settings.WEBHOOK_TIMEOUT_SECONDS,
            )
            delivered = result.delivered
            if not delivered:
                logger.warning(f"Handoff webhook not delivered: {result.error}", extra=ctx.log_extra)

        story.merge_print_metadata(
            HandoffView(
                handoff=HandoffResult(
                    status=status.value,
                    drive_folder_id=folder,
                    drive_file_ids=file_ids,
                    upload_errors=errors,
                    webhook_delivered=delivered,
                    completed_at=completed_at,
                )
            )
        )
        story.advance_print_status(status)
        if status == PrintStatus.COMPLETED:
            order.status = OrderStatus.FULFILLED
        elif status == PrintStatus.PARTIAL_UPLOAD:
            order.status = OrderStatus.PRINT_SUBMITTED
        ctx.db.flush()
    except Exception as exc:
        mark_upload_failed(ctx, folder is not None, has_webhook, exc)
        raise

    record_handoff(status.value, folder is not None, has_webhook)
    ctx.record_event(
        f"print.handoff_{status.value}",
        {"drive_file_ids": file_ids, "upload_errors": errors, "webhook_delivered": delivered},
    )


def mark_upload_failed(ctx: StageContext, has_folder: bool, has_webhook: bool, exc: Exception) -> None:
    """Persist `upload_failed` in a fresh transaction so the order does not stay ambiguous."""
    ctx.db.rollback()
    if ctx.db.query(Order.id).filter(Order.id == ctx.order_id).first() is None:
        logger.error(f"Handoff failed for unknown order: {exc}", extra=ctx.log_extra)
        return
    story = ctx.db.query(Story).filter(Story.order_id == ctx.order_id).first()
    if story is not None:
        story.advance_print_status(PrintStatus.UPLOAD_FAILED)
    ctx.record_event(
        f"print.handoff_{PrintStatus.UPLOAD_FAILED.value}",
        {"error": f"{type(exc).__name__}: {exc}"},
    )
    ctx.db.commit()
    record_handoff(PrintStatus.UPLOAD_FAILED.value, has_folder, has_webhook)


handoff_task = stage_task(STORY_HANDOFF, run_handoff)
