"""
Periodic delivery of queued partner notifications.

Intake queues an `order.created` notification in the outbox; celery beat
runs `drain_outbox` every OUTBOX_DRAIN_INTERVAL_SECONDS to send it with the
same signing the handoff webhook uses.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from kcs.core.celery_app import celery_app
from kcs.core.config import Settings
from kcs.core.stages import OUTBOX_DRAIN
from kcs.models.webhook_outbox import OutboxStatus, WebhookOutbox
from kcs.services.webhooks import send_signed_webhook
from kcs.tasks.runtime import get_runtime

logger = logging.getLogger(__name__)


def drain_outbox(db: Session, app_settings: Settings, limit: int = 50) -> dict:
    """Send up to `limit` pending rows. Returns counts per resulting status."""
    rows = (
        db.query(WebhookOutbox)
        .filter(WebhookOutbox.status == OutboxStatus.PENDING)
        .order_by(WebhookOutbox.created_at)
        .limit(limit)
        .all()
    )
    counts = {status.value: 0 for status in OutboxStatus}
    for row in rows:
        if not row.target:
            row.status = OutboxStatus.SKIPPED
        else:
            secret = row.order.partner.webhook_secret if row.order and row.order.partner else None
            result = send_signed_webhook(
                row.target, row.payload, secret, timeout=app_settings.WEBHOOK_TIMEOUT_SECONDS
            )
            row.attempts += 1
            row.signature = result.signature
            if result.delivered:
                row.status = OutboxStatus.DELIVERED
                row.delivered_at = datetime.now(timezone.utc)
                row.last_error = None
            else:
                row.last_error = result.error
                if row.attempts >= app_settings.OUTBOX_MAX_ATTEMPTS:
                    row.status = OutboxStatus.FAILED
                    logger.warning(f"Outbox row {row.id} gave up after {row.attempts} attempts")
        counts[row.status.value] += 1
        db.commit()
    if rows:
        logger.info(f"Outbox drained: {counts}")
    return counts


@celery_app.task(name=OUTBOX_DRAIN)
def drain_outbox_task(limit: int = 50):
    runtime = get_runtime()
    db = runtime.session_factory()
    try:
        return drain_outbox(db, runtime.settings, limit=limit)
    finally:
        db.close()
