"""Partner order intake endpoint."""

import logging
from typing import Callable

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from kcs.api.deps import get_db, get_enqueue
from kcs.core.config import settings
from kcs.schemas.order import OrderAccepted
from kcs.services.intake import IntakeRequest, submit_order

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/orders", response_model=OrderAccepted)
async def create_order(
    request: Request,
    authorization: str | None = Header(None),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    timestamp: str | None = Header(None, alias="X-KCS-Timestamp"),
    signature: str | None = Header(None, alias="X-KCS-Signature"),
    db: Session = Depends(get_db),
    enqueue: Callable[[str, object], None] = Depends(get_enqueue),
):
    """
    Accept a partner order.

    The signature covers the raw request body, so the body is read as bytes
    and parsed inside intake rather than by FastAPI. Errors are raised as
    `IntakeError` subclasses and rendered by the handler in `kcs.main`.
    """
    raw_body = await request.body()
    result = submit_order(
        db,
        IntakeRequest(
            authorization=authorization,
            idempotency_key=idempotency_key,
            timestamp=timestamp,
            signature=signature,
            raw_body=raw_body,
        ),
        settings,
        enqueue,
    )
    return OrderAccepted(order_id=result.order_id, status="queued", accepted_at=result.accepted_at)
