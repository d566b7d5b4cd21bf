"""
Order intake.

Checks run in a fixed order so the cheapest and most security-relevant ones
come first: idempotency key present, partner authenticated, signature over
the raw body valid, payload valid, key not used before. Only then is the
order graph written, in one transaction, and the first stage enqueued.
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kcs.core.config import Settings
from kcs.core.exceptions import ConflictError, UnauthorizedError, ValidationError
from kcs.core.stages import IMAGE_ANALYSIS
from kcs.models.asset import Asset, AssetType
from kcs.models.event import Event
from kcs.models.order import Order, OrderBrief, OrderStatus
from kcs.models.partner import Partner
from kcs.models.webhook_outbox import OutboxStatus, WebhookOutbox
from kcs.schemas.order import OrderPayload, Upload

logger = logging.getLogger(__name__)


@dataclass
class IntakeRequest:
    authorization: str | None
    idempotency_key: str | None
    timestamp: str | None
    signature: str | None
    raw_body: bytes


@dataclass
class IntakeResult:
    order_id: str
    accepted_at: datetime


def parse_partner_slug(authorization: str | None) -> str | None:
    """`Bearer <slug>` or `Partner <slug>`."""
    if not authorization:
        return None
    parts = authorization.strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() not in ("bearer", "partner"):
        return None
    return parts[1].strip() or None


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    message = timestamp.encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    timestamp: str,
    signature: str,
    raw_body: bytes,
    tolerance_seconds: int,
    now: float | None = None,
) -> bool:
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    now = time.time() if now is None else now
    if abs(now - sent_at) > tolerance_seconds:
        return False
    expected = compute_signature(secret, timestamp, raw_body)
    return hmac.compare_digest(expected, signature.strip().lower())


def collect_field_errors(exc: PydanticValidationError) -> dict[str, list[str]]:
    field_errors: dict[str, list[str]] = {}
    for error in exc.errors():
        path = ".".join(str(part) for part in error["loc"]) or "body"
        field_errors.setdefault(path, []).append(error["msg"])
    return field_errors


def derive_constraints(payload: OrderPayload) -> dict:
    brief = payload.brief
    return {
        "exclude_topics": brief.sensitive_topics or [],
        "language": brief.language,
        "allow_user_edit": payload.allow_user_edit,
        "has_dedication": bool(brief.dedication),
        "creator_code": brief.creator_code,
    }


def _upload_assets(order: Order, payload: OrderPayload) -> list[Asset]:
    """Assets for every photo the brief refers to. Unreferenced uploads are skipped."""
    uploads: dict[str, Upload] = {u.asset_id: u for u in payload.uploads}
    brief = payload.brief
    references = []
    if brief.child.photo_asset_id:
        references.append((brief.child.photo_asset_id, "child", 0, {"name": brief.child.first_name}))
    for ordinal, character in enumerate(brief.characters):
        if character.photo_asset_id:
            references.append(
                (character.photo_asset_id, "supporting", ordinal,
                 {"name": character.name, "relationship": character.relationship})
            )
    for ordinal, location in enumerate(brief.locations):
        if location.photo_asset_id:
            references.append(
                (location.photo_asset_id, "location", ordinal, {"description": location.description})
            )

    assets = []
    for asset_id, role, ordinal, extra in references:
        upload = uploads.get(asset_id)
        if upload is None:
            raise ValidationError(
                "Referenced upload missing",
                field_errors={"uploads": [f"No upload with asset_id {asset_id}"]},
            )
        assets.append(
            Asset(
                order=order,
                type=AssetType.IMAGE,
                url=str(upload.url),
                meta={
                    "role": role,
                    "ordinal": ordinal,
                    "provenance": "partner_upload",
                    "partner_asset_id": upload.asset_id,
                    "filename": upload.filename,
                    "content_type": upload.content_type,
                    **extra,
                },
            )
        )
    return assets


def submit_order(
    db: Session,
    request: IntakeRequest,
    settings: Settings,
    enqueue: Callable[[str, object], None],
) -> IntakeResult:
    if not request.idempotency_key:
        raise ValidationError(
            "Idempotency-Key header is required",
            field_errors={"Idempotency-Key": ["Header is required"]},
        )

    slug = parse_partner_slug(request.authorization)
    if not slug or not request.timestamp or not request.signature:
        raise UnauthorizedError("Missing partner credentials")

    partner = db.query(Partner).filter(Partner.slug == slug).first()
    if partner is None or not partner.is_active:
        raise UnauthorizedError("Unknown partner")

    if not verify_signature(
        partner.intake_secret,
        request.timestamp,
        request.signature,
        request.raw_body,
        settings.SIGNATURE_TOLERANCE_SECONDS,
    ):
        raise UnauthorizedError("Invalid signature")

    try:
        body = json.loads(request.raw_body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Body is not valid JSON", field_errors={"body": ["Invalid JSON"]})
    try:
        payload = OrderPayload.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid order payload", field_errors=collect_field_errors(exc))

    existing = (
        db.query(Order.id)
        .filter(Order.partner_id == partner.id, Order.idempotency_key == request.idempotency_key)
        .first()
    )
    if existing is not None:
        raise ConflictError("Order already submitted with this Idempotency-Key")

    accepted_at = datetime.now(timezone.utc)
    raw = payload.model_dump(mode="json")
    order = Order(
        partner_id=partner.id,
        partner_order_ref=payload.partner_order_ref,
        idempotency_key=request.idempotency_key,
        product_sku=payload.product_sku,
        currency=payload.currency.upper(),
        customer_email=payload.customer.email,
        allow_user_edit=payload.allow_user_edit,
        status=OrderStatus.PENDING_IMAGE_ANALYSIS,
    )
    order.brief = OrderBrief(
        raw=raw,
        reading_level=payload.brief.reading_level,
        constraints=derive_constraints(payload),
    )
    assets = _upload_assets(order, payload)
    snapshot = {
        "event": "order.created",
        "order_id": None,
        "partner_order_ref": payload.partner_order_ref,
        "status": order.status.value,
        "asset_count": len(assets),
        "accepted_at": accepted_at.isoformat(),
    }
    db.add(order)
    try:
        db.flush()
        snapshot["order_id"] = str(order.id)
        db.add(Event(order_id=order.id, type="order.created", payload=snapshot))
        db.add(
            WebhookOutbox(
                order_id=order.id,
                target=partner.webhook_url,
                payload=snapshot,
                status=OutboxStatus.PENDING,
            )
        )
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent submission of the same key
        db.rollback()
        raise ConflictError("Order already submitted with this Idempotency-Key")

    order_id = order.id
    try:
        enqueue(IMAGE_ANALYSIS, order_id)
    except Exception:
        logger.error(f"Could not enqueue {IMAGE_ANALYSIS} for order {order_id}, removing order", exc_info=True)
        db.delete(order)
        db.commit()
        raise

    logger.info(f"Accepted order {order_id} from partner {partner.slug}", extra={"order_id": str(order_id)})
    return IntakeResult(order_id=str(order_id), accepted_at=accepted_at)
