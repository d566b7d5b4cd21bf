"""Order status endpoint for operators."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from kcs.api.deps import get_db, require_operator
from kcs.models.event import Event
from kcs.models.order import Order
from kcs.schemas.order import OrderEventOut, OrderStatusOut

router = APIRouter(dependencies=[Depends(require_operator)])


@router.get("/{order_id}", response_model=OrderStatusOut)
def get_order_status(order_id: uuid.UUID, db: Session = Depends(get_db)):
    """Where an order is: order, story and print status plus its event trail."""
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    events = (
        db.query(Event)
        .filter(Event.order_id == order.id)
        .order_by(Event.created_at, Event.id)
        .all()
    )
    story = order.story
    return OrderStatusOut(
        order_id=str(order.id),
        order_number=order.order_number,
        status=order.status.value,
        story_status=story.status.value if story and story.status else None,
        print_status=story.print_status.value if story and story.print_status else None,
        print_metadata=story.print_metadata if story else None,
        events=[OrderEventOut.model_validate(event) for event in events],
    )
