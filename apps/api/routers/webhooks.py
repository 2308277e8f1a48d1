"""Payment webhook receiver (at-least-once delivery)."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from exceptions import BillingError
from routers.auth_scope import require_internal_token
from routers.deps import get_clock, get_reconciliation, http_error
from services.job_queue import enqueue_order_reconcile_job
from services.reconciliation import (
    OrderReconciliation,
    handle_order_paid,
    mark_order_paid,
    serialize_order,
)
from services.timeutils import Clock

router = APIRouter(dependencies=[Depends(require_internal_token)])
logger = logging.getLogger(__name__)


class OrderPaidEvent(BaseModel):
    order_id: str = Field(min_length=1, max_length=128)
    paid_email: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None


@router.post("/order-paid")
async def order_paid(
    event: OrderPaidEvent,
    db: AsyncSession = Depends(get_db),
    reconciliation: OrderReconciliation = Depends(get_reconciliation),
    clock: Clock = Depends(get_clock),
):
    """Mark the order paid and grant its credits; duplicate deliveries are no-ops."""
    try:
        if settings.RECONCILE_QUEUE_ENABLED:
            order = await mark_order_paid(
                db,
                event.order_id,
                paid_email=event.paid_email,
                paid_detail=event.detail,
                clock=clock,
            )
            try:
                job = enqueue_order_reconcile_job(event.order_id)
            except Exception as exc:
                logger.exception("Could not enqueue reconcile job for order %s", event.order_id)
                raise HTTPException(status_code=503, detail="Reconcile queue unavailable") from exc
            return {**serialize_order(order), "queued": True, "job_id": job.id}

        result = await handle_order_paid(
            db,
            reconciliation,
            event.order_id,
            paid_email=event.paid_email,
            paid_detail=event.detail,
            clock=clock,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return {**result, "queued": False}
