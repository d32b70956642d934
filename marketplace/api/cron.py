"""Scheduled job endpoints (called by an external cron with CRON_SECRET)"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from marketplace.api.deps import get_order_lifecycle, verify_cron_secret
from marketplace.application.order_lifecycle_service import OrderLifecycle
from marketplace.infrastructure.expiry_scheduler import run_expiry_sweep

logger = logging.getLogger(__name__)

router = APIRouter()


class ExpirySweepResponse(BaseModel):
    expired: int
    conflicts: int
    failed: int
    expired_item_ids: List[str]


@router.post(
    "/cron/expire-orders",
    response_model=ExpirySweepResponse,
    dependencies=[Depends(verify_cron_secret)]
)
async def expire_orders(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    lifecycle: OrderLifecycle = Depends(get_order_lifecycle)
):
    """Expire pending items past their confirmation deadline (one batch)."""
    summary = await run_expiry_sweep(lifecycle, limit=limit)
    return ExpirySweepResponse(
        expired=summary.expired,
        conflicts=summary.conflicts,
        failed=summary.failed,
        expired_item_ids=summary.expired_item_ids,
    )
