"""
Expiry sweep runner.

Expires pending order items whose confirmation window has passed. The same
sweep is reachable three ways: the cron endpoint, the CLI job, and the
optional in-process periodic task started by the FastAPI lifespan
(EXPIRY_SWEEP_INTERVAL_MINUTES > 0).
"""
import asyncio
import logging
from typing import Optional

from marketplace.db.connection import get_session_maker
from marketplace.domain.unit_of_work import AbstractUnitOfWork, SQLAlchemyUnitOfWork

logger = logging.getLogger(__name__)


def new_unit_of_work() -> AbstractUnitOfWork:
    """Fresh session + Unit of Work; the session is closed when the UoW exits."""
    return SQLAlchemyUnitOfWork(get_session_maker()())


async def run_expiry_sweep(lifecycle=None, limit: Optional[int] = None):
    """
    Run one expiry batch.

    Returns:
        ExpirySummary of the batch
    """
    if lifecycle is None:
        from marketplace.application.order_lifecycle_service import build_order_lifecycle
        lifecycle = build_order_lifecycle()
    return await lifecycle.expire_overdue(new_unit_of_work, limit=limit)


async def periodic_expiry_sweep(interval_seconds: int, lifecycle=None):
    """
    Run the expiry sweep periodically.

    Args:
        interval_seconds: Pause between sweeps
        lifecycle: OrderLifecycle to use (built from settings when omitted)
    """
    logger.info(f"🔄 Expiry sweep task started (runs every {interval_seconds}s)")

    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await run_expiry_sweep(lifecycle)
        except asyncio.CancelledError:
            logger.info("Expiry sweep task cancelled")
            break
        except Exception as e:
            logger.error(f"❌ Unexpected error in expiry sweep: {e}", exc_info=True)
            # Keep running; the next sweep picks up whatever was missed
