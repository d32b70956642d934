"""
Pickup Marketplace Settlement Service - Main Application Entry Point
"""
import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from marketplace.api import cron, fees, notifications, orders, webhooks
from marketplace.config import settings
from marketplace.db import close_db, init_db
from marketplace.domain.entities import (
    ConflictError,
    DomainError,
    InvalidInputError,
    NotAuthorizedError,
    NotFoundError,
    PaymentSetupRequiredError,
    SignatureVerificationError,
)
from marketplace.infrastructure.expiry_scheduler import periodic_expiry_sweep
from marketplace.infrastructure.task_queue import get_task_queue
from marketplace.version import __version__


# Custom logging filter to redact sensitive data
class SensitiveDataFilter(logging.Filter):
    """Filter to redact sensitive data from logs"""

    def filter(self, record):
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            # Redact bearer tokens (processor API key, cron secret, push gateway)
            msg = re.sub(r'(Bearer\s+)[A-Za-z0-9._~+/=-]+', r'\1[REDACTED]', msg)

            # Redact processor secret keys that end up in error bodies
            msg = re.sub(r'\b(sk|rk|whsec)_(live|test)?_?[A-Za-z0-9]{8,}\b', '[KEY_REDACTED]', msg)

            # Redact webhook signatures
            msg = re.sub(r'sha256=[0-9a-fA-F]{16,}', 'sha256=[REDACTED]', msg)

            record.msg = msg
        return True


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Add filter to all loggers
for handler in logging.root.handlers:
    handler.addFilter(SensitiveDataFilter())

# Add filter to httpx logger (logs processor and transport requests)
httpx_logger = logging.getLogger('httpx')
httpx_logger.addFilter(SensitiveDataFilter())

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown"""
    # Startup
    logger.info("🚀 Starting Pickup Marketplace Settlement Service")
    logger.info(f"📦 Version: {__version__}")
    logger.info(f"📝 Environment: {settings.environment}")

    await init_db()

    task_queue = get_task_queue()
    await task_queue.start()

    expiry_task = None
    if settings.expiry_sweep_interval_minutes > 0:
        expiry_task = asyncio.create_task(
            periodic_expiry_sweep(settings.expiry_sweep_interval_minutes * 60)
        )
        logger.info("✅ Expiry sweep task started")
    else:
        logger.info("Expiry sweep disabled in-process, use POST /api/v1/cron/expire-orders")

    logger.info("✅ Configuration loaded successfully")
    logger.info("🔗 Webhook endpoint: /webhooks/payments")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if expiry_task is not None:
        expiry_task.cancel()
        try:
            await expiry_task
        except asyncio.CancelledError:
            logger.info("✅ Expiry sweep task cancelled")

    await task_queue.stop()
    await close_db()


app = FastAPI(
    title="Pickup Marketplace Settlement Service",
    description="Order lifecycle, cancellation refunds, vendor fee ledger and notifications",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)


# ============================================
# Error mapping
# ============================================

def _error_response(status_code: int, exc: DomainError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "code": exc.code}
    )


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    logger.info(f"Rejected {request.method} {request.url.path}: {exc}")
    return _error_response(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(PaymentSetupRequiredError)
async def payment_setup_handler(request: Request, exc: PaymentSetupRequiredError):
    return _error_response(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(SignatureVerificationError)
async def signature_handler(request: Request, exc: SignatureVerificationError):
    return _error_response(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    logger.info(f"Conflict on {request.method} {request.url.path}: {exc}")
    return _error_response(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(NotAuthorizedError)
async def not_authorized_handler(request: Request, exc: NotAuthorizedError):
    logger.warning(f"Forbidden {request.method} {request.url.path}: {exc}")
    return _error_response(status.HTTP_403_FORBIDDEN, exc)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return _error_response(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    """The primary mutation failed and was rolled back; nothing was applied."""
    logger.error(f"❌ Storage error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage unavailable, nothing was applied", "code": "storage_unavailable"}
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors (never the body: it may carry contact details)"""
    logger.warning(f"Validation error for {request.method} {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_encoder(exc.errors())}
    )


# Register webhook routes
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

# Register marketplace API routes
app.include_router(orders.router, prefix="/api/v1", tags=["orders"])
app.include_router(fees.router, prefix="/api/v1", tags=["fees"])
app.include_router(notifications.router, prefix="/api/v1", tags=["notifications"])
app.include_router(cron.router, prefix="/api/v1", tags=["cron"])


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "app": "Pickup Marketplace Settlement Service",
        "version": __version__,
        "status": "running",
        "environment": settings.environment,
        "webhook_url": "/webhooks/payments"
    }


@app.get("/health")
async def health_check():
    """Liveness plus side-effect queue counters."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment,
        "task_queue": get_task_queue().get_stats()
    }
