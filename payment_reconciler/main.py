import json
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SchemaError
from starlette.concurrency import run_in_threadpool

from payment_reconciler import __version__
from payment_reconciler.config import Settings, get_settings
from payment_reconciler.database import get_engine as get_db_engine
from payment_reconciler.database import init_db
from payment_reconciler.dependencies import get_engine
from payment_reconciler.exceptions import ConfigurationError, PaymentError, SignatureError, ValidationError
from payment_reconciler.gateway import configure_stripe
from payment_reconciler.logging_config import setup_logging
from payment_reconciler.reconciliation import ReconciliationEngine
from payment_reconciler.routes import router
from payment_reconciler.schemas import WebhookEnvelope
from payment_reconciler.signatures import verify_signature
from payment_reconciler.webhooks import handle_webhook_event

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings)
    configure_stripe(settings)
    init_db(get_db_engine())
    logger.info(
        "application_startup",
        env=settings.app_env,
        gateway_configured=settings.gateway_configured,
        verify_webhooks=settings.verify_webhooks,
    )
    yield
    logger.info("application_shutdown")


app = FastAPI(title="Payment Reconciliation Service", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )
    start = time.perf_counter()
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "payment_error",
        error_type=type(exc).__name__,
        error=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err["loc"] if p != "body") for err in exc.errors()]
    logger.info("request_validation_failed", fields=fields)
    return JSONResponse(
        status_code=400,
        content={"error": "Validation failed", "details": fields},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_exception", error_type=type(exc).__name__)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


app.include_router(router)


@app.get("/health")
def health(settings: Settings = Depends(get_settings)):
    return {
        "status": "healthy",
        "service": "Payment Service",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "gateway_configured": settings.gateway_configured,
        "environment": settings.app_env,
    }


@app.post("/api/payments/webhook")
async def gateway_webhook(
    request: Request,
    x_webhook_signature: str = Header(None),
    settings: Settings = Depends(get_settings),
    engine: ReconciliationEngine = Depends(get_engine),
):
    # Signature covers the body exactly as received, never a re-serialised copy
    payload = await request.body()

    if settings.verify_webhooks:
        if not settings.stripe_webhook_secret:
            raise ConfigurationError("Webhook secret is not configured")
        if not x_webhook_signature:
            raise SignatureError("Missing webhook signature")
        if not verify_signature(payload, x_webhook_signature, settings.stripe_webhook_secret):
            logger.warning("webhook_signature_invalid")
            raise SignatureError("Invalid webhook signature")

    try:
        envelope = WebhookEnvelope.model_validate(json.loads(payload))
    except (ValueError, SchemaError):
        raise ValidationError("Invalid payload")

    logger.info("webhook_received", webhook_event=envelope.event)
    # Acknowledge only after local processing; errors surface as non-2xx so
    # the gateway redelivers.
    result = await run_in_threadpool(handle_webhook_event, engine, envelope)
    return {
        "success": True,
        "event": envelope.event,
        "changed": bool(result and result.changed),
    }
