"""
Gateway webhook dispatch.

Handlers translate an event into an ``Outcome`` and hand it to the
reconciliation engine. The gateway delivers at least once, so every
handler relies on the engine treating repeated outcomes as no-ops.
"""
from typing import Callable, Dict, Optional

import structlog
from pydantic import ValidationError as SchemaError

from payment_reconciler.exceptions import ValidationError
from payment_reconciler.reconciliation import ApplyResult, Outcome, ReconciliationEngine
from payment_reconciler.schemas import PaymentEntity, RefundEntity, WebhookEnvelope

logger = structlog.get_logger(__name__)

DEFAULT_FAILURE_REASON = "Payment failed"

Handler = Callable[[ReconciliationEngine, WebhookEnvelope], ApplyResult]


def _parse_entity(envelope: WebhookEnvelope, kind: str, model):
    try:
        return model.model_validate(envelope.entity(kind))
    except SchemaError as e:
        raise ValidationError(
            f"Malformed {envelope.event} payload",
            fields=[".".join(str(p) for p in err["loc"]) for err in e.errors()],
        ) from e


def _payment_entity(envelope: WebhookEnvelope) -> PaymentEntity:
    return _parse_entity(envelope, "payment", PaymentEntity)


def _refund_entity(envelope: WebhookEnvelope) -> RefundEntity:
    return _parse_entity(envelope, "refund", RefundEntity)


def handle_payment_authorized(engine, envelope):
    entity = _payment_entity(envelope)
    return engine.apply_outcome(entity.order_id, Outcome.pending(payment_method=entity.method))


def handle_payment_captured(engine, envelope):
    entity = _payment_entity(envelope)
    return engine.apply_outcome(
        entity.order_id,
        Outcome.paid(entity.id, payment_method=entity.method),
    )


def handle_payment_failed(engine, envelope):
    entity = _payment_entity(envelope)
    reason = entity.error_description or DEFAULT_FAILURE_REASON
    return engine.apply_outcome(entity.order_id, Outcome.failed(reason))


def handle_refund_processed(engine, envelope):
    # Refund events only carry the payment id, not the order id
    entity = _refund_entity(envelope)
    return engine.apply_refund_outcome(entity.payment_id, Outcome.refunded(entity.id))


HANDLERS: Dict[str, Handler] = {
    "payment.authorized": handle_payment_authorized,
    "payment.captured": handle_payment_captured,
    "payment.failed": handle_payment_failed,
    "refund.processed": handle_refund_processed,
}


def handle_webhook_event(
    engine: ReconciliationEngine, envelope: WebhookEnvelope
) -> Optional[ApplyResult]:
    """Apply a verified webhook. Unknown events are logged and return None."""
    handler = HANDLERS.get(envelope.event)
    if handler is None:
        logger.info("webhook_event_unhandled", webhook_event=envelope.event)
        return None

    result = handler(engine, envelope)
    logger.info(
        "webhook_event_processed",
        webhook_event=envelope.event,
        payment_id=result.payment.id,
        status=result.payment.status,
        changed=result.changed,
    )
    return result
