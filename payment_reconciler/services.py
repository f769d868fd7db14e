import random
import string
import time
from dataclasses import dataclass

import structlog

from payment_reconciler.amounts import quantize, to_minor_units
from payment_reconciler.config import Settings
from payment_reconciler.gateway import GatewayClient, GatewayOrder
from payment_reconciler.models import Payment, PaymentStatus
from payment_reconciler.reconciliation import Outcome, ReconciliationEngine
from payment_reconciler.repository import OrderRepository
from payment_reconciler.schemas import CreateOrderRequest, VerifyRequest
from payment_reconciler.signatures import checkout_payload, verify_signature

logger = structlog.get_logger(__name__)

INVALID_SIGNATURE = "Invalid signature"

_BASE36 = string.digits + string.ascii_lowercase


def generate_order_id() -> str:
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"order_{int(time.time() * 1000)}_{suffix}"


@dataclass(frozen=True)
class CreatedOrder:
    payment: Payment
    gateway_order: GatewayOrder


@dataclass(frozen=True)
class VerificationResult:
    payment: Payment
    verified: bool


def create_order(
    repository: OrderRepository,
    gateway: GatewayClient,
    request: CreateOrderRequest,
    settings: Settings,
) -> CreatedOrder:
    """
    Create the gateway order first, then persist the local record.

    If the gateway call fails nothing is written locally.
    """
    currency = request.currency or settings.default_currency
    amount = quantize(request.amount, currency)
    order_id = generate_order_id()

    gateway_order = gateway.create_order(
        to_minor_units(amount, currency),
        currency,
        receipt=order_id,
        notes={
            "studentId": request.student_id,
            "eventId": request.event_id,
            "registrationId": request.registration_id,
            **request.notes,
        },
    )

    payment = repository.create(
        Payment(
            order_id=order_id,
            gateway_order_id=gateway_order.gateway_order_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.CREATED.value,
            notes=dict(request.notes),
            student_id=request.student_id,
            event_id=request.event_id,
            registration_id=request.registration_id,
        )
    )
    return CreatedOrder(payment=payment, gateway_order=gateway_order)


def verify_checkout(
    engine: ReconciliationEngine, request: VerifyRequest, secret: str
) -> VerificationResult:
    """
    Client-side confirmation. A matching signature proposes ``paid``; a
    mismatch is recorded as ``failed`` rather than dropped.
    """
    # Unknown orders are a 404 whatever the secret configuration
    payment = engine.repository.find_by_gateway_order_id(request.gateway_order_id)

    verified = verify_signature(
        checkout_payload(request.gateway_order_id, request.gateway_payment_id),
        request.signature,
        secret,
    )

    if verified:
        outcome = Outcome.paid(request.gateway_payment_id, signature=request.signature)
    else:
        logger.warning(
            "payment_signature_mismatch",
            gateway_order_id=request.gateway_order_id,
            gateway_payment_id=request.gateway_payment_id,
        )
        outcome = Outcome.failed(INVALID_SIGNATURE)

    result = engine.apply_to(payment, outcome)
    return VerificationResult(payment=result.payment, verified=verified)
