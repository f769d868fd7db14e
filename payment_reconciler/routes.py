from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from payment_reconciler.amounts import to_minor_units
from payment_reconciler.auth import verify_token
from payment_reconciler.config import Settings, get_settings
from payment_reconciler.dependencies import (
    get_engine,
    get_gateway,
    get_refund_engine,
    get_repository,
)
from payment_reconciler.gateway import GatewayClient
from payment_reconciler.reconciliation import ReconciliationEngine
from payment_reconciler.repository import OrderRepository
from payment_reconciler.schemas import CreateOrderRequest, PaymentOut, RefundRequest, VerifyRequest
from payment_reconciler.services import create_order, verify_checkout

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/create-order", status_code=201)
def create_order_api(
    request: CreateOrderRequest,
    repository: OrderRepository = Depends(get_repository),
    gateway: GatewayClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
    auth=Depends(verify_token),
):
    created = create_order(repository, gateway, request, settings)
    payment = created.payment
    return {
        "success": True,
        "orderId": created.gateway_order.gateway_order_id,
        "amount": to_minor_units(payment.amount, payment.currency),
        "currency": payment.currency,
        "keyId": gateway.key_id,
        "paymentId": payment.id,
    }


@router.post("/verify")
def verify_payment_api(
    request: VerifyRequest,
    engine: ReconciliationEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    result = verify_checkout(engine, request, settings.stripe_secret_key)
    if not result.verified:
        return JSONResponse(
            status_code=400,
            content={"error": "Payment verification failed", "verified": False},
        )
    return {
        "success": True,
        "verified": True,
        "paymentId": result.payment.id,
        "status": result.payment.status,
        "message": "Payment verified successfully",
    }


@router.get("/{payment_id}")
def get_payment_api(
    payment_id: str,
    repository: OrderRepository = Depends(get_repository),
    auth=Depends(verify_token),
):
    payment = repository.get(payment_id)
    return {
        "success": True,
        "payment": PaymentOut.model_validate(payment).model_dump(mode="json", by_alias=True),
    }


@router.post("/{payment_id}/refund")
def refund_api(
    payment_id: str,
    request: Optional[RefundRequest] = None,
    engine: ReconciliationEngine = Depends(get_refund_engine),
    auth=Depends(verify_token),
):
    request = request or RefundRequest()
    result = engine.refund(payment_id, amount=request.amount, reason=request.reason)
    return {
        "success": True,
        "refundId": result.refund_id,
        "amount": str(result.amount),
        "status": result.status,
        "paymentStatus": result.payment.status,
        "message": "Refund processed successfully",
    }
