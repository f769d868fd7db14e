"""
Payment gateway boundary.

Amounts cross this boundary as integer minor units. ``StripeGateway`` is the
production adapter; anything implementing ``GatewayClient`` can be injected
in its place.
"""
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

import stripe
import structlog

from payment_reconciler.config import Settings
from payment_reconciler.exceptions import (
    ConfigurationError,
    GatewayRejected,
    GatewayUnavailable,
    RefundNotAllowed,
)

logger = structlog.get_logger(__name__)

# Network, throttling and 5xx failures: the request may be retried as-is
TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


@dataclass(frozen=True)
class GatewayOrder:
    gateway_order_id: str
    amount: int
    currency: str


@dataclass(frozen=True)
class GatewayRefund:
    refund_id: str
    refunded_amount: int
    status: str


class GatewayClient(Protocol):
    key_id: str

    def create_order(
        self, amount: int, currency: str, receipt: str, notes: Mapping[str, Any]
    ) -> GatewayOrder:
        ...

    def refund(
        self,
        gateway_payment_id: str,
        amount: int,
        notes: Mapping[str, Any],
        idempotency_key: str,
    ) -> GatewayRefund:
        ...


def _metadata(notes: Mapping[str, Any]) -> Dict[str, str]:
    # Stripe metadata values must be strings
    return {str(key): str(value) for key, value in notes.items()}


class StripeGateway:
    """Orders are PaymentIntents; refunds are issued against the captured charge."""

    def __init__(self, secret_key: str, publishable_key: str, expose_errors: bool = False):
        if not secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not set")
        self.secret_key = secret_key
        self.key_id = publishable_key
        # Raw Stripe messages reach API clients only outside production
        self.expose_errors = expose_errors

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(
            settings.stripe_secret_key,
            settings.stripe_publishable_key,
            expose_errors=not settings.is_production,
        )

    def _error_details(self, error: stripe.StripeError) -> Dict[str, str]:
        return {"details": str(error)} if self.expose_errors else {}

    def create_order(
        self, amount: int, currency: str, receipt: str, notes: Mapping[str, Any]
    ) -> GatewayOrder:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.secret_key,
                amount=amount,
                currency=currency.lower(),
                metadata={"receipt": receipt, **_metadata(notes)},
                automatic_payment_methods={"enabled": True},
                idempotency_key=receipt,
            )
        except TRANSIENT_ERRORS as e:
            logger.error("gateway_order_unavailable", receipt=receipt, error=str(e))
            raise GatewayUnavailable(**self._error_details(e)) from e
        except stripe.StripeError as e:
            logger.error("gateway_order_rejected", receipt=receipt, error=str(e))
            raise GatewayRejected(**self._error_details(e)) from e

        logger.info("gateway_order_created", gateway_order_id=intent.id, receipt=receipt)
        return GatewayOrder(
            gateway_order_id=intent.id,
            amount=intent.amount,
            currency=intent.currency.upper(),
        )

    def refund(
        self,
        gateway_payment_id: str,
        amount: int,
        notes: Mapping[str, Any],
        idempotency_key: str,
    ) -> GatewayRefund:
        try:
            refund = stripe.Refund.create(
                api_key=self.secret_key,
                charge=gateway_payment_id,
                amount=amount,
                metadata=_metadata(notes),
                idempotency_key=f"refund_{idempotency_key}",
            )
        except TRANSIENT_ERRORS as e:
            logger.error(
                "gateway_refund_unavailable",
                gateway_payment_id=gateway_payment_id,
                error=str(e),
            )
            raise GatewayUnavailable(**self._error_details(e)) from e
        except stripe.StripeError as e:
            logger.error(
                "gateway_refund_rejected",
                gateway_payment_id=gateway_payment_id,
                error=str(e),
            )
            raise RefundNotAllowed(**self._error_details(e)) from e

        logger.info(
            "gateway_refund_created",
            gateway_payment_id=gateway_payment_id,
            refund_id=refund.id,
            status=refund.status,
        )
        return GatewayRefund(
            refund_id=refund.id,
            refunded_amount=refund.amount,
            status=refund.status,
        )


def configure_stripe(settings: Settings, http_client: Optional[Any] = None) -> None:
    """Bound every SDK call by the configured timeout and retry budget."""
    stripe.max_network_retries = settings.gateway_max_retries
    stripe.default_http_client = http_client or stripe.RequestsClient(
        timeout=settings.gateway_timeout
    )
