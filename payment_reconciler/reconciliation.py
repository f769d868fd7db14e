"""
Payment state machine.

Confirmations arrive from two independent paths (the client verify call
and gateway webhooks) in any order and possibly more than once. Each is
turned into an ``Outcome`` and applied here. Applying an outcome that is
already satisfied, or that the graph does not allow from the current
state, is a successful no-op, which makes duplicate and reordered
deliveries harmless.

    created  -> pending, paid, failed
    pending  -> paid, failed
    failed   -> paid        (only while no gateway payment id is bound)
    paid     -> refunded
    refunded -> (terminal)
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from payment_reconciler.amounts import from_minor_units, quantize, to_decimal, to_minor_units
from payment_reconciler.exceptions import ConflictError, InvalidTransitionError, ValidationError
from payment_reconciler.gateway import GatewayClient
from payment_reconciler.models import Payment, PaymentStatus
from payment_reconciler.repository import OrderRepository

logger = structlog.get_logger(__name__)

TRANSITIONS: Mapping[PaymentStatus, frozenset] = {
    PaymentStatus.CREATED: frozenset({PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PAID}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

DEFAULT_REFUND_REASON = "Requested by user"

TransitionListener = Callable[[Payment, PaymentStatus], None]


@dataclass(frozen=True)
class Outcome:
    """A proposed state plus the fields recorded if it is accepted."""

    status: PaymentStatus
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def pending(cls, payment_method: Optional[str] = None) -> "Outcome":
        return cls(PaymentStatus.PENDING, _compact(payment_method=payment_method))

    @classmethod
    def paid(
        cls,
        gateway_payment_id: str,
        signature: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> "Outcome":
        return cls(
            PaymentStatus.PAID,
            _compact(
                gateway_payment_id=gateway_payment_id,
                gateway_signature=signature,
                payment_method=payment_method,
            ),
        )

    @classmethod
    def failed(cls, reason: str) -> "Outcome":
        return cls(PaymentStatus.FAILED, {"failure_reason": reason})

    @classmethod
    def refunded(cls, refund_id: str, reason: Optional[str] = None) -> "Outcome":
        return cls(PaymentStatus.REFUNDED, _compact(refund_id=refund_id, refund_reason=reason))

    def changes(self) -> Dict[str, Any]:
        return {"status": self.status, **self.fields}


def _compact(**values: Any) -> Dict[str, Any]:
    return {name: value for name, value in values.items() if value is not None}


@dataclass(frozen=True)
class ApplyResult:
    payment: Payment
    changed: bool


@dataclass(frozen=True)
class RefundResult:
    payment: Payment
    refund_id: str
    amount: Decimal
    status: str


class ReconciliationEngine:
    def __init__(
        self,
        repository: OrderRepository,
        gateway: Optional[GatewayClient] = None,
        on_transition: Optional[TransitionListener] = None,
    ):
        self.repository = repository
        self.gateway = gateway
        self.on_transition = on_transition

    @staticmethod
    def is_admissible(payment: Payment, target: PaymentStatus) -> bool:
        current = PaymentStatus(payment.status)
        if target not in TRANSITIONS[current]:
            return False
        if current is PaymentStatus.FAILED and payment.gateway_payment_id:
            return False
        return True

    def apply_outcome(self, gateway_order_id: str, outcome: Outcome) -> ApplyResult:
        payment = self.repository.find_by_gateway_order_id(gateway_order_id)
        return self._apply(payment, outcome)

    def apply_to(self, payment: Payment, outcome: Outcome) -> ApplyResult:
        return self._apply(payment, outcome)

    def apply_refund_outcome(self, gateway_payment_id: str, outcome: Outcome) -> ApplyResult:
        payment = self.repository.find_by_gateway_payment_id(gateway_payment_id)
        return self._apply(payment, outcome)

    def refund(
        self,
        payment_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        if self.gateway is None:
            raise RuntimeError("ReconciliationEngine was built without a gateway client")

        payment = self.repository.get(payment_id)
        if payment.status != PaymentStatus.PAID.value:
            raise InvalidTransitionError(
                "Only paid payments can be refunded", current_status=payment.status
            )
        if not payment.gateway_payment_id:
            raise ValidationError(
                "Payment ID not found for refund processing", fields=["gatewayPaymentId"]
            )

        original = to_decimal(payment.amount)
        if amount is not None and to_decimal(amount) <= 0:
            raise ValidationError("Refund amount must be positive", fields=["amount"])
        if amount is not None:
            refund_amount = quantize(min(to_decimal(amount), original), payment.currency)
        else:
            refund_amount = original
        reason = reason or DEFAULT_REFUND_REASON

        logger.info(
            "payment_refund_requested",
            payment_id=payment.id,
            amount=str(refund_amount),
            reason=reason,
        )
        # GatewayError propagates; the payment stays paid and the caller retries
        # with the same idempotency key.
        receipt = self.gateway.refund(
            payment.gateway_payment_id,
            to_minor_units(refund_amount, payment.currency),
            notes={"reason": reason, "original_amount": str(original)},
            idempotency_key=payment.order_id,
        )

        result = self._apply(payment, Outcome.refunded(receipt.refund_id, reason))
        return RefundResult(
            payment=result.payment,
            refund_id=receipt.refund_id,
            amount=from_minor_units(receipt.refunded_amount, payment.currency),
            status=receipt.status,
        )

    def _apply(self, payment: Payment, outcome: Outcome) -> ApplyResult:
        try:
            return self._apply_once(payment, outcome)
        except ConflictError:
            # Lost a race: re-evaluate once against the winner's state
            payment = self.repository.get(payment.id)

        try:
            return self._apply_once(payment, outcome)
        except ConflictError:
            logger.warning(
                "payment_outcome_conflict",
                payment_id=payment.id,
                proposed_status=outcome.status.value,
            )
            raise

    def _apply_once(self, payment: Payment, outcome: Outcome) -> ApplyResult:
        previous = PaymentStatus(payment.status)
        if not self.is_admissible(payment, outcome.status):
            logger.info(
                "payment_outcome_ignored",
                payment_id=payment.id,
                current_status=previous.value,
                proposed_status=outcome.status.value,
            )
            return ApplyResult(payment, changed=False)

        updated = self.repository.compare_and_set_status(payment.id, previous, outcome.changes())
        logger.info(
            "payment_transitioned",
            payment_id=updated.id,
            gateway_order_id=updated.gateway_order_id,
            from_status=previous.value,
            to_status=updated.status,
        )
        if self.on_transition is not None:
            self.on_transition(updated, previous)
        return ApplyResult(updated, changed=True)
