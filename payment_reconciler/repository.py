"""
Durable Payment records.

``compare_and_set_status`` is the only way a stored Payment changes after
creation. It is a single conditional UPDATE guarded by the status the
caller last observed, so concurrent confirmations for the same order end
with exactly one winner; the loser gets ConflictError and re-reads.
"""
from typing import Any, Dict, Mapping

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payment_reconciler.exceptions import ConflictError, DuplicateOrderError, PaymentNotFound
from payment_reconciler.models import Payment, PaymentStatus, utcnow

logger = structlog.get_logger(__name__)

# Columns an outcome may write. Everything else is immutable after create.
MUTABLE_FIELDS = frozenset({
    "status",
    "gateway_payment_id",
    "gateway_signature",
    "payment_method",
    "failure_reason",
    "refund_id",
    "refund_reason",
})

WRITE_ONCE_FIELDS = ("gateway_payment_id", "refund_id")


class OrderRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(self, payment: Payment) -> Payment:
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self._exists(payment):
                logger.warning(
                    "payment_duplicate_order",
                    gateway_order_id=payment.gateway_order_id,
                    order_id=payment.order_id,
                )
                raise DuplicateOrderError(gatewayOrderId=payment.gateway_order_id)
            raise
        self.db.refresh(payment)
        logger.info(
            "payment_created",
            payment_id=payment.id,
            gateway_order_id=payment.gateway_order_id,
            amount=str(payment.amount),
            currency=payment.currency,
        )
        return payment

    def get(self, payment_id: str) -> Payment:
        return self._find_one(Payment.id == payment_id, paymentId=payment_id)

    def find_by_gateway_order_id(self, gateway_order_id: str) -> Payment:
        return self._find_one(
            Payment.gateway_order_id == gateway_order_id,
            gatewayOrderId=gateway_order_id,
        )

    def find_by_gateway_payment_id(self, gateway_payment_id: str) -> Payment:
        return self._find_one(
            Payment.gateway_payment_id == gateway_payment_id,
            gatewayPaymentId=gateway_payment_id,
        )

    def compare_and_set_status(
        self,
        payment_id: str,
        expected_status: PaymentStatus,
        new_fields: Mapping[str, Any],
    ) -> Payment:
        unknown = set(new_fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be written: {sorted(unknown)}")

        expected = PaymentStatus(expected_status).value
        values: Dict[str, Any] = {
            name: value.value if isinstance(value, PaymentStatus) else value
            for name, value in new_fields.items()
        }
        values["updated_at"] = utcnow()

        criteria = [Payment.id == payment_id, Payment.status == expected]
        for name in WRITE_ONCE_FIELDS:
            if values.get(name) is not None:
                column = getattr(Payment, name)
                criteria.append(or_(column.is_(None), column == values[name]))

        stmt = (
            update(Payment)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.db.rollback()
            current = self.get(payment_id)
            logger.info(
                "payment_write_conflict",
                payment_id=payment_id,
                expected_status=expected,
                current_status=current.status,
            )
            raise ConflictError(
                paymentId=payment_id,
                expectedStatus=expected,
                currentStatus=current.status,
            )

        self.db.commit()
        return self.get(payment_id)

    def _find_one(self, *criteria, **context) -> Payment:
        stmt = select(Payment).where(*criteria).execution_options(populate_existing=True)
        payment = self.db.execute(stmt).scalars().first()
        if payment is None:
            raise PaymentNotFound(**context)
        return payment

    def _exists(self, payment: Payment) -> bool:
        stmt = select(Payment.id).where(
            or_(
                Payment.gateway_order_id == payment.gateway_order_id,
                Payment.order_id == payment.order_id,
            )
        )
        return self.db.execute(stmt).first() is not None
