import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Numeric, String

from payment_reconciler.database import Base


class PaymentStatus(str, enum.Enum):
    CREATED = "created"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_payment_id() -> str:
    return uuid.uuid4().hex


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(32), primary_key=True, default=new_payment_id)
    order_id = Column(String, unique=True, nullable=False)         # local receipt id
    gateway_order_id = Column(String, unique=True, index=True, nullable=False)
    gateway_payment_id = Column(String, index=True, nullable=True)  # set once, on capture
    gateway_signature = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)                 # major units
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String, nullable=False, index=True, default=PaymentStatus.CREATED.value)

    failure_reason = Column(String, nullable=True)
    refund_id = Column(String, nullable=True)
    refund_reason = Column(String, nullable=True)
    notes = Column(JSON, nullable=False, default=dict)

    student_id = Column(String, index=True, nullable=False)
    event_id = Column(String, index=True, nullable=False)
    registration_id = Column(String, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    def __repr__(self) -> str:
        return f"<Payment {self.id} {self.gateway_order_id} {self.status}>"
