from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateOrderRequest(CamelModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    student_id: str = Field(min_length=1)
    event_id: str = Field(min_length=1)
    registration_id: str = Field(min_length=1)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    notes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("student_id", "event_id", "registration_id", mode="before")
    @classmethod
    def stringify_ids(cls, value: Any) -> Any:
        # Upstream services send numeric ids
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value


class VerifyRequest(CamelModel):
    gateway_order_id: str = Field(min_length=1)
    gateway_payment_id: str = Field(min_length=1)
    signature: str = Field(min_length=1)


class RefundRequest(CamelModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    order_id: str
    method: Optional[str] = None
    error_description: Optional[str] = None


class RefundEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    payment_id: str


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)

    def entity(self, kind: str) -> Dict[str, Any]:
        """``payload.<kind>.entity`` or an empty dict when absent."""
        container = self.payload.get(kind) or {}
        entity = container.get("entity") if isinstance(container, dict) else None
        return entity if isinstance(entity, dict) else {}


class PaymentOut(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: str
    order_id: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    refund_reason: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)
    student_id: str
    event_id: str
    registration_id: str
    created_at: datetime
    updated_at: datetime
