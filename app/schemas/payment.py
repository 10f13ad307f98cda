"""Schemas for payment entities."""
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from app.models.order import PaymentMethod
from app.models.payment import PaymentGateway, PaymentStatus


class InitiatePaymentRequest(BaseModel):
    order_id: int = Field(gt=0)
    # Cash on delivery never goes through a gateway.
    payment_method: Literal["vnpay", "momo", "bank_card"]
    bank_code: str | None = Field(default=None, max_length=32, pattern=r"^[A-Za-z0-9_]+$")


class PaymentRead(BaseModel):
    id: int
    order_id: int
    user_id: int
    amount: int
    method: PaymentMethod
    status: PaymentStatus
    gateway: PaymentGateway | None
    reference: str | None
    transaction_id: str | None
    payment_url: str | None
    deeplink: str | None
    qr_code_url: str | None
    bank_code: str | None
    failure_reason: str | None
    paid_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InitiatePaymentResponse(BaseModel):
    payment_url: str | None
    deeplink: str | None
    qr_code_url: str | None
    payment: PaymentRead


class Pagination(BaseModel):
    page: int
    limit: int
    total_items: int
    total_pages: int


class PaymentHistoryRead(BaseModel):
    items: list[PaymentRead]
    pagination: Pagination
