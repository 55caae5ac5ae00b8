"""Pydantic schemas for payment transactions and webhooks."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from app.modules.payment_gateway.models import PaymentStatus


class TransactionCreate(BaseModel):
    """Register a processor payment created by the checkout flow."""
    payment_id: str = Field(..., min_length=1, max_length=64)
    payment_link_id: Optional[str] = Field(None, max_length=64)
    merchant_id: Optional[uuid.UUID] = None
    order_id: Optional[str] = Field(None, max_length=128)
    price_amount: Optional[Decimal] = Field(None, ge=0)
    price_currency: Optional[str] = Field(None, max_length=20)
    pay_amount: Optional[Decimal] = Field(None, ge=0)
    pay_currency: Optional[str] = Field(None, max_length=20)
    pay_address: Optional[str] = Field(None, max_length=255)
    status: PaymentStatus = PaymentStatus.WAITING


class TransactionResponse(BaseModel):
    """Payment transaction response."""
    id: uuid.UUID
    payment_id: str
    payment_link_id: Optional[str]
    merchant_id: Optional[uuid.UUID]
    status: str
    price_amount: Optional[Decimal]
    price_currency: Optional[str]
    pay_amount: Optional[Decimal]
    pay_currency: Optional[str]
    payin_hash: Optional[str]
    payout_hash: Optional[str]
    tx_hash: Optional[str]
    amount_received: Optional[Decimal]
    currency_received: Optional[str]
    payout_amount: Optional[Decimal]
    payout_currency: Optional[str]
    gateway_fee: Optional[Decimal]
    confirmed_at: Optional[datetime]

    class Config:
        from_attributes = True


class PaymentStatusResponse(BaseModel):
    """Current status of a payment after an optional refresh."""
    payment_id: str
    status: str
    tx_hash: Optional[str] = None
    payin_hash: Optional[str] = None
    payout_hash: Optional[str] = None


class WebhookResponse(BaseModel):
    """Webhook acknowledgement."""
    success: bool = True
    payment_id: str
    status: str
    result: str


class RefreshPendingResponse(BaseModel):
    """Pending refresh summary."""
    checked: int
    updated: int
    failed: int
