"""Pydantic schemas for recurring billing."""

import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from app.modules.billing.models import SubscriptionStatus


# ==================== Subscriptions ====================

class SubscriptionResponse(BaseModel):
    """Subscription response."""
    id: uuid.UUID
    merchant_id: uuid.UUID
    customer_id: uuid.UUID
    title: str
    amount: Decimal
    currency: str
    interval: str
    interval_count: int
    billing_anchor: datetime
    next_billing_at: Optional[datetime]
    status: str
    cycles_completed: int
    paid_cycles: int
    max_cycles: Optional[int]
    invoice_due_days: int
    generate_days_in_advance: int
    past_due_after_days: int
    pause_after_missed_payments: int
    auto_resume_on_payment: bool
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SubscriptionStatusUpdate(BaseModel):
    """Request to change a subscription's status."""
    status: SubscriptionStatus


# ==================== Invoices ====================

class InvoiceResponse(BaseModel):
    """Subscription invoice response."""
    id: uuid.UUID
    subscription_id: uuid.UUID
    merchant_id: uuid.UUID
    invoice_number: int
    cycle_start_at: datetime
    due_date: date
    expires_at: datetime
    amount: Decimal
    currency: str
    payment_link_id: str
    payment_url: Optional[str]
    status: str
    paid_at: Optional[datetime]

    class Config:
        from_attributes = True


class InvoiceListResponse(BaseModel):
    """List of invoices."""
    invoices: list[InvoiceResponse]
    total: int


class GenerationResponse(BaseModel):
    """Result of an invoice generation request."""
    outcome: str
    reason: Optional[str] = None
    payment_url: Optional[str] = None
    invoice: Optional[InvoiceResponse] = None


# ==================== Amount Overrides ====================

class AmountOverrideCreate(BaseModel):
    """Request to schedule an amount override."""
    effective_from: date
    effective_until: Optional[date] = None
    amount: Decimal = Field(..., gt=0)
    note: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def check_range(self):
        if self.effective_until is not None and self.effective_until <= self.effective_from:
            raise ValueError("effective_until must be after effective_from")
        return self


class AmountOverrideResponse(BaseModel):
    """Amount override response."""
    id: uuid.UUID
    subscription_id: uuid.UUID
    effective_from: date
    effective_until: Optional[date]
    amount: Decimal
    note: Optional[str]

    class Config:
        from_attributes = True


# ==================== Scheduler ====================

class SchedulerRunRequest(BaseModel):
    """Manual scheduler run parameters."""
    now: Optional[datetime] = Field(None, description="Override the reference time (must be timezone-aware)")


class SchedulerRunResponse(BaseModel):
    """Scheduler run summary."""
    run_at: datetime
    processed: int
    created: int
    existing: int
    skipped: int
    failed: int
    dunning_sent: int
    paused: int
    errors: list[str] = []
