"""Recurring billing module.

Implements subscription billing cycles, per-cycle invoice generation with
amount overrides, the subscription lifecycle and the scheduler driver.
"""

from app.modules.billing.exceptions import (
    BillingError,
    CatchUpLimitExceeded,
    DuplicateInvoiceError,
    InvalidOverrideError,
    InvalidTransitionError,
    PaymentLinkError,
    SubscriptionNotFoundError,
)
from app.modules.billing.models import (
    AmountOverride,
    IntervalUnit,
    Invoice,
    InvoiceStatus,
    Merchant,
    Subscription,
    SubscriptionStatus,
)

__all__ = [
    "BillingError",
    "CatchUpLimitExceeded",
    "DuplicateInvoiceError",
    "InvalidOverrideError",
    "InvalidTransitionError",
    "PaymentLinkError",
    "SubscriptionNotFoundError",
    "AmountOverride",
    "IntervalUnit",
    "Invoice",
    "InvoiceStatus",
    "Merchant",
    "Subscription",
    "SubscriptionStatus",
]
