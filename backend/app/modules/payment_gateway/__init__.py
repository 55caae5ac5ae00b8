"""Payment gateway module.

Reconciles crypto payment processor status (IPN webhooks and status polls)
into local payment transactions and propagates confirmations to
subscription invoices.
"""

from app.modules.payment_gateway.exceptions import (
    ConcurrentUpdateError,
    InvalidSignatureError,
    InvalidWebhookPayloadError,
    PaymentGatewayError,
    ProcessorUnavailableError,
    TransactionNotFoundError,
)
from app.modules.payment_gateway.models import (
    GatewayProvider,
    PaymentStatus,
    PaymentTransaction,
    WebhookEvent,
)

__all__ = [
    "ConcurrentUpdateError",
    "InvalidSignatureError",
    "InvalidWebhookPayloadError",
    "PaymentGatewayError",
    "ProcessorUnavailableError",
    "TransactionNotFoundError",
    "GatewayProvider",
    "PaymentStatus",
    "PaymentTransaction",
    "WebhookEvent",
]
