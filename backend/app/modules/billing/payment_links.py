"""Client for the payment-link creation service.

Subscription invoices are paid through single-use hosted payment links. The
link service is an internal collaborator authenticated with the shared
``X-Internal-Key`` header.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import httpx

from app.core.config import settings, require_setting
from app.modules.billing.exceptions import PaymentLinkError

logger = logging.getLogger(__name__)


@dataclass
class PaymentLinkRequest:
    """Data transfer object for creating a payment link."""
    merchant_id: uuid.UUID
    title: str
    amount: Decimal
    currency: str
    expires_at: datetime
    accepted_cryptos: list[str] = field(default_factory=list)
    max_uses: int = 1
    charge_customer_fee: bool = False
    auto_convert_enabled: bool = False
    preferred_payout_currency: Optional[str] = None
    source: str = "subscription"
    subscription_id: Optional[uuid.UUID] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "merchant_id": str(self.merchant_id),
            "title": self.title,
            "amount": str(self.amount),
            "currency": self.currency,
            "accepted_cryptos": list(self.accepted_cryptos),
            "max_uses": self.max_uses,
            "expires_at": self.expires_at.isoformat(),
            "charge_customer_fee": self.charge_customer_fee,
            "auto_convert_enabled": self.auto_convert_enabled,
            "preferred_payout_currency": self.preferred_payout_currency,
            "source": self.source,
            "subscription_id": str(self.subscription_id) if self.subscription_id else None,
            "metadata": self.metadata,
        }


@dataclass
class PaymentLinkResult:
    """Result from payment link creation."""
    id: str
    public_url: Optional[str] = None
    raw: Optional[dict] = None


class PaymentLinkClient:
    """Creates single-use payment links through the link service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url
        self._api_key = api_key
        self.timeout = timeout or settings.PAYMENT_LINKS_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def endpoint(self) -> str:
        if self._base_url:
            return self._base_url
        if settings.PAYMENT_LINKS_API_URL:
            return settings.PAYMENT_LINKS_API_URL
        origin = require_setting("APP_ORIGIN").rstrip("/")
        return f"{origin}/api/internal/payments/create"

    @property
    def api_key(self) -> str:
        return self._api_key or require_setting("INTERNAL_API_KEY")

    async def create(self, request: PaymentLinkRequest) -> PaymentLinkResult:
        """Create a payment link.

        Args:
            request: Link parameters

        Returns:
            PaymentLinkResult with the link ID and public URL

        Raises:
            ConfigurationError: If the endpoint or key is not configured
            PaymentLinkError: If the service is unreachable or rejects the request
        """
        endpoint = self.endpoint
        headers = {
            "Content-Type": "application/json",
            "X-Internal-Key": self.api_key,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(endpoint, json=request.to_payload(), headers=headers)
        except httpx.TimeoutException as e:
            raise PaymentLinkError(f"Payment link service timeout: {e}") from e
        except httpx.HTTPError as e:
            raise PaymentLinkError(f"Payment link service unreachable: {e}") from e

        if response.status_code >= 400:
            logger.error(
                f"Payment link creation failed: {response.status_code} - {response.text[:200]}"
            )
            raise PaymentLinkError(
                f"Payment link service error: {response.status_code}",
                status_code=response.status_code,
            )

        body = response.json() if response.content else {}
        link = body.get("payment_link") or {}
        link_id = link.get("id")
        if not link_id:
            raise PaymentLinkError("Payment link service returned no link")

        return PaymentLinkResult(
            id=str(link_id),
            public_url=link.get("payment_url") or link.get("public_url"),
            raw=link,
        )
