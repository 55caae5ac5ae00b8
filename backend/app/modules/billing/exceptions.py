"""Billing exceptions."""


class BillingError(Exception):
    """Base exception for recurring billing errors."""
    pass


class SubscriptionNotFoundError(BillingError):
    """Raised when a subscription does not exist."""

    def __init__(self, subscription_id):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription {subscription_id} not found")


class InvalidTransitionError(BillingError):
    """Raised when a lifecycle transition is not allowed from the current status."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition subscription from {current} to {target}")


class DuplicateInvoiceError(BillingError):
    """Raised when an invoice already exists for a subscription cycle."""

    def __init__(self, subscription_id, cycle_start_at):
        self.subscription_id = subscription_id
        self.cycle_start_at = cycle_start_at
        super().__init__(
            f"Invoice already exists for subscription {subscription_id} "
            f"cycle {cycle_start_at.isoformat()}"
        )


class PaymentLinkError(BillingError):
    """Raised when the payment-link service fails. Retryable."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class InvalidOverrideError(BillingError):
    """Raised when an amount override is rejected."""
    pass


class CatchUpLimitExceeded(BillingError):
    """Raised when advancing a billing pointer needs too many steps."""

    def __init__(self, iterations: int):
        self.iterations = iterations
        super().__init__(f"Catch-up exceeded {iterations} iterations")
