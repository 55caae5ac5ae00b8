"""Payment gateway exceptions."""


class PaymentGatewayError(Exception):
    """Base exception for payment gateway errors."""
    pass


class TransactionNotFoundError(PaymentGatewayError):
    """Raised when no local transaction matches a processor payment ID."""

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment transaction {payment_id} not found")


class InvalidSignatureError(PaymentGatewayError):
    """Raised when a webhook signature is missing or does not verify."""
    pass


class InvalidWebhookPayloadError(PaymentGatewayError):
    """Raised when a webhook payload fails validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Invalid webhook payload: {', '.join(errors)}")


class ProcessorUnavailableError(PaymentGatewayError):
    """Raised when the processor status API is unreachable or returns non-2xx."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ConcurrentUpdateError(PaymentGatewayError):
    """Raised when a transaction kept changing underneath a status update."""

    def __init__(self, payment_id: str, attempts: int):
        self.payment_id = payment_id
        self.attempts = attempts
        super().__init__(f"Transaction {payment_id} changed concurrently {attempts} times")
