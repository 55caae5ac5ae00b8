"""Payment processor implementations."""

from app.modules.payment_gateway.gateways.nowpayments import NOWPaymentsGateway

__all__ = ["NOWPaymentsGateway"]
