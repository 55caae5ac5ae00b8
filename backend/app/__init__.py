"""Cryptrac Billing Backend Application.

Recurring crypto billing engine and payment status reconciliation.

Modules:
    - core: Configuration, database, Redis, Celery, logging and metrics setup
    - modules.billing: Subscription cycles, invoice generation, lifecycle, scheduler
    - modules.payment_gateway: Payment transactions, processor webhooks, reconciliation
"""

__version__ = "0.1.0"
