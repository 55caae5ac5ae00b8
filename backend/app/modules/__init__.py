"""Application modules.

This package contains the feature modules of the billing backend:
- billing: Subscription cycles, invoice generation, lifecycle and scheduler
- payment_gateway: Payment transactions, processor webhooks and reconciliation
"""
