"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Import identity first - other models have foreign keys to User and Household
from receipt_ledger.modules.identity.models import Household, User  # noqa: F401

from receipt_ledger.modules.insights.models import InsightsCache  # noqa: F401
from receipt_ledger.modules.receipts.models import Receipt, ReceiptItem  # noqa: F401
from receipt_ledger.modules.subscriptions.models import (  # noqa: F401
    Subscription,
    SubscriptionPayment,
)
