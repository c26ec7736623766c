"""
resumesaas/models/subscription.py

Subscription model: the ledger's view of a user's plan and billing period.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    FREE = "free"


class Subscription(BaseModel):
    """
    Subscription represents a user's current plan assignment.

    Constraint: each user has exactly one subscription row (or an implicit
    free one when no row exists). ledger_version is None for implicit rows.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    external_customer_ref: Optional[str] = None
    external_subscription_ref: Optional[str] = None
    cancel_at_period_end: bool = False
    ledger_version: Optional[int] = None
    updated_at: Optional[datetime] = None

    @property
    def is_implicit(self) -> bool:
        return self.ledger_version is None
