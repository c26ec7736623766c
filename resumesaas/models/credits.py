"""
resumesaas/models/credits.py

Results returned by the entitlement resolver and the credit accounting service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class Decision(str, Enum):
    """Outcome of an entitlement + balance check."""
    ALLOWED = "allowed"
    DENIED_NO_FEATURE = "denied_no_feature"
    DENIED_INSUFFICIENT_CREDITS = "denied_insufficient_credits"
    DENIED_SUBSCRIPTION_INACTIVE = "denied_subscription_inactive"


@dataclass(frozen=True)
class ConsumeResult:
    success: bool
    reason: Decision
    remaining: Optional[int]  # None = unlimited
    required: int
    plan_id: str
    usage_event_id: Optional[int] = None
    bypassed: bool = False


class CreditSummary(BaseModel):
    """Balance snapshot served by GET /api/credits (camelCase on the wire)."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    plan: str
    status: str
    total_credits: Optional[int]  # None = unlimited
    used_credits: int
    remaining_credits: Optional[int]
    unlimited: bool
    period_start: datetime
    period_end: datetime


@dataclass
class UsageBreakdown:
    total_used: int
    by_feature: Dict[str, int] = field(default_factory=dict)
    by_day: Dict[str, int] = field(default_factory=dict)
