"""
resumesaas/models/usage_event.py

UsageEvent model: one immutable row of the credit ledger.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class UsageEvent(BaseModel):
    """
    UsageEvent records a credit-consuming action or its refund.

    Kinds:
    - debit: credits >= 1, written by a successful check_and_consume
    - refund: credits < 0, compensates the debit named by refund_of

    Metadata can include:
    - request_id: originating HTTP request
    - reason: refund reason
    """
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    feature: str
    credits: int
    kind: str = "debit"
    refund_of: Optional[int] = None
    occurred_at: datetime
    period_start: datetime
    period_end: datetime
    metadata: Optional[Dict[str, Any]] = None
