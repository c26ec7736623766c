"""
resumesaas/models/plan.py

Plan model: a named tier with a monthly credit allowance, a price and the
features it entitles.
"""

from typing import FrozenSet, Optional
from pydantic import BaseModel, ConfigDict, field_validator

UNLIMITED = -1


class Plan(BaseModel):
    """
    Plan represents a billing tier.

    Examples:
    - free (default, no external subscription)
    - basic
    - standard
    - pro

    monthly_credit_allowance is a non-negative integer, or UNLIMITED (-1).
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    monthly_credit_allowance: int
    monthly_price_cents: int = 0
    entitled_features: FrozenSet[str] = frozenset()

    @field_validator("monthly_credit_allowance")
    @classmethod
    def _check_allowance(cls, value: int) -> int:
        if value < 0 and value != UNLIMITED:
            raise ValueError(f"monthly_credit_allowance must be >= 0 or UNLIMITED, got {value}")
        return value

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_credit_allowance == UNLIMITED

    def remaining(self, used: int) -> Optional[int]:
        """Credits left after `used`; None means unlimited."""
        if self.is_unlimited:
            return None
        return self.monthly_credit_allowance - used
