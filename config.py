"""
Service configuration

Settings are read from the environment (a .env file is honoured through
python-dotenv). The VIP policy is an immutable snapshot passed explicitly
into the eligibility engine; routes obtain it through `get_vip_policy`.
"""

import logging
import os
from functools import lru_cache
from typing import Dict, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

Tier = Literal["none", "bronze", "silver", "gold", "platinum"]


class TierRule(BaseModel):
    """A tier matches on total spend alone, or on order count plus average order value."""
    model_config = ConfigDict(frozen=True)

    min_total_spent: float = Field(..., ge=0)
    min_order_count: int = Field(..., ge=0)
    min_avg_order_value: float = Field(..., ge=0)


class TierBenefit(BaseModel):
    model_config = ConfigDict(frozen=True)

    discount_percentage: int = Field(..., ge=0, le=60)
    minimum_amount: float = Field(..., ge=0)
    validity_days: int = Field(..., ge=1)


class BasicCriteria(BaseModel):
    """Thresholds for the three ways a customer can qualify at all."""
    model_config = ConfigDict(frozen=True)

    ultra_premium_total: float = 2000
    premium_total: float = 1500
    premium_order_count: int = 6
    loyal_order_count: int = 8
    loyal_total: float = 1200
    loyal_avg_order_value: float = 200
    high_value_avg_order_value: float = 500
    high_value_order_count: int = 4
    high_value_total: float = 1000


def _default_tier_rules() -> Dict[str, TierRule]:
    return {
        "platinum": TierRule(min_total_spent=2000, min_order_count=8, min_avg_order_value=300),
        "gold": TierRule(min_total_spent=1200, min_order_count=6, min_avg_order_value=250),
        "silver": TierRule(min_total_spent=800, min_order_count=4, min_avg_order_value=200),
    }


def _default_benefits() -> Dict[str, TierBenefit]:
    return {
        "platinum": TierBenefit(discount_percentage=35, minimum_amount=100, validity_days=180),
        "gold": TierBenefit(discount_percentage=30, minimum_amount=150, validity_days=120),
        "silver": TierBenefit(discount_percentage=25, minimum_amount=200, validity_days=90),
        "bronze": TierBenefit(discount_percentage=20, minimum_amount=250, validity_days=90),
    }


class VipPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier_rules: Dict[str, TierRule] = Field(default_factory=_default_tier_rules)
    benefits: Dict[str, TierBenefit] = Field(default_factory=_default_benefits)
    criteria: BasicCriteria = Field(default_factory=BasicCriteria)
    cooldown_months: int = Field(3, ge=0)
    selection_rate: float = Field(0.7, ge=0, le=1)
    selection_mode: Literal["stable", "random"] = "stable"
    code_prefix: str = Field("VIP", min_length=1)
    code_length: int = Field(6, ge=4, le=16)
    max_code_attempts: int = Field(5, ge=1)
    counted_order_statuses: List[str] = Field(default_factory=lambda: ["completed"])


def load_vip_policy() -> VipPolicy:
    """Build a policy from VIP_* environment variables, falling back to defaults."""
    overrides = {}
    if os.getenv("VIP_COOLDOWN_MONTHS"):
        overrides["cooldown_months"] = os.getenv("VIP_COOLDOWN_MONTHS")
    if os.getenv("VIP_SELECTION_RATE"):
        overrides["selection_rate"] = os.getenv("VIP_SELECTION_RATE")
    if os.getenv("VIP_SELECTION_MODE"):
        overrides["selection_mode"] = os.getenv("VIP_SELECTION_MODE")
    if os.getenv("VIP_COUNTED_STATUSES"):
        overrides["counted_order_statuses"] = [s.strip() for s in os.getenv("VIP_COUNTED_STATUSES", "").split(",") if s.strip()]
    return VipPolicy(**overrides)


@lru_cache(maxsize=1)
def get_vip_policy() -> VipPolicy:
    return load_vip_policy()


CART_WRITE_ATTEMPTS = int(os.getenv("CART_WRITE_ATTEMPTS", "3"))
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")


def configure_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger().setLevel(getattr(logging, level_name, logging.INFO))
