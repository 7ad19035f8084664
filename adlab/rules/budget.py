from __future__ import annotations

import logging
import math

from ..config import PLATFORM_MIN_DAILY_BUDGET
from ..infrastructure.error_handling import ValidationError
from ..models import BudgetPlan

logger = logging.getLogger(__name__)


def daily_budget(total: float, duration_days: int, platform_min: float = PLATFORM_MIN_DAILY_BUDGET) -> float:
    return plan_daily_budget(total, duration_days, platform_min).daily


def plan_daily_budget(
    total: float,
    duration_days: int,
    platform_min: float = PLATFORM_MIN_DAILY_BUDGET,
) -> BudgetPlan:
    """Spread ``total`` evenly over ``duration_days``, never below ``platform_min``."""
    if total is None or not total > 0 or math.isinf(total):
        raise ValidationError(f"budget_total must be a positive amount, got {total!r}")
    if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days < 1:
        raise ValidationError(f"duration_days must be an integer >= 1, got {duration_days!r}")
    if not platform_min > 0:
        raise ValidationError(f"platform minimum must be > 0, got {platform_min!r}")

    raw = float(total) / duration_days
    daily = max(raw, float(platform_min))
    clamped = daily > raw
    if clamped:
        logger.warning(
            "Daily budget %.2f below platform minimum %.2f; clamped (total spend will exceed %.2f)",
            raw, platform_min, total,
        )
    return BudgetPlan(daily=daily, raw=raw, clamped=clamped)


def to_minor_units(amount: float) -> int:
    """Currency amount -> integer cents, rounding up so the minimum is never undercut."""
    return int(math.ceil(round(float(amount) * 100, 6)))
