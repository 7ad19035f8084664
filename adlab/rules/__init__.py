"""
ADLAB RULES SYSTEM
Platform vocabulary and budget rules

This package contains:
- vocabulary: objective and call-to-action normalization
- budget: daily budget planning with the platform minimum
"""

from .vocabulary import map_objective, map_call_to_action, optimization_goal_for
from .budget import daily_budget, plan_daily_budget, to_minor_units

__all__ = [
    'map_objective', 'map_call_to_action', 'optimization_goal_for',
    'daily_budget', 'plan_daily_budget', 'to_minor_units',
]
