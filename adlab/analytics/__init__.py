"""
ADLAB ANALYTICS SYSTEM
Metrics and trends

This package contains:
- metrics: insights decoding and rate derivation
- trends: KPI windows and trend classification
- sync: insights sync into the metrics store (import adlab.analytics.sync directly)
"""

from .metrics import derive_rates, decode_insights, aggregate, Totals
from .trends import trend, previous_window, kpi_report, variant_leaderboard, staleness

__all__ = [
    'derive_rates', 'decode_insights', 'aggregate', 'Totals',
    'trend', 'previous_window', 'kpi_report', 'variant_leaderboard', 'staleness',
]
