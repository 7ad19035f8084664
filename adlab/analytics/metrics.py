from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

import jsonschema

from ..infrastructure.error_handling import RemotePolicyError
from ..models import DailyMetricRecord, InsightsSnapshot
from ..utils import safe_f

CONVERSION_ACTION_TYPES: Tuple[str, ...] = (
    "purchase",
    "offsite_conversion.fb_pixel_purchase",
    "onsite_conversion.purchase",
    "omni_purchase",
    "lead",
    "offsite_conversion.fb_pixel_lead",
    "complete_registration",
    "offsite_conversion.fb_pixel_complete_registration",
)

# Numbers arrive as strings from the Graph API; both are accepted.
_NUM = {"type": ["string", "number"], "pattern": r"^-?[0-9]+(\.[0-9]+)?$"}

INSIGHTS_ROW_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["impressions", "clicks", "spend"],
    "properties": {
        "impressions": _NUM,
        "clicks": _NUM,
        "spend": _NUM,
        "ctr": _NUM,
        "cpc": _NUM,
        "cpm": _NUM,
        "actions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["action_type", "value"],
                "properties": {"action_type": {"type": "string"}, "value": _NUM},
            },
        },
    },
}

INSIGHTS_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["data"],
    "properties": {"data": {"type": "array", "items": INSIGHTS_ROW_SCHEMA}},
}


@dataclass(frozen=True)
class DerivedRates:
    ctr: float
    cpc: float
    cpm: float


def _safe_div(n: float, d: float, default: float = 0.0) -> float:
    if not d:
        return default
    return n / d


def derive_rates(impressions: float, clicks: float, spend: float) -> DerivedRates:
    """CTR in percent, CPC per click, CPM per thousand impressions; zero denominators give 0."""
    return DerivedRates(
        ctr=_safe_div(clicks * 100.0, impressions),
        cpc=_safe_div(spend, clicks),
        cpm=_safe_div(spend * 1000.0, impressions),
    )


def _scan_actions(row: Mapping[str, Any], candidates: Sequence[str]) -> float:
    total = 0.0
    for a in row.get("actions") or []:
        if a.get("action_type") in candidates:
            total += safe_f(a.get("value"))
    return total


def decode_insights(payload: Any, op: str = "insights") -> Optional[InsightsSnapshot]:
    """
    Decode a Graph insights response.

    Returns None when the platform has no rows yet (not an error). Any payload that
    does not match the expected shape raises RemotePolicyError instead of being
    read optimistically.
    """
    try:
        jsonschema.validate(instance=payload, schema=INSIGHTS_RESPONSE_SCHEMA)
    except jsonschema.ValidationError as e:
        raise RemotePolicyError(f"malformed insights payload: {e.message}", op=op) from e
    rows = payload["data"]
    if not rows:
        return None
    return snapshot_from_row(rows[0])


def snapshot_from_row(row: Mapping[str, Any]) -> InsightsSnapshot:
    impressions = int(safe_f(row.get("impressions")))
    clicks = int(safe_f(row.get("clicks")))
    spend = safe_f(row.get("spend"))
    if impressions < 0 or clicks < 0 or spend < 0:
        raise RemotePolicyError(f"negative counters in insights row: {dict(row)!r}", op="insights")
    return InsightsSnapshot(
        impressions=impressions,
        clicks=clicks,
        spend=spend,
        conversions=int(_scan_actions(row, CONVERSION_ACTION_TYPES)),
        ctr=safe_f(row["ctr"]) if "ctr" in row else None,
        cpc=safe_f(row["cpc"]) if "cpc" in row else None,
        cpm=safe_f(row["cpm"]) if "cpm" in row else None,
    )


@dataclass(frozen=True)
class Totals:
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    conversions: int = 0

    @property
    def rates(self) -> DerivedRates:
        return derive_rates(self.impressions, self.clicks, self.spend)

    def as_dict(self) -> Dict[str, float]:
        r = self.rates
        return {
            "impressions": self.impressions,
            "clicks": self.clicks,
            "spend": round(self.spend, 2),
            "conversions": self.conversions,
            "ctr": r.ctr,
            "cpc": r.cpc,
            "cpm": r.cpm,
        }


def aggregate(records: Iterable[DailyMetricRecord]) -> Totals:
    """Sum raw counters; rates are re-derived from the sums, never averaged."""
    imps = clicks = conv = 0
    spend = 0.0
    for r in records:
        imps += r.impressions
        clicks += r.clicks
        spend += r.spend
        conv += r.conversions
    return Totals(impressions=imps, clicks=clicks, spend=spend, conversions=conv)
