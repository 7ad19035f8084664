from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..config import TREND_THRESHOLD_PCT
from ..models import DailyMetricRecord, KpiComparison, TrendResult
from .metrics import aggregate

KPI_NAMES: Tuple[str, ...] = ("impressions", "clicks", "ctr", "spend", "cpc", "conversions", "cpm")


def trend(current: float, previous: float, threshold_pct: float = TREND_THRESHOLD_PCT) -> TrendResult:
    """
    Percent change of ``current`` over ``previous``.

    A zero baseline is reported as 0% / stable whatever ``current`` is; no
    baseline is treated as neutral rather than infinite growth.
    """
    if previous == 0:
        return TrendResult(change_pct=0.0, direction="stable")
    change = (current - previous) / previous * 100.0
    if change > threshold_pct:
        direction = "up"
    elif change < -threshold_pct:
        direction = "down"
    else:
        direction = "stable"
    return TrendResult(change_pct=change, direction=direction)


def previous_window(start: date, end: date) -> Tuple[date, date]:
    """The equal-length window immediately before [start, end] (inclusive)."""
    if end < start:
        raise ValueError(f"window end {end} before start {start}")
    length = (end - start).days + 1
    prev_end = start - timedelta(days=1)
    return prev_end - timedelta(days=length - 1), prev_end


def _in_window(records: List[DailyMetricRecord], start: date, end: date, object_id: Optional[str]) -> List[DailyMetricRecord]:
    return [
        r for r in records
        if start <= r.day <= end and (object_id is None or r.external_object_id == object_id)
    ]


def kpi_report(
    records: List[DailyMetricRecord],
    start: date,
    end: date,
    external_object_id: Optional[str] = None,
) -> Dict[str, KpiComparison]:
    """Each top-line KPI for [start, end] against the preceding equal window."""
    p_start, p_end = previous_window(start, end)
    cur = aggregate(_in_window(records, start, end, external_object_id)).as_dict()
    prev = aggregate(_in_window(records, p_start, p_end, external_object_id)).as_dict()
    return {
        name: KpiComparison(name=name, current=float(cur[name]), previous=float(prev[name]), trend=trend(cur[name], prev[name]))
        for name in KPI_NAMES
    }


def variant_leaderboard(
    records: List[DailyMetricRecord],
    ad_to_creative: Dict[str, str],
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[Dict[str, float]]:
    """Per-variant totals from ad-level rows, best CTR first (ties: more clicks, then creative id)."""
    rows: List[Dict[str, float]] = []
    for ad_id, creative_id in ad_to_creative.items():
        picked = [
            r for r in records
            if r.external_object_id == ad_id
            and (start is None or r.day >= start)
            and (end is None or r.day <= end)
        ]
        totals = aggregate(picked)
        row = {"creative_id": creative_id, "ad_id": ad_id, "days": len(picked)}
        row.update(totals.as_dict())
        rows.append(row)
    rows.sort(key=lambda r: (-r["ctr"], -r["clicks"], r["creative_id"]))
    return rows


def daily_series(records: List[DailyMetricRecord], external_object_id: str) -> List[Dict[str, float]]:
    out = []
    for r in sorted(records, key=lambda x: x.day):
        if r.external_object_id != external_object_id:
            continue
        out.append({
            "day": r.day.isoformat(),
            "impressions": r.impressions,
            "clicks": r.clicks,
            "spend": r.spend,
            "conversions": r.conversions,
            "ctr": r.ctr,
            "cpc": r.cpc,
            "cpm": r.cpm,
        })
    return out


def staleness(last_synced_at: Optional[datetime], now: datetime) -> Optional[timedelta]:
    """How long since the last successful sync; None when it never synced."""
    if last_synced_at is None:
        return None
    return max(timedelta(0), now - last_synced_at)
