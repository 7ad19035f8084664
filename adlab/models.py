from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    CREATED = "created"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"

    @classmethod
    def parse(cls, value: Any) -> "ExperimentStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise ValueError(f"Unknown experiment status: {value!r}") from e


# Statuses the platform accepts on a campaign status update.
REMOTE_STATUS: Dict[ExperimentStatus, str] = {
    ExperimentStatus.ACTIVE: "ACTIVE",
    ExperimentStatus.PAUSED: "PAUSED",
    ExperimentStatus.ARCHIVED: "ARCHIVED",
}


@dataclass(frozen=True)
class Owner:
    owner_id: str
    access_token: Optional[str] = None
    ad_account_id: Optional[str] = None
    page_id: Optional[str] = None
    token_valid: bool = True

    @property
    def connected(self) -> bool:
        return bool(self.access_token and self.ad_account_id and self.page_id and self.token_valid)


@dataclass(frozen=True)
class Creative:
    creative_id: str
    owner_id: str
    headline: str = ""
    body: str = ""
    cta: str = ""
    asset_ref: str = ""
    link_url: Optional[str] = None


@dataclass
class Experiment:
    id: str
    owner_id: str
    name: str
    variant_creative_ids: Tuple[str, ...]
    objective: str
    optimization_goal: str
    budget_total: float
    duration_days: int
    daily_budget: float
    audience: Dict[str, Any] = field(default_factory=dict)
    status: ExperimentStatus = ExperimentStatus.DRAFT
    external_campaign_id: Optional[str] = None
    external_adset_id: Optional[str] = None
    winner_creative_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    request_key: Optional[str] = None


@dataclass
class Variant:
    experiment_id: str
    creative_id: str
    position: int
    external_creative_id: Optional[str] = None
    external_ad_id: Optional[str] = None
    creation_error: Optional[str] = None

    @property
    def created(self) -> bool:
        return bool(self.external_ad_id)


@dataclass(frozen=True)
class DailyMetricRecord:
    """One row per (experiment, external object, account-local day)."""

    experiment_id: str
    external_object_id: str
    day: date
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    conversions: int = 0
    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class InsightsSnapshot:
    impressions: int
    clicks: int
    spend: float
    conversions: int = 0
    ctr: Optional[float] = None
    cpc: Optional[float] = None
    cpm: Optional[float] = None


# -------------------------
# Build
# -------------------------
@dataclass(frozen=True)
class BuildRequest:
    owner_id: str
    name: str
    creative_ids: Tuple[str, ...]
    budget_total: float
    duration_days: int
    objective: Optional[str] = None
    audience: Optional[Dict[str, Any]] = None
    request_key: Optional[str] = None


@dataclass(frozen=True)
class BudgetPlan:
    daily: float
    raw: float
    clamped: bool


@dataclass(frozen=True)
class VariantOutcome:
    creative_id: str
    position: int
    external_creative_id: Optional[str] = None
    external_ad_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.external_ad_id is not None and self.error is None


@dataclass
class BuildResult:
    experiment: Experiment
    succeeded: List[VariantOutcome] = field(default_factory=list)
    failed: List[VariantOutcome] = field(default_factory=list)
    budget: Optional[BudgetPlan] = None
    warnings: List[str] = field(default_factory=list)
    reused: bool = False

    @property
    def status(self) -> str:
        if not self.failed:
            return "ok"
        if len(self.succeeded) >= 2:
            return "partial"
        return "degraded"


# -------------------------
# Sync / analytics
# -------------------------
@dataclass(frozen=True)
class SyncError:
    experiment_id: str
    error: str
    retryable: bool = False


@dataclass
class SweepReport:
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[SyncError] = field(default_factory=list)
    no_data: List[str] = field(default_factory=list)
    deadline_hit: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": [{"experiment_id": e.experiment_id, "error": e.error} for e in self.errors],
            "no_data": list(self.no_data),
            "deadline_hit": self.deadline_hit,
        }


@dataclass(frozen=True)
class TrendResult:
    change_pct: float
    direction: str


@dataclass(frozen=True)
class KpiComparison:
    name: str
    current: float
    previous: float
    trend: TrendResult
