import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from adlab.infrastructure.error_handling import ValidationError
from adlab.infrastructure.storage import Store
from adlab.integrations import slack
from adlab.models import Creative, Experiment, ExperimentStatus, InsightsSnapshot, Owner, Variant
from adlab.stages.builder import BuilderConfig, ExperimentBuilder
from adlab.stages.lifecycle import ExperimentLifecycle
from adlab.utils import FixedClock, Timekit, TZConfig

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)

ENV_VARS = (
    "SLACK_WEBHOOK_URL", "SLACK_WEBHOOK_ALERTS", "SLACK_ENABLED", "NOW_UTC", "DRY_RUN",
    "META_API_VERSION", "META_TIMEOUT", "META_RETRY_MAX", "META_BACKOFF_BASE", "META_WRITE_COOLDOWN_SEC",
    "META_TRANSPORT", "BUILDER_MAX_PARALLEL", "BUILDER_VARIANT_TIMEOUT", "SIGNED_URL_TTL_SEC", "STORE_URL",
    "BUILDER_UPLOAD_IMAGES", "SYNC_INTERVAL_MINUTES", "SYNC_DELAY_SECONDS", "SYNC_SWEEP_DEADLINE_SEC",
    "SYNC_TRACK_VARIANTS", "SYNC_DATE_PRESET", "ACCOUNT_TIMEZONE", "TIMEZONE", "ACCOUNT_CURRENCY",
    "PLATFORM_MIN_DAILY_BUDGET", "ADLAB_SQLITE_PATH", "ASSETS_BACKEND", "CREATIVE_STORAGE_BUCKET",
    "ASSETS_BASE_URL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """No Slack delivery and no stray overrides from the host environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(slack, "_client", None)
    yield
    slack._client = None


class FakeMetaClient:
    """
    In-memory stand-in for MetaClient.

    ``fail`` maps an operation name to an exception (raised every call) or to a
    callable ``(args) -> Optional[Exception]`` for targeted failures.
    ``insights`` maps an object id to a snapshot, None, or an exception.
    """

    def __init__(self):
        self.calls: List[Tuple[str, Tuple[Any, ...], Dict[str, Any]]] = []
        self.fail: Dict[str, Any] = {}
        self.insights: Dict[str, Any] = {}
        self.block: Dict[str, threading.Event] = {}
        self._n = 0
        self._lock = threading.Lock()

    def _record(self, op: str, *args, **kwargs) -> None:
        with self._lock:
            self.calls.append((op, args, kwargs))
        rule = self.fail.get(op)
        if rule is None:
            return
        err = rule(args, kwargs) if callable(rule) and not isinstance(rule, BaseException) else rule
        if err is not None:
            raise err

    def _next(self, prefix: str) -> str:
        with self._lock:
            self._n += 1
            return f"{prefix}{self._n}"

    def ops(self, op: str) -> List[Tuple[Tuple[Any, ...], Dict[str, Any]]]:
        return [(a, k) for (o, a, k) in self.calls if o == op]

    def create_campaign(self, name, objective):
        self._record("create_campaign", name, objective)
        return self._next("cmp")

    def create_adset(self, campaign_id, name, daily_budget, **kwargs):
        self._record("create_adset", campaign_id, name, daily_budget, **kwargs)
        return self._next("adset")

    def upload_image(self, image_url):
        self._record("upload_image", image_url)
        return self._next("hash")

    def create_ad_creative(self, name, **kwargs):
        self._record("create_ad_creative", name, **kwargs)
        return self._next("cr")

    def create_ad(self, adset_id, name, creative_id):
        gate = self.block.get(name)
        if gate is not None:
            gate.wait(5)
        self._record("create_ad", adset_id, name, creative_id)
        return self._next("ad")

    def update_status(self, object_id, status):
        if status not in ("ACTIVE", "PAUSED", "ARCHIVED"):
            raise ValidationError(f"Unsupported remote status {status!r}")
        self._record("update_status", object_id, status)

    def delete_object(self, object_id):
        self._record("delete_object", object_id)

    def get_insights(self, object_id, *, date_preset="today"):
        self._record("get_insights", object_id, date_preset=date_preset)
        value = self.insights.get(object_id)
        if isinstance(value, BaseException):
            raise value
        return value


class FakeSigner:
    def __init__(self, fail_refs=()):
        self.fail_refs = set(fail_refs)
        self.signed: List[Tuple[str, int]] = []

    def sign(self, asset_ref: str, ttl_seconds: int) -> str:
        if asset_ref in self.fail_refs:
            raise RuntimeError(f"signing {asset_ref} failed")
        self.signed.append((asset_ref, ttl_seconds))
        return f"https://cdn.test/{asset_ref}?ttl={ttl_seconds}"


@pytest.fixture
def timekit():
    return Timekit(TZConfig("UTC"), FixedClock(NOW))


@pytest.fixture
def store():
    s = Store(":memory:")
    yield s
    s.close()


@pytest.fixture
def fake_client():
    return FakeMetaClient()


@pytest.fixture
def client_factory(fake_client):
    seen: List[Owner] = []

    def factory(owner: Owner) -> FakeMetaClient:
        seen.append(owner)
        return fake_client

    factory.seen = seen
    return factory


@pytest.fixture
def owner(store):
    o = Owner(owner_id="u1", access_token="tok", ad_account_id="act_1", page_id="page1")
    store.upsert_owner(o)
    return o


@pytest.fixture
def creatives(store, owner):
    out = []
    for i, cta in enumerate(["Shop now", "Get Started", "Boost Ads"], start=1):
        c = Creative(
            creative_id=f"c{i}",
            owner_id=owner.owner_id,
            headline=f"Headline {i}",
            body=f"Body {i}",
            cta=cta,
            asset_ref=f"assets/c{i}.png",
        )
        store.upsert_creative(c)
        out.append(c)
    return out


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def builder(store, signer, client_factory, creatives):
    ids = iter(f"exp{i}" for i in range(1, 100))
    return ExperimentBuilder(
        store,
        store,
        signer,
        client_factory,
        BuilderConfig(platform_min_daily=2.0, max_parallel_variants=3, variant_timeout_sec=5.0),
        id_factory=lambda: next(ids),
    )


@pytest.fixture
def lifecycle(store, client_factory, timekit):
    return ExperimentLifecycle(store, client_factory, timekit)


def make_experiment(
    store: Store,
    exp_id: str,
    *,
    owner_id: str = "u1",
    status: ExperimentStatus = ExperimentStatus.CREATED,
    campaign_id: Optional[str] = "cmp-1",
    creative_ids=("c1", "c2"),
    ad_ids: Optional[Dict[str, str]] = None,
) -> Experiment:
    ad_ids = ad_ids or {}
    exp = Experiment(
        id=exp_id,
        owner_id=owner_id,
        name=f"Experiment {exp_id}",
        variant_creative_ids=tuple(creative_ids),
        objective="OUTCOME_TRAFFIC",
        optimization_goal="LINK_CLICKS",
        budget_total=20.0,
        duration_days=5,
        daily_budget=4.0,
        status=status,
        external_campaign_id=campaign_id,
        external_adset_id="adset-1" if campaign_id else None,
    )
    variants = [
        Variant(experiment_id=exp_id, creative_id=cid, position=i, external_ad_id=ad_ids.get(cid))
        for i, cid in enumerate(creative_ids, start=1)
    ]
    return store.insert_experiment(exp, variants)


def snap(impressions=1000, clicks=20, spend=10.0, conversions=0) -> InsightsSnapshot:
    return InsightsSnapshot(impressions=impressions, clicks=clicks, spend=spend, conversions=conversions)
