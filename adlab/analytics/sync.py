from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional

from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError

from ..config import SYNC_DELAY_SECONDS, SYNC_LEASE_SECONDS, SYNC_SWEEP_DEADLINE_SECONDS, Settings
from ..infrastructure.error_handling import (
    RemoteError,
    RemoteTransientError,
    SyncFailure,
    SyncInProgressError,
    ValidationError,
)
from ..infrastructure.locking import KeyedLock
from ..infrastructure.storage import Store
from ..integrations.meta_client import MetaClient
from ..integrations.slack import alert_credential_expired, alert_sweep_report
from ..models import Experiment, Owner, SweepReport, SyncError
from ..stages.lifecycle import ExperimentLifecycle
from ..utils import Timekit

logger = logging.getLogger(__name__)

SYNC_RESULTS = Counter("adlab_sync_experiments_total", "Per-experiment sync outcomes", ["outcome"])


@dataclass(frozen=True)
class SyncConfig:
    delay_seconds: float = SYNC_DELAY_SECONDS
    sweep_deadline_sec: float = float(SYNC_SWEEP_DEADLINE_SECONDS)
    track_variants: bool = False
    date_preset: str = "today"
    lease_seconds: int = SYNC_LEASE_SECONDS

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncConfig":
        s = settings.sync
        return cls(
            delay_seconds=s.delay_seconds,
            sweep_deadline_sec=s.sweep_deadline_sec,
            track_variants=s.track_variants,
            date_preset=s.date_preset,
        )


@dataclass(frozen=True)
class ExperimentSyncOutcome:
    experiment_id: str
    has_data: bool
    promoted: bool = False
    variant_rows: int = 0


class AnalyticsSync:
    """
    Pulls today's insights for live experiments into the metrics store.

    At most one sync runs per experiment at a time, whether it came from the
    periodic sweep or a manual request. Threads in this process are excluded by
    an in-memory lock; other processes sharing the database by a lease row.
    Within a sweep, each experiment's failure is recorded and the sweep moves on.
    """

    def __init__(
        self,
        store: Store,
        client_factory: Callable[[Owner], MetaClient],
        lifecycle: ExperimentLifecycle,
        timekit: Optional[Timekit] = None,
        config: Optional[SyncConfig] = None,
        sleeper: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self.lifecycle = lifecycle
        self.timekit = timekit or lifecycle.timekit
        self.cfg = config or SyncConfig()
        self.sleeper = sleeper
        self.monotonic = monotonic
        self._inflight = KeyedLock()
        self.holder = f"sync-{uuid.uuid4().hex[:12]}"

    # ------------------------- single experiment -------------------------

    def sync_experiment(self, experiment_id: str) -> ExperimentSyncOutcome:
        """Raises SyncInProgressError if another sync holds this experiment, SyncFailure on any other error."""
        if not self._inflight.try_acquire(experiment_id):
            raise SyncInProgressError(f"experiment {experiment_id} is already syncing")
        try:
            try:
                leased = self.store.acquire_sync_lease(experiment_id, self.holder, self.cfg.lease_seconds)
            except SQLAlchemyError as e:
                raise SyncFailure(experiment_id, e) from e
            if not leased:
                raise SyncInProgressError(f"experiment {experiment_id} is syncing in another process")
            try:
                return self._sync_leased(experiment_id)
            finally:
                self._release_lease(experiment_id)
        finally:
            self._inflight.release(experiment_id)

    def _sync_leased(self, experiment_id: str) -> ExperimentSyncOutcome:
        try:
            exp = self.store.get_experiment(experiment_id)
        except SQLAlchemyError as e:
            raise SyncFailure(experiment_id, e) from e
        if exp is None:
            raise SyncFailure(experiment_id, ValidationError("experiment not found"))
        try:
            return self._sync_locked(exp)
        except RemoteError as e:
            if e.credential_expired:
                self._expire_owner(exp.owner_id)
            raise SyncFailure(exp.id, e) from e
        except (ValidationError, SQLAlchemyError) as e:
            raise SyncFailure(exp.id, e) from e
        except Exception as e:
            logger.exception("Unexpected error syncing %s", exp.id)
            raise SyncFailure(exp.id, e) from e

    def _release_lease(self, experiment_id: str) -> None:
        try:
            self.store.release_sync_lease(experiment_id, self.holder)
        except SQLAlchemyError as e:
            logger.warning("Could not release sync lease for %s, it will expire: %s", experiment_id, e)

    def _sync_locked(self, exp: Experiment) -> ExperimentSyncOutcome:
        if not exp.external_campaign_id:
            raise ValidationError(f"experiment {exp.id} has no campaign")
        owner = self.store.get_owner(exp.owner_id)
        if owner is None or not owner.token_valid or not owner.access_token:
            raise ValidationError(f"owner {exp.owner_id} has no valid ads credential")
        client = self.client_factory(owner)
        day = self.timekit.today_account()

        snap = client.get_insights(exp.external_campaign_id, date_preset=self.cfg.date_preset)
        if snap is None:
            self.store.mark_synced(exp.id, self.timekit.now_utc())
            logger.debug("No insights yet for %s (campaign %s)", exp.id, exp.external_campaign_id)
            return ExperimentSyncOutcome(exp.id, has_data=False)

        self.store.upsert_daily(exp.id, exp.external_campaign_id, day, snap)
        variant_rows = self._sync_variants(client, exp, day) if self.cfg.track_variants else 0
        promoted = False
        if snap.impressions > 0:
            promoted = self.lifecycle.promote_on_delivery(exp, day)
        self.store.mark_synced(exp.id, self.timekit.now_utc())
        logger.info(
            "Synced %s: imps=%d clicks=%d spend=%.2f%s",
            exp.id, snap.impressions, snap.clicks, snap.spend, " (promoted)" if promoted else "",
        )
        return ExperimentSyncOutcome(exp.id, has_data=True, promoted=promoted, variant_rows=variant_rows)

    def _sync_variants(self, client: MetaClient, exp: Experiment, day) -> int:
        rows = 0
        for v in self.store.list_variants(exp.id):
            if not v.external_ad_id:
                continue
            try:
                snap = client.get_insights(v.external_ad_id, date_preset=self.cfg.date_preset)
            except RemoteError as e:
                if e.credential_expired:
                    raise
                logger.warning("Variant insights failed for ad %s of %s: %s", v.external_ad_id, exp.id, e)
                continue
            if snap is None:
                continue
            self.store.upsert_daily(exp.id, v.external_ad_id, day, snap)
            rows += 1
        return rows

    def _expire_owner(self, owner_id: str) -> None:
        logger.warning("Ads credential for owner %s expired; excluding from sweeps until reconnect", owner_id)
        self.store.mark_token_invalid(owner_id)
        self.store.log(entity_type="owner", entity_id=owner_id, action="TOKEN_EXPIRED", level="warn")
        alert_credential_expired(owner_id)

    # ------------------------- sweeps -------------------------

    def sweep(self, stop_event: Optional[threading.Event] = None) -> SweepReport:
        return self._run(self.store.list_syncable_experiments(), stop_event)

    def sync_owner(self, owner_id: str) -> SweepReport:
        exps = [e for e in self.store.list_syncable_experiments() if e.owner_id == owner_id]
        return self._run(exps, None)

    def _run(self, experiments: List[Experiment], stop_event: Optional[threading.Event]) -> SweepReport:
        report = SweepReport(started_at=self.timekit.now_utc())
        deadline = self.monotonic() + self.cfg.sweep_deadline_sec
        expired_owners: set = set()

        for i, exp in enumerate(experiments):
            if stop_event is not None and stop_event.is_set():
                report.skipped += len(experiments) - i
                logger.info("Sweep cancelled; %d experiment(s) left", len(experiments) - i)
                break
            if self.monotonic() >= deadline:
                report.deadline_hit = True
                report.skipped += len(experiments) - i
                logger.warning("Sweep deadline hit; %d experiment(s) deferred", len(experiments) - i)
                break
            if i > 0 and self.cfg.delay_seconds > 0:
                self.sleeper(self.cfg.delay_seconds)
            if exp.owner_id in expired_owners:
                report.skipped += 1
                continue

            try:
                outcome = self.sync_experiment(exp.id)
            except SyncInProgressError:
                report.skipped += 1
                SYNC_RESULTS.labels("skipped").inc()
                logger.info("Skipping %s: manual sync in progress", exp.id)
                continue
            except SyncFailure as e:
                report.failed += 1
                report.errors.append(SyncError(
                    experiment_id=exp.id,
                    error=str(e.cause),
                    retryable=isinstance(e.cause, RemoteTransientError),
                ))
                SYNC_RESULTS.labels("failed").inc()
                if isinstance(e.cause, RemoteError) and e.cause.credential_expired:
                    expired_owners.add(exp.owner_id)
                logger.warning("Sync failed for %s: %s", exp.id, e.cause)
                continue

            report.synced += 1
            if not outcome.has_data:
                report.no_data.append(exp.id)
                SYNC_RESULTS.labels("no_data").inc()
            else:
                SYNC_RESULTS.labels("synced").inc()

        report.finished_at = self.timekit.now_utc()
        logger.info(
            "Sweep done: synced=%d failed=%d skipped=%d no_data=%d",
            report.synced, report.failed, report.skipped, len(report.no_data),
        )
        alert_sweep_report(
            report.synced, report.failed, report.skipped,
            [f"{e.experiment_id}: {e.error}" for e in report.errors],
            deadline_hit=report.deadline_hit,
        )
        return report
