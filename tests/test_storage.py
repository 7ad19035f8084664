import threading
from datetime import date, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from adlab.analytics.metrics import derive_rates
from adlab.infrastructure.storage import Store, is_duplicate_key
from adlab.models import Experiment, ExperimentStatus, Owner, Variant

from conftest import NOW, make_experiment, snap

DAY = date(2024, 5, 10)


class TestDailyMetrics:
    def test_upsert_twice_overwrites(self, store, owner):
        make_experiment(store, "e1")
        store.upsert_daily("e1", "cmp-1", DAY, snap(impressions=100, clicks=2, spend=1.0))
        rec = store.upsert_daily("e1", "cmp-1", DAY, snap(impressions=200, clicks=5, spend=3.0))

        rows = store.list_daily("e1")
        assert len(rows) == 1
        assert rows[0].impressions == 200
        assert rows[0].clicks == 5
        assert rows[0].spend == 3.0
        assert rec == rows[0]

    def test_rates_recomputed_from_raw_counts(self, store, owner):
        make_experiment(store, "e1")
        rec = store.upsert_daily("e1", "cmp-1", DAY, snap(impressions=200, clicks=5, spend=3.0))
        assert rec.ctr == pytest.approx(2.5)
        assert rec.cpc == pytest.approx(0.6)
        assert rec.cpm == pytest.approx(15.0)

    def test_zero_impressions_give_zero_rates(self, store, owner):
        make_experiment(store, "e1")
        rec = store.upsert_daily("e1", "cmp-1", DAY, snap(impressions=0, clicks=0, spend=0.0))
        assert (rec.ctr, rec.cpc, rec.cpm) == (0.0, 0.0, 0.0)

    def test_separate_keys_per_object_and_day(self, store, owner):
        make_experiment(store, "e1")
        store.upsert_daily("e1", "cmp-1", DAY, snap())
        store.upsert_daily("e1", "ad-1", DAY, snap())
        store.upsert_daily("e1", "cmp-1", date(2024, 5, 11), snap())
        assert len(store.list_daily("e1")) == 3
        assert len(store.list_daily("e1", external_object_id="cmp-1")) == 2
        assert len(store.list_daily("e1", start=DAY, end=DAY)) == 2

    def test_metrics_require_an_experiment(self, store):
        with pytest.raises(IntegrityError):
            store.upsert_daily("missing", "cmp-1", DAY, snap())


class TestConcurrentWriters:
    @staticmethod
    def _race(stores, n=8):
        snaps = [snap(impressions=100 * (i + 1), clicks=i + 1, spend=float(i + 1)) for i in range(n)]
        barrier = threading.Barrier(n)
        errors = []

        def write(i):
            try:
                barrier.wait(5)
                stores[i % len(stores)].upsert_daily("e1", "cmp-1", DAY, snaps[i])
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=write, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)
        assert errors == []
        return snaps

    @staticmethod
    def _assert_single_consistent_row(store, snaps):
        [row] = store.list_daily("e1")
        [winner] = [s for s in snaps if s.impressions == row.impressions]
        assert (row.clicks, row.spend) == (winner.clicks, winner.spend)
        rates = derive_rates(winner.impressions, winner.clicks, winner.spend)
        assert (row.ctr, row.cpc, row.cpm) == pytest.approx((rates.ctr, rates.cpc, rates.cpm))

    def test_racing_threads_leave_one_whole_row(self, tmp_path):
        store = Store(str(tmp_path / "race.sqlite"))
        try:
            store.upsert_owner(Owner(owner_id="u1", access_token="t", ad_account_id="a", page_id="p"))
            make_experiment(store, "e1")
            snaps = self._race([store])
            self._assert_single_consistent_row(store, snaps)
        finally:
            store.close()

    def test_racing_store_instances_leave_one_whole_row(self, tmp_path):
        path = str(tmp_path / "race.sqlite")
        stores = [Store(path), Store(path)]
        try:
            stores[0].upsert_owner(Owner(owner_id="u1", access_token="t", ad_account_id="a", page_id="p"))
            make_experiment(stores[0], "e1")
            snaps = self._race(stores)
            self._assert_single_consistent_row(stores[1], snaps)
        finally:
            for s in stores:
                s.close()


class TestSyncLeases:
    def test_one_holder_at_a_time_across_instances(self, tmp_path):
        path = str(tmp_path / "lease.sqlite")
        a, b = Store(path), Store(path)
        try:
            assert a.acquire_sync_lease("e1", "A", 900, now=NOW)
            assert not b.acquire_sync_lease("e1", "B", 900, now=NOW)
            assert b.acquire_sync_lease("e2", "B", 900, now=NOW)
            a.release_sync_lease("e1", "A")
            assert b.acquire_sync_lease("e1", "B", 900, now=NOW)
        finally:
            a.close()
            b.close()

    def test_expired_lease_is_taken_over(self, store):
        assert store.acquire_sync_lease("e1", "A", 60, now=NOW)
        assert not store.acquire_sync_lease("e1", "B", 60, now=NOW + timedelta(seconds=30))
        assert store.acquire_sync_lease("e1", "B", 60, now=NOW + timedelta(seconds=61))
        # the stale holder cannot release the new lease
        store.release_sync_lease("e1", "A")
        assert not store.acquire_sync_lease("e1", "C", 60, now=NOW + timedelta(seconds=62))


class TestExperiments:
    def test_round_trip(self, store, owner):
        saved = make_experiment(store, "e1", ad_ids={"c1": "ad-1"})
        assert saved.variant_creative_ids == ("c1", "c2")
        assert saved.status == ExperimentStatus.CREATED
        variants = store.list_variants("e1")
        assert [v.creative_id for v in variants] == ["c1", "c2"]
        assert variants[0].created and not variants[1].created

    def test_delete_cascades(self, store, owner):
        make_experiment(store, "e1")
        store.upsert_daily("e1", "cmp-1", DAY, snap())
        assert store.delete_experiment("e1") is True
        assert store.get_experiment("e1") is None
        assert store.list_variants("e1") == []
        assert store.list_daily("e1") == []
        assert store.delete_experiment("e1") is False

    def test_status_compare_and_set(self, store, owner):
        make_experiment(store, "e1")
        assert store.update_status("e1", ExperimentStatus.ACTIVE, expected=ExperimentStatus.PAUSED) is False
        assert store.get_experiment("e1").status == ExperimentStatus.CREATED
        assert store.update_status("e1", ExperimentStatus.ACTIVE, expected=ExperimentStatus.CREATED, start_date=DAY)
        exp = store.get_experiment("e1")
        assert exp.status == ExperimentStatus.ACTIVE
        assert exp.start_date == DAY

    def test_start_date_only_filled_once(self, store, owner):
        make_experiment(store, "e1")
        store.update_status("e1", ExperimentStatus.ACTIVE, start_date=DAY)
        store.update_status("e1", ExperimentStatus.PAUSED)
        store.update_status("e1", ExperimentStatus.ACTIVE, start_date=date(2024, 6, 1))
        assert store.get_experiment("e1").start_date == DAY

    def test_variant_with_ad_is_immutable(self, store, owner):
        make_experiment(store, "e1", ad_ids={"c1": "ad-1"})
        assert store.record_variant_outcome("e1", "c1", external_ad_id="ad-9") is False
        assert store.record_variant_outcome("e1", "c2", external_creative_id="cr-2", external_ad_id="ad-2") is True
        by_id = {v.creative_id: v for v in store.list_variants("e1")}
        assert by_id["c1"].external_ad_id == "ad-1"
        assert by_id["c2"].external_ad_id == "ad-2"
        assert by_id["c2"].creation_error is None

    def test_request_key_is_unique_per_owner(self, store, owner):
        base = dict(
            owner_id="u1", name="x", variant_creative_ids=("c1", "c2"), objective="OUTCOME_TRAFFIC",
            optimization_goal="LINK_CLICKS", budget_total=10.0, duration_days=2, daily_budget=5.0,
            request_key="k1",
        )
        store.insert_experiment(Experiment(id="e1", **base), [Variant("e1", "c1", 1), Variant("e1", "c2", 2)])
        with pytest.raises(IntegrityError) as info:
            store.insert_experiment(Experiment(id="e2", **base), [Variant("e2", "c1", 1)])
        assert is_duplicate_key(info.value)
        # nothing from the failed transaction survives
        assert store.get_experiment("e2") is None
        assert store.list_variants("e2") == []
        assert store.find_by_request_key("u1", "k1").id == "e1"

    def test_syncable_excludes_invalid_tokens_and_inactive(self, store, owner):
        store.upsert_owner(Owner(owner_id="u2", access_token="t2", ad_account_id="act_2", page_id="p2"))
        make_experiment(store, "live", owner_id="u1")
        make_experiment(store, "active", owner_id="u1", status=ExperimentStatus.ACTIVE)
        make_experiment(store, "paused", owner_id="u1", status=ExperimentStatus.PAUSED)
        make_experiment(store, "nocampaign", owner_id="u1", campaign_id=None)
        make_experiment(store, "other", owner_id="u2")
        store.mark_token_invalid("u2")

        ids = {e.id for e in store.list_syncable_experiments()}
        assert ids == {"live", "active"}

    def test_list_by_status(self, store, owner):
        make_experiment(store, "a", status=ExperimentStatus.ACTIVE)
        make_experiment(store, "b", status=ExperimentStatus.PAUSED)
        assert [e.id for e in store.list_experiments(statuses=[ExperimentStatus.PAUSED])] == ["b"]
        assert store.list_experiments(statuses=[]) == []
        assert len(store.list_experiments(owner_id="u1")) == 2


class TestAuditAndCleanupQueue:
    def test_audit_log(self, store):
        store.log(entity_type="experiment", entity_id="e1", action="BUILD", reason="ok", meta={"n": 2})
        [rec] = store.recent_actions("e1")
        assert rec.action == "BUILD"
        assert rec.meta == {"n": 2}

    def test_cleanup_attempts_and_resolution(self, store):
        item_id = store.enqueue_cleanup("cmp-9", "campaign", "u1", reason="adset failed")
        [item] = store.pending_cleanup()
        assert item.id == item_id and item.owner_id == "u1" and item.attempts == 0

        store.resolve_cleanup(item_id, error="still there")
        [item] = store.pending_cleanup()
        assert item.attempts == 1 and item.last_error == "still there"
        assert store.pending_cleanup(max_attempts=1) == []

        store.resolve_cleanup(item_id)
        assert store.pending_cleanup() == []


def test_file_backed_store(tmp_path):
    path = tmp_path / "nested" / "adlab.sqlite"
    s = Store(str(path))
    s.upsert_owner(Owner(owner_id="u1", access_token="t", ad_account_id="1", page_id="p"))
    s.close()
    reopened = Store(str(path))
    assert reopened.get_owner("u1").connected
    reopened.close()
