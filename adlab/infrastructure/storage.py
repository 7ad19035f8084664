from __future__ import annotations

import json
import os
import random
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Sequence

from prometheus_client import Counter, Histogram
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.pool import StaticPool

from ..analytics.metrics import derive_rates
from ..models import (
    Creative,
    DailyMetricRecord,
    Experiment,
    ExperimentStatus,
    InsightsSnapshot,
    Owner,
    Variant,
)
from .locking import KeyedLock

UTC = timezone.utc

DB_OPS = Counter("adlab_store_db_ops_total", "DB operations", ["op"])
DB_ERRORS = Counter("adlab_store_db_errors_total", "DB errors", ["op"])
DB_LAT = Histogram("adlab_store_db_latency_seconds", "DB latencies", ["op"])

SYNCABLE_STATUSES = (ExperimentStatus.CREATED, ExperimentStatus.ACTIVE)


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).replace(microsecond=0).isoformat()


def _dt(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None


def _d(s: Optional[str]) -> Optional[date]:
    return date.fromisoformat(s) if s else None


def _epoch(dt: datetime) -> int:
    return int(dt.timestamp())


def _jitter(base: float) -> float:
    return base * (0.8 + 0.4 * random.random())


def _to_json(obj: Any) -> Optional[str]:
    if obj is None:
        return None
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def _from_json(s: Optional[str]) -> Optional[Any]:
    if not s:
        return None
    return json.loads(s)


def _retry_sql(retries: int = 5, base_sleep: float = 0.03, max_sleep: float = 0.5) -> Callable:
    """Retry sqlite lock contention (OperationalError) only; trip a short breaker after repeated exhaustion."""
    def deco(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(self, *args, **kwargs):
            state = self._cb[fn.__name__]
            if state["open_until"] and time.time() < state["open_until"]:
                raise OperationalError("circuit_open", None, None)
            last_exc: Optional[Exception] = None
            for i in range(retries):
                t0 = time.perf_counter()
                try:
                    DB_OPS.labels(fn.__name__).inc()
                    out = fn(self, *args, **kwargs)
                    DB_LAT.labels(fn.__name__).observe(time.perf_counter() - t0)
                    state["n"] = 0
                    return out
                except OperationalError as e:
                    last_exc = e
                    DB_ERRORS.labels(fn.__name__).inc()
                    time.sleep(min(max_sleep, _jitter(base_sleep * (2 ** i))))
                except Exception:
                    DB_ERRORS.labels(fn.__name__).inc()
                    raise
            state["n"] += 1
            if state["n"] >= 3:
                state["open_until"] = time.time() + 2.0
            assert last_exc is not None
            raise last_exc
        return wrapper
    return deco


@dataclass(frozen=True)
class ActionRecord:
    id: str
    ts_iso: str
    entity_type: str
    entity_id: str
    action: str
    level: str
    reason: Optional[str]
    meta: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class CleanupItem:
    id: int
    object_id: str
    object_type: str
    owner_id: str
    reason: Optional[str]
    attempts: int
    last_error: Optional[str]


class Store:
    SCHEMA_VERSION = 1

    def __init__(self, path: str):
        self.path = path
        if path == ":memory:":
            self.eng: Engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            self.eng = create_engine(
                f"sqlite:///{path}",
                connect_args={"check_same_thread": False, "timeout": 30},
                pool_pre_ping=True,
            )
        event.listen(self.eng, "connect", self._on_connect)
        self._cb: defaultdict = defaultdict(lambda: {"n": 0, "open_until": 0.0})
        self._metric_locks = KeyedLock()
        self._init_db()

    @staticmethod
    def _on_connect(dbapi_conn, _record) -> None:
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.execute("PRAGMA busy_timeout=30000;")
        cur.close()

    def close(self) -> None:
        self.eng.dispose()

    def _init_db(self) -> None:
        with self.eng.begin() as c:
            if self.path != ":memory:":
                c.exec_driver_sql("PRAGMA journal_mode=WAL;")
                c.exec_driver_sql("PRAGMA synchronous=NORMAL;")
            c.exec_driver_sql("CREATE TABLE IF NOT EXISTS schema_version(version INTEGER NOT NULL);")
            cur = c.execute(text("SELECT version FROM schema_version")).fetchone()
            if not cur:
                c.execute(text("INSERT INTO schema_version(version) VALUES (:v)"), {"v": self.SCHEMA_VERSION})
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS owners(
                owner_id TEXT PRIMARY KEY,
                access_token TEXT,
                ad_account_id TEXT,
                page_id TEXT,
                token_valid INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS creatives(
                creative_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                headline TEXT NOT NULL DEFAULT '',
                body TEXT NOT NULL DEFAULT '',
                cta TEXT NOT NULL DEFAULT '',
                asset_ref TEXT NOT NULL DEFAULT '',
                link_url TEXT,
                created_at TEXT NOT NULL
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS experiments(
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                variant_creative_ids TEXT NOT NULL,
                objective TEXT NOT NULL,
                optimization_goal TEXT NOT NULL,
                budget_total REAL NOT NULL CHECK(budget_total > 0),
                duration_days INTEGER NOT NULL CHECK(duration_days >= 1),
                daily_budget REAL NOT NULL,
                audience TEXT,
                status TEXT NOT NULL,
                external_campaign_id TEXT,
                external_adset_id TEXT,
                winner_creative_id TEXT,
                start_date TEXT,
                end_date TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_synced_at TEXT,
                request_key TEXT,
                UNIQUE(owner_id, request_key)
              );
            """)
            c.exec_driver_sql("CREATE INDEX IF NOT EXISTS idx_experiments_owner ON experiments(owner_id, created_at DESC);")
            c.exec_driver_sql("CREATE INDEX IF NOT EXISTS idx_experiments_status ON experiments(status);")
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS variants(
                experiment_id TEXT NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
                creative_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                external_creative_id TEXT,
                external_ad_id TEXT,
                creation_error TEXT,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(experiment_id, creative_id)
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS daily_metrics(
                experiment_id TEXT NOT NULL REFERENCES experiments(id) ON DELETE CASCADE,
                external_object_id TEXT NOT NULL,
                day TEXT NOT NULL,
                impressions INTEGER NOT NULL DEFAULT 0,
                clicks INTEGER NOT NULL DEFAULT 0,
                spend REAL NOT NULL DEFAULT 0,
                conversions INTEGER NOT NULL DEFAULT 0,
                ctr REAL NOT NULL DEFAULT 0,
                cpc REAL NOT NULL DEFAULT 0,
                cpm REAL NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(experiment_id, external_object_id, day)
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS actions(
                id TEXT PRIMARY KEY,
                ts_iso TEXT NOT NULL,
                ts_epoch INTEGER NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id   TEXT NOT NULL,
                action TEXT NOT NULL,
                level  TEXT NOT NULL CHECK(level IN ('info','warn','error')),
                reason TEXT,
                meta  TEXT
              );
            """)
            c.exec_driver_sql("CREATE INDEX IF NOT EXISTS idx_actions_entity_time ON actions(entity_type, entity_id, ts_epoch DESC);")
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS sync_leases(
                experiment_id TEXT PRIMARY KEY,
                holder TEXT NOT NULL,
                expires_at INTEGER NOT NULL
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS cleanup_queue(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                object_id TEXT NOT NULL,
                object_type TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                reason TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                done INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
              );
            """)

    @contextmanager
    def _begin(self):
        with self.eng.begin() as conn:
            yield conn

    # -------------------------
    # Audit log
    # -------------------------
    @_retry_sql()
    def log(
        self,
        *,
        entity_type: str,
        entity_id: str,
        action: str,
        level: Literal["info", "warn", "error"] = "info",
        reason: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        ts: Optional[datetime] = None,
    ) -> str:
        now = ts or _now_utc()
        aid = str(uuid.uuid4())
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO actions(id, ts_iso, ts_epoch, entity_type, entity_id, action, level, reason, meta)
              VALUES (:id, :iso, :ep, :et, :eid, :act, :lvl, :rea, :meta)
            """), {
                "id": aid,
                "iso": _iso(now),
                "ep": _epoch(now),
                "et": entity_type,
                "eid": entity_id,
                "act": action,
                "lvl": level,
                "rea": reason,
                "meta": _to_json(meta),
            })
        return aid

    @_retry_sql()
    def recent_actions(self, entity_id: str, limit: int = 50) -> List[ActionRecord]:
        with self._begin() as c:
            rows = c.execute(text("""
              SELECT id, ts_iso, entity_type, entity_id, action, level, reason, meta
              FROM actions WHERE entity_id=:eid ORDER BY ts_epoch DESC, rowid DESC LIMIT :lim
            """), {"eid": entity_id, "lim": int(limit)}).mappings().all()
        return [
            ActionRecord(
                id=r["id"], ts_iso=r["ts_iso"], entity_type=r["entity_type"], entity_id=r["entity_id"],
                action=r["action"], level=r["level"], reason=r["reason"], meta=_from_json(r["meta"]),
            )
            for r in rows
        ]

    # -------------------------
    # Owners / creatives
    # -------------------------
    @_retry_sql()
    def upsert_owner(self, owner: Owner) -> None:
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO owners(owner_id, access_token, ad_account_id, page_id, token_valid, updated_at)
              VALUES (:oid, :tok, :acc, :page, :valid, :ts)
              ON CONFLICT(owner_id) DO UPDATE SET
                access_token=excluded.access_token,
                ad_account_id=excluded.ad_account_id,
                page_id=excluded.page_id,
                token_valid=excluded.token_valid,
                updated_at=excluded.updated_at
            """), {
                "oid": owner.owner_id,
                "tok": owner.access_token,
                "acc": owner.ad_account_id,
                "page": owner.page_id,
                "valid": 1 if owner.token_valid else 0,
                "ts": _iso(_now_utc()),
            })

    @_retry_sql()
    def get_owner(self, owner_id: str) -> Optional[Owner]:
        with self._begin() as c:
            r = c.execute(text("SELECT * FROM owners WHERE owner_id=:oid"), {"oid": owner_id}).mappings().fetchone()
        if not r:
            return None
        return Owner(
            owner_id=r["owner_id"],
            access_token=r["access_token"],
            ad_account_id=r["ad_account_id"],
            page_id=r["page_id"],
            token_valid=bool(r["token_valid"]),
        )

    @_retry_sql()
    def mark_token_invalid(self, owner_id: str) -> None:
        with self._begin() as c:
            c.execute(
                text("UPDATE owners SET token_valid=0, updated_at=:ts WHERE owner_id=:oid"),
                {"oid": owner_id, "ts": _iso(_now_utc())},
            )

    @_retry_sql()
    def upsert_creative(self, creative: Creative) -> None:
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO creatives(creative_id, owner_id, headline, body, cta, asset_ref, link_url, created_at)
              VALUES (:cid, :oid, :h, :b, :cta, :asset, :link, :ts)
              ON CONFLICT(creative_id) DO UPDATE SET
                headline=excluded.headline, body=excluded.body, cta=excluded.cta,
                asset_ref=excluded.asset_ref, link_url=excluded.link_url
            """), {
                "cid": creative.creative_id,
                "oid": creative.owner_id,
                "h": creative.headline,
                "b": creative.body,
                "cta": creative.cta,
                "asset": creative.asset_ref,
                "link": creative.link_url,
                "ts": _iso(_now_utc()),
            })

    @_retry_sql()
    def get_creative(self, creative_id: str) -> Optional[Creative]:
        with self._begin() as c:
            r = c.execute(text("SELECT * FROM creatives WHERE creative_id=:cid"), {"cid": creative_id}).mappings().fetchone()
        if not r:
            return None
        return Creative(
            creative_id=r["creative_id"],
            owner_id=r["owner_id"],
            headline=r["headline"],
            body=r["body"],
            cta=r["cta"],
            asset_ref=r["asset_ref"],
            link_url=r["link_url"],
        )

    # -------------------------
    # Experiments / variants
    # -------------------------
    @staticmethod
    def _experiment_from_row(r: Any) -> Experiment:
        return Experiment(
            id=r["id"],
            owner_id=r["owner_id"],
            name=r["name"],
            variant_creative_ids=tuple(_from_json(r["variant_creative_ids"]) or ()),
            objective=r["objective"],
            optimization_goal=r["optimization_goal"],
            budget_total=float(r["budget_total"]),
            duration_days=int(r["duration_days"]),
            daily_budget=float(r["daily_budget"]),
            audience=_from_json(r["audience"]) or {},
            status=ExperimentStatus.parse(r["status"]),
            external_campaign_id=r["external_campaign_id"],
            external_adset_id=r["external_adset_id"],
            winner_creative_id=r["winner_creative_id"],
            start_date=_d(r["start_date"]),
            end_date=_d(r["end_date"]),
            created_at=_dt(r["created_at"]),
            updated_at=_dt(r["updated_at"]),
            last_synced_at=_dt(r["last_synced_at"]),
            request_key=r["request_key"],
        )

    @_retry_sql()
    def insert_experiment(self, exp: Experiment, variants: Sequence[Variant]) -> Experiment:
        """Experiment plus its variants in one transaction."""
        now = _now_utc()
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO experiments(id, owner_id, name, variant_creative_ids, objective, optimization_goal,
                budget_total, duration_days, daily_budget, audience, status, external_campaign_id,
                external_adset_id, winner_creative_id, start_date, end_date, created_at, updated_at,
                last_synced_at, request_key)
              VALUES (:id, :oid, :name, :vids, :obj, :goal, :bt, :dd, :db, :aud, :st, :camp, :adset,
                :win, :sd, :ed, :ca, :ua, :ls, :rk)
            """), {
                "id": exp.id,
                "oid": exp.owner_id,
                "name": exp.name,
                "vids": _to_json(list(exp.variant_creative_ids)),
                "obj": exp.objective,
                "goal": exp.optimization_goal,
                "bt": exp.budget_total,
                "dd": exp.duration_days,
                "db": exp.daily_budget,
                "aud": _to_json(exp.audience),
                "st": exp.status.value,
                "camp": exp.external_campaign_id,
                "adset": exp.external_adset_id,
                "win": exp.winner_creative_id,
                "sd": exp.start_date.isoformat() if exp.start_date else None,
                "ed": exp.end_date.isoformat() if exp.end_date else None,
                "ca": _iso(exp.created_at or now),
                "ua": _iso(now),
                "ls": _iso(exp.last_synced_at),
                "rk": exp.request_key,
            })
            for v in variants:
                c.execute(text("""
                  INSERT INTO variants(experiment_id, creative_id, position, external_creative_id,
                    external_ad_id, creation_error, updated_at)
                  VALUES (:eid, :cid, :pos, :ecid, :ad, :err, :ts)
                """), {
                    "eid": exp.id,
                    "cid": v.creative_id,
                    "pos": v.position,
                    "ecid": v.external_creative_id,
                    "ad": v.external_ad_id,
                    "err": v.creation_error,
                    "ts": _iso(now),
                })
        return self.get_experiment(exp.id)  # type: ignore[return-value]

    @_retry_sql()
    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        with self._begin() as c:
            r = c.execute(text("SELECT * FROM experiments WHERE id=:id"), {"id": experiment_id}).mappings().fetchone()
        return self._experiment_from_row(r) if r else None

    @_retry_sql()
    def find_by_request_key(self, owner_id: str, request_key: str) -> Optional[Experiment]:
        with self._begin() as c:
            r = c.execute(
                text("SELECT * FROM experiments WHERE owner_id=:oid AND request_key=:rk"),
                {"oid": owner_id, "rk": request_key},
            ).mappings().fetchone()
        return self._experiment_from_row(r) if r else None

    @_retry_sql()
    def list_experiments(
        self,
        owner_id: Optional[str] = None,
        statuses: Optional[Iterable[ExperimentStatus]] = None,
    ) -> List[Experiment]:
        sql = "SELECT * FROM experiments WHERE 1=1"
        params: Dict[str, Any] = {}
        if owner_id is not None:
            sql += " AND owner_id=:oid"
            params["oid"] = owner_id
        if statuses is not None:
            names = [ExperimentStatus.parse(s).value for s in statuses]
            if not names:
                return []
            keys = []
            for i, n in enumerate(names):
                params[f"s{i}"] = n
                keys.append(f":s{i}")
            sql += f" AND status IN ({','.join(keys)})"
        sql += " ORDER BY created_at DESC, id"
        with self._begin() as c:
            rows = c.execute(text(sql), params).mappings().all()
        return [self._experiment_from_row(r) for r in rows]

    @_retry_sql()
    def list_syncable_experiments(self) -> List[Experiment]:
        """Created/Active experiments with a campaign whose owner still holds a valid token."""
        with self._begin() as c:
            rows = c.execute(text("""
              SELECT e.* FROM experiments e
              JOIN owners o ON o.owner_id = e.owner_id
              WHERE e.status IN (:s1, :s2)
                AND e.external_campaign_id IS NOT NULL
                AND o.token_valid = 1
                AND o.access_token IS NOT NULL
              ORDER BY e.last_synced_at IS NOT NULL, e.last_synced_at, e.created_at
            """), {"s1": SYNCABLE_STATUSES[0].value, "s2": SYNCABLE_STATUSES[1].value}).mappings().all()
        return [self._experiment_from_row(r) for r in rows]

    @_retry_sql()
    def update_status(
        self,
        experiment_id: str,
        status: ExperimentStatus,
        *,
        expected: Optional[ExperimentStatus] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        winner_creative_id: Optional[str] = None,
    ) -> bool:
        """
        Compare-and-set status write. Returns False when ``expected`` no longer
        matches (another writer moved the experiment first). ``start_date`` only
        fills an unset value.
        """
        sql = """
          UPDATE experiments SET
            status=:st,
            start_date=COALESCE(start_date, :sd),
            end_date=COALESCE(:ed, end_date),
            winner_creative_id=COALESCE(:win, winner_creative_id),
            updated_at=:ts
          WHERE id=:id
        """
        params: Dict[str, Any] = {
            "st": status.value,
            "sd": start_date.isoformat() if start_date else None,
            "ed": end_date.isoformat() if end_date else None,
            "win": winner_creative_id,
            "ts": _iso(_now_utc()),
            "id": experiment_id,
        }
        if expected is not None:
            sql += " AND status=:exp"
            params["exp"] = expected.value
        with self._begin() as c:
            res = c.execute(text(sql), params)
        return res.rowcount == 1

    @_retry_sql()
    def mark_synced(self, experiment_id: str, ts: Optional[datetime] = None) -> None:
        with self._begin() as c:
            c.execute(
                text("UPDATE experiments SET last_synced_at=:ts WHERE id=:id"),
                {"ts": _iso(ts or _now_utc()), "id": experiment_id},
            )

    @_retry_sql()
    def delete_experiment(self, experiment_id: str) -> bool:
        with self._begin() as c:
            res = c.execute(text("DELETE FROM experiments WHERE id=:id"), {"id": experiment_id})
        return res.rowcount == 1

    @_retry_sql()
    def list_variants(self, experiment_id: str) -> List[Variant]:
        with self._begin() as c:
            rows = c.execute(
                text("SELECT * FROM variants WHERE experiment_id=:id ORDER BY position"),
                {"id": experiment_id},
            ).mappings().all()
        return [
            Variant(
                experiment_id=r["experiment_id"],
                creative_id=r["creative_id"],
                position=int(r["position"]),
                external_creative_id=r["external_creative_id"],
                external_ad_id=r["external_ad_id"],
                creation_error=r["creation_error"],
            )
            for r in rows
        ]

    @_retry_sql()
    def record_variant_outcome(
        self,
        experiment_id: str,
        creative_id: str,
        *,
        external_creative_id: Optional[str] = None,
        external_ad_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Variants that already carry an external ad id are immutable; returns False for those."""
        with self._begin() as c:
            res = c.execute(text("""
              UPDATE variants SET
                external_creative_id=COALESCE(:ecid, external_creative_id),
                external_ad_id=:ad,
                creation_error=:err,
                updated_at=:ts
              WHERE experiment_id=:eid AND creative_id=:cid AND external_ad_id IS NULL
            """), {
                "ecid": external_creative_id,
                "ad": external_ad_id,
                "err": None if external_ad_id else error,
                "ts": _iso(_now_utc()),
                "eid": experiment_id,
                "cid": creative_id,
            })
        return res.rowcount == 1

    # -------------------------
    # Daily metrics
    # -------------------------
    @staticmethod
    def _metric_from_row(r: Any) -> DailyMetricRecord:
        return DailyMetricRecord(
            experiment_id=r["experiment_id"],
            external_object_id=r["external_object_id"],
            day=date.fromisoformat(r["day"]),
            impressions=int(r["impressions"]),
            clicks=int(r["clicks"]),
            spend=float(r["spend"]),
            conversions=int(r["conversions"]),
            ctr=float(r["ctr"]),
            cpc=float(r["cpc"]),
            cpm=float(r["cpm"]),
            updated_at=_dt(r["updated_at"]),
        )

    def upsert_daily(
        self,
        experiment_id: str,
        external_object_id: str,
        day: date,
        metrics: InsightsSnapshot,
    ) -> DailyMetricRecord:
        """
        Replace the raw counters for (experiment, object, day); never sums.

        The platform reports cumulative-for-day figures, so the latest fetch wins.
        Rates are recomputed from the raw counters, never copied from the payload.
        Writers to the same key are serialized.
        """
        key = (experiment_id, external_object_id, day.isoformat())
        with self._metric_locks.hold(key):
            return self._upsert_daily_locked(experiment_id, external_object_id, day, metrics)

    @_retry_sql()
    def _upsert_daily_locked(
        self,
        experiment_id: str,
        external_object_id: str,
        day: date,
        metrics: InsightsSnapshot,
    ) -> DailyMetricRecord:
        rates = derive_rates(metrics.impressions, metrics.clicks, metrics.spend)
        params = {
            "eid": experiment_id,
            "oid": external_object_id,
            "day": day.isoformat(),
            "imps": int(metrics.impressions),
            "clicks": int(metrics.clicks),
            "spend": float(metrics.spend),
            "conv": int(metrics.conversions),
            "ctr": rates.ctr,
            "cpc": rates.cpc,
            "cpm": rates.cpm,
            "ts": _iso(_now_utc()),
        }
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO daily_metrics(experiment_id, external_object_id, day, impressions, clicks, spend,
                conversions, ctr, cpc, cpm, updated_at)
              VALUES (:eid, :oid, :day, :imps, :clicks, :spend, :conv, :ctr, :cpc, :cpm, :ts)
              ON CONFLICT(experiment_id, external_object_id, day) DO UPDATE SET
                impressions=excluded.impressions,
                clicks=excluded.clicks,
                spend=excluded.spend,
                conversions=excluded.conversions,
                ctr=excluded.ctr,
                cpc=excluded.cpc,
                cpm=excluded.cpm,
                updated_at=excluded.updated_at
            """), params)
            r = c.execute(text("""
              SELECT * FROM daily_metrics WHERE experiment_id=:eid AND external_object_id=:oid AND day=:day
            """), params).mappings().fetchone()
        return self._metric_from_row(r)

    @_retry_sql()
    def list_daily(
        self,
        experiment_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        external_object_id: Optional[str] = None,
    ) -> List[DailyMetricRecord]:
        sql = "SELECT * FROM daily_metrics WHERE experiment_id=:eid"
        params: Dict[str, Any] = {"eid": experiment_id}
        if start is not None:
            sql += " AND day >= :start"
            params["start"] = start.isoformat()
        if end is not None:
            sql += " AND day <= :end"
            params["end"] = end.isoformat()
        if external_object_id is not None:
            sql += " AND external_object_id=:oid"
            params["oid"] = external_object_id
        sql += " ORDER BY day, external_object_id"
        with self._begin() as c:
            rows = c.execute(text(sql), params).mappings().all()
        return [self._metric_from_row(r) for r in rows]

    # -------------------------
    # Sync leases (cross-process exclusion)
    # -------------------------
    @_retry_sql()
    def acquire_sync_lease(
        self, experiment_id: str, holder: str, ttl_seconds: int, now: Optional[datetime] = None
    ) -> bool:
        """
        Claim the experiment for one syncing process. An existing lease is only
        taken over once it has expired, so a crashed holder blocks others for at
        most ``ttl_seconds``.
        """
        ts = _epoch(now or _now_utc())
        with self._begin() as c:
            res = c.execute(text("""
              INSERT INTO sync_leases(experiment_id, holder, expires_at) VALUES (:eid, :h, :exp)
              ON CONFLICT(experiment_id) DO UPDATE SET holder=excluded.holder, expires_at=excluded.expires_at
              WHERE sync_leases.expires_at <= :now
            """), {"eid": experiment_id, "h": holder, "exp": ts + int(ttl_seconds), "now": ts})
        return res.rowcount == 1

    @_retry_sql()
    def release_sync_lease(self, experiment_id: str, holder: str) -> None:
        with self._begin() as c:
            c.execute(
                text("DELETE FROM sync_leases WHERE experiment_id=:eid AND holder=:h"),
                {"eid": experiment_id, "h": holder},
            )

    # -------------------------
    # Orphaned remote objects
    # -------------------------
    @_retry_sql()
    def enqueue_cleanup(self, object_id: str, object_type: str, owner_id: str, reason: Optional[str] = None) -> int:
        with self._begin() as c:
            res = c.execute(text("""
              INSERT INTO cleanup_queue(object_id, object_type, owner_id, reason, created_at)
              VALUES (:oid, :ot, :own, :rea, :ts)
            """), {"oid": object_id, "ot": object_type, "own": owner_id, "rea": reason, "ts": _iso(_now_utc())})
        return int(res.lastrowid)

    @_retry_sql()
    def pending_cleanup(self, max_attempts: int = 5) -> List[CleanupItem]:
        with self._begin() as c:
            rows = c.execute(text("""
              SELECT id, object_id, object_type, owner_id, reason, attempts, last_error FROM cleanup_queue
              WHERE done=0 AND attempts < :max ORDER BY id
            """), {"max": int(max_attempts)}).mappings().all()
        return [CleanupItem(**dict(r)) for r in rows]

    @_retry_sql()
    def resolve_cleanup(self, item_id: int, error: Optional[str] = None) -> None:
        with self._begin() as c:
            if error is None:
                c.execute(text("UPDATE cleanup_queue SET done=1, last_error=NULL WHERE id=:id"), {"id": item_id})
            else:
                c.execute(
                    text("UPDATE cleanup_queue SET attempts=attempts+1, last_error=:err WHERE id=:id"),
                    {"id": item_id, "err": error[:500]},
                )


def is_duplicate_key(exc: BaseException) -> bool:
    return isinstance(exc, IntegrityError) and "UNIQUE" in str(exc).upper()
