# meta_client.py
from __future__ import annotations

import base64
import hashlib
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from facebook_business.adobjects.adaccount import AdAccount
from facebook_business.adobjects.campaign import Campaign
from facebook_business.api import FacebookAdsApi
from prometheus_client import Counter

from ..analytics.metrics import decode_insights
from ..config import MetaSettings
from ..infrastructure.error_handling import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RemoteError,
    RemotePolicyError,
    RemoteTransientError,
    RetryConfig,
    RetryHandler,
    ValidationError,
    classify_exception,
    classify_remote_error,
)
from ..models import InsightsSnapshot, Owner
from ..rules.budget import to_minor_units

logger = logging.getLogger(__name__)


def _meta_log(level: int, message: str, *args) -> None:
    logger.log(level, f"[META] {message}", *args)


# -------------------------
# Environment & guards
# -------------------------
CB_FAILS     = int(os.getenv("META_CB_FAILS", "5") or 5)
CB_RESET_SEC = int(os.getenv("META_CB_RESET_SEC", "120") or 120)

GRAPH_HOST = "https://graph.facebook.com"

INSIGHTS_FIELDS: Tuple[str, ...] = ("impressions", "clicks", "spend", "ctr", "cpc", "cpm", "actions")

REMOTE_STATUSES = frozenset({"ACTIVE", "PAUSED", "ARCHIVED"})

# Endpoints that live under act_<account_id>/
ACCOUNT_SCOPED_ENDPOINTS = {"campaigns", "adsets", "adcreatives", "ads", "adimages"}

META_REQUESTS = Counter("adlab_meta_requests_total", "Ads platform requests", ["op", "outcome"])


# -------------------------
# Config dataclasses
# -------------------------
@dataclass
class AccountAuth:
    account_id: str                # can be "act_123" or "123"
    access_token: str
    page_id: Optional[str] = None
    app_id: Optional[str] = None
    app_secret: Optional[str] = None


@dataclass
class ClientConfig:
    api_version: str = "v19.0"
    timeout_sec: float = 30.0
    retry_max: int = 4
    backoff_base: float = 0.5
    write_cooldown_sec: float = 0.0
    transport: str = "http"

    @classmethod
    def from_settings(cls, meta: MetaSettings) -> "ClientConfig":
        return cls(
            api_version=meta.api_version,
            timeout_sec=meta.timeout_sec,
            retry_max=meta.retry_max,
            backoff_base=meta.backoff_base,
            write_cooldown_sec=meta.write_cooldown_sec,
            transport=meta.transport,
        )


# -------------------------
# Helpers
# -------------------------
def _hash_idempotency(*parts: str) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update((p or "").encode("utf-8"))
        h.update(b"\x1f")
    return h.hexdigest()[:16]


def _s(x: Any) -> str:
    if x is None or callable(x):
        return ""
    return str(x)


def _sanitize(obj: Any) -> Any:
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, dict):
        return {_s(k): _sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_sanitize(v) for v in obj]
    return _s(obj)


def _normalize_account_id(account_id: str) -> Tuple[str, str]:
    """Returns (numeric_id, act_prefixed_id). Accepts either '123' or 'act_123'."""
    aid = (account_id or "").strip()
    num = aid[4:] if aid.startswith("act_") else aid
    return num, f"act_{num}"


def _require_id(resp: Any, op: str) -> str:
    oid = resp.get("id") if isinstance(resp, dict) else None
    if not oid:
        raise RemotePolicyError(f"{op}: response carried no id: {resp!r}", op=op)
    return str(oid)


# -------------------------
# MetaClient
# -------------------------
class MetaClient:
    """
    Thin client for the Marketing API objects one experiment needs.

    Every object is created PAUSED. Budgets are given in account currency and
    sent to Graph as integer minor units. Transient failures (5xx, throttling,
    timeouts) are retried with jittered exponential backoff behind a per-operation
    circuit breaker; policy rejections surface immediately with the platform's reason.
    """

    def __init__(
        self,
        auth: AccountAuth,
        cfg: Optional[ClientConfig] = None,
        *,
        dry_run: bool = False,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.auth = auth
        self.cfg = cfg or ClientConfig()
        self.dry_run = bool(dry_run)
        self.sleeper = sleeper
        self._acct_num, self._acct_act = _normalize_account_id(auth.account_id)
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._breaker_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._last_write_ts = 0.0
        self._sdk_inited = False

    @property
    def ad_account_id_act(self) -> str:
        return self._acct_act

    @property
    def use_sdk(self) -> bool:
        return self.cfg.transport == "sdk" and not self.dry_run

    def _init_sdk_if_needed(self) -> None:
        if self._sdk_inited:
            return
        FacebookAdsApi.init(
            self.auth.app_id,
            self.auth.app_secret,
            self.auth.access_token,
            api_version=self.cfg.api_version,
        )
        self._sdk_inited = True

    # ------------- Circuit breaker / retry -------------
    def _breaker(self, key: str) -> CircuitBreaker:
        with self._breaker_lock:
            br = self._breakers.get(key)
            if br is None:
                br = self._breakers[key] = CircuitBreaker(
                    f"meta:{key}",
                    CircuitBreakerConfig(failure_threshold=CB_FAILS, timeout_seconds=CB_RESET_SEC),
                )
            return br

    def _retry(self, key: str, fn: Callable, *args, **kwargs):
        breaker = self._breaker(key)

        def _attempt():
            try:
                return fn(*args, **kwargs)
            except RemoteError:
                raise
            except Exception as e:
                raise classify_exception(e, op=key) from e

        handler = RetryHandler(
            RetryConfig(
                max_retries=max(0, self.cfg.retry_max),
                initial_delay=self.cfg.backoff_base,
                max_delay=30.0,
            ),
            sleeper=self.sleeper,
        )
        try:
            out = handler.execute(breaker.call, _attempt)
        except RemoteTransientError as e:
            META_REQUESTS.labels(key, "transient").inc()
            _meta_log(logging.WARNING, "%s failed after retries: %s", key, e)
            raise
        except RemotePolicyError as e:
            META_REQUESTS.labels(key, "policy").inc()
            _meta_log(logging.WARNING, "%s rejected: %s", key, e)
            raise
        META_REQUESTS.labels(key, "ok").inc()
        return out

    # ------------- Cooldown/pacing for writes -------------
    def _cooldown(self) -> None:
        if self.cfg.write_cooldown_sec <= 0:
            return
        with self._write_lock:
            need = max(0.0, self.cfg.write_cooldown_sec - (time.time() - self._last_write_ts))
            if need > 0:
                self.sleeper(need)
            self._last_write_ts = time.time()

    # ------------- HTTP helpers -------------
    def _graph_url(self, endpoint: str) -> str:
        endpoint = (endpoint or "").lstrip("/")
        first_segment = endpoint.split("/", 1)[0]
        if first_segment in ACCOUNT_SCOPED_ENDPOINTS:
            path = f"{self._acct_act}/{endpoint}"
        else:
            path = endpoint
        return f"{GRAPH_HOST}/{self.cfg.api_version}/{path}"

    @staticmethod
    def _decode(r: requests.Response, op: str) -> Dict[str, Any]:
        try:
            body = r.json()
        except ValueError:
            body = {"error": {"message": (r.text or "")[:500]}}
        if r.status_code >= 400:
            raise classify_remote_error(r.status_code, body, op=op)
        if not isinstance(body, dict):
            raise RemotePolicyError(f"{op}: unexpected response body {body!r}", op=op)
        return body

    def _graph_post(self, endpoint: str, payload: Dict[str, Any], op: str) -> Dict[str, Any]:
        data = _sanitize(payload)
        data["access_token"] = self.auth.access_token
        r = requests.post(self._graph_url(endpoint), json=data, timeout=self.cfg.timeout_sec)
        return self._decode(r, op)

    def _graph_get_object(self, object_path: str, params: Optional[Dict[str, Any]], op: str) -> Dict[str, Any]:
        qp = dict(params or {})
        qp["access_token"] = self.auth.access_token
        r = requests.get(self._graph_url(object_path), params=qp, timeout=self.cfg.timeout_sec)
        return self._decode(r, op)

    def _graph_delete(self, object_path: str, op: str) -> Dict[str, Any]:
        r = requests.delete(
            self._graph_url(object_path),
            params={"access_token": self.auth.access_token},
            timeout=self.cfg.timeout_sec,
        )
        return self._decode(r, op)

    def _write(self, op: str, endpoint: str, payload: Dict[str, Any], sdk_fn: Optional[Callable[[], Any]] = None) -> Dict[str, Any]:
        self._cooldown()
        if self.use_sdk and sdk_fn is not None:
            self._init_sdk_if_needed()
            return dict(self._retry(op, sdk_fn))
        return self._retry(op, self._graph_post, endpoint, payload, op)

    def _mock_id(self, prefix: str, *parts: str) -> str:
        return f"{prefix}_{_hash_idempotency(self._acct_act, *parts)}"

    # ------------- Object creation -------------
    def create_campaign(self, name: str, objective: str) -> str:
        if self.dry_run:
            return self._mock_id("CP", name, objective)
        params = {
            "name": _s(name),
            "objective": _s(objective),
            "status": "PAUSED",
            "special_ad_categories": [],
        }
        resp = self._write(
            "create_campaign", "campaigns", params,
            lambda: AdAccount(self._acct_act).create_campaign(fields=[], params=params),
        )
        cid = _require_id(resp, "create_campaign")
        _meta_log(logging.INFO, "campaign %s created (PAUSED) objective=%s", cid, objective)
        return cid

    def create_adset(
        self,
        campaign_id: str,
        name: str,
        daily_budget: float,
        *,
        targeting: Dict[str, Any],
        optimization_goal: str,
        billing_event: str = "IMPRESSIONS",
        bid_strategy: str = "LOWEST_COST_WITHOUT_CAP",
    ) -> str:
        if self.dry_run:
            return self._mock_id("AS", campaign_id, name)
        params = {
            "name": _s(name),
            "campaign_id": _s(campaign_id),
            "daily_budget": to_minor_units(daily_budget),
            "billing_event": _s(billing_event),
            "optimization_goal": _s(optimization_goal),
            "bid_strategy": _s(bid_strategy),
            "targeting": _sanitize(targeting),
            "status": "PAUSED",
        }
        resp = self._write(
            "create_adset", "adsets", params,
            lambda: AdAccount(self._acct_act).create_ad_set(fields=[], params=params),
        )
        return _require_id(resp, "create_adset")

    def upload_image(self, image_url: str) -> str:
        """Copy a hosted image into the account's image library; returns its hash."""
        if self.dry_run:
            return _hash_idempotency(image_url)
        r = requests.get(image_url, timeout=self.cfg.timeout_sec)
        if r.status_code >= 400:
            raise classify_remote_error(r.status_code, None, op="fetch_image")
        payload = {"bytes": base64.b64encode(r.content).decode("ascii")}
        resp = self._write("upload_image", "adimages", payload)
        images = resp.get("images")
        if not isinstance(images, dict) or not images:
            raise RemotePolicyError(f"upload_image: no images in response {resp!r}", op="upload_image")
        first = next(iter(images.values()))
        h = first.get("hash") if isinstance(first, dict) else None
        if not h:
            raise RemotePolicyError(f"upload_image: no hash in response {resp!r}", op="upload_image")
        return str(h)

    def create_ad_creative(
        self,
        name: str,
        *,
        headline: str,
        body: str,
        link_url: str,
        cta: str,
        image_url: Optional[str] = None,
        image_hash: Optional[str] = None,
        page_id: Optional[str] = None,
    ) -> str:
        if self.dry_run:
            return self._mock_id("CR", name, headline, cta)
        page = page_id or self.auth.page_id
        if not page:
            raise ValidationError("create_ad_creative requires a page id")
        link_data: Dict[str, Any] = {
            "link": _s(link_url),
            "message": _s(body),
            "name": _s(headline),
            "call_to_action": {"type": _s(cta), "value": {"link": _s(link_url)}},
        }
        if image_hash:
            link_data["image_hash"] = image_hash
        elif image_url:
            link_data["picture"] = image_url
        params = {
            "name": _s(name),
            "object_story_spec": {"page_id": _s(page), "link_data": link_data},
        }
        resp = self._write(
            "create_creative", "adcreatives", params,
            lambda: AdAccount(self._acct_act).create_ad_creative(fields=[], params=params),
        )
        return _require_id(resp, "create_creative")

    def create_ad(self, adset_id: str, name: str, creative_id: str) -> str:
        if self.dry_run:
            return self._mock_id("AD", adset_id, creative_id)
        params = {
            "name": _s(name),
            "adset_id": _s(adset_id),
            "creative": {"creative_id": _s(creative_id)},
            "status": "PAUSED",
        }
        resp = self._write(
            "create_ad", "ads", params,
            lambda: AdAccount(self._acct_act).create_ad(fields=[], params=params),
        )
        return _require_id(resp, "create_ad")

    # ------------- Status / deletion -------------
    def update_status(self, object_id: str, status: str) -> None:
        status = _s(status).upper()
        if status not in REMOTE_STATUSES:
            raise ValidationError(f"Unsupported remote status {status!r}")
        if self.dry_run:
            _meta_log(logging.INFO, "[dry-run] %s -> %s", object_id, status)
            return
        self._write(
            "update_status", object_id, {"status": status},
            lambda: Campaign(object_id).api_update(params={"status": status}),
        )

    def delete_object(self, object_id: str) -> None:
        if self.dry_run:
            return
        self._cooldown()
        self._retry("delete_object", self._graph_delete, object_id, "delete_object")

    # ------------- Reads -------------
    def get_insights(self, object_id: str, *, date_preset: str = "today") -> Optional[InsightsSnapshot]:
        """Day-cumulative insights for a campaign or ad; None when the platform has no rows yet."""
        if self.dry_run:
            return None
        params = {"fields": ",".join(INSIGHTS_FIELDS), "date_preset": date_preset}
        if self.use_sdk:
            self._init_sdk_if_needed()

            def _fetch_sdk():
                cursor = Campaign(object_id).get_insights(fields=list(INSIGHTS_FIELDS), params={"date_preset": date_preset})
                return {"data": [dict(row) for row in cursor]}
            payload = self._retry("insights", _fetch_sdk)
        else:
            payload = self._retry("insights", self._graph_get_object, f"{object_id}/insights", params, "insights")
        return decode_insights(payload)

    def list_ad_accounts(self) -> List[Dict[str, Any]]:
        if self.dry_run:
            return [{"id": self._acct_act, "name": "dry-run"}]
        payload = self._retry(
            "list_ad_accounts",
            self._graph_get_object,
            "me/adaccounts",
            {"fields": "id,name,account_status,currency,timezone_name"},
            "list_ad_accounts",
        )
        data = payload.get("data")
        if not isinstance(data, list):
            raise RemotePolicyError(f"list_ad_accounts: unexpected payload {payload!r}", op="list_ad_accounts")
        return data

    def can_access_account(self) -> bool:
        """True when this client's ad account is among those the token can manage."""
        ids = {_normalize_account_id(str(a.get("id") or ""))[1] for a in self.list_ad_accounts() if isinstance(a, dict)}
        return self._acct_act in ids


class MetaClientFactory:
    """Builds one client per owner credential; no shared global client."""

    def __init__(self, meta: Optional[MetaSettings] = None, sleeper: Callable[[float], None] = time.sleep) -> None:
        self.meta = meta or MetaSettings()
        self.sleeper = sleeper

    def __call__(self, owner: Owner) -> MetaClient:
        if not owner.access_token or not owner.ad_account_id:
            raise ValidationError(f"owner {owner.owner_id} has no connected ads account")
        auth = AccountAuth(
            account_id=owner.ad_account_id,
            access_token=owner.access_token,
            page_id=owner.page_id,
            app_id=os.getenv("META_APP_ID"),
            app_secret=os.getenv("META_APP_SECRET"),
        )
        return MetaClient(auth, ClientConfig.from_settings(self.meta), dry_run=self.meta.dry_run, sleeper=self.sleeper)
