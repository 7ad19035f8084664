from __future__ import annotations

import logging
import os
import random
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

import requests
from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

ENVBOOL = lambda v, d=False: (os.getenv(v, str(int(d))) or "").lower() in ("1", "true", "yes", "y")
ENVINT = lambda v, d: int(os.getenv(v, str(d)) or d)
ENVF = lambda v, d: float(os.getenv(v, str(d)) or d)

SLACK_TIMEOUT = ENVF("SLACK_TIMEOUT", 10.0)
SLACK_RETRY_MAX = ENVINT("SLACK_RETRY_MAX", 3)
SLACK_BACKOFF_BASE = ENVF("SLACK_BACKOFF_BASE", 0.4)
SLACK_BACKOFF_CAP = ENVF("SLACK_BACKOFF_CAP", 8.0)
SLACK_CB_FAILS = ENVINT("SLACK_CIRCUIT_THRESHOLD", 5)
SLACK_CB_RESET_SEC = ENVINT("SLACK_CIRCUIT_RESET_SEC", 120)
MAX_BLOCKS = 45
MAX_BLOCK_TEXT = 2900

M_SENT = Counter("adlab_slack_sent_total", "Messages sent", ["topic"])
M_FAIL = Counter("adlab_slack_fail_total", "Messages failed", ["topic"])
H_LAT = Histogram("adlab_slack_send_latency_seconds", "Send latency", ["topic"])

Severity = Literal["info", "warn", "error"]


def _log_stdout() -> bool:
    return ENVBOOL("SLACK_LOG_STDOUT", True)


def _truncate(s: str, limit: int) -> str:
    return s if len(s) <= limit else (s[: max(0, limit - 1)] + "…")


def _mk_section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": _truncate(text, MAX_BLOCK_TEXT)}}


def _mk_context(text: str) -> Dict[str, Any]:
    return {"type": "context", "elements": [{"type": "mrkdwn", "text": _truncate(text, MAX_BLOCK_TEXT)}]}


def _env_webhooks() -> Dict[str, str]:
    main_webhook = os.getenv("SLACK_WEBHOOK_URL", "") or ""
    return {
        "default": main_webhook,
        "alerts": os.getenv("SLACK_WEBHOOK_ALERTS", "") or main_webhook,
    }


def _slack_enabled_now() -> bool:
    return any(_env_webhooks().values()) and ENVBOOL("SLACK_ENABLED", False)


def _sanitize_line(text: str) -> str:
    if not text:
        return ""
    text = re.sub(r"[\x00-\x1f\x7f]", " ", text)
    text = re.sub(r"[“”]", '"', text)
    text = re.sub(r"[‘’]", "'", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


EMOJI = {
    "info": "ℹ️",
    "warn": "⏸️",
    "error": "🛑",
    "ok": "🟢",
}


def build_basic_blocks(title: str, lines: List[str], severity: str = "info", footer: Optional[str] = None) -> List[Dict[str, Any]]:
    blocks: List[Dict[str, Any]] = [_mk_section(f"{EMOJI.get(severity, 'ℹ️')} *{_sanitize_line(title)}*")]
    body = "\n".join(ln for ln in (_sanitize_line(x) for x in lines) if ln)
    if body:
        blocks.append(_mk_section(body))
    if footer:
        blocks.append({"type": "divider"})
        blocks.append(_mk_context(footer))
    return blocks[:MAX_BLOCKS]


@dataclass
class SlackMessage:
    text: str = ""
    blocks: Optional[List[Dict[str, Any]]] = None
    topic: Union[Literal["default", "alerts"], str] = "default"
    severity: Severity = "info"
    meta: Dict[str, Any] = field(default_factory=dict)

    def route_webhook(self) -> str:
        w = _env_webhooks()
        if self.topic == "alerts" and w["alerts"]:
            return w["alerts"]
        return w["default"]

    def payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"text": _truncate(self.text, 38000)}
        if self.blocks:
            out["blocks"] = self.blocks
        return out


class SlackClient:
    """Best-effort webhook sender. Delivery failures are logged, never raised to callers."""

    def __init__(self) -> None:
        self.enabled = _slack_enabled_now()
        self.timeout = SLACK_TIMEOUT
        self.retry_max = max(0, SLACK_RETRY_MAX)
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self.cb_open_until: Optional[float] = None
        self.fail_count = 0
        self._lock = threading.Lock()

    def close(self) -> None:
        self.session.close()

    def notify(self, msg: SlackMessage) -> bool:
        if _log_stdout():
            logger.info("[SLACK %s/%s] %s", msg.severity, msg.topic, _sanitize_line(msg.text))
        webhook = msg.route_webhook()
        if not self.enabled or not webhook:
            return False
        with self._lock:
            if self.cb_open_until and time.time() < self.cb_open_until:
                logger.debug("Slack circuit open; dropping %s message", msg.topic)
                return False
        ok = self._post_with_retries(webhook, msg.payload(), topic=str(msg.topic))
        with self._lock:
            if ok:
                self.fail_count = 0
                self.cb_open_until = None
            else:
                self.fail_count += 1
                if self.fail_count >= SLACK_CB_FAILS:
                    self.cb_open_until = time.time() + SLACK_CB_RESET_SEC
        return ok

    def _post_with_retries(self, webhook: str, payload: Dict[str, Any], topic: str) -> bool:
        for attempt in range(self.retry_max + 1):
            t0 = time.perf_counter()
            try:
                r = self.session.post(webhook, json=payload, timeout=self.timeout)
                H_LAT.labels(topic).observe(time.perf_counter() - t0)
                if r.status_code < 300:
                    M_SENT.labels(topic).inc()
                    return True
                if r.status_code != 429 and r.status_code < 500:
                    logger.warning("Slack rejected message (%s): %s", r.status_code, r.text[:200])
                    break
            except requests.RequestException as e:
                logger.warning("Slack post failed: %s", e)
            if attempt < self.retry_max:
                delay = min(SLACK_BACKOFF_CAP, SLACK_BACKOFF_BASE * (2 ** attempt))
                time.sleep(delay * (0.5 + random.random() * 0.5))
        M_FAIL.labels(topic).inc()
        return False


_client: Optional[SlackClient] = None
_client_lock = threading.Lock()


def client() -> SlackClient:
    global _client
    with _client_lock:
        if _client is None:
            _client = SlackClient()
        return _client


def notify(text: str, severity: Severity = "info", topic: str = "default") -> None:
    client().notify(SlackMessage(text=_sanitize_line(text), severity=severity, topic=topic))


def alert_error(error_msg: str) -> None:
    client().notify(SlackMessage(text=f"🚨 Something went wrong: {error_msg}", severity="error", topic="alerts"))


def alert_budget_clamped(experiment_name: str, raw_daily: float, daily: float, currency: str = "USD") -> None:
    notify(
        f"⚠️ {experiment_name}: daily budget raised from {raw_daily:.2f} to platform minimum "
        f"{daily:.2f} {currency}; total spend will exceed the requested budget",
        severity="warn",
        topic="alerts",
    )


def alert_build_result(experiment_name: str, status: str, succeeded: int, failed: int, errors: List[str]) -> None:
    severity: Severity = "info" if status == "ok" else ("warn" if status == "partial" else "error")
    lines = [f"Variants: {succeeded} created, {failed} failed"] + [f"• {e}" for e in errors[:10]]
    client().notify(SlackMessage(
        text=f"Experiment {experiment_name} built ({status}): {succeeded} ok / {failed} failed",
        blocks=build_basic_blocks(f"Experiment {experiment_name}: {status}", lines, severity=severity),
        severity=severity,
        topic="alerts" if failed else "default",
    ))


def alert_sweep_report(synced: int, failed: int, skipped: int, errors: List[str], deadline_hit: bool = False) -> None:
    if not failed and not deadline_hit:
        return
    lines = [f"synced={synced} failed={failed} skipped={skipped}"]
    if deadline_hit:
        lines.append("Sweep deadline reached; remaining experiments deferred to the next run")
    lines += [f"• {e}" for e in errors[:10]]
    client().notify(SlackMessage(
        text=f"Analytics sweep: {failed} experiment(s) failed",
        blocks=build_basic_blocks("Analytics sweep", lines, severity="warn"),
        severity="warn",
        topic="alerts",
    ))


def alert_credential_expired(owner_id: str) -> None:
    notify(f"🔑 Ads credential for owner {owner_id} expired; reconnect required", severity="error", topic="alerts")
