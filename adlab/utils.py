from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import pytz


# -----------------------
# Clock primitives
# -----------------------
class Clock:
    def now_utc(self) -> datetime:
        raise NotImplementedError


class RealClock(Clock):
    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    def __init__(self, dt_utc: datetime):
        if dt_utc.tzinfo is None:
            dt_utc = dt_utc.replace(tzinfo=timezone.utc)
        self._dt = dt_utc.astimezone(timezone.utc)

    @staticmethod
    def from_env(var: str = "NOW_UTC") -> Optional["FixedClock"]:
        val = os.getenv(var)
        if not val:
            return None
        return FixedClock(parse_any_datetime(val))

    def now_utc(self) -> datetime:
        return self._dt


def parse_any_datetime(s: str) -> datetime:
    s = s.strip()
    if re.fullmatch(r"\d{10}", s):
        return datetime.fromtimestamp(int(s), tz=timezone.utc)
    if re.fullmatch(r"\d{13}", s):
        return datetime.fromtimestamp(int(s) / 1000.0, tz=timezone.utc)
    s = s.replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(s)
    except ValueError as e:
        raise ValueError(f"Invalid datetime: {s!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def require_tz(name: str) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError as e:
        raise ValueError(f"Invalid IANA timezone: {name!r}") from e


# -----------------------
# Timekit (account-local days)
# -----------------------
@dataclass(frozen=True)
class TZConfig:
    account_tz: str = "UTC"

    @staticmethod
    def from_env() -> "TZConfig":
        acc = os.getenv("ACCOUNT_TIMEZONE") or os.getenv("TIMEZONE") or "UTC"
        require_tz(acc)
        return TZConfig(acc)


class Timekit:
    """Metric days are calendar dates in the ad account's timezone."""

    def __init__(self, tzcfg: Optional[TZConfig] = None, clock: Optional[Clock] = None):
        self.tzcfg = tzcfg or TZConfig.from_env()
        self.clock = clock or FixedClock.from_env() or RealClock()
        self._acc = require_tz(self.tzcfg.account_tz)

    def now_utc(self) -> datetime:
        return self.clock.now_utc()

    def now_account(self) -> datetime:
        return self.now_utc().astimezone(self._acc)

    def today_account(self) -> date:
        return self.now_account().date()

    def last_n_days_account(self, n: int) -> Tuple[date, date]:
        """Inclusive window of ``n`` account-local days ending today."""
        if n <= 0:
            raise ValueError("n must be >= 1")
        end = self.today_account()
        return end - timedelta(days=n - 1), end


def iso_no_micro(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.replace(microsecond=0).isoformat()


# -----------------------
# Env / config helpers
# -----------------------
def getenv_f(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def getenv_i(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def getenv_b(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


def cfg(d: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = d
    for k in path.split("."):
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return cur


def cfg_or_env_f(d: Dict[str, Any], path: str, env: str, default: float) -> float:
    if os.getenv(env):
        return getenv_f(env, default)
    return safe_f(cfg(d, path, default), default)


def cfg_or_env_i(d: Dict[str, Any], path: str, env: str, default: int) -> int:
    if os.getenv(env):
        return getenv_i(env, default)
    try:
        return int(cfg(d, path, default))
    except (TypeError, ValueError):
        return default


def cfg_or_env_b(d: Dict[str, Any], path: str, env: str, default: bool) -> bool:
    if os.getenv(env):
        return getenv_b(env, default)
    val = cfg(d, path, default)
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(val)


def cfg_or_env_s(d: Dict[str, Any], path: str, env: str, default: str) -> str:
    return os.getenv(env) or str(cfg(d, path, default) or default)


def safe_f(v: Any, default: float = 0.0) -> float:
    try:
        if v is None:
            return default
        if isinstance(v, (int, float)):
            val = float(v)
        else:
            s = str(v).replace(",", "").strip()
            if s == "":
                return default
            val = float(s)
        if val != val or val in (float("inf"), float("-inf")):
            return default
        return val
    except (TypeError, ValueError):
        return default
