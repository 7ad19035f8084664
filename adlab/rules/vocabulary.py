"""
Objective / call-to-action normalization.

Both mappers are total: any input (None, empty, unknown) resolves to a platform
value. Already-normalized platform values pass through unchanged.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Final, FrozenSet, Optional, Tuple

logger = logging.getLogger(__name__)

# -------------------------
# Objectives
# -------------------------
PLATFORM_OBJECTIVES: Final[FrozenSet[str]] = frozenset({
    "OUTCOME_AWARENESS",
    "OUTCOME_TRAFFIC",
    "OUTCOME_ENGAGEMENT",
    "OUTCOME_LEADS",
    "OUTCOME_APP_PROMOTION",
    "OUTCOME_SALES",
})

DEFAULT_OBJECTIVE: Final[str] = "OUTCOME_TRAFFIC"

OBJECTIVE_ALIASES: Final[Dict[str, str]] = {
    "LINK_CLICKS": "OUTCOME_TRAFFIC",
    "TRAFFIC": "OUTCOME_TRAFFIC",
    "CONVERSIONS": "OUTCOME_SALES",
    "SALES": "OUTCOME_SALES",
    "PRODUCT_CATALOG_SALES": "OUTCOME_SALES",
    "REACH": "OUTCOME_AWARENESS",
    "BRAND_AWARENESS": "OUTCOME_AWARENESS",
    "AWARENESS": "OUTCOME_AWARENESS",
    "STORE_VISITS": "OUTCOME_AWARENESS",
    "POST_ENGAGEMENT": "OUTCOME_ENGAGEMENT",
    "PAGE_LIKES": "OUTCOME_ENGAGEMENT",
    "VIDEO_VIEWS": "OUTCOME_ENGAGEMENT",
    "MESSAGES": "OUTCOME_ENGAGEMENT",
    "ENGAGEMENT": "OUTCOME_ENGAGEMENT",
    "LEAD_GENERATION": "OUTCOME_LEADS",
    "LEADS": "OUTCOME_LEADS",
    "APP_INSTALLS": "OUTCOME_APP_PROMOTION",
}

OPTIMIZATION_GOALS: Final[Dict[str, str]] = {
    "OUTCOME_TRAFFIC": "LINK_CLICKS",
    "OUTCOME_AWARENESS": "REACH",
    "OUTCOME_ENGAGEMENT": "POST_ENGAGEMENT",
    "OUTCOME_LEADS": "LEAD_GENERATION",
    "OUTCOME_SALES": "OFFSITE_CONVERSIONS",
    "OUTCOME_APP_PROMOTION": "APP_INSTALLS",
}

DEFAULT_OPTIMIZATION_GOAL: Final[str] = "LINK_CLICKS"

# -------------------------
# Calls to action
# -------------------------
PLATFORM_CTAS: Final[FrozenSet[str]] = frozenset({
    "LEARN_MORE",
    "SHOP_NOW",
    "SIGN_UP",
    "SUBSCRIBE",
    "DOWNLOAD",
    "CONTACT_US",
    "GET_OFFER",
    "GET_QUOTE",
    "APPLY_NOW",
    "ORDER_NOW",
    "BUY_NOW",
    "BOOK_TRAVEL",
    "WATCH_MORE",
    "DONATE_NOW",
    "CALL_NOW",
    "SEE_MORE",
})

DEFAULT_CTA: Final[str] = "LEARN_MORE"

# Ordered; the first alias that matches wins.
CTA_ALIASES: Final[Tuple[Tuple[str, str], ...]] = (
    ("get started", "LEARN_MORE"),
    ("learn more", "LEARN_MORE"),
    ("read more", "LEARN_MORE"),
    ("discover", "LEARN_MORE"),
    ("shop now", "SHOP_NOW"),
    ("shop", "SHOP_NOW"),
    ("buy now", "BUY_NOW"),
    ("buy", "BUY_NOW"),
    ("purchase", "BUY_NOW"),
    ("order now", "ORDER_NOW"),
    ("order", "ORDER_NOW"),
    ("sign up", "SIGN_UP"),
    ("signup", "SIGN_UP"),
    ("register", "SIGN_UP"),
    ("join", "SIGN_UP"),
    ("subscribe", "SUBSCRIBE"),
    ("download", "DOWNLOAD"),
    ("install", "DOWNLOAD"),
    ("contact us", "CONTACT_US"),
    ("contact", "CONTACT_US"),
    ("call now", "CALL_NOW"),
    ("call", "CALL_NOW"),
    ("get offer", "GET_OFFER"),
    ("claim offer", "GET_OFFER"),
    ("offer", "GET_OFFER"),
    ("deal", "GET_OFFER"),
    ("get quote", "GET_QUOTE"),
    ("quote", "GET_QUOTE"),
    ("apply now", "APPLY_NOW"),
    ("apply", "APPLY_NOW"),
    ("book now", "BOOK_TRAVEL"),
    ("book", "BOOK_TRAVEL"),
    ("watch more", "WATCH_MORE"),
    ("watch", "WATCH_MORE"),
    ("donate", "DONATE_NOW"),
    ("see more", "SEE_MORE"),
)

# Shorter inputs are too ambiguous for reverse (input-inside-alias) matching.
MIN_REVERSE_MATCH_LEN: Final[int] = 3

_WS = re.compile(r"[\s_\-]+")


def _norm_text(value: Optional[str]) -> str:
    return _WS.sub(" ", str(value or "")).strip().lower()


def _as_enum(value: Optional[str]) -> str:
    return _WS.sub("_", str(value or "").strip()).upper()


def map_objective(value: Optional[str]) -> str:
    key = _as_enum(value)
    if key in PLATFORM_OBJECTIVES:
        logger.debug("objective %r -> %s (direct)", value, key)
        return key
    if key in OBJECTIVE_ALIASES:
        mapped = OBJECTIVE_ALIASES[key]
        logger.debug("objective %r -> %s (alias:%s)", value, mapped, key)
        return mapped
    logger.debug("objective %r -> %s (default)", value, DEFAULT_OBJECTIVE)
    return DEFAULT_OBJECTIVE


def optimization_goal_for(objective: Optional[str]) -> str:
    return OPTIMIZATION_GOALS.get(map_objective(objective), DEFAULT_OPTIMIZATION_GOAL)


def map_call_to_action(value: Optional[str]) -> str:
    key = _as_enum(value)
    if key in PLATFORM_CTAS:
        logger.debug("cta %r -> %s (direct)", value, key)
        return key

    text = _norm_text(value)
    if not text:
        logger.debug("cta %r -> %s (default)", value, DEFAULT_CTA)
        return DEFAULT_CTA

    for alias, cta in CTA_ALIASES:
        if alias in text or (len(text) >= MIN_REVERSE_MATCH_LEN and text in alias):
            logger.debug("cta %r -> %s (alias:%s)", value, cta, alias)
            return cta

    logger.debug("cta %r -> %s (default)", value, DEFAULT_CTA)
    return DEFAULT_CTA
