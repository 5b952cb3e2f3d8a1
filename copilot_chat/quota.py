"""Premium-request quota extraction.

Quota data shows up in several places depending on the plan and API
vintage. extract_quota() tries an ordered list of strategies, each
returning a QuotaRecord or None, and stops at the first hit. None from
extract_quota() means "unknown", which is not the same as a zero quota.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict

# Equivalent keys used over time for the premium-request bucket
PREMIUM_QUOTA_KEYS = (
    "premium_interactions",
    "premium_requests",
    "chat_premium_requests",
    "premium_models",
)

SUBSCRIPTION_QUOTA_FIELD = "premium_requests"


class QuotaRecord(BaseModel):
    """Derived view of premium-request consumption; never stored."""

    model_config = ConfigDict(frozen=True)

    quota: float | None = None
    used: float | None = None
    overage: float = 0
    overage_usd: float = 0

    @property
    def remaining(self) -> float | None:
        if self.quota is None or self.used is None:
            return None
        return max(0.0, self.quota - self.used)

    @property
    def percent_used(self) -> float | None:
        if self.quota is None or self.used is None or self.quota <= 0:
            return None
        return min(100.0, self.used / self.quota * 100)


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _first_number(obj: dict[str, Any], *keys: str) -> float | None:
    for key in keys:
        value = _number(obj.get(key))
        if value is not None:
            return value
    return None


def _to_record(obj: Any) -> QuotaRecord | None:
    """Normalize one quota-shaped dict; None if it carries no quota data."""
    if not isinstance(obj, dict):
        return None
    quota = _first_number(obj, "quota", "entitlement", "limit")
    used = _first_number(obj, "used", "consumed")
    if used is None and quota is not None:
        remaining = _number(obj.get("remaining"))
        if remaining is not None:
            used = max(0, quota - remaining)
    if quota is None and used is None:
        return None
    return QuotaRecord(
        quota=quota,
        used=used,
        overage=_first_number(obj, "overage", "overage_count") or 0,
        overage_usd=_first_number(obj, "overage_usd") or 0,
    )


# ---------------------------------------------------------------------------
# Strategies, in priority order
# ---------------------------------------------------------------------------

# (limited_quotas, token_payload, subscription) -> record
Strategy = Callable[[Any, Any, Any], QuotaRecord | None]


def _from_known_key(limited: Any, token: Any, subscription: Any) -> QuotaRecord | None:
    if not isinstance(limited, dict):
        return None
    for key in PREMIUM_QUOTA_KEYS:
        if key in limited:
            record = _to_record(limited[key])
            if record is not None:
                return record
    return None


def _from_generic_nested(limited: Any, token: Any, subscription: Any) -> QuotaRecord | None:
    if not isinstance(limited, dict):
        return None
    for value in limited.values():
        if isinstance(value, dict) and "quota" in value:
            record = _to_record(value)
            if record is not None:
                return record
    return None


def _from_token_nested(limited: Any, token: Any, subscription: Any) -> QuotaRecord | None:
    if not isinstance(token, dict):
        return None
    for container in ("limited_user_quotas", "quota_snapshots"):
        nested = token.get(container)
        if not isinstance(nested, dict):
            continue
        for key in PREMIUM_QUOTA_KEYS:
            record = _to_record(nested.get(key))
            if record is not None:
                return record
    return None


def _from_subscription(limited: Any, token: Any, subscription: Any) -> QuotaRecord | None:
    if not isinstance(subscription, dict):
        return None
    return _to_record(subscription.get(SUBSCRIPTION_QUOTA_FIELD))


def _from_token_fields(limited: Any, token: Any, subscription: Any) -> QuotaRecord | None:
    if not isinstance(token, dict) or ("quota" not in token and "used" not in token):
        return None
    return _to_record(token)


STRATEGIES: tuple[Strategy, ...] = (
    _from_known_key,
    _from_generic_nested,
    _from_token_nested,
    _from_subscription,
    _from_token_fields,
)


def extract_quota(
    limited_quotas: Any,
    token_payload: Any = None,
    subscription_payload: Any = None,
) -> QuotaRecord | None:
    """Reconcile premium quota data from whichever source has it."""
    for strategy in STRATEGIES:
        record = strategy(limited_quotas, token_payload, subscription_payload)
        if record is not None:
            return record
    return None


def has_unlimited_tier(unlimited_quotas: Any) -> bool:
    """True iff the unlimited-quota value is non-empty."""
    if isinstance(unlimited_quotas, (list, tuple, dict, set)):
        return len(unlimited_quotas) > 0
    return bool(unlimited_quotas)
