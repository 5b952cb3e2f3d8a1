"""Tests for copilot_chat/quota.py -- ordered extraction strategies."""

import pytest

from copilot_chat.quota import (
    STRATEGIES,
    QuotaRecord,
    extract_quota,
    has_unlimited_tier,
)


class TestExtractQuota:
    def test_chat_premium_requests_key(self):
        payload = {"limited_user_quotas": {"chat_premium_requests": {"quota": 300, "used": 120}}}
        record = extract_quota(payload["limited_user_quotas"], payload, None)
        assert record == QuotaRecord(quota=300, used=120, overage=0, overage_usd=0)

    @pytest.mark.parametrize(
        "key", ["premium_interactions", "premium_requests", "chat_premium_requests", "premium_models"]
    )
    def test_all_alias_keys(self, key):
        record = extract_quota({key: {"quota": 50, "used": 5}})
        assert (record.quota, record.used) == (50, 5)

    def test_known_key_beats_generic(self):
        limited = {
            "completions": {"quota": 999, "used": 1},
            "premium_interactions": {"quota": 300, "used": 10},
        }
        assert extract_quota(limited).quota == 300

    def test_generic_nested_fallback(self):
        assert extract_quota({"something_new": {"quota": 40, "used": 4}}).quota == 40

    def test_field_aliases_and_remaining(self):
        record = extract_quota({"premium_requests": {"entitlement": 300, "remaining": 280}})
        assert record.quota == 300
        assert record.used == 20

    def test_overage_fields(self):
        record = extract_quota(
            {"premium_requests": {"limit": 300, "consumed": 310, "overage_count": 10, "overage_usd": 0.4}}
        )
        assert record.overage == 10
        assert record.overage_usd == 0.4

    def test_quota_snapshots_in_token(self):
        token = {"quota_snapshots": {"premium_interactions": {"quota": 1500, "used": 3}}}
        assert extract_quota(None, token).quota == 1500

    def test_subscription_fallback(self):
        record = extract_quota(None, {}, {"premium_requests": {"quota": 300, "used": 7}})
        assert record.used == 7

    def test_token_top_level_fields_last(self):
        record = extract_quota(None, {"quota": 100, "used": 1})
        assert record.quota == 100

    def test_nothing_found_is_none(self):
        """Unknown is None, not a zero quota."""
        assert extract_quota(None, {"unlimited_user_quotas": ["x"]}, None) is None
        assert extract_quota({}, {}, {}) is None

    def test_strategy_order(self):
        names = [s.__name__ for s in STRATEGIES]
        assert names == [
            "_from_known_key",
            "_from_generic_nested",
            "_from_token_nested",
            "_from_subscription",
            "_from_token_fields",
        ]


class TestQuotaRecord:
    def test_remaining_and_percent(self):
        record = QuotaRecord(quota=300, used=120)
        assert record.remaining == 180
        assert record.percent_used == pytest.approx(40)

    def test_over_quota_clamped(self):
        record = QuotaRecord(quota=100, used=150)
        assert record.remaining == 0
        assert record.percent_used == 100

    def test_unknown_values(self):
        record = QuotaRecord(quota=None, used=5)
        assert record.remaining is None
        assert record.percent_used is None


class TestHasUnlimitedTier:
    def test_non_empty_list(self):
        assert has_unlimited_tier(["x"]) is True

    @pytest.mark.parametrize("value", [None, [], {}, "", 0])
    def test_empty_values(self, value):
        assert has_unlimited_tier(value) is False

    def test_non_empty_dict(self):
        assert has_unlimited_tier({"chat": True}) is True
