"""
Tests for cap evaluation and debounce ledger helpers.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ai_spend_guard.core.caps import (
    CapBreach,
    CapConfig,
    CapLevel,
    CapScope,
    advance_ledger,
    eligible_breaches,
    evaluate_caps,
    ledger_key,
)
from ai_spend_guard.storage.models import Provider, SpendRecord, SpendSource

NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


def make_record(provider=Provider.OPENAI, day="2024-05-10", cost="1.00", model="gpt-4o"):
    return SpendRecord(
        provider=provider,
        day=day,
        cost_usd=Decimal(cost),
        source=SpendSource.COST_API,
        model=model,
    )


def make_breach(scope=CapScope.OPENAI, level=CapLevel.SOFT):
    return CapBreach(
        scope=scope,
        level=level,
        threshold=Decimal("10"),
        total=Decimal("12"),
        triggered_at=NOW,
    )


class TestCapConfig:
    """Test cap configuration validation."""

    def test_defaults_are_unconfigured(self):
        caps = CapConfig()
        for scope in CapScope:
            assert caps.thresholds(scope) == (Decimal("0"), Decimal("0"))

    def test_negative_cap_rejected(self):
        with pytest.raises(ValueError, match="anthropic_hard"):
            CapConfig(anthropic_hard=Decimal("-1"))

    def test_thresholds_by_scope(self):
        caps = CapConfig(global_soft=Decimal("25"), global_hard=Decimal("40"))
        assert caps.thresholds(CapScope.GLOBAL) == (Decimal("25"), Decimal("40"))


class TestEvaluateCaps:
    """Test month-to-date totals and breach detection."""

    def test_total_equal_to_threshold_breaches(self):
        """A total exactly at the threshold is a breach."""
        caps = CapConfig(openai_soft=Decimal("10"))
        result = evaluate_caps([make_record(cost="10.00")], caps, NOW)

        assert len(result.breaches) == 1
        breach = result.breaches[0]
        assert breach.scope == CapScope.OPENAI
        assert breach.level == CapLevel.SOFT
        assert breach.threshold == Decimal("10")
        assert breach.total == Decimal("10.00")
        assert breach.triggered_at == NOW

    def test_one_cent_below_does_not_breach(self):
        caps = CapConfig(openai_soft=Decimal("10"))
        result = evaluate_caps([make_record(cost="9.99")], caps, NOW)
        assert result.breaches == []

    def test_zero_threshold_never_breaches(self):
        """Unconfigured caps stay silent even with zero spend."""
        result = evaluate_caps([make_record(cost="500.00")], CapConfig(), NOW)
        assert result.breaches == []

    def test_soft_and_hard_reported_together(self):
        caps = CapConfig(vertex_soft=Decimal("1"), vertex_hard=Decimal("2"))
        result = evaluate_caps([make_record(provider=Provider.VERTEX, cost="3.00")], caps, NOW)

        assert [(b.scope, b.level) for b in result.breaches] == [
            (CapScope.VERTEX, CapLevel.SOFT),
            (CapScope.VERTEX, CapLevel.HARD),
        ]

    def test_mixed_provider_scenario(self):
        """$20 openai and $10 anthropic against mixed caps yields five breaches in order."""
        caps = CapConfig(
            openai_soft=Decimal("10"),
            openai_hard=Decimal("20"),
            anthropic_soft=Decimal("5"),
            anthropic_hard=Decimal("10"),
            global_soft=Decimal("25"),
            global_hard=Decimal("40"),
        )
        records = [
            make_record(day="2024-05-01", cost="12.00"),
            make_record(day="2024-05-02", cost="8.00"),
            make_record(provider=Provider.ANTHROPIC, day="2024-05-03", cost="10.00", model="claude-3-opus"),
        ]

        result = evaluate_caps(records, caps, NOW)

        assert result.totals == {
            CapScope.OPENAI: Decimal("20.00"),
            CapScope.ANTHROPIC: Decimal("10.00"),
            CapScope.VERTEX: Decimal("0"),
            CapScope.GLOBAL: Decimal("30.00"),
        }
        assert [(b.scope, b.level) for b in result.breaches] == [
            (CapScope.OPENAI, CapLevel.SOFT),
            (CapScope.OPENAI, CapLevel.HARD),
            (CapScope.ANTHROPIC, CapLevel.SOFT),
            (CapScope.ANTHROPIC, CapLevel.HARD),
            (CapScope.GLOBAL, CapLevel.SOFT),
        ]

    def test_empty_records_and_zero_caps(self):
        """No records and no caps gives zero totals and no breaches."""
        result = evaluate_caps([], CapConfig(), NOW)

        assert result.totals == {scope: Decimal("0") for scope in CapScope}
        assert result.breaches == []

    def test_only_month_to_date_counts(self):
        """Last month's and future-dated spend are excluded."""
        caps = CapConfig(openai_soft=Decimal("10"))
        records = [
            make_record(day="2024-04-30", cost="50.00"),
            make_record(day="2024-05-21", cost="50.00"),
            make_record(day="2024-05-01", cost="1.00"),
        ]

        result = evaluate_caps(records, caps, NOW)

        assert result.totals[CapScope.OPENAI] == Decimal("1.00")
        assert result.breaches == []


class TestDebounceLedger:
    """Test eligibility and ledger advancement."""

    def test_key_format(self):
        assert ledger_key(CapScope.GLOBAL, CapLevel.HARD) == "global:hard"

    def test_absent_key_is_eligible(self):
        breach = make_breach()
        assert eligible_breaches([breach], {}, NOW, timedelta(hours=1)) == [breach]

    def test_within_window_is_suppressed(self):
        breach = make_breach()
        ledger = {"openai:soft": NOW - timedelta(minutes=59)}
        assert eligible_breaches([breach], ledger, NOW, timedelta(hours=1)) == []

    def test_window_elapsed_is_eligible(self):
        """Eligibility returns once exactly one window has passed."""
        breach = make_breach()
        ledger = {"openai:soft": NOW - timedelta(hours=1)}
        assert eligible_breaches([breach], ledger, NOW, timedelta(hours=1)) == [breach]

    def test_keys_are_independent(self):
        """A recent soft alert does not suppress the hard alert."""
        soft = make_breach(level=CapLevel.SOFT)
        hard = make_breach(level=CapLevel.HARD)
        ledger = {"openai:soft": NOW}
        assert eligible_breaches([soft, hard], ledger, NOW, timedelta(hours=1)) == [hard]

    def test_advance_returns_new_mapping(self):
        """The input ledger is left untouched."""
        ledger = {"global:soft": NOW - timedelta(days=1)}
        updated = advance_ledger(ledger, [make_breach()], NOW)

        assert updated == {"global:soft": NOW - timedelta(days=1), "openai:soft": NOW}
        assert ledger == {"global:soft": NOW - timedelta(days=1)}
