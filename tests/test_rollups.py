"""
Unit tests for record merging, retention and aggregation.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ai_spend_guard.core.caps import CapConfig, CapScope, evaluate_caps
from ai_spend_guard.core.rollups import (
    GroupBy,
    aggregate,
    as_utc,
    filter_by_range,
    merge_records,
    month_to_date,
    prune_records,
    record_key,
    utc_date,
)
from ai_spend_guard.storage.models import Provider, SpendRecord, SpendSource

NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


def make_record(
    provider=Provider.OPENAI,
    day="2024-05-10",
    cost="1.00",
    model="gpt-4o",
    input_tokens=None,
    output_tokens=None,
    source=SpendSource.COST_API,
):
    return SpendRecord(
        provider=provider,
        day=day,
        cost_usd=Decimal(cost),
        source=source,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


class TestMergeRecords:
    """Test merging incoming records into the series."""

    def test_incoming_replaces_existing_with_same_key(self):
        """Last write wins even when the newer cost is lower."""
        existing = [make_record(cost="5.00")]
        incoming = [make_record(cost="2.00")]

        merged = merge_records(existing, incoming, NOW)

        assert len(merged) == 1
        assert merged[0].cost_usd == Decimal("2.00")

    def test_costs_are_never_summed(self):
        """Duplicate keys within one batch keep the last record only."""
        incoming = [make_record(cost="3.00"), make_record(cost="4.00")]

        merged = merge_records([], incoming, NOW)

        assert [r.cost_usd for r in merged] == [Decimal("4.00")]

    def test_distinct_models_are_kept(self):
        """Records for different models on the same day are separate."""
        merged = merge_records(
            [make_record(model="gpt-4o")],
            [make_record(model="gpt-4o-mini"), make_record(model=None)],
            NOW,
        )
        assert len(merged) == 3

    def test_merge_is_idempotent(self):
        """Merging the same batch twice with the same now is a no-op."""
        existing = [make_record(day="2024-05-01"), make_record(day="2024-05-02", provider=Provider.ANTHROPIC)]
        incoming = [make_record(day="2024-05-02", provider=Provider.ANTHROPIC, cost="9.00"),
                    make_record(day="2024-05-03")]

        once = merge_records(existing, incoming, NOW)
        twice = merge_records(once, incoming, NOW)

        assert twice == once

    def test_output_sorted_by_day(self):
        """Merged records come back in ascending day order."""
        incoming = [make_record(day="2024-05-09"), make_record(day="2024-05-01"), make_record(day="2024-05-05")]

        merged = merge_records([], incoming, NOW)

        assert [r.day for r in merged] == ["2024-05-01", "2024-05-05", "2024-05-09"]

    def test_retention_cutoff_is_inclusive(self):
        """A record exactly at the cutoff is kept; one day older is dropped."""
        incoming = [make_record(day="2024-04-20"), make_record(day="2024-04-19")]

        merged = merge_records([], incoming, NOW, retention_days=30)

        assert [r.day for r in merged] == ["2024-04-20"]

    def test_retention_prunes_existing_records(self):
        """Old records already held are pruned on merge."""
        merged = merge_records([make_record(day="2023-01-01")], [], NOW, retention_days=30)
        assert merged == []


class TestHelpers:
    """Test key and date helpers."""

    def test_record_key_uses_empty_model(self):
        """A missing model maps to an empty key segment."""
        assert record_key(make_record(model=None)) == "openai|2024-05-10|"
        assert record_key(make_record()) == "openai|2024-05-10|gpt-4o"

    def test_utc_date_converts_offsets(self):
        """Dates are computed in UTC, not the timestamp's own zone."""
        moment = datetime(2024, 5, 1, 1, 0, tzinfo=timezone(timedelta(hours=5)))
        assert utc_date(moment) == date(2024, 4, 30)

    def test_utc_date_treats_naive_as_utc(self):
        """Naive timestamps are taken as UTC."""
        assert utc_date(datetime(2024, 5, 1, 23, 59)) == date(2024, 5, 1)

    def test_as_utc_normalizes_naive_and_offset_timestamps(self):
        assert as_utc(datetime(2024, 5, 1, 12, 0)) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        shifted = as_utc(datetime(2024, 5, 1, 17, 0, tzinfo=timezone(timedelta(hours=5))))
        assert shifted.tzinfo == timezone.utc
        assert shifted.hour == 12

    def test_prune_with_zero_retention_keeps_today(self):
        """Zero retention keeps only records dated today or later."""
        records = [make_record(day="2024-05-20"), make_record(day="2024-05-19")]
        assert [r.day for r in prune_records(records, NOW, 0)] == ["2024-05-20"]


class TestFilterByRange:
    """Test inclusive date filtering."""

    def setup_method(self):
        self.records = [make_record(day=f"2024-05-0{d}") for d in range(1, 6)]

    def test_both_bounds_inclusive(self):
        days = [r.day for r in filter_by_range(self.records, "2024-05-02", "2024-05-04")]
        assert days == ["2024-05-02", "2024-05-03", "2024-05-04"]

    def test_open_bounds(self):
        assert len(filter_by_range(self.records)) == 5
        assert [r.day for r in filter_by_range(self.records, from_day="2024-05-05")] == ["2024-05-05"]
        assert [r.day for r in filter_by_range(self.records, to_day="2024-05-01")] == ["2024-05-01"]

    def test_month_to_date(self):
        """Only the current month up to now's date is included."""
        records = [
            make_record(day="2024-04-30"),
            make_record(day="2024-05-01"),
            make_record(day="2024-05-20"),
            make_record(day="2024-05-21"),
        ]
        assert [r.day for r in month_to_date(records, NOW)] == ["2024-05-01", "2024-05-20"]


class TestAggregate:
    """Test grouping records into buckets."""

    def test_no_grouping_passes_records_through(self):
        """Each record becomes a bucket, in input order."""
        records = [make_record(day="2024-05-02"), make_record(day="2024-05-01", provider=Provider.VERTEX)]

        buckets = aggregate(records)

        assert [b.key for b in buckets] == ["openai|2024-05-02|gpt-4o", "vertex|2024-05-01|gpt-4o"]
        assert buckets[0].records == [records[0]]
        assert aggregate(records, GroupBy.NONE) == buckets

    def test_group_by_provider(self):
        """Costs and tokens are summed per provider."""
        records = [
            make_record(cost="1.50", input_tokens=100, output_tokens=10),
            make_record(day="2024-05-11", cost="2.50", input_tokens=200, output_tokens=20),
            make_record(provider=Provider.ANTHROPIC, cost="4.00"),
        ]

        buckets = aggregate(records, GroupBy.PROVIDER)

        assert [b.key for b in buckets] == ["anthropic", "openai"]
        openai = buckets[1]
        assert openai.provider == "openai"
        assert openai.cost_usd == Decimal("4.00")
        assert openai.input_tokens == 300
        assert openai.output_tokens == 30
        assert len(openai.records) == 2

    def test_group_by_day_is_global(self):
        """Day buckets total across providers and carry the global sentinel."""
        records = [
            make_record(day="2024-05-02", cost="1.00"),
            make_record(day="2024-05-01", provider=Provider.ANTHROPIC, cost="2.00"),
            make_record(day="2024-05-01", provider=Provider.VERTEX, cost="3.00"),
        ]

        buckets = aggregate(records, GroupBy.DAY)

        assert [(b.key, b.cost_usd) for b in buckets] == [
            ("2024-05-01", Decimal("5.00")),
            ("2024-05-02", Decimal("1.00")),
        ]
        assert all(b.provider == "global" for b in buckets)
        assert buckets[0].day == "2024-05-01"

    def test_group_by_model_keeps_unknown(self):
        """Records without a model land in an 'unknown' bucket."""
        records = [
            make_record(model=None, cost="1.00"),
            make_record(model="gpt-4o", cost="2.00"),
            make_record(provider=Provider.ANTHROPIC, model=None, cost="3.00"),
        ]

        buckets = aggregate(records, GroupBy.MODEL)

        assert [b.key for b in buckets] == ["anthropic:unknown", "openai:gpt-4o", "openai:unknown"]
        assert buckets[2].model == "unknown"
        assert buckets[2].cost_usd == Decimal("1.00")

    def test_token_sums_omitted_without_data(self):
        """Token sums stay None when no record reports them."""
        buckets = aggregate([make_record(), make_record(day="2024-05-11")], GroupBy.PROVIDER)

        assert buckets[0].input_tokens is None
        assert buckets[0].output_tokens is None

    def test_zero_tokens_are_reported(self):
        """Zero usage is distinct from missing usage."""
        buckets = aggregate(
            [make_record(input_tokens=0), make_record(day="2024-05-11")],
            GroupBy.PROVIDER,
        )

        assert buckets[0].input_tokens == 0
        assert buckets[0].output_tokens is None

    def test_empty_input(self):
        assert aggregate([], GroupBy.PROVIDER) == []
        assert aggregate([]) == []

    def test_unknown_grouping_rejected_even_when_empty(self):
        """Grouping must be a GroupBy member, not its string value."""
        with pytest.raises(ValueError, match="Unsupported grouping"):
            aggregate([], "provider")
        with pytest.raises(ValueError, match="Unsupported grouping"):
            aggregate([make_record()], "provider")


class TestSpendRecord:
    """Test record validation and serialization."""

    def test_negative_cost_rejected(self):
        with pytest.raises(ValueError, match="cost_usd"):
            make_record(cost="-0.01")

    def test_float_cost_is_coerced_to_decimal(self):
        """Float costs keep their written value and still sum with Decimals."""
        record = SpendRecord(
            provider=Provider.OPENAI,
            day="2024-05-10",
            cost_usd=1.1,
            source=SpendSource.COST_API,
        )
        assert record.cost_usd == Decimal("1.1")
        assert isinstance(record.cost_usd, Decimal)

        evaluation = evaluate_caps([record, make_record(cost="0.40")], CapConfig(), NOW)
        assert evaluation.totals[CapScope.GLOBAL] == Decimal("1.50")

    def test_non_numeric_cost_rejected(self):
        for bad in ("1.00", True, None, Decimal("NaN")):
            with pytest.raises(ValueError, match="cost_usd"):
                SpendRecord(
                    provider=Provider.OPENAI,
                    day="2024-05-10",
                    cost_usd=bad,
                    source=SpendSource.COST_API,
                )

    def test_invalid_day_rejected(self):
        with pytest.raises(ValueError, match="ISO date"):
            make_record(day="05/10/2024")

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError, match="input_tokens"):
            make_record(input_tokens=-1)

    def test_non_usd_rejected(self):
        with pytest.raises(ValueError, match="currency"):
            SpendRecord(
                provider=Provider.OPENAI,
                day="2024-05-10",
                cost_usd=Decimal("1"),
                source=SpendSource.COST_API,
                currency="EUR",
            )

    def test_from_dict(self):
        """Records parse from the normalized wire shape."""
        record = SpendRecord.from_dict({
            "provider": "anthropic",
            "day": "2024-05-10",
            "cost_usd": 12.5,
            "currency": "USD",
            "source": "usage_api",
            "input_tokens": 1000,
        })

        assert record.provider == Provider.ANTHROPIC
        assert record.cost_usd == Decimal("12.5")
        assert record.source == SpendSource.USAGE_API
        assert record.model is None
        assert record.output_tokens is None
        assert SpendRecord.from_dict(record.to_dict()) == record

    def test_from_dict_missing_field(self):
        with pytest.raises(ValueError, match="cost_usd"):
            SpendRecord.from_dict({"provider": "openai", "day": "2024-05-10", "source": "cost_api"})
