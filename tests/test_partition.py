"""Tests for quarter partitioning and index generation."""

from datetime import datetime, timedelta, timezone

import pytest

from pulsedata.pipeline.partition import (
    RECENT_FILE,
    partition,
    quarter_key,
    recent_start,
    select_partitions,
)

BASELINE = "2023-10-07"
NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def rec(day, **fields):
    return {"date": day, "source": "src", **fields}


class TestQuarterKey:

    @pytest.mark.parametrize("day,expected", [
        ("2023-01-01", "2023-Q1"),
        ("2023-03-31", "2023-Q1"),
        ("2023-04-01", "2023-Q2"),
        ("2023-09-30", "2023-Q3"),
        ("2023-10-07", "2023-Q4"),
        ("2023-12-31", "2023-Q4"),
        ("2024-01-01", "2024-Q1"),
    ])
    def test_quarter_boundaries(self, day, expected):
        assert quarter_key(day) == expected


class TestPartition:
    """partition() buckets by quarter after the baseline."""

    def test_baseline_boundary_scenario(self):
        """Records on the baseline, the end of Q4 and the first of Q1."""
        records = [rec("2023-10-07", v=1), rec("2023-12-31", v=2), rec("2024-01-01", v=3)]

        result = partition(records, BASELINE, now=NOW, dataset="casualties", source="src")

        assert list(result.quarters) == ["2023-Q4", "2024-Q1"]
        assert len(result.quarters["2023-Q4"]) == 2
        assert len(result.quarters["2024-Q1"]) == 1

        files = {entry["quarter"]: entry for entry in result.index["files"]}
        assert files["2023-Q4"]["date_range"] == {"start": "2023-10-07", "end": "2023-12-31"}
        assert files["2024-Q1"]["date_range"] == {"start": "2024-01-01", "end": "2024-01-01"}
        assert files["2023-Q4"]["file"] == "2023-Q4.json"

    def test_records_before_baseline_dropped(self):
        records = [rec("2023-10-06"), rec("2023-10-07")]

        result = partition(records, BASELINE, now=NOW)

        assert result.total_records == 1
        assert result.index["date_range"]["start"] == "2023-10-07"

    def test_empty_quarters_omitted(self):
        records = [rec("2023-10-07"), rec("2024-05-01")]

        result = partition(records, BASELINE, now=NOW)

        assert list(result.quarters) == ["2023-Q4", "2024-Q2"]

    def test_buckets_sorted_by_date(self):
        records = [rec("2023-11-02"), rec("2023-10-09"), rec("2023-12-01")]

        result = partition(records, BASELINE, now=NOW)

        dates = [r["date"] for r in result.quarters["2023-Q4"]]
        assert dates == sorted(dates)

    def test_recent_window(self):
        """recent holds the trailing 30 days and overlaps the current quarter."""
        records = [rec("2024-02-14"), rec("2024-02-15"), rec("2024-03-15")]

        result = partition(records, BASELINE, now=NOW, recent_days=30)

        assert [r["date"] for r in result.recent] == ["2024-02-15", "2024-03-15"]
        assert result.index["recent"]["file"] == RECENT_FILE
        assert result.index["recent"]["records"] == 2
        assert result.quarters["2024-Q1"][-1]["date"] == "2024-03-15"

    def test_recent_window_is_exactly_30_calendar_days(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        records = [rec((start + timedelta(days=i)).date().isoformat()) for i in range(75)]

        result = partition(records, BASELINE, now=NOW, recent_days=30)

        assert len(result.recent) == 30
        assert result.recent[0]["date"] == recent_start(NOW, 30) == "2024-02-15"
        assert result.recent[-1]["date"] == "2024-03-15"

    def test_empty_input(self):
        result = partition([], BASELINE, now=NOW, dataset="idps", source="hdx")

        assert result.quarters == {}
        assert result.recent == []
        assert result.index["files"] == []
        assert result.index["total_records"] == 0
        assert result.index["date_range"] == {"start": None, "end": None}
        assert result.index["recent"]["records"] == 0

    def test_index_metadata(self):
        result = partition([rec("2023-10-07")], BASELINE, now=NOW, dataset="casualties", source="tech4palestine")

        index = result.index
        assert index["dataset"] == "casualties"
        assert index["source"] == "tech4palestine"
        assert index["baseline_date"] == BASELINE
        assert index["last_updated"] == NOW.isoformat()
        assert index["files"][0]["size_bytes"] > 0

    def test_deterministic(self):
        """Same input and baseline give identical buckets and index."""
        records = [rec("2024-01-0%d" % d, v=d) for d in range(1, 10)] + [rec("2023-11-11", v=0)]

        first = partition(records, BASELINE, now=NOW)
        second = partition(list(reversed(records)), BASELINE, now=NOW)

        assert first.quarters == second.quarters
        assert first.index == second.index

    def test_coverage(self):
        """Every kept record lands in exactly one quarter whose range contains it."""
        records = [rec(d) for d in ["2023-10-07", "2023-11-30", "2024-01-15", "2024-04-01", "2024-09-30"]]

        result = partition(records, BASELINE, now=NOW)
        ranges = {e["quarter"]: e["date_range"] for e in result.index["files"]}

        seen = []
        for key, bucket in result.quarters.items():
            for record in bucket:
                assert ranges[key]["start"] <= record["date"] <= ranges[key]["end"]
                seen.append(record["date"])
        assert sorted(seen) == sorted(r["date"] for r in records)
        assert result.index["date_range"] == {"start": "2023-10-07", "end": "2024-09-30"}

    def test_input_not_mutated(self):
        records = [rec("2024-01-02"), rec("2024-01-01")]
        partition(records, BASELINE, now=NOW)
        assert [r["date"] for r in records] == ["2024-01-02", "2024-01-01"]


class TestSelectPartitions:
    """Range queries select every quarter whose range intersects."""

    @pytest.fixture
    def index(self):
        return partition(
            [rec("2023-10-07"), rec("2023-12-31"), rec("2024-01-01"), rec("2024-04-10")],
            BASELINE, now=NOW,
        ).index

    def test_spanning_query(self, index):
        selected = select_partitions(index, "2023-11-01", "2024-01-15")
        assert [e["quarter"] for e in selected] == ["2023-Q4", "2024-Q1"]

    def test_query_inside_one_quarter(self, index):
        selected = select_partitions(index, "2024-04-01", "2024-04-30")
        assert [e["quarter"] for e in selected] == ["2024-Q2"]

    def test_query_in_gap_selects_nothing(self, index):
        """Query between the observed end of Q1 and the start of Q2 data."""
        assert select_partitions(index, "2024-02-01", "2024-03-31") == []

    def test_inclusive_bounds(self, index):
        selected = select_partitions(index, "2023-12-31", "2023-12-31")
        assert [e["quarter"] for e in selected] == ["2023-Q4"]
