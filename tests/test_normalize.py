"""Tests for record normalization and per-dataset input schemas."""

from datetime import date, datetime, timezone

import pytest

from pulsedata.pipeline.normalize import (
    FLOAT,
    INT,
    STR,
    MalformedRecord,
    RecordSchema,
    apply_schema,
    coerce_count,
    normalize,
    parse_record_date,
)


class TestParseRecordDate:
    """Date coercion to YYYY-MM-DD."""

    @pytest.mark.parametrize("value,expected", [
        ("2024-01-05", "2024-01-05"),
        ("2024-01-05T13:45:00Z", "2024-01-05"),
        ("2024-01-05T13:45:00+02:00", "2024-01-05"),
        ("2024-01-05 08:00:00", "2024-01-05"),
        (date(2024, 1, 5), "2024-01-05"),
        (datetime(2024, 1, 5, 23, 59, tzinfo=timezone.utc), "2024-01-05"),
    ])
    def test_accepted_forms(self, value, expected):
        assert parse_record_date(value) == expected

    @pytest.mark.parametrize("value", [None, "", "not a date", "2024-13-01", "05/01/2024", 20240105])
    def test_rejected_forms(self, value):
        with pytest.raises(MalformedRecord):
            parse_record_date(value)


class TestNormalize:
    """normalize() dedupes, stamps and sorts."""

    def test_sorted_ascending(self):
        records = normalize(
            [{"date": "2024-01-03", "v": 3}, {"date": "2024-01-01", "v": 1}, {"date": "2024-01-02", "v": 2}],
            "src",
        )
        assert [r["date"] for r in records] == ["2024-01-01", "2024-01-02", "2024-01-03"]

    def test_source_stamped(self):
        records = normalize([{"date": "2024-01-01", "v": 1}], "tech4palestine")
        assert records[0]["source"] == "tech4palestine"

    def test_duplicate_dates_last_write_wins(self):
        records = normalize(
            [{"date": "2024-01-01", "v": 1}, {"date": "2024-01-01T10:00:00Z", "v": 2}],
            "src",
        )
        assert len(records) == 1
        assert records[0]["v"] == 2

    def test_invalid_dates_dropped(self, caplog):
        records = normalize(
            [{"date": "2024-01-01", "v": 1}, {"date": None, "v": 2}, {"v": 3}, {"date": "garbage", "v": 4}],
            "src",
        )
        assert [r["v"] for r in records] == [1]
        assert "dropped 3 record(s)" in caplog.text

    def test_inputs_not_mutated(self):
        raw = [{"date": "2024-01-01T00:00:00Z", "v": 1}]
        normalize(raw, "src")
        assert raw == [{"date": "2024-01-01T00:00:00Z", "v": 1}]

    def test_no_baseline_filtering(self):
        records = normalize([{"date": "1999-01-01", "v": 1}], "src")
        assert len(records) == 1

    def test_empty_input(self):
        assert normalize([], "src") == []


class TestRecordSchema:
    """Explicit schemas fail closed on missing or mistyped fields."""

    @pytest.fixture
    def schema(self):
        return RecordSchema({"killed": INT, "rate": FLOAT, "region": STR}, optional=["region"])

    def test_valid_row(self, schema):
        record = schema.validate({"date": "2024-01-01", "killed": "1,204", "rate": "2.5", "extra": "x"})
        assert record == {"date": "2024-01-01", "killed": 1204, "rate": 2.5, "region": None}

    def test_missing_required_field(self, schema):
        with pytest.raises(MalformedRecord, match="killed"):
            schema.validate({"date": "2024-01-01", "rate": 1.0})

    def test_mistyped_field(self, schema):
        with pytest.raises(MalformedRecord):
            schema.validate({"date": "2024-01-01", "killed": "many", "rate": 1.0})

    def test_fractional_int_rejected(self, schema):
        with pytest.raises(MalformedRecord):
            schema.validate({"date": "2024-01-01", "killed": 1.5, "rate": 1.0})

    def test_boolean_not_numeric(self, schema):
        with pytest.raises(MalformedRecord):
            schema.validate({"date": "2024-01-01", "killed": True, "rate": 1.0})

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            RecordSchema({"x": "decimal"})

    def test_optional_must_be_declared(self):
        with pytest.raises(ValueError):
            RecordSchema({"x": INT}, optional=["y"])

    def test_apply_schema_drops_malformed(self, schema, caplog):
        rows = [
            {"date": "2024-01-01", "killed": 1, "rate": 0.5},
            {"date": "2024-01-02", "rate": 0.5},
            "not a row",
        ]
        records = apply_schema(rows, schema, "src/ds")
        assert len(records) == 1
        assert "dropped 2 malformed" in caplog.text

    def test_homogeneous_field_set(self, schema):
        records = apply_schema(
            [
                {"date": "2024-01-01", "killed": 1, "rate": 0.5, "region": "north"},
                {"date": "2024-01-02", "killed": 2, "rate": 0.7},
            ],
            schema,
        )
        assert {frozenset(r) for r in records} == {frozenset(["date", "killed", "rate", "region"])}


class TestCoerceCount:
    """Upstream count coercion used by the aggregating adapters."""

    @pytest.mark.parametrize("value,expected", [
        (5, 5),
        ("5", 5),
        ("1,234", 1234),
        (7.0, 7),
        (None, 0),
        ("", 0),
    ])
    def test_accepted(self, value, expected):
        assert coerce_count(value, default=0) == expected

    @pytest.mark.parametrize("value", ["n/a", 1.5, True, float("nan"), [3]])
    def test_rejected(self, value):
        with pytest.raises(MalformedRecord):
            coerce_count(value)

    def test_default_is_none(self):
        assert coerce_count(None) is None
