"""
Record normalization.

Every adapter hands its rows to ``apply_schema`` (per-dataset input schema,
fails closed) and then to ``normalize`` (date coercion, dedup by date, source
stamp, ascending sort). Neither step knows about baseline dates: filtering to
a dataset's start boundary is the partitioner's job.
"""

import logging
import math
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

Record = Dict[str, Any]

# Field kinds accepted by RecordSchema
INT = "int"
FLOAT = "float"
STR = "str"
VALID_KINDS = {INT, FLOAT, STR}


class MalformedRecord(Exception):
    """A raw row that cannot be turned into a Record."""

    def __init__(self, reason: str, record: Optional[Mapping[str, Any]] = None):
        self.reason = reason
        self.record = record
        super().__init__(reason)


def parse_record_date(value: Any) -> str:
    """
    Coerce an upstream date value to ``YYYY-MM-DD``.

    Accepts ``date``/``datetime`` objects, ISO dates and ISO datetimes
    (with or without a trailing ``Z`` or offset).

    Raises:
        MalformedRecord: if the value is missing or unparsable
    """
    if value is None or value == "":
        raise MalformedRecord("missing date")

    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        raise MalformedRecord(f"unsupported date type: {type(value).__name__}")

    text = value.strip()
    # Datetimes keep their calendar day as published, no timezone shift
    if len(text) > 10 and text[10] not in ("T", " "):
        raise MalformedRecord(f"unparsable date: {value!r}")
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        raise MalformedRecord(f"unparsable date: {value!r}")


def _coerce_number(value: Any, kind: str) -> Any:
    if isinstance(value, bool):
        raise ValueError("booleans are not numeric")
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if value == "":
            raise ValueError("empty string")
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValueError("not a finite number")
    if kind == INT:
        if not number.is_integer():
            raise ValueError(f"{value!r} is not an integer")
        return int(number)
    return number


def coerce_count(value: Any, default: Optional[int] = None) -> Optional[int]:
    """
    Integer value of an upstream count, accepting ``"1,234"``-style strings.

    Null or empty values give ``default``.

    Raises:
        MalformedRecord: if the value is not a whole number
    """
    if value is None or value == "":
        return default
    try:
        return _coerce_number(value, INT)
    except (TypeError, ValueError) as e:
        raise MalformedRecord(f"bad count {value!r}: {e}")


def skip_malformed(label: str, dropped: int, kept: int) -> None:
    if dropped:
        logger.warning(f"{label}: dropped {dropped} malformed record(s), kept {kept}")


class RecordSchema:
    """
    Explicit input schema for one dataset.

    ``fields`` maps metric field name to kind (``int``, ``float``, ``str``).
    ``optional`` fields may be absent or null and are then stored as None so
    every record of the dataset carries the same field set. Unknown upstream
    fields are discarded.
    """

    def __init__(self, fields: Mapping[str, str], optional: Iterable[str] = ()):
        for name, kind in fields.items():
            if kind not in VALID_KINDS:
                raise ValueError(f"Unknown field kind for {name}: {kind}")
        self.fields = dict(fields)
        self.optional = set(optional)
        unknown = self.optional - set(self.fields)
        if unknown:
            raise ValueError(f"Optional fields not declared: {sorted(unknown)}")

    @property
    def field_names(self) -> List[str]:
        return ["date"] + list(self.fields)

    def validate(self, raw: Mapping[str, Any]) -> Record:
        """Return a clean record or raise MalformedRecord."""
        if not isinstance(raw, Mapping):
            raise MalformedRecord(f"expected an object, got {type(raw).__name__}")

        record: Record = {"date": parse_record_date(raw.get("date"))}

        for name, kind in self.fields.items():
            value = raw.get(name)
            if value is None:
                if name in self.optional:
                    record[name] = None
                    continue
                raise MalformedRecord(f"missing field {name!r}", raw)
            if kind == STR:
                record[name] = str(value)
                continue
            try:
                record[name] = _coerce_number(value, kind)
            except (TypeError, ValueError) as e:
                raise MalformedRecord(f"field {name!r}: {e}", raw)

        return record


def apply_schema(rows: Iterable[Mapping[str, Any]], schema: RecordSchema, label: str = "") -> List[Record]:
    """Validate rows against ``schema``, dropping malformed ones with a warning."""
    records = []
    dropped = 0
    for row in rows:
        try:
            records.append(schema.validate(row))
        except MalformedRecord as e:
            dropped += 1
            logger.debug(f"{label} dropped row: {e.reason}")

    skip_malformed(label, dropped, len(records))
    return records


def normalize(raw_records: Iterable[Mapping[str, Any]], source_tag: str) -> List[Record]:
    """
    Normalize records for one dataset.

    Coerces ``date`` to ``YYYY-MM-DD``, drops rows with a missing or
    unparsable date, deduplicates by date (last write wins), stamps every
    record with ``source_tag`` and sorts ascending by date. Pure: inputs are
    not mutated.
    """
    by_date: Dict[str, Record] = {}
    dropped = 0

    for raw in raw_records:
        try:
            if not isinstance(raw, Mapping):
                raise MalformedRecord(f"expected an object, got {type(raw).__name__}")
            record_date = parse_record_date(raw.get("date"))
        except MalformedRecord as e:
            dropped += 1
            logger.debug(f"{source_tag}: dropped record: {e.reason}")
            continue

        record = dict(raw)
        record["date"] = record_date
        record["source"] = source_tag
        # Re-inserting moves the key to the end; order is fixed by the sort below
        by_date.pop(record_date, None)
        by_date[record_date] = record

    if dropped:
        logger.warning(f"{source_tag}: dropped {dropped} record(s) with missing or invalid dates")

    return [by_date[d] for d in sorted(by_date)]
