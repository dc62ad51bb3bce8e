"""
Time partitioning of a normalized dataset.

Records on or after the dataset's baseline date are bucketed into calendar
quarters (``YYYY-QN``). A separate ``recent`` partition holds the trailing
window as of the run time; it overlaps the tail of the current quarter.
"""

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pulsedata.pipeline.normalize import Record

DEFAULT_RECENT_DAYS = 30
RECENT_FILE = "recent.json"
INDEX_FILE = "index.json"


@dataclass
class PartitionResult:
    """Quarter buckets, the recent window and the index describing them."""
    quarters: Dict[str, List[Record]] = field(default_factory=dict)
    recent: List[Record] = field(default_factory=list)
    index: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_records(self) -> int:
        return sum(len(records) for records in self.quarters.values())


def quarter_key(day: str) -> str:
    """``2024-02-10`` -> ``2024-Q1``."""
    parsed = date.fromisoformat(day)
    return f"{parsed.year}-Q{(parsed.month - 1) // 3 + 1}"


def quarter_file(key: str) -> str:
    return f"{key}.json"


def recent_start(now: datetime, recent_days: int = DEFAULT_RECENT_DAYS) -> str:
    """First day of the trailing window: ``recent_days`` calendar days ending on ``now``."""
    return (now.date() - timedelta(days=max(recent_days, 1) - 1)).isoformat()


def _date_range(records: List[Record]) -> Dict[str, Optional[str]]:
    if not records:
        return {"start": None, "end": None}
    return {"start": records[0]["date"], "end": records[-1]["date"]}


def estimate_size(records: List[Record]) -> int:
    """Approximate serialized size in bytes of a partition's records."""
    return len(json.dumps(records, indent=2).encode("utf-8"))


def partition(
    records: List[Record],
    baseline_date: str,
    now: Optional[datetime] = None,
    recent_days: int = DEFAULT_RECENT_DAYS,
    dataset: str = "",
    source: str = "",
) -> PartitionResult:
    """
    Partition normalized ``records`` by quarter and build the dataset index.

    Records dated before ``baseline_date`` are dropped. Quarters with no
    records are omitted. Deterministic for a given input, baseline and ``now``.

    Args:
        records: Normalized records (``date`` as ``YYYY-MM-DD``)
        baseline_date: First date kept, ``YYYY-MM-DD``
        now: Run time (UTC); defaults to the current time
        recent_days: Size of the trailing ``recent`` window
        dataset: Dataset name recorded in the index
        source: Source id recorded in the index

    Returns:
        PartitionResult
    """
    if now is None:
        now = datetime.now(timezone.utc)

    kept = sorted(
        (r for r in records if r["date"] >= baseline_date),
        key=lambda r: r["date"],
    )

    buckets: Dict[str, List[Record]] = {}
    for record in kept:
        buckets.setdefault(quarter_key(record["date"]), []).append(record)
    quarters = {key: buckets[key] for key in sorted(buckets)}

    cutoff = recent_start(now, recent_days)
    recent = [r for r in kept if r["date"] >= cutoff]

    files = [
        {
            "file": quarter_file(key),
            "quarter": key,
            "date_range": _date_range(bucket),
            "records": len(bucket),
            "size_bytes": estimate_size(bucket),
        }
        for key, bucket in quarters.items()
    ]

    index = {
        "dataset": dataset,
        "source": source,
        "baseline_date": baseline_date,
        "date_range": _date_range(kept),
        "files": files,
        "recent": {
            "file": RECENT_FILE,
            "date_range": _date_range(recent),
            "records": len(recent),
            "size_bytes": estimate_size(recent),
        },
        "total_records": len(kept),
        "last_updated": now.isoformat(),
    }

    return PartitionResult(quarters=quarters, recent=recent, index=index)


def select_partitions(index: Dict[str, Any], start: str, end: str) -> List[Dict[str, Any]]:
    """Index entries of every quarter whose date range intersects ``[start, end]``."""
    selected = []
    for entry in index.get("files", []):
        date_range = entry.get("date_range") or {}
        file_start = date_range.get("start")
        file_end = date_range.get("end")
        if file_start is None or file_end is None:
            continue
        if file_start <= end and file_end >= start:
            selected.append(entry)
    return selected
