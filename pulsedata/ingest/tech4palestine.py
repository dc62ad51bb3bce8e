"""
Tech for Palestine adapter.

Each dataset is a single bulk JSON array of daily reports. Cumulative
counters are published per day; daily figures are taken from upstream when
present and derived from consecutive cumulative values otherwise.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from pulsedata.ingest.base_adapter import SourceAdapter
from pulsedata.pipeline.normalize import INT, MalformedRecord, RecordSchema, coerce_count

logger = logging.getLogger(__name__)


# (output field, upstream keys tried in order)
CASUALTY_FIELDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("killed_cumulative", ("ext_killed_cum", "killed_cum")),
    ("injured_cumulative", ("ext_injured_cum", "injured_cum")),
    ("killed_children_cumulative", ("ext_killed_children_cum", "killed_children_cum")),
    ("killed_women_cumulative", ("ext_killed_women_cum", "killed_women_cum")),
]

WESTBANK_FIELDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("killed_cumulative", ("killed_cum",)),
    ("injured_cumulative", ("injured_cum",)),
    ("killed_children_cumulative", ("killed_children_cum",)),
    ("settler_attacks_cumulative", ("settler_attacks_cum",)),
]

# (output field, section, key)
INFRASTRUCTURE_FIELDS: List[Tuple[str, str, str]] = [
    ("residential_destroyed", "residential", "ext_destroyed"),
    ("educational_destroyed", "educational_buildings", "ext_destroyed"),
    ("educational_damaged", "educational_buildings", "ext_damaged"),
    ("mosques_destroyed", "places_of_worship", "ext_mosques_destroyed"),
    ("churches_destroyed", "places_of_worship", "ext_churches_destroyed"),
    ("civic_destroyed", "civic_buildings", "ext_destroyed"),
]

SCHEMAS = {
    "casualties": RecordSchema(
        {
            "killed": INT,
            "injured": INT,
            "killed_cumulative": INT,
            "injured_cumulative": INT,
            "killed_children_cumulative": INT,
            "killed_women_cumulative": INT,
        },
        optional=["injured", "injured_cumulative", "killed_children_cumulative", "killed_women_cumulative"],
    ),
    "westbank": RecordSchema(
        {
            "killed": INT,
            "injured": INT,
            "killed_cumulative": INT,
            "injured_cumulative": INT,
            "killed_children_cumulative": INT,
            "settler_attacks_cumulative": INT,
        },
        optional=["injured", "injured_cumulative", "killed_children_cumulative", "settler_attacks_cumulative"],
    ),
    "infrastructure": RecordSchema(
        {name: INT for name, _, _ in INFRASTRUCTURE_FIELDS},
        optional=[name for name, _, _ in INFRASTRUCTURE_FIELDS],
    ),
}


def _first_present(item: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[Any]:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def _cumulative(value: Optional[Any], report_date: Any) -> Optional[int]:
    """Cumulative counter as an int, None when unusable for deriving dailies."""
    try:
        return coerce_count(value)
    except MalformedRecord as e:
        logger.warning(f"Unusable cumulative counter on {report_date}: {e.reason}")
        return None


def _daily(item: Dict[str, Any], upstream_keys: Tuple[str, ...], cumulative: Optional[int],
           previous: Optional[int]) -> Optional[Any]:
    """Upstream daily value, else the difference to the previous cumulative."""
    value = _first_present(item, upstream_keys)
    if value is not None or cumulative is None:
        return value
    if previous is None:
        return cumulative
    return max(cumulative - previous, 0)


def flatten_daily_reports(items: List[Dict[str, Any]],
                          fields: List[Tuple[str, Tuple[str, ...]]]) -> List[Dict[str, Any]]:
    """
    Translate daily report rows, deriving ``killed``/``injured`` when absent.

    A row whose cumulative counter does not parse keeps the raw value, so the
    dataset schema drops it; the previous good counter carries over to the
    next row.
    """
    rows = sorted(
        (item for item in items if isinstance(item, dict)),
        key=lambda item: str(item.get("report_date") or ""),
    )

    records = []
    prev_killed = None
    prev_injured = None
    for item in rows:
        report_date = item.get("report_date")
        record: Dict[str, Any] = {"date": report_date}
        for name, keys in fields:
            record[name] = _first_present(item, keys)

        killed_cum = _cumulative(record.get("killed_cumulative"), report_date)
        injured_cum = _cumulative(record.get("injured_cumulative"), report_date)
        record["killed"] = _daily(item, ("killed", "ext_killed"), killed_cum, prev_killed)
        record["injured"] = _daily(item, ("injured", "ext_injured"), injured_cum, prev_injured)

        if killed_cum is not None:
            prev_killed = killed_cum
        if injured_cum is not None:
            prev_injured = injured_cum
        records.append(record)

    return records


def flatten_infrastructure(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    records = []
    for item in items:
        if not isinstance(item, dict):
            continue
        record: Dict[str, Any] = {"date": item.get("report_date")}
        for name, section, key in INFRASTRUCTURE_FIELDS:
            record[name] = (item.get(section) or {}).get(key)
        records.append(record)
    return records


class Tech4PalestineAdapter(SourceAdapter):
    """Casualty, West Bank and infrastructure series from data.techforpalestine.org."""

    def schema_for(self, dataset: str) -> RecordSchema:
        return SCHEMAS[dataset]

    def _fetch_impl(self, dataset: str) -> List[Dict[str, Any]]:
        url = self.url_for(dataset)
        logger.debug(f"Fetching {url}")
        payload = self.client.fetch_json(url)

        if not isinstance(payload, list):
            raise TypeError(f"expected a JSON array from {url}, got {type(payload).__name__}")

        if dataset == "casualties":
            return flatten_daily_reports(payload, CASUALTY_FIELDS)
        if dataset == "westbank":
            # Older payloads nest the counters under "verified"
            items = [
                {**(item.get("verified") or {}), **item} if isinstance(item, dict) else item
                for item in payload
            ]
            return flatten_daily_reports(items, WESTBANK_FIELDS)
        if dataset == "infrastructure":
            return flatten_infrastructure(payload)

        raise ValueError(f"Unsupported dataset for {self.source_id}: {dataset}")
