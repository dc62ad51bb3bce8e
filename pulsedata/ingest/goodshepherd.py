"""
Good Shepherd Collective adapter.

Two payload shapes are handled:

* ``child_prisoners.json`` - per-category year x month matrices, flattened to
  one record per month with one field per category. ``"-"`` marks a month
  with no published figure and becomes None.
* ``home_demolitions.json`` - either a bare list of demolition events or a
  summary object whose ``chartData`` holds per-day rows. Both are aggregated
  into one record per day.
"""

import logging
import re
from collections import OrderedDict
from typing import Any, Dict, List

from pulsedata.ingest.base_adapter import SourceAdapter
from pulsedata.pipeline.normalize import INT, MalformedRecord, RecordSchema, coerce_count, skip_malformed

logger = logging.getLogger(__name__)

MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11, "december": 12,
}

# Upstream category label -> record field
CHILD_PRISONER_CATEGORIES = {
    "12 to 15 year olds": "children_12_15",
    "Administrative detention": "administrative_detention",
    "Detention": "detention",
    "Female": "female",
}

MISSING_VALUE = "-"

SCHEMAS = {
    "child-prisoners": RecordSchema(
        {field: INT for field in CHILD_PRISONER_CATEGORIES.values()},
        optional=list(CHILD_PRISONER_CATEGORIES.values()),
    ),
    "home-demolitions": RecordSchema(
        {"demolitions": INT, "structures": INT, "people_affected": INT},
    ),
}


def category_field(label: str) -> str:
    """Field name of an upstream category label."""
    if label in CHILD_PRISONER_CATEGORIES:
        return CHILD_PRISONER_CATEGORIES[label]
    return re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")


def flatten_monthly_matrix(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Flatten ``{category: [{year, months: {January: n}}]}`` to monthly records.

    Months absent for a category, or published as ``"-"``, are None. Year
    entries without a usable year are skipped.
    """
    if "childPrisonersData" in payload:
        payload = payload["childPrisonersData"]

    by_month: Dict[str, Dict[str, Any]] = {}
    fields = []
    dropped = 0
    for label, years in payload.items():
        if not isinstance(years, list):
            continue
        field = category_field(label)
        fields.append(field)
        for entry in years:
            try:
                if not isinstance(entry, dict):
                    raise MalformedRecord(f"expected an object, got {type(entry).__name__}")
                year = coerce_count(entry.get("year"))
                if year is None:
                    raise MalformedRecord("missing year")
            except MalformedRecord as e:
                dropped += 1
                logger.debug(f"{label}: skipping year entry: {e.reason}")
                continue
            for month_name, value in (entry.get("months") or {}).items():
                month = MONTHS.get(str(month_name).strip().lower())
                if month is None:
                    logger.debug(f"Ignoring unknown month label {month_name!r}")
                    continue
                day = f"{year:04d}-{month:02d}-01"
                record = by_month.setdefault(day, {"date": day})
                record[field] = None if value in (MISSING_VALUE, "") else value

    records = []
    for day in sorted(by_month):
        record = by_month[day]
        for field in fields:
            record.setdefault(field, None)
        records.append(record)

    skip_malformed("goodshepherd/child-prisoners", dropped, len(records))
    return records


def aggregate_demolitions(payload: Any) -> List[Dict[str, Any]]:
    """Aggregate demolition events (or per-day chart rows) into daily totals."""
    if isinstance(payload, dict):
        rows = payload.get("chartData", payload.get("data"))
    else:
        rows = payload
    if not isinstance(rows, list):
        raise TypeError("home demolitions payload has no event list")

    by_day: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    dropped = 0
    for row in rows:
        if not isinstance(row, dict) or not row.get("date"):
            continue
        day = str(row["date"])[:10]
        try:
            # Chart rows carry an incident count; bare events count as one
            incidents = coerce_count(row.get("incidents", 1), default=0)
            structures = coerce_count(row.get("structures"), default=0)
            affected = coerce_count(row.get("affectedPeople", row.get("displacedPeople")), default=0)
        except MalformedRecord as e:
            dropped += 1
            logger.debug(f"home-demolitions row {day}: {e.reason}")
            continue
        totals = by_day.setdefault(
            day, {"date": day, "demolitions": 0, "structures": 0, "people_affected": 0}
        )
        totals["demolitions"] += incidents
        totals["structures"] += structures
        totals["people_affected"] += affected

    skip_malformed("goodshepherd/home-demolitions", dropped, len(rows) - dropped)
    return list(by_day.values())


class GoodShepherdAdapter(SourceAdapter):
    """Detention and demolition series from goodshepherdcollective.org."""

    def schema_for(self, dataset: str) -> RecordSchema:
        return SCHEMAS[dataset]

    def _fetch_impl(self, dataset: str) -> List[Dict[str, Any]]:
        url = self.url_for(dataset)
        payload = self.client.fetch_json(url)

        if dataset == "child-prisoners":
            if not isinstance(payload, dict):
                raise TypeError(f"expected a JSON object from {url}, got {type(payload).__name__}")
            return flatten_monthly_matrix(payload)
        if dataset == "home-demolitions":
            return aggregate_demolitions(payload)

        raise ValueError(f"Unsupported dataset for {self.source_id}: {dataset}")
