"""
HDX Humanitarian API (HAPI) adapter.

Requires ``HDX_API_KEY``; without it every dataset is skipped. Results are
paged with ``offset``/``limit`` until a page shorter than ``limit`` arrives,
every page paced by the shared 1.1s rate limit. Rows are aggregated per
reference day.
"""

import logging
from typing import Any, Dict, Iterator, List

from pulsedata.ingest.base_adapter import SourceAdapter
from pulsedata.pipeline.normalize import INT, MalformedRecord, RecordSchema, coerce_count, skip_malformed

logger = logging.getLogger(__name__)

DEFAULT_LOCATION_CODE = "PSE"
DEFAULT_PAGE_SIZE = 1000
MAX_PAGES = 100

SCHEMAS = {
    "conflict-events": RecordSchema({"events": INT, "fatalities": INT}),
    "idps": RecordSchema({"idps": INT}),
}


def _row_date(row: Dict[str, Any]) -> Any:
    return row.get("reference_period_start") or row.get("event_date") or row.get("reference_period_end")


def aggregate_conflict_events(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Sum ``events`` and ``fatalities`` per reference day across admin areas and event types."""
    by_day: Dict[str, Dict[str, Any]] = {}
    dropped = 0
    for row in rows:
        day = _row_date(row)
        if not day:
            continue
        try:
            # Event-level rows carry no count; each is one event
            events = coerce_count(row.get("events", 1), default=0)
            fatalities = coerce_count(row.get("fatalities"), default=0)
        except MalformedRecord as e:
            dropped += 1
            logger.debug(f"conflict-events row {day}: {e.reason}")
            continue
        day = str(day)[:10]
        totals = by_day.setdefault(day, {"date": day, "events": 0, "fatalities": 0})
        totals["events"] += events
        totals["fatalities"] += fatalities

    skip_malformed("hdx/conflict-events", dropped, len(rows) - dropped)
    return [by_day[d] for d in sorted(by_day)]


def aggregate_idps(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Sum displaced population per reference day."""
    by_day: Dict[str, Dict[str, Any]] = {}
    dropped = 0
    for row in rows:
        day = _row_date(row)
        if not day:
            continue
        try:
            population = coerce_count(row.get("population"), default=0)
        except MalformedRecord as e:
            dropped += 1
            logger.debug(f"idps row {day}: {e.reason}")
            continue
        day = str(day)[:10]
        totals = by_day.setdefault(day, {"date": day, "idps": 0})
        totals["idps"] += population

    skip_malformed("hdx/idps", dropped, len(rows) - dropped)
    return [by_day[d] for d in sorted(by_day)]


AGGREGATORS = {
    "conflict-events": aggregate_conflict_events,
    "idps": aggregate_idps,
}


class HDXAdapter(SourceAdapter):
    """Conflict events and internal displacement from hapi.humdata.org."""

    def __init__(self, source_config: Dict[str, Any], *args, **kwargs):
        source_config = dict(source_config)
        source_config.setdefault("credential_env", "HDX_API_KEY")
        super().__init__(source_config, *args, **kwargs)
        self.location_code = source_config.get("location_code", DEFAULT_LOCATION_CODE)
        self.page_size = int(source_config.get("page_size", DEFAULT_PAGE_SIZE))

    def schema_for(self, dataset: str) -> RecordSchema:
        return SCHEMAS[dataset]

    def iter_pages(self, url: str, api_key: str) -> Iterator[List[Dict[str, Any]]]:
        headers = {"Authorization": f"Bearer {api_key}"}
        offset = 0

        for _ in range(MAX_PAGES):
            payload = self.client.fetch_json(
                url,
                params={
                    "location_code": self.location_code,
                    "output_format": "json",
                    "offset": offset,
                    "limit": self.page_size,
                },
                headers=headers,
            )
            page = payload["data"]
            if not isinstance(page, list):
                raise TypeError(f"expected a list under 'data' from {url}")

            yield page
            if len(page) < self.page_size:
                return
            offset += self.page_size

        logger.warning(f"{self.source_id}: stopped paging {url} after {MAX_PAGES} pages")

    def _fetch_impl(self, dataset: str) -> List[Dict[str, Any]]:
        aggregate = AGGREGATORS.get(dataset)
        if aggregate is None:
            raise ValueError(f"Unsupported dataset for {self.source_id}: {dataset}")

        api_key = self.require_credential()
        url = self.url_for(dataset)

        rows: List[Dict[str, Any]] = []
        for page in self.iter_pages(url, api_key):
            rows.extend(row for row in page if isinstance(row, dict))

        logger.debug(f"{self.source_id}/{dataset}: {len(rows)} upstream rows")
        return aggregate(rows)
