"""
World Bank Open Data adapter.

Every indicator is paged as ``[meta, rows]`` with ``meta.page``/``meta.pages``.
Indicator series are merged per year into one record dated ``YYYY-01-01``
with one field per indicator alias.
"""

import logging
from typing import Any, Dict, List

from pulsedata.ingest.base_adapter import SourceAdapter
from pulsedata.pipeline.normalize import FLOAT, MalformedRecord, RecordSchema, coerce_count, skip_malformed

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY_CODE = "PSE"
DEFAULT_PER_PAGE = 1000

# Safety stop in case meta.pages is inconsistent
MAX_PAGES = 50

DEFAULT_INDICATORS = {
    "NY.GDP.MKTP.CD": "gdp_usd",
    "NY.GDP.PCAP.CD": "gdp_per_capita_usd",
    "SL.UEM.TOTL.ZS": "unemployment_pct",
    "SP.POP.TOTL": "population",
}


class WorldBankAdapter(SourceAdapter):
    """Annual economic indicators for one country."""

    def __init__(self, source_config: Dict[str, Any], *args, **kwargs):
        super().__init__(source_config, *args, **kwargs)
        self.country_code = source_config.get("country_code", DEFAULT_COUNTRY_CODE)
        self.per_page = int(source_config.get("per_page", DEFAULT_PER_PAGE))

    def indicators(self, dataset: str) -> Dict[str, str]:
        return dict(self.dataset_config(dataset).get("indicators") or DEFAULT_INDICATORS)

    def schema_for(self, dataset: str) -> RecordSchema:
        aliases = list(self.indicators(dataset).values())
        return RecordSchema({alias: FLOAT for alias in aliases}, optional=aliases)

    def fetch_indicator(self, indicator: str) -> List[Dict[str, Any]]:
        """All observation rows of one indicator across every page."""
        url = f"{self.base_url}/country/{self.country_code}/indicator/{indicator}"
        rows: List[Dict[str, Any]] = []
        page = 1

        while page <= MAX_PAGES:
            payload = self.client.fetch_json(
                url, params={"format": "json", "per_page": self.per_page, "page": page}
            )
            if not isinstance(payload, list) or not payload:
                raise TypeError(f"unexpected World Bank payload for {indicator}")

            meta = payload[0]
            if "message" in meta:
                raise ValueError(f"World Bank error for {indicator}: {meta['message']}")

            rows.extend(payload[1] if len(payload) > 1 and payload[1] else [])

            pages = int(meta.get("pages") or 1)
            if page >= pages:
                break
            page += 1

        logger.debug(f"{indicator}: {len(rows)} rows in {page} page(s)")
        return rows

    def _fetch_impl(self, dataset: str) -> List[Dict[str, Any]]:
        indicators = self.indicators(dataset)
        by_year: Dict[str, Dict[str, Any]] = {}
        dropped = 0

        for indicator, alias in indicators.items():
            for row in self.fetch_indicator(indicator):
                value = row.get("value")
                year = row.get("date")
                if value is None or not year:
                    continue
                try:
                    day = f"{coerce_count(year):04d}-01-01"
                except MalformedRecord as e:
                    dropped += 1
                    logger.debug(f"{indicator}: skipping row: {e.reason}")
                    continue
                by_year.setdefault(day, {"date": day})[alias] = value

        records = []
        for day in sorted(by_year):
            record = by_year[day]
            for alias in indicators.values():
                record.setdefault(alias, None)
            records.append(record)

        skip_malformed(f"{self.source_id}/{dataset}", dropped, len(records))
        return records
