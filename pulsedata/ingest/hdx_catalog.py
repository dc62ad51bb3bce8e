"""
HDX CKAN catalog adapter.

Searches the public CKAN catalog at data.humdata.org with ``package_search``
and turns dataset metadata into a daily activity series: how many matching
datasets were last modified on each day, how many resources they carry and
how many distinct organizations published them. No credential is needed.

Results are paged with ``start``/``rows`` until ``start`` reaches the
reported ``count``.
"""

import logging
from typing import Any, Dict, Iterator, List, Set

from pulsedata.ingest.base_adapter import SourceAdapter
from pulsedata.pipeline.normalize import INT, MalformedRecord, RecordSchema, coerce_count, skip_malformed

logger = logging.getLogger(__name__)

DEFAULT_QUERY = "occupied palestinian territory"
DEFAULT_ROWS = 100
MAX_PAGES = 50

SCHEMA = RecordSchema({"datasets_updated": INT, "resources": INT, "organizations": INT})


def aggregate_catalog_activity(packages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Count packages, resources and publishing organizations per ``metadata_modified`` day."""
    by_day: Dict[str, Dict[str, Any]] = {}
    organizations: Dict[str, Set[str]] = {}
    dropped = 0

    for package in packages:
        modified = package.get("metadata_modified")
        if not modified:
            continue
        day = str(modified)[:10]
        try:
            resources = coerce_count(package.get("num_resources"), default=0)
        except MalformedRecord as e:
            dropped += 1
            logger.debug(f"catalog package {package.get('name')}: {e.reason}")
            continue

        totals = by_day.setdefault(day, {"date": day, "datasets_updated": 0, "resources": 0})
        totals["datasets_updated"] += 1
        totals["resources"] += resources
        organization = (package.get("organization") or {}).get("name")
        if organization:
            organizations.setdefault(day, set()).add(organization)

    skip_malformed("hdx-catalog/catalog-activity", dropped, len(packages) - dropped)

    records = []
    for day in sorted(by_day):
        record = by_day[day]
        record["organizations"] = len(organizations.get(day, ()))
        records.append(record)
    return records


class HDXCatalogAdapter(SourceAdapter):
    """Dataset publication activity from the HDX CKAN catalog."""

    def __init__(self, source_config: Dict[str, Any], *args, **kwargs):
        super().__init__(source_config, *args, **kwargs)
        self.rows = int(source_config.get("rows", DEFAULT_ROWS))

    def schema_for(self, dataset: str) -> RecordSchema:
        return SCHEMA

    def iter_results(self, url: str, query: str) -> Iterator[List[Dict[str, Any]]]:
        start = 0

        for _ in range(MAX_PAGES):
            payload = self.client.fetch_json(url, params={"q": query, "rows": self.rows, "start": start})
            if not isinstance(payload, dict):
                raise TypeError(f"expected a JSON object from {url}, got {type(payload).__name__}")
            if not payload.get("success"):
                error = payload.get("error") or {}
                raise ValueError(f"package_search failed: {error.get('message', 'success is false')}")

            result = payload["result"]
            page = result["results"]
            if not isinstance(page, list):
                raise TypeError(f"expected a list under 'result.results' from {url}")

            yield page
            start += len(page)
            if not page or start >= int(result.get("count") or 0):
                return

        logger.warning(f"{self.source_id}: stopped paging {url} after {MAX_PAGES} pages")

    def _fetch_impl(self, dataset: str) -> List[Dict[str, Any]]:
        url = self.url_for(dataset)
        query = self.dataset_config(dataset).get("query", DEFAULT_QUERY)

        # Results can shift between pages while the catalog changes
        packages: Dict[str, Dict[str, Any]] = {}
        for page in self.iter_results(url, query):
            for package in page:
                if isinstance(package, dict):
                    packages[str(package.get("id") or package.get("name"))] = package

        logger.debug(f"{self.source_id}/{dataset}: {len(packages)} packages for {query!r}")
        return aggregate_catalog_activity(list(packages.values()))
