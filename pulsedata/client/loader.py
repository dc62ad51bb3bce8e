"""
Local-first data loader.

Reads the static tree written by the pipeline (over HTTP or from disk) and
falls back to a live upstream fetch through the source adapter when the
index or a partition is missing or invalid. Live records are never written
back to the tree.

Every read produces a ``LoadResult`` tagged with where the data came from:

    local        served from the static tree
    remote       served by the live adapter
    unavailable  both paths failed

Usage:
    loader = DataLoader(HttpStaticStore("https://example.org/data"),
                        live_adapters={"tech4palestine": adapter})
    records = loader.load_range("tech4palestine", "casualties", "2023-11-01", "2024-01-15")
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, MutableMapping, Optional, Tuple

import jsonschema
import requests

from pulsedata.ingest.base_adapter import DEFAULT_RECENT_DAYS, SourceAdapter
from pulsedata.pipeline.normalize import Record
from pulsedata.pipeline.partition import INDEX_FILE, RECENT_FILE, recent_start, select_partitions
from pulsedata.pipeline.storage import read_json, validate_document

logger = logging.getLogger(__name__)

ORIGIN_LOCAL = "local"
ORIGIN_REMOTE = "remote"
ORIGIN_UNAVAILABLE = "unavailable"

RECENT_PARTITION = "recent"

# (connect, read) seconds for static files
STATIC_TIMEOUT = (5, 30)

CacheKey = Tuple[str, str, str]


class LocalMiss(Exception):
    """A static file is absent, unreachable or unusable."""

    def __init__(self, path: str, reason: str = "not found"):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class DataUnavailable(Exception):
    """Neither the static tree nor the live upstream could serve a read."""

    def __init__(self, source: str, dataset: str, reason: str = ""):
        self.source = source
        self.dataset = dataset
        self.reason = reason
        message = f"{source}/{dataset} unavailable"
        super().__init__(f"{message}: {reason}" if reason else message)


@dataclass
class LoadResult:
    origin: str
    records: List[Record] = field(default_factory=list)
    error: Optional[str] = None
    stale: bool = False

    @property
    def available(self) -> bool:
        return self.origin != ORIGIN_UNAVAILABLE


class FileStaticStore:
    """Static tree on the local filesystem."""

    def __init__(self, root: str):
        self.root = root

    def get_json(self, rel_path: str) -> Any:
        path = os.path.join(self.root, *rel_path.split("/"))
        if not os.path.exists(path):
            raise LocalMiss(rel_path)
        document = read_json(path)
        if document is None:
            raise LocalMiss(rel_path, "unparsable JSON")
        return document


class HttpStaticStore:
    """Static tree served over HTTP; 404 is the designed fallback trigger."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None,
                 timeout=STATIC_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def get_json(self, rel_path: str) -> Any:
        url = f"{self.base_url}/{rel_path}"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise LocalMiss(rel_path, f"network error: {e}")

        if response.status_code == 404:
            raise LocalMiss(rel_path)
        if not 200 <= response.status_code < 300:
            raise LocalMiss(rel_path, f"HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError:
            raise LocalMiss(rel_path, "unparsable JSON")


def _within(records: List[Record], start: Optional[str], end: Optional[str]) -> List[Record]:
    return [
        r for r in records
        if (start is None or r["date"] >= start) and (end is None or r["date"] <= end)
    ]


def _merge_by_date(*groups: List[Record]) -> List[Record]:
    """Deduplicate by date; later groups win. Sorted ascending."""
    by_date: Dict[str, Record] = {}
    for group in groups:
        for record in group:
            by_date[record["date"]] = record
    return [by_date[d] for d in sorted(by_date)]


class DataLoader:
    """Reads time series from the static tree with a live-API fallback."""

    def __init__(
        self,
        store,
        live_adapters: Optional[Mapping[str, SourceAdapter]] = None,
        cache: Optional[MutableMapping[CacheKey, List[Record]]] = None,
        max_workers: int = 4,
        stale_after: Optional[timedelta] = None,
        recent_days: int = DEFAULT_RECENT_DAYS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.live_adapters = dict(live_adapters or {})
        self.cache = cache if cache is not None else {}
        self.max_workers = max_workers
        self.stale_after = stale_after
        self.recent_days = recent_days
        self._clock = clock
        # Partition metadata.last_updated by cache key, for staleness checks
        self._last_updated: Dict[CacheKey, Optional[str]] = {}

    # ------------------------------------------------------------------
    # Static tree
    # ------------------------------------------------------------------

    def _read_index(self, source: str, dataset: str) -> Dict[str, Any]:
        rel_path = f"{source}/{dataset}/{INDEX_FILE}"
        index = self.store.get_json(rel_path)
        try:
            validate_document(index, "index")
        except jsonschema.ValidationError as e:
            raise LocalMiss(rel_path, f"invalid index: {e.message}")
        return index

    def _read_partition(self, source: str, dataset: str, file_name: str) -> List[Record]:
        partition_id = file_name[:-len(".json")] if file_name.endswith(".json") else file_name
        key = (source, dataset, partition_id)
        if key in self.cache:
            return self.cache[key]

        rel_path = f"{source}/{dataset}/{file_name}"
        document = self.store.get_json(rel_path)
        try:
            validate_document(document, "partition")
        except jsonschema.ValidationError as e:
            raise LocalMiss(rel_path, f"invalid partition: {e.message}")

        records = document["data"]
        self.cache[key] = records
        self._last_updated[key] = document["metadata"].get("last_updated")
        return records

    def _is_stale(self, last_updated: Optional[str]) -> bool:
        if self.stale_after is None:
            return False
        if not last_updated:
            return True
        try:
            updated = datetime.fromisoformat(str(last_updated).replace("Z", "+00:00"))
        except ValueError:
            return True
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return self._clock() - updated > self.stale_after

    # ------------------------------------------------------------------
    # Live fallback
    # ------------------------------------------------------------------

    def _live(self, source: str, dataset: str, start: Optional[str], end: Optional[str]) -> LoadResult:
        adapter = self.live_adapters.get(source)
        if adapter is None:
            return LoadResult(ORIGIN_UNAVAILABLE, [], f"no live adapter for {source}")

        result = adapter.fetch(dataset)
        if not result.ok:
            return LoadResult(ORIGIN_UNAVAILABLE, [], result.error or result.status)

        records = sorted(_within(result.records, start, end), key=lambda r: r["date"])
        logger.info(f"{source}/{dataset}: served {len(records)} records from live upstream")
        return LoadResult(ORIGIN_REMOTE, records)

    def _prefer_live_when_stale(self, source: str, dataset: str, local: LoadResult,
                                last_updated: Optional[str], start: Optional[str],
                                end: Optional[str]) -> LoadResult:
        if not self._is_stale(last_updated):
            return local
        logger.info(f"{source}/{dataset}: local data is stale ({last_updated}), trying live")
        live = self._live(source, dataset, start, end)
        if live.available:
            return live
        logger.warning(f"{source}/{dataset}: live fetch failed ({live.error}); serving stale local data")
        local.stale = True
        return local

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve_recent(self, source: str, dataset: str) -> LoadResult:
        """Trailing-window records of a dataset, tagged with their origin."""
        start = recent_start(self._clock(), self.recent_days)
        try:
            records = self._read_partition(source, dataset, RECENT_FILE)
        except LocalMiss as e:
            logger.info(f"{source}/{dataset}: local recent miss ({e.reason}), falling back to live")
            return self._live(source, dataset, start, None)

        logger.debug(f"{source}/{dataset}: served recent from static tree")
        local = LoadResult(ORIGIN_LOCAL, sorted(records, key=lambda r: r["date"]))
        return self._prefer_live_when_stale(
            source, dataset, local, self._recent_last_updated(source, dataset), start, None
        )

    def _recent_last_updated(self, source: str, dataset: str) -> Optional[str]:
        """``last_updated`` of the recent partition, else of the index, else None."""
        if self.stale_after is None:
            return None
        updated = self._last_updated.get((source, dataset, RECENT_PARTITION))
        if updated:
            return updated
        try:
            return self._read_index(source, dataset).get("last_updated")
        except LocalMiss as e:
            logger.debug(f"{source}/{dataset}: no index for staleness check ({e.reason})")
            return None

    def resolve_range(self, source: str, dataset: str, start: str, end: str,
                      include_recent: bool = False) -> LoadResult:
        """
        Records of a dataset dated within ``[start, end]`` (inclusive).

        Only quarter files whose index range intersects the query are read;
        they are fetched concurrently. With ``include_recent`` the recent
        partition is read too and wins over quarter records of the same date.
        """
        start = date.fromisoformat(start).isoformat()
        end = date.fromisoformat(end).isoformat()
        if start > end:
            raise ValueError(f"start {start} is after end {end}")

        try:
            index = self._read_index(source, dataset)
            selected = [entry["file"] for entry in select_partitions(index, start, end)]
            if include_recent:
                selected.append(RECENT_FILE)

            groups: List[List[Record]] = []
            if selected:
                workers = max(1, min(self.max_workers, len(selected)))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="partition") as pool:
                    futures = [
                        pool.submit(self._read_partition, source, dataset, name) for name in selected
                    ]
                    # LocalMiss from any partition propagates here
                    groups = [future.result() for future in futures]
        except LocalMiss as e:
            logger.info(f"{source}/{dataset}: local miss ({e}), falling back to live")
            return self._live(source, dataset, start, end)

        records = _within(_merge_by_date(*groups), start, end)
        logger.debug(f"{source}/{dataset}: served {len(records)} records from {len(selected)} local file(s)")
        local = LoadResult(ORIGIN_LOCAL, records)
        return self._prefer_live_when_stale(source, dataset, local, index.get("last_updated"), start, end)

    def load_recent(self, source: str, dataset: str) -> List[Record]:
        """
        Raises:
            DataUnavailable: when neither path can serve the read
        """
        result = self.resolve_recent(source, dataset)
        if not result.available:
            raise DataUnavailable(source, dataset, result.error or "")
        return result.records

    def load_range(self, source: str, dataset: str, start: str, end: str,
                   include_recent: bool = False) -> List[Record]:
        """
        Raises:
            DataUnavailable: when neither path can serve the read
        """
        result = self.resolve_range(source, dataset, start, end, include_recent=include_recent)
        if not result.available:
            raise DataUnavailable(source, dataset, result.error or "")
        return result.records
