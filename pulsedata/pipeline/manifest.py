"""
Global manifest of every (source, dataset) in the data tree.

``generate_manifest`` is a pure aggregation over dataset indexes;
``collect_dataset_indexes`` reads them from disk, skipping any that are
missing, unparsable or fail the index schema.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from pulsedata.pipeline.partition import INDEX_FILE
from pulsedata.pipeline.storage import is_valid, read_json, write_json

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "2.0.0"
MANIFEST_FILE = "manifest.json"
DEFAULT_STALE_AFTER_HOURS = 6

DatasetKey = Tuple[str, str]


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_stale(last_updated: Optional[str], generated_at: datetime, stale_after_hours: float) -> bool:
    """True when ``last_updated`` is missing or older than the threshold."""
    updated = _parse_timestamp(last_updated)
    if updated is None:
        return True
    return generated_at - updated > timedelta(hours=stale_after_hours)


def generate_manifest(
    dataset_indexes: Dict[DatasetKey, Dict[str, Any]],
    generated_at: Optional[datetime] = None,
    stale_after_hours: float = DEFAULT_STALE_AFTER_HOURS,
) -> Dict[str, Any]:
    """
    Build the manifest document.

    Args:
        dataset_indexes: ``{(source, dataset): index}``
        generated_at: Generation time (UTC); defaults to now
        stale_after_hours: Age after which a dataset is flagged ``stale``

    Returns:
        Manifest dict with ``generated_at``, ``version``, ``datasets``
        (``source -> dataset -> entry``) and a ``summary``
    """
    if generated_at is None:
        generated_at = datetime.now(timezone.utc)

    datasets: Dict[str, Dict[str, Any]] = {}
    total_records = 0

    for (source, dataset) in sorted(dataset_indexes):
        index = dataset_indexes[(source, dataset)]
        path = f"{source}/{dataset}"
        records = int(index.get("total_records", 0) or 0)
        last_updated = index.get("last_updated")

        datasets.setdefault(source, {})[dataset] = {
            "path": path,
            "index_file": f"{path}/{INDEX_FILE}",
            "date_range": index.get("date_range") or {"start": None, "end": None},
            "last_updated": last_updated,
            "total_records": records,
            "files": len(index.get("files", [])),
            "stale": is_stale(last_updated, generated_at, stale_after_hours),
        }
        total_records += records

    return {
        "generated_at": generated_at.isoformat(),
        "version": MANIFEST_VERSION,
        "datasets": datasets,
        "summary": {
            "total_sources": len(datasets),
            "total_datasets": len(dataset_indexes),
            "total_records": total_records,
        },
    }


def collect_dataset_indexes(data_dir: str) -> Dict[DatasetKey, Dict[str, Any]]:
    """Read every ``<data_dir>/<source>/<dataset>/index.json``."""
    indexes: Dict[DatasetKey, Dict[str, Any]] = {}
    if not os.path.isdir(data_dir):
        return indexes

    for source in sorted(os.listdir(data_dir)):
        source_dir = os.path.join(data_dir, source)
        if not os.path.isdir(source_dir):
            continue
        for dataset in sorted(os.listdir(source_dir)):
            dataset_dir = os.path.join(source_dir, dataset)
            if not os.path.isdir(dataset_dir):
                continue

            index_path = os.path.join(dataset_dir, INDEX_FILE)
            if not os.path.exists(index_path):
                logger.warning(f"No index for {source}/{dataset}; omitted from manifest")
                continue

            index = read_json(index_path)
            if index is None or not is_valid(index, "index"):
                logger.warning(f"Invalid index for {source}/{dataset}; omitted from manifest")
                continue

            indexes[(source, dataset)] = index

    return indexes


def write_manifest(manifest: Dict[str, Any], data_dir: str) -> str:
    """
    Write the manifest to ``<data_dir>/manifest.json``.

    Returns:
        Path to the written file
    """
    path = os.path.join(data_dir, MANIFEST_FILE)
    write_json(path, manifest)
    logger.info(f"Wrote manifest: {path} ({len(manifest.get('datasets', {}))} sources)")
    return path
