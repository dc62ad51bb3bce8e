"""
Static tree storage: partition writer, JSON Schema validation and the
content fingerprint used to decide whether a run changed anything.

Tree layout::

    <data_dir>/<source>/<dataset>/index.json
    <data_dir>/<source>/<dataset>/recent.json
    <data_dir>/<source>/<dataset>/<YYYY-QN>.json
    <data_dir>/manifest.json
"""

import hashlib
import json
import logging
import os
import re
import shutil
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema

from pulsedata.pipeline.partition import INDEX_FILE, RECENT_FILE, PartitionResult, quarter_file

logger = logging.getLogger(__name__)

_REPO_ROOT = Path(__file__).resolve().parent.parent.parent
SCHEMA_DIR = _REPO_ROOT / "config" / "schemas"

QUARTER_FILE_RE = re.compile(r"^\d{4}-Q[1-4]\.json$")

# Keys whose values change on every run without a data change
VOLATILE_KEYS = frozenset({"last_updated", "generated_at"})

TMP_SUFFIX = ".tmp"
BACKUP_SUFFIX = ".bak"


class PartitionWriteError(Exception):
    """Writing a dataset's partition files failed."""

    def __init__(self, path: str, message: str = ""):
        self.path = path
        self.message = message
        super().__init__(f"failed to write {path}: {message}" if message else f"failed to write {path}")


@lru_cache(maxsize=None)
def load_schema(name: str) -> Dict[str, Any]:
    """Load ``config/schemas/<name>.schema.json``."""
    path = SCHEMA_DIR / f"{name}.schema.json"
    with open(path) as f:
        return json.load(f)


def validate_document(document: Any, schema_name: str) -> None:
    """
    Validate ``document`` against a named schema.

    Raises:
        jsonschema.ValidationError: when the document does not conform
    """
    jsonschema.validate(document, load_schema(schema_name))


def is_valid(document: Any, schema_name: str) -> bool:
    try:
        validate_document(document, schema_name)
    except jsonschema.ValidationError as e:
        location = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "<root>"
        logger.debug(f"{schema_name} validation failed at {location}: {e.message}")
        return False
    return True


def read_json(path: str) -> Optional[Any]:
    """Parsed JSON at ``path``, or None when missing or unparsable."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return None


def _serialize(document: Any) -> str:
    return json.dumps(document, indent=2, ensure_ascii=False) + "\n"


def write_json(path: str, document: Any) -> None:
    """Write ``document`` atomically (temp file then rename)."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp_path = path + TMP_SUFFIX
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(_serialize(document))
    os.replace(tmp_path, path)


def partition_document(
    records: List[Dict[str, Any]],
    source: str,
    dataset: str,
    last_updated: str,
    quarter: Optional[str] = None,
    date_range: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "source": source,
        "dataset": dataset,
        "record_count": len(records),
        "last_updated": last_updated,
    }
    if quarter is not None:
        metadata["quarter"] = quarter
    if date_range is not None:
        metadata["date_range"] = date_range
    return {"metadata": metadata, "data": records}


def _discard(paths: List[str]) -> None:
    for path in paths:
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError:
                logger.debug(f"Could not clean up {path}")


def _roll_back(dataset_dir: str, replaced: List[str], backups: Dict[str, str]) -> None:
    """Put back the files replaced so far; files that did not exist before are removed."""
    for name in reversed(replaced):
        target = os.path.join(dataset_dir, name)
        try:
            if name in backups:
                os.replace(backups.pop(name), target)
            else:
                os.remove(target)
        except OSError as e:
            logger.error(f"Rollback of {target} failed: {e}")


def write_partitions(dataset_dir: str, result: PartitionResult, source: str, dataset: str) -> Dict[str, List[str]]:
    """
    Replace a dataset's partition files with ``result``.

    Quarter files whose ``data`` is unchanged on disk are left untouched, so
    elapsed quarters stay byte-identical between runs. Quarter files no longer
    produced are removed. ``recent.json`` and ``index.json`` are always
    rewritten. All new content is staged before anything is replaced.

    Until ``index.json`` is in place the previous files are kept as backups;
    a failure before then restores them, so the dataset is never left with a
    mix of old and new partitions.

    Returns:
        Dict with ``written``, ``unchanged`` and ``removed`` file names

    Raises:
        PartitionWriteError: on any filesystem failure before the index is replaced
    """
    last_updated = result.index.get("last_updated", "")
    entries = {entry["quarter"]: entry for entry in result.index.get("files", [])}

    staged: Dict[str, Any] = {}
    unchanged: List[str] = []

    for key, records in result.quarters.items():
        name = quarter_file(key)
        existing = read_json(os.path.join(dataset_dir, name))
        if isinstance(existing, dict) and existing.get("data") == records:
            unchanged.append(name)
            continue
        staged[name] = partition_document(
            records, source, dataset, last_updated,
            quarter=key, date_range=entries.get(key, {}).get("date_range"),
        )

    staged[RECENT_FILE] = partition_document(
        result.recent, source, dataset, last_updated,
        date_range=result.index.get("recent", {}).get("date_range"),
    )
    staged[INDEX_FILE] = result.index

    produced = {quarter_file(key) for key in result.quarters}
    tmp_paths: List[str] = []
    backups: Dict[str, str] = {}
    replaced: List[str] = []
    current_path = dataset_dir

    try:
        os.makedirs(dataset_dir, exist_ok=True)

        for name, document in staged.items():
            current_path = os.path.join(dataset_dir, name) + TMP_SUFFIX
            with open(current_path, "w", encoding="utf-8") as f:
                f.write(_serialize(document))
            tmp_paths.append(current_path)

        for name in staged:
            current_path = os.path.join(dataset_dir, name)
            if os.path.exists(current_path):
                shutil.copy2(current_path, current_path + BACKUP_SUFFIX)
                backups[name] = current_path + BACKUP_SUFFIX

        # Index goes last so readers never see it ahead of its partitions
        for name in sorted(staged, key=lambda n: n == INDEX_FILE):
            current_path = os.path.join(dataset_dir, name)
            os.replace(current_path + TMP_SUFFIX, current_path)
            replaced.append(name)
    except OSError as e:
        _roll_back(dataset_dir, replaced, backups)
        _discard(tmp_paths + list(backups.values()))
        raise PartitionWriteError(current_path, str(e)) from e

    _discard(list(backups.values()))

    # The new index no longer lists these, so a failed removal only leaves an orphan
    removed = []
    for name in sorted(os.listdir(dataset_dir)):
        if QUARTER_FILE_RE.match(name) and name not in produced:
            try:
                os.remove(os.path.join(dataset_dir, name))
            except OSError as e:
                logger.warning(f"Could not remove obsolete {name} from {dataset_dir}: {e}")
                continue
            removed.append(name)

    logger.info(
        f"{source}/{dataset}: wrote {len(staged)} file(s), "
        f"{len(unchanged)} unchanged, {len(removed)} removed"
    )
    return {"written": sorted(staged), "unchanged": unchanged, "removed": removed}


def _strip_volatile(document: Any) -> Any:
    if isinstance(document, dict):
        return {k: _strip_volatile(v) for k, v in document.items() if k not in VOLATILE_KEYS}
    if isinstance(document, list):
        return [_strip_volatile(v) for v in document]
    return document


def content_hash(path: str) -> str:
    """
    SHA256 of a JSON file's content with volatile timestamps removed.

    Files that do not parse as JSON are hashed byte for byte.
    """
    sha256_hash = hashlib.sha256()
    document = read_json(path)
    if document is not None:
        canonical = json.dumps(_strip_volatile(document), sort_keys=True, separators=(",", ":"))
        sha256_hash.update(canonical.encode("utf-8"))
    else:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                sha256_hash.update(chunk)
    return f"sha256:{sha256_hash.hexdigest()}"


def tree_fingerprint(data_dir: str) -> Dict[str, str]:
    """Map of relative path -> content hash for every JSON file under ``data_dir``."""
    fingerprint: Dict[str, str] = {}
    if not os.path.isdir(data_dir):
        return fingerprint

    for root, _dirs, files in os.walk(data_dir):
        for name in files:
            if not name.endswith(".json"):
                continue
            path = os.path.join(root, name)
            rel = os.path.relpath(path, data_dir).replace(os.sep, "/")
            fingerprint[rel] = content_hash(path)
    return fingerprint


def diff_fingerprints(before: Dict[str, str], after: Dict[str, str]) -> List[str]:
    """Relative paths added, removed or modified between two fingerprints."""
    return sorted(
        path for path in set(before) | set(after)
        if before.get(path) != after.get(path)
    )
