"""
Static tree validation.

Checks a generated data tree before it is published:

* every ``.json`` file parses and is at most 10MB
* ``manifest.json`` exists and conforms to the manifest schema
* every ``index.json`` conforms to the index schema and every file it
  lists exists
* every partition (quarter or ``recent.json``) conforms to the partition
  schema, is sorted by date and holds no record before its dataset's
  baseline date

``validate_tree`` only reads; ``write_validation_report`` stores the result
next to the run summary.

Usage:
    python -m pulsedata.pipeline.validate [--data-dir public/data] [--meta-dir runs/_meta]
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import jsonschema

from pulsedata.ingest.base_adapter import DEFAULT_BASELINE_DATE, load_pipeline_config
from pulsedata.logging_config import configure_logging
from pulsedata.pipeline.manifest import MANIFEST_FILE
from pulsedata.pipeline.partition import INDEX_FILE, RECENT_FILE
from pulsedata.pipeline.storage import QUARTER_FILE_RE, validate_document, write_json

logger = logging.getLogger(__name__)

VALIDATION_REPORT_FILE = "validation_report.json"
MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024

CHECKS = ("json_syntax", "file_size", "manifest", "indexes", "partitions")


def _schema_errors(document: Any, schema_name: str, label: str) -> List[str]:
    try:
        validate_document(document, schema_name)
    except jsonschema.ValidationError as e:
        location = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "<root>"
        return [f"{label}: {schema_name} schema violation at {location}: {e.message}"]
    return []


def validate_manifest(manifest: Optional[Any]) -> List[str]:
    """Errors for a parsed manifest, or for its absence (None)."""
    if manifest is None:
        return [f"{MANIFEST_FILE}: missing or unparsable"]
    if not isinstance(manifest, dict):
        return [f"{MANIFEST_FILE}: expected an object"]

    errors = []
    if not manifest.get("version"):
        errors.append(f"{MANIFEST_FILE}: no version")
    if not isinstance(manifest.get("datasets"), dict):
        errors.append(f"{MANIFEST_FILE}: no datasets")
    return errors + _schema_errors(manifest, "manifest", MANIFEST_FILE)


def validate_index(index: Any, dataset_dir: str, label: str) -> List[str]:
    """Schema errors plus every listed partition file missing from ``dataset_dir``."""
    errors = _schema_errors(index, "index", label)
    if errors:
        return errors

    entries = list(index.get("files", []))
    if index.get("recent"):
        entries.append(index["recent"])
    for entry in entries:
        if not os.path.isfile(os.path.join(dataset_dir, entry["file"])):
            errors.append(f"{label}: references missing file {entry['file']}")
    return errors


def validate_partition(document: Any, baseline_date: str, label: str) -> List[str]:
    """Schema errors, out-of-order dates and records before ``baseline_date``."""
    errors = _schema_errors(document, "partition", label)
    if errors:
        return errors

    previous = None
    for position, record in enumerate(document["data"]):
        day = record["date"]
        if previous is not None and day < previous:
            errors.append(f"{label}: not sorted by date at record {position} ({previous} > {day})")
            break
        previous = day

    early = [r["date"] for r in document["data"] if r["date"] < baseline_date]
    if early:
        errors.append(f"{label}: {len(early)} record(s) before baseline {baseline_date}, first {min(early)}")
    return errors


def _json_files(data_dir: str) -> List[str]:
    paths = []
    for root, dirs, files in os.walk(data_dir):
        dirs.sort()
        for name in sorted(files):
            if name.endswith(".json"):
                paths.append(os.path.join(root, name))
    return paths


def _relative(path: str, data_dir: str) -> str:
    return os.path.relpath(path, data_dir).replace(os.sep, "/")


def validate_tree(
    data_dir: str,
    max_file_size: int = MAX_FILE_SIZE_BYTES,
    checked_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Validate every file under ``data_dir``.

    Args:
        data_dir: Root of the static tree (the directory holding manifest.json)
        max_file_size: Size limit per JSON file in bytes
        checked_at: Report timestamp (UTC); defaults to now

    Returns:
        Report dict with per-check ``passed``/``errors``, the flat ``errors``
        list, ``files_checked`` and the overall ``passed`` flag
    """
    if checked_at is None:
        checked_at = datetime.now(timezone.utc)

    checks: Dict[str, List[str]] = {name: [] for name in CHECKS}
    parsed: Dict[str, Any] = {}
    files = _json_files(data_dir) if os.path.isdir(data_dir) else []

    for path in files:
        rel = _relative(path, data_dir)
        size = os.path.getsize(path)
        if size > max_file_size:
            checks["file_size"].append(f"{rel}: {size} bytes exceeds {max_file_size}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                parsed[path] = json.load(f)
        except ValueError as e:
            checks["json_syntax"].append(f"{rel}: {e}")

    checks["manifest"] = validate_manifest(parsed.get(os.path.join(data_dir, MANIFEST_FILE)))

    for path, document in parsed.items():
        dataset_dir, name = os.path.split(path)
        rel = _relative(path, data_dir)

        if name == INDEX_FILE:
            checks["indexes"].extend(validate_index(document, dataset_dir, rel))
        elif name == RECENT_FILE or QUARTER_FILE_RE.match(name):
            index = parsed.get(os.path.join(dataset_dir, INDEX_FILE))
            baseline = DEFAULT_BASELINE_DATE
            if isinstance(index, dict) and index.get("baseline_date"):
                baseline = str(index["baseline_date"])
            checks["partitions"].extend(validate_partition(document, baseline, rel))

    errors = [error for name in CHECKS for error in checks[name]]
    report = {
        "checked_at": checked_at.isoformat(),
        "data_dir": data_dir,
        "files_checked": len(files),
        "checks": {name: {"passed": not checks[name], "errors": checks[name]} for name in CHECKS},
        "errors": errors,
        "passed": not errors,
    }

    if errors:
        logger.warning(f"Validation of {data_dir} failed with {len(errors)} error(s)")
        for error in errors:
            logger.warning(f"  {error}")
    else:
        logger.info(f"Validated {len(files)} file(s) under {data_dir}")
    return report


def write_validation_report(report: Dict[str, Any], meta_dir: str) -> str:
    """Write ``report`` to ``<meta_dir>/validation_report.json`` and return the path."""
    path = os.path.join(meta_dir, VALIDATION_REPORT_FILE)
    write_json(path, report)
    return path


def print_report(report: Dict[str, Any]) -> None:
    print(f"\nValidation of {report['data_dir']} ({report['files_checked']} files):")
    for name, check in report["checks"].items():
        mark = "✓" if check["passed"] else "✗"
        print(f"  {mark} {name}")
        for error in check["errors"]:
            print(f"      - {error}")


def main(argv=None):
    """CLI entry point; exits 1 when the tree fails validation."""
    parser = argparse.ArgumentParser(description="Validate the static data tree")
    parser.add_argument('--data-dir', help="Tree to check (default: config/pipeline.yaml data_dir)")
    parser.add_argument('--meta-dir', help="Where to write validation_report.json")
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    args = parser.parse_args(argv)

    configure_logging(getattr(logging, args.log_level))
    pipeline_config = load_pipeline_config()

    report = validate_tree(args.data_dir or pipeline_config['data_dir'])
    write_validation_report(report, args.meta_dir or pipeline_config['meta_dir'])
    print_report(report)

    sys.exit(0 if report["passed"] else 1)


if __name__ == '__main__':
    main()
