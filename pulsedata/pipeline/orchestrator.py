"""
Pipeline orchestrator.

Runs one full regeneration of the static data tree:

    Idle -> Fetching -> Normalizing -> Partitioning -> ManifestBuilding
         -> DiffCheck -> Done | Failed

Adapters are fetched concurrently (one worker per upstream, each with its
own rate limiter); within an adapter datasets are fetched in order. Every
later stage works per dataset, so one dataset's failure never reaches
another. A failed dataset keeps the previous run's partition files; a skipped
one (missing credential) is written as an empty dataset.

Usage:
    python -m pulsedata.pipeline.orchestrator [--only hdx] [--skip-down] [--validate]
"""

import argparse
import importlib
import logging
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pulsedata.ingest.base_adapter import (
    DEFAULT_BASELINE_DATE,
    STATUS_FAILED,
    STATUS_OK,
    STATUS_SKIPPED,
    AdapterResult,
    SourceAdapter,
    load_pipeline_config,
    load_sources_config,
)
from pulsedata.ingest.health import HealthTracker, load_health_tracker, save_health_tracker
from pulsedata.logging_config import configure_logging
from pulsedata.pipeline.manifest import (
    DEFAULT_STALE_AFTER_HOURS,
    collect_dataset_indexes,
    generate_manifest,
    write_manifest,
)
from pulsedata.pipeline.partition import DEFAULT_RECENT_DAYS, partition
from pulsedata.pipeline.storage import diff_fingerprints, tree_fingerprint, write_json, write_partitions
from pulsedata.pipeline.validate import print_report, validate_tree, write_validation_report

logger = logging.getLogger(__name__)

RUN_SUMMARY_FILE = "run_summary.json"


class PipelineState(Enum):
    IDLE = "Idle"
    FETCHING = "Fetching"
    NORMALIZING = "Normalizing"
    PARTITIONING = "Partitioning"
    MANIFEST_BUILDING = "ManifestBuilding"
    DIFF_CHECK = "DiffCheck"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class DatasetOutcome:
    """What happened to one dataset during a run."""
    source: str
    dataset: str
    status: str
    records: int = 0
    error: Optional[str] = None
    written: bool = False
    files_written: List[str] = field(default_factory=list)
    files_unchanged: List[str] = field(default_factory=list)
    files_removed: List[str] = field(default_factory=list)


@dataclass
class RunReport:
    """Result of one pipeline run."""
    state: PipelineState = PipelineState.IDLE
    transitions: List[str] = field(default_factory=lambda: [PipelineState.IDLE.value])
    outcomes: List[DatasetOutcome] = field(default_factory=list)
    manifest_path: Optional[str] = None
    manifest_error: Optional[str] = None
    changed: bool = False
    changed_files: List[str] = field(default_factory=list)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    durations: Dict[str, float] = field(default_factory=dict)
    health_changes: Dict[str, List[str]] = field(
        default_factory=lambda: {"newly_degraded": [], "newly_down": []}
    )

    def outcome(self, source: str, dataset: str) -> Optional[DatasetOutcome]:
        for outcome in self.outcomes:
            if outcome.source == source and outcome.dataset == dataset:
                return outcome
        return None

    def counts(self) -> Dict[str, int]:
        counts = {STATUS_OK: 0, STATUS_SKIPPED: 0, STATUS_FAILED: 0}
        for outcome in self.outcomes:
            counts[outcome.status] = counts.get(outcome.status, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "transitions": self.transitions,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "durations": self.durations,
            "counts": self.counts(),
            "changed": self.changed,
            "changed_files": self.changed_files,
            "manifest_path": self.manifest_path,
            "manifest_error": self.manifest_error,
            "health_changes": self.health_changes,
            "datasets": [asdict(o) for o in self.outcomes],
        }


class PipelineOrchestrator:
    """Fetches every adapter's datasets and regenerates the data tree."""

    def __init__(
        self,
        adapters: Iterable[SourceAdapter],
        data_dir: str,
        meta_dir: Optional[str] = None,
        now: Optional[datetime] = None,
        recent_days: int = DEFAULT_RECENT_DAYS,
        stale_after_hours: float = DEFAULT_STALE_AFTER_HOURS,
        health_tracker: Optional[HealthTracker] = None,
        skip_down: bool = False,
        max_workers: Optional[int] = None,
    ):
        self.adapters = list(adapters)
        self.data_dir = data_dir
        self.meta_dir = meta_dir
        self.now = now
        self.recent_days = recent_days
        self.stale_after_hours = stale_after_hours
        self.skip_down = skip_down
        self.max_workers = max_workers

        if health_tracker is None:
            health_tracker = load_health_tracker(meta_dir) if meta_dir else HealthTracker()
        self.health_tracker = health_tracker

        self._report = RunReport()
        self._adapters_by_source: Dict[str, SourceAdapter] = {a.source_id: a for a in self.adapters}

    def _transition(self, state: PipelineState) -> None:
        logger.debug(f"Pipeline state: {self._report.state.value} -> {state.value}")
        self._report.state = state
        self._report.transitions.append(state.value)

    def _timed(self, name: str, started: float) -> None:
        self._report.durations[name] = round(time.monotonic() - started, 3)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _active_adapters(self) -> List[SourceAdapter]:
        active = []
        for adapter in self.adapters:
            if self.skip_down and self.health_tracker.is_down(adapter.source_id):
                logger.warning(f"Skipping DOWN source: {adapter.source_id} (previous files kept)")
                continue
            active.append(adapter)
        return active

    @staticmethod
    def _fetch_adapter(adapter: SourceAdapter) -> List[AdapterResult]:
        logger.info(f"Fetching from {adapter.name}...")
        return adapter.fetch_all()

    def fetch_all(self) -> List[AdapterResult]:
        """Run every active adapter in its own worker and collect all results."""
        adapters = self._active_adapters()
        if not adapters:
            return []

        results: List[AdapterResult] = []
        workers = self.max_workers or len(adapters)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="adapter") as pool:
            futures = [(adapter, pool.submit(self._fetch_adapter, adapter)) for adapter in adapters]
            for adapter, future in futures:
                try:
                    results.extend(future.result())
                except Exception as e:
                    logger.exception(f"Adapter {adapter.source_id} crashed")
                    results.extend(
                        AdapterResult(adapter.source_id, dataset, STATUS_FAILED, [], f"{type(e).__name__}: {e}")
                        for dataset in adapter.datasets
                    )
        return results

    def _update_health(self, results: List[AdapterResult]) -> Dict[str, List[str]]:
        """Record this run per source and return the sources that just became DEGRADED or DOWN."""
        previous = HealthTracker.from_dict(self.health_tracker.to_dict())
        by_source: Dict[str, List[AdapterResult]] = {}
        for result in results:
            by_source.setdefault(result.source, []).append(result)

        for source, source_results in by_source.items():
            statuses = {r.status for r in source_results}
            if statuses == {STATUS_SKIPPED}:
                continue

            adapter = self._adapters_by_source.get(source)
            health = self.health_tracker.get_or_create(source, name=adapter.name if adapter else "")
            if STATUS_OK not in statuses and STATUS_FAILED in statuses:
                errors = "; ".join(f"{r.dataset}: {r.error}" for r in source_results if r.error)
                health.record_failure(errors)
            else:
                health.record_success(sum(len(r.records) for r in source_results if r.ok))

        changes = self.health_tracker.get_newly_degraded_or_down(previous)
        for source in changes["newly_degraded"]:
            logger.warning(f"Source {source} is now DEGRADED")
        for source in changes["newly_down"]:
            logger.warning(f"Source {source} is now DOWN")
        return changes

    def _partition_and_write(self, result: AdapterResult, records: List[Dict[str, Any]],
                             outcome: DatasetOutcome, now: datetime) -> None:
        adapter = self._adapters_by_source.get(result.source)
        try:
            baseline = adapter.baseline_date(result.dataset) if adapter else DEFAULT_BASELINE_DATE
            partitioned = partition(
                records, baseline, now=now, recent_days=self.recent_days,
                dataset=result.dataset, source=result.source,
            )
            files = write_partitions(
                os.path.join(self.data_dir, result.source, result.dataset),
                partitioned, result.source, result.dataset,
            )
        except Exception as e:
            logger.error(f"Partitioning {result.source}/{result.dataset} failed: {e}")
            outcome.status = STATUS_FAILED
            outcome.error = f"partition: {type(e).__name__}: {e}"
            return

        outcome.records = partitioned.total_records
        outcome.written = True
        outcome.files_written = files["written"]
        outcome.files_unchanged = files["unchanged"]
        outcome.files_removed = files["removed"]

    def _build_manifest(self, now: datetime) -> None:
        try:
            indexes = collect_dataset_indexes(self.data_dir)
            manifest = generate_manifest(indexes, generated_at=now, stale_after_hours=self.stale_after_hours)
            self._report.manifest_path = write_manifest(manifest, self.data_dir)
        except Exception as e:
            logger.exception("Manifest generation failed")
            self._report.manifest_error = f"{type(e).__name__}: {e}"

    # ------------------------------------------------------------------

    def run(self) -> RunReport:
        """Execute one pipeline run. Never raises for adapter or dataset failures."""
        report = self._report = RunReport()
        now = self.now or datetime.now(timezone.utc)
        report.started_at = datetime.now(timezone.utc).isoformat()

        before = tree_fingerprint(self.data_dir)

        self._transition(PipelineState.FETCHING)
        started = time.monotonic()
        results = self.fetch_all()
        self._timed("fetching", started)
        report.health_changes = self._update_health(results)

        outcomes = {}
        for result in results:
            outcomes[(result.source, result.dataset)] = DatasetOutcome(
                result.source, result.dataset, result.status, len(result.records), result.error
            )
        report.outcomes = list(outcomes.values())

        self._transition(PipelineState.NORMALIZING)
        started = time.monotonic()
        normalized: Dict[Any, List[Dict[str, Any]]] = {}
        for result in results:
            if result.status == STATUS_FAILED:
                continue
            # Adapters hand over schema-checked, normalized records
            normalized[(result.source, result.dataset)] = result.records
        self._timed("normalizing", started)

        self._transition(PipelineState.PARTITIONING)
        started = time.monotonic()
        for result in results:
            key = (result.source, result.dataset)
            if key in normalized:
                self._partition_and_write(result, normalized[key], outcomes[key], now)
        self._timed("partitioning", started)

        self._transition(PipelineState.MANIFEST_BUILDING)
        started = time.monotonic()
        self._build_manifest(now)
        self._timed("manifest", started)

        self._transition(PipelineState.DIFF_CHECK)
        after = tree_fingerprint(self.data_dir)
        report.changed_files = diff_fingerprints(before, after)
        report.changed = bool(report.changed_files)

        all_failed = all(o.status == STATUS_FAILED for o in report.outcomes)
        if all_failed and report.manifest_path is None:
            self._transition(PipelineState.FAILED)
        else:
            self._transition(PipelineState.DONE)

        report.finished_at = datetime.now(timezone.utc).isoformat()

        if self.meta_dir:
            self._persist_meta(report)

        return report

    def _persist_meta(self, report: RunReport) -> None:
        try:
            save_health_tracker(self.health_tracker, self.meta_dir)
            write_json(os.path.join(self.meta_dir, RUN_SUMMARY_FILE), report.to_dict())
        except OSError as e:
            logger.warning(f"Could not write run metadata to {self.meta_dir}: {e}")


def build_adapters(
    sources: List[Dict[str, Any]],
    pipeline_config: Optional[Dict[str, Any]] = None,
    only: Optional[Iterable[str]] = None,
) -> List[SourceAdapter]:
    """
    Instantiate the adapter class named by each enabled source's ``adapter`` path.

    A source whose adapter cannot be imported is logged and left out.
    """
    pipeline_config = pipeline_config or load_pipeline_config()
    only = set(only) if only else None
    adapters = []

    for source in sources:
        source_id = source['id']
        if only is not None and source_id not in only:
            continue
        if not source.get('enabled', True):
            logger.info(f"Skipping disabled source: {source_id}")
            continue

        adapter_path = source.get('adapter', '')
        try:
            module_name, class_name = adapter_path.rsplit('.', 1)
            adapter_cls = getattr(importlib.import_module(module_name), class_name)
        except (ValueError, ImportError, AttributeError) as e:
            logger.error(f"Cannot load adapter {adapter_path!r} for {source_id}: {e}")
            continue

        adapters.append(adapter_cls(source, pipeline_config=pipeline_config))

    return adapters


def _write_github_output(changed: bool) -> None:
    output_path = os.environ.get("GITHUB_OUTPUT")
    if not output_path:
        return
    with open(output_path, "a") as f:
        f.write(f"changed={'true' if changed else 'false'}\n")


def _print_summary(report: RunReport) -> None:
    counts = report.counts()
    print(f"\nPipeline {report.state.value}: {counts[STATUS_OK]} ok, "
          f"{counts[STATUS_SKIPPED]} skipped, {counts[STATUS_FAILED]} failed")
    for outcome in report.outcomes:
        mark = {"ok": "✓", "skipped": "-", "failed": "✗"}.get(outcome.status, "?")
        line = f"  {mark} {outcome.source}/{outcome.dataset}: {outcome.records} records"
        if outcome.error:
            line += f" ({outcome.error})"
        print(line)
    if report.manifest_error:
        print(f"  ✗ manifest: {report.manifest_error}")
    for key, label in (("newly_degraded", "DEGRADED"), ("newly_down", "DOWN")):
        for source in report.health_changes.get(key, []):
            print(f"  ! {source} is now {label}")
    print(f"  Changed files: {len(report.changed_files)}")


def main(argv=None):
    """CLI entry point for cron and CI."""
    parser = argparse.ArgumentParser(description="Fetch all sources and regenerate the static data tree")
    parser.add_argument('--data-dir', help="Output tree (default: config/pipeline.yaml data_dir)")
    parser.add_argument('--meta-dir', help="Health and run summary directory")
    parser.add_argument('--sources', help="Path to sources.yaml (default: config/sources.yaml)")
    parser.add_argument('--only', action='append', metavar='SOURCE',
                        help="Only run this source id (repeatable)")
    parser.add_argument('--skip-down', action='store_true',
                        help="Do not attempt sources whose health is DOWN")
    parser.add_argument('--validate', action='store_true',
                        help="Validate the tree after the run; exit 1 if it fails")
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    args = parser.parse_args(argv)

    configure_logging(getattr(logging, args.log_level))

    pipeline_config = load_pipeline_config()
    sources = load_sources_config(args.sources)
    adapters = build_adapters(sources, pipeline_config, only=args.only)

    data_dir = args.data_dir or pipeline_config['data_dir']
    meta_dir = args.meta_dir or pipeline_config['meta_dir']
    orchestrator = PipelineOrchestrator(
        adapters,
        data_dir=data_dir,
        meta_dir=meta_dir,
        recent_days=pipeline_config['recent_days'],
        stale_after_hours=pipeline_config['stale_after_hours'],
        skip_down=args.skip_down,
    )
    report = orchestrator.run()

    _print_summary(report)
    _write_github_output(report.changed)

    # Exit nonzero on total failure (for cron alerting)
    if report.state is PipelineState.FAILED:
        print("\n✗ Pipeline FAILED - exiting with error code")
        sys.exit(1)

    if args.validate:
        validation = validate_tree(data_dir)
        write_validation_report(validation, meta_dir)
        print_report(validation)
        if not validation["passed"]:
            print("\n✗ Data tree failed validation - exiting with error code")
            sys.exit(1)

    sys.exit(0)


if __name__ == '__main__':
    main()
