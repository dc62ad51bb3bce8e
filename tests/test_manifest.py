"""Tests for global manifest generation."""

import json
import os
from datetime import datetime, timedelta, timezone

from pulsedata.pipeline.manifest import (
    MANIFEST_VERSION,
    collect_dataset_indexes,
    generate_manifest,
    is_stale,
    write_manifest,
)
from pulsedata.pipeline.partition import partition
from pulsedata.pipeline.storage import validate_document, write_partitions

NOW = datetime(2024, 1, 20, 6, 0, tzinfo=timezone.utc)


def write_dataset(data_dir, source, dataset, days, now=NOW):
    result = partition(
        [{"date": d, "v": 1, "source": source} for d in days],
        "2023-10-07", now=now, dataset=dataset, source=source,
    )
    write_partitions(os.path.join(data_dir, source, dataset), result, source, dataset)
    return result.index


class TestGenerateManifest:
    """generate_manifest() aggregates indexes."""

    def test_entry_shape(self):
        index = partition(
            [{"date": "2023-10-07", "source": "s"}, {"date": "2024-01-01", "source": "s"}],
            "2023-10-07", now=NOW, dataset="casualties", source="tech4palestine",
        ).index

        manifest = generate_manifest({("tech4palestine", "casualties"): index}, generated_at=NOW)

        entry = manifest["datasets"]["tech4palestine"]["casualties"]
        assert entry["path"] == "tech4palestine/casualties"
        assert entry["index_file"] == "tech4palestine/casualties/index.json"
        assert entry["date_range"] == {"start": "2023-10-07", "end": "2024-01-01"}
        assert entry["total_records"] == 2
        assert entry["files"] == 2
        assert entry["stale"] is False
        assert manifest["version"] == MANIFEST_VERSION == "2.0.0"
        assert manifest["generated_at"] == NOW.isoformat()
        validate_document(manifest, "manifest")

    def test_zero_record_entry(self):
        index = partition([], "2023-10-07", now=NOW, dataset="idps", source="hdx").index

        manifest = generate_manifest({("hdx", "idps"): index}, generated_at=NOW)

        entry = manifest["datasets"]["hdx"]["idps"]
        assert entry["total_records"] == 0
        assert entry["files"] == 0
        assert entry["date_range"] == {"start": None, "end": None}
        validate_document(manifest, "manifest")

    def test_summary_totals(self):
        a = partition([{"date": "2024-01-01"}], "2023-10-07", now=NOW).index
        b = partition([{"date": "2024-01-01"}, {"date": "2024-01-02"}], "2023-10-07", now=NOW).index

        manifest = generate_manifest({("s1", "a"): a, ("s2", "b"): b}, generated_at=NOW)

        assert manifest["summary"] == {"total_sources": 2, "total_datasets": 2, "total_records": 3}

    def test_stale_flag(self):
        old = partition([{"date": "2024-01-01"}], "2023-10-07", now=NOW - timedelta(hours=7)).index

        manifest = generate_manifest({("s", "d"): old}, generated_at=NOW, stale_after_hours=6)

        assert manifest["datasets"]["s"]["d"]["stale"] is True

    def test_empty(self):
        manifest = generate_manifest({}, generated_at=NOW)
        assert manifest["datasets"] == {}
        validate_document(manifest, "manifest")


class TestIsStale:

    def test_missing_timestamp_is_stale(self):
        assert is_stale(None, NOW, 6)

    def test_zulu_timestamp(self):
        assert not is_stale("2024-01-20T05:00:00Z", NOW, 6)

    def test_naive_timestamp_treated_as_utc(self):
        assert is_stale("2024-01-19T00:00:00", NOW, 6)


class TestCollectAndWrite:
    """Indexes read from disk; bad ones are omitted."""

    def test_collects_valid_indexes(self, tmp_path):
        data_dir = str(tmp_path)
        write_dataset(data_dir, "tech4palestine", "casualties", ["2023-10-07"])
        write_dataset(data_dir, "hdx", "idps", [])

        indexes = collect_dataset_indexes(data_dir)

        assert set(indexes) == {("tech4palestine", "casualties"), ("hdx", "idps")}

    def test_invalid_index_omitted(self, tmp_path, caplog):
        data_dir = str(tmp_path)
        write_dataset(data_dir, "tech4palestine", "casualties", ["2023-10-07"])
        broken_dir = tmp_path / "worldbank" / "economic"
        broken_dir.mkdir(parents=True)
        (broken_dir / "index.json").write_text("{not json")
        schema_bad_dir = tmp_path / "goodshepherd" / "home-demolitions"
        schema_bad_dir.mkdir(parents=True)
        (schema_bad_dir / "index.json").write_text(json.dumps({"dataset": "home-demolitions"}))

        indexes = collect_dataset_indexes(data_dir)

        assert set(indexes) == {("tech4palestine", "casualties")}
        assert "omitted from manifest" in caplog.text

    def test_missing_index_omitted(self, tmp_path):
        (tmp_path / "hdx" / "idps").mkdir(parents=True)
        assert collect_dataset_indexes(str(tmp_path)) == {}

    def test_files_at_root_ignored(self, tmp_path):
        (tmp_path / "manifest.json").write_text("{}")
        assert collect_dataset_indexes(str(tmp_path)) == {}

    def test_write_manifest(self, tmp_path):
        data_dir = str(tmp_path)
        write_dataset(data_dir, "tech4palestine", "casualties", ["2023-10-07", "2024-01-01"])

        path = write_manifest(generate_manifest(collect_dataset_indexes(data_dir), generated_at=NOW), data_dir)

        assert path == os.path.join(data_dir, "manifest.json")
        with open(path) as f:
            manifest = json.load(f)
        assert manifest["datasets"]["tech4palestine"]["casualties"]["total_records"] == 2
