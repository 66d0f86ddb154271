"""Tests for backup catalog reconciliation."""

import json
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from site_vault.backup_lock import BackupLock
from site_vault.catalog import (
    PROVENANCE_LOCAL,
    PROVENANCE_REMOTE,
    LocalBackup,
    discover_local_backups,
    local_entry,
    normalize_status,
    reconcile,
    records_from_objects,
    remote_entry,
)
from site_vault.manifest import BackupManifest, save_manifest
from site_vault.storage_backend import RemoteObject


def _remote(backup_id, created_at="2025-03-01T12:00:00Z", **extra):
    record = {
        "id": backup_id,
        "backup_type": "full",
        "status": "completed",
        "created_at": created_at,
        "components": [
            {
                "name": "uploads",
                "objects": [
                    {"key": f"backups/t/s/{backup_id}/chunk-0000.tar.gz", "size": 300},
                    {"key": f"backups/t/s/{backup_id}/chunk-0001.tar.gz", "size": 200},
                ],
            }
        ],
    }
    record.update(extra)
    return record


def _manifest(backup_id, created_at=datetime(2025, 3, 1, 11, 0, tzinfo=timezone.utc)):
    manifest = BackupManifest(backup_id=backup_id, created_at=created_at)
    manifest.add_archive("database", f"database-{backup_id}.sql.gz", 100)
    manifest.add_archive("uploads", f"uploads-{backup_id}.zip", 900)
    return manifest


def _local(backup_id, sizes=None, in_progress=False, **kwargs):
    manifest = _manifest(backup_id, **kwargs)
    if sizes is None:
        sizes = {f.filename: f.size_bytes for f in manifest.files}
    return LocalBackup(manifest=manifest, file_sizes=sizes, in_progress=in_progress)


@pytest.mark.unit
class TestRemoteEntry:
    """Test parsing of broker backup records."""

    def test_remote_record_fields(self):
        """Test that a well-formed record becomes a remote entry."""
        entry = remote_entry(_remote("bk_1", total_size_bytes=512))

        assert entry.backup_id == "bk_1"
        assert entry.provenance == PROVENANCE_REMOTE
        assert entry.status == "completed"
        assert entry.total_size_bytes == 512
        assert entry.created_at == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert [f.filename for f in entry.files] == ["chunk-0000.tar.gz", "chunk-0001.tar.gz"]
        assert all(f.is_remote for f in entry.files)
        assert entry.components[0].name == "uploads"

    def test_total_falls_back_to_object_sizes(self):
        """Test the computed total when the broker omits it."""
        assert remote_entry(_remote("bk_1")).total_size_bytes == 500

    def test_object_filename_is_preferred(self):
        """Test that an explicit filename beats the key basename."""
        record = _remote("bk_1")
        record["components"][0]["objects"][0]["filename"] = "uploads-bk_1.tar.gz"
        assert remote_entry(record).files[0].filename == "uploads-bk_1.tar.gz"

    def test_record_without_id(self):
        """Test that a record without identity is rejected."""
        with pytest.raises(ValueError):
            remote_entry({"status": "completed"})

    @pytest.mark.parametrize(
        "raw,status",
        [
            ("completed", "completed"),
            ("SUCCESS", "completed"),
            ("pending", "running"),
            ("in_progress", "running"),
            ("error", "failed"),
            ("canceled", "failed"),
            ("mystery", "unknown"),
            (None, "unknown"),
        ],
    )
    def test_status_normalization(self, raw, status):
        """Test broker status mapping."""
        assert normalize_status(raw) == status


@pytest.mark.unit
class TestLocalEntry:
    """Test local manifest entries."""

    def test_size_is_recomputed_from_disk(self):
        """Test that on-disk sizes win over the declared total."""
        local = _local("bk_2", sizes={"database-bk_2.sql.gz": 150, "uploads-bk_2.zip": 1000})

        entry = local_entry(local)

        assert entry.provenance == PROVENANCE_LOCAL
        assert entry.total_size_bytes == 1150
        assert entry.partial is False
        assert entry.status == "completed"

    def test_missing_file_is_flagged_with_best_effort_size(self):
        """Test that an absent archive keeps its declared size and is flagged."""
        local = _local("bk_3", sizes={"database-bk_3.sql.gz": 100, "uploads-bk_3.zip": None})

        entry = local_entry(local)

        assert entry.partial is True
        assert entry.missing_files == ["uploads-bk_3.zip"]
        missing = [f for f in entry.files if f.missing][0]
        assert missing.size_bytes == 900
        assert entry.total_size_bytes == 100

    def test_all_files_missing_uses_declared_total(self):
        """Test the fallback when nothing is on disk."""
        local = _local("bk_4", sizes={})

        entry = local_entry(local)

        assert entry.total_size_bytes == 1000
        assert len(entry.missing_files) == 2

    def test_in_progress_backup_is_partial(self):
        """Test that a locked backup's sizes are not trusted."""
        entry = local_entry(_local("bk_5", in_progress=True))

        assert entry.status == "running"
        assert entry.partial is True
        assert entry.total_size_bytes == 1000


@pytest.mark.unit
class TestReconcile:
    """Test merging remote and local views."""

    def test_entry_count(self):
        """Test |R| + |local ids not in R| entries."""
        remote = [_remote("bk_a"), _remote("bk_b")]
        local = [_local("bk_b"), _local("bk_c"), _local("bk_d")]

        entries = reconcile(remote, local)

        assert len(entries) == 4
        assert {e.backup_id for e in entries} == {"bk_a", "bk_b", "bk_c", "bk_d"}

    def test_remote_wins_on_shared_backup_id(self):
        """Test that the remote record is authoritative."""
        entries = reconcile([_remote("bk_x")], [_local("bk_x")])

        assert len(entries) == 1
        assert entries[0].provenance == PROVENANCE_REMOTE
        assert entries[0].total_size_bytes == 500
        assert all(f.is_remote for f in entries[0].files)

    def test_reconcile_is_deterministic(self):
        """Test that identical inputs give identical output."""
        remote = [_remote("bk_1"), _remote("bk_2", created_at="2025-03-02T00:00:00Z")]
        local = [_local("bk_3"), _local("bk_1")]

        assert reconcile(remote, local) == reconcile(remote, local)

    def test_ordering_newest_first_with_ties_by_id(self):
        """Test sort order by time, then backup_id, untimed last."""
        remote = [
            _remote("bk_b", created_at="2025-03-01T12:00:00Z"),
            _remote("bk_a", created_at="2025-03-01T12:00:00Z"),
            _remote("bk_new", created_at="2025-03-05T00:00:00Z"),
            _remote("bk_none", created_at=None),
        ]

        entries = reconcile(remote, [])

        assert [e.backup_id for e in entries] == ["bk_new", "bk_a", "bk_b", "bk_none"]

    def test_finished_at_is_used_for_ordering(self):
        """Test that completion time takes precedence over creation time."""
        remote = [
            _remote(
                "bk_early",
                created_at="2025-03-01T00:00:00Z",
                finished_at="2025-03-09T00:00:00Z",
            ),
            _remote("bk_late", created_at="2025-03-05T00:00:00Z"),
        ]

        assert [e.backup_id for e in reconcile(remote, [])] == ["bk_early", "bk_late"]

    def test_malformed_records_are_dropped(self, caplog):
        """Test that bad records are skipped with a warning."""
        remote = ["not a dict", {"status": "completed"}, {"id": "bk_ok", "components": "bad"}]

        with caplog.at_level(logging.WARNING, logger="site_vault.catalog"):
            entries = reconcile(remote + [_remote("bk_1")], [])

        assert [e.backup_id for e in entries] == ["bk_1"]
        assert "Dropping malformed remote backup record" in caplog.text

    def test_out_of_range_timestamp_does_not_abort(self):
        """Test that an unrepresentable epoch only loses its timestamp."""
        remote = [
            {"id": "bk_a", "created_at": 1e20},
            {"id": "bk_b", "created_at": "2024-01-01"},
        ]

        entries = reconcile(remote, [])

        assert [e.backup_id for e in entries] == ["bk_b", "bk_a"]
        assert entries[1].created_at is None

    def test_duplicate_remote_records(self):
        """Test that only the first record per backup_id is kept."""
        entries = reconcile([_remote("bk_1", status="failed"), _remote("bk_1")], [])

        assert len(entries) == 1
        assert entries[0].status == "failed"


@pytest.mark.unit
class TestRecordsFromObjects:
    """Test grouping listed objects into records."""

    def test_objects_grouped_by_backup(self):
        """Test that chunk keys are grouped by backup_id."""
        t0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        t1 = datetime(2025, 3, 1, 12, 5, tzinfo=timezone.utc)
        objects = [
            RemoteObject("backups/t/s/bk_2/chunk-0001.zip", 20, t1),
            RemoteObject("backups/t/s/bk_2/chunk-0000.zip", 10, t0),
            RemoteObject("backups/t/s/bk_1/chunk-0000.tar.gz", 5, None),
            RemoteObject("unrelated/readme.txt", 1, t0),
        ]

        records = records_from_objects(objects)

        assert [r["id"] for r in records] == ["bk_1", "bk_2"]
        bk_2 = records[1]
        assert bk_2["total_size_bytes"] == 30
        assert bk_2["created_at"] == t0.isoformat()
        assert bk_2["finished_at"] == t1.isoformat()
        assert [o["key"] for o in bk_2["components"][0]["objects"]] == [
            "backups/t/s/bk_2/chunk-0000.zip",
            "backups/t/s/bk_2/chunk-0001.zip",
        ]
        assert records[0]["created_at"] is None

    def test_records_reconcile_cleanly(self):
        """Test that derived records are valid reconciler input."""
        objects = [RemoteObject("backups/t/s/bk_1/chunk-0000.zip", 10, None)]
        entries = reconcile(records_from_objects(objects), [])
        assert entries[0].files[0].remote_key == "backups/t/s/bk_1/chunk-0000.zip"


@pytest.mark.unit
class TestDiscoverLocalBackups:
    """Test reading manifests from the backup directory."""

    def test_discovers_manifests_and_sizes(self):
        """Test on-disk sizes and missing archives."""
        with tempfile.TemporaryDirectory() as tmpdir:
            save_manifest(_manifest("bk_1"), tmpdir)
            (Path(tmpdir) / "database-bk_1.sql.gz").write_bytes(b"x" * 42)

            backups = discover_local_backups(tmpdir)

        assert len(backups) == 1
        assert backups[0].file_sizes == {"database-bk_1.sql.gz": 42, "uploads-bk_1.zip": None}
        assert backups[0].in_progress is False

    def test_corrupt_manifest_is_skipped(self, caplog):
        """Test that one bad manifest does not hide the others."""
        with tempfile.TemporaryDirectory() as tmpdir:
            save_manifest(_manifest("bk_good"), tmpdir)
            (Path(tmpdir) / "backup-bk_bad-manifest.json").write_text("{broken")
            (Path(tmpdir) / "notes.json").write_text(json.dumps({"backup_id": "x"}))

            with caplog.at_level(logging.WARNING, logger="site_vault.catalog"):
                backups = discover_local_backups(tmpdir)

        assert [b.manifest.backup_id for b in backups] == ["bk_good"]
        assert "backup-bk_bad-manifest.json" in caplog.text

    def test_locked_backup_is_in_progress(self):
        """Test that the advisory lock marks a backup as still being written."""
        with tempfile.TemporaryDirectory() as tmpdir:
            save_manifest(_manifest("bk_1"), tmpdir)

            with BackupLock(tmpdir, "bk_1"):
                backups = discover_local_backups(tmpdir)

        assert backups[0].in_progress is True

    def test_missing_directory(self):
        """Test that a missing directory yields no backups."""
        assert discover_local_backups("/nonexistent/backups") == []

    def test_custom_lock_predicate(self):
        """Test injecting the in-progress check."""
        with tempfile.TemporaryDirectory() as tmpdir:
            save_manifest(_manifest("bk_1"), tmpdir)
            backups = discover_local_backups(tmpdir, is_locked=lambda backup_id: True)

        assert backups[0].in_progress is True
