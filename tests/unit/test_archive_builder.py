"""Tests for splitting file sets into size-bounded archives."""

import random
import shutil
import tarfile
import tempfile
import zipfile
from pathlib import Path

import pytest

from site_vault.archive_builder import (
    ArchiveBuilder,
    Compressor,
    SystemTarCompressor,
    ZipCompressor,
    archive_name,
    check_compression,
    extract_archive,
    plan_parts,
    select_compressor,
    verify_archive,
)
from site_vault.config import MIB
from site_vault.exceptions import ArchiveError, CompressionUnavailableError
from site_vault.file_scanner import FileEntry
from site_vault.manifest import load_manifest

HAS_TAR = shutil.which("tar") is not None and shutil.which("gzip") is not None


class RecordingCompressor(Compressor):
    """Writes a small placeholder file and remembers each part."""

    name = "fast"
    extension = ".tar.gz"

    def __init__(self, available=True):
        self.available = available
        self.parts = []

    def is_available(self):
        return self.available

    def write(self, entries, archive_path):
        self.parts.append([e.relative_path for e in entries])
        archive_path.write_bytes(b"archive:" + str(len(entries)).encode())
        return list(entries)


class UnavailableCompressor(RecordingCompressor):
    name = "legacy"
    extension = ".zip"

    def __init__(self):
        super().__init__(available=False)


def _entry(relative_path, size_bytes, path="/dev/null"):
    return FileEntry(path=Path(path), relative_path=relative_path, size_bytes=size_bytes)


def _write(root, relative, content):
    path = Path(root) / "site" / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


@pytest.mark.unit
class TestPlanParts:
    """Test the split planning rule."""

    def test_files_below_split_share_a_part(self):
        """Test that small files are packed together."""
        parts = plan_parts([_entry("a", 10), _entry("b", 20), _entry("c", 30)], 100)
        assert [[e.relative_path for e in p] for p in parts] == [["a", "b", "c"]]

    def test_part_is_sealed_before_reaching_split(self):
        """Test that a part never reaches the split size."""
        parts = plan_parts([_entry("a", 60), _entry("b", 40), _entry("c", 10)], 100)
        assert [[e.relative_path for e in p] for p in parts] == [["a"], ["b", "c"]]

    def test_oversized_file_is_isolated(self):
        """Test that a file at or above the split size gets its own part."""
        parts = plan_parts([_entry("a", 10), _entry("big", 100), _entry("b", 10)], 100)
        assert [[e.relative_path for e in p] for p in parts] == [["a"], ["big"], ["b"]]

    def test_cumulative_size_bound_holds_for_random_sets(self):
        """Test the size bound over many generated file sets."""
        rng = random.Random(1234)
        for _ in range(200):
            split = rng.randint(1, 500)
            entries = [_entry(f"f{i}", rng.randint(0, 700)) for i in range(rng.randint(0, 40))]

            parts = plan_parts(entries, split)

            assert [e for p in parts for e in p] == entries
            for part in parts:
                total = sum(e.size_bytes for e in part)
                if len(part) == 1 and part[0].size_bytes >= split:
                    continue
                assert total < split

    def test_split_must_be_positive(self):
        """Test that a zero split size is rejected."""
        with pytest.raises(ValueError):
            plan_parts([_entry("a", 1)], 0)


@pytest.mark.unit
class TestCompressorSelection:
    """Test the compression capability checker."""

    def test_preferred_compressor_is_used(self):
        """Test that an available preferred mode wins."""
        fast = RecordingCompressor()
        assert select_compressor("fast", {"fast": fast, "legacy": ZipCompressor()}) is fast

    def test_falls_back_when_preferred_is_missing(self):
        """Test fallback to the other mode."""
        legacy = ZipCompressor()
        compressors = {"fast": RecordingCompressor(available=False), "legacy": legacy}
        assert select_compressor("fast", compressors) is legacy

    def test_no_capability_raises(self):
        """Test that a host without any compressor fails fatally."""
        compressors = {
            "fast": RecordingCompressor(available=False),
            "legacy": UnavailableCompressor(),
        }
        with pytest.raises(CompressionUnavailableError):
            select_compressor("fast", compressors)

    def test_check_compression_reports_each_mode(self):
        """Test the availability report."""
        report = check_compression(
            {"fast": RecordingCompressor(), "legacy": UnavailableCompressor()}
        )
        assert report == {"fast": True, "legacy": False}

    def test_archive_names(self):
        """Test the first and later part names."""
        assert archive_name("uploads", "bk", 1, ".zip") == "uploads-bk.zip"
        assert archive_name("uploads", "bk", 2, ".zip") == "uploads-bk-part002.zip"


@pytest.mark.unit
class TestArchiveBuilder:
    """Test building archives and the working manifest."""

    def test_350mb_full_backup_yields_two_parts(self):
        """Test a 50 MB database plus a 320 MB uploads file at a 200 MB split."""
        compressor = RecordingCompressor()
        entries = [
            _entry("database/site.sql", 50 * MIB),
            _entry("wp-content/uploads/video.mp4", 320 * MIB),
        ]

        with tempfile.TemporaryDirectory() as tmpdir:
            builder = ArchiveBuilder(tmpdir, compressors={"fast": compressor})
            result = builder.build(entries, backup_id="bk_350", split_size_bytes=200 * MIB)

            assert [a.relative_path for a in result.archives] == [
                "database-bk_350.tar.gz",
                "uploads-bk_350.tar.gz",
            ]
            assert compressor.parts == [["database/site.sql"], ["wp-content/uploads/video.mp4"]]
            assert result.archives[1].source_bytes == 320 * MIB
            assert result.manifest_path.exists()

    def test_components_are_packed_separately_in_priority_order(self):
        """Test per-component grouping and ordering."""
        compressor = RecordingCompressor()
        entries = [
            _entry("index.php", 1),
            _entry("wp-content/uploads/a.jpg", 1),
            _entry("wp-content/themes/t/style.css", 1),
            _entry("wp-content/plugins/p/p.php", 1),
        ]

        with tempfile.TemporaryDirectory() as tmpdir:
            result = ArchiveBuilder(tmpdir, compressors={"fast": compressor}).build(
                entries, backup_id="bk_1"
            )

        assert [a.component for a in result.archives] == ["themes", "plugins", "uploads", "files"]
        assert [c.name for c in result.manifest.components] == [
            "themes",
            "plugins",
            "uploads",
            "files",
        ]
        assert result.manifest.finalized is False

    def test_parts_within_a_component_are_numbered(self):
        """Test -partNNN suffixes when a component spans several archives."""
        compressor = RecordingCompressor()
        entries = [_entry(f"wp-content/uploads/{i}.jpg", 60) for i in range(5)]

        with tempfile.TemporaryDirectory() as tmpdir:
            result = ArchiveBuilder(tmpdir, compressors={"fast": compressor}).build(
                entries, backup_id="bk_2", split_size_bytes=100
            )

        assert [a.relative_path for a in result.archives] == [
            "uploads-bk_2.tar.gz",
            "uploads-bk_2-part002.tar.gz",
            "uploads-bk_2-part003.tar.gz",
            "uploads-bk_2-part004.tar.gz",
            "uploads-bk_2-part005.tar.gz",
        ]
        assert [a.sequence_number for a in result.archives] == [1, 2, 3, 4, 5]

    def test_tuples_are_accepted(self):
        """Test (path, relative_path, size) file specs."""
        compressor = RecordingCompressor()

        with tempfile.TemporaryDirectory() as tmpdir:
            result = ArchiveBuilder(tmpdir, compressors={"fast": compressor}).build(
                [("/dev/null", "wp-content/uploads/x.bin", 7)], backup_id="bk_3"
            )

        assert result.archives[0].component == "uploads"
        assert result.archives[0].source_bytes == 7

    def test_gzipped_dump_is_stored_as_is(self):
        """Test that .sql.gz dumps are copied rather than re-archived."""
        compressor = RecordingCompressor()

        with tempfile.TemporaryDirectory() as tmpdir:
            dump = Path(tmpdir) / "site.sql.gz"
            dump.write_bytes(b"\x1f\x8bdump")
            entry = FileEntry(dump, "database/site.sql.gz", 6, component="database")

            result = ArchiveBuilder(Path(tmpdir) / "work", compressors={"fast": compressor}).build(
                [entry], backup_id="bk_4"
            )

            assert result.archives[0].relative_path == "database-bk_4.sql.gz"
            assert result.archives[0].path.read_bytes() == b"\x1f\x8bdump"
            assert result.archives[0].extension == "sql.gz"
            assert compressor.parts == []

    def test_nothing_archived_raises(self):
        """Test that a build with no readable files fails."""
        with tempfile.TemporaryDirectory() as tmpdir:
            builder = ArchiveBuilder(tmpdir, compression="legacy")
            with pytest.raises(ArchiveError, match="No files could be archived"):
                builder.build([_entry("a.txt", 3, path=f"{tmpdir}/missing.txt")], backup_id="bk")

    def test_zip_build_skips_unreadable_files(self):
        """Test a partial-success legacy build."""
        with tempfile.TemporaryDirectory() as tmpdir:
            good = _write(tmpdir, "wp-content/uploads/a.txt", b"hello")
            entries = [
                FileEntry(good, "wp-content/uploads/a.txt", 5),
                FileEntry(Path(tmpdir) / "gone.txt", "wp-content/uploads/gone.txt", 5),
            ]

            result = ArchiveBuilder(Path(tmpdir) / "work", compression="legacy").build(
                entries, backup_id="bk_5"
            )

            assert result.compression == "legacy"
            assert result.skipped == ["wp-content/uploads/gone.txt"]
            with zipfile.ZipFile(result.archives[0].path) as zf:
                assert zf.namelist() == ["wp-content/uploads/a.txt"]
            assert load_manifest(result.manifest_path).compression == "legacy"

    @pytest.mark.skipif(not HAS_TAR, reason="tar and gzip are not installed")
    def test_tar_build_round_trip(self):
        """Test that the fast mode produces an extractable tar.gz."""
        with tempfile.TemporaryDirectory() as tmpdir:
            a = _write(tmpdir, "wp-content/themes/t/style.css", b"body{}")
            b = _write(tmpdir, "wp-content/themes/t/with space.php", b"<?php")
            entries = [
                FileEntry(a, "wp-content/themes/t/style.css", 6),
                FileEntry(b, "wp-content/themes/t/with space.php", 5),
            ]

            result = ArchiveBuilder(Path(tmpdir) / "work", compression="fast").build(
                entries, backup_id="bk_6"
            )
            archive = result.archives[0].path

            assert archive.name == "themes-bk_6.tar.gz"
            with tarfile.open(archive, "r:gz") as tar:
                assert sorted(tar.getnames()) == [
                    "wp-content/themes/t/style.css",
                    "wp-content/themes/t/with space.php",
                ]
            assert verify_archive(archive)["valid"] is True
            assert not list((Path(tmpdir) / "work").glob(".stage-*"))


@pytest.mark.unit
class TestVerifyAndExtract:
    """Test archive verification and extraction."""

    def test_verify_valid_zip(self):
        """Test that a good ZIP verifies."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "files-bk.zip"
            with zipfile.ZipFile(path, "w") as zf:
                zf.writestr("index.php", "<?php")

            result = verify_archive(path)

        assert result["valid"] is True
        assert result["file_count"] == 1
        assert result["errors"] == []

    def test_verify_corrupt_archive(self):
        """Test that garbage fails verification."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "files-bk.tar.gz"
            path.write_bytes(b"not an archive")

            result = verify_archive(path)

        assert result["valid"] is False
        assert result["errors"]

    def test_verify_missing_archive(self):
        """Test that a missing archive raises."""
        with pytest.raises(FileNotFoundError):
            verify_archive("/nonexistent/files-bk.zip")

    def test_extract_zip(self):
        """Test extracting a ZIP archive."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "files-bk.zip"
            with zipfile.ZipFile(path, "w") as zf:
                zf.writestr("wp-content/uploads/a.txt", "hello")

            names = extract_archive(path, Path(tmpdir) / "out")

            assert names == ["wp-content/uploads/a.txt"]
            assert (Path(tmpdir) / "out/wp-content/uploads/a.txt").read_text() == "hello"

    def test_extract_rejects_zip_traversal(self):
        """Test that members escaping the destination are refused."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "evil.zip"
            with zipfile.ZipFile(path, "w") as zf:
                zf.writestr("../escape.txt", "x")

            with pytest.raises(ArchiveError, match="Unsafe path"):
                extract_archive(path, Path(tmpdir) / "out")

            assert not (Path(tmpdir) / "escape.txt").exists()

    def test_extract_tar_gz(self):
        """Test extracting a tar.gz archive."""
        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "style.css"
            source.write_text("body{}")
            path = Path(tmpdir) / "themes-bk.tar.gz"
            with tarfile.open(path, "w:gz") as tar:
                tar.add(source, arcname="wp-content/themes/t/style.css")

            names = extract_archive(path, Path(tmpdir) / "out")

            assert names == ["wp-content/themes/t/style.css"]
            assert (Path(tmpdir) / "out/wp-content/themes/t/style.css").read_text() == "body{}"

    def test_extract_rejects_tar_traversal(self):
        """Test that tar members escaping the destination are refused."""
        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "payload.txt"
            source.write_text("x")
            path = Path(tmpdir) / "evil.tar.gz"
            with tarfile.open(path, "w:gz") as tar:
                tar.add(source, arcname="../escape.txt")

            with pytest.raises(ArchiveError, match="Unsafe path"):
                extract_archive(path, Path(tmpdir) / "out")

            assert not (Path(tmpdir) / "escape.txt").exists()

    def test_extract_rejects_escaping_symlink(self):
        """Test that links pointing outside the destination are refused."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "links.tar.gz"
            with tarfile.open(path, "w:gz") as tar:
                link = tarfile.TarInfo("wp-content/uploads/passwd")
                link.type = tarfile.SYMTYPE
                link.linkname = "../../../../etc/passwd"
                tar.addfile(link)

            with pytest.raises(ArchiveError, match="Unsafe path"):
                extract_archive(path, Path(tmpdir) / "out")

            assert not (Path(tmpdir) / "out/wp-content/uploads/passwd").exists()

    def test_system_tar_compressor_name(self):
        """Test the fast compressor identity."""
        assert SystemTarCompressor.name == "fast"
        assert SystemTarCompressor.extension == ".tar.gz"
