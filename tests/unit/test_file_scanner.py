"""Tests for content tree scanning and component classification."""

import os
import tempfile
from pathlib import Path

import pytest

from site_vault.config import DEFAULT_SKIP_PATTERNS
from site_vault.file_scanner import (
    FileEntry,
    classify_component,
    component_sort_key,
    database_entries,
    scan_content_tree,
    should_skip,
)


def _write(root, relative, content="x"):
    path = Path(root) / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.mark.unit
class TestClassifyComponent:
    """Test component classification from archive paths."""

    @pytest.mark.parametrize(
        "relative_path,component",
        [
            ("database/site.sql.gz", "database"),
            ("dump.sql", "database"),
            ("wp-content/themes/twenty/style.css", "themes"),
            ("wp-content/plugins/akismet/akismet.php", "plugins"),
            ("wp-content/uploads/2025/03/photo.jpg", "uploads"),
            ("wp-content/mu-plugins/loader.php", "wp-content"),
            ("wp-config.php", "files"),
            ("/index.php", "files"),
        ],
    )
    def test_classification(self, relative_path, component):
        """Test each component bucket."""
        assert classify_component(relative_path) == component

    def test_explicit_component_wins(self):
        """Test that an explicit component overrides the path."""
        entry = FileEntry(Path("/x"), "wp-config.php", 1, component="database")
        assert entry.component_name == "database"

    def test_component_order(self):
        """Test restore-priority ordering with unknown names last."""
        names = ["files", "custom", "uploads", "database", "themes"]
        assert sorted(names, key=component_sort_key) == [
            "database",
            "themes",
            "uploads",
            "files",
            "custom",
        ]


@pytest.mark.unit
class TestShouldSkip:
    """Test skip pattern matching."""

    @pytest.mark.parametrize(
        "relative_path,skipped",
        [
            ("wp-content/cache/page.html", True),
            ("wp-content/cache/", True),
            ("logs/", True),
            ("wp-content/debug.log", True),
            (".git/HEAD", True),
            ("wp-content/uploads/catalog.pdf", False),
            ("wp-content/uploads/logs.txt", False),
            ("wp-content/themes/tmpl/index.php", False),
        ],
    )
    def test_default_patterns(self, relative_path, skipped):
        """Test the default exclusion list."""
        assert should_skip(relative_path, DEFAULT_SKIP_PATTERNS) is skipped

    def test_bare_pattern_matches_substring(self):
        """Test patterns without slash or leading dot."""
        assert should_skip("wp-content/backup-old.zip", ["backup-old"]) is True

    def test_no_patterns(self):
        """Test that nothing is skipped without patterns."""
        assert should_skip("wp-content/cache/x", []) is False


@pytest.mark.unit
class TestScanContentTree:
    """Test directory walking."""

    def test_scan_collects_sorted_entries(self):
        """Test that files are returned sorted with relative paths and sizes."""
        with tempfile.TemporaryDirectory() as tmpdir:
            _write(tmpdir, "wp-content/uploads/b.jpg", "bb")
            _write(tmpdir, "wp-content/themes/t/style.css", "css")
            _write(tmpdir, "index.php", "<?php")

            entries = scan_content_tree(tmpdir)

        assert [e.relative_path for e in entries] == [
            "index.php",
            "wp-content/themes/t/style.css",
            "wp-content/uploads/b.jpg",
        ]
        assert [e.size_bytes for e in entries] == [5, 3, 2]
        assert all(e.path.is_absolute() for e in entries)

    def test_scan_applies_skip_patterns(self):
        """Test that skipped directories and extensions are pruned."""
        with tempfile.TemporaryDirectory() as tmpdir:
            _write(tmpdir, "wp-content/cache/page.html")
            _write(tmpdir, "wp-content/debug.log")
            _write(tmpdir, "wp-content/uploads/keep.jpg")

            entries = scan_content_tree(tmpdir, skip_patterns=DEFAULT_SKIP_PATTERNS)

        assert [e.relative_path for e in entries] == ["wp-content/uploads/keep.jpg"]

    def test_scan_with_prefix(self):
        """Test that a prefix is prepended to archive paths."""
        with tempfile.TemporaryDirectory() as tmpdir:
            _write(tmpdir, "uploads/a.png")

            entries = scan_content_tree(tmpdir, prefix="/wp-content/")

        assert entries[0].relative_path == "wp-content/uploads/a.png"
        assert entries[0].component_name == "uploads"

    def test_scan_ignores_symlinks(self):
        """Test that symlinked files and directories are not followed."""
        with tempfile.TemporaryDirectory() as tmpdir, tempfile.TemporaryDirectory() as outside:
            _write(outside, "secret.txt")
            _write(tmpdir, "real.txt")
            os.symlink(Path(outside) / "secret.txt", Path(tmpdir) / "link.txt")
            os.symlink(outside, Path(tmpdir) / "linkdir")

            entries = scan_content_tree(tmpdir)

        assert [e.relative_path for e in entries] == ["real.txt"]

    def test_scan_missing_root(self):
        """Test that a missing root raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            scan_content_tree("/nonexistent/site-root")


@pytest.mark.unit
class TestDatabaseEntries:
    """Test database dump wrapping."""

    def test_dumps_are_database_component(self):
        """Test that dumps land under database/ with their size."""
        with tempfile.TemporaryDirectory() as tmpdir:
            dump = _write(tmpdir, "site.sql.gz", "dump")

            entries = database_entries([dump])

        assert entries[0].relative_path == "database/site.sql.gz"
        assert entries[0].component_name == "database"
        assert entries[0].size_bytes == 4
