"""Discover the files that make up a site backup.

Walks a content tree and yields ``FileEntry`` records in a stable order:
absolute source path, archive-internal path and size. Each entry is
classified into a backup component (database, themes, plugins, uploads,
wp-content, files) from its archive-internal path.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

COMPONENT_ORDER = ("database", "themes", "plugins", "uploads", "wp-content", "files")


@dataclass(frozen=True)
class FileEntry:
    """One source file scheduled for archiving.

    Attributes:
        path: Absolute path on local disk
        relative_path: Path inside the archive (POSIX separators)
        size_bytes: Size at scan time
        component: Explicit component; derived from relative_path when None
    """

    path: Path
    relative_path: str
    size_bytes: int
    component: Optional[str] = None

    @property
    def component_name(self) -> str:
        return self.component or classify_component(self.relative_path)


def classify_component(relative_path: str) -> str:
    """Map an archive-internal path to its backup component."""
    path = relative_path.lstrip("/")

    if path.startswith("database/") or path.endswith((".sql", ".sql.gz")):
        return "database"
    for name in ("themes", "plugins", "uploads"):
        if path.startswith(f"wp-content/{name}/"):
            return name
    if path.startswith("wp-content/"):
        return "wp-content"
    return "files"


def component_sort_key(name: str) -> tuple:
    """Order components by restore priority, unknown names last."""
    if name in COMPONENT_ORDER:
        return (COMPONENT_ORDER.index(name), name)
    return (len(COMPONENT_ORDER), name)


def should_skip(relative_path: str, skip_patterns: Sequence[str]) -> bool:
    """Check a path against skip patterns.

    Patterns containing a slash match anywhere in ``/<relative_path>/``;
    other patterns starting with a dot match the file extension.
    """
    probe = "/" + relative_path.strip("/") + "/"
    for pattern in skip_patterns:
        if "/" in pattern:
            if pattern in probe:
                return True
        elif pattern.startswith("."):
            if relative_path.endswith(pattern):
                return True
        elif pattern and pattern in relative_path:
            return True
    return False


def scan_content_tree(
    root: Union[str, Path],
    skip_patterns: Sequence[str] = (),
    prefix: str = "",
) -> List[FileEntry]:
    """Collect archivable files below ``root``.

    Symlinks are not followed. Files that cannot be stat'ed or read are
    logged and left out.

    Args:
        root: Directory to scan
        skip_patterns: Patterns excluding files and whole directories
        prefix: Archive-internal prefix (e.g. ``"wp-content"``)

    Returns:
        Entries sorted by archive-internal path

    Raises:
        FileNotFoundError: If root does not exist
    """
    root = Path(root).resolve()
    if not root.is_dir():
        raise FileNotFoundError(f"Content directory does not exist: {root}")

    prefix = prefix.strip("/")
    entries: List[FileEntry] = []

    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir

        kept_dirs = []
        for name in sorted(dirnames):
            rel = _join(prefix, rel_dir, name)
            if os.path.islink(os.path.join(dirpath, name)) or should_skip(rel + "/", skip_patterns):
                continue
            kept_dirs.append(name)
        dirnames[:] = kept_dirs

        for name in sorted(filenames):
            full_path = Path(dirpath) / name
            rel = _join(prefix, rel_dir, name)

            if full_path.is_symlink() or should_skip(rel, skip_patterns):
                continue

            try:
                size = full_path.stat().st_size
            except OSError as e:
                logger.warning(f"Skipping {rel}: {e}")
                continue

            if not os.access(full_path, os.R_OK):
                logger.warning(f"Skipping unreadable file {rel}")
                continue

            entries.append(FileEntry(path=full_path, relative_path=rel, size_bytes=size))

    entries.sort(key=lambda e: e.relative_path)
    logger.info(f"Scanned {len(entries)} files under {root}")
    return entries


def database_entries(dump_paths: Iterable[Union[str, Path]]) -> List[FileEntry]:
    """Wrap externally produced database dumps as database entries."""
    entries = []
    for dump in dump_paths:
        dump = Path(dump).resolve()
        entries.append(
            FileEntry(
                path=dump,
                relative_path=f"database/{dump.name}",
                size_bytes=dump.stat().st_size,
                component="database",
            )
        )
    return entries


def _join(*parts: str) -> str:
    return "/".join(p for p in parts if p)
