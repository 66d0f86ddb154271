"""Split a file set into size-bounded archives.

Each backup component is packed on its own. Files are appended to the
current archive until the next one would bring the cumulative source
size to the split size; the archive is then sealed and a new part
(``-part002``, ``-part003``, ...) is opened. A file that alone reaches
the split size is written whole into its own archive.

Two compressors satisfy the same contract:

- ``fast``: the system ``tar`` and ``gzip`` tools, producing ``.tar.gz``
- ``legacy``: in-process ``zipfile`` (zlib), producing ``.zip``

The configured compressor is tried first and the other one is used when
the preferred capability is missing on this host.
"""

import gzip
import importlib.util
import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from site_vault.config import DEFAULT_SPLIT_SIZE_MB, MIB
from site_vault.exceptions import ArchiveError, CompressionUnavailableError
from site_vault.file_scanner import FileEntry, component_sort_key
from site_vault.logging_config import log_context
from site_vault.manifest import BackupManifest, save_manifest, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SPLIT_SIZE_BYTES = DEFAULT_SPLIT_SIZE_MB * MIB

FileSpec = Union[FileEntry, Tuple[Any, str, int]]


@dataclass
class ArchiveChunk:
    """One sealed archive file on local disk.

    Attributes:
        path: Absolute path of the archive
        relative_path: Archive filename inside the work directory
        size_bytes: Size of the archive file
        sequence_number: 1-based part number within its component
        component: Component the archive belongs to
        file_count: Number of source files inside
        source_bytes: Cumulative size of those source files
        remote_key: Destination key, set once uploaded
    """

    path: Path
    relative_path: str
    size_bytes: int
    sequence_number: int
    component: str
    file_count: int = 0
    source_bytes: int = 0
    remote_key: Optional[str] = None

    @property
    def extension(self) -> str:
        name = self.path.name
        for ext in (".tar.gz", ".sql.gz", ".zip"):
            if name.endswith(ext):
                return ext.lstrip(".")
        return self.path.suffix.lstrip(".")


@dataclass
class BuildResult:
    """Archives and manifest produced by one build."""

    archives: List[ArchiveChunk]
    manifest: BackupManifest
    manifest_path: Path
    compression: str
    skipped: List[str] = field(default_factory=list)


class Compressor(ABC):
    """Writes a group of files into one archive."""

    name = ""
    extension = ""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether this host has the capability the compressor needs."""

    @abstractmethod
    def write(self, entries: Sequence[FileEntry], archive_path: Path) -> List[FileEntry]:
        """Write ``entries`` into ``archive_path``.

        Returns:
            The entries actually written; unreadable files are left out

        Raises:
            ArchiveError: If the archive itself cannot be produced
        """


def _readable(entries: Sequence[FileEntry]) -> List[FileEntry]:
    readable = []
    for entry in entries:
        if os.path.isfile(entry.path) and os.access(entry.path, os.R_OK):
            readable.append(entry)
        else:
            logger.warning(f"Skipping unreadable file {entry.relative_path}")
    return readable


class SystemTarCompressor(Compressor):
    """tar + gzip through the platform tools."""

    name = "fast"
    extension = ".tar.gz"

    def is_available(self) -> bool:
        return shutil.which("tar") is not None and shutil.which("gzip") is not None

    def write(self, entries: Sequence[FileEntry], archive_path: Path) -> List[FileEntry]:
        readable = _readable(entries)
        if not readable:
            return []

        tar_path = archive_path.with_name(archive_path.name[: -len(".gz")])

        with tempfile.TemporaryDirectory(dir=archive_path.parent, prefix=".stage-") as stage:
            # Lay the archive-internal paths out as symlinks, dereferenced by tar -h.
            stage_dir = Path(stage) / "tree"
            for entry in readable:
                link = stage_dir / entry.relative_path.lstrip("/")
                link.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(os.path.abspath(entry.path), link)

            list_file = Path(stage) / "files.lst"
            list_file.write_bytes(
                b"".join(e.relative_path.lstrip("/").encode("utf-8") + b"\0" for e in readable)
            )

            self._run(
                ["tar", "--null", "-chf", str(tar_path), "-C", str(stage_dir), "-T", str(list_file)]
            )

        self._run(["gzip", "-f", str(tar_path)])
        return readable

    @staticmethod
    def _run(command: List[str]) -> None:
        logger.debug(f"Running {' '.join(command[:3])} ...")
        result = subprocess.run(command, capture_output=True, text=True)
        if result.returncode != 0:
            raise ArchiveError(
                f"{command[0]} failed with exit code {result.returncode}: {result.stderr.strip()}",
                exit_code=result.returncode,
            )


class ZipCompressor(Compressor):
    """Pure in-process ZIP writer."""

    name = "legacy"
    extension = ".zip"

    def is_available(self) -> bool:
        return importlib.util.find_spec("zlib") is not None

    def write(self, entries: Sequence[FileEntry], archive_path: Path) -> List[FileEntry]:
        written: List[FileEntry] = []
        try:
            with zipfile.ZipFile(
                archive_path, "w", compression=zipfile.ZIP_DEFLATED, allowZip64=True
            ) as zf:
                for entry in _readable(entries):
                    try:
                        zf.write(entry.path, arcname=entry.relative_path.lstrip("/"))
                    except OSError as e:
                        logger.warning(f"Skipping {entry.relative_path}: {e}")
                        continue
                    written.append(entry)
        except (OSError, zipfile.LargeZipFile) as e:
            raise ArchiveError(f"Failed to write {archive_path.name}: {e}") from e
        return written


COMPRESSORS: Dict[str, Compressor] = {
    SystemTarCompressor.name: SystemTarCompressor(),
    ZipCompressor.name: ZipCompressor(),
}


def check_compression(compressors: Optional[Dict[str, Compressor]] = None) -> Dict[str, bool]:
    """Report which compression modes this host supports."""
    compressors = compressors if compressors is not None else COMPRESSORS
    return {name: compressor.is_available() for name, compressor in compressors.items()}


def select_compressor(
    preferred: str = "fast",
    compressors: Optional[Dict[str, Compressor]] = None,
) -> Compressor:
    """Pick the preferred compressor, falling back to any available one.

    Raises:
        CompressionUnavailableError: If no compressor is usable
    """
    compressors = compressors if compressors is not None else COMPRESSORS

    order = [preferred] + sorted(name for name in compressors if name != preferred)
    for name in order:
        compressor = compressors.get(name)
        if compressor is not None and compressor.is_available():
            if name != preferred:
                logger.info(f"Compression mode '{preferred}' unavailable, using '{name}'")
            return compressor

    raise CompressionUnavailableError(
        "No compression capability available (need tar+gzip or zlib)",
        preferred=preferred,
    )


def plan_parts(entries: Sequence[FileEntry], split_size_bytes: int) -> List[List[FileEntry]]:
    """Group entries into parts whose cumulative size stays below the split size.

    A file of at least ``split_size_bytes`` always gets a part of its own.
    """
    if split_size_bytes <= 0:
        raise ValueError("split_size_bytes must be positive")

    parts: List[List[FileEntry]] = []
    current: List[FileEntry] = []
    current_size = 0

    for entry in entries:
        if current and current_size + entry.size_bytes >= split_size_bytes:
            parts.append(current)
            current, current_size = [], 0

        if entry.size_bytes >= split_size_bytes:
            parts.append([entry])
            continue

        current.append(entry)
        current_size += entry.size_bytes

    if current:
        parts.append(current)
    return parts


def archive_name(component: str, backup_id: str, sequence: int, extension: str) -> str:
    """``{component}-{backup_id}[-partNNN]{extension}``"""
    suffix = "" if sequence == 1 else f"-part{sequence:03d}"
    return f"{component}-{backup_id}{suffix}{extension}"


class ArchiveBuilder:
    """Packs a file set into component archives inside a work directory."""

    def __init__(
        self,
        work_dir: Union[str, Path],
        compression: str = "fast",
        compressors: Optional[Dict[str, Compressor]] = None,
    ):
        self.work_dir = Path(work_dir)
        self.compression = compression
        self.compressors = compressors if compressors is not None else COMPRESSORS

    def build(
        self,
        file_set: Iterable[FileSpec],
        backup_id: str,
        split_size_bytes: int = DEFAULT_SPLIT_SIZE_BYTES,
        backup_type: str = "full",
        created_at: Optional[datetime] = None,
    ) -> BuildResult:
        """Write archives and a manifest for one backup.

        Args:
            file_set: Ordered FileEntry objects or (path, relative_path, size) tuples
            backup_id: Identifier used in archive names and the manifest
            split_size_bytes: Size at which an archive is sealed
            backup_type: full, files, database or incremental
            created_at: Backup timestamp (defaults to now)

        Returns:
            BuildResult with the sealed archives and the saved manifest

        Raises:
            CompressionUnavailableError: If no compressor can run here
            ArchiveError: If no file at all could be archived
        """
        if split_size_bytes <= 0:
            raise ValueError("split_size_bytes must be positive")

        compressor = select_compressor(self.compression, self.compressors)
        self.work_dir.mkdir(parents=True, exist_ok=True)

        entries = [self._to_entry(spec) for spec in file_set]
        by_component: Dict[str, List[FileEntry]] = {}
        for entry in entries:
            by_component.setdefault(entry.component_name, []).append(entry)

        manifest = BackupManifest(
            backup_id=backup_id,
            backup_type=backup_type,
            created_at=created_at or utcnow(),
            compression=compressor.name,
        )
        archives: List[ArchiveChunk] = []
        archived_ids = set()

        for component in sorted(by_component, key=component_sort_key):
            with log_context(backup_id=backup_id, component=component):
                chunks = self._build_component(
                    component, by_component[component], backup_id, split_size_bytes, compressor
                )
            for chunk, written in chunks:
                manifest.add_archive(component, chunk.relative_path, chunk.size_bytes)
                archived_ids.update(id(e) for e in written)
                archives.append(chunk)

        if not archives:
            raise ArchiveError(
                f"No files could be archived for backup {backup_id}", backup_id=backup_id
            )

        skipped = [e.relative_path for e in entries if id(e) not in archived_ids]
        manifest_path = save_manifest(manifest, self.work_dir)
        logger.info(
            f"Built {len(archives)} archive(s) for backup {backup_id} "
            f"({manifest.total_size_bytes} bytes, {len(skipped)} skipped)"
        )

        return BuildResult(
            archives=archives,
            manifest=manifest,
            manifest_path=manifest_path,
            compression=compressor.name,
            skipped=skipped,
        )

    def _build_component(
        self,
        component: str,
        entries: List[FileEntry],
        backup_id: str,
        split_size_bytes: int,
        compressor: Compressor,
    ) -> List[Tuple[ArchiveChunk, List[FileEntry]]]:
        chunks: List[Tuple[ArchiveChunk, List[FileEntry]]] = []

        # Gzipped database dumps are kept as they are.
        if component == "database":
            for entry in [e for e in entries if e.relative_path.endswith(".sql.gz")]:
                sequence = len(chunks) + 1
                target = self.work_dir / archive_name(component, backup_id, sequence, ".sql.gz")
                try:
                    shutil.copyfile(entry.path, target)
                except OSError as e:
                    logger.warning(f"Skipping database dump {entry.relative_path}: {e}")
                    continue
                chunks.append((self._chunk(target, sequence, component, [entry]), [entry]))
            entries = [e for e in entries if not e.relative_path.endswith(".sql.gz")]

        for part in plan_parts(entries, split_size_bytes):
            sequence = len(chunks) + 1
            target = self.work_dir / archive_name(
                component, backup_id, sequence, compressor.extension
            )
            written = compressor.write(part, target)
            if not written:
                if target.exists():
                    target.unlink()
                continue
            chunk = self._chunk(target, sequence, component, written)
            chunks.append((chunk, written))
            logger.info(f"Sealed {target.name} ({len(written)} files, {chunk.size_bytes} bytes)")

        return chunks

    @staticmethod
    def _chunk(
        path: Path, sequence: int, component: str, entries: List[FileEntry]
    ) -> ArchiveChunk:
        return ArchiveChunk(
            path=path.resolve(),
            relative_path=path.name,
            size_bytes=path.stat().st_size,
            sequence_number=sequence,
            component=component,
            file_count=len(entries),
            source_bytes=sum(e.size_bytes for e in entries),
        )

    @staticmethod
    def _to_entry(spec: FileSpec) -> FileEntry:
        if isinstance(spec, FileEntry):
            return spec
        path, relative_path, size_bytes = spec
        return FileEntry(
            path=Path(path), relative_path=str(relative_path), size_bytes=int(size_bytes)
        )


def verify_archive(archive_path: Union[str, Path]) -> Dict[str, Any]:
    """Read an archive end to end and report whether it is intact.

    Args:
        archive_path: A ``.tar.gz``, ``.zip`` or ``.sql.gz`` file

    Returns:
        Dictionary containing:
            - valid: bool indicating the archive decompressed cleanly
            - errors: List of error messages (empty if valid)
            - file_count: Number of members read
            - archive_path: str path to the archive

    Raises:
        FileNotFoundError: If archive_path does not exist
    """
    path = Path(archive_path)
    if not path.exists():
        raise FileNotFoundError(f"Archive file does not exist: {archive_path}")

    errors: List[str] = []
    file_count = 0

    try:
        if path.name.endswith(".zip"):
            with zipfile.ZipFile(path) as zf:
                bad_member = zf.testzip()
                if bad_member is not None:
                    errors.append(f"CRC mismatch in {bad_member}")
                file_count = len(zf.infolist())
        elif path.name.endswith(".sql.gz"):
            with gzip.open(path, "rb") as f:
                for _ in iter(lambda: f.read(65536), b""):
                    pass
            file_count = 1
        else:
            with tarfile.open(path, "r:gz") as tar:
                for member in tar:
                    if member.isfile():
                        extracted = tar.extractfile(member)
                        if extracted is not None:
                            for _ in iter(lambda: extracted.read(65536), b""):
                                pass
                    file_count += 1
    except (tarfile.TarError, zipfile.BadZipFile, OSError, EOFError) as e:
        errors.append(f"Failed to read archive: {e}")

    return {
        "valid": not errors,
        "errors": errors,
        "file_count": file_count,
        "archive_path": str(path),
    }


def extract_archive(archive_path: Union[str, Path], output_path: Union[str, Path]) -> List[str]:
    """Extract an archive produced by ArchiveBuilder.

    Members that would land outside ``output_path`` are rejected.

    Returns:
        Archive-internal names of the extracted members

    Raises:
        FileNotFoundError: If archive_path does not exist
        ArchiveError: If the archive is unreadable or unsafe
    """
    path = Path(archive_path)
    if not path.exists():
        raise FileNotFoundError(f"Archive file does not exist: {archive_path}")

    destination = Path(output_path)
    destination.mkdir(parents=True, exist_ok=True)
    root = destination.resolve()

    try:
        if path.name.endswith(".zip"):
            with zipfile.ZipFile(path) as zf:
                names = zf.namelist()
                for name in names:
                    _check_member_path(root, name)
                zf.extractall(destination)
            return names

        if path.name.endswith(".sql.gz"):
            target = destination / path.name[: -len(".gz")]
            with gzip.open(path, "rb") as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
            return [target.name]

        with tarfile.open(path, "r:gz") as tar:
            members = tar.getmembers()
            for member in members:
                _check_tar_member(root, member)
            if hasattr(tarfile, "data_filter"):
                tar.extractall(destination, members=members, filter="data")
            else:
                tar.extractall(destination, members=members)
        return [m.name for m in members]
    except (tarfile.TarError, zipfile.BadZipFile, OSError, EOFError) as e:
        raise ArchiveError(f"Failed to extract {path.name}: {e}") from e


def _check_member_path(root: Path, name: str) -> None:
    target = (root / name).resolve()
    if target != root and root not in target.parents:
        raise ArchiveError(f"Unsafe path in archive: {name}", member=name)


def _check_tar_member(root: Path, member: tarfile.TarInfo) -> None:
    _check_member_path(root, member.name)
    if member.isdev():
        raise ArchiveError(f"Device file in archive: {member.name}", member=member.name)
    if member.issym():
        if Path(member.linkname).is_absolute():
            raise ArchiveError(f"Unsafe link in archive: {member.name}", member=member.name)
        _check_member_path(root, str(Path(member.name).parent / member.linkname))
    elif member.islnk():
        _check_member_path(root, member.linkname)
