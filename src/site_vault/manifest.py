"""Backup manifest model and codec.

A manifest describes one backup attempt: its identity, its components
and the archives each component consists of. Two JSON shapes exist on
disk. Older installs wrote ``components`` as a mapping of component name
to a list of archive filenames (or ``{"filename": ...}`` objects); the
current shape is a list of ``{"name", "archives", "total_size"}``
objects. ``decode`` accepts both and always returns the normalized
in-memory model; ``encode`` only ever writes the current shape.
"""

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from site_vault.exceptions import ManifestCorruptError, ManifestFinalizedError

logger = logging.getLogger(__name__)

CONVENTIONAL_COMPONENTS = ("database", "themes", "plugins", "uploads", "wp-content")
BACKUP_TYPES = ("full", "files", "database", "incremental")

MANIFEST_FILENAME_PATTERN = re.compile(r"^backup-(?P<backup_id>.+)-manifest\.json$")
_SAFE_BACKUP_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def manifest_filename(backup_id: str) -> str:
    """Local manifest filename for a backup."""
    return f"backup-{backup_id}-manifest.json"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601, ``YYYY-MM-DD HH:MM:SS`` or epoch timestamp.

    Naive values are taken as UTC.

    Returns:
        Timezone-aware datetime, or None if the value is empty or unparsable
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Component:
    """A named part of a backup and the archives that hold it."""

    name: str
    archives: List[str] = field(default_factory=list)
    total_size_bytes: Optional[int] = None


@dataclass
class ManifestFile:
    """One archive file belonging to a backup."""

    filename: str
    size_bytes: int
    component: Optional[str] = None
    remote_key: Optional[str] = None


@dataclass
class BackupManifest:
    """Normalized in-memory manifest.

    Once ``finalize()`` has been called the manifest is frozen: every
    mutator raises ``ManifestFinalizedError``.
    """

    backup_id: str
    backup_type: str = "full"
    created_at: datetime = field(default_factory=utcnow)
    components: List[Component] = field(default_factory=list)
    files: List[ManifestFile] = field(default_factory=list)
    total_size_bytes: int = 0
    compression: Optional[str] = None
    finalized: bool = False

    def __post_init__(self) -> None:
        if self.created_at.tzinfo is None:
            self.created_at = self.created_at.replace(tzinfo=timezone.utc)

    def _ensure_mutable(self) -> None:
        if self.finalized:
            raise ManifestFinalizedError(
                f"Manifest for backup {self.backup_id} is finalized; "
                "record corrections under a new backup_id",
                backup_id=self.backup_id,
            )

    def component(self, name: str) -> Optional[Component]:
        for component in self.components:
            if component.name == name:
                return component
        return None

    def add_archive(self, component_name: str, filename: str, size_bytes: int) -> None:
        """Record one archive file under a component, creating it if needed."""
        self._ensure_mutable()

        component = self.component(component_name)
        if component is None:
            component = Component(name=component_name, total_size_bytes=0)
            self.components.append(component)

        component.archives.append(filename)
        component.total_size_bytes = (component.total_size_bytes or 0) + size_bytes
        self.files.append(ManifestFile(filename, size_bytes, component=component_name))
        self.total_size_bytes += size_bytes

    def set_remote_key(self, filename: str, remote_key: str) -> None:
        """Attach the remote key assigned to an uploaded archive."""
        self._ensure_mutable()

        for entry in self.files:
            if entry.filename == filename:
                entry.remote_key = remote_key
                return
        raise KeyError(f"No archive named {filename} in backup {self.backup_id}")

    def finalize(self) -> "BackupManifest":
        """Prune empty components and freeze the manifest."""
        self._ensure_mutable()
        self.components = [c for c in self.components if c.archives]
        self.finalized = True
        return self


def encode(manifest: BackupManifest) -> Dict[str, Any]:
    """Serialize a manifest into the current JSON shape.

    Components without archives are omitted.
    """
    components: List[Dict[str, Any]] = []
    for component in manifest.components:
        if not component.archives:
            continue
        entry: Dict[str, Any] = {"name": component.name, "archives": list(component.archives)}
        if component.total_size_bytes is not None:
            entry["total_size"] = component.total_size_bytes
        components.append(entry)

    files: List[Dict[str, Any]] = []
    for item in manifest.files:
        file_entry: Dict[str, Any] = {"filename": item.filename, "size": item.size_bytes}
        if item.component is not None:
            file_entry["component"] = item.component
        if item.remote_key is not None:
            file_entry["remote_key"] = item.remote_key
        files.append(file_entry)

    raw: Dict[str, Any] = {
        "backup_id": manifest.backup_id,
        "backup_type": manifest.backup_type,
        "created_at": manifest.created_at.isoformat(),
        "total_size": manifest.total_size_bytes,
        "components": components,
        "files": files,
        "finalized": manifest.finalized,
    }
    if manifest.compression is not None:
        raw["compression"] = manifest.compression
    return raw


def dumps(manifest: BackupManifest) -> str:
    return json.dumps(encode(manifest), indent=2)


def is_legacy_shape(components: Any) -> bool:
    """Legacy manifests map conventional component names to file lists."""
    return isinstance(components, Mapping) and any(
        name in components for name in CONVENTIONAL_COMPONENTS
    )


def _legacy_archive_name(reference: Any) -> Optional[str]:
    if isinstance(reference, str):
        return reference or None
    if isinstance(reference, Mapping):
        filename = reference.get("filename")
        return str(filename) if filename else None
    return None


def _decode_legacy_components(components: Mapping[str, Any]) -> List[Component]:
    decoded: List[Component] = []
    for name, references in components.items():
        if isinstance(references, (str, Mapping)):
            references = [references]
        if not isinstance(references, list):
            continue

        archives = [a for a in (_legacy_archive_name(r) for r in references) if a]
        if archives:
            decoded.append(Component(name=str(name), archives=archives))
    return decoded


def _decode_current_components(components: Any) -> List[Component]:
    if isinstance(components, Mapping):
        components = list(components.values())
    if not isinstance(components, list):
        return []

    decoded: List[Component] = []
    for entry in components:
        if not isinstance(entry, Mapping) or not entry.get("name"):
            logger.warning(f"Dropping malformed manifest component: {entry!r}")
            continue

        archives = [str(a) for a in entry.get("archives") or [] if a]
        if not archives:
            continue

        total = entry.get("total_size", entry.get("total_size_bytes"))
        decoded.append(
            Component(
                name=str(entry["name"]),
                archives=archives,
                total_size_bytes=int(total) if total is not None else None,
            )
        )
    return decoded


def _decode_files(files: Any) -> List[ManifestFile]:
    if not isinstance(files, list):
        return []

    decoded: List[ManifestFile] = []
    for entry in files:
        if isinstance(entry, str):
            decoded.append(ManifestFile(filename=entry, size_bytes=0))
            continue
        if not isinstance(entry, Mapping) or not entry.get("filename"):
            continue
        decoded.append(
            ManifestFile(
                filename=str(entry["filename"]),
                size_bytes=int(entry.get("size", entry.get("size_bytes")) or 0),
                component=entry.get("component"),
                remote_key=entry.get("remote_key"),
            )
        )
    return decoded


def decode(raw: Union[str, bytes, Mapping[str, Any]]) -> BackupManifest:
    """Decode a manifest in either historical shape.

    Args:
        raw: JSON text or an already-parsed mapping

    Returns:
        Normalized manifest

    Raises:
        ManifestCorruptError: If the document is not a usable manifest
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ManifestCorruptError(f"Manifest is not valid JSON: {e}") from e

    if not isinstance(raw, Mapping):
        raise ManifestCorruptError("Manifest root must be an object")

    backup_id = raw.get("backup_id")
    if not backup_id:
        raise ManifestCorruptError("Manifest has no backup_id")

    created_at = parse_timestamp(raw.get("created_at"))
    if created_at is None:
        raise ManifestCorruptError(
            f"Manifest {backup_id} has a missing or invalid created_at",
            backup_id=str(backup_id),
        )

    components = raw.get("components")
    try:
        if is_legacy_shape(components):
            decoded_components = _decode_legacy_components(components)
        else:
            decoded_components = _decode_current_components(components)
        files = _decode_files(raw.get("files"))
        total = int(raw.get("total_size", raw.get("total_size_bytes")) or 0)
    except (TypeError, ValueError) as e:
        raise ManifestCorruptError(
            f"Manifest {backup_id} has malformed fields: {e}", backup_id=str(backup_id)
        ) from e

    return BackupManifest(
        backup_id=str(backup_id),
        backup_type=str(raw.get("backup_type") or "full"),
        created_at=created_at,
        components=decoded_components,
        files=files,
        total_size_bytes=total,
        compression=raw.get("compression"),
        finalized=bool(raw.get("finalized", False)),
    )


def load_manifest(path: Union[str, Path]) -> BackupManifest:
    """Read and decode a manifest file.

    Raises:
        ManifestCorruptError: If the file cannot be read or decoded
    """
    try:
        content = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestCorruptError(f"Cannot read manifest {path}: {e}") from e
    return decode(content)


def save_manifest(manifest: BackupManifest, directory: Union[str, Path]) -> Path:
    """Write ``backup-{backup_id}-manifest.json`` into ``directory``.

    The file is replaced atomically. A finalized manifest already on
    disk is never overwritten.

    Returns:
        Path of the written manifest

    Raises:
        ValueError: If the backup_id is not filename-safe
        ManifestFinalizedError: If a finalized manifest already exists
    """
    if not _SAFE_BACKUP_ID.match(manifest.backup_id):
        raise ValueError(f"backup_id is not filename-safe: {manifest.backup_id!r}")

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / manifest_filename(manifest.backup_id)

    if target.exists():
        try:
            existing = load_manifest(target)
        except ManifestCorruptError:
            existing = None
        if existing is not None and existing.finalized:
            raise ManifestFinalizedError(
                f"Finalized manifest already exists for backup {manifest.backup_id}",
                backup_id=manifest.backup_id,
                path=str(target),
            )

    fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".manifest-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(dumps(manifest))
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

    return target
