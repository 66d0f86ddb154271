"""Backup catalog: one ordered index of remote and local backups.

``reconcile`` merges the broker's backup records with the manifests found
in the local backup directory. It does no I/O of its own: on-disk
observations are gathered beforehand by ``discover_local_backups`` and
passed in as ``LocalBackup`` values.

Merge rules:

- every well-formed remote record yields exactly one entry (provenance
  ``remote``); the remote side is authoritative for its backup_ids
- a local manifest only yields an entry when its backup_id is unknown
  remotely; its size is recomputed from the archives actually on disk
- entries are ordered newest first, ties broken by backup_id
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from site_vault.backup_lock import BackupLock
from site_vault.exceptions import ManifestCorruptError
from site_vault.manifest import (
    BackupManifest,
    Component,
    MANIFEST_FILENAME_PATTERN,
    load_manifest,
    parse_timestamp,
)
from site_vault.storage_backend import RemoteKey, RemoteObject

logger = logging.getLogger(__name__)

PROVENANCE_REMOTE = "remote"
PROVENANCE_LOCAL = "local"

_STATUS_ALIASES = {
    "pending": "running",
    "queued": "running",
    "running": "running",
    "in_progress": "running",
    "uploading": "running",
    "completed": "completed",
    "complete": "completed",
    "success": "completed",
    "done": "completed",
    "failed": "failed",
    "error": "failed",
    "cancelled": "failed",
    "canceled": "failed",
}


@dataclass
class CatalogFile:
    """One archive of a backup as shown in the catalog."""

    filename: str
    size_bytes: int
    component: Optional[str]
    is_remote: bool
    remote_key: Optional[str] = None
    missing: bool = False


@dataclass
class CatalogEntry:
    """Display-ready record for one backup."""

    backup_id: str
    backup_type: str
    status: str
    total_size_bytes: int
    created_at: Optional[datetime]
    provenance: str
    components: List[Component] = field(default_factory=list)
    files: List[CatalogFile] = field(default_factory=list)
    finished_at: Optional[datetime] = None
    missing_files: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        """True when referenced archives are absent or still being written."""
        return bool(self.missing_files)

    @property
    def sort_time(self) -> Optional[datetime]:
        return self.finished_at or self.created_at


@dataclass
class LocalBackup:
    """A local manifest together with what is actually on disk.

    Attributes:
        manifest: Decoded manifest
        file_sizes: On-disk size per referenced archive filename, None if absent
        in_progress: Another job still holds this backup's lock
    """

    manifest: BackupManifest
    file_sizes: Dict[str, Optional[int]] = field(default_factory=dict)
    in_progress: bool = False


def normalize_status(value: Any) -> str:
    """Map broker status strings onto unknown/running/completed/failed."""
    if not isinstance(value, str):
        return "unknown"
    return _STATUS_ALIASES.get(value.strip().lower(), "unknown")


def remote_entry(record: Mapping[str, Any]) -> CatalogEntry:
    """Build a catalog entry from one broker backup record.

    Raises:
        ValueError: If the record has no usable identity or shape
    """
    backup_id = record.get("id") or record.get("backup_id")
    if not backup_id:
        raise ValueError("record has no id")

    components: List[Component] = []
    files: List[CatalogFile] = []
    raw_components = record.get("components") or []
    if not isinstance(raw_components, list):
        raise ValueError("components is not a list")

    for raw in raw_components:
        if not isinstance(raw, Mapping) or not raw.get("name"):
            continue
        name = str(raw["name"])
        archives: List[str] = []

        for obj in raw.get("objects") or []:
            if not isinstance(obj, Mapping):
                continue
            key = str(obj.get("key") or "")
            filename = obj.get("filename") or key.rsplit("/", 1)[-1] or f"{name}.tar.gz"
            archives.append(key or filename)
            files.append(
                CatalogFile(
                    filename=str(filename),
                    size_bytes=int(obj.get("size") or 0),
                    component=name,
                    is_remote=True,
                    remote_key=key or None,
                )
            )

        total = raw.get("total_size")
        if archives:
            components.append(
                Component(
                    name=name,
                    archives=archives,
                    total_size_bytes=int(total) if total is not None else None,
                )
            )

    declared_total = record.get("total_size_bytes", record.get("total_size"))
    total_size = (
        int(declared_total) if declared_total is not None else sum(f.size_bytes for f in files)
    )

    return CatalogEntry(
        backup_id=str(backup_id),
        backup_type=str(record.get("backup_type") or "full"),
        status=normalize_status(record.get("status")),
        total_size_bytes=total_size,
        created_at=parse_timestamp(record.get("created_at")),
        finished_at=parse_timestamp(record.get("finished_at")),
        provenance=PROVENANCE_REMOTE,
        components=components,
        files=files,
    )


def local_entry(local: LocalBackup) -> CatalogEntry:
    """Build a catalog entry from a local manifest and its on-disk archives."""
    manifest = local.manifest

    declared = {f.filename: f for f in manifest.files}
    owner = {a: c.name for c in manifest.components for a in c.archives}
    filenames = list(declared) or list(owner)

    files: List[CatalogFile] = []
    missing: List[str] = []
    on_disk_total = 0
    present = 0

    for filename in filenames:
        observed = None if local.in_progress else local.file_sizes.get(filename)
        declared_file = declared.get(filename)

        if observed is None:
            missing.append(filename)
            size = declared_file.size_bytes if declared_file else 0
        else:
            present += 1
            on_disk_total += observed
            size = observed

        files.append(
            CatalogFile(
                filename=filename,
                size_bytes=size,
                component=(declared_file.component if declared_file else None)
                or owner.get(filename),
                is_remote=False,
                remote_key=declared_file.remote_key if declared_file else None,
                missing=observed is None,
            )
        )

    return CatalogEntry(
        backup_id=manifest.backup_id,
        backup_type=manifest.backup_type,
        status="running" if local.in_progress else "completed",
        total_size_bytes=on_disk_total if present else manifest.total_size_bytes,
        created_at=manifest.created_at,
        provenance=PROVENANCE_LOCAL,
        components=list(manifest.components),
        files=files,
        missing_files=missing,
    )


def _sort_key(entry: CatalogEntry) -> tuple:
    when = entry.sort_time
    if when is None:
        return (1, math.inf, entry.backup_id)
    return (0, -when.timestamp(), entry.backup_id)


def reconcile(
    remote_records: Sequence[Mapping[str, Any]],
    local_backups: Sequence[LocalBackup],
) -> List[CatalogEntry]:
    """Merge remote records and local backups into one ordered catalog.

    Malformed records are dropped with a warning; reconciliation itself
    never fails. The result is deterministic for identical inputs.

    Args:
        remote_records: Broker backup records
        local_backups: Local manifests with their on-disk observations

    Returns:
        Entries sorted newest first, one per backup_id
    """
    merged: Dict[str, CatalogEntry] = {}

    for record in remote_records:
        if not isinstance(record, Mapping):
            logger.warning(f"Dropping malformed remote backup record: {record!r}")
            continue
        try:
            entry = remote_entry(record)
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed remote backup record: {e}")
            continue
        if entry.backup_id in merged:
            logger.warning(f"Ignoring duplicate remote record for backup {entry.backup_id}")
            continue
        merged[entry.backup_id] = entry

    for local in local_backups:
        backup_id = local.manifest.backup_id
        if backup_id in merged:
            continue
        try:
            merged[backup_id] = local_entry(local)
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping local manifest for backup {backup_id}: {e}")

    return sorted(merged.values(), key=_sort_key)


def records_from_objects(objects: Iterable[RemoteObject]) -> List[Dict[str, Any]]:
    """Group listed chunk objects into broker-shaped backup records.

    Keys that do not follow the chunk key convention are ignored.
    """
    grouped: Dict[str, List[RemoteObject]] = {}
    for obj in objects:
        try:
            key = RemoteKey.parse(obj.key)
        except ValueError:
            continue
        grouped.setdefault(key.backup_id, []).append(obj)

    records = []
    for backup_id in sorted(grouped):
        chunks = sorted(grouped[backup_id], key=lambda o: o.key)
        stamps = [o.last_modified for o in chunks if o.last_modified is not None]
        records.append(
            {
                "id": backup_id,
                "status": "completed",
                "total_size_bytes": sum(o.size_bytes for o in chunks),
                "created_at": min(stamps).isoformat() if stamps else None,
                "finished_at": max(stamps).isoformat() if stamps else None,
                "components": [
                    {
                        "name": "chunks",
                        "objects": [{"key": o.key, "size": o.size_bytes} for o in chunks],
                    }
                ],
            }
        )
    return records


def discover_local_backups(
    directory: Union[str, Path],
    is_locked: Optional[Callable[[str], bool]] = None,
) -> List[LocalBackup]:
    """Load every local manifest in ``directory`` and stat its archives.

    Unreadable or corrupt manifests are skipped with a warning.

    Args:
        directory: Local backup directory
        is_locked: Predicate telling whether a backup_id is still being
            written (defaults to checking the advisory lock file)
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []

    if is_locked is None:

        def is_locked(backup_id: str) -> bool:
            return BackupLock.is_locked(directory, backup_id)

    backups: List[LocalBackup] = []
    for path in sorted(directory.iterdir()):
        if not MANIFEST_FILENAME_PATTERN.match(path.name):
            continue
        try:
            manifest = load_manifest(path)
        except ManifestCorruptError as e:
            logger.warning(f"Skipping manifest {path.name}: {e}")
            continue

        referenced = [f.filename for f in manifest.files] or [
            a for c in manifest.components for a in c.archives
        ]
        sizes: Dict[str, Optional[int]] = {}
        for filename in referenced:
            archive = directory / Path(filename).name
            sizes[filename] = archive.stat().st_size if archive.is_file() else None

        backups.append(
            LocalBackup(
                manifest=manifest,
                file_sizes=sizes,
                in_progress=is_locked(manifest.backup_id),
            )
        )
    return backups
