"""Backup job orchestration.

A backup runs as one blocking sequence: take the per-backup lock, build
the archives, upload them concurrently, record the remote keys in the
manifest, finalize it and tell the remote side the outcome. The other
entry points (catalog, download, restore, delete) work from the reconciled
catalog so they see remote and local backups alike.
"""

import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from site_vault.archive_builder import (
    ArchiveBuilder,
    ArchiveChunk,
    FileSpec,
    extract_archive,
    verify_archive,
)
from site_vault.backup_lock import BackupLock
from site_vault.catalog import CatalogEntry, discover_local_backups, reconcile
from site_vault.chunk_uploader import ChunkUploader, ChunkUploadResult
from site_vault.config import VaultConfig
from site_vault.exceptions import (
    ArchiveError,
    ManifestCorruptError,
    ManifestFinalizedError,
    PartialFileMissingError,
    SiteVaultError,
    StorageError,
    UnauthenticatedError,
)
from site_vault.file_scanner import component_sort_key, database_entries, scan_content_tree
from site_vault.logging_config import job_log, log_context
from site_vault.manifest import (
    BackupManifest,
    load_manifest,
    manifest_filename,
    save_manifest,
    utcnow,
)
from site_vault.storage_backend import StorageBackend, build_remote_key, create_backend

logger = logging.getLogger(__name__)

DEFAULT_TENANT = "default"
DEFAULT_SITE = "local"


def new_backup_id() -> str:
    """Timestamped, filename-safe backup identifier."""
    return f"{utcnow():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:8]}"


@dataclass
class BackupReport:
    """Outcome of a successful backup job."""

    backup_id: str
    manifest: BackupManifest
    manifest_path: Path
    archives: List[ArchiveChunk]
    uploads: List[ChunkUploadResult]
    summary: Dict[str, Any]
    log_path: Optional[Path] = None
    skipped: List[str] = field(default_factory=list)


@dataclass
class RestoreReport:
    """Outcome of a restore job."""

    backup_id: str
    target_dir: Path
    archives: List[str]
    extracted: List[str]


class BackupPipeline:
    """Runs backup, catalog, download and delete jobs against one backend."""

    def __init__(
        self,
        config: VaultConfig,
        backend: Optional[StorageBackend] = None,
        builder: Optional[ArchiveBuilder] = None,
    ):
        self.config = config
        self.backend = backend or create_backend(config.storage)
        self.work_dir = Path(config.work_dir)
        self.builder = builder or ArchiveBuilder(
            self.work_dir, compression=config.archive.compression
        )
        self.uploader = ChunkUploader(self.backend, max_workers=config.archive.upload_workers)

    @property
    def log_dir(self) -> Path:
        return self.work_dir / "logs"

    def key_namespace(self) -> Tuple[str, str]:
        """Tenant and site segments used in remote chunk keys."""
        relay = self.config.storage.relay
        if relay is not None and relay.site_id:
            return relay.tenant_id or DEFAULT_TENANT, relay.site_id
        return DEFAULT_TENANT, DEFAULT_SITE

    def collect_files(
        self,
        content_root: Optional[Union[str, Path]] = None,
        database_dumps: Sequence[Union[str, Path]] = (),
    ) -> List[FileSpec]:
        """Scan the content tree and database dumps into one file set."""
        entries: List[FileSpec] = list(database_entries(database_dumps))
        if content_root is not None:
            entries.extend(
                scan_content_tree(content_root, skip_patterns=self.config.archive.skip_patterns)
            )
        return entries

    def run_backup(
        self,
        file_set: Iterable[FileSpec],
        backup_id: Optional[str] = None,
        backup_type: str = "full",
        progress_callback: Optional[Callable[[ArchiveChunk, str], None]] = None,
    ) -> BackupReport:
        """Archive, upload and finalize one backup.

        Args:
            file_set: FileEntry objects or (path, relative_path, size) tuples
            backup_id: Identifier for the backup (generated when omitted)
            backup_type: full, files, database or incremental
            progress_callback: Passed through to the chunk uploader

        Returns:
            BackupReport describing the finalized backup

        Raises:
            BackupLockedError: If another job is working on this backup_id
            ManifestFinalizedError: If this backup_id already completed
            UnauthenticatedError: If the backend rejects the credentials
            SiteVaultError: If archiving or any chunk upload fails
        """
        backup_id = backup_id or new_backup_id()

        with job_log(backup_id, self.log_dir) as log_path:
            with BackupLock(self.work_dir, backup_id):
                self._ensure_not_finalized(backup_id)
                logger.info(
                    f"Starting {backup_type} backup {backup_id} to {self.backend.display_name}"
                )
                self.backend.report_status(backup_id, "running")
                try:
                    report = self._run_locked(
                        file_set, backup_id, backup_type, progress_callback
                    )
                except Exception as e:
                    logger.error(f"Backup {backup_id} failed: {e}")
                    self.backend.report_status(backup_id, "failed")
                    raise

                report.log_path = log_path
                self.backend.report_status(
                    backup_id, "completed", report.manifest.total_size_bytes
                )
                logger.info(
                    f"Backup {backup_id} completed: {len(report.archives)} archive(s), "
                    f"{report.manifest.total_size_bytes} bytes"
                )
                return report

    def _ensure_not_finalized(self, backup_id: str) -> None:
        path = self.work_dir / manifest_filename(backup_id)
        if not path.is_file():
            return
        try:
            existing = load_manifest(path)
        except ManifestCorruptError:
            return
        if existing.finalized:
            raise ManifestFinalizedError(
                f"Backup {backup_id} is already finalized; start a new backup_id",
                backup_id=backup_id,
                path=str(path),
            )

    def _run_locked(
        self,
        file_set: Iterable[FileSpec],
        backup_id: str,
        backup_type: str,
        progress_callback: Optional[Callable[[ArchiveChunk, str], None]],
    ) -> BackupReport:
        build = self.builder.build(
            file_set,
            backup_id=backup_id,
            split_size_bytes=self.config.archive.split_size_bytes,
            backup_type=backup_type,
        )

        tenant_id, site_id = self.key_namespace()
        assignments = [
            (chunk, build_remote_key(tenant_id, site_id, backup_id, index, chunk.extension))
            for index, chunk in enumerate(build.archives)
        ]

        results = self.uploader.upload_all(assignments, progress_callback=progress_callback)
        summary = self.uploader.get_summary(results)
        failures = [r for r in results if not r.success]
        if failures:
            raise self._upload_failure(backup_id, failures, summary)

        manifest = build.manifest
        for result in results:
            manifest.set_remote_key(result.chunk.relative_path, result.remote_key)
        manifest.finalize()
        manifest_path = save_manifest(manifest, self.work_dir)

        return BackupReport(
            backup_id=backup_id,
            manifest=manifest,
            manifest_path=manifest_path,
            archives=build.archives,
            uploads=results,
            summary=summary,
            skipped=build.skipped,
        )

    @staticmethod
    def _upload_failure(
        backup_id: str, failures: List[ChunkUploadResult], summary: Dict[str, Any]
    ) -> Exception:
        for failure in failures:
            if isinstance(failure.exception, UnauthenticatedError):
                return failure.exception
        first = failures[0]
        if isinstance(first.exception, SiteVaultError):
            return first.exception
        return StorageError(
            f"{summary['failed']} of {summary['total']} chunk upload(s) failed "
            f"for backup {backup_id}: {first.error}",
            backup_id=backup_id,
        )

    def catalog(self) -> List[CatalogEntry]:
        """Reconciled list of remote and local backups, newest first.

        An unreachable or misbehaving backend degrades the result to local
        backups only; rejected credentials are raised.
        """
        try:
            remote_records = self.backend.backup_records()
        except UnauthenticatedError:
            raise
        except SiteVaultError as e:
            logger.warning(f"Remote backup listing unavailable: {e}")
            remote_records = []

        return reconcile(remote_records, discover_local_backups(self.work_dir))

    def find_backup(self, backup_id: str) -> CatalogEntry:
        """Catalog entry for ``backup_id``.

        Raises:
            StorageError: If no such backup is known
        """
        for entry in self.catalog():
            if entry.backup_id == backup_id:
                return entry
        raise StorageError(f"Backup not found: {backup_id}", backup_id=backup_id)

    def download_backup(
        self,
        backup_id: str,
        destination: Union[str, Path],
        entry: Optional[CatalogEntry] = None,
    ) -> List[Path]:
        """Fetch every archive of a backup into ``destination``.

        Local archives are copied from the work directory; everything
        else is downloaded by remote key. Available archives are always
        fetched before missing ones are reported.

        Returns:
            Paths of the fetched archives

        Raises:
            PartialFileMissingError: If any referenced archive is absent
        """
        entry = entry or self.find_backup(backup_id)
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)

        fetched: List[Path] = []
        missing: List[str] = []

        for catalog_file in entry.files:
            target = destination / Path(catalog_file.filename).name
            local_copy = self.work_dir / Path(catalog_file.filename).name

            if not catalog_file.is_remote and not catalog_file.missing and local_copy.is_file():
                shutil.copyfile(local_copy, target)
                fetched.append(target)
                continue

            if not catalog_file.remote_key:
                missing.append(catalog_file.filename)
                continue

            try:
                self.backend.download(catalog_file.remote_key, target)
            except KeyError:
                missing.append(catalog_file.remote_key)
                continue
            fetched.append(target)

        logger.info(f"Fetched {len(fetched)} archive(s) of backup {entry.backup_id}")
        if missing:
            raise PartialFileMissingError(
                f"Backup {entry.backup_id} is missing {len(missing)} archive(s)",
                missing=missing,
                backup_id=entry.backup_id,
                fetched=[str(p) for p in fetched],
            )
        return fetched

    def delete_backup(self, backup_id: str) -> int:
        """Delete a backup's remote chunks and its local artifacts.

        Returns:
            Number of remote objects deleted; always 0 when the backend
            leaves deletion to the remote side

        Raises:
            BackupLockedError: If a job is still working on the backup
        """
        entry = self.find_backup(backup_id)
        manifest_path = self.work_dir / manifest_filename(backup_id)

        with BackupLock(self.work_dir, backup_id):
            deleted = 0
            local_files = {f.filename for f in entry.files}
            for catalog_file in entry.files:
                if catalog_file.remote_key:
                    self.backend.delete(catalog_file.remote_key)
                    if self.backend.deletes_objects:
                        deleted += 1

            if manifest_path.is_file():
                try:
                    local_files.update(f.filename for f in load_manifest(manifest_path).files)
                except ManifestCorruptError as e:
                    logger.warning(f"Removing unreadable manifest of backup {backup_id}: {e}")

            for filename in sorted(local_files):
                local_copy = self.work_dir / Path(filename).name
                if local_copy.is_file():
                    local_copy.unlink()

            manifest_path.unlink(missing_ok=True)

        logger.info(f"Deleted backup {backup_id} ({deleted} remote object(s))")
        return deleted

    def restore_backup(
        self,
        backup_id: str,
        target_dir: Union[str, Path],
        entry: Optional[CatalogEntry] = None,
    ) -> RestoreReport:
        """Download, verify and unpack a backup into ``target_dir``.

        Every archive is fetched and verified before anything is written
        to the target. Archives are then extracted in component priority
        order (database first); gzipped database dumps are decompressed
        into ``target_dir/database``.

        Returns:
            RestoreReport listing the archives and extracted members

        Raises:
            BackupLockedError: If a job is still working on the backup
            PartialFileMissingError: If any archive of the backup is absent
            ArchiveError: If an archive is corrupt or unsafe to extract
        """
        entry = entry or self.find_backup(backup_id)
        target = Path(target_dir)
        self.work_dir.mkdir(parents=True, exist_ok=True)

        with BackupLock(self.work_dir, backup_id), log_context(backup_id=backup_id):
            with tempfile.TemporaryDirectory(
                prefix=f".restore-{backup_id}-", dir=self.work_dir
            ) as staging:
                paths = self.download_backup(backup_id, staging, entry=entry)

                component_of = {Path(f.filename).name: f.component or "files" for f in entry.files}
                ordered = [
                    path
                    for _, _, path in sorted(
                        (component_sort_key(component_of.get(p.name, "files")), index, p)
                        for index, p in enumerate(paths)
                    )
                ]

                for path in ordered:
                    result = verify_archive(path)
                    if not result["valid"]:
                        raise ArchiveError(
                            f"Archive {path.name} of backup {backup_id} is corrupt: "
                            f"{'; '.join(result['errors'])}",
                            backup_id=backup_id,
                            errors=result["errors"],
                        )

                extracted: List[str] = []
                for path in ordered:
                    destination = target / "database" if path.name.endswith(".sql.gz") else target
                    with log_context(archive=path.name):
                        names = extract_archive(path, destination)
                    logger.info(f"Extracted {path.name} ({len(names)} member(s))")
                    extracted.extend(names)

        logger.info(f"Restored backup {backup_id} to {target} ({len(ordered)} archive(s))")
        return RestoreReport(
            backup_id=backup_id,
            target_dir=target,
            archives=[p.name for p in ordered],
            extracted=extracted,
        )
