"""Concurrent upload of a backup's chunks.

Chunks are independently addressed, so they can travel in parallel
through a small thread pool; their order only matters in the manifest.
Each upload carries its own retry budget inside the backend. A missing
or rejected credential stops the remaining queued uploads.
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from site_vault.archive_builder import ArchiveChunk
from site_vault.config import MAX_UPLOAD_WORKERS
from site_vault.exceptions import UnauthenticatedError
from site_vault.logging_config import current_context, log_context
from site_vault.storage_backend import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class ChunkUploadResult:
    """Result of one chunk upload."""

    chunk: ArchiveChunk
    remote_key: str
    success: bool
    duration: float
    size_bytes: int = 0
    checksum_sha256: Optional[str] = None
    chunk_id: Optional[str] = None
    error: Optional[str] = None
    exception: Optional[Exception] = field(default=None, repr=False)


class ChunkUploader:
    """Upload chunks through a storage backend using a bounded thread pool."""

    def __init__(self, backend: StorageBackend, max_workers: int = 3):
        """
        Args:
            backend: Destination storage backend
            max_workers: Concurrent uploads, capped at the supported maximum
        """
        self.backend = backend
        self.max_workers = max(1, min(MAX_UPLOAD_WORKERS, max_workers))

    def upload_all(
        self,
        assignments: Sequence[Tuple[ArchiveChunk, str]],
        progress_callback: Optional[Callable[[ArchiveChunk, str], None]] = None,
    ) -> List[ChunkUploadResult]:
        """
        Upload every (chunk, remote_key) pair.

        Args:
            assignments: Chunks paired with their destination keys
            progress_callback: Optional callback(chunk, status) with status
                "started", "completed" or "failed"

        Returns:
            Results in the order of ``assignments``; chunks skipped after an
            authentication failure are reported as failed
        """
        context = current_context()
        results: Dict[int, ChunkUploadResult] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_index: Dict[Future, int] = {
                executor.submit(
                    self._upload_single, chunk, remote_key, context, progress_callback
                ): index
                for index, (chunk, remote_key) in enumerate(assignments)
            }

            for future in as_completed(future_to_index):
                index = future_to_index[future]
                if future.cancelled():
                    continue
                result = future.result()
                results[index] = result

                if isinstance(result.exception, UnauthenticatedError):
                    for pending in future_to_index:
                        pending.cancel()

        ordered = []
        for index, (chunk, remote_key) in enumerate(assignments):
            ordered.append(
                results.get(index)
                or ChunkUploadResult(
                    chunk=chunk,
                    remote_key=remote_key,
                    success=False,
                    duration=0.0,
                    error="Skipped after authentication failure",
                )
            )
        return ordered

    def _upload_single(
        self,
        chunk: ArchiveChunk,
        remote_key: str,
        context: Dict[str, Any],
        progress_callback: Optional[Callable[[ArchiveChunk, str], None]],
    ) -> ChunkUploadResult:
        with log_context(**context, remote_key=remote_key):
            if progress_callback:
                progress_callback(chunk, "started")

            start_time = time.time()
            try:
                upload = self.backend.upload(chunk.path, remote_key)
            except Exception as exc:
                logger.error(f"Upload of {chunk.relative_path} failed: {exc}")
                if progress_callback:
                    progress_callback(chunk, "failed")
                return ChunkUploadResult(
                    chunk=chunk,
                    remote_key=remote_key,
                    success=False,
                    duration=time.time() - start_time,
                    error=str(exc),
                    exception=exc,
                )

            chunk.remote_key = upload.remote_key
            if progress_callback:
                progress_callback(chunk, "completed")

            return ChunkUploadResult(
                chunk=chunk,
                remote_key=upload.remote_key,
                success=True,
                duration=time.time() - start_time,
                size_bytes=upload.size_bytes,
                checksum_sha256=upload.checksum_sha256,
                chunk_id=upload.chunk_id,
            )

    def get_summary(self, results: List[ChunkUploadResult]) -> Dict[str, Any]:
        """
        Summarize upload results.

        Returns:
            Dictionary with total, successful, failed, bytes_uploaded and
            success_rate (percent)
        """
        total = len(results)
        successful = sum(1 for r in results if r.success)
        success_rate = (successful / total * 100) if total > 0 else 0.0

        return {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "bytes_uploaded": sum(r.size_bytes for r in results if r.success),
            "success_rate": round(success_rate, 2),
        }
