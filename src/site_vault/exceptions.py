"""Exception hierarchy for site-vault.

Every error raised by the backup transfer subsystem derives from
SiteVaultError, so callers (CLI, job runner) can catch the whole family
with one handler and still branch on the concrete failure class.

Retry policy is carried by the exception itself: only errors whose
``retryable`` attribute is true are retried by ``site_vault.retry``.
"""

from typing import Any, List, Optional


class SiteVaultError(Exception):
    """Base exception for all site-vault errors.

    Attributes:
        message: Human-readable error message
        **kwargs: Additional context stored as attributes
    """

    def __init__(self, message: str, **kwargs: Any) -> None:
        """Initialize exception with message and optional context.

        Args:
            message: Human-readable error description
            **kwargs: Additional context (e.g., backup_id, remote_key, status_code)
        """
        super().__init__(message)
        self.message = message

        for key, value in kwargs.items():
            setattr(self, key, value)

    def __str__(self) -> str:
        """Return string representation of the error."""
        return self.message


class UnauthenticatedError(SiteVaultError):
    """Raised when site credentials are missing or rejected.

    Fatal: surfaced to the user immediately and never retried.

    Common scenarios:
    - Site token not configured (site never registered)
    - Broker answers 401/403 to a control-plane call
    - Object store rejects the access key
    """

    pass


class ConfigurationError(SiteVaultError):
    """Raised when configuration is invalid or missing.

    Common scenarios:
    - Invalid YAML syntax
    - Missing bucket or access keys for an object store
    - Unknown storage type
    - Failed environment variable substitution
    """

    pass


class NetworkError(SiteVaultError):
    """Raised when network operations fail.

    Attributes:
        retryable: Whether the error should be retried
    """

    def __init__(self, message: str, retryable: bool = True, **kwargs: Any) -> None:
        """Initialize network error.

        Args:
            message: Error description
            retryable: Whether operation should be retried (default: True)
            **kwargs: Additional context
        """
        super().__init__(message, retryable=retryable, **kwargs)


class TransientError(NetworkError):
    """Raised for failures expected to clear on their own.

    Connection errors, timeouts, 5xx answers and rejected PUTs against an
    already-issued upload grant all land here. Always retryable; once the
    retry budget is spent it surfaces as a job failure.
    """

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.pop("retryable", None)
        super().__init__(message, retryable=True, **kwargs)


class StorageError(SiteVaultError):
    """Raised when a storage backend operation fails permanently.

    Common scenarios:
    - Bucket does not exist
    - Broker rejects a request with a non-auth 4xx
    - Malformed broker or object store response
    - Capability not supported by the backend
    """

    pass


class ArchiveError(SiteVaultError):
    """Raised when archive creation, verification or extraction fails."""

    pass


class CompressionUnavailableError(ArchiveError):
    """Raised when no compression capability exists on this host.

    Neither the system tar/gzip tools nor in-process zlib support could be
    found. Fatal, no retry.
    """

    pass


class ManifestCorruptError(SiteVaultError):
    """Raised when a manifest cannot be decoded.

    The catalog skips the offending manifest instead of aborting.
    """

    pass


class ManifestFinalizedError(SiteVaultError):
    """Raised when code tries to modify a finalized manifest.

    Corrections must be recorded under a new backup_id.
    """

    pass


class PartialFileMissingError(SiteVaultError):
    """Raised when chunks or files referenced by a backup are absent.

    Attributes:
        missing: Keys or filenames that could not be found
    """

    def __init__(self, message: str, missing: Optional[List[str]] = None, **kwargs: Any) -> None:
        super().__init__(message, missing=list(missing or []), **kwargs)


class BackupLockedError(SiteVaultError):
    """Raised when another job already owns a backup_id's working set.

    Attributes:
        backup_id: The contended backup identifier
        lock_path: Path of the lock file held by the other job
    """

    pass
