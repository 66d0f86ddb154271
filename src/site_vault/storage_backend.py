"""Storage adapters for backup chunks.

Every backend implements the same capability interface (upload, download,
delete, list, test_connection, signed_url) so the backup pipeline never
branches on backend type. Variants:

- ``RelayBackend``: a broker issues a short-lived, single-use signed URL
  per chunk; no storage credentials live on the site.
- ``ObjectStoreBackend``: signs requests locally with AWS Signature V4
  and talks to any S3-compatible bucket (S3, MinIO, Wasabi, B2).
- ``LocalDirectoryBackend``: a local directory or network mount.

Adapters receive their configuration explicitly and treat it as
read-only. Chunk writes are single PUTs (or an atomic rename for local
directories), so an interrupted transfer never leaves a truncated object
behind.
"""

import hashlib
import logging
import os
import re
import shutil
import tempfile
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

import requests

from site_vault.config import AdapterConfig, LocalStoreConfig, ObjectStoreConfig, RelayConfig
from site_vault.exceptions import (
    ConfigurationError,
    StorageError,
    TransientError,
    UnauthenticatedError,
)
from site_vault.manifest import parse_timestamp
from site_vault.retry import RetryConfig, retry, retry_with_backoff
from site_vault.sigv4 import SigV4Signer, canonical_query_string, canonical_uri

logger = logging.getLogger(__name__)

CONTROL_TIMEOUT = 30
TRANSFER_TIMEOUT = 300

REMOTE_KEY_PATTERN = re.compile(
    r"^backups/(?P<tenant_id>[^/]+)/(?P<site_id>[^/]+)/(?P<backup_id>[^/]+)/"
    r"chunk-(?P<sequence>\d+)\.(?P<extension>[A-Za-z0-9.]+)$"
)

_RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class RemoteKey:
    """Parsed ``backups/{tenant}/{site}/{backup_id}/chunk-{sequence}.{ext}`` key."""

    tenant_id: str
    site_id: str
    backup_id: str
    sequence: int
    extension: str

    @classmethod
    def parse(cls, key: str) -> "RemoteKey":
        """Recover chunk identity from a destination key.

        Raises:
            ValueError: If the key does not follow the chunk key convention
        """
        match = REMOTE_KEY_PATTERN.match(key.lstrip("/"))
        if not match:
            raise ValueError(f"Not a chunk key: {key}")
        return cls(
            tenant_id=match.group("tenant_id"),
            site_id=match.group("site_id"),
            backup_id=match.group("backup_id"),
            sequence=int(match.group("sequence")),
            extension=match.group("extension"),
        )

    def __str__(self) -> str:
        return build_remote_key(
            self.tenant_id, self.site_id, self.backup_id, self.sequence, self.extension
        )


def build_remote_key(
    tenant_id: str, site_id: str, backup_id: str, sequence: int, extension: str
) -> str:
    """Destination key for one chunk; the sequence is zero-padded to 4 digits."""
    return f"backups/{tenant_id}/{site_id}/{backup_id}/chunk-{sequence:04d}.{extension.lstrip('.')}"


def file_sha256(path: Union[str, Path]) -> str:
    sha256_hash = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


@dataclass
class UploadResult:
    """Outcome of one chunk upload."""

    remote_key: str
    size_bytes: int
    checksum_sha256: Optional[str] = None
    chunk_id: Optional[str] = None


@dataclass
class RemoteObject:
    """One object as reported by a backend listing."""

    key: str
    size_bytes: int
    last_modified: Optional[datetime] = None


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] if response.text else ""
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return ""


def _raise_for_status(response: requests.Response, operation: str, **context: Any) -> None:
    """Translate an HTTP error status into the site-vault error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return

    detail = _error_message(response)
    message = f"{operation} failed with HTTP {status}" + (f": {detail}" if detail else "")

    if status in (401, 403):
        raise UnauthenticatedError(message, status_code=status, **context)
    if status in _RETRYABLE_STATUS:
        raise TransientError(message, status_code=status, **context)
    raise StorageError(message, status_code=status, **context)


def _atomic_write(response: requests.Response, local_path: Path) -> int:
    """Stream a response body to ``local_path`` through a temporary file."""
    local_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=local_path.parent, prefix=".download-")
    written = 0
    try:
        with os.fdopen(fd, "wb") as f:
            for block in response.iter_content(chunk_size=65536):
                if block:
                    f.write(block)
                    written += len(block)
        os.replace(tmp_name, local_path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return written


class StorageBackend(ABC):
    """Capability interface shared by all storage variants."""

    type_name = ""
    # False when deletion is left to the remote side.
    deletes_objects = True

    @property
    def display_name(self) -> str:
        return self.type_name

    @abstractmethod
    def upload(self, local_path: Union[str, Path], remote_key: str) -> UploadResult:
        """Upload one file as ``remote_key``.

        Uploading the same file to the same key twice is safe; the last
        write wins.

        Raises:
            FileNotFoundError: If local_path does not exist
            UnauthenticatedError: If credentials are missing or rejected
            TransientError: If the transfer failed and may be retried
            StorageError: For any other backend failure
        """

    @abstractmethod
    def download(self, remote_key: str, local_path: Union[str, Path]) -> int:
        """Download ``remote_key`` into ``local_path``.

        Returns:
            Number of bytes written

        Raises:
            KeyError: If remote_key does not exist
        """

    @abstractmethod
    def delete(self, remote_key: str) -> None:
        """Delete ``remote_key``; deleting a missing key succeeds."""

    @abstractmethod
    def list_objects(self, prefix: str = "") -> List[RemoteObject]:
        """List stored objects whose key starts with ``prefix``."""

    @abstractmethod
    def test_connection(self) -> str:
        """Cheapest authenticated round trip.

        Returns:
            Human-readable success message

        Raises:
            UnauthenticatedError, TransientError or StorageError on failure
        """

    def list_keys(self, prefix: str = "") -> List[str]:
        return [obj.key for obj in self.list_objects(prefix)]

    def signed_url(self, remote_key: str, ttl: int = 3600) -> str:
        """Delegated-access URL for ``remote_key``.

        Raises:
            StorageError: If the backend cannot delegate access
        """
        raise StorageError(f"{self.display_name} does not support signed URLs")

    def backup_records(self) -> List[Dict[str, Any]]:
        """Remote backup records in the broker's record shape.

        Backends without a catalog service derive records from their
        object listing, grouping chunk keys by backup_id.
        """
        from site_vault.catalog import records_from_objects

        return records_from_objects(self.list_objects("backups/"))

    def report_status(
        self, backup_id: str, status: str, total_size_bytes: Optional[int] = None
    ) -> None:
        """Tell the remote side about job progress; a no-op by default."""
        return None


class RelayBackend(StorageBackend):
    """Uploads through a broker that hands out signed URLs per chunk."""

    type_name = "relay"
    deletes_objects = False

    def __init__(
        self,
        config: RelayConfig,
        session: Optional[requests.Session] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.config = config
        self.session = session or requests.Session()
        self.retry_config = retry_config or RetryConfig()

    @property
    def display_name(self) -> str:
        return "Vault Cloud"

    def _api(self, path: str) -> str:
        return f"{self.config.endpoint}/api/v1/{path.lstrip('/')}"

    def _require_credentials(self, need_site_id: bool = False) -> None:
        if not self.config.site_token:
            raise UnauthenticatedError("Site token not configured. Register the site first.")
        if need_site_id and not self.config.site_id:
            raise UnauthenticatedError("Site ID not configured. Register the site first.")

    def _call(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", CONTROL_TIMEOUT)
        try:
            return getattr(self.session, method)(url, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(f"Broker unreachable: {e}", url=url) from e

    @staticmethod
    def _parse_key(remote_key: str) -> RemoteKey:
        try:
            return RemoteKey.parse(remote_key)
        except ValueError as e:
            raise StorageError(
                f"Cannot derive backup_id and chunk sequence from {remote_key}",
                remote_key=remote_key,
            ) from e

    def request_upload_grant(
        self,
        backup_id: str,
        chunk_sequence: int,
        size_bytes: Optional[int] = None,
        checksum: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Ask the broker for a single-use upload URL.

        Returns:
            Grant with ``upload_url``, ``chunk_id`` and ``path``
        """
        self._require_credentials()

        payload: Dict[str, Any] = {
            "site_token": self.config.site_token,
            "chunk_sequence": chunk_sequence,
        }
        if size_bytes is not None:
            payload["size_bytes"] = size_bytes
        if checksum is not None:
            payload["checksum"] = checksum

        response = self._call("post", self._api(f"backups/{backup_id}/upload-url"), json=payload)
        _raise_for_status(response, "Upload grant request", backup_id=backup_id)

        try:
            grant = response.json()
        except ValueError as e:
            raise StorageError("Broker returned a non-JSON upload grant") from e
        if not isinstance(grant, dict) or not grant.get("upload_url"):
            raise StorageError("Broker response is missing upload_url", backup_id=backup_id)

        logger.debug(f"Received upload grant for chunk {chunk_sequence} of {backup_id}")
        return grant

    def upload(self, local_path: Union[str, Path], remote_key: str) -> UploadResult:
        local_path = Path(local_path)
        if not local_path.exists():
            raise FileNotFoundError(f"Source file not found: {local_path}")

        key = self._parse_key(remote_key)
        self._require_credentials()

        size_bytes = local_path.stat().st_size
        checksum = file_sha256(local_path)

        return retry_with_backoff(
            self._upload_once,
            local_path,
            key,
            remote_key,
            size_bytes,
            checksum,
            config=self.retry_config,
        )

    def _upload_once(
        self, local_path: Path, key: RemoteKey, remote_key: str, size_bytes: int, checksum: str
    ) -> UploadResult:
        # Grants are single-use: every attempt starts with a fresh one.
        grant = self.request_upload_grant(key.backup_id, key.sequence, size_bytes, checksum)

        with open(local_path, "rb") as f:
            try:
                response = self.session.put(
                    grant["upload_url"],
                    data=f,
                    headers={
                        "Content-Type": "application/octet-stream",
                        "Content-Length": str(size_bytes),
                    },
                    timeout=TRANSFER_TIMEOUT,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                raise TransientError(f"Chunk upload interrupted: {e}", remote_key=remote_key) from e

        if not 200 <= response.status_code < 300:
            raise TransientError(
                f"Chunk PUT rejected with HTTP {response.status_code}",
                status_code=response.status_code,
                remote_key=remote_key,
            )

        logger.info(f"Uploaded {local_path.name} as chunk {key.sequence} of {key.backup_id}")
        return UploadResult(
            remote_key=grant.get("path") or remote_key,
            size_bytes=size_bytes,
            checksum_sha256=checksum,
            chunk_id=grant.get("chunk_id"),
        )

    def download_urls(self, backup_id: str) -> List[Dict[str, Any]]:
        """Signed download URLs for every chunk of a backup."""
        self._require_credentials()

        response = self._call(
            "get",
            self._api(f"backups/{backup_id}/download-urls"),
            params={"site_token": self.config.site_token},
        )
        if response.status_code == 404:
            return []
        _raise_for_status(response, "Download URL request", backup_id=backup_id)

        try:
            body = response.json()
        except ValueError as e:
            raise StorageError("Broker returned non-JSON download URLs", backup_id=backup_id) from e
        urls = body.get("download_urls") if isinstance(body, dict) else None
        if not isinstance(urls, list):
            raise StorageError("Broker response is missing download_urls", backup_id=backup_id)
        return [u for u in urls if isinstance(u, dict) and u.get("url")]

    def download(self, remote_key: str, local_path: Union[str, Path]) -> int:
        key = self._parse_key(remote_key)
        return retry_with_backoff(
            self._download_once, key, remote_key, Path(local_path), config=self.retry_config
        )

    def _download_once(self, key: RemoteKey, remote_key: str, local_path: Path) -> int:
        filename = remote_key.rsplit("/", 1)[-1]
        match = None
        for entry in self.download_urls(key.backup_id):
            sequence = entry.get("sequence")
            if entry.get("filename") == filename or (
                sequence is not None and str(sequence).isdigit() and int(sequence) == key.sequence
            ):
                match = entry
                break
        if match is None:
            raise KeyError(f"Chunk not found: {remote_key}")

        try:
            response = self.session.get(match["url"], stream=True, timeout=TRANSFER_TIMEOUT)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(f"Chunk download interrupted: {e}", remote_key=remote_key) from e

        with response:
            if response.status_code == 404:
                raise KeyError(f"Chunk not found: {remote_key}")
            if response.status_code != 200:
                # Signed URLs expire; a retry fetches fresh ones.
                raise TransientError(
                    f"Chunk download failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                    remote_key=remote_key,
                )
            return _atomic_write(response, local_path)

    def delete(self, remote_key: str) -> None:
        # Chunk retention is enforced by the broker.
        logger.info(f"Deletion of {remote_key} is handled by {self.display_name}")

    def backup_records(self) -> List[Dict[str, Any]]:
        self._require_credentials(need_site_id=True)

        response = self._call(
            "get",
            self._api(f"sites/{self.config.site_id}/backups"),
            params={"site_token": self.config.site_token},
        )
        _raise_for_status(response, "Backup listing")

        try:
            body = response.json()
        except ValueError as e:
            raise StorageError("Broker returned a non-JSON backup listing") from e
        records = body.get("backups") if isinstance(body, dict) else None
        if not isinstance(records, list):
            raise StorageError("Broker response is missing backups")
        return records

    def list_objects(self, prefix: str = "") -> List[RemoteObject]:
        objects: List[RemoteObject] = []
        for record in self.backup_records():
            if not isinstance(record, dict):
                continue
            created = parse_timestamp(record.get("created_at"))
            for component in record.get("components") or []:
                if not isinstance(component, dict):
                    continue
                for obj in component.get("objects") or []:
                    key = obj.get("key") if isinstance(obj, dict) else None
                    if key and key.startswith(prefix):
                        objects.append(RemoteObject(key, int(obj.get("size") or 0), created))
        return objects

    def test_connection(self) -> str:
        self._require_credentials(need_site_id=True)

        response = self._call(
            "post",
            self._api(f"sites/{self.config.site_id}/heartbeat"),
            json={"site_token": self.config.site_token, "client": "site-vault"},
            timeout=10,
        )
        _raise_for_status(response, "Heartbeat")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict) or body.get("status") != "ok":
            raise StorageError(f"Connection test failed (HTTP {response.status_code})")
        return f"Successfully connected to {self.display_name}"

    def signed_url(self, remote_key: str, ttl: int = 3600) -> str:
        key = self._parse_key(remote_key)
        logger.debug(f"Upload grant lifetime is set by the broker; ignoring ttl={ttl}")
        return str(self.request_upload_grant(key.backup_id, key.sequence)["upload_url"])

    def report_status(
        self, backup_id: str, status: str, total_size_bytes: Optional[int] = None
    ) -> None:
        if not self.config.site_token:
            return

        body: Dict[str, Any] = {"site_token": self.config.site_token, "status": status}
        if total_size_bytes is not None:
            body["total_size_bytes"] = total_size_bytes

        try:
            self._post_status(backup_id, body)
        except (StorageError, TransientError, UnauthenticatedError) as e:
            logger.warning(f"Could not report status '{status}' for {backup_id}: {e}")

    @retry(max_retries=2, initial_delay=0.5)
    def _post_status(self, backup_id: str, body: Dict[str, Any]) -> None:
        response = self._call("post", self._api(f"jobs/{backup_id}/update"), json=body, timeout=10)
        # Older brokers only expose the PATCH status endpoint.
        if response.status_code == 404:
            response = self._call(
                "patch", self._api(f"jobs/{backup_id}/status"), json=body, timeout=10
            )
        _raise_for_status(response, "Job status update", backup_id=backup_id)


def provider_name(endpoint: str) -> str:
    """Display name of an S3-compatible provider, derived from its host."""
    host = (urlparse(endpoint).hostname or endpoint).lower()
    if "minio" in host:
        return "MinIO"
    if "wasabisys.com" in host:
        return "Wasabi"
    if "backblazeb2.com" in host:
        return "Backblaze B2"
    if host.endswith("amazonaws.com"):
        return "Amazon S3"
    return "S3-Compatible"


class ObjectStoreBackend(StorageBackend):
    """Path-style S3 API client signing requests with SigV4."""

    type_name = "s3"

    def __init__(
        self,
        config: ObjectStoreConfig,
        session: Optional[requests.Session] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.config = config
        self.session = session or requests.Session()
        self.retry_config = retry_config or RetryConfig()

        parsed = urlparse(config.endpoint)
        self.scheme = parsed.scheme or "https"
        self.host = parsed.hostname or ""
        if parsed.port:
            self.host = f"{self.host}:{parsed.port}"

        self.signer = SigV4Signer(
            access_key=config.access_key,
            secret_key=config.secret_key,
            region=config.region or "us-east-1",
        )

    @property
    def display_name(self) -> str:
        return provider_name(self.config.endpoint)

    def _full_key(self, remote_key: str) -> str:
        prefix = self.config.prefix.strip("/")
        key = remote_key.lstrip("/")
        return f"{prefix}/{key}" if prefix else key

    def _object_path(self, remote_key: str) -> str:
        return f"/{self.config.bucket}/{self._full_key(remote_key)}"

    def _url(self, path: str, query: Optional[Dict[str, str]] = None) -> str:
        url = f"{self.scheme}://{self.host}{canonical_uri(path)}"
        query_string = canonical_query_string(query)
        return f"{url}?{query_string}" if query_string else url

    def _send(
        self,
        method: str,
        path: str,
        query: Optional[Dict[str, str]] = None,
        payload_hash: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> requests.Response:
        sign_kwargs: Dict[str, Any] = {"query": query}
        if payload_hash is not None:
            sign_kwargs["payload_hash"] = payload_hash
        signed = self.signer.sign_headers(method, self.host, path, **sign_kwargs)
        # Only host, content hash and date are signed; transport headers ride along.
        signed.update(headers or {})

        kwargs.setdefault("timeout", CONTROL_TIMEOUT)
        url = self._url(path, query)
        try:
            return getattr(self.session, method.lower())(url, headers=signed, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(f"{self.display_name} unreachable: {e}", url=url) from e

    def upload(self, local_path: Union[str, Path], remote_key: str) -> UploadResult:
        local_path = Path(local_path)
        if not local_path.exists():
            raise FileNotFoundError(f"Source file not found: {local_path}")

        size_bytes = local_path.stat().st_size
        checksum = file_sha256(local_path)

        return retry_with_backoff(
            self._upload_once,
            local_path,
            remote_key,
            size_bytes,
            checksum,
            config=self.retry_config,
        )

    def _upload_once(
        self, local_path: Path, remote_key: str, size_bytes: int, checksum: str
    ) -> UploadResult:
        with open(local_path, "rb") as f:
            response = self._send(
                "PUT",
                self._object_path(remote_key),
                payload_hash=checksum,
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Length": str(size_bytes),
                },
                data=f,
                timeout=TRANSFER_TIMEOUT,
            )
        _raise_for_status(response, f"Upload of {remote_key}", remote_key=remote_key)

        logger.info(f"Uploaded {local_path.name} to {self.display_name} as {remote_key}")
        return UploadResult(remote_key=remote_key, size_bytes=size_bytes, checksum_sha256=checksum)

    def download(self, remote_key: str, local_path: Union[str, Path]) -> int:
        return retry_with_backoff(
            self._download_once, remote_key, Path(local_path), config=self.retry_config
        )

    def _download_once(self, remote_key: str, local_path: Path) -> int:
        response = self._send(
            "GET", self._object_path(remote_key), stream=True, timeout=TRANSFER_TIMEOUT
        )
        with response:
            if response.status_code == 404:
                raise KeyError(f"Object not found: {remote_key}")
            _raise_for_status(response, f"Download of {remote_key}", remote_key=remote_key)
            return _atomic_write(response, local_path)

    def delete(self, remote_key: str) -> None:
        response = self._send("DELETE", self._object_path(remote_key))
        if response.status_code == 404:
            return
        _raise_for_status(response, f"Delete of {remote_key}", remote_key=remote_key)

    def list_objects(self, prefix: str = "") -> List[RemoteObject]:
        full_prefix = self._full_key(prefix) if prefix else self._full_key("")
        strip = len(self._full_key(""))
        objects: List[RemoteObject] = []
        token: Optional[str] = None

        while True:
            query = {"list-type": "2", "prefix": full_prefix}
            if token:
                query["continuation-token"] = token

            response = self._send("GET", f"/{self.config.bucket}", query=query)
            _raise_for_status(response, "Object listing")

            try:
                root = ET.fromstring(response.content)
            except ET.ParseError as e:
                raise StorageError(f"Unparsable listing from {self.display_name}: {e}") from e

            for item in root.findall("{*}Contents"):
                key = item.findtext("{*}Key") or ""
                objects.append(
                    RemoteObject(
                        key=key[strip:].lstrip("/") if strip else key,
                        size_bytes=int(item.findtext("{*}Size") or 0),
                        last_modified=parse_timestamp(item.findtext("{*}LastModified")),
                    )
                )

            token = root.findtext("{*}NextContinuationToken")
            if (root.findtext("{*}IsTruncated") or "").lower() != "true" or not token:
                break

        return objects

    def test_connection(self) -> str:
        response = self._send("HEAD", f"/{self.config.bucket}")

        # 403 still proves the bucket exists; the key may simply lack list rights.
        if response.status_code in (200, 403):
            return f"Successfully connected to {self.display_name} bucket {self.config.bucket}"
        if response.status_code == 404:
            raise StorageError(f"Bucket not found: {self.config.bucket}", status_code=404)
        _raise_for_status(response, "Bucket check")
        raise StorageError(
            f"Bucket check returned HTTP {response.status_code}",
            status_code=response.status_code,
        )

    def signed_url(self, remote_key: str, ttl: int = 3600) -> str:
        path = self._object_path(remote_key)
        return self._url(path, self.signer.presign_query("GET", self.host, path, ttl))


class LocalDirectoryBackend(StorageBackend):
    """Stores chunks under a directory on local disk or a mounted share."""

    type_name = "local"

    def __init__(self, config: LocalStoreConfig):
        self.config = config
        self.base_path = Path(config.path)

    @property
    def display_name(self) -> str:
        return "Local Directory"

    def _resolve(self, remote_key: str) -> Path:
        target = (self.base_path / remote_key.lstrip("/")).resolve()
        base = self.base_path.resolve()
        if target != base and base not in target.parents:
            raise StorageError(f"Key escapes the storage directory: {remote_key}")
        return target

    def upload(self, local_path: Union[str, Path], remote_key: str) -> UploadResult:
        local_path = Path(local_path)
        if not local_path.exists():
            raise FileNotFoundError(f"Source file not found: {local_path}")

        dest_path = self._resolve(remote_key)
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=dest_path.parent, prefix=".upload-")
        os.close(fd)
        try:
            shutil.copyfile(local_path, tmp_name)
            os.replace(tmp_name, dest_path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"Failed to store {remote_key}: {e}", remote_key=remote_key) from e

        return UploadResult(
            remote_key=remote_key,
            size_bytes=dest_path.stat().st_size,
            checksum_sha256=file_sha256(dest_path),
        )

    def download(self, remote_key: str, local_path: Union[str, Path]) -> int:
        source_path = self._resolve(remote_key)
        if not source_path.is_file():
            raise KeyError(f"Archive not found: {remote_key}")

        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source_path, local_path)
        return local_path.stat().st_size

    def delete(self, remote_key: str) -> None:
        self._resolve(remote_key).unlink(missing_ok=True)

    def list_objects(self, prefix: str = "") -> List[RemoteObject]:
        if not self.base_path.exists():
            return []

        objects = []
        for path in sorted(self.base_path.rglob("*")):
            if not path.is_file() or path.name.startswith(".upload-"):
                continue
            key = path.relative_to(self.base_path).as_posix()
            if not key.startswith(prefix):
                continue
            stat = path.stat()
            objects.append(
                RemoteObject(
                    key=key,
                    size_bytes=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return objects

    def test_connection(self) -> str:
        if not self.base_path.is_dir():
            raise StorageError(f"Storage directory does not exist: {self.base_path}")
        if not os.access(self.base_path, os.W_OK):
            raise StorageError(f"Storage directory is not writable: {self.base_path}")
        return f"Storage directory {self.base_path} is writable"

    def signed_url(self, remote_key: str, ttl: int = 3600) -> str:
        path = self._resolve(remote_key)
        if not path.is_file():
            raise KeyError(f"Archive not found: {remote_key}")
        return path.as_uri()


BACKENDS: Dict[str, Callable[..., StorageBackend]] = {
    "relay": lambda config, **kwargs: RelayBackend(config.relay, **kwargs),
    "s3": lambda config, **kwargs: ObjectStoreBackend(config.s3, **kwargs),
    "local": lambda config, **kwargs: LocalDirectoryBackend(config.local),
}

BACKEND_NAMES = {"relay": "Vault Cloud", "s3": "S3-Compatible", "local": "Local Directory"}


def available_backends() -> List[Dict[str, str]]:
    """Storage variants this build can create."""
    return [{"type": name, "name": BACKEND_NAMES.get(name, name)} for name in BACKENDS]


def validate_config(config: AdapterConfig) -> List[str]:
    """List problems that would stop the configured backend from working."""
    problems: List[str] = []

    if config.type not in BACKENDS:
        problems.append(f"Unknown storage type: {config.type}")
    elif config.type == "relay" and config.relay is not None:
        if not config.relay.site_id:
            problems.append("Site ID not configured")
        if not config.relay.site_token:
            problems.append("Site token not configured")
    elif config.type == "local" and config.local is not None:
        if not config.local.path.is_dir():
            problems.append(f"Storage directory does not exist: {config.local.path}")

    return problems


def create_backend(config: AdapterConfig, **kwargs: Any) -> StorageBackend:
    """Instantiate the storage variant selected by ``config``.

    Args:
        config: Adapter configuration
        **kwargs: Passed to HTTP backends (session, retry_config)

    Raises:
        ConfigurationError: If the storage type is unknown
    """
    factory = BACKENDS.get(config.type)
    if factory is None:
        raise ConfigurationError(f"Unknown storage type: {config.type}")
    return factory(config, **kwargs)
