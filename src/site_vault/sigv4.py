"""AWS Signature Version 4 signing for S3-compatible object stores.

Produces the ``Authorization`` header (or presigned query string) that
S3, MinIO, Wasabi and Backblaze B2 accept. The canonical form is built
exactly as the reference algorithm prescribes; any deviation in
encoding or ordering yields a ``SignatureDoesNotMatch`` from the server.
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

ALGORITHM = "AWS4-HMAC-SHA256"
EMPTY_PAYLOAD_SHA256 = hashlib.sha256(b"").hexdigest()
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"

_UNRESERVED = "-_.~"


def sha256_hex(data: bytes) -> str:
    """Hex-encoded SHA-256 of ``data``."""
    return hashlib.sha256(data).hexdigest()


def canonical_uri(path: str) -> str:
    """URI-encode a request path, leaving the ``/`` separators intact."""
    return quote(path or "/", safe="/" + _UNRESERVED)


def canonical_query_string(query: Optional[Mapping[str, str]]) -> str:
    """Encode and sort query parameters by key.

    A parameter without a value (``?lifecycle``) is passed as an empty
    string and rendered as ``lifecycle=``.
    """
    if not query:
        return ""

    pairs: List[Tuple[str, str]] = [
        (quote(str(key), safe=_UNRESERVED), quote(str(value), safe=_UNRESERVED))
        for key, value in query.items()
    ]
    return "&".join(f"{key}={value}" for key, value in sorted(pairs))


def derive_signing_key(secret_key: str, date_stamp: str, region: str, service: str) -> bytes:
    """Chain HMAC-SHA256 over date, region, service and the terminator.

    Args:
        secret_key: Secret access key
        date_stamp: Request date as ``YYYYMMDD``
        region: Signing region (e.g. ``us-east-1``)
        service: Service name (``s3``)

    Returns:
        Raw 32-byte signing key
    """
    k_date = _hmac(("AWS4" + secret_key).encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _normalize_header_value(value: str) -> str:
    return " ".join(str(value).split())


@dataclass(frozen=True)
class SigV4Signer:
    """Signs requests for one set of credentials.

    Attributes:
        access_key: Access key ID
        secret_key: Secret access key
        region: Signing region
        service: Signing service name
    """

    access_key: str
    secret_key: str
    region: str = "us-east-1"
    service: str = "s3"

    def credential_scope(self, date_stamp: str) -> str:
        return f"{date_stamp}/{self.region}/{self.service}/aws4_request"

    def canonical_request(
        self,
        method: str,
        path: str,
        query: Optional[Mapping[str, str]],
        headers: Mapping[str, str],
        payload_hash: str,
    ) -> Tuple[str, str]:
        """Build the canonical request.

        Args:
            method: HTTP method
            path: Unencoded request path
            query: Query parameters
            headers: Headers to sign, keyed by lowercase name
            payload_hash: Hex SHA-256 of the body or ``UNSIGNED-PAYLOAD``

        Returns:
            Tuple of (canonical request, signed headers list)
        """
        names = sorted(headers)
        canonical_headers = "".join(f"{name}:{headers[name]}\n" for name in names)
        signed_headers = ";".join(names)

        request = "\n".join(
            [
                method.upper(),
                canonical_uri(path),
                canonical_query_string(query),
                canonical_headers,
                signed_headers,
                payload_hash,
            ]
        )
        return request, signed_headers

    def string_to_sign(self, amz_date: str, canonical_request: str) -> str:
        return "\n".join(
            [
                ALGORITHM,
                amz_date,
                self.credential_scope(amz_date[:8]),
                sha256_hex(canonical_request.encode("utf-8")),
            ]
        )

    def signature(self, amz_date: str, canonical_request: str) -> str:
        key = derive_signing_key(self.secret_key, amz_date[:8], self.region, self.service)
        return hmac.new(
            key,
            self.string_to_sign(amz_date, canonical_request).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def sign_headers(
        self,
        method: str,
        host: str,
        path: str,
        query: Optional[Mapping[str, str]] = None,
        payload_hash: str = EMPTY_PAYLOAD_SHA256,
        headers: Optional[Mapping[str, str]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, str]:
        """Return the headers to send with a header-authenticated request.

        ``host``, ``x-amz-content-sha256`` and ``x-amz-date`` are always
        signed; any extra ``headers`` are signed as well.

        Args:
            method: HTTP method
            host: Host header value, including a non-default port
            path: Unencoded request path (``/{bucket}/{key}`` for path style)
            query: Query parameters
            payload_hash: Hex SHA-256 of the body
            headers: Additional headers to sign and send
            now: Signing time (defaults to the current UTC time)

        Returns:
            Header mapping including ``Authorization``
        """
        amz_date = _amz_date(now)

        to_sign: Dict[str, str] = {
            "host": host,
            "x-amz-content-sha256": payload_hash,
            "x-amz-date": amz_date,
        }
        for name, value in (headers or {}).items():
            to_sign[name.lower()] = _normalize_header_value(value)

        request, signed_headers = self.canonical_request(
            method, path, query, to_sign, payload_hash
        )
        signature = self.signature(amz_date, request)

        result = {"Host": host, "x-amz-content-sha256": payload_hash, "x-amz-date": amz_date}
        result.update(headers or {})
        result["Authorization"] = (
            f"{ALGORITHM} Credential={self.access_key}/{self.credential_scope(amz_date[:8])}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )
        return result

    def presign_query(
        self,
        method: str,
        host: str,
        path: str,
        expires_in: int,
        now: Optional[datetime] = None,
    ) -> Dict[str, str]:
        """Return the query parameters of a presigned URL.

        Only ``host`` is signed and the payload is ``UNSIGNED-PAYLOAD``, so
        the URL can be used by any HTTP client without extra headers.

        Args:
            method: HTTP method the URL is valid for
            host: Host the URL points at
            path: Unencoded request path
            expires_in: Validity in seconds (1 to 604800)
            now: Signing time (defaults to the current UTC time)

        Returns:
            Query parameters including ``X-Amz-Signature``
        """
        if not 1 <= expires_in <= 604800:
            raise ValueError("expires_in must be between 1 and 604800 seconds")

        amz_date = _amz_date(now)
        query = {
            "X-Amz-Algorithm": ALGORITHM,
            "X-Amz-Credential": f"{self.access_key}/{self.credential_scope(amz_date[:8])}",
            "X-Amz-Date": amz_date,
            "X-Amz-Expires": str(expires_in),
            "X-Amz-SignedHeaders": "host",
        }
        request, _ = self.canonical_request(method, path, query, {"host": host}, UNSIGNED_PAYLOAD)
        query["X-Amz-Signature"] = self.signature(amz_date, request)
        return query


def _amz_date(now: Optional[datetime]) -> str:
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y%m%dT%H%M%SZ")
