"""AWS Signature Version 4 request signing for s3stream.

Implements the SigV4 signing algorithm for both header-based auth
(Authorization header) and query-string auth (presigned URLs).

References:
    - https://docs.aws.amazon.com/AmazonS3/latest/API/sig-v4-authenticating-requests.html
"""

import hashlib
import hmac
import re
import urllib.parse
from collections.abc import Mapping
from datetime import datetime, timezone

from s3stream.errors import ConfigurationError, InvalidArgumentError

# Constants
ALGORITHM = "AWS4-HMAC-SHA256"
KEY_PREFIX = "AWS4"
SCOPE_TERMINATOR = "aws4_request"
SERVICE_NAME = "s3"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
MAX_PRESIGNED_EXPIRES = 604800  # 7 days in seconds

# Headers that proxies and HTTP stacks are free to rewrite
UNSIGNED_HEADERS = frozenset(
    {"authorization", "user-agent", "content-length", "expect", "connection", "accept-encoding"}
)


class SigV4Signer:
    """Signs S3 requests with AWS Signature Version 4.

    Attributes:
        access_key: The access key ID.
        region: The region used in the credential scope.
        service: The service name used in the credential scope.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        service: str = SERVICE_NAME,
    ) -> None:
        self.access_key = access_key
        self._secret_key = secret_key
        self.region = region
        self.service = service
        # Signing key cache: (date, region, service) -> signing_key bytes
        self._signing_key_cache: dict[tuple[str, str, str], bytes] = {}

    def sign_headers(
        self,
        method: str,
        path: str,
        query: Mapping[str, str],
        headers: Mapping[str, str],
        payload_hash: str,
        timestamp: datetime | None = None,
    ) -> dict[str, str]:
        """Sign a request and return the headers to send.

        Args:
            method: HTTP method (uppercase).
            path: The raw, unencoded request path.
            query: Query parameters; flag parameters map to "".
            headers: Headers to send and sign. Must include ``host``.
            payload_hash: SHA-256 hex digest of the body or UNSIGNED-PAYLOAD.
            timestamp: Signing time; defaults to now.

        Returns:
            A copy of ``headers`` plus x-amz-date, x-amz-content-sha256 and
            Authorization.

        Raises:
            ConfigurationError: If the access key or secret key is empty.
        """
        self._check_credentials()
        amz_date, date = _format_timestamp(timestamp)

        signed = {name.lower(): value for name, value in headers.items()}
        signed["x-amz-date"] = amz_date
        signed["x-amz-content-sha256"] = payload_hash
        signed_header_names = sorted(n for n in signed if n not in UNSIGNED_HEADERS)

        canonical_request = build_canonical_request(
            method=method,
            uri=path,
            canonical_query=build_canonical_query_string(query),
            headers=signed,
            signed_headers=signed_header_names,
            payload_hash=payload_hash,
        )
        scope = self._scope(date)
        string_to_sign = build_string_to_sign(amz_date, scope, canonical_request)
        signature = compute_signature(self._signing_key(date), string_to_sign)

        signed["authorization"] = (
            f"{ALGORITHM} Credential={self.access_key}/{scope}, "
            f"SignedHeaders={';'.join(signed_header_names)}, "
            f"Signature={signature}"
        )
        return signed

    def presign(
        self,
        method: str,
        path: str,
        host: str,
        expires: int,
        query: Mapping[str, str] | None = None,
        timestamp: datetime | None = None,
    ) -> dict[str, str]:
        """Build presigned URL query parameters.

        Args:
            method: HTTP method the URL is valid for.
            path: The raw, unencoded request path.
            host: The Host header value the URL will be requested with.
            expires: Validity in seconds (1..604800).
            query: Extra query parameters to include in the signature.
            timestamp: Signing time; defaults to now.

        Returns:
            All query parameters, X-Amz-Signature included.

        Raises:
            ConfigurationError: If the access key or secret key is empty.
            InvalidArgumentError: If ``expires`` is out of range.
        """
        self._check_credentials()
        if expires < 1 or expires > MAX_PRESIGNED_EXPIRES:
            raise InvalidArgumentError(
                f"Presigned URL expiry must be between 1 and {MAX_PRESIGNED_EXPIRES} seconds."
            )
        amz_date, date = _format_timestamp(timestamp)
        scope = self._scope(date)

        params = dict(query or {})
        params.update(
            {
                "X-Amz-Algorithm": ALGORITHM,
                "X-Amz-Credential": f"{self.access_key}/{scope}",
                "X-Amz-Date": amz_date,
                "X-Amz-Expires": str(expires),
                "X-Amz-SignedHeaders": "host",
            }
        )
        canonical_request = build_canonical_request(
            method=method,
            uri=path,
            canonical_query=build_canonical_query_string(params),
            headers={"host": host},
            signed_headers=["host"],
            payload_hash=UNSIGNED_PAYLOAD,
        )
        string_to_sign = build_string_to_sign(amz_date, scope, canonical_request)
        params["X-Amz-Signature"] = compute_signature(self._signing_key(date), string_to_sign)
        return params

    def _check_credentials(self) -> None:
        if not self.access_key or not self._secret_key:
            raise ConfigurationError("Both access_key and secret_key are required to sign requests.")

    def _scope(self, date: str) -> str:
        return f"{date}/{self.region}/{self.service}/{SCOPE_TERMINATOR}"

    def _signing_key(self, date: str) -> bytes:
        """Return the derived signing key, caching it per day."""
        cache_key = (date, self.region, self.service)
        cached = self._signing_key_cache.get(cache_key)
        if cached is not None:
            return cached

        signing_key = derive_signing_key(self._secret_key, date, self.region, self.service)

        # Keys are per-day, so the cache only ever needs a couple of entries
        if len(self._signing_key_cache) > 8:
            self._signing_key_cache.clear()
        self._signing_key_cache[cache_key] = signing_key
        return signing_key


# ---------------------------------------------------------------------------
# Module-level utility functions
# ---------------------------------------------------------------------------


def sha256_hex(data: bytes) -> str:
    """Return the hex SHA-256 digest used as x-amz-content-sha256."""
    return hashlib.sha256(data).hexdigest()


def derive_signing_key(secret_key: str, date: str, region: str, service: str) -> bytes:
    """Derive the SigV4 signing key via the HMAC-SHA256 chain.

    Args:
        secret_key: The secret access key.
        date: Date string (YYYYMMDD).
        region: AWS region.
        service: AWS service name.

    Returns:
        The 32-byte signing key.
    """
    k_date = hmac.new(
        (KEY_PREFIX + secret_key).encode("utf-8"),
        date.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    k_region = hmac.new(k_date, region.encode("utf-8"), hashlib.sha256).digest()
    k_service = hmac.new(k_region, service.encode("utf-8"), hashlib.sha256).digest()
    k_signing = hmac.new(k_service, SCOPE_TERMINATOR.encode("utf-8"), hashlib.sha256).digest()
    return k_signing


def build_canonical_request(
    method: str,
    uri: str,
    canonical_query: str,
    headers: Mapping[str, str],
    signed_headers: list[str],
    payload_hash: str,
) -> str:
    """Build the canonical request string.

    Args:
        method: HTTP method (uppercase).
        uri: The raw request URI path.
        canonical_query: The already canonical query string.
        headers: Request headers (names may be mixed case).
        signed_headers: Signed header names (lowercase).
        payload_hash: SHA-256 hex digest or UNSIGNED-PAYLOAD.

    Returns:
        The canonical request string.
    """
    canonical_uri = uri_encode_path(uri)

    lower_headers: dict[str, str] = {}
    for name, value in headers.items():
        lower_name = name.lower()
        if lower_name in lower_headers:
            lower_headers[lower_name] += "," + _trim_header_value(value)
        else:
            lower_headers[lower_name] = _trim_header_value(value)

    sorted_signed = sorted(signed_headers)
    canonical_headers = "".join(f"{name}:{lower_headers.get(name, '')}\n" for name in sorted_signed)

    parts = [
        method,
        canonical_uri,
        canonical_query,
        canonical_headers,
        ";".join(sorted_signed),
        payload_hash,
    ]
    return "\n".join(parts)


def build_string_to_sign(timestamp: str, scope: str, canonical_request: str) -> str:
    """Build the string to sign.

    Args:
        timestamp: ISO 8601 timestamp (YYYYMMDDTHHMMSSZ).
        scope: Credential scope (YYYYMMDD/region/s3/aws4_request).
        canonical_request: The assembled canonical request string.

    Returns:
        The string to sign.
    """
    canonical_hash = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()
    return f"{ALGORITHM}\n{timestamp}\n{scope}\n{canonical_hash}"


def compute_signature(signing_key: bytes, string_to_sign: str) -> str:
    """Compute the final HMAC-SHA256 hex signature."""
    return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


def uri_encode(s: str, encode_slash: bool = True) -> str:
    """S3-compatible URI encoding.

    Characters A-Z, a-z, 0-9, '-', '_', '.', '~' are not encoded.
    All other characters are percent-encoded with uppercase hex.
    Spaces become %20 (not +).

    Args:
        s: The string to encode.
        encode_slash: If True (default), '/' is encoded as %2F.

    Returns:
        The URI-encoded string.
    """
    safe = "-_.~" if encode_slash else "-_.~/"
    return urllib.parse.quote(s, safe=safe)


def uri_encode_path(path: str) -> str:
    """URI-encode a path, preserving forward slashes."""
    if not path:
        return "/"
    result = "/".join(uri_encode(seg, encode_slash=False) for seg in path.split("/"))
    if not result.startswith("/"):
        result = "/" + result
    return result


def encode_request_path(path: str) -> str:
    """URI-encode a path for the request line.

    Same as ``uri_encode_path`` except that dot-only segments ("." and "..")
    have their dots percent-encoded, so HTTP stacks do not collapse them.
    The server decodes them back, so the signature still covers the
    ``uri_encode_path`` form.
    """
    segments = uri_encode_path(path).split("/")
    return "/".join(
        seg.replace(".", "%2E") if seg in (".", "..") else seg for seg in segments
    )


def build_canonical_query_string(query: Mapping[str, str]) -> str:
    """Build the canonical query string from decoded parameters.

    Parameters are sorted by name (byte-order), then by value. Each name
    and value is URI-encoded. Flag parameters use an empty value
    (e.g., 'uploads=').

    Args:
        query: Decoded query parameters.

    Returns:
        The canonical query string, also used verbatim on the wire.
    """
    params = sorted((str(name), str(value)) for name, value in query.items())
    return "&".join(f"{uri_encode(name)}={uri_encode(value)}" for name, value in params)


def _trim_header_value(value: str) -> str:
    """Strip a header value and collapse sequential spaces."""
    return re.sub(r" +", " ", value.strip())


def _format_timestamp(timestamp: datetime | None) -> tuple[str, str]:
    """Return (x-amz-date, credential date) for a signing time."""
    if timestamp is None:
        timestamp = datetime.now(timezone.utc)
    elif timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    return timestamp.strftime("%Y%m%dT%H%M%SZ"), timestamp.strftime("%Y%m%d")
