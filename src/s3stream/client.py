"""Async client for one bucket of an S3-compatible object store.

Every request goes through the same pipeline: build the path for the
configured addressing style, sign with SigV4, send through a shared
``httpx.AsyncClient``, and turn non-2xx responses into ``ServerError``.

Uploads of unknown length are chunked lazily; a single chunk is sent with
one PUT, anything longer switches to the multipart upload protocol.
"""

import logging
import time
from collections.abc import Mapping
from pathlib import Path

import httpx

from s3stream import metrics
from s3stream.auth import (
    EMPTY_SHA256,
    MAX_PRESIGNED_EXPIRES,
    SigV4Signer,
    build_canonical_query_string,
    encode_request_path,
    sha256_hex,
)
from s3stream.chunker import StreamChunker, UploadSource
from s3stream.config import ClientConfig, load_config
from s3stream.errors import ConfigurationError, ProtocolError, ServerError, TransportError
from s3stream.logging_config import configure_logging
from s3stream.multipart import MultipartUpload
from s3stream.objects import (
    ObjectResponse,
    ObjectStat,
    UploadedObjectInfo,
    extract_metadata,
    format_range_header,
    normalize_etag,
    parse_last_modified,
)
from s3stream.validation import validate_object_key, validate_part_size, validate_range
from s3stream.xml_utils import parse_error

logger = logging.getLogger(__name__)

_BODY_METHODS = frozenset({"PUT", "POST"})


class S3Client:
    """Client bound to a single bucket on a single endpoint.

    Use as an async context manager, or call ``aclose()`` when done, to
    release pooled connections.

    Attributes:
        config: The immutable client configuration.
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Endpoint, bucket and credential settings.
            transport: Optional httpx transport (e.g. a MockTransport in tests).

        Raises:
            ConfigurationError: If the endpoint or bucket is missing.
        """
        if not config.end_point:
            raise ConfigurationError("An endpoint host is required.")
        if not config.bucket:
            raise ConfigurationError("A bucket name is required.")
        self.config = config
        self._signer = SigV4Signer(config.access_key, config.secret_key, config.region)
        self._http = httpx.AsyncClient(transport=transport, timeout=config.timeout)

    @classmethod
    def from_config_file(
        cls, path: Path, transport: httpx.AsyncBaseTransport | None = None
    ) -> "S3Client":
        """Build a client from a YAML file and apply its ``logging:`` section.

        Raises:
            FileNotFoundError: If the config file does not exist.
            ConfigurationError: If a value is missing or invalid.
        """
        config = load_config(path)
        configure_logging(config.logging.level, config.logging.format)
        return cls(config.s3, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "S3Client":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- Request pipeline ------------------------------------------------------

    async def _execute(
        self,
        method: str,
        key: str,
        query: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
        stream: bool = False,
    ) -> httpx.Response:
        """Sign and send one request for ``key``.

        Args:
            method: HTTP method.
            key: The object key.
            query: Query parameters (flag parameters map to "").
            headers: Extra headers to send and sign.
            body: Fully buffered request body, if any.
            stream: If True, the response body is left unread.

        Returns:
            The 2xx response.

        Raises:
            ConfigurationError: If credentials are missing.
            TransportError: If no response was received.
            ServerError: If the response status is not 2xx.
        """
        path = self.config.object_path(key)
        query = query or {}
        payload_hash = sha256_hex(body) if body else EMPTY_SHA256
        request_headers = {"host": self.config.host_header, **(headers or {})}
        signed = self._signer.sign_headers(method, path, query, request_headers, payload_hash)

        url = self.config.base_url + encode_request_path(path)
        canonical_query = build_canonical_query_string(query)
        if canonical_query:
            url = f"{url}?{canonical_query}"
        content = (body or b"") if method in _BODY_METHODS else None
        request = self._http.build_request(method, url, headers=signed, content=content)

        sent = len(body) if body else 0
        started = time.monotonic()
        try:
            response = await self._http.send(request, stream=stream)
        except httpx.TransportError as exc:
            metrics.record_request(method, "error", sent)
            raise TransportError(f"{method} {path} failed: {exc!r}") from exc

        duration_ms = round((time.monotonic() - started) * 1000, 2)
        metrics.record_request(method, response.status_code, sent)
        logger.debug(
            "%s %s -> %d (%.2f ms)",
            method,
            path,
            response.status_code,
            duration_ms,
            extra={
                "method": method,
                "path": path,
                "status": response.status_code,
                "duration_ms": duration_ms,
            },
        )

        if not response.is_success:
            raise await self._server_error(response, key)
        return response

    async def _server_error(self, response: httpx.Response, key: str) -> ServerError:
        """Read an error response and map it to a ServerError."""
        try:
            body = await response.aread()
        except httpx.TransportError as exc:
            raise TransportError(
                f"Reading the {response.status_code} error body for {key!r} failed: {exc!r}"
            ) from exc
        finally:
            await response.aclose()
        return self.server_error_from(response, parse_error(body), key)

    def server_error_from(
        self, response: httpx.Response, fields: dict[str, str] | None, key: str
    ) -> ServerError:
        """Build a ServerError with this client's bucket and region attached."""
        return ServerError.from_response(
            status_code=response.status_code,
            reason=response.reason_phrase,
            fields=fields,
            bucket_name=self.config.bucket,
            region=self.config.region,
            key=key,
            request_id=response.headers.get("x-amz-request-id"),
        )

    # -- Uploads ---------------------------------------------------------------

    async def put_object(
        self,
        key: str,
        data: UploadSource,
        *,
        part_size: int | None = None,
        metadata: Mapping[str, str] | None = None,
        content_type: str | None = None,
    ) -> UploadedObjectInfo:
        """Upload an object from a buffer or a stream of unknown length.

        The source is read one chunk ahead: if everything fits in one chunk
        it is sent with a single PUT, otherwise a multipart upload is used
        and completed (or aborted) before this call returns.

        Args:
            key: The object key.
            data: bytes, str (UTF-8), a file object, or a sync/async
                iterable of bytes.
            part_size: Bytes per part; defaults to the configured part size.
            metadata: User metadata stored as x-amz-meta-* headers.
            content_type: Content-Type of the stored object.

        Returns:
            The ETag reported by the server.
        """
        validate_object_key(key)
        part_size = validate_part_size(self.config.part_size if part_size is None else part_size)
        headers = _upload_headers(metadata, content_type)

        chunker = StreamChunker(data, part_size)
        try:
            first = await chunker.next_chunk()
            if not await chunker.has_more():
                return await self._put_single(key, first or b"", headers)
            upload = MultipartUpload(
                self, key, headers=headers, max_concurrency=self.config.max_concurrency
            )
            return await upload.run(first, chunker)
        finally:
            await chunker.aclose()

    async def _put_single(
        self, key: str, chunk: bytes, headers: Mapping[str, str]
    ) -> UploadedObjectInfo:
        """Upload a fully buffered payload with one PUT."""
        response = await self._execute("PUT", key, headers=headers, body=chunk)
        etag = normalize_etag(response.headers.get("etag"))
        if etag is None:
            raise ProtocolError(f"PUT {key!r} succeeded without returning an ETag")
        return UploadedObjectInfo(etag=etag, version_id=response.headers.get("x-amz-version-id"))

    # -- Downloads -------------------------------------------------------------

    async def get_object(self, key: str) -> ObjectResponse:
        """Download a whole object; the body is streamed.

        Raises:
            ProtocolError: If the server answered with a 2xx other than 200.
        """
        validate_object_key(key)
        response = await self._execute("GET", key, stream=True)
        if response.status_code != 200:
            await response.aclose()
            raise ProtocolError(
                f"GET {key!r} returned status {response.status_code} instead of 200"
            )
        return self._object_response(key, response)

    async def get_partial_object(
        self, key: str, offset: int, length: int | None = None
    ) -> ObjectResponse:
        """Download ``length`` bytes of an object starting at ``offset``.

        Args:
            key: The object key.
            offset: First byte to read.
            length: Number of bytes, or None to read to the end.

        Returns:
            A 206 response with the requested bytes as a stream.

        Raises:
            ProtocolError: If the server returned the full object instead.
        """
        validate_object_key(key)
        validate_range(offset, length)
        response = await self._execute(
            "GET", key, headers={"range": format_range_header(offset, length)}, stream=True
        )
        if response.status_code != 206:
            await response.aclose()
            raise ProtocolError(
                f"Range request for {key!r} was not honoured (status {response.status_code})"
            )
        return self._object_response(key, response)

    def _object_response(self, key: str, response: httpx.Response) -> ObjectResponse:
        obj = ObjectResponse(key, response)
        metrics.record_received(obj.content_length or 0)
        return obj

    # -- Object metadata -------------------------------------------------------

    async def stat_object(self, key: str) -> ObjectStat:
        """Return the size, ETag and metadata of an object (HEAD)."""
        validate_object_key(key)
        response = await self._execute("HEAD", key)
        headers = response.headers
        etag = normalize_etag(headers.get("etag"))
        length = headers.get("content-length")
        if etag is None or length is None:
            raise ProtocolError(f"HEAD {key!r} response is missing ETag or Content-Length")
        return ObjectStat(
            key=key,
            size=int(length),
            etag=etag,
            last_modified=parse_last_modified(headers.get("last-modified")),
            content_type=headers.get("content-type"),
            version_id=headers.get("x-amz-version-id"),
            metadata=extract_metadata(headers),
        )

    async def exists(self, key: str) -> bool:
        """Return True if the object exists, False on a 404."""
        try:
            await self.stat_object(key)
        except ServerError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True

    async def delete_object(self, key: str) -> None:
        """Delete an object. Deleting a missing key is not an error."""
        validate_object_key(key)
        await self._execute("DELETE", key)

    def presigned_get_object(self, key: str, expires: int = MAX_PRESIGNED_EXPIRES) -> str:
        """Return a URL that downloads ``key`` without credentials.

        Args:
            key: The object key.
            expires: Validity in seconds (1..604800, default 7 days).
        """
        validate_object_key(key)
        path = self.config.object_path(key)
        params = self._signer.presign("GET", path, self.config.host_header, expires)
        return (
            f"{self.config.base_url}{encode_request_path(path)}"
            f"?{build_canonical_query_string(params)}"
        )


def _upload_headers(
    metadata: Mapping[str, str] | None, content_type: str | None
) -> dict[str, str]:
    headers: dict[str, str] = {}
    if content_type:
        headers["content-type"] = content_type
    for name, value in (metadata or {}).items():
        headers[f"x-amz-meta-{name.lower()}"] = value
    return headers
