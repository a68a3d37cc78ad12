"""Result types returned by s3stream operations.

These dataclasses carry what the server reported about an upload, a part or
an object; ``ObjectResponse`` additionally owns a streamed response body.
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime

import httpx

from s3stream.errors import TransportError

_CONTENT_RANGE_RE = re.compile(r"^bytes (\d+)-(\d+)/(\d+|\*)$")
_META_PREFIX = "x-amz-meta-"


@dataclass
class PartResult:
    """One uploaded part of a multipart upload.

    Attributes:
        part_number: The 1-based part number.
        etag: The part ETag as reported by the server (quotes stripped).
        size: Number of bytes in the part.
    """

    part_number: int
    etag: str
    size: int


@dataclass
class UploadedObjectInfo:
    """Outcome of a put_object call.

    Attributes:
        etag: The object ETag as reported by the server (quotes stripped).
            Multipart uploads have a composite ETag ending in ``-<parts>``.
        version_id: The x-amz-version-id header, if versioning is enabled.
    """

    etag: str
    version_id: str | None = None


@dataclass
class ObjectStat:
    """Object metadata returned by stat_object."""

    key: str
    size: int
    etag: str
    last_modified: datetime | None = None
    content_type: str | None = None
    version_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


def normalize_etag(value: str | None) -> str | None:
    """Strip the surrounding quotes S3 puts around ETag values."""
    if value is None:
        return None
    return value.strip().strip('"') or None


def extract_metadata(headers: Mapping[str, str]) -> dict[str, str]:
    """Collect x-amz-meta-* headers with the prefix removed."""
    meta: dict[str, str] = {}
    for name, value in headers.items():
        lower_name = name.lower()
        if lower_name.startswith(_META_PREFIX):
            meta[lower_name[len(_META_PREFIX) :]] = value
    return meta


def parse_last_modified(value: str | None) -> datetime | None:
    """Parse an RFC 7231 Last-Modified header, returning None if malformed."""
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def format_range_header(offset: int, length: int | None) -> str:
    """Build a Range header value for ``length`` bytes starting at ``offset``."""
    if length is None:
        return f"bytes={offset}-"
    return f"bytes={offset}-{offset + length - 1}"


def parse_content_range(header: str | None) -> tuple[int, int, int | None] | None:
    """Parse a ``Content-Range: bytes start-end/total`` response header.

    Returns:
        (start, end, total) with inclusive offsets and total None when the
        server sent ``*``, or None if the header is absent or malformed.
    """
    if not header:
        return None
    m = _CONTENT_RANGE_RE.match(header.strip())
    if not m:
        return None
    total = None if m.group(3) == "*" else int(m.group(3))
    return int(m.group(1)), int(m.group(2)), total


class ObjectResponse:
    """A downloaded object whose body is streamed on demand.

    The body is read through ``aiter_bytes()``, ``read()`` or ``text()``.
    Call ``aclose()`` (or use ``async with``) to release the connection,
    which is safe before the body has been fully read.

    Attributes:
        key: The object key.
        status_code: 200 for full downloads, 206 for partial ones.
        etag: The object ETag (quotes stripped).
        content_length: Number of body bytes, if reported.
        content_range: Parsed Content-Range (start, end, total), if any.
        content_type: The Content-Type header.
        last_modified: Parsed Last-Modified header.
        metadata: User metadata from x-amz-meta-* headers.
    """

    def __init__(self, key: str, response: httpx.Response) -> None:
        self.key = key
        self._response = response
        headers = response.headers
        self.status_code = response.status_code
        self.etag = normalize_etag(headers.get("etag"))
        length = headers.get("content-length")
        self.content_length = int(length) if length and length.isdigit() else None
        self.content_range = parse_content_range(headers.get("content-range"))
        self.content_type = headers.get("content-type")
        self.last_modified = parse_last_modified(headers.get("last-modified"))
        self.metadata = extract_metadata(headers)

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    async def aiter_bytes(self, chunk_size: int | None = None) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes(chunk_size):
                yield chunk
        except httpx.TransportError as exc:
            raise self._read_failed(exc) from exc

    async def read(self) -> bytes:
        """Read the remaining body and release the connection."""
        try:
            return await self._response.aread()
        except httpx.TransportError as exc:
            raise self._read_failed(exc) from exc
        finally:
            await self._response.aclose()

    def _read_failed(self, exc: httpx.TransportError) -> TransportError:
        return TransportError(f"Reading the body of {self.key!r} failed: {exc!r}")

    async def text(self, encoding: str = "utf-8") -> str:
        return (await self.read()).decode(encoding)

    async def aclose(self) -> None:
        await self._response.aclose()

    async def __aenter__(self) -> "ObjectResponse":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return (
            f"ObjectResponse(key={self.key!r}, status_code={self.status_code}, "
            f"etag={self.etag!r}, content_length={self.content_length!r})"
        )
