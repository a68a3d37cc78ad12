"""Multipart upload orchestration for s3stream.

Drives the S3 multipart sub-protocol for one object:
    - CreateMultipartUpload (POST /{key}?uploads)
    - UploadPart (PUT /{key}?partNumber&uploadId)
    - CompleteMultipartUpload (POST /{key}?uploadId)
    - AbortMultipartUpload (DELETE /{key}?uploadId)

Once the upload is initiated it always ends in exactly one of complete or
abort, whatever happens in between (part failure, completion failure,
cancellation of the calling task).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from s3stream import metrics
from s3stream.chunker import StreamChunker
from s3stream.errors import ProtocolError, S3ClientError
from s3stream.objects import PartResult, UploadedObjectInfo, normalize_etag
from s3stream.validation import validate_part_number
from s3stream.xml_utils import (
    parse_complete_multipart_upload,
    parse_error,
    parse_initiate_multipart_upload,
    render_complete_multipart_upload,
)

if TYPE_CHECKING:
    from s3stream.client import S3Client

logger = logging.getLogger(__name__)


class MultipartUpload:
    """One multipart upload session.

    Parts are uploaded by up to ``max_concurrency`` tasks while the next
    chunk is read from the source. Results land in ``parts`` keyed by part
    number; completion always lists them in ascending order.

    Attributes:
        key: The object key.
        upload_id: Server-assigned identifier, set once initiated.
        parts: part_number -> PartResult for every finished part.
    """

    def __init__(
        self,
        client: S3Client,
        key: str,
        headers: Mapping[str, str] | None = None,
        max_concurrency: int = 4,
    ) -> None:
        self.client = client
        self.key = key
        self.headers = dict(headers or {})
        self.max_concurrency = max_concurrency
        self.upload_id: str | None = None
        self.parts: dict[int, PartResult] = {}
        self._lock = asyncio.Lock()
        self._aborted = False

    async def run(self, first_chunk: bytes, chunker: StreamChunker) -> UploadedObjectInfo:
        """Upload ``first_chunk`` and every remaining chunk, then complete.

        Args:
            first_chunk: The chunk already pulled by the caller (part 1).
            chunker: The source of the remaining chunks.

        Returns:
            The composite ETag reported by the server.
        """
        self.upload_id = await self._initiate()
        logger.info(
            "Started multipart upload %s for %s",
            self.upload_id,
            self.key,
            extra={"upload_id": self.upload_id},
        )
        try:
            await self._upload_parts(first_chunk, chunker)
            info = await self._complete()
        except BaseException as exc:
            await self._abort(exc)
            raise

        metrics.record_multipart("completed")
        logger.info(
            "Completed multipart upload %s for %s (%d parts, etag=%s)",
            self.upload_id,
            self.key,
            len(self.parts),
            info.etag,
            extra={"upload_id": self.upload_id},
        )
        return info

    async def _initiate(self) -> str:
        response = await self.client._execute(
            "POST", self.key, query={"uploads": ""}, headers=self.headers, body=b""
        )
        return parse_initiate_multipart_upload(response.content)

    async def _upload_parts(self, chunk: bytes | None, chunker: StreamChunker) -> None:
        """Upload chunks as parts 1..N with bounded concurrency.

        The first failed part stops reading, even mid-chunk, and cancels the
        parts still in flight before the error propagates.
        """
        slots = asyncio.Semaphore(self.max_concurrency)
        in_flight: set[asyncio.Task[PartResult]] = set()
        part_number = 0
        try:
            while chunk is not None:
                await slots.acquire()
                _reap(in_flight)
                part_number += 1
                validate_part_number(part_number)
                task = asyncio.create_task(self._upload_part(part_number, chunk))
                task.add_done_callback(lambda _task: slots.release())
                in_flight.add(task)
                chunk = await _read_next(chunker, in_flight)
            await asyncio.gather(*in_flight)
        except BaseException:
            for task in in_flight:
                task.cancel()
            await asyncio.gather(*in_flight, return_exceptions=True)
            raise

    async def _upload_part(self, part_number: int, chunk: bytes) -> PartResult:
        response = await self.client._execute(
            "PUT",
            self.key,
            query={"partNumber": str(part_number), "uploadId": self.upload_id},
            body=chunk,
        )
        etag = normalize_etag(response.headers.get("etag"))
        if etag is None:
            raise ProtocolError(f"Part {part_number} of {self.key!r} returned no ETag")

        result = PartResult(part_number=part_number, etag=etag, size=len(chunk))
        async with self._lock:
            self.parts[part_number] = result
        logger.debug(
            "Uploaded part %d of %s (%d bytes)",
            part_number,
            self.upload_id,
            len(chunk),
            extra={"upload_id": self.upload_id, "part_number": part_number},
        )
        return result

    async def _complete(self) -> UploadedObjectInfo:
        async with self._lock:
            manifest = [(n, self.parts[n].etag) for n in sorted(self.parts)]
        body = render_complete_multipart_upload(manifest).encode("utf-8")
        response = await self.client._execute(
            "POST",
            self.key,
            query={"uploadId": self.upload_id},
            headers={"content-type": "application/xml"},
            body=body,
        )
        # S3 may report a completion failure inside a 200 response
        fields = parse_error(response.content)
        if fields is not None:
            raise self.client.server_error_from(response, fields, self.key)
        return UploadedObjectInfo(
            etag=parse_complete_multipart_upload(response.content),
            version_id=response.headers.get("x-amz-version-id"),
        )

    async def _abort(self, exc: BaseException) -> None:
        """Abort the upload once; a failure here never replaces ``exc``."""
        if self._aborted or self.upload_id is None:
            return
        self._aborted = True
        metrics.record_multipart("aborted")
        try:
            await self.client._execute("DELETE", self.key, query={"uploadId": self.upload_id})
        except Exception as abort_exc:
            logger.warning(
                "Failed to abort multipart upload %s for %s: %s",
                self.upload_id,
                self.key,
                abort_exc,
                extra={"upload_id": self.upload_id},
            )
            if isinstance(exc, S3ClientError):
                exc.abort_error = abort_exc
            return
        logger.info(
            "Aborted multipart upload %s for %s after %r",
            self.upload_id,
            self.key,
            exc,
            extra={"upload_id": self.upload_id},
        )


async def _read_next(
    chunker: StreamChunker, in_flight: set[asyncio.Task[PartResult]]
) -> bytes | None:
    """Read the next chunk, giving up as soon as an in-flight part fails.

    A source that stalls must not hide a failed part, so the read races
    against the part tasks.
    """
    read = asyncio.ensure_future(chunker.next_chunk())
    try:
        while not read.done():
            await asyncio.wait({read, *in_flight}, return_when=asyncio.FIRST_COMPLETED)
            _reap(in_flight)
    finally:
        if not read.done():
            read.cancel()
            await asyncio.gather(read, return_exceptions=True)
    return read.result()


def _reap(tasks: set[asyncio.Task[PartResult]]) -> None:
    """Drop finished part tasks, re-raising the first failure found."""
    for task in [t for t in tasks if t.done()]:
        tasks.discard(task)
        task.result()
