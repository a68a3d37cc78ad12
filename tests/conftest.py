"""Shared pytest fixtures for s3stream tests.

The client talks to ``FakeS3``, an in-process S3 server mounted through
``httpx.MockTransport``. It checks SigV4 signatures with the same secret
the client is configured with, stores objects in memory and computes ETags
the way S3 does (MD5 for plain objects, MD5 of the part digests plus
``-<parts>`` for multipart objects), so tests can assert on exact values.
"""

import asyncio
import hashlib
import re
import urllib.parse
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from email.utils import formatdate

import httpx
import pytest

from s3stream.auth import (
    build_canonical_query_string,
    build_canonical_request,
    build_string_to_sign,
    compute_signature,
    derive_signing_key,
    sha256_hex,
)
from s3stream.client import S3Client
from s3stream.config import ClientConfig

AUTH_HEADER_RE = re.compile(
    r"AWS4-HMAC-SHA256 Credential=(?P<access_key>[^/]+)/(?P<scope>[^,]+), "
    r"SignedHeaders=(?P<signed_headers>[^,]+), Signature=(?P<signature>[0-9a-f]{64})"
)
RANGE_RE = re.compile(r"^bytes=(\d+)-(\d*)$")
MIN_PART_SIZE = 5 * 1024 * 1024

SIGNATURE_MISMATCH_MESSAGE = (
    "The request signature we calculated does not match the signature you provided. "
    "Check your key and signing method."
)


@dataclass
class RecordedRequest:
    """A request as seen by the fake server."""

    method: str
    key: str
    query: dict[str, str]
    headers: httpx.Headers
    body: bytes


@dataclass
class StoredObject:
    data: bytes
    etag: str
    content_type: str = "binary/octet-stream"
    metadata: dict[str, str] = field(default_factory=dict)


def render_error(code: str, message: str, resource: str = "", request_id: str = "") -> bytes:
    """Render an S3 XML error body (the Error element has no namespace)."""
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        "<Error>",
        f"<Code>{code}</Code>",
        f"<Message>{message}</Message>",
    ]
    if resource:
        parts.append(f"<Resource>{resource}</Resource>")
    if request_id:
        parts.append(f"<RequestId>{request_id}</RequestId>")
    parts.append("</Error>")
    return "\n".join(parts).encode("utf-8")


class FakeS3:
    """A minimal S3-compatible server for one path-style bucket.

    Knobs for failure injection:
        fail_parts: part numbers answered with 500 InternalError.
        fail_abort: answer AbortMultipartUpload with 500.
        fail_complete_in_body: answer CompleteMultipartUpload with 200 and
            an <Error> body.
        ignore_range: answer ranged GETs with the full object (200).
        part_delays: seconds to sleep before answering a given part.
    """

    def __init__(self, bucket: str, access_key: str, secret_key: str, region: str) -> None:
        self.bucket = bucket
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self.objects: dict[str, StoredObject] = {}
        self.uploads: dict[str, dict[int, bytes]] = {}
        self.upload_headers: dict[str, dict[str, str]] = {}
        self.requests: list[RecordedRequest] = []
        self.completed_manifests: list[list[int]] = []
        self.part_completion_order: list[int] = []
        self.fail_parts: set[int] = set()
        self.fail_abort = False
        self.fail_complete_in_body = False
        self.ignore_range = False
        self.part_delays: dict[int, float] = {}

    # -- Request bookkeeping ---------------------------------------------------

    def requests_for(self, method: str, query_key: str | None = None) -> list[RecordedRequest]:
        return [
            r
            for r in self.requests
            if r.method == method and (query_key is None or query_key in r.query)
        ]

    @property
    def part_uploads(self) -> list[RecordedRequest]:
        return [r for r in self.requests_for("PUT") if "partNumber" in r.query]

    @property
    def plain_puts(self) -> list[RecordedRequest]:
        return [r for r in self.requests_for("PUT") if "partNumber" not in r.query]

    # -- Dispatch --------------------------------------------------------------

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        raw_path = request.url.raw_path.split(b"?", 1)[0].decode("ascii")
        path = urllib.parse.unquote(raw_path)
        query = dict(
            urllib.parse.parse_qsl(request.url.query.decode("ascii"), keep_blank_values=True)
        )
        prefix = f"/{self.bucket}/"
        if not path.startswith(prefix):
            return self._error(404, "NoSuchBucket", "The specified bucket does not exist.")
        key = path[len(prefix) :]
        self.requests.append(RecordedRequest(request.method, key, query, request.headers, body))

        if not self._signature_matches(request, path, query, body):
            return self._error(403, "SignatureDoesNotMatch", SIGNATURE_MISMATCH_MESSAGE, path)

        method = request.method
        if method == "POST" and "uploads" in query:
            return self._initiate(key, request.headers)
        if method == "POST" and "uploadId" in query:
            return self._complete(key, query["uploadId"], body)
        if method == "PUT" and "uploadId" in query:
            return await self._upload_part(query["uploadId"], int(query["partNumber"]), body)
        if method == "DELETE" and "uploadId" in query:
            return self._abort(query["uploadId"])
        if method == "PUT":
            return self._put(key, body, request.headers)
        if method in ("GET", "HEAD"):
            return self._get(key, request.headers, head=method == "HEAD")
        if method == "DELETE":
            self.objects.pop(key, None)
            return httpx.Response(204)
        return self._error(405, "MethodNotAllowed", "Method not allowed.")

    def _signature_matches(
        self, request: httpx.Request, path: str, query: dict[str, str], body: bytes
    ) -> bool:
        m = AUTH_HEADER_RE.match(request.headers.get("authorization", ""))
        if not m or m.group("access_key") != self.access_key:
            return False
        payload_hash = request.headers["x-amz-content-sha256"]
        if payload_hash != sha256_hex(body):
            return False
        date, region, service, _ = m.group("scope").split("/")
        signed_headers = m.group("signed_headers").split(";")
        canonical_request = build_canonical_request(
            method=request.method,
            uri=path,
            canonical_query=build_canonical_query_string(query),
            headers={name: request.headers[name] for name in signed_headers},
            signed_headers=signed_headers,
            payload_hash=payload_hash,
        )
        string_to_sign = build_string_to_sign(
            request.headers["x-amz-date"], m.group("scope"), canonical_request
        )
        signing_key = derive_signing_key(self.secret_key, date, region, service)
        return compute_signature(signing_key, string_to_sign) == m.group("signature")

    def _error(self, status: int, code: str, message: str, resource: str = "") -> httpx.Response:
        request_id = uuid.uuid4().hex[:16].upper()
        return httpx.Response(
            status,
            content=render_error(code, message, resource, request_id),
            headers={"content-type": "application/xml", "x-amz-request-id": request_id},
        )

    # -- Objects ---------------------------------------------------------------

    def _put(self, key: str, body: bytes, headers: httpx.Headers) -> httpx.Response:
        etag = hashlib.md5(body).hexdigest()
        self.objects[key] = StoredObject(
            data=body,
            etag=etag,
            content_type=headers.get("content-type", "binary/octet-stream"),
            metadata=_user_metadata(headers),
        )
        return httpx.Response(200, headers={"etag": f'"{etag}"'})

    def _get(self, key: str, headers: httpx.Headers, head: bool) -> httpx.Response:
        obj = self.objects.get(key)
        if obj is None:
            if head:
                return httpx.Response(404)
            return self._error(404, "NoSuchKey", "The specified key does not exist.", key)

        response_headers = {
            "etag": f'"{obj.etag}"',
            "content-type": obj.content_type,
            "last-modified": formatdate(0, usegmt=True),
            **{f"x-amz-meta-{k}": v for k, v in obj.metadata.items()},
        }
        data = obj.data
        status = 200
        range_header = headers.get("range")
        if range_header and not self.ignore_range:
            m = RANGE_RE.match(range_header)
            start = int(m.group(1))
            end = int(m.group(2)) if m.group(2) else len(data) - 1
            if start >= len(data):
                return self._error(416, "InvalidRange", "The requested range is not satisfiable.")
            end = min(end, len(data) - 1)
            response_headers["content-range"] = f"bytes {start}-{end}/{len(data)}"
            data = data[start : end + 1]
            status = 206

        response_headers["content-length"] = str(len(data))
        return httpx.Response(status, headers=response_headers, content=b"" if head else data)

    # -- Multipart -------------------------------------------------------------

    def _initiate(self, key: str, headers: httpx.Headers) -> httpx.Response:
        upload_id = uuid.uuid4().hex
        self.uploads[upload_id] = {}
        self.upload_headers[upload_id] = dict(headers)
        body = (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            '<InitiateMultipartUploadResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">'
            f"<Bucket>{self.bucket}</Bucket><Key>{key}</Key><UploadId>{upload_id}</UploadId>"
            "</InitiateMultipartUploadResult>"
        )
        return httpx.Response(200, content=body.encode("utf-8"))

    async def _upload_part(self, upload_id: str, part_number: int, body: bytes) -> httpx.Response:
        delay = self.part_delays.get(part_number)
        if delay:
            await asyncio.sleep(delay)
        if part_number in self.fail_parts:
            return self._error(500, "InternalError", "We encountered an internal error.")
        parts = self.uploads.get(upload_id)
        if parts is None:
            return self._error(404, "NoSuchUpload", "The specified multipart upload does not exist.")
        parts[part_number] = body
        self.part_completion_order.append(part_number)
        return httpx.Response(200, headers={"etag": f'"{hashlib.md5(body).hexdigest()}"'})

    def _complete(self, key: str, upload_id: str, body: bytes) -> httpx.Response:
        parts = self.uploads.get(upload_id)
        if parts is None:
            return self._error(404, "NoSuchUpload", "The specified multipart upload does not exist.")
        if self.fail_complete_in_body:
            return httpx.Response(
                200, content=render_error("InternalError", "Completion failed.", key)
            )

        root = ET.fromstring(body)
        ns = root.tag[: root.tag.index("}") + 1] if root.tag.startswith("{") else ""
        manifest: list[tuple[int, str]] = []
        for part_elem in root.findall(f"{ns}Part"):
            part_number = int(part_elem.find(f"{ns}PartNumber").text)
            etag = part_elem.find(f"{ns}ETag").text.strip('"')
            manifest.append((part_number, etag))
        self.completed_manifests.append([n for n, _ in manifest])

        numbers = [n for n, _ in manifest]
        if numbers != sorted(set(numbers)):
            return self._error(400, "InvalidPartOrder", "The list of parts was not in ascending order.")
        for index, (part_number, etag) in enumerate(manifest):
            data = parts.get(part_number)
            if data is None or hashlib.md5(data).hexdigest() != etag:
                return self._error(400, "InvalidPart", "One or more of the specified parts could not be found.")
            if index < len(manifest) - 1 and len(data) < MIN_PART_SIZE:
                return self._error(400, "EntityTooSmall", "Your proposed upload is smaller than the minimum allowed object size.")

        digests = b"".join(hashlib.md5(parts[n]).digest() for n, _ in manifest)
        etag = f"{hashlib.md5(digests).hexdigest()}-{len(manifest)}"
        headers = httpx.Headers(self.upload_headers.pop(upload_id))
        self.objects[key] = StoredObject(
            data=b"".join(parts[n] for n, _ in manifest),
            etag=etag,
            content_type=headers.get("content-type", "binary/octet-stream"),
            metadata=_user_metadata(headers),
        )
        del self.uploads[upload_id]
        result = (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            '<CompleteMultipartUploadResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">'
            f"<Location>http://localhost/{self.bucket}/{key}</Location>"
            f"<Bucket>{self.bucket}</Bucket><Key>{key}</Key><ETag>&quot;{etag}&quot;</ETag>"
            "</CompleteMultipartUploadResult>"
        )
        return httpx.Response(200, content=result.encode("utf-8"))

    def _abort(self, upload_id: str) -> httpx.Response:
        if self.fail_abort:
            return self._error(500, "InternalError", "We encountered an internal error.")
        if self.uploads.pop(upload_id, None) is None:
            return self._error(404, "NoSuchUpload", "The specified multipart upload does not exist.")
        self.upload_headers.pop(upload_id, None)
        return httpx.Response(204)


def _user_metadata(headers: httpx.Headers) -> dict[str, str]:
    return {
        name[len("x-amz-meta-") :]: value
        for name, value in headers.items()
        if name.lower().startswith("x-amz-meta-")
    }


@pytest.fixture
def config() -> ClientConfig:
    """Client settings for a local path-style endpoint."""
    return ClientConfig(
        end_point="localhost",
        port=9000,
        use_ssl=False,
        region="dev-region",
        access_key="AKIA_DEV",
        secret_key="secretkey",
        bucket="dev-bucket",
        path_style=True,
    )


@pytest.fixture
def fake_s3(config: ClientConfig) -> FakeS3:
    return FakeS3(config.bucket, config.access_key, config.secret_key, config.region)


@pytest.fixture
async def client(config: ClientConfig, fake_s3: FakeS3):
    """An S3Client wired to the fake server."""
    async with S3Client(config, transport=httpx.MockTransport(fake_s3)) as s3:
        yield s3
