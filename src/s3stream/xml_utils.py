"""S3 XML request rendering and response parsing helpers for s3stream."""

import xml.etree.ElementTree as ET
from xml.sax.saxutils import escape as _sax_escape

from s3stream.errors import ProtocolError

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"

# Fields copied from an <Error> document when present
_ERROR_FIELDS = ("Code", "Message", "Resource", "RequestId", "Key", "BucketName")


def _escape_xml(value: str) -> str:
    """Escape special XML characters in a string value."""
    return _sax_escape(str(value))


def _namespace(root: ET.Element) -> str:
    """Return the ``{uri}`` prefix of the root tag, or "" if un-namespaced."""
    if root.tag.startswith("{"):
        return root.tag[: root.tag.index("}") + 1]
    return ""


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_text(root: ET.Element, name: str) -> str | None:
    """Find a direct child's text, namespaced or bare."""
    elem = root.find(f"{_namespace(root)}{name}")
    if elem is None:
        elem = root.find(name)
    if elem is None or elem.text is None:
        return None
    return elem.text.strip()


def _parse(body: bytes | str, document: str) -> ET.Element:
    try:
        return ET.fromstring(body)
    except ET.ParseError as exc:
        raise ProtocolError(f"Malformed {document} XML response: {exc}") from exc


def parse_error(body: bytes | str | None) -> dict[str, str] | None:
    """Parse an S3 error response body.

    The Error element has no XML namespace on AWS, but some servers add one.

    Args:
        body: The raw response body.

    Returns:
        A dict of the error fields found (Code, Message, Resource, RequestId,
        Key, BucketName), or None if the body is empty, not XML, or not an
        ``<Error>`` document.
    """
    if not body or not body.strip():
        return None
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return None
    if _local_name(root.tag) != "Error":
        return None

    fields: dict[str, str] = {}
    for name in _ERROR_FIELDS:
        text = _find_text(root, name)
        if text is not None:
            fields[name] = text
    return fields


def parse_initiate_multipart_upload(body: bytes | str) -> str:
    """Extract the UploadId from an InitiateMultipartUploadResult.

    Raises:
        ProtocolError: If the body is not XML or carries no UploadId.
    """
    root = _parse(body, "InitiateMultipartUploadResult")
    upload_id = _find_text(root, "UploadId")
    if not upload_id:
        raise ProtocolError("InitiateMultipartUploadResult is missing UploadId")
    return upload_id


def parse_complete_multipart_upload(body: bytes | str) -> str:
    """Extract the composite ETag from a CompleteMultipartUploadResult.

    Returns:
        The ETag with surrounding quotes removed.

    Raises:
        ProtocolError: If the body is not XML or carries no ETag.
    """
    root = _parse(body, "CompleteMultipartUploadResult")
    etag = _find_text(root, "ETag")
    if not etag:
        raise ProtocolError("CompleteMultipartUploadResult is missing ETag")
    return etag.strip('"')


def render_complete_multipart_upload(parts: list[tuple[int, str]]) -> str:
    """Render a CompleteMultipartUpload request body.

    Args:
        parts: (part_number, etag) pairs, already in ascending order. ETags
            are given unquoted and rendered quoted.

    Returns:
        An XML string listing every part.
    """
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<CompleteMultipartUpload xmlns="{S3_NAMESPACE}">',
    ]
    for part_number, etag in parts:
        lines.append("<Part>")
        lines.append(f"<PartNumber>{part_number}</PartNumber>")
        lines.append(f'<ETag>"{_escape_xml(etag)}"</ETag>')
        lines.append("</Part>")
    lines.append("</CompleteMultipartUpload>")
    return "\n".join(lines)
