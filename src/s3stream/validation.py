"""Argument validation helpers for s3stream.

These functions enforce S3 naming and parameter rules before any request is
signed, so invalid calls fail without touching the network.

Each function raises ``InvalidArgumentError`` on invalid input.
"""

from s3stream.config import MAX_PART_SIZE, MIN_PART_SIZE
from s3stream.errors import InvalidArgumentError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_MAX_KEY_BYTES = 1024
MAX_PARTS = 10000


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_object_key(key: str) -> None:
    """Validate an S3 object key.

    Args:
        key: The object key string.

    Raises:
        InvalidArgumentError: If the key is empty or exceeds 1024 bytes when
            UTF-8 encoded.
    """
    if not key:
        raise InvalidArgumentError("Object key must not be empty.")
    if len(key.encode("utf-8")) > _MAX_KEY_BYTES:
        raise InvalidArgumentError("Your key is too long.")


def validate_part_size(part_size: int) -> int:
    """Validate the bytes-per-part option of an upload.

    Every part but the last must be at least 5 MiB, so smaller values can
    never produce a valid multipart upload.

    Returns:
        The validated part size.

    Raises:
        InvalidArgumentError: If the size is outside 5 MiB..5 GiB.
    """
    if part_size < MIN_PART_SIZE:
        raise InvalidArgumentError(
            f"Part size must be at least {MIN_PART_SIZE} bytes, got {part_size}."
        )
    if part_size > MAX_PART_SIZE:
        raise InvalidArgumentError(
            f"Part size must be at most {MAX_PART_SIZE} bytes, got {part_size}."
        )
    return part_size


def validate_part_number(part_number: int) -> None:
    """Reject part numbers beyond the S3 limit of 10000 parts per upload."""
    if part_number > MAX_PARTS:
        raise InvalidArgumentError(
            f"Upload needs more than {MAX_PARTS} parts; use a larger part size."
        )


def validate_range(offset: int, length: int | None) -> None:
    """Validate a byte range request.

    Args:
        offset: First byte to read.
        length: Number of bytes to read, or None for the rest of the object.

    Raises:
        InvalidArgumentError: If the offset is negative or the length is not
            positive.
    """
    if offset < 0:
        raise InvalidArgumentError(f"Range offset must not be negative, got {offset}.")
    if length is not None and length < 1:
        raise InvalidArgumentError(f"Range length must be positive, got {length}.")
