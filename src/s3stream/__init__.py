"""s3stream - async streaming client for S3-compatible object storage."""

from s3stream.client import S3Client
from s3stream.config import ClientConfig, load_config
from s3stream.errors import (
    ConfigurationError,
    InvalidArgumentError,
    ProtocolError,
    S3ClientError,
    ServerError,
    TransportError,
)
from s3stream.logging_config import configure_logging
from s3stream.objects import ObjectResponse, ObjectStat, UploadedObjectInfo

__version__ = "0.1.0"

__all__ = [
    "ClientConfig",
    "ConfigurationError",
    "InvalidArgumentError",
    "ObjectResponse",
    "ObjectStat",
    "ProtocolError",
    "S3Client",
    "S3ClientError",
    "ServerError",
    "TransportError",
    "UploadedObjectInfo",
    "configure_logging",
    "load_config",
]
