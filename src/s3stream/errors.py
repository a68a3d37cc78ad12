"""Error types raised by the s3stream client."""

from __future__ import annotations


class S3ClientError(Exception):
    """Base class for every error raised by s3stream.

    Attributes:
        abort_error: Set when the error ended a multipart upload and the
            follow-up abort request failed as well.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.abort_error: Exception | None = None


class ConfigurationError(S3ClientError):
    """Credentials or endpoint configuration are missing or invalid."""


class InvalidArgumentError(S3ClientError, ValueError):
    """A caller-supplied argument is outside what S3 accepts."""


class TransportError(S3ClientError):
    """The request never produced an HTTP response (connect, TLS, timeout)."""


class ProtocolError(S3ClientError):
    """The server answered with a success status the client cannot interpret."""


class ServerError(S3ClientError):
    """An S3-compatible error response.

    Attributes:
        status_code: The HTTP status code of the response.
        code: The S3 error code string (e.g. "NoSuchKey", "SignatureDoesNotMatch").
        message: Human-readable error description.
        bucket_name: The bucket the client is configured for.
        region: The region the client is configured for.
        key: The object key of the failed request, if any.
        resource: The resource echoed by the server, if any.
        request_id: The server request identifier, if any.
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        bucket_name: str = "",
        region: str = "",
        key: str | None = None,
        resource: str | None = None,
        request_id: str | None = None,
    ) -> None:
        """Initialize the server error.

        Args:
            status_code: HTTP status code.
            code: S3 error code.
            message: Error description.
            bucket_name: Configured bucket name.
            region: Configured region.
            key: Object key involved in the request.
            resource: Resource reported by the server.
            request_id: Request identifier reported by the server.
        """
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.bucket_name = bucket_name
        self.region = region
        self.key = key
        self.resource = resource
        self.request_id = request_id

    @classmethod
    def from_response(
        cls,
        status_code: int,
        reason: str,
        fields: dict[str, str] | None,
        bucket_name: str,
        region: str,
        key: str | None = None,
        request_id: str | None = None,
    ) -> "ServerError":
        """Build a ServerError from parsed error fields.

        Falls back to code ``Unknown`` with the status line as message when
        the response carried no usable error document.

        Args:
            status_code: HTTP status code.
            reason: HTTP reason phrase.
            fields: Output of ``xml_utils.parse_error`` or None.
            bucket_name: Configured bucket name.
            region: Configured region.
            key: Object key involved in the request.
            request_id: Value of the x-amz-request-id header, if any.

        Returns:
            The constructed error.
        """
        if not fields or not fields.get("Code"):
            status_line = f"{status_code} {reason}".strip()
            return cls(
                status_code=status_code,
                code="Unknown",
                message=status_line,
                bucket_name=bucket_name,
                region=region,
                key=key,
                request_id=request_id,
            )
        return cls(
            status_code=status_code,
            code=fields["Code"],
            message=fields.get("Message", ""),
            bucket_name=bucket_name,
            region=region,
            key=fields.get("Key") or key,
            resource=fields.get("Resource"),
            request_id=fields.get("RequestId") or request_id,
        )

    def __repr__(self) -> str:
        return (
            f"ServerError(status_code={self.status_code!r}, code={self.code!r}, "
            f"message={self.message!r}, bucket_name={self.bucket_name!r}, "
            f"region={self.region!r}, key={self.key!r})"
        )
