"""Configuration loading and Pydantic models for s3stream."""

import urllib.parse
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from s3stream.errors import ConfigurationError

MIN_PART_SIZE = 5 * 1024 * 1024
MAX_PART_SIZE = 5 * 1024 * 1024 * 1024
MAX_PART_CONCURRENCY = 16


class ClientConfig(BaseModel):
    """Connection settings for one bucket on one S3-compatible endpoint.

    Instances are frozen; build a new one to change a setting.
    """

    model_config = ConfigDict(frozen=True)

    end_point: str
    port: int | None = Field(default=None, ge=1, le=65535)
    use_ssl: bool = True
    region: str = "us-east-1"
    access_key: str = ""
    secret_key: str = ""
    bucket: str
    path_style: bool = True
    part_size: int = Field(default=MIN_PART_SIZE, ge=MIN_PART_SIZE, le=MAX_PART_SIZE)
    max_concurrency: int = Field(default=4, ge=1, le=MAX_PART_CONCURRENCY)
    timeout: float = Field(default=60.0, gt=0)

    @property
    def scheme(self) -> str:
        return "https" if self.use_ssl else "http"

    @property
    def host_header(self) -> str:
        """The Host header value, including the bucket for virtual-host style."""
        host = self.end_point if self.path_style else f"{self.bucket}.{self.end_point}"
        default_port = 443 if self.use_ssl else 80
        if self.port is not None and self.port != default_port:
            return f"{host}:{self.port}"
        return host

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host_header}"

    def object_path(self, key: str) -> str:
        """Return the raw (unencoded) request path for an object key."""
        if self.path_style:
            return f"/{self.bucket}/{key}"
        return f"/{key}"


class LoggingConfig(BaseModel):
    """Log level and output format."""

    level: str = "INFO"
    format: str = "text"


class S3StreamConfig(BaseModel):
    """Top-level configuration file contents."""

    s3: ClientConfig
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _parse_endpoint(data: dict[str, Any]) -> dict[str, Any]:
    """Split an ``endpoint`` URL (``https://host:port``) into client fields."""
    endpoint = data.get("endpoint")
    if not endpoint:
        return {}
    parsed = urllib.parse.urlsplit(endpoint)
    if not parsed.hostname:
        raise ConfigurationError(f"Invalid endpoint URL: {endpoint}")
    result: dict[str, Any] = {
        "end_point": parsed.hostname,
        "use_ssl": parsed.scheme != "http",
    }
    if parsed.port is not None:
        result["port"] = parsed.port
    return result


def _parse_s3(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the s3 section from YAML data into a dict for Pydantic.

    Accepts either ``end_point``/``port``/``use_ssl`` or a single
    ``endpoint`` URL. Credentials may be nested under ``credentials``.
    """
    if data is None:
        raise ConfigurationError("Missing 's3' section in configuration")
    result = {k: v for k, v in data.items() if k not in ("endpoint", "credentials")}
    result.update(_parse_endpoint(data))
    credentials = data.get("credentials")
    if isinstance(credentials, dict):
        result["access_key"] = credentials.get("access_key", "")
        result["secret_key"] = credentials.get("secret_key", "")
    return result


def _parse_logging(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the logging section from YAML data."""
    if data is None:
        return {}
    return {
        "level": data.get("level", "INFO"),
        "format": data.get("format", "text"),
    }


def load_config(path: Path) -> S3StreamConfig:
    """Load an S3StreamConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated S3StreamConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ConfigurationError: If a value is missing or invalid.
    """
    with open(path, "r") as fh:
        try:
            raw: dict[str, Any] = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    try:
        return S3StreamConfig(
            s3=ClientConfig(**_parse_s3(raw.get("s3"))),
            logging=LoggingConfig(**_parse_logging(raw.get("logging"))),
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration in {path}: {exc}") from exc
