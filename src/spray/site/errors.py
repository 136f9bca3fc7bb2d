"""Failure categories raised while loading configuration and serving objects."""

from __future__ import annotations

from typing import Optional


class SprayError(Exception):
    """Base class for errors raised by the site server."""

    error_type = "storage_error"


class InvalidPath(SprayError):
    error_type = "invalid_path"


class StorageError(SprayError):
    """Generic failure reported by the object store."""

    error_type = "storage_error"


class ObjectNotFound(StorageError):
    error_type = "object_not_found"

    def __init__(self, key: str) -> None:
        super().__init__(f"object {key!r} does not exist")
        self.key = key


class PermissionDenied(StorageError):
    error_type = "permission_denied"


class StorageTimeout(StorageError):
    error_type = "timeout"


class StorageConnectionError(StorageError):
    error_type = "connection_error"


class CopyError(SprayError):
    """Streaming the object body failed after the response was committed."""

    error_type = "copy_error"


class PanicError(SprayError):
    """Wraps an unexpected exception recovered by the request handler."""

    error_type = "panic"

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"panic: {cause!r}")
        self.cause = cause


class ConfigError(SprayError):
    error_type = "config_error"


class ConfigLoadError(ConfigError):
    error_type = "read_error"


class ConfigParseError(ConfigError):
    error_type = "parse_error"


class ConfigInvalidURL(ConfigError):
    error_type = "invalid_url"

    def __init__(self, path: str, destination: object, reason: str) -> None:
        super().__init__(f"invalid redirect destination URL for path {path!r}: {reason}")
        self.path = path
        self.destination = destination


def error_type_for(error: Optional[BaseException]) -> str:
    """Coarse label used on the ``errors_total`` metric and in logs."""
    if error is None:
        return "none"
    if isinstance(error, SprayError):
        return error.error_type
    if isinstance(error, TimeoutError):
        return "timeout"
    if isinstance(error, ConnectionError):
        return "connection_error"
    return "storage_error"
