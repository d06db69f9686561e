"""Structured errors raised by the media gateway.

Every failure that leaves the gateway is a :class:`GatewayError` carrying a
machine readable ``code`` and the HTTP ``status`` the boundary should use.
Transport exceptions are translated into these types where they occur.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "GatewayError",
    "RemoteConnectionError",
    "CommandTimeout",
    "RemoteNotFound",
    "PermissionDeniedRemote",
    "RemoteCommandFailed",
    "RemoteConflict",
    "InvalidRemotePath",
    "UnknownServer",
    "CacheFull",
    "CorruptLocalCache",
    "FetchAborted",
    "ThumbnailExtractionFailed",
    "UnsupportedStreamType",
]


class GatewayError(RuntimeError):
    """Base class for structured gateway failures."""

    default_code = "error"
    default_status = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status = status or self.default_status

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class RemoteConnectionError(GatewayError):
    """The command channel could not be established or was lost."""

    default_code = "connection_error"
    default_status = 502

    def __init__(self, message: str, *, transient: bool = True, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.transient = transient


class CommandTimeout(GatewayError):
    default_code = "command_timeout"
    default_status = 504


class RemoteNotFound(GatewayError):
    default_code = "not_found"
    default_status = 404


class PermissionDeniedRemote(GatewayError):
    default_code = "permission_denied"
    default_status = 403


class RemoteCommandFailed(GatewayError):
    """A remote command exited non-zero without a recognised cause."""

    default_code = "command_failed"
    default_status = 500

    def __init__(self, message: str, *, exit_code: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.exit_code = exit_code


class RemoteConflict(GatewayError):
    default_code = "exists"
    default_status = 409


class InvalidRemotePath(GatewayError):
    default_code = "invalid_path"
    default_status = 400


class UnknownServer(GatewayError):
    default_code = "unknown_server"
    default_status = 404


class CacheFull(GatewayError):
    """Quota could not be met even after eviction.

    Recorded as a degraded condition; the oversized entry is still served.
    """

    default_code = "cache_full"
    default_status = 507


class CorruptLocalCache(GatewayError):
    default_code = "corrupt_cache"
    default_status = 500


class FetchAborted(GatewayError):
    """The entry was invalidated while its fetch was still running."""

    default_code = "fetch_aborted"
    default_status = 409


class ThumbnailExtractionFailed(GatewayError):
    default_code = "thumbnail_failed"
    default_status = 500


class UnsupportedStreamType(GatewayError):
    default_code = "unsupported_stream_type"
    default_status = 500
