from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    QUOTA_EXHAUSTED = "quota_exhausted"
    HTTP = "http"
    NOT_FOUND = "not_found"
    PARSE = "parse"
    UNRESOLVED = "unresolved"
    CONFIG = "config"


RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED, ErrorKind.SERVER})


class ConfigError(ValueError):
    pass


class IngestError(RuntimeError):
    """A classified failure raised by fetchers and transports.

    ``http_status`` is set when the remote service answered, which also
    means the request reached the provider.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        *,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.http_status = http_status

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


def kind_for_status(status: int) -> ErrorKind:
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 404 or status == 410:
        return ErrorKind.NOT_FOUND
    if 500 <= status < 600:
        return ErrorKind.SERVER
    return ErrorKind.HTTP
