"""Custom exception hierarchy for lastknown."""

from __future__ import annotations

from enum import StrEnum


class LastKnownError(Exception):
    """Base exception for all lastknown errors."""


class ConfigError(LastKnownError):
    """Invalid or missing configuration."""


class FetchErrorKind(StrEnum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    BAD_STATUS = "bad-status"


class FetchError(LastKnownError):
    """The origin could not produce a value (timeout, network, non-2xx)."""

    def __init__(
        self,
        message: str,
        *,
        kind: FetchErrorKind,
        status_code: int | None = None,
        url: str = "",
    ) -> None:
        self.kind = kind
        self.status_code = status_code
        self.url = url
        super().__init__(message)


class CacheErrorKind(StrEnum):
    CONNECTIVITY = "connectivity"
    TIMEOUT = "timeout"


class CacheError(LastKnownError):
    """Cache read or write failed."""

    def __init__(self, message: str, *, kind: CacheErrorKind = CacheErrorKind.CONNECTIVITY) -> None:
        self.kind = kind
        super().__init__(message)


class StoreErrorKind(StrEnum):
    CONNECTIVITY = "connectivity"
    CONSTRAINT = "constraint"


class StoreError(LastKnownError):
    """Durable store read or write failed."""

    def __init__(self, message: str, *, kind: StoreErrorKind = StoreErrorKind.CONNECTIVITY) -> None:
        self.kind = kind
        super().__init__(message)


class ChannelErrorKind(StrEnum):
    PUBLISH_NOT_PERSISTED = "publish-not-persisted"
    CONSUME_ERROR = "consume-error"
    DECODE_ERROR = "decode-error"


class ChannelError(LastKnownError):
    """Event channel publish/consume failure."""

    def __init__(self, message: str, *, kind: ChannelErrorKind = ChannelErrorKind.CONSUME_ERROR) -> None:
        self.kind = kind
        super().__init__(message)


class RecordDecodeError(ChannelError):
    """A channel or cache payload is not a valid record.

    Raised by :meth:`lastknown.models.Record.from_wire`. The worker treats
    this as fatal for the offending message only.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ChannelErrorKind.DECODE_ERROR)
