"""The single tracked record and its wire format.

A :class:`Record` is an immutable observation of the origin: the instant it
was taken and the raw body returned. The same JSON encoding is used for the
cache value and for channel messages::

    {"timestamp": "2024-01-01T12:00:00Z", "info": "<raw origin body>"}
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator

from lastknown.exceptions import RecordDecodeError

# Threshold to distinguish epoch seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def parse_wire_timestamp(value: Any) -> Any:
    """Convert an epoch number (seconds **or** milliseconds) to a UTC datetime.

    Strings and datetimes are left to pydantic's own parsing.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    ts = float(value)
    if ts >= _MS_THRESHOLD:
        ts /= 1000.0
    try:
        return datetime.fromtimestamp(ts, tz=UTC)
    except (OverflowError, OSError, ValueError) as exc:
        # Only ValueError becomes a validation error in pydantic.
        raise ValueError(f"epoch timestamp out of range: {value}") from exc


WireTimestamp = Annotated[datetime, BeforeValidator(parse_wire_timestamp)]


class Record(BaseModel):
    """One observation of the origin."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    timestamp: WireTimestamp
    payload: str = Field(..., alias="info", description="Raw response body from the origin")

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        try:
            return value.astimezone(UTC)
        except OverflowError as exc:
            raise ValueError(f"timestamp out of range in UTC: {value.isoformat()}") from exc

    def to_wire(self) -> bytes:
        """Encode as the JSON object shared by the cache and the channel."""
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_wire(cls, data: bytes | str | None) -> Record:
        """Decode a wire payload.

        Raises
        ------
        RecordDecodeError
            The payload is empty, not JSON, or misses a field.
        """
        if data is None or len(data) == 0:
            raise RecordDecodeError("Empty record payload")
        try:
            return cls.model_validate_json(data)
        except ValidationError as exc:
            preview = data[:64] if isinstance(data, str) else data[:64].decode("utf-8", errors="replace")
            raise RecordDecodeError(f"Invalid record payload {preview!r}: {exc.error_count()} error(s)") from exc
