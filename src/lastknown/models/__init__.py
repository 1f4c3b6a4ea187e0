"""Data models."""

from lastknown.models.record import Record, WireTimestamp, parse_wire_timestamp

__all__ = [
    "Record",
    "WireTimestamp",
    "parse_wire_timestamp",
]
