"""Deterministic conflict-resolution policy for the durable record.

This module intentionally contains *no* I/O. The persistence worker and the
atomic conditional update both defer to :func:`should_replace`.
"""

from __future__ import annotations

from lastknown.models.record import Record


def should_replace(candidate: Record, reference: Record | None) -> bool:
    """Decide whether *candidate* supersedes the stored *reference*.

    Policy:
    - No reference yet: accept, the first observation always lands.
    - Otherwise: accept only a strictly newer timestamp. Equal timestamps
      are rejected so that redelivered messages are no-ops.
    """
    if reference is None:
        return True
    return candidate.timestamp > reference.timestamp
