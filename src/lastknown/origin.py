"""HTTP fetcher for the external origin."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

import aiohttp

from lastknown._constants import DEFAULT_ORIGIN_TIMEOUT, USER_AGENT
from lastknown.exceptions import FetchError, FetchErrorKind
from lastknown.models.record import Record

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Fetcher(Protocol):
    """Structural fetcher interface used by the read coordinator.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`OriginFetcher`) concrete.
    """

    async def fetch(self, timeout: float | None = None) -> Record:
        ...


class OriginFetcher:
    """Issues one GET to the origin per call and timestamps the result.

    The ``aiohttp.ClientSession`` is a process-wide resource created once
    and injected; the fetcher holds no other state.
    """

    def __init__(
        self,
        url: str,
        http_session: aiohttp.ClientSession,
        *,
        timeout: float = DEFAULT_ORIGIN_TIMEOUT,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._url = url
        self._http = http_session
        self._timeout = timeout
        self._clock = clock

    @property
    def timeout(self) -> float:
        """Hard per-request timeout in seconds."""
        return self._timeout

    async def _get_body(self) -> str:
        headers = {"user-agent": USER_AGENT}
        try:
            async with self._http.get(self._url, headers=headers) as resp:
                # The body is kept as text; bytes invalid in the declared charset are replaced.
                text = await resp.text(errors="replace")
                if not 200 <= resp.status < 300:
                    raise FetchError(
                        f"HTTP {resp.status} from origin: {text[:200]}",
                        kind=FetchErrorKind.BAD_STATUS,
                        status_code=resp.status,
                        url=self._url,
                    )
                return text
        except FetchError:
            raise
        except TimeoutError as exc:
            # Session-level timeouts surface as TimeoutError subclasses of ClientError.
            raise FetchError(
                f"Origin request timed out: {exc}",
                kind=FetchErrorKind.TIMEOUT,
                url=self._url,
            ) from exc
        except aiohttp.ClientError as exc:
            raise FetchError(
                f"Request to origin failed: {exc}",
                kind=FetchErrorKind.NETWORK,
                url=self._url,
            ) from exc

    async def fetch(self, timeout: float | None = None) -> Record:
        """Fetch the current value.

        Parameters
        ----------
        timeout
            Caller budget in seconds. Can only shorten the hard timeout the
            fetcher was configured with.

        Raises
        ------
        FetchError
            On timeout, transport failure or a non-2xx status.
        """
        effective = self._timeout if timeout is None else min(self._timeout, timeout)
        if effective <= 0:
            raise FetchError("No time left to query the origin", kind=FetchErrorKind.TIMEOUT, url=self._url)

        observed_at = self._clock()
        _logger.debug("GET %s (timeout=%.3fs)", self._url, effective)
        try:
            body = await asyncio.wait_for(self._get_body(), effective)
        except TimeoutError as exc:
            raise FetchError(
                f"Origin did not answer within {effective:.3f}s",
                kind=FetchErrorKind.TIMEOUT,
                url=self._url,
            ) from exc
        return Record(timestamp=observed_at, payload=body)
