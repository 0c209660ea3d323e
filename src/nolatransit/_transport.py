"""Server-sent events transport for the vehicle feed."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

import aiohttp

from nolatransit._constants import USER_AGENT
from nolatransit.exceptions import TransitTransportError

_logger = logging.getLogger(__name__)

DEFAULT_EVENT = "message"


@dataclasses.dataclass(frozen=True)
class SseEvent:
    """One dispatched server-sent event."""

    data: str
    event: str = DEFAULT_EVENT
    id: str | None = None


class SseDecoder:
    """Incremental ``text/event-stream`` line decoder.

    Feed it one line at a time (without the line terminator). A blank line
    dispatches the event assembled so far; ``data:`` lines are joined with
    newlines and lines starting with ``:`` are comments.
    """

    def __init__(self) -> None:
        self._data: list[str] = []
        self._event = ""
        self._last_id: str | None = None

    def feed(self, line: str) -> SseEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            self._last_id = value
        return None

    def _dispatch(self) -> SseEvent | None:
        if not self._data:
            self._event = ""
            return None
        event = SseEvent(data="\n".join(self._data), event=self._event or DEFAULT_EVENT, id=self._last_id)
        self._data = []
        self._event = ""
        return event


class FeedTransport(Protocol):
    """Structural feed interface used by the collector.

    ``open()`` returns an async context manager that connects and yields an
    async iterator of events; leaving the context releases the connection.
    Failures surface as :class:`~nolatransit.exceptions.TransitTransportError`,
    including the server closing the stream.
    """

    def open(self) -> AbstractAsyncContextManager[AsyncIterator[SseEvent]]:
        ...


class SseTransport:
    """aiohttp implementation of :class:`FeedTransport`."""

    def __init__(self, url: str, *, session: aiohttp.ClientSession | None = None) -> None:
        self._url = url
        self._http_session = session
        self._external_session = session is not None

    async def __aenter__(self) -> SseTransport:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=30),
            )
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    @property
    def url(self) -> str:
        return self._url

    @contextlib.asynccontextmanager
    async def open(self) -> AsyncIterator[AsyncIterator[SseEvent]]:
        if self._http_session is None:
            raise TransitTransportError("Transport used outside its context", url=self._url)

        headers = {
            "accept": "text/event-stream",
            "cache-control": "no-cache",
            "user-agent": USER_AGENT,
        }
        _logger.debug("GET %s", self._url)
        try:
            async with self._http_session.get(self._url, headers=headers) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise TransitTransportError(
                        f"HTTP {resp.status} from feed: {text[:200]}",
                        status_code=resp.status,
                        url=self._url,
                    )
                yield self._events(resp)
        except TransitTransportError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransitTransportError(f"Feed connection failed: {exc!r}", url=self._url) from exc

    async def _events(self, resp: aiohttp.ClientResponse) -> AsyncIterator[SseEvent]:
        decoder = SseDecoder()
        try:
            async for raw in resp.content:
                event = decoder.feed(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
                if event is not None:
                    yield event
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransitTransportError(f"Feed stream failed: {exc!r}", url=self._url) from exc
        raise TransitTransportError("Feed stream closed by server", url=self._url)
