"""
Message-oriented signaling transport.

A :class:`SignalingChannel` wraps a single WebSocket connection.  It never
reconnects: once closed, a new channel has to be created.  Inbound frames are
read by a background task and queued; they only reach the registered handler
when the owner calls :meth:`SignalingChannel.dispatch_pending` on its own
scheduler turn.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..errors import ChannelClosed, ChannelNotOpen, ChannelTimeout

LOG = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]
MessageHandler = Callable[[str], None]


class ChannelState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


async def websocket_connector(url: str) -> Any:
    return await ws_connect(url, max_size=None)


class SignalingChannel:
    """
    Single-use text transport with connect timeout and queued dispatch.
    """

    def __init__(self, connector: Optional[Connector] = None) -> None:
        self._connector: Connector = connector or websocket_connector
        self._connection: Any = None
        self._state = ChannelState.IDLE
        self._handler: Optional[MessageHandler] = None
        self._inbox: Deque[str] = deque()
        self._reader: Optional[asyncio.Task] = None
        self.close_reason: Optional[str] = None

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.OPEN

    def set_handler(self, handler: Optional[MessageHandler]) -> None:
        """Register the single inbound handler (``None`` detaches it)."""
        self._handler = handler

    # -------------------------------------------------------------- lifecycle

    async def connect(self, url: str, timeout: float) -> None:
        """
        Open the transport, waiting at most ``timeout`` seconds.

        Raises
        ------
        ChannelTimeout
            The channel was not open in time; the pending attempt is cancelled.
        ChannelClosed
            The connection attempt failed or the channel was already used.
        """

        if self._state is not ChannelState.IDLE:
            raise ChannelClosed(f"channel already used (state={self._state.value})")

        self._state = ChannelState.CONNECTING
        LOG.info("Connecting signaling channel to %s (timeout %.1fs)", url, timeout)
        try:
            connection = await asyncio.wait_for(self._connector(url), timeout=timeout)
        except asyncio.TimeoutError:
            self._state = ChannelState.CLOSED
            self.close_reason = "timeout"
            LOG.error("Signaling channel did not open within %.1fs", timeout)
            raise ChannelTimeout(f"signaling channel did not open within {timeout}s") from None
        except (OSError, InvalidURI, InvalidHandshake) as exc:
            self._state = ChannelState.CLOSED
            self.close_reason = str(exc)
            LOG.error("Signaling channel failed to open: %s", exc)
            raise ChannelClosed(f"signaling channel failed to open: {exc}") from exc

        if self._state is not ChannelState.CONNECTING:
            # close() ran while connecting.
            with contextlib.suppress(ConnectionClosed, OSError):
                await connection.close()
            raise ChannelClosed("channel closed while connecting")

        self._connection = connection
        self._state = ChannelState.OPEN
        self._reader = asyncio.create_task(self._read_loop(), name="signaling-reader")
        LOG.info("Signaling channel open")

    async def send(self, text: str) -> None:
        if self._state is not ChannelState.OPEN or self._connection is None:
            raise ChannelNotOpen(f"cannot send while channel is {self._state.value}")
        try:
            await self._connection.send(text)
        except ConnectionClosed as exc:
            self._mark_closed(f"closed during send: {exc}")
            raise ChannelClosed("signaling channel closed during send") from exc
        LOG.debug("WS sent: %.120s", text)

    def dispatch_pending(self) -> int:
        """
        Forward queued inbound messages to the handler in arrival order.

        Returns the number of messages delivered.
        """

        delivered = 0
        while self._inbox and self._handler is not None:
            message = self._inbox.popleft()
            self._handler(message)
            delivered += 1
        return delivered

    async def close(self) -> None:
        if self._state in (ChannelState.CLOSING, ChannelState.CLOSED):
            self._handler = None
            return
        if self._state is ChannelState.IDLE:
            self._state = ChannelState.CLOSED
            return
        if self._state is ChannelState.CONNECTING:
            self._state = ChannelState.CLOSED
            return

        self._state = ChannelState.CLOSING
        self._handler = None
        LOG.info("Closing signaling channel")
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        connection, self._connection = self._connection, None
        if connection is not None:
            with contextlib.suppress(ConnectionClosed, OSError):
                await connection.close()
        self._inbox.clear()
        self._state = ChannelState.CLOSED
        self.close_reason = self.close_reason or "closed locally"

    # ---------------------------------------------------------------- helpers

    def _mark_closed(self, reason: str) -> None:
        if self._state is ChannelState.OPEN:
            self._state = ChannelState.CLOSED
            self.close_reason = reason
            LOG.info("Signaling channel closed: %s", reason)

    async def _read_loop(self) -> None:
        connection = self._connection
        try:
            async for frame in connection:
                if isinstance(frame, (bytes, bytearray, memoryview)):
                    message = bytes(frame).decode("utf-8", errors="replace")
                else:
                    message = str(frame)
                LOG.debug("WS received: %.120s", message)
                self._inbox.append(message)
        except ConnectionClosed as exc:
            self._mark_closed(f"remote closed ({exc})")
            return
        self._mark_closed("remote closed")


__all__ = ["ChannelState", "SignalingChannel", "websocket_connector"]
