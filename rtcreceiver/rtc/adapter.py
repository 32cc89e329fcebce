"""
Media engine seam.

The orchestrator never talks to a WebRTC stack directly.  It drives a
:class:`PeerConnectionAdapter`, and the adapter reports engine callbacks by
queueing :data:`EngineEvent` values that the orchestrator drains on its own
scheduler turn.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, List, Optional, Protocol, Sequence, Union, runtime_checkable

from .messages import IceCandidate, SessionDescription


@runtime_checkable
class FrameSource(Protocol):
    """Handle through which decoded frames become available."""

    @property
    def width(self) -> int: ...

    @property
    def height(self) -> int: ...


@runtime_checkable
class TrackHandle(Protocol):
    """Inbound media track as seen by the orchestrator."""

    kind: str
    id: str

    def frame_source(self) -> Optional[FrameSource]: ...

    def release(self) -> None: ...


@dataclass(frozen=True)
class LocalCandidate:
    """A locally gathered candidate; ``None`` marks the end of gathering."""

    candidate: Optional[IceCandidate]


@dataclass(frozen=True)
class TrackReceived:
    track: Any


@dataclass(frozen=True)
class ConnectionStateChanged:
    state: str


@dataclass(frozen=True)
class IceConnectionStateChanged:
    state: str


EngineEvent = Union[LocalCandidate, TrackReceived, ConnectionStateChanged, IceConnectionStateChanged]


class PeerConnectionAdapter:
    """
    Base class for media engine adapters.

    Subclasses implement the offer/answer primitives and call :meth:`emit`
    from their engine callbacks.  Emitting only appends to a queue; no
    orchestrator state is touched from the engine side.
    """

    def __init__(self) -> None:
        self._events: Deque[EngineEvent] = deque()
        self._local_description: Optional[SessionDescription] = None

    # ------------------------------------------------------------------ events

    def emit(self, event: EngineEvent) -> None:
        self._events.append(event)

    def drain_events(self) -> List[EngineEvent]:
        events = list(self._events)
        self._events.clear()
        return events

    # ---------------------------------------------------------------- engine API

    @property
    def local_description(self) -> Optional[SessionDescription]:
        """The description last applied locally, as the engine reports it."""
        return self._local_description

    async def create_offer(self) -> SessionDescription:
        raise NotImplementedError

    async def set_local_description(self, description: SessionDescription) -> None:
        raise NotImplementedError

    async def set_remote_description(self, description: SessionDescription) -> None:
        raise NotImplementedError

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        raise NotImplementedError

    def video_codecs(self) -> Sequence[str]:
        """MIME types of the video codecs the engine can negotiate."""
        return ()

    def supports_codec(self, name: str) -> bool:
        needle = name.strip().lower()
        return any(needle in codec.lower() for codec in self.video_codecs())

    async def close(self) -> None:
        self._events.clear()


__all__ = [
    "ConnectionStateChanged",
    "EngineEvent",
    "FrameSource",
    "IceConnectionStateChanged",
    "LocalCandidate",
    "PeerConnectionAdapter",
    "TrackHandle",
    "TrackReceived",
]
