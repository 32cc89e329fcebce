"""
Negotiation session state.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, List, Optional, Tuple

from ..errors import SessionError
from .messages import IceCandidate, SessionDescription


class NegotiationState(str, Enum):
    IDLE = "idle"
    CHANNEL_CONNECTING = "channel_connecting"
    OFFERING = "offering"
    AWAITING_ANSWER = "awaiting_answer"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (NegotiationState.FAILED, NegotiationState.CLOSED)


class ConnectionState(str, Enum):
    """Connectivity state reported by the media engine."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"
    # ICE-only states
    CHECKING = "checking"
    COMPLETED = "completed"

    @classmethod
    def from_engine(cls, value: object) -> "ConnectionState":
        text = str(value or "").strip().lower()
        try:
            return cls(text)
        except ValueError:
            return cls.NEW


@dataclass
class NegotiationSession:
    """
    Mutable state of one negotiation, owned by a single orchestrator.
    """

    state: NegotiationState = NegotiationState.IDLE
    local_description: Optional[SessionDescription] = None
    remote_description: Optional[SessionDescription] = None
    pending_candidates: Deque[IceCandidate] = field(default_factory=deque)
    track: Any = None
    connection_state: ConnectionState = ConnectionState.NEW
    ice_connection_state: ConnectionState = ConnectionState.NEW
    offers_created: int = 0
    candidates_applied: int = 0
    candidates_sent: int = 0
    errors: List[SessionError] = field(default_factory=list)

    @property
    def last_error(self) -> Optional[SessionError]:
        return self.errors[-1] if self.errors else None

    def release(self) -> Any:
        """
        Drop buffered candidates and the track reference.

        Returns the released track so the caller can stop it.
        """

        self.pending_candidates.clear()
        track, self.track = self.track, None
        return track


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """
    Immutable view of a session for observers and diagnostics.
    """

    state: NegotiationState
    channel_state: str
    connection_state: ConnectionState
    ice_connection_state: ConnectionState
    has_remote_description: bool
    pending_candidates: int
    video_receiving: bool
    frame_size: Optional[Tuple[int, int]]
    errors: Tuple[SessionError, ...] = ()
    offers_created: int = 0
    candidates_applied: int = 0
    candidates_sent: int = 0

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "channelState": self.channel_state,
            "connectionState": self.connection_state.value,
            "iceConnectionState": self.ice_connection_state.value,
            "hasRemoteDescription": bool(self.has_remote_description),
            "pendingCandidates": int(self.pending_candidates),
            "videoReceiving": bool(self.video_receiving),
            "frameSize": list(self.frame_size) if self.frame_size else None,
            "errors": [error.to_dict() for error in self.errors],
            "offersCreated": int(self.offers_created),
            "candidatesApplied": int(self.candidates_applied),
            "candidatesSent": int(self.candidates_sent),
        }


__all__ = ["ConnectionState", "NegotiationSession", "NegotiationState", "SessionSnapshot"]
