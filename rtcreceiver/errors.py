"""
Error taxonomy for the receiver.

Exceptions are raised at the component seams (channel, adapter, wire codec).
The orchestrator converts recoverable ones into :class:`SessionError` records
so callers can inspect them without the host process ever crashing.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ReceiverError(RuntimeError):
    """Base class for receiver related errors."""


# ------------------------------------------------------------------ transport


class TransportError(ReceiverError):
    """Raised when the signaling channel cannot carry a message."""


class ChannelTimeout(TransportError):
    """The channel did not reach the open state within the configured timeout."""


class ChannelNotOpen(TransportError):
    """A send was attempted while the channel was not open."""


class ChannelClosed(TransportError):
    """The channel was closed by the remote side or failed to open."""


# ---------------------------------------------------------------- negotiation


class NegotiationError(ReceiverError):
    """Raised when the offer/answer exchange cannot proceed."""


class OfferFailed(NegotiationError):
    """The engine failed to create or apply the local offer."""


class DescriptionFailed(NegotiationError):
    """The engine rejected a remote session description."""


class MalformedPayload(NegotiationError, ValueError):
    """A signaling payload could not be decoded."""


class UnknownSdpType(MalformedPayload):
    """The ``type`` field of an SDP payload is not a known description kind."""


class CodecUnavailable(NegotiationError):
    """The media engine does not offer the required video codec."""


# ----------------------------------------------------------------- candidates


class CandidateError(ReceiverError):
    """Raised for remote candidate handling failures."""


class CandidateOrderError(CandidateError):
    """A candidate reached the engine before a remote description existed."""


# ------------------------------------------------------------ engine / media


class EngineError(ReceiverError):
    """Raised by peer connection adapters when the media engine fails."""


class AcquisitionTimeout(ReceiverError):
    """No frame source appeared within the acquisition budget."""


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    NEGOTIATION = "negotiation"
    MALFORMED = "malformed"
    CANDIDATE = "candidate"
    ENGINE = "engine"
    ACQUISITION = "acquisition"


@dataclass(frozen=True)
class SessionError:
    """
    Structured record of an error reported by a session.
    """

    kind: ErrorKind
    message: str
    fatal: bool = False

    @classmethod
    def from_exception(cls, exc: BaseException, *, fatal: bool = False) -> "SessionError":
        return cls(kind=classify(exc), message=str(exc) or type(exc).__name__, fatal=fatal)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "fatal": bool(self.fatal)}


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, TransportError):
        return ErrorKind.TRANSPORT
    if isinstance(exc, MalformedPayload):
        return ErrorKind.MALFORMED
    if isinstance(exc, NegotiationError):
        return ErrorKind.NEGOTIATION
    if isinstance(exc, CandidateError):
        return ErrorKind.CANDIDATE
    if isinstance(exc, AcquisitionTimeout):
        return ErrorKind.ACQUISITION
    return ErrorKind.ENGINE


__all__ = [
    "AcquisitionTimeout",
    "CandidateError",
    "CandidateOrderError",
    "ChannelClosed",
    "ChannelNotOpen",
    "ChannelTimeout",
    "CodecUnavailable",
    "DescriptionFailed",
    "EngineError",
    "ErrorKind",
    "MalformedPayload",
    "NegotiationError",
    "OfferFailed",
    "ReceiverError",
    "SessionError",
    "TransportError",
    "UnknownSdpType",
    "classify",
]
