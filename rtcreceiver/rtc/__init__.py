"""
WebRTC signaling and negotiation.
"""

from __future__ import annotations

from .acquisition import AcquisitionOutcome, TrackAcquisitionLoop
from .adapter import PeerConnectionAdapter
from .channel import ChannelState, SignalingChannel
from .messages import IceCandidate, SdpType, SessionDescription
from .orchestrator import NegotiationOrchestrator
from .session import ConnectionState, NegotiationSession, NegotiationState

__all__ = [
    "AcquisitionOutcome",
    "ChannelState",
    "ConnectionState",
    "IceCandidate",
    "NegotiationOrchestrator",
    "NegotiationSession",
    "NegotiationState",
    "PeerConnectionAdapter",
    "SdpType",
    "SessionDescription",
    "SignalingChannel",
    "TrackAcquisitionLoop",
]
