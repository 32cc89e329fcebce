"""
Receive-only WebRTC video receiver.

A signaling channel carries the offer/answer and candidate exchange; the
negotiation orchestrator drives the media engine through an adapter and hands
the first usable frame source of the received track to a display consumer.
"""

from __future__ import annotations

from .config import ReceiverConfig, load_config

__all__ = [
    "ReceiverConfig",
    "load_config",
]
