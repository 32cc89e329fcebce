"""
aiortc implementation of the peer connection adapter.

The connection is configured for a single receive-only video transceiver.
aiortc gathers every local candidate while the local description is applied
and embeds them in that description, so no trickled candidates are emitted;
only the end-of-gathering marker is queued.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Sequence

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp

from ..errors import EngineError
from .adapter import (
    ConnectionStateChanged,
    IceConnectionStateChanged,
    LocalCandidate,
    PeerConnectionAdapter,
    TrackReceived,
)
from .messages import IceCandidate, SdpType, SessionDescription

LOG = logging.getLogger(__name__)


class VideoFrameSource:
    """
    Latest decoded frame of a remote video track.
    """

    def __init__(self, frame: Any) -> None:
        self._frame = frame

    @property
    def width(self) -> int:
        return int(self._frame.width)

    @property
    def height(self) -> int:
        return int(self._frame.height)

    def _update(self, frame: Any) -> None:
        self._frame = frame


class AiortcTrackHandle:
    """
    Wraps an aiortc track and pulls frames from it in a background task.

    :meth:`frame_source` stays ``None`` until the first frame is decoded.
    """

    def __init__(self, track: MediaStreamTrack) -> None:
        self._track = track
        self.kind = track.kind
        self.id = track.id
        self._source: Optional[VideoFrameSource] = None
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._pull_frames(), name=f"track-{self.id}")

    def frame_source(self) -> Optional[VideoFrameSource]:
        return self._source

    def release(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
        self._track.stop()

    async def _pull_frames(self) -> None:
        while True:
            try:
                frame = await self._track.recv()
            except MediaStreamError:
                LOG.info("Track %s ended", self.id)
                return
            if self._source is None:
                self._source = VideoFrameSource(frame)
                LOG.info("First frame on track %s: %dx%d", self.id, frame.width, frame.height)
            else:
                self._source._update(frame)


class AiortcPeerConnection(PeerConnectionAdapter):
    """
    Receive-only peer connection backed by :class:`aiortc.RTCPeerConnection`.
    """

    def __init__(self, ice_servers: Sequence[str] = ()) -> None:
        super().__init__()
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self._pc = RTCPeerConnection(configuration=configuration)
        self._pc.addTransceiver("video", direction="recvonly")
        self._pc.on("track", self._on_track)
        self._pc.on("connectionstatechange", self._on_connection_state)
        self._pc.on("iceconnectionstatechange", self._on_ice_state)

    # ---------------------------------------------------------------- callbacks

    def _on_track(self, track: MediaStreamTrack) -> None:
        LOG.info("Track received - kind: %s, id: %s", track.kind, track.id)
        if track.kind != "video":
            return
        handle = AiortcTrackHandle(track)
        handle.start()
        self.emit(TrackReceived(handle))

    def _on_connection_state(self) -> None:
        self.emit(ConnectionStateChanged(self._pc.connectionState))

    def _on_ice_state(self) -> None:
        self.emit(IceConnectionStateChanged(self._pc.iceConnectionState))

    # ---------------------------------------------------------------- engine API

    async def create_offer(self) -> SessionDescription:
        try:
            offer = await self._pc.createOffer()
        except Exception as exc:
            raise EngineError(f"createOffer failed: {exc}") from exc
        return SessionDescription(kind=SdpType.parse(offer.type), body=offer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        try:
            await self._pc.setLocalDescription(_to_rtc(description))
        except Exception as exc:
            raise EngineError(f"setLocalDescription failed: {exc}") from exc
        applied = self._pc.localDescription
        self._local_description = SessionDescription(kind=SdpType.parse(applied.type), body=applied.sdp)
        # Gathering completes inside setLocalDescription.
        self.emit(LocalCandidate(None))

    async def set_remote_description(self, description: SessionDescription) -> None:
        try:
            await self._pc.setRemoteDescription(_to_rtc(description))
        except Exception as exc:
            raise EngineError(f"setRemoteDescription failed: {exc}") from exc

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        text = candidate.candidate.strip()
        if text.startswith("candidate:"):
            text = text[len("candidate:"):]
        if not text:
            LOG.debug("Remote end-of-candidates received")
            return
        try:
            rtc_candidate = candidate_from_sdp(text)
            rtc_candidate.sdpMid = candidate.sdp_mid
            rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
            await self._pc.addIceCandidate(rtc_candidate)
        except Exception as exc:
            raise EngineError(f"addIceCandidate failed: {exc}") from exc

    def video_codecs(self) -> List[str]:
        capabilities = RTCRtpSender.getCapabilities("video")
        return [codec.mimeType for codec in capabilities.codecs]

    async def close(self) -> None:
        await super().close()
        await self._pc.close()


def _to_rtc(description: SessionDescription) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=description.body, type=description.kind.value)


__all__ = ["AiortcPeerConnection", "AiortcTrackHandle", "VideoFrameSource"]
