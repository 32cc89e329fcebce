"""
Negotiation orchestrator.

Drives one receive-only session: opens the signaling channel, sends a single
offer, applies the remote answer and candidates, relays local candidates and
hands the received track to the acquisition loop.

Everything runs on one asyncio loop.  Channel messages and engine events are
queued by their producers and consumed only inside :meth:`tick`, which is the
single place that mutates the session after :meth:`start` returns.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from ..config import ReceiverConfig
from ..errors import (
    AcquisitionTimeout,
    CandidateError,
    CandidateOrderError,
    ChannelClosed,
    CodecUnavailable,
    DescriptionFailed,
    EngineError,
    MalformedPayload,
    NegotiationError,
    OfferFailed,
    ReceiverError,
    SessionError,
    TransportError,
)
from .acquisition import TrackAcquisitionLoop
from .adapter import (
    ConnectionStateChanged,
    IceConnectionStateChanged,
    LocalCandidate,
    PeerConnectionAdapter,
    TrackReceived,
)
from .channel import ChannelState, SignalingChannel
from .messages import (
    IceCandidate,
    SdpType,
    SessionDescription,
    decode_envelope,
    encode_envelope,
    sdp_codecs,
)
from .session import ConnectionState, NegotiationSession, NegotiationState, SessionSnapshot

LOG = logging.getLogger(__name__)

SnapshotObserver = Callable[[SessionSnapshot], None]


class NegotiationOrchestrator:
    """
    Owns a :class:`NegotiationSession` and advances its state machine.
    """

    def __init__(
        self,
        adapter: PeerConnectionAdapter,
        display: Any,
        config: Optional[ReceiverConfig] = None,
        *,
        channel: Optional[SignalingChannel] = None,
    ) -> None:
        self.config = config or ReceiverConfig()
        self.adapter = adapter
        self.display = display
        self.channel = channel or SignalingChannel()
        self.session = NegotiationSession()

        self._inbound: Deque[str] = deque()
        self._acquisition: Optional[TrackAcquisitionLoop] = None
        self._ticking = False
        self._adapter_closed = False
        self._channel_loss_reported = False

        self._observer_counter = 0
        self._observers: Dict[int, SnapshotObserver] = {}

    # ------------------------------------------------------------------ observers

    @property
    def state(self) -> NegotiationState:
        return self.session.state

    @property
    def acquisition(self) -> Optional[TrackAcquisitionLoop]:
        return self._acquisition

    def snapshot(self) -> SessionSnapshot:
        session = self.session
        return SessionSnapshot(
            state=session.state,
            channel_state=self.channel.state.value,
            connection_state=session.connection_state,
            ice_connection_state=session.ice_connection_state,
            has_remote_description=session.remote_description is not None,
            pending_candidates=len(session.pending_candidates),
            video_receiving=bool(getattr(self.display, "is_receiving", False)),
            frame_size=getattr(self.display, "frame_size", None),
            errors=tuple(session.errors),
            offers_created=session.offers_created,
            candidates_applied=session.candidates_applied,
            candidates_sent=session.candidates_sent,
        )

    def subscribe(self, callback: SnapshotObserver) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        try:
            callback(self.snapshot())
        except Exception:  # pragma: no cover - observer failures should not kill the session
            LOG.exception("Session observer %s failed during initial snapshot.", token)
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    def _notify(self) -> None:
        if not self._observers:
            return
        snapshot = self.snapshot()
        for token, callback in list(self._observers.items()):
            try:
                callback(snapshot)
            except Exception:  # pragma: no cover - observer failures should not kill the session
                LOG.exception("Session observer %s failed.", token)

    # ------------------------------------------------------------------ helpers

    def _transition(self, state: NegotiationState) -> None:
        previous = self.session.state
        if previous is state:
            return
        self.session.state = state
        LOG.info("Negotiation state %s -> %s", previous.value, state.value)
        self._notify()

    def _report(self, exc: ReceiverError, *, fatal: bool = False) -> SessionError:
        error = SessionError.from_exception(exc, fatal=fatal)
        self.session.errors.append(error)
        if fatal:
            LOG.error("%s: %s", type(exc).__name__, error.message)
        else:
            LOG.warning("%s: %s", type(exc).__name__, error.message)
        return error

    async def _fail(self, exc: ReceiverError) -> None:
        if self.session.state is NegotiationState.CLOSED:
            LOG.debug("Ignoring %s after teardown", type(exc).__name__)
            return
        self._report(exc, fatal=True)
        self._transition(NegotiationState.FAILED)
        await self._release()
        self._notify()

    async def _release(self) -> None:
        if self._acquisition is not None:
            self._acquisition.cancel()
            self._acquisition = None
        self.channel.set_handler(None)
        self._inbound.clear()
        await self.channel.close()
        track = self.session.release()
        if track is not None:
            LOG.debug("Releasing track %s", getattr(track, "id", "?"))
            track.release()
        if not self._adapter_closed:
            self._adapter_closed = True
            await self.adapter.close()

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> NegotiationState:
        """
        Connect the channel, then create, apply and send the offer.

        Returns the state reached.  Failures are recorded on the session;
        only misuse (starting twice) raises.
        """

        if self.session.state is not NegotiationState.IDLE:
            raise NegotiationError(f"session already started (state={self.session.state.value})")

        required = self.config.required_codec
        if required and not self.adapter.supports_codec(required):
            await self._fail(CodecUnavailable(f"{required} codec not supported by the media engine"))
            return self.session.state

        self.channel.set_handler(self._inbound.append)
        self._transition(NegotiationState.CHANNEL_CONNECTING)
        try:
            await self.channel.connect(self.config.signaling_url, self.config.connect_timeout)
        except TransportError as exc:
            await self._fail(exc)
            return self.session.state
        if self.session.state is not NegotiationState.CHANNEL_CONNECTING:
            return self.session.state

        self._transition(NegotiationState.OFFERING)
        await self._create_and_send_offer()
        return self.session.state

    async def _create_and_send_offer(self) -> None:
        self.session.offers_created += 1
        try:
            offer = await self.adapter.create_offer()
            LOG.info("Offer created (codecs: %s)", ", ".join(sdp_codecs(offer.body)) or "none")
            await self.adapter.set_local_description(offer)
        except EngineError as exc:
            await self._fail(OfferFailed(str(exc)))
            return
        if self.session.state is not NegotiationState.OFFERING:
            return

        local = self.adapter.local_description or offer
        self.session.local_description = local
        self._transition(NegotiationState.AWAITING_ANSWER)
        try:
            await self.channel.send(encode_envelope(local))
        except TransportError as exc:
            await self._fail(exc)
            return
        LOG.info("Sent SDP %s", local.kind.value)

    async def run(self) -> NegotiationState:
        """
        Start the session and tick it until it fails or is torn down.
        """

        await self.start()
        while not self.session.state.is_terminal:
            await self.tick()
            await asyncio.sleep(self.config.tick_interval)
        return self.session.state

    async def tick(self) -> None:
        """
        One scheduler turn: drain channel messages and engine events in
        arrival order, then run late frame-source detection.
        """

        if self._ticking or self.session.state is NegotiationState.CLOSED:
            return
        self._ticking = True
        try:
            self.channel.dispatch_pending()
            await self._process_inbound()
            await self._process_engine_events()
            await self._check_channel()
            if self._acquisition is not None:
                self._acquisition.check()
        finally:
            self._ticking = False

    async def teardown(self) -> None:
        """
        Stop acquisition, detach inbound handling, close the channel and
        release the track.  Safe to call from any state, any number of times.
        """

        if self.session.state is NegotiationState.CLOSED:
            return
        LOG.info("Tearing down negotiation session")
        await self._release()
        self._transition(NegotiationState.CLOSED)

    # ------------------------------------------------------------------ inbound

    async def _process_inbound(self) -> None:
        while self._inbound:
            if self.session.state.is_terminal:
                self._inbound.clear()
                return
            text = self._inbound.popleft()
            try:
                envelope = decode_envelope(text, lenient_sdp_type=self.config.lenient_sdp_type)
            except MalformedPayload as exc:
                self._report(exc)
                continue
            if envelope is None:
                continue
            if isinstance(envelope.payload, SessionDescription):
                await self._handle_remote_description(envelope.payload)
            else:
                await self._handle_remote_candidate(envelope.payload)

    async def _handle_remote_description(self, description: SessionDescription) -> None:
        if self.session.state is NegotiationState.CONNECTED:
            LOG.warning("Ignoring remote %s after connection; renegotiation is not supported", description.kind.value)
            return

        LOG.info(
            "Setting remote description (type: %s, codecs: %s)",
            description.kind.value,
            ", ".join(sdp_codecs(description.body)) or "none",
        )
        try:
            await self.adapter.set_remote_description(description)
        except EngineError as exc:
            await self._fail(DescriptionFailed(str(exc)))
            return
        if self.session.state.is_terminal:
            return

        first = self.session.remote_description is None
        self.session.remote_description = description
        if first and self.session.pending_candidates:
            LOG.info("Applying %d buffered candidate(s)", len(self.session.pending_candidates))
            while self.session.pending_candidates:
                await self._apply_candidate(self.session.pending_candidates.popleft())

        if (
            description.kind is SdpType.ANSWER
            and self.session.state is NegotiationState.AWAITING_ANSWER
        ):
            self._transition(NegotiationState.CONNECTED)
        else:
            self._notify()

    async def _handle_remote_candidate(self, candidate: IceCandidate) -> None:
        if self.session.remote_description is None:
            self.session.pending_candidates.append(candidate)
            LOG.debug("Buffered remote candidate (%d pending)", len(self.session.pending_candidates))
            return
        await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: IceCandidate) -> None:
        if self.session.remote_description is None:
            raise CandidateOrderError("candidate applied before a remote description was set")
        try:
            await self.adapter.add_ice_candidate(candidate)
        except EngineError as exc:
            self._report(CandidateError(f"dropped remote candidate: {exc}"))
            return
        self.session.candidates_applied += 1
        LOG.debug("Added ICE candidate %.60s", candidate.candidate)

    # ------------------------------------------------------------------ engine

    async def _process_engine_events(self) -> None:
        for event in self.adapter.drain_events():
            if isinstance(event, TrackReceived):
                self._on_track(event.track)
                continue
            if self.session.state.is_terminal:
                continue
            if isinstance(event, LocalCandidate):
                await self._relay_local_candidate(event.candidate)
            elif isinstance(event, ConnectionStateChanged):
                await self._on_connection_state(event.state)
            elif isinstance(event, IceConnectionStateChanged):
                self.session.ice_connection_state = ConnectionState.from_engine(event.state)
                LOG.info("ICE connection state changed: %s", event.state)
                self._notify()

    async def _relay_local_candidate(self, candidate: Optional[IceCandidate]) -> None:
        if candidate is None:
            LOG.debug("ICE gathering completed")
            return
        connected = self.session.state is NegotiationState.CONNECTED
        if connected and not self.channel.is_open:
            LOG.debug("Dropping local candidate; signaling channel is %s", self.channel.state.value)
            return
        try:
            await self.channel.send(encode_envelope(candidate))
        except TransportError as exc:
            if connected:
                self._report_channel_loss(str(exc))
                return
            await self._fail(exc)
            return
        self.session.candidates_sent += 1

    def _on_track(self, track: Any) -> None:
        if self.session.state.is_terminal:
            LOG.info("Track received after session end; releasing it")
            track.release()
            return
        if self.session.track is not None:
            LOG.warning("Ignoring additional track %s", getattr(track, "id", "?"))
            track.release()
            return
        self.session.track = track
        LOG.info("Video track received; waiting for frame source")
        self._acquisition = TrackAcquisitionLoop(
            track,
            self.display,
            interval=self.config.acquisition_interval,
            max_attempts=self.config.acquisition_max_attempts,
            on_timeout=self._on_acquisition_timeout,
        )
        self._acquisition.start()
        self._notify()

    def _on_acquisition_timeout(self, error: AcquisitionTimeout) -> None:
        self._report(error)
        self._notify()

    async def _on_connection_state(self, value: str) -> None:
        state = ConnectionState.from_engine(value)
        self.session.connection_state = state
        LOG.info("Peer connection state: %s", state.value)
        self._notify()
        if state is ConnectionState.FAILED:
            await self._fail(EngineError("peer connection reached the failed state"))

    async def _check_channel(self) -> None:
        if self.channel.state is not ChannelState.CLOSED or self.session.state.is_terminal:
            return
        reason = self.channel.close_reason or "closed"
        if self.session.state is NegotiationState.CONNECTED:
            self._report_channel_loss(reason)
            return
        await self._fail(ChannelClosed(f"signaling channel closed: {reason}"))

    def _report_channel_loss(self, reason: str) -> None:
        # Media keeps flowing once connected; the loss is reported once.
        if self._channel_loss_reported:
            return
        self._channel_loss_reported = True
        self._report(ChannelClosed(f"signaling channel closed after connection: {reason}"))
        self._notify()


__all__ = ["NegotiationOrchestrator"]
