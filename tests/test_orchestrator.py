"""Tests covering the negotiation state machine."""

from __future__ import annotations

import asyncio
import json

import pytest

from rtcreceiver.errors import ErrorKind, NegotiationError
from rtcreceiver.rtc.acquisition import AcquisitionOutcome
from rtcreceiver.rtc.adapter import (
    ConnectionStateChanged,
    IceConnectionStateChanged,
    LocalCandidate,
    TrackReceived,
)
from rtcreceiver.rtc.channel import ChannelState
from rtcreceiver.rtc.messages import IceCandidate, SdpType
from rtcreceiver.rtc.session import ConnectionState, NegotiationState

from fakes import (
    FakeAdapter,
    FakeConnection,
    FakeTrack,
    RecordingSink,
    answer_frame,
    connector_for,
    ice_frame,
    make_orchestrator,
    never_connect,
    pump,
)


def sdp_frames(connection: FakeConnection) -> list:
    return [json.loads(frame[4:]) for frame in connection.sent if frame.startswith("sdp:")]


def test_channel_open_sends_exactly_one_offer() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        state = await orchestrator.start()
        await pump(orchestrator)
        await orchestrator.teardown()
        return state, adapter, connection, orchestrator

    state, adapter, connection, orchestrator = asyncio.run(scenario())

    assert state is NegotiationState.AWAITING_ANSWER
    assert adapter.calls[:2] == ["create_offer", "set_local"]
    assert adapter.calls.count("create_offer") == 1
    offers = sdp_frames(connection)
    assert len(offers) == 1
    assert offers[0]["type"] == "offer"
    assert orchestrator.session.local_description is not None


def test_candidates_before_answer_are_buffered_then_applied_in_order() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()

        for name in ("c1", "c2", "c3"):
            connection.feed(ice_frame(name))
        await pump(orchestrator)
        buffered = [c.candidate for c in orchestrator.session.pending_candidates]
        applied_before_answer = list(adapter.applied_candidates)

        connection.feed(answer_frame())
        await pump(orchestrator)
        state_after_answer = orchestrator.state
        pending_after_answer = len(orchestrator.session.pending_candidates)

        connection.feed(ice_frame("c4"))
        await pump(orchestrator)
        await orchestrator.teardown()
        return (
            adapter,
            buffered,
            applied_before_answer,
            state_after_answer,
            pending_after_answer,
        )

    adapter, buffered, applied_before_answer, state_after_answer, pending_after_answer = asyncio.run(scenario())

    assert buffered == ["c1", "c2", "c3"]
    assert applied_before_answer == []
    assert state_after_answer is NegotiationState.CONNECTED
    assert pending_after_answer == 0
    assert adapter.applied_candidates == ["c1", "c2", "c3", "c4"]
    assert adapter.premature_candidates == 0
    remote_index = adapter.calls.index(("set_remote", SdpType.ANSWER))
    assert adapter.calls[remote_index + 1:] == [
        ("add_ice", "c1"),
        ("add_ice", "c2"),
        ("add_ice", "c3"),
        ("add_ice", "c4"),
    ]


def test_candidates_in_same_batch_as_answer_wait_for_remote_description() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        connection.feed(ice_frame("early"))
        connection.feed(answer_frame())
        connection.feed(ice_frame("late"))
        await pump(orchestrator)
        await orchestrator.teardown()
        return adapter

    adapter = asyncio.run(scenario())

    assert adapter.premature_candidates == 0
    assert adapter.applied_candidates == ["early", "late"]


def test_channel_timeout_fails_session_without_offer() -> None:
    async def scenario():
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, never_connect, connect_timeout=0.01)
        state = await orchestrator.start()
        return state, adapter, orchestrator

    state, adapter, orchestrator = asyncio.run(scenario())

    assert state is NegotiationState.FAILED
    assert orchestrator.channel.state is ChannelState.CLOSED
    assert "create_offer" not in adapter.calls
    assert orchestrator.session.last_error is not None
    assert orchestrator.session.last_error.kind is ErrorKind.TRANSPORT
    assert orchestrator.session.last_error.fatal is True
    assert adapter.closed == 1


def test_track_without_frame_source_reports_acquisition_timeout() -> None:
    sink = RecordingSink()

    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection), sink=sink)
        await orchestrator.start()
        connection.feed(answer_frame())
        track = FakeTrack(ready_after=None)
        adapter.emit(TrackReceived(track))
        await pump(orchestrator)

        loop = orchestrator.acquisition
        assert loop is not None
        for _ in range(200):
            if loop.outcome is not AcquisitionOutcome.PENDING:
                break
            await asyncio.sleep(0.002)
        state = orchestrator.state
        await orchestrator.teardown()
        return loop, state, orchestrator, track

    loop, state, orchestrator, track = asyncio.run(scenario())

    assert loop.outcome is AcquisitionOutcome.TIMED_OUT
    assert sink.sources == []
    assert state is NegotiationState.CONNECTED
    kinds = [error.kind for error in orchestrator.session.errors]
    assert ErrorKind.ACQUISITION in kinds
    assert not any(error.fatal for error in orchestrator.session.errors)
    assert track.released == 1


def test_track_frame_source_reaches_display_once() -> None:
    sink = RecordingSink()

    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection), sink=sink)
        await orchestrator.start()
        track = FakeTrack(ready_after=3)
        adapter.emit(TrackReceived(track))
        for _ in range(20):
            await pump(orchestrator, turns=1)
            await asyncio.sleep(0.001)
        await orchestrator.teardown()
        return track

    track = asyncio.run(scenario())

    assert sink.sources == [track.source]


def test_second_track_is_ignored() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        first, second = FakeTrack(track_id="a"), FakeTrack(track_id="b")
        adapter.emit(TrackReceived(first))
        adapter.emit(TrackReceived(second))
        await pump(orchestrator)
        held = orchestrator.session.track
        released_before_teardown = (first.released, second.released)
        await orchestrator.teardown()
        return held, first, released_before_teardown

    held, first, released_before_teardown = asyncio.run(scenario())

    assert held is first
    assert released_before_teardown == (0, 1)


def test_teardown_is_idempotent() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        track = FakeTrack()
        adapter.emit(TrackReceived(track))
        await pump(orchestrator)
        await orchestrator.teardown()
        await orchestrator.teardown()
        return orchestrator, adapter, connection, track

    orchestrator, adapter, connection, track = asyncio.run(scenario())

    assert orchestrator.state is NegotiationState.CLOSED
    assert orchestrator.acquisition is None
    assert orchestrator.session.track is None
    assert adapter.closed == 1
    assert connection.closed == 1
    assert track.released == 1


def test_teardown_before_start_is_safe() -> None:
    async def scenario():
        orchestrator = make_orchestrator(FakeAdapter(), never_connect)
        await orchestrator.teardown()
        await orchestrator.teardown()
        return orchestrator

    assert asyncio.run(scenario()).state is NegotiationState.CLOSED


def test_start_twice_is_rejected() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        with pytest.raises(NegotiationError):
            await orchestrator.start()
        await orchestrator.teardown()
        return adapter, orchestrator

    adapter, orchestrator = asyncio.run(scenario())

    assert adapter.calls.count("create_offer") == 1
    assert orchestrator.session.offers_created == 1
    assert orchestrator.snapshot().offers_created == 1


def test_offer_failure_fails_without_sending() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter(fail_offer=True)
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        state = await orchestrator.start()
        return state, connection, orchestrator

    state, connection, orchestrator = asyncio.run(scenario())

    assert state is NegotiationState.FAILED
    assert connection.sent == []
    assert orchestrator.session.last_error.kind is ErrorKind.NEGOTIATION
    assert orchestrator.channel.state is ChannelState.CLOSED


def test_remote_description_failure_fails_session() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter(fail_remote=True)
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        connection.feed(ice_frame("c1"))
        connection.feed(answer_frame())
        await pump(orchestrator)
        return orchestrator, adapter

    orchestrator, adapter = asyncio.run(scenario())

    assert orchestrator.state is NegotiationState.FAILED
    assert adapter.applied_candidates == []
    assert len(orchestrator.session.pending_candidates) == 0


def test_malformed_payload_is_discarded_without_state_change() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        connection.feed("sdp:{broken")
        connection.feed('ice:{"sdpMid": "0"}')
        connection.feed("bye:now")
        await pump(orchestrator)
        state = orchestrator.state
        await orchestrator.teardown()
        return state, orchestrator

    state, orchestrator = asyncio.run(scenario())

    assert state is NegotiationState.AWAITING_ANSWER
    assert [error.kind for error in orchestrator.session.errors] == [ErrorKind.MALFORMED, ErrorKind.MALFORMED]


def test_unknown_sdp_type_rejected_unless_lenient() -> None:
    async def scenario(lenient: bool):
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection), lenient_sdp_type=lenient)
        await orchestrator.start()
        connection.feed('sdp:{"type": "mystery", "sdp": "v=0"}')
        await pump(orchestrator)
        await orchestrator.teardown()
        return adapter, orchestrator

    strict_adapter, strict = asyncio.run(scenario(False))
    lenient_adapter, _ = asyncio.run(scenario(True))

    assert not any(isinstance(call, tuple) and call[0] == "set_remote" for call in strict_adapter.calls)
    assert strict.session.last_error.kind is ErrorKind.MALFORMED
    assert ("set_remote", SdpType.OFFER) in lenient_adapter.calls


def test_rejected_candidate_is_dropped_and_session_continues() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter(reject_candidates=["bad"])
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        connection.feed(answer_frame())
        connection.feed(ice_frame("bad"))
        connection.feed(ice_frame("good"))
        await pump(orchestrator)
        state = orchestrator.state
        await orchestrator.teardown()
        return state, adapter, orchestrator

    state, adapter, orchestrator = asyncio.run(scenario())

    assert state is NegotiationState.CONNECTED
    assert adapter.applied_candidates == ["good"]
    assert orchestrator.session.last_error.kind is ErrorKind.CANDIDATE
    assert orchestrator.session.candidates_applied == 1


def test_local_candidates_relayed_in_order_and_gathering_end_swallowed() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        adapter.emit(LocalCandidate(IceCandidate("candidate:1", "0", 0)))
        adapter.emit(LocalCandidate(IceCandidate("candidate:2", "0", 0)))
        adapter.emit(LocalCandidate(None))
        await pump(orchestrator)
        await orchestrator.teardown()
        return connection, orchestrator

    connection, orchestrator = asyncio.run(scenario())

    assert orchestrator.session.candidates_sent == 2

    relayed = [json.loads(frame[4:]) for frame in connection.sent if frame.startswith("ice:")]
    assert relayed == [
        {"candidate": "candidate:1", "sdpMid": "0", "sdpMLineIndex": 0},
        {"candidate": "candidate:2", "sdpMid": "0", "sdpMLineIndex": 0},
    ]
    assert connection.sent[0].startswith("sdp:")


def test_engine_failure_forces_failed_and_releases_resources() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        connection.feed(answer_frame())
        track = FakeTrack()
        adapter.emit(TrackReceived(track))
        adapter.emit(IceConnectionStateChanged("checking"))
        adapter.emit(ConnectionStateChanged("failed"))
        await pump(orchestrator)
        return orchestrator, adapter, connection, track

    orchestrator, adapter, connection, track = asyncio.run(scenario())

    assert orchestrator.state is NegotiationState.FAILED
    assert orchestrator.session.connection_state is ConnectionState.FAILED
    assert orchestrator.session.ice_connection_state is ConnectionState.CHECKING
    assert connection.closed == 1
    assert track.released == 1
    assert adapter.closed == 1


def test_connection_state_changes_do_not_drive_negotiation() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        adapter.emit(ConnectionStateChanged("connected"))
        await pump(orchestrator)
        snapshot = orchestrator.snapshot()
        await orchestrator.teardown()
        return snapshot

    snapshot = asyncio.run(scenario())

    assert snapshot.state is NegotiationState.AWAITING_ANSWER
    assert snapshot.connection_state is ConnectionState.CONNECTED


def test_renegotiation_after_connection_is_ignored() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        connection.feed(answer_frame())
        await pump(orchestrator)
        connection.feed(answer_frame())
        await pump(orchestrator)
        await orchestrator.teardown()
        return adapter

    adapter = asyncio.run(scenario())

    assert adapter.calls.count(("set_remote", SdpType.ANSWER)) == 1


def test_provisional_answer_keeps_waiting_for_final_answer() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        connection.feed(answer_frame("pranswer"))
        await pump(orchestrator)
        after_provisional = orchestrator.state
        connection.feed(answer_frame("answer"))
        await pump(orchestrator)
        after_final = orchestrator.state
        await orchestrator.teardown()
        return after_provisional, after_final

    after_provisional, after_final = asyncio.run(scenario())

    assert after_provisional is NegotiationState.AWAITING_ANSWER
    assert after_final is NegotiationState.CONNECTED


def test_channel_loss_before_answer_fails_session() -> None:
    async def scenario():
        connection = FakeConnection()
        orchestrator = make_orchestrator(FakeAdapter(), connector_for(connection))
        await orchestrator.start()
        connection.hang_up()
        await pump(orchestrator)
        return orchestrator

    orchestrator = asyncio.run(scenario())

    assert orchestrator.state is NegotiationState.FAILED
    assert orchestrator.session.last_error.kind is ErrorKind.TRANSPORT


def test_channel_loss_after_connection_is_not_fatal() -> None:
    async def scenario():
        connection = FakeConnection()
        orchestrator = make_orchestrator(FakeAdapter(), connector_for(connection))
        await orchestrator.start()
        connection.feed(answer_frame())
        connection.hang_up()
        await pump(orchestrator)
        await pump(orchestrator)
        state = orchestrator.state
        await orchestrator.teardown()
        return state, orchestrator

    state, orchestrator = asyncio.run(scenario())

    assert state is NegotiationState.CONNECTED
    transport_errors = [e for e in orchestrator.session.errors if e.kind is ErrorKind.TRANSPORT]
    assert len(transport_errors) == 1
    assert transport_errors[0].fatal is False


def test_local_candidate_after_channel_loss_keeps_media_running() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        await orchestrator.start()
        connection.feed(answer_frame())
        await pump(orchestrator)
        assert orchestrator.state is NegotiationState.CONNECTED
        connection.hang_up()
        adapter.emit(LocalCandidate(IceCandidate("candidate:1 1 udp 2122260223 10.0.0.2 50000 typ host", "0", 0)))
        await pump(orchestrator)
        await pump(orchestrator)
        result = (orchestrator.state, adapter.closed, list(orchestrator.session.errors))
        await orchestrator.teardown()
        return result, connection, orchestrator

    (state, closed, errors), connection, orchestrator = asyncio.run(scenario())

    assert state is NegotiationState.CONNECTED
    assert closed == 0
    assert not any(frame.startswith("ice:") for frame in connection.sent)
    assert orchestrator.session.candidates_sent == 0
    assert [(e.kind, e.fatal) for e in errors] == [(ErrorKind.TRANSPORT, False)]


def test_missing_required_codec_fails_before_connecting() -> None:
    urls = []

    async def scenario():
        connection = FakeConnection()
        orchestrator = make_orchestrator(
            FakeAdapter(codecs=["video/VP8"]),
            connector_for(connection, calls=urls),
            required_codec="H264",
        )
        return await orchestrator.start(), orchestrator

    state, orchestrator = asyncio.run(scenario())

    assert state is NegotiationState.FAILED
    assert urls == []
    assert orchestrator.session.last_error.kind is ErrorKind.NEGOTIATION


def test_observers_receive_state_transitions() -> None:
    seen = []

    async def scenario():
        connection = FakeConnection()
        orchestrator = make_orchestrator(FakeAdapter(), connector_for(connection))
        token = orchestrator.subscribe(lambda snapshot: seen.append(snapshot.state))
        await orchestrator.start()
        connection.feed(answer_frame())
        await pump(orchestrator)
        orchestrator.unsubscribe(token)
        await orchestrator.teardown()

    asyncio.run(scenario())

    states = [state for index, state in enumerate(seen) if index == 0 or seen[index - 1] is not state]
    assert states == [
        NegotiationState.IDLE,
        NegotiationState.CHANNEL_CONNECTING,
        NegotiationState.OFFERING,
        NegotiationState.AWAITING_ANSWER,
        NegotiationState.CONNECTED,
    ]


def test_run_ticks_until_teardown() -> None:
    async def scenario():
        connection = FakeConnection()
        adapter = FakeAdapter()
        orchestrator = make_orchestrator(adapter, connector_for(connection))
        runner = asyncio.create_task(orchestrator.run())
        connection.feed(ice_frame("c1"))
        connection.feed(answer_frame())
        for _ in range(100):
            if orchestrator.state is NegotiationState.CONNECTED:
                break
            await asyncio.sleep(0.002)
        await orchestrator.teardown()
        final = await asyncio.wait_for(runner, timeout=1.0)
        return final, adapter

    final, adapter = asyncio.run(scenario())

    assert final is NegotiationState.CLOSED
    assert adapter.applied_candidates == ["c1"]
