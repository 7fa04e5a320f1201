"""Tests for realtime/session.py: lifecycle, cooldown and region fan-out."""
from __future__ import annotations

import asyncio
import base64
import json

import pytest

from orchestrator.types import DetectionOutcome
from realtime.hub import RegionHub
from realtime.session import SessionManager
from tests.fakes import CountingOrchestrator, FakeChannel

FRAME = base64.b64encode(b"jpeg").decode()


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def frame_message(latitude: float = 37.7749, longitude: float = -122.4194) -> str:
    return json.dumps(
        {"type": "frame", "frame": FRAME, "location": {"latitude": latitude, "longitude": longitude}}
    )


def start_message(user_id: str | None = None) -> str:
    payload = {"type": "start"}
    if user_id is not None:
        payload["userId"] = user_id
    return json.dumps(payload)


def subscribe_message(north, south, east, west, kind="subscribeRegion") -> str:
    return json.dumps({"type": kind, "bounds": {"north": north, "south": south, "east": east, "west": west}})


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def hub():
    return RegionHub()


@pytest.fixture()
def orchestrator():
    return CountingOrchestrator()


@pytest.fixture()
def manager(orchestrator, store, hub, clock):
    return SessionManager(orchestrator, store, hub, cooldown_seconds=1.0, clock=clock)


# ---------- Lifecycle ----------

class TestLifecycle:
    def test_start_opens_session(self, manager, store):
        async def scenario():
            channel = FakeChannel()
            state = await manager.connect(channel)
            await manager.handle_message(state, start_message("u1"))
            return channel, state

        channel, state = asyncio.run(scenario())
        started = channel.of_type("started")
        assert len(started) == 1
        assert started[0]["sessionId"] == state.session_id
        assert store.get_session(state.session_id).user_id == "u1"

    def test_start_closes_prior_session_of_same_user(self, manager, store):
        async def scenario():
            first = await manager.connect(FakeChannel())
            second = await manager.connect(FakeChannel())
            await manager.handle_message(first, start_message("u1"))
            old_session = first.session_id
            await manager.handle_message(second, start_message("u1"))
            return old_session, second.session_id

        old_session, new_session = asyncio.run(scenario())
        assert store.get_session(old_session).is_active is False
        assert [s.id for s in store.list_active_sessions("u1")] == [new_session]

    def test_restart_on_same_connection_replaces_session(self, manager, store):
        async def scenario():
            state = await manager.connect(FakeChannel())
            await manager.handle_message(state, start_message())
            first = state.session_id
            await manager.handle_message(state, start_message())
            return first, state.session_id

        first, second = asyncio.run(scenario())
        assert first != second
        assert store.get_session(first).is_active is False

    def test_authenticated_user_overrides_payload(self, manager, store):
        async def scenario():
            state = await manager.connect(FakeChannel(), user_id="user-1")
            await manager.handle_message(state, start_message("someone-else"))
            return state.session_id

        assert store.get_session(asyncio.run(scenario())).user_id == "user-1"

    def test_stop_closes_session(self, manager, store):
        async def scenario():
            channel = FakeChannel()
            state = await manager.connect(channel)
            await manager.handle_message(state, start_message("u1"))
            session_id = state.session_id
            await manager.handle_message(state, json.dumps({"type": "stop"}))
            return channel, state, session_id

        channel, state, session_id = asyncio.run(scenario())
        assert channel.types() == ["started", "stopped"]
        assert not state.streaming
        assert store.get_session(session_id).is_active is False

    def test_disconnect_closes_session_and_leaves_regions(self, manager, store, hub):
        async def scenario():
            state = await manager.connect(FakeChannel())
            await manager.handle_message(state, start_message("u1"))
            await manager.handle_message(state, subscribe_message(38, 37, -122, -123))
            session_id = state.session_id
            await manager.disconnect(state)
            return session_id

        session_id = asyncio.run(scenario())
        assert store.get_session(session_id).is_active is False
        assert hub.connection_count == 0
        assert hub.subscribers((37, -123)) == set()


# ---------- Frames ----------

class FailingChannel(FakeChannel):
    """Accepts the first ``ok`` payloads, then fails the way a half-closed socket does."""

    def __init__(self, ok: int):
        super().__init__()
        self.ok = ok

    async def send_json(self, payload: dict) -> None:
        if len(self.sent) >= self.ok:
            raise RuntimeError("Cannot call send once a close message has been sent")
        await super().send_json(payload)


class TestFrames:
    def test_unexpected_send_failure_ends_frame_cleanly(self, store, hub, clock):
        orchestrator = CountingOrchestrator(error=RuntimeError("model down"))
        manager = SessionManager(orchestrator, store, hub, cooldown_seconds=1.0, clock=clock)

        async def scenario():
            channel = FailingChannel(ok=1)
            state = await manager.connect(channel)
            await manager.handle_message(state, start_message())
            await manager.handle_message(state, frame_message())
            task = state.frame_task
            await manager.drain(state)
            return channel, state, task

        channel, state, task = asyncio.run(scenario())
        assert task.done() and task.exception() is None
        assert state.closed
        assert channel.types() == ["started"]

    def test_frame_before_start_is_an_error(self, manager, orchestrator):
        async def scenario():
            channel = FakeChannel()
            state = await manager.connect(channel)
            await manager.handle_message(state, frame_message())
            return channel

        channel = asyncio.run(scenario())
        assert channel.types() == ["error"]
        assert orchestrator.calls == []

    def test_cooldown_drops_second_frame(self, manager, orchestrator, clock):
        async def scenario():
            channel = FakeChannel()
            state = await manager.connect(channel)
            await manager.handle_message(state, start_message())
            await manager.handle_message(state, frame_message())
            await manager.drain(state)
            clock.advance(0.5)
            await manager.handle_message(state, frame_message())
            await manager.drain(state)
            return channel

        channel = asyncio.run(scenario())
        assert len(orchestrator.calls) == 1
        assert len(channel.of_type("processed")) == 1

    def test_frame_admitted_after_cooldown(self, manager, orchestrator, clock):
        async def scenario():
            state = await manager.connect(FakeChannel())
            await manager.handle_message(state, start_message())
            await manager.handle_message(state, frame_message())
            await manager.drain(state)
            clock.advance(1.0)
            await manager.handle_message(state, frame_message())
            await manager.drain(state)

        asyncio.run(scenario())
        assert len(orchestrator.calls) == 2

    def test_in_flight_frame_blocks_the_next(self, manager, orchestrator, clock):
        async def scenario():
            gate = orchestrator.hold()
            state = await manager.connect(FakeChannel())
            await manager.handle_message(state, start_message())
            await manager.handle_message(state, frame_message())
            await asyncio.sleep(0)
            clock.advance(5.0)
            await manager.handle_message(state, frame_message())
            gate.set()
            await manager.drain(state)

        asyncio.run(scenario())
        assert len(orchestrator.calls) == 1

    def test_processed_sent_when_nothing_detected(self, manager):
        async def scenario():
            channel = FakeChannel()
            state = await manager.connect(channel)
            await manager.handle_message(state, start_message())
            await manager.handle_message(state, frame_message())
            await manager.drain(state)
            return channel

        assert asyncio.run(scenario()).types() == ["started", "processed"]

    def test_processing_failure_reports_generic_error(self, store, hub, clock):
        orchestrator = CountingOrchestrator(error=RuntimeError("db password is hunter2"))
        manager = SessionManager(orchestrator, store, hub, cooldown_seconds=1.0, clock=clock)

        async def scenario():
            channel = FakeChannel()
            state = await manager.connect(channel)
            await manager.handle_message(state, start_message())
            await manager.handle_message(state, frame_message())
            await manager.drain(state)
            return channel

        channel = asyncio.run(scenario())
        assert channel.types() == ["started", "error", "processed"]
        assert channel.of_type("error")[0]["message"] == "Processing failed"

    def test_session_context_passed_to_pipeline(self, manager, orchestrator):
        async def scenario():
            state = await manager.connect(FakeChannel())
            await manager.handle_message(state, start_message("u1"))
            await manager.handle_message(state, frame_message())
            await manager.drain(state)
            return state.session_id

        session_id = asyncio.run(scenario())
        image, location, context = orchestrator.calls[0]
        assert image == b"jpeg"
        assert location.latitude == pytest.approx(37.7749)
        assert context.session_id == session_id
        assert context.user_id == "u1"


# ---------- Detections and regions ----------

class TestDetectionFanout:
    def _manager_with_record(self, store, hub, clock):
        record = store.create_record(37.7749, -122.4194, 0.92, images=["a.jpg"])
        outcome = DetectionOutcome(record=record, confidence=0.92, is_new_record=True, accepted_predictions=2)
        return SessionManager(CountingOrchestrator(outcome), store, hub, cooldown_seconds=1.0, clock=clock), record

    def test_detection_event_to_sender(self, store, hub, clock):
        manager, record = self._manager_with_record(store, hub, clock)

        async def scenario():
            channel = FakeChannel()
            state = await manager.connect(channel)
            await manager.handle_message(state, start_message())
            await manager.handle_message(state, frame_message())
            await manager.drain(state)
            return channel

        channel = asyncio.run(scenario())
        assert channel.types() == ["started", "detection", "processed"]
        detection = channel.of_type("detection")[0]
        assert detection["recordId"] == record.id
        assert detection["location"] == {"latitude": 37.7749, "longitude": -122.4194}
        assert detection["confidence"] == pytest.approx(0.92)
        assert detection["detectionCount"] == 2
        assert detection["isNewRecord"] is True

    def test_region_broadcast_reaches_only_subscribers(self, store, hub, clock):
        manager, record = self._manager_with_record(store, hub, clock)

        async def scenario():
            sender_channel, nearby_channel, far_channel = FakeChannel(), FakeChannel(), FakeChannel()
            sender = await manager.connect(sender_channel)
            nearby = await manager.connect(nearby_channel)
            far = await manager.connect(far_channel)
            await manager.handle_message(nearby, subscribe_message(37.9, 37.6, -122.3, -122.5))
            await manager.handle_message(far, subscribe_message(60.0, 59.5, 11.0, 10.5))
            await manager.handle_message(sender, start_message())
            await manager.handle_message(sender, frame_message())
            await manager.drain(sender)
            return sender_channel, nearby_channel, far_channel

        sender_channel, nearby_channel, far_channel = asyncio.run(scenario())
        broadcast = nearby_channel.of_type("newRecordInRegion")
        assert len(broadcast) == 1
        assert broadcast[0]["record"]["id"] == record.id
        assert broadcast[0]["record"]["confidenceScore"] == pytest.approx(0.92)
        assert far_channel.sent == []
        assert sender_channel.of_type("newRecordInRegion") == []

    def test_unsubscribe_stops_broadcasts(self, store, hub, clock):
        manager, _ = self._manager_with_record(store, hub, clock)

        async def scenario():
            listener_channel = FakeChannel()
            listener = await manager.connect(listener_channel)
            sender = await manager.connect(FakeChannel())
            await manager.handle_message(listener, subscribe_message(38, 37.5, -122, -123))
            await manager.handle_message(listener, subscribe_message(38, 37.5, -122, -123, kind="unsubscribeRegion"))
            await manager.handle_message(sender, start_message())
            await manager.handle_message(sender, frame_message())
            await manager.drain(sender)
            return listener_channel

        assert asyncio.run(scenario()).sent == []

    def test_disconnected_sender_gets_nothing(self, store, hub, clock):
        manager, _ = self._manager_with_record(store, hub, clock)
        manager.orchestrator.hold()

        async def scenario():
            channel = FakeChannel()
            state = await manager.connect(channel)
            await manager.handle_message(state, start_message())
            await manager.handle_message(state, frame_message())
            await asyncio.sleep(0)
            await manager.disconnect(state)
            manager.orchestrator.gate.set()
            await manager.drain(state)
            return channel

        assert asyncio.run(scenario()).types() == ["started"]


# ---------- Validation ----------

class TestValidation:
    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            json.dumps([1, 2]),
            json.dumps({"type": "dance"}),
            json.dumps({"type": "frame", "frame": "!!!", "location": {"latitude": 1, "longitude": 1}}),
            json.dumps({"type": "frame", "frame": FRAME, "location": {"latitude": 91, "longitude": 1}}),
        ],
    )
    def test_malformed_messages_become_error_events(self, manager, raw):
        async def scenario():
            channel = FakeChannel()
            state = await manager.connect(channel)
            await manager.handle_message(state, raw)
            return channel

        assert asyncio.run(scenario()).types() == ["error"]

    def test_oversized_region_rejected(self, manager, hub):
        async def scenario():
            channel = FakeChannel()
            state = await manager.connect(channel)
            await manager.handle_message(state, subscribe_message(80, -80, 170, -170))
            return channel, state

        channel, state = asyncio.run(scenario())
        assert channel.types() == ["error"]
        assert hub.regions_of(state) == set()
