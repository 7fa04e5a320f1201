"""
Per-connection state machine for the detection channel.

Each connection is Idle until ``start`` opens a detection session, and
Streaming until ``stop`` or disconnect closes it. Region subscriptions
are independent of that state. Frames are admitted one at a time per
connection, at most once per cooldown window; anything else is dropped.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from common.config import FRAME_COOLDOWN_SECONDS
from db.store import PotholeStore
from orchestrator.exceptions import StoreError
from orchestrator.orchestrator import DetectionOrchestrator
from orchestrator.types import SessionContext
from realtime.events import (
    DetectionEvent,
    ErrorEvent,
    EventValidationError,
    FrameEvent,
    NewRecordInRegionEvent,
    ProcessedEvent,
    StartedEvent,
    StartEvent,
    StopEvent,
    StoppedEvent,
    SubscribeRegionEvent,
    UnsubscribeRegionEvent,
    dump,
    parse_client_event,
)
from realtime.hub import RegionHub, RegionTooLargeError

logger = logging.getLogger(__name__)


class ChannelClosedError(Exception):
    """Raised by a channel when the peer has gone away."""


class Channel(Protocol):
    async def send_json(self, payload: dict[str, Any]) -> None: ...


@dataclass(eq=False)
class ConnectionState:
    connection_id: str
    channel: Channel
    # Authenticated user, if the socket carried a valid token
    user_id: str | None = None
    session_id: str | None = None
    session_user_id: str | None = None
    last_frame_accepted_at: float | None = None
    frame_task: asyncio.Task | None = None
    closed: bool = False

    @property
    def streaming(self) -> bool:
        return self.session_id is not None

    async def send(self, payload: dict[str, Any]) -> None:
        if self.closed:
            return
        try:
            await self.channel.send_json(payload)
        except ChannelClosedError as exc:
            self.closed = True
            logger.debug("[session] %s closed while sending: %s", self.connection_id, exc)
        except Exception:
            # Treat an unusable channel as gone so later sends are skipped
            self.closed = True
            logger.exception("[session] Send to %s failed", self.connection_id)


def _error(message: str) -> dict[str, Any]:
    return dump(ErrorEvent(message=message))


class SessionManager:
    def __init__(
        self,
        orchestrator: DetectionOrchestrator,
        store: PotholeStore,
        hub: RegionHub,
        cooldown_seconds: float = FRAME_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.hub = hub
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._handlers = {
            StartEvent: self._handle_start,
            FrameEvent: self._handle_frame,
            StopEvent: self._handle_stop,
            SubscribeRegionEvent: self._handle_subscribe,
            UnsubscribeRegionEvent: self._handle_unsubscribe,
        }

    async def connect(self, channel: Channel, user_id: str | None = None) -> ConnectionState:
        state = ConnectionState(connection_id=uuid.uuid4().hex, channel=channel, user_id=user_id)
        self.hub.register(state)
        logger.info("[session] Connected %s (user=%s)", state.connection_id, user_id or "anonymous")
        return state

    async def handle_message(self, state: ConnectionState, raw: str | bytes) -> None:
        try:
            event = parse_client_event(raw)
        except EventValidationError as exc:
            await state.send(_error(str(exc)))
            return
        await self.handle_event(state, event)

    async def handle_event(self, state: ConnectionState, event) -> None:
        await self._handlers[type(event)](state, event)

    async def disconnect(self, state: ConnectionState) -> None:
        """Drop the connection; an in-flight frame finishes but its replies go nowhere."""
        state.closed = True
        self.hub.unregister(state)
        await self._close_session(state)
        logger.info("[session] Disconnected %s", state.connection_id)

    async def drain(self, state: ConnectionState) -> None:
        """Wait for the in-flight frame, if any."""
        task = state.frame_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ---------- Lifecycle ----------

    async def _handle_start(self, state: ConnectionState, event: StartEvent) -> None:
        user_id = state.user_id or event.user_id
        try:
            await self._close_session(state, raise_errors=True)
            session = await asyncio.to_thread(self.store.open_session, user_id)
        except StoreError as exc:
            logger.warning("[session] Could not start session for %s: %s", state.connection_id, exc)
            await state.send(_error("Could not start detection session"))
            return

        state.session_id = session.id
        state.session_user_id = user_id
        state.last_frame_accepted_at = None
        logger.info("[session] %s started session %s", state.connection_id, session.id)
        await state.send(dump(StartedEvent(session_id=session.id)))

    async def _handle_stop(self, state: ConnectionState, event: StopEvent) -> None:
        await self._close_session(state)
        await state.send(dump(StoppedEvent()))

    async def _close_session(self, state: ConnectionState, raise_errors: bool = False) -> None:
        session_id = state.session_id
        if session_id is None:
            return
        state.session_id = None
        state.session_user_id = None
        try:
            await asyncio.to_thread(self.store.close_session, session_id)
        except StoreError as exc:
            if raise_errors:
                raise
            logger.warning("[session] Failed to close session %s: %s", session_id, exc)

    # ---------- Frames ----------

    def _admit(self, state: ConnectionState) -> bool:
        if state.frame_task is not None and not state.frame_task.done():
            return False
        now = self._clock()
        last = state.last_frame_accepted_at
        if last is not None and now - last < self.cooldown_seconds:
            return False
        state.last_frame_accepted_at = now
        return True

    async def _handle_frame(self, state: ConnectionState, event: FrameEvent) -> None:
        if not state.streaming:
            await state.send(_error("Send start before streaming frames"))
            return
        if not self._admit(state):
            logger.debug("[session] Dropped frame from %s", state.connection_id)
            return

        context = SessionContext(session_id=state.session_id, user_id=state.session_user_id)
        state.frame_task = asyncio.create_task(
            self._process_frame(state, event, context),
            name=f"frame-{state.connection_id}",
        )

    async def _process_frame(self, state: ConnectionState, event: FrameEvent, context: SessionContext) -> None:
        try:
            outcome = await self.orchestrator.process_detection(event.frame, event.location, context)
            if outcome.detected:
                await state.send(
                    dump(
                        DetectionEvent(
                            record_id=outcome.record_id,
                            location=event.location,
                            confidence=outcome.confidence,
                            detection_count=outcome.accepted_predictions,
                            is_new_record=outcome.is_new_record,
                        )
                    )
                )
                await self.hub.publish(
                    event.location.latitude,
                    event.location.longitude,
                    dump(NewRecordInRegionEvent(record=outcome.record)),
                )
        except Exception:
            logger.exception("[session] Frame processing failed for %s", state.connection_id)
            await state.send(_error("Processing failed"))
        finally:
            await state.send(dump(ProcessedEvent()))

    # ---------- Regions ----------

    async def _handle_subscribe(self, state: ConnectionState, event: SubscribeRegionEvent) -> None:
        try:
            cells = self.hub.subscribe(state, event.bounds)
        except RegionTooLargeError as exc:
            await state.send(_error(str(exc)))
            return
        logger.debug("[session] %s joined %d region cell(s)", state.connection_id, len(cells))

    async def _handle_unsubscribe(self, state: ConnectionState, event: UnsubscribeRegionEvent) -> None:
        try:
            self.hub.unsubscribe(state, event.bounds)
        except RegionTooLargeError as exc:
            await state.send(_error(str(exc)))
