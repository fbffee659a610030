"""
Call session orchestrator.

Consumes two typed event streams per call:

- Call events from the webhook / Media Streams layer (initiated, answered,
  media, stop, hangup)
- Model events from the realtime connection (audio, transcripts, response
  boundaries, VAD, errors)

and drives each call through an explicit state machine:

    created -> model_connecting -> model_ready -> active -> settling -> saved -> closed

Persistence fires at most once per call: either when the settle timer fires
after the caller has spoken and the assistant's last response ended, or on
teardown if it never fired. A call whose media stream never started is
dropped unsaved once `stream_start_timeout_seconds` passes or it is torn down.
Persistence and call-control run as tracked background tasks so no socket
loop ever waits on them.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.intake.audio_relay import AudioRelay
from src.intake.call_control import CallControl
from src.intake.config import Config
from src.intake.lead_types import LeadFields, Speaker
from src.intake.leads import LeadSink, build_lead_sink
from src.intake.realtime import (
    ModelConnection,
    ModelConnectionFactory,
    ModelEvent,
    ModelEventKind,
    RealtimeModelConnection,
    build_session_update,
)
from src.intake.session_store import CallSession, CallState, SessionExistsError, SessionStore
from src.intake.settle import SettleTimer
from src.intake.transcript import TranscriptAccumulator, render_transcript
from src.intake.twilio_protocol import TelephonyChannel

logger = structlog.get_logger(__name__)


class CallEventKind(str, Enum):
    INITIATED = "initiated"
    ANSWERED = "answered"
    MEDIA = "media"
    STOP = "stop"
    HANGUP = "hangup"


@dataclass(frozen=True)
class CallEvent:
    kind: CallEventKind
    call_id: str
    caller_phone: str = ""
    payload: str = ""
    channel: Optional[TelephonyChannel] = None
    reason: str = ""


# Allowed transitions. Anything else is logged and ignored.
TRANSITIONS: dict[CallState, frozenset[CallState]] = {
    CallState.CREATED: frozenset({CallState.MODEL_CONNECTING, CallState.CLOSED}),
    CallState.MODEL_CONNECTING: frozenset({CallState.MODEL_READY, CallState.CLOSED}),
    CallState.MODEL_READY: frozenset({CallState.ACTIVE, CallState.SETTLING, CallState.CLOSED}),
    CallState.ACTIVE: frozenset({CallState.ACTIVE, CallState.SETTLING, CallState.CLOSED}),
    CallState.SETTLING: frozenset({CallState.SAVED, CallState.CLOSED}),
    CallState.SAVED: frozenset({CallState.CLOSED}),
    CallState.CLOSED: frozenset(),
}


def can_transition(current: CallState, target: CallState) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


@dataclass
class CallStats:
    calls_started: int = 0
    calls_closed: int = 0
    leads_saved: int = 0
    save_failures: int = 0
    model_errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class CallOrchestrator:
    def __init__(
        self,
        config: Config,
        *,
        store: Optional[SessionStore] = None,
        sink: LeadSink,
        call_control: Optional[CallControl] = None,
        model_factory: Optional[ModelConnectionFactory] = None,
        clock: Optional[Callable[[], date]] = None,
    ):
        self.config = config
        self.store = store or SessionStore()
        self.sink = sink
        self.call_control = call_control or CallControl(config)
        self._model_factory = model_factory or self._realtime_connection
        self.relay = AudioRelay(self.store)
        self.accumulator = TranscriptAccumulator(self.store, clock=clock)
        self.timer = SettleTimer(self._on_settled, default_delay=config.settle_delay_seconds)
        self.stats = CallStats()
        self._tasks: set[asyncio.Task] = set()
        self._stream_deadlines: dict[str, asyncio.Task] = {}

    def _realtime_connection(self, call_id, on_event, on_closed) -> ModelConnection:
        return RealtimeModelConnection(call_id, config=self.config, on_event=on_event, on_closed=on_closed)

    # ------------------------------------------------------------------
    # Call events
    # ------------------------------------------------------------------

    async def handle_call_event(self, event: CallEvent) -> None:
        kind = event.kind
        if kind == CallEventKind.INITIATED:
            self._on_initiated(event)
        elif kind == CallEventKind.ANSWERED:
            await self._on_answered(event)
        elif kind == CallEventKind.MEDIA:
            await self._on_media(event)
        elif kind in (CallEventKind.STOP, CallEventKind.HANGUP):
            await self._teardown(event.call_id, reason=event.reason or kind.value)
        else:
            logger.warning("Unhandled call event", call_id=event.call_id, kind=kind)

    def _on_initiated(self, event: CallEvent, *, await_stream: bool = True) -> None:
        if event.call_id in self.store:
            logger.debug("Duplicate call initiation ignored", call_id=event.call_id)
            return
        try:
            self.store.create(event.call_id, caller_phone=event.caller_phone)
        except SessionExistsError:
            logger.debug("Duplicate call initiation ignored", call_id=event.call_id)
            return
        self.stats.calls_started += 1
        if await_stream:
            self._stream_deadlines[event.call_id] = asyncio.create_task(
                self._expire_without_stream(event.call_id), name=f"stream-deadline:{event.call_id}"
            )

    async def _expire_without_stream(self, call_id: str) -> None:
        await asyncio.sleep(self.config.stream_start_timeout_seconds)
        self._stream_deadlines.pop(call_id, None)
        session = self.store.get(call_id)
        if session is not None and session.state == CallState.CREATED:
            logger.info("Media stream never started", call_id=call_id)
            await self._teardown(call_id, reason="stream_timeout")

    def _cancel_stream_deadline(self, call_id: str) -> None:
        task = self._stream_deadlines.pop(call_id, None)
        if task is not None:
            task.cancel()

    async def _on_answered(self, event: CallEvent) -> None:
        call_id = event.call_id
        if call_id not in self.store:
            # Stream can arrive without (or before) the webhook.
            self._on_initiated(event, await_stream=False)
        self._cancel_stream_deadline(call_id)

        model: Optional[ModelConnection] = None
        async with self.store.locked(call_id) as session:
            if session is None:
                return
            if event.channel is not None:
                session.attach_telephony(event.channel)
            if session.state != CallState.CREATED:
                logger.info("Stream re-attached", call_id=call_id, state=session.state.value)
                return
            if not self._transition(session, CallState.MODEL_CONNECTING):
                return
            model = self._model_factory(
                call_id,
                lambda ev: self.handle_model_event(call_id, ev),
                lambda err: self.handle_model_closed(call_id, err),
            )
            session.model = model

        try:
            await model.connect()
        except Exception as e:
            logger.error("Model connection failed", call_id=call_id, error=str(e))
            self.stats.model_errors += 1
            await self._fail_call(call_id, reason="model_connect_failed")
            return

        async with self.store.locked(call_id) as session:
            if session is None or session.model is not model:
                await model.close()
                return
            if not self._transition(session, CallState.MODEL_READY):
                return
            model.send(build_session_update(self.config))
            model.request_response(self.config.greeting_instructions)

        logger.info("Model ready", call_id=call_id)

    async def _on_media(self, event: CallEvent) -> None:
        if self.relay.forward_to_model(event.call_id, event.payload):
            await self._mark_active(event.call_id)

    # ------------------------------------------------------------------
    # Model events
    # ------------------------------------------------------------------

    async def handle_model_event(self, call_id: str, event: ModelEvent) -> None:
        kind = event.kind

        if kind == ModelEventKind.AUDIO_DELTA:
            if event.delta and await self.relay.forward_to_caller(call_id, event.delta):
                await self._mark_active(call_id)

        elif kind == ModelEventKind.INPUT_TRANSCRIPT_COMPLETED:
            await self._mark_active(call_id)
            changed = await self.accumulator.record_utterance(call_id, Speaker.CALLER, event.transcript)
            if changed:
                logger.debug("Caller utterance extracted", call_id=call_id, fields=changed)

        elif kind == ModelEventKind.RESPONSE_TRANSCRIPT_DONE:
            await self._mark_active(call_id)
            await self.accumulator.record_utterance(call_id, Speaker.ASSISTANT, event.transcript)

        elif kind == ModelEventKind.RESPONSE_DONE:
            session = self.store.get(call_id)
            if session is None or session.saved:
                return
            # Settling means the caller went quiet, so they must have spoken first.
            if not session.caller_has_spoken():
                return
            if session.state in (CallState.MODEL_READY, CallState.ACTIVE):
                self.timer.reset(call_id, self.config.settle_delay_seconds)

        elif kind == ModelEventKind.SPEECH_STARTED:
            # Barge-in: drop queued assistant audio.
            self.timer.cancel(call_id)
            await self.relay.clear_caller(call_id)

        elif kind == ModelEventKind.ERROR:
            logger.error("Model reported error", call_id=call_id, error=event.error_message)

        elif kind in (ModelEventKind.SESSION_CREATED, ModelEventKind.SESSION_UPDATED):
            logger.debug("Model session event", call_id=call_id, type=event.type)

        # response_delta, speech_stopped and unknown events carry nothing we act on.

    async def handle_model_closed(self, call_id: str, error: Optional[str] = None) -> None:
        logger.error("Model connection closed unexpectedly", call_id=call_id, error=error)
        self.stats.model_errors += 1
        await self._fail_call(call_id, reason="model_closed")

    # ------------------------------------------------------------------
    # Settle / persistence
    # ------------------------------------------------------------------

    async def _on_settled(self, call_id: str) -> None:
        speak_closing = False
        async with self.store.locked(call_id) as session:
            if session is None or session.saved:
                return
            if session.state not in (CallState.MODEL_READY, CallState.ACTIVE):
                logger.debug("Settle ignored", call_id=call_id, state=session.state.value)
                return

            self._settle_locked(session, reason="settled")

            if self.config.hangup_after_settle and session.model is not None and session.model.is_open:
                speak_closing = session.model.request_response(self.config.closing_instructions)

        if speak_closing:
            self._spawn(
                self.call_control.hangup(call_id, delay=self.config.hangup_delay_seconds),
                name=f"hangup:{call_id}",
            )

    def _settle_locked(self, session: CallSession, *, reason: str) -> bool:
        """Flip `saved` and dispatch persistence. Caller must hold the call's lock."""
        if session.saved:
            return False

        if can_transition(session.state, CallState.SETTLING):
            self._transition(session, CallState.SETTLING)

        session.saved = True
        lead = session.lead.model_copy()
        transcript = render_transcript(session.transcript)
        self._spawn(self._persist(session.call_id, lead, transcript), name=f"persist:{session.call_id}")

        if session.state == CallState.SETTLING:
            self._transition(session, CallState.SAVED)

        logger.info(
            "Call settled",
            call_id=session.call_id,
            reason=reason,
            reached_active=session.reached_active,
            lead=lead.to_wire(),
        )
        return True

    async def _persist(self, call_id: str, lead: LeadFields, transcript: str) -> None:
        try:
            await self.sink.save(lead, transcript)
        except Exception as e:
            self.stats.save_failures += 1
            logger.error("Lead save failed", call_id=call_id, error=str(e))
            return
        self.stats.leads_saved += 1

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _teardown(self, call_id: str, *, reason: str) -> bool:
        """Force any pending save, release the call's resources and forget it. Idempotent."""
        self.timer.cancel(call_id)
        self._cancel_stream_deadline(call_id)

        async with self.store.locked(call_id) as session:
            if session is None or session.state == CallState.CLOSED:
                return False

            if session.state == CallState.CREATED:
                logger.info("Discarding call without media stream", call_id=call_id, reason=reason)
            else:
                self._settle_locked(session, reason=reason)

            model = session.model
            session.model = None
            self._transition(session, CallState.CLOSED)
            session.transcript.clear()
            session.detach_telephony()
            self.store.delete(call_id)

        if model is not None:
            try:
                await model.close()
            except Exception as e:
                logger.warning("Model close failed", call_id=call_id, error=str(e))

        self.stats.calls_closed += 1
        logger.info("Call closed", call_id=call_id, reason=reason)
        return True

    async def _fail_call(self, call_id: str, *, reason: str) -> None:
        session = self.store.get(call_id)
        channel = session.telephony if session is not None else None
        if not await self._teardown(call_id, reason=reason):
            return
        if channel is not None:
            await channel.hang_up()
        self._spawn(self.call_control.hangup(call_id), name=f"hangup:{call_id}")

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Tear down every live call and wait for pending saves."""
        call_ids = self.store.call_ids()
        if call_ids:
            logger.info("Shutting down live calls", count=len(call_ids))
        for call_id in call_ids:
            await self._teardown(call_id, reason="shutdown")
        self.timer.cancel_all()
        for call_id in list(self._stream_deadlines):
            self._cancel_stream_deadline(call_id)

        await self.drain(timeout=timeout)
        await self.sink.close()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for background persistence / call-control tasks."""
        while self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                logger.warning("Background tasks still running", count=len(pending))
                return

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _mark_active(self, call_id: str) -> None:
        session = self.store.get(call_id)
        if session is None or session.state != CallState.MODEL_READY:
            return
        await self.store.update(call_id, self._activate)

    def _activate(self, session: CallSession) -> None:
        if session.state == CallState.MODEL_READY and self._transition(session, CallState.ACTIVE):
            session.reached_active = True

    def _transition(self, session: CallSession, target: CallState) -> bool:
        current = session.state
        if not can_transition(current, target):
            logger.warning(
                "Invalid call state transition",
                call_id=session.call_id,
                current=current.value,
                target=target.value,
            )
            return False
        if current != target:
            session.state = target
            logger.debug("Call state", call_id=session.call_id, previous=current.value, state=target.value)
        return True

    def _spawn(self, coro: Awaitable[Any], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def build_orchestrator(config: Config) -> CallOrchestrator:
    return CallOrchestrator(
        config,
        sink=build_lead_sink(config),
        call_control=CallControl(config),
    )
