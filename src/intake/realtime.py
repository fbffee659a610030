"""
OpenAI Realtime (speech-to-speech) connection for one call.

Twilio (g711_ulaw 8kHz) -> OpenAI Realtime -> Twilio (g711_ulaw 8kHz)

Incoming server events are decoded into `ModelEvent`s, a small tagged stream
the orchestrator consumes. Event types we do not care about map to
`ModelEventKind.UNKNOWN` and are ignored downstream.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import msgspec
import structlog
import websockets

from src.intake.config import Config

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class ModelConnectionError(Exception):
    """Raised when the realtime connection cannot be opened."""
    pass


class ModelEventKind(str, Enum):
    AUDIO_DELTA = "audio_delta"
    INPUT_TRANSCRIPT_COMPLETED = "input_transcript_completed"
    RESPONSE_DELTA = "response_delta"
    RESPONSE_TRANSCRIPT_DONE = "response_transcript_done"
    RESPONSE_DONE = "response_done"
    SPEECH_STARTED = "speech_started"
    SPEECH_STOPPED = "speech_stopped"
    ERROR = "error"
    SESSION_CREATED = "session_created"
    SESSION_UPDATED = "session_updated"
    UNKNOWN = "unknown"


_EVENT_KINDS: dict[str, ModelEventKind] = {
    "response.audio.delta": ModelEventKind.AUDIO_DELTA,
    "response.output_audio.delta": ModelEventKind.AUDIO_DELTA,
    "conversation.item.input_audio_transcription.completed": ModelEventKind.INPUT_TRANSCRIPT_COMPLETED,
    "response.audio_transcript.delta": ModelEventKind.RESPONSE_DELTA,
    "response.output_audio_transcript.delta": ModelEventKind.RESPONSE_DELTA,
    "response.text.delta": ModelEventKind.RESPONSE_DELTA,
    "response.audio_transcript.done": ModelEventKind.RESPONSE_TRANSCRIPT_DONE,
    "response.output_audio_transcript.done": ModelEventKind.RESPONSE_TRANSCRIPT_DONE,
    "response.done": ModelEventKind.RESPONSE_DONE,
    "input_audio_buffer.speech_started": ModelEventKind.SPEECH_STARTED,
    "input_audio_buffer.speech_stopped": ModelEventKind.SPEECH_STOPPED,
    "error": ModelEventKind.ERROR,
    "session.created": ModelEventKind.SESSION_CREATED,
    "session.updated": ModelEventKind.SESSION_UPDATED,
}


@dataclass(frozen=True)
class ModelEvent:
    """One server event from the realtime model."""

    kind: ModelEventKind
    type: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def delta(self) -> str:
        value = self.data.get("delta") or self.data.get("audio")
        return value if isinstance(value, str) else ""

    @property
    def transcript(self) -> str:
        value = self.data.get("transcript")
        return value if isinstance(value, str) else ""

    @property
    def error_message(self) -> str:
        error = self.data.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("code") or error)
        return str(error or "")


def parse_model_event(raw: str | bytes) -> Optional[ModelEvent]:
    """Decode one server event. Returns None for anything that is not a JSON object."""
    try:
        data = decoder.decode(raw.encode("utf-8") if isinstance(raw, str) else raw)
    except msgspec.DecodeError:
        return None
    if not isinstance(data, dict):
        return None
    event_type = str(data.get("type") or "")
    return ModelEvent(kind=_EVENT_KINDS.get(event_type, ModelEventKind.UNKNOWN), type=event_type, data=data)


def build_session_update(config: Config) -> dict[str, Any]:
    """Session configuration sent once, right after connecting."""
    vad_threshold = min(1.0, max(0.0, float(config.openai_realtime_vad_threshold)))

    session: dict[str, Any] = {
        "modalities": ["audio", "text"],
        "instructions": config.realtime_instructions,
        "voice": config.openai_realtime_voice,
        "input_audio_format": "g711_ulaw",
        "output_audio_format": "g711_ulaw",
        "turn_detection": {
            "type": "server_vad",
            "threshold": vad_threshold,
            "prefix_padding_ms": int(config.openai_realtime_prefix_padding_ms),
            "silence_duration_ms": int(config.openai_realtime_turn_silence_ms),
        },
    }

    transcription_model = (config.openai_realtime_transcription_model or "").strip()
    if transcription_model:
        session["input_audio_transcription"] = {"model": transcription_model}

    return {"type": "session.update", "session": session}


def build_response_create(instructions: Optional[str] = None) -> dict[str, Any]:
    response: dict[str, Any] = {"modalities": ["audio", "text"]}
    if instructions:
        response["instructions"] = instructions
    return {"type": "response.create", "response": response}


EventHandler = Callable[[ModelEvent], Awaitable[None]]
ClosedHandler = Callable[[Optional[str]], Awaitable[None]]


class ModelConnection(ABC):
    """A live connection to the conversational speech model for one call."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def connect(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def send(self, event: dict[str, Any]) -> bool:
        """Queue a client event. Never blocks; returns False if dropped."""
        raise NotImplementedError

    def send_audio(self, payload: str) -> bool:
        return self.send({"type": "input_audio_buffer.append", "audio": payload})

    def request_response(self, instructions: Optional[str] = None) -> bool:
        return self.send(build_response_create(instructions))

    async def close(self) -> None:
        return None


ModelConnectionFactory = Callable[[str, EventHandler, ClosedHandler], ModelConnection]


class RealtimeModelConnection(ModelConnection):
    """
    OpenAI Realtime over websockets.

    Outbound events go through a bounded queue drained by a send task, so the
    Twilio receiver never waits on OpenAI backpressure. A receive task decodes
    server events and hands them to `on_event` in arrival order.
    """

    def __init__(
        self,
        call_id: str,
        *,
        config: Config,
        on_event: EventHandler,
        on_closed: ClosedHandler,
    ):
        self.call_id = call_id
        self.config = config
        self._on_event = on_event
        self._on_closed = on_closed

        self._ws: Optional[Any] = None
        self._send_queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=2000)
        self._send_task: Optional[asyncio.Task] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._is_open = False
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._is_open and not self._closing

    async def connect(self) -> None:
        if self._ws:
            return

        api_key = (self.config.openai_api_key or "").strip()
        model = (self.config.openai_realtime_model or "").strip()
        if not api_key or not model:
            raise ModelConnectionError("OpenAI Realtime requires OPENAI_API_KEY and OPENAI_REALTIME_MODEL")

        url = f"{self.config.openai_realtime_url}?model={model}"
        headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "realtime=v1",
        }

        try:
            self._ws = await websockets.connect(url, additional_headers=headers, open_timeout=10)
        except Exception as e:
            raise ModelConnectionError(f"OpenAI Realtime connect failed: {e}") from e

        if self._closing:
            # Call ended while the handshake was in flight.
            await self._ws.close()
            self._ws = None
            raise ModelConnectionError("OpenAI Realtime closed during connect")

        self._is_open = True
        self._send_task = asyncio.create_task(self._send_loop())
        self._recv_task = asyncio.create_task(self._receive_loop())

        logger.info(
            "OpenAI Realtime connected",
            call_id=self.call_id,
            model=model,
            voice=self.config.openai_realtime_voice,
        )

    def send(self, event: dict[str, Any]) -> bool:
        if not self.is_open:
            return False
        try:
            self._send_queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("OpenAI send queue full; dropping event", call_id=self.call_id, type=event.get("type"))
            return False
        return True

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._is_open = False

        try:
            self._send_queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

        current = asyncio.current_task()
        tasks = [t for t in (self._send_task, self._recv_task) if t and t is not current]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug("OpenAI close failed", call_id=self.call_id, error=str(e))

        self._ws = None
        logger.info("OpenAI Realtime closed", call_id=self.call_id)

    async def _send_loop(self) -> None:
        ws = self._ws
        if not ws:
            return

        try:
            while self.is_open:
                item = await self._send_queue.get()
                if item is None:
                    break
                try:
                    await ws.send(encoder.encode(item).decode("utf-8"))
                except Exception as e:
                    logger.error("OpenAI send failed", call_id=self.call_id, error=str(e), type=item.get("type"))
                    break
        except asyncio.CancelledError:
            pass

    async def _receive_loop(self) -> None:
        ws = self._ws
        if not ws:
            return

        error: Optional[str] = None
        try:
            async for raw in ws:
                if self._closing:
                    break
                event = parse_model_event(raw)
                if event is None:
                    continue
                try:
                    await self._on_event(event)
                except Exception as e:
                    logger.error(
                        "Model event handler failed",
                        call_id=self.call_id,
                        type=event.type,
                        error=str(e),
                    )
        except asyncio.CancelledError:
            return
        except Exception as e:
            error = str(e)
            logger.error("OpenAI receive loop failed", call_id=self.call_id, error=error)

        self._is_open = False
        if not self._closing:
            await self._on_closed(error or "connection closed")
