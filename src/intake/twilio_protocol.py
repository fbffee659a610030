"""
Twilio Media Streams WebSocket Protocol Handler.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- clear: Clear buffered audio (for interruption)

Audio payloads are kept as the base64 text Twilio and the model exchange;
nothing here decodes or re-encodes them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start", {})
        return cls(
            stream_sid=message.get("streamSid", "") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters", {}),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: str  # base64 mu-law, untouched

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = message.get("media", {})
        try:
            chunk = int(media.get("chunk", 0))
        except (TypeError, ValueError):
            chunk = 0

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=chunk,
            timestamp=media.get("timestamp", ""),
            payload=media.get("payload", "") or "",
        )


@dataclass
class TwilioStopEvent:
    """Parsed Twilio stop event."""
    stream_sid: str
    call_sid: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        stop = message.get("stop", {})
        return cls(
            stream_sid=message.get("streamSid", ""),
            call_sid=stop.get("callSid", ""),
        )


def parse_twilio_message(raw_message: str) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid message: expected a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    elif event_type == TwilioEventType.STOP:
        return event_type, TwilioStopEvent.from_message(message)
    else:
        return event_type, message


def create_media_message(stream_sid: str, payload: str) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        payload: Base64 mu-law audio, forwarded as-is

    Returns:
        JSON string to send to Twilio
    """
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """
    Create a Twilio clear message.

    This clears any buffered audio on Twilio's side, used for interruption.

    Args:
        stream_sid: The stream SID

    Returns:
        JSON string to send to Twilio
    """
    message = {
        "event": "clear",
        "streamSid": stream_sid
    }

    return encoder.encode(message).decode("utf-8")


class TelephonyChannel:
    """
    Outbound side of one Twilio media stream.

    Owned by the WebSocket handler; call sessions only keep a weak reference.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        stream_sid: str = "",
        call_sid: str = "",
        close_stream: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._send_message = send_message
        self._close_stream = close_stream
        self.stream_sid = stream_sid
        self.call_sid = call_sid
        self._is_open = True

    @property
    def is_open(self) -> bool:
        return self._is_open

    def close(self) -> None:
        if self._is_open:
            self._is_open = False
            logger.info("Telephony channel closed", call_sid=self.call_sid, stream_sid=self.stream_sid)

    async def hang_up(self) -> bool:
        """
        Close the media stream from our side.

        Twilio then moves past <Connect>; with no further verbs the call ends.
        Returns False if the stream was already closed or cannot be closed.
        """
        if not self._is_open:
            return False
        self.close()
        if self._close_stream is None:
            return False
        try:
            await self._close_stream()
        except Exception as e:
            logger.warning("Closing Twilio stream failed", call_sid=self.call_sid, error=str(e))
            return False
        return True

    async def send_media(self, payload: str) -> bool:
        """Send one media frame. Returns False if it could not be sent."""
        return await self._send(create_media_message(self.stream_sid, payload))

    async def send_clear(self) -> bool:
        """Flush audio Twilio has buffered for playback."""
        return await self._send(create_clear_message(self.stream_sid))

    async def _send(self, message: str) -> bool:
        if not self._is_open or not self.stream_sid:
            return False
        try:
            await self._send_message(message)
        except Exception as e:
            logger.debug("Twilio send failed", call_sid=self.call_sid, error=str(e))
            return False
        return True
