"""
Tests for Twilio protocol handling.
"""

import pytest
import json
import base64
from unittest.mock import AsyncMock

from src.intake.twilio_protocol import (
    TelephonyChannel,
    TwilioEventType,
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioStopEvent,
    parse_twilio_message,
    create_media_message,
    create_clear_message,
)


class TestMessageParsing:
    """Tests for parsing Twilio messages."""

    def test_parse_connected_event(self):
        """Test parsing connected event."""
        message = json.dumps({"event": "connected", "protocol": "Call"})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.CONNECTED
        assert event["protocol"] == "Call"

    def test_parse_start_event(self):
        """Test parsing start event."""
        message = json.dumps({
            "event": "start",
            "streamSid": "MZ123",
            "start": {
                "callSid": "CA456",
                "accountSid": "AC789",
                "tracks": ["inbound"],
                "customParameters": {"from": "+12145550100"},
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.START
        assert isinstance(event, TwilioStartEvent)
        assert event.stream_sid == "MZ123"
        assert event.call_sid == "CA456"
        assert event.account_sid == "AC789"
        assert event.tracks == ["inbound"]
        assert event.custom_parameters == {"from": "+12145550100"}

    def test_parse_media_event_keeps_payload_as_sent(self):
        """Media payloads stay base64 text, byte for byte."""
        payload_b64 = base64.b64encode(b"\xff\x7f" * 80).decode()

        message = json.dumps({
            "event": "media",
            "streamSid": "MZ123",
            "media": {
                "track": "inbound",
                "chunk": "7",
                "timestamp": "12345",
                "payload": payload_b64,
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MEDIA
        assert isinstance(event, TwilioMediaEvent)
        assert event.stream_sid == "MZ123"
        assert event.track == "inbound"
        assert event.chunk == 7
        assert event.payload == payload_b64

    def test_parse_stop_event(self):
        """Test parsing stop event."""
        message = json.dumps({"event": "stop", "streamSid": "MZ123", "stop": {"callSid": "CA456"}})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.STOP
        assert isinstance(event, TwilioStopEvent)
        assert event.call_sid == "CA456"

    def test_parse_accepts_bytes(self):
        event_type, _ = parse_twilio_message(b'{"event": "connected"}')
        assert event_type == TwilioEventType.CONNECTED

    def test_parse_invalid_json(self):
        """Test parsing invalid JSON raises error."""
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_twilio_message("not valid json")

    def test_parse_non_object(self):
        with pytest.raises(ValueError, match="expected a JSON object"):
            parse_twilio_message("[1, 2, 3]")

    def test_parse_unknown_event(self):
        """Test parsing unknown event type raises error."""
        message = json.dumps({"event": "unknown_event"})
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_twilio_message(message)


class TestMessageCreation:
    """Tests for creating Twilio messages."""

    def test_create_media_message(self):
        """Payload is forwarded verbatim."""
        payload = base64.b64encode(b"\xff" * 160).decode()
        message = create_media_message("MZ123", payload)

        parsed = json.loads(message)

        assert parsed == {
            "event": "media",
            "streamSid": "MZ123",
            "media": {"payload": payload},
        }

    def test_create_clear_message(self):
        """Test creating clear message."""
        message = create_clear_message("MZ123")

        parsed = json.loads(message)

        assert parsed["event"] == "clear"
        assert parsed["streamSid"] == "MZ123"


class TestTelephonyChannel:
    """Tests for the outbound side of a media stream."""

    @pytest.mark.asyncio
    async def test_send_media(self):
        send_message = AsyncMock()
        channel = TelephonyChannel(send_message, stream_sid="MZ123", call_sid="CA456")

        assert await channel.send_media("AAAA") is True

        sent = json.loads(send_message.await_args.args[0])
        assert sent["media"]["payload"] == "AAAA"
        assert sent["streamSid"] == "MZ123"

    @pytest.mark.asyncio
    async def test_send_clear(self):
        send_message = AsyncMock()
        channel = TelephonyChannel(send_message, stream_sid="MZ123")

        assert await channel.send_clear() is True
        assert '"event":"clear"' in send_message.await_args.args[0].replace(" ", "")

    @pytest.mark.asyncio
    async def test_closed_channel_drops_frames(self):
        send_message = AsyncMock()
        channel = TelephonyChannel(send_message, stream_sid="MZ123")
        channel.close()

        assert channel.is_open is False
        assert await channel.send_media("AAAA") is False
        send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_stream_sid_drops_frames(self):
        send_message = AsyncMock()
        channel = TelephonyChannel(send_message)

        assert await channel.send_media("AAAA") is False
        send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_failure_is_swallowed(self):
        send_message = AsyncMock(side_effect=RuntimeError("socket gone"))
        channel = TelephonyChannel(send_message, stream_sid="MZ123")

        assert await channel.send_media("AAAA") is False

    @pytest.mark.asyncio
    async def test_hang_up_closes_stream_once(self):
        close_stream = AsyncMock()
        channel = TelephonyChannel(AsyncMock(), stream_sid="MZ123", close_stream=close_stream)

        assert await channel.hang_up() is True
        assert await channel.hang_up() is False

        close_stream.assert_awaited_once()
        assert channel.is_open is False

    @pytest.mark.asyncio
    async def test_hang_up_without_close_callback(self):
        channel = TelephonyChannel(AsyncMock(), stream_sid="MZ123")

        assert await channel.hang_up() is False
        assert channel.is_open is False

    @pytest.mark.asyncio
    async def test_hang_up_failure_is_swallowed(self):
        channel = TelephonyChannel(
            AsyncMock(), stream_sid="MZ123", close_stream=AsyncMock(side_effect=RuntimeError("already closed"))
        )

        assert await channel.hang_up() is False
        assert channel.is_open is False
