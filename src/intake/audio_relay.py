"""
Audio pass-through between the Twilio media stream and the model connection.

Payloads are base64 mu-law strings and are forwarded verbatim in both
directions. Nothing is buffered, reordered or transcoded. A frame whose
destination is gone is dropped; relaying never raises into the socket loops.
"""

import structlog

from src.intake.session_store import SessionStore

logger = structlog.get_logger(__name__)


class AudioRelay:
    """Forwards audio frames for live calls, looked up in the session store."""

    def __init__(self, store: SessionStore):
        self.store = store

    def forward_to_model(self, call_id: str, payload: str) -> bool:
        """Send caller audio to the model. Returns False if the frame was dropped."""
        session = self.store.get(call_id)
        if session is None:
            logger.debug("Dropping caller audio: no session", call_id=call_id)
            return False

        model = session.model
        if model is None or not model.is_open:
            logger.debug("Dropping caller audio: model not open", call_id=call_id)
            return False

        try:
            return model.send_audio(payload)
        except Exception as e:
            logger.debug("Dropping caller audio: send failed", call_id=call_id, error=str(e))
            return False

    async def forward_to_caller(self, call_id: str, payload: str) -> bool:
        """Send model audio to the caller. Returns False if the frame was dropped."""
        session = self.store.get(call_id)
        if session is None:
            logger.debug("Dropping model audio: no session", call_id=call_id)
            return False

        channel = session.telephony
        if channel is None or not channel.is_open:
            logger.debug("Dropping model audio: telephony closed", call_id=call_id)
            return False

        return await channel.send_media(payload)

    async def clear_caller(self, call_id: str) -> bool:
        """Flush assistant audio Twilio has queued for playback (barge-in)."""
        session = self.store.get(call_id)
        if session is None:
            return False

        channel = session.telephony
        if channel is None or not channel.is_open:
            return False

        sent = await channel.send_clear()
        if sent:
            logger.debug("Cleared caller playback", call_id=call_id)
        return sent
