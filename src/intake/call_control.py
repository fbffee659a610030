"""Call-control actions against the Twilio REST API."""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog
from twilio.rest import Client as TwilioClient

from src.intake.config import Config

logger = structlog.get_logger(__name__)


class CallControl:
    def __init__(self, config: Config, client: Optional[TwilioClient] = None):
        self.config = config
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None or bool(self.config.twilio_account_sid and self.config.twilio_auth_token)

    def _get_client(self) -> Optional[TwilioClient]:
        if self._client is None and self.enabled:
            self._client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        return self._client

    async def hangup(self, call_sid: str, *, delay: float = 0.0) -> bool:
        """
        Hang up the call by marking it completed.

        Failures are logged, never raised. The REST client is blocking, so the
        request runs in the default executor.
        """
        client = self._get_client()
        if client is None or not call_sid:
            logger.warning("Cannot hangup - missing Twilio client or call_sid", call_id=call_sid or None)
            return False

        try:
            if delay > 0:
                # Let the goodbye audio finish.
                await asyncio.sleep(delay)

            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                lambda: client.calls(call_sid).update(status="completed"),
            )
            logger.info("Call hung up", call_id=call_sid)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Failed to hang up call", call_id=call_sid, error=str(e))
            return False
