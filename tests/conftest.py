"""
Pytest configuration and fixtures.
"""

from datetime import date
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock, patch
import os

import pytest

from src.intake.call_control import CallControl
from src.intake.config import Config
from src.intake.lead_types import LeadFields
from src.intake.leads import LeadSink
from src.intake.realtime import ModelConnection, ModelConnectionError


REFERENCE_DATE = date(2025, 11, 23)


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "OPENAI_API_KEY": "sk-test",
        "OPENAI_REALTIME_MODEL": "gpt-4o-realtime-preview-2024-12-17",
        "AIRTABLE_API_KEY": "",
        "AIRTABLE_BASE_ID": "",
        "HANGUP_AFTER_SETTLE": "false",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.intake.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeModelConnection(ModelConnection):
    """In-memory model connection that records what the orchestrator sends."""

    def __init__(self, call_id, on_event, on_closed, *, fail: bool = False):
        self.call_id = call_id
        self.on_event = on_event
        self.on_closed = on_closed
        self.fail = fail
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self) -> None:
        if self.fail:
            raise ModelConnectionError("connect refused")
        self._open = True

    def send(self, event: dict[str, Any]) -> bool:
        if not self._open:
            return False
        self.sent.append(event)
        return True

    async def close(self) -> None:
        self._open = False
        self.closed = True

    def sent_types(self) -> list[str]:
        return [event.get("type") for event in self.sent]


class FakeModelFactory:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.created: list[FakeModelConnection] = []

    def __call__(self, call_id, on_event, on_closed) -> FakeModelConnection:
        model = FakeModelConnection(call_id, on_event, on_closed, fail=self.fail)
        self.created.append(model)
        return model


class RecordingSink(LeadSink):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.saved: list[tuple[LeadFields, str]] = []
        self.closed = False

    async def save(self, lead: LeadFields, transcript: str) -> None:
        self.saved.append((lead, transcript))
        if self.error is not None:
            raise self.error

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_config():
    """Build a Config with test defaults; keyword overrides win."""
    def _make(**overrides: Any) -> Config:
        values: dict[str, Any] = {
            "public_host": "test.ngrok.io",
            "openai_api_key": "sk-test",
            "twilio_account_sid": "ACtest123456789",
            "twilio_auth_token": "test_auth_token",
            "settle_delay_seconds": 0.05,
            "hangup_delay_seconds": 0.0,
        }
        values.update(overrides)
        return Config(**values)
    return _make


@pytest.fixture
def model_factory():
    return FakeModelFactory()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def call_control():
    control = MagicMock(spec=CallControl)
    control.hangup = AsyncMock(return_value=True)
    return control


@pytest.fixture
def make_orchestrator(make_config, model_factory, sink, call_control):
    from src.intake.orchestrator import CallOrchestrator

    def _make(config: Optional[Config] = None, **overrides: Any) -> CallOrchestrator:
        kwargs: dict[str, Any] = {
            "sink": sink,
            "call_control": call_control,
            "model_factory": model_factory,
            "clock": lambda: REFERENCE_DATE,
        }
        kwargs.update(overrides)
        return CallOrchestrator(config or make_config(), **kwargs)
    return _make


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    import json
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {"from": "+12145550100"},
        }
    })


@pytest.fixture
def twilio_media_message():
    """Sample Twilio media message (20ms of mu-law silence)."""
    import json
    import base64

    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(b"\xff" * 160).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    import json
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
        "stop": {"callSid": "CA789012", "accountSid": "AC345678"},
    })
