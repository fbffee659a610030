import os
from unittest.mock import patch

import pytest

from src.intake.config import ConfigError, get_config


def test_config_loads_from_environment():
    config = get_config()

    assert config.public_host == "test.ngrok.io"
    assert config.port == 7860
    assert config.ws_url == "wss://test.ngrok.io/ws"
    assert config.settle_delay_seconds == 2.0
    assert config.hangup_after_settle is False
    assert config.airtable_enabled is False
    config.validate()


def test_config_validate_requires_openai_key():
    env = {"PUBLIC_HOST": "test.ngrok.io"}

    with patch.dict(os.environ, env, clear=True):
        get_config.cache_clear()
        config = get_config()
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            config.validate()


def test_config_validate_hangup_requires_twilio_credentials():
    env = {
        "PUBLIC_HOST": "test.ngrok.io",
        "OPENAI_API_KEY": "sk-test",
        "HANGUP_AFTER_SETTLE": "true",
    }

    with patch.dict(os.environ, env, clear=True):
        get_config.cache_clear()
        config = get_config()
        assert config.hangup_after_settle is True
        with pytest.raises(ConfigError, match="TWILIO_ACCOUNT_SID"):
            config.validate()


def test_config_validate_airtable_needs_key_and_base():
    with patch.dict(os.environ, {"AIRTABLE_API_KEY": "keyXYZ", "AIRTABLE_BASE_ID": ""}):
        get_config.cache_clear()
        with pytest.raises(ConfigError, match="AIRTABLE_API_KEY and AIRTABLE_BASE_ID"):
            get_config().validate()


def test_config_validate_rejects_non_positive_settle_delay():
    with patch.dict(os.environ, {"SETTLE_DELAY_SECONDS": "0"}):
        get_config.cache_clear()
        with pytest.raises(ConfigError, match="SETTLE_DELAY_SECONDS"):
            get_config().validate()


def test_config_bad_numbers_fall_back_to_defaults():
    with patch.dict(os.environ, {"PORT": "not-a-port", "SETTLE_DELAY_SECONDS": "soon"}):
        get_config.cache_clear()
        config = get_config()

    assert config.port == 7860
    assert config.settle_delay_seconds == 2.0


def test_default_instructions_use_agent_name():
    with patch.dict(os.environ, {"AGENT_NAME": "Dana", "COMPANY_NAME": "Smith & Partners"}):
        get_config.cache_clear()
        config = get_config()

    assert "You are Dana" in config.realtime_instructions
    assert "Smith & Partners" in config.greeting_instructions


def test_custom_instructions_override_default():
    with patch.dict(os.environ, {"OPENAI_REALTIME_INSTRUCTIONS": "Be brief."}):
        get_config.cache_clear()
        assert get_config().realtime_instructions == "Be brief."


def test_stream_start_timeout_default_and_override():
    assert get_config().stream_start_timeout_seconds == 30.0

    with patch.dict(os.environ, {"STREAM_START_TIMEOUT_SECONDS": "12.5"}):
        get_config.cache_clear()
        assert get_config().stream_start_timeout_seconds == 12.5


def test_config_validate_rejects_non_positive_stream_timeout():
    with patch.dict(os.environ, {"STREAM_START_TIMEOUT_SECONDS": "-1"}):
        get_config.cache_clear()
        with pytest.raises(ConfigError, match="STREAM_START_TIMEOUT_SECONDS"):
            get_config().validate()
