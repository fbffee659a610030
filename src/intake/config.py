"""
Configuration management for the intake voice agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


DEFAULT_INSTRUCTIONS = (
    "You are {agent_name}, a friendly and professional intake assistant for {company_name}, "
    "a personal injury law firm that handles truck accident cases. "
    "Ask one short question at a time and wait for the answer. Collect, in a natural order: "
    "the caller's name, when the accident happened, where it happened, what type of truck was involved, "
    "any injuries, and whether a police report was filed. "
    "Keep responses brief and phone-friendly. Never give legal advice; say an attorney will follow up. "
    "Never claim to be a human."
)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # OpenAI Realtime (speech-to-speech)
    openai_api_key: str = ""
    openai_realtime_model: str = "gpt-4o-realtime-preview-2024-12-17"
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    openai_realtime_voice: str = "alloy"
    openai_realtime_turn_silence_ms: int = 700
    openai_realtime_vad_threshold: float = 0.5
    openai_realtime_prefix_padding_ms: int = 300
    openai_realtime_transcription_model: str = "whisper-1"
    openai_realtime_instructions: str = ""

    # Agent settings
    agent_name: str = "Sarah"
    company_name: str = "the law office"

    # Settle detection
    # - settle_delay_seconds: quiet period after the assistant finishes a response
    # - hangup_after_settle: speak the closing line and hang up once settled
    settle_delay_seconds: float = 2.0
    hangup_after_settle: bool = False
    hangup_delay_seconds: float = 5.0

    # Calls whose media stream has not started by then are discarded unsaved
    stream_start_timeout_seconds: float = 30.0

    # Airtable (record store)
    airtable_api_key: str = ""
    airtable_base_id: str = ""
    airtable_table_name: str = "Lead Contacts"
    airtable_max_attempts: int = 3

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def airtable_enabled(self) -> bool:
        return bool(self.airtable_api_key and self.airtable_base_id)

    @property
    def realtime_instructions(self) -> str:
        """Session instructions for the speech model."""
        text = (self.openai_realtime_instructions or "").strip()
        if text:
            return text
        return DEFAULT_INSTRUCTIONS.format(agent_name=self.agent_name, company_name=self.company_name)

    @property
    def greeting_instructions(self) -> str:
        return (
            f"Say: Hi! This is {self.agent_name} from {self.company_name}. "
            "I'm sorry to hear you were in an accident. Can I start with your name?"
        )

    @property
    def closing_instructions(self) -> str:
        return (
            "Say: Thank you so much for your time. An attorney will be in touch with you soon. "
            "Take care. Goodbye!"
        )

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_realtime_model:
            missing.append("OPENAI_REALTIME_MODEL")
        if self.hangup_after_settle:
            if not self.twilio_account_sid:
                missing.append("TWILIO_ACCOUNT_SID")
            if not self.twilio_auth_token:
                missing.append("TWILIO_AUTH_TOKEN")

        if bool(self.airtable_api_key) != bool(self.airtable_base_id):
            raise ConfigError(
                "AIRTABLE_API_KEY and AIRTABLE_BASE_ID must be set together."
            )

        if self.settle_delay_seconds <= 0:
            raise ConfigError(
                f"Invalid SETTLE_DELAY_SECONDS '{self.settle_delay_seconds}'. Expected a positive number."
            )

        if self.stream_start_timeout_seconds <= 0:
            raise ConfigError(
                f"Invalid STREAM_START_TIMEOUT_SECONDS '{self.stream_start_timeout_seconds}'. Expected a positive number."
            )

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            realtime_model=self.openai_realtime_model,
            realtime_voice=self.openai_realtime_voice,
            turn_silence_ms=self.openai_realtime_turn_silence_ms,
            transcription_model=self.openai_realtime_transcription_model or None,
            agent_name=self.agent_name,
            settle_delay_seconds=self.settle_delay_seconds,
            hangup_after_settle=self.hangup_after_settle,
            airtable_table=self.airtable_table_name if self.airtable_enabled else "NOT SET",
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            openai_key_set=bool(self.openai_api_key),
            airtable_key_set=bool(self.airtable_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),

        # OpenAI Realtime
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview-2024-12-17"),
        openai_realtime_url=os.getenv("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime"),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "alloy"),
        openai_realtime_turn_silence_ms=_get_int("OPENAI_REALTIME_TURN_SILENCE_MS", 700),
        openai_realtime_vad_threshold=_get_float("OPENAI_REALTIME_VAD_THRESHOLD", 0.5),
        openai_realtime_prefix_padding_ms=_get_int("OPENAI_REALTIME_PREFIX_PADDING_MS", 300),
        openai_realtime_transcription_model=os.getenv("OPENAI_REALTIME_TRANSCRIPTION_MODEL", "whisper-1"),
        openai_realtime_instructions=os.getenv("OPENAI_REALTIME_INSTRUCTIONS", ""),

        # Agent settings
        agent_name=os.getenv("AGENT_NAME", "Sarah"),
        company_name=os.getenv("COMPANY_NAME", "the law office"),

        # Settle detection
        settle_delay_seconds=_get_float("SETTLE_DELAY_SECONDS", 2.0),
        hangup_after_settle=_get_bool("HANGUP_AFTER_SETTLE", False),
        hangup_delay_seconds=_get_float("HANGUP_DELAY_SECONDS", 5.0),
        stream_start_timeout_seconds=_get_float("STREAM_START_TIMEOUT_SECONDS", 30.0),

        # Airtable
        airtable_api_key=os.getenv("AIRTABLE_API_KEY", ""),
        airtable_base_id=os.getenv("AIRTABLE_BASE_ID", ""),
        airtable_table_name=os.getenv("AIRTABLE_TABLE_NAME", "Lead Contacts"),
        airtable_max_attempts=_get_int("AIRTABLE_MAX_ATTEMPTS", 3),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
