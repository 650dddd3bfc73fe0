"""
Configuration management for the hospital voice receptionist.

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


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 3000
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2-phonecall"
    deepgram_endpointing_ms: int = 400
    deepgram_utterance_end_ms: int = 1250

    # OpenAI (LLM)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"

    # TTS
    # - tts_provider selects the synthesis backend ("elevenlabs" | "cartesia")
    tts_provider: str = "elevenlabs"
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = ""
    elevenlabs_model: str = "eleven_turbo_v2_5"
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"

    # Clinic records API (tool backend)
    clinic_api_url: str = "http://localhost:5000/api"
    clinic_api_timeout_seconds: float = 10.0

    # Agent settings
    agent_name: str = "Eva"
    hospital_name: str = "Zuleikha Hospital"
    clinic_timezone: str = "Asia/Dubai"
    max_tool_rounds: int = 5

    # Endpointing (all tunable; legacy values ranged 400-1500ms)
    silence_window_ms: int = 1200
    audio_silence_ms: int = 800
    min_speech_ms: int = 450
    max_silent_frames: int = 2

    # STT reconnection
    stt_max_reconnect_attempts: int = 5
    stt_reconnect_base_delay_s: float = 1.0
    stt_reconnect_max_delay_s: float = 8.0
    stt_pending_audio_max_frames: int = 500

    # Playback
    playback_ack_timeout_s: float = 15.0

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/connection"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def greeting(self) -> str:
        return f"Hi there! I'm {self.agent_name} from {self.hospital_name}. How can I help you today?"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_model:
            missing.append("OPENAI_MODEL")

        provider = (self.tts_provider or "elevenlabs").strip().lower()
        if provider not in ("elevenlabs", "cartesia"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'elevenlabs' or 'cartesia'."
            )

        if provider == "elevenlabs":
            if not self.elevenlabs_api_key:
                missing.append("XI_API_KEY")
            if not self.elevenlabs_voice_id:
                missing.append("VOICE_ID")

        if provider == "cartesia":
            if not self.cartesia_api_key:
                missing.append("CARTESIA_API_KEY")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.min_speech_ms < 0 or self.silence_window_ms <= 0:
            raise ConfigError("Endpointing durations must be positive.")
        if self.stt_max_reconnect_attempts < 0:
            raise ConfigError("STT_MAX_RECONNECT_ATTEMPTS must not be negative.")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            llm_model=self.openai_model,
            tts_provider=self.tts_provider,
            clinic_api_url=self.clinic_api_url,
            agent_name=self.agent_name,
            hospital_name=self.hospital_name,
            clinic_timezone=self.clinic_timezone,
            silence_window_ms=self.silence_window_ms,
            audio_silence_ms=self.audio_silence_ms,
            min_speech_ms=self.min_speech_ms,
            playback_ack_timeout_s=self.playback_ack_timeout_s,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            openai_key_set=bool(self.openai_api_key),
            elevenlabs_key_set=bool(self.elevenlabs_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
        )


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
        public_host=os.getenv("PUBLIC_HOST", os.getenv("SERVER", "")),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2-phonecall"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 400),
        deepgram_utterance_end_ms=_get_int("DEEPGRAM_UTTERANCE_END_MS", 1250),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "elevenlabs").strip().lower(),
        elevenlabs_api_key=os.getenv("XI_API_KEY", ""),
        elevenlabs_voice_id=os.getenv("VOICE_ID", ""),
        elevenlabs_model=os.getenv("XI_MODEL_ID", "eleven_turbo_v2_5"),
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),

        # Clinic API
        clinic_api_url=os.getenv("CLINIC_API_URL", "http://localhost:5000/api").rstrip("/"),
        clinic_api_timeout_seconds=_get_float("CLINIC_API_TIMEOUT_SECONDS", 10.0),

        # Agent settings
        agent_name=os.getenv("AGENT_NAME", "Eva"),
        hospital_name=os.getenv("HOSPITAL_NAME", "Zuleikha Hospital"),
        clinic_timezone=os.getenv("CLINIC_TIMEZONE", "Asia/Dubai"),
        max_tool_rounds=_get_int("MAX_TOOL_ROUNDS", 5),

        # Endpointing
        silence_window_ms=_get_int("SILENCE_WINDOW_MS", 1200),
        audio_silence_ms=_get_int("AUDIO_SILENCE_MS", 800),
        min_speech_ms=_get_int("MIN_SPEECH_MS", 450),
        max_silent_frames=_get_int("MAX_SILENT_FRAMES", 2),

        # STT reconnection
        stt_max_reconnect_attempts=_get_int("STT_MAX_RECONNECT_ATTEMPTS", 5),
        stt_reconnect_base_delay_s=_get_float("STT_RECONNECT_BASE_DELAY_S", 1.0),
        stt_reconnect_max_delay_s=_get_float("STT_RECONNECT_MAX_DELAY_S", 8.0),
        stt_pending_audio_max_frames=_get_int("STT_PENDING_AUDIO_MAX_FRAMES", 500),

        # Playback
        playback_ack_timeout_s=_get_float("PLAYBACK_ACK_TIMEOUT_S", 15.0),
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
