"""
Configuration Management Module

All settings for the voice booking core come from environment variables
with defaults suited to a single Bulgarian barbershop tenant.

Usage:
    from barber_voice.config import settings
    print(settings.shop.timezone)

Environment variables are loaded from a .env file (if present) and can be
overridden by system environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def get_env(key: str, default: str = "", required: bool = False) -> str:
    """
    Get an environment variable with optional default and validation.

    Args:
        key: The environment variable name
        default: Default value if not set
        required: If True, raises ValueError when not set

    Returns:
        The environment variable value or default

    Raises:
        ValueError: If required=True and the variable is not set
    """
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get an environment variable as integer."""
    return int(get_env(key, str(default)))


def get_env_float(key: str, default: float) -> float:
    """Get an environment variable as float."""
    return float(get_env(key, str(default)))


def get_env_bool(key: str, default: bool) -> bool:
    """Get an environment variable as boolean."""
    value = get_env(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def get_env_list(key: str, default: str) -> List[str]:
    """Get a comma separated environment variable as a list of stripped items."""
    return [item.strip() for item in get_env(key, default).split(",") if item.strip()]


DEFAULT_TIME_SLOTS = "10:00,11:00,12:00,13:00,14:00,15:00,16:00,17:00,18:00"


@dataclass
class ShopConfig:
    """
    Tenant (shop) configuration.

    Attributes:
        shop_id: Tenant identifier every backend call is keyed under
        name: Shop name used in prompts and greetings
        assistant_name: Name the agent introduces itself with
        timezone: IANA time zone of the shop clock
        language: Language code for localized phrases
        time_slots: Bookable slot grid as HH:MM strings
    """
    shop_id: str = field(default_factory=lambda: get_env("SHOP_ID", "default"))
    name: str = field(default_factory=lambda: get_env("SHOP_NAME", "Blade & Bourbon"))
    assistant_name: str = field(default_factory=lambda: get_env("ASSISTANT_NAME", "Блейд"))
    timezone: str = field(default_factory=lambda: get_env("SHOP_TIMEZONE", "Europe/Sofia"))
    language: str = field(default_factory=lambda: get_env("SHOP_LANGUAGE", "bg"))
    time_slots: List[str] = field(default_factory=lambda: get_env_list("TIME_SLOTS", DEFAULT_TIME_SLOTS))

    def validate(self) -> bool:
        """Validate shop settings."""
        if not self.shop_id:
            raise ValueError("SHOP_ID is required")
        if not self.time_slots:
            raise ValueError("TIME_SLOTS must contain at least one slot")
        for slot in self.time_slots:
            hours, _, minutes = slot.partition(":")
            if not (hours.isdigit() and minutes.isdigit()):
                raise ValueError(f"Invalid time slot '{slot}', expected HH:MM")
        return True


@dataclass
class AudioConfig:
    """
    Audio device configuration.

    Attributes:
        input_sample_rate: Capture rate expected by the STT service
        output_sample_rate: Playback rate of synthesized PCM
        channels: Capture channel count
        block_size: Frames per capture callback; one block must be shorter
            than the barge-in poll interval
        fft_size: Analyser window size used for energy metrics
        input_device: Optional sounddevice input device name or index
        output_device: Optional sounddevice output device name or index
    """
    input_sample_rate: int = field(default_factory=lambda: get_env_int("AUDIO_INPUT_SAMPLE_RATE", 16000))
    output_sample_rate: int = field(default_factory=lambda: get_env_int("AUDIO_OUTPUT_SAMPLE_RATE", 24000))
    channels: int = field(default_factory=lambda: get_env_int("AUDIO_CHANNELS", 1))
    block_size: int = field(default_factory=lambda: get_env_int("AUDIO_BLOCK_SIZE", 512))
    fft_size: int = field(default_factory=lambda: get_env_int("AUDIO_FFT_SIZE", 256))
    input_device: Optional[str] = field(default_factory=lambda: get_env("AUDIO_INPUT_DEVICE") or None)
    output_device: Optional[str] = field(default_factory=lambda: get_env("AUDIO_OUTPUT_DEVICE") or None)


@dataclass
class SonioxConfig:
    """Soniox streaming transcription settings."""
    api_key: str = field(default_factory=lambda: get_env("SONIOX_API_KEY"))
    url: str = field(default_factory=lambda: get_env("SONIOX_WS_URL", "wss://api.soniox.com/transcribe-websocket"))
    model: str = field(default_factory=lambda: get_env("SONIOX_MODEL", "precision"))
    language: str = field(default_factory=lambda: get_env("SONIOX_LANGUAGE", "bg"))
    enable_punctuation: bool = field(default_factory=lambda: get_env_bool("SONIOX_PUNCTUATION", True))

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def validate(self) -> bool:
        if not self.api_key:
            raise ValueError("SONIOX_API_KEY is required")
        return True


@dataclass
class ElevenLabsConfig:
    """
    ElevenLabs speech synthesis settings.

    Attributes:
        api_key: Value of the xi-api-key header
        voice_id: Voice used for every utterance
        model_id: Synthesis model
        stability, similarity_boost, style, use_speaker_boost: voice_settings payload
        optimize_streaming_latency: Latency optimization level (0-4)
        output_format: Raw PCM format requested so playback needs no decoder
    """
    api_key: str = field(default_factory=lambda: get_env("ELEVENLABS_API_KEY"))
    voice_id: str = field(default_factory=lambda: get_env("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM"))
    base_url: str = field(default_factory=lambda: get_env("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io/v1"))
    model_id: str = field(default_factory=lambda: get_env("ELEVENLABS_MODEL_ID", "eleven_multilingual_v2"))
    stability: float = field(default_factory=lambda: get_env_float("ELEVENLABS_STABILITY", 0.5))
    similarity_boost: float = field(default_factory=lambda: get_env_float("ELEVENLABS_SIMILARITY_BOOST", 0.75))
    style: float = field(default_factory=lambda: get_env_float("ELEVENLABS_STYLE", 0.3))
    use_speaker_boost: bool = field(default_factory=lambda: get_env_bool("ELEVENLABS_SPEAKER_BOOST", True))
    optimize_streaming_latency: int = field(default_factory=lambda: get_env_int("ELEVENLABS_STREAMING_LATENCY", 3))
    output_format: str = field(default_factory=lambda: get_env("ELEVENLABS_OUTPUT_FORMAT", "pcm_24000"))
    request_timeout_s: float = field(default_factory=lambda: get_env_float("ELEVENLABS_TIMEOUT", 20.0))

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.voice_id)

    def validate(self) -> bool:
        if not self.api_key:
            raise ValueError("ELEVENLABS_API_KEY is required")
        if not self.voice_id:
            raise ValueError("ELEVENLABS_VOICE_ID is required")
        return True

    @property
    def stream_url(self) -> str:
        """Get the streaming synthesis URL for the configured voice."""
        return f"{self.base_url.rstrip('/')}/text-to-speech/{self.voice_id}/stream"


@dataclass
class OpenAIConfig:
    """
    Chat completions settings for the turn LLM.

    Attributes:
        history_window: Number of recent conversation turns sent per request
        max_tool_rounds: Tool-call round trips allowed inside one user turn
    """
    api_key: str = field(default_factory=lambda: get_env("OPENAI_API_KEY"))
    base_url: str = field(default_factory=lambda: get_env("OPENAI_BASE_URL", "https://api.openai.com/v1"))
    model: str = field(default_factory=lambda: get_env("OPENAI_MODEL", "gpt-4o-mini"))
    temperature: float = field(default_factory=lambda: get_env_float("LLM_TEMPERATURE", 0.7))
    max_tokens: int = field(default_factory=lambda: get_env_int("LLM_MAX_TOKENS", 300))
    history_window: int = field(default_factory=lambda: get_env_int("LLM_HISTORY_WINDOW", 6))
    max_tool_rounds: int = field(default_factory=lambda: get_env_int("LLM_MAX_TOOL_ROUNDS", 4))
    connect_timeout_s: float = field(default_factory=lambda: get_env_float("LLM_CONNECT_TIMEOUT", 10.0))
    read_timeout_s: float = field(default_factory=lambda: get_env_float("LLM_READ_TIMEOUT", 30.0))

    def validate(self) -> bool:
        if not self.api_key:
            raise ValueError("OPENAI_API_KEY is required")
        return True

    @property
    def chat_url(self) -> str:
        """Get the full URL for chat completion API calls."""
        return f"{self.base_url.rstrip('/')}/chat/completions"


@dataclass
class TurnConfig:
    """
    Turn-taking configuration.

    Attributes:
        silence_timeout_s: Silence after the last transcript update that ends a turn
        min_turn_chars: Accumulated text must be longer than this to end a turn on silence
        barge_in_threshold: Analyser level that interrupts agent speech
        poll_interval_s: Analyser polling period
        pause_stt_while_processing: Stop sending audio to STT between turn end and playback
    """
    silence_timeout_s: float = field(default_factory=lambda: get_env_float("TURN_SILENCE_TIMEOUT", 1.2))
    min_turn_chars: int = field(default_factory=lambda: get_env_int("TURN_MIN_CHARS", 5))
    barge_in_threshold: float = field(default_factory=lambda: get_env_float("BARGE_IN_THRESHOLD", 0.3))
    poll_interval_s: float = field(default_factory=lambda: get_env_float("BARGE_IN_POLL_INTERVAL", 0.05))
    pause_stt_while_processing: bool = field(default_factory=lambda: get_env_bool("PAUSE_STT_WHILE_PROCESSING", True))

    def validate(self) -> bool:
        if self.silence_timeout_s <= 0:
            raise ValueError("TURN_SILENCE_TIMEOUT must be positive")
        if self.poll_interval_s <= 0 or self.poll_interval_s >= 0.1:
            raise ValueError("BARGE_IN_POLL_INTERVAL must be between 0 and 0.1 seconds")
        return True


@dataclass
class ToolConfig:
    """
    Tool-calling orchestrator configuration.

    Attributes:
        timeout_s: Upper bound for a single tool call
        appointments_cache_ttl_s: TTL of per barber/date appointment reads
        range_cache_ttl_s: TTL of the forward date-range read
        dedup_window_s: Identical successful bookings inside this window are not repeated
        lead_time_minutes: Today's slots closer than this to now are not offered
        scan_window_days: Forward window searched for the earliest slot
        lookup_past_days: Customer appointment lookup window into the past
        lookup_future_days: Customer appointment lookup window into the future
    """
    timeout_s: float = field(default_factory=lambda: get_env_float("TOOL_TIMEOUT", 6.0))
    appointments_cache_ttl_s: float = field(default_factory=lambda: get_env_float("APPOINTMENTS_CACHE_TTL", 15.0))
    range_cache_ttl_s: float = field(default_factory=lambda: get_env_float("RANGE_CACHE_TTL", 20.0))
    dedup_window_s: float = field(default_factory=lambda: get_env_float("BOOKING_DEDUP_WINDOW", 10.0))
    lead_time_minutes: int = field(default_factory=lambda: get_env_int("BOOKING_LEAD_TIME_MINUTES", 45))
    scan_window_days: int = field(default_factory=lambda: get_env_int("EARLIEST_SLOT_WINDOW_DAYS", 30))
    lookup_past_days: int = field(default_factory=lambda: get_env_int("LOOKUP_PAST_DAYS", 7))
    lookup_future_days: int = field(default_factory=lambda: get_env_int("LOOKUP_FUTURE_DAYS", 60))


@dataclass
class SessionConfig:
    """
    Session and reconnection configuration.

    Attributes:
        max_reconnects: Consecutive reconnect attempts before the session gives up
        reconnect_delay_s: Fixed delay before each reconnect attempt
        greeting_trigger: Text sent to the LLM so the agent speaks first
        stt_provider, tts_provider, llm_provider: Registered provider names
    """
    max_reconnects: int = field(default_factory=lambda: get_env_int("MAX_RECONNECTS", 2))
    reconnect_delay_s: float = field(default_factory=lambda: get_env_float("RECONNECT_DELAY", 1.5))
    greeting_trigger: str = field(default_factory=lambda: get_env("GREETING_TRIGGER", "[Клиент се обажда]"))
    stt_provider: str = field(default_factory=lambda: get_env("STT_PROVIDER", "soniox"))
    tts_provider: str = field(default_factory=lambda: get_env("TTS_PROVIDER", "elevenlabs"))
    llm_provider: str = field(default_factory=lambda: get_env("LLM_PROVIDER", "openai"))

    def validate(self) -> bool:
        if self.max_reconnects < 0:
            raise ValueError("MAX_RECONNECTS cannot be negative")
        if self.reconnect_delay_s < 0:
            raise ValueError("RECONNECT_DELAY cannot be negative")
        return True


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        file: Optional log file path
    """
    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE") or None)


@dataclass
class Settings:
    """
    Main settings container aggregating all configuration sections.

    Example:
        from barber_voice.config import settings

        settings.validate_all()
        zone = settings.shop.timezone
        delay = settings.session.reconnect_delay_s
    """
    shop: ShopConfig = field(default_factory=ShopConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    soniox: SonioxConfig = field(default_factory=SonioxConfig)
    elevenlabs: ElevenLabsConfig = field(default_factory=ElevenLabsConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    turn: TurnConfig = field(default_factory=TurnConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Application-level settings
    app_env: str = field(default_factory=lambda: get_env("APP_ENV", "development"))

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    def validate_all(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ValueError: If any validation fails
        """
        self.shop.validate()
        self.turn.validate()
        self.session.validate()
        self.soniox.validate()
        self.elevenlabs.validate()
        self.openai.validate()
        return True


# Singleton settings instance
settings = Settings()
