"""
Settings for the booking bot, read once from the environment (and `.env`).
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """The environment does not describe a startable deployment."""
    pass


class DeliveryMode(str, Enum):
    """How assistant utterances reach the caller (fixed per deployment)."""
    BATCHED = "batched"
    STREAMED = "streamed"


DEFAULT_END_PHRASES: Tuple[str, ...] = (
    "до свидания",
    "пока",
    "всего доброго",
    "нет спасибо",
    "не интересует",
    "не надо",
)

DEFAULT_BOOKING_MARKERS: Tuple[str, ...] = (
    "забронирован",
    "ждём вас",
    "бронь подтверждена",
)


@dataclass(frozen=True)
class Config:
    """Immutable deployment settings."""

    # Server
    port: int = 3000
    log_level: str = "INFO"
    ws_path: str = "/restaurant"

    # Speech delivery
    delivery_mode: str = DeliveryMode.BATCHED.value
    gather_timeout_seconds: int = 10
    hangup_delay_min_seconds: float = 3.0
    hangup_delay_max_seconds: float = 5.0

    # Synthesizer / recognizer (selected in the session `config` verb)
    synth_vendor: str = "custom:Sber Stream"
    synth_language: str = "ru-RU"
    synth_voice: str = "Nec_24000"
    recognizer_vendor: str = "custom:Sber Stream"
    recognizer_language: str = "ru-RU"

    # LLM Provider (OpenAI/Groq)
    # - Default is OpenAI.
    # - Set LLM_PROVIDER=groq + GROQ_API_KEY/GROQ_MODEL to use Groq's OpenAI-compatible API.
    llm_provider: str = "openai"  # "openai" | "groq"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    llm_max_tokens: int = 200
    llm_temperature: float = 0.7
    llm_timeout_seconds: float = 15.0
    llm_validate_on_startup: bool = False

    # Dialog policy
    end_phrases: Tuple[str, ...] = field(default=DEFAULT_END_PHRASES)
    booking_markers: Tuple[str, ...] = field(default=DEFAULT_BOOKING_MARKERS)

    # Persona
    agent_name: str = "Анна"
    restaurant_name: str = "Золотой Дракон"

    @property
    def speech_delivery_mode(self) -> DeliveryMode:
        """Parsed delivery mode."""
        return DeliveryMode(self.delivery_mode)

    @property
    def llm_model(self) -> str:
        """Model identifier for the selected provider."""
        return self.groq_model if self.llm_provider == "groq" else self.openai_model

    @property
    def llm_api_key(self) -> str:
        """API key for the selected provider."""
        return self.groq_api_key if self.llm_provider == "groq" else self.openai_api_key

    def validate(self) -> None:
        """Raise ConfigError unless the deployment can start."""
        try:
            DeliveryMode(self.delivery_mode)
        except ValueError:
            raise ConfigError(
                f"SPEECH_DELIVERY_MODE must be 'batched' or 'streamed', got '{self.delivery_mode}'"
            )

        credentials = {
            "openai": (("OPENAI_API_KEY", self.openai_api_key), ("OPENAI_MODEL", self.openai_model)),
            "groq": (("GROQ_API_KEY", self.groq_api_key), ("GROQ_MODEL", self.groq_model)),
        }
        required = credentials.get((self.llm_provider or "openai").strip().lower())
        if required is None:
            raise ConfigError(
                f"LLM_PROVIDER must be 'openai' or 'groq', got '{self.llm_provider}'"
            )

        if not self.ws_path.startswith("/"):
            raise ConfigError(f"WS_PATH must start with '/', got '{self.ws_path}'")

        if self.hangup_delay_min_seconds > self.hangup_delay_max_seconds:
            raise ConfigError("HANGUP_DELAY_MIN_SECONDS must not exceed HANGUP_DELAY_MAX_SECONDS")

        unset = [name for name, value in required if not value]
        if unset:
            raise ConfigError(f"Set {', '.join(unset)} in the environment or .env file")

    def log_config(self) -> None:
        """Log the effective settings; keys are reported only as set/unset."""
        logger.info(
            "Config",
            port=self.port,
            ws_path=self.ws_path,
            level=self.log_level,
            delivery_mode=self.delivery_mode,
            gather_timeout_seconds=self.gather_timeout_seconds,
            synth=f"{self.synth_vendor}/{self.synth_language}/{self.synth_voice}",
            recognizer=f"{self.recognizer_vendor}/{self.recognizer_language}",
            provider=self.llm_provider,
            model=self.llm_model,
            max_tokens=self.llm_max_tokens,
            temperature=self.llm_temperature,
            timeout_seconds=self.llm_timeout_seconds,
            end_phrases=len(self.end_phrases),
            booking_markers=len(self.booking_markers),
            api_key_present=bool(self.llm_api_key),
        )


def _env_flag(key: str, default: bool = False) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("true", "1", "yes", "on")


def _env_number(key: str, default, cast=int):
    """Numeric env var; unparsable values fall back to `default`."""
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring malformed setting", key=key, value=raw)
        return default


def _env_phrases(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Comma-separated phrase list; blank entries are dropped."""
    phrases = tuple(p.strip() for p in (os.getenv(key) or "").split(",") if p.strip())
    return phrases or default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """Build the process-wide Config from the environment (cached)."""
    return Config(
        port=_env_number("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        ws_path=os.getenv("WS_PATH", "/restaurant"),

        delivery_mode=os.getenv("SPEECH_DELIVERY_MODE", "batched").strip().lower(),
        gather_timeout_seconds=_env_number("GATHER_TIMEOUT_SECONDS", 10),
        hangup_delay_min_seconds=_env_number("HANGUP_DELAY_MIN_SECONDS", 3.0, float),
        hangup_delay_max_seconds=_env_number("HANGUP_DELAY_MAX_SECONDS", 5.0, float),

        synth_vendor=os.getenv("SYNTH_VENDOR", "custom:Sber Stream"),
        synth_language=os.getenv("SYNTH_LANGUAGE", "ru-RU"),
        synth_voice=os.getenv("SYNTH_VOICE", "Nec_24000"),
        recognizer_vendor=os.getenv("RECOGNIZER_VENDOR", "custom:Sber Stream"),
        recognizer_language=os.getenv("RECOGNIZER_LANGUAGE", "ru-RU"),

        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        llm_max_tokens=_env_number("LLM_MAX_TOKENS", 200),
        llm_temperature=_env_number("LLM_TEMPERATURE", 0.7, float),
        llm_timeout_seconds=_env_number("LLM_TIMEOUT_SECONDS", 15.0, float),
        llm_validate_on_startup=_env_flag("LLM_VALIDATE_ON_STARTUP"),

        end_phrases=_env_phrases("END_PHRASES", DEFAULT_END_PHRASES),
        booking_markers=_env_phrases("BOOKING_MARKERS", DEFAULT_BOOKING_MARKERS),

        agent_name=os.getenv("AGENT_NAME", "Анна"),
        restaurant_name=os.getenv("RESTAURANT_NAME", "Золотой Дракон"),
    )


def init_config() -> Config:
    """Load, validate and log the configuration; call once at startup."""
    config = get_config()
    config.validate()
    config.log_config()
    return config
