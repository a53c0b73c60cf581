"""Application configuration."""
import logging
import os
import re
from pathlib import Path
from typing import List, Literal, Optional

import pytz
import yaml
from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from callbridge.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI
    openai_api_key: Optional[str] = None
    llm_model: str = "gpt-4o"
    tts_model: str = "tts-1"
    tts_voice: str = "onyx"
    stt_model: str = "gpt-4o-transcribe"
    stt_silence_duration_ms: int = 800

    # Telnyx
    telnyx_api_key: Optional[str] = None
    telnyx_connection_id: Optional[str] = None
    telnyx_phone_number: Optional[str] = None
    telnyx_public_key: Optional[str] = None
    user_phone_number: Optional[str] = None

    # ngrok
    ngrok_authtoken: Optional[str] = None
    ngrok_domain: Optional[str] = None
    public_url: Optional[str] = None  # Skips the tunnel when set

    # Database
    database_url: str = "sqlite+aiosqlite:///./callbridge.db"

    # Escalation policy file (YAML)
    escalation_config_path: Optional[str] = None

    # tmux
    tmux_default_session: str = "main"
    tmux_response_delay_ms: int = 100

    # Server
    host: str = "127.0.0.1"
    port: int = 3333
    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def missing_call_credentials(self) -> List[str]:
        """Return the names of credentials required for placing calls that are unset."""
        required = {
            "OPENAI_API_KEY": self.openai_api_key,
            "TELNYX_API_KEY": self.telnyx_api_key,
            "TELNYX_CONNECTION_ID": self.telnyx_connection_id,
            "TELNYX_PHONE_NUMBER": self.telnyx_phone_number,
            "USER_PHONE_NUMBER": self.user_phone_number,
        }
        if not self.public_url:
            required["NGROK_AUTHTOKEN"] = self.ngrok_authtoken
        return [name for name, value in required.items() if not value]


DEFAULT_LLM_ESCALATION_PROMPT = """You decide whether an unattended coding-assistant event is important enough to phone the developer.
Call for blocked work on risky or irreversible actions, production issues, or questions that stall progress.
Do not call for routine confirmations or anything that can wait for a push notification.
Respond with JSON only: {"shouldCall": true or false, "reason": "<short reason>"}"""

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class EscalationTriggers(BaseModel):
    """Which events may escalate and how."""

    notification_timeout_seconds: int = 120
    always_call_patterns: List[str] = [
        "error.*critical",
        "failed.*production",
        "security.*vulnerability",
    ]
    escalate_permissions: bool = True
    escalate_questions: bool = False
    escalate_on_idle: bool = False
    use_llm_for_escalation: bool = True
    llm_escalation_prompt: str = DEFAULT_LLM_ESCALATION_PROMPT


class QuietHoursConfig(BaseModel):
    """Local-time window during which calls are suppressed."""

    enabled: bool = True
    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "America/Los_Angeles"
    fallback: Literal["notify", "queue_for_morning"] = "notify"

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not _TIME_PATTERN.match(value):
            raise ValueError(f"Expected HH:MM, got '{value}'")
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            pytz.timezone(value)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone '{value}'")
        return value


class RateLimitingConfig(BaseModel):
    """Call frequency limits."""

    min_call_interval_seconds: int = 300
    max_calls_per_hour: int = 3


class CallScriptsConfig(BaseModel):
    """Spoken templates. {action} and {question} are substituted."""

    greeting: str = "Hey! Your coding assistant needs your attention."
    permission_prompt: str = "I need permission to {action}. Should I proceed?"
    question_prompt: str = "I have a question: {question}"
    goodbye: str = "Got it! I'll continue working. Talk soon!"


class EscalationConfig(BaseModel):
    """Escalation policy."""

    enabled: bool = False
    triggers: EscalationTriggers = EscalationTriggers()
    quiet_hours: QuietHoursConfig = QuietHoursConfig()
    rate_limiting: RateLimitingConfig = RateLimitingConfig()
    call_scripts: CallScriptsConfig = CallScriptsConfig()


DEFAULT_ESCALATION_CONFIG_PATHS = [
    Path("escalation.yaml"),
    Path.home() / ".config" / "callbridge" / "escalation.yaml",
]


def load_escalation_config(path: Optional[str] = None) -> EscalationConfig:
    """
    Load the escalation policy from YAML.

    Args:
        path: Explicit file path. When omitted the default locations are searched
            and built-in defaults are used if none exists.

    Returns:
        Validated escalation config
    """
    if path:
        candidates = [Path(os.path.expanduser(path))]
        if not candidates[0].exists():
            raise ConfigurationError(f"Escalation config not found: {path}")
    else:
        candidates = [p for p in DEFAULT_ESCALATION_CONFIG_PATHS if p.exists()]

    if not candidates:
        logger.info("[CONFIG] No escalation config file found, using defaults")
        return EscalationConfig()

    config_file = candidates[0]
    try:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f) or {}
        config = EscalationConfig.model_validate(data)
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigurationError(f"Invalid escalation config {config_file}: {e}") from e

    logger.info(f"[CONFIG] Loaded escalation config from {config_file} (enabled: {config.enabled})")
    return config


settings = Settings()
