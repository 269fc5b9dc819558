"""Application settings via pydantic-settings."""

import json
from pathlib import Path
from typing import Annotated, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode


DEFAULT_TRIGGER_KEYWORDS = [
    "help",
    "emergency",
    "support",
    "urgent",
    "problem",
    "assistance",
]


class Settings(BaseSettings):
    """CallWatch configuration.

    All settings can be overridden via environment variables or .env file.
    Credentials and phone numbers have no usable defaults; operations that
    need them refuse to run until they are configured.
    """

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # API
    api_key: str = ""
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    public_base_url: str = ""

    # Voice / SMS provider
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # Speech-to-text provider
    assemblyai_api_key: str = ""
    assemblyai_realtime_url: str = "wss://api.assemblyai.com/v2/realtime/ws"
    stt_sample_rate: int = 8000

    # Monitoring
    default_emergency_contact: str = ""
    trigger_keywords: Annotated[List[str], NoDecode] = DEFAULT_TRIGGER_KEYWORDS
    transcript_window_size: int = 10
    alert_context_lines: int = 5
    sms_max_length: int = 1600
    alert_cooldown_seconds: float = 0.0
    record_partial_transcripts: bool = False

    # Logging
    log_level: str = "INFO"
    log_sink_queue_size: int = 1000
    access_audit_log: bool = True

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("trigger_keywords", mode="before")
    @classmethod
    def _split_keywords(cls, value):
        """Accept a JSON list or a comma-separated string."""
        if isinstance(value, str):
            value = value.strip()
            if value.startswith("["):
                value = json.loads(value)
            else:
                value = value.split(",")
        return [str(k).strip() for k in value if str(k).strip()]

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)


settings = Settings()
