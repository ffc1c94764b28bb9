"""Configuration management for ConciergeAI."""

import os
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

VERSION = "1.0.0"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    """Application configuration.

    Built once at process start. Components receive the instance (or the values
    they need) through their constructors and never read the environment
    themselves. Keyword overrides win over the environment.
    """

    def __init__(self, **overrides):
        # Application Settings
        self.DEBUG: bool = _env_bool("DEBUG", "False")
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./concierge.db")
        self.FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

        # Security
        self.API_KEY: str = os.getenv("API_KEY", "")

        # VAPI (voice vendor)
        self.VAPI_API_KEY: str = os.getenv("VAPI_API_KEY", "")
        self.VAPI_PHONE_NUMBER_ID: str = os.getenv("VAPI_PHONE_NUMBER_ID", "")
        self.VAPI_BASE_URL: str = os.getenv("VAPI_BASE_URL", "https://api.vapi.ai")
        # Presence of a webhook URL switches the call client into hybrid mode.
        # Use an ngrok URL for local development.
        self.VAPI_WEBHOOK_URL: str = os.getenv("VAPI_WEBHOOK_URL", "")

        # Call orchestration
        self.MAX_CONCURRENT_CALLS: int = int(os.getenv("MAX_CONCURRENT_CALLS", "5"))
        self.BATCH_GROUP_DELAY_SECONDS: float = float(os.getenv("BATCH_GROUP_DELAY_SECONDS", "0.5"))
        self.WEBHOOK_WAIT_TIMEOUT_SECONDS: float = float(os.getenv("WEBHOOK_WAIT_TIMEOUT_SECONDS", "300"))
        self.WEBHOOK_POLL_INTERVAL_SECONDS: float = float(os.getenv("WEBHOOK_POLL_INTERVAL_SECONDS", "2"))
        # 30 * 2s = one minute of "not found" before giving up on the webhook
        self.WEBHOOK_MAX_NOT_FOUND: int = int(os.getenv("WEBHOOK_MAX_NOT_FOUND", "30"))
        self.WEBHOOK_MAX_FETCHING_POLLS: int = int(os.getenv("WEBHOOK_MAX_FETCHING_POLLS", "30"))
        self.VAPI_POLL_INTERVAL_SECONDS: float = float(os.getenv("VAPI_POLL_INTERVAL_SECONDS", "5"))
        self.VAPI_POLL_TIMEOUT_SECONDS: float = float(os.getenv("VAPI_POLL_TIMEOUT_SECONDS", "300"))
        self.VAPI_ENRICHMENT_DELAYS: list[float] = [
            float(v) for v in _env_list("VAPI_ENRICHMENT_DELAYS", "3,5,8")
        ]
        self.WEBHOOK_CACHE_TTL_SECONDS: float = float(os.getenv("WEBHOOK_CACHE_TTL_SECONDS", "1800"))

        # Outbound HTTP
        self.HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
        self.HTTP_MAX_RETRIES: int = int(os.getenv("HTTP_MAX_RETRIES", "2"))
        self.HTTP_RETRY_BACKOFF_SECONDS: float = float(os.getenv("HTTP_RETRY_BACKOFF_SECONDS", "1"))

        # Kestra (workflow engine)
        self.KESTRA_ENABLED: bool = _env_bool("KESTRA_ENABLED", "False")
        self.KESTRA_URL: str = os.getenv("KESTRA_URL", "http://localhost:8082")
        self.KESTRA_NAMESPACE: str = os.getenv("KESTRA_NAMESPACE", "ai_concierge")
        self.KESTRA_USERNAME: str = os.getenv("KESTRA_USERNAME", "")
        self.KESTRA_PASSWORD: str = os.getenv("KESTRA_PASSWORD", "")
        self.KESTRA_API_TOKEN: str = os.getenv("KESTRA_API_TOKEN", "")
        # Strict: an unhealthy engine is an error. Lenient: fall back in-process.
        self.KESTRA_STRICT: bool = _env_bool("KESTRA_STRICT", "True")
        self.KESTRA_HEALTH_CHECK_TIMEOUT_SECONDS: float = float(
            os.getenv("KESTRA_HEALTH_CHECK_TIMEOUT_SECONDS", "3")
        )
        self.KESTRA_POLL_INTERVAL_SECONDS: float = float(os.getenv("KESTRA_POLL_INTERVAL_SECONDS", "5"))
        self.KESTRA_POLL_TIMEOUT_SECONDS: float = float(os.getenv("KESTRA_POLL_TIMEOUT_SECONDS", "360"))

        # Twilio (SMS)
        self.TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
        self.TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "")
        self.TWILIO_PHONE_NUMBER: str = os.getenv("TWILIO_PHONE_NUMBER", "")

        # Google Places (research)
        self.GOOGLE_PLACES_API_KEY: str = os.getenv("GOOGLE_PLACES_API_KEY", "")
        self.PLACES_BASE_URL: str = os.getenv("PLACES_BASE_URL", "https://places.googleapis.com/v1")

        # Safety switch for development: when live calls are disabled, every
        # destination is replaced by one of the test numbers.
        self.LIVE_CALLS_ENABLED: bool = _env_bool("LIVE_CALLS_ENABLED", "True")
        self.TEST_PHONE_NUMBERS: list[str] = _env_list("TEST_PHONE_NUMBERS")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown configuration option: {key}")
            setattr(self, key, value)

    def has_vapi_config(self) -> bool:
        """Check if the voice vendor is configured."""
        return bool(self.VAPI_API_KEY and self.VAPI_PHONE_NUMBER_ID)

    def has_webhook_url(self) -> bool:
        """Check if the call client should run in hybrid (webhook + polling) mode."""
        return bool(self.VAPI_WEBHOOK_URL)

    def has_twilio_config(self) -> bool:
        """Check if Twilio SMS configuration is complete."""
        return all([
            self.TWILIO_ACCOUNT_SID,
            self.TWILIO_AUTH_TOKEN,
            self.TWILIO_PHONE_NUMBER,
        ])

    def has_places_config(self) -> bool:
        return bool(self.GOOGLE_PLACES_API_KEY)

    def kestra_auth(self) -> Optional[tuple[str, str]]:
        """Basic-auth credentials for Kestra, if configured."""
        if self.KESTRA_USERNAME and self.KESTRA_PASSWORD:
            return (self.KESTRA_USERNAME, self.KESTRA_PASSWORD)
        return None
