"""
Telephony provider configuration.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

STATUS_CALLBACK_PATH = "/webhooks/telephony/status"


class TelephonyConfig(BaseSettings):
    """Telephony provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    twilio_auth_token: str = Field(default="")

    # Public base URL Twilio posts to; signatures are computed over it.
    webhook_base_url: str = Field(default="http://localhost:8000")

    validate_signatures: bool = Field(
        default=True,
        description="Reject status callbacks without a valid X-Twilio-Signature.",
    )

    @property
    def signature_check_enabled(self) -> bool:
        return self.validate_signatures and bool(self.twilio_auth_token)

    def get_webhook_url(self, path: str = STATUS_CALLBACK_PATH) -> str:
        base = self.webhook_base_url.rstrip("/")
        return f"{base}{path}"


def get_telephony_config() -> TelephonyConfig:
    return TelephonyConfig()
