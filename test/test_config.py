"""
Tests for application and telephony configuration.
"""

import json
import logging

import pytest

from dialler.config import Settings, get_settings
from dialler.shared.logging import StructuredFormatter, correlation_id_var
from dialler.telephony.config import STATUS_CALLBACK_PATH, TelephonyConfig, get_telephony_config


class TestSettings:
    def test_declared_defaults(self) -> None:
        # Environment variables can override defaults; check the declared values.
        fields = Settings.model_fields
        assert fields["callback_affinity_grace_minutes"].default == 15
        assert fields["stale_call_timeout_minutes"].default == 30
        assert fields["stale_sweep_enabled"].default is False

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CALLBACK_AFFINITY_GRACE_MINUTES", "5")
        monkeypatch.setenv("USER_CONTEXT_BASE_URL", "http://users.internal/")

        settings = get_settings()

        assert settings.callback_affinity_grace_minutes == 5
        assert settings.user_context_base_url == "http://users.internal"

    def test_rejects_out_of_range_values(self) -> None:
        with pytest.raises(ValueError):
            Settings(stale_call_timeout_minutes=0)

    def test_cors_origins_list(self) -> None:
        settings = Settings(cors_origins="http://a.test, http://b.test")
        assert settings.cors_origins_list == ["http://a.test", "http://b.test"]


class TestTelephonyConfig:
    def test_get_webhook_url(self) -> None:
        config = TelephonyConfig(webhook_base_url="https://api.example.com", twilio_auth_token="")

        assert config.get_webhook_url() == f"https://api.example.com{STATUS_CALLBACK_PATH}"
        assert config.get_webhook_url("/custom/path") == "https://api.example.com/custom/path"

    def test_reads_prefixed_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TELEPHONY_TWILIO_AUTH_TOKEN", "secret")
        monkeypatch.setenv("TELEPHONY_WEBHOOK_BASE_URL", "https://hooks.example.com")

        config = get_telephony_config()

        assert isinstance(config, TelephonyConfig)
        assert config.twilio_auth_token == "secret"
        assert config.signature_check_enabled
        assert config.get_webhook_url() == f"https://hooks.example.com{STATUS_CALLBACK_PATH}"


class TestStructuredFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("dialler.test", logging.INFO, __file__, 1, "Queue materialised", (), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_extra_fields_are_folded_in(self) -> None:
        payload = json.loads(StructuredFormatter().format(self._record(callbacks_created=2)))

        assert payload["message"] == "Queue materialised"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "dialler.test"
        assert payload["callbacks_created"] == 2

    def test_correlation_id_is_included(self) -> None:
        token = correlation_id_var.set("corr-9")
        try:
            payload = json.loads(StructuredFormatter().format(self._record()))
        finally:
            correlation_id_var.reset(token)

        assert payload["correlation_id"] == "corr-9"

    def test_clashing_extra_keys_are_prefixed(self) -> None:
        payload = json.loads(StructuredFormatter().format(self._record(level="custom")))
        assert payload["level"] == "INFO"
        assert payload["extra_level"] == "custom"
