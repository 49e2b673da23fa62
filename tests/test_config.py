"""Tests for environment configuration."""

import pytest

from src.agents.lead_email.config import LeadEmailSettings
from src.common.errors import ConfigurationError


def test_defaults(settings):
    assert settings.idle_threshold_seconds == 300
    assert settings.retry_safety_margin_seconds == 5
    assert settings.lease_seconds == 120
    assert settings.error_cooldown_seconds == 60
    assert settings.inline_attachment_max_bytes == 4 * 1024 * 1024
    assert settings.retry_schedule_group == "default"
    assert settings.attribution_table_name is None
    assert settings.summarizer_configured is False


def test_shop_profile(settings):
    shop = settings.shop
    assert shop.name == "Harbor Upholstery"
    assert shop.phone_digits == "5550102000"


def test_missing_required_lists_every_key():
    with pytest.raises(ConfigurationError) as exc_info:
        LeadEmailSettings.from_env({"OPENAI_API_KEY": "sk", "LEAD_TO_EMAIL": " "})

    message = str(exc_info.value)
    assert "LEAD_TO_EMAIL" in message
    assert "LEAD_FROM_EMAIL" in message
    assert "LEAD_DEDUPE_TABLE_NAME" in message
    assert "OPENAI_API_KEY" not in message


def test_numeric_overrides(settings_factory):
    settings = settings_factory(LEAD_IDLE_THRESHOLD_SECONDS="120", BEDROCK_MODEL_ID="anthropic.claude-3-haiku")

    assert settings.idle_threshold_seconds == 120
    assert settings.summarizer_configured is True


@pytest.mark.parametrize("value", ["soon", "-5"])
def test_invalid_numbers_rejected(settings_factory, value):
    with pytest.raises(ConfigurationError):
        settings_factory(LEAD_LEASE_SECONDS=value)


def test_reads_process_environment(monkeypatch):
    for key, value in {
        "OPENAI_API_KEY": "sk",
        "LEAD_TO_EMAIL": "a@example.com",
        "LEAD_FROM_EMAIL": "b@example.com",
        "LEAD_DEDUPE_TABLE_NAME": "dedupe",
    }.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("LEAD_RETRY_SCHEDULE_GROUP", "lead-retries")

    assert LeadEmailSettings.from_env().retry_schedule_group == "lead-retries"
