#!/usr/bin/env python3
"""
Shared test configuration and fixtures for the lead email pipeline.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.agents.lead_email.config import LeadEmailSettings  # noqa: E402
from src.agents.lead_email.models import Transcript, TranscriptLine  # noqa: E402
from src.storage.lead_dedupe import InMemoryLeaseStore, LeadLeaseManager  # noqa: E402

NOW = 1_700_000_000

BASE_ENV = {
    "OPENAI_API_KEY": "sk-test",
    "LEAD_TO_EMAIL": "leads@shop.example",
    "LEAD_FROM_EMAIL": "Shop Leads <noreply@shop.example>",
    "LEAD_DEDUPE_TABLE_NAME": "lead-dedupe",
    "THREAD_ID_PREFIX": "conv_",
    "SHOP_NAME": "Harbor Upholstery",
    "SHOP_PHONE_DISPLAY": "(555) 010-2000",
    "SHOP_ADDRESS": "12 Dock St, Portside, CA",
}


@pytest.fixture(autouse=True)
def _no_network(monkeypatch):
    """Mock all network calls to prevent actual API calls during testing."""
    monkeypatch.setenv("NO_NETWORK", "1")

    # Mock boto3 client for Bedrock, SES and Scheduler
    def mock_boto3_client(*args, **kwargs):
        mock_client = MagicMock()
        mock_response = MagicMock()
        mock_response.__getitem__.return_value.read.return_value = (
            '{"content": [{"text": "Mock LLM response"}]}'
        )
        mock_client.invoke_model.return_value = mock_response
        mock_client.send_raw_email.return_value = {"MessageId": "mock-message-id"}
        return mock_client

    monkeypatch.setattr("boto3.client", mock_boto3_client)


@pytest.fixture
def clock():
    """Mutable epoch clock shared by the pipeline and the lease manager."""

    class Clock:
        def __init__(self):
            self.now = NOW

        def __call__(self):
            return self.now

        def advance(self, seconds):
            self.now += seconds

    return Clock()


@pytest.fixture
def settings_factory():
    def factory(**overrides):
        env = dict(BASE_ENV)
        env.update({key: str(value) for key, value in overrides.items()})
        return LeadEmailSettings.from_env(env)

    return factory


@pytest.fixture
def settings(settings_factory):
    return settings_factory()


@pytest.fixture
def lease_store():
    return InMemoryLeaseStore()


@pytest.fixture
def leases(lease_store, clock):
    return LeadLeaseManager(lease_store, lease_seconds=120, cooldown_seconds=60, now=clock)


@pytest.fixture
def fixed_boundaries():
    return lambda: ("mixed-boundary-test", "alternative-boundary-test")


@pytest.fixture
def make_transcript():
    """Build a transcript from ``(created_at, speaker, text)`` tuples."""

    def factory(*lines, title="Seat repair", user="user_1"):
        return Transcript(
            thread_title=title,
            thread_user=user,
            lines=[TranscriptLine(created_at=ts, speaker=speaker, text=text) for ts, speaker, text in lines],
        )

    return factory


@pytest.fixture
def transport():
    transport = MagicMock()
    transport.send_raw.return_value = "ses-message-1"
    return transport
