"""Tests for message link tokens and lead attribution records."""

from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

from botocore.exceptions import ClientError

from src.storage.lead_attribution import LeadAttributionStore, sanitize_attribution
from src.storage.message_links import (
    LINK_KIND_CUSTOMER,
    MessageLinkStore,
    build_message_link_url,
    infer_message_link_base_url,
    with_link_channel,
)

NOW = 1_700_000_000


def _client_error(code="ConditionalCheckFailedException"):
    return ClientError({"Error": {"Code": code, "Message": code}}, "PutItem")


class TestMessageLinkHelpers:
    def test_local_pages_keep_their_origin(self):
        assert (
            infer_message_link_base_url("http://localhost:3000/quote?x=1", "https://shop.example")
            == "http://localhost:3000"
        )

    def test_public_pages_use_default(self):
        assert infer_message_link_base_url("https://evil.example/", "https://shop.example") == "https://shop.example"
        assert infer_message_link_base_url("", "https://shop.example") == "https://shop.example"

    def test_with_link_channel_replaces_existing(self):
        url = with_link_channel("https://shop.example/message/?token=t1&channel=sms")
        query = parse_qs(urlsplit(url).query)
        assert query == {"token": ["t1"], "channel": ["google_voice"]}

    def test_with_link_channel_rejects_unsafe(self):
        assert with_link_channel("javascript:alert(1)") is None

    def test_build_url(self):
        assert build_message_link_url("https://shop.example/", "a b") == "https://shop.example/message/?token=a%20b"


class TestMessageLinkStore:
    def test_create_link_writes_conditional_token(self):
        table = MagicMock()
        store = MessageLinkStore("links", "https://shop.example", ttl_days=14, table=table, now=lambda: NOW)

        link = store.create_link("conv_abc", LINK_KIND_CUSTOMER, "(555) 123-4567", "Hi Dana")

        kwargs = table.put_item.call_args.kwargs
        item = kwargs["Item"]
        assert kwargs["ConditionExpression"] == "attribute_not_exists(#token)"
        assert item["thread_id"] == "conv_abc"
        assert item["kind"] == "customer"
        assert item["to_phone"] == "(555) 123-4567"
        assert item["body"] == "Hi Dana"
        assert item["ttl"] == NOW + 14 * 86400
        assert link == f"https://shop.example/message/?token={item['token']}"

    def test_write_failure_returns_none(self):
        table = MagicMock()
        table.put_item.side_effect = _client_error()
        store = MessageLinkStore("links", "https://shop.example", table=table)

        assert store.create_link("conv_abc", LINK_KIND_CUSTOMER, "5551234567", "Hi") is None

    def test_missing_base_url_skips_write(self):
        table = MagicMock()
        store = MessageLinkStore("links", "", table=table)

        assert store.create_link("conv_abc", LINK_KIND_CUSTOMER, "5551234567", "Hi") is None
        table.put_item.assert_not_called()


class TestSanitizeAttribution:
    def test_bounds_and_filters(self):
        cleaned = sanitize_attribution(
            {"gclid": " abc ", "utm_campaign": "c" * 500, "device_type": "tablet", "unknown": "x"}
        )

        assert cleaned["gclid"] == "abc"
        assert len(cleaned["utm_campaign"]) == 200
        assert cleaned["device_type"] is None
        assert "unknown" not in cleaned

    def test_nothing_usable(self):
        assert sanitize_attribution({"gclid": "  ", "device_type": "tv"}) is None
        assert sanitize_attribution("gclid=abc") is None


class TestLeadAttributionStore:
    def test_record_lead_drops_empty_fields(self):
        table = MagicMock()
        store = LeadAttributionStore("attribution", ttl_days=180, table=table, now=lambda: NOW)

        lead_id = store.record_lead(
            thread_id="conv_abc",
            reason="idle",
            locale="en",
            page_url="https://shop.example/seats",
            user_id="anonymous",
            attribution={"utm_source": "google", "device_type": "mobile"},
            customer_phone="5551234567",
        )

        item = table.put_item.call_args.kwargs["Item"]
        assert item["lead_id"] == lead_id
        assert item["lead_method"] == "chat"
        assert item["utm_source"] == "google"
        assert item["device_type"] == "mobile"
        assert item["qualified"] is False
        assert item["ttl"] == NOW + 180 * 86400
        assert "customer_email" not in item
        assert "gclid" not in item

    def test_write_failure_is_swallowed(self):
        table = MagicMock()
        table.put_item.side_effect = _client_error("ValidationException")
        store = LeadAttributionStore("attribution", table=table)

        assert store.record_lead(thread_id="conv_abc", reason="idle") is None
