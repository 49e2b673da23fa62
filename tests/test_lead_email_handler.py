"""Tests for the lead email Lambda entry point."""

import base64
import json
from unittest.mock import MagicMock, patch

import pytest

from src.agents.lead_email import lambda_function
from src.agents.lead_email.lambda_function import build_dependencies, lambda_handler
from src.agents.lead_email.models import PipelineOutcome

HANDLER = "src.agents.lead_email.lambda_function"


def http_event(body, method="POST", base64_encoded=False):
    if isinstance(body, dict):
        body = json.dumps(body)
    if base64_encoded:
        body = base64.b64encode(body.encode()).decode()
    return {
        "requestContext": {"http": {"method": method}},
        "body": body,
        "isBase64Encoded": base64_encoded,
    }


@pytest.fixture
def pipeline(settings):
    pipeline = MagicMock()
    pipeline.settings = settings
    pipeline.run.return_value = PipelineOutcome(sent=True, reason="sent", details={"messageId": "m-1"})
    with patch(f"{HANDLER}.get_pipeline", return_value=pipeline):
        yield pipeline


def _body(response):
    return json.loads(response["body"])


class TestHttpTriggers:
    def test_options_preflight(self, pipeline):
        response = lambda_handler(http_event("", method="OPTIONS"), None)

        assert response["statusCode"] == 204
        pipeline.run.assert_not_called()

    def test_get_not_allowed(self, pipeline):
        response = lambda_handler(http_event("", method="GET"), None)
        assert response["statusCode"] == 405

    def test_post_runs_pipeline(self, pipeline):
        response = lambda_handler(
            http_event({"threadId": "conv_abc", "reason": "pagehide", "locale": "es", "pageUrl": "https://shop.example"}),
            None,
        )

        assert response["statusCode"] == 200
        assert response["headers"]["Content-Type"] == "application/json"
        assert _body(response) == {"ok": True, "sent": True, "reason": "sent", "messageId": "m-1"}
        request = pipeline.run.call_args.args[0]
        assert request.thread_id == "conv_abc"
        assert request.reason == "pagehide"
        assert request.locale == "es"
        assert request.user == "anonymous"

    def test_base64_body(self, pipeline):
        response = lambda_handler(http_event({"threadId": "conv_abc"}, base64_encoded=True), None)

        assert response["statusCode"] == 200
        assert pipeline.run.call_args.args[0].reason == "idle"

    def test_invalid_json(self, pipeline):
        response = lambda_handler(http_event("{not json"), None)

        assert response["statusCode"] == 400
        assert _body(response) == {"error": "Invalid JSON body"}

    @pytest.mark.parametrize("thread_id", [None, "", "cthr_abc", "conv_", "conv_a b", 42])
    def test_invalid_thread_id(self, pipeline, thread_id):
        response = lambda_handler(http_event({"threadId": thread_id}), None)

        assert response["statusCode"] == 400
        pipeline.run.assert_not_called()

    def test_server_retry_not_accepted_over_http(self, pipeline):
        response = lambda_handler(http_event({"threadId": "conv_abc", "reason": "server_retry"}), None)

        assert response["statusCode"] == 400
        assert _body(response) == {"error": "Invalid reason"}

    def test_attribution_must_be_object(self, pipeline):
        response = lambda_handler(http_event({"threadId": "conv_abc", "attribution": "gclid=1"}), None)
        assert response["statusCode"] == 400

    def test_pipeline_status_is_propagated(self, pipeline):
        pipeline.run.return_value = PipelineOutcome(
            sent=False, reason="error", status_code=503, error="Lead state unavailable"
        )

        response = lambda_handler(http_event({"threadId": "conv_abc"}), None)

        assert response["statusCode"] == 503
        assert _body(response) == {"ok": False, "error": "Lead state unavailable"}

    def test_unhandled_error_is_500(self, pipeline):
        pipeline.run.side_effect = RuntimeError("boom")

        response = lambda_handler(http_event({"threadId": "conv_abc"}), None)

        assert response["statusCode"] == 500
        assert _body(response) == {"error": "Internal server error"}


class TestDirectInvocation:
    def test_scheduler_retry_is_trusted(self, pipeline):
        response = lambda_handler({"threadId": "conv_abc", "reason": "server_retry"}, None)

        assert response["statusCode"] == 200
        assert pipeline.run.call_args.args[0].is_server_retry

    def test_unsupported_event(self, pipeline):
        response = lambda_handler({"source": "aws.events"}, None)
        assert response["statusCode"] == 400


class TestConfiguration:
    def test_missing_configuration_is_500(self, monkeypatch):
        monkeypatch.setattr(lambda_function, "_pipeline", None)
        for key in ("OPENAI_API_KEY", "LEAD_TO_EMAIL", "LEAD_FROM_EMAIL", "LEAD_DEDUPE_TABLE_NAME"):
            monkeypatch.delenv(key, raising=False)

        response = lambda_handler(http_event({"threadId": "cthr_abc"}), None)

        assert response["statusCode"] == 500
        assert _body(response) == {"error": "Server missing configuration"}

    def test_build_dependencies_optional_capabilities(self, settings_factory, monkeypatch):
        monkeypatch.setattr("boto3.resource", MagicMock())
        settings = settings_factory(
            BEDROCK_MODEL_ID="anthropic.claude-3-haiku",
            LEAD_RETRY_SCHEDULER_ROLE_ARN="arn:aws:iam::123456789012:role/scheduler",
            LEAD_ATTRIBUTION_TABLE_NAME="attribution",
        )
        context = MagicMock(invoked_function_arn="arn:aws:lambda:us-east-1:123456789012:function:lead-email")

        deps = build_dependencies(settings, context)

        # NO_NETWORK=1 blocks the real Bedrock client, so the summarizer is left out
        assert deps.summarizer is None
        assert deps.scheduler.target_arn == context.invoked_function_arn
        assert deps.attribution_store is not None
        assert deps.message_links is None

    def test_build_dependencies_without_scheduler_role(self, settings, monkeypatch):
        monkeypatch.setattr("boto3.resource", MagicMock())

        deps = build_dependencies(settings, None)

        assert deps.scheduler is None
        assert deps.attribution_store is None
