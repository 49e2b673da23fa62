"""End-to-end tests for the lead email pipeline with in-process fakes."""

import threading
from io import BytesIO
from unittest.mock import MagicMock

import pytest

from src.agents.lead_email.lead_summary import LeadSummarizer
from src.agents.lead_email.models import LeadRequest, LeadSummary
from src.agents.lead_email.pipeline import LeadEmailDependencies, LeadEmailPipeline
from src.common.bedrock_client import StandardizedBedrockClient
from src.common.errors import DeliveryError, ErrorKind, LeaseStoreError, SummaryError, TranscriptError
from src.storage.models import STATUS_ERROR, STATUS_SENT

THREAD = "conv_abc"
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * (2_900_000 - 4)


class FakeResponse:
    def __init__(self, data=b"", status_code=200, headers=None):
        self.data = data
        self.status_code = status_code
        self.headers = headers or {}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.data), chunk_size):
            yield self.data[start : start + chunk_size]


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.responses[url]


def user_item(ts, text, attachments=None):
    return {
        "type": "chatkit.user_message",
        "created_at": ts,
        "content": [{"type": "input_text", "text": text}],
        "attachments": attachments or [],
    }


def assistant_item(ts, text):
    return {
        "type": "chatkit.assistant_message",
        "created_at": ts,
        "content": [{"type": "output_text", "text": text}],
    }


def threads_client(items, title="Bumper scuff"):
    threads = MagicMock()
    threads.retrieve_thread.return_value = {"id": THREAD, "title": title, "user": "user_1"}
    threads.list_items.return_value = {"data": items, "has_more": False}
    return threads


def ready_summary(**overrides):
    fields = dict(
        summary="Customer wants a rear bumper scuff repaired.",
        handoff_ready=True,
        handoff_reason="ready_for_follow_up",
        customer_phone="(555) 123-4567",
        vehicle="2018 Civic",
        project="Bumper repair",
        next_steps=["Call to book an inspection"],
    )
    fields.update(overrides)
    return LeadSummary(**fields)


@pytest.fixture
def summarizer():
    summarizer = MagicMock()
    summarizer.generate.return_value = ready_summary()
    return summarizer


@pytest.fixture
def scheduler():
    return MagicMock()


@pytest.fixture
def idle_items(clock):
    return [
        assistant_item(clock.now - 900, "Hi! How can we help?"),
        user_item(clock.now - 600, "Rear bumper scuff on my 2018 Civic. Call me at (555) 123-4567"),
    ]


@pytest.fixture
def build_pipeline(settings, leases, transport, summarizer, scheduler, clock, fixed_boundaries):
    def factory(threads, **overrides):
        deps = dict(
            leases=leases,
            threads=threads,
            transport=transport,
            summarizer=summarizer,
            scheduler=scheduler,
            now=clock,
            boundaries=fixed_boundaries,
        )
        deps.update(overrides)
        return LeadEmailPipeline(settings, LeadEmailDependencies(**deps))

    return factory


def request(reason="idle", **kwargs):
    return LeadRequest(thread_id=THREAD, reason=reason, **kwargs)


class TestLeadEmailPipelineSend:
    """Happy path and finalization."""

    def test_sends_once_with_inline_photo(self, build_pipeline, transport, leases, clock, scheduler):
        photo_url = "https://files.example/attachments?id=att_1.jpg"
        items = [
            user_item(
                clock.now - 600,
                "Rear bumper scuff, call me at (555) 123-4567",
                attachments=[{"name": "bumper.jpg", "mime_type": "image/jpeg", "preview_url": photo_url}],
            )
        ]
        session = FakeSession(
            {photo_url: FakeResponse(JPEG_BYTES, headers={"Content-Type": "image/jpeg"})}
        )
        pipeline = build_pipeline(threads_client(items), http_session=session)

        outcome = pipeline.run(request())

        assert outcome.status_code == 200
        assert outcome.to_body() == {
            "ok": True,
            "sent": True,
            "reason": "sent",
            "messageId": "ses-message-1",
            "attachments": 1,
            "inlined": 1,
        }
        assert transport.send_raw.call_count == 1

        raw, source, destinations = transport.send_raw.call_args.args
        assert destinations == ["leads@shop.example"]
        assert source == "Shop Leads <noreply@shop.example>"
        assert raw.count(b"Content-Disposition: inline") == 1
        assert b"Content-ID: <attachment-" in raw
        assert b"@shop.example>" in raw
        assert b"Subject: New chat lead: 2018 Civic - Bumper repair" in raw

        record = leases.read(THREAD)
        assert record.status == STATUS_SENT
        assert record.message_id == "ses-message-1"
        assert record.attempts == 1

        scheduler.cancel_retry.assert_called_once_with(THREAD)
        assert session.calls[0][1]["allow_redirects"] is False

    def test_immediate_retry_is_already_sent(self, build_pipeline, idle_items, transport):
        threads = threads_client(idle_items)
        pipeline = build_pipeline(threads)
        pipeline.run(request())
        threads.reset_mock()

        outcome = pipeline.run(request("pagehide"))

        assert outcome.sent is True
        assert outcome.reason == "already_sent"
        assert outcome.details["messageId"] == "ses-message-1"
        assert transport.send_raw.call_count == 1
        threads.retrieve_thread.assert_not_called()

    def test_records_attribution_after_send(self, build_pipeline, idle_items):
        attribution_store = MagicMock()
        pipeline = build_pipeline(threads_client(idle_items), attribution_store=attribution_store)

        pipeline.run(request(attribution={"gclid": "abc", "device_type": "mobile"}, locale="en"))

        kwargs = attribution_store.record_lead.call_args.kwargs
        assert kwargs["thread_id"] == THREAD
        assert kwargs["attribution"]["gclid"] == "abc"
        assert kwargs["attribution"]["device_type"] == "mobile"
        assert kwargs["customer_phone"] == "(555) 123-4567"

    def test_mark_sent_failure_still_reports_sent(self, build_pipeline, idle_items, leases, monkeypatch):
        monkeypatch.setattr(leases, "mark_sent", MagicMock(side_effect=LeaseStoreError("down")))
        pipeline = build_pipeline(threads_client(idle_items))

        outcome = pipeline.run(request())

        assert outcome.sent is True
        assert outcome.reason == "sent"


class TestLeadEmailPipelineGates:
    """Business outcomes that stop before sending."""

    def test_already_sent_short_circuits_everything(self, build_pipeline, leases, transport, summarizer):
        lease = leases.acquire(THREAD, "idle")
        leases.mark_sent(THREAD, lease.lease_id, "earlier-message")
        threads = MagicMock()

        outcome = build_pipeline(threads).run(request())

        assert outcome.to_body()["reason"] == "already_sent"
        assert outcome.details["messageId"] == "earlier-message"
        threads.retrieve_thread.assert_not_called()
        summarizer.generate.assert_not_called()
        transport.send_raw.assert_not_called()

    def test_in_progress_when_lease_is_held(self, build_pipeline, leases, clock):
        leases.acquire(THREAD, "idle")
        threads = MagicMock()

        outcome = build_pipeline(threads).run(request())

        assert outcome.sent is False
        assert outcome.reason == "in_progress"
        assert outcome.details["lockExpiresAt"] == clock.now + 120
        threads.retrieve_thread.assert_not_called()

    def test_empty_thread(self, build_pipeline, clock, transport):
        threads = threads_client([assistant_item(clock.now - 900, "Hi! How can we help?")])

        outcome = build_pipeline(threads).run(request())

        assert outcome.reason == "empty_thread"
        transport.send_raw.assert_not_called()

    def test_missing_contact_skips_summarizer(self, build_pipeline, clock, summarizer, leases):
        threads = threads_client([user_item(clock.now - 600, "How much for a seat repair?")])

        outcome = build_pipeline(threads).run(request())

        assert outcome.reason == "missing_contact"
        summarizer.generate.assert_not_called()
        assert leases.read(THREAD) is None

    def test_assistant_phone_is_not_customer_contact(self, build_pipeline, clock):
        threads = threads_client(
            [
                user_item(clock.now - 700, "Can you fix a torn seat?"),
                assistant_item(clock.now - 600, "Sure, call us at (555) 010-2000 or 555-777-8888."),
            ]
        )

        outcome = build_pipeline(threads).run(request())

        assert outcome.reason == "missing_contact"

    def test_not_idle_schedules_retry(self, build_pipeline, clock, scheduler, summarizer, leases):
        threads = threads_client([user_item(clock.now - 10, "Text me at 555-123-4567")])

        outcome = build_pipeline(threads).run(request())

        assert outcome.reason == "not_idle"
        assert outcome.details["retryAt"] >= clock.now + 290
        assert outcome.details["scheduled"] is True
        thread_id, payload, run_at = scheduler.schedule_retry.call_args.args
        assert thread_id == THREAD
        assert payload["threadId"] == THREAD
        assert run_at == outcome.details["retryAt"]
        summarizer.generate.assert_not_called()
        assert leases.read(THREAD) is None

    def test_not_idle_server_retry_does_not_reschedule(self, build_pipeline, clock, scheduler):
        threads = threads_client([user_item(clock.now - 10, "Text me at 555-123-4567")])

        outcome = build_pipeline(threads).run(request("server_retry"))

        assert outcome.reason == "not_idle"
        assert outcome.details["scheduled"] is False
        scheduler.schedule_retry.assert_not_called()

    def test_not_idle_without_scheduler(self, build_pipeline, clock):
        threads = threads_client([user_item(clock.now - 10, "Text me at 555-123-4567")])

        outcome = build_pipeline(threads, scheduler=None).run(request())

        assert outcome.details["scheduled"] is False

    def test_not_ready_summary(self, build_pipeline, idle_items, summarizer, leases, transport):
        summarizer.generate.return_value = ready_summary(
            handoff_ready=False, handoff_reason="missing_vehicle_context", missing_info=["vehicle"]
        )

        outcome = build_pipeline(threads_client(idle_items)).run(request())

        assert outcome.reason == "not_ready"
        assert outcome.details == {"handoffReason": "missing_vehicle_context", "missingInfo": ["vehicle"]}
        assert leases.read(THREAD) is None
        transport.send_raw.assert_not_called()

    def test_summary_unavailable_fails_closed(self, build_pipeline, idle_items, summarizer, transport):
        summarizer.generate.return_value = None

        outcome = build_pipeline(threads_client(idle_items)).run(request())

        assert outcome.reason == "not_ready"
        assert outcome.details["handoffReason"] == "summary_unavailable"
        transport.send_raw.assert_not_called()

    def test_unreadable_model_response_fails_closed(self, build_pipeline, idle_items, leases, transport):
        runtime = MagicMock()
        runtime.invoke_model.return_value = {"body": BytesIO(b"<html>gateway</html>")}
        bedrock = StandardizedBedrockClient(model_id="anthropic.claude-3-haiku", client=runtime)
        summarizer = LeadSummarizer(bedrock)

        outcome = build_pipeline(threads_client(idle_items), summarizer=summarizer).run(request())

        assert outcome.status_code == 200
        assert outcome.reason == "not_ready"
        assert outcome.details["handoffReason"] == "summary_unavailable"
        assert leases.read(THREAD) is None
        transport.send_raw.assert_not_called()

    def test_no_summarizer_configured(self, build_pipeline, idle_items, transport):
        outcome = build_pipeline(threads_client(idle_items), summarizer=None).run(request())

        assert outcome.reason == "not_ready"
        transport.send_raw.assert_not_called()


class TestLeadEmailPipelineFailures:
    """Infrastructure failures and recovery."""

    def test_send_failure_marks_error_and_cools_down(self, build_pipeline, idle_items, transport, leases, clock):
        transport.send_raw.side_effect = DeliveryError("AWS SES error: Throttling")
        pipeline = build_pipeline(threads_client(idle_items))

        outcome = pipeline.run(request())

        assert outcome.status_code == 500
        assert outcome.to_body() == {"ok": False, "error": "Failed to send lead email"}
        record = leases.read(THREAD)
        assert record.status == STATUS_ERROR
        assert "Throttling" in record.last_error

        cooled = pipeline.run(request())
        assert cooled.reason == "cooldown"
        assert cooled.details["retryAfter"] == clock.now + 60

        transport.send_raw.side_effect = None
        clock.advance(61)
        recovered = pipeline.run(request())
        assert recovered.reason == "sent"
        assert leases.read(THREAD).attempts == 2

    def test_unexpected_send_exception_is_contained(self, build_pipeline, idle_items, transport, leases):
        transport.send_raw.side_effect = RuntimeError("boom")

        outcome = build_pipeline(threads_client(idle_items)).run(request())

        assert outcome.status_code == 500
        assert leases.read(THREAD).status == STATUS_ERROR

    def test_transcript_failure_is_502(self, build_pipeline):
        threads = MagicMock()
        threads.retrieve_thread.side_effect = TranscriptError("ChatKit request failed")

        outcome = build_pipeline(threads).run(request())

        assert outcome.status_code == 502
        assert outcome.error == "Failed to load transcript"

    def test_summarizer_call_failure_is_502(self, build_pipeline, idle_items, summarizer, leases, transport):
        summarizer.generate.side_effect = SummaryError(
            "Lead summary generation failed: BedrockError: throttled",
            kind=ErrorKind.SUMMARY_UNAVAILABLE,
        )

        outcome = build_pipeline(threads_client(idle_items)).run(request())

        assert outcome.status_code == 502
        assert outcome.to_body() == {"ok": False, "error": "Summarizer unavailable"}
        assert leases.read(THREAD) is None
        transport.send_raw.assert_not_called()

    def test_store_read_failure_is_503(self, build_pipeline):
        leases = MagicMock()
        leases.read.side_effect = LeaseStoreError("unavailable")

        outcome = build_pipeline(MagicMock(), leases=leases).run(request())

        assert outcome.status_code == 503
        assert outcome.to_body() == {"ok": False, "error": "Lead state unavailable"}

    def test_concurrent_triggers_send_exactly_once(self, build_pipeline, idle_items, transport):
        pipeline = build_pipeline(threads_client(idle_items))
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def worker(reason):
            barrier.wait()
            outcome = pipeline.run(request(reason))
            with lock:
                outcomes.append(outcome)

        reasons = ["idle", "pagehide", "chat_closed", "server_retry"] * 2
        threads = [threading.Thread(target=worker, args=(reason,)) for reason in reasons]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert transport.send_raw.call_count == 1
        assert sum(1 for outcome in outcomes if outcome.reason == "sent") == 1
        assert {outcome.reason for outcome in outcomes} <= {"sent", "in_progress", "already_sent"}
