"""Send-once orchestration for chat lead notifications.

One ``run`` per trigger. Ordering:
  fast-path read -> transcript -> contact gate -> idle gate (maybe schedule a
  retry) -> summarizer gate -> lease -> compose and send -> finalize.
Every business outcome is a 200 with a machine-readable ``reason``. Only bad
input and unrecoverable infrastructure failures map to 4xx/5xx.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from src.common.errors import (
    DeliveryError,
    ErrorKind,
    InvalidRequestError,
    LeadEmailError,
    LeaseStoreError,
    SchedulerError,
    SummaryError,
    TranscriptError,
)
from src.storage.lead_attribution import LeadAttributionStore, sanitize_attribution
from src.storage.lead_dedupe import (
    OUTCOME_ALREADY_SENT,
    OUTCOME_COOLDOWN,
    OUTCOME_IN_PROGRESS,
    LeadLeaseManager,
)
from src.storage.message_links import MessageLinkStore
from src.storage.models import DedupeRecord

from .config import LeadEmailSettings
from .email_delivery import SesTransport, send_lead_email
from .lead_summary import LeadSummarizer
from .models import LEAD_REASONS, SERVER_RETRY_REASON, LeadRequest, PipelineOutcome
from .retry_scheduler import LeadRetryScheduler, compute_retry_at
from .text_utils import extract_customer_contact
from .transcript import ChatKitThreadsClient, build_transcript

logger = logging.getLogger(__name__)

MAX_FIELD_LENGTH = 2000


def _optional_string(payload: Dict[str, Any], key: str, default: str = "") -> str:
    value = payload.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise InvalidRequestError(f"{key} must be a string")
    return value.strip()[:MAX_FIELD_LENGTH]


def parse_lead_request(
    payload: Any, trusted: bool = False, thread_id_prefix: str = "cthr_"
) -> LeadRequest:
    """Validate an inbound trigger.

    Args:
        payload: Decoded JSON body or direct invocation event.
        trusted: True only for direct (scheduler) invocations, which alone may
            carry the server retry reason.
        thread_id_prefix: Required conversation id prefix.

    Raises:
        InvalidRequestError: The payload is malformed.
    """
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")

    thread_id = payload.get("threadId")
    if (
        not isinstance(thread_id, str)
        or not thread_id.startswith(thread_id_prefix)
        or len(thread_id) <= len(thread_id_prefix)
        or any(ch.isspace() for ch in thread_id)
    ):
        raise InvalidRequestError("Missing or invalid threadId")

    reason = payload.get("reason")
    if reason is None:
        reason = "idle"
    allowed = LEAD_REASONS + ((SERVER_RETRY_REASON,) if trusted else ())
    if reason not in allowed:
        raise InvalidRequestError("Invalid reason")

    attribution = payload.get("attribution")
    if attribution is not None and not isinstance(attribution, dict):
        raise InvalidRequestError("attribution must be an object")

    return LeadRequest(
        thread_id=thread_id,
        reason=reason,
        locale=_optional_string(payload, "locale"),
        page_url=_optional_string(payload, "pageUrl"),
        user=_optional_string(payload, "user", "anonymous") or "anonymous",
        attribution=attribution,
    )


@dataclass
class LeadEmailDependencies:
    """Explicit collaborators. ``None`` means the capability is not configured."""

    leases: LeadLeaseManager
    threads: ChatKitThreadsClient
    transport: SesTransport
    summarizer: Optional[LeadSummarizer] = None
    scheduler: Optional[LeadRetryScheduler] = None
    attribution_store: Optional[LeadAttributionStore] = None
    message_links: Optional[MessageLinkStore] = None
    http_session: Any = None
    now: Callable[[], int] = field(default=lambda: int(time.time()))
    boundaries: Optional[Callable[[], Tuple[str, str]]] = None


def _outcome(sent: bool, reason: str, **details: Any) -> PipelineOutcome:
    return PipelineOutcome(sent=sent, reason=reason, details=details)


def _failure(status_code: int, error: str) -> PipelineOutcome:
    return PipelineOutcome(sent=False, reason="error", status_code=status_code, error=error)


# Failures that end a run before a send attempt, keyed by error kind.
_FAILURE_RESPONSES = {
    ErrorKind.STORE_UNAVAILABLE: (503, "Lead state unavailable"),
    ErrorKind.TRANSCRIPT_UNAVAILABLE: (502, "Failed to load transcript"),
    ErrorKind.SUMMARY_UNAVAILABLE: (502, "Summarizer unavailable"),
}


def _infrastructure_failure(error: LeadEmailError) -> PipelineOutcome:
    status_code, message = _FAILURE_RESPONSES.get(error.kind, (500, "Internal server error"))
    return _failure(status_code, message)


class LeadEmailPipeline:
    """Runs one lead email attempt against injected dependencies."""

    def __init__(self, settings: LeadEmailSettings, deps: LeadEmailDependencies):
        self.settings = settings
        self.deps = deps

    def _cached_outcome(self, outcome: str, record: Optional[DedupeRecord]) -> PipelineOutcome:
        if outcome == OUTCOME_ALREADY_SENT:
            return _outcome(
                True,
                OUTCOME_ALREADY_SENT,
                sentAt=record.sent_at if record else None,
                messageId=record.message_id if record else None,
            )
        lock = record.lock_expires_at if record else None
        if outcome == OUTCOME_COOLDOWN:
            return _outcome(False, OUTCOME_COOLDOWN, retryAfter=lock)
        return _outcome(False, OUTCOME_IN_PROGRESS, lockExpiresAt=lock)

    def run(self, request: LeadRequest) -> PipelineOutcome:
        thread_id = request.thread_id
        deps = self.deps
        settings = self.settings
        logger.info(f"[{thread_id}] Lead email trigger: {request.reason}")

        try:
            record = deps.leases.read(thread_id)
        except LeaseStoreError as e:
            logger.error(f"[{thread_id}] Dedupe read failed: {e}")
            return _infrastructure_failure(e)

        cached = deps.leases.fast_path_outcome(record)
        if cached:
            logger.info(f"[{thread_id}] Short-circuit: {cached}")
            return self._cached_outcome(cached, record)

        try:
            transcript = build_transcript(deps.threads, thread_id, settings.assistant_name)
        except TranscriptError as e:
            logger.error(f"[{thread_id}] Transcript unavailable: {e}")
            return _infrastructure_failure(e)

        if not transcript.has_customer_message:
            return _outcome(False, "empty_thread")

        contact = extract_customer_contact(transcript.lines, settings.shop.phone_digits)
        if not contact.has_any:
            return _outcome(False, "missing_contact")

        now = deps.now()
        last_activity = transcript.last_activity_at or 0
        idle_seconds = now - last_activity
        if idle_seconds < settings.idle_threshold_seconds:
            return self._defer(request, last_activity, idle_seconds)

        summary = None
        if deps.summarizer is not None:
            try:
                summary = deps.summarizer.generate(
                    transcript, request.locale, request.page_url, settings.shop
                )
            except SummaryError as e:
                logger.error(f"[{thread_id}] Summarizer call failed: {e}")
                return _infrastructure_failure(e)
        if summary is None:
            return _outcome(
                False, "not_ready", handoffReason=ErrorKind.SUMMARY_UNAVAILABLE.value, missingInfo=[]
            )
        if not summary.handoff_ready:
            return _outcome(
                False,
                "not_ready",
                handoffReason=summary.handoff_reason,
                missingInfo=list(summary.missing_info),
            )

        try:
            lease = deps.leases.acquire(thread_id, request.reason)
        except LeaseStoreError as e:
            logger.error(f"[{thread_id}] Lease acquire failed: {e}")
            return _infrastructure_failure(e)

        if not lease.acquired:
            existing = deps.leases.fast_path_outcome(lease.record) or OUTCOME_IN_PROGRESS
            return self._cached_outcome(existing, lease.record)

        attribution = sanitize_attribution(request.attribution)
        try:
            receipt = send_lead_email(
                deps.transport,
                settings,
                request,
                transcript,
                summary,
                attribution=attribution,
                message_links=deps.message_links,
                http_session=deps.http_session,
                boundaries=deps.boundaries() if deps.boundaries else None,
            )
        except Exception as e:
            logger.error(
                f"[{thread_id}] Lead email send failed: {e.__class__.__name__}: {e}",
                exc_info=not isinstance(e, DeliveryError),
            )
            try:
                deps.leases.mark_error(thread_id, lease.lease_id, f"{e.__class__.__name__}: {e}")
            except LeaseStoreError as store_error:
                logger.error(f"[{thread_id}] mark_error failed: {store_error}")
            return _failure(500, "Failed to send lead email")

        self._finalize(request, lease.lease_id, receipt.message_id, contact, attribution)
        return _outcome(
            True,
            "sent",
            messageId=receipt.message_id,
            attachments=receipt.attachment_count,
            inlined=receipt.inline_count,
        )

    def _defer(self, request: LeadRequest, last_activity: int, idle_seconds: int) -> PipelineOutcome:
        settings = self.settings
        retry_at = compute_retry_at(
            last_activity, settings.idle_threshold_seconds, settings.retry_safety_margin_seconds
        )
        scheduled = False
        if self.deps.scheduler is not None and not request.is_server_retry:
            try:
                self.deps.scheduler.schedule_retry(request.thread_id, request.to_payload(), retry_at)
                scheduled = True
            except SchedulerError as e:
                logger.error(f"[{request.thread_id}] Could not schedule retry: {e}")
        logger.info(
            f"[{request.thread_id}] Conversation active {idle_seconds}s ago; "
            f"retryAt={retry_at} scheduled={scheduled}"
        )
        return _outcome(False, "not_idle", retryAt=retry_at, scheduled=scheduled)

    def _finalize(self, request, lease_id, message_id, contact, attribution) -> None:
        """Post-send bookkeeping. Failures are logged, never raised."""
        thread_id = request.thread_id
        deps = self.deps
        try:
            deps.leases.mark_sent(thread_id, lease_id, message_id)
        except LeaseStoreError as e:
            logger.error(f"[{thread_id}] mark_sent failed after delivery: {e}")

        if deps.scheduler is not None:
            try:
                deps.scheduler.cancel_retry(thread_id)
            except SchedulerError as e:
                logger.warning(f"[{thread_id}] Could not cancel retry schedule: {e}")

        if deps.attribution_store is not None:
            deps.attribution_store.record_lead(
                thread_id=thread_id,
                reason=request.reason,
                locale=request.locale,
                page_url=request.page_url,
                user_id=request.user,
                attribution=attribution,
                customer_phone=contact.phone,
                customer_email=contact.email,
            )
