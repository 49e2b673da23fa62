"""Data models for the chat lead email pipeline."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from src.common.errors import ErrorKind

CUSTOMER_SPEAKER = "Customer"

LEAD_REASONS = ("idle", "pagehide", "chat_closed")
SERVER_RETRY_REASON = "server_retry"

HANDOFF_REASONS = (
    "missing_contact",
    "missing_project_details",
    "missing_vehicle_context",
    "ready_for_follow_up",
    "not_ready",
)


@dataclass(frozen=True)
class TranscriptLine:
    """A single timestamped chat message."""

    created_at: int
    speaker: str
    text: str

    @property
    def is_customer(self) -> bool:
        return self.speaker == CUSTOMER_SPEAKER


@dataclass
class Transcript:
    """Normalized conversation, rebuilt fresh on every invocation."""

    thread_title: Optional[str]
    thread_user: str
    lines: List[TranscriptLine] = field(default_factory=list)

    @property
    def has_customer_message(self) -> bool:
        return any(line.is_customer for line in self.lines)

    @property
    def last_activity_at(self) -> Optional[int]:
        if not self.lines:
            return None
        return max(line.created_at for line in self.lines)


@dataclass(frozen=True)
class AttachmentRef:
    """Attachment parsed out of a transcript marker row."""

    display_name: str
    mime_type: Optional[str]
    url: str
    storage_key: Optional[str] = None

    @property
    def label(self) -> str:
        if self.mime_type:
            return f"{self.display_name} ({self.mime_type})"
        return self.display_name


@dataclass(frozen=True)
class InlineAttachment:
    """Image bytes embedded in the outgoing message by content-id."""

    content_id: str
    filename: str
    mime_type: str
    data: bytes
    source_url: str


@dataclass(frozen=True)
class InlineOutcome:
    """Result of trying to inline one attachment.

    Exactly one of ``attachment`` or ``skipped`` is set.
    """

    ref: AttachmentRef
    attachment: Optional[InlineAttachment] = None
    skipped: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.attachment is not None


@dataclass
class LeadSummary:
    """Sanitized summarizer output. Fields that fail plausibility checks are None."""

    summary: str
    handoff_ready: bool
    handoff_reason: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    customer_location: Optional[str] = None
    customer_language: Optional[str] = None
    vehicle: Optional[str] = None
    project: Optional[str] = None
    timeline: Optional[str] = None
    outreach_message: Optional[str] = None
    next_steps: List[str] = field(default_factory=list)
    follow_up_questions: List[str] = field(default_factory=list)
    call_script_prompts: List[str] = field(default_factory=list)
    missing_info: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CustomerContact:
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def has_any(self) -> bool:
        return bool(self.email or self.phone)


@dataclass(frozen=True)
class ShopProfile:
    """Business identity used in drafts and the email header."""

    name: str
    phone_display: str
    phone_digits: str
    address: str
    site_label: str = ""


@dataclass
class LeadRequest:
    """Validated trigger payload."""

    thread_id: str
    reason: str
    locale: str = ""
    page_url: str = ""
    user: str = "anonymous"
    attribution: Optional[Dict[str, Any]] = None

    @property
    def is_server_retry(self) -> bool:
        return self.reason == SERVER_RETRY_REASON

    def to_payload(self) -> Dict[str, Any]:
        """JSON-serializable copy in the inbound wire shape."""
        payload: Dict[str, Any] = {
            "threadId": self.thread_id,
            "reason": self.reason,
            "locale": self.locale,
            "pageUrl": self.page_url,
            "user": self.user,
        }
        if self.attribution:
            payload["attribution"] = dict(self.attribution)
        return payload


@dataclass
class PipelineOutcome:
    """Result of one pipeline invocation."""

    sent: bool
    reason: str
    status_code: int = 200
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_body(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"ok": False, "error": self.error, **self.details}
        return {"ok": True, "sent": self.sent, "reason": self.reason, **self.details}
