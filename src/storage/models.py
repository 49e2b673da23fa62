"""Data models for lead pipeline storage."""

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

STATUS_SENDING = "sending"
STATUS_SENT = "sent"
STATUS_ERROR = "error"


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, Decimal, float)):
        return int(value)
    try:
        return int(str(value))
    except ValueError:
        return None


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


@dataclass
class DedupeRecord:
    """Per-thread idempotency and lease state."""

    thread_id: str
    status: str
    lease_id: Optional[str] = None
    lock_expires_at: Optional[int] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    attempts: int = 0
    sent_at: Optional[int] = None
    message_id: Optional[str] = None
    last_reason: Optional[str] = None
    last_error: Optional[str] = None
    ttl: Optional[int] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "DedupeRecord":
        """Build from a DynamoDB item (numbers arrive as Decimal)."""
        return cls(
            thread_id=str(item.get("thread_id", "")),
            status=str(item.get("status", "")),
            lease_id=_as_str(item.get("lease_id")),
            lock_expires_at=_as_int(item.get("lock_expires_at")),
            created_at=_as_int(item.get("created_at")),
            updated_at=_as_int(item.get("updated_at")),
            attempts=_as_int(item.get("attempts")) or 0,
            sent_at=_as_int(item.get("sent_at")),
            message_id=_as_str(item.get("message_id")),
            last_reason=_as_str(item.get("last_reason")),
            last_error=_as_str(item.get("last_error")),
            ttl=_as_int(item.get("ttl")),
        )

    def lock_active(self, now: int) -> bool:
        return self.lock_expires_at is not None and self.lock_expires_at > now


@dataclass
class MessageLinkToken:
    """One-time token resolving to a phone number and a prefilled message body."""

    token: str
    thread_id: str
    kind: str
    to_phone: str
    body: str
    created_at: int
    ttl: int


@dataclass
class LeadAttributionRecord:
    """Attribution row written once per delivered lead."""

    lead_id: str
    thread_id: str
    created_at: int
    lead_reason: str
    ttl: int
    lead_method: str = "chat"
    locale: Optional[str] = None
    page_url: Optional[str] = None
    user_id: Optional[str] = None
    qualified: bool = False
    qualified_at: Optional[int] = None
    uploaded: bool = False
    uploaded_at: Optional[int] = None
    device_type: Optional[str] = None
    gclid: Optional[str] = None
    gbraid: Optional[str] = None
    wbraid: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None
    first_touch_ts: Optional[str] = None
    last_touch_ts: Optional[str] = None
    landing_page: Optional[str] = None
    referrer: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None

    def to_item(self) -> Dict[str, Any]:
        return asdict(self)
