"""Attribution records for delivered chat leads."""

import logging
import time
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .models import LeadAttributionRecord

logger = logging.getLogger(__name__)

# Field name -> max stored length
ATTRIBUTION_FIELDS = {
    "gclid": 128,
    "gbraid": 128,
    "wbraid": 128,
    "utm_source": 128,
    "utm_medium": 128,
    "utm_campaign": 200,
    "utm_term": 200,
    "utm_content": 200,
    "first_touch_ts": 64,
    "last_touch_ts": 64,
    "landing_page": 300,
    "referrer": 300,
}

DEVICE_TYPES = ("mobile", "desktop")


def _bounded(value: Any, max_len: int) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed[:max_len]


def sanitize_attribution(payload: Any) -> Optional[Dict[str, Optional[str]]]:
    """Keep known attribution fields, bounded in length.

    Returns:
        The cleaned mapping, or None when nothing usable was supplied.
    """
    if not isinstance(payload, dict):
        return None

    cleaned: Dict[str, Optional[str]] = {
        key: _bounded(payload.get(key), max_len) for key, max_len in ATTRIBUTION_FIELDS.items()
    }
    device_type = payload.get("device_type")
    cleaned["device_type"] = device_type if device_type in DEVICE_TYPES else None

    if not any(cleaned.values()):
        return None
    return cleaned


class LeadAttributionStore:
    """Writes one attribution row per delivered lead."""

    def __init__(
        self,
        table_name: str,
        ttl_days: int = 180,
        table=None,
        now: Optional[Callable[[], int]] = None,
    ):
        self.table_name = table_name
        self.ttl_days = ttl_days
        if table is None:
            table = boto3.resource("dynamodb").Table(table_name)
        self.table = table
        self._now = now or (lambda: int(time.time()))

    def record_lead(
        self,
        thread_id: str,
        reason: str,
        locale: str = "",
        page_url: str = "",
        user_id: str = "",
        attribution: Optional[Dict[str, Any]] = None,
        customer_phone: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> Optional[str]:
        """Persist the attribution row.

        Returns:
            The new lead id, or None when the write failed. Failures are logged
            and never raised.
        """
        now = self._now()
        fields = sanitize_attribution(attribution) or {}
        record = LeadAttributionRecord(
            lead_id=str(uuid4()),
            thread_id=thread_id,
            created_at=now,
            lead_reason=reason,
            ttl=now + self.ttl_days * 86400,
            locale=locale or None,
            page_url=(page_url or "")[:2000] or None,
            user_id=user_id or None,
            customer_phone=customer_phone,
            customer_email=customer_email,
            **fields,
        )
        item = {key: value for key, value in record.to_item().items() if value is not None}
        try:
            self.table.put_item(Item=item)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"[{thread_id}] Failed to write lead attribution: {e}")
            return None

        logger.info(f"[{thread_id}] Recorded lead attribution {record.lead_id}")
        return record.lead_id
