"""One-time message link tokens stored in DynamoDB.

A token resolves to a phone number and a prefilled message body, so the lead
email can offer a "text the customer" link without embedding the body in a URL
that mail clients mangle.
"""

import logging
import time
from typing import Callable, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .models import MessageLinkToken

logger = logging.getLogger(__name__)

LINK_KIND_CUSTOMER = "customer"

LOCAL_HOSTNAMES = ("localhost", "127.0.0.1")


def _safe_origin(url: str) -> Optional[str]:
    try:
        parts = urlsplit((url or "").strip())
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def infer_message_link_base_url(page_url: str, default: str) -> str:
    """Keep local dev links on the page's own origin; everything else uses ``default``."""
    try:
        hostname = urlsplit(page_url or "").hostname or ""
    except ValueError:
        hostname = ""
    if hostname in LOCAL_HOSTNAMES:
        return _safe_origin(page_url) or default
    return default


def with_link_channel(url: str, channel: str = "google_voice") -> Optional[str]:
    """Return ``url`` with its ``channel`` query parameter set, or None if unsafe."""
    try:
        parts = urlsplit((url or "").strip())
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key != "channel"
    ]
    query.append(("channel", channel))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def build_message_link_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/message/?token={quote(token, safe='')}"


class MessageLinkStore:
    """Writes message link tokens with a create-only conditional put."""

    def __init__(
        self,
        table_name: str,
        base_url: str,
        ttl_days: int = 14,
        table=None,
        now: Optional[Callable[[], int]] = None,
    ):
        self.table_name = table_name
        self.base_url = base_url
        self.ttl_days = ttl_days
        if table is None:
            table = boto3.resource("dynamodb").Table(table_name)
        self.table = table
        self._now = now or (lambda: int(time.time()))

    def create_link(
        self,
        thread_id: str,
        kind: str,
        to_phone: str,
        body: str,
        base_url: Optional[str] = None,
    ) -> Optional[str]:
        """Store a fresh token and return its landing URL.

        Returns:
            The link, or None when the write failed.
        """
        base = base_url or self.base_url
        if not _safe_origin(base):
            logger.warning(f"[{thread_id}] No usable message link base URL; skipping link")
            return None

        now = self._now()
        record = MessageLinkToken(
            token=str(uuid4()),
            thread_id=thread_id,
            kind=kind,
            to_phone=to_phone,
            body=body or "",
            created_at=now,
            ttl=now + self.ttl_days * 86400,
        )
        try:
            self.table.put_item(
                Item=vars(record),
                ConditionExpression="attribute_not_exists(#token)",
                ExpressionAttributeNames={"#token": "token"},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"[{thread_id}] Failed to write message link token: {e}")
            return None

        return build_message_link_url(base, record.token)
