"""Storage adapters for lead delivery state, attribution and message links."""

from .lead_attribution import LeadAttributionStore, sanitize_attribution
from .lead_dedupe import (
    DynamoLeaseStore,
    InMemoryLeaseStore,
    LeadLeaseManager,
    LeaseResult,
    LeaseStore,
    TransitionGuard,
)
from .message_links import MessageLinkStore
from .models import DedupeRecord, LeadAttributionRecord, MessageLinkToken

__all__ = [
    "DedupeRecord",
    "DynamoLeaseStore",
    "InMemoryLeaseStore",
    "LeadAttributionRecord",
    "LeadAttributionStore",
    "LeadLeaseManager",
    "LeaseResult",
    "LeaseStore",
    "MessageLinkStore",
    "MessageLinkToken",
    "TransitionGuard",
    "sanitize_attribution",
]
