"""Subject line and outreach drafts for the lead email."""

from dataclasses import dataclass
from typing import Iterable, Optional

from .models import LeadSummary, ShopProfile
from .text_utils import digits_only, normalize_whitespace


@dataclass(frozen=True)
class OutreachDrafts:
    sms_draft: str
    email_subject: str
    email_body: str


def _join_non_empty(parts: Iterable[Optional[str]], separator: str) -> str:
    return separator.join(part.strip() for part in parts if part and part.strip())


def _vehicle_or_project(summary: Optional[LeadSummary]) -> str:
    if summary is None:
        return ""
    return _join_non_empty([summary.vehicle, summary.project], " - ")


def build_lead_email_subject(summary: Optional[LeadSummary], thread_title: Optional[str]) -> str:
    context = _vehicle_or_project(summary)
    if context:
        return f"New chat lead: {context}"
    if thread_title and thread_title.strip():
        return f"New chat lead: {thread_title.strip()}"
    return "New chat lead"


def _mentions(text: str, needle: str) -> bool:
    return bool(needle) and needle.strip().lower() in text.lower()


def ensure_shop_signature(text: str, shop: ShopProfile) -> str:
    """Append the shop name and phone when the message does not already carry them."""
    out = text.strip()
    if shop.name and not _mentions(out, shop.name):
        out = f"{out}\n\n- {shop.name}"
    if shop.phone_digits and shop.phone_digits not in digits_only(out):
        out = f"{out}\n{shop.phone_display}"
    return normalize_whitespace(out)


def build_outreach_drafts(summary: Optional[LeadSummary], shop: ShopProfile) -> OutreachDrafts:
    greeting_name = (summary.customer_name if summary else None) or "there"
    context = _vehicle_or_project(summary)
    context_snippet = f" about your {context}" if context else ""

    outreach = (summary.outreach_message if summary else None) or normalize_whitespace(
        f"Hi {greeting_name} - thanks for reaching out to {shop.name}{context_snippet}. "
        "If you can text 2-4 photos (1 wide + 1-2 close-ups), we can take a proper look "
        f"and follow up with next steps. {shop.phone_display}"
    )
    recommended = ensure_shop_signature(outreach, shop)

    email_subject = f"{shop.name} - next steps for {context}" if context else f"{shop.name} - next steps"

    email_body = recommended
    address_first_line = shop.address.split(",")[0] if shop.address else ""
    if shop.address and not _mentions(email_body, address_first_line):
        email_body = f"{email_body}\n{shop.address}"

    return OutreachDrafts(
        sms_draft=recommended,
        email_subject=email_subject,
        email_body=normalize_whitespace(email_body),
    )
