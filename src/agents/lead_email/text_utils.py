"""Text helpers shared by the lead email modules."""

import html
import re
from typing import Iterable, List, Optional
from urllib.parse import quote, urlsplit

from .models import CustomerContact, TranscriptLine

_EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
_PLAUSIBLE_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"(\+?\(?\d[\d().\-\s]{7,}\d)")
_NON_DIGITS_RE = re.compile(r"[^\d]")

_LANGUAGE_LABELS = {
    "en": "English",
    "es": "Spanish",
    "pt-br": "Portuguese (Brazil)",
    "vi": "Vietnamese",
    "tl": "Tagalog",
    "ko": "Korean",
    "hi": "Hindi",
    "pa": "Punjabi",
    "ta": "Tamil",
    "ar": "Arabic",
    "ru": "Russian",
    "ja": "Japanese",
    "zh-hans": "Chinese (Simplified)",
    "zh-hant": "Chinese (Traditional)",
}


def normalize_whitespace(value: str) -> str:
    cleaned = (value or "").replace("\r\n", "\n")
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def digits_only(value: str) -> str:
    return _NON_DIGITS_RE.sub("", value or "")


def trim_transcript_for_model(value: str, max_chars: int = 16_000) -> str:
    """Keep the head and the tail of an oversized transcript.

    Long chats often answer key questions near the end, so most of the budget
    goes to the tail.
    """
    if len(value) <= max_chars:
        return value
    head_chars = min(4_000, max_chars // 4)
    separator = "\n\n... (earlier messages omitted) ...\n\n"
    tail_chars = max(0, max_chars - head_chars - len(separator))
    head = value[:head_chars]
    tail = value[-tail_chars:] if tail_chars else ""
    return f"{head}{separator}{tail}".strip()


def escape_html(value: str) -> str:
    return html.escape(value or "", quote=True)


def safe_http_url(value: str) -> Optional[str]:
    """Return the URL only when it is a well-formed http(s) URL with a host."""
    candidate = (value or "").strip()
    if not candidate or any(ch.isspace() for ch in candidate):
        return None
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https"):
        return None
    if not parts.netloc or not parts.hostname:
        return None
    return candidate


def is_plausible_email(value: str) -> bool:
    return bool(_PLAUSIBLE_EMAIL_RE.match((value or "").strip()))


def is_plausible_phone(value: str) -> bool:
    return len(digits_only(value)) >= 7


def phone_to_tel_href(value: str) -> Optional[str]:
    digits = digits_only(value)
    if len(digits) < 7 or len(digits) > 15:
        return None
    if len(digits) == 10:
        return f"tel:+1{digits}"
    return f"tel:+{digits}"


def email_to_mailto(value: str) -> Optional[str]:
    address = (value or "").strip()
    if not is_plausible_email(address):
        return None
    # addr-spec stays literal so mail clients populate the To field
    return f"mailto:{address}"


def mailto_with_draft(address: str, subject: str, body: str) -> Optional[str]:
    base = email_to_mailto(address)
    if not base:
        return None
    return f"{base}?subject={quote(subject, safe='')}&body={quote(body, safe='')}"


def format_list_text(items: Iterable[str], prefix: str = "- ") -> str:
    return "\n".join(f"{prefix}{item}" for item in items)


def locale_to_language_label(locale: str) -> Optional[str]:
    return _LANGUAGE_LABELS.get((locale or "").strip().lower())


def extract_customer_contact(
    lines: Iterable[TranscriptLine], shop_phone_digits: str = ""
) -> CustomerContact:
    """Find the first plausible email and phone number written by the customer.

    Assistant lines are ignored so the business's own contact details, which the
    assistant often repeats, are never mistaken for the customer's.
    """
    customer_text = "\n".join(line.text for line in lines if line.is_customer)

    email_match = _EMAIL_RE.search(customer_text)
    email = email_match.group(0).strip().rstrip(".,;:!?)") if email_match else None

    phone_candidates: List[str] = []
    for match in _PHONE_RE.finditer(customer_text):
        raw = match.group(1).strip()
        digits = digits_only(raw)
        if shop_phone_digits and digits == shop_phone_digits:
            continue
        if len(digits) < 10 or len(digits) > 15:
            continue
        phone_candidates.append(raw)
    phone = phone_candidates[0] if phone_candidates else None

    return CustomerContact(
        email=email if email and is_plausible_email(email) else None,
        phone=phone if phone and is_plausible_phone(phone) else None,
    )
