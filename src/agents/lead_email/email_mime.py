"""Raw MIME assembly for the lead notification email."""

import re
from email import encoders
from email.header import Header
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, parseaddr
from typing import List, Optional, Sequence, Tuple
from uuid import uuid4

from .models import InlineAttachment
from .text_utils import escape_html, safe_http_url

_CRLF_RE = re.compile(r"[\r\n]+")
_URL_IN_TEXT_RE = re.compile(r"https?://[^\s]+")

LINK_STYLE = "color:#141cff;text-decoration:none"


def new_boundaries() -> Tuple[str, str]:
    """Boundary pair for one send. Generate once and pass the same pair through."""
    return f"mixed-{uuid4()}", f"alternative-{uuid4()}"


def _clean_header(value: str) -> str:
    return _CRLF_RE.sub(" ", value or "").strip()


def _is_ascii(value: str) -> bool:
    return all(0x20 <= ord(ch) <= 0x7E for ch in value)


def encode_header_value(value: str):
    cleaned = _clean_header(value)
    if _is_ascii(cleaned):
        return cleaned
    return Header(cleaned, "utf-8").encode()


def encode_address(value: str) -> str:
    """Encode only the display name of an address header."""
    name, address = parseaddr(_clean_header(value))
    if not address:
        return encode_header_value(value)
    return formataddr((name, address), charset="utf-8")


def _image_part(attachment: InlineAttachment) -> MIMEBase:
    maintype, _, subtype = attachment.mime_type.partition("/")
    part = MIMEBase(maintype or "image", subtype or "jpeg")
    part.set_payload(attachment.data)
    encoders.encode_base64(part)
    part["Content-ID"] = f"<{attachment.content_id}>"
    filename = _clean_header(attachment.filename)
    if _is_ascii(filename):
        part.add_header("Content-Disposition", "inline", filename=filename)
    else:
        part.add_header("Content-Disposition", "inline", filename=("utf-8", "", filename))
    return part


def build_raw_email(
    from_addr: str,
    to_addr: str,
    subject: str,
    text_body: str,
    html_body: str,
    attachments: Sequence[InlineAttachment],
    mixed_boundary: str,
    alternative_boundary: str,
    reply_to: Optional[str] = None,
) -> bytes:
    """Build a transport-ready message with CRLF line endings.

    Layout: multipart/mixed wrapping multipart/alternative (text, then html),
    followed by one inline image part per attachment. Identical inputs,
    boundaries included, give identical bytes.
    """
    msg = MIMEMultipart("mixed", boundary=mixed_boundary)
    msg["From"] = encode_address(from_addr)
    msg["To"] = encode_address(to_addr)
    if reply_to:
        msg["Reply-To"] = encode_address(reply_to)
    msg["Subject"] = encode_header_value(subject)

    alternative = MIMEMultipart("alternative", boundary=alternative_boundary)
    alternative.attach(MIMEText(text_body or "", "plain", "utf-8"))
    alternative.attach(MIMEText(html_body or "", "html", "utf-8"))
    msg.attach(alternative)

    for attachment in attachments:
        msg.attach(_image_part(attachment))

    return msg.as_bytes(policy=msg.policy.clone(linesep="\r\n"))


def linkify_text_to_html(text: str) -> str:
    """Escape ``text`` for HTML, turning safe http(s) URLs into anchors."""
    out: List[str] = []
    last_index = 0
    for match in _URL_IN_TEXT_RE.finditer(text or ""):
        raw = match.group(0)
        out.append(escape_html(text[last_index : match.start()]))
        safe = safe_http_url(raw)
        if safe:
            out.append(f'<a href="{escape_html(safe)}" style="{LINK_STYLE}">{escape_html(raw)}</a>')
        else:
            out.append(escape_html(raw))
        last_index = match.end()
    out.append(escape_html((text or "")[last_index:]))
    return "".join(out).replace("\n", "<br/>")
