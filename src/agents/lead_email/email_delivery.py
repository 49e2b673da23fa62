"""Lead email content, rendering and SES delivery.

The body is modelled as an ordered list of ``EmailSection`` values built once
per send and folded into the plain text and HTML alternatives by two
renderers, so both bodies always carry the same sections in the same order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote, urlsplit

from botocore.exceptions import BotoCoreError, ClientError

from src.common.errors import DeliveryError
from src.storage.message_links import (
    LINK_KIND_CUSTOMER,
    MessageLinkStore,
    infer_message_link_base_url,
    with_link_channel,
)

from .attachments import extract_attachments, resolve_inline_attachments
from .config import LeadEmailSettings
from .drafts import OutreachDrafts, build_lead_email_subject, build_outreach_drafts
from .email_mime import build_raw_email, linkify_text_to_html, new_boundaries
from .models import (
    AttachmentRef,
    CustomerContact,
    InlineAttachment,
    LeadRequest,
    LeadSummary,
    Transcript,
    TranscriptLine,
)
from .text_utils import (
    email_to_mailto,
    escape_html,
    extract_customer_contact,
    format_list_text,
    locale_to_language_label,
    mailto_with_draft,
    phone_to_tel_href,
    safe_http_url,
)

logger = logging.getLogger(__name__)

THREAD_LOGS_URL = "https://platform.openai.com/logs/"

DEFAULT_CALL_SCRIPT_PROMPTS = (
    "Can you confirm the year/make/model (or what item we're working on)?",
    "Can you send 2-4 photos (1 wide + 1-2 close-ups) so we can take a proper look?",
    "What's the best way to reach you if we have a quick follow-up question?",
)

ACCENT = "#141cff"
MUTED = "#6b7280"
INK = "#111827"
BORDER = "#e5e7eb"


class SectionKind(Enum):
    ROWS = "rows"
    PARAGRAPH = "paragraph"
    LIST = "list"
    ATTACHMENTS = "attachments"
    ACTIONS = "actions"
    DRAFTS = "drafts"
    TRANSCRIPT = "transcript"


@dataclass(frozen=True)
class Row:
    label: str
    value: str = ""
    href: Optional[str] = None


@dataclass(frozen=True)
class EmailSection:
    kind: SectionKind
    title: str
    rows: Tuple[Row, ...] = ()
    text: str = ""
    items: Tuple[str, ...] = ()
    attachments: Tuple[AttachmentRef, ...] = ()
    lines: Tuple[TranscriptLine, ...] = ()
    empty_text: str = ""


@dataclass
class LeadEmailContent:
    """Everything the section builder needs, resolved up front."""

    request: LeadRequest
    transcript: Transcript
    summary: Optional[LeadSummary]
    contact: CustomerContact
    attachments: List[AttachmentRef]
    drafts: OutreachDrafts
    subject: str
    source_label: str
    page_href: Optional[str] = None
    sms_link: Optional[str] = None
    google_voice_link: Optional[str] = None
    attribution: Optional[Dict[str, Optional[str]]] = None


@dataclass
class DeliveryReceipt:
    message_id: Optional[str]
    subject: str
    attachment_count: int = 0
    inline_count: int = 0
    skipped: Dict[str, str] = field(default_factory=dict)


def format_timestamp(epoch_seconds: int) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S.000Z")


def thread_logs_href(thread_id: str) -> str:
    return f"{THREAD_LOGS_URL}{quote(thread_id, safe='')}"


def call_script_prompts(summary: Optional[LeadSummary]) -> List[str]:
    prompts = [p.strip() for p in (summary.call_script_prompts if summary else []) if p.strip()][:3]
    while len(prompts) < 3:
        prompts.append(DEFAULT_CALL_SCRIPT_PROMPTS[len(prompts)])
    return prompts


def _attribution_rows(attribution: Dict[str, Optional[str]]) -> List[Row]:
    rows = []
    for key, label in (
        ("device_type", "Device"),
        ("gclid", "GCLID"),
        ("gbraid", "GBRAID"),
        ("wbraid", "WBRAID"),
    ):
        if attribution.get(key):
            rows.append(Row(label, attribution[key]))
    utm = " | ".join(
        f"{key}={attribution[key]}"
        for key in ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")
        if attribution.get(key)
    )
    if utm:
        rows.append(Row("UTM", utm))
    for key, label in (
        ("landing_page", "Landing page"),
        ("referrer", "Referrer"),
        ("first_touch_ts", "First touch"),
        ("last_touch_ts", "Last touch"),
    ):
        if attribution.get(key):
            rows.append(Row(label, attribution[key]))
    return rows


def build_lead_sections(content: LeadEmailContent) -> List[EmailSection]:
    """Ordered body sections for one lead email."""
    request = content.request
    summary = content.summary
    phone = content.contact.phone
    email = content.contact.email
    tel_href = phone_to_tel_href(phone) if phone else None
    mail_href = email_to_mailto(email) if email else None
    logs_href = thread_logs_href(request.thread_id)
    language = (summary.customer_language if summary else None) or locale_to_language_label(request.locale)

    sections: List[EmailSection] = []

    glance: List[Row] = []
    if summary and summary.customer_name:
        glance.append(Row("Customer", summary.customer_name))
    if phone:
        glance.append(Row("Phone", phone, tel_href))
    if email:
        glance.append(Row("Email", email, mail_href))
    if summary:
        for label, value in (
            ("Location", summary.customer_location),
            ("Vehicle", summary.vehicle),
            ("Project", summary.project),
            ("Timeline", summary.timeline),
        ):
            if value:
                glance.append(Row(label, value))
    if content.attachments:
        glance.append(Row("Photos", str(len(content.attachments))))
    sections.append(
        EmailSection(
            SectionKind.ROWS,
            "At a glance",
            rows=tuple(glance),
            empty_text="No structured details extracted yet.",
        )
    )

    actions: List[Row] = []
    if tel_href:
        actions.append(Row("Call customer", href=tel_href))
    if content.sms_link:
        actions.append(Row("Send via SMS", href=content.sms_link))
    if content.google_voice_link:
        actions.append(Row("Send via Google Voice", href=content.google_voice_link))
    if mail_href:
        actions.append(Row("Email customer", href=mail_href))
        draft_href = mailto_with_draft(email, content.drafts.email_subject, content.drafts.email_body)
        if draft_href:
            actions.append(Row("Email draft", href=draft_href))
    if content.page_href:
        actions.append(Row("Open page", href=content.page_href))
    actions.append(Row("Conversation logs", href=logs_href))
    sections.append(EmailSection(SectionKind.ACTIONS, "Quick actions", rows=tuple(actions)))

    if content.attribution:
        sections.append(
            EmailSection(SectionKind.ROWS, "Attribution", rows=tuple(_attribution_rows(content.attribution)))
        )

    if content.attachments:
        sections.append(
            EmailSection(
                SectionKind.ATTACHMENTS,
                f"Photos/attachments ({len(content.attachments)})",
                attachments=tuple(content.attachments),
            )
        )

    if summary:
        sections.append(EmailSection(SectionKind.PARAGRAPH, "Summary", text=summary.summary))
        if summary.next_steps:
            sections.append(
                EmailSection(SectionKind.LIST, "Suggested next steps", items=tuple(summary.next_steps))
            )
        if summary.follow_up_questions:
            sections.append(
                EmailSection(
                    SectionKind.LIST, "Follow-up questions", items=tuple(summary.follow_up_questions)
                )
            )

    sections.append(
        EmailSection(SectionKind.LIST, "Call script (3 prompts)", items=tuple(call_script_prompts(summary)))
    )

    drafts: List[Row] = []
    if content.sms_link:
        drafts.append(Row("Send via SMS link", href=content.sms_link))
    if content.google_voice_link:
        drafts.append(Row("Google Voice link", href=content.google_voice_link))
    if phone:
        drafts.append(Row("Text message", content.drafts.sms_draft))
    if email:
        drafts.append(Row("Email subject", content.drafts.email_subject))
        drafts.append(Row("Email draft", content.drafts.email_body))
    sections.append(
        EmailSection(SectionKind.DRAFTS, "Drafts", rows=tuple(drafts), empty_text="No drafts available.")
    )

    sections.append(EmailSection(SectionKind.TRANSCRIPT, "Transcript", lines=tuple(content.transcript.lines)))

    diagnostics: List[Row] = [
        Row("Thread", request.thread_id, logs_href),
        Row("Trigger", request.reason),
        Row("Chat user", content.transcript.thread_user or request.user),
    ]
    if summary and summary.missing_info:
        diagnostics.append(Row("Missing", ", ".join(summary.missing_info)))
    if request.locale:
        diagnostics.append(Row("Locale", request.locale))
    if language:
        diagnostics.append(Row("Language", language))
    if content.page_href:
        diagnostics.append(Row("Page", content.page_href, content.page_href))
    sections.append(EmailSection(SectionKind.ROWS, "Diagnostics", rows=tuple(diagnostics)))

    return sections


def _section_text(section: EmailSection) -> str:
    kind = section.kind
    if kind is SectionKind.ROWS:
        body = "\n".join(f"{row.label}: {row.value}" for row in section.rows)
    elif kind is SectionKind.ACTIONS:
        body = "\n".join(f"{row.label}: {row.href}" for row in section.rows)
    elif kind is SectionKind.PARAGRAPH:
        body = section.text
    elif kind is SectionKind.LIST:
        body = format_list_text(section.items)
    elif kind is SectionKind.ATTACHMENTS:
        body = format_list_text(f"{ref.label}: {ref.url}" for ref in section.attachments)
    elif kind is SectionKind.DRAFTS:
        body = "\n\n".join(f"{row.label}:\n{row.href or row.value}" for row in section.rows)
    else:
        body = "\n\n".join(
            f"[{format_timestamp(line.created_at)}] {line.speaker}: {line.text}" for line in section.lines
        )
    return f"{section.title}\n{body or section.empty_text}".rstrip()


def render_text(sections: Sequence[EmailSection], heading: str) -> str:
    return "\n\n".join([heading] + [_section_text(section) for section in sections])


def _link(href: str, label: str) -> str:
    return f'<a href="{escape_html(href)}" style="color:{ACCENT};text-decoration:none">{escape_html(label)}</a>'


def _muted(text: str) -> str:
    return f'<span style="color:{MUTED};font-size:13px">{escape_html(text)}</span>'


def _rows_html(rows: Sequence[Row]) -> str:
    cells = []
    for row in rows:
        value = _link(row.href, row.value) if row.href else escape_html(row.value)
        cells.append(
            f'<tr><td style="padding:6px 0;color:{MUTED};vertical-align:top;width:140px">'
            f'{escape_html(row.label)}</td><td style="padding:6px 0;color:{INK}">{value}</td></tr>'
        )
    return (
        '<table role="presentation" style="width:100%;border-collapse:collapse;font-size:14px">'
        f'{"".join(cells)}</table>'
    )


def _pre(text: str) -> str:
    return (
        f'<pre style="margin:0;padding:12px;background:#f9fafb;border:1px solid {BORDER};'
        f"border-radius:10px;white-space:pre-wrap;word-break:break-word;font-size:13px;"
        f'line-height:1.4">{escape_html(text)}</pre>'
    )


def _list_html(items: Sequence[str]) -> str:
    lis = "".join(f'<li style="margin:0 0 6px">{escape_html(item)}</li>' for item in items)
    return f'<ul style="margin:0;padding-left:18px;font-size:14px;line-height:1.5">{lis}</ul>'


def _section_html(section: EmailSection, inline_map: Dict[str, InlineAttachment]) -> str:
    kind = section.kind
    if kind is SectionKind.ROWS:
        body = _rows_html(section.rows) if section.rows else _muted(section.empty_text)
    elif kind is SectionKind.ACTIONS:
        body = "".join(
            f'<a href="{escape_html(row.href)}" style="display:inline-block;margin:0 10px 10px 0;'
            f"padding:10px 14px;border:1px solid {BORDER};border-radius:999px;background:#f9fafb;"
            f'color:{INK};text-decoration:none;font-size:13px;line-height:1">{escape_html(row.label)}</a>'
            for row in section.rows
        )
    elif kind is SectionKind.PARAGRAPH:
        body = f'<p style="margin:0;line-height:1.5;color:{INK}">{escape_html(section.text)}</p>'
    elif kind is SectionKind.LIST:
        body = _list_html(section.items)
    elif kind is SectionKind.ATTACHMENTS:
        items = []
        for ref in section.attachments:
            inline = inline_map.get(ref.url)
            preview = ""
            if inline:
                preview = (
                    f'<div style="margin:8px 0 18px"><img src="cid:{escape_html(inline.content_id)}" '
                    f'alt="{escape_html(ref.display_name)}" style="max-width:100%;height:auto;'
                    f'border:1px solid {BORDER};border-radius:8px" /></div>'
                )
            items.append(f'<li style="margin:0 0 8px">{_link(ref.url, ref.label)}{preview}</li>')
        body = f'<ul style="margin:0;padding-left:18px;font-size:13px;line-height:1.5">{"".join(items)}</ul>'
    elif kind is SectionKind.DRAFTS:
        blocks = []
        for row in section.rows:
            inner = _link(row.href, row.label) if row.href else _pre(row.value)
            label = (
                ""
                if row.href
                else '<div style="font-size:13px;font-weight:700;margin:0 0 6px">'
                f"{escape_html(row.label)}</div>"
            )
            blocks.append(f'<div style="margin:0 0 12px">{label}{inner}</div>')
        body = "".join(blocks) or _muted(section.empty_text)
    else:
        entries = []
        for line in section.lines:
            color = INK if line.is_customer else ACCENT
            entries.append(
                f"[{escape_html(format_timestamp(line.created_at))}] "
                f'<strong style="color:{color}">{escape_html(line.speaker)}:</strong> '
                f"{linkify_text_to_html(line.text)}"
            )
        body = (
            f'<div style="font-size:13px;line-height:1.5;color:{INK};white-space:pre-wrap;'
            f'word-break:break-word">{"<br/><br/>".join(entries)}</div>'
        )

    return (
        f'<tr><td style="padding:18px 22px;border-top:1px solid {BORDER}">'
        f'<div style="font-size:14px;font-weight:700;margin:0 0 10px">{escape_html(section.title)}</div>'
        f"{body}</td></tr>"
    )


def render_html(
    sections: Sequence[EmailSection],
    subject: str,
    shop_name: str,
    inline_map: Optional[Dict[str, InlineAttachment]] = None,
) -> str:
    rendered = "\n".join(_section_html(section, inline_map or {}) for section in sections)
    return f"""<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>{escape_html(subject)}</title>
  </head>
  <body style="margin:0;padding:24px;background:#f6f7f9;font-family:system-ui,-apple-system,Segoe UI,Roboto,Helvetica,Arial,sans-serif;color:{INK}">
    <table role="presentation" style="width:100%;max-width:720px;margin:0 auto;border-collapse:separate;border-spacing:0;background:#ffffff;border:1px solid {BORDER};border-radius:14px;overflow:hidden">
      <tr>
        <td style="padding:18px 22px;background:{ACCENT};color:#ffffff">
          <div style="font-size:16px;font-weight:700;line-height:1.2">New chat lead</div>
          <div style="font-size:12px;opacity:.9;margin-top:4px">{escape_html(shop_name)}</div>
        </td>
      </tr>
{rendered}
    </table>
  </body>
</html>"""


class SesTransport:
    """Sends raw MIME messages through SES."""

    def __init__(self, ses_client):
        self.ses_client = ses_client

    def send_raw(self, raw: bytes, source: str, destinations: List[str]) -> Optional[str]:
        try:
            response = self.ses_client.send_raw_email(
                Source=source,
                Destinations=destinations,
                RawMessage={"Data": raw},
            )
        except (ClientError, BotoCoreError) as e:
            raise DeliveryError(f"AWS SES error: {e}") from e
        message_id = response.get("MessageId")
        logger.info(f"Sent lead email. SES MessageId: {message_id}")
        return message_id


def _source_label(page_href: Optional[str], settings: LeadEmailSettings) -> str:
    if page_href:
        host = urlsplit(page_href).netloc
        if host:
            return host
    return settings.site_label or settings.shop_name


def _content_id_domain(from_addr: str) -> str:
    domain = from_addr.rsplit("@", 1)[-1].strip(" >") if "@" in from_addr else ""
    return domain or "lead-email.local"


def send_lead_email(
    transport: SesTransport,
    settings: LeadEmailSettings,
    request: LeadRequest,
    transcript: Transcript,
    summary: Optional[LeadSummary],
    attribution: Optional[Dict[str, Optional[str]]] = None,
    message_links: Optional[MessageLinkStore] = None,
    http_session=None,
    boundaries: Optional[Tuple[str, str]] = None,
) -> DeliveryReceipt:
    """Compose and send the lead email.

    Raises:
        DeliveryError: The transport rejected the message.
    """
    shop = settings.shop
    detected = extract_customer_contact(transcript.lines, shop.phone_digits)
    contact = CustomerContact(
        email=(summary.customer_email if summary else None) or detected.email,
        phone=(summary.customer_phone if summary else None) or detected.phone,
    )
    page_href = safe_http_url(request.page_url) if request.page_url else None
    drafts = build_outreach_drafts(summary, shop)
    subject = build_lead_email_subject(summary, transcript.thread_title)

    sms_link = None
    if contact.phone and message_links is not None:
        sms_link = message_links.create_link(
            request.thread_id,
            LINK_KIND_CUSTOMER,
            contact.phone,
            drafts.sms_draft,
            base_url=infer_message_link_base_url(page_href or "", message_links.base_url),
        )

    refs = extract_attachments(transcript.lines)
    outcomes = resolve_inline_attachments(
        refs,
        max_bytes=settings.inline_attachment_max_bytes,
        total_max_bytes=settings.inline_attachment_total_max_bytes,
        session=http_session,
        timeout=settings.attachment_fetch_timeout_seconds,
        content_id_domain=_content_id_domain(settings.lead_from_email),
    )
    inlined = [outcome.attachment for outcome in outcomes if outcome.ok]

    content = LeadEmailContent(
        request=request,
        transcript=transcript,
        summary=summary,
        contact=contact,
        attachments=refs,
        drafts=drafts,
        subject=subject,
        source_label=_source_label(page_href, settings),
        page_href=page_href,
        sms_link=sms_link,
        google_voice_link=with_link_channel(sms_link, "google_voice") if sms_link else None,
        attribution=attribution,
    )
    sections = build_lead_sections(content)
    text_body = render_text(sections, f"New chat lead from {content.source_label}")
    html_body = render_html(
        sections, subject, shop.name, {attachment.source_url: attachment for attachment in inlined}
    )

    mixed_boundary, alternative_boundary = boundaries or new_boundaries()
    raw = build_raw_email(
        from_addr=settings.lead_from_email,
        to_addr=settings.lead_to_email,
        reply_to=contact.email,
        subject=subject,
        text_body=text_body,
        html_body=html_body,
        attachments=inlined,
        mixed_boundary=mixed_boundary,
        alternative_boundary=alternative_boundary,
    )

    message_id = transport.send_raw(raw, settings.lead_from_email, [settings.lead_to_email])
    return DeliveryReceipt(
        message_id=message_id,
        subject=subject,
        attachment_count=len(refs),
        inline_count=len(inlined),
        skipped={o.ref.url: o.skipped.value for o in outcomes if o.skipped is not None},
    )
