"""Lead readiness summarizer backed by Bedrock."""

import json
import logging
import re
from typing import Any, List, Optional

from src.common.bedrock_client import BedrockError, BedrockResponseError
from src.common.errors import ErrorKind, SummaryError

from .models import HANDOFF_REASONS, LeadSummary, ShopProfile, Transcript
from .text_utils import is_plausible_email, is_plausible_phone, trim_transcript_for_model
from .transcript import format_transcript

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 16_000
MAX_OUTPUT_TOKENS = 700

LIST_LIMITS = {
    "next_steps": 6,
    "follow_up_questions": 6,
    "call_script_prompts": 3,
    "missing_info": 8,
}

NULLABLE_FIELDS = (
    "customer_name",
    "customer_location",
    "customer_language",
    "vehicle",
    "project",
    "timeline",
    "outreach_message",
)

LEAD_SUMMARY_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "customer_name": {"type": ["string", "null"]},
        "customer_phone": {"type": ["string", "null"]},
        "customer_email": {"type": ["string", "null"]},
        "customer_location": {"type": ["string", "null"]},
        "customer_language": {"type": ["string", "null"]},
        "vehicle": {"type": ["string", "null"]},
        "project": {"type": ["string", "null"]},
        "timeline": {"type": ["string", "null"]},
        "handoff_ready": {"type": "boolean"},
        "handoff_reason": {"type": "string", "enum": list(HANDOFF_REASONS)},
        "summary": {"type": "string"},
        "next_steps": {"type": "array", "items": {"type": "string"}, "maxItems": 6},
        "follow_up_questions": {"type": "array", "items": {"type": "string"}, "maxItems": 6},
        "call_script_prompts": {"type": "array", "items": {"type": "string"}, "maxItems": 3},
        "outreach_message": {"type": ["string", "null"]},
        "missing_info": {"type": "array", "items": {"type": "string"}, "maxItems": 8},
    },
    "required": [
        "customer_name",
        "customer_phone",
        "customer_email",
        "customer_location",
        "customer_language",
        "vehicle",
        "project",
        "timeline",
        "handoff_ready",
        "handoff_reason",
        "summary",
        "next_steps",
        "follow_up_questions",
        "call_script_prompts",
        "outreach_message",
        "missing_info",
    ],
}


def _clean_json_response(text: Optional[str]) -> str:
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned, flags=re.IGNORECASE)
        cleaned = re.sub(r"\s*```$", "", cleaned)
    return cleaned.strip()


def _string_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _string_list(value: Any, limit: int) -> List[str]:
    if not isinstance(value, list):
        return []
    items = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return items[:limit]


def _normalize_handoff_reason(value: Any, handoff_ready: bool) -> str:
    reason = value.strip().lower() if isinstance(value, str) else ""
    if reason in HANDOFF_REASONS:
        return reason
    return "ready_for_follow_up" if handoff_ready else "not_ready"


def sanitize_lead_summary(payload: Any) -> Optional[LeadSummary]:
    """Validate raw model output. Anything implausible is dropped to None."""
    if not isinstance(payload, dict):
        return None

    summary_text = _string_or_none(payload.get("summary"))
    if not summary_text:
        return None

    handoff_ready = payload.get("handoff_ready")
    if not isinstance(handoff_ready, bool):
        handoff_ready = False

    email = _string_or_none(payload.get("customer_email"))
    phone = _string_or_none(payload.get("customer_phone"))

    fields = {name: _string_or_none(payload.get(name)) for name in NULLABLE_FIELDS}
    lists = {name: _string_list(payload.get(name), limit) for name, limit in LIST_LIMITS.items()}

    return LeadSummary(
        summary=summary_text,
        handoff_ready=handoff_ready,
        handoff_reason=_normalize_handoff_reason(payload.get("handoff_reason"), handoff_ready),
        customer_email=email if email and is_plausible_email(email) else None,
        customer_phone=phone if phone and is_plausible_phone(phone) else None,
        **fields,
        **lists,
    )


def build_instructions(shop: ShopProfile) -> str:
    phone_clause = f" and include the shop phone {shop.phone_display}" if shop.phone_display else ""
    return "\n".join(
        [
            "You format internal lead emails for a small service shop. "
            "Extract details from the customer's chat transcript.",
            "",
            "Rules:",
            "Only use information that is explicitly present in the transcript. "
            "If something is missing, use null (or empty lists). Do not guess.",
            "handoff_ready should be true only when the conversation has reached minimum lead quality:",
            "- At least one contact method is present (customer_phone or customer_email).",
            "- The customer has described what they need (project is present or an explicit request is present).",
            "- There is enough context for follow-up (vehicle make/model or item type is present).",
            "If any of these are missing, set handoff_ready to false.",
            "handoff_reason must be one of: "
            + ", ".join(f'"{reason}"' for reason in HANDOFF_REASONS)
            + ".",
            "If handoff_ready is false, include any missing items in missing_info using short labels.",
            "Write the summary and next steps in English.",
            "customer_language should reflect the language the customer is using. "
            "If unclear, use the provided locale.",
            "call_script_prompts must be exactly 3 short questions the shop can ask to move the lead "
            "forward (prioritize missing info). Do not repeat questions already answered.",
            "follow_up_questions must only include questions that are NOT already answered in the transcript.",
            f"outreach_message should be one short paragraph in customer_language that the shop can send. "
            f"It must mention {shop.name}{phone_clause}. Keep it friendly, no prices, "
            "and ask for photos when helpful.",
            "Do not mention prices or quotes. Do not invent shop hours or policies.",
            "Keep next_steps and follow_up_questions short and actionable (one sentence each).",
            "",
            "Respond with a single JSON object matching this schema and nothing else:",
            json.dumps(LEAD_SUMMARY_SCHEMA, separators=(",", ":")),
        ]
    )


class LeadSummarizer:
    """Produces a sanitized ``LeadSummary`` for a transcript."""

    def __init__(
        self,
        bedrock_client,
        max_transcript_chars: int = MAX_TRANSCRIPT_CHARS,
        max_tokens: int = MAX_OUTPUT_TOKENS,
    ):
        self.bedrock_client = bedrock_client
        self.max_transcript_chars = max_transcript_chars
        self.max_tokens = max_tokens

    def build_prompt(self, transcript: Transcript, locale: str, page_url: str) -> str:
        transcript_text = trim_transcript_for_model(
            format_transcript(transcript.lines), self.max_transcript_chars
        )
        parts = [f"Locale: {locale or 'unknown'}"]
        if page_url:
            parts.append(f"Page: {page_url}")
        parts.extend(["", "Transcript:", transcript_text])
        return "\n".join(parts)

    def generate(
        self, transcript: Transcript, locale: str, page_url: str, shop: ShopProfile
    ) -> Optional[LeadSummary]:
        """Summarize the conversation.

        Unusable model output fails closed and yields None.

        Raises:
            SummaryError: With kind ``SUMMARY_UNAVAILABLE`` when the model call fails.
        """
        prompt = self.build_prompt(transcript, locale, page_url)
        try:
            response = self.bedrock_client.simple_invoke(
                prompt,
                max_tokens=self.max_tokens,
                temperature=0.0,
                system=build_instructions(shop),
            )
        except BedrockResponseError as e:
            logger.error(f"Lead summary response unreadable: {e}")
            return None
        except BedrockError as e:
            raise SummaryError(
                f"Lead summary generation failed: {e.__class__.__name__}: {e}",
                kind=ErrorKind.SUMMARY_UNAVAILABLE,
            ) from e

        try:
            return parse_lead_summary(response)
        except SummaryError as e:
            logger.error(f"Lead summary unusable: {e}")
            return None


def parse_lead_summary(response: Optional[str]) -> LeadSummary:
    """Parse and sanitize a raw model response.

    Raises:
        SummaryError: The response is not JSON or fails validation.
    """
    try:
        payload = json.loads(_clean_json_response(response))
    except json.JSONDecodeError as e:
        raise SummaryError(f"Invalid JSON from summarizer: {e}") from e
    summary = sanitize_lead_summary(payload)
    if summary is None:
        raise SummaryError("Summarizer output failed validation")
    return summary
