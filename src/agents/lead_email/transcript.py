"""Conversation transcript retrieval from the hosted ChatKit threads API."""

import logging
from typing import Any, Dict, List, Optional

import requests

from src.common.errors import TranscriptError

from .models import CUSTOMER_SPEAKER, Transcript, TranscriptLine
from .text_utils import normalize_whitespace

logger = logging.getLogger(__name__)

CHATKIT_API_BASE = "https://api.openai.com/v1/chatkit"
PAGE_SIZE = 100
MAX_PAGES = 20

USER_MESSAGE = "chatkit.user_message"
ASSISTANT_MESSAGE = "chatkit.assistant_message"


class ChatKitThreadsClient:
    """Minimal client for the ChatKit threads endpoints."""

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        base_url: str = CHATKIT_API_BASE,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or self._create_session(api_key)

    @staticmethod
    def _create_session(api_key: str) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "OpenAI-Beta": "chatkit_beta=v1",
                "Accept": "application/json",
            }
        )
        return session

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as e:
            raise TranscriptError(f"ChatKit request failed for {path}: {e}") from e
        except ValueError as e:
            raise TranscriptError(f"ChatKit returned invalid JSON for {path}") from e
        if not isinstance(payload, dict):
            raise TranscriptError(f"ChatKit returned unexpected payload for {path}")
        return payload

    def retrieve_thread(self, thread_id: str) -> Dict[str, Any]:
        return self._get(f"/threads/{thread_id}")

    def list_items(
        self, thread_id: str, after: Optional[str] = None, limit: int = PAGE_SIZE
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"order": "asc", "limit": limit}
        if after:
            params["after"] = after
        return self._get(f"/threads/{thread_id}/items", params=params)


def _content_text(item: Dict[str, Any]) -> str:
    parts = item.get("content")
    if not isinstance(parts, list):
        return ""
    texts = [
        part["text"]
        for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str) and part["text"]
    ]
    return "\n".join(texts)


def _attachment_marker(attachment: Any) -> str:
    attachment = attachment if isinstance(attachment, dict) else {}
    name = attachment.get("name") if isinstance(attachment.get("name"), str) else "attachment"
    mime = attachment.get("mime_type") if isinstance(attachment.get("mime_type"), str) else ""
    url = attachment.get("preview_url") if isinstance(attachment.get("preview_url"), str) else ""
    marker = f"Attachment: {name}"
    if mime:
        marker += f" ({mime})"
    if url:
        marker += f" {url}"
    return marker


def _created_at(item: Dict[str, Any]) -> int:
    value = item.get("created_at")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def normalize_items(items: List[Any], assistant_name: str = "Assistant") -> List[TranscriptLine]:
    """Turn raw thread items into transcript lines, dropping empty ones."""
    speaker_for_assistant = (assistant_name or "").strip() or "Assistant"
    lines: List[TranscriptLine] = []

    for item in items:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")

        if item_type == USER_MESSAGE:
            attachments = item.get("attachments")
            markers = [_attachment_marker(a) for a in attachments] if isinstance(attachments, list) else []
            text = normalize_whitespace("\n".join(p for p in [_content_text(item), *markers] if p))
            speaker = CUSTOMER_SPEAKER
        elif item_type == ASSISTANT_MESSAGE:
            text = normalize_whitespace(_content_text(item))
            speaker = speaker_for_assistant
        else:
            continue

        if text:
            lines.append(TranscriptLine(created_at=_created_at(item), speaker=speaker, text=text))

    return lines


def build_transcript(
    client: ChatKitThreadsClient, thread_id: str, assistant_name: str = "Assistant"
) -> Transcript:
    """Fetch a thread and all of its items (bounded) and normalize them.

    Raises:
        TranscriptError: The conversation API failed or returned garbage.
    """
    thread = client.retrieve_thread(thread_id)

    items: List[Any] = []
    after: Optional[str] = None
    for page_number in range(MAX_PAGES):
        page = client.list_items(thread_id, after=after, limit=PAGE_SIZE)
        data = page.get("data")
        if isinstance(data, list):
            items.extend(data)

        if not page.get("has_more"):
            break
        after = page.get("last_id") or after
        if not after:
            break
    else:
        logger.warning(f"[{thread_id}] Stopped paging after {MAX_PAGES} pages")

    lines = normalize_items(items, assistant_name)
    logger.info(f"[{thread_id}] Transcript built: {len(items)} items, {len(lines)} lines")

    title = thread.get("title")
    user = thread.get("user")
    return Transcript(
        thread_title=title if isinstance(title, str) and title.strip() else None,
        thread_user=user if isinstance(user, str) and user else "unknown",
        lines=lines,
    )


def format_transcript(lines: List[TranscriptLine]) -> str:
    """Plain text rendering used for the model prompt."""
    return "\n\n".join(f"{line.speaker}: {line.text}" for line in lines)
