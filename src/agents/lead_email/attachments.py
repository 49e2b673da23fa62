"""Attachment extraction and inlining for lead emails.

Attachments reach the pipeline only as marker rows in transcript text
(``Attachment: <name> (<mime>) <url>``). Parsing is a pure function of the
transcript; fetching is bounded by protocol, type, size and time, and every
failure degrades to a link-only attachment.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional
from urllib.parse import parse_qs, unquote, urlsplit
from uuid import uuid4

import requests

from src.common.errors import ErrorKind

from .models import AttachmentRef, InlineAttachment, InlineOutcome, TranscriptLine
from .text_utils import safe_http_url

logger = logging.getLogger(__name__)

MARKER_PREFIX = "Attachment:"
DEFAULT_IMAGE_MIME = "image/jpeg"
DEFAULT_CONTENT_ID_DOMAIN = "lead-email.local"
MAX_FILENAME_LENGTH = 120
MAX_FETCH_WORKERS = 4
CHUNK_SIZE = 64 * 1024

_URL_RE = re.compile(r"https?://\S+$")
_MIME_RE = re.compile(r"\(([^)]+)\)\s*$")
_STORAGE_KEY_RE = re.compile(r"^[A-Za-z0-9._/-]+$")
_FORBIDDEN_FILENAME_RE = re.compile(r'[<>:"/\\|?*]')
_HAS_EXTENSION_RE = re.compile(r"\.[^.]+$")

_EXTENSIONS = {
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
    "image/gif": ".gif",
}


def _safe_storage_key(value: str) -> Optional[str]:
    candidate = (value or "").strip()
    if candidate and _STORAGE_KEY_RE.match(candidate) and ".." not in candidate:
        return candidate
    return None


def parse_storage_key(url: str) -> Optional[str]:
    """Recover a relative object key from an ``id`` parameter or the last path segment."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return None

    ids = parse_qs(parts.query).get("id")
    if ids and ids[0]:
        key = _safe_storage_key(unquote(ids[0]))
        if key:
            return key

    segments = [segment for segment in parts.path.split("/") if segment]
    if segments:
        return _safe_storage_key(unquote(segments[-1]))
    return None


def _parse_marker(row: str) -> Optional[AttachmentRef]:
    rest = row[len(MARKER_PREFIX):].strip()
    if not rest:
        return None

    url_match = _URL_RE.search(rest)
    if not url_match:
        return None
    url = safe_http_url(url_match.group(0))
    if not url:
        return None
    rest = rest[: url_match.start()].strip()

    mime_type = None
    mime_match = _MIME_RE.search(rest)
    if mime_match:
        mime_type = mime_match.group(1).strip() or None
        rest = rest[: mime_match.start()].strip()

    return AttachmentRef(
        display_name=rest or "attachment",
        mime_type=mime_type,
        url=url,
        storage_key=parse_storage_key(url),
    )


def extract_attachments(lines: Iterable[TranscriptLine]) -> List[AttachmentRef]:
    """Parse attachment markers, dropping unsafe URLs and duplicates."""
    seen = set()
    refs: List[AttachmentRef] = []
    for line in lines:
        for row in (line.text or "").split("\n"):
            if not row.startswith(MARKER_PREFIX):
                continue
            ref = _parse_marker(row)
            if ref is None or ref.url in seen:
                continue
            seen.add(ref.url)
            refs.append(ref)
    return refs


def _normalize_mime(value: Optional[str]) -> str:
    return (value or "").split(";")[0].strip().lower()


def sanitize_filename(name: str, mime_type: str) -> str:
    normalized = (name or "").strip() or "attachment"
    safe = _FORBIDDEN_FILENAME_RE.sub("_", normalized)[:MAX_FILENAME_LENGTH]
    if _HAS_EXTENSION_RE.search(safe):
        return safe
    return f"{safe}{_EXTENSIONS.get(mime_type, '.jpg')}"


def _skip(ref: AttachmentRef, kind: ErrorKind, detail: str = "") -> InlineOutcome:
    logger.info(f"Attachment {ref.display_name!r} not inlined: {kind.value} {detail}".rstrip())
    return InlineOutcome(ref=ref, skipped=kind)


def fetch_inline_attachment(
    ref: AttachmentRef,
    max_bytes: int,
    session: Optional[requests.Session] = None,
    timeout: float = 8.0,
    content_id_domain: str = DEFAULT_CONTENT_ID_DOMAIN,
) -> InlineOutcome:
    """Fetch one attachment for inlining. Never raises."""
    url = safe_http_url(ref.url)
    if not url:
        return _skip(ref, ErrorKind.UNSAFE_URL)

    stated = _normalize_mime(ref.mime_type)
    if stated and not stated.startswith("image/"):
        return _skip(ref, ErrorKind.UNSUPPORTED_TYPE, stated)

    http = session or requests
    try:
        with http.get(url, timeout=timeout, stream=True, allow_redirects=False) as response:
            if not 200 <= response.status_code < 300:
                return _skip(ref, ErrorKind.FETCH_FAILED, f"HTTP {response.status_code}")

            mime_type = stated or _normalize_mime(response.headers.get("Content-Type")) or DEFAULT_IMAGE_MIME
            if not mime_type.startswith("image/"):
                return _skip(ref, ErrorKind.UNSUPPORTED_TYPE, mime_type)

            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                return _skip(ref, ErrorKind.TOO_LARGE, f"{declared} bytes")

            chunks = []
            received = 0
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                received += len(chunk)
                if received > max_bytes:
                    return _skip(ref, ErrorKind.TOO_LARGE, f">{max_bytes} bytes")
                chunks.append(chunk)
    except requests.exceptions.RequestException as e:
        return _skip(ref, ErrorKind.FETCH_FAILED, e.__class__.__name__)

    data = b"".join(chunks)
    if not data:
        return _skip(ref, ErrorKind.EMPTY)

    return InlineOutcome(
        ref=ref,
        attachment=InlineAttachment(
            content_id=f"attachment-{uuid4()}@{content_id_domain}",
            filename=sanitize_filename(ref.display_name, mime_type),
            mime_type=mime_type,
            data=data,
            source_url=url,
        ),
    )


def resolve_inline_attachments(
    refs: List[AttachmentRef],
    max_bytes: int,
    total_max_bytes: int,
    session: Optional[requests.Session] = None,
    timeout: float = 8.0,
    content_id_domain: str = DEFAULT_CONTENT_ID_DOMAIN,
    max_workers: int = MAX_FETCH_WORKERS,
) -> List[InlineOutcome]:
    """Fetch all attachments concurrently and apply the total inline budget.

    Returns one outcome per reference, in reference order. All fetches complete
    before this returns.
    """
    if not refs:
        return []

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(refs)))) as executor:
        futures = [
            executor.submit(
                fetch_inline_attachment, ref, max_bytes, session, timeout, content_id_domain
            )
            for ref in refs
        ]
        fetched = [future.result() for future in futures]

    outcomes: List[InlineOutcome] = []
    used = 0
    for outcome in fetched:
        if outcome.ok:
            size = len(outcome.attachment.data)
            if used + size > total_max_bytes:
                outcome = _skip(outcome.ref, ErrorKind.OVER_BUDGET, f"{size} bytes")
            else:
                used += size
        outcomes.append(outcome)

    inlined = sum(1 for outcome in outcomes if outcome.ok)
    logger.info(f"Inlined {inlined}/{len(refs)} attachments ({used} bytes)")
    return outcomes
