"""
Content extraction for provider message payloads.

Turns a RawMessage into a clean plaintext ExtractedEmail:
1. Single-part payloads are decoded directly (base64 / quoted-printable, charset fallbacks)
2. Multipart payloads are walked recursively; the longest text/plain part wins,
   HTML is stripped to text only when no usable plain part exists
3. Known truncating providers get a second chance from the raw RFC 822 format
4. Leftover quoted-printable escapes and HTML entities are decoded
5. The provider snippet is the last resort before NoReadableContent
"""
import base64
import binascii
import email
import html
import quopri
import re
from email import policy
from email.message import Message
from typing import List, Optional, Tuple, TYPE_CHECKING
import logging

from bs4 import BeautifulSoup
from markdownify import markdownify

from jobmail.core.errors import NoReadableContent
from jobmail.core.ai.config_constants import MIN_PART_LENGTH, TRUNCATION_MIN_BODY_CHARS
from jobmail.core.ai.config_loader import DEFAULT_TRUNCATING_SENDER_DOMAINS
from .models import RawMessage, ExtractedEmail, BodySource, PayloadFormat
from .job_signals import count_decision_indicators, has_decision_phrasing

if TYPE_CHECKING:
    from jobmail.core.ai.config_loader import PipelineConfig
    from jobmail.core.pipeline.message_source import MessageSource

logger = logging.getLogger(__name__)

_QP_ESCAPE = re.compile(r"=[0-9A-F]{2}")
_QP_SOFT_BREAK = re.compile(r"=\r?\n")

# Map common unknown/non-standard encodings to known ones
_ENCODING_MAP = {
    'x-unknown': 'utf-8',
    'unknown-8bit': 'utf-8',
    'x-euc-jp': 'euc-jp',
    'x-sjis': 'shift-jis',
    'x-gb2312': 'gb2312',
    'x-big5': 'big5',
}


class ContentExtractor:
    """Multi-layered, failure-tolerant body extraction"""

    def __init__(
        self,
        min_part_length: int = MIN_PART_LENGTH,
        truncation_min_body_chars: int = TRUNCATION_MIN_BODY_CHARS,
        truncating_sender_domains: Optional[List[str]] = None,
    ):
        """
        Args:
            min_part_length: Parts shorter than this (after stripping) are noise
            truncation_min_body_chars: Bodies shorter than this may be truncated
            truncating_sender_domains: Sender domains whose summaries cut off content
        """
        self.min_part_length = min_part_length
        self.truncation_min_body_chars = truncation_min_body_chars
        self.truncating_sender_domains = [
            d.lower() for d in (truncating_sender_domains or DEFAULT_TRUNCATING_SENDER_DOMAINS)
        ]
        self.markdown_options = {
            'heading_style': 'ATX',
            'bullets': '-',
            'strip': ['script', 'style', 'a', 'img'],
        }

    @classmethod
    def from_config(cls, config: "PipelineConfig") -> "ContentExtractor":
        return cls(
            min_part_length=config.min_part_length,
            truncation_min_body_chars=config.truncation_min_body_chars,
            truncating_sender_domains=config.truncating_sender_domains,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def extract(self, raw: RawMessage) -> ExtractedEmail:
        """
        Extract plaintext from a message without any network access.

        Raises:
            NoReadableContent: If neither the payload nor the snippet has text
        """
        notes: List[str] = []
        body, source = self._extract_payload(raw, notes)

        if not body:
            snippet = self._normalize_text(html.unescape(raw.snippet or ""))
            if not snippet:
                raise NoReadableContent(raw.message_id)
            logger.debug(f"Message {raw.message_id}: no readable parts, using snippet")
            notes.append("snippet_fallback")
            body, source = snippet, BodySource.SNIPPET

        return self._build(raw, body, source, notes)

    async def extract_with_recovery(
        self,
        raw: RawMessage,
        source: Optional["MessageSource"] = None,
    ) -> ExtractedEmail:
        """
        Extract, then re-fetch the raw format when the summary looks truncated.

        The raw candidate replaces the summary only if it carries more decision
        phrasing (ties go to the longer text).
        """
        extracted = self.extract(raw)
        if source is None or not self.needs_recovery(raw, extracted):
            return extracted

        logger.info(
            f"Message {raw.message_id}: body is {len(extracted.body)} chars from "
            f"{raw.sender_domain}, fetching raw format"
        )
        try:
            raw_bytes = await source.fetch_raw_format(raw.message_id)
        except Exception as e:
            logger.warning(f"Message {raw.message_id}: raw format fetch failed: {e}")
            return self._build(raw, extracted.body, extracted.source, extracted.notes + ["raw_fetch_failed"])

        notes = list(extracted.notes)
        recovered, _ = self._extract_mime(raw_bytes, raw.message_id, notes)
        if not recovered:
            notes.append("raw_format_empty")
            return self._build(raw, extracted.body, extracted.source, notes)

        if self.prefer_recovered(extracted.body, recovered):
            notes.append("raw_format_selected")
            return self._build(raw, recovered, BodySource.RAW_FALLBACK, notes)

        notes.append("raw_format_rejected")
        return self._build(raw, extracted.body, extracted.source, notes)

    def needs_recovery(self, raw: RawMessage, extracted: ExtractedEmail) -> bool:
        """Known truncating sender, implausibly short body, decision-like subject."""
        if len(extracted.body) >= self.truncation_min_body_chars:
            return False
        if not self._is_truncating_sender(raw.sender_domain):
            return False
        return has_decision_phrasing(raw.subject)

    @staticmethod
    def prefer_recovered(primary: str, recovered: str) -> bool:
        """Quality over length: more decision indicators wins, then length."""
        primary_score = count_decision_indicators(primary)
        recovered_score = count_decision_indicators(recovered)
        if recovered_score != primary_score:
            return recovered_score > primary_score
        return len(recovered) > len(primary)

    # ------------------------------------------------------------------
    # Payload handling
    # ------------------------------------------------------------------

    def _extract_payload(self, raw: RawMessage, notes: List[str]) -> Tuple[Optional[str], BodySource]:
        if not raw.payload:
            notes.append("empty_payload")
            return None, BodySource.SINGLE_PART

        if raw.payload_format == PayloadFormat.BODY:
            return self._extract_bare_body(raw, notes), BodySource.SINGLE_PART

        return self._extract_mime(raw.payload, raw.message_id, notes)

    def _extract_bare_body(self, raw: RawMessage, notes: List[str]) -> Optional[str]:
        encoding = (raw.transfer_encoding or "").lower()
        payload = raw.payload
        if encoding == "base64":
            try:
                payload = base64.b64decode(payload, validate=False)
            except (binascii.Error, ValueError) as e:
                logger.debug(f"Message {raw.message_id}: invalid base64 body: {e}")
                notes.append("invalid_base64")
        elif encoding == "quoted-printable":
            payload = quopri.decodestring(payload)

        text = self._decode_body_safe(payload, raw.charset or "utf-8", raw.message_id)
        if (raw.content_type or "").lower() == "text/html":
            text = self._html_to_text(text)
        text = self._normalize_text(text)
        return text or None

    def _extract_mime(self, data: bytes, message_id: str, notes: List[str]) -> Tuple[Optional[str], BodySource]:
        msg = email.message_from_bytes(data, policy=policy.default)

        if not msg.is_multipart():
            text = self._decode_part(msg, message_id)
            if text and msg.get_content_type() == "text/html":
                text = self._html_to_text(text)
            text = self._normalize_text(text or "")
            return (text or None), BodySource.SINGLE_PART

        plain_parts, html_parts = self._collect_parts(msg, message_id, notes)
        if plain_parts:
            return max(plain_parts, key=len), BodySource.MULTIPART
        if html_parts:
            notes.append("html_only")
            return max(html_parts, key=len), BodySource.MULTIPART
        return None, BodySource.MULTIPART

    def _collect_parts(self, msg: Message, message_id: str, notes: List[str]) -> Tuple[List[str], List[str]]:
        """Walk every leaf part, returning usable plain and HTML texts."""
        plain_parts: List[str] = []
        html_parts: List[str] = []

        for part in msg.walk():
            if part.is_multipart():
                continue
            disposition = str(part.get('Content-Disposition', '')).lower()
            if 'attachment' in disposition:
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue

            text = self._decode_part(part, message_id)
            if not text:
                continue
            if content_type == "text/html":
                text = self._html_to_text(text)
            text = self._normalize_text(text)

            if len(text) < self.min_part_length:
                logger.debug(f"Message {message_id}: ignoring {content_type} part of {len(text)} chars")
                notes.append("noise_part_skipped")
                continue

            (plain_parts if content_type == "text/plain" else html_parts).append(text)

        return plain_parts, html_parts

    def _decode_part(self, part: Message, message_id: str) -> Optional[str]:
        payload = part.get_payload(decode=True)
        if not payload:
            return None
        charset = part.get_content_charset() or 'utf-8'
        return self._decode_body_safe(payload, charset, message_id)

    def _decode_body_safe(self, payload: bytes, charset: str, message_id: str) -> str:
        """Decode with fallbacks for unknown/invalid encodings."""
        charset = _ENCODING_MAP.get(charset.lower(), charset)
        try:
            return payload.decode(charset, errors='replace')
        except LookupError as e:
            logger.debug(f"Message {message_id}: unknown charset '{charset}': {e}, trying fallbacks")
        for fallback in ('utf-8', 'latin-1', 'cp1252'):
            try:
                return payload.decode(fallback)
            except UnicodeDecodeError:
                continue
        return payload.decode('utf-8', errors='replace')

    # ------------------------------------------------------------------
    # Text cleanup
    # ------------------------------------------------------------------

    def _html_to_text(self, markup: str) -> str:
        if not markup:
            return ""
        soup = BeautifulSoup(markup, 'html.parser')
        for tag in soup(["script", "style", "head"]):
            tag.decompose()
        for tag in soup.find_all(['img'], {'width': '1', 'height': '1'}):
            tag.decompose()
        try:
            text = markdownify(str(soup), **self.markdown_options)
        except Exception as e:
            logger.warning(f"Failed to convert HTML to text: {e}")
            text = soup.get_text("\n")
        return text

    def _normalize_text(self, text: str) -> str:
        if not text:
            return ""
        if _QP_SOFT_BREAK.search(text) or len(_QP_ESCAPE.findall(text)) >= 2:
            text = quopri.decodestring(text.encode('utf-8', errors='replace')).decode('utf-8', errors='replace')
        text = html.unescape(text)
        text = text.replace('\r\n', '\n').replace('\xa0', ' ')
        text = re.sub(r'[ \t]+\n', '\n', text)
        text = re.sub(r'[ \t]{2,}', ' ', text)
        text = re.sub(r'\n{3,}', '\n\n', text)
        return text.strip()

    def _is_truncating_sender(self, domain: str) -> bool:
        domain = (domain or "").lower()
        return any(domain == d or domain.endswith("." + d) for d in self.truncating_sender_domains)

    @staticmethod
    def _build(raw: RawMessage, body: str, source: BodySource, notes: List[str]) -> ExtractedEmail:
        return ExtractedEmail(
            message_id=raw.message_id,
            conversation_id=raw.conversation_id,
            account=raw.account,
            sender=raw.sender,
            subject=raw.subject,
            received_at=raw.received_at,
            body=body,
            source=source,
            notes=list(notes),
        )
