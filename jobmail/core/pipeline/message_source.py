"""
Message sources.

A MessageSource hands the pipeline RawMessages for an account and can re-fetch
the full RFC 822 bytes of a single message for truncation recovery.
"""
import asyncio
import email
import mailbox
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email import policy
from email.utils import parsedate_to_datetime
from typing import Dict, Iterable, List, Optional, Tuple
import logging

from jobmail.core.email.models import PayloadFormat, RawMessage

logger = logging.getLogger(__name__)

DateRange = Tuple[Optional[datetime], Optional[datetime]]


class MessageSource(ABC):
    """Provider of raw messages for one account."""

    account: str = "default"

    @abstractmethod
    async def fetch_messages(
        self,
        query: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> List[RawMessage]:
        """
        Fetch messages matching an optional query and received-date range.

        Args:
            query: Case-insensitive text matched against subject and sender
            date_range: (since, until), either bound may be None

        Returns:
            Messages ordered by received time
        """
        pass

    @abstractmethod
    async def fetch_raw_format(self, message_id: str) -> bytes:
        """Full RFC 822 bytes for one message. Raises LookupError if unknown."""
        pass


def _matches(message: RawMessage, query: Optional[str], date_range: Optional[DateRange]) -> bool:
    if query:
        needle = query.lower()
        if needle not in message.subject.lower() and needle not in message.sender.lower():
            return False
    if date_range:
        since, until = date_range
        if since and message.received_at < since:
            return False
        if until and message.received_at > until:
            return False
    return True


class StaticMessageSource(MessageSource):
    """In-memory source over a fixed list of messages."""

    def __init__(
        self,
        messages: Iterable[RawMessage],
        raw_formats: Optional[Dict[str, bytes]] = None,
        account: str = "default",
    ):
        self.messages = list(messages)
        self.raw_formats = dict(raw_formats or {})
        self.account = account
        self.raw_fetches: List[str] = []

    async def fetch_messages(self, query=None, date_range=None) -> List[RawMessage]:
        selected = [m for m in self.messages if _matches(m, query, date_range)]
        return sorted(selected, key=lambda m: m.received_at)

    async def fetch_raw_format(self, message_id: str) -> bytes:
        self.raw_fetches.append(message_id)
        if message_id in self.raw_formats:
            return self.raw_formats[message_id]
        for message in self.messages:
            if message.message_id == message_id and message.payload_format == PayloadFormat.MIME:
                return message.payload
        raise LookupError(f"No raw format for message {message_id}")


class MboxMessageSource(MessageSource):
    """
    Local mbox export (e.g. Google Takeout).

    Conversation ids come from X-GM-THRID when present, otherwise from the
    root of the References chain, In-Reply-To, or the message's own id.
    """

    def __init__(self, path: str, account: str = "default"):
        self.path = path
        self.account = account
        self._raw: Dict[str, bytes] = {}

    async def fetch_messages(self, query=None, date_range=None) -> List[RawMessage]:
        messages = await asyncio.to_thread(self._load)
        selected = [m for m in messages if _matches(m, query, date_range)]
        logger.info(f"Loaded {len(messages)} messages from {self.path}, {len(selected)} selected")
        return sorted(selected, key=lambda m: m.received_at)

    async def fetch_raw_format(self, message_id: str) -> bytes:
        if not self._raw:
            await asyncio.to_thread(self._load)
        try:
            return self._raw[message_id]
        except KeyError:
            raise LookupError(f"Message {message_id} not found in {self.path}")

    def _load(self) -> List[RawMessage]:
        box = mailbox.mbox(self.path, create=False)
        messages = []
        try:
            for key in box.iterkeys():
                data = box.get_bytes(key)
                raw = self._to_raw_message(data, key)
                if raw is None:
                    continue
                self._raw[raw.message_id] = data
                messages.append(raw)
        finally:
            box.close()
        return messages

    def _to_raw_message(self, data: bytes, key) -> Optional[RawMessage]:
        try:
            msg = email.message_from_bytes(data, policy=policy.default)
        except Exception as e:
            logger.warning(f"Skipping unparseable mbox entry {key}: {e}")
            return None

        message_id = str(msg.get("Message-ID") or f"<mbox-{key}>").strip()
        return RawMessage(
            message_id=message_id,
            conversation_id=self._conversation_id(msg, message_id),
            account=self.account,
            sender=str(msg.get("From", "")),
            subject=str(msg.get("Subject", "")),
            received_at=self._parse_date_safe(msg.get("Date"), message_id),
            payload=data,
            payload_format=PayloadFormat.MIME,
        )

    @staticmethod
    def _conversation_id(msg, message_id: str) -> str:
        gmail_thread = msg.get("X-GM-THRID")
        if gmail_thread:
            return str(gmail_thread).strip()
        references = str(msg.get("References", "")).split()
        if references:
            return references[0]
        in_reply_to = msg.get("In-Reply-To")
        if in_reply_to:
            return str(in_reply_to).strip()
        return message_id

    @staticmethod
    def _parse_date_safe(date_str: Optional[str], message_id: str) -> datetime:
        if not date_str:
            logger.debug(f"Message {message_id}: no date header, using current time")
            return datetime.now(timezone.utc)
        try:
            parsed = parsedate_to_datetime(str(date_str))
        except (TypeError, ValueError) as e:
            logger.warning(f"Message {message_id}: unparseable date {date_str!r}: {e}")
            return datetime.now(timezone.utc)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
