"""
Message models for the extraction layer.

RawMessage is what a message source hands us; ExtractedEmail is what the
ContentExtractor produces. Both are immutable once created.
"""
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
from datetime import datetime
from typing import Optional, List


class PayloadFormat(str, Enum):
    """How RawMessage.payload is encoded"""
    MIME = "mime"   # full RFC 822 document (headers + body)
    BODY = "body"   # bare body bytes, described by the encoding metadata fields


class BodySource(str, Enum):
    """Where an extracted body came from"""
    SINGLE_PART = "single_part"
    MULTIPART = "multipart"
    RAW_FALLBACK = "raw_fallback"
    SNIPPET = "snippet"


class RawMessage(BaseModel):
    """A message as fetched from the provider."""
    model_config = ConfigDict(frozen=True)

    message_id: str = Field(..., description="Provider message id (unique per account)")
    conversation_id: Optional[str] = Field(None, description="Provider thread/conversation id")
    account: str = Field("default", description="Account scope the message was fetched for")
    sender: str = Field("", description="Sender address, optionally with display name")
    subject: str = ""
    received_at: datetime
    payload: bytes = b""
    payload_format: PayloadFormat = PayloadFormat.MIME
    content_type: Optional[str] = Field(None, description="Declared content type for BODY payloads")
    transfer_encoding: Optional[str] = Field(None, description="base64, quoted-printable, 7bit, ...")
    charset: Optional[str] = None
    snippet: str = Field("", description="Provider's short summary text")

    @property
    def sender_address(self) -> str:
        """Bare lowercase address from the sender field."""
        sender = self.sender.strip()
        if "<" in sender and ">" in sender:
            sender = sender[sender.rfind("<") + 1:sender.rfind(">")]
        return sender.strip().lower()

    @property
    def sender_domain(self) -> str:
        address = self.sender_address
        return address.split("@", 1)[1] if "@" in address else ""


class ExtractedEmail(BaseModel):
    """Clean plaintext view of one RawMessage."""
    model_config = ConfigDict(frozen=True)

    message_id: str
    conversation_id: Optional[str] = None
    account: str = "default"
    sender: str = ""
    subject: str = ""
    received_at: datetime
    body: str
    source: BodySource
    notes: List[str] = Field(default_factory=list, description="Extraction quality notes")

    @property
    def sender_address(self) -> str:
        sender = self.sender.strip()
        if "<" in sender and ">" in sender:
            sender = sender[sender.rfind("<") + 1:sender.rfind(">")]
        return sender.strip().lower()

    @property
    def sender_domain(self) -> str:
        address = self.sender_address
        return address.split("@", 1)[1] if "@" in address else ""

    @property
    def from_structured_fallback(self) -> bool:
        """True when the body came from HTML/multipart parsing or a raw re-fetch."""
        return self.source in (BodySource.MULTIPART, BodySource.RAW_FALLBACK)
