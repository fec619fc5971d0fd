"""
Payloads carried on the email Kafka topics
"""

import base64
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SendJob(BaseModel):
    """A request to deliver one stored outbound email (topic email-send)"""
    email_id: int
    message_id: str
    attempt: int = 0
    enqueued_at: datetime = Field(default_factory=_now)


class ReceiveJob(BaseModel):
    """A raw message to file into local mailboxes (topic email-receive)"""
    raw: str  # base64 of the RFC 5322 bytes
    recipients: List[str]
    source: str = "smtp"  # 'smtp', 'local'
    received_at: datetime = Field(default_factory=_now)

    @classmethod
    def from_bytes(cls, raw: bytes, recipients: List[str], source: str = "smtp") -> "ReceiveJob":
        return cls(raw=base64.b64encode(raw).decode("ascii"), recipients=recipients, source=source)

    def raw_bytes(self) -> bytes:
        return base64.b64decode(self.raw)


class DeadLetter(BaseModel):
    """A job that could not be processed (topic email-send-dlq)"""
    topic: str
    payload: dict
    error: str
    email_id: Optional[int] = None
    failed_at: datetime = Field(default_factory=_now)
