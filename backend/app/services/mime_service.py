"""
RFC 5322 message building (outbound) and parsing (inbound).
"""

import email.utils
import hashlib
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import List, Optional, Tuple

from config.settings import settings
from ..exceptions import InvalidRequestError
from ..models.email import Email

logger = logging.getLogger(__name__)


def make_message_id(domain: Optional[str] = None) -> str:
    return f"<{uuid.uuid4().hex}@{domain or settings.MAIL_DOMAIN}>"


def split_address(address: str) -> Tuple[str, str]:
    """Return (local part, lowercased domain)"""
    local, _, domain = address.rpartition("@")
    return local, domain.lower()


def is_local_address(address: str) -> bool:
    return split_address(address)[1] == settings.MAIL_DOMAIN.lower()


def reject_line_breaks(field_name: str, value: Optional[str]) -> None:
    """Values that end up in a message header must stay on one line"""
    if value and ("\r" in value or "\n" in value):
        raise InvalidRequestError(f"{field_name} must not contain line breaks")


def build_message(email_record: Email, from_name: Optional[str] = None,
                  reply_to: Optional[str] = None) -> EmailMessage:
    """
    Build the MIME message for a stored outbound email.

    Bcc recipients are not written to the headers; the caller passes them to
    the SMTP envelope.
    """
    msg = EmailMessage()
    msg["From"] = email.utils.formataddr((from_name or "", email_record.sender))

    to = [email.utils.formataddr((r.name or "", r.address)) for r in email_record.recipients if r.recipient_type == "to"]
    cc = [email.utils.formataddr((r.name or "", r.address)) for r in email_record.recipients if r.recipient_type == "cc"]
    if to:
        msg["To"] = ", ".join(to)
    if cc:
        msg["Cc"] = ", ".join(cc)
    if reply_to:
        msg["Reply-To"] = reply_to

    msg["Subject"] = email_record.subject or ""
    msg["Date"] = email.utils.formatdate(usegmt=True)
    msg["Message-ID"] = email_record.message_id
    if email_record.in_reply_to:
        msg["In-Reply-To"] = email_record.in_reply_to
    if email_record.references:
        msg["References"] = email_record.references

    msg.set_content(email_record.body_plain or "")
    if email_record.body_html:
        msg.add_alternative(email_record.body_html, subtype="html")

    for attachment in email_record.attachments:
        content_type = attachment.content_type or "application/octet-stream"
        maintype, _, subtype = content_type.partition("/")
        cid = f"<{attachment.content_id.strip('<>')}>" if attachment.content_id else None
        msg.add_attachment(
            attachment.file_data or b"",
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
            disposition="inline" if attachment.is_inline else "attachment",
            cid=cid,
        )

    return msg


@dataclass
class ParsedAttachment:
    filename: Optional[str]
    content_type: str
    data: bytes
    content_id: Optional[str] = None
    is_inline: bool = False

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


@dataclass
class ParsedMessage:
    message_id: str
    sender: str
    subject: str
    to: List[Tuple[str, str]] = field(default_factory=list)
    cc: List[Tuple[str, str]] = field(default_factory=list)
    date: Optional[datetime] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    body_plain: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[ParsedAttachment] = field(default_factory=list)
    size: int = 0


def _parse_date(date_string: Optional[str]) -> Optional[datetime]:
    """Parse email date string"""
    if not date_string:
        return None
    try:
        return email.utils.parsedate_to_datetime(str(date_string))
    except (TypeError, ValueError) as e:
        logger.warning(f"Could not parse date '{date_string}': {e}")
        return None


def _part_text(part) -> Optional[str]:
    if part is None:
        return None
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        # Unknown or lying charset declaration
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _addresses(msg: EmailMessage, header: str) -> List[Tuple[str, str]]:
    values = [str(value) for value in msg.get_all(header, [])]
    return [(name, addr) for name, addr in email.utils.getaddresses(values) if addr]


def parse_message(raw: bytes) -> ParsedMessage:
    """Parse raw RFC 5322 bytes into the fields the mailbox stores"""
    msg = BytesParser(policy=policy.default).parsebytes(raw)

    message_id = str(msg.get("Message-ID", "")).strip()
    if not message_id:
        # Stable id for messages without one so redelivery still deduplicates
        message_id = f"<{hashlib.sha256(raw).hexdigest()}@{settings.MAIL_DOMAIN}>"

    senders = _addresses(msg, "From")
    sender = senders[0][1] if senders else ""

    plain_part = msg.get_body(preferencelist=("plain",))
    html_part = msg.get_body(preferencelist=("html",))
    body_ids = {id(part) for part in (plain_part, html_part) if part is not None}

    attachments = []
    for part in msg.walk():
        if part.is_multipart() or id(part) in body_ids:
            continue
        disposition = part.get_content_disposition()
        filename = part.get_filename()
        content_id = part.get("Content-ID")
        if disposition is None and not filename and not content_id:
            continue
        attachments.append(ParsedAttachment(
            filename=filename,
            content_type=part.get_content_type(),
            data=part.get_payload(decode=True) or b"",
            content_id=str(content_id).strip("<> ") if content_id else None,
            is_inline=disposition == "inline" or (disposition is None and content_id is not None),
        ))

    in_reply_to = msg.get("In-Reply-To")
    references = msg.get("References")

    return ParsedMessage(
        message_id=message_id,
        sender=sender,
        subject=str(msg.get("Subject", "")),
        to=_addresses(msg, "To"),
        cc=_addresses(msg, "Cc"),
        date=_parse_date(msg.get("Date")),
        in_reply_to=str(in_reply_to).strip() if in_reply_to else None,
        references=" ".join(str(references).split()) if references else None,
        body_plain=_part_text(plain_part),
        body_html=_part_text(html_part),
        attachments=attachments,
        size=len(raw),
    )
