"""
Consumer for the email-receive topic: files raw messages into local inboxes.
"""

import logging
from typing import Any, Callable, Dict, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..messaging.schemas import ReceiveJob
from ..models.database import SessionLocal
from ..models.email import Email, EmailAttachment, EmailRecipient
from ..models.user import User
from ..services.analytics_service import analytics_service
from ..services.mime_service import ParsedMessage, parse_message
from ..services.thread_service import thread_service

logger = logging.getLogger(__name__)


class ReceiveWorker:

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory
        self.stats = {"stored": 0, "duplicate": 0, "unknown": 0}

    async def handle(self, payload: Dict[str, Any]) -> Dict[str, str]:
        """Deliver one raw message to every envelope recipient; returns outcome per address"""
        job = ReceiveJob.model_validate(payload)
        parsed = parse_message(job.raw_bytes())
        logger.info(f"Received {parsed.message_id} from {parsed.sender or 'unknown sender'} "
                    f"for {len(job.recipients)} recipient(s) via {job.source}")

        outcomes = {}
        for address in dict.fromkeys(a.strip().lower() for a in job.recipients if a.strip()):
            db = self.session_factory()
            try:
                outcomes[address] = self._store_for(db, parsed, address, job)
            finally:
                db.close()
            self.stats[outcomes[address]] += 1
        return outcomes

    def _store_for(self, db: Session, parsed: ParsedMessage, address: str, job: ReceiveJob) -> str:
        user = db.query(User).filter(User.email == address).first()
        if user is None or not user.is_active:
            logger.info(f"No active mailbox for {address}, ignoring {parsed.message_id}")
            return "unknown"

        existing = db.query(Email).filter(Email.user_id == user.id, Email.message_id == parsed.message_id).first()
        if existing is not None:
            analytics_service.record(db, existing, "duplicate", source=job.source)
            db.commit()
            logger.info(f"User {user.id} already has {parsed.message_id}, skipping")
            return "duplicate"

        email_record = Email(
            user_id=user.id,
            message_id=parsed.message_id,
            in_reply_to=parsed.in_reply_to,
            references=parsed.references,
            folder="inbox",
            direction="inbound",
            status="received",
            sender=parsed.sender,
            subject=parsed.subject,
            body_plain=parsed.body_plain,
            body_html=parsed.body_html,
            size=parsed.size,
            sent_at=parsed.date,
            received_at=job.received_at,
        )

        listed: Set[str] = set()
        for recipient_type, addresses in (("to", parsed.to), ("cc", parsed.cc)):
            for name, recipient_address in addresses:
                listed.add(recipient_address.lower())
                email_record.recipients.append(EmailRecipient(
                    address=recipient_address,
                    name=name or None,
                    recipient_type=recipient_type,
                    user_id=user.id if recipient_address.lower() == address else None,
                    delivery_status="delivered",
                ))
        if address not in listed:
            # Envelope-only recipient: the mailbox owner was blind copied
            email_record.recipients.append(EmailRecipient(
                address=address, recipient_type="bcc", user_id=user.id, delivery_status="delivered",
            ))

        for attachment in parsed.attachments:
            email_record.attachments.append(EmailAttachment(
                filename=attachment.filename,
                content_type=attachment.content_type,
                size=attachment.size,
                content_id=attachment.content_id,
                is_inline=attachment.is_inline,
                file_data=attachment.data,
                checksum=attachment.checksum,
            ))

        db.add(email_record)
        try:
            db.flush()
            thread = thread_service.resolve(
                db, user.id,
                in_reply_to=parsed.in_reply_to,
                references=parsed.references,
                subject=parsed.subject,
            )
            thread_service.attach(db, email_record, thread)
            analytics_service.record(db, email_record, "received", source=job.source)
            db.commit()
        except IntegrityError:
            # Another worker stored the same Message-ID first
            db.rollback()
            logger.info(f"Concurrent delivery of {parsed.message_id} to user {user.id}, treating as duplicate")
            return "duplicate"

        logger.info(f"Stored {parsed.message_id} as email {email_record.id} for user {user.id}")
        return "stored"
