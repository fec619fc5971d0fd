"""
Consumer for the email-send topic: builds the MIME message, delivers it over
SMTP (or onto email-receive for local mailboxes) and tracks delivery status.
"""

import logging
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from config.settings import settings
from ..exceptions import DeliveryError, PermanentDeliveryError, TransientDeliveryError
from ..messaging.producer import EmailEventProducer
from ..messaging.schemas import DeadLetter, ReceiveJob, SendJob
from ..models.database import SessionLocal
from ..models.email import Email, EmailRecipient
from ..models.schedule import EmailSchedule
from ..models.user import User
from ..services.analytics_service import analytics_service
from ..services.mime_service import build_message, is_local_address
from ..services.smtp_service import SMTPResult, SMTPService

logger = logging.getLogger(__name__)

# A redelivered job may find the email mid-send if a worker died after marking it
DELIVERABLE_STATUSES = ("queued", "deferred", "sending")


def compute_backoff(retry_count: int) -> int:
    """Seconds to wait before the next attempt, doubling per retry"""
    return min(settings.SEND_RETRY_MAX_SECONDS, settings.SEND_RETRY_BASE_SECONDS * 2 ** retry_count)


class SendWorker:

    def __init__(self, producer: EmailEventProducer, smtp_service: Optional[SMTPService] = None,
                 session_factory: Callable[[], Session] = SessionLocal):
        self.producer = producer
        self.smtp_service = smtp_service or SMTPService()
        self.session_factory = session_factory
        self.stats = {"sent": 0, "deferred": 0, "failed": 0, "skipped": 0}

    async def handle(self, payload: Dict[str, Any]) -> str:
        """Process one send job; returns the outcome name"""
        job = SendJob.model_validate(payload)
        db = self.session_factory()
        try:
            outcome = await self._process(db, job)
        finally:
            db.close()
        self.stats[outcome if outcome in self.stats else "skipped"] += 1
        return outcome

    async def _process(self, db: Session, job: SendJob) -> str:
        email_record = db.query(Email).filter(Email.id == job.email_id).first()
        if email_record is None or email_record.message_id != job.message_id:
            logger.warning(f"Send job for missing email {job.email_id} {job.message_id}, dropping")
            return "missing"

        if email_record.status == "sent":
            analytics_service.record(db, email_record, "duplicate", attempt=job.attempt)
            db.commit()
            logger.info(f"Email {email_record.id} {email_record.message_id} already sent, ignoring duplicate job")
            return "duplicate"
        if email_record.status not in DELIVERABLE_STATUSES:
            logger.info(f"Email {email_record.id} is '{email_record.status}', dropping send job")
            return "skipped"
        if job.attempt < email_record.retry_count:
            logger.info(f"Stale send job for email {email_record.id} (attempt {job.attempt} < {email_record.retry_count})")
            return "stale"

        email_record.status = "sending"
        analytics_service.record(db, email_record, "sending", attempt=email_record.retry_count)
        db.commit()

        local, remote = self._split_recipients(db, email_record)
        try:
            message = self._build(email_record)
        except (ValueError, TypeError, LookupError) as e:
            # Stored fields that cannot be rendered as RFC 5322 headers
            return await self._fail(db, email_record, PermanentDeliveryError(f"Could not build message: {e}"),
                                    list(email_record.recipients))

        try:
            result = await self._deliver(email_record, message, local, remote)
        except TransientDeliveryError as e:
            if email_record.retry_count + 1 < settings.SEND_MAX_RETRIES:
                return self._defer(db, email_record, e, remote)
            return await self._fail(db, email_record, e, remote, exhausted=True)
        except DeliveryError as e:
            return await self._fail(db, email_record, e, remote)

        return self._succeed(db, email_record, local, result)

    def _split_recipients(self, db: Session, email_record: Email):
        """Partition recipients into local mailboxes and remote SMTP targets"""
        local: List[EmailRecipient] = []
        remote: List[EmailRecipient] = []
        for recipient in email_record.recipients:
            if is_local_address(recipient.address):
                user = db.query(User).filter(User.email == recipient.address.lower(), User.is_active == True).first()  # noqa: E712
                if user is not None:
                    recipient.user_id = user.id
                    local.append(recipient)
                    continue
            remote.append(recipient)
        return local, remote

    def _build(self, email_record: Email) -> EmailMessage:
        user = email_record.user
        user_settings = user.settings
        from_name = (user_settings.display_name if user_settings else None) or user.full_name
        reply_to = user_settings.reply_to if user_settings else None
        return build_message(email_record, from_name=from_name, reply_to=reply_to)

    async def _deliver(self, email_record: Email, message: EmailMessage, local: List[EmailRecipient],
                       remote: List[EmailRecipient]) -> Optional[SMTPResult]:
        if local:
            job = ReceiveJob.from_bytes(message.as_bytes(), [r.address for r in local], source="local")
            try:
                await self.producer.publish(settings.KAFKA_RECEIVE_TOPIC, job, key=email_record.message_id)
            except Exception as e:
                raise TransientDeliveryError(f"Local delivery queue unavailable: {e}")
            logger.info(f"Email {email_record.id} handed to {len(local)} local mailbox(es)")

        if not remote:
            return None
        return await self.smtp_service.send(message, sender=email_record.sender,
                                            recipients=[r.address for r in remote])

    def _succeed(self, db: Session, email_record: Email, local: List[EmailRecipient],
                 result: Optional[SMTPResult]) -> str:
        now = datetime.now(timezone.utc)
        refused = result.refused if result else {}
        for recipient in email_record.recipients:
            recipient.attempted_at = now
            if recipient.address in refused:
                code, message = refused[recipient.address]
                recipient.delivery_status = "bounced"
                recipient.smtp_code = code
                recipient.smtp_message = message
            elif recipient in local:
                recipient.delivery_status = "delivered"
                recipient.smtp_code = None
                recipient.smtp_message = "Delivered to local mailbox"
            else:
                recipient.delivery_status = "delivered"
                recipient.smtp_code = result.smtp_code if result else None
                recipient.smtp_message = result.response if result else None

        email_record.status = "sent"
        email_record.folder = "sent"
        email_record.sent_at = now
        email_record.last_error = "; ".join(f"{address}: {code} {message}" for address, (code, message) in refused.items()) or None
        analytics_service.record(
            db, email_record, "sent",
            attempt=email_record.retry_count,
            delivered=len(email_record.recipients) - len(refused),
            bounced=len(refused),
        )
        db.commit()
        logger.info(f"Email {email_record.id} {email_record.message_id} sent "
                    f"(attempt {email_record.retry_count + 1}, {len(refused)} refused)")
        return "sent"

    def _defer(self, db: Session, email_record: Email, error: DeliveryError,
               remote: List[EmailRecipient]) -> str:
        delay = compute_backoff(email_record.retry_count)
        email_record.retry_count += 1
        email_record.status = "deferred"
        email_record.last_error = error.message

        now = datetime.now(timezone.utc)
        for recipient in remote:
            recipient.delivery_status = "deferred"
            recipient.smtp_code, recipient.smtp_message = error.refused.get(recipient.address, (error.smtp_code, error.message))
            recipient.attempted_at = now

        db.add(EmailSchedule(
            email_id=email_record.id,
            kind="retry",
            scheduled_at=now + timedelta(seconds=delay),
            status="pending",
            attempt=email_record.retry_count,
        ))
        analytics_service.record(db, email_record, "deferred", attempt=email_record.retry_count,
                                 retry_in=delay, error=error.message)
        db.commit()
        logger.warning(f"Email {email_record.id} deferred, retry {email_record.retry_count} in {delay}s: {error.message}")
        return "deferred"

    async def _fail(self, db: Session, email_record: Email, error: DeliveryError,
                    remote: List[EmailRecipient], exhausted: bool = False) -> str:
        now = datetime.now(timezone.utc)
        for recipient in remote:
            code, reply = error.refused.get(recipient.address, (error.smtp_code, error.message))
            bounced = isinstance(error, PermanentDeliveryError) and code is not None and 500 <= code < 600
            recipient.delivery_status = "bounced" if bounced else "failed"
            recipient.smtp_code = code
            recipient.smtp_message = reply
            recipient.attempted_at = now

        email_record.status = "failed"
        email_record.last_error = error.message
        analytics_service.record(db, email_record, "failed", attempt=email_record.retry_count,
                                 error=error.message, exhausted=exhausted)
        db.commit()
        logger.error(f"Email {email_record.id} {email_record.message_id} failed permanently: {error.message}")

        try:
            await self.producer.publish(
                settings.KAFKA_DEAD_LETTER_TOPIC,
                DeadLetter(
                    topic=settings.KAFKA_SEND_TOPIC,
                    payload=SendJob(email_id=email_record.id, message_id=email_record.message_id,
                                    attempt=email_record.retry_count).model_dump(mode="json"),
                    error=error.message,
                    email_id=email_record.id,
                ),
                key=email_record.message_id,
            )
        except Exception as e:
            # The failure is already recorded on the email row
            logger.error(f"Could not publish dead letter for email {email_record.id}: {e}")
        return "failed"
