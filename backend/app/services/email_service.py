from sqlalchemy.orm import Session
from sqlalchemy import func, or_
from typing import List, Dict, Optional, Any
from datetime import datetime, timedelta, timezone
import email.utils
import hashlib
import logging

from config.settings import settings
from ..exceptions import (
    ConflictError, InvalidRequestError, NotFoundError, PayloadTooLargeError,
)
from ..messaging.producer import EmailEventProducer
from ..messaging.schemas import SendJob
from ..models.email import Email, EmailAttachment, EmailLabel, EmailRecipient, FOLDERS
from ..models.schedule import EmailSchedule
from ..models.user import User
from .analytics_service import analytics_service
from .mime_service import is_local_address, make_message_id, reject_line_breaks
from .template_service import template_service
from .thread_service import thread_service

logger = logging.getLogger(__name__)

# Folders a user may move mail into; drafts and outbox follow the pipeline
MOVABLE_FOLDERS = tuple(folder for folder in FOLDERS if folder not in ("drafts", "outbox"))
SENDABLE_STATUSES = ("draft", "failed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_recipients(values: Optional[List[str]]) -> List[tuple]:
    """Turn ["Name <a@b>", "c@d"] into [(name, address)], rejecting junk"""
    if not values:
        return []
    for value in values:
        reject_line_breaks("Recipient", value)
    parsed = []
    for name, address in email.utils.getaddresses(values):
        address = address.strip()
        local, _, domain = address.rpartition("@")
        if not local or "." not in domain:
            raise InvalidRequestError(f"Invalid email address: '{address or name}'")
        parsed.append((name or None, address))
    return parsed


class EmailService:
    """Mailbox operations for one user at a time"""

    # ---------------------------------------------------------------- lookup

    def get_email_by_id(self, db: Session, user: User, email_id: int) -> Email:
        """Get an email owned by the user, 404 otherwise"""
        email_record = db.query(Email).filter(Email.id == email_id, Email.user_id == user.id).first()
        if not email_record:
            raise NotFoundError("Email not found")
        return email_record

    def search_emails(
        self,
        db: Session,
        user: User,
        folder: Optional[str] = "inbox",
        query: Optional[str] = None,
        label: Optional[str] = None,
        is_read: Optional[bool] = None,
        is_starred: Optional[bool] = None,
        page: int = 1,
        page_size: Optional[int] = None
    ) -> Dict[str, Any]:
        """Search the user's emails with pagination, newest first"""
        if page_size is None:
            page_size = user.settings.page_size if user.settings else 25

        query_obj = db.query(Email).filter(Email.user_id == user.id)

        if folder:
            if folder not in FOLDERS:
                raise InvalidRequestError(f"Unknown folder '{folder}'")
            query_obj = query_obj.filter(Email.folder == folder)
        if query:
            pattern = f"%{query}%"
            query_obj = query_obj.filter(
                or_(
                    Email.subject.ilike(pattern),
                    Email.sender.ilike(pattern),
                    Email.body_plain.ilike(pattern)
                )
            )
        if label:
            query_obj = query_obj.filter(Email.labels.any(EmailLabel.name == label))
        if is_read is not None:
            query_obj = query_obj.filter(Email.is_read == is_read)
        if is_starred is not None:
            query_obj = query_obj.filter(Email.is_starred == is_starred)

        total_count = query_obj.count()
        emails = (
            query_obj.order_by(Email.created_at.desc(), Email.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )

        return {
            "emails": emails,
            "total_count": total_count,
            "page": page,
            "page_size": page_size,
            "total_pages": (total_count + page_size - 1) // page_size
        }

    # --------------------------------------------------------------- compose

    def _set_recipients(self, db: Session, email_record: Email, to, cc, bcc):
        email_record.recipients = []
        for recipient_type, values in (("to", to), ("cc", cc), ("bcc", bcc)):
            for name, address in parse_recipients(values):
                local_user = None
                if is_local_address(address):
                    local_user = db.query(User).filter(User.email == address.lower()).first()
                email_record.recipients.append(EmailRecipient(
                    address=address,
                    name=name,
                    recipient_type=recipient_type,
                    user_id=local_user.id if local_user else None,
                    delivery_status="pending",
                ))

    def _apply_template(self, db: Session, user: User, template_id: int,
                        context: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
        template = template_service.get_template(db, user.id, template_id)
        return template_service.render(template, context)

    def create_draft(
        self,
        db: Session,
        user: User,
        to: Optional[List[str]] = None,
        cc: Optional[List[str]] = None,
        bcc: Optional[List[str]] = None,
        subject: Optional[str] = None,
        body_plain: Optional[str] = None,
        body_html: Optional[str] = None,
        in_reply_to: Optional[str] = None,
        template_id: Optional[int] = None,
        template_context: Optional[Dict[str, Any]] = None,
    ) -> Email:
        """Store a new draft in the drafts folder"""
        if template_id is not None:
            rendered = self._apply_template(db, user, template_id, template_context)
            subject = subject or rendered["subject"]
            body_plain = body_plain or rendered["body_plain"]
            body_html = body_html or rendered["body_html"]
        reject_line_breaks("Subject", subject)
        reject_line_breaks("In-Reply-To", in_reply_to)

        user_settings = user.settings
        if user_settings and user_settings.signature and template_id is None:
            body_plain = f"{body_plain or ''}\n\n-- \n{user_settings.signature}"

        references = None
        if in_reply_to:
            parent = db.query(Email).filter(Email.user_id == user.id, Email.message_id == in_reply_to).first()
            if parent:
                references = " ".join(filter(None, [parent.references, parent.message_id]))
            else:
                references = in_reply_to

        email_record = Email(
            user_id=user.id,
            message_id=make_message_id(),
            in_reply_to=in_reply_to,
            references=references,
            folder="drafts",
            direction="outbound",
            status="draft",
            sender=user.email,
            subject=subject or "",
            body_plain=body_plain,
            body_html=body_html,
        )
        self._set_recipients(db, email_record, to, cc, bcc)
        db.add(email_record)
        db.commit()
        db.refresh(email_record)

        logger.info(f"Created draft {email_record.id} {email_record.message_id} for user {user.id}")
        return email_record

    def update_draft(self, db: Session, user: User, email_id: int, **fields) -> Email:
        """Replace draft fields; recipients are replaced as a whole when given"""
        email_record = self.get_email_by_id(db, user, email_id)
        if email_record.status != "draft":
            raise ConflictError(f"Only drafts can be edited (status is '{email_record.status}')")
        reject_line_breaks("Subject", fields.get("subject"))

        if any(fields.get(key) is not None for key in ("to", "cc", "bcc")):
            self._set_recipients(db, email_record, fields.get("to"), fields.get("cc"), fields.get("bcc"))
        for field_name in ("subject", "body_plain", "body_html"):
            if fields.get(field_name) is not None:
                setattr(email_record, field_name, fields[field_name])

        db.commit()
        db.refresh(email_record)
        return email_record

    # ------------------------------------------------------------------ send

    def _prepare_outbound(self, db: Session, user: User, email_id: int) -> Email:
        email_record = self.get_email_by_id(db, user, email_id)
        if email_record.status not in SENDABLE_STATUSES:
            raise ConflictError(f"Email cannot be sent from status '{email_record.status}'")
        if not email_record.recipients:
            raise InvalidRequestError("At least one recipient is required")

        if email_record.thread_id is None:
            thread = thread_service.resolve(
                db, user.id,
                in_reply_to=email_record.in_reply_to,
                references=email_record.references,
                subject=email_record.subject,
            )
            thread_service.attach(db, email_record, thread)

        email_record.folder = "outbox"
        email_record.retry_count = 0
        email_record.last_error = None
        for recipient in email_record.recipients:
            recipient.delivery_status = "pending"
            recipient.smtp_code = None
            recipient.smtp_message = None
        email_record.size = len((email_record.body_plain or "").encode()) + len((email_record.body_html or "").encode()) \
            + sum(attachment.size or 0 for attachment in email_record.attachments)
        return email_record

    def queue_send(self, db: Session, user: User, email_id: int) -> SendJob:
        """Move a draft to the outbox and return the job to publish"""
        email_record = self._prepare_outbound(db, user, email_id)
        email_record.status = "queued"
        analytics_service.record(db, email_record, "queued", recipients=len(email_record.recipients))
        db.commit()

        logger.info(f"Queued email {email_record.id} {email_record.message_id} for sending")
        return SendJob(email_id=email_record.id, message_id=email_record.message_id, attempt=0)

    async def dispatch_send(self, db: Session, producer: EmailEventProducer, job: SendJob) -> bool:
        """
        Publish a send job. When the broker is unreachable the email is parked
        as a pending retry schedule so the scheduler publishes it later.
        """
        try:
            await producer.publish(settings.KAFKA_SEND_TOPIC, job, key=job.message_id)
            return True
        except Exception as e:
            logger.error(f"Could not publish send job for email {job.email_id}: {e}")
            email_record = db.query(Email).filter(Email.id == job.email_id).first()
            if email_record is None:
                return False
            email_record.status = "deferred"
            email_record.last_error = f"Queue unavailable: {e}"
            db.add(EmailSchedule(
                email_id=email_record.id,
                kind="retry",
                scheduled_at=utcnow() + timedelta(seconds=settings.SEND_RETRY_BASE_SECONDS),
                status="pending",
                attempt=job.attempt,
            ))
            analytics_service.record(db, email_record, "deferred", reason="queue_unavailable")
            db.commit()
            return False

    def schedule_send(self, db: Session, user: User, email_id: int, send_at: datetime) -> EmailSchedule:
        send_at = as_utc(send_at)
        if send_at <= utcnow():
            raise InvalidRequestError("send_at must be in the future")

        email_record = self._prepare_outbound(db, user, email_id)
        email_record.status = "scheduled"
        schedule = EmailSchedule(email_id=email_record.id, kind="scheduled", scheduled_at=send_at,
                                 status="pending", attempt=0)
        db.add(schedule)
        analytics_service.record(db, email_record, "scheduled", send_at=send_at.isoformat())
        db.commit()
        db.refresh(schedule)

        logger.info(f"Scheduled email {email_record.id} for {send_at.isoformat()}")
        return schedule

    def cancel_schedule(self, db: Session, user: User, email_id: int) -> Email:
        """Cancel a pending scheduled send and return the email to drafts"""
        email_record = self.get_email_by_id(db, user, email_id)
        pending = [s for s in email_record.schedules if s.is_pending and s.kind == "scheduled"]
        if email_record.status != "scheduled" or not pending:
            raise ConflictError("Email has no pending scheduled send")

        for schedule in pending:
            schedule.mark_cancelled()
        email_record.status = "draft"
        email_record.folder = "drafts"
        db.commit()
        db.refresh(email_record)
        return email_record

    # ----------------------------------------------------------------- flags

    def update_email_flags(self, db: Session, user: User, email_id: int, **flags) -> Email:
        """Update email flags (read, starred, important)"""
        email_record = self.get_email_by_id(db, user, email_id)
        if flags.get("is_read") and not email_record.is_read:
            already_opened = any(
                event.event_type == "opened"
                for event in analytics_service.get_email_events(db, email_record.id)
            )
            if not already_opened:
                analytics_service.record(db, email_record, "opened")

        for flag_name in ("is_read", "is_starred", "is_important"):
            if flags.get(flag_name) is not None:
                setattr(email_record, flag_name, flags[flag_name])
        db.commit()
        return email_record

    def mark_email_as_read(self, db: Session, user: User, email_id: int) -> Email:
        return self.update_email_flags(db, user, email_id, is_read=True)

    def mark_email_as_unread(self, db: Session, user: User, email_id: int) -> Email:
        return self.update_email_flags(db, user, email_id, is_read=False)

    def toggle_star(self, db: Session, user: User, email_id: int) -> Email:
        email_record = self.get_email_by_id(db, user, email_id)
        return self.update_email_flags(db, user, email_id, is_starred=not email_record.is_starred)

    def toggle_important(self, db: Session, user: User, email_id: int) -> Email:
        email_record = self.get_email_by_id(db, user, email_id)
        return self.update_email_flags(db, user, email_id, is_important=not email_record.is_important)

    def bulk_update_emails(self, db: Session, user: User, email_ids: List[int],
                           folder: Optional[str] = None, **flags) -> int:
        """Apply flags and/or a folder move to many emails; unknown ids are skipped"""
        if folder is not None and folder not in MOVABLE_FOLDERS:
            raise InvalidRequestError(f"Cannot move emails to '{folder}'")

        emails = db.query(Email).filter(Email.user_id == user.id, Email.id.in_(email_ids)).all()
        for email_record in emails:
            for flag_name in ("is_read", "is_starred", "is_important"):
                if flags.get(flag_name) is not None:
                    setattr(email_record, flag_name, flags[flag_name])
            if folder is not None:
                self._set_folder(email_record, folder)
        db.commit()
        return len(emails)

    # ---------------------------------------------------------- move, delete

    def _set_folder(self, email_record: Email, folder: str):
        email_record.folder = folder
        email_record.deleted_at = utcnow() if folder == "trash" else None

    def move_email(self, db: Session, user: User, email_id: int, folder: str) -> Email:
        if folder not in MOVABLE_FOLDERS:
            raise InvalidRequestError(f"Cannot move emails to '{folder}'")
        email_record = self.get_email_by_id(db, user, email_id)
        if email_record.status in ("scheduled", "queued", "sending", "deferred"):
            raise ConflictError("Email is still being delivered")
        self._set_folder(email_record, folder)
        db.commit()
        return email_record

    def delete_email(self, db: Session, user: User, email_id: int, permanent: bool = False) -> str:
        """
        Move to trash, or remove for good when already in trash or asked to.
        Returns 'trashed' or 'deleted'.
        """
        email_record = self.get_email_by_id(db, user, email_id)
        if email_record.status in ("queued", "sending", "deferred"):
            raise ConflictError("Email is still being delivered")

        for schedule in email_record.schedules:
            if schedule.is_pending:
                schedule.mark_cancelled()

        if permanent or email_record.folder == "trash":
            thread = email_record.thread
            if thread is not None and thread.message_count:
                thread.message_count -= 1
            email_record.labels = []
            db.delete(email_record)
            db.commit()
            logger.info(f"Deleted email {email_id} for user {user.id}")
            return "deleted"

        if email_record.status == "scheduled":
            email_record.status = "draft"
        self._set_folder(email_record, "trash")
        db.commit()
        return "trashed"

    # ----------------------------------------------------------- attachments

    def add_attachment(self, db: Session, user: User, email_id: int, filename: str,
                       content_type: Optional[str], data: bytes, is_inline: bool = False,
                       content_id: Optional[str] = None) -> EmailAttachment:
        email_record = self.get_email_by_id(db, user, email_id)
        if email_record.status != "draft":
            raise ConflictError("Attachments can only be added to drafts")
        if len(data) > settings.max_file_size_bytes:
            raise PayloadTooLargeError(f"Attachment exceeds {settings.MAX_FILE_SIZE_MB} MB")

        attachment = EmailAttachment(
            email_id=email_record.id,
            filename=filename,
            content_type=content_type or "application/octet-stream",
            size=len(data),
            content_id=content_id,
            is_inline=is_inline,
            file_data=data,
            checksum=hashlib.sha256(data).hexdigest(),
        )
        db.add(attachment)
        db.commit()
        db.refresh(attachment)
        return attachment

    def get_email_attachments(self, db: Session, user: User, email_id: int) -> List[EmailAttachment]:
        email_record = self.get_email_by_id(db, user, email_id)
        return list(email_record.attachments)

    def get_attachment(self, db: Session, user: User, email_id: int, attachment_id: int) -> EmailAttachment:
        email_record = self.get_email_by_id(db, user, email_id)
        for attachment in email_record.attachments:
            if attachment.id == attachment_id:
                return attachment
        raise NotFoundError("Attachment not found")

    # ---------------------------------------------------------------- labels

    def add_label(self, db: Session, user: User, email_id: int, label: EmailLabel) -> Email:
        email_record = self.get_email_by_id(db, user, email_id)
        if label not in email_record.labels:
            email_record.labels.append(label)
            db.commit()
        return email_record

    def remove_label(self, db: Session, user: User, email_id: int, label: EmailLabel) -> Email:
        email_record = self.get_email_by_id(db, user, email_id)
        if label in email_record.labels:
            email_record.labels.remove(label)
            db.commit()
        return email_record

    # ------------------------------------------------------------ statistics

    def get_email_statistics(self, db: Session, user: User) -> Dict[str, Any]:
        base = db.query(Email).filter(Email.user_id == user.id)
        by_folder = dict(
            db.query(Email.folder, func.count(Email.id))
            .filter(Email.user_id == user.id)
            .group_by(Email.folder)
            .all()
        )
        return {
            "total": base.count(),
            "unread": base.filter(Email.folder == "inbox", Email.is_read == False).count(),  # noqa: E712
            "starred": base.filter(Email.is_starred == True).count(),  # noqa: E712
            "by_folder": {folder: by_folder.get(folder, 0) for folder in FOLDERS},
        }

    def get_unread_counts(self, db: Session, user_id: int) -> Dict[str, int]:
        """Unread count per folder, used by the realtime push"""
        rows = (
            db.query(Email.folder, func.count(Email.id))
            .filter(Email.user_id == user_id, Email.is_read == False)  # noqa: E712
            .group_by(Email.folder)
            .all()
        )
        return {folder: count for folder, count in rows}

email_service = EmailService()
