"""
Conversation threading for stored emails
"""

import re
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.email import Email, EmailThread

logger = logging.getLogger(__name__)

# Reply/forward prefixes, possibly repeated: "Re: Fwd: RE[2]: subject"
_PREFIX_RE = re.compile(r"^\s*((re|fwd?|aw)(\[\d+\])?\s*:\s*)+", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")

SUBJECT_MATCH_WINDOW = timedelta(days=30)


def normalize_subject(subject: Optional[str]) -> str:
    """Strip reply/forward prefixes and collapse whitespace"""
    if not subject:
        return ""
    stripped = _PREFIX_RE.sub("", subject)
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def parse_references(references: Optional[str]) -> List[str]:
    """Split a References header into Message-IDs"""
    if not references:
        return []
    return [ref for ref in references.replace(",", " ").split() if ref]


class ThreadService:

    def resolve(
        self,
        db: Session,
        user_id: int,
        in_reply_to: Optional[str] = None,
        references: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> EmailThread:
        """
        Find the thread a message belongs to, creating one if needed.

        Header linkage wins over subject matching. Subject matching only
        considers threads active within the last 30 days.
        """
        parents = parse_references(references)
        if in_reply_to:
            parents.append(in_reply_to)

        if parents:
            parent = (
                db.query(Email)
                .filter(
                    Email.user_id == user_id,
                    Email.message_id.in_(parents),
                    Email.thread_id.isnot(None),
                )
                .order_by(Email.id.desc())
                .first()
            )
            if parent:
                return parent.thread

        normalized = normalize_subject(subject)
        if normalized:
            cutoff = datetime.now(timezone.utc) - SUBJECT_MATCH_WINDOW
            thread = (
                db.query(EmailThread)
                .filter(
                    EmailThread.user_id == user_id,
                    EmailThread.subject == normalized,
                    EmailThread.last_message_at >= cutoff,
                )
                .order_by(EmailThread.last_message_at.desc())
                .first()
            )
            if thread:
                return thread

        thread = EmailThread(user_id=user_id, subject=normalized, message_count=0)
        db.add(thread)
        db.flush()
        logger.debug(f"Created thread {thread.id} for user {user_id}: '{normalized}'")
        return thread

    def attach(self, db: Session, email: Email, thread: EmailThread) -> None:
        """Put an email into a thread and bump the thread counters"""
        if email.thread_id == thread.id:
            return
        email.thread = thread
        thread.message_count = (thread.message_count or 0) + 1
        thread.last_message_at = datetime.now(timezone.utc)
        db.flush()

    def get_thread_emails(self, db: Session, user_id: int, thread_id: int) -> List[Email]:
        return (
            db.query(Email)
            .filter(Email.user_id == user_id, Email.thread_id == thread_id, Email.deleted_at.is_(None))
            .order_by(Email.created_at, Email.id)
            .all()
        )

    def list_threads(self, db: Session, user_id: int, page: int = 1, page_size: int = 25) -> dict:
        query = (
            db.query(EmailThread)
            .filter(EmailThread.user_id == user_id, EmailThread.message_count > 0)
            .order_by(EmailThread.last_message_at.desc(), EmailThread.id.desc())
        )
        total_count = query.count()
        threads = query.offset((page - 1) * page_size).limit(page_size).all()
        return {
            "threads": threads,
            "total_count": total_count,
            "page": page,
            "page_size": page_size,
            "total_pages": (total_count + page_size - 1) // page_size,
        }

thread_service = ThreadService()
