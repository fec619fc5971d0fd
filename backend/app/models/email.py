from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Index, LargeBinary, Table,
    UniqueConstraint,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base

# MySQL TEXT/BLOB top out at 64KB, message bodies and attachments do not
LongText = Text().with_variant(mysql.LONGTEXT(), "mysql")
LongBinary = LargeBinary().with_variant(mysql.LONGBLOB(), "mysql")

FOLDERS = ("inbox", "sent", "drafts", "outbox", "trash", "spam", "archive")
STATUSES = ("draft", "scheduled", "queued", "sending", "deferred", "sent", "failed", "received")
RECIPIENT_TYPES = ("to", "cc", "bcc")
DELIVERY_STATUSES = ("pending", "delivered", "deferred", "bounced", "failed")

email_label_assignments = Table(
    "email_label_assignments",
    Base.metadata,
    Column("email_id", Integer, ForeignKey("emails.id", ondelete="CASCADE"), primary_key=True),
    Column("label_id", Integer, ForeignKey("email_labels.id", ondelete="CASCADE"), primary_key=True),
)

class EmailThread(Base):
    __tablename__ = "email_threads"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subject = Column(String(1000))  # Normalized subject, reply prefixes stripped
    message_count = Column(Integer, default=0, nullable=False)
    last_message_at = Column(DateTime(timezone=True), index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    emails = relationship("Email", back_populates="thread")

    def __repr__(self):
        return f"<EmailThread(id={self.id}, subject='{self.subject}', count={self.message_count})>"

class Email(Base):
    __tablename__ = "emails"
    __table_args__ = (
        # Deduplication key for both the send and the receive pipeline
        UniqueConstraint("user_id", "message_id", name="uq_emails_user_message_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    thread_id = Column(Integer, ForeignKey("email_threads.id", ondelete="SET NULL"), index=True)

    # RFC 5322 identification
    message_id = Column(String(255), nullable=False)
    in_reply_to = Column(String(255))
    references = Column("references_header", Text)  # Space separated Message-IDs

    # Mailbox placement and pipeline state
    folder = Column(String(20), default="inbox", nullable=False, index=True)
    direction = Column(String(10), default="outbound", nullable=False)  # 'inbound', 'outbound'
    status = Column(String(20), default="draft", nullable=False, index=True)

    # Content
    sender = Column(String(500), index=True)
    subject = Column(String(1000))
    body_plain = Column(LongText)
    body_html = Column(LongText)
    size = Column(Integer)  # Size in bytes

    # Flags
    is_read = Column(Boolean, default=False, nullable=False)
    is_starred = Column(Boolean, default=False, nullable=False)
    is_important = Column(Boolean, default=False, nullable=False)

    # Delivery tracking
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)

    # Timestamps
    sent_at = Column(DateTime(timezone=True))
    received_at = Column(DateTime(timezone=True), index=True)
    deleted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="emails", foreign_keys=[user_id])
    thread = relationship("EmailThread", back_populates="emails")
    recipients = relationship("EmailRecipient", back_populates="email", cascade="all, delete-orphan",
                              order_by="EmailRecipient.id")
    attachments = relationship("EmailAttachment", back_populates="email", cascade="all, delete-orphan",
                               order_by="EmailAttachment.id")
    labels = relationship("EmailLabel", secondary=email_label_assignments, back_populates="emails")
    schedules = relationship("EmailSchedule", back_populates="email", cascade="all, delete-orphan")

    def addresses(self, recipient_type: str = None) -> list:
        """Recipient addresses, optionally of one type"""
        return [r.address for r in self.recipients if recipient_type in (None, r.recipient_type)]

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)

    def __repr__(self):
        return f"<Email(id={self.id}, subject='{self.subject}', status='{self.status}')>"

class EmailRecipient(Base):
    __tablename__ = "email_recipients"

    id = Column(Integer, primary_key=True, index=True)
    email_id = Column(Integer, ForeignKey("emails.id", ondelete="CASCADE"), nullable=False, index=True)
    address = Column(String(320), nullable=False, index=True)
    name = Column(String(255))
    recipient_type = Column(String(3), default="to", nullable=False)  # 'to', 'cc', 'bcc'
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))  # Set for local recipients

    # Per-recipient delivery status
    delivery_status = Column(String(20), default="pending", nullable=False)
    smtp_code = Column(Integer)
    smtp_message = Column(Text)
    attempted_at = Column(DateTime(timezone=True))

    email = relationship("Email", back_populates="recipients")

    def __repr__(self):
        return f"<EmailRecipient(id={self.id}, address='{self.address}', status='{self.delivery_status}')>"

class EmailAttachment(Base):
    __tablename__ = "email_attachments"

    id = Column(Integer, primary_key=True, index=True)
    email_id = Column(Integer, ForeignKey("emails.id", ondelete="CASCADE"), nullable=False)

    # Attachment metadata
    filename = Column(String(500))
    content_type = Column(String(200))
    size = Column(Integer)  # Size in bytes
    content_id = Column(String(255))  # For inline attachments
    is_inline = Column(Boolean, default=False, nullable=False)

    # Storage
    file_data = Column(LongBinary)
    checksum = Column(String(64))  # SHA256 hash for deduplication
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    email = relationship("Email", back_populates="attachments")

    def __repr__(self):
        return f"<EmailAttachment(id={self.id}, filename='{self.filename}')>"

class EmailLabel(Base):
    __tablename__ = "email_labels"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_email_labels_user_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    color = Column(String(20))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="labels")
    emails = relationship("Email", secondary=email_label_assignments, back_populates="labels")

    def __repr__(self):
        return f"<EmailLabel(id={self.id}, name='{self.name}')>"

# Indexes for mailbox listing
Index('idx_emails_user_folder', Email.user_id, Email.folder, Email.created_at)
Index('idx_emails_user_thread', Email.user_id, Email.thread_id)
Index('idx_threads_user_subject', EmailThread.user_id, EmailThread.subject, mysql_length={'subject': 191})
Index('idx_attachments_email_id', EmailAttachment.email_id)
Index('idx_attachments_checksum', EmailAttachment.checksum)
