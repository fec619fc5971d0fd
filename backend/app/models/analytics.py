from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Index
from sqlalchemy.sql import func
from .database import Base

EVENT_TYPES = (
    "queued", "scheduled", "sending", "sent", "deferred", "failed", "received", "duplicate", "opened",
)

class EmailAnalytics(Base):
    """One row per pipeline state change of an email"""
    __tablename__ = "email_analytics"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    email_id = Column(Integer, ForeignKey("emails.id", ondelete="SET NULL"), index=True)
    event_type = Column(String(20), nullable=False, index=True)
    detail = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    def __repr__(self):
        return f"<EmailAnalytics(id={self.id}, email_id={self.email_id}, event={self.event_type})>"

Index('idx_analytics_user_event_time', EmailAnalytics.user_id, EmailAnalytics.event_type, EmailAnalytics.created_at)
