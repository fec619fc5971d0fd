from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base

class EmailSchedule(Base):
    __tablename__ = "email_schedules"

    id = Column(Integer, primary_key=True, index=True)
    email_id = Column(Integer, ForeignKey("emails.id", ondelete="CASCADE"), nullable=False, index=True)

    kind = Column(String(20), nullable=False, default="scheduled")  # 'scheduled', 'retry'
    scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)  # 'pending', 'dispatched', 'cancelled'
    attempt = Column(Integer, default=0, nullable=False)  # Send attempt the dispatched job carries
    dispatched_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    email = relationship("Email", back_populates="schedules")

    def __repr__(self):
        return f"<EmailSchedule(id={self.id}, email_id={self.email_id}, kind={self.kind}, status={self.status})>"

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def mark_dispatched(self):
        self.status = "dispatched"
        self.dispatched_at = datetime.now(timezone.utc)

    def mark_cancelled(self):
        self.status = "cancelled"
