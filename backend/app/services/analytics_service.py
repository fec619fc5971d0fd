from sqlalchemy.orm import Session
from sqlalchemy import func
from typing import List, Dict, Optional, Any
from datetime import datetime, timedelta, timezone
from ..models.analytics import EmailAnalytics, EVENT_TYPES
from ..models.email import Email
import logging

logger = logging.getLogger(__name__)

class AnalyticsService:
    """Delivery-status event trail and the summaries built from it"""

    def record(self, db: Session, email: Email, event_type: str, **detail) -> EmailAnalytics:
        """Add an event row for an email; the caller owns the commit"""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown analytics event type: {event_type}")

        event = EmailAnalytics(
            user_id=email.user_id,
            email_id=email.id,
            event_type=event_type,
            detail=detail or None,
        )
        db.add(event)
        logger.debug(f"Email {email.id} <{email.message_id}>: {event_type} {detail or ''}")
        return event

    def get_email_events(self, db: Session, email_id: int) -> List[EmailAnalytics]:
        return (
            db.query(EmailAnalytics)
            .filter(EmailAnalytics.email_id == email_id)
            .order_by(EmailAnalytics.created_at, EmailAnalytics.id)
            .all()
        )

    def get_summary(self, db: Session, user_id: int, days: int = 30) -> Dict[str, Any]:
        """Event counts, delivery rate and average attempts for the period"""
        since = datetime.now(timezone.utc) - timedelta(days=days)

        rows = (
            db.query(EmailAnalytics.event_type, func.count(EmailAnalytics.id))
            .filter(EmailAnalytics.user_id == user_id, EmailAnalytics.created_at >= since)
            .group_by(EmailAnalytics.event_type)
            .all()
        )
        events = {event_type: 0 for event_type in EVENT_TYPES}
        for event_type, count in rows:
            events[event_type] = count

        sent = events["sent"]
        failed = events["failed"]
        delivery_rate = round(sent / (sent + failed), 4) if (sent + failed) else 0.0

        avg_attempts = (
            db.query(func.avg(Email.retry_count + 1))
            .filter(Email.user_id == user_id, Email.status == "sent", Email.sent_at >= since)
            .scalar()
        )

        return {
            "period_days": days,
            "events": events,
            "sent": sent,
            "failed": failed,
            "received": events["received"],
            "delivery_rate": delivery_rate,
            "average_attempts": round(float(avg_attempts), 2) if avg_attempts is not None else 0.0,
        }

    def get_daily_counts(self, db: Session, user_id: int, days: int = 14) -> List[Dict[str, Any]]:
        """Sent and received counts per calendar day, oldest first, zero-filled"""
        today = datetime.now(timezone.utc).date()
        first_day = today - timedelta(days=days - 1)
        since = datetime.combine(first_day, datetime.min.time(), tzinfo=timezone.utc)

        day = func.date(EmailAnalytics.created_at)
        rows = (
            db.query(day.label("day"), EmailAnalytics.event_type, func.count(EmailAnalytics.id))
            .filter(
                EmailAnalytics.user_id == user_id,
                EmailAnalytics.created_at >= since,
                EmailAnalytics.event_type.in_(["sent", "received"]),
            )
            .group_by(day, EmailAnalytics.event_type)
            .all()
        )

        buckets = {
            (first_day + timedelta(days=offset)).isoformat(): {"sent": 0, "received": 0}
            for offset in range(days)
        }
        for day_value, event_type, count in rows:
            # MySQL returns a date, SQLite a string
            key = day_value.isoformat() if hasattr(day_value, "isoformat") else str(day_value)
            if key in buckets:
                buckets[key][event_type] = count

        return [{"date": key, **counts} for key, counts in buckets.items()]

analytics_service = AnalyticsService()
