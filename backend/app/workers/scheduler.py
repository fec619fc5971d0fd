import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from config.settings import settings
from ..messaging.producer import EmailEventProducer
from ..messaging.schemas import SendJob
from ..models.database import SessionLocal
from ..models.schedule import EmailSchedule
from ..services.analytics_service import analytics_service
from ..services.email_service import email_service

logger = logging.getLogger(__name__)

DISPATCHABLE_STATUSES = ("scheduled", "deferred")


class ScheduleDispatcher:
    """
    Publishes scheduled sends and delayed retries once they are due
    """

    def __init__(self, producer: EmailEventProducer,
                 session_factory: Callable[[], Session] = SessionLocal,
                 batch_size: Optional[int] = None):
        self.producer = producer
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE
        self.is_running = False
        self.interval = settings.SCHEDULER_INTERVAL_SECONDS
        self.cycle_in_progress = False  # Lock to prevent overlapping cycles
        self.stats = {
            "total_cycles": 0,
            "dispatched": 0,
            "cancelled": 0,
            "errors": 0,
            "last_run_at": None,
            "last_cycle_duration": 0,
        }

    async def run_once(self) -> int:
        """Dispatch every due schedule in one batch; returns how many were published"""
        db = self.session_factory()
        dispatched = 0
        try:
            now = datetime.now(timezone.utc)
            due = (
                db.query(EmailSchedule)
                .filter(EmailSchedule.status == "pending", EmailSchedule.scheduled_at <= now)
                .order_by(EmailSchedule.scheduled_at, EmailSchedule.id)
                .limit(self.batch_size)
                .all()
            )
            for schedule in due:
                email_record = schedule.email
                if email_record is None or email_record.status not in DISPATCHABLE_STATUSES:
                    schedule.mark_cancelled()
                    db.commit()
                    self.stats["cancelled"] += 1
                    logger.info(f"Cancelled schedule {schedule.id}: email no longer awaiting dispatch")
                    continue

                email_record.status = "queued"
                schedule.mark_dispatched()
                analytics_service.record(db, email_record, "queued", kind=schedule.kind, attempt=schedule.attempt)
                db.commit()

                job = SendJob(email_id=email_record.id, message_id=email_record.message_id, attempt=schedule.attempt)
                if await email_service.dispatch_send(db, self.producer, job):
                    dispatched += 1
                    logger.info(f"Dispatched {schedule.kind} send of email {email_record.id} (attempt {schedule.attempt})")

            self.stats["dispatched"] += dispatched
            return dispatched
        finally:
            db.close()

    async def run_forever(self) -> None:
        if self.is_running:
            logger.warning("Schedule dispatcher is already running")
            return

        self.is_running = True
        logger.info(f"Starting schedule dispatcher (interval: {self.interval}s)")
        while self.is_running:
            if not self.cycle_in_progress:
                await self._cycle()
            else:
                logger.info("Previous dispatch cycle still in progress, skipping this cycle")
            await asyncio.sleep(self.interval)

    async def _cycle(self) -> None:
        self.cycle_in_progress = True
        start_time = time.time()
        try:
            count = await self.run_once()
            if count:
                logger.info(f"Dispatch cycle published {count} job(s)")
        except Exception as e:
            self.stats["errors"] += 1
            logger.error(f"Error in dispatch cycle: {e}", exc_info=True)
        finally:
            self.stats["total_cycles"] += 1
            self.stats["last_run_at"] = datetime.now(timezone.utc)
            self.stats["last_cycle_duration"] = round(time.time() - start_time, 3)
            self.cycle_in_progress = False

    def stop(self) -> None:
        logger.info("Stopping schedule dispatcher")
        self.is_running = False

    def get_status(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        if stats["last_run_at"]:
            stats["last_run_at"] = stats["last_run_at"].isoformat()
        return {
            "is_running": self.is_running,
            "interval_seconds": self.interval,
            "cycle_in_progress": self.cycle_in_progress,
            "stats": stats,
        }
