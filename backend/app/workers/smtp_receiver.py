"""
Inbound SMTP server: accepts mail for the local domain and queues it on the
email-receive topic for the receive worker.
"""

import logging
from typing import Optional

from aiosmtpd.controller import Controller

from config.settings import settings
from ..messaging.producer import EmailEventProducer
from ..messaging.schemas import ReceiveJob
from ..services.mime_service import split_address

logger = logging.getLogger(__name__)


class InboundSMTPHandler:
    """aiosmtpd handler; the SMTP dialogue itself is handled by aiosmtpd"""

    def __init__(self, producer: EmailEventProducer, domain: Optional[str] = None):
        self.producer = producer
        self.domain = (domain or settings.MAIL_DOMAIN).lower()
        self.stats = {"accepted": 0, "rejected_recipients": 0, "queue_errors": 0}

    async def handle_RCPT(self, server, session, envelope, address, rcpt_options):
        if split_address(address)[1] != self.domain:
            self.stats["rejected_recipients"] += 1
            logger.info(f"Rejecting relay attempt to {address} from {session.peer}")
            return "550 5.7.1 Relaying denied"
        envelope.rcpt_tos.append(address)
        return "250 OK"

    async def handle_DATA(self, server, session, envelope):
        content = envelope.original_content or envelope.content
        if isinstance(content, str):
            content = content.encode("utf-8")

        job = ReceiveJob.from_bytes(content, list(envelope.rcpt_tos), source="smtp")
        try:
            await self.producer.publish(settings.KAFKA_RECEIVE_TOPIC, job)
        except Exception as e:
            self.stats["queue_errors"] += 1
            logger.error(f"Could not queue inbound message from {envelope.mail_from}: {e}")
            return "451 4.3.0 Temporary failure, please retry"

        self.stats["accepted"] += 1
        logger.info(f"Accepted message from {envelope.mail_from} for {len(envelope.rcpt_tos)} recipient(s)")
        return "250 Message accepted for delivery"


def create_controller(producer: EmailEventProducer, hostname: Optional[str] = None,
                      port: Optional[int] = None) -> Controller:
    handler = InboundSMTPHandler(producer)
    return Controller(
        handler,
        hostname=hostname or settings.INBOUND_SMTP_HOST,
        port=port or settings.INBOUND_SMTP_PORT,
        data_size_limit=settings.max_message_bytes,
    )
