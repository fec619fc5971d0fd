#!/usr/bin/env python3
"""
Inbound SMTP Receiver Starter

Accepts mail for MAIL_DOMAIN and queues it on the email-receive topic.
"""

import asyncio
import logging
import signal
import sys
import time

# Add the backend directory to the path
sys.path.append('backend')

from config.settings import settings
from app.messaging import EmailEventProducer
from app.workers import create_controller

# Configure logging
handlers = [logging.StreamHandler(sys.stdout)]
if settings.LOG_FILE:
    handlers.append(logging.FileHandler(settings.LOG_FILE))
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=handlers
)

logger = logging.getLogger(__name__)

# Global flag for graceful shutdown
shutdown_requested = False

def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True

def main():
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    producer = EmailEventProducer(client_id=f"{settings.KAFKA_CLIENT_ID}-smtp")
    controller = create_controller(producer)
    controller.start()
    logger.info(f"Inbound SMTP receiver listening on {controller.hostname}:{controller.port} "
                f"for @{settings.MAIL_DOMAIN}")

    try:
        while not shutdown_requested:
            time.sleep(1)
    finally:
        # The producer lives on the controller's event loop
        future = asyncio.run_coroutine_threadsafe(producer.stop(), controller.loop)
        try:
            future.result(timeout=10)
        except Exception as e:
            logger.warning(f"Kafka producer did not stop cleanly: {e}")
        controller.stop()
        logger.info(f"Handled: {controller.handler.stats}")
        logger.info("Inbound SMTP receiver stopped")

if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("Service interrupted by user")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)
