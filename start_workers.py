#!/usr/bin/env python3
"""
Pipeline Worker Starter

This script runs the send consumer, the receive consumer and the schedule
dispatcher in one process until it is interrupted.
"""

import asyncio
import logging
import signal
import sys

# Add the backend directory to the path
sys.path.append('backend')

from config.settings import settings
from app.messaging import EmailConsumer, EmailEventProducer
from app.workers import ReceiveWorker, ScheduleDispatcher, SendWorker

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

STATUS_LOG_INTERVAL_SECONDS = 300

# Global flag for graceful shutdown
shutdown_requested = False

def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True

async def main():
    """Run both consumers and the dispatcher until a shutdown signal arrives"""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    producer = EmailEventProducer(client_id=f"{settings.KAFKA_CLIENT_ID}-workers")
    send_worker = SendWorker(producer)
    receive_worker = ReceiveWorker()
    send_consumer = EmailConsumer(settings.KAFKA_SEND_TOPIC, send_worker.handle, producer)
    receive_consumer = EmailConsumer(settings.KAFKA_RECEIVE_TOPIC, receive_worker.handle, producer)
    dispatcher = ScheduleDispatcher(producer)

    logger.info("Starting mail pipeline workers")
    logger.info("Press Ctrl+C to stop the service")

    tasks = [
        asyncio.create_task(send_consumer.run(), name="send-consumer"),
        asyncio.create_task(receive_consumer.run(), name="receive-consumer"),
        asyncio.create_task(dispatcher.run_forever(), name="schedule-dispatcher"),
    ]

    elapsed = 0
    try:
        while not shutdown_requested:
            await asyncio.sleep(1)
            elapsed += 1

            for task in tasks:
                if task.done() and not task.cancelled() and task.exception():
                    raise RuntimeError(f"{task.get_name()} crashed: {task.exception()}")

            if elapsed % STATUS_LOG_INTERVAL_SECONDS == 0:
                logger.info(f"Send worker: {send_worker.stats}, receive worker: {receive_worker.stats}, "
                            f"dispatcher: {dispatcher.get_status()['stats']}")
    finally:
        logger.info("Stopping pipeline workers...")
        send_consumer.stop()
        receive_consumer.stop()
        dispatcher.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await producer.stop()
        logger.info("Pipeline workers stopped")

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Service interrupted by user")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)
