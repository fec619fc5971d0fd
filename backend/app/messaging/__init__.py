from .schemas import SendJob, ReceiveJob, DeadLetter
from .producer import EmailEventProducer, event_producer, get_producer
from .consumer import EmailConsumer

__all__ = [
    "SendJob",
    "ReceiveJob",
    "DeadLetter",
    "EmailEventProducer",
    "event_producer",
    "get_producer",
    "EmailConsumer"
]
