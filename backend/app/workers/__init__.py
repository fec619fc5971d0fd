from .send_worker import SendWorker, compute_backoff
from .receive_worker import ReceiveWorker
from .scheduler import ScheduleDispatcher
from .smtp_receiver import InboundSMTPHandler, create_controller

__all__ = [
    "SendWorker",
    "compute_backoff",
    "ReceiveWorker",
    "ScheduleDispatcher",
    "InboundSMTPHandler",
    "create_controller"
]
