"""
Outbound SMTP delivery with aiosmtplib
"""

import asyncio
import logging
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Dict, List, Optional, Tuple

import aiosmtplib

from config.settings import settings
from ..exceptions import DeliveryError, PermanentDeliveryError, TransientDeliveryError

logger = logging.getLogger(__name__)


@dataclass
class SMTPResult:
    """Outcome of one SMTP transaction"""
    accepted: List[str]
    refused: Dict[str, Tuple[int, str]] = field(default_factory=dict)
    response: str = ""

    @property
    def smtp_code(self) -> Optional[int]:
        try:
            return int(self.response.split(" ", 1)[0])
        except (ValueError, IndexError):
            return None


def classify_smtp_error(exc: BaseException) -> DeliveryError:
    """Map a transport exception onto transient or permanent delivery failure"""
    if isinstance(exc, DeliveryError):
        return exc

    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        refused = {r.recipient: (r.code, r.message) for r in exc.recipients}
        codes = [code for code, _ in refused.values()]
        message = "; ".join(f"{address}: {code} {reply}" for address, (code, reply) in refused.items())
        # Only retry when every refusal was a temporary one
        if codes and all(400 <= code < 500 for code in codes):
            return TransientDeliveryError(message, smtp_code=codes[0], refused=refused)
        permanent = [code for code in codes if code >= 500]
        return PermanentDeliveryError(message, smtp_code=permanent[0] if permanent else None, refused=refused)

    if isinstance(exc, aiosmtplib.SMTPResponseException):
        message = f"{exc.code} {exc.message}"
        if 400 <= exc.code < 500:
            return TransientDeliveryError(message, smtp_code=exc.code)
        return PermanentDeliveryError(message, smtp_code=exc.code)

    if isinstance(exc, (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected,
                        aiosmtplib.SMTPTimeoutError, asyncio.TimeoutError, OSError)):
        return TransientDeliveryError(f"SMTP connection failed: {exc}")

    return PermanentDeliveryError(f"SMTP delivery failed: {exc}")


class SMTPService:

    def __init__(self, hostname: Optional[str] = None, port: Optional[int] = None,
                 username: Optional[str] = None, password: Optional[str] = None,
                 use_tls: Optional[bool] = None, start_tls: Optional[bool] = None,
                 timeout: Optional[int] = None):
        self.hostname = hostname or settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.username = username if username is not None else settings.SMTP_USERNAME
        self.password = password if password is not None else settings.SMTP_PASSWORD
        self.use_tls = settings.SMTP_USE_TLS if use_tls is None else use_tls
        # Implicit TLS and STARTTLS are mutually exclusive
        self.start_tls = (settings.SMTP_START_TLS if start_tls is None else start_tls) and not self.use_tls
        self.timeout = timeout or settings.SMTP_TIMEOUT

    async def send(self, message: EmailMessage, sender: str, recipients: List[str]) -> SMTPResult:
        """
        Deliver one message to the given envelope recipients.

        Raises TransientDeliveryError or PermanentDeliveryError. A partial
        refusal (some recipients accepted) is reported in the result instead.
        """
        if not recipients:
            raise PermanentDeliveryError("No recipients to deliver to")

        logger.info(f"Sending {message['Message-ID']} via {self.hostname}:{self.port} to {len(recipients)} recipient(s)")
        try:
            refused, response = await aiosmtplib.send(
                message,
                sender=sender,
                recipients=recipients,
                hostname=self.hostname,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                use_tls=self.use_tls,
                start_tls=self.start_tls,
                timeout=self.timeout,
            )
        except Exception as e:
            error = classify_smtp_error(e)
            logger.warning(f"SMTP delivery of {message['Message-ID']} failed "
                           f"({type(error).__name__}): {error.message}")
            raise error from e

        refused_map = {address: (reply.code, reply.message) for address, reply in (refused or {}).items()}
        accepted = [address for address in recipients if address not in refused_map]
        return SMTPResult(accepted=accepted, refused=refused_map, response=response or "")
