"""
Exception hierarchy for the mail client backend.

API errors carry the HTTP status they map to; ``main.py`` turns them into
``{"error", "message", "path"}`` responses. Delivery errors are raised by the
SMTP layer and consumed by the send worker's retry logic.
"""

from typing import Dict, Optional, Tuple


class MailClientError(Exception):
    """Base exception for request-level failures"""
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(MailClientError):
    status_code = 404


class AuthenticationError(MailClientError):
    status_code = 401


class PermissionDeniedError(MailClientError):
    status_code = 403


class ConflictError(MailClientError):
    status_code = 409


class PayloadTooLargeError(MailClientError):
    status_code = 413


class InvalidRequestError(MailClientError):
    status_code = 422


class TemplateRenderError(InvalidRequestError):
    pass


class DeliveryError(Exception):
    """Base exception for SMTP delivery failures"""

    def __init__(self, message: str, smtp_code: Optional[int] = None,
                 refused: Optional[Dict[str, Tuple[int, str]]] = None):
        super().__init__(message)
        self.message = message
        self.smtp_code = smtp_code
        # Per-recipient (code, reply) when the server refused recipients individually
        self.refused = refused or {}


class TransientDeliveryError(DeliveryError):
    """Delivery may succeed if retried later (4xx, connection problems)"""
    pass


class PermanentDeliveryError(DeliveryError):
    """Delivery will not succeed on retry (5xx, all recipients refused)"""
    pass
