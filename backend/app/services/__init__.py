from .email_service import EmailService
from .thread_service import ThreadService
from .template_service import TemplateService
from .label_service import LabelService
from .user_service import UserService
from .analytics_service import AnalyticsService
from .smtp_service import SMTPService

__all__ = [
    "EmailService",
    "ThreadService",
    "TemplateService",
    "LabelService",
    "UserService",
    "AnalyticsService",
    "SMTPService"
]
