from .database import Base, engine, get_db, SessionLocal
from .email import Email, EmailAttachment, EmailLabel, EmailRecipient, EmailThread, email_label_assignments
from .user import User, UserSettings
from .template import EmailTemplate
from .schedule import EmailSchedule
from .analytics import EmailAnalytics

__all__ = [
    "Base",
    "engine",
    "get_db",
    "SessionLocal",
    "Email",
    "EmailAttachment",
    "EmailLabel",
    "EmailRecipient",
    "EmailThread",
    "email_label_assignments",
    "User",
    "UserSettings",
    "EmailTemplate",
    "EmailSchedule",
    "EmailAnalytics"
]
