from sqlalchemy.orm import Session
from typing import Dict, Optional, Any
from ..exceptions import ConflictError, InvalidRequestError, NotFoundError
from ..models.user import User, UserSettings
from .mime_service import reject_line_breaks
import logging

logger = logging.getLogger(__name__)

SETTINGS_FIELDS = ("display_name", "signature", "reply_to", "timezone", "page_size", "notifications_enabled", "theme")

class UserService:

    def get_user(self, db: Session, user_id: int) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError("User not found")
        return user

    def get_user_by_email(self, db: Session, address: str) -> Optional[User]:
        return db.query(User).filter(User.email == address.strip().lower()).first()

    def update_profile(self, db: Session, user: User, full_name: Optional[str] = None,
                       email: Optional[str] = None) -> User:
        reject_line_breaks("Full name", full_name)
        if email is not None:
            email = email.strip().lower()
            if email != user.email:
                if self.get_user_by_email(db, email):
                    raise ConflictError("Email is already registered")
                user.email = email
        if full_name is not None:
            user.full_name = full_name
        db.commit()
        db.refresh(user)
        return user

    def get_settings(self, db: Session, user: User) -> UserSettings:
        """Settings row for a user, created with defaults if missing"""
        if user.settings is None:
            user.settings = UserSettings(display_name=user.full_name)
            db.commit()
            db.refresh(user)
        return user.settings

    def update_settings(self, db: Session, user: User, **fields) -> UserSettings:
        user_settings = self.get_settings(db, user)
        page_size = fields.get("page_size")
        if page_size is not None and not 1 <= page_size <= 100:
            raise InvalidRequestError("page_size must be between 1 and 100")
        reject_line_breaks("Display name", fields.get("display_name"))
        reject_line_breaks("Reply-To", fields.get("reply_to"))

        for field_name, value in fields.items():
            if field_name in SETTINGS_FIELDS and value is not None:
                setattr(user_settings, field_name, value)
        db.commit()
        db.refresh(user_settings)
        return user_settings

    def list_users(self, db: Session, page: int = 1, page_size: int = 25) -> Dict[str, Any]:
        query = db.query(User).order_by(User.id)
        total_count = query.count()
        users = query.offset((page - 1) * page_size).limit(page_size).all()
        return {
            "users": users,
            "total_count": total_count,
            "page": page,
            "page_size": page_size,
            "total_pages": (total_count + page_size - 1) // page_size
        }

    def set_active(self, db: Session, user_id: int, is_active: bool) -> User:
        user = self.get_user(db, user_id)
        user.is_active = is_active
        db.commit()
        db.refresh(user)
        logger.info(f"User {user_id} {'activated' if is_active else 'deactivated'}")
        return user

user_service = UserService()
