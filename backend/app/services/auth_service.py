"""
Authentication service for the mail client backend
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy import or_
from sqlalchemy.orm import Session

from config.settings import settings
from ..exceptions import AuthenticationError, ConflictError, InvalidRequestError, PermissionDeniedError
from ..models.database import get_db
from ..models.user import User, UserSettings
from .mime_service import reject_line_breaks
import logging

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

MIN_PASSWORD_LENGTH = 8
# bcrypt refuses anything longer
MAX_PASSWORD_BYTES = 72


def check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidRequestError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise InvalidRequestError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database
        return False


def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a signed JWT whose subject is the user id"""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": str(user.id), "exp": expire}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def get_user_from_token(token: str, db: Session) -> Optional[User]:
    """Resolve a token to an active user, None when the token is unusable"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            return None
        user_id = int(subject)
    except (JWTError, ValueError):
        return None

    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        return None
    return user


def register_user(db: Session, email: str, username: str, password: str, full_name: Optional[str] = None) -> User:
    """Create a user with default settings"""
    check_password(password)
    reject_line_breaks("Full name", full_name)

    email = email.strip().lower()
    existing = db.query(User).filter(or_(User.email == email, User.username == username)).first()
    if existing:
        field = "Email" if existing.email == email else "Username"
        raise ConflictError(f"{field} is already registered")

    user = User(
        email=email,
        username=username,
        hashed_password=hash_password(password),
        full_name=full_name,
        is_active=True,
        # First account administers the instance
        is_admin=db.query(User).count() == 0,
    )
    user.settings = UserSettings(display_name=full_name)
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(f"Registered user {user.id} ({user.email})")
    return user


def authenticate_user(db: Session, login: str, password: str) -> User:
    """Check credentials by username or email and stamp last_login"""
    login = login.strip()
    user = db.query(User).filter(or_(User.username == login, User.email == login.lower())).first()
    if not user or not verify_password(password, user.hashed_password):
        logger.warning(f"Failed login attempt for '{login}'")
        raise AuthenticationError("Incorrect username or password")
    if not user.is_active:
        raise AuthenticationError("User account is disabled")

    user.last_login = datetime.now(timezone.utc)
    db.commit()
    return user


def change_password(db: Session, user: User, current_password: str, new_password: str) -> None:
    if not verify_password(current_password, user.hashed_password):
        raise AuthenticationError("Current password is incorrect")
    check_password(new_password)

    user.hashed_password = hash_password(new_password)
    db.commit()
    logger.info(f"Password changed for user {user.id}")


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> User:
    """Get current authenticated user"""
    user = get_user_from_token(token, db)
    if user is None:
        raise AuthenticationError("Invalid authentication credentials")
    return user


def get_current_admin(current_user: User = Depends(get_current_user)) -> User:
    """Current user, required to be an administrator"""
    if not current_user.is_admin:
        raise PermissionDeniedError("Administrator privileges required")
    return current_user
