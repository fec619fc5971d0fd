from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field
import logging

from config.settings import settings
from ..models.database import get_db
from ..models.user import User
from ..services import auth_service
from ..services.auth_service import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(tags=["authentication"])

# Pydantic models for request/response
class RegisterRequest(BaseModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    username: str = Field(..., min_length=3, max_length=100)
    password: str
    full_name: Optional[str] = None

class LoginRequest(BaseModel):
    username: str  # Username or email
    password: str

class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int

class UserResponse(BaseModel):
    id: int
    email: str
    username: str
    full_name: Optional[str]
    is_active: bool
    is_admin: bool
    last_login: Optional[datetime]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True

def _token_for(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=auth_service.create_access_token(user),
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )

@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """Create an account"""
    return auth_service.register_user(
        db,
        email=request.email,
        username=request.username,
        password=request.password,
        full_name=request.full_name,
    )

@router.post("/login", response_model=TokenResponse)
async def login(request: LoginRequest, db: Session = Depends(get_db)):
    """Exchange credentials for a bearer token"""
    user = auth_service.authenticate_user(db, request.username, request.password)
    logger.info(f"User {user.id} logged in")
    return _token_for(user)

@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(current_user: User = Depends(get_current_user)):
    """Issue a fresh token for the current user"""
    return _token_for(current_user)

@router.get("/me", response_model=UserResponse)
async def read_current_user(current_user: User = Depends(get_current_user)):
    return current_user

@router.post("/change-password")
async def change_password(
    request: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    auth_service.change_password(db, current_user, request.current_password, request.new_password)
    return {"success": True}
