from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel, Field
import logging

from ..models.database import get_db
from ..models.user import User
from ..services.auth_service import get_current_admin, get_current_user
from ..services.user_service import user_service
from .auth import UserResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["users"])

class ProfileUpdateRequest(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = Field(None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

class SettingsResponse(BaseModel):
    display_name: Optional[str]
    signature: Optional[str]
    reply_to: Optional[str]
    timezone: str
    page_size: int
    notifications_enabled: bool
    theme: str

    class Config:
        from_attributes = True

class SettingsUpdateRequest(BaseModel):
    display_name: Optional[str] = None
    signature: Optional[str] = None
    reply_to: Optional[str] = None
    timezone: Optional[str] = None
    page_size: Optional[int] = Field(None, ge=1, le=100)
    notifications_enabled: Optional[bool] = None
    theme: Optional[str] = Field(None, pattern=r"^(light|dark)$")

class PaginatedUsersResponse(BaseModel):
    users: List[UserResponse]
    total_count: int
    page: int
    page_size: int
    total_pages: int

class UserStatusRequest(BaseModel):
    is_active: bool

@router.get("/me", response_model=UserResponse)
async def get_profile(current_user: User = Depends(get_current_user)):
    return current_user

@router.patch("/me", response_model=UserResponse)
async def update_profile(
    request: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return user_service.update_profile(db, current_user, full_name=request.full_name, email=request.email)

@router.get("/me/settings", response_model=SettingsResponse)
async def get_settings(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return user_service.get_settings(db, current_user)

@router.put("/me/settings", response_model=SettingsResponse)
async def update_settings(
    request: SettingsUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return user_service.update_settings(db, current_user, **request.model_dump(exclude_unset=True))

@router.get("/", response_model=PaginatedUsersResponse)
async def list_users(
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """List all accounts (administrators only)"""
    return user_service.list_users(db, page=page, page_size=page_size)

@router.patch("/{user_id}/status", response_model=UserResponse)
async def set_user_status(
    user_id: int,
    request: UserStatusRequest,
    admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Enable or disable an account (administrators only)"""
    return user_service.set_active(db, user_id, request.is_active)
