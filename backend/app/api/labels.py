from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel, Field
import logging

from ..models.database import get_db
from ..models.user import User
from ..services.auth_service import get_current_user
from ..services.label_service import label_service
from .emails import EmailResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["labels"])

class LabelResponse(BaseModel):
    id: int
    name: str
    color: Optional[str]
    email_count: int = 0

    class Config:
        from_attributes = True

class LabelCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(None, max_length=20)

class LabelUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[str] = Field(None, max_length=20)

@router.get("/", response_model=List[LabelResponse])
async def get_labels(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the user's labels with email counts"""
    return label_service.list_labels(db, current_user.id)

@router.post("/", response_model=LabelResponse, status_code=status.HTTP_201_CREATED)
async def create_label(
    request: LabelCreateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    label = label_service.create_label(db, current_user.id, request.name, request.color)
    return LabelResponse(id=label.id, name=label.name, color=label.color)

@router.patch("/{label_id}", response_model=LabelResponse)
async def update_label(
    label_id: int,
    request: LabelUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    label = label_service.update_label(db, current_user.id, label_id, name=request.name, color=request.color)
    return LabelResponse(id=label.id, name=label.name, color=label.color, email_count=len(label.emails))

@router.delete("/{label_id}")
async def delete_label(
    label_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    label_service.delete_label(db, current_user.id, label_id)
    return {"success": True}

@router.get("/{label_id}/emails", response_model=List[EmailResponse])
async def get_emails_by_label(
    label_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get emails carrying a specific label"""
    return label_service.get_label_emails(db, current_user.id, label_id)
