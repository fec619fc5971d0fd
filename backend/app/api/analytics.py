from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel
import logging

from ..models.database import get_db
from ..models.user import User
from ..services.analytics_service import analytics_service
from ..services.auth_service import get_current_user
from ..services.email_service import email_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analytics"])

class EventResponse(BaseModel):
    id: int
    event_type: str
    detail: Optional[Dict[str, Any]]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True

@router.get("/summary")
async def get_summary(
    days: int = Query(30, ge=1, le=365, description="Number of days to analyze"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Pipeline event counts and delivery rate for the period"""
    return analytics_service.get_summary(db, current_user.id, days=days)

@router.get("/daily")
async def get_daily_counts(
    days: int = Query(14, ge=1, le=365, description="Number of days to analyze"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Sent and received counts per day, oldest first"""
    return analytics_service.get_daily_counts(db, current_user.id, days=days)

@router.get("/emails/{email_id}/events", response_model=List[EventResponse])
async def get_email_events(
    email_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    email_record = email_service.get_email_by_id(db, current_user, email_id)
    return analytics_service.get_email_events(db, email_record.id)
