from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field
import logging

from ..models.database import get_db
from ..models.user import User
from ..services.auth_service import get_current_user
from ..services.template_service import template_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["templates"])

class TemplateResponse(BaseModel):
    id: int
    name: str
    subject: Optional[str]
    body_plain: Optional[str]
    body_html: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True

class TemplateCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    subject: str = ""
    body_plain: Optional[str] = None
    body_html: Optional[str] = None

class TemplateUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    subject: Optional[str] = None
    body_plain: Optional[str] = None
    body_html: Optional[str] = None

class RenderRequest(BaseModel):
    context: Dict[str, Any] = {}

class RenderResponse(BaseModel):
    subject: Optional[str]
    body_plain: Optional[str]
    body_html: Optional[str]

@router.get("/", response_model=List[TemplateResponse])
async def get_templates(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return template_service.list_templates(db, current_user.id)

@router.post("/", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    request: TemplateCreateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return template_service.create_template(db, current_user.id, **request.model_dump())

@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(
    template_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return template_service.get_template(db, current_user.id, template_id)

@router.put("/{template_id}", response_model=TemplateResponse)
async def update_template(
    template_id: int,
    request: TemplateUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return template_service.update_template(db, current_user.id, template_id, **request.model_dump(exclude_unset=True))

@router.delete("/{template_id}")
async def delete_template(
    template_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    template_service.delete_template(db, current_user.id, template_id)
    return {"success": True}

@router.post("/{template_id}/render", response_model=RenderResponse)
async def render_template(
    template_id: int,
    request: RenderRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Render subject and bodies against a context without saving anything"""
    template = template_service.get_template(db, current_user.id, template_id)
    return template_service.render(template, request.context)
