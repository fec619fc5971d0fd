from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from sqlalchemy.orm import Session
from typing import List, Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field
from urllib.parse import quote
import logging

from ..exceptions import InvalidRequestError
from ..messaging.producer import EmailEventProducer, get_producer
from ..models.database import get_db
from ..models.user import User
from ..services.auth_service import get_current_user
from ..services.email_service import email_service
from ..services.label_service import label_service
from ..services.thread_service import thread_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["emails"])

def content_disposition(filename: Optional[str], disposition: str = "attachment") -> str:
    """Quoted ASCII filename, plus the RFC 5987 UTF-8 form when the name needs it"""
    filename = filename or "attachment"
    fallback = "".join(c if 32 <= ord(c) < 127 and c not in '"\\' else "_" for c in filename)
    value = f'{disposition}; filename="{fallback}"'
    if fallback != filename:
        value += f"; filename*=UTF-8''{quote(filename, safe='')}"
    return value

# Pydantic models for request/response
class RecipientResponse(BaseModel):
    address: str
    name: Optional[str]
    recipient_type: str
    delivery_status: str
    smtp_code: Optional[int]
    smtp_message: Optional[str]

    class Config:
        from_attributes = True

class AttachmentResponse(BaseModel):
    id: int
    filename: Optional[str]
    content_type: Optional[str]
    size: Optional[int]
    content_id: Optional[str]
    is_inline: bool
    checksum: Optional[str]

    class Config:
        from_attributes = True

class LabelBrief(BaseModel):
    id: int
    name: str
    color: Optional[str]

    class Config:
        from_attributes = True

class EmailResponse(BaseModel):
    id: int
    thread_id: Optional[int]
    message_id: str
    folder: str
    direction: str
    status: str
    sender: Optional[str]
    subject: Optional[str]
    is_read: bool
    is_starred: bool
    is_important: bool
    has_attachments: bool
    size: Optional[int]
    sent_at: Optional[datetime]
    received_at: Optional[datetime]
    created_at: Optional[datetime]
    recipients: List[RecipientResponse] = []
    labels: List[LabelBrief] = []

    class Config:
        from_attributes = True

class EmailDetailResponse(EmailResponse):
    in_reply_to: Optional[str]
    references: Optional[str]
    body_plain: Optional[str]
    body_html: Optional[str]
    retry_count: int
    last_error: Optional[str]
    attachments: List[AttachmentResponse] = []

class EmailListResponse(BaseModel):
    emails: List[EmailResponse]
    total_count: int
    page: int
    page_size: int
    total_pages: int

class ThreadResponse(BaseModel):
    id: int
    subject: Optional[str]
    message_count: int
    last_message_at: Optional[datetime]

    class Config:
        from_attributes = True

class ThreadListResponse(BaseModel):
    threads: List[ThreadResponse]
    total_count: int
    page: int
    page_size: int
    total_pages: int

class ComposeRequest(BaseModel):
    to: List[str] = []
    cc: List[str] = []
    bcc: List[str] = []
    subject: Optional[str] = None
    body_plain: Optional[str] = None
    body_html: Optional[str] = None
    in_reply_to: Optional[str] = None
    template_id: Optional[int] = None
    template_context: Optional[Dict[str, Any]] = None

class DraftUpdateRequest(BaseModel):
    to: Optional[List[str]] = None
    cc: Optional[List[str]] = None
    bcc: Optional[List[str]] = None
    subject: Optional[str] = None
    body_plain: Optional[str] = None
    body_html: Optional[str] = None

class ScheduleRequest(BaseModel):
    send_at: datetime

class MoveRequest(BaseModel):
    folder: str

class BulkUpdateRequest(BaseModel):
    email_ids: List[int] = Field(..., min_length=1)
    is_read: Optional[bool] = None
    is_starred: Optional[bool] = None
    is_important: Optional[bool] = None
    folder: Optional[str] = None

class SendResponse(BaseModel):
    success: bool
    email_id: int
    message_id: str
    status: str

async def _send(db: Session, user: User, producer: EmailEventProducer, email_id: int) -> SendResponse:
    job = email_service.queue_send(db, user, email_id)
    await email_service.dispatch_send(db, producer, job)
    email_record = email_service.get_email_by_id(db, user, email_id)
    return SendResponse(success=True, email_id=email_record.id,
                        message_id=email_record.message_id, status=email_record.status)

@router.get("/", response_model=EmailListResponse)
async def get_emails(
    folder: Optional[str] = Query("inbox", description="Folder to list"),
    q: Optional[str] = Query(None, description="Search subject, sender and body"),
    label: Optional[str] = Query(None, description="Filter by label name"),
    is_read: Optional[bool] = Query(None, description="Filter by read status"),
    is_starred: Optional[bool] = Query(None, description="Filter by starred status"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: Optional[int] = Query(None, ge=1, le=100, description="Number of emails per page"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get paginated list of emails with optional filtering"""
    return email_service.search_emails(
        db,
        current_user,
        folder=folder,
        query=q,
        label=label,
        is_read=is_read,
        is_starred=is_starred,
        page=page,
        page_size=page_size
    )

@router.get("/stats")
async def get_email_stats(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Get email statistics"""
    return email_service.get_email_statistics(db, current_user)

@router.get("/threads", response_model=ThreadListResponse)
async def get_threads(
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return thread_service.list_threads(db, current_user.id, page=page, page_size=page_size)

@router.post("/drafts", response_model=EmailDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_draft(
    request: ComposeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Compose a new draft"""
    return email_service.create_draft(db, current_user, **request.model_dump())

@router.put("/drafts/{email_id}", response_model=EmailDetailResponse)
async def update_draft(
    email_id: int,
    request: DraftUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return email_service.update_draft(db, current_user, email_id, **request.model_dump())

@router.post("/send", response_model=SendResponse, status_code=status.HTTP_202_ACCEPTED)
async def compose_and_send(
    request: ComposeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    producer: EmailEventProducer = Depends(get_producer)
):
    """Compose a message and queue it for delivery in one step"""
    if not (request.to or request.cc or request.bcc):
        raise InvalidRequestError("At least one recipient is required")
    email_record = email_service.create_draft(db, current_user, **request.model_dump())
    return await _send(db, current_user, producer, email_record.id)

@router.patch("/bulk/update")
async def bulk_update_emails(
    request: BulkUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Bulk update multiple emails"""
    updated_count = email_service.bulk_update_emails(
        db,
        current_user,
        request.email_ids,
        folder=request.folder,
        is_read=request.is_read,
        is_starred=request.is_starred,
        is_important=request.is_important
    )
    return {"success": True, "updated_count": updated_count}

@router.get("/{email_id}", response_model=EmailDetailResponse)
async def get_email(
    email_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get a specific email by ID"""
    return email_service.get_email_by_id(db, current_user, email_id)

@router.post("/{email_id}/send", response_model=SendResponse, status_code=status.HTTP_202_ACCEPTED)
async def send_email(
    email_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    producer: EmailEventProducer = Depends(get_producer)
):
    """Queue an existing draft for delivery"""
    return await _send(db, current_user, producer, email_id)

@router.post("/{email_id}/schedule", status_code=status.HTTP_201_CREATED)
async def schedule_email(
    email_id: int,
    request: ScheduleRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    schedule = email_service.schedule_send(db, current_user, email_id, request.send_at)
    return {
        "success": True,
        "email_id": email_id,
        "schedule_id": schedule.id,
        "scheduled_at": schedule.scheduled_at
    }

@router.delete("/{email_id}/schedule", response_model=EmailDetailResponse)
async def cancel_schedule(
    email_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return email_service.cancel_schedule(db, current_user, email_id)

@router.patch("/{email_id}/read")
async def mark_as_read(
    email_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Mark email as read"""
    email_record = email_service.mark_email_as_read(db, current_user, email_id)
    return {"success": True, "is_read": email_record.is_read}

@router.patch("/{email_id}/unread")
async def mark_as_unread(
    email_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Mark email as unread"""
    email_record = email_service.mark_email_as_unread(db, current_user, email_id)
    return {"success": True, "is_read": email_record.is_read}

@router.patch("/{email_id}/star")
async def toggle_star(
    email_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Toggle star status"""
    email_record = email_service.toggle_star(db, current_user, email_id)
    return {"success": True, "is_starred": email_record.is_starred}

@router.patch("/{email_id}/important")
async def toggle_important(
    email_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Toggle important status"""
    email_record = email_service.toggle_important(db, current_user, email_id)
    return {"success": True, "is_important": email_record.is_important}

@router.post("/{email_id}/move")
async def move_email(
    email_id: int,
    request: MoveRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    email_record = email_service.move_email(db, current_user, email_id, request.folder)
    return {"success": True, "folder": email_record.folder}

@router.delete("/{email_id}")
async def delete_email(
    email_id: int,
    permanent: bool = Query(False, description="Skip the trash"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Move an email to trash, or delete it when it is already there"""
    result = email_service.delete_email(db, current_user, email_id, permanent=permanent)
    return {"success": True, "result": result}

@router.get("/{email_id}/thread", response_model=List[EmailDetailResponse])
async def get_email_thread(
    email_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """All emails of the conversation, oldest first"""
    email_record = email_service.get_email_by_id(db, current_user, email_id)
    if email_record.thread_id is None:
        return [email_record]
    return thread_service.get_thread_emails(db, current_user.id, email_record.thread_id)

@router.post("/{email_id}/attachments", response_model=AttachmentResponse, status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    email_id: int,
    file: UploadFile = File(...),
    is_inline: bool = Form(False),
    content_id: Optional[str] = Form(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    data = await file.read()
    return email_service.add_attachment(
        db,
        current_user,
        email_id,
        filename=file.filename or "attachment",
        content_type=file.content_type,
        data=data,
        is_inline=is_inline,
        content_id=content_id
    )

@router.get("/{email_id}/attachments", response_model=List[AttachmentResponse])
async def get_email_attachments(
    email_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get attachments for an email"""
    return email_service.get_email_attachments(db, current_user, email_id)

@router.get("/{email_id}/attachments/{attachment_id}")
async def download_attachment(
    email_id: int,
    attachment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    attachment = email_service.get_attachment(db, current_user, email_id, attachment_id)
    return Response(
        content=attachment.file_data or b"",
        media_type=attachment.content_type or "application/octet-stream",
        headers={"Content-Disposition": content_disposition(attachment.filename)}
    )

@router.post("/{email_id}/labels/{label_id}")
async def add_label(
    email_id: int,
    label_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    label = label_service.get_label(db, current_user.id, label_id)
    email_record = email_service.add_label(db, current_user, email_id, label)
    return {"success": True, "labels": [l.name for l in email_record.labels]}

@router.delete("/{email_id}/labels/{label_id}")
async def remove_label(
    email_id: int,
    label_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    label = label_service.get_label(db, current_user.id, label_id)
    email_record = email_service.remove_label(db, current_user, email_id, label)
    return {"success": True, "labels": [l.name for l in email_record.labels]}
