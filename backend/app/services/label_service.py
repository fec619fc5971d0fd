from sqlalchemy.orm import Session
from sqlalchemy import func
from typing import List, Dict, Optional, Any
from ..exceptions import ConflictError, NotFoundError
from ..models.email import Email, EmailLabel, email_label_assignments
import logging

logger = logging.getLogger(__name__)

class LabelService:

    def list_labels(self, db: Session, user_id: int) -> List[Dict[str, Any]]:
        """User labels with the number of emails carrying each"""
        rows = (
            db.query(EmailLabel, func.count(email_label_assignments.c.email_id))
            .outerjoin(email_label_assignments, email_label_assignments.c.label_id == EmailLabel.id)
            .filter(EmailLabel.user_id == user_id)
            .group_by(EmailLabel.id)
            .order_by(EmailLabel.name)
            .all()
        )
        return [
            {"id": label.id, "name": label.name, "color": label.color, "email_count": count}
            for label, count in rows
        ]

    def get_label(self, db: Session, user_id: int, label_id: int) -> EmailLabel:
        label = db.query(EmailLabel).filter(EmailLabel.id == label_id, EmailLabel.user_id == user_id).first()
        if not label:
            raise NotFoundError("Label not found")
        return label

    def get_label_by_name(self, db: Session, user_id: int, name: str) -> Optional[EmailLabel]:
        return db.query(EmailLabel).filter(EmailLabel.user_id == user_id, EmailLabel.name == name).first()

    def create_label(self, db: Session, user_id: int, name: str, color: Optional[str] = None) -> EmailLabel:
        name = name.strip()
        if self.get_label_by_name(db, user_id, name):
            raise ConflictError(f"Label '{name}' already exists")

        label = EmailLabel(user_id=user_id, name=name, color=color)
        db.add(label)
        db.commit()
        db.refresh(label)
        logger.info(f"Created label {label.id} '{name}' for user {user_id}")
        return label

    def update_label(self, db: Session, user_id: int, label_id: int,
                     name: Optional[str] = None, color: Optional[str] = None) -> EmailLabel:
        label = self.get_label(db, user_id, label_id)
        if name is not None and name.strip() != label.name:
            if self.get_label_by_name(db, user_id, name.strip()):
                raise ConflictError(f"Label '{name}' already exists")
            label.name = name.strip()
        if color is not None:
            label.color = color
        db.commit()
        db.refresh(label)
        return label

    def delete_label(self, db: Session, user_id: int, label_id: int) -> None:
        label = self.get_label(db, user_id, label_id)
        # Clear assignments explicitly, SQLite does not enforce ON DELETE
        label.emails = []
        db.delete(label)
        db.commit()
        logger.info(f"Deleted label {label_id} for user {user_id}")

    def get_label_emails(self, db: Session, user_id: int, label_id: int) -> List[Email]:
        label = self.get_label(db, user_id, label_id)
        return sorted(label.emails, key=lambda email: email.id, reverse=True)

label_service = LabelService()
