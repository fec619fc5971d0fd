"""
Email template storage and rendering.

Templates are Jinja2 sources rendered in a sandbox with StrictUndefined, so a
missing variable is an error instead of silently rendering empty text. Only
the HTML body is autoescaped.
"""

from typing import Any, Dict, List, Optional
import logging

from jinja2 import StrictUndefined
from jinja2.exceptions import TemplateError
from jinja2.sandbox import SandboxedEnvironment
from sqlalchemy.orm import Session

from ..exceptions import ConflictError, NotFoundError, TemplateRenderError
from ..models.template import EmailTemplate

logger = logging.getLogger(__name__)

_text_env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)
_html_env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=True)


def render_source(source: Optional[str], context: Dict[str, Any], html: bool = False) -> Optional[str]:
    """Render one template string; None stays None"""
    if source is None:
        return None
    env = _html_env if html else _text_env
    try:
        return env.from_string(source).render(**context)
    except Exception as e:
        # Syntax, undefined names, sandbox violations and errors from the expressions themselves
        raise TemplateRenderError(f"Template rendering failed: {e}") from e


class TemplateService:

    def list_templates(self, db: Session, user_id: int) -> List[EmailTemplate]:
        return db.query(EmailTemplate).filter(EmailTemplate.user_id == user_id).order_by(EmailTemplate.name).all()

    def get_template(self, db: Session, user_id: int, template_id: int) -> EmailTemplate:
        template = db.query(EmailTemplate).filter(
            EmailTemplate.id == template_id,
            EmailTemplate.user_id == user_id
        ).first()
        if not template:
            raise NotFoundError("Template not found")
        return template

    def _check_name(self, db: Session, user_id: int, name: str, exclude_id: Optional[int] = None):
        query = db.query(EmailTemplate).filter(EmailTemplate.user_id == user_id, EmailTemplate.name == name)
        if exclude_id is not None:
            query = query.filter(EmailTemplate.id != exclude_id)
        if query.first():
            raise ConflictError(f"Template '{name}' already exists")

    def _validate_sources(self, subject: Optional[str], body_plain: Optional[str], body_html: Optional[str]):
        """Compile every source so syntax errors surface on save"""
        for source, env in ((subject, _text_env), (body_plain, _text_env), (body_html, _html_env)):
            if source is None:
                continue
            try:
                env.parse(source)
            except TemplateError as e:
                raise TemplateRenderError(f"Template syntax error: {e}")

    def create_template(self, db: Session, user_id: int, name: str, subject: str = "",
                        body_plain: Optional[str] = None, body_html: Optional[str] = None) -> EmailTemplate:
        self._check_name(db, user_id, name)
        self._validate_sources(subject, body_plain, body_html)

        template = EmailTemplate(user_id=user_id, name=name, subject=subject or "",
                                 body_plain=body_plain, body_html=body_html)
        db.add(template)
        db.commit()
        db.refresh(template)
        logger.info(f"Created template {template.id} '{name}' for user {user_id}")
        return template

    def update_template(self, db: Session, user_id: int, template_id: int, **fields) -> EmailTemplate:
        template = self.get_template(db, user_id, template_id)
        if fields.get("name") and fields["name"] != template.name:
            self._check_name(db, user_id, fields["name"], exclude_id=template.id)
        self._validate_sources(fields.get("subject"), fields.get("body_plain"), fields.get("body_html"))

        for field_name, value in fields.items():
            if value is not None and hasattr(template, field_name):
                setattr(template, field_name, value)
        db.commit()
        db.refresh(template)
        return template

    def delete_template(self, db: Session, user_id: int, template_id: int) -> None:
        template = self.get_template(db, user_id, template_id)
        db.delete(template)
        db.commit()

    def render(self, template: EmailTemplate, context: Optional[Dict[str, Any]] = None) -> Dict[str, Optional[str]]:
        """Render subject and both bodies with the same context"""
        context = context or {}
        return {
            "subject": render_source(template.subject, context),
            "body_plain": render_source(template.body_plain, context),
            "body_html": render_source(template.body_html, context, html=True),
        }

template_service = TemplateService()
