import pytest
from datetime import datetime, timezone
from sqlalchemy.exc import IntegrityError

from app.models.email import Email, EmailAttachment, EmailLabel, EmailRecipient
from app.models.schedule import EmailSchedule
from app.models.template import EmailTemplate
from app.models.user import User, UserSettings

def _now():
    return datetime.now(timezone.utc)

class TestUserModel:
    """Test suite for User and UserSettings."""

    def test_registered_user_has_default_settings(self, db_session, test_user):
        settings = db_session.query(UserSettings).filter(UserSettings.user_id == test_user.id).one()
        assert settings.timezone == "UTC"
        assert settings.page_size == 25
        assert settings.theme == "light"
        assert settings.notifications_enabled is True
        assert settings.display_name == "Alice Example"

    def test_email_must_be_unique(self, db_session, test_user):
        db_session.add(User(email="alice@mail.local", username="alice2", hashed_password="x"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

class TestEmailModel:
    """Test suite for Email and its children."""

    def test_message_id_unique_per_user(self, db_session, test_user, other_user):
        for user in (test_user, other_user):
            db_session.add(Email(user_id=user.id, message_id="<same@example.com>", subject="Shared"))
        db_session.commit()

        db_session.add(Email(user_id=test_user.id, message_id="<same@example.com>", subject="Again"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_defaults(self, db_session, test_user):
        email = Email(user_id=test_user.id, message_id="<defaults@mail.local>")
        db_session.add(email)
        db_session.commit()

        assert email.folder == "inbox"
        assert email.status == "draft"
        assert email.retry_count == 0
        assert email.is_read is False
        assert email.has_attachments is False

    def test_children_are_removed_with_email(self, db_session, test_user):
        email = Email(user_id=test_user.id, message_id="<cascade@mail.local>")
        email.recipients.append(EmailRecipient(address="x@example.com", recipient_type="to"))
        email.attachments.append(EmailAttachment(filename="a.txt", size=1, file_data=b"a"))
        email.schedules.append(EmailSchedule(kind="scheduled", scheduled_at=_now()))
        db_session.add(email)
        db_session.commit()

        db_session.delete(email)
        db_session.commit()
        assert db_session.query(EmailRecipient).count() == 0
        assert db_session.query(EmailAttachment).count() == 0
        assert db_session.query(EmailSchedule).count() == 0

    def test_addresses_by_type(self, db_session, test_user):
        email = Email(user_id=test_user.id, message_id="<addr@mail.local>")
        email.recipients.extend([
            EmailRecipient(address="to@example.com", recipient_type="to"),
            EmailRecipient(address="cc@example.com", recipient_type="cc"),
            EmailRecipient(address="bcc@example.com", recipient_type="bcc"),
        ])
        assert email.addresses() == ["to@example.com", "cc@example.com", "bcc@example.com"]
        assert email.addresses("bcc") == ["bcc@example.com"]

    def test_labels_many_to_many(self, db_session, test_user):
        label = EmailLabel(user_id=test_user.id, name="Work")
        first = Email(user_id=test_user.id, message_id="<l1@mail.local>")
        second = Email(user_id=test_user.id, message_id="<l2@mail.local>")
        first.labels.append(label)
        second.labels.append(label)
        db_session.add_all([first, second])
        db_session.commit()

        assert len(label.emails) == 2

    def test_label_name_unique_per_user(self, db_session, test_user):
        db_session.add(EmailLabel(user_id=test_user.id, name="Work"))
        db_session.add(EmailLabel(user_id=test_user.id, name="Work"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

class TestScheduleModel:

    def test_state_transitions(self):
        schedule = EmailSchedule(kind="retry", status="pending", scheduled_at=_now())
        assert schedule.is_pending
        schedule.mark_dispatched()
        assert schedule.status == "dispatched"
        assert schedule.dispatched_at is not None
        assert not schedule.is_pending

        other = EmailSchedule(kind="scheduled", status="pending", scheduled_at=_now())
        other.mark_cancelled()
        assert other.status == "cancelled"

def test_template_name_unique_per_user(db_session, test_user):
    db_session.add(EmailTemplate(user_id=test_user.id, name="Welcome", subject="Hi"))
    db_session.add(EmailTemplate(user_id=test_user.id, name="Welcome", subject="Hello"))
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()
