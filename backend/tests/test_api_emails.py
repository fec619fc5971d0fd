import hashlib
import pytest
from datetime import datetime, timedelta, timezone
from fastapi.testclient import TestClient

from config.settings import settings
from app.models.analytics import EmailAnalytics
from app.models.email import Email, EmailAttachment
from app.models.schedule import EmailSchedule
from app.services.template_service import template_service

def compose(client, headers, **fields):
    body = {"to": ["bob@mail.local"], "subject": "Hi Bob", "body_plain": "Hello there"}
    body.update(fields)
    response = client.post("/api/emails/drafts", headers=headers, json=body)
    assert response.status_code == 201, response.text
    return response.json()

def events_for(db_session, email_id):
    return [
        event.event_type for event in
        db_session.query(EmailAnalytics).filter(EmailAnalytics.email_id == email_id).order_by(EmailAnalytics.id)
    ]

class TestMailboxListing:
    """Test suite for listing and reading emails."""

    def test_get_emails(self, client: TestClient, auth_headers, sample_emails):
        """Test getting paginated list of emails."""
        response = client.get("/api/emails/", headers=auth_headers)
        assert response.status_code == 200

        data = response.json()
        assert data["total_count"] == 3
        assert data["page"] == 1
        assert data["page_size"] == 25
        assert data["emails"][0]["subject"] == "Newsletter"

        email = data["emails"][0]
        for key in ("id", "message_id", "sender", "subject", "folder", "status", "is_read", "recipients", "labels"):
            assert key in email

    def test_get_emails_pagination(self, client: TestClient, auth_headers, sample_emails):
        """Test email pagination."""
        response = client.get("/api/emails/?page=1&page_size=2", headers=auth_headers)
        data = response.json()
        assert len(data["emails"]) == 2
        assert data["total_pages"] == 2

        response = client.get("/api/emails/?page=2&page_size=2", headers=auth_headers)
        assert len(response.json()["emails"]) == 1

    def test_page_size_defaults_to_user_setting(self, client: TestClient, auth_headers, sample_emails):
        client.put("/api/users/me/settings", headers=auth_headers, json={"page_size": 2})
        response = client.get("/api/emails/", headers=auth_headers)
        assert response.json()["page_size"] == 2
        assert len(response.json()["emails"]) == 2

    @pytest.mark.parametrize("query, expected", [
        ("q=report", 1),
        ("q=example.com", 3),
        ("is_starred=true", 1),
        ("is_read=false", 2),
        ("folder=sent", 0),
    ])
    def test_get_emails_filters(self, client: TestClient, auth_headers, sample_emails, query, expected):
        response = client.get(f"/api/emails/?{query}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["total_count"] == expected

    def test_unknown_folder(self, client: TestClient, auth_headers):
        response = client.get("/api/emails/?folder=bogus", headers=auth_headers)
        assert response.status_code == 422

    def test_get_email_by_id(self, client: TestClient, auth_headers, sample_emails):
        """Test getting a specific email by ID; reading it does not mark it read."""
        email_id = sample_emails[0].id
        response = client.get(f"/api/emails/{email_id}", headers=auth_headers)
        assert response.status_code == 200

        data = response.json()
        assert data["id"] == email_id
        assert data["subject"] == "Quarterly report"
        assert data["body_plain"] == "Body of Quarterly report"
        assert data["is_read"] is False
        assert data["attachments"] == []

    def test_other_users_email_is_not_found(self, client: TestClient, other_headers, sample_emails):
        response = client.get(f"/api/emails/{sample_emails[0].id}", headers=other_headers)
        assert response.status_code == 404

        response = client.patch(f"/api/emails/{sample_emails[0].id}/read", headers=other_headers)
        assert response.status_code == 404

    def test_stats(self, client: TestClient, auth_headers, sample_emails):
        response = client.get("/api/emails/stats", headers=auth_headers)
        assert response.status_code == 200

        data = response.json()
        assert data["total"] == 3
        assert data["unread"] == 2
        assert data["starred"] == 1
        assert data["by_folder"]["inbox"] == 3
        assert data["by_folder"]["trash"] == 0

class TestDrafts:
    """Test suite for composing and editing drafts."""

    def test_create_draft(self, client: TestClient, auth_headers, other_user):
        data = compose(client, auth_headers, cc=["Carol <carol@example.com>"])

        assert data["status"] == "draft"
        assert data["folder"] == "drafts"
        assert data["direction"] == "outbound"
        assert data["message_id"].endswith("@mail.local>")
        assert [(r["address"], r["recipient_type"]) for r in data["recipients"]] == [
            ("bob@mail.local", "to"),
            ("carol@example.com", "cc"),
        ]
        assert data["recipients"][1]["name"] == "Carol"

    def test_create_draft_invalid_address(self, client: TestClient, auth_headers):
        response = client.post("/api/emails/drafts", headers=auth_headers, json={"to": ["nobody"]})
        assert response.status_code == 422

    def test_signature_is_appended(self, client: TestClient, auth_headers):
        client.put("/api/users/me/settings", headers=auth_headers, json={"signature": "Alice"})
        data = compose(client, auth_headers, body_plain="Hello")
        assert data["body_plain"] == "Hello\n\n-- \nAlice"

    def test_draft_from_template(self, client: TestClient, auth_headers, db_session, test_user):
        template = template_service.create_template(
            db_session, test_user.id, name="Invite", subject="Join {{ event }}",
            body_plain="See you at {{ event }}", body_html="<p>{{ event }}</p>"
        )
        data = compose(client, auth_headers, subject=None, body_plain=None,
                       template_id=template.id, template_context={"event": "<Launch>"})
        assert data["subject"] == "Join <Launch>"
        assert data["body_plain"] == "See you at <Launch>"
        assert data["body_html"] == "<p>&lt;Launch&gt;</p>"

    def test_update_draft(self, client: TestClient, auth_headers):
        draft = compose(client, auth_headers)
        response = client.put(f"/api/emails/drafts/{draft['id']}", headers=auth_headers, json={
            "subject": "Updated",
            "to": ["dave@example.com"]
        })
        assert response.status_code == 200

        data = response.json()
        assert data["subject"] == "Updated"
        assert data["body_plain"] == "Hello there"
        assert [r["address"] for r in data["recipients"]] == ["dave@example.com"]

    def test_update_non_draft(self, client: TestClient, auth_headers, sample_emails):
        response = client.put(f"/api/emails/drafts/{sample_emails[0].id}", headers=auth_headers, json={"subject": "x"})
        assert response.status_code == 409

class TestSending:
    """Test suite for queueing outbound mail."""

    def test_send_draft(self, client: TestClient, auth_headers, fake_producer, db_session):
        draft = compose(client, auth_headers)
        response = client.post(f"/api/emails/{draft['id']}/send", headers=auth_headers)
        assert response.status_code == 202

        data = response.json()
        assert data["status"] == "queued"
        assert data["message_id"] == draft["message_id"]

        topic, job, key = fake_producer.published[0]
        assert topic == "email-send"
        assert job.email_id == draft["id"]
        assert job.attempt == 0
        assert key == draft["message_id"]

        detail = client.get(f"/api/emails/{draft['id']}", headers=auth_headers).json()
        assert detail["folder"] == "outbox"
        assert detail["thread_id"] is not None
        assert all(r["delivery_status"] == "pending" for r in detail["recipients"])
        assert events_for(db_session, draft["id"]) == ["queued"]

    def test_send_twice_conflicts(self, client: TestClient, auth_headers, fake_producer):
        draft = compose(client, auth_headers)
        client.post(f"/api/emails/{draft['id']}/send", headers=auth_headers)
        response = client.post(f"/api/emails/{draft['id']}/send", headers=auth_headers)
        assert response.status_code == 409
        assert len(fake_producer.published) == 1

    def test_send_without_recipients(self, client: TestClient, auth_headers, fake_producer):
        draft = compose(client, auth_headers, to=[])
        response = client.post(f"/api/emails/{draft['id']}/send", headers=auth_headers)
        assert response.status_code == 422
        assert fake_producer.published == []

    def test_send_received_email_conflicts(self, client: TestClient, auth_headers, sample_emails):
        response = client.post(f"/api/emails/{sample_emails[0].id}/send", headers=auth_headers)
        assert response.status_code == 409

    def test_compose_and_send(self, client: TestClient, auth_headers, fake_producer):
        response = client.post("/api/emails/send", headers=auth_headers, json={
            "to": ["carol@example.com"],
            "subject": "One step",
            "body_plain": "Sent directly"
        })
        assert response.status_code == 202
        assert response.json()["status"] == "queued"
        assert fake_producer.topics() == ["email-send"]

    def test_broker_down_parks_a_retry(self, client: TestClient, auth_headers, fake_producer, db_session):
        fake_producer.fail = True
        draft = compose(client, auth_headers)
        response = client.post(f"/api/emails/{draft['id']}/send", headers=auth_headers)
        assert response.status_code == 202
        assert response.json()["status"] == "deferred"

        schedule = db_session.query(EmailSchedule).filter(EmailSchedule.email_id == draft["id"]).one()
        assert schedule.kind == "retry"
        assert schedule.status == "pending"
        assert events_for(db_session, draft["id"]) == ["queued", "deferred"]

class TestScheduling:
    """Test suite for scheduled sends."""

    def test_schedule_and_cancel(self, client: TestClient, auth_headers, fake_producer, db_session):
        draft = compose(client, auth_headers)
        send_at = (datetime.now(timezone.utc) + timedelta(hours=2)).isoformat()

        response = client.post(f"/api/emails/{draft['id']}/schedule", headers=auth_headers, json={"send_at": send_at})
        assert response.status_code == 201
        assert response.json()["schedule_id"]
        assert fake_producer.published == []

        detail = client.get(f"/api/emails/{draft['id']}", headers=auth_headers).json()
        assert detail["status"] == "scheduled"
        assert detail["folder"] == "outbox"

        response = client.delete(f"/api/emails/{draft['id']}/schedule", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "draft"
        assert response.json()["folder"] == "drafts"

        schedule = db_session.query(EmailSchedule).filter(EmailSchedule.email_id == draft["id"]).one()
        assert schedule.status == "cancelled"

        response = client.delete(f"/api/emails/{draft['id']}/schedule", headers=auth_headers)
        assert response.status_code == 409

    def test_schedule_in_the_past(self, client: TestClient, auth_headers):
        draft = compose(client, auth_headers)
        send_at = (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat()
        response = client.post(f"/api/emails/{draft['id']}/schedule", headers=auth_headers, json={"send_at": send_at})
        assert response.status_code == 422

class TestFlags:
    """Test suite for read/star/important flags."""

    def test_mark_read_and_unread(self, client: TestClient, auth_headers, sample_emails, db_session):
        email_id = sample_emails[0].id
        response = client.patch(f"/api/emails/{email_id}/read", headers=auth_headers)
        assert response.json() == {"success": True, "is_read": True}

        response = client.patch(f"/api/emails/{email_id}/unread", headers=auth_headers)
        assert response.json() == {"success": True, "is_read": False}

        client.patch(f"/api/emails/{email_id}/read", headers=auth_headers)
        # Only the first open is recorded
        assert events_for(db_session, email_id) == ["opened"]

    def test_toggle_star(self, client: TestClient, auth_headers, sample_emails):
        email_id = sample_emails[0].id
        response = client.patch(f"/api/emails/{email_id}/star", headers=auth_headers)
        assert response.json() == {"success": True, "is_starred": True}
        response = client.patch(f"/api/emails/{email_id}/star", headers=auth_headers)
        assert response.json() == {"success": True, "is_starred": False}

    def test_toggle_important(self, client: TestClient, auth_headers, sample_emails):
        response = client.patch(f"/api/emails/{sample_emails[0].id}/important", headers=auth_headers)
        assert response.json() == {"success": True, "is_important": True}

    def test_bulk_update(self, client: TestClient, auth_headers, sample_emails, inbound_email, other_user):
        foreign = inbound_email(other_user, subject="Not yours")
        ids = [sample_emails[0].id, sample_emails[1].id, foreign.id]

        response = client.patch("/api/emails/bulk/update", headers=auth_headers, json={
            "email_ids": ids,
            "is_read": True,
            "folder": "archive"
        })
        assert response.status_code == 200
        assert response.json() == {"success": True, "updated_count": 2}

        response = client.get("/api/emails/?folder=archive", headers=auth_headers)
        assert response.json()["total_count"] == 2

    def test_bulk_update_invalid_folder(self, client: TestClient, auth_headers, sample_emails):
        response = client.patch("/api/emails/bulk/update", headers=auth_headers, json={
            "email_ids": [sample_emails[0].id],
            "folder": "outbox"
        })
        assert response.status_code == 422

class TestMoveAndDelete:
    """Test suite for folder moves, trash and permanent delete."""

    def test_move(self, client: TestClient, auth_headers, sample_emails):
        response = client.post(f"/api/emails/{sample_emails[0].id}/move", headers=auth_headers, json={"folder": "archive"})
        assert response.status_code == 200
        assert response.json() == {"success": True, "folder": "archive"}

    @pytest.mark.parametrize("folder", ["drafts", "outbox", "nowhere"])
    def test_move_invalid_target(self, client: TestClient, auth_headers, sample_emails, folder):
        response = client.post(f"/api/emails/{sample_emails[0].id}/move", headers=auth_headers, json={"folder": folder})
        assert response.status_code == 422

    def test_move_while_queued(self, client: TestClient, auth_headers):
        draft = compose(client, auth_headers)
        client.post(f"/api/emails/{draft['id']}/send", headers=auth_headers)
        response = client.post(f"/api/emails/{draft['id']}/move", headers=auth_headers, json={"folder": "archive"})
        assert response.status_code == 409

    def test_trash_then_delete(self, client: TestClient, auth_headers, sample_emails, db_session):
        email_id = sample_emails[0].id
        response = client.delete(f"/api/emails/{email_id}", headers=auth_headers)
        assert response.json() == {"success": True, "result": "trashed"}

        db_session.expire_all()
        email = db_session.get(Email, email_id)
        assert email.folder == "trash"
        assert email.deleted_at is not None

        response = client.get("/api/emails/?folder=trash", headers=auth_headers)
        assert response.json()["total_count"] == 1

        response = client.delete(f"/api/emails/{email_id}", headers=auth_headers)
        assert response.json() == {"success": True, "result": "deleted"}
        assert client.get(f"/api/emails/{email_id}", headers=auth_headers).status_code == 404

    def test_restore_from_trash_clears_deleted_at(self, client: TestClient, auth_headers, sample_emails, db_session):
        email_id = sample_emails[0].id
        client.delete(f"/api/emails/{email_id}", headers=auth_headers)
        client.post(f"/api/emails/{email_id}/move", headers=auth_headers, json={"folder": "inbox"})

        db_session.expire_all()
        assert db_session.get(Email, email_id).deleted_at is None

    def test_permanent_delete(self, client: TestClient, auth_headers, sample_emails):
        email_id = sample_emails[1].id
        response = client.delete(f"/api/emails/{email_id}?permanent=true", headers=auth_headers)
        assert response.json()["result"] == "deleted"
        assert client.get(f"/api/emails/{email_id}", headers=auth_headers).status_code == 404

class TestThreads:
    """Test suite for conversation threading through the API."""

    def test_reply_joins_thread(self, client: TestClient, auth_headers):
        original = compose(client, auth_headers, subject="Planning")
        client.post(f"/api/emails/{original['id']}/send", headers=auth_headers)

        reply = compose(client, auth_headers, subject="Re: Planning", in_reply_to=original["message_id"])
        assert reply["in_reply_to"] == original["message_id"]
        assert reply["references"] == original["message_id"]
        client.post(f"/api/emails/{reply['id']}/send", headers=auth_headers)

        response = client.get(f"/api/emails/{reply['id']}/thread", headers=auth_headers)
        assert response.status_code == 200
        assert [email["id"] for email in response.json()] == [original["id"], reply["id"]]

        response = client.get("/api/emails/threads", headers=auth_headers)
        data = response.json()
        assert data["total_count"] == 1
        assert data["threads"][0]["subject"] == "Planning"
        assert data["threads"][0]["message_count"] == 2

    def test_unthreaded_email_is_its_own_thread(self, client: TestClient, auth_headers, sample_emails):
        response = client.get(f"/api/emails/{sample_emails[0].id}/thread", headers=auth_headers)
        assert [email["id"] for email in response.json()] == [sample_emails[0].id]

class TestAttachments:
    """Test suite for attachment upload and download."""

    def test_upload_list_download(self, client: TestClient, auth_headers):
        draft = compose(client, auth_headers)
        response = client.post(
            f"/api/emails/{draft['id']}/attachments",
            headers=auth_headers,
            files={"file": ("notes.txt", b"hello", "text/plain")}
        )
        assert response.status_code == 201

        attachment = response.json()
        assert attachment["filename"] == "notes.txt"
        assert attachment["size"] == 5
        assert attachment["checksum"] == hashlib.sha256(b"hello").hexdigest()

        response = client.get(f"/api/emails/{draft['id']}/attachments", headers=auth_headers)
        assert len(response.json()) == 1

        response = client.get(f"/api/emails/{draft['id']}/attachments/{attachment['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.content == b"hello"
        assert 'filename="notes.txt"' in response.headers["content-disposition"]

    def test_upload_to_received_email(self, client: TestClient, auth_headers, sample_emails):
        response = client.post(
            f"/api/emails/{sample_emails[0].id}/attachments",
            headers=auth_headers,
            files={"file": ("notes.txt", b"hello", "text/plain")}
        )
        assert response.status_code == 409

    def test_upload_too_large(self, client: TestClient, auth_headers, monkeypatch):
        monkeypatch.setattr(settings, "MAX_FILE_SIZE_MB", 0)
        draft = compose(client, auth_headers)
        response = client.post(
            f"/api/emails/{draft['id']}/attachments",
            headers=auth_headers,
            files={"file": ("big.bin", b"x" * 10, "application/octet-stream")}
        )
        assert response.status_code == 413

    def test_missing_attachment(self, client: TestClient, auth_headers):
        draft = compose(client, auth_headers)
        response = client.get(f"/api/emails/{draft['id']}/attachments/999", headers=auth_headers)
        assert response.status_code == 404

class TestEmailLabels:
    """Test suite for labelling emails."""

    def test_add_and_remove_label(self, client: TestClient, auth_headers, sample_emails):
        label = client.post("/api/labels/", headers=auth_headers, json={"name": "Work"}).json()
        email_id = sample_emails[0].id

        response = client.post(f"/api/emails/{email_id}/labels/{label['id']}", headers=auth_headers)
        assert response.json() == {"success": True, "labels": ["Work"]}

        response = client.get("/api/emails/?label=Work", headers=auth_headers)
        assert response.json()["total_count"] == 1

        response = client.delete(f"/api/emails/{email_id}/labels/{label['id']}", headers=auth_headers)
        assert response.json() == {"success": True, "labels": []}

    def test_cannot_use_other_users_label(self, client: TestClient, auth_headers, other_headers, sample_emails):
        label = client.post("/api/labels/", headers=other_headers, json={"name": "Bob's"}).json()
        response = client.post(f"/api/emails/{sample_emails[0].id}/labels/{label['id']}", headers=auth_headers)
        assert response.status_code == 404

class TestHeaderInjection:
    """Test suite for draft fields that become single-line message headers."""

    @pytest.mark.parametrize("fields", [
        {"subject": "Hello\nWorld"},
        {"subject": "Hello\rBcc: victim@example.com"},
        {"to": ["Bob\r\n <bob@example.com>"]},
        {"in_reply_to": "<a@example.com>\nX-Spam: yes"},
    ])
    def test_create_draft_rejects_line_breaks(self, client: TestClient, auth_headers, db_session, fields):
        body = {"to": ["bob@example.com"], "subject": "Hi", "body_plain": "Hello"}
        body.update(fields)
        response = client.post("/api/emails/drafts", headers=auth_headers, json=body)
        assert response.status_code == 422
        assert "line breaks" in response.json()["message"]
        assert db_session.query(Email).count() == 0

    def test_update_draft_rejects_line_breaks(self, client: TestClient, auth_headers):
        draft = compose(client, auth_headers)
        response = client.put(f"/api/emails/drafts/{draft['id']}", headers=auth_headers,
                              json={"subject": "Hello\nWorld"})
        assert response.status_code == 422

        response = client.get(f"/api/emails/{draft['id']}", headers=auth_headers)
        assert response.json()["subject"] == "Hi Bob"

    def test_body_may_contain_line_breaks(self, client: TestClient, auth_headers):
        draft = compose(client, auth_headers, body_plain="Line one\r\nLine two")
        assert draft["body_plain"].startswith("Line one")

class TestComposeValidation:
    """Test suite for one-step compose and send."""

    def test_compose_and_send_without_recipients(self, client: TestClient, auth_headers, fake_producer, db_session):
        response = client.post("/api/emails/send", headers=auth_headers, json={"subject": "Nobody", "body_plain": "x"})
        assert response.status_code == 422
        assert fake_producer.published == []
        assert db_session.query(Email).count() == 0

    def test_compose_and_send_invalid_address(self, client: TestClient, auth_headers, db_session):
        response = client.post("/api/emails/send", headers=auth_headers, json={"to": ["not-an-address"]})
        assert response.status_code == 422
        assert db_session.query(Email).count() == 0

class TestAttachmentDownloadNames:
    """Test suite for the Content-Disposition header of attachment downloads."""

    def download(self, client, headers, db_session, email, filename):
        attachment = EmailAttachment(email_id=email.id, filename=filename, content_type="application/pdf",
                                     size=3, file_data=b"pdf", checksum=hashlib.sha256(b"pdf").hexdigest())
        db_session.add(attachment)
        db_session.commit()
        return client.get(f"/api/emails/{email.id}/attachments/{attachment.id}", headers=headers)

    def test_non_ascii_filename(self, client: TestClient, auth_headers, db_session, sample_emails):
        response = self.download(client, auth_headers, db_session, sample_emails[0], "отчёт.pdf")
        assert response.status_code == 200
        assert response.content == b"pdf"

        disposition = response.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="')
        assert "filename*=UTF-8''%D0%BE%D1%82%D1%87%D1%91%D1%82.pdf" in disposition

    def test_quote_in_filename(self, client: TestClient, auth_headers, db_session, sample_emails):
        response = self.download(client, auth_headers, db_session, sample_emails[0], 'say "hi".pdf')
        assert response.status_code == 200

        disposition = response.headers["content-disposition"]
        assert 'filename="say _hi_.pdf"' in disposition
        assert "filename*=UTF-8''say%20%22hi%22.pdf" in disposition

    def test_ascii_filename_unchanged(self, client: TestClient, auth_headers, db_session, sample_emails):
        response = self.download(client, auth_headers, db_session, sample_emails[0], "report.pdf")
        assert response.headers["content-disposition"] == 'attachment; filename="report.pdf"'
