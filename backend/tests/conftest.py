import os
import sys

# Configure the application for tests before anything imports the settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["MAIL_DOMAIN"] = "mail.local"
os.environ.pop("ENVIRONMENT", None)

import pytest
from datetime import datetime, timezone
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Add the backend directory and the project root to the path so we can import the app
BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(BACKEND_DIR)
sys.path.append(os.path.dirname(BACKEND_DIR))

from app.messaging.producer import get_producer
from app.models.database import Base, get_db
from app.models.email import Email, EmailRecipient
from app.services import auth_service
from main import app

# In-memory SQLite shared by every session of a test
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool
)

# Create test session
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

class FakeProducer:
    """Records publishes instead of talking to Kafka"""

    def __init__(self):
        self.published = []
        self.fail = False

    async def publish(self, topic, payload, key=None):
        if self.fail:
            raise ConnectionError("Kafka broker unavailable")
        self.published.append((topic, payload, key))

    async def stop(self):
        pass

    def topics(self):
        return [topic for topic, _, _ in self.published]

@pytest.fixture
def db_engine():
    """Create fresh tables for every test."""
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)

@pytest.fixture
def db_session(db_engine):
    """Create a fresh database session for each test."""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def session_factory(db_engine):
    """Session factory handed to the workers."""
    return TestingSessionLocal

@pytest.fixture
def fake_producer():
    return FakeProducer()

@pytest.fixture
def client(db_session, fake_producer):
    """Create a test client with database session and fake producer."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_producer] = lambda: fake_producer
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

@pytest.fixture
def test_user(db_session):
    """Create the first (admin) user."""
    return auth_service.register_user(
        db_session,
        email="alice@mail.local",
        username="alice",
        password="alice-password",
        full_name="Alice Example"
    )

@pytest.fixture
def other_user(db_session, test_user):
    """Create a second, regular user."""
    return auth_service.register_user(
        db_session,
        email="bob@mail.local",
        username="bob",
        password="bob-password",
        full_name="Bob Example"
    )

@pytest.fixture
def auth_headers(test_user):
    return {"Authorization": f"Bearer {auth_service.create_access_token(test_user)}"}

@pytest.fixture
def other_headers(other_user):
    return {"Authorization": f"Bearer {auth_service.create_access_token(other_user)}"}

def make_inbound_email(db_session, user, subject="Hello", sender="carol@example.com", **fields):
    """Insert a received email into the user's inbox."""
    email = Email(
        user_id=user.id,
        message_id=fields.pop("message_id", f"<{subject.replace(' ', '-').lower()}-{user.id}@example.com>"),
        folder=fields.pop("folder", "inbox"),
        direction="inbound",
        status="received",
        sender=sender,
        subject=subject,
        body_plain=fields.pop("body_plain", f"Body of {subject}"),
        received_at=datetime.now(timezone.utc),
        **fields
    )
    email.recipients.append(EmailRecipient(
        address=user.email, recipient_type="to", user_id=user.id, delivery_status="delivered"
    ))
    db_session.add(email)
    db_session.commit()
    db_session.refresh(email)
    return email

@pytest.fixture
def sample_emails(db_session, test_user):
    """Three received emails for the test user."""
    return [
        make_inbound_email(db_session, test_user, subject="Quarterly report", sender="boss@example.com"),
        make_inbound_email(db_session, test_user, subject="Lunch plans", is_starred=True),
        make_inbound_email(db_session, test_user, subject="Newsletter", sender="news@example.com", is_read=True),
    ]

@pytest.fixture
def inbound_email(db_session):
    """Factory fixture: inbound_email(user, subject=..., **fields)."""
    def factory(user, **fields):
        return make_inbound_email(db_session, user, **fields)
    return factory
