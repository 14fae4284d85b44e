import os

# Must be set before servicequeue.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("EMAIL_DISPATCH", "inline")
os.environ.setdefault("ENABLE_EMAIL", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")

import time
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from servicequeue.auth.security import ActorContext, create_access_token
from servicequeue.db import Base, get_db
from servicequeue.main import app as api_app
from servicequeue.models.models import Company, RequestNote, ServiceRequest, TaskStatus, User, UserRole
from servicequeue.services.email import Mailer, get_mailer
from servicequeue.services.notifications import NotificationService
from servicequeue.storage.factory import get_storage
from servicequeue.storage.provider import IncomingFile, StorageProvider, UploadResult, guess_mime_type


class FakeMailer(Mailer):
    def __init__(self):
        self.sent = []

    def send(self, template, to, payload):
        self.sent.append((template, to, payload))

    def to(self, address):
        return [s for s in self.sent if s[1] == address]


class ExplodingMailer(Mailer):
    def __init__(self):
        self.attempts = 0

    def send(self, template, to, payload):
        self.attempts += 1
        raise RuntimeError("smtp down")


class FakeStorage(StorageProvider):
    """In-memory uploads. Names in `fail` raise, names in `slow` sleep past any short timeout."""

    def __init__(self):
        self.blobs = {}
        self.fail = set()
        self.slow = set()

    def upload(self, request_id, f, uploader_id):
        if f.file_name in self.fail:
            raise IOError("blob service unavailable")
        if f.file_name in self.slow:
            time.sleep(0.5)
        key = f"{request_id}/{f.file_name}"
        self.blobs[key] = f.content
        return UploadResult(
            url=f"https://blob.test/{key}", file_name=f.file_name, file_size=f.size, mime_type=guess_mime_type(f)
        )


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def notifier(db, mailer):
    return NotificationService(db, mailer)


@pytest.fixture
def make_company(db):
    def _make(name="Acme Agency"):
        company = Company(
            company_name=name,
            company_code=uuid.uuid4().hex[:8].upper(),
            primary_contact="Pat Contact",
            email=f"{uuid.uuid4().hex[:6]}@company.test",
        )
        db.add(company)
        db.commit()
        return company

    return _make


@pytest.fixture
def make_user(db):
    def _make(role=UserRole.CUSTOMER, company=None, first_name="Test", last_name=None):
        user = User(
            first_name=first_name,
            last_name=last_name or role.value.title(),
            email=f"{role.value}-{uuid.uuid4().hex[:8]}@example.test",
            role=role,
            company_id=company.id if company else None,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def actor_for():
    return ActorContext.for_user


@pytest.fixture
def make_request(db):
    """Insert a ServiceRequest directly, bypassing the lifecycle manager."""

    def _make(assigned_by, assigned_to=None, status=TaskStatus.NEW, in_progress_at=None, notes=0):
        request = ServiceRequest(
            service_queue_id=f"ServQUE-{uuid.uuid4().int % 10**13}",
            insured="Acme Corp",
            service_request_narrative="Policy renewal",
            service_queue_category="policy_inquiry",
            company_id=assigned_by.company_id,
            assigned_by_id=assigned_by.id,
            assigned_to_id=assigned_to.id if assigned_to else None,
            task_status=status,
            in_progress_at=in_progress_at,
        )
        db.add(request)
        db.commit()
        for i in range(notes):
            db.add(RequestNote(request_id=request.id, author_id=assigned_by.id, note_content=f"note {i}"))
        db.commit()
        return request

    return _make


@pytest.fixture
def client(db, mailer, storage):
    def _override_get_db():
        yield db

    api_app.dependency_overrides[get_db] = _override_get_db
    api_app.dependency_overrides[get_mailer] = lambda: mailer
    api_app.dependency_overrides[get_storage] = lambda: storage
    yield TestClient(api_app)
    api_app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    return _headers


@pytest.fixture
def make_file():
    def _make(name, content=b"data", content_type="application/pdf"):
        return IncomingFile(file_name=name, content=content, content_type=content_type)

    return _make
