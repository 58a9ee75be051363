import pytest
import os
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")

import tradiedesk.models  # noqa: F401
from tradiedesk.core.deps import get_db
from tradiedesk.db.base import Base
from tradiedesk.main import app
from tradiedesk.models.automation import Automation
from tradiedesk.models.client import Client
from tradiedesk.models.invoice import Invoice
from tradiedesk.models.job import Job
from tradiedesk.models.quote import Quote
from tradiedesk.models.user import BusinessSettings, User
from tradiedesk.services.email_service import EmailDeliveryResult, EmailSendRequest
from tradiedesk.services.messaging_provider import SmsSendRequest, SmsSendResult


class RecordingEmailSender:
    def __init__(self, status: str = "sent", detail: str | None = None):
        self.status = status
        self.detail = detail
        self.sent: list[EmailSendRequest] = []

    def send_email(self, request: EmailSendRequest) -> EmailDeliveryResult:
        self.sent.append(request)
        return EmailDeliveryResult(status=self.status, detail=self.detail)


class RecordingSmsProvider:
    name = "recording"

    def __init__(self):
        self.sent: list[SmsSendRequest] = []

    def send_sms(self, request: SmsSendRequest) -> SmsSendResult:
        self.sent.append(request)
        return SmsSendResult(provider=self.name, message_id=f"sms-{len(self.sent)}", status="queued")


class Seed:
    """Row builders for the automation tests; every write is flushed, never committed."""

    def __init__(self, db):
        self.db = db

    def _add(self, row):
        self.db.add(row)
        self.db.flush()
        return row

    def user(self, *, email: str = "owner@example.com", first_name: str | None = "Dave", business_name: str | None = None):
        user = self._add(User(email=email, first_name=first_name, is_active=True))
        if business_name is not None:
            self._add(BusinessSettings(user_id=user.id, business_name=business_name))
        return user

    def client(self, user, *, name: str = "Sarah Jones", email: str | None = "sarah@example.com", phone: str | None = "0412 345 678"):
        return self._add(Client(user_id=user.id, name=name, email=email, phone=phone))

    def quote(self, user, client, **values):
        values.setdefault("number", "Q-1001")
        values.setdefault("title", "Bathroom renovation")
        values.setdefault("status", "sent")
        values.setdefault("total", Decimal("1250.00"))
        return self._add(Quote(user_id=user.id, client_id=client.id if client else None, **values))

    def job(self, user, client, **values):
        values.setdefault("title", "Hot water install")
        values.setdefault("status", "scheduled")
        return self._add(Job(user_id=user.id, client_id=client.id if client else None, **values))

    def invoice(self, user, client, **values):
        values.setdefault("number", "TT-2026-001-AAAA")
        values.setdefault("status", "sent")
        values.setdefault("total", Decimal("880.00"))
        return self._add(Invoice(user_id=user.id, client_id=client.id if client else None, **values))

    def automation(self, user, *, trigger: dict, actions: list[dict], is_active: bool = True, **values):
        values.setdefault("name", "Test automation")
        return self._add(
            Automation(
                user_id=user.id,
                trigger_json=trigger,
                actions_json=actions,
                is_active=is_active,
                **values,
            )
        )


class WriteGuard:
    """SQLite triggers that make chosen writes fail inside the database itself."""

    def __init__(self, db):
        self.db = db

    def reject_status(self, table: str, status: str):
        self.db.execute(
            text(
                f"CREATE TRIGGER reject_{table}_{status} BEFORE UPDATE OF status ON {table} "
                f"WHEN NEW.status = '{status}' "
                f"BEGIN SELECT RAISE(ABORT, 'status {status} rejected'); END"
            )
        )

    def reject_marker(self, result: str):
        self.db.execute(
            text(
                f"CREATE TRIGGER reject_marker_{result} BEFORE INSERT ON automation_logs "
                f"WHEN NEW.result = '{result}' "
                "BEGIN SELECT RAISE(ABORT, 'marker rejected'); END"
            )
        )


def _memory_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def session_local():
    engine = _memory_engine()
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db(session_local):
    session = session_local()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def seed(db):
    return Seed(db)


@pytest.fixture()
def write_guard(db):
    return WriteGuard(db)


@pytest.fixture()
def email_sender():
    return RecordingEmailSender()


@pytest.fixture()
def sms_provider():
    return RecordingSmsProvider()


@pytest.fixture()
def test_context(session_local):
    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
