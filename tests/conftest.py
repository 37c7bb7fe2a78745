"""
Pytest configuration and shared fixtures.

Tests run against a SQLite file database so the concurrent report queries,
each on its own pooled connection, all see the same rows. Environment
variables are set here before any app import so settings pick them up.
"""

import os
from datetime import timedelta
from decimal import Decimal

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_dashboard.db")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from app.config import settings
from app.main import app
from app.models import Consultation, Feedback, Message, PetDetail, User
from app.storage import Base, SessionLocal, engine
from app.utils import local_midnight_utc, local_today, utc_now


class Factory:
    """Inserts rows directly through SQLAlchemy; every helper commits."""

    def __init__(self):
        self.offset = settings.TIMEZONE_OFFSET_MINUTES
        self._message_id = 0
        self._phone = 0

    def local(self, days_ago: int = 0, hour: int = 12, minute: int = 0):
        """Naive UTC instant for a local wall-clock time days_ago local days back."""
        day = local_today(self.offset) - timedelta(days=days_ago)
        return local_midnight_utc(day, self.offset) + timedelta(hours=hour, minutes=minute)

    def ago(self, **kwargs):
        return utc_now() - timedelta(**kwargs)

    def _add(self, obj):
        with SessionLocal() as db:
            db.add(obj)
            db.commit()
            db.refresh(obj)
            db.expunge(obj)
        return obj

    def user(self, name="Asha", phone=None, created_at=None, **fields):
        if phone is None:
            self._phone += 1
            phone = f"+91800000{self._phone:04d}"
        return self._add(User(
            parentname=name,
            parentphone=phone,
            created_at=created_at or self.local(days_ago=40),
            **fields,
        ))

    def message(self, user, created_at, sender="user", content="hello"):
        self._message_id += 1
        return self._add(Message(
            message_id=self._message_id,
            user_id=user.id,
            content=content,
            sender=sender,
            created_at=created_at,
        ))

    def messages(self, user, count, created_at, sender="user"):
        for i in range(count):
            self.message(user, created_at + timedelta(seconds=i), sender=sender, content=f"message {i}")

    def pet(self, user, name="Bruno", **fields):
        fields.setdefault("created_at", self.local(days_ago=30))
        return self._add(PetDetail(user_id=user.id, petname=name, pettype="dog", breed="Indie", age="3", **fields))

    def consultation(self, status="pending", user=None, created_at=None, amount="499.00", **fields):
        return self._add(Consultation(
            user_id=user.id if user else None,
            status=status,
            amount=Decimal(amount) if amount is not None else None,
            created_at=created_at or self.local(days_ago=2),
            **fields,
        ))

    def feedback(self, phone="+919000000001", feedback_type="user_feedback", rating=3, created_at=None, content="Great"):
        return self._add(Feedback(
            user_phone=phone,
            feedback_type=feedback_type,
            feedback_content=content,
            feedback_rating=rating,
            created_at=created_at or self.local(days_ago=1),
        ))


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def factory(client):
    return Factory()
