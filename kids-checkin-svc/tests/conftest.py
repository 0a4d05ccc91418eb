from __future__ import annotations
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTH_JWKS_URL", "http://auth.test/.well-known/jwks.json")
os.environ.setdefault("RL_ENABLED", "false")
os.environ.setdefault("SWEEP_ENABLED", "false")
os.environ.setdefault("NOTIFICATION_BACKEND", "none")

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from kids_checkin.db import engine_options
from kids_checkin.models import AttendanceRecord, Base, CheckInRequest, Child, KidsService, User, UserRole
from kids_checkin.services.checkin_requests import CheckInRequestEngine
from kids_checkin.services.notifications import NotificationPort

T0 = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier(NotificationPort):
    def __init__(self):
        self.sent = []

    async def notify(self, requester_id, status, details) -> None:
        self.sent.append((requester_id, status, details))


@dataclass
class World:
    parent1: uuid.UUID
    parent2: uuid.UUID
    staff: uuid.UUID
    child: uuid.UUID         # age 6, parent1
    sibling: uuid.UUID       # age 8, parent1 + parent2 (secondary)
    toddler: uuid.UUID       # age 3, parent1
    service: uuid.UUID       # ages 5-10, capacity 2, starts T0+10m
    later_service: uuid.UUID # starts T0+3h, not open yet
    closed_service: uuid.UUID


@pytest.fixture
async def session_maker(tmp_path):
    # file database: every session gets its own connection, like production
    url = f"sqlite+aiosqlite:///{tmp_path / 'checkin.db'}"
    engine = create_async_engine(url, **engine_options(url))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def world(session_maker) -> World:
    w = World(*(uuid.uuid4() for _ in range(9)))
    async with session_maker() as db:
        db.add_all([
            User(id=w.parent1, first_name="Pat", last_name="Parent", email="pat@example.com", role=UserRole.PARENT),
            User(id=w.parent2, first_name="Quinn", last_name="Other", email="quinn@example.com", role=UserRole.PARENT),
            User(id=w.staff, first_name="Sam", last_name="Staff", email="sam@example.com", role=UserRole.STAFF),
        ])
        await db.flush()
        db.add_all([
            Child(
                id=w.child, first_name="Charlie", last_name="Parent", date_of_birth=date(2020, 5, 1),
                primary_parent_id=w.parent1, allergies="Peanuts", medical_notes="  ",
            ),
            Child(
                id=w.sibling, first_name="Dana", last_name="Parent", date_of_birth=date(2018, 3, 2),
                primary_parent_id=w.parent1, secondary_parent_id=w.parent2, special_needs="Needs quiet space",
            ),
            Child(
                id=w.toddler, first_name="Eli", last_name="Parent", date_of_birth=date(2023, 6, 1),
                primary_parent_id=w.parent1,
            ),
            KidsService(
                id=w.service, name="Sunday Kids", location="Room 1", min_age=5, max_age=10, max_capacity=2,
                starts_at=T0 + timedelta(minutes=10), ends_at=T0 + timedelta(hours=2),
            ),
            KidsService(
                id=w.later_service, name="Evening Kids", location="Room 2", min_age=5, max_age=10, max_capacity=10,
                starts_at=T0 + timedelta(hours=3), ends_at=T0 + timedelta(hours=5),
            ),
            KidsService(
                id=w.closed_service, name="Old Kids", location="Room 3", min_age=5, max_age=10, max_capacity=10,
                starts_at=T0, ends_at=T0 + timedelta(hours=2), is_active=False,
            ),
        ])
        await db.commit()
    return w


@pytest.fixture
def run(session_maker, notifier, clock):
    """Run one engine operation in its own session, as a request handler would."""
    async def _run(op, *, with_notifier: NotificationPort | None = None, settings=None):
        async with session_maker() as db:
            engine = CheckInRequestEngine(db, notifier=with_notifier or notifier, clock=clock, settings=settings)
            return await op(engine)
    return _run


@pytest.fixture
def fetch(session_maker):
    async def _fetch(request_id: uuid.UUID) -> CheckInRequest:
        async with session_maker() as db:
            return (await db.execute(select(CheckInRequest).where(CheckInRequest.id == request_id))).scalar_one()
    return _fetch


@pytest.fixture
def count_rows(session_maker):
    async def _count(model, *where) -> int:
        async with session_maker() as db:
            return (await db.execute(select(func.count()).select_from(model).where(*where))).scalar_one()
    return _count


@pytest.fixture
def count_attendance(count_rows):
    async def _count(service_id: uuid.UUID) -> int:
        return await count_rows(AttendanceRecord, AttendanceRecord.service_id == service_id)
    return _count
