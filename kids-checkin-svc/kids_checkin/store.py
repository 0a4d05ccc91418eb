"""Persistence adapters used by the check-in request engine.

Every mutation of a request's status goes through a conditional UPDATE that
only matches rows still in PENDING, so concurrent approve / reject / cancel /
sweep calls on the same request resolve to exactly one winner.
"""
from __future__ import annotations
import uuid
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AttendanceRecord,
    AttendanceStatus,
    CheckInRequest,
    CheckInRequestStatus,
    Child,
    KidsService,
    User,
)


class CheckInRequestStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_token(self, token: str) -> CheckInRequest | None:
        return (await self.db.execute(
            select(CheckInRequest).where(CheckInRequest.token == token)
        )).scalar_one_or_none()

    async def find_by_id(self, request_id: uuid.UUID) -> CheckInRequest | None:
        return (await self.db.execute(
            select(CheckInRequest).where(CheckInRequest.id == request_id)
        )).scalar_one_or_none()

    async def find_pending_by_child_and_service(
        self, child_id: uuid.UUID, service_id: uuid.UUID, *, now: datetime
    ) -> CheckInRequest | None:
        """The live (pending and not yet expired) request for a child and service."""
        return (await self.db.execute(
            select(CheckInRequest).where(
                CheckInRequest.child_id == child_id,
                CheckInRequest.service_id == service_id,
                CheckInRequest.status == CheckInRequestStatus.PENDING,
                CheckInRequest.expires_at >= now,
            )
        )).scalars().first()

    async def find_pending_expired_before(self, cutoff: datetime) -> Sequence[CheckInRequest]:
        return (await self.db.execute(
            select(CheckInRequest)
            .where(CheckInRequest.status == CheckInRequestStatus.PENDING, CheckInRequest.expires_at < cutoff)
            .order_by(CheckInRequest.expires_at.asc())
        )).scalars().all()

    async def find_active_by_requester(self, requester_id: uuid.UUID, *, now: datetime) -> Sequence[CheckInRequest]:
        """Pending, unexpired requests for every child the requester is a parent of."""
        return (await self.db.execute(
            select(CheckInRequest)
            .join(Child, Child.id == CheckInRequest.child_id)
            .where(
                or_(Child.primary_parent_id == requester_id, Child.secondary_parent_id == requester_id),
                CheckInRequest.status == CheckInRequestStatus.PENDING,
                CheckInRequest.expires_at >= now,
            )
            .order_by(CheckInRequest.created_at.desc())
        )).scalars().all()

    def add(self, request: CheckInRequest) -> None:
        self.db.add(request)

    async def transition(
        self,
        request_id: uuid.UUID,
        to_status: CheckInRequestStatus,
        *,
        processed_at: datetime,
        processed_by: uuid.UUID | None = None,
        rejection_reason: str | None = None,
        valid_at: datetime | None = None,
    ) -> bool:
        """Move a PENDING request to ``to_status``.

        Returns False when the row is no longer pending (or, with ``valid_at``,
        when it expired before that instant); the caller lost the race.
        """
        stmt = (
            update(CheckInRequest)
            .where(CheckInRequest.id == request_id, CheckInRequest.status == CheckInRequestStatus.PENDING)
            .values(
                status=to_status,
                processed_at=processed_at,
                processed_by=processed_by,
                rejection_reason=rejection_reason,
            )
            .execution_options(synchronize_session=False)
        )
        if valid_at is not None:
            stmt = stmt.where(CheckInRequest.expires_at >= valid_at)
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def expire_all(self, request_ids: Iterable[uuid.UUID], *, now: datetime) -> int:
        ids = list(request_ids)
        if not ids:
            return 0
        result = await self.db.execute(
            update(CheckInRequest)
            .where(
                CheckInRequest.id.in_(ids),
                CheckInRequest.status == CheckInRequestStatus.PENDING,
                CheckInRequest.expires_at < now,
            )
            .values(status=CheckInRequestStatus.EXPIRED, processed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def expire_pending_for(self, child_id: uuid.UUID, service_id: uuid.UUID, *, now: datetime) -> int:
        """Expire a lapsed, not yet swept request so a fresh one can take its slot."""
        result = await self.db.execute(
            update(CheckInRequest)
            .where(
                CheckInRequest.child_id == child_id,
                CheckInRequest.service_id == service_id,
                CheckInRequest.status == CheckInRequestStatus.PENDING,
                CheckInRequest.expires_at < now,
            )
            .values(status=CheckInRequestStatus.EXPIRED, processed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class UserDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: uuid.UUID) -> User | None:
        return (await self.db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()


class ChildDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, child_id: uuid.UUID) -> Child | None:
        return (await self.db.execute(select(Child).where(Child.id == child_id))).scalar_one_or_none()


class ServiceDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, service_id: uuid.UUID) -> KidsService | None:
        return (await self.db.execute(select(KidsService).where(KidsService.id == service_id))).scalar_one_or_none()

    async def lock(self, service_id: uuid.UUID) -> KidsService | None:
        # serialises concurrent approvals for one service (no-op on SQLite)
        return (await self.db.execute(
            select(KidsService).where(KidsService.id == service_id).with_for_update()
        )).scalar_one_or_none()


class AttendanceStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    def add(self, record: AttendanceRecord) -> None:
        self.db.add(record)

    async def find_active_for_child_and_service(
        self, child_id: uuid.UUID, service_id: uuid.UUID, *, start: datetime, end: datetime
    ) -> AttendanceRecord | None:
        return (await self.db.execute(
            select(AttendanceRecord).where(
                AttendanceRecord.child_id == child_id,
                AttendanceRecord.service_id == service_id,
                AttendanceRecord.status == AttendanceStatus.CHECKED_IN,
                AttendanceRecord.check_in_time >= start,
                AttendanceRecord.check_in_time < end,
            )
        )).scalars().first()

    async def claim_seat(self, service_id: uuid.UUID, *, now: datetime) -> bool:
        """Conditionally stamp the service row while it still has a free seat.

        The occupancy count is evaluated inside the write, after the row (or, on
        SQLite, the database) write lock is taken, so two approvals cannot both
        see the last seat as free. False means the service is full.
        """
        occupied = (
            select(func.count())
            .select_from(AttendanceRecord)
            .where(
                AttendanceRecord.service_id == service_id,
                AttendanceRecord.status == AttendanceStatus.CHECKED_IN,
            )
            .scalar_subquery()
        )
        result = await self.db.execute(
            update(KidsService)
            .where(KidsService.id == service_id, occupied < KidsService.max_capacity)
            .values(last_checkin_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def count_active_for_service(self, service_id: uuid.UUID) -> int:
        return (await self.db.execute(
            select(func.count()).select_from(AttendanceRecord).where(
                AttendanceRecord.service_id == service_id,
                AttendanceRecord.status == AttendanceStatus.CHECKED_IN,
            )
        )).scalar_one()
