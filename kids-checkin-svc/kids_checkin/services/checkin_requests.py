"""QR check-in request workflow.

A parent creates a short-lived request for a child and a kids service; staff
scan its token and approve (which writes the attendance record) or reject it.
Parents may cancel while it is pending and the sweeper expires whatever is
left once the window closes. Only PENDING requests ever transition.
"""
from __future__ import annotations
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.eligibility import is_age_eligible, is_checkin_open
from ..core.tokens import generate_secure_token
from ..errors import Conflict, Expired, Forbidden, InvalidArgument, InvalidState, NotFound
from ..models import (
    AttendanceRecord,
    AttendanceStatus,
    CheckInRequest,
    CheckInRequestStatus,
    Child,
    KidsService,
    User,
    utcnow,
)
from ..schemas import CheckInStatusNotification
from ..store import AttendanceStore, CheckInRequestStore, ChildDirectory, ServiceDirectory, UserDirectory
from .notifications import NotificationPort

logger = logging.getLogger(__name__)

REQUEST_TTL = timedelta(minutes=15)


def seconds_until_expiry(request: CheckInRequest, now: datetime) -> int:
    return max(0, int((request.expires_at - now).total_seconds()))


@dataclass
class CheckInRequestView:
    request: CheckInRequest
    child: Child
    service: KidsService
    requester: User


@dataclass
class CheckInApproval:
    request: CheckInRequest
    attendance: AttendanceRecord
    child: Child
    service: KidsService
    staff: User


@dataclass
class CheckInRejection:
    request: CheckInRequest
    child: Child
    service: KidsService
    staff: User


class CheckInRequestEngine:
    """Owns every status transition of a check-in request.

    One engine wraps one ``AsyncSession``; each public coroutine commits or
    rolls back its own unit of work.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        notifier: NotificationPort,
        clock: Callable[[], datetime] = utcnow,
        settings: Settings | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.clock = clock
        self.settings = settings or get_settings()
        self.requests = CheckInRequestStore(db)
        self.users = UserDirectory(db)
        self.children = ChildDirectory(db)
        self.services = ServiceDirectory(db)
        self.attendance = AttendanceStore(db)

    # ---- parent side ----

    async def create(
        self,
        requester_id: uuid.UUID,
        child_id: uuid.UUID,
        service_id: uuid.UUID,
        notes: str | None = None,
    ) -> tuple[CheckInRequestView, bool]:
        """Returns ``(view, created)``; ``created`` is False for the idempotent return."""
        now = self.clock()

        requester = await self.users.get(requester_id)
        if requester is None:
            raise NotFound("Requester not found")
        child = await self.children.get(child_id)
        if child is None:
            raise NotFound("Child not found")
        if not child.has_parent(requester.id):
            raise Forbidden("You are not a parent of this child")
        service = await self.services.get(service_id)
        if service is None:
            raise NotFound("Service not found")
        if not service.is_active:
            raise InvalidState("Service is inactive")
        if not is_checkin_open(service, now, self.settings.checkin_lead_minutes):
            raise InvalidState("Check-in is not open for this service")
        if not is_age_eligible(child, service, now):
            raise InvalidArgument("Child's age is not eligible for this service")

        existing = await self.requests.find_pending_by_child_and_service(child.id, service.id, now=now)
        if existing is not None:
            logger.info(f"Returning pending check-in request {existing.id} for child {child.id}")
            return await self._load_view(existing), False

        await self.requests.expire_pending_for(child.id, service.id, now=now)
        request = CheckInRequest(
            child_id=child.id,
            service_id=service.id,
            requested_by=requester.id,
            token=generate_secure_token(),
            status=CheckInRequestStatus.PENDING,
            created_at=now,
            expires_at=now + REQUEST_TTL,
            notes=notes,
        )
        self.requests.add(request)
        try:
            await self.db.commit()
        except IntegrityError:
            # a concurrent create won the pending slot for this child and service
            await self.db.rollback()
            existing = await self.requests.find_pending_by_child_and_service(child_id, service_id, now=now)
            if existing is None:
                raise
            return await self._load_view(existing), False

        logger.info(f"Created check-in request {request.id} for child {child.id} at service {service.id}")
        return CheckInRequestView(request=request, child=child, service=service, requester=requester), True

    async def cancel(self, request_id: uuid.UUID, requester_id: uuid.UUID) -> CheckInRequestView:
        now = self.clock()
        request = await self.requests.find_by_id(request_id)
        if request is None:
            raise NotFound("Check-in request not found")
        child = await self.children.get(request.child_id)
        if child is None or not child.has_parent(requester_id):
            raise Forbidden("You are not a parent of this child")
        if request.status != CheckInRequestStatus.PENDING:
            raise InvalidState(f"Cannot cancel a check-in request that is {request.status.value}")
        if now > request.expires_at:
            raise InvalidState("Cannot cancel a check-in request that has expired")

        # self-service action: processed_by stays empty
        if not await self.requests.transition(
            request_id, CheckInRequestStatus.CANCELLED, processed_at=now, valid_at=now
        ):
            await self.db.rollback()
            await self._raise_lost_race(request_id, now)
        await self.db.commit()
        await self.db.refresh(request)
        logger.info(f"Check-in request {request_id} cancelled by {requester_id}")
        return await self._load_view(request)

    async def list_active(self, requester_id: uuid.UUID) -> list[CheckInRequestView]:
        now = self.clock()
        requests = await self.requests.find_active_by_requester(requester_id, now=now)
        return [await self._load_view(r) for r in requests]

    # ---- staff side ----

    async def get_details(self, token: str) -> CheckInRequestView:
        now = self.clock()
        request = await self.requests.find_by_token(token)
        if request is None:
            raise NotFound("Check-in request not found")
        if now > request.expires_at:
            raise Expired("Check-in request has expired")
        return await self._load_view(request)

    async def approve(self, token: str, staff_id: uuid.UUID, notes: str | None = None) -> CheckInApproval:
        now = self.clock()
        request = await self._processable(token, now)
        request_id = request.id
        staff = await self.users.get(staff_id)
        if staff is None:
            raise NotFound("Staff member not found")

        service = await self.services.lock(request.service_id)
        child = await self.children.get(request.child_id)
        requester = await self.users.get(request.requested_by)

        occupancy = await self.attendance.count_active_for_service(service.id)
        if occupancy >= service.max_capacity:
            await self.db.rollback()
            raise Conflict("Service is at capacity")
        day_start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
        already = await self.attendance.find_active_for_child_and_service(
            child.id, service.id, start=day_start, end=day_start + timedelta(days=1)
        )
        if already is not None:
            await self.db.rollback()
            raise Conflict("Child is already checked in to this service today")

        # the count above only fails fast; the conditional write is the authority
        if not await self.attendance.claim_seat(service.id, now=now):
            logger.warning(f"Last seat at service {service.id} taken concurrently; request {request_id} not approved")
            await self.db.rollback()
            raise Conflict("Service is at capacity")

        if not await self.requests.transition(
            request_id,
            CheckInRequestStatus.APPROVED,
            processed_at=now,
            processed_by=staff.id,
            valid_at=now,
        ):
            await self.db.rollback()
            await self._raise_lost_race(request_id, now)

        record = AttendanceRecord(
            child_id=child.id,
            service_id=service.id,
            checkin_request_id=request_id,
            status=AttendanceStatus.CHECKED_IN,
            check_in_time=now,
            check_in_date=now.date(),
            checked_in_by=staff.full_name,
            requested_by=requester.full_name if requester else None,
            approved_by_staff=staff.full_name,
            notes=notes or request.notes,
        )
        self.attendance.add(record)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise Conflict("Child is already checked in to this service today")
        await self.db.refresh(request)

        logger.info(f"Check-in request {request_id} approved by {staff.id}; attendance {record.id}")
        await self._notify(
            request,
            CheckInRequestStatus.APPROVED,
            approved_by=staff.full_name,
            attendance_id=record.id,
        )
        return CheckInApproval(request=request, attendance=record, child=child, service=service, staff=staff)

    async def reject(self, token: str, staff_id: uuid.UUID, reason: str) -> CheckInRejection:
        now = self.clock()
        request = await self._processable(token, now)
        request_id = request.id
        staff = await self.users.get(staff_id)
        if staff is None:
            raise NotFound("Staff member not found")
        reason = (reason or "").strip()
        if not reason:
            raise InvalidArgument("A rejection reason is required")

        child = await self.children.get(request.child_id)
        service = await self.services.get(request.service_id)
        if not await self.requests.transition(
            request_id,
            CheckInRequestStatus.REJECTED,
            processed_at=now,
            processed_by=staff.id,
            rejection_reason=reason,
            valid_at=now,
        ):
            await self.db.rollback()
            await self._raise_lost_race(request_id, now)
        await self.db.commit()
        await self.db.refresh(request)

        logger.info(f"Check-in request {request_id} rejected by {staff.id}")
        await self._notify(request, CheckInRequestStatus.REJECTED, reason=reason)
        return CheckInRejection(request=request, child=child, service=service, staff=staff)

    # ---- system side ----

    async def expire_stale(self, now: datetime | None = None) -> int:
        """Expire every PENDING request whose window closed before ``now``.

        Silent: requesters are not notified, their countdown already hit zero.
        """
        now = now or self.clock()
        stale: Sequence[CheckInRequest] = await self.requests.find_pending_expired_before(now)
        if not stale:
            return 0
        expired = await self.requests.expire_all([r.id for r in stale], now=now)
        await self.db.commit()
        return expired

    # ---- helpers ----

    async def _processable(self, token: str, now: datetime) -> CheckInRequest:
        request = await self.requests.find_by_token(token)
        if request is None:
            raise NotFound("Check-in request not found")
        if request.status == CheckInRequestStatus.EXPIRED or now > request.expires_at:
            raise Expired("Check-in request has expired")
        if request.status != CheckInRequestStatus.PENDING:
            raise InvalidState(f"Check-in request is already {request.status.value}")
        return request

    async def _raise_lost_race(self, request_id: uuid.UUID, now: datetime) -> None:
        current = await self.requests.find_by_id(request_id)
        if current is None:
            raise NotFound("Check-in request not found")
        logger.warning(f"Check-in request {request_id} changed concurrently (now {current.status.value})")
        if current.status == CheckInRequestStatus.EXPIRED or now > current.expires_at:
            raise Expired("Check-in request has expired")
        raise InvalidState(f"Check-in request is already {current.status.value}")

    async def _load_view(self, request: CheckInRequest) -> CheckInRequestView:
        child = await self.children.get(request.child_id)
        service = await self.services.get(request.service_id)
        requester = await self.users.get(request.requested_by)
        return CheckInRequestView(request=request, child=child, service=service, requester=requester)

    async def _notify(self, request: CheckInRequest, status: CheckInRequestStatus, **fields) -> None:
        details = CheckInStatusNotification(
            request_id=request.id,
            child_id=request.child_id,
            service_id=request.service_id,
            status=status.value,
            timestamp=request.processed_at or self.clock(),
            **fields,
        )
        try:
            await asyncio.wait_for(
                self.notifier.notify(request.requested_by, status, details),
                timeout=self.settings.notify_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Notification for check-in request {request.id} timed out")
        except Exception as e:
            logger.warning(f"Notification for check-in request {request.id} failed: {e}")
