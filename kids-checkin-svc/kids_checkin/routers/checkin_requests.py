from __future__ import annotations
import uuid
from datetime import datetime
import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect, status

from ..core.config import get_settings
from ..core.eligibility import age_in_years
from ..core.redis import allow_request
from ..deps import actor_id, decode_access_token, get_claims, get_engine, require_staff
from ..models import CheckInRequestStatus, Child, KidsService, User
from ..schemas import (
    ApproveCheckIn,
    CheckInApprovalRead,
    CheckInRejectionRead,
    CheckInRequestCreate,
    CheckInRequestDetails,
    CheckInRequestRead,
    ChildDetail,
    ChildSummary,
    ParentSummary,
    RejectCheckIn,
    ServiceSummary,
)
from ..services.checkin_requests import CheckInRequestEngine, CheckInRequestView, seconds_until_expiry
from ..services.notifications import hub

settings = get_settings()
router = APIRouter(prefix="/kids/checkin-requests", tags=["checkin-requests"])

def _child_summary(c: Child, now: datetime) -> ChildSummary:
    return ChildSummary(
        id=c.id, first_name=c.first_name, last_name=c.last_name, full_name=c.full_name,
        age=age_in_years(c.date_of_birth, now.date()),
    )

def _child_detail(c: Child, now: datetime) -> ChildDetail:
    return ChildDetail(
        **_child_summary(c, now).model_dump(),
        date_of_birth=c.date_of_birth, gender=c.gender,
        emergency_contact_name=c.emergency_contact_name, emergency_contact_phone=c.emergency_contact_phone,
        medical_notes=c.medical_notes, allergies=c.allergies, special_needs=c.special_needs,
        pickup_authorization=c.pickup_authorization,
    )

def _service_summary(s: KidsService) -> ServiceSummary:
    return ServiceSummary(
        id=s.id, name=s.name, location=s.location, starts_at=s.starts_at, ends_at=s.ends_at,
        min_age=s.min_age, max_age=s.max_age,
    )

def _parent_summary(u: User) -> ParentSummary:
    return ParentSummary(
        id=u.id, first_name=u.first_name, last_name=u.last_name, full_name=u.full_name, email=u.email, phone=u.phone
    )

def _flagged(text: str | None) -> bool:
    return bool(text and text.strip())

def _request_read(v: CheckInRequestView, now: datetime) -> CheckInRequestRead:
    r = v.request
    return CheckInRequestRead(
        id=r.id, token=r.token, qr_code_data=f"{settings.checkin_url_base}/{r.token}",
        child=_child_summary(v.child, now), service=_service_summary(v.service),
        requested_by=_parent_summary(v.requester), status=r.status.value, notes=r.notes,
        created_at=r.created_at, expires_at=r.expires_at,
        expires_in_seconds=seconds_until_expiry(r, now), is_expired=now > r.expires_at,
    )

async def _rate_limit(request: Request, route_key: str):
    ip = request.client.host if request.client else "unknown"
    if not await allow_request(ip, route_key):
        raise HTTPException(status_code=429, detail="Too many requests")

# --- 1) Parent creates a check-in request (returns the existing one if still pending)
@router.post("", response_model=CheckInRequestRead, status_code=201)
async def create_checkin_request(
    payload: CheckInRequestCreate,
    request: Request,
    response: Response,
    claims: dict = Depends(get_claims),
    engine: CheckInRequestEngine = Depends(get_engine),
):
    await _rate_limit(request, "checkin.create")
    view, created = await engine.create(actor_id(claims), payload.child_id, payload.service_id, payload.notes)
    if not created:
        response.status_code = status.HTTP_200_OK
    return _request_read(view, engine.clock())

# --- 2) Parent's live requests
@router.get("/active", response_model=list[CheckInRequestRead])
async def active_requests(claims: dict = Depends(get_claims), engine: CheckInRequestEngine = Depends(get_engine)):
    views = await engine.list_active(actor_id(claims))
    now = engine.clock()
    return [_request_read(v, now) for v in views]

# --- 3) Staff scans the QR code
@router.get("/token/{token}", response_model=CheckInRequestDetails)
async def request_details(
    token: str,
    request: Request,
    claims: dict = Depends(require_staff),
    engine: CheckInRequestEngine = Depends(get_engine),
):
    await _rate_limit(request, "checkin.scan")
    v = await engine.get_details(token)
    now = engine.clock()
    r = v.request
    return CheckInRequestDetails(
        id=r.id, child=_child_detail(v.child, now), service=_service_summary(v.service),
        requested_by=_parent_summary(v.requester), status=r.status.value,
        created_at=r.created_at, expires_at=r.expires_at, expires_in_seconds=seconds_until_expiry(r, now),
        notes=r.notes, is_expired=now > r.expires_at,
        can_be_processed=r.status == CheckInRequestStatus.PENDING and now <= r.expires_at,
        has_medical_alerts=_flagged(v.child.medical_notes),
        has_allergies=_flagged(v.child.allergies),
        has_special_needs=_flagged(v.child.special_needs),
    )

@router.post("/token/{token}/approve", response_model=CheckInApprovalRead)
async def approve_request(
    token: str,
    payload: ApproveCheckIn | None = None,
    claims: dict = Depends(require_staff),
    engine: CheckInRequestEngine = Depends(get_engine),
):
    a = await engine.approve(token, actor_id(claims), payload.notes if payload else None)
    now = engine.clock()
    return CheckInApprovalRead(
        request_id=a.request.id, attendance_id=a.attendance.id,
        child=_child_summary(a.child, now), service=_service_summary(a.service),
        check_in_time=a.attendance.check_in_time, approved_by=a.staff.full_name,
        message=f"{a.child.full_name} checked in to {a.service.name}",
    )

@router.post("/token/{token}/reject", response_model=CheckInRejectionRead)
async def reject_request(
    token: str,
    payload: RejectCheckIn,
    claims: dict = Depends(require_staff),
    engine: CheckInRequestEngine = Depends(get_engine),
):
    rj = await engine.reject(token, actor_id(claims), payload.reason)
    now = engine.clock()
    return CheckInRejectionRead(
        request_id=rj.request.id, child=_child_summary(rj.child, now), service=_service_summary(rj.service),
        rejected_by=rj.staff.full_name, reason=rj.request.rejection_reason,
        message=f"Check-in for {rj.child.full_name} was rejected",
    )

# --- 4) Parent cancels a pending request
@router.delete("/{request_id}", response_model=CheckInRequestRead)
async def cancel_request(
    request_id: uuid.UUID,
    claims: dict = Depends(get_claims),
    engine: CheckInRequestEngine = Depends(get_engine),
):
    view = await engine.cancel(request_id, actor_id(claims))
    return _request_read(view, engine.clock())

# --- 5) Per-user status channel
@router.websocket("/ws")
async def status_updates(websocket: WebSocket, access_token: str | None = Query(default=None)):
    # browsers cannot set headers on a WebSocket handshake, so the token rides in the query
    try:
        if not access_token:
            raise HTTPException(status_code=401, detail="Missing token")
        user_id = actor_id(await decode_access_token(access_token))
    except (HTTPException, httpx.HTTPError):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await hub.connect(websocket, user_id)
    try:
        while True:
            # client frames are only keep-alives
            await websocket.receive_text()
    except WebSocketDisconnect:
        hub.disconnect(websocket, user_id)
