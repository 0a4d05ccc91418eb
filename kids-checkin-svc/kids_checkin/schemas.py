from __future__ import annotations
from typing import Literal
from uuid import UUID
from datetime import date, datetime
from pydantic import BaseModel, Field

RequestStatus = Literal["PENDING", "APPROVED", "REJECTED", "CANCELLED", "EXPIRED"]

# ---- Inbound ----
class CheckInRequestCreate(BaseModel):
    child_id: UUID
    service_id: UUID
    notes: str | None = Field(default=None, max_length=1000)

class ApproveCheckIn(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)

class RejectCheckIn(BaseModel):
    # emptiness is a business rule; checked by the engine
    reason: str = Field(default="", max_length=1000)

# ---- Embedded summaries ----
class ChildSummary(BaseModel):
    id: UUID
    first_name: str
    last_name: str
    full_name: str
    age: int

class ChildDetail(ChildSummary):
    date_of_birth: date
    gender: str | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None
    medical_notes: str | None = None
    allergies: str | None = None
    special_needs: str | None = None
    pickup_authorization: str | None = None

class ServiceSummary(BaseModel):
    id: UUID
    name: str
    location: str
    starts_at: datetime
    ends_at: datetime
    min_age: int
    max_age: int

class ParentSummary(BaseModel):
    id: UUID
    first_name: str
    last_name: str
    full_name: str
    email: str
    phone: str | None = None

# ---- Outbound ----
class CheckInRequestRead(BaseModel):
    id: UUID
    token: str
    qr_code_data: str  # frontends encode this into the QR image
    child: ChildSummary
    service: ServiceSummary
    requested_by: ParentSummary
    status: RequestStatus
    notes: str | None = None
    created_at: datetime
    expires_at: datetime
    expires_in_seconds: int
    is_expired: bool

class CheckInRequestDetails(BaseModel):
    id: UUID
    child: ChildDetail
    service: ServiceSummary
    requested_by: ParentSummary
    status: RequestStatus
    created_at: datetime
    expires_at: datetime
    expires_in_seconds: int
    notes: str | None = None
    is_expired: bool
    can_be_processed: bool
    has_medical_alerts: bool
    has_allergies: bool
    has_special_needs: bool

class CheckInApprovalRead(BaseModel):
    request_id: UUID
    attendance_id: UUID
    child: ChildSummary
    service: ServiceSummary
    check_in_time: datetime
    approved_by: str
    message: str

class CheckInRejectionRead(BaseModel):
    request_id: UUID
    child: ChildSummary
    service: ServiceSummary
    rejected_by: str
    reason: str
    message: str

class CheckInStatusNotification(BaseModel):
    """Payload pushed to the requester when a request leaves PENDING."""
    request_id: UUID
    child_id: UUID
    service_id: UUID
    status: RequestStatus
    timestamp: datetime
    approved_by: str | None = None
    attendance_id: UUID | None = None
    reason: str | None = None
