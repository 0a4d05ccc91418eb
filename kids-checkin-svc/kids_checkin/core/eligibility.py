"""Pure eligibility rules for admitting a child to a kids service session."""
from __future__ import annotations
from datetime import date, datetime, timedelta

from ..models import Child, KidsService


def age_in_years(date_of_birth: date, on: date) -> int:
    years = on.year - date_of_birth.year
    if (on.month, on.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


def is_checkin_open(service: KidsService, now: datetime, lead_minutes: int) -> bool:
    """True iff ``now`` lies within ``[starts_at - lead, ends_at]``.

    A lead time configured on the service itself takes precedence over
    ``lead_minutes``.
    """
    lead = service.checkin_lead_minutes if service.checkin_lead_minutes is not None else lead_minutes
    opens_at = service.starts_at - timedelta(minutes=lead)
    return opens_at <= now <= service.ends_at


def is_age_eligible(child: Child, service: KidsService, now: datetime) -> bool:
    age = age_in_years(child.date_of_birth, now.date())
    return service.min_age <= age <= service.max_age
