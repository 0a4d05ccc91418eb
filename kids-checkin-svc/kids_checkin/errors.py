"""Failure kinds raised by the check-in request engine.

Each kind carries the HTTP status the transport layer answers with, so
routers never translate business failures themselves.
"""
from __future__ import annotations
from fastapi import status


class CheckInError(Exception):
    kind = "error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(CheckInError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class Forbidden(CheckInError):
    kind = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class InvalidArgument(CheckInError):
    kind = "invalid_argument"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidState(CheckInError):
    kind = "invalid_state"
    status_code = status.HTTP_400_BAD_REQUEST


class Expired(CheckInError):
    # distinct from NotFound: the code existed but its window has elapsed
    kind = "expired"
    status_code = status.HTTP_410_GONE


class Conflict(CheckInError):
    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT
