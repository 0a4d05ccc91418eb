from __future__ import annotations
import json
from typing import Sequence
from nats.aio.client import Client as NATS
from .config import get_settings

_settings = get_settings()
_nats = NATS()

async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers)

async def nats_close():
    if _nats.is_connected:
        await _nats.drain()

def status_subject(requester_id: str) -> str:
    return f"{_settings.nats_subject_checkin_status}.{requester_id}"

async def publish_status(requester_id: str, evt: dict):
    """
    Publish one check-in status change on the requester's own subject.
    evt = {
      "request_id": str,
      "child_id": str,
      "service_id": str,
      "status": "APPROVED" | "REJECTED" | ...,
      "timestamp": iso8601,
      ...status specific fields
    }
    """
    await nats_connect()
    await _nats.publish(status_subject(requester_id), json.dumps(evt).encode("utf-8"))
