"""Device liveness.

The poller writes ``status``/``last_seen``; nothing else does. Viewers never
rewrite them and instead derive an effective status from how old
``last_seen`` is.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlmodel import Session

from .devices import load_device
from .models import Device, DeviceStatus
from .policy import Action, Actor, Resource, authorize
from .settings import settings
from .utils import as_utc, utcnow

log = logging.getLogger(__name__)


def _write(session: Session, device_id: str, actor: Actor | None, values: dict) -> Device:
    device = load_device(session, device_id)
    if actor is not None:
        authorize(session, actor, Resource.device, Action.heartbeat, device)
    session.exec(
        update(Device)
        .where(Device.id == device_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return session.get(Device, device_id, populate_existing=True) or device


def heartbeat(session: Session, device_id: str, actor: Actor | None = None,
              at: datetime | None = None) -> Device:
    seen = as_utc(at) if at else utcnow()
    return _write(session, device_id, actor, {"status": DeviceStatus.online.value, "last_seen": seen})


def mark_offline(session: Session, device_id: str, actor: Actor | None = None) -> Device:
    log.info("device %s going offline", device_id)
    return _write(session, device_id, actor, {"status": DeviceStatus.offline.value})


def is_stale(device: Device, now: datetime | None = None, stale_after: float | None = None) -> bool:
    if device.last_seen is None:
        return True
    window = timedelta(seconds=settings.stale_after_seconds if stale_after is None else stale_after)
    now = as_utc(now) if now else utcnow()
    return now - as_utc(device.last_seen) > window


def effective_status(device: Device, now: datetime | None = None, stale_after: float | None = None) -> DeviceStatus:
    """What a viewer should display: a stale ``online`` reads as ``offline``."""
    stored = DeviceStatus(device.status)
    if stored is DeviceStatus.online and is_stale(device, now, stale_after):
        return DeviceStatus.offline
    return stored
