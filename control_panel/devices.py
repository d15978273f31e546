"""Device registry operations on the producer side."""

import ipaddress
import logging
import re

from sqlalchemy import delete, or_
from sqlmodel import Session, select

from .errors import InvalidPort, NotFound, ValidationError
from .models import Command, Device, DeviceStatus, Team, TeamMember
from .policy import Action, Actor, Resource, authorize

log = logging.getLogger(__name__)

_HOSTNAME = re.compile(r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$")


def validate_name(name: str | None) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name must not be empty")
    return name


def validate_host(host: str | None) -> str:
    host = (host or "").strip()
    if not host:
        raise ValidationError("host must not be empty")
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        pass
    # dotted quads that failed ip parsing are typos, not hostnames
    if re.fullmatch(r"[\d.]+", host) or not _HOSTNAME.match(host):
        raise ValidationError(f"malformed host {host!r}")
    return host


def validate_port(port) -> int:
    if isinstance(port, bool) or not isinstance(port, int):
        raise InvalidPort(port)
    if not 1 <= port <= 65535:
        raise InvalidPort(port)
    return port


def load_device(session: Session, device_id: str) -> Device:
    d = session.get(Device, device_id, populate_existing=True)
    if not d:
        raise NotFound("device", device_id)
    return d


def register_device(session: Session, name: str, host: str, port: int, owner: Actor) -> Device:
    d = Device(
        name=validate_name(name),
        ip_address=validate_host(host),
        port=validate_port(port),
        owner_id=owner if isinstance(owner, str) else "",
        status=DeviceStatus.unknown.value,
        team_id=None,
        last_seen=None,
    )
    authorize(session, owner, Resource.device, Action.create, d)
    session.add(d)
    session.commit()
    session.refresh(d)
    log.info("registered device %s (%s:%s) for %s", d.id, d.ip_address, d.port, owner)
    return d


def get_device(session: Session, device_id: str, actor: Actor) -> Device:
    d = load_device(session, device_id)
    authorize(session, actor, Resource.device, Action.view, d)
    return d


def list_devices(session: Session, actor: Actor) -> list[Device]:
    """Devices the actor owns or can see through a team, newest first."""
    teams_joined = select(TeamMember.team_id).where(TeamMember.user_id == actor)
    teams_created = select(Team.id).where(Team.created_by == actor)
    stmt = (
        select(Device)
        .where(or_(
            Device.owner_id == actor,
            Device.team_id.in_(teams_joined),
            Device.team_id.in_(teams_created),
        ))
        .order_by(Device.created_at.desc())
    )
    return list(session.exec(stmt).all())


def update_device(session: Session, device_id: str, actor: Actor, name: str | None = None,
                  host: str | None = None, port: int | None = None) -> Device:
    d = load_device(session, device_id)
    authorize(session, actor, Resource.device, Action.update, d)
    if name is not None:
        d.name = validate_name(name)
    if host is not None:
        d.ip_address = validate_host(host)
    if port is not None:
        d.port = validate_port(port)
    session.add(d)
    session.commit()
    session.refresh(d)
    return d


def assign_device_team(session: Session, device_id: str, actor: Actor, team_id: str | None) -> Device:
    d = load_device(session, device_id)
    authorize(session, actor, Resource.device, Action.assign_team, d)
    if team_id is not None:
        team = session.get(Team, team_id)
        if not team:
            raise NotFound("team", team_id)
        authorize(session, actor, Resource.team, Action.view, team)
    d.team_id = team_id
    session.add(d)
    session.commit()
    session.refresh(d)
    log.info("device %s team -> %s", d.id, team_id)
    return d


def delete_device(session: Session, device_id: str, actor: Actor) -> None:
    d = load_device(session, device_id)
    authorize(session, actor, Resource.device, Action.delete, d)
    # explicit so the cascade holds on stores without FK enforcement
    session.exec(delete(Command).where(Command.device_id == device_id))
    session.delete(d)
    session.commit()
    log.info("deleted device %s and its commands", device_id)
