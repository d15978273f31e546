"""Access policy.

Every read or mutation goes through :func:`authorize`, which looks up a
predicate by ``(resource, action)`` and raises :class:`NotAuthorized` when it
returns False. Actors are either a user id (``str``) or a :class:`DeviceActor`
authenticated with a device-scoped token.
"""

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union

from sqlmodel import Session, select

from .errors import NotAuthorized
from .models import Command, Device, Team, TeamMember, TeamRole
from .settings import settings


@dataclass(frozen=True)
class DeviceActor:
    device_id: str


Actor = Union[str, DeviceActor]


class Resource(str, Enum):
    device = "device"
    command = "command"
    team = "team"
    membership = "membership"


class Action(str, Enum):
    view = "view"
    create = "create"
    update = "update"
    delete = "delete"
    assign_team = "assign_team"
    issue = "issue"
    update_status = "update_status"
    add = "add"
    remove = "remove"
    poll = "poll"
    heartbeat = "heartbeat"


Predicate = Callable[[Session, Actor, object], bool]


def _user(actor: Actor) -> str | None:
    return actor if isinstance(actor, str) and actor else None


def team_creator(session: Session, team_id: str | None) -> str | None:
    if not team_id:
        return None
    team = session.get(Team, team_id)
    return team.created_by if team else None


def membership(session: Session, team_id: str, user_id: str) -> TeamMember | None:
    stmt = select(TeamMember).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
    return session.exec(stmt).first()


def is_team_member(session: Session, team_id: str | None, user_id: str | None) -> bool:
    if not team_id or not user_id:
        return False
    if team_creator(session, team_id) == user_id:
        return True
    return membership(session, team_id, user_id) is not None


def is_team_admin(session: Session, team_id: str | None, user_id: str | None) -> bool:
    if not team_id or not user_id:
        return False
    if team_creator(session, team_id) == user_id:
        return True
    m = membership(session, team_id, user_id)
    return m is not None and m.role == TeamRole.admin.value


def _device_visible(session: Session, actor: Actor, device: Device) -> bool:
    user = _user(actor)
    return user is not None and (device.owner_id == user or is_team_member(session, device.team_id, user))


def _device_owner(session: Session, actor: Actor, device: Device) -> bool:
    user = _user(actor)
    return user is not None and device.owner_id == user


def _device_update(session: Session, actor: Actor, device: Device) -> bool:
    user = _user(actor)
    if user is None:
        return False
    return device.owner_id == user or (device.team_id is not None and team_creator(session, device.team_id) == user)


def _device_self(session: Session, actor: Actor, device: Device) -> bool:
    return isinstance(actor, DeviceActor) and actor.device_id == device.id


def _command_status(session: Session, actor: Actor, command: Command) -> bool:
    return isinstance(actor, DeviceActor) and actor.device_id == command.device_id


def _team_visible(session: Session, actor: Actor, team: Team) -> bool:
    return is_team_member(session, team.id, _user(actor))


def _team_creator(session: Session, actor: Actor, team: Team) -> bool:
    user = _user(actor)
    return user is not None and team.created_by == user


def _membership_add(session: Session, actor: Actor, team: Team) -> bool:
    return is_team_admin(session, team.id, _user(actor))


def _membership_remove(session: Session, actor: Actor, member: TeamMember) -> bool:
    user = _user(actor)
    if user is None or team_creator(session, member.team_id) == member.user_id:
        return False
    return member.user_id == user or is_team_admin(session, member.team_id, user)


POLICIES: dict[tuple[Resource, Action], Predicate] = {
    (Resource.device, Action.view): _device_visible,
    (Resource.device, Action.create): lambda s, a, d: _user(a) is not None and d.owner_id == a,
    (Resource.device, Action.update): _device_update,
    (Resource.device, Action.delete): _device_owner,
    (Resource.device, Action.assign_team): _device_owner,
    (Resource.device, Action.poll): _device_self,
    (Resource.device, Action.heartbeat): _device_self,
    # command/view and command/issue are evaluated against the target device
    (Resource.command, Action.view): _device_visible,
    (Resource.command, Action.issue): _device_visible,
    (Resource.command, Action.update_status): _command_status,
    (Resource.team, Action.view): _team_visible,
    (Resource.team, Action.update): _team_creator,
    (Resource.team, Action.delete): _team_creator,
    (Resource.membership, Action.view): _team_visible,
    (Resource.membership, Action.add): _membership_add,
    (Resource.membership, Action.remove): _membership_remove,
}


def allowed(session: Session, actor: Actor, resource: Resource, action: Action, obj) -> bool:
    predicate = POLICIES.get((resource, action))
    if predicate is None:
        return False
    return bool(predicate(session, actor, obj))


def authorize(session: Session, actor: Actor, resource: Resource, action: Action, obj) -> None:
    if not allowed(session, actor, resource, action, obj):
        raise NotAuthorized(f"{actor!s} may not {action.value} {resource.value}")


def device_token(device_id: str, secret: str | None = None) -> str:
    key = (secret or settings.device_secret).encode("utf-8")
    return hmac.new(key, device_id.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_device_token(device_id: str, token: str | None, secret: str | None = None) -> DeviceActor:
    if not token or not hmac.compare_digest(device_token(device_id, secret), token):
        raise NotAuthorized(f"invalid credential for device {device_id}")
    return DeviceActor(device_id=device_id)
