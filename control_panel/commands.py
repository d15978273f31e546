"""Command store: issuing on the producer side, polling and lifecycle writes
on the consumer side.

Consumer calls take an optional ``actor``. ``None`` means the caller already
holds elevated store credentials (the in-process poller); the HTTP agent
endpoints pass a :class:`~control_panel.policy.DeviceActor`.
"""

import logging
from collections.abc import Iterator
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlmodel import Session, select

from .devices import load_device
from .errors import InvalidTransition, NotFound, ValidationError
from .lifecycle import check_transition
from .models import Command, CommandKind, CommandStatus
from .policy import Action, Actor, Resource, authorize
from .settings import settings
from .utils import as_utc, utcnow

log = logging.getLogger(__name__)


def known_kinds() -> set[str]:
    return {k.value for k in CommandKind} | set(settings.extra_command_kinds)


def validate_kind(kind: str) -> str:
    if kind not in known_kinds():
        raise ValidationError(f"unknown command kind {kind!r}")
    return kind


def validate_payload(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict) or not all(isinstance(k, str) for k in payload):
        raise ValidationError("payload must be an object with string keys")
    return dict(payload)


def load_command(session: Session, command_id: str) -> Command:
    cmd = session.get(Command, command_id, populate_existing=True)
    if not cmd:
        raise NotFound("command", command_id)
    return cmd


def issue_command(session: Session, device_id: str, kind: str, payload: dict | None,
                  issuing_user: Actor, now: datetime | None = None) -> Command:
    device = load_device(session, device_id)
    authorize(session, issuing_user, Resource.command, Action.issue, device)
    cmd = Command(
        device_id=device.id,
        command_type=validate_kind(kind),
        payload=validate_payload(payload),
        status=CommandStatus.pending.value,
        sent_by=issuing_user,
        sent_at=as_utc(now) if now else utcnow(),
        executed_at=None,
    )
    session.add(cmd)
    session.commit()
    session.refresh(cmd)
    log.info("issued %s %s -> device %s by %s", cmd.command_type, cmd.id, device.id, issuing_user)
    return cmd


def list_commands(session: Session, device_id: str, actor: Actor, limit: int = 50) -> list[Command]:
    device = load_device(session, device_id)
    authorize(session, actor, Resource.command, Action.view, device)
    stmt = (
        select(Command)
        .where(Command.device_id == device_id)
        .order_by(Command.sent_at.desc())
        .limit(limit)
    )
    return list(session.exec(stmt).all())


def fetch_pending(session: Session, device_id: str, actor: Actor | None = None) -> Iterator[Command]:
    """Pending commands for one device, oldest first, yielded lazily."""
    device = load_device(session, device_id)
    if actor is not None:
        authorize(session, actor, Resource.device, Action.poll, device)
    stmt = (
        select(Command)
        .where(Command.device_id == device_id, Command.status == CommandStatus.pending.value)
        .order_by(Command.sent_at.asc())
    )
    return iter(session.exec(stmt))


def _swap_status(session: Session, command_id: str, expected: str, values: dict) -> bool:
    # compare-and-swap on status; a concurrent writer makes rowcount 0
    res = session.exec(
        update(Command)
        .where(Command.id == command_id, Command.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return res.rowcount == 1


def claim(session: Session, command_id: str, actor: Actor | None = None) -> bool:
    """Atomically move a command from pending to delivered.

    Returns False when another consumer got there first or the command is no
    longer pending. Raises NotFound if the command has disappeared.
    """
    cmd = load_command(session, command_id)
    if actor is not None:
        authorize(session, actor, Resource.command, Action.update_status, cmd)
    if cmd.status != CommandStatus.pending.value:
        return False
    won = _swap_status(session, command_id, CommandStatus.pending.value,
                       {"status": CommandStatus.delivered.value})
    if not won:
        load_command(session, command_id)
        log.info("claim lost for command %s", command_id)
    return won


def fail_unclaimed(session: Session, command_id: str) -> bool:
    """Fail a command straight from pending, without claiming it.

    Returns False when the command has already left pending, e.g. another
    consumer claimed it in the meantime.
    """
    won = _swap_status(session, command_id, CommandStatus.pending.value,
                       {"status": CommandStatus.failed.value, "executed_at": None})
    if not won:
        log.info("command %s is no longer pending, not failing it", command_id)
    return won


def report_status(session: Session, command_id: str, new_status: str,
                  executed_at: datetime | None = None, actor: Actor | None = None) -> Command:
    cmd = load_command(session, command_id)
    if actor is not None:
        authorize(session, actor, Resource.command, Action.update_status, cmd)
    target = check_transition(cmd.status, new_status)

    values: dict[str, Any] = {"status": target.value, "executed_at": None}
    if target is CommandStatus.executed:
        values["executed_at"] = as_utc(executed_at) if executed_at else utcnow()

    if not _swap_status(session, command_id, cmd.status, values):
        current = load_command(session, command_id)
        raise InvalidTransition(current.status, target.value)
    log.info("command %s %s -> %s", command_id, cmd.status, target.value)
    return load_command(session, command_id)
