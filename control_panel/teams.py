"""Teams and memberships."""

import logging

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .devices import validate_name
from .errors import NotFound, ValidationError
from .models import Device, Team, TeamMember, TeamRole
from .policy import Action, Actor, Resource, authorize, membership

log = logging.getLogger(__name__)


def load_team(session: Session, team_id: str) -> Team:
    t = session.get(Team, team_id, populate_existing=True)
    if not t:
        raise NotFound("team", team_id)
    return t


def create_team(session: Session, name: str, creator: str) -> Team:
    if not isinstance(creator, str) or not creator:
        raise ValidationError("team creator must be a user")
    team = Team(name=validate_name(name), created_by=creator)
    session.add(team)
    session.flush()
    # the creator is admin implicitly; the row makes it visible in member lists
    session.add(TeamMember(team_id=team.id, user_id=creator, role=TeamRole.admin.value))
    session.commit()
    session.refresh(team)
    log.info("team %s created by %s", team.id, creator)
    return team


def list_teams(session: Session, actor: Actor) -> list[Team]:
    joined = select(TeamMember.team_id).where(TeamMember.user_id == actor)
    stmt = (
        select(Team)
        .where(or_(Team.created_by == actor, Team.id.in_(joined)))
        .order_by(Team.created_at.desc())
    )
    return list(session.exec(stmt).all())


def rename_team(session: Session, team_id: str, actor: Actor, name: str) -> Team:
    team = load_team(session, team_id)
    authorize(session, actor, Resource.team, Action.update, team)
    team.name = validate_name(name)
    session.add(team)
    session.commit()
    session.refresh(team)
    return team


def delete_team(session: Session, team_id: str, actor: Actor) -> None:
    team = load_team(session, team_id)
    authorize(session, actor, Resource.team, Action.delete, team)
    session.exec(update(Device).where(Device.team_id == team_id).values(team_id=None))
    session.exec(delete(TeamMember).where(TeamMember.team_id == team_id))
    session.delete(team)
    session.commit()
    log.info("team %s deleted", team_id)


def list_members(session: Session, team_id: str, actor: Actor) -> list[TeamMember]:
    team = load_team(session, team_id)
    authorize(session, actor, Resource.membership, Action.view, team)
    stmt = select(TeamMember).where(TeamMember.team_id == team_id).order_by(TeamMember.joined_at)
    return list(session.exec(stmt).all())


def add_member(session: Session, team_id: str, actor: Actor, user_id: str,
               role: str = TeamRole.member.value) -> TeamMember:
    team = load_team(session, team_id)
    authorize(session, actor, Resource.membership, Action.add, team)
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValidationError("user id must not be empty")
    try:
        role = TeamRole(role).value
    except ValueError:
        raise ValidationError(f"unknown role {role!r}") from None
    if membership(session, team_id, user_id) is not None:
        raise ValidationError(f"{user_id} is already a member of team {team_id}")
    m = TeamMember(team_id=team_id, user_id=user_id, role=role)
    session.add(m)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ValidationError(f"{user_id} is already a member of team {team_id}") from None
    session.refresh(m)
    log.info("team %s: added %s as %s", team_id, user_id, role)
    return m


def remove_member(session: Session, team_id: str, actor: Actor, user_id: str) -> None:
    load_team(session, team_id)
    m = membership(session, team_id, user_id)
    if m is None:
        raise NotFound("team member", f"{team_id}/{user_id}")
    authorize(session, actor, Resource.membership, Action.remove, m)
    session.delete(m)
    session.commit()
    log.info("team %s: removed %s", team_id, user_id)
