import uuid
from enum import Enum
from typing import Optional
from datetime import datetime
from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import SQLModel, Field, Column, JSON

from .utils import UTCTimestamp, utcnow

def _uuid() -> str:
    return str(uuid.uuid4())

class DeviceStatus(str, Enum):
    online = "online"
    offline = "offline"
    unknown = "unknown"

class CommandStatus(str, Enum):
    pending = "pending"
    delivered = "delivered"
    executed = "executed"
    failed = "failed"

class CommandKind(str, Enum):
    unmute_zoom = "unmute_zoom"
    next_track = "next_track"

class TeamRole(str, Enum):
    admin = "admin"
    member = "member"

class Team(SQLModel, table=True):
    __tablename__ = "teams"

    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str
    created_by: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)

class TeamMember(SQLModel, table=True):
    __tablename__ = "team_members"
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
        CheckConstraint("role IN ('admin', 'member')", name="ck_team_members_role"),
    )

    id: str = Field(default_factory=_uuid, primary_key=True)
    team_id: str = Field(foreign_key="teams.id", ondelete="CASCADE", index=True)
    user_id: str = Field(index=True)
    role: str = Field(default=TeamRole.member.value)
    joined_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)

class Device(SQLModel, table=True):
    __tablename__ = "devices"
    __table_args__ = (
        CheckConstraint("port > 0 AND port <= 65535", name="ck_devices_port"),
        CheckConstraint("status IN ('online', 'offline', 'unknown')", name="ck_devices_status"),
    )

    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str
    ip_address: str
    port: int
    owner_id: str = Field(index=True)
    team_id: Optional[str] = Field(default=None, foreign_key="teams.id", ondelete="SET NULL", index=True)
    status: str = Field(default=DeviceStatus.unknown.value)  # online|offline|unknown, written by the poller only
    last_seen: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)

class Command(SQLModel, table=True):
    __tablename__ = "commands"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'delivered', 'executed', 'failed')", name="ck_commands_status"
        ),
        CheckConstraint(
            "(status = 'executed') = (executed_at IS NOT NULL)", name="ck_commands_executed_at"
        ),
    )

    id: str = Field(default_factory=_uuid, primary_key=True)
    device_id: str = Field(foreign_key="devices.id", ondelete="CASCADE", index=True)
    command_type: str
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default=CommandStatus.pending.value, index=True)  # pending|delivered|executed|failed
    sent_by: str
    sent_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp, index=True)
    executed_at: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
