from datetime import datetime
from pydantic import BaseModel
from typing import Any

class DeviceCreate(BaseModel):
    name: str
    ip_address: str
    port: int

class DeviceUpdate(BaseModel):
    name: str | None = None
    ip_address: str | None = None
    port: int | None = None

class DeviceTeamUpdate(BaseModel):
    team_id: str | None = None

class DeviceOut(BaseModel):
    id: str
    name: str
    ip_address: str
    port: int
    owner_id: str
    team_id: str | None = None
    team_name: str | None = None
    status: str
    effective_status: str
    last_seen: datetime | None = None
    created_at: datetime

class CommandRequest(BaseModel):
    device_id: str
    command_type: str
    payload: dict[str, Any] = {}

class CommandResponse(BaseModel):
    status: str
    commandId: str

class CommandOut(BaseModel):
    id: str
    device_id: str
    command_type: str
    payload: dict[str, Any]
    status: str
    sent_by: str
    sent_at: datetime
    executed_at: datetime | None = None

class StatusReport(BaseModel):
    status: str
    executed_at: datetime | None = None

class ClaimResponse(BaseModel):
    claimed: bool

class TeamCreate(BaseModel):
    name: str

class TeamOut(BaseModel):
    id: str
    name: str
    created_by: str
    created_at: datetime

class MemberCreate(BaseModel):
    user_id: str
    role: str = "member"

class MemberOut(BaseModel):
    id: str
    team_id: str
    user_id: str
    role: str
    joined_at: datetime
