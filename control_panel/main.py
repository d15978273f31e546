import asyncio
import json
import logging
from queue import Queue, Empty
from typing import List

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from sqlmodel import Session
import paho.mqtt.client as mqtt

from . import commands, devices, liveness, teams
from .db import init_db, get_db, get_session
from .errors import ControlPanelError, NotAuthorized, NotFound
from .models import Command, CommandKind, Device, Team, TeamMember
from .policy import Action, Resource, allowed, verify_device_token
from .schemas import (
    ClaimResponse, CommandOut, CommandRequest, CommandResponse, DeviceCreate, DeviceOut,
    DeviceTeamUpdate, DeviceUpdate, MemberCreate, MemberOut, StatusReport, TeamCreate, TeamOut,
)
from .mqtt_handler import publish_command, start_mqtt
from .ws_manager import ConnectionManager
from .utils import add_cors
from .settings import settings

logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)

app = FastAPI(title="Control Panel API", version="0.1.0")
add_cors(app)

manager = ConnectionManager()
message_queue: Queue[str] = Queue()
mqtt_client: mqtt.Client | None = None

@app.on_event("startup")
async def on_startup():
    global mqtt_client
    init_db()
    if settings.mqtt_enabled:
        try:
            mqtt_client = start_mqtt(message_queue)
        except OSError as e:
            log.warning("[MQTT] failed to start: %s", e)
            mqtt_client = None
    asyncio.create_task(queue_forwarder())

async def queue_forwarder():
    while True:
        try:
            msg = message_queue.get_nowait()
        except Empty:
            await asyncio.sleep(0.1)
            continue
        device_id = json.loads(msg).get("device_id")
        if device_id:
            await manager.broadcast_event(device_id, msg, user_sees_device)

def user_sees_device(user_id: str, device_id: str, session_factory=get_session) -> bool:
    with session_factory() as session:
        d = session.get(Device, device_id)
        return d is not None and allowed(session, user_id, Resource.device, Action.view, d)

@app.exception_handler(ControlPanelError)
async def control_panel_error(request: Request, exc: ControlPanelError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "error": type(exc).__name__})

def current_user(x_user_id: str | None = Header(None)) -> str:
    # identity comes from the upstream authenticator
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id")
    return x_user_id

def _event(kind: str, cmd: Command) -> str:
    return json.dumps({
        "kind": kind,
        "device_id": cmd.device_id,
        "command_id": cmd.id,
        "command_type": cmd.command_type,
        "status": cmd.status,
        "sent_at": cmd.sent_at.isoformat(),
    })

def _device_out(session: Session, d: Device) -> DeviceOut:
    team = session.get(Team, d.team_id) if d.team_id else None
    return DeviceOut(
        id=d.id, name=d.name, ip_address=d.ip_address, port=d.port, owner_id=d.owner_id,
        team_id=d.team_id, team_name=(team.name if team else None), status=d.status,
        effective_status=liveness.effective_status(d).value, last_seen=d.last_seen,
        created_at=d.created_at,
    )

def _command_out(c: Command) -> CommandOut:
    return CommandOut(
        id=c.id, device_id=c.device_id, command_type=c.command_type, payload=c.payload or {},
        status=c.status, sent_by=c.sent_by, sent_at=c.sent_at, executed_at=c.executed_at,
    )

def _team_out(t: Team) -> TeamOut:
    return TeamOut(id=t.id, name=t.name, created_by=t.created_by, created_at=t.created_at)

def _member_out(m: TeamMember) -> MemberOut:
    return MemberOut(id=m.id, team_id=m.team_id, user_id=m.user_id, role=m.role, joined_at=m.joined_at)

@app.get("/api/config")
def get_config():
    return {
        "endpoints": settings.named_endpoints(),
        "commands": sorted(commands.known_kinds()),
        "command_labels": {k.value: k.value.replace("_", " ").title() for k in CommandKind},
        "poll_interval_ms": settings.poll_interval_ms,
        "stale_after_seconds": settings.stale_after_seconds,
    }

# ---------------- devices ----------------

@app.get("/api/devices", response_model=List[DeviceOut])
def list_devices(user: str = Depends(current_user), session: Session = Depends(get_db)):
    return [_device_out(session, d) for d in devices.list_devices(session, user)]

@app.post("/api/devices", response_model=DeviceOut, status_code=201)
def register_device(body: DeviceCreate, user: str = Depends(current_user), session: Session = Depends(get_db)):
    d = devices.register_device(session, body.name, body.ip_address, body.port, user)
    return _device_out(session, d)

@app.get("/api/devices/{device_id}", response_model=DeviceOut)
def get_device(device_id: str, user: str = Depends(current_user), session: Session = Depends(get_db)):
    return _device_out(session, devices.get_device(session, device_id, user))

@app.put("/api/devices/{device_id}", response_model=DeviceOut)
def update_device(device_id: str, body: DeviceUpdate, user: str = Depends(current_user),
                  session: Session = Depends(get_db)):
    d = devices.update_device(session, device_id, user, name=body.name, host=body.ip_address, port=body.port)
    return _device_out(session, d)

@app.put("/api/devices/{device_id}/team", response_model=DeviceOut)
def assign_device_team(device_id: str, body: DeviceTeamUpdate, user: str = Depends(current_user),
                       session: Session = Depends(get_db)):
    return _device_out(session, devices.assign_device_team(session, device_id, user, body.team_id))

@app.delete("/api/devices/{device_id}", status_code=204)
def delete_device(device_id: str, user: str = Depends(current_user), session: Session = Depends(get_db)):
    devices.delete_device(session, device_id, user)

@app.get("/api/devices/{device_id}/commands", response_model=List[CommandOut])
def list_commands(device_id: str, limit: int = Query(50, ge=1, le=500), user: str = Depends(current_user),
                  session: Session = Depends(get_db)):
    return [_command_out(c) for c in commands.list_commands(session, device_id, user, limit=limit)]

# ---------------- commands ----------------

@app.post("/api/commands", response_model=CommandResponse, status_code=201)
def post_command(cmd: CommandRequest, user: str = Depends(current_user), session: Session = Depends(get_db)):
    rec = commands.issue_command(session, cmd.device_id, cmd.command_type, cmd.payload, user)
    # notifications only; the poller finds the row either way
    message_queue.put(_event("command_inserted", rec))
    publish_command(mqtt_client, rec)
    return CommandResponse(status=rec.status, commandId=rec.id)

# ---------------- teams ----------------

@app.get("/api/teams", response_model=List[TeamOut])
def list_teams(user: str = Depends(current_user), session: Session = Depends(get_db)):
    return [_team_out(t) for t in teams.list_teams(session, user)]

@app.post("/api/teams", response_model=TeamOut, status_code=201)
def create_team(body: TeamCreate, user: str = Depends(current_user), session: Session = Depends(get_db)):
    return _team_out(teams.create_team(session, body.name, user))

@app.put("/api/teams/{team_id}", response_model=TeamOut)
def rename_team(team_id: str, body: TeamCreate, user: str = Depends(current_user), session: Session = Depends(get_db)):
    return _team_out(teams.rename_team(session, team_id, user, body.name))

@app.delete("/api/teams/{team_id}", status_code=204)
def delete_team(team_id: str, user: str = Depends(current_user), session: Session = Depends(get_db)):
    teams.delete_team(session, team_id, user)

@app.get("/api/teams/{team_id}/members", response_model=List[MemberOut])
def list_members(team_id: str, user: str = Depends(current_user), session: Session = Depends(get_db)):
    return [_member_out(m) for m in teams.list_members(session, team_id, user)]

@app.post("/api/teams/{team_id}/members", response_model=MemberOut, status_code=201)
def add_member(team_id: str, body: MemberCreate, user: str = Depends(current_user), session: Session = Depends(get_db)):
    return _member_out(teams.add_member(session, team_id, user, body.user_id, body.role))

@app.delete("/api/teams/{team_id}/members/{user_id}", status_code=204)
def remove_member(team_id: str, user_id: str, user: str = Depends(current_user), session: Session = Depends(get_db)):
    teams.remove_member(session, team_id, user, user_id)

# ---------------- device agent ----------------

def _command_actor(session: Session, command_id: str, token: str | None):
    # unknown ids answer exactly like a bad credential
    try:
        cmd = commands.load_command(session, command_id)
    except NotFound:
        raise NotAuthorized(f"invalid credential for command {command_id}") from None
    return verify_device_token(cmd.device_id, token)

@app.get("/api/agent/devices/{device_id}/commands/pending", response_model=List[CommandOut])
def agent_pending(device_id: str, x_device_token: str | None = Header(None), session: Session = Depends(get_db)):
    actor = verify_device_token(device_id, x_device_token)
    return [_command_out(c) for c in commands.fetch_pending(session, device_id, actor=actor)]

@app.post("/api/agent/commands/{command_id}/claim", response_model=ClaimResponse)
def agent_claim(command_id: str, x_device_token: str | None = Header(None), session: Session = Depends(get_db)):
    actor = _command_actor(session, command_id, x_device_token)
    return ClaimResponse(claimed=commands.claim(session, command_id, actor=actor))

@app.post("/api/agent/commands/{command_id}/status", response_model=CommandOut)
def agent_status(command_id: str, body: StatusReport, x_device_token: str | None = Header(None),
                 session: Session = Depends(get_db)):
    actor = _command_actor(session, command_id, x_device_token)
    cmd = commands.report_status(session, command_id, body.status, executed_at=body.executed_at, actor=actor)
    message_queue.put(_event("command_status", cmd))
    return _command_out(cmd)

@app.post("/api/agent/devices/{device_id}/heartbeat", response_model=DeviceOut)
def agent_heartbeat(device_id: str, x_device_token: str | None = Header(None), session: Session = Depends(get_db)):
    actor = verify_device_token(device_id, x_device_token)
    return _device_out(session, liveness.heartbeat(session, device_id, actor=actor))

# ---------------- live updates ----------------

@app.websocket("/ws/commands")
async def commands_ws(websocket: WebSocket, user_id: str = Query(...)):
    await manager.connect(websocket, user_id)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await manager.disconnect(websocket)
