# control_panel/mqtt_handler.py
import json, time, logging
from queue import Queue
from datetime import datetime
from dateutil import parser as dtparser
import paho.mqtt.client as mqtt

from .db import get_session
from .errors import NotFound
from .liveness import heartbeat, mark_offline
from .models import Command
from .settings import settings
from .utils import utcnow

log = logging.getLogger("mqtt")

def _parse_ts(ts) -> datetime:
    if not ts or not isinstance(ts, str):
        return utcnow()
    try:
        return dtparser.isoparse(ts)
    except (ValueError, OverflowError, TypeError):
        return utcnow()

def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1

def command_topic(device_id: str) -> str:
    return f"{settings.mqtt_topic_base}/{device_id}/command"

def status_topic_filter() -> str:
    return f"{settings.mqtt_topic_base}/+/status"

def command_message(cmd: Command) -> str:
    return json.dumps({
        "command_id": cmd.id,
        "command_type": cmd.command_type,
        "payload": cmd.payload or {},
    })

def handle_status_message(topic: str, raw: bytes, session_factory=get_session) -> dict | None:
    """Apply a device status report (``{base}/{device_id}/status``).

    Returns the event to forward to dashboards, or None when the message is
    ignored.
    """
    parts = topic.split("/")
    if len(parts) < 3 or parts[-1] != "status":
        return None
    dev_id = parts[-2]
    payload = json.loads(raw.decode("utf-8")) if raw else {}
    if not isinstance(payload, dict):
        log.warning("[MQTT] status message on %s is not an object", topic)
        return None
    status = payload.get("status", "online")

    with session_factory() as s:
        try:
            if status == "offline":
                d = mark_offline(s, dev_id)
            elif status == "online":
                d = heartbeat(s, dev_id, at=_parse_ts(payload.get("ts")))
            else:
                log.warning("[MQTT] device %s sent unknown status %r", dev_id, status)
                return None
        except NotFound:
            log.warning("[MQTT] status for unknown device %s", dev_id)
            return None
        return {
            "kind": "device_status",
            "device_id": d.id,
            "status": d.status,
            "last_seen": d.last_seen.isoformat() if d.last_seen else None,
        }

def publish_command(client: mqtt.Client | None, cmd: Command) -> bool:
    """Wake the device poller. Polling still delivers the command if this fails."""
    if client is None:
        return False
    try:
        info = client.publish(command_topic(cmd.device_id), command_message(cmd), qos=1, retain=False)
        # paho v2: info.rc == mqtt.MQTT_ERR_SUCCESS (0) when queued
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            log.warning("[MQTT] publish for command %s rc=%s", cmd.id, info.rc)
            return False
        return True
    except (OSError, RuntimeError, ValueError) as e:
        log.warning("[MQTT] publish for command %s failed: %s", cmd.id, e)
        return False

def start_mqtt(message_queue: Queue):
    client = mqtt.Client(
        client_id=f"control-panel-api-{int(time.time())}",
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
    )
    client.enable_logger(log)

    if settings.mqtt_username and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

    client.reconnect_delay_set(min_delay=1, max_delay=30)

    def on_connect(client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.warning("[MQTT] Connect failed rc=%s (5=Not authorized). Retrying…", rc)
            return
        topic = status_topic_filter()
        res, mid = client.subscribe(topic, qos=1)
        log.info("[MQTT] Connected rc=0. SUB %s res=%s mid=%s", topic, res, mid)

    def on_subscribe(client, userdata, mid, granted_qos, properties):
        if any(_rc_int(q) >= 0x80 for q in granted_qos):
            log.warning("[MQTT] subscription rejected by broker ACL")

    def on_disconnect(client, userdata, flags, reason_code, properties):
        log.info("[MQTT] Disconnected rc=%s. Reconnecting…", _rc_int(reason_code))

    def on_message(client, userdata, msg):
        try:
            out = handle_status_message(msg.topic, msg.payload)
        except Exception as e:
            log.warning("[MQTT] bad status message on %s: %s", msg.topic, e)
            return
        if out is not None:
            message_queue.put(json.dumps(out))

    client.on_connect = on_connect
    client.on_subscribe = on_subscribe
    client.on_disconnect = on_disconnect
    client.on_message = on_message

    log.info(
        "[MQTT] Bootstrapping host=%s port=%s user=%s base=%s",
        settings.mqtt_host, settings.mqtt_port,
        "<set>" if settings.mqtt_username else "<none>", settings.mqtt_topic_base,
    )

    client.connect(settings.mqtt_host, settings.mqtt_port, keepalive=30)
    client.loop_start()
    return client
