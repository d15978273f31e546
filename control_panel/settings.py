from pydantic import BaseModel
import os

class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "postgresql://control:control_pw@db:5432/control_panel")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:4173,http://localhost:5173").split(",")

    mqtt_enabled: bool = os.getenv("MQTT_ENABLED", "1") == "1"
    mqtt_host: str = os.getenv("MQTT_HOST", "mqtt")
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_topic_base: str = os.getenv("MQTT_TOPIC_BASE", "control-panel")

    # consumer side
    poll_interval_ms: int = int(os.getenv("POLL_INTERVAL_MS", "5000"))
    stale_after_seconds: int = int(os.getenv("STALE_AFTER_SECONDS", "15"))
    execution_timeout_seconds: float = float(os.getenv("EXECUTION_TIMEOUT_SECONDS", "10"))
    device_secret: str = os.getenv("DEVICE_SECRET", "change-me")
    extra_command_kinds: list[str] = [k.strip() for k in os.getenv("EXTRA_COMMAND_KINDS", "").split(",") if k.strip()]

    handler_unmute_zoom: str | None = os.getenv("HANDLER_UNMUTE_ZOOM") or None
    handler_next_track: str | None = os.getenv("HANDLER_NEXT_TRACK") or None

    # named endpoints shown on the dashboard
    prime_ip: str = os.getenv("PRIME_IP", "")
    prime_port: int = int(os.getenv("PRIME_PORT", "3000"))
    prime_device_id: str = os.getenv("PRIME_DEVICE_ID", "")
    vip_ip: str = os.getenv("VIP_IP", "")
    vip_port: int = int(os.getenv("VIP_PORT", "3000"))
    vip_device_id: str = os.getenv("VIP_DEVICE_ID", "")

    def named_endpoints(self) -> dict[str, dict]:
        return {
            "PRIME": {"name": "Prime", "description": "Prime Zoom Meeting Room",
                      "ip": self.prime_ip, "port": self.prime_port, "device_id": self.prime_device_id},
            "VIP": {"name": "VIP", "description": "VIP Zoom Meeting Room",
                    "ip": self.vip_ip, "port": self.vip_port, "device_id": self.vip_device_id},
        }

    def handler_commands(self) -> dict[str, str]:
        out = {}
        if self.handler_unmute_zoom:
            out["unmute_zoom"] = self.handler_unmute_zoom
        if self.handler_next_track:
            out["next_track"] = self.handler_next_track
        return out

settings = Settings()
