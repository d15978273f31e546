from typing import Callable, Dict
from fastapi import WebSocket
import asyncio

# (user_id, device_id) -> may this user see events for this device
Visibility = Callable[[str, str], bool]

class ConnectionManager:
    """Fan-out of command events to dashboard sockets.

    Each socket belongs to one user. Whether that user may see a device is
    asked again for every event, so team or ownership changes apply to
    sockets that are already open.
    """

    def __init__(self) -> None:
        self.subscriptions: Dict[WebSocket, str] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: str):
        await websocket.accept()
        async with self._lock:
            self.subscriptions[websocket] = user_id

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            self.subscriptions.pop(websocket, None)

    async def subscribers(self, device_id: str, can_see: Visibility) -> list[WebSocket]:
        async with self._lock:
            conns = list(self.subscriptions.items())
        verdicts: Dict[str, bool] = {}
        for user_id in {u for _, u in conns}:
            # can_see hits the database
            verdicts[user_id] = await asyncio.to_thread(can_see, user_id, device_id)
        return [ws for ws, user_id in conns if verdicts[user_id]]

    async def broadcast_event(self, device_id: str, message: str, can_see: Visibility):
        tasks = [self._safe_send(ws, message) for ws in await self.subscribers(device_id, can_see)]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _safe_send(self, ws: WebSocket, message: str):
        try:
            await ws.send_text(message)
        except Exception:
            await self.disconnect(ws)
