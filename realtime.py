"""
WebSocket broadcaster for the reservation list and the happy bar.

Delivery is best-effort: a message reaches the listeners connected at the
moment it is sent, at most once, with no replay for late joiners.
"""

import logging
from typing import Any, Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

RESERVATION_NEW = "reservation:new"
RESERVATIONS_CHANGED = "reservations:changed"
HAPPY_UPDATE = "happy:update"


class Broadcaster:
    """Keeps the connected listeners and fans messages out to them"""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info("Listener connected (%d active)", len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.discard(websocket)
            logger.info("Listener disconnected (%d active)", len(self.active_connections))

    async def broadcast(self, message: Dict[str, Any]):
        disconnected = set()

        for websocket in list(self.active_connections):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning("Dropping listener after failed send: %s", e)
                disconnected.add(websocket)

        for websocket in disconnected:
            self.disconnect(websocket)


def reservation_created(reservation: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": RESERVATION_NEW, "data": reservation}


def reservations_changed() -> Dict[str, Any]:
    return {"type": RESERVATIONS_CHANGED}


def happy_updated(text: str) -> Dict[str, Any]:
    return {"type": HAPPY_UPDATE, "text": text}


broadcaster = Broadcaster()
