import asyncio
import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from config.settings import settings
from ..models.database import get_db
from ..services.auth_service import get_user_from_token
from ..services.email_service import email_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

class ConnectionManager:
    """Open sockets per user; a user may have several tabs open"""

    def __init__(self):
        self.active_connections: Dict[int, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id: int):
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append(websocket)

    def disconnect(self, websocket: WebSocket, user_id: int):
        sockets = self.active_connections.get(user_id, [])
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            self.active_connections.pop(user_id, None)

    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.active_connections.values())

    async def send_personal_json(self, message: dict, user_id: int):
        for websocket in list(self.active_connections.get(user_id, [])):
            await websocket.send_json(message)

manager = ConnectionManager()

def unread_count_message(db: Session, user_id: int) -> dict:
    counts = email_service.get_unread_counts(db, user_id)
    # End the read transaction so the next poll sees new commits
    db.rollback()
    return {"type": "unread_count", "counts": counts}

async def unread_count_updater(websocket: WebSocket, db: Session, user_id: int):
    """Push unread counts to one socket every WS_PUSH_INTERVAL_SECONDS"""
    while True:
        await asyncio.sleep(settings.WS_PUSH_INTERVAL_SECONDS)
        try:
            await websocket.send_json(unread_count_message(db, user_id))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error pushing unread counts to user {user_id}: {e}")
            return

@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(""),
    db: Session = Depends(get_db)
):
    """Realtime unread counts; clients may send 'ping' to check liveness"""
    user = get_user_from_token(token, db) if token else None
    if not user:
        await websocket.close(code=1008)
        return
    user_id = user.id

    await manager.connect(websocket, user_id)
    logger.info(f"User {user_id} connected to realtime updates ({manager.connection_count()} open)")
    updater_task = asyncio.create_task(unread_count_updater(websocket, db, user_id))

    try:
        await websocket.send_json(unread_count_message(db, user_id))
        while True:
            data = await websocket.receive_text()
            if data.strip() == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.info(f"User {user_id} disconnected from realtime updates")
    finally:
        updater_task.cancel()
        manager.disconnect(websocket, user_id)
