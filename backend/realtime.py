from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import WebSocket

from .session import DiarySession

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Open diary sockets, each paired with its own editing session."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self.sessions: Dict[WebSocket, DiarySession] = {}
        self.pumps: Dict[WebSocket, asyncio.Task] = {}
        self.connection_diaries: Dict[WebSocket, str] = {}

    async def connect(self, websocket: WebSocket, diary_id: str) -> DiarySession:
        await websocket.accept()
        session = DiarySession(diary_id)
        self.active_connections.setdefault(diary_id, []).append(websocket)
        self.sessions[websocket] = session
        self.connection_diaries[websocket] = diary_id
        self.pumps[websocket] = asyncio.create_task(self._pump(websocket, session))
        return session

    async def _pump(self, websocket: WebSocket, session: DiarySession) -> None:
        while True:
            event = await session.outbox.get()
            try:
                await websocket.send_json(event)
            except Exception:
                logger.info("Dropping socket after failed send. diary_id=%s", session.diary_id)
                return

    def disconnect(self, websocket: WebSocket) -> None:
        diary_id = self.connection_diaries.pop(websocket, None)
        if diary_id is not None:
            connections = self.active_connections.get(diary_id, [])
            if websocket in connections:
                connections.remove(websocket)
            if not connections:
                self.active_connections.pop(diary_id, None)
        session = self.sessions.pop(websocket, None)
        if session is not None:
            session.close()
        pump = self.pumps.pop(websocket, None)
        if pump is not None:
            pump.cancel()

    def get_session(self, websocket: WebSocket) -> Optional[DiarySession]:
        return self.sessions.get(websocket)

    def connection_count(self, diary_id: str) -> int:
        return len(self.active_connections.get(diary_id, []))

    async def broadcast(self, diary_id: str, message: Dict) -> None:
        # Include diaryId so clients can ignore stale cross-diary messages.
        if "diaryId" not in message:
            message = {**message, "diaryId": diary_id}
        for connection in list(self.active_connections.get(diary_id, [])):
            try:
                await connection.send_json(message)
            except Exception:
                self.disconnect(connection)

    async def close_diary(self, diary_id: str, reason: str) -> None:
        """Tell every viewer the diary is gone and drop their sockets."""
        await self.broadcast(diary_id, {"type": "diary:deleted", "reason": reason})
        for connection in list(self.active_connections.get(diary_id, [])):
            self.disconnect(connection)
            try:
                await connection.close(code=1000, reason=reason)
            except Exception:
                logger.debug("Socket already closed. diary_id=%s", diary_id)
