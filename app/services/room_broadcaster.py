"""
app.services.room_broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 连接广播器 —— 维护某个中继通道内的在线连接与转发能力。
"""
from __future__ import annotations

import asyncio
from typing import Any

from fastapi import WebSocket

from app.core.logging import get_logger

logger = get_logger(__name__)


class RoomBroadcaster:
    """WebSocket 连接广播器。

    每个中继通道（房间 × 消息/媒体）持有一个独立实例，按用户 ID 索引连接，
    同一用户只保留最新的一条连接。

    Attributes:
        connections: 用户 ID → WebSocket 连接。
    """

    def __init__(self) -> None:
        self.connections: dict[str, WebSocket] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        """接受新连接并加入在线表。"""
        await websocket.accept()
        self.connections[user_id] = websocket

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        """从在线表移除断开的连接（已被同一用户的新连接替换时不动）。"""
        if self.connections.get(user_id) is websocket:
            del self.connections[user_id]

    async def send_to(self, user_id: str, payload: dict[str, Any]) -> None:
        """只发给指定用户。"""
        websocket = self.connections.get(user_id)
        if websocket is None:
            return
        try:
            await websocket.send_json(payload)
        except Exception as e:
            logger.warning("发送失败，移除断开的连接 | user=%s | err=%s", user_id, e)
            self.disconnect(user_id, websocket)

    async def send_to_others(self, sender_id: str, payload: dict[str, Any]) -> None:
        """发给除发送者以外的所有在线用户。"""
        targets = [
            (uid, ws) for uid, ws in self.connections.items() if uid != sender_id
        ]
        results = await asyncio.gather(
            *(ws.send_json(payload) for _, ws in targets), return_exceptions=True,
        )
        for (uid, ws), result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("广播失败，移除断开的连接 | user=%s", uid)
                self.disconnect(uid, ws)

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return len(self.connections)
