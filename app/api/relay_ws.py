"""
app.api.relay_ws
~~~~~~~~~~~~~~~~

WebSocket 实时中继接口 —— 每个房间一条消息通道、一条媒体信令通道。

端点:
  - ``/ws/channels/{room_id}?userId=&token=`` → 聊天消息通道
  - ``/ws/media/{room_id}?userId=&token=``    → 轨道发布/撤销信令

令牌在 ``accept`` 之前校验：无效令牌以 4401 关闭，房间不存在以 4404 关闭。

帧协议（JSON，见 ``app.schemas.relay_frames``）:
  - 上行 ``{"type": "message", "text": "..."}``
  - 上行 ``{"type": "publish", "tracks": [{"trackId": "...", "kind": "video"}]}``
  - 上行 ``{"type": "unpublish", "trackIds": ["..."]}``
  - 下行 ``joined`` / ``peer-joined`` / ``peer-left`` / ``message`` /
    ``track-available`` / ``track-removed`` / ``system``
"""
from __future__ import annotations

import asyncio
import json
import uuid

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.api.deps import get_relay_hub
from app.core.exceptions import RoomNotFound, TokenRejected
from app.core.logging import get_logger, request_id_ctx_var
from app.core.rate_limit import WebSocketRateLimiter
from app.core.settings import settings
from app.schemas.relay_frames import (
    CLOSE_ROOM_GONE,
    CLOSE_TOKEN_REJECTED,
    FRAME_MESSAGE,
    FRAME_PUBLISH,
    FRAME_SYSTEM,
    FRAME_UNPUBLISH,
    ChatFrame,
    PublishFrame,
    UnpublishFrame,
)
from app.services.relay_hub import RelayHub
from app.services.tokens import TokenKind

logger = get_logger(__name__)

router: APIRouter = APIRouter()


def _system_frame(text: str) -> dict:
    return {"type": FRAME_SYSTEM, "text": text}


def _parse_frame(raw: str) -> dict | None:
    try:
        frame = json.loads(raw)
    except ValueError:
        return None
    return frame if isinstance(frame, dict) else None


async def _authorize(
    websocket: WebSocket, hub: RelayHub, room_id: str, user_id: str, token: str, kind: TokenKind,
) -> bool:
    """校验令牌，失败时在 accept 之前关闭连接。"""
    try:
        await hub.authorize(room_id, user_id, token, kind)
    except TokenRejected as e:
        logger.warning("拒绝中继连接 | room=%s | user=%s | kind=%s | %s", room_id, user_id, kind, e)
        await websocket.close(code=CLOSE_TOKEN_REJECTED)
        return False
    except RoomNotFound:
        logger.warning("房间不存在，拒绝中继连接 | room=%s | user=%s", room_id, user_id)
        await websocket.close(code=CLOSE_ROOM_GONE)
        return False
    return True


@router.websocket("/ws/channels/{room_id}")
async def messaging_channel_endpoint(
    websocket: WebSocket,
    room_id: str,
    user_id: str = Query(..., alias="userId"),
    token: str = Query(...),
) -> None:
    """聊天消息通道。

    消息按到达顺序转发给房间内其他人，发送者收不到自己的消息（本地已回显）。
    发送过快的消息直接丢弃，并回一条 ``system`` 帧提示。
    """
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    ctx_token = request_id_ctx_var.set(ws_req_id)

    try:
        hub = get_relay_hub(websocket)
        if not await _authorize(websocket, hub, room_id, user_id, token, "messaging"):
            return

        channel = hub.channel(room_id, "messaging")
        await channel.broadcaster.connect(user_id, websocket)
        await hub.join(channel, user_id)

        ws_limiter = WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL)
        client_id = id(websocket)
        # 隔离接收与转发，接收端始终按到达时间判断限流
        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=20)

        async def receive_loop() -> None:
            try:
                while True:
                    frame = _parse_frame(await websocket.receive_text())
                    if frame is None or frame.get("type") != FRAME_MESSAGE:
                        await websocket.send_json(_system_frame("无法识别的消息帧"))
                        continue
                    try:
                        chat = ChatFrame.model_validate(frame)
                    except ValidationError:
                        await websocket.send_json(_system_frame("消息为空或过长"))
                        continue
                    if not ws_limiter.is_allowed(client_id):
                        await websocket.send_json(_system_frame("发送太快了，请慢一点"))
                        continue
                    try:
                        queue.put_nowait(chat.text)
                    except asyncio.QueueFull:
                        await websocket.send_json(_system_frame("消息处理不过来，请稍后重试"))
                        logger.warning("WS 队列已满，丢弃消息 | room=%s", room_id)
            except WebSocketDisconnect:
                pass  # 正常断开
            except Exception as e:
                logger.error("WebSocket 接收异常: %s | room=%s", e, room_id, exc_info=True)
            finally:
                await queue.put(None)  # 通知转发协程结束

        async def process_loop() -> None:
            try:
                while True:
                    text = await queue.get()
                    if text is None:
                        break
                    await hub.relay_message(channel, user_id, text)
            except Exception as e:
                logger.error("WebSocket 转发异常: %s | room=%s", e, room_id, exc_info=True)

        try:
            await asyncio.gather(receive_loop(), process_loop())
        finally:
            channel.broadcaster.disconnect(user_id, websocket)
            ws_limiter.remove_client(client_id)
            await hub.leave(channel, user_id)

    finally:
        request_id_ctx_var.reset(ctx_token)


@router.websocket("/ws/media/{room_id}")
async def media_signaling_endpoint(
    websocket: WebSocket,
    room_id: str,
    user_id: str = Query(..., alias="userId"),
    token: str = Query(...),
) -> None:
    """媒体信令通道：转发轨道的发布与撤销，断开时撤销该用户的全部轨道。"""
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    ctx_token = request_id_ctx_var.set(ws_req_id)

    try:
        hub = get_relay_hub(websocket)
        if not await _authorize(websocket, hub, room_id, user_id, token, "media"):
            return

        channel = hub.channel(room_id, "media")
        await channel.broadcaster.connect(user_id, websocket)
        await hub.join(channel, user_id)

        try:
            while True:
                frame = _parse_frame(await websocket.receive_text())
                frame_type = frame.get("type") if frame else None
                try:
                    if frame_type == FRAME_PUBLISH:
                        publish = PublishFrame.model_validate(frame)
                        await hub.publish(channel, user_id, publish.tracks)
                    elif frame_type == FRAME_UNPUBLISH:
                        unpublish = UnpublishFrame.model_validate(frame)
                        await hub.unpublish(channel, user_id, unpublish.track_ids)
                    else:
                        await websocket.send_json(_system_frame("无法识别的信令帧"))
                except ValidationError:
                    await websocket.send_json(_system_frame("信令帧格式错误"))
        except WebSocketDisconnect:
            pass  # 正常断开
        except Exception as e:
            logger.error("媒体信令异常: %s | room=%s", e, room_id, exc_info=True)
        finally:
            channel.broadcaster.disconnect(user_id, websocket)
            await hub.leave(channel, user_id)

    finally:
        request_id_ctx_var.reset(ctx_token)
