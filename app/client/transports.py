"""
app.client.transports
~~~~~~~~~~~~~~~~~~~~~

传输适配器 —— 把消息通道与音视频服务商包装成统一的
``connect / publish / disconnect`` 契约。

- ``MessagingAdapter``：发布文本，推送 ``ChannelMessage`` / ``PeerJoined`` / ``PeerLeft``。
- ``MediaAdapter``：发布本地音视频轨道，推送 ``PeerTrackAvailable`` / ``PeerTrackRemoved``。

两者都基于 ``websockets`` 连接实时中继。每个句柄有一个读取任务，
事件按服务商的下发顺序逐个交给 ``connect`` 时传入的回调；编排器从不轮询。

``disconnect`` 幂等：对已断开的句柄再次调用是空操作。连接被远端关闭时推送 ``HandleLost``。
"""
from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, Union
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from app.core.exceptions import PublishError, TransportConnectionError
from app.core.logging import get_logger
from app.core.settings import settings
from app.schemas.relay_frames import (
    FRAME_JOINED,
    FRAME_MESSAGE,
    FRAME_PEER_JOINED,
    FRAME_PEER_LEFT,
    FRAME_PUBLISH,
    FRAME_SYSTEM,
    FRAME_TRACK_AVAILABLE,
    FRAME_TRACK_REMOVED,
    FRAME_UNPUBLISH,
    TrackKind,
)
from app.services.tokens import TokenKind, peek_room

logger = get_logger(__name__)


# ── 事件 ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RemoteTrack:
    """对端发布的一条轨道。"""

    user_id: str
    track_id: str
    kind: TrackKind


@dataclass(frozen=True)
class ChannelMessage:
    sender_id: str
    text: str


@dataclass(frozen=True)
class PeerJoined:
    user_id: str


@dataclass(frozen=True)
class PeerLeft:
    user_id: str


@dataclass(frozen=True)
class PeerTrackAvailable:
    track: RemoteTrack


@dataclass(frozen=True)
class PeerTrackRemoved:
    track: RemoteTrack


@dataclass(frozen=True)
class HandleLost:
    """连接被中继或网络关闭（本端主动断开时不推送）。"""

    kind: TokenKind


TransportEvent = Union[
    ChannelMessage, PeerJoined, PeerLeft, PeerTrackAvailable, PeerTrackRemoved, HandleLost,
]
EventCallback = Callable[[TransportEvent], None]


# ── 本地轨道 ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LocalTrack:
    """本地采集的一条轨道（采集与编码由外部设备层负责）。"""

    track_id: str
    kind: TrackKind

    def to_frame(self) -> dict[str, str]:
        return {"trackId": self.track_id, "kind": self.kind}


class MediaDevices(Protocol):
    """本地采集设备边界：一次创建麦克风与摄像头轨道。"""

    async def create_tracks(self) -> list[LocalTrack]: ...


class DescriptorMediaDevices:
    """只生成轨道描述的默认设备（一条音频 + 一条视频）。"""

    async def create_tracks(self) -> list[LocalTrack]:
        return [
            LocalTrack(track_id=f"audio-{uuid.uuid4().hex[:12]}", kind="audio"),
            LocalTrack(track_id=f"video-{uuid.uuid4().hex[:12]}", kind="video"),
        ]


# ── 句柄 ──────────────────────────────────────────────────────────────

@dataclass(eq=False)
class TransportHandle:
    """一条已建立的传输连接，由会话编排器独占持有。

    Attributes:
        kind: ``messaging`` 或 ``media``。
        room_id: 连接所属房间。
        user_id: 本端用户 ID。
    """

    kind: TokenKind
    room_id: str
    user_id: str
    ws: ClientConnection = field(repr=False)
    reader: asyncio.Task | None = field(default=None, repr=False)
    closed: bool = False
    remote_closed: bool = False

    @property
    def connected(self) -> bool:
        return not self.closed and not self.remote_closed


class TransportAdapter(Protocol):
    """两种传输共用的契约。"""

    async def connect(
        self, room_id: str, user_id: str, token: str, on_event: EventCallback,
    ) -> TransportHandle: ...

    async def publish(self, handle: TransportHandle, payload: Any) -> None: ...

    async def disconnect(self, handle: TransportHandle) -> None: ...


class MediaTransport(TransportAdapter, Protocol):
    """媒体传输额外支持撤回已发布的轨道。"""

    async def unpublish(self, handle: TransportHandle, tracks: list[LocalTrack]) -> None: ...


Connector = Callable[[str], Any]


class _RelayAdapter:
    """基于实时中继 WebSocket 的适配器基类。"""

    kind: TokenKind
    path: str

    def __init__(
        self,
        relay_url: str | None = None,
        connect_timeout: float | None = None,
        connector: Connector = connect,
    ) -> None:
        self.relay_url: str = (relay_url or settings.RELAY_URL).rstrip("/")
        self.connect_timeout: float = connect_timeout or settings.CONNECT_TIMEOUT
        self._connector = connector

    def _url(self, room_id: str, user_id: str, token: str) -> str:
        query = urlencode({"userId": user_id, "token": token})
        return f"{self.relay_url}{self.path}/{room_id}?{query}"

    async def connect(
        self, room_id: str, user_id: str, token: str, on_event: EventCallback,
    ) -> TransportHandle:
        """建立连接并等待中继的 ``joined`` 回执。

        Raises:
            TransportConnectionError: 令牌绑定了其他房间、被中继拒绝、超时或不可达。
        """
        bound_room = peek_room(token)
        if bound_room != room_id:
            raise TransportConnectionError(
                f"{self.kind} 令牌绑定的房间为 {bound_room}，与目标房间 {room_id} 不符",
            )

        ws = None
        try:
            ws = await asyncio.wait_for(
                self._connector(self._url(room_id, user_id, token)),
                timeout=self.connect_timeout,
            )
            raw = await asyncio.wait_for(ws.recv(), timeout=self.connect_timeout)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            if ws is not None:
                await self._close_quietly(ws)
            raise TransportConnectionError(f"{self.kind} 连接失败: {e!r}") from e
        except asyncio.CancelledError:
            # 尝试被取消时不能留下已经打开的连接
            if ws is not None:
                await self._close_quietly(ws)
            raise

        frame = _parse_frame(raw)
        if frame is None or frame.get("type") != FRAME_JOINED:
            await self._close_quietly(ws)
            raise TransportConnectionError(f"{self.kind} 中继未返回 joined 回执")

        handle = TransportHandle(kind=self.kind, room_id=room_id, user_id=user_id, ws=ws)
        handle.reader = asyncio.create_task(self._read_loop(handle, on_event))
        logger.info("%s 已连接 | room=%s | user=%s", self.kind, room_id, user_id)
        return handle

    async def disconnect(self, handle: TransportHandle) -> None:
        """断开连接并释放读取任务。幂等。"""
        if handle.closed:
            return
        handle.closed = True

        reader = handle.reader
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        await self._close_quietly(handle.ws)
        logger.info("%s 已断开 | room=%s | user=%s", self.kind, handle.room_id, handle.user_id)

    async def _send(self, handle: TransportHandle, frame: dict[str, Any]) -> None:
        if not handle.connected:
            raise PublishError(f"{self.kind} 句柄未连接")
        try:
            await handle.ws.send(json.dumps(frame, ensure_ascii=False))
        except (OSError, WebSocketException) as e:
            raise PublishError(f"{self.kind} 发送失败: {e!r}") from e

    async def _read_loop(self, handle: TransportHandle, on_event: EventCallback) -> None:
        try:
            async for raw in handle.ws:
                frame = _parse_frame(raw)
                if frame is None:
                    logger.warning("%s 收到无法解析的帧，已忽略", self.kind)
                    continue
                event = self._decode(frame)
                if event is not None:
                    on_event(event)
        except ConnectionClosed as e:
            logger.info("%s 连接被关闭 | room=%s | %s", self.kind, handle.room_id, e)
        finally:
            handle.remote_closed = True
            if not handle.closed:
                on_event(HandleLost(kind=self.kind))

    def _decode(self, frame: dict[str, Any]) -> TransportEvent | None:
        frame_type = frame.get("type")
        sender = str(frame.get("fromUserId", ""))
        if frame_type == FRAME_PEER_JOINED:
            return PeerJoined(user_id=sender)
        if frame_type == FRAME_PEER_LEFT:
            return PeerLeft(user_id=sender)
        if frame_type == FRAME_SYSTEM:
            logger.info("%s 系统提示: %s", self.kind, frame.get("text"))
        return None

    @staticmethod
    async def _close_quietly(ws: ClientConnection) -> None:
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.warning("关闭连接出错: %r", e)


def _parse_frame(raw: str | bytes) -> dict[str, Any] | None:
    try:
        frame = json.loads(raw)
    except ValueError:
        return None
    return frame if isinstance(frame, dict) else None


class MessagingAdapter(_RelayAdapter):
    """消息通道适配器。``publish`` 的载荷是一段文本。"""

    kind: TokenKind = "messaging"
    path = "/ws/channels"

    async def publish(self, handle: TransportHandle, payload: str) -> None:
        """发送一条文本消息。

        Raises:
            PublishError: 句柄未连接或发送失败。
        """
        await self._send(handle, {"type": FRAME_MESSAGE, "text": payload})

    def _decode(self, frame: dict[str, Any]) -> TransportEvent | None:
        if frame.get("type") == FRAME_MESSAGE:
            return ChannelMessage(
                sender_id=str(frame.get("fromUserId", "")),
                text=str(frame.get("text", "")),
            )
        return super()._decode(frame)


class MediaAdapter(_RelayAdapter):
    """音视频适配器。``publish`` 的载荷是本地轨道列表。"""

    kind: TokenKind = "media"
    path = "/ws/media"

    async def publish(self, handle: TransportHandle, payload: list[LocalTrack]) -> None:
        """发布本地轨道。

        Raises:
            PublishError: 句柄未连接或发送失败。
        """
        await self._send(handle, {
            "type": FRAME_PUBLISH,
            "tracks": [track.to_frame() for track in payload],
        })

    async def unpublish(self, handle: TransportHandle, tracks: list[LocalTrack]) -> None:
        """撤回已发布的轨道，对端收到 ``track-removed``。

        Raises:
            PublishError: 句柄未连接或发送失败。
        """
        await self._send(handle, {
            "type": FRAME_UNPUBLISH,
            "trackIds": [track.track_id for track in tracks],
        })

    def _decode(self, frame: dict[str, Any]) -> TransportEvent | None:
        frame_type = frame.get("type")
        if frame_type in (FRAME_TRACK_AVAILABLE, FRAME_TRACK_REMOVED):
            kind = frame.get("kind")
            if kind not in ("audio", "video"):
                logger.warning("media 收到未知轨道类型: %r", kind)
                return None
            track = RemoteTrack(
                user_id=str(frame.get("fromUserId", "")),
                track_id=str(frame.get("trackId", "")),
                kind=kind,
            )
            if frame_type == FRAME_TRACK_AVAILABLE:
                return PeerTrackAvailable(track=track)
            return PeerTrackRemoved(track=track)
        return super()._decode(frame)
