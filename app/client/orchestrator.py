"""
app.client.orchestrator
~~~~~~~~~~~~~~~~~~~~~~~

会话编排器 —— 每个客户端一个的显式状态机。

状态::

    Idle ──匹配──▶ Joining ──两条传输都就绪──▶ InSession
      ▲              │  ▲                          │
      └──失败/离开───┘  └─────────"下一个"─────────┘

编排器独占持有至多一组 (房间, 消息句柄, 媒体句柄)。用户操作和传输回调
都作为事件进入同一个 ``asyncio.Queue``，由 ``run()`` 按顺序处理。

换房时：
  1. 立即（同步）清空聊天记录与画面、切换状态、纪元 +1；
  2. 旧句柄的断开（媒体先撤回本地轨道）与旧房间的释放作为后台任务发起，不阻塞状态切换，失败只记日志；
  3. 新的匹配尝试先等旧房间释放完成，再向目录请求房间，
     先连消息通道、再连媒体，最后发布本地轨道。

进行中的尝试被新的 "下一个" 打断时会被取消，它已拿到的句柄和房间席位
在取消处理中释放。旧纪元产生的传输事件一律丢弃。

任一传输被远端关闭（``HandleLost``）时整个会话作废，回到 Idle 并记录 ``last_error``。
发送消息时本地回显立即入列，实际发送在后台按序进行。
"""
from __future__ import annotations

import asyncio
import secrets
from collections.abc import Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from app.client.events import (
    LeaveRequested,
    MatchRequested,
    OrchestratorEvent,
    SendRequested,
    TransportEventReceived,
)
from app.client.message_log import ChatMessage, Delivery, MessageLog
from app.client.transports import (
    ChannelMessage,
    DescriptorMediaDevices,
    EventCallback,
    HandleLost,
    LocalTrack,
    MediaDevices,
    MediaTransport,
    PeerJoined,
    PeerLeft,
    PeerTrackAvailable,
    PeerTrackRemoved,
    RemoteTrack,
    TransportAdapter,
    TransportHandle,
)
from app.core.exceptions import MatchmakingError, PublishError, TransportConnectionError
from app.core.logging import get_logger
from app.schemas.rooms import CreateRoomData, ReleaseRoomData, RoomData, RoomListData

logger = get_logger(__name__)


def new_user_id() -> str:
    """生成本进程的临时用户 ID（0–999999 的十进制串，不做冲突检查）。"""
    return str(secrets.randbelow(1_000_000))


class SessionState(str, Enum):
    IDLE = "idle"
    JOINING = "joining"
    IN_SESSION = "in_session"


class DirectoryPort(Protocol):
    """编排器依赖的房间目录操作（HTTP 客户端或进程内目录均可）。"""

    async def request_room(self, user_id: str) -> RoomListData: ...

    async def create_room(self, user_id: str) -> CreateRoomData: ...

    async def release_room(self, room_id: str, user_id: str) -> ReleaseRoomData: ...


@dataclass
class Session:
    """一次已建立的会话。两个句柄同生共死。"""

    room: RoomData
    channel_handle: TransportHandle
    media_handle: TransportHandle
    local_tracks: list[LocalTrack] = field(default_factory=list)


class SessionOrchestrator:
    """客户端会话编排器。

    典型用法::

        async with SessionOrchestrator(directory, MessagingAdapter(), MediaAdapter()) as orch:
            orch.request_match()      # "开始"
            orch.send("hi")
            orch.request_match()      # "下一个"

    Attributes:
        user_id: 本进程的临时用户 ID。
        state: 当前状态。
        session: 当前会话；Idle / Joining 时为 ``None``。
        messages: 当前会话的聊天记录。
        self_preview: 本地视频预览轨道。
        peer_video: 对端视频轨道。
        peer_audio: 对端音频轨道。
        last_error: 最近一次匹配失败或会话中断的原因。
    """

    def __init__(
        self,
        directory: DirectoryPort,
        messaging: TransportAdapter,
        media: MediaTransport,
        devices: MediaDevices | None = None,
        user_id: str | None = None,
    ) -> None:
        self.directory = directory
        self.messaging = messaging
        self.media = media
        self.devices: MediaDevices = devices or DescriptorMediaDevices()
        self.user_id: str = user_id or new_user_id()

        self.state: SessionState = SessionState.IDLE
        self.session: Session | None = None
        self.messages = MessageLog()
        self.self_preview: LocalTrack | None = None
        self.peer_video: RemoteTrack | None = None
        self.peer_audio: RemoteTrack | None = None
        self.last_error: Exception | None = None

        self._epoch = 0
        self._queue: asyncio.Queue[OrchestratorEvent | None] = asyncio.Queue()
        self._attempt: asyncio.Task | None = None
        self._runner: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._last_publish: asyncio.Task | None = None

    # ── 对外操作 ──────────────────────────────────────────────────────

    @property
    def room(self) -> RoomData | None:
        return self.session.room if self.session else None

    def post(self, event: OrchestratorEvent) -> None:
        self._queue.put_nowait(event)

    def request_match(self) -> None:
        """用户点了"开始"或"下一个"。"""
        self.post(MatchRequested())

    def leave(self) -> None:
        self.post(LeaveRequested())

    def send(self, text: str) -> None:
        self.post(SendRequested(text=text))

    def start(self) -> None:
        """启动事件循环任务（重复调用无副作用）。"""
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self.run(), name=f"orchestrator-{self.user_id}")

    async def run(self) -> None:
        """逐个处理事件，直到收到结束信号。"""
        while True:
            event = await self._queue.get()
            try:
                if event is None:
                    return
                await self._dispatch(event)
            except Exception as e:
                logger.error("事件处理异常: %s | event=%r", e, event, exc_info=True)
            finally:
                self._queue.task_done()

    async def settled(self) -> None:
        """等待事件队列、进行中的尝试和后台任务全部完成。需要 ``run()`` 正在运行。"""
        while True:
            await self._queue.join()
            pending = list(self._background)
            if self._attempt is not None and not self._attempt.done():
                pending.append(self._attempt)
            if not pending:
                if self._queue.empty():
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        """进程退出：处理完已入队的事件后停止事件循环，丢弃会话，等后台断开完成。"""
        if self._runner is not None:
            self.post(None)
            await self._runner
            self._runner = None
        self._teardown()
        self._set_state(SessionState.IDLE)
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def __aenter__(self) -> SessionOrchestrator:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ── 事件分发 ──────────────────────────────────────────────────────

    async def _dispatch(self, event: OrchestratorEvent) -> None:
        if isinstance(event, MatchRequested):
            self._begin_attempt()
        elif isinstance(event, LeaveRequested):
            self._teardown()
            self._set_state(SessionState.IDLE)
        elif isinstance(event, SendRequested):
            self._send_text(event.text)
        elif isinstance(event, TransportEventReceived):
            self._on_transport_event(event)

    def _begin_attempt(self) -> None:
        release = self._teardown()
        self.last_error = None
        self._set_state(SessionState.JOINING)
        epoch = self._epoch
        self._attempt = asyncio.create_task(
            self._run_attempt(epoch, release), name=f"attempt-{self.user_id}-{epoch}",
        )

    def _teardown(self) -> asyncio.Task | None:
        """同步丢弃当前会话和进行中的尝试。

        Returns:
            旧房间的释放任务（没有旧房间时为 ``None``）。
        """
        self._epoch += 1

        attempt = self._attempt
        self._attempt = None
        if attempt is not None and not attempt.done():
            attempt.cancel()
            self._track(attempt)

        self.messages.clear()
        self.self_preview = None
        self.peer_video = None
        self.peer_audio = None

        session = self.session
        self.session = None
        if session is None:
            return None

        logger.info("离开房间 | room=%s | user=%s", session.room.id, self.user_id)
        self._discard_handles([(self.messaging, session.channel_handle)])
        self._spawn(
            self._close_media(session.media_handle, session.local_tracks), "disconnect-media",
        )
        return self._spawn(self._release_room(session.room.id), "release-room")

    # ── 匹配尝试 ──────────────────────────────────────────────────────

    async def _run_attempt(self, epoch: int, release: asyncio.Task | None) -> None:
        acquired: list[tuple[TransportAdapter, TransportHandle]] = []
        room: RoomData | None = None
        try:
            if release is not None:
                # asyncio.wait 被取消时不会连带取消释放任务
                await asyncio.wait({release})

            listing = await self.directory.request_room(self.user_id)
            if listing.rooms and listing.media_token and listing.messaging_token:
                room = listing.rooms[0]
                media_token, messaging_token = listing.media_token, listing.messaging_token
            else:
                created = await self.directory.create_room(self.user_id)
                room = created.room
                media_token, messaging_token = created.media_token, created.messaging_token

            sink = self._event_sink(epoch)
            channel_handle = await self.messaging.connect(
                room.id, self.user_id, messaging_token, sink,
            )
            acquired.append((self.messaging, channel_handle))
            media_handle = await self.media.connect(room.id, self.user_id, media_token, sink)
            acquired.append((self.media, media_handle))

            tracks = await self.devices.create_tracks()
            await self.media.publish(media_handle, tracks)
        except asyncio.CancelledError:
            logger.info("匹配尝试已取消 | epoch=%d | user=%s", epoch, self.user_id)
            self._abandon(acquired, room)
            raise
        except MatchmakingError as e:
            logger.warning("匹配失败: %s | epoch=%d | user=%s", e, epoch, self.user_id)
            self._fail(epoch, e, acquired, room)
            return
        except Exception as e:
            logger.error("匹配尝试异常: %s | epoch=%d", e, epoch, exc_info=True)
            self._fail(epoch, e, acquired, room)
            return

        if epoch != self._epoch:
            self._abandon(acquired, room)
            return

        self.session = Session(
            room=room,
            channel_handle=channel_handle,
            media_handle=media_handle,
            local_tracks=tracks,
        )
        self.self_preview = next((t for t in tracks if t.kind == "video"), None)
        self._set_state(SessionState.IN_SESSION)
        logger.info(
            "已进入房间 | room=%s | status=%s | user=%s",
            room.id, room.status.value, self.user_id,
        )

    def _fail(
        self,
        epoch: int,
        error: Exception,
        acquired: list[tuple[TransportAdapter, TransportHandle]],
        room: RoomData | None,
    ) -> None:
        self._abandon(acquired, room)
        if epoch == self._epoch:
            self.last_error = error
            self._set_state(SessionState.IDLE)

    def _abandon(
        self,
        acquired: list[tuple[TransportAdapter, TransportHandle]],
        room: RoomData | None,
    ) -> None:
        """释放一次未完成（或已作废）尝试拿到的全部资源。"""
        self._discard_handles(acquired)
        if room is not None:
            self._spawn(self._release_room(room.id), "release-room")

    def _event_sink(self, epoch: int) -> EventCallback:
        def sink(event: Any) -> None:
            self._queue.put_nowait(TransportEventReceived(epoch=epoch, event=event))
        return sink

    # ── 会话内事件 ────────────────────────────────────────────────────

    def _send_text(self, text: str) -> None:
        """本地回显立即入列，发送在后台进行，不阻塞后续事件。"""
        session = self.session
        if self.state is not SessionState.IN_SESSION or session is None:
            logger.warning("当前不在会话中，消息未发送 | state=%s", self.state.value)
            return

        index = self.messages.append(
            ChatMessage(sender_id=self.user_id, text=text, delivery=Delivery.PENDING),
        )
        self._last_publish = self._spawn(
            self._publish_text(self._epoch, index, session, text, self._last_publish),
            "publish-text",
        )

    async def _publish_text(
        self,
        epoch: int,
        index: int,
        session: Session,
        text: str,
        previous: asyncio.Task | None,
    ) -> None:
        # 同一客户端的消息按发送顺序上行
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await self.messaging.publish(session.channel_handle, text)
        except PublishError as e:
            logger.warning("消息发送失败: %s | room=%s", e, session.room.id)
            delivery = Delivery.FAILED
        else:
            delivery = Delivery.SENT

        if epoch != self._epoch:
            logger.debug("会话已切换，忽略发送结果 | epoch=%d | current=%d", epoch, self._epoch)
            return
        self.messages.mark(index, delivery)

    def _on_handle_lost(self, event: HandleLost) -> None:
        if self.state is SessionState.IDLE:
            return
        room_id = self.room.id if self.room else None
        logger.warning(
            "%s 连接已中断，结束会话 | room=%s | user=%s", event.kind, room_id, self.user_id,
        )
        self._teardown()
        self.last_error = TransportConnectionError(f"{event.kind} 连接已中断")
        self._set_state(SessionState.IDLE)

    def _on_transport_event(self, received: TransportEventReceived) -> None:
        if received.epoch != self._epoch:
            logger.debug("丢弃过期事件 | epoch=%d | current=%d", received.epoch, self._epoch)
            return

        event = received.event
        if isinstance(event, HandleLost):
            self._on_handle_lost(event)
        elif isinstance(event, ChannelMessage):
            self.messages.append(ChatMessage(sender_id=event.sender_id, text=event.text))
        elif isinstance(event, PeerTrackAvailable):
            if event.track.kind == "video":
                self.peer_video = event.track
            else:
                self.peer_audio = event.track
        elif isinstance(event, PeerTrackRemoved):
            if self.peer_video and self.peer_video.track_id == event.track.track_id:
                self.peer_video = None
            if self.peer_audio and self.peer_audio.track_id == event.track.track_id:
                self.peer_audio = None
        elif isinstance(event, PeerLeft):
            if self.peer_video and self.peer_video.user_id == event.user_id:
                self.peer_video = None
            if self.peer_audio and self.peer_audio.user_id == event.user_id:
                self.peer_audio = None
            logger.info("对方已离开 | user=%s", event.user_id)
        elif isinstance(event, PeerJoined):
            logger.info("对方已加入 | user=%s", event.user_id)

    # ── 后台任务 ──────────────────────────────────────────────────────

    def _discard_handles(self, handles: list[tuple[TransportAdapter, TransportHandle]]) -> None:
        for adapter, handle in handles:
            self._spawn(adapter.disconnect(handle), f"disconnect-{handle.kind}")

    async def _close_media(self, handle: TransportHandle, tracks: list[LocalTrack]) -> None:
        """先撤回本地轨道再断开，对端立刻收到 ``track-removed``。"""
        try:
            if tracks and handle.connected:
                await self.media.unpublish(handle, tracks)
        except PublishError as e:
            logger.debug("撤回轨道失败: %s | room=%s", e, handle.room_id)
        finally:
            await self.media.disconnect(handle)

    async def _release_room(self, room_id: str) -> None:
        await self.directory.release_room(room_id, self.user_id)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._track(task)
        return task

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("后台任务失败 | task=%s | %s", task.get_name(), exc, exc_info=exc)

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            logger.info("状态切换 | %s → %s | user=%s", self.state.value, state.value, self.user_id)
        self.state = state
