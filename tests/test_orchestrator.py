"""
tests.test_orchestrator
~~~~~~~~~~~~~~~~~~~~~~~

会话编排器测试 —— 进程内房间目录 + 内存传输替身。

传输替身不走网络，但会检查令牌确实绑定了要连接的房间。
"""
from __future__ import annotations

import asyncio
from typing import Any

import pytest

from app.client.message_log import Delivery
from app.client.orchestrator import SessionOrchestrator, SessionState, new_user_id
from app.client.transports import (
    ChannelMessage,
    EventCallback,
    HandleLost,
    PeerLeft,
    PeerTrackAvailable,
    PeerTrackRemoved,
    RemoteTrack,
    TransportHandle,
)
from app.core.exceptions import DirectoryError, PublishError, TransportConnectionError
from app.schemas.rooms import RoomStatus
from app.services.room_directory import MatchmakingDirectory
from app.services.tokens import peek_room


class FakeAdapter:
    """内存传输替身。"""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.handles: list[TransportHandle] = []
        self.callbacks: dict[TransportHandle, EventCallback] = {}
        self.published: list[Any] = []
        self.unpublished: list[Any] = []
        self.fail_connect = False
        self.fail_publish = False
        self.gate: asyncio.Event | None = None
        self.publish_gate: asyncio.Event | None = None
        self.connect_calls = 0

    async def connect(
        self, room_id: str, user_id: str, token: str, on_event: EventCallback,
    ) -> TransportHandle:
        self.connect_calls += 1
        assert peek_room(token) == room_id
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_connect:
            raise TransportConnectionError(f"{self.kind} refused")
        handle = TransportHandle(kind=self.kind, room_id=room_id, user_id=user_id, ws=None)
        self.handles.append(handle)
        self.callbacks[handle] = on_event
        return handle

    async def publish(self, handle: TransportHandle, payload: Any) -> None:
        if self.publish_gate is not None:
            await self.publish_gate.wait()
        if self.fail_publish or not handle.connected:
            raise PublishError(f"{self.kind} publish failed")
        self.published.append(payload)

    async def unpublish(self, handle: TransportHandle, tracks: Any) -> None:
        if not handle.connected:
            raise PublishError(f"{self.kind} unpublish failed")
        self.unpublished.append(tracks)

    async def disconnect(self, handle: TransportHandle) -> None:
        handle.closed = True

    @property
    def live(self) -> list[TransportHandle]:
        return [h for h in self.handles if not h.closed]

    def emit(self, handle: TransportHandle, event: Any) -> None:
        self.callbacks[handle](event)

    def drop(self, handle: TransportHandle) -> None:
        """模拟连接被远端关闭。"""
        handle.remote_closed = True
        self.emit(handle, HandleLost(kind=self.kind))


class UnreachableDirectory:
    async def request_room(self, user_id: str) -> Any:
        raise DirectoryError("房间目录不可达")

    async def create_room(self, user_id: str) -> Any:
        raise DirectoryError("房间目录不可达")

    async def release_room(self, room_id: str, user_id: str) -> Any:
        raise DirectoryError("房间目录不可达")


def make_orchestrator(
    directory: Any, user_id: str = "A",
) -> tuple[SessionOrchestrator, FakeAdapter, FakeAdapter]:
    messaging = FakeAdapter("messaging")
    media = FakeAdapter("media")
    orch = SessionOrchestrator(directory, messaging, media, user_id=user_id)
    return orch, messaging, media


async def room_ids(directory: MatchmakingDirectory) -> list[str]:
    return [r.id for r in await directory.list_rooms()]


async def wait_until(predicate: Any, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("条件未在预期内满足")


def test_new_user_id_is_six_digit_range() -> None:
    for _ in range(50):
        value = new_user_id()
        assert value.isdigit()
        assert 0 <= int(value) < 1_000_000


class TestMatching:
    """测试进入会话。"""

    @pytest.mark.asyncio
    async def test_first_user_creates_waiting_room(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, media = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()

            assert orch.state is SessionState.IN_SESSION
            assert orch.room is not None
            assert orch.room.status is RoomStatus.WAITING
            assert len(messaging.live) == 1
            assert len(media.live) == 1
            # 本地音视频轨道已发布，视频用作自预览
            assert [t.kind for t in media.published[0]] == ["audio", "video"]
            assert orch.self_preview is not None and orch.self_preview.kind == "video"

    @pytest.mark.asyncio
    async def test_second_user_joins_same_room(self, directory: MatchmakingDirectory) -> None:
        orch_a, _, _ = make_orchestrator(directory, "A")
        orch_b, _, _ = make_orchestrator(directory, "B")
        async with orch_a, orch_b:
            orch_a.request_match()
            await orch_a.settled()
            orch_b.request_match()
            await orch_b.settled()

            assert orch_b.state is SessionState.IN_SESSION
            assert orch_b.room.id == orch_a.room.id
            assert orch_b.room.status is RoomStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_close_disconnects_and_releases(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, media = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()

        assert orch.state is SessionState.IDLE
        assert messaging.live == []
        assert media.live == []
        assert await room_ids(directory) == []


class TestRematch:
    """测试"下一个"。"""

    @pytest.mark.asyncio
    async def test_rematch_alone_recycles_old_room(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, media = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()
            first_room = orch.room.id
            messaging.emit(messaging.handles[0], ChannelMessage(sender_id="B", text="hey"))
            await orch.settled()
            assert len(orch.messages) == 1

            orch.request_match()
            await orch.settled()

            assert orch.state is SessionState.IN_SESSION
            assert orch.room.id != first_room
            assert len(orch.messages) == 0
            assert len(messaging.live) == 1
            assert len(media.live) == 1
            assert await room_ids(directory) == [orch.room.id]

    @pytest.mark.asyncio
    async def test_log_cleared_as_soon_as_rematch_starts(
        self, directory: MatchmakingDirectory,
    ) -> None:
        orch, messaging, _ = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()
            messaging.emit(messaging.handles[0], ChannelMessage(sender_id="B", text="hey"))
            messaging.gate = asyncio.Event()

            orch.request_match()
            while messaging.connect_calls < 2:
                await asyncio.sleep(0)

            assert orch.state is SessionState.JOINING
            assert len(orch.messages) == 0
            assert orch.session is None
            messaging.gate.set()
            await orch.settled()

    @pytest.mark.asyncio
    async def test_leaving_peer_skips_old_room(self, directory: MatchmakingDirectory) -> None:
        """B 点"下一个"：旧房间带着 A 回到 waiting，B 不会立刻又被分回去。"""
        orch_a, _, _ = make_orchestrator(directory, "A")
        orch_b, _, _ = make_orchestrator(directory, "B")
        async with orch_a, orch_b:
            orch_a.request_match()
            await orch_a.settled()
            shared = orch_a.room.id
            orch_b.request_match()
            await orch_b.settled()
            assert orch_b.room.id == shared

            orch_b.request_match()
            await orch_b.settled()

            assert orch_b.room.id != shared
            assert orch_b.room.status is RoomStatus.WAITING
            assert (await directory.get_room(shared)).status is RoomStatus.WAITING

    @pytest.mark.asyncio
    async def test_stale_events_dropped(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, media = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()
            old_channel, old_media = messaging.handles[0], media.handles[0]

            orch.request_match()
            await orch.settled()
            messaging.emit(old_channel, ChannelMessage(sender_id="B", text="late"))
            media.emit(old_media, PeerTrackAvailable(RemoteTrack("B", "v-old", "video")))
            messaging.emit(messaging.handles[1], ChannelMessage(sender_id="C", text="fresh"))
            await orch.settled()

            assert [m.text for m in orch.messages] == ["fresh"]
            assert orch.peer_video is None

    @pytest.mark.asyncio
    async def test_inflight_attempt_cancelled(self, directory: MatchmakingDirectory) -> None:
        """连接进行中再点"下一个"：旧尝试被取消，它建的房间被释放。"""
        orch, messaging, _ = make_orchestrator(directory)
        messaging.gate = asyncio.Event()
        async with orch:
            orch.request_match()
            while messaging.connect_calls < 1:
                await asyncio.sleep(0)

            orch.request_match()
            while messaging.connect_calls < 2:
                await asyncio.sleep(0)
            messaging.gate.set()
            await orch.settled()

            assert orch.state is SessionState.IN_SESSION
            assert len(messaging.handles) == 1
            assert await room_ids(directory) == [orch.room.id]


class TestFailures:
    """测试匹配失败回到 Idle。"""

    @pytest.mark.asyncio
    async def test_directory_unreachable(self) -> None:
        orch, messaging, _ = make_orchestrator(UnreachableDirectory())
        async with orch:
            orch.request_match()
            await orch.settled()

            assert orch.state is SessionState.IDLE
            assert isinstance(orch.last_error, DirectoryError)
            assert messaging.connect_calls == 0

    @pytest.mark.asyncio
    async def test_messaging_connect_fails(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, media = make_orchestrator(directory)
        messaging.fail_connect = True
        async with orch:
            orch.request_match()
            await orch.settled()

            assert orch.state is SessionState.IDLE
            assert isinstance(orch.last_error, TransportConnectionError)
            assert media.connect_calls == 0
            assert await room_ids(directory) == []

    @pytest.mark.asyncio
    async def test_media_connect_fails_releases_channel(
        self, directory: MatchmakingDirectory,
    ) -> None:
        orch, messaging, media = make_orchestrator(directory)
        media.fail_connect = True
        async with orch:
            orch.request_match()
            await orch.settled()

            assert orch.state is SessionState.IDLE
            assert len(messaging.handles) == 1
            assert messaging.live == []
            assert orch.room is None
            assert await room_ids(directory) == []

    @pytest.mark.asyncio
    async def test_track_publish_fails(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, media = make_orchestrator(directory)
        media.fail_publish = True
        async with orch:
            orch.request_match()
            await orch.settled()

            assert orch.state is SessionState.IDLE
            assert isinstance(orch.last_error, PublishError)
            assert messaging.live == []
            assert media.live == []

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, _ = make_orchestrator(directory)
        messaging.fail_connect = True
        async with orch:
            orch.request_match()
            await orch.settled()
            messaging.fail_connect = False

            orch.request_match()
            await orch.settled()

            assert orch.state is SessionState.IN_SESSION
            assert orch.last_error is None


class TestInSession:
    """测试会话内的消息与轨道。"""

    @pytest.mark.asyncio
    async def test_send_echoes_and_marks_sent(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, _ = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()

            orch.send("hi")
            await orch.settled()

            assert messaging.published == ["hi"]
            message = orch.messages[0]
            assert message.delivery is Delivery.SENT
            assert message.label_for(orch.user_id) == "You"

    @pytest.mark.asyncio
    async def test_send_failure_marks_failed(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, _ = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()
            messaging.fail_publish = True

            orch.send("hi")
            await orch.settled()

            assert orch.messages[0].delivery is Delivery.FAILED
            assert orch.state is SessionState.IN_SESSION

    @pytest.mark.asyncio
    async def test_send_while_idle_ignored(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, _ = make_orchestrator(directory)
        async with orch:
            orch.send("hi")
            await orch.settled()

            assert len(orch.messages) == 0
            assert messaging.published == []

    @pytest.mark.asyncio
    async def test_incoming_messages_in_order(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, _ = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()
            handle = messaging.handles[0]

            for text in ("one", "two", "three"):
                messaging.emit(handle, ChannelMessage(sender_id="B", text=text))
            await orch.settled()

            assert [m.text for m in orch.messages] == ["one", "two", "three"]
            assert all(m.label_for(orch.user_id) == "Them" for m in orch.messages)

    @pytest.mark.asyncio
    async def test_peer_tracks(self, directory: MatchmakingDirectory) -> None:
        orch, _, media = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()
            handle = media.handles[0]
            video = RemoteTrack("B", "v1", "video")
            audio = RemoteTrack("B", "a1", "audio")

            media.emit(handle, PeerTrackAvailable(video))
            media.emit(handle, PeerTrackAvailable(audio))
            await orch.settled()
            assert orch.peer_video == video
            assert orch.peer_audio == audio

            media.emit(handle, PeerTrackRemoved(video))
            await orch.settled()
            assert orch.peer_video is None
            assert orch.peer_audio == audio

            media.emit(handle, PeerLeft("B"))
            await orch.settled()
            assert orch.peer_audio is None

    @pytest.mark.asyncio
    async def test_leave_returns_to_idle(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, media = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()

            orch.leave()
            await orch.settled()

            assert orch.state is SessionState.IDLE
            assert orch.room is None
            assert messaging.live == []
            assert media.live == []
            assert await room_ids(directory) == []

    @pytest.mark.asyncio
    async def test_messages_published_in_send_order(
        self, directory: MatchmakingDirectory,
    ) -> None:
        orch, messaging, _ = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()
            messaging.publish_gate = asyncio.Event()

            orch.send("one")
            orch.send("two")
            await wait_until(lambda: len(orch.messages) == 2)
            assert [m.delivery for m in orch.messages] == [Delivery.PENDING, Delivery.PENDING]

            messaging.publish_gate.set()
            await orch.settled()

            assert messaging.published == ["one", "two"]
            assert [m.delivery for m in orch.messages] == [Delivery.SENT, Delivery.SENT]

    @pytest.mark.asyncio
    async def test_slow_send_does_not_hold_rematch(self, directory: MatchmakingDirectory) -> None:
        """发送卡住时"下一个"照常生效，旧消息的发送结果不会写进新会话。"""
        orch, messaging, _ = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()
            old_room = orch.room.id
            messaging.publish_gate = asyncio.Event()

            orch.send("hi")
            orch.request_match()
            await wait_until(
                lambda: orch.state is SessionState.IN_SESSION and orch.room.id != old_room,
            )
            assert len(orch.messages) == 0

            messaging.publish_gate.set()
            await orch.settled()

            assert orch.state is SessionState.IN_SESSION
            assert orch.room.id != old_room
            assert len(orch.messages) == 0
            assert messaging.published == []


class TestConnectionLoss:
    """测试会话中连接被远端关闭。"""

    @pytest.mark.asyncio
    async def test_channel_lost_ends_session(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, media = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()

            messaging.drop(messaging.handles[0])
            await orch.settled()

            assert orch.state is SessionState.IDLE
            assert orch.room is None
            assert isinstance(orch.last_error, TransportConnectionError)
            assert messaging.live == []
            assert media.live == []
            assert await room_ids(directory) == []

    @pytest.mark.asyncio
    async def test_media_lost_frees_seat_for_peer(self, directory: MatchmakingDirectory) -> None:
        orch_a, _, _ = make_orchestrator(directory, "A")
        orch_b, _, media_b = make_orchestrator(directory, "B")
        async with orch_a, orch_b:
            orch_a.request_match()
            await orch_a.settled()
            orch_b.request_match()
            await orch_b.settled()
            room_id = orch_a.room.id

            media_b.drop(media_b.handles[0])
            await orch_b.settled()

            assert orch_b.state is SessionState.IDLE
            assert isinstance(orch_b.last_error, TransportConnectionError)
            assert media_b.unpublished == []
            record = await directory.store.get(room_id)
            assert record.status is RoomStatus.WAITING
            assert record.participants == ["A"]

    @pytest.mark.asyncio
    async def test_loss_while_joining_aborts_attempt(
        self, directory: MatchmakingDirectory,
    ) -> None:
        orch, messaging, media = make_orchestrator(directory)
        async with orch:
            media.gate = asyncio.Event()
            orch.request_match()
            await wait_until(lambda: media.connect_calls == 1)

            messaging.drop(messaging.handles[0])
            await orch.settled()

            assert orch.state is SessionState.IDLE
            assert isinstance(orch.last_error, TransportConnectionError)
            assert messaging.live == []
            assert media.handles == []
            assert await room_ids(directory) == []

    @pytest.mark.asyncio
    async def test_loss_from_old_session_ignored(self, directory: MatchmakingDirectory) -> None:
        orch, messaging, _ = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()
            old_handle = messaging.handles[0]
            orch.request_match()
            await orch.settled()

            messaging.drop(old_handle)
            await orch.settled()

            assert orch.state is SessionState.IN_SESSION
            assert orch.last_error is None


class TestMediaTeardown:
    """测试离开会话时撤回本地轨道。"""

    @pytest.mark.asyncio
    async def test_rematch_withdraws_local_tracks(self, directory: MatchmakingDirectory) -> None:
        orch, _, media = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()
            tracks = media.published[0]

            orch.request_match()
            await orch.settled()

            assert media.unpublished == [tracks]
            assert len(media.live) == 1

    @pytest.mark.asyncio
    async def test_lost_media_skips_withdraw(
        self, directory: MatchmakingDirectory,
    ) -> None:
        orch, _, media = make_orchestrator(directory)
        async with orch:
            orch.request_match()
            await orch.settled()
            handle = media.handles[0]
            handle.remote_closed = True

            orch.leave()
            await orch.settled()

            assert media.unpublished == []
            assert handle.closed
