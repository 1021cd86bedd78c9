"""
app.services.relay_hub
~~~~~~~~~~~~~~~~~~~~~~

实时中继 —— 充当消息通道与音视频服务商的边界实现。

每个房间有两条独立通道：

- ``messaging``：聊天消息按到达顺序转发给房间内其他人，并广播进出事件。
- ``media``：只转发轨道的发布/撤销（描述信息），编解码不在本系统范围内。
  后加入者会收到房间内已发布的轨道。

消息通道断开时，中继会替用户向房间目录释放席位，覆盖客户端未调用
``PUT /rooms/{room_id}`` 就消失的情况。

在 FastAPI lifespan 中初始化并挂载于 ``app.state.relay_hub``。
"""
from __future__ import annotations

from dataclasses import dataclass, field

from app.core.exceptions import RoomNotFound
from app.core.logging import get_logger
from app.schemas.relay_frames import (
    FRAME_JOINED,
    FRAME_MESSAGE,
    FRAME_PEER_JOINED,
    FRAME_PEER_LEFT,
    FRAME_TRACK_AVAILABLE,
    FRAME_TRACK_REMOVED,
    TrackDescriptor,
)
from app.services.room_broadcaster import RoomBroadcaster
from app.services.room_directory import MatchmakingDirectory
from app.services.tokens import TokenIssuer, TokenKind

logger = get_logger(__name__)


@dataclass
class RelayChannel:
    """某个房间的一条中继通道。

    Attributes:
        room_id: 房间 ID。
        kind: 通道类型。
        broadcaster: 在线连接。
        tracks: 用户 ID → 已发布轨道（仅媒体通道使用）。
    """

    room_id: str
    kind: TokenKind
    broadcaster: RoomBroadcaster = field(default_factory=RoomBroadcaster)
    tracks: dict[str, dict[str, TrackDescriptor]] = field(default_factory=dict)


def _track_frame(frame_type: str, user_id: str, track: TrackDescriptor) -> dict:
    return {
        "type": frame_type,
        "fromUserId": user_id,
        **track.model_dump(by_alias=True),
    }


class RelayHub:
    """管理所有房间的中继通道。

    Attributes:
        directory: 房间目录，用于校验房间存在并在断线时释放席位。
        tokens: 令牌签发器，用于校验连接令牌。
    """

    def __init__(self, directory: MatchmakingDirectory, tokens: TokenIssuer) -> None:
        self.directory = directory
        self.tokens = tokens
        self._channels: dict[tuple[str, TokenKind], RelayChannel] = {}

    def channel(self, room_id: str, kind: TokenKind) -> RelayChannel:
        """获取（不存在则创建）指定房间的通道。"""
        key = (room_id, kind)
        if key not in self._channels:
            self._channels[key] = RelayChannel(room_id=room_id, kind=kind)
        return self._channels[key]

    async def authorize(self, room_id: str, user_id: str, token: str, kind: TokenKind) -> None:
        """连接前校验：房间必须存在，令牌必须有效且未使用过。

        Raises:
            RoomNotFound: 房间不存在。
            TokenRejected: 令牌无效。
        """
        await self.directory.get_room(room_id)
        self.tokens.verify(token, room_id=room_id, user_id=user_id, kind=kind)

    # ── 进出 ──────────────────────────────────────────────────────────

    async def join(self, channel: RelayChannel, user_id: str) -> None:
        """连接已被接受后调用：回执 + 通知其他人，媒体通道补发已有轨道。"""
        peer_count = channel.broadcaster.online_count
        await channel.broadcaster.send_to(user_id, {
            "type": FRAME_JOINED,
            "roomId": channel.room_id,
            "peerCount": peer_count,
        })
        await channel.broadcaster.send_to_others(user_id, {
            "type": FRAME_PEER_JOINED,
            "fromUserId": user_id,
            "peerCount": peer_count,
        })
        if channel.kind == "media":
            for owner, tracks in channel.tracks.items():
                if owner == user_id:
                    continue
                for track in tracks.values():
                    await channel.broadcaster.send_to(
                        user_id, _track_frame(FRAME_TRACK_AVAILABLE, owner, track),
                    )
        logger.info(
            "进入中继通道 | room=%s | kind=%s | user=%s | 在线: %d",
            channel.room_id, channel.kind, user_id, peer_count,
        )

    async def leave(self, channel: RelayChannel, user_id: str) -> None:
        """连接断开后调用（调用前已从 broadcaster 移除）。

        消息通道断开时先在目录中释放席位，再通知房间内其他人。
        """
        if channel.kind == "media":
            await self.unpublish(channel, user_id, list(channel.tracks.get(user_id, {})))
            channel.tracks.pop(user_id, None)

        if channel.kind == "messaging" and user_id not in channel.broadcaster.connections:
            try:
                await self.directory.release_room(channel.room_id, user_id)
            except RoomNotFound:
                logger.debug("房间已回收，无需释放 | room=%s | user=%s", channel.room_id, user_id)

        await channel.broadcaster.send_to_others(user_id, {
            "type": FRAME_PEER_LEFT,
            "fromUserId": user_id,
            "peerCount": channel.broadcaster.online_count,
        })
        logger.info(
            "离开中继通道 | room=%s | kind=%s | user=%s | 在线: %d",
            channel.room_id, channel.kind, user_id, channel.broadcaster.online_count,
        )

        if channel.broadcaster.online_count == 0:
            self._channels.pop((channel.room_id, channel.kind), None)

    # ── 转发 ──────────────────────────────────────────────────────────

    async def relay_message(self, channel: RelayChannel, user_id: str, text: str) -> None:
        """把聊天消息转发给房间内其他人（发送者本地已回显）。"""
        await channel.broadcaster.send_to_others(user_id, {
            "type": FRAME_MESSAGE,
            "fromUserId": user_id,
            "text": text,
        })

    async def publish(
        self, channel: RelayChannel, user_id: str, tracks: list[TrackDescriptor],
    ) -> None:
        """登记并广播新发布的轨道。同一 trackId 重复发布只登记一次。"""
        owned = channel.tracks.setdefault(user_id, {})
        for track in tracks:
            if track.track_id in owned:
                continue
            owned[track.track_id] = track
            await channel.broadcaster.send_to_others(
                user_id, _track_frame(FRAME_TRACK_AVAILABLE, user_id, track),
            )

    async def unpublish(self, channel: RelayChannel, user_id: str, track_ids: list[str]) -> None:
        """撤销轨道并通知其他人。未发布过的 trackId 忽略。"""
        owned = channel.tracks.get(user_id, {})
        for track_id in track_ids:
            track = owned.pop(track_id, None)
            if track is None:
                continue
            await channel.broadcaster.send_to_others(
                user_id, _track_frame(FRAME_TRACK_REMOVED, user_id, track),
            )
