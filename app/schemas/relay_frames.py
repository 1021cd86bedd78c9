"""
app.schemas.relay_frames
~~~~~~~~~~~~~~~~~~~~~~~~

实时中继的 WebSocket 帧定义。

所有帧都是带 ``type`` 字段的 JSON 对象，服务端与客户端适配器共用这些常量::

    {"type": "message", "fromUserId": "123456", "text": "hi"}
    {"type": "track-available", "fromUserId": "123456", "trackId": "...", "kind": "video"}
"""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

TrackKind = Literal["audio", "video"]

# ── 帧类型 ────────────────────────────────────────────────────────────
FRAME_JOINED = "joined"
FRAME_MESSAGE = "message"
FRAME_PEER_JOINED = "peer-joined"
FRAME_PEER_LEFT = "peer-left"
FRAME_PUBLISH = "publish"
FRAME_UNPUBLISH = "unpublish"
FRAME_TRACK_AVAILABLE = "track-available"
FRAME_TRACK_REMOVED = "track-removed"
FRAME_SYSTEM = "system"

# ── 关闭码 ────────────────────────────────────────────────────────────
CLOSE_TOKEN_REJECTED = 4401
CLOSE_ROOM_GONE = 4404


class TrackDescriptor(BaseModel):
    """已发布轨道的描述（编解码不在本系统范围内）。"""

    model_config = ConfigDict(populate_by_name=True)

    track_id: str = Field(..., alias="trackId", min_length=1, max_length=64)
    kind: TrackKind


class ChatFrame(BaseModel):
    """客户端发往消息通道的聊天帧。"""

    text: str = Field(..., min_length=1, max_length=2000)


class PublishFrame(BaseModel):
    """客户端发往媒体信令通道的发布帧。"""

    tracks: list[TrackDescriptor] = Field(..., min_length=1, max_length=2)


class UnpublishFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    track_ids: list[str] = Field(..., alias="trackIds")
