"""
app.schemas.rooms
~~~~~~~~~~~~~~~~~

房间目录相关的 Pydantic 请求/响应模型。

线上字段使用 camelCase（``mediaToken`` / ``messagingToken``），
Python 侧按字段名访问，两种写法都可用于构造。
"""
from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RoomStatus(str, Enum):
    """房间状态。只有房间目录可以修改。"""

    WAITING = "waiting"
    ACTIVE = "active"
    CLOSED = "closed"


class RoomData(BaseModel):
    """房间摘要（不对外暴露参与者 ID）。"""

    id: str = Field(..., description="房间唯一标识")
    status: RoomStatus = Field(..., description="房间状态")


class CreateRoomData(BaseModel):
    """``POST /rooms`` 响应数据：新建房间 + 两个传输令牌。"""

    model_config = ConfigDict(populate_by_name=True)

    room: RoomData = Field(..., description="新建的房间（waiting）")
    media_token: str = Field(..., alias="mediaToken", description="音视频传输令牌")
    messaging_token: str = Field(..., alias="messagingToken", description="消息通道令牌")


class RoomListData(BaseModel):
    """``GET /rooms`` 响应数据。

    ``rooms`` 为空时表示当前没有可加入的房间，令牌也为空，调用方应改为建房。
    """

    model_config = ConfigDict(populate_by_name=True)

    rooms: list[RoomData] = Field(default_factory=list, description="已为调用方占位的候选房间")
    media_token: str | None = Field(default=None, alias="mediaToken", description="音视频传输令牌")
    messaging_token: str | None = Field(
        default=None, alias="messagingToken", description="消息通道令牌",
    )


class ReleaseRoomData(BaseModel):
    """``PUT /rooms/{room_id}`` 响应数据：释放后的房间状态。"""

    room: RoomData = Field(..., description="释放后的房间")
