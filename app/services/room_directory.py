"""
app.services.room_directory
~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间目录（匹配服务）—— 给加入者分配房间，并推进房间状态。

- ``request_room(user_id)``  → 认领一个 waiting 房间（没有则返回空列表）
- ``create_room(user_id)``   → 新建 waiting 房间，调用者是唯一参与者
- ``release_room(room_id, user_id)`` → 调用者离开，房间回到 waiting 或被回收

候选顺序为先创建先匹配（FIFO）。调用者最近一次离开的房间会被跳过一次，
这样点"下一个"时不会立刻又和刚才的人配上。

在 FastAPI lifespan 中初始化并挂载于 ``app.state.directory``。
"""
from __future__ import annotations

import uuid

from app.core.exceptions import RoomNotFound
from app.core.logging import get_logger
from app.schemas.rooms import (
    CreateRoomData,
    ReleaseRoomData,
    RoomData,
    RoomListData,
    RoomStatus,
)
from app.services.room_store import RoomRecord, RoomStore
from app.services.tokens import TokenIssuer

logger = get_logger(__name__)


class MatchmakingDirectory:
    """房间目录。

    Attributes:
        store: 房间表存储后端。
        tokens: 传输令牌签发器。
    """

    def __init__(self, store: RoomStore, tokens: TokenIssuer) -> None:
        self.store = store
        self.tokens = tokens
        # user_id -> 最近一次离开的 room_id
        self._last_left: dict[str, str] = {}

    async def request_room(self, user_id: str) -> RoomListData:
        """为调用者认领一个 waiting 房间。

        认领成功时房间变为 active，调用者成为第二个参与者，返回的令牌只对该房间有效。
        没有可认领的房间时 ``rooms`` 为空、令牌为 ``None``，调用者应改为 ``create_room``。
        """
        exclude: set[str] = set()
        skipped = self._last_left.pop(user_id, None)
        if skipped:
            exclude.add(skipped)

        record = await self.store.claim_waiting(user_id, exclude=exclude)
        if record is None:
            logger.debug("暂无可加入的房间 | user=%s", user_id)
            return RoomListData(rooms=[])

        media_token, messaging_token = self.tokens.issue_pair(record.id, user_id)
        logger.info("匹配成功 | room=%s | user=%s", record.id, user_id)
        return RoomListData(
            rooms=[record.to_data()],
            media_token=media_token,
            messaging_token=messaging_token,
        )

    async def create_room(self, user_id: str) -> CreateRoomData:
        """新建一个 waiting 房间，调用者是唯一参与者。"""
        record = RoomRecord(
            id=uuid.uuid4().hex,
            status=RoomStatus.WAITING,
            participants=[user_id],
        )
        await self.store.insert(record)

        media_token, messaging_token = self.tokens.issue_pair(record.id, user_id)
        logger.info("房间已创建 | room=%s | user=%s", record.id, user_id)
        return CreateRoomData(
            room=record.to_data(),
            media_token=media_token,
            messaging_token=messaging_token,
        )

    async def release_room(self, room_id: str, user_id: str) -> ReleaseRoomData:
        """调用者离开房间。

        剩一人时房间回到 waiting，可以分配给下一个加入者；无人时关闭并回收。
        调用者本就不在房间内时不做任何修改，直接返回当前状态。

        Raises:
            RoomNotFound: 房间不存在（或已被回收）。
        """
        before = await self.store.get(room_id)
        if before is None:
            raise RoomNotFound(f"房间不存在: {room_id}")
        if user_id not in before.participants:
            return ReleaseRoomData(room=before.to_data())

        record = await self.store.remove_participant(room_id, user_id)
        if record is None:
            raise RoomNotFound(f"房间不存在: {room_id}")

        if record.status is RoomStatus.CLOSED:
            self._forget_room(room_id)
        else:
            self._last_left[user_id] = room_id
        logger.info(
            "用户离开房间 | room=%s | user=%s | status=%s",
            room_id, user_id, record.status.value,
        )
        return ReleaseRoomData(room=record.to_data())

    def _forget_room(self, room_id: str) -> None:
        """房间回收后，指向它的"最近离开"记录不再有意义。"""
        stale = [uid for uid, rid in self._last_left.items() if rid == room_id]
        for uid in stale:
            del self._last_left[uid]

    async def get_room(self, room_id: str) -> RoomData:
        """返回指定房间的摘要。

        Raises:
            RoomNotFound: 房间不存在（或已被回收）。
        """
        record = await self.store.get(room_id)
        if record is None:
            raise RoomNotFound(f"房间不存在: {room_id}")
        return record.to_data()

    async def list_rooms(self) -> list[RoomData]:
        """按创建顺序列出所有未回收的房间。"""
        return [r.to_data() for r in await self.store.list_all()]
