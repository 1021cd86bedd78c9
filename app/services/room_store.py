"""
app.services.room_store
~~~~~~~~~~~~~~~~~~~~~~~

房间表存储 —— 房间目录唯一的共享可变状态。

提供两种后端，接口一致:

- ``MemoryRoomStore``：进程内字典，按房间 ID 加 ``asyncio.Lock``，
  适合单 worker 部署和测试。
- ``MongoRoomStore``：基于 ``motor`` 的 ``rooms`` 集合，认领第二个席位用
  ``find_one_and_update`` 原子完成，多 worker 部署下也只有一个认领者胜出。

状态流转统一在存储层完成:
  - 认领：waiting 且恰好 1 人 → active（追加认领者）
  - 离开：剩 1 人 → waiting；剩 0 人 → closed 并回收（从表中删除）
"""
from __future__ import annotations

import asyncio
from collections.abc import Collection
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Protocol

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.core.logging import get_logger
from app.schemas.rooms import RoomData, RoomStatus

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "rooms"


@dataclass
class RoomRecord:
    """房间表中的一行。

    Attributes:
        id: 房间唯一标识。
        status: 当前状态。
        participants: 当前参与者（0–2 个用户 ID，按加入顺序）。
        created_at: 创建时间，决定候选房间的先后顺序。
    """

    id: str
    status: RoomStatus
    participants: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_data(self) -> RoomData:
        return RoomData(id=self.id, status=self.status)

    def snapshot(self) -> RoomRecord:
        """返回一份独立副本，避免调用方改到表内对象。"""
        return replace(self, participants=list(self.participants))


def _status_after_leave(remaining: int) -> RoomStatus:
    if remaining == 0:
        return RoomStatus.CLOSED
    if remaining == 1:
        return RoomStatus.WAITING
    return RoomStatus.ACTIVE


class RoomStore(Protocol):
    """房间表的存储接口。"""

    async def insert(self, record: RoomRecord) -> None: ...

    async def get(self, room_id: str) -> RoomRecord | None: ...

    async def list_all(self) -> list[RoomRecord]: ...

    async def claim_waiting(
        self, user_id: str, exclude: Collection[str] = (),
    ) -> RoomRecord | None:
        """原子认领最早创建的 waiting 房间，认领者成为第二个参与者。"""
        ...

    async def remove_participant(self, room_id: str, user_id: str) -> RoomRecord | None:
        """移除参与者并推进状态；房间不存在时返回 ``None``。"""
        ...


# ── 内存实现 ──────────────────────────────────────────────────────────

class MemoryRoomStore:
    """进程内房间表。

    所有读写都在事件循环线程内进行；对单个房间的认领与离开用该房间的锁串行化。
    """

    def __init__(self) -> None:
        self._rooms: dict[str, RoomRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    async def insert(self, record: RoomRecord) -> None:
        self._rooms[record.id] = record.snapshot()

    async def get(self, room_id: str) -> RoomRecord | None:
        record = self._rooms.get(room_id)
        return record.snapshot() if record else None

    async def list_all(self) -> list[RoomRecord]:
        records = sorted(self._rooms.values(), key=lambda r: r.created_at)
        return [r.snapshot() for r in records]

    async def claim_waiting(
        self, user_id: str, exclude: Collection[str] = (),
    ) -> RoomRecord | None:
        candidates = sorted(
            (
                r for r in self._rooms.values()
                if r.status is RoomStatus.WAITING and r.id not in exclude
            ),
            key=lambda r: r.created_at,
        )
        for candidate in candidates:
            if candidate.id not in self._rooms:
                continue
            async with self._lock_for(candidate.id):
                # 拿到锁之后重新检查：房间可能已被其他认领者抢走或被回收
                record = self._rooms.get(candidate.id)
                if (
                    record is None
                    or record.status is not RoomStatus.WAITING
                    or len(record.participants) != 1
                    or user_id in record.participants
                ):
                    continue
                record.participants.append(user_id)
                record.status = RoomStatus.ACTIVE
                return record.snapshot()
        return None

    async def remove_participant(self, room_id: str, user_id: str) -> RoomRecord | None:
        # 只为存在的房间建锁，锁表随房间回收而收缩
        if room_id not in self._rooms:
            return None
        async with self._lock_for(room_id):
            record = self._rooms.get(room_id)
            if record is None:
                return None
            if user_id in record.participants:
                record.participants.remove(user_id)
                record.status = _status_after_leave(len(record.participants))
            if record.status is RoomStatus.CLOSED:
                del self._rooms[room_id]
            result = record.snapshot()
        if result.status is RoomStatus.CLOSED:
            self._locks.pop(room_id, None)
        return result


# ── MongoDB 实现 ──────────────────────────────────────────────────────

class MongoRoomStore:
    """基于 MongoDB ``rooms`` 集合的房间表。

    文档结构::

        {"_id": "<room id>", "status": "waiting", "participants": ["123456"], "created_at": ...}

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        # 复合索引：按状态筛选 + 按创建时间排序
        await self._collection.create_index(
            [("status", 1), ("created_at", 1)],
            name="idx_status_created",
        )
        self._indexes_created = True
        logger.debug("rooms 索引已就绪")

    @staticmethod
    def _from_doc(doc: dict) -> RoomRecord:
        return RoomRecord(
            id=doc["_id"],
            status=RoomStatus(doc["status"]),
            participants=list(doc.get("participants", [])),
            created_at=doc["created_at"],
        )

    async def insert(self, record: RoomRecord) -> None:
        await self._ensure_indexes()
        await self._collection.insert_one({
            "_id": record.id,
            "status": record.status.value,
            "participants": list(record.participants),
            "created_at": record.created_at,
        })

    async def get(self, room_id: str) -> RoomRecord | None:
        doc = await self._collection.find_one({"_id": room_id})
        return self._from_doc(doc) if doc else None

    async def list_all(self) -> list[RoomRecord]:
        cursor = self._collection.find({}).sort("created_at", 1)
        return [self._from_doc(doc) async for doc in cursor]

    async def claim_waiting(
        self, user_id: str, exclude: Collection[str] = (),
    ) -> RoomRecord | None:
        await self._ensure_indexes()
        doc = await self._collection.find_one_and_update(
            {
                "_id": {"$nin": list(exclude)},
                "status": RoomStatus.WAITING.value,
                "participants": {"$size": 1, "$ne": user_id},
            },
            {
                "$set": {"status": RoomStatus.ACTIVE.value},
                "$push": {"participants": user_id},
            },
            sort=[("created_at", 1)],
            return_document=ReturnDocument.AFTER,
        )
        return self._from_doc(doc) if doc else None

    async def remove_participant(self, room_id: str, user_id: str) -> RoomRecord | None:
        doc = await self._collection.find_one_and_update(
            {"_id": room_id},
            {"$pull": {"participants": user_id}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None

        record = self._from_doc(doc)
        remaining = len(record.participants)
        new_status = _status_after_leave(remaining)
        if new_status is RoomStatus.CLOSED:
            # 以参与者数为条件，避免误删刚被别人认领的房间
            await self._collection.delete_one({"_id": room_id, "participants": {"$size": 0}})
        elif new_status is not record.status:
            await self._collection.update_one(
                {"_id": room_id, "participants": {"$size": remaining}},
                {"$set": {"status": new_status.value}},
            )
        record.status = new_status
        return record
