"""
tests.test_room_store_mongo
~~~~~~~~~~~~~~~~~~~~~~~~~~~

MongoRoomStore 单元测试 —— mock 掉 motor 集合，只校验下发的查询与更新。
"""
from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo import ReturnDocument

from app.schemas.rooms import RoomStatus
from app.services.room_store import MongoRoomStore, RoomRecord

_CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_store() -> tuple[MongoRoomStore, MagicMock]:
    collection = MagicMock()
    collection.create_index = AsyncMock()
    collection.insert_one = AsyncMock()
    collection.find_one = AsyncMock()
    collection.find_one_and_update = AsyncMock()
    collection.delete_one = AsyncMock()
    collection.update_one = AsyncMock()

    db = MagicMock()
    db.__getitem__.return_value = collection
    return MongoRoomStore(db), collection


def room_doc(status: str, participants: list[str]) -> dict:
    return {"_id": "r1", "status": status, "participants": participants, "created_at": _CREATED}


class TestMongoRoomStore:
    """测试 MongoDB 房间表。"""

    @pytest.mark.asyncio
    async def test_insert_creates_index_once(self) -> None:
        store, collection = make_store()
        record = RoomRecord(id="r1", status=RoomStatus.WAITING, participants=["A"], created_at=_CREATED)

        await store.insert(record)
        await store.insert(RoomRecord(id="r2", status=RoomStatus.WAITING, participants=["B"]))

        collection.create_index.assert_awaited_once()
        doc = collection.insert_one.await_args_list[0].args[0]
        assert doc == room_doc("waiting", ["A"])

    @pytest.mark.asyncio
    async def test_claim_is_single_atomic_update(self) -> None:
        """认领通过一次 find_one_and_update 完成，条件要求恰好 1 人且不含认领者。"""
        store, collection = make_store()
        collection.find_one_and_update.return_value = room_doc("active", ["A", "B"])

        record = await store.claim_waiting("B", exclude={"r0"})

        assert record is not None
        assert record.status is RoomStatus.ACTIVE
        assert record.participants == ["A", "B"]

        kwargs = collection.find_one_and_update.await_args.kwargs
        query, update = collection.find_one_and_update.await_args.args
        assert query["status"] == "waiting"
        assert query["participants"] == {"$size": 1, "$ne": "B"}
        assert query["_id"] == {"$nin": ["r0"]}
        assert update == {"$set": {"status": "active"}, "$push": {"participants": "B"}}
        assert kwargs["sort"] == [("created_at", 1)]
        assert kwargs["return_document"] is ReturnDocument.AFTER

    @pytest.mark.asyncio
    async def test_claim_without_candidates(self) -> None:
        store, collection = make_store()
        collection.find_one_and_update.return_value = None

        assert await store.claim_waiting("B") is None

    @pytest.mark.asyncio
    async def test_remove_leaving_one_returns_to_waiting(self) -> None:
        store, collection = make_store()
        collection.find_one_and_update.return_value = room_doc("active", ["A"])

        record = await store.remove_participant("r1", "B")

        assert record is not None
        assert record.status is RoomStatus.WAITING
        collection.update_one.assert_awaited_once_with(
            {"_id": "r1", "participants": {"$size": 1}},
            {"$set": {"status": "waiting"}},
        )
        collection.delete_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remove_last_participant_deletes(self) -> None:
        store, collection = make_store()
        collection.find_one_and_update.return_value = room_doc("waiting", [])

        record = await store.remove_participant("r1", "A")

        assert record is not None
        assert record.status is RoomStatus.CLOSED
        collection.delete_one.assert_awaited_once_with({"_id": "r1", "participants": {"$size": 0}})

    @pytest.mark.asyncio
    async def test_remove_from_missing_room(self) -> None:
        store, collection = make_store()
        collection.find_one_and_update.return_value = None

        assert await store.remove_participant("r1", "A") is None

    @pytest.mark.asyncio
    async def test_get(self) -> None:
        store, collection = make_store()
        collection.find_one.return_value = room_doc("waiting", ["A"])

        record = await store.get("r1")

        assert record is not None
        assert record.id == "r1"
        assert record.participants == ["A"]
        collection.find_one.assert_awaited_once_with({"_id": "r1"})
