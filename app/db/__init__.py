"""
app.db
~~~~~~

房间表存储的装配 —— 按 ``settings.ROOM_STORE`` 选择后端。

- ``memory``：进程内字典，不依赖外部服务，单 worker 部署与测试使用。
- ``mongo``：``motor`` 的 ``AsyncIOMotorClient`` 连接池，启动时 ping 一次，
  多 worker 共享同一张房间表。

启动时调用 ``open_room_store()``，关闭时调用 ``close_room_store()``。
"""
from __future__ import annotations

from urllib.parse import urlparse, urlunparse

from motor.motor_asyncio import AsyncIOMotorClient

from app.core.logging import get_logger
from app.core.settings import Settings, settings
from app.services.room_store import MemoryRoomStore, MongoRoomStore, RoomStore

logger = get_logger(__name__)

_client: AsyncIOMotorClient | None = None


def _mask_uri(uri: str) -> str:
    """将 MongoDB URI 中的密码替换为 ``***``，防止日志泄漏凭证。"""
    parsed = urlparse(uri)
    if parsed.password:
        masked = parsed._replace(
            netloc=f"{parsed.username}:***@{parsed.hostname}"
            + (f":{parsed.port}" if parsed.port else ""),
        )
        return urlunparse(masked)
    return uri


async def open_room_store(config: Settings = settings) -> RoomStore:
    """创建房间表存储。应在 lifespan startup 中调用。

    Raises:
        pymongo.errors.PyMongoError: ``mongo`` 后端 ping 失败。
    """
    global _client
    if config.ROOM_STORE == "memory":
        logger.info("房间表使用内存存储")
        return MemoryRoomStore()

    _client = AsyncIOMotorClient(config.MONGO_URI)
    db = _client[config.MONGO_DB_NAME]
    try:
        await db.command("ping")
    except Exception as e:
        logger.error("MongoDB 连接失败: %s", e, exc_info=True)
        await close_room_store()
        raise
    logger.info(
        "房间表使用 MongoDB | uri=%s | db=%s",
        _mask_uri(config.MONGO_URI),
        config.MONGO_DB_NAME,
    )
    return MongoRoomStore(db)


async def close_room_store() -> None:
    """关闭 MongoDB 连接池（内存存储无需关闭）。应在 lifespan shutdown 中调用。"""
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB 连接已关闭")
