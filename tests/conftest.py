"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 房间目录用内存存储，令牌用固定测试密钥，
所有测试在无网络、无 MongoDB 的环境下运行。
"""
from __future__ import annotations

import os

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("RTC_APP_ID", "test-app")
os.environ.setdefault("RTC_APP_CERTIFICATE", "test-certificate")
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置
os.environ.setdefault("ROOM_STORE", "memory")
os.environ.setdefault("ROOMS_RATE_LIMIT", "1000/second")
os.environ.setdefault("WS_RATE_LIMIT_INTERVAL", "0")

from app.services.room_directory import MatchmakingDirectory  # noqa: E402
from app.services.room_store import MemoryRoomStore  # noqa: E402
from app.services.tokens import TokenIssuer  # noqa: E402

TEST_APP_ID = "test-app"
TEST_SECRET = "test-certificate"


@pytest.fixture()
def tokens() -> TokenIssuer:
    """与服务端配置一致的令牌签发器。"""
    return TokenIssuer(app_id=TEST_APP_ID, secret=TEST_SECRET, ttl_seconds=60)


@pytest.fixture()
def store() -> MemoryRoomStore:
    return MemoryRoomStore()


@pytest.fixture()
def directory(store: MemoryRoomStore, tokens: TokenIssuer) -> MatchmakingDirectory:
    """进程内房间目录（内存存储）。"""
    return MatchmakingDirectory(store=store, tokens=tokens)
