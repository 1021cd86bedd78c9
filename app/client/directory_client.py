"""
app.client.directory_client
~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间目录的 HTTP 客户端（基于 ``httpx.AsyncClient``）。

所有网络错误、非 2xx 响应、应答体格式错误都统一转换为 ``DirectoryError``，
调用方（会话编排器）据此放弃本次匹配并回到 Idle。
"""
from __future__ import annotations

from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from app.core.exceptions import DirectoryError
from app.core.logging import get_logger
from app.core.settings import settings
from app.schemas.rooms import CreateRoomData, ReleaseRoomData, RoomListData

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class DirectoryClient:
    """``/api/rooms`` 接口的异步客户端。

    Attributes:
        base_url: 目录接口根地址，默认读取 ``settings.DIRECTORY_URL``。
    """

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        """初始化目录客户端。

        Args:
            base_url: 目录接口根地址。
            client: 可选的 ``httpx.AsyncClient``（用于测试注入 ``MockTransport``）。
            timeout: 请求超时（秒）。
        """
        self.base_url: str = base_url or settings.DIRECTORY_URL
        self._client: httpx.AsyncClient = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout,
        )

    async def request_room(self, user_id: str) -> RoomListData:
        """``GET /rooms``：认领一个 waiting 房间，可能返回空列表。"""
        data = await self._call("GET", "/rooms", params={"userId": user_id})
        return self._parse(RoomListData, data)

    async def create_room(self, user_id: str) -> CreateRoomData:
        """``POST /rooms``：新建房间。"""
        data = await self._call("POST", "/rooms", params={"userId": user_id})
        return self._parse(CreateRoomData, data)

    async def release_room(self, room_id: str, user_id: str) -> ReleaseRoomData:
        """``PUT /rooms/{room_id}``：离开房间。"""
        data = await self._call("PUT", f"/rooms/{room_id}", params={"userId": user_id})
        return self._parse(ReleaseRoomData, data)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, path: str, params: dict[str, str]) -> Any:
        try:
            response = await self._client.request(method, path, params=params)
        except httpx.HTTPError as e:
            logger.warning("目录请求失败 | %s %s | %s", method, path, e)
            raise DirectoryError(f"房间目录不可达: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            msg = body.get("msg") if isinstance(body, dict) else None
            raise DirectoryError(
                msg or f"房间目录返回错误 {response.status_code}",
                status=response.status_code,
            )
        if not isinstance(body, dict) or body.get("code") != 200:
            raise DirectoryError("房间目录应答格式错误", status=response.status_code)
        return body.get("data")

    @staticmethod
    def _parse(model: type[M], data: Any) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise DirectoryError(f"房间目录应答格式错误: {e.error_count()} 处") from e
