"""
app.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~

全局统一应答体，房间目录的所有 REST 接口都用它包装返回值。

客户端（``app.client.directory_client``）只需要解开 ``data`` 字段，
``code`` 非 200 时按失败处理。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from app.core.exceptions import MatchmakingError

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """统一 JSON 应答体。

    .. code-block:: json

        {"code": 200, "data": {"room": {"id": "...", "status": "waiting"}}, "msg": "success"}

    Attributes:
        code: 业务状态码，200 表示成功，其余与 HTTP 状态码一致。
        data: 实际业务数据。
        msg: 人类可读的状态消息。
    """

    code: int = Field(default=200, description="业务状态码")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        """快捷构造成功响应。"""
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        """快捷构造失败响应。"""
        return cls(code=code, data=data, msg=msg)

    @classmethod
    def from_error(cls, exc: MatchmakingError) -> ApiResponse[Any]:
        """把业务异常转换为失败响应，状态码取异常自带的 ``status_code``。"""
        return cls(code=exc.status_code, data=None, msg=exc.message or type(exc).__name__)
