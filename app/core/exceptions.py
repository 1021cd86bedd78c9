"""
app.core.exceptions
~~~~~~~~~~~~~~~~~~~

匹配系统的异常体系。

客户端（编排器、传输适配器、目录客户端）与服务端（房间目录、中继）共用，
服务端异常通过 ``status_code`` 映射为 HTTP 状态码，由 ``app.main`` 的
异常处理器统一包装成 ``ApiResponse.fail()``。
"""
from __future__ import annotations


class MatchmakingError(Exception):
    """所有业务异常的基类。"""

    status_code: int = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class GeolocationUnavailable(MatchmakingError):
    """无法获取地理坐标（未授权或设备不支持）。不会自动重试。"""

    status_code = 403


class DirectoryError(MatchmakingError):
    """房间目录不可达或返回了错误。

    Attributes:
        status: HTTP 状态码；网络层失败时为 ``None``。
    """

    status_code = 502

    def __init__(self, message: str = "", status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransportConnectionError(MatchmakingError):
    """传输连接失败：令牌无效/过期/绑定了其他房间，或服务商不可达。"""

    status_code = 502


class PublishError(MatchmakingError):
    """在未连接的句柄上发布，或发送失败。"""

    status_code = 409


class RoomNotFound(MatchmakingError):
    """房间不存在（或已被回收）。"""

    status_code = 404


class TokenRejected(MatchmakingError):
    """令牌校验失败：签名、过期、房间/用户/类型不符，或已被使用过。"""

    status_code = 401
