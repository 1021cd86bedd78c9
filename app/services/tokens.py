"""
app.services.tokens
~~~~~~~~~~~~~~~~~~~

房间级一次性传输令牌 —— 签发与校验。

令牌是 HS256 签名的 JWT，用 ``RTC_APP_CERTIFICATE`` 签名，声明如下:

- ``room``：绑定的房间 ID
- ``sub``：用户 ID
- ``kind``：``media`` 或 ``messaging``
- ``app``：``RTC_APP_ID``
- ``jti``：随机 ID，校验通过后即作废（一次性）
- ``exp``：过期时间

客户端只能用 ``peek_room()`` 读出房间 ID 做预检查，真正的校验在中继端完成。
"""
from __future__ import annotations

import secrets
import time
from typing import Literal

import jwt

from app.core.exceptions import TokenRejected, TransportConnectionError
from app.core.logging import get_logger

logger = get_logger(__name__)

TokenKind = Literal["media", "messaging"]

_ALGORITHM = "HS256"


class TokenIssuer:
    """签发并校验房间令牌。

    已使用的 ``jti`` 记录在内存中，直到令牌自然过期后清理。

    Attributes:
        app_id: 服务商应用标识，写入 ``app`` 声明。
        ttl_seconds: 令牌有效期。
    """

    def __init__(self, app_id: str, secret: str, ttl_seconds: int = 3600) -> None:
        if not secret:
            raise RuntimeError("RTC_APP_CERTIFICATE 未配置，无法签发房间令牌")
        self.app_id = app_id
        self.ttl_seconds = ttl_seconds
        self._secret = secret
        self._consumed: dict[str, float] = {}

    def issue(self, room_id: str, user_id: str, kind: TokenKind) -> str:
        """为指定房间/用户签发一枚令牌。"""
        now = int(time.time())
        claims = {
            "room": room_id,
            "sub": user_id,
            "kind": kind,
            "app": self.app_id,
            "jti": secrets.token_hex(8),
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        return jwt.encode(claims, self._secret, algorithm=_ALGORITHM)

    def issue_pair(self, room_id: str, user_id: str) -> tuple[str, str]:
        """签发 ``(media_token, messaging_token)``。"""
        return (
            self.issue(room_id, user_id, "media"),
            self.issue(room_id, user_id, "messaging"),
        )

    def verify(self, token: str, room_id: str, user_id: str, kind: TokenKind) -> None:
        """校验令牌并将其作废。

        Raises:
            TokenRejected: 签名无效、已过期、声明不符或已被使用过。
        """
        try:
            claims = jwt.decode(token, self._secret, algorithms=[_ALGORITHM])
        except jwt.ExpiredSignatureError as e:
            raise TokenRejected("令牌已过期") from e
        except jwt.InvalidTokenError as e:
            raise TokenRejected(f"令牌无效: {e}") from e

        if claims.get("app") != self.app_id:
            raise TokenRejected("令牌不属于当前应用")
        if claims.get("room") != room_id:
            raise TokenRejected("令牌绑定的房间不符")
        if claims.get("sub") != user_id:
            raise TokenRejected("令牌绑定的用户不符")
        if claims.get("kind") != kind:
            raise TokenRejected("令牌类型不符")

        self._purge_expired()
        jti = claims.get("jti")
        if not jti or jti in self._consumed:
            raise TokenRejected("令牌已被使用")
        self._consumed[jti] = float(claims["exp"])

    def _purge_expired(self) -> None:
        now = time.time()
        expired = [jti for jti, exp in self._consumed.items() if exp < now]
        for jti in expired:
            del self._consumed[jti]


def peek_room(token: str) -> str:
    """不验签地读出令牌绑定的房间 ID（客户端预检查用）。

    Raises:
        TransportConnectionError: 令牌无法解析或缺少 ``room`` 声明。
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.InvalidTokenError as e:
        raise TransportConnectionError(f"令牌无法解析: {e}") from e
    room_id = claims.get("room")
    if not isinstance(room_id, str):
        raise TransportConnectionError("令牌缺少房间声明")
    return room_id
