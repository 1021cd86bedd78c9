"""
app.client.message_log
~~~~~~~~~~~~~~~~~~~~~~

当前会话的聊天记录 —— 只追加、按投递顺序排列，换房时清空。

本端发出的消息先以 ``pending`` 状态回显，发布成功后标为 ``sent``，
失败则标为 ``failed``（不回滚、不重试）。发送者与文本一经追加不可修改。
"""
from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, replace
from enum import Enum


class Delivery(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RECEIVED = "received"


@dataclass(frozen=True)
class ChatMessage:
    sender_id: str
    text: str
    delivery: Delivery = Delivery.RECEIVED

    def label_for(self, self_id: str) -> str:
        """界面上的署名：自己发的是 "You"，对方发的是 "Them"。"""
        return "You" if self.sender_id == self_id else "Them"


class MessageLog:
    """有序的聊天记录。"""

    def __init__(self) -> None:
        self._messages: list[ChatMessage] = []

    def append(self, message: ChatMessage) -> int:
        """追加一条消息，返回其下标（用于之后更新投递状态）。"""
        self._messages.append(message)
        return len(self._messages) - 1

    def mark(self, index: int, delivery: Delivery) -> None:
        """更新某条消息的投递状态。"""
        self._messages[index] = replace(self._messages[index], delivery=delivery)

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(list(self._messages))

    def __getitem__(self, index: int) -> ChatMessage:
        return self._messages[index]
