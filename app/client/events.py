"""
app.client.events
~~~~~~~~~~~~~~~~~

会话编排器事件队列中的事件类型。

用户操作与传输回调都被转换成这些事件，按入队顺序逐个处理。
传输事件带有产生它的会话纪元（epoch），过期纪元的事件直接丢弃。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from app.client.transports import TransportEvent


@dataclass(frozen=True)
class MatchRequested:
    """用户点了"开始"或"下一个"：丢弃当前会话并重新匹配。"""


@dataclass(frozen=True)
class LeaveRequested:
    """结束当前会话并回到 Idle。"""


@dataclass(frozen=True)
class SendRequested:
    text: str


@dataclass(frozen=True)
class TransportEventReceived:
    epoch: int
    event: TransportEvent


OrchestratorEvent = Union[MatchRequested, LeaveRequested, SendRequested, TransportEventReceived]
