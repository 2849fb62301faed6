"""
CallContext：单次调用的 deadline + 取消控制。

说明：
- deadline 使用 `time.monotonic()` 时间轴（不受系统时钟调整影响）；
- 取消是协作式的：等待循环在每个 tick 边界调用 `is_cancelled()` / `expired()` 检查；
- `with_timeout()` 派生子 context：取父 deadline 与新 timeout 中更紧的一个，取消状态与父共享。
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

REASON_CANCELLED = "cancelled"
REASON_DEADLINE_EXCEEDED = "deadline_exceeded"


@dataclass(frozen=True)
class CallContext:
    """
    调用上下文（不可变；派生会返回新对象）。

    字段：
    - deadline：monotonic 截止时间（None 表示不限制）
    - cancel_checker：可选的取消检测回调（返回 True 表示应尽快停止；异常时 fail-open）
    - cancel_event：显式取消标志（`cancel()` 设置；派生 context 共享同一个 event）
    """

    deadline: Optional[float] = None
    cancel_checker: Optional[Callable[[], bool]] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def background(cls) -> "CallContext":
        """返回无 deadline、不会被取消的根 context。"""

        return cls()

    @classmethod
    def with_deadline_in(
        cls, seconds: float, *, cancel_checker: Optional[Callable[[], bool]] = None
    ) -> "CallContext":
        """
        创建 `seconds` 秒后到期的根 context。

        参数：
        - seconds：相对超时（秒）
        - cancel_checker：可选的取消检测回调
        """

        return cls(deadline=time.monotonic() + float(seconds), cancel_checker=cancel_checker)

    def with_timeout(self, seconds: float) -> "CallContext":
        """
        派生一个最多再持续 `seconds` 秒的子 context。

        说明：
        - 父 deadline 更早时保留父 deadline（更紧者生效）；
        - cancel_checker 与 cancel_event 原样继承。
        """

        candidate = time.monotonic() + float(seconds)
        deadline = candidate if self.deadline is None else min(self.deadline, candidate)
        return CallContext(deadline=deadline, cancel_checker=self.cancel_checker, cancel_event=self.cancel_event)

    def cancel(self) -> None:
        """显式取消（对共享同一 cancel_event 的所有 context 生效）。"""

        self.cancel_event.set()

    def is_cancelled(self) -> bool:
        """
        检查是否已被取消。

        约束：
        - cancel_checker 抛异常时 fail-open：视为未取消。
        """

        if self.cancel_event.is_set():
            return True
        if self.cancel_checker is None:
            return False
        try:
            return bool(self.cancel_checker())
        except Exception:
            return False

    def remaining(self) -> Optional[float]:
        """返回剩余秒数（不小于 0）；无 deadline 时返回 None。"""

        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        """deadline 是否已到期。"""

        return self.deadline is not None and time.monotonic() >= self.deadline

    def reason(self) -> Optional[str]:
        """返回终止原因（取消优先于到期）；仍可继续时返回 None。"""

        if self.is_cancelled():
            return REASON_CANCELLED
        if self.expired():
            return REASON_DEADLINE_EXCEEDED
        return None
