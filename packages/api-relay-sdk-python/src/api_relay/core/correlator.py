"""
Correlator：按关联 id 轮询 mailbox，等待 host 写出响应。

语义：
- 固定间隔轮询 marker（默认 100ms）；marker 出现即读取 data 并删除 mailbox 对；
- 每个 tick 边界检查 CallContext：取消或到期时抛 `RequestTimeoutError`，不删除任何 entry；
- 读取失败只尝试一次（`ReadError`），不重试。
"""

from __future__ import annotations

import logging
import time

from api_relay.core.call_context import CallContext
from api_relay.core.contracts import RelayRequest
from api_relay.core.errors import RequestTimeoutError
from api_relay.transport.mailbox import Mailbox

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 100


class Correlator:
    """
    单次调用的等待逻辑（无共享等待状态；可被多个线程并发使用）。

    参数：
    - mailbox：共享目录
    - poll_interval_ms：轮询间隔（毫秒）
    """

    def __init__(self, mailbox: Mailbox, *, poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS) -> None:
        """创建 correlator。"""

        if poll_interval_ms < 1:
            raise ValueError("poll_interval_ms must be >= 1")
        self._mailbox = mailbox
        self._interval_sec = poll_interval_ms / 1000.0

    def await_response(self, request: RelayRequest, ctx: CallContext) -> bytes:
        """
        阻塞等待 `request` 的响应，返回 data entry 原始字节。

        异常：
        - RequestTimeoutError：marker 出现前被取消或到期
        - ReadError：marker 已出现但 data 读取/删除失败
        """

        cid = request.correlation_id
        while True:
            if self._mailbox.is_ready(cid):
                data = self._mailbox.consume(cid)
                logger.debug("relay response consumed: %s (%d bytes)", cid, len(data))
                return data

            reason = ctx.reason()
            if reason is not None:
                raise RequestTimeoutError(correlation_id=cid, reason=reason)

            remaining = ctx.remaining()
            time.sleep(self._interval_sec if remaining is None else min(self._interval_sec, remaining))
