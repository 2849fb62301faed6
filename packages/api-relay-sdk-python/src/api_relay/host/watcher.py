"""
HostWatcher：privileged 侧的 request stream 消费者。

职责（guest 侧依赖的边界契约）：
- 逐行读取 Request envelope（到达顺序）；
- 调用 `Performer` 执行真实操作；
- 把 Response envelope 写入 `<uuid>`，完整落盘后再创建 `<uuid>.done`。

说明：
- 无法解析（或 correlation id 不是合法 mailbox 文件名）的行记录 warning 后跳过；
- `max_workers > 1` 时各行并发处理；guest 侧正确性只依赖“同一 id 先 data 后 marker”。
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, runtime_checkable

from pydantic import ValidationError

from api_relay.core.contracts import RelayRequest, RelayResponse
from api_relay.transport.mailbox import Mailbox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PerformResult:
    """
    一次真实调用的结果。

    字段：
    - result：成功时的原始响应体
    - status_code：HTTP 状态码（传输层失败时为 0）
    - error：失败描述；非空表示失败
    """

    result: str = ""
    status_code: int = 0
    error: str = ""

    def to_response(self) -> RelayResponse:
        """转换为 Response envelope（失败时不回传 result）。"""

        if self.error:
            return RelayResponse(result="", error=self.error, status_code=self.status_code)
        return RelayResponse(result=self.result, error="", status_code=self.status_code)


@runtime_checkable
class Performer(Protocol):
    """执行真实 privileged 调用的协议（例如 `HttpPerformer`）。"""

    def perform(self, method: str, url: str, body: str) -> PerformResult:
        """执行调用；实现方应把失败收敛为 `PerformResult.error`，而不是抛异常。"""


class HostWatcher:
    """
    Request stream → Performer → Mailbox 的搬运循环。

    参数：
    - mailbox：共享响应目录
    - performer：真实调用执行者
    - max_workers：并发处理的线程数（1 表示严格顺序处理）
    """

    def __init__(self, mailbox: Mailbox, performer: Performer, *, max_workers: int = 1) -> None:
        """创建 watcher（不做 I/O）。"""

        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._mailbox = mailbox
        self._performer = performer
        self._max_workers = int(max_workers)
        self._handled = 0
        self._count_lock = threading.Lock()

    @property
    def handled(self) -> int:
        """已发布响应的请求数。"""

        return self._handled

    def handle_line(self, line: str) -> Optional[str]:
        """
        处理一行 Request envelope，返回其 correlation id；空行/无法解析/发布失败时返回 None。

        说明：
        - correlation id 不能作为 mailbox 文件名时（例如 `../x`、`.x`）视同无法解析：记录 warning 并跳过，
          不调用 performer；
        - performer 抛出的异常会被收敛为 Response 的 `error`，保证 guest 总能收到回执；
        - mailbox 写入失败只记录 warning，guest 侧会按自身 deadline 超时。
        """

        text = line.strip()
        if not text:
            return None
        try:
            request = RelayRequest.from_json(text)
            self._mailbox.data_path(request.correlation_id)
        except (ValidationError, ValueError):
            logger.warning("skipping undecodable request line: %.200s", text)
            return None

        try:
            outcome = self._performer.perform(request.method, request.target, request.body)
        except Exception as exc:
            logger.warning("performer raised for %s: %s", request.correlation_id, exc, exc_info=True)
            outcome = PerformResult(error=str(exc) or type(exc).__name__)

        try:
            self._mailbox.publish(request.correlation_id, outcome.to_response().to_json().encode("utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("failed to publish response for %s: %s", request.correlation_id, exc)
            return None
        with self._count_lock:
            self._handled += 1
        logger.debug("relay response published: %s (status=%s)", request.correlation_id, outcome.status_code)
        return request.correlation_id

    def serve(self, reader: Iterable[str]) -> int:
        """
        消费 `reader` 中的所有行，直到 EOF；返回已发布的响应数。

        参数：
        - reader：逐行可迭代对象（例如打开的 FIFO、`sys.stdin`）

        说明：
        - 并发模式下最多 `2 * max_workers` 行在途；不保留已完成的 Future（长期运行的 FIFO 不会累积状态）。
        """

        self._mailbox.ensure()
        if self._max_workers == 1:
            for line in reader:
                self.handle_line(line)
            return self._handled

        slots = threading.BoundedSemaphore(self._max_workers * 2)

        def _on_done(fut: Future[Optional[str]]) -> None:
            """释放在途名额；worker 异常在此记录（不会等到 EOF）。"""

            slots.release()
            exc = fut.exception()
            if exc is not None:
                logger.error("request handler failed: %s", exc, exc_info=exc)

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="api-relay-host") as pool:
            for line in reader:
                slots.acquire()
                pool.submit(self.handle_line, line).add_done_callback(_on_done)
        return self._handled
