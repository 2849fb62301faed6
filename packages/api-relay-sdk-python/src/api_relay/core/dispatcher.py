"""
RelayClient：guest 侧入口，把一次 API 调用变成“写一行 + 等 mailbox”的同步 RPC。

流程：
1) 序列化 body（GET 时拼接到 URL query string）
2) 生成新的 correlation id，构造 `RelayRequest`
3) 在 stream 锁内写出一行（只锁写入，不锁等待）
4) `Correlator` 轮询 mailbox；`ResponseParser` 解码结果或错误

说明：
- 单次尝试：任何失败都直接抛给调用方，不重试；
- 多线程并发调用安全，各调用的等待循环相互独立。
"""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Literal, Mapping, Optional
from urllib.parse import quote, urlencode

from api_relay.core.call_context import CallContext
from api_relay.core.contracts import RelayRequest
from api_relay.core.correlator import DEFAULT_POLL_INTERVAL_MS, Correlator
from api_relay.core.errors import EncodeError
from api_relay.core.response_parser import ResponseParser
from api_relay.transport.mailbox import Mailbox
from api_relay.transport.request_stream import RequestStream

if TYPE_CHECKING:
    from api_relay.config.loader import ApiRelayConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 30.0

QueryMode = Literal["raw", "encoded"]


def _new_correlation_id() -> str:
    """生成 128-bit 随机 correlation id（uuid4 字符串）。"""

    return str(uuid.uuid4())


def encode_body(body: Any) -> str:
    """
    把 body 序列化为 wire 字符串（紧凑 JSON）；None 返回空串。

    异常：
    - EncodeError：body 不可 JSON 序列化（含 NaN 等非标准值）
    """

    if body is None:
        return ""
    try:
        return json.dumps(body, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise EncodeError(f"request body is not JSON serializable: {exc}") from exc


def build_get_target(target: str, body: Any, serialized: str, *, query_mode: QueryMode = "raw") -> str:
    """
    构造 GET 请求的目标 URL。

    参数：
    - target：原始 URL
    - body：原始 body（encoded 模式下用于 form 编码）
    - serialized：已序列化的 body
    - query_mode：
      - `raw`：`target?<serialized>` 原样拼接，不做任何转义（与上游调用方的既有行为一致）
      - `encoded`：mapping body 做 form 编码（非字符串值先 JSON 序列化），其它 body 整体 percent-encode
    """

    if not serialized:
        return target
    if query_mode == "raw":
        return f"{target}?{serialized}"

    if isinstance(body, Mapping):
        pairs = []
        for k, v in body.items():
            pairs.append((str(k), v if isinstance(v, str) else encode_body(v)))
        query = urlencode(pairs)
    else:
        query = quote(serialized, safe="")
    sep = "&" if "?" in target else "?"
    return f"{target}{sep}{query}"


class RelayClient:
    """
    Relay 调用入口（Dispatcher）。

    参数：
    - stream：outbound request stream（所有调用共享；内部加锁）
    - mailbox：共享响应目录
    - timeout_sec：单次调用超时预算（与调用方 context 取更紧者）
    - poll_interval_ms：mailbox 轮询间隔
    - query_mode：GET body 拼接方式（见 `build_get_target`）
    - id_factory：correlation id 生成器（默认 uuid4）
    """

    def __init__(
        self,
        *,
        stream: RequestStream,
        mailbox: Mailbox,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        query_mode: QueryMode = "raw",
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        """创建 RelayClient（不做 I/O）。"""

        if timeout_sec <= 0:
            raise ValueError("timeout_sec must be > 0")
        if query_mode not in ("raw", "encoded"):
            raise ValueError(f"query_mode must be raw|encoded; got: {query_mode}")
        self._stream = stream
        self._mailbox = mailbox
        self._timeout_sec = float(timeout_sec)
        self._query_mode: QueryMode = query_mode
        self._id_factory = id_factory or _new_correlation_id
        self._correlator = Correlator(mailbox, poll_interval_ms=poll_interval_ms)
        self._parser = ResponseParser()

    @classmethod
    def from_config(
        cls,
        cfg: "ApiRelayConfig",
        *,
        stream: RequestStream,
        mailbox_dir: Optional[Path] = None,
    ) -> "RelayClient":
        """
        按配置构造 RelayClient。

        参数：
        - cfg：校验后的配置
        - stream：outbound request stream
        - mailbox_dir：可选；覆盖 `cfg.mailbox.dir`（例如 bootstrap 已按 workspace 解析过的绝对路径）
        """

        directory = Path(mailbox_dir) if mailbox_dir is not None else Path(cfg.mailbox.dir)
        return cls(
            stream=stream,
            mailbox=Mailbox(directory, marker_suffix=cfg.mailbox.marker_suffix),
            timeout_sec=cfg.client.timeout_sec,
            poll_interval_ms=cfg.client.poll_interval_ms,
            query_mode=cfg.client.query_mode,
        )

    @property
    def mailbox(self) -> Mailbox:
        """共享响应目录。"""

        return self._mailbox

    def build_request(self, method: str, target: str, body: Any = None) -> RelayRequest:
        """
        构造 Request envelope（序列化 body、生成 correlation id；不做 I/O）。

        异常：
        - EncodeError：body 不可序列化
        """

        serialized = encode_body(body)
        if method == "GET":
            target = build_get_target(target, body, serialized, query_mode=self._query_mode)
        return RelayRequest(
            correlation_id=self._id_factory(),
            method=method,
            target=target,
            body=serialized,
        )

    def call(self, method: str, target: str, body: Any = None, *, ctx: Optional[CallContext] = None) -> bytes:
        """
        发起一次同步 relay 调用并返回原始结果字节。

        参数：
        - method：HTTP 方法
        - target：目标 URL
        - body：可 JSON 序列化的 body（None 表示无 body）
        - ctx：调用方 context（deadline/取消）；缺省为 background

        异常：
        - EncodeError / WriteError / RequestTimeoutError / ReadError /
          ProtocolError / ApiError / UnknownError
        """

        request = self.build_request(method, target, body)
        call_ctx = (ctx or CallContext.background()).with_timeout(self._timeout_sec)
        self._stream.write_line(request.to_json())
        logger.debug("relay request sent: %s %s %s", request.correlation_id, request.method, request.target)
        raw = self._correlator.await_response(request, call_ctx)
        return self._parser.decode(request, raw)

    def do(self, method: str, target: str, body: Any = None, *, ctx: Optional[CallContext] = None) -> bytes:
        """`call()` 的别名（与上游 API caller 接口同名）。"""

        return self.call(method, target, body, ctx=ctx)

    def get(self, target: str, params: Any = None, *, ctx: Optional[CallContext] = None) -> bytes:
        """发起 GET 调用（params 会拼接到 query string）。"""

        return self.call("GET", target, params, ctx=ctx)

    def post(self, target: str, body: Any = None, *, ctx: Optional[CallContext] = None) -> bytes:
        """发起 POST 调用。"""

        return self.call("POST", target, body, ctx=ctx)

    def put(self, target: str, body: Any = None, *, ctx: Optional[CallContext] = None) -> bytes:
        """发起 PUT 调用。"""

        return self.call("PUT", target, body, ctx=ctx)

    def delete(self, target: str, body: Any = None, *, ctx: Optional[CallContext] = None) -> bytes:
        """发起 DELETE 调用。"""

        return self.call("DELETE", target, body, ctx=ctx)
