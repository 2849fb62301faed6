"""
API Relay SDK（Python）。

说明：
- guest 进程无法直接访问网络时，把 API 调用委托给 privileged host：
  - guest 向 append-only stream 写一行 Request envelope；
  - host 执行真实调用后，把 Response envelope 写入共享 mailbox 目录，再创建 `.done` marker；
  - guest 轮询 marker，读取并删除 mailbox 对，解码为结果或类型化错误。
- 当前包含：
  - 核心契约（RelayRequest/RelayResponse）与错误分类
  - RelayClient（并发安全的同步调用入口）
  - 配置加载器（YAML overlay + pydantic 校验）与 bootstrap
  - Host 侧 HostWatcher + httpx HttpPerformer
  - CLI（`api-relay call/watch/sweep/config`）
"""

from __future__ import annotations

from api_relay.core.call_context import CallContext
from api_relay.core.contracts import ApiErrorResponse, RelayRequest, RelayResponse
from api_relay.core.dispatcher import RelayClient
from api_relay.core.errors import (
    ApiError,
    ApiRelayError,
    EncodeError,
    ProtocolError,
    ReadError,
    RequestTimeoutError,
    UnknownError,
    WriteError,
)
from api_relay.transport.mailbox import Mailbox
from api_relay.transport.request_stream import RequestStream

__all__ = [
    "ApiError",
    "ApiErrorResponse",
    "ApiRelayError",
    "CallContext",
    "EncodeError",
    "Mailbox",
    "ProtocolError",
    "ReadError",
    "RelayClient",
    "RelayRequest",
    "RelayResponse",
    "RequestStream",
    "RequestTimeoutError",
    "UnknownError",
    "WriteError",
    "__version__",
]

__version__ = "0.1.0"
