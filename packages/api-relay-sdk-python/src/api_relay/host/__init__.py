"""
Privileged 侧：消费 request stream、执行真实调用、发布 mailbox 响应。

说明：
- 该侧只需遵守边界契约（逐行读取、先 data 后 marker），guest 侧不依赖其内部实现；
- `HttpPerformer` 依赖 httpx；测试可注入 `httpx.MockTransport` 或自定义 `Performer`。
"""

from __future__ import annotations

from api_relay.host.http_performer import HttpPerformer
from api_relay.host.watcher import HostWatcher, Performer, PerformResult

__all__ = ["HostWatcher", "HttpPerformer", "PerformResult", "Performer"]
