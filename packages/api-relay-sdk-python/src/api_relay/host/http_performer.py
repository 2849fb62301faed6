"""
HttpPerformer：用 httpx 执行 guest 委托的 HTTP 调用（privileged 侧）。

说明：
- 2xx：响应体原样放入 `result`；
- 非 2xx：响应体放入 `error`（上游 API 通常返回结构化 JSON 错误体，guest 侧会解析为 `ApiError`）；
- 传输层失败（连接/超时等）：`error` 为异常描述，`status_code` 为 0。
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

import httpx

from api_relay.config.loader import ApiRelayHostConfig
from api_relay.host.watcher import PerformResult


class HttpPerformer:
    """
    基于 `httpx.Client` 的 Performer 实现。

    参数：
    - base_url：可选；相对 URL 会基于它拼接
    - timeout_sec：单次 HTTP 超时
    - auth：可选 basic auth（user, password），例如上游 API 的 access token/secret
    - headers：额外请求头
    - transport：可选 httpx transport（测试中注入 `httpx.MockTransport`）
    """

    def __init__(
        self,
        *,
        base_url: str = "",
        timeout_sec: float = 60.0,
        auth: Optional[Tuple[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """创建 performer（内部持有一个复用连接的 httpx.Client）。"""

        kwargs: Dict[str, Any] = {"timeout": float(timeout_sec), "headers": dict(headers or {})}
        if base_url:
            kwargs["base_url"] = base_url
        if auth is not None:
            kwargs["auth"] = auth
        if transport is not None:
            kwargs["transport"] = transport
        self._client = httpx.Client(**kwargs)

    @classmethod
    def from_config(
        cls,
        cfg: ApiRelayHostConfig,
        *,
        auth: Optional[Tuple[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "HttpPerformer":
        """按 host 配置构造 performer。"""

        return cls(base_url=cfg.base_url, timeout_sec=cfg.http_timeout_sec, auth=auth, transport=transport)

    def perform(self, method: str, url: str, body: str) -> PerformResult:
        """
        执行一次 HTTP 调用。

        参数：
        - method：HTTP 方法
        - url：目标 URL（GET 时已包含 guest 拼接的 query string）
        - body：JSON 字符串；GET 或空串时不发送 body
        """

        content: Optional[bytes] = None
        headers: Dict[str, str] = {}
        if body and method.upper() != "GET":
            content = body.encode("utf-8")
            headers["Content-Type"] = "application/json; charset=UTF-8"
        try:
            resp = self._client.request(method, url, content=content, headers=headers)
        except httpx.HTTPError as exc:
            return PerformResult(error=f"{type(exc).__name__}: {exc}")

        if resp.is_success:
            return PerformResult(result=resp.text, status_code=resp.status_code)
        error = resp.text.strip() or f"{resp.status_code} {resp.reason_phrase}"
        return PerformResult(status_code=resp.status_code, error=error)

    def close(self) -> None:
        """关闭底层 httpx.Client。"""

        self._client.close()

    def __enter__(self) -> "HttpPerformer":
        """上下文管理器入口。"""
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        """上下文管理器退出：关闭连接池。"""
        self.close()
