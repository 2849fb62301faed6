"""
Relay 错误分类（异常类型）。

说明：
- 所有失败都以异常形式直接抛给 `RelayClient.call()` 的调用方；核心层不重试、不吞掉、不记录日志。
- 每个异常携带稳定的英文 `code/message/details`，便于 CLI/上层程序化处理。
- 底层原因（OSError、JSON 解析异常等）通过 `raise ... from` 链接到 `__cause__`。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import SplitResult

from api_relay.core.contracts import ApiErrorResponse


@dataclass(frozen=True)
class RelayIssue:
    """可序列化的问题对象（CLI 输出 JSON 时使用）。"""

    code: str
    message: str
    details: Dict[str, Any]


class ApiRelayError(Exception):
    """Relay 错误基类（不建议直接抛出）。"""

    code = "RELAY_ERROR"

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        """
        创建 relay 错误。

        参数：
        - `message`：英文错误消息（不得包含 secrets）
        - `details`：结构化上下文信息（必须可 JSON 序列化）
        """

        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> RelayIssue:
        """把异常转换为可序列化问题对象。"""

        return RelayIssue(code=self.code, message=self.message, details=dict(self.details))


class EncodeError(ApiRelayError):
    """请求 body 无法序列化为 JSON。"""

    code = "ENCODE_ERROR"


class WriteError(ApiRelayError):
    """请求行写入 outbound stream 失败。"""

    code = "WRITE_ERROR"


class RequestTimeoutError(ApiRelayError, TimeoutError):
    """
    在 marker 出现之前调用被取消或 deadline 到期。

    字段：
    - correlation_id：本次调用的关联 id
    - reason：`cancelled` 或 `deadline_exceeded`
    """

    code = "REQUEST_TIMEOUT"

    def __init__(self, *, correlation_id: str, reason: str) -> None:
        """
        创建超时错误。

        参数：
        - correlation_id：等待中的关联 id
        - reason：取消原因（`cancelled` / `deadline_exceeded`）
        """

        super().__init__(
            f"request canceled: {reason}",
            details={"correlation_id": correlation_id, "reason": reason},
        )
        self.correlation_id = correlation_id
        self.reason = reason


class ReadError(ApiRelayError):
    """marker 已出现，但 data entry 读取或删除失败（单次尝试，不重试）。"""

    code = "READ_ERROR"


class ProtocolError(ApiRelayError):
    """Response envelope 不是合法 JSON 或字段类型不符。"""

    code = "PROTOCOL_ERROR"


class ApiError(ApiRelayError):
    """
    Host 侧返回的结构化 API 错误。

    字段：
    - method/url/body：原始请求上下文
    - status_code：Host 侧回填的 HTTP 状态码
    - response：解析后的结构化错误体
    """

    code = "API_ERROR"

    def __init__(
        self,
        *,
        method: str,
        url: SplitResult,
        body: str,
        status_code: int,
        response: ApiErrorResponse,
    ) -> None:
        """
        创建结构化 API 错误。

        参数：
        - method：请求方法
        - url：解析后的请求 URL
        - body：请求 body（wire 形式）
        - status_code：响应状态码
        - response：结构化错误体
        """

        summary = response.error_msg or response.status or response.error_code or "api error"
        super().__init__(
            f"{method} {url.geturl()} failed with status {status_code}: {summary}",
            details={
                "method": method,
                "url": url.geturl(),
                "status_code": status_code,
                "error_code": response.error_code,
                "serial": response.serial,
            },
        )
        self.method = method
        self.url = url
        self.body = body
        self.status_code = status_code
        self.response = response

    @property
    def is_fatal(self) -> bool:
        """Host 侧是否标记该错误为不可恢复。"""

        return bool(self.response.is_fatal)


class UnknownError(ApiRelayError):
    """Host 侧返回的错误字符串无法解析为结构化 API 错误。"""

    code = "UNKNOWN_ERROR"

    def __init__(self, raw_error: str, *, status_code: Optional[int] = None) -> None:
        """
        创建未知错误。

        参数：
        - raw_error：Host 侧返回的原始错误字符串
        - status_code：可选；Host 侧回填的状态码
        """

        details: Dict[str, Any] = {"error": raw_error}
        if status_code:
            details["status_code"] = status_code
        super().__init__(f"unknown error: {raw_error}", details=details)
        self.raw_error = raw_error
        self.status_code = status_code
