"""
Response Parser：把 mailbox 中的原始字节解码为结果或类型化错误。
"""

from __future__ import annotations

import json
from urllib.parse import urlsplit

from pydantic import ValidationError

from api_relay.core.contracts import ApiErrorResponse, RelayRequest, RelayResponse
from api_relay.core.errors import ApiError, ProtocolError, UnknownError


class ResponseParser:
    """Response envelope 解码器（无状态）。"""

    def decode(self, request: RelayRequest, raw: bytes) -> bytes:
        """
        解码 Response envelope。

        参数：
        - request：原始请求（用于构造 `ApiError` 上下文）
        - raw：data entry 原始字节

        返回：
        - bytes：成功时的原始结果（`result` 字段，utf-8 编码）

        异常：
        - ProtocolError：envelope 不是合法 JSON / 字段类型不符
        - ApiError：`error` 可解析为结构化 API 错误
        - UnknownError：`error` 非空但不是结构化错误
        """

        try:
            response = RelayResponse.from_json(raw)
        except ValidationError as exc:
            raise ProtocolError(
                "malformed response envelope",
                details={"correlation_id": request.correlation_id, "errors": exc.error_count()},
            ) from exc

        if response.is_error:
            structured = _parse_api_error(response.error)
            if structured is None:
                raise UnknownError(response.error, status_code=response.status_code)
            raise ApiError(
                method=request.method,
                url=urlsplit(request.target),
                body=request.body,
                status_code=response.status_code,
                response=structured,
            )

        return response.result.encode("utf-8")


def _parse_api_error(raw_error: str) -> ApiErrorResponse | None:
    """尝试把 `error` 字符串解析为结构化错误；不是 JSON object 时返回 None。"""

    try:
        obj = json.loads(raw_error)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    try:
        return ApiErrorResponse.model_validate(obj)
    except ValidationError:
        return None
