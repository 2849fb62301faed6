"""
Relay 线上契约（Request/Response envelope）。

wire 形式：
- Request：每行一个 JSON object，key 固定为 `uuid/method/url/body`
- Response：`{"result": str, "error": str, "status_code": int}`
- 结构化 API 错误：`error` 字段内再嵌一层 JSON object（可选字段见 `ApiErrorResponse`）
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, StrictInt


class RelayRequest(BaseModel):
    """
    Request envelope（guest → host，单行 JSON）。

    字段语义：
    - correlation_id：每次调用新生成的关联 id（wire key `uuid`）
    - method：HTTP 方法（例如 `GET`）
    - target：目标 URL（wire key `url`；GET 时已拼接 query string）
    - body：预先序列化的 JSON 字符串；无 body 时为空串
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    correlation_id: str = Field(alias="uuid", min_length=1)
    method: str
    target: str = Field(alias="url")
    body: str = ""

    def to_json(self) -> str:
        """序列化为单行 JSON 字符串（不含换行；key 使用 wire 别名）。"""

        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw_json: str | bytes) -> "RelayRequest":
        """从单行 JSON 反序列化为 `RelayRequest`。"""

        return cls.model_validate_json(raw_json)


class RelayResponse(BaseModel):
    """
    Response envelope（host → guest，写入 mailbox data entry）。

    说明：
    - `error` 非空即表示失败，优先级高于 `result`；
    - 未知字段忽略，便于 host 侧追加字段而不破坏旧 guest。
    """

    model_config = ConfigDict(extra="ignore")

    result: str = ""
    error: str = ""
    status_code: StrictInt = 0

    @property
    def is_error(self) -> bool:
        """是否为失败响应。"""

        return bool(self.error)

    def to_json(self) -> str:
        """序列化为 JSON 字符串。"""

        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw_json: str | bytes) -> "RelayResponse":
        """从 JSON 反序列化为 `RelayResponse`。"""

        return cls.model_validate_json(raw_json)


class ApiErrorResponse(BaseModel):
    """上游云 API 的结构化错误体（嵌在 Response envelope 的 `error` 字段里）。"""

    model_config = ConfigDict(extra="ignore")

    is_fatal: bool = False
    serial: str = ""
    status: str = ""
    error_code: str = ""
    error_msg: str = ""
