"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 默认配置：`api_relay/assets/default.yaml`（见 `api_relay.config.defaults`）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, MutableMapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(overlay_value, Mapping)
        ):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ApiRelayClientConfig(BaseModel):
    """guest 侧调用参数。"""

    model_config = ConfigDict(extra="forbid")

    timeout_sec: float = Field(default=30, gt=0)
    poll_interval_ms: int = Field(default=100, ge=1)
    query_mode: Literal["raw", "encoded"] = Field(default="raw")


class ApiRelayMailboxConfig(BaseModel):
    """
    共享 mailbox 目录配置。

    说明：
    - `dir` 为相对路径时由 bootstrap 相对 workspace_root 解析；
    - `orphan_max_age_sec` 只影响显式 sweep，不影响等待逻辑。
    """

    model_config = ConfigDict(extra="forbid")

    dir: str = Field(default=".api_relay/mailbox", min_length=1)
    marker_suffix: str = Field(default=".done", min_length=1)
    orphan_max_age_sec: float = Field(default=600, ge=0)

    @field_validator("marker_suffix")
    @classmethod
    def _validate_marker_suffix(cls, value: str) -> str:
        """marker 后缀必须以 `.` 开头且不含路径分隔符。"""

        if not value.startswith(".") or "/" in value or "\\" in value:
            raise ValueError("mailbox.marker_suffix must start with '.' and must not contain path separators")
        return value


class ApiRelayHostConfig(BaseModel):
    """host watcher 配置（privileged 侧）。"""

    model_config = ConfigDict(extra="forbid")

    http_timeout_sec: float = Field(default=60, gt=0)
    base_url: str = ""
    max_workers: int = Field(default=1, ge=1)


class ApiRelayConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    client: ApiRelayClientConfig = Field(default_factory=ApiRelayClientConfig)
    mailbox: ApiRelayMailboxConfig = Field(default_factory=ApiRelayMailboxConfig)
    host: ApiRelayHostConfig = Field(default_factory=ApiRelayHostConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"配置文件不存在：{path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"配置文件根节点必须为 mapping(dict)：{path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> ApiRelayConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `ApiRelayConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return ApiRelayConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> ApiRelayConfig:
    """
    加载并合并多个配置文件，返回校验后的 `ApiRelayConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: list[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
