"""
Bootstrap Layer（配置发现/来源追踪）。

设计目标：
- 保持核心无隐式 I/O：`RelayClient` 不读取环境变量、不自动发现 overlays；
- 提供可选 bootstrap 入口：CLI/上层应用可复用，便于排障（每个关键字段都能追溯来源）。

优先级：env > overlay YAML > 内置默认配置。
"""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from api_relay.config.defaults import load_default_config_dict
from api_relay.config.loader import ApiRelayConfig, load_config_dicts

ENV_CONFIG_PATHS = "API_RELAY_CONFIG_PATHS"
ENV_MAILBOX_DIR = "API_RELAY_MAILBOX_DIR"
ENV_TIMEOUT_SEC = "API_RELAY_TIMEOUT_SEC"
ENV_POLL_INTERVAL_MS = "API_RELAY_POLL_INTERVAL_MS"

# env 变量 → (dotted 字段路径, 类型转换)
_ENV_OVERRIDES: Tuple[Tuple[str, str, type], ...] = (
    (ENV_MAILBOX_DIR, "mailbox.dir", str),
    (ENV_TIMEOUT_SEC, "client.timeout_sec", float),
    (ENV_POLL_INTERVAL_MS, "client.poll_interval_ms", int),
)


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """
    读取 env 并返回非空白字符串（否则视为未设置）。

    参数：
    - key：环境变量名
    - env：可选的 env 映射（默认 os.environ）
    """

    v = (env if env is not None else os.environ).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的路径串切分为片段列表（去空白、去空项、保序）。"""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def discover_overlay_paths(*, workspace_root: Path, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """
    overlay 路径发现规则（固定，顺序稳定）：
    1) 默认 overlay：`<workspace_root>/config/relay.yaml`（存在时）
    2) `API_RELAY_CONFIG_PATHS`（逗号/分号分隔；相对路径相对 workspace_root）
    """

    ws = Path(workspace_root).resolve()
    overlays: list[Path] = []

    default_overlay = (ws / "config" / "relay.yaml").resolve()
    if default_overlay.exists():
        overlays.append(default_overlay)

    raw = _get_env_nonempty(ENV_CONFIG_PATHS, env=env) or ""
    for p in _split_paths(raw):
        pp = Path(p).expanduser()
        if not pp.is_absolute():
            pp = ws / pp
        overlays.append(pp.resolve())

    # 去重（按 canonical path；保序）
    seen: set[Path] = set()
    uniq: list[Path] = []
    for p in overlays:
        if p in seen:
            continue
        seen.add(p)
        uniq.append(p)
    return uniq


def _record_leaf_sources(value: Any, *, prefix: str, sources: Dict[str, str], label: str) -> None:
    """递归记录 mapping 的叶子字段来源（`sources[dotted_path] = label`）。"""

    if isinstance(value, Mapping):
        for k, v in value.items():
            path = f"{prefix}.{k}" if prefix else str(k)
            _record_leaf_sources(v, prefix=path, sources=sources, label=label)
        return
    sources[prefix] = label


def _set_dotted(target: Dict[str, Any], dotted: str, value: Any) -> None:
    """按 dotted path 写入嵌套 dict（中间节点不存在时创建）。"""

    *parents, leaf = dotted.split(".")
    node = target
    for key in parents:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[leaf] = value


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """
    读取 YAML 文件并确保根节点是 mapping(dict)。

    异常：
    - ValueError：文件不存在或 YAML 根节点不是 mapping。
    """

    if not path.exists():
        raise ValueError(f"overlay config not found: {path}")
    obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"overlay config root must be a mapping(dict): {path}")
    return obj


@dataclass(frozen=True)
class ResolvedRelayConfig:
    """
    bootstrap 解析后的有效配置（含来源追踪）。

    字段：
    - config：校验后的配置（`mailbox.dir` 已解析为绝对路径）
    - mailbox_dir：mailbox 目录绝对路径
    - overlay_paths：参与合并的 overlay 文件路径列表（字符串化）
    - sources：叶子字段来源（例如 `client.timeout_sec` → `env:API_RELAY_TIMEOUT_SEC`）
    """

    config: ApiRelayConfig
    mailbox_dir: Path
    overlay_paths: list[str]
    sources: Dict[str, str]


def resolve_effective_config(
    *,
    workspace_root: Path,
    config_paths: Optional[list[Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ResolvedRelayConfig:
    """
    解析有效配置（env > overlays > 内置默认），并返回来源追踪。

    参数：
    - workspace_root：工作区根目录（相对路径锚点）
    - config_paths：显式 overlay 列表；缺省时按 `discover_overlay_paths` 发现
    - env：可选 env 映射（默认 os.environ；便于测试注入）

    异常：
    - ValueError：overlay 缺失/格式错误，或 env 值无法转换为目标类型
    - pydantic.ValidationError：合并后的配置不合法
    """

    ws = Path(workspace_root).resolve()
    effective_env: Mapping[str, str] = env if env is not None else os.environ

    if config_paths is None:
        overlay_paths = discover_overlay_paths(workspace_root=ws, env=effective_env)
    else:
        overlay_paths = [(p if Path(p).is_absolute() else ws / p).resolve() for p in map(Path, config_paths)]

    entries: list[Tuple[str, Dict[str, Any]]] = [("embedded_default", load_default_config_dict())]
    for p in overlay_paths:
        entries.append((f"overlay:{p}", _load_yaml_mapping(p)))

    sources: Dict[str, str] = {}
    for label, d in entries:
        _record_leaf_sources(d, prefix="", sources=sources, label=label)

    env_overlay: Dict[str, Any] = {}
    for env_key, dotted, cast in _ENV_OVERRIDES:
        raw = _get_env_nonempty(env_key, env=effective_env)
        if raw is None:
            continue
        try:
            value = cast(raw)
        except ValueError as exc:
            raise ValueError(f"invalid value for {env_key}: {raw!r}") from exc
        _set_dotted(env_overlay, dotted, value)
        sources[dotted] = f"env:{env_key}"

    dicts = [deepcopy(d) for _, d in entries]
    dicts.append(env_overlay)
    cfg = load_config_dicts(dicts)

    mailbox_dir = Path(cfg.mailbox.dir).expanduser()
    if not mailbox_dir.is_absolute():
        mailbox_dir = ws / mailbox_dir
    mailbox_dir = mailbox_dir.resolve()
    cfg = cfg.model_copy(update={"mailbox": cfg.mailbox.model_copy(update={"dir": str(mailbox_dir)})})

    return ResolvedRelayConfig(
        config=cfg,
        mailbox_dir=mailbox_dir,
        overlay_paths=[str(p) for p in overlay_paths],
        sources=sources,
    )
