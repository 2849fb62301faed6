"""
Mailbox：共享目录里的 {data entry, marker entry} 对。

目录协议：
- `<correlation_id>`：Response envelope 字节（data entry）
- `<correlation_id>.done`：零长度 marker；它的存在是“data 已完整落盘、可以读取”的唯一信号

约束：
- 写入方（host）必须先完整写入并 flush data，再创建 marker；
- 读取方（guest）只有看到 marker 之后才读 data，读完立即删除两者；
- 调用方超时后才被 host 写出的 mailbox 对不会被核心回收（orphan）；需要时显式调用 `sweep_orphans()`。
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import List

from api_relay.core.errors import ReadError

DEFAULT_MARKER_SUFFIX = ".done"


class Mailbox:
    """
    单个 mailbox 目录的读写原语。

    参数：
    - directory：共享目录（不存在时由 `ensure()` 创建）
    - marker_suffix：marker 文件后缀（默认 `.done`）
    """

    def __init__(self, directory: Path, *, marker_suffix: str = DEFAULT_MARKER_SUFFIX) -> None:
        """创建 mailbox（不做 I/O）。"""

        if not marker_suffix or os.sep in marker_suffix:
            raise ValueError("marker_suffix must be a non-empty file name suffix")
        self.directory = Path(directory)
        self.marker_suffix = marker_suffix

    def ensure(self) -> "Mailbox":
        """确保目录存在，并返回 self（便于链式调用）。"""

        self.directory.mkdir(parents=True, exist_ok=True)
        return self

    def _check_id(self, correlation_id: str) -> str:
        """校验 correlation id 只能是目录内的单个文件名，且不能与 marker 名混淆（不得以 marker 后缀结尾）。"""

        cid = str(correlation_id or "")
        if not cid or cid.startswith(".") or "/" in cid or os.sep in cid or cid.endswith(self.marker_suffix):
            raise ValueError(f"invalid correlation id for mailbox entry: {correlation_id!r}")
        return cid

    def data_path(self, correlation_id: str) -> Path:
        """返回 data entry 路径。"""

        return self.directory / self._check_id(correlation_id)

    def marker_path(self, correlation_id: str) -> Path:
        """返回 marker entry 路径。"""

        return self.directory / (self._check_id(correlation_id) + self.marker_suffix)

    def is_ready(self, correlation_id: str) -> bool:
        """marker 是否已出现。"""

        return self.marker_path(correlation_id).exists()

    def consume(self, correlation_id: str) -> bytes:
        """
        读取 data entry 并删除 mailbox 对（marker 先删，data 后删）。

        前置条件：
        - 调用方已观察到 marker（`is_ready()` 为 True）

        异常：
        - ReadError：读取或删除失败（单次尝试；失败时可能残留部分 entry）
        """

        data_path = self.data_path(correlation_id)
        marker_path = self.marker_path(correlation_id)
        try:
            data = data_path.read_bytes()
        except OSError as exc:
            raise ReadError(
                f"failed to read response entry: {exc}",
                details={"correlation_id": correlation_id, "path": str(data_path)},
            ) from exc
        for p in (marker_path, data_path):
            try:
                p.unlink(missing_ok=True)
            except OSError as exc:
                raise ReadError(
                    f"failed to remove response entry: {exc}",
                    details={"correlation_id": correlation_id, "path": str(p)},
                ) from exc
        return data

    def publish(self, correlation_id: str, data: bytes) -> None:
        """
        Host 侧写出响应：先完整写入 data 并 fsync，再创建零长度 marker。

        参数：
        - correlation_id：请求的关联 id
        - data：序列化后的 Response envelope
        """

        data_path = self.data_path(correlation_id)
        marker_path = self.marker_path(correlation_id)
        self.ensure()
        with data_path.open("wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        marker_path.touch()

    def pending_ids(self) -> List[str]:
        """返回当前已发布（marker 存在）但尚未被消费的关联 id 列表（排序后）。"""

        if not self.directory.exists():
            return []
        out: List[str] = []
        for p in self.directory.iterdir():
            if not p.name.endswith(self.marker_suffix):
                continue
            cid = p.name[: -len(self.marker_suffix)]
            if cid and not cid.startswith(".") and not cid.endswith(self.marker_suffix):
                out.append(cid)
        return sorted(out)

    def sweep_orphans(self, *, max_age_sec: float) -> List[str]:
        """
        删除超过 `max_age_sec` 仍未被消费的 mailbox 对，返回被回收的关联 id。

        说明：
        - 年龄按 marker 的 mtime 计算（marker 不存在的 data entry 可能仍在写入，不处理）；
        - 仅用于显式回收（CLI `sweep` 或上层定时任务），核心等待逻辑不会调用。
        """

        if max_age_sec < 0:
            raise ValueError("max_age_sec must be >= 0")
        now = time.time()
        swept: List[str] = []
        for cid in self.pending_ids():
            marker_path = self.marker_path(cid)
            try:
                age = now - marker_path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age < max_age_sec:
                continue
            marker_path.unlink(missing_ok=True)
            self.data_path(cid).unlink(missing_ok=True)
            swept.append(cid)
        return swept
