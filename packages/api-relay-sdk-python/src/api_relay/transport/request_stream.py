"""
Outbound request stream（append-only，逐行 JSON）。

实现约定：
- 一行一个 Request envelope，以 `\\n` 结尾；换行即帧边界。
- 单个 `threading.Lock` 只保护“写一行 + flush”，保证并发调用不会交错写出半行；
  等待响应期间不持有锁。
- 支持 text 与 binary 两种 writer（例如 `sys.stdout` 或 `open(path, "ab")`）。
"""

from __future__ import annotations

import io
import threading
from pathlib import Path
from typing import IO, Any, Optional

from api_relay.core.errors import WriteError


class RequestStream:
    """
    线程安全的单行写入器。

    参数：
    - writer：可写对象（text 或 binary）；本类不负责其生命周期，除非通过 `open()` 创建
    """

    def __init__(self, writer: IO[Any]) -> None:
        """
        包装一个已打开的 writer。

        参数：
        - writer：具有 `write()` 的对象；若具备 `flush()`，每行写完后会调用
        """

        self._writer: Optional[IO[Any]] = writer
        self._binary = _is_binary_writer(writer)
        self._owns_writer = False
        self._lock = threading.Lock()
        self._lines_written = 0

    @classmethod
    def open(cls, path: Path) -> "RequestStream":
        """
        以追加模式打开文件（或 FIFO）并返回 stream。

        说明：
        - 使用 binary 模式，避免平台换行转换破坏帧边界；
        - 返回的 stream 拥有该文件句柄，`close()` 时一并关闭。
        """

        fh = Path(path).open("ab")
        stream = cls(fh)
        stream._owns_writer = True
        return stream

    @property
    def lines_written(self) -> int:
        """已成功写出的行数。"""

        return self._lines_written

    def write_line(self, line: str) -> None:
        """
        原子地追加一行（自动补 `\\n`）。

        异常：
        - ValueError：line 本身包含换行（会破坏帧边界）
        - WriteError：底层写入或 flush 失败
        """

        if "\n" in line:
            raise ValueError("request line must not contain a newline")
        data = line + "\n"
        with self._lock:
            if self._writer is None:
                raise WriteError("request stream is closed")
            try:
                if self._binary:
                    self._writer.write(data.encode("utf-8"))
                else:
                    self._writer.write(data)
                flush = getattr(self._writer, "flush", None)
                if flush is not None:
                    flush()
            except (OSError, ValueError) as exc:
                raise WriteError(f"failed to write request line: {exc}") from exc
            self._lines_written += 1

    def close(self) -> None:
        """关闭 stream（仅当句柄由本类打开时关闭底层文件）。"""

        with self._lock:
            if self._writer is None:
                return
            try:
                if self._owns_writer:
                    self._writer.close()
            finally:
                self._writer = None

    def __enter__(self) -> "RequestStream":
        """上下文管理器入口。"""
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        """上下文管理器退出：关闭 stream。"""
        self.close()


def _is_binary_writer(writer: IO[Any]) -> bool:
    """判断 writer 是否需要 bytes（best-effort：按 mode / io 基类识别）。"""

    if isinstance(writer, io.TextIOBase):
        return False
    if isinstance(writer, (io.RawIOBase, io.BufferedIOBase)):
        return True
    mode = getattr(writer, "mode", "")
    return isinstance(mode, str) and "b" in mode
