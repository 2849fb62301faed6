"""
api-relay CLI（call/watch/sweep/config）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；失败时也输出 JSON（`ok=false` + 结构化 error）
- exit code：0 成功；1 relay 调用失败；2 参数/配置错误
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from pydantic import ValidationError

from api_relay.bootstrap import ResolvedRelayConfig, resolve_effective_config
from api_relay.core.call_context import CallContext
from api_relay.core.dispatcher import RelayClient
from api_relay.core.errors import ApiRelayError, RelayIssue
from api_relay.host.http_performer import HttpPerformer
from api_relay.host.watcher import HostWatcher
from api_relay.transport.mailbox import Mailbox
from api_relay.transport.request_stream import RequestStream

EXIT_OK = 0
EXIT_RELAY_ERROR = 1
EXIT_USAGE = 2


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _issue_payload(issue: RelayIssue) -> Dict[str, Any]:
    """把 RelayIssue 转为 JSON 友好的 dict。"""

    return {"code": issue.code, "message": issue.message, "details": dict(issue.details)}


def _fail(code: str, message: str, *, pretty: bool, details: Optional[Dict[str, Any]] = None) -> int:
    """输出参数/配置类错误并返回 exit code 2。"""

    issue = RelayIssue(code=code, message=message, details=details or {})
    _dump_json_to_stdout({"ok": False, "error": _issue_payload(issue)}, pretty=pretty)
    return EXIT_USAGE


def _resolve(args: argparse.Namespace) -> Tuple[Optional[ResolvedRelayConfig], Optional[RelayIssue]]:
    """
    按 CLI 参数解析有效配置。

    返回：
    - (resolved, issue)：失败时 resolved 为 None，issue 为结构化错误。
    """

    ws = Path(str(args.workspace_root)).expanduser().resolve()
    if not ws.is_dir():
        return None, RelayIssue(
            code="CLI_WORKSPACE_ROOT_NOT_FOUND",
            message="Workspace root is not found or not a directory.",
            details={"workspace_root": str(ws)},
        )
    config_paths = [Path(p) for p in args.config] if args.config else None
    try:
        resolved = resolve_effective_config(workspace_root=ws, config_paths=config_paths)
    except (ValueError, ValidationError) as exc:
        return None, RelayIssue(
            code="CLI_CONFIG_INVALID",
            message="Config load failed.",
            details={"reason": str(exc)},
        )
    return resolved, None


def _mailbox_dir(args: argparse.Namespace, resolved: ResolvedRelayConfig) -> Path:
    """`--mailbox` 优先，否则使用配置解析出的目录。"""

    if args.mailbox:
        return Path(str(args.mailbox)).expanduser().resolve()
    return resolved.mailbox_dir


def _handle_config(args: argparse.Namespace) -> int:
    """执行 `config`：输出有效配置与来源追踪。"""

    resolved, issue = _resolve(args)
    if resolved is None:
        assert issue is not None
        return _fail(issue.code, issue.message, details=issue.details, pretty=bool(args.pretty))
    _dump_json_to_stdout(
        {
            "ok": True,
            "config": resolved.config.model_dump(),
            "overlay_paths": resolved.overlay_paths,
            "sources": resolved.sources,
        },
        pretty=bool(args.pretty),
    )
    return EXIT_OK


def _handle_call(args: argparse.Namespace) -> int:
    """执行 `call`：写出一行请求并等待 mailbox 响应。"""

    pretty = bool(args.pretty)
    resolved, issue = _resolve(args)
    if resolved is None:
        assert issue is not None
        return _fail(issue.code, issue.message, details=issue.details, pretty=pretty)

    body: Any = None
    if args.body is not None:
        try:
            body = json.loads(args.body)
        except ValueError as exc:
            return _fail("CLI_BODY_INVALID", "Body must be valid JSON.", details={"reason": str(exc)}, pretty=pretty)

    cfg = resolved.config
    ctx = CallContext.background()
    if args.timeout_sec is not None:
        if args.timeout_sec <= 0:
            return _fail("CLI_TIMEOUT_INVALID", "--timeout-sec must be > 0.", pretty=pretty)
        ctx = CallContext.with_deadline_in(float(args.timeout_sec))

    requests_path = Path(str(args.requests)).expanduser()
    try:
        stream = RequestStream.open(requests_path)
    except OSError as exc:
        return _fail(
            "CLI_REQUESTS_OPEN_FAILED",
            "Request stream could not be opened.",
            details={"path": str(requests_path), "reason": str(exc)},
            pretty=pretty,
        )

    with stream:
        client = RelayClient.from_config(cfg, stream=stream, mailbox_dir=_mailbox_dir(args, resolved))
        client.mailbox.ensure()
        try:
            result = client.call(str(args.method).upper(), str(args.url), body, ctx=ctx)
        except ApiRelayError as exc:
            _dump_json_to_stdout({"ok": False, "error": _issue_payload(exc.to_issue())}, pretty=pretty)
            return EXIT_RELAY_ERROR

    _dump_json_to_stdout({"ok": True, "result": result.decode("utf-8", errors="replace")}, pretty=pretty)
    return EXIT_OK


def _auth_from_env(args: argparse.Namespace) -> Optional[Tuple[str, str]]:
    """按 `--auth-user-env/--auth-password-env` 读取 basic auth（两者都设置且非空时生效）。"""

    if not args.auth_user_env or not args.auth_password_env:
        return None
    user = os.environ.get(str(args.auth_user_env), "")
    password = os.environ.get(str(args.auth_password_env), "")
    if not user or not password:
        return None
    return user, password


def _handle_watch(args: argparse.Namespace) -> int:
    """执行 `watch`：消费 request stream 直到 EOF，逐个发布响应。"""

    pretty = bool(args.pretty)
    resolved, issue = _resolve(args)
    if resolved is None:
        assert issue is not None
        return _fail(issue.code, issue.message, details=issue.details, pretty=pretty)

    host_cfg = resolved.config.host
    if args.base_url is not None:
        host_cfg = host_cfg.model_copy(update={"base_url": str(args.base_url)})
    max_workers = int(args.max_workers) if args.max_workers is not None else host_cfg.max_workers
    if max_workers < 1:
        return _fail("CLI_MAX_WORKERS_INVALID", "--max-workers must be >= 1.", pretty=pretty)

    mailbox = Mailbox(_mailbox_dir(args, resolved), marker_suffix=resolved.config.mailbox.marker_suffix)
    with HttpPerformer.from_config(host_cfg, auth=_auth_from_env(args)) as performer:
        watcher = HostWatcher(mailbox, performer, max_workers=max_workers)
        if str(args.requests) == "-":
            handled = watcher.serve(sys.stdin)
        else:
            with Path(str(args.requests)).expanduser().open("r", encoding="utf-8") as reader:
                handled = watcher.serve(reader)

    _dump_json_to_stdout({"ok": True, "handled": handled}, pretty=pretty)
    return EXIT_OK


def _handle_sweep(args: argparse.Namespace) -> int:
    """执行 `sweep`：回收超龄的 orphan mailbox 对。"""

    pretty = bool(args.pretty)
    resolved, issue = _resolve(args)
    if resolved is None:
        assert issue is not None
        return _fail(issue.code, issue.message, details=issue.details, pretty=pretty)

    max_age = args.max_age_sec if args.max_age_sec is not None else resolved.config.mailbox.orphan_max_age_sec
    if max_age < 0:
        return _fail("CLI_MAX_AGE_INVALID", "--max-age-sec must be >= 0.", pretty=pretty)
    mailbox = Mailbox(_mailbox_dir(args, resolved), marker_suffix=resolved.config.mailbox.marker_suffix)
    swept = mailbox.sweep_orphans(max_age_sec=float(max_age))
    _dump_json_to_stdout({"ok": True, "swept": swept}, pretty=pretty)
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    """构造 argparse parser（子命令：config/call/watch/sweep）。"""

    parser = argparse.ArgumentParser(prog="api-relay", description="Relay API calls through a line stream and a mailbox directory.")
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加通用参数。"""

        p.add_argument("--workspace-root", default=".", help="Workspace root directory (default: .)")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--mailbox", default=None, help="Mailbox directory (overrides config).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
        p.add_argument(
            "--log-level",
            default="WARNING",
            type=str.upper,
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Logging level (default: WARNING).",
        )

    config_p = root_sub.add_parser("config", help="Print the effective config and its sources")
    _add_common_flags(config_p)

    call_p = root_sub.add_parser("call", help="Relay one API call and wait for its response")
    _add_common_flags(call_p)
    call_p.add_argument("--method", required=True, help="HTTP method (e.g. GET).")
    call_p.add_argument("--url", required=True, help="Target URL.")
    call_p.add_argument("--body", default=None, help="Request body as JSON text.")
    call_p.add_argument("--requests", required=True, help="Request stream path (file or FIFO, appended).")
    call_p.add_argument("--timeout-sec", type=float, default=None, help="Caller deadline in seconds.")

    watch_p = root_sub.add_parser("watch", help="Serve a request stream and publish responses")
    _add_common_flags(watch_p)
    watch_p.add_argument("--requests", required=True, help="Request stream path, or '-' for stdin.")
    watch_p.add_argument("--base-url", default=None, help="Base URL for relative targets (overrides config).")
    watch_p.add_argument("--max-workers", type=int, default=None, help="Concurrent request handlers (>=1).")
    watch_p.add_argument("--auth-user-env", default=None, help="Env var holding the basic auth user.")
    watch_p.add_argument("--auth-password-env", default=None, help="Env var holding the basic auth password.")

    sweep_p = root_sub.add_parser("sweep", help="Remove orphaned mailbox entries")
    _add_common_flags(sweep_p)
    sweep_p.add_argument("--max-age-sec", type=float, default=None, help="Minimum age in seconds (default: config).")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse 的约定：`--help` 为 0，参数错误为 2
        code = getattr(exc, "code", 2)
        if code is None:
            return EXIT_USAGE
        return int(code)

    logging.basicConfig(
        level=args.log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "config":
        return _handle_config(args)
    if args.command == "call":
        return _handle_call(args)
    if args.command == "watch":
        return _handle_watch(args)
    if args.command == "sweep":
        return _handle_sweep(args)
    return EXIT_USAGE


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
