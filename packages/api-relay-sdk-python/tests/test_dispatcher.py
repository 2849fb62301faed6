from __future__ import annotations

import io
import json
import threading
from pathlib import Path
from typing import Callable, List, Tuple

import pytest

from api_relay.config.loader import load_config_dicts
from api_relay.core.call_context import REASON_CANCELLED, REASON_DEADLINE_EXCEEDED, CallContext
from api_relay.core.dispatcher import RelayClient, build_get_target, encode_body
from api_relay.core.errors import ApiError, EncodeError, ProtocolError, RequestTimeoutError, UnknownError, WriteError
from api_relay.host.watcher import HostWatcher, PerformResult
from api_relay.transport.mailbox import Mailbox
from api_relay.transport.request_stream import RequestStream


class _RecordingPerformer:
    """记录收到的调用；按 handler 生成结果。"""

    def __init__(self, handler: Callable[[str, str, str], PerformResult]) -> None:
        self.handler = handler
        self.calls: List[Tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def perform(self, method: str, url: str, body: str) -> PerformResult:
        with self._lock:
            self.calls.append((method, url, body))
        return self.handler(method, url, body)


class _LoopbackWriter(io.StringIO):
    """text writer：每写出一行就在后台线程里交给 HostWatcher 处理（模拟 host 侧）。"""

    def __init__(self, watcher: HostWatcher | None) -> None:
        super().__init__()
        self.watcher = watcher
        self.threads: List[threading.Thread] = []

    def write(self, s: str) -> int:  # type: ignore[override]
        n = super().write(s)
        if self.watcher is not None:
            t = threading.Thread(target=self.watcher.handle_line, args=(s,))
            self.threads.append(t)
            t.start()
        return n

    def lines(self) -> List[dict]:
        return [json.loads(x) for x in self.getvalue().splitlines()]

    def join(self) -> None:
        for t in self.threads:
            t.join()


def _client(
    tmp_path: Path,
    handler: Callable[[str, str, str], PerformResult] | None,
    **kwargs,
) -> Tuple[RelayClient, _LoopbackWriter, _RecordingPerformer | None]:  # type: ignore[no-untyped-def]
    mailbox = Mailbox(tmp_path / "mailbox").ensure()
    performer = _RecordingPerformer(handler) if handler is not None else None
    watcher = HostWatcher(mailbox, performer) if performer is not None else None
    writer = _LoopbackWriter(watcher)
    kwargs.setdefault("poll_interval_ms", 5)
    client = RelayClient(stream=RequestStream(writer), mailbox=mailbox, **kwargs)
    return client, writer, performer


def _ok(payload: str) -> Callable[[str, str, str], PerformResult]:
    return lambda _m, _u, _b: PerformResult(result=payload, status_code=200)


def test_get_appends_raw_serialized_body_to_url(tmp_path: Path) -> None:
    client, writer, performer = _client(tmp_path, _ok('{"ok":true}'))

    out = client.call("GET", "https://api.example/v1/x", {"a": 1})
    writer.join()

    assert out == b'{"ok":true}'
    lines = writer.lines()
    assert len(lines) == 1
    assert lines[0]["url"] == 'https://api.example/v1/x?{"a":1}'
    assert lines[0]["method"] == "GET"
    assert set(lines[0]) == {"uuid", "method", "url", "body"}
    assert performer is not None
    assert performer.calls[0][1] == 'https://api.example/v1/x?{"a":1}'
    assert list((tmp_path / "mailbox").iterdir()) == []


def test_post_sends_body_and_leaves_url_unchanged(tmp_path: Path) -> None:
    client, writer, performer = _client(tmp_path, _ok("created"))

    assert client.post("https://api.example/v1/servers", {"name": "web-1"}) == b"created"
    writer.join()

    assert performer is not None
    assert performer.calls == [("POST", "https://api.example/v1/servers", '{"name":"web-1"}')]


def test_get_without_body_keeps_target(tmp_path: Path) -> None:
    client, writer, _ = _client(tmp_path, _ok("[]"))
    assert client.get("https://api.example/v1/zones") == b"[]"
    writer.join()
    assert writer.lines()[0]["url"] == "https://api.example/v1/zones"
    assert writer.lines()[0]["body"] == ""


def test_host_error_string_surfaces_as_unknown_error(tmp_path: Path) -> None:
    client, writer, _ = _client(tmp_path, lambda _m, _u, _b: PerformResult(status_code=404, error="not found"))

    with pytest.raises(UnknownError) as ei:
        client.do("GET", "https://api.example/v1/missing")
    writer.join()

    assert ei.value.raw_error == "not found"
    assert list((tmp_path / "mailbox").iterdir()) == []


def test_host_structured_error_surfaces_as_api_error(tmp_path: Path) -> None:
    body = json.dumps({"is_fatal": True, "error_code": "conflict", "error_msg": "already exists"})
    client, writer, _ = _client(tmp_path, lambda _m, _u, _b: PerformResult(status_code=409, error=body))

    with pytest.raises(ApiError) as ei:
        client.put("https://api.example/v1/servers/1", {"name": "x"})
    writer.join()

    assert ei.value.status_code == 409
    assert ei.value.method == "PUT"
    assert ei.value.body == '{"name":"x"}'
    assert ei.value.response.error_code == "conflict"


def test_timeout_writes_exactly_one_line_and_no_response(tmp_path: Path) -> None:
    client, writer, _ = _client(tmp_path, None, timeout_sec=0.1)

    with pytest.raises(RequestTimeoutError) as ei:
        client.delete("https://api.example/v1/servers/1")

    assert ei.value.reason == REASON_DEADLINE_EXCEEDED
    lines = writer.lines()
    assert len(lines) == 1
    assert lines[0]["uuid"] == ei.value.correlation_id
    assert list((tmp_path / "mailbox").iterdir()) == []


def test_caller_deadline_tighter_than_client_budget(tmp_path: Path) -> None:
    client, _writer, _ = _client(tmp_path, None, timeout_sec=30)
    with pytest.raises(RequestTimeoutError):
        client.call("GET", "https://api.example/v1/x", ctx=CallContext.with_deadline_in(0.05))


def test_caller_cancel_stops_waiting(tmp_path: Path) -> None:
    client, _writer, _ = _client(tmp_path, None, timeout_sec=30)
    ctx = CallContext.background()
    timer = threading.Timer(0.05, ctx.cancel)
    timer.start()
    try:
        with pytest.raises(RequestTimeoutError) as ei:
            client.call("GET", "https://api.example/v1/x", ctx=ctx)
    finally:
        timer.cancel()
    assert ei.value.reason == REASON_CANCELLED


def test_concurrent_calls_use_distinct_ids_and_get_their_own_responses(tmp_path: Path) -> None:
    client, writer, _ = _client(tmp_path, lambda _m, url, _b: PerformResult(result=url, status_code=200))
    n = 16
    results: dict[int, bytes] = {}
    errors: list[BaseException] = []
    lock = threading.Lock()

    def worker(i: int) -> None:
        try:
            out = client.get(f"https://api.example/v1/items/{i}")
        except BaseException as exc:  # pragma: no cover
            with lock:
                errors.append(exc)
            return
        with lock:
            results[i] = out

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    writer.join()

    assert errors == []
    assert results == {i: f"https://api.example/v1/items/{i}".encode("utf-8") for i in range(n)}
    lines = writer.lines()
    assert len(lines) == n
    assert len({x["uuid"] for x in lines}) == n
    assert list((tmp_path / "mailbox").iterdir()) == []


def test_unserializable_body_raises_encode_error_without_writing(tmp_path: Path) -> None:
    client, writer, _ = _client(tmp_path, None)

    with pytest.raises(EncodeError):
        client.post("https://api.example/v1/x", {"bad": object()})
    with pytest.raises(EncodeError):
        client.post("https://api.example/v1/x", {"nan": float("nan")})
    assert writer.getvalue() == ""


def test_write_failure_raises_write_error(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    stream = RequestStream(io.StringIO())
    stream.close()
    client = RelayClient(stream=stream, mailbox=mailbox)

    with pytest.raises(WriteError):
        client.get("https://api.example/v1/x")


def test_build_request_uses_id_factory(tmp_path: Path) -> None:
    ids = iter(["id-1", "id-2"])
    client = RelayClient(stream=RequestStream(io.StringIO()), mailbox=Mailbox(tmp_path), id_factory=lambda: next(ids))

    first = client.build_request("POST", "https://api.example/v1/x", {"a": 1})
    second = client.build_request("POST", "https://api.example/v1/x")

    assert (first.correlation_id, first.body) == ("id-1", '{"a":1}')
    assert (second.correlation_id, second.body) == ("id-2", "")


def test_encoded_query_mode(tmp_path: Path) -> None:
    client = RelayClient(stream=RequestStream(io.StringIO()), mailbox=Mailbox(tmp_path), query_mode="encoded")
    req = client.build_request("GET", "https://api.example/v1/x", {"q": "a b&c", "n": 2})
    assert req.target == "https://api.example/v1/x?q=a+b%26c&n=2"


def test_build_get_target_variants() -> None:
    assert build_get_target("https://h/p", None, "") == "https://h/p"
    assert build_get_target("https://h/p", [1], "[1]", query_mode="encoded") == "https://h/p?%5B1%5D"
    assert (
        build_get_target("https://h/p?x=1", {"f": {"k": 1}}, '{"f":{"k":1}}', query_mode="encoded")
        == "https://h/p?x=1&f=%7B%22k%22%3A1%7D"
    )


def test_encode_body_is_compact_utf8_json() -> None:
    assert encode_body(None) == ""
    assert encode_body({"名": "值", "n": [1, 2]}) == '{"名":"值","n":[1,2]}'


def test_invalid_client_settings_are_rejected(tmp_path: Path) -> None:
    stream = RequestStream(io.StringIO())
    with pytest.raises(ValueError):
        RelayClient(stream=stream, mailbox=Mailbox(tmp_path), timeout_sec=0)
    with pytest.raises(ValueError):
        RelayClient(stream=stream, mailbox=Mailbox(tmp_path), query_mode="bogus")  # type: ignore[arg-type]


def test_from_config_applies_client_and_mailbox_settings(tmp_path: Path) -> None:
    cfg = load_config_dicts(
        [
            {
                "client": {"timeout_sec": 5, "poll_interval_ms": 20, "query_mode": "encoded"},
                "mailbox": {"dir": str(tmp_path / "from-cfg"), "marker_suffix": ".ready"},
            }
        ]
    )
    stream = RequestStream(io.StringIO())

    client = RelayClient.from_config(cfg, stream=stream)
    assert client.mailbox.directory == tmp_path / "from-cfg"
    assert client.mailbox.marker_suffix == ".ready"

    override = RelayClient.from_config(cfg, stream=stream, mailbox_dir=tmp_path / "override")
    assert override.mailbox.directory == tmp_path / "override"


def test_truncated_response_entry_raises_protocol_error(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path / "mailbox").ensure()

    class _TruncatingHost(io.StringIO):
        """text writer：收到请求行后直接发布一个被截断的 Response envelope。"""

        def write(self, s: str) -> int:  # type: ignore[override]
            cid = json.loads(s)["uuid"]
            threading.Thread(target=mailbox.publish, args=(cid, b'{"result":"{\\"ok\\":tr')).start()
            return super().write(s)

    client = RelayClient(stream=RequestStream(_TruncatingHost()), mailbox=mailbox, poll_interval_ms=5, timeout_sec=5)

    with pytest.raises(ProtocolError) as ei:
        client.get("https://api.example/v1/x")

    assert ei.value.code == "PROTOCOL_ERROR"
    assert list((tmp_path / "mailbox").iterdir()) == []
