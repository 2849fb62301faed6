from __future__ import annotations

import io
import json
import threading
import time
from pathlib import Path

import httpx
import pytest

from api_relay.config.loader import ApiRelayHostConfig
from api_relay.core.contracts import RelayRequest, RelayResponse
from api_relay.host.http_performer import HttpPerformer
from api_relay.host.watcher import HostWatcher, PerformResult, Performer
from api_relay.transport.mailbox import Mailbox


class _EchoPerformer:
    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def perform(self, method: str, url: str, body: str) -> PerformResult:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            return PerformResult(result=f"{method} {url} {body}", status_code=200)
        finally:
            with self._lock:
                self.active -= 1


def _line(cid: str, method: str = "GET", url: str = "https://api.example/v1/x", body: str = "") -> str:
    return RelayRequest(correlation_id=cid, method=method, target=url, body=body).to_json() + "\n"


def _read_response(mb: Mailbox, cid: str) -> RelayResponse:
    assert mb.is_ready(cid)
    return RelayResponse.from_json(mb.consume(cid))


def test_echo_performer_satisfies_protocol() -> None:
    assert isinstance(_EchoPerformer(), Performer)


def test_serve_publishes_one_response_per_line(tmp_path: Path) -> None:
    mb = Mailbox(tmp_path / "mb")
    watcher = HostWatcher(mb, _EchoPerformer())
    reader = io.StringIO(_line("a") + "\n" + _line("b", method="POST", body='{"x":1}'))

    assert watcher.serve(reader) == 2
    assert watcher.handled == 2

    assert _read_response(mb, "a").result == "GET https://api.example/v1/x "
    resp_b = _read_response(mb, "b")
    assert resp_b.result == 'POST https://api.example/v1/x {"x":1}'
    assert resp_b.status_code == 200
    assert resp_b.error == ""


def test_undecodable_line_is_skipped(tmp_path: Path, caplog) -> None:  # type: ignore[no-untyped-def]
    mb = Mailbox(tmp_path)
    watcher = HostWatcher(mb, _EchoPerformer())

    with caplog.at_level("WARNING", logger="api_relay.host.watcher"):
        assert watcher.handle_line("not json\n") is None
    assert watcher.handle_line("   \n") is None
    assert watcher.handled == 0
    assert mb.pending_ids() == []
    assert any("undecodable" in r.getMessage() for r in caplog.records)


def test_performer_exception_becomes_error_response(tmp_path: Path) -> None:
    class _Boom:
        def perform(self, method: str, url: str, body: str) -> PerformResult:
            raise RuntimeError("upstream exploded")

    mb = Mailbox(tmp_path)
    assert HostWatcher(mb, _Boom()).handle_line(_line("c")) == "c"

    resp = _read_response(mb, "c")
    assert resp.error == "upstream exploded"
    assert resp.result == ""


def test_error_result_drops_partial_payload() -> None:
    resp = PerformResult(result="partial", status_code=500, error="boom").to_response()
    assert resp.result == ""
    assert resp.error == "boom"
    assert resp.status_code == 500


def test_serve_with_workers_handles_lines_concurrently(tmp_path: Path) -> None:
    mb = Mailbox(tmp_path)
    performer = _EchoPerformer(delay=0.05)
    watcher = HostWatcher(mb, performer, max_workers=4)
    reader = io.StringIO("".join(_line(f"id-{i}") for i in range(8)))

    assert watcher.serve(reader) == 8
    assert mb.pending_ids() == sorted(f"id-{i}" for i in range(8))
    assert performer.max_active > 1


def test_max_workers_must_be_positive(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        HostWatcher(Mailbox(tmp_path), _EchoPerformer(), max_workers=0)


def test_http_performer_success_and_error_bodies() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/v1/ok":
            return httpx.Response(200, text='{"ok":true}')
        if request.url.path == "/v1/empty-error":
            return httpx.Response(503)
        return httpx.Response(404, json={"is_fatal": True, "error_code": "not_found"})

    cfg = ApiRelayHostConfig(base_url="https://api.example", http_timeout_sec=5)
    with HttpPerformer.from_config(cfg, transport=httpx.MockTransport(handler)) as performer:
        ok = performer.perform("POST", "/v1/ok", '{"a":1}')
        missing = performer.perform("GET", "/v1/missing", '{"ignored":true}')
        empty = performer.perform("DELETE", "/v1/empty-error", "")

    assert ok == PerformResult(result='{"ok":true}', status_code=200)
    assert seen[0].method == "POST"
    assert seen[0].content == b'{"a":1}'
    assert seen[0].headers["content-type"].startswith("application/json")
    assert seen[1].content == b""

    assert missing.status_code == 404
    assert json.loads(missing.error)["error_code"] == "not_found"

    assert empty.status_code == 503
    assert empty.error == "503 Service Unavailable"


def test_http_performer_transport_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with HttpPerformer(transport=httpx.MockTransport(handler)) as performer:
        out = performer.perform("GET", "https://api.example/v1/x", "")

    assert out.status_code == 0
    assert out.error.startswith("ConnectError:")
    assert "connection refused" in out.error


def test_http_performer_with_watcher_round_trip(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=str(request.url))

    mb = Mailbox(tmp_path)
    with HttpPerformer(transport=httpx.MockTransport(handler)) as performer:
        HostWatcher(mb, performer).handle_line(_line("r", url='https://api.example/v1/x?{"a":1}'))

    resp = _read_response(mb, "r")
    assert resp.status_code == 200
    assert resp.result.startswith("https://api.example/v1/x?")


def test_publish_failure_is_logged_and_serving_continues(tmp_path: Path, caplog) -> None:  # type: ignore[no-untyped-def]
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    watcher = HostWatcher(Mailbox(blocker / "mb"), _EchoPerformer())

    with caplog.at_level("WARNING", logger="api_relay.host.watcher"):
        assert watcher.handle_line(_line("lost")) is None
    assert watcher.handled == 0
    assert any("failed to publish" in r.getMessage() for r in caplog.records)


@pytest.mark.parametrize("bad_id", ["../escape", ".x", "x.done"])
def test_unsafe_correlation_id_is_skipped_without_performing(tmp_path: Path, bad_id: str, caplog) -> None:  # type: ignore[no-untyped-def]
    calls: list[str] = []

    class _Recording:
        def perform(self, method: str, url: str, body: str) -> PerformResult:
            calls.append(url)
            return PerformResult(result="ok", status_code=200)

    mb = Mailbox(tmp_path / "mb")
    watcher = HostWatcher(mb, _Recording())

    with caplog.at_level("WARNING", logger="api_relay.host.watcher"):
        handled = watcher.serve([_line(bad_id, url="https://api.example/v1/bad"), _line("good-1")])

    assert handled == 1
    assert calls == ["https://api.example/v1/x"]
    assert mb.pending_ids() == ["good-1"]
    assert not (tmp_path / "escape").exists()
    assert any("undecodable" in r.getMessage() for r in caplog.records)


def test_serve_with_workers_bounds_lines_in_flight(tmp_path: Path) -> None:
    gate = threading.Event()
    pulled = {"n": 0}

    class _Gated:
        def perform(self, method: str, url: str, body: str) -> PerformResult:
            gate.wait(5)
            return PerformResult(result="ok", status_code=200)

    def _lines():  # type: ignore[no-untyped-def]
        for i in range(20):
            pulled["n"] += 1
            yield _line(f"id-{i}")

    watcher = HostWatcher(Mailbox(tmp_path), _Gated(), max_workers=2)
    result: dict[str, int] = {}
    t = threading.Thread(target=lambda: result.setdefault("handled", watcher.serve(_lines())))
    t.start()
    time.sleep(0.3)
    # 2 个 worker 在途 + 2 个排队，第 5 行读出后阻塞在名额上
    assert pulled["n"] <= 5

    gate.set()
    t.join(timeout=10)
    assert result == {"handled": 20}
    assert pulled["n"] == 20


def test_serve_with_workers_logs_handler_failure_and_continues(tmp_path: Path, caplog) -> None:  # type: ignore[no-untyped-def]
    class _FlakyWatcher(HostWatcher):
        def handle_line(self, line: str):  # type: ignore[no-untyped-def]
            if "boom" in line:
                raise RuntimeError("handler exploded")
            return super().handle_line(line)

    mb = Mailbox(tmp_path)
    watcher = _FlakyWatcher(mb, _EchoPerformer(), max_workers=2)

    with caplog.at_level("ERROR", logger="api_relay.host.watcher"):
        handled = watcher.serve([_line("a"), _line("boom"), _line("b")])

    assert handled == 2
    assert mb.pending_ids() == ["a", "b"]
    assert any("handler exploded" in r.getMessage() for r in caplog.records)
