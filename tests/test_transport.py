import json
import logging
import sys
import threading

import pytest

from conftest import PROJECT_ROOT, SERVER_ENV
from mcp_hub.errors import TransportClosed, TransportTimeout
from mcp_hub.transport import JsonRpcRequest, JsonRpcResponse, PendingRequest, StdioTransport, Transport


def echo_transport(**kwargs) -> StdioTransport:
    return StdioTransport(
        [sys.executable, "-m", "mcp_hub.servers.echo"],
        env=SERVER_ENV,
        cwd=str(PROJECT_ROOT),
        name="echo",
        **kwargs,
    )


@pytest.fixture
def transport():
    transport = echo_transport(default_timeout=10)
    transport.start()
    yield transport
    transport.stop()


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

def test_notification_has_no_id():
    message = json.loads(JsonRpcRequest("notifications/initialized", {}).to_json())
    assert "id" not in message
    assert message["jsonrpc"] == "2.0"


def test_request_carries_id():
    message = json.loads(JsonRpcRequest("tools/list", {}, id=7).to_json())
    assert message["id"] == 7
    assert message["method"] == "tools/list"


def test_response_error_message():
    response = JsonRpcResponse.from_json('{"jsonrpc":"2.0","id":1,"error":{"code":-32601,"message":"nope"}}')
    assert response.is_error
    assert response.error_message == "nope"


def test_ids_are_unique_and_increasing():
    transport = echo_transport()
    ids = [transport.next_id() for _ in range(500)]
    assert len(set(ids)) == len(ids)
    assert ids == sorted(ids)


def test_ids_unique_across_threads():
    transport = echo_transport()
    ids: list[int] = []
    lock = threading.Lock()

    def take():
        for _ in range(200):
            value = transport.next_id()
            with lock:
                ids.append(value)

    threads = [threading.Thread(target=take) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(set(ids)) == 1000


# ---------------------------------------------------------------------------
# Demultiplexing (no subprocess)
# ---------------------------------------------------------------------------

def test_response_resolves_matching_pending():
    transport = echo_transport()
    pending = PendingRequest(id=5, method="tools/call")
    transport._pending[5] = pending

    transport._handle_line('{"jsonrpc":"2.0","id":5,"result":{"ok":true}}\n')

    assert pending.future.result(timeout=1).result == {"ok": True}
    assert transport._pending == {}


def test_malformed_frame_is_skipped(caplog):
    transport = echo_transport()
    with caplog.at_level(logging.WARNING):
        transport._handle_line("this is not json")
    assert "malformed frame" in caplog.text


def test_unmatched_id_is_dropped(caplog):
    transport = echo_transport()
    transport._pending[1] = PendingRequest(id=1, method="ping")
    with caplog.at_level(logging.WARNING):
        transport._handle_line('{"jsonrpc":"2.0","id":999,"result":{}}')
    assert "unmatched id 999" in caplog.text
    assert not transport._pending[1].future.done()


def test_server_notification_is_ignored():
    transport = echo_transport()
    transport._pending[1] = PendingRequest(id=1, method="ping")
    transport._handle_line('{"jsonrpc":"2.0","method":"notifications/progress","params":{}}')
    assert not transport._pending[1].future.done()


def test_close_fails_every_pending_waiter_once():
    transport = echo_transport()
    closed = []
    transport.add_close_listener(lambda: closed.append(True))
    first = PendingRequest(id=1, method="a")
    second = PendingRequest(id=2, method="b")
    transport._pending.update({1: first, 2: second})

    transport._mark_closed("stream gone")
    transport._mark_closed("stream gone again")

    assert isinstance(first.future.exception(timeout=1), TransportClosed)
    assert isinstance(second.future.exception(timeout=1), TransportClosed)
    assert closed == [True]


def test_call_before_start_raises_closed():
    transport = echo_transport()
    with pytest.raises(TransportClosed):
        transport.call("ping", {}, timeout=1)


# ---------------------------------------------------------------------------
# Against a live server
# ---------------------------------------------------------------------------

def test_call_round_trip(transport):
    response = transport.call(
        "tools/call", {"name": "echo", "arguments": {"message": "hi"}}
    )
    assert not response.is_error
    assert response.result["structuredContent"]["result"]["echoed"] == "hi"


def test_concurrent_calls_all_resolve(transport):
    results = []
    lock = threading.Lock()

    def ping():
        response = transport.call("ping", {})
        with lock:
            results.append(response)

    threads = [threading.Thread(target=ping) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=15)

    assert len(results) == 10
    assert all(not r.is_error for r in results)
    assert transport._pending == {}


def test_timeout_removes_pending_and_keeps_process(transport):
    with pytest.raises(TransportTimeout):
        transport.call(
            "tools/call",
            {"name": "slow_echo", "arguments": {"message": "late", "delay": 1.0}},
            timeout=0.2,
        )
    assert transport._pending == {}
    assert transport.is_alive()

    # The late reply is dropped; the next call still gets its own answer.
    response = transport.call("ping", {}, timeout=10)
    assert not response.is_error


def test_process_exit_rejects_pending_with_closed():
    # Reads the request, then exits without answering.
    transport = StdioTransport(
        [sys.executable, "-c", "import sys; sys.stdin.readline()"],
        name="mute",
    )
    transport.start()
    try:
        with pytest.raises(TransportClosed):
            transport.call("ping", {}, timeout=10)
    finally:
        transport.stop()
    assert not transport.is_alive()


def test_stderr_lines_reach_callback():
    lines = []
    ready = threading.Event()

    def on_stderr(line):
        lines.append(line)
        ready.set()

    transport = echo_transport(stderr_callback=on_stderr)
    transport.start()
    try:
        assert ready.wait(timeout=10)
    finally:
        transport.stop()
    assert "echo ready" in lines


def test_transport_must_accept_close_listeners():
    class NoListeners(Transport):
        def call(self, method, params=None, timeout=None):
            return JsonRpcResponse(id=1, result={})

        def notify(self, method, params=None):
            pass

        def start(self):
            pass

        def stop(self):
            pass

        def is_alive(self):
            return True

    with pytest.raises(TypeError, match="add_close_listener"):
        NoListeners()
