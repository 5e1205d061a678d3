import io
import json
import sys
import threading
import time

import pytest

from conftest import SERVER_ENV, SERVERS_DIR, module_server, PROJECT_ROOT
from mcp_hub.config import ServerConfig, ToolGuidance
from mcp_hub.errors import ProcessHandshakeFailed, ToolExecutionFailed, TransportClosed, TransportTimeout
from mcp_hub.manager import ProcessPool
from mcp_hub.process import ProcessState, extract_result_text
from mcp_hub.registry import ModelTier, SafetyClass
from mcp_hub.transport import StdioTransport


def wait_until(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


class RecordingTransport(StdioTransport):
    """Records tools/call writes and their replies in arrival order."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.events: list[tuple[str, int]] = []
        self._sent: set = set()
        self._events_lock = threading.Lock()

    def _write(self, request):
        if request.method == "tools/call":
            with self._events_lock:
                self._sent.add(request.id)
                self.events.append(("send", request.id))
        super()._write(request)

    def _handle_line(self, line):
        try:
            message_id = json.loads(line).get("id")
        except (ValueError, AttributeError):
            message_id = None
        with self._events_lock:
            if message_id in self._sent:
                self.events.append(("recv", message_id))
        super()._handle_line(line)


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------

def test_handshake_exports_tools(pool, echo_config):
    pool.register_server(echo_config)
    tools = pool.start("echo")

    names = {t.name for t in tools}
    assert names == {"echo", "slow_echo"}
    assert all(t.server == "echo" for t in tools)
    assert pool.ready("echo")
    assert pool.state("echo") == ProcessState.READY


def test_guidance_sets_tier_and_safety(echo_config, calculator_config):
    pool = ProcessPool(guidance=ToolGuidance(fast_tools=["calculate"]), init_timeout=10)
    try:
        pool.register_server(echo_config)
        pool.register_server(calculator_config)
        pool.start_all()
        tools = {t.name: t for ts in pool.descriptors().values() for t in ts}
    finally:
        pool.stop_all()

    assert tools["echo"].safety_class == SafetyClass.AUTO  # readOnlyHint
    assert tools["convert_units"].safety_class == SafetyClass.CONFIRM
    assert tools["calculate"].preferred_tier == ModelTier.FAST
    assert tools["convert_units"].preferred_tier == ModelTier.FULL


def test_ready_pattern_is_awaited(pool):
    pool.register_server(
        module_server("echo", "mcp_hub.servers.echo", "--ready-delay", "0.5", ready_pattern=r"echo ready")
    )
    started = time.monotonic()
    pool.start("echo")
    assert time.monotonic() - started >= 0.5
    assert pool.ready("echo")


def test_readiness_wait_is_bounded():
    pool = ProcessPool(init_timeout=10, readiness_timeout=0.5)
    pool.register_server(
        module_server("echo", "mcp_hub.servers.echo", ready_pattern=r"this never appears")
    )
    try:
        with pytest.raises(ProcessHandshakeFailed, match="readiness"):
            pool.start("echo")
        assert not pool.ready("echo")
        assert pool.state("echo") == ProcessState.TERMINATED
        assert pool.health()["servers"]["echo"]["state"] == "terminated"
    finally:
        pool.stop_all()


def test_unknown_server_raises(pool):
    with pytest.raises(ValueError):
        pool.acquire("nope")


def test_start_all_logs_failures(pool, echo_config, caplog):
    pool.register_server(echo_config)
    pool.register_server(ServerConfig(name="broken", command=[sys.executable, "-c", "import sys; sys.exit(3)"]))

    results = pool.start_all()

    assert results["broken"] == []
    assert {t.name for t in results["echo"]} == {"echo", "slow_echo"}
    assert "Failed to start broken" in caplog.text
    health = pool.health()
    assert health["ready"] is True
    assert health["servers"]["broken"]["ready"] is False
    assert "broken" not in pool.descriptors()


def test_disabled_server_waits_for_backoff():
    pool = ProcessPool(init_timeout=5, retry_backoff=60)
    pool.register_server(ServerConfig(name="broken", command=[sys.executable, "-c", "import sys; sys.exit(3)"]))
    try:
        with pytest.raises(ProcessHandshakeFailed):
            pool.acquire("broken")
        with pytest.raises(ProcessHandshakeFailed, match="retry later"):
            pool.acquire("broken")
    finally:
        pool.stop_all()


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

def test_execute_starts_lazily(pool, echo_config):
    pool.register_server(echo_config)
    assert not pool.ready("echo")

    text = pool.execute("echo", "echo", {"message": "hello"})

    assert json.loads(text) == {"echoed": "hello", "length": 5}
    assert pool.ready("echo")


def test_plain_text_result(pool, echo_config):
    pool.register_server(echo_config)
    assert pool.execute("echo", "slow_echo", {"message": "hi", "delay": 0}) == "hi"


def test_tool_error_raises(pool, calculator_config):
    pool.register_server(calculator_config)
    with pytest.raises(ToolExecutionFailed, match="division by zero"):
        pool.execute("calculator", "calculate", {"expression": "1/0"})
    # The process survives a tool-level error.
    assert pool.ready("calculator")


def test_unknown_tool_on_server_raises(pool, echo_config):
    pool.register_server(echo_config)
    with pytest.raises(ToolExecutionFailed, match="Unknown tool"):
        pool.execute("echo", "nope", {})


def test_timeout_leaves_process_ready(pool, echo_config):
    pool.register_server(echo_config)
    pool.start("echo")
    first_id = pool.acquire("echo").id

    with pytest.raises(TransportTimeout):
        pool.execute("echo", "slow_echo", {"message": "late", "delay": 1.0}, timeout=0.2)

    assert pool.ready("echo")
    text = pool.execute("echo", "echo", {"message": "again"})
    assert json.loads(text)["echoed"] == "again"
    assert pool.acquire("echo").id == first_id


def test_concurrent_execute_is_serialized(echo_config):
    pool = ProcessPool(init_timeout=10, call_timeout=20, transport_factory=RecordingTransport)
    pool.register_server(echo_config)
    try:
        pool.start("echo")
        errors = []

        def call(i):
            try:
                pool.execute("echo", "slow_echo", {"message": f"m{i}", "delay": 0.05})
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=call, args=(i,)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        events = pool.acquire("echo").transport.events
    finally:
        pool.stop_all()

    assert errors == []
    assert len(events) == 12
    # Strict send/recv alternation, each reply matching the send before it.
    for i in range(0, len(events), 2):
        assert events[i][0] == "send"
        assert events[i + 1] == ("recv", events[i][1])


# ---------------------------------------------------------------------------
# Restart
# ---------------------------------------------------------------------------

def test_respawn_after_process_death(pool, echo_config):
    pool.register_server(echo_config)
    process = pool.acquire("echo")
    assert process.id == "echo#1"

    process.transport._process.kill()
    assert wait_until(lambda: not pool.ready("echo"))
    assert process.state in (ProcessState.TERMINATED, ProcessState.DEGRADED)
    assert "echo" not in pool.descriptors()

    text = pool.execute("echo", "echo", {"message": "back"})
    assert json.loads(text)["echoed"] == "back"
    assert pool.acquire("echo").id == "echo#2"


def test_broken_stream_to_live_process_is_degraded(pool, echo_config):
    pool.register_server(echo_config)
    process = pool.acquire("echo")
    child = process.transport._process
    pipe = child.stdin
    broken = io.StringIO()
    broken.close()
    child.stdin = broken
    try:
        with pytest.raises(TransportClosed, match="write failed"):
            pool.execute("echo", "echo", {"message": "lost"})

        assert child.poll() is None
        assert process.state == ProcessState.DEGRADED
        assert pool.state("echo") == ProcessState.DEGRADED
        assert pool.ready("echo") is False

        text = pool.execute("echo", "echo", {"message": "back"})
    finally:
        pipe.close()

    assert json.loads(text)["echoed"] == "back"
    assert pool.acquire("echo").id == "echo#2"
    assert child.wait(timeout=10) is not None


def test_in_flight_call_fails_and_is_not_retried(pool, echo_config):
    pool.register_server(echo_config)
    process = pool.acquire("echo")
    outcome = {}

    def slow_call():
        try:
            pool.execute("echo", "slow_echo", {"message": "x", "delay": 5})
        except Exception as e:
            outcome["error"] = e

    thread = threading.Thread(target=slow_call)
    thread.start()
    time.sleep(0.3)
    process.transport._process.kill()
    thread.join(timeout=10)

    assert isinstance(outcome.get("error"), TransportClosed)
    assert pool.acquire("echo").id == "echo#2"


def test_death_mid_handshake_then_transparent_respawn(pool, tmp_path):
    marker = tmp_path / "flaky.marker"
    pool.register_server(
        ServerConfig(
            name="flaky",
            command=[sys.executable, str(SERVERS_DIR / "flaky_server.py"), str(marker)],
            env=SERVER_ENV,
            cwd=str(PROJECT_ROOT),
        )
    )

    with pytest.raises(ProcessHandshakeFailed):
        pool.execute("flaky", "echo", {"message": "first"})
    assert marker.exists()
    assert pool.state("flaky") == ProcessState.TERMINATED
    assert not pool.ready("flaky")

    text = pool.execute("flaky", "echo", {"message": "second"})
    assert json.loads(text)["echoed"] == "second"
    assert pool.acquire("flaky").id == "flaky#2"


def test_stop_all(pool, echo_config, calculator_config):
    pool.register_server(echo_config)
    pool.register_server(calculator_config)
    pool.start_all()
    assert pool.list_servers() == {"echo": True, "calculator": True}

    pool.stop_all()

    assert pool.list_servers() == {"echo": False, "calculator": False}
    assert pool.descriptors() == {}


# ---------------------------------------------------------------------------
# Result extraction
# ---------------------------------------------------------------------------

def test_extract_prefers_structured_content():
    result = {"content": [{"type": "text", "text": "ignored"}], "structuredContent": {"result": {"a": 1}}}
    assert extract_result_text("t", result) == '{"a": 1}'


def test_extract_falls_back_to_text_then_json():
    assert extract_result_text("t", {"content": [{"type": "text", "text": "hi"}]}) == "hi"
    assert extract_result_text("t", {"value": 3}) == '{"value": 3}'


def test_extract_raises_on_is_error():
    with pytest.raises(ToolExecutionFailed, match="boom"):
        extract_result_text("t", {"content": [{"type": "text", "text": "boom"}], "isError": True})
