"""
One supervised tool server subprocess.

A ManagedProcess owns its transport, runs the MCP handshake, keeps the
tool descriptors the server exported, and serializes calls into the
server: tool servers are not assumed to handle pipelined requests, so
only one tools/call is ever in flight per process.

Lifecycle:
    STARTING ──handshake ok──▶ READY ──transport error──▶ DEGRADED
        │                        │
        └──handshake failed──────┴──stream closed / stop()──▶ TERMINATED
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from enum import Enum
from typing import Any, Callable

from mcp_hub.config import ServerConfig, ToolGuidance
from mcp_hub.errors import (
    ProcessHandshakeFailed,
    ToolExecutionFailed,
    TransportClosed,
    TransportError,
)
from mcp_hub.registry import ToolDescriptor
from mcp_hub.transport import StdioTransport, Transport

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-06-18"
CLIENT_INFO = {"name": "mcp-hub", "version": "1.0.0"}

TransportFactory = Callable[..., Transport]


class ProcessState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    TERMINATED = "terminated"


class ManagedProcess:
    """
    A tool server process plus its handshake state and exported tools.

    Args:
        config: How to launch the server.
        generation: Respawn counter, used to build a readable id.
        guidance: Tool hints/classes applied to the exported descriptors.
        call_timeout: Default per-call timeout for tools/call.
        init_timeout: Timeout for the initialize and tools/list calls.
        readiness_timeout: Bound on waiting for config.ready_pattern.
        transport_factory: Builds the transport; StdioTransport by default.
    """

    def __init__(
        self,
        config: ServerConfig,
        generation: int = 1,
        guidance: ToolGuidance | None = None,
        call_timeout: float = 30.0,
        init_timeout: float = 60.0,
        readiness_timeout: float = 300.0,
        transport_factory: TransportFactory | None = None,
    ):
        self.config = config
        self.id = f"{config.name}#{generation}"
        self.guidance = guidance or ToolGuidance()
        self.call_timeout = call_timeout
        self.init_timeout = init_timeout
        self.readiness_timeout = readiness_timeout
        self.state = ProcessState.STARTING
        self.exported_tools: list[ToolDescriptor] = []
        self.server_info: dict = {}

        self._lock = threading.Lock()
        self._ready_event = threading.Event()
        self._ready_pattern = re.compile(config.ready_pattern) if config.ready_pattern else None

        factory = transport_factory or StdioTransport
        self.transport: Transport = factory(
            config.command,
            env=config.env,
            cwd=config.cwd,
            name=config.name,
            stderr_callback=self._on_stderr,
            default_timeout=call_timeout,
        )
        self.transport.add_close_listener(self._on_transport_closed)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_ready(self) -> bool:
        return self.state == ProcessState.READY and self.transport.is_alive()

    def start(self) -> list[ToolDescriptor]:
        """Spawn the server and run the handshake. Returns exported tools."""
        self.state = ProcessState.STARTING
        try:
            self.transport.start()
            self._handshake()
        except (TransportError, ProcessHandshakeFailed) as e:
            self.state = ProcessState.TERMINATED
            self.exported_tools = []
            self.transport.stop()
            if isinstance(e, ProcessHandshakeFailed):
                raise
            raise ProcessHandshakeFailed(self.name, str(e)) from e

        self.state = ProcessState.READY
        logger.info(
            f"{self.id} ready: tools={[t.name for t in self.exported_tools]}"
        )
        return self.exported_tools

    def _handshake(self) -> None:
        response = self.transport.call(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "clientInfo": CLIENT_INFO,
            },
            timeout=self.init_timeout,
        )
        if response.is_error:
            raise ProcessHandshakeFailed(self.name, f"initialize rejected: {response.error_message}")
        self.server_info = (response.result or {}).get("serverInfo", {}) if isinstance(
            response.result, dict
        ) else {}
        logger.debug(f"{self.id} initialized: {self.server_info}")

        self.transport.notify("notifications/initialized", {})

        if self._ready_pattern is not None:
            logger.info(f"{self.id} waiting up to {self.readiness_timeout:.0f}s for readiness signal")
            deadline = time.monotonic() + self.readiness_timeout
            while not self._ready_event.wait(timeout=0.5):
                if not self.transport.is_alive():
                    raise ProcessHandshakeFailed(self.name, "exited before signalling readiness")
                if time.monotonic() >= deadline:
                    raise ProcessHandshakeFailed(self.name, "timed out waiting for readiness signal")

        response = self.transport.call("tools/list", {}, timeout=self.init_timeout)
        if response.is_error:
            raise ProcessHandshakeFailed(self.name, f"tools/list failed: {response.error_message}")

        result = response.result
        schemas = result.get("tools", []) if isinstance(result, dict) else (result or [])
        self.exported_tools = [
            ToolDescriptor.from_schema(schema, server=self.name, guidance=self.guidance)
            for schema in schemas
            if isinstance(schema, dict) and schema.get("name")
        ]

    def _on_stderr(self, line: str) -> None:
        if self._ready_pattern is not None and self._ready_pattern.search(line):
            if not self._ready_event.is_set():
                logger.info(f"{self.id} readiness signal received")
            self._ready_event.set()

    def _on_transport_closed(self) -> None:
        # A broken stream to a process that is still running is DEGRADED;
        # either way the pool will not route calls here again.
        state = ProcessState.DEGRADED if self.transport.process_running() else ProcessState.TERMINATED
        if self.state not in (ProcessState.TERMINATED, state):
            logger.warning(f"{self.id} transport closed; marking {state.value}")
            self.state = state

    def call_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        timeout: float | None = None,
    ) -> str:
        """
        Run one tools/call, holding the process lock for its whole duration.

        Raises:
            TransportTimeout: no reply in time; the process stays READY.
            TransportClosed: the process died; it is marked TERMINATED.
            ToolExecutionFailed: the server reported an error.
        """
        with self._lock:
            if not self.is_ready:
                raise TransportClosed(f"{self.id} is {self.state.value}, not ready")
            try:
                response = self.transport.call(
                    "tools/call",
                    {"name": tool_name, "arguments": arguments},
                    timeout=timeout if timeout is not None else self.call_timeout,
                )
            except TransportClosed:
                self._on_transport_closed()
                raise

        if response.is_error:
            raise ToolExecutionFailed(
                f"Tool call failed ({self.name}/{tool_name}): {response.error_message}"
            )
        return extract_result_text(tool_name, response.result)

    def stop(self) -> None:
        self.state = ProcessState.TERMINATED
        self.transport.stop()
        self.exported_tools = []


def extract_result_text(tool_name: str, result: Any) -> str:
    """
    Pull the useful payload out of an MCP tools/call result.

    Raises ToolExecutionFailed when the server flagged the result with isError.
    """
    if not isinstance(result, dict):
        if result is None:
            return "Tool executed successfully"
        return result if isinstance(result, str) else json.dumps(result)

    text = None
    structured = result.get("structuredContent")
    if isinstance(structured, dict) and structured.get("result") is not None:
        value = structured["result"]
        text = value if isinstance(value, str) else json.dumps(value)
    else:
        content = result.get("content")
        if isinstance(content, list) and content:
            first = content[0]
            if isinstance(first, dict) and first.get("text") is not None:
                text = first["text"]
            else:
                text = json.dumps(content)
    if text is None:
        text = json.dumps(result)

    if result.get("isError"):
        raise ToolExecutionFailed(f"Tool '{tool_name}' reported an error: {text}")
    return text
