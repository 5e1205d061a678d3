"""
Transport layer for MCP tool communication.

Implements:
  - StdioTransport: JSON-RPC 2.0 over stdin/stdout pipes to a subprocess,
    one message per line.

Responses are demultiplexed by id on a background reader thread, so a
caller blocked in call() is woken by its own response (or its timeout)
regardless of what else the server writes to stdout.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable

from mcp_hub.errors import TransportClosed, TransportTimeout

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT = 30.0


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request. A request without an id is a notification."""
    method: str
    params: dict[str, Any]
    id: int | str | None = None

    @property
    def is_notification(self) -> bool:
        return self.id is None

    def to_json(self) -> str:
        message: dict[str, Any] = {
            "jsonrpc": "2.0",
            "method": self.method,
            "params": self.params,
        }
        if self.id is not None:
            message["id"] = self.id
        return json.dumps(message)


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @classmethod
    def from_dict(cls, parsed: dict) -> "JsonRpcResponse":
        return cls(
            id=parsed.get("id"),
            result=parsed.get("result"),
            error=parsed.get("error"),
        )

    @classmethod
    def from_json(cls, data: str) -> "JsonRpcResponse":
        return cls.from_dict(json.loads(data))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def error_message(self) -> str:
        if not self.error:
            return ""
        if isinstance(self.error, dict):
            return str(self.error.get("message", self.error))
        return str(self.error)


@dataclass
class PendingRequest:
    """An outbound call waiting for its response."""
    id: int | str
    method: str
    issued_at: float = field(default_factory=time.monotonic)
    future: Future = field(default_factory=Future)


class Transport(ABC):
    """Abstract transport layer for MCP communication."""

    @abstractmethod
    def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> JsonRpcResponse:
        """Send a request and block until its response or the timeout."""
        ...

    @abstractmethod
    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification. No response is expected."""
        ...

    @abstractmethod
    def start(self) -> None:
        """Start the transport (e.g., launch subprocess)."""
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop the transport (e.g., terminate subprocess)."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the transport is active."""
        ...

    @abstractmethod
    def add_close_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback run once when the stream closes."""
        ...

    def process_running(self) -> bool:
        """Whether the underlying process still runs, even if its stream broke."""
        return self.is_alive()


class StdioTransport(Transport):
    """
    JSON-RPC over stdin/stdout pipes to a subprocess.

    This is MCP's native local transport. The tool server runs as
    a child process. We write JSON-RPC requests to its stdin and
    a reader thread matches lines from its stdout to pending calls.
    """

    def __init__(
        self,
        command: list[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        name: str | None = None,
        stderr_callback: Callable[[str], None] | None = None,
        default_timeout: float = DEFAULT_CALL_TIMEOUT,
    ):
        """
        Args:
            command: Command to launch the tool server process.
                     e.g., ["python", "-m", "mcp_hub.servers.echo"]
            env: Extra environment variables, merged over os.environ.
            cwd: Working directory for the subprocess.
            name: Label used in log messages.
            stderr_callback: Called with every stderr line (stripped).
            default_timeout: Timeout used when call() is given none.
        """
        self.command = command
        self.env = env
        self.cwd = cwd
        self.name = name or command[0]
        self.default_timeout = default_timeout
        self._stderr_callback = stderr_callback
        self._process: subprocess.Popen | None = None
        self._ids = itertools.count(int(time.time() * 1000))
        self._id_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._pending: dict[int | str, PendingRequest] = {}
        self._pending_lock = threading.Lock()
        self._close_listeners: list[Callable[[], None]] = []
        self._close_lock = threading.Lock()
        self._closed = threading.Event()

    def start(self) -> None:
        """Launch the tool server subprocess and its reader threads."""
        if self._process and self._process.poll() is None:
            logger.warning(f"[{self.name}] transport already running, stopping first")
            self.stop()

        env = {**os.environ, **self.env} if self.env else None

        logger.info(f"[{self.name}] starting stdio transport: {' '.join(self.command)}")
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                env=env,
                cwd=self.cwd,
                bufsize=1,  # Line-buffered
            )
        except OSError as e:
            raise TransportClosed(f"[{self.name}] failed to launch: {e}") from e

        self._closed.clear()
        process = self._process
        threading.Thread(
            target=self._read_loop, args=(process,), name=f"{self.name}-stdout", daemon=True
        ).start()
        threading.Thread(
            target=self._stderr_loop, args=(process,), name=f"{self.name}-stderr", daemon=True
        ).start()

    def stop(self) -> None:
        """Terminate the tool server subprocess."""
        process = self._process
        if process is None:
            return
        self._process = None
        if process.poll() is None:
            try:
                if process.stdin:
                    process.stdin.close()
            except OSError:
                pass
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait(timeout=5)
        self._mark_closed(f"[{self.name}] transport stopped")
        logger.info(f"[{self.name}] stdio transport stopped")

    def is_alive(self) -> bool:
        """Check if the subprocess is running and its stream is open."""
        return (
            self._process is not None
            and self._process.poll() is None
            and not self._closed.is_set()
        )

    def process_running(self) -> bool:
        process = self._process
        return process is not None and process.poll() is None

    def add_close_listener(self, callback: Callable[[], None]) -> None:
        self._close_listeners.append(callback)

    def next_id(self) -> int:
        """Generate the next request ID."""
        with self._id_lock:
            return next(self._ids)

    def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> JsonRpcResponse:
        request = JsonRpcRequest(method=method, params=params or {}, id=self.next_id())
        return self.send(request, timeout)

    def send(self, request: JsonRpcRequest, timeout: float | None = None) -> JsonRpcResponse:
        """Send a JSON-RPC request via stdin and wait for the matching response."""
        if request.id is None:
            raise ValueError("send() requires a request id; use notify() for notifications")
        timeout = self.default_timeout if timeout is None else timeout

        pending = PendingRequest(id=request.id, method=request.method)
        with self._pending_lock:
            if request.id in self._pending:
                raise ValueError(f"Request id {request.id} is already in flight")
            self._pending[request.id] = pending

        try:
            self._write(request)
        except TransportClosed:
            self._discard(request.id)
            raise

        try:
            return pending.future.result(timeout=timeout)
        except FutureTimeoutError:
            self._discard(request.id)
            logger.warning(
                f"[{self.name}] '{request.method}' (id={request.id}) timed out after {timeout:.1f}s"
            )
            raise TransportTimeout(request.method, timeout) from None

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        self._write(JsonRpcRequest(method=method, params=params or {}))

    def _write(self, request: JsonRpcRequest) -> None:
        if not self.is_alive():
            raise TransportClosed(f"[{self.name}] transport not running")

        line = request.to_json() + "\n"
        logger.debug(f"[{self.name}] >>> {line[:1000].rstrip()}")
        try:
            with self._write_lock:
                self._process.stdin.write(line)
                self._process.stdin.flush()
        except (OSError, ValueError, AttributeError) as e:
            self._mark_closed(f"[{self.name}] write failed: {e}")
            raise TransportClosed(f"[{self.name}] write failed: {e}") from e

    def _discard(self, request_id: int | str) -> None:
        with self._pending_lock:
            self._pending.pop(request_id, None)

    def _read_loop(self, process: subprocess.Popen) -> None:
        try:
            for line in process.stdout:
                self._handle_line(line)
        except (OSError, ValueError) as e:
            logger.debug(f"[{self.name}] stdout reader stopped: {e}")
        if self._process is not None and process is not self._process:
            return  # a newer process owns this transport now
        code = process.poll()
        self._mark_closed(f"[{self.name}] stream closed (exit code {code})")

    def _stderr_loop(self, process: subprocess.Popen) -> None:
        try:
            for line in process.stderr:
                line = line.strip()
                if not line:
                    continue
                logger.debug(f"[{self.name}] stderr: {line}")
                if self._stderr_callback:
                    self._stderr_callback(line)
        except (OSError, ValueError) as e:
            logger.debug(f"[{self.name}] stderr reader stopped: {e}")

    def _handle_line(self, line: str) -> None:
        """Parse one framed message and resolve the waiter it belongs to."""
        line = line.strip()
        if not line:
            return
        logger.debug(f"[{self.name}] <<< {line[:1000]}")

        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"[{self.name}] skipping malformed frame ({e}): {line[:200]}")
            return
        if not isinstance(message, dict):
            logger.warning(f"[{self.name}] skipping non-object frame: {line[:200]}")
            return

        if "method" in message:
            # Server-initiated notification or request; the hub never serves these.
            logger.debug(f"[{self.name}] ignoring server message '{message['method']}'")
            return

        response = JsonRpcResponse.from_dict(message)
        with self._pending_lock:
            pending = self._pending.pop(response.id, None)
        if pending is None:
            logger.warning(f"[{self.name}] dropping response with unmatched id {response.id}")
            return
        pending.future.set_result(response)

    def _mark_closed(self, reason: str) -> None:
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()

        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(TransportClosed(reason))
        if pending:
            logger.warning(f"{reason}; failed {len(pending)} pending request(s)")

        for callback in self._close_listeners:
            try:
                callback()
            except Exception as e:
                logger.error(f"[{self.name}] close listener failed: {e}")
