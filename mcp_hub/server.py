"""
MCP tool server base class.

A tool server is a standalone process that:
1. Reads JSON-RPC requests from stdin
2. Answers the MCP handshake (initialize, tools/list)
3. Dispatches tools/call to registered ToolHandlers
4. Writes JSON-RPC responses to stdout

To create a tool server:

    from mcp_hub.server import StdioToolServer, ToolHandler

    class MyTool(ToolHandler):
        name = "my_tool"
        description = "Does something useful"
        parameters = {
            "input": {"type": "string", "description": "The input"},
        }
        required = ["input"]

        def handle(self, params: dict) -> dict:
            return {"result": f"processed: {params['input']}"}

    if __name__ == "__main__":
        server = StdioToolServer("my-server")
        server.register(MyTool())
        server.run()

Passing --ready-delay SECONDS makes the server announce readiness on
stderr only after that delay; tools/list waits for it.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import time
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-06-18"


class ToolHandler(ABC):
    """
    Base class for a tool implementation.

    Subclasses define what a tool does. The server handles transport.
    """

    # Subclasses must set these
    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] = []
    read_only: bool = False

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """
        Execute the tool with the given parameters.

        Args:
            params: Dict of parameter name → value

        Returns:
            The tool result. Strings are sent as text, anything else as JSON.

        Raises:
            Any exception becomes an isError result.
        """
        ...

    def get_schema(self) -> dict:
        """Return the tool schema for tools/list."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": {
                "type": "object",
                "properties": self.parameters,
                "required": list(self.required),
            },
            "annotations": {"readOnlyHint": self.read_only},
        }


class StdioToolServer:
    """
    JSON-RPC tool server that communicates via stdin/stdout.

    Protocol:
    - One JSON-RPC message per line
    - Supports methods:
        - "initialize" → protocol version, capabilities, server info
        - "tools/list" → registered tool schemas
        - "tools/call" → calls a tool by name with arguments
        - "ping"       → health check
    - Notifications (no id) are accepted and never answered
    """

    def __init__(self, name: str = "tool-server", version: str = "1.0.0"):
        self.name = name
        self.version = version
        self._handlers: dict[str, ToolHandler] = {}
        self._ready = threading.Event()
        self._ready.set()

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    def run(self, argv: list[str] | None = None) -> None:
        """
        Main loop: read requests from stdin, dispatch, write responses to stdout.

        This blocks until stdin is closed (parent process terminates).
        """
        parser = argparse.ArgumentParser(description=f"{self.name} MCP tool server")
        parser.add_argument(
            "--ready-delay", type=float, default=0.0,
            help="Seconds to wait before announcing readiness on stderr",
        )
        args = parser.parse_args(argv)

        if args.ready_delay > 0:
            self._ready.clear()
            threading.Thread(target=self._announce_ready, args=(args.ready_delay,), daemon=True).start()
        else:
            self._announce_ready(0)

        logger.info(f"Tool server starting with {len(self._handlers)} tools: "
                    f"{list(self._handlers.keys())}")

        for line in sys.stdin:
            line = line.strip()
            if not line:
                continue

            try:
                request = json.loads(line)
            except json.JSONDecodeError as e:
                self._write_error(None, -32700, f"Parse error: {e}")
                continue

            if not isinstance(request, dict):
                self._write_error(None, -32600, "Invalid request")
                continue

            if "id" not in request:
                continue  # notification

            request_id = request.get("id")
            method = request.get("method", "")
            params = request.get("params") or {}

            try:
                result = self._dispatch(method, params)
                self._write_result(request_id, result)
            except LookupError as e:
                code = -32602 if method == "tools/call" else -32601
                self._write_error(request_id, code, str(e))
            except Exception as e:
                self._write_error(request_id, -32603, str(e))

    def _announce_ready(self, delay: float) -> None:
        if delay:
            time.sleep(delay)
        self._ready.set()
        sys.stderr.write(f"{self.name} ready\n")
        sys.stderr.flush()

    def _dispatch(self, method: str, params: dict) -> Any:
        """Route a method call to the appropriate handler."""

        if method == "initialize":
            return {
                "protocolVersion": params.get("protocolVersion", PROTOCOL_VERSION),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": self.name, "version": self.version},
            }

        if method == "ping":
            return {}

        if method == "tools/list":
            self._ready.wait()
            return {"tools": [h.get_schema() for h in self._handlers.values()]}

        if method == "tools/call":
            tool_name = params.get("name", "")
            handler = self._handlers.get(tool_name)
            if not handler:
                raise LookupError(
                    f"Unknown tool: '{tool_name}'. "
                    f"Available: {list(self._handlers.keys())}"
                )
            return self._call(handler, params.get("arguments") or {})

        raise LookupError(f"Unknown method: '{method}'")

    def _call(self, handler: ToolHandler, arguments: dict) -> dict:
        try:
            value = handler.handle(arguments)
        except Exception as e:
            logger.error(f"Tool {handler.name} failed: {e}")
            return {"content": [{"type": "text", "text": str(e)}], "isError": True}

        text = value if isinstance(value, str) else json.dumps(value)
        result: dict[str, Any] = {"content": [{"type": "text", "text": text}], "isError": False}
        if not isinstance(value, str):
            result["structuredContent"] = {"result": value}
        return result

    def _write_result(self, request_id: Any, result: Any) -> None:
        """Write a JSON-RPC success response to stdout."""
        response = json.dumps({
            "jsonrpc": "2.0",
            "id": request_id,
            "result": result,
        })
        sys.stdout.write(response + "\n")
        sys.stdout.flush()

    def _write_error(self, request_id: Any, code: int, message: str) -> None:
        """Write a JSON-RPC error response to stdout."""
        response = json.dumps({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": code, "message": message},
        })
        sys.stdout.write(response + "\n")
        sys.stdout.flush()
