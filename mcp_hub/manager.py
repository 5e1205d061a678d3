"""
Process pool: launches, supervises and routes calls to tool servers.

The pool is the long-lived, process-wide registry of ManagedProcesses,
keyed by logical server name. It is created once by the composition
root and passed by reference into every request's plan engine.

Usage:
    pool = ProcessPool()

    # Register a server (does not start it)
    pool.register_server(ServerConfig(name="echo", command=["python", "-m", "mcp_hub.servers.echo"]))

    # Start everything in parallel (or let execute() start lazily)
    pool.start_all()

    # Call a tool
    text = pool.execute("echo", "echo", {"message": "hi"})

    # Stop everything
    pool.stop_all()
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from mcp_hub.config import ServerConfig, ToolGuidance
from mcp_hub.errors import ProcessHandshakeFailed
from mcp_hub.process import ManagedProcess, ProcessState, TransportFactory
from mcp_hub.registry import ToolDescriptor

logger = logging.getLogger(__name__)


class ProcessPool:
    """
    Manages the lifecycle of MCP tool server processes.

    Responsibilities:
    - Launch tool servers lazily or up front, running the handshake once
    - Serialize calls into each process (calls to different servers
      proceed in parallel)
    - Respawn terminated processes on next use, never retrying a failed call
    - Report per-server readiness for the front end
    """

    def __init__(
        self,
        guidance: ToolGuidance | None = None,
        call_timeout: float = 30.0,
        init_timeout: float = 60.0,
        readiness_timeout: float = 300.0,
        retry_backoff: float = 0.0,
        transport_factory: TransportFactory | None = None,
    ):
        self.guidance = guidance or ToolGuidance()
        self.call_timeout = call_timeout
        self.init_timeout = init_timeout
        self.readiness_timeout = readiness_timeout
        self.retry_backoff = retry_backoff
        self._transport_factory = transport_factory

        self._configs: dict[str, ServerConfig] = {}
        self._processes: dict[str, ManagedProcess] = {}
        self._generations: dict[str, int] = {}
        self._failed_at: dict[str, float] = {}
        self._spawn_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def register_server(self, config: ServerConfig) -> None:
        """Register a tool server (does not start it yet)."""
        with self._lock:
            if config.name in self._configs:
                logger.warning(f"Server {config.name} re-registered; replacing its config")
            self._configs[config.name] = config
            self._spawn_locks.setdefault(config.name, threading.Lock())
        logger.info(f"Registered server: {config.name} ({' '.join(config.command)})")

    def server_names(self) -> list[str]:
        with self._lock:
            return list(self._configs)

    def acquire(self, server_name: str) -> ManagedProcess:
        """
        Return a ready process for the server, spawning and handshaking it
        if there is none (first use, or the previous one terminated).

        Raises:
            ValueError: unknown server name.
            ProcessHandshakeFailed: the spawn or handshake failed, or the
                server is disabled until its retry backoff elapses.
        """
        with self._lock:
            config = self._configs.get(server_name)
            spawn_lock = self._spawn_locks.get(server_name)
        if config is None or spawn_lock is None:
            raise ValueError(f"Unknown server: {server_name}")

        with spawn_lock:
            with self._lock:
                process = self._processes.get(server_name)
            if process is not None and process.is_ready:
                return process

            if process is not None:
                logger.warning(f"{process.id} is {process.state.value}; respawning")
                process.stop()
                with self._lock:
                    self._processes.pop(server_name, None)

            failed_at = self._failed_at.get(server_name)
            if failed_at is not None and time.monotonic() - failed_at < self.retry_backoff:
                raise ProcessHandshakeFailed(server_name, "disabled after a failed handshake; retry later")

            return self._spawn(config)

    def _spawn(self, config: ServerConfig) -> ManagedProcess:
        generation = self._generations.get(config.name, 0) + 1
        self._generations[config.name] = generation

        process = ManagedProcess(
            config,
            generation=generation,
            guidance=self.guidance,
            call_timeout=self.call_timeout,
            init_timeout=self.init_timeout,
            readiness_timeout=self.readiness_timeout,
            transport_factory=self._transport_factory,
        )
        try:
            process.start()
        except ProcessHandshakeFailed:
            self._failed_at[config.name] = time.monotonic()
            raise
        finally:
            # Kept even when terminated so health() can report it.
            with self._lock:
                self._processes[config.name] = process

        self._failed_at.pop(config.name, None)
        return process

    def execute(
        self,
        server_name: str,
        tool_name: str,
        arguments: dict[str, Any],
        timeout: float | None = None,
    ) -> str:
        """
        Call a tool on a specific server.

        Args:
            server_name: Which server to call
            tool_name: Which tool on that server
            arguments: Tool parameters
            timeout: Per-call timeout; the pool default when None

        Returns:
            The tool's result text.

        Raises:
            ProcessHandshakeFailed, TransportTimeout, TransportClosed,
            ToolExecutionFailed. Nothing is retried here.
        """
        process = self.acquire(server_name)
        logger.info(f"Calling {process.id}/{tool_name}")
        started = time.monotonic()
        result = process.call_tool(tool_name, arguments, timeout=timeout)
        logger.info(f"{process.id}/{tool_name} completed in {time.monotonic() - started:.2f}s")
        return result

    def start(self, server_name: str) -> list[ToolDescriptor]:
        """Start a tool server (if needed) and return its tools."""
        return self.acquire(server_name).exported_tools

    def start_all(self) -> dict[str, list[ToolDescriptor]]:
        """Start all enabled servers in parallel. Returns {server: [tools]}."""
        with self._lock:
            names = [name for name, cfg in self._configs.items() if cfg.enabled]
        if not names:
            logger.warning("No tool servers enabled")
            return {}

        logger.info(f"Starting {len(names)} tool server(s) in parallel...")
        results: dict[str, list[ToolDescriptor]] = {}
        with ThreadPoolExecutor(max_workers=len(names)) as executor:
            futures = {name: executor.submit(self.start, name) for name in names}
            for name, future in futures.items():
                try:
                    results[name] = future.result()
                except ProcessHandshakeFailed as e:
                    logger.error(f"Failed to start {name}: {e}")
                    results[name] = []

        ok = sum(1 for tools in results.values() if tools)
        logger.info(f"Tool server startup complete: {ok} with tools, {len(names) - ok} without")
        return results

    def stop(self, server_name: str) -> None:
        """Stop a tool server."""
        with self._lock:
            process = self._processes.pop(server_name, None)
        if process:
            process.stop()
            logger.info(f"Stopped {process.id}")

    def stop_all(self) -> None:
        """Stop all running servers."""
        for server_name in self.server_names():
            self.stop(server_name)

    def ready(self, server_name: str) -> bool:
        """Whether the server has a handshaken, live process right now."""
        with self._lock:
            process = self._processes.get(server_name)
        return process is not None and process.is_ready

    def list_servers(self) -> dict[str, bool]:
        """List all servers and their readiness."""
        return {name: self.ready(name) for name in self.server_names()}

    def state(self, server_name: str) -> ProcessState | None:
        with self._lock:
            process = self._processes.get(server_name)
        return process.state if process else None

    def descriptors(self) -> dict[str, list[ToolDescriptor]]:
        """Exported tools of every ready process, in registration order."""
        with self._lock:
            items = [(name, self._processes.get(name)) for name in self._configs]
        return {
            name: list(process.exported_tools)
            for name, process in items
            if process is not None and process.is_ready
        }

    def list_tools(self, server_name: str) -> list[ToolDescriptor]:
        """List discovered tools for a server."""
        return self.descriptors().get(server_name, [])

    def health(self) -> dict[str, Any]:
        servers = {}
        for name in self.server_names():
            state = self.state(name)
            servers[name] = {
                "ready": self.ready(name),
                "state": state.value if state else "not_started",
                "tools": len(self.list_tools(name)),
            }
        return {
            "ready": any(s["ready"] for s in servers.values()),
            "tool_count": sum(s["tools"] for s in servers.values()),
            "servers": servers,
        }
