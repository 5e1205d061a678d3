"""
MCP Hub: command-line front end and composition root.

build_hub() wires the long-lived pieces (process pool, registry, model
backend, selector, plan engine) once; every request then runs through
hub.engine.run().

Usage:
    # List the tools the configured servers export
    python -m mcp_hub --list

    # Run one plan and stream it to the terminal
    python -m mcp_hub --task "What is 2 ** 10 in kilometres per mile?"

    # Use a config file and prompt overrides, only start one server
    python -m mcp_hub --config hub.json --prompts prompts.json --servers calculator --task "..."
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Callable

from mcp_hub.builtins import BuiltinTools
from mcp_hub.config import HubConfig, ServerConfig, load_config
from mcp_hub.context import project_snapshot
from mcp_hub.llm import ModelBackend
from mcp_hub.manager import ProcessPool
from mcp_hub.plan import PlanEngine
from mcp_hub.process import TransportFactory
from mcp_hub.prompts import PromptTemplates
from mcp_hub.registry import ToolDescriptor, ToolRegistry
from mcp_hub.selector import Approver, ToolSelector
from mcp_hub.sink import ConsoleSink

logger = logging.getLogger(__name__)


# ============================================================
# DEFAULT MCP SERVERS
# ============================================================
# Used when the configuration defines no servers of its own.

MCP_SERVERS = {
    "echo": {
        "command": [sys.executable, "-m", "mcp_hub.servers.echo"],
    },
    "calculator": {
        "command": [sys.executable, "-m", "mcp_hub.servers.calculator"],
    },
}


def default_servers() -> list[ServerConfig]:
    return [ServerConfig(name=name, **spec) for name, spec in MCP_SERVERS.items()]


@dataclass
class Hub:
    """Everything a request needs, built once per process."""
    config: HubConfig
    pool: ProcessPool
    registry: ToolRegistry
    backend: ModelBackend
    selector: ToolSelector
    engine: PlanEngine

    def shutdown(self) -> None:
        self.pool.stop_all()


def build_hub(
    config: HubConfig,
    backend: ModelBackend | None = None,
    approver: Approver | None = None,
    transport_factory: TransportFactory | None = None,
) -> Hub:
    """
    Compose a Hub from configuration.

    Args:
        config: Validated hub configuration.
        backend: Model backend; built from config.model when None.
        approver: Approval callback for confirm-class tools.
        transport_factory: Transport override, passed through to the pool.
    """
    pool = ProcessPool(
        guidance=config.guidance,
        call_timeout=config.call_timeout,
        init_timeout=config.init_timeout,
        readiness_timeout=config.readiness_timeout,
        retry_backoff=config.retry_backoff,
        transport_factory=transport_factory,
    )
    for server in config.servers or default_servers():
        pool.register_server(server)

    builtins = BuiltinTools(config.project_root) if config.builtin_tools else None
    registry = ToolRegistry(
        pool=pool,
        guidance=config.guidance,
        builtins=builtins.descriptors() if builtins else None,
    )
    backend = backend or ModelBackend.from_config(config.model)
    prompts = PromptTemplates.load(config.prompts_file)
    selector = ToolSelector(backend, registry, prompts=prompts, approver=approver)
    engine = PlanEngine(
        backend,
        selector,
        pool,
        registry,
        prompts=prompts,
        settings=config.plan,
        context_provider=lambda: project_snapshot(config.project_root),
        builtins=builtins,
    )
    return Hub(config, pool, registry, backend, selector, engine)


def console_approver(descriptor: ToolDescriptor, args: dict) -> bool:
    """Ask on the terminal before running a confirm-class tool."""
    answer = input(f"\nRun {descriptor.server}/{descriptor.name} with {json.dumps(args)}? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def auto_approver(descriptor: ToolDescriptor, args: dict) -> bool:
    return True


def print_tools(registry: ToolRegistry) -> None:
    tools = registry.tools(include_blacklisted=True)
    print(f"\nAvailable tools ({len(tools)}):\n")
    for tool in tools:
        flag = " (blacklisted)" if tool.name in registry.guidance.blacklist else ""
        print(
            f"  {tool.name:<20} [{tool.server}] tier={tool.preferred_tier.value:<4} "
            f"safety={tool.safety_class.value:<7} {tool.summary}{flag}"
        )
    print()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Plan and run tool calls against MCP tool servers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m mcp_hub --list
  python -m mcp_hub --task "Convert 42 km to miles"
  python -m mcp_hub --config hub.json --servers calculator --task "What is sqrt(2) * pi?"
        """,
    )
    parser.add_argument("--config", "-c", type=str, default=None, help="JSON configuration file")
    parser.add_argument("--prompts", "-p", type=str, default=None, help="JSON prompt overrides")
    parser.add_argument("--list", action="store_true", help="Start the servers, list their tools and exit")
    parser.add_argument("--task", type=str, help="Request to plan and run")
    parser.add_argument("--servers", type=str, nargs="*", default=None, help="Which servers to start (default: all)")
    parser.add_argument("--max-steps", type=int, default=None, help="Cap on completed plan steps")
    parser.add_argument("--auto-approve", action="store_true", help="Run confirm-class tools without asking")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.list and not args.task:
        parser.error("--task is required (or use --list)")

    config = load_config(args.config, args.prompts)
    if args.max_steps is not None:
        config.plan.max_steps = args.max_steps
    if not config.servers:
        config.servers = default_servers()
    if args.servers is not None:
        unknown = set(args.servers) - {s.name for s in config.servers}
        for name in sorted(unknown):
            logger.warning(f"Unknown MCP server: {name}")
        config.servers = [s for s in config.servers if s.name in args.servers]

    approver: Callable = auto_approver if args.auto_approve else console_approver
    hub = build_hub(config, approver=approver)

    # Graceful shutdown on Ctrl+C
    def shutdown(sig, frame):
        print("\nShutting down MCP servers...")
        hub.shutdown()
        sys.exit(0)
    signal.signal(signal.SIGINT, shutdown)

    print("Starting MCP tool servers...")
    hub.pool.start_all()

    try:
        if args.list:
            print_tools(hub.registry)
            return 0
        hub.engine.run(args.task, ConsoleSink())
        return 0
    finally:
        hub.shutdown()
        print("\nMCP servers stopped.")


if __name__ == "__main__":
    sys.exit(main())
