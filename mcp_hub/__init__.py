"""
MCP Hub: supervised stdio tool servers driven by an iterative plan engine.

Architecture:
    ┌──────────────┐             ┌──────────────┐     stdio      ┌──────────────┐
    │  PlanEngine  │ ──────────▶ │ ProcessPool  │ ────────────── │  Tool Server │
    │ (per request)│  execute()  │ (long-lived) │    JSON-RPC    │ (subprocess) │
    └──────┬───────┘             └──────────────┘     pipes      └──────────────┘
           │ generate()
    ┌──────┴───────┐
    │ ModelBackend │  LangChain chat model (OpenAI-compatible endpoint)
    └──────────────┘

Each tool server is a standalone process that speaks MCP (JSON-RPC 2.0,
one message per line) over stdin/stdout. The ProcessPool launches them,
runs the handshake, serializes calls into each one and respawns the ones
that die. The PlanEngine turns a request into a bounded sequence of tool
calls and streams its progress and conclusion to a Sink.

The StdioToolServer base class lets tool servers be written in a few lines.
"""

from mcp_hub.config import HubConfig, ServerConfig, load_config
from mcp_hub.errors import HubError
from mcp_hub.manager import ProcessPool
from mcp_hub.registry import ToolDescriptor, ToolRegistry
from mcp_hub.server import StdioToolServer, ToolHandler
from mcp_hub.sink import BufferedSink, ConsoleSink, Sink


# The engine pulls in langchain; lazy import keeps tool servers light
def build_hub(*args, **kwargs):
    from mcp_hub.cli import build_hub as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "BufferedSink",
    "ConsoleSink",
    "HubConfig",
    "HubError",
    "ProcessPool",
    "ServerConfig",
    "Sink",
    "StdioToolServer",
    "ToolDescriptor",
    "ToolHandler",
    "ToolRegistry",
    "build_hub",
    "load_config",
]
