"""
Echo MCP tool server: minimal reference implementation.

Use this as a template for building new tool servers. Its tools echo
their input back, which is all the transport and pool need to be
exercised; slow_echo sleeps first, for timeout handling.

Launch:
    python -m mcp_hub.servers.echo [--ready-delay SECONDS]

Test:
    echo '{"jsonrpc":"2.0","method":"ping","params":{},"id":1}' | python -m mcp_hub.servers.echo
"""

import time

from mcp_hub.server import StdioToolServer, ToolHandler


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input message. Useful for testing."
    parameters = {
        "message": {
            "type": "string",
            "description": "The message to echo back",
        },
    }
    required = ["message"]
    read_only = True

    def handle(self, params: dict) -> dict:
        message = params.get("message", "")
        return {"echoed": message, "length": len(message)}


class SlowEchoTool(ToolHandler):
    name = "slow_echo"
    description = "Echoes back the input message after a delay. Useful for testing timeouts."
    parameters = {
        "message": {"type": "string", "description": "The message to echo back"},
        "delay": {"type": "number", "description": "Seconds to wait before answering"},
    }
    required = ["message"]
    read_only = True

    def handle(self, params: dict) -> str:
        time.sleep(float(params.get("delay", 1.0)))
        return params.get("message", "")


def main() -> None:
    server = StdioToolServer("echo")
    server.register(EchoTool())
    server.register(SlowEchoTool())
    server.run()


if __name__ == "__main__":
    main()
