"""Reference MCP tool servers, each runnable with python -m."""
