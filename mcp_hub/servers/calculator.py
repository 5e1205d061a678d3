"""
Calculator MCP tool server.

A small reference server with two tools that take typed arguments.
Runs as a subprocess, communicates via stdin/stdout JSON-RPC.

Launch:
    python -m mcp_hub.servers.calculator [--ready-delay SECONDS]

Test manually:
    echo '{"jsonrpc":"2.0","method":"tools/call","params":{"name":"calculate","arguments":{"expression":"2+2"}},"id":2}' | python -m mcp_hub.servers.calculator
"""

import math

from mcp_hub.server import StdioToolServer, ToolHandler


class CalculateTool(ToolHandler):
    name = "calculate"
    description = "Evaluate a mathematical expression. Supports +, -, *, /, **, sqrt(), log(), sin(), cos(), pi, e."
    parameters = {
        "expression": {
            "type": "string",
            "description": "Mathematical expression to evaluate (e.g., 'sqrt(2) * pi / 3')",
        },
    }
    required = ["expression"]
    read_only = True

    # Allowed names in eval scope (safe math only)
    _safe_names = {
        "sqrt": math.sqrt,
        "log": math.log,
        "log10": math.log10,
        "sin": math.sin,
        "cos": math.cos,
        "tan": math.tan,
        "abs": abs,
        "round": round,
        "pi": math.pi,
        "e": math.e,
        "inf": math.inf,
    }

    def handle(self, params: dict) -> dict:
        expression = params.get("expression", "")
        if not expression:
            raise ValueError("No expression provided")
        if "__" in expression:
            raise ValueError("Dunder names are not allowed")
        result = eval(expression, {"__builtins__": {}}, self._safe_names)
        return {"expression": expression, "result": result}


class ConvertUnitsTool(ToolHandler):
    name = "convert_units"
    description = "Convert between common units (length, weight, temperature)."
    parameters = {
        "value": {"type": "number", "description": "The value to convert"},
        "from_unit": {"type": "string", "description": "Source unit (e.g., 'km', 'lb', 'celsius')"},
        "to_unit": {"type": "string", "description": "Target unit (e.g., 'miles', 'kg', 'fahrenheit')"},
    }
    required = ["value", "from_unit", "to_unit"]

    _conversions = {
        ("km", "miles"): lambda v: v * 0.621371,
        ("miles", "km"): lambda v: v * 1.60934,
        ("kg", "lb"): lambda v: v * 2.20462,
        ("lb", "kg"): lambda v: v * 0.453592,
        ("celsius", "fahrenheit"): lambda v: v * 9 / 5 + 32,
        ("fahrenheit", "celsius"): lambda v: (v - 32) * 5 / 9,
        ("m", "ft"): lambda v: v * 3.28084,
        ("ft", "m"): lambda v: v * 0.3048,
    }

    def handle(self, params: dict) -> dict:
        value = params["value"]
        from_unit = params.get("from_unit", "").lower()
        to_unit = params.get("to_unit", "").lower()

        converter = self._conversions.get((from_unit, to_unit))
        if not converter:
            available = [f"{f} -> {t}" for f, t in self._conversions]
            raise ValueError(f"Unknown conversion: {from_unit} -> {to_unit}. Available: {available}")

        return {"value": value, "from": from_unit, "to": to_unit, "result": converter(value)}


def main() -> None:
    server = StdioToolServer("calculator")
    server.register(CalculateTool())
    server.register(ConvertUnitsTool())
    server.run()


if __name__ == "__main__":
    main()
