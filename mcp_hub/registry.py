"""
Tool registry: one flat, deduplicated view of every tool the hub can run.

Descriptors come from two places: the in-process built-ins and the
tools/list reply of each ready process in the pool. Built-ins register
first, then servers in registration order; on a name collision the first
registration wins and the collision is logged once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from mcp_hub.config import ToolGuidance
from mcp_hub.errors import ArgumentValidationFailed

if TYPE_CHECKING:
    from mcp_hub.manager import ProcessPool

logger = logging.getLogger(__name__)

BUILTIN_SERVER = "builtin"


class SafetyClass(str, Enum):
    AUTO = "auto"
    CONFIRM = "confirm"


class ModelTier(str, Enum):
    FAST = "fast"
    FULL = "full"


@dataclass(frozen=True)
class ToolDescriptor:
    """A callable tool as advertised by its server (or a built-in)."""
    name: str
    description: str
    parameter_schema: dict = field(default_factory=dict, hash=False, compare=False)
    safety_class: SafetyClass = SafetyClass.CONFIRM
    preferred_tier: ModelTier = ModelTier.FULL
    server: str = ""

    @property
    def normalized_name(self) -> str:
        return self.name.replace("-", "_")

    @property
    def summary(self) -> str:
        """First sentence of the description."""
        return self.description.split(".")[0].strip()

    @classmethod
    def from_schema(
        cls,
        schema: dict,
        server: str,
        guidance: ToolGuidance | None = None,
    ) -> "ToolDescriptor":
        """Build a descriptor from one tools/list entry."""
        guidance = guidance or ToolGuidance()
        name = schema["name"]
        parameters = schema.get("inputSchema") or schema.get("parameters") or {
            "type": "object",
            "properties": {},
        }
        annotations = schema.get("annotations") or {}

        if name in guidance.auto_tools or annotations.get("readOnlyHint") is True:
            safety = SafetyClass.AUTO
        else:
            safety = SafetyClass.CONFIRM
        tier = ModelTier.FAST if name in guidance.fast_tools else ModelTier.FULL

        descriptor = cls(
            name=name,
            description=schema.get("description", "") or name,
            parameter_schema=parameters,
            safety_class=safety,
            preferred_tier=tier,
            server=server,
        )
        return apply_hints(descriptor, guidance)


def apply_hints(descriptor: ToolDescriptor, guidance: ToolGuidance) -> ToolDescriptor:
    """Append usage hints to the description and argument hints to parameters."""
    description = descriptor.description
    usage_hint = guidance.usage_hints.get(descriptor.name)
    if usage_hint:
        description = f"{description.rstrip('.')}. {usage_hint}"

    schema = dict(descriptor.parameter_schema)
    properties = dict(schema.get("properties") or {})
    tool_hints = {
        **guidance.argument_hints.get("*", {}),
        **guidance.argument_hints.get(descriptor.name, {}),
    }
    for param, hint in tool_hints.items():
        if param in properties and isinstance(properties[param], dict):
            param_schema = dict(properties[param])
            base = param_schema.get("description", "")
            param_schema["description"] = f"{base}. HINT: {hint}" if base else f"HINT: {hint}"
            properties[param] = param_schema
    if properties:
        schema["properties"] = properties

    return replace(descriptor, description=description, parameter_schema=schema)


class ToolRegistry:
    """
    Merged view over built-in tools and every ready pooled process.

    The registry holds no process state of its own: tools() is recomputed
    from the pool on each call, so servers that die or come back are
    reflected immediately.
    """

    def __init__(
        self,
        pool: "ProcessPool | None" = None,
        guidance: ToolGuidance | None = None,
        builtins: list[ToolDescriptor] | None = None,
    ):
        self._pool = pool
        self.guidance = guidance or ToolGuidance()
        self._builtins = [apply_hints(d, self.guidance) for d in (builtins or [])]
        self._reported_collisions: set[tuple[str, str, str]] = set()

    def tools(self, include_blacklisted: bool = False) -> list[ToolDescriptor]:
        """All unique tools, first registration winning."""
        merged: dict[str, ToolDescriptor] = {}

        sources: list[ToolDescriptor] = list(self._builtins)
        if self._pool is not None:
            for descriptors in self._pool.descriptors().values():
                sources.extend(descriptors)

        for descriptor in sources:
            existing = merged.get(descriptor.name)
            if existing is None:
                merged[descriptor.name] = descriptor
                continue
            key = (descriptor.name, existing.server, descriptor.server)
            if key not in self._reported_collisions:
                self._reported_collisions.add(key)
                logger.warning(
                    f"Tool name collision: '{descriptor.name}' from {descriptor.server} "
                    f"ignored, keeping the one from {existing.server}"
                )

        tools = list(merged.values())
        if not include_blacklisted:
            tools = [t for t in tools if t.name not in self.guidance.blacklist]
        return tools

    def get(self, name: str) -> ToolDescriptor | None:
        for tool in self.tools():
            if tool.name == name:
                return tool
        return None

    def resolve(self, name: str | None) -> ToolDescriptor | None:
        """Look up a tool by its exact or underscore-normalised name."""
        if not name:
            return None
        name = name.strip()
        tools = self.tools()
        for tool in tools:
            if tool.name == name:
                return tool
        normalized = name.replace("-", "_")
        for tool in tools:
            if tool.normalized_name == normalized:
                return tool
        return None

    def server_for(self, name: str) -> str | None:
        tool = self.get(name)
        return tool.server if tool else None

    def names(self) -> list[str]:
        return [t.name for t in self.tools()]

    def catalog(self, tools: list[ToolDescriptor] | None = None) -> str:
        """Compact one-line-per-tool listing used in prompts."""
        tools = self.tools() if tools is None else tools
        if not tools:
            return "(no tools available)"
        lines = []
        for tool in tools:
            hint = self.guidance.usage_hints.get(tool.name)
            lines.append(f"- {tool.normalized_name}: {tool.summary}" + (f". {hint}" if hint else ""))
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
    "null": (type(None),),
}


def _matches_type(value: Any, declared: str) -> bool:
    expected = _JSON_TYPES.get(declared)
    if expected is None:
        return True  # unknown type keyword; nothing to check
    # bool is an int subclass in Python but not a JSON number.
    if declared in ("number", "integer") and isinstance(value, bool):
        return False
    if declared == "integer" and isinstance(value, float):
        return value.is_integer()
    return isinstance(value, expected)


def validate_arguments(tool: str, args: Any, schema: dict) -> dict:
    """
    Check generated arguments against a tool's parameter schema.

    Only the parts of JSON Schema that tool servers actually use are
    checked: required fields, declared types and enums.

    Raises:
        ArgumentValidationFailed: on the first violation found.
    """
    if not isinstance(args, dict):
        raise ArgumentValidationFailed(tool, f"expected an object, got {type(args).__name__}")

    properties = schema.get("properties") or {}
    for required in schema.get("required") or []:
        if args.get(required) is None:
            raise ArgumentValidationFailed(tool, f"missing required field '{required}'")

    for key, value in args.items():
        param = properties.get(key)
        if not isinstance(param, dict):
            continue
        declared = param.get("type")
        if declared is not None:
            types = declared if isinstance(declared, list) else [declared]
            if not any(_matches_type(value, t) for t in types):
                raise ArgumentValidationFailed(
                    tool,
                    f"field '{key}' should be {' or '.join(types)}, got {type(value).__name__}",
                )
        if "enum" in param and value not in param["enum"]:
            raise ArgumentValidationFailed(
                tool, f"field '{key}' must be one of {param['enum']}, got {value!r}"
            )

    return args
