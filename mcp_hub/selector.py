"""
Two-stage tool selection.

Stage 1 asks a (fast) model which tool, if any, serves an instruction.
Stage 2 asks for the argument object of that one tool and validates it
against the tool's parameter schema. Retries and model-tier escalation
for stage 2 are decided by a RetryPolicy and nowhere else.

Usage:
    selector = ToolSelector(backend, registry, approver=lambda tool, args: True)
    tool = selector.resolve("read_file", "show me the README")
    args = selector.generate_arguments(tool.name, "show me the README")
    selector.authorize(tool, args)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from mcp_hub.decisions import decode_arguments, decode_tool_choice
from mcp_hub.errors import (
    ApprovalDenied,
    ArgumentValidationFailed,
    ModelDecisionUnparseable,
    UnknownTool,
)
from mcp_hub.llm import ModelBackend
from mcp_hub.prompts import PromptTemplates
from mcp_hub.registry import (
    ModelTier,
    SafetyClass,
    ToolDescriptor,
    ToolRegistry,
    validate_arguments,
)

logger = logging.getLogger(__name__)

Approver = Callable[[ToolDescriptor, dict], bool]


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many argument-generation attempts to make, and on which tier.

    A fast-tier tool gets fast_attempts tries on the fast model and then
    escalates to the full model; a full-tier tool only uses the full model.
    """
    fast_attempts: int = 2
    full_attempts: int = 1

    def tiers(self, preferred: ModelTier) -> list[ModelTier]:
        fast = [ModelTier.FAST] * self.fast_attempts if preferred == ModelTier.FAST else []
        return fast + [ModelTier.FULL] * max(self.full_attempts, 1)


def format_parameters(schema: dict) -> str:
    """One line per parameter: name (type[, optional]): description."""
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    if not properties:
        return "(no parameters)"
    lines = []
    for name, param in properties.items():
        param = param if isinstance(param, dict) else {}
        type_info = param.get("type", "any")
        if isinstance(type_info, list):
            type_info = " | ".join(type_info)
        if name not in required:
            type_info = f"{type_info}, optional"
        lines.append(f"- {name} ({type_info}): {param.get('description') or 'No description'}")
    return "\n".join(lines)


class ToolSelector:
    """
    Maps an instruction to one tool call with valid arguments.

    Args:
        backend: Model backend used for both stages.
        registry: Source of tool descriptors and the catalog.
        prompts: Templates for tool_selection and arguments.
        retry_policy: Attempt/tier rules for argument generation.
        approver: Called for confirm-class tools; must return True to run.
        selection_tier: Model tier for stage 1.
    """

    def __init__(
        self,
        backend: ModelBackend,
        registry: ToolRegistry,
        prompts: PromptTemplates | None = None,
        retry_policy: RetryPolicy | None = None,
        approver: Approver | None = None,
        selection_tier: ModelTier = ModelTier.FAST,
        temperature: float = 0.1,
        max_tokens: int = 1000,
    ):
        self.backend = backend
        self.registry = registry
        self.prompts = prompts or PromptTemplates()
        self.retry_policy = retry_policy or RetryPolicy()
        self.approver = approver
        self.selection_tier = selection_tier
        self.temperature = temperature
        self.max_tokens = max_tokens

    def select_tool(self, instruction: str, tools: list[ToolDescriptor] | None = None) -> str | None:
        """
        Stage 1: name the tool that serves the instruction, or None.

        Malformed replies, unknown and blacklisted names all give None.
        """
        tools = self.registry.tools() if tools is None else tools
        if not tools:
            logger.info("No tools available for selection")
            return None

        prompt = self.prompts.render(
            "tool_selection",
            instruction=instruction,
            catalog=self.registry.catalog(tools),
        )
        reply = self.backend.generate(
            prompt, self.temperature, self.max_tokens, tier=self.selection_tier
        )
        choice = decode_tool_choice(reply)
        if choice is None or choice.tool is None:
            logger.info("No tool selected by model")
            return None

        normalized = choice.tool.replace("-", "_")
        for tool in tools:
            if tool.name == choice.tool or tool.normalized_name == normalized:
                logger.info(f"Stage 1 selected tool: {choice.tool} -> {tool.name}")
                return tool.name

        logger.warning(f"Model selected unknown tool: {choice.tool}")
        return None

    def generate_arguments(
        self,
        tool_name: str,
        instruction: str,
        schema: dict | None = None,
    ) -> dict[str, Any]:
        """
        Stage 2: build and validate the argument object for one tool.

        Raises:
            UnknownTool: tool_name is not in the registry.
            ArgumentValidationFailed: every attempt allowed by the retry
                policy produced unparseable or invalid arguments.
        """
        descriptor = self.registry.get(tool_name)
        if descriptor is None:
            raise UnknownTool(tool_name)
        schema = descriptor.parameter_schema if schema is None else schema

        prompt = self.prompts.render(
            "arguments",
            tool=descriptor.name,
            description=descriptor.description,
            parameters=format_parameters(schema),
            instruction=instruction,
        )

        tiers = self.retry_policy.tiers(descriptor.preferred_tier)
        last_error: Exception | None = None
        for attempt, tier in enumerate(tiers, start=1):
            reply = self.backend.generate(prompt, self.temperature, self.max_tokens, tier=tier)
            try:
                args = validate_arguments(descriptor.name, decode_arguments(reply), schema)
            except (ModelDecisionUnparseable, ArgumentValidationFailed) as e:
                last_error = e
                logger.warning(
                    f"Argument attempt {attempt}/{len(tiers)} for {descriptor.name} "
                    f"({tier.value} model) rejected: {e}"
                )
                continue
            logger.info(f"Stage 2 args for {descriptor.name} ({tier.value} model): {args}")
            return args

        reason = getattr(last_error, "reason", None) or str(last_error)
        raise ArgumentValidationFailed(
            descriptor.name, f"no valid arguments after {len(tiers)} attempt(s): {reason}"
        )

    def resolve(self, tool_name: str | None, instruction: str) -> ToolDescriptor | None:
        """The intent's tool when it is known, else whatever stage 1 picks."""
        if tool_name:
            descriptor = self.registry.resolve(tool_name)
            if descriptor is not None:
                return descriptor
            logger.warning(f"Step names unknown tool '{tool_name}'; falling back to selection")

        chosen = self.select_tool(instruction)
        return self.registry.get(chosen) if chosen else None

    def authorize(self, descriptor: ToolDescriptor, args: dict) -> None:
        """
        Gate execution on the tool's safety class.

        Raises:
            ApprovalDenied: a confirm-class tool with no approver, or denied.
        """
        if descriptor.safety_class == SafetyClass.AUTO:
            return
        if self.approver is None:
            raise ApprovalDenied(f"Tool '{descriptor.name}' requires confirmation and no approver is set")
        if not self.approver(descriptor, args):
            raise ApprovalDenied(f"Tool '{descriptor.name}' was not approved")
        logger.info(f"Tool '{descriptor.name}' approved")
