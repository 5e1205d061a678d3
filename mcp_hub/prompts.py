"""
Prompt templates.

Defaults ship here; a JSON object {name: template} overrides any of them.
Placeholders are written {name} and replaced literally, so templates can
show JSON examples without escaping braces.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{(\w+)\}")


PLANNING = """You are an assistant working inside a software project. Decide whether you can answer the user's request directly or whether tools must be used first.

Project files:
{project_snapshot}

Available tools:
{catalog}

User request:
{instruction}

Reply with JSON only:
{"main_objective": "<what the user needs>", "next_step": {"objective": "<first step>", "tool": "<tool name>", "prompt": "<instruction for the tool>"}, "later_steps": ["<objective>", ...]}

If no tool is needed, set "next_step" to null and put your reply in "answer"."""


TOOL_SELECTION = """Pick the single tool that best serves the instruction, or null if none applies.

Tools:
{catalog}

Instruction:
{instruction}

Reply with JSON only: {"tool": "<tool name or null>"}"""


ARGUMENTS = """Produce the arguments for one call of the tool "{tool}".

Tool description:
{description}

Parameters:
{parameters}

Instruction:
{instruction}

Reply with JSON only: {"args": {<parameter>: <value>, ...}}. Omit optional parameters you do not need."""


CURRENT_STEP = """### Step {step_number}: {objective}
Notes: {notes}
Tool: {tool}
Instruction: {prompt}
Arguments: {args}
Result:
{results}"""


DECISION = """You are carrying out a plan for the user.

User request:
{instruction}

Objective: {objective}

Completed steps:
{completed_steps}

Current step:
{current_step}

Later steps:
{later_steps}

Available tools:
{catalog}

Decide what to do next and reply in exactly one of these forms:

1. Try the current step again with a different tool or instruction:
{"current_step": {"notes_to_future_self": "<what you learned>", "tool": "<tool name>", "prompt": "<instruction>"}}

2. Mark the current step complete and start the next one:
{"current_step": {"completed": true, "success": true, "notes_to_future_self": "<conclusion of this step>"}, "next_step": {"objective": "<objective>", "tool": "<tool name>", "prompt": "<instruction>"}}

3. If you have enough information, write the final answer for the user as plain text."""


FORCED_CONCLUSION = """You have reached the limit of steps for this plan. Do not use any more tools.

User request:
{instruction}

Objective: {objective}

Completed steps:
{completed_steps}

Current step:
{current_step}

Write the final answer for the user as plain text, using what was found so far. Say plainly what could not be determined."""


@dataclass(frozen=True)
class PromptTemplates:
    planning: str = PLANNING
    tool_selection: str = TOOL_SELECTION
    arguments: str = ARGUMENTS
    current_step: str = CURRENT_STEP
    decision: str = DECISION
    forced_conclusion: str = FORCED_CONCLUSION

    @classmethod
    def names(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    def with_overrides(self, overrides: dict[str, str]) -> "PromptTemplates":
        """Return a copy with some templates replaced. Unknown names raise ValueError."""
        unknown = sorted(set(overrides) - set(self.names()))
        if unknown:
            raise ValueError(f"Unknown prompt template(s): {', '.join(unknown)}")
        for name, template in overrides.items():
            if not isinstance(template, str):
                raise ValueError(f"Prompt template '{name}' must be a string")
        return replace(self, **overrides)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "PromptTemplates":
        """Defaults, overridden by the JSON object in path if one is given."""
        templates = cls()
        if path is None:
            return templates
        overrides = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(overrides, dict):
            raise ValueError(f"{path}: expected a JSON object of templates")
        logger.info(f"Loaded {len(overrides)} prompt override(s) from {path}")
        return templates.with_overrides(overrides)

    def render(self, name: str, **variables: object) -> str:
        return render_template(getattr(self, name), **variables)


def render_template(template: str, **variables: object) -> str:
    """
    Replace each {name} placeholder with its value, literally.

    Substitution is a single pass over the template, so placeholders
    inside inserted values (tool output, file contents) stay as they are.
    """

    def substitute(match: re.Match) -> str:
        key = match[1]
        if key not in variables:
            return match[0]
        value = variables[key]
        return "" if value is None else str(value)

    return PLACEHOLDER.sub(substitute, template)
