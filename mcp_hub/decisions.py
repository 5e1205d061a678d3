"""
Decoding of model replies.

Every piece of model output the hub acts on passes through this module
and comes out as a typed value. The plan engine and the selector never
look at raw reply strings.

Decision replies decode into exactly one of:

    ContinueStep     refine the current step (notes, tool, instruction)
    CompleteStep     close the current step, optionally with a next one
    FinalConclusion  plain text, or {"conclusion": ...}
    Unparseable      JSON that fits none of the shapes above
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal, Union

from pydantic import BaseModel, Field, ValidationError

from mcp_hub.errors import ModelDecisionUnparseable

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


# ---------------------------------------------------------------------------
# Wire shapes
# ---------------------------------------------------------------------------

class StepPayload(BaseModel):
    """A step as the model writes it: objective, tool and instruction."""
    objective: str = ""
    tool: str | None = None
    prompt: str = ""


class InitialPlan(BaseModel):
    main_objective: str
    next_step: StepPayload | None = None
    later_steps: list[str] = Field(default_factory=list)
    answer: str | None = None


class _ContinuePayload(BaseModel):
    notes_to_future_self: str = ""
    tool: str | None = None
    prompt: str


class _CompletePayload(BaseModel):
    completed: Literal[True]
    success: bool
    notes_to_future_self: str = ""


class _ContinueReply(BaseModel):
    current_step: _ContinuePayload


class _CompleteReply(BaseModel):
    current_step: _CompletePayload
    next_step: StepPayload | None = None


# ---------------------------------------------------------------------------
# Decision variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContinueStep:
    notes: str
    tool: str | None
    instruction: str


@dataclass(frozen=True)
class CompleteStep:
    success: bool
    notes: str
    next_step: StepPayload | None = None


@dataclass(frozen=True)
class FinalConclusion:
    text: str


@dataclass(frozen=True)
class Unparseable:
    raw: str
    reason: str


Decision = Union[ContinueStep, CompleteStep, FinalConclusion, Unparseable]


@dataclass(frozen=True)
class ToolChoice:
    """Stage-1 selector reply."""
    tool: str | None


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text unchanged."""
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def extract_json(text: str, embedded: bool = True) -> Any:
    """
    Parse a JSON value out of a model reply.

    Code fences are stripped first. With embedded set, an object
    surrounded by prose is also accepted (outermost braces).

    Raises:
        ModelDecisionUnparseable: no JSON could be recovered.
    """
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    if embedded:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                pass

    raise ModelDecisionUnparseable(f"no JSON object in reply: {text[:200]!r}")


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------

def decode_initial_plan(text: str) -> InitialPlan | None:
    """Decode a planning reply; None when it is not a plan."""
    try:
        data = extract_json(text, embedded='"main_objective"' in text)
        plan = InitialPlan.model_validate(data)
    except (ModelDecisionUnparseable, ValidationError) as e:
        logger.debug(f"Planning reply is not a plan: {e}")
        return None

    if plan.next_step is not None and not plan.next_step.objective:
        plan.next_step.objective = plan.main_objective
    return plan


def _decode_decision_object(data: Any) -> Decision:
    if not isinstance(data, dict):
        raise ModelDecisionUnparseable(f"expected an object, got {type(data).__name__}")

    if isinstance(data.get("conclusion"), str) and "current_step" not in data:
        return FinalConclusion(data["conclusion"].strip())

    current = data.get("current_step")
    if not isinstance(current, dict):
        raise ModelDecisionUnparseable("reply has neither current_step nor conclusion")

    try:
        if current.get("completed"):
            reply = _CompleteReply.model_validate(data)
            return CompleteStep(
                success=reply.current_step.success,
                notes=reply.current_step.notes_to_future_self,
                next_step=reply.next_step,
            )
        reply = _ContinueReply.model_validate(data)
    except ValidationError as e:
        raise ModelDecisionUnparseable(str(e)) from e

    return ContinueStep(
        notes=reply.current_step.notes_to_future_self,
        tool=reply.current_step.tool,
        instruction=reply.current_step.prompt,
    )


def decode_decision(text: str) -> Decision:
    """
    Decode a Deciding reply into exactly one decision variant.

    Text that is not JSON is a final conclusion. JSON (fenced, or
    embedded in prose when it carries a current_step) that fits no
    shape comes back as Unparseable; nothing here raises.
    """
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        if '"current_step"' not in text:
            return FinalConclusion(text.strip())
        try:
            data = extract_json(text)
        except ModelDecisionUnparseable as e:
            logger.warning(f"Unparseable decision reply: {e}")
            return Unparseable(text.strip(), str(e))

    try:
        return _decode_decision_object(data)
    except ModelDecisionUnparseable as e:
        logger.warning(f"Unparseable decision reply: {e}")
        return Unparseable(text.strip(), str(e))


def decode_tool_choice(text: str) -> ToolChoice | None:
    """Decode a stage-1 reply {"tool": name|null}; None if malformed."""
    try:
        data = extract_json(text)
    except ModelDecisionUnparseable as e:
        logger.warning(f"Tool selection reply unparseable: {e}")
        return None
    if not isinstance(data, dict) or "tool" not in data:
        logger.warning(f"Tool selection reply has no 'tool' key: {text[:200]!r}")
        return None

    tool = data.get("tool")
    if tool is not None and not isinstance(tool, str):
        return None
    if tool is not None:
        tool = tool.strip()
        if tool.lower() in ("", "null", "none"):
            tool = None
    return ToolChoice(tool=tool)


def decode_arguments(text: str) -> dict[str, Any]:
    """
    Decode an argument-generation reply.

    Accepts {"args": {...}} or a bare object. Keys whose value is null
    are dropped.

    Raises:
        ModelDecisionUnparseable: the reply holds no JSON object.
    """
    data = extract_json(text)
    if isinstance(data, dict) and set(data) == {"args"} and isinstance(data["args"], dict):
        data = data["args"]
    if not isinstance(data, dict):
        raise ModelDecisionUnparseable(f"arguments must be an object, got {type(data).__name__}")
    return {key: value for key, value in data.items() if value is not None}
