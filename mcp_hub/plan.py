"""
Iterative plan engine.

Turns one user request into a bounded sequence of tool calls:

    Planning ──▶ ExecutingStep ──▶ Deciding ──▶ ExecutingStep (continue / next step)
        │                              │
        └──────── no next step ────────┴──▶ Concluding ──▶ Done

When a cap is reached (completed steps, attempts on one step, or total
executions) the Deciding call is replaced by a forced conclusion whose
output is final whatever its shape.

The engine keeps no per-request state on self: each run() owns its
PlanState, so one engine can serve many request threads at once.

Usage:
    engine = PlanEngine(backend, selector, pool, registry)
    conclusion = engine.run("What does config.py do?", ConsoleSink())
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from mcp_hub.builtins import BuiltinTools
from mcp_hub.config import PlanSettings
from mcp_hub.decisions import (
    CompleteStep,
    ContinueStep,
    FinalConclusion,
    StepPayload,
    Unparseable,
    decode_decision,
    decode_initial_plan,
)
from mcp_hub.errors import BackendUnavailable, HubError, TransportTimeout, UnknownTool
from mcp_hub.llm import ModelBackend
from mcp_hub.manager import ProcessPool
from mcp_hub.prompts import PromptTemplates
from mcp_hub.registry import BUILTIN_SERVER, ToolDescriptor, ToolRegistry
from mcp_hub.selector import ToolSelector
from mcp_hub.sink import ResponseStream, Sink

logger = logging.getLogger(__name__)

CONCLUSION_HEADER = "Conclusion"


# ---------------------------------------------------------------------------
# Plan data
# ---------------------------------------------------------------------------

@dataclass
class StepIntent:
    """What the engine intends to run next."""
    objective: str
    tool_name: str | None
    instruction: str
    notes: str = ""


@dataclass(frozen=True)
class CompletedStep:
    """Summary of a finished step. Raw tool output is never kept."""
    objective: str
    succeeded: bool
    conclusion: str


@dataclass(frozen=True)
class StepResult:
    """One execution's outcome, shown to exactly one decision prompt."""
    tool: str | None
    instruction: str
    args: dict
    ok: bool
    value: str = ""
    error: str | None = None

    @classmethod
    def success(cls, tool: str, instruction: str, args: dict, value: str) -> "StepResult":
        return cls(tool=tool, instruction=instruction, args=args, ok=True, value=value)

    @classmethod
    def failure(cls, tool: str | None, instruction: str, args: dict, error: str) -> "StepResult":
        return cls(tool=tool, instruction=instruction, args=args, ok=False, error=error)


@dataclass
class PlanState:
    objective: str
    current_step: StepIntent | None
    later_steps: list[str] = field(default_factory=list)
    completed_steps: list[CompletedStep] = field(default_factory=list)
    iterations: int = 0
    step_attempts: int = 0

    def complete(self, step: CompletedStep) -> None:
        self.completed_steps.append(step)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class PlanEngine:
    """
    Drives one plan per run() call.

    Args:
        backend: Model backend for planning and decisions.
        selector: Resolves tools and generates arguments.
        pool: Executes server tools.
        registry: Tool catalog shown to the model.
        prompts: Prompt templates.
        settings: Caps and generation parameters.
        context_provider: Returns the project snapshot for planning.
        builtins: Executes tools registered under the builtin server.
    """

    def __init__(
        self,
        backend: ModelBackend,
        selector: ToolSelector,
        pool: ProcessPool,
        registry: ToolRegistry,
        prompts: PromptTemplates | None = None,
        settings: PlanSettings | None = None,
        context_provider: Callable[[], str] | None = None,
        builtins: BuiltinTools | None = None,
    ):
        self.backend = backend
        self.selector = selector
        self.pool = pool
        self.registry = registry
        self.prompts = prompts or PromptTemplates()
        self.settings = settings or PlanSettings()
        self.context_provider = context_provider
        self.builtins = builtins

    def run(
        self,
        instruction: str,
        sink: Sink,
        cancel_event: threading.Event | None = None,
    ) -> str | None:
        """
        Run a plan to its conclusion, streaming progress to sink.

        Returns the conclusion text, or None if the request was cancelled.
        sink.end() is called exactly once unless the request is cancelled.
        """
        stream = ResponseStream(sink, cancel_event)
        try:
            return self._run_plan(instruction, stream)
        except BackendUnavailable as e:
            logger.error(f"Request ended, model backend unavailable: {e}")
            return self._fail(f"The language model backend is unavailable: {e}", stream)
        except Exception as e:
            logger.exception(f"Request failed: {e}")
            return self._fail(f"The request failed: {e}", stream)
        finally:
            stream.end()

    def _fail(self, message: str, stream: ResponseStream) -> str:
        """Write the error text under the conclusion header."""
        if stream.last_header != CONCLUSION_HEADER:
            stream.header(CONCLUSION_HEADER)
        else:
            message = "\n\n" + message
        stream.chunk(message)
        return message.strip()

    # -- states --------------------------------------------------------------

    def _run_plan(self, instruction: str, stream: ResponseStream) -> str | None:
        state = self._plan(instruction, stream)
        if not isinstance(state, PlanState):
            return state

        while state.current_step is not None:
            if stream.cancelled:
                return self._cancelled(state)

            intent = state.current_step
            state.iterations += 1
            state.step_attempts += 1
            step_number = len(state.completed_steps) + 1
            logger.info(
                f"Plan iteration {state.iterations} (step {step_number}, "
                f"attempt {state.step_attempts}): {intent.objective}"
            )
            stream.header(f"Step {step_number}: {intent.objective}")
            result = self._execute_step(intent, stream)

            if stream.cancelled:
                return self._cancelled(state)

            if self._attempt_cap_reached(state):
                return self._force_conclusion(instruction, state, result, stream)

            decision = decode_decision(
                self._generate(self._decision_prompt("decision", instruction, state, result))
            )

            if isinstance(decision, ContinueStep):
                logger.info(f"Refining step {step_number}: tool={decision.tool}")
                self._stream_notes(decision.notes, stream)
                notes = "\n\n".join(n for n in (intent.notes, decision.notes) if n)
                state.current_step = StepIntent(
                    objective=intent.objective,
                    tool_name=decision.tool,
                    instruction=decision.instruction,
                    notes=notes,
                )
            elif isinstance(decision, CompleteStep):
                state.complete(CompletedStep(intent.objective, decision.success, decision.notes))
                logger.info(
                    f"Step {step_number} complete (success={decision.success}); "
                    f"{len(state.completed_steps)}/{self.settings.max_steps} steps done"
                )
                if decision.next_step is None:
                    return self._conclude(decision.notes, stream)
                self._stream_notes(decision.notes, stream)
                if len(state.completed_steps) >= self.settings.max_steps:
                    # The next step never runs, so the prompt shows none in progress.
                    state.current_step = None
                    return self._force_conclusion(instruction, state, None, stream)
                state.current_step = self._next_intent(state, decision.next_step)
                state.step_attempts = 0
            elif isinstance(decision, FinalConclusion):
                return self._conclude(decision.text, stream)
            elif isinstance(decision, Unparseable):
                return self._conclude(decision.raw, stream)

        return self._conclude("", stream)

    def _plan(self, instruction: str, stream: ResponseStream) -> PlanState | str | None:
        snapshot = self.context_provider() if self.context_provider else ""
        prompt = self.prompts.render(
            "planning",
            instruction=instruction,
            project_snapshot=snapshot or "Project file structure not available",
            catalog=self.registry.catalog(),
        )
        reply = self._generate(prompt)
        if stream.cancelled:
            return None

        plan = decode_initial_plan(reply)
        if plan is None:
            logger.info("Planning reply is not a plan; answering directly")
            return self._conclude(reply.strip(), stream)
        if plan.next_step is None:
            logger.info("Plan has no next step; answering directly")
            return self._conclude(plan.answer or reply.strip(), stream)

        logger.info(
            f"Plan: {plan.main_objective} (first step: {plan.next_step.objective}, "
            f"{len(plan.later_steps)} later)"
        )
        return PlanState(
            objective=plan.main_objective,
            current_step=StepIntent(
                objective=plan.next_step.objective,
                tool_name=plan.next_step.tool,
                instruction=plan.next_step.prompt or plan.next_step.objective,
            ),
            later_steps=list(plan.later_steps),
        )

    def _execute_step(self, intent: StepIntent, stream: ResponseStream) -> StepResult:
        """Resolve, build arguments, authorize and run. Hub errors become failures."""
        tool_name = intent.tool_name
        args: dict = {}
        try:
            descriptor = self.selector.resolve(intent.tool_name, intent.instruction)
            if descriptor is None:
                raise UnknownTool(intent.tool_name)
            tool_name = descriptor.name
            args = self.selector.generate_arguments(descriptor.name, intent.instruction)
            self.selector.authorize(descriptor, args)
            stream.chunk(f"Calling `{descriptor.name}` with {json.dumps(args)}\n")
            value = self._invoke(descriptor, args)
        except BackendUnavailable:
            raise
        except TransportTimeout as e:
            logger.warning(f"Step tool {tool_name} timed out: {e}")
            stream.chunk(f"`{tool_name}` timed out\n")
            return StepResult.failure(tool_name, intent.instruction, args, "timeout")
        except HubError as e:
            logger.warning(f"Step tool {tool_name} failed: {e}")
            stream.chunk(f"Step failed: {e}\n")
            return StepResult.failure(tool_name, intent.instruction, args, str(e))
        except Exception as e:
            logger.exception(f"Step tool {tool_name} raised unexpectedly: {e}")
            stream.chunk(f"Step failed: {e}\n")
            return StepResult.failure(tool_name, intent.instruction, args, str(e))

        stream.chunk(f"`{tool_name}` returned {len(value)} characters\n")
        return StepResult.success(tool_name, intent.instruction, args, value)

    def _invoke(self, descriptor: ToolDescriptor, args: dict) -> str:
        if descriptor.server == BUILTIN_SERVER:
            if self.builtins is None:
                raise UnknownTool(descriptor.name)
            return self.builtins.execute(descriptor.name, args)
        return self.pool.execute(descriptor.server, descriptor.name, args)

    def _force_conclusion(
        self,
        instruction: str,
        state: PlanState,
        result: StepResult | None,
        stream: ResponseStream,
    ) -> str | None:
        logger.info(
            f"Plan cap reached after {state.iterations} execution(s), "
            f"{len(state.completed_steps)} completed step(s); forcing conclusion"
        )
        prompt = self._decision_prompt("forced_conclusion", instruction, state, result)
        chunks = self.backend.generate(
            prompt,
            self.settings.temperature,
            self.settings.max_tokens,
            streaming=True,
        )
        if stream.cancelled:
            return self._cancelled(state)
        stream.header(CONCLUSION_HEADER)
        text = stream.relay(chunks)
        if stream.cancelled:
            return self._cancelled(state)
        return text.strip()

    def _conclude(self, text: str, stream: ResponseStream) -> str:
        stream.header(CONCLUSION_HEADER)
        stream.chunk(text)
        return text

    def _stream_notes(self, notes: str, stream: ResponseStream) -> None:
        if notes.strip():
            stream.chunk(f"{notes.strip()}\n")

    def _cancelled(self, state: PlanState) -> None:
        logger.info(f"Request cancelled after {state.iterations} execution(s)")
        return None

    # -- helpers -------------------------------------------------------------

    def _attempt_cap_reached(self, state: PlanState) -> bool:
        return (
            state.step_attempts >= self.settings.max_step_attempts
            or state.iterations >= self.settings.max_iterations
        )

    def _next_intent(self, state: PlanState, step: StepPayload) -> StepIntent:
        objective = step.objective or (state.later_steps[0] if state.later_steps else state.objective)
        if objective in state.later_steps:
            state.later_steps.remove(objective)
        return StepIntent(
            objective=objective,
            tool_name=step.tool,
            instruction=step.prompt or objective,
        )

    def _generate(self, prompt: str) -> str:
        return self.backend.generate(prompt, self.settings.temperature, self.settings.max_tokens)

    def _decision_prompt(
        self,
        template: str,
        instruction: str,
        state: PlanState,
        result: StepResult | None,
    ) -> str:
        return self.prompts.render(
            template,
            instruction=instruction,
            objective=state.objective,
            completed_steps=format_completed_steps(state.completed_steps),
            current_step=self._format_current_step(state, result),
            later_steps=format_later_steps(state.later_steps),
            catalog=self.registry.catalog(),
        )

    def _format_current_step(self, state: PlanState, result: StepResult | None) -> str:
        intent = state.current_step
        if intent is None:
            return "None"
        if result is None:
            tool, args, results = intent.tool_name or "none", "{}", "No results yet"
        else:
            tool = result.tool or "none"
            args = json.dumps(result.args)
            results = self._outcome_text(result)
        return self.prompts.render(
            "current_step",
            step_number=len(state.completed_steps) + 1,
            objective=intent.objective,
            notes=intent.notes.strip() or "*No notes yet*",
            tool=tool,
            prompt=intent.instruction,
            args=args,
            results=block_quote(results),
        )

    def _outcome_text(self, result: StepResult) -> str:
        if not result.ok:
            return f"Error: {result.error}"
        limit = self.settings.result_preview_chars
        if len(result.value) > limit:
            return result.value[:limit] + f"\n... ({len(result.value) - limit} more characters)"
        return result.value or "(empty result)"


def format_completed_steps(steps: list[CompletedStep]) -> str:
    if not steps:
        return "None"
    return "\n".join(
        f"{i}. {step.objective} [{'succeeded' if step.succeeded else 'failed'}]: {step.conclusion}"
        for i, step in enumerate(steps, start=1)
    )


def format_later_steps(steps: list[str]) -> str:
    return "\n".join(f"- {step}" for step in steps) if steps else "None"


def block_quote(text: str) -> str:
    return "\n".join(f"> {line}" for line in text.split("\n"))
