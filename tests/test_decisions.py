import logging

import pytest

from mcp_hub.decisions import (
    CompleteStep,
    ContinueStep,
    FinalConclusion,
    ToolChoice,
    Unparseable,
    decode_arguments,
    decode_decision,
    decode_initial_plan,
    decode_tool_choice,
    extract_json,
    strip_code_fences,
)
from mcp_hub.errors import ModelDecisionUnparseable


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('Sure:\n```\n{"a": 1}\n```\nDone.') == '{"a": 1}'
    assert strip_code_fences("  plain  ") == "plain"


def test_extract_json_from_prose():
    assert extract_json('The answer is {"a": {"b": 2}} as shown.') == {"a": {"b": 2}}


def test_extract_json_without_embedding():
    with pytest.raises(ModelDecisionUnparseable):
        extract_json('The answer is {"a": 1}', embedded=False)


def test_extract_json_failure():
    with pytest.raises(ModelDecisionUnparseable):
        extract_json("no json here {at all")


# ---------------------------------------------------------------------------
# Planning replies
# ---------------------------------------------------------------------------

def test_initial_plan():
    plan = decode_initial_plan(
        '{"main_objective": "Explain config", '
        '"next_step": {"objective": "Read config", "tool": "read_file", "prompt": "read config.py"}, '
        '"later_steps": ["Summarize"]}'
    )
    assert plan.main_objective == "Explain config"
    assert plan.next_step.tool == "read_file"
    assert plan.later_steps == ["Summarize"]


def test_initial_plan_fills_empty_objective():
    plan = decode_initial_plan('{"main_objective": "Count files", "next_step": {"tool": "list_dir"}}')
    assert plan.next_step.objective == "Count files"


def test_initial_plan_with_answer_only():
    plan = decode_initial_plan('{"main_objective": "Greet", "next_step": null, "answer": "Hello!"}')
    assert plan.next_step is None
    assert plan.answer == "Hello!"


def test_initial_plan_embedded_in_prose():
    plan = decode_initial_plan('Plan:\n{"main_objective": "X", "next_step": {"objective": "Y"}}\nThanks')
    assert plan.next_step.objective == "Y"


@pytest.mark.parametrize("reply", ["Just an answer.", '{"answer": "no objective"}', "[1, 2]"])
def test_not_a_plan(reply):
    assert decode_initial_plan(reply) is None


# ---------------------------------------------------------------------------
# Decision replies
# ---------------------------------------------------------------------------

def test_plain_text_is_final_conclusion():
    assert decode_decision("  The file defines three classes.\n") == FinalConclusion(
        "The file defines three classes."
    )


def test_conclusion_object():
    assert decode_decision('{"conclusion": " Done. "}') == FinalConclusion("Done.")


def test_continue_step():
    decision = decode_decision(
        '{"current_step": {"notes_to_future_self": "wrong dir", "tool": "list_dir", "prompt": "list src"}}'
    )
    assert decision == ContinueStep(notes="wrong dir", tool="list_dir", instruction="list src")


def test_complete_step_with_next():
    decision = decode_decision(
        '```json\n{"current_step": {"completed": true, "success": true, "notes_to_future_self": "found it"}, '
        '"next_step": {"objective": "Read it", "tool": "read_file", "prompt": "read a.py"}}\n```'
    )
    assert isinstance(decision, CompleteStep)
    assert decision.success is True
    assert decision.notes == "found it"
    assert decision.next_step.objective == "Read it"


def test_complete_step_without_next():
    decision = decode_decision('{"current_step": {"completed": true, "success": false}}')
    assert decision == CompleteStep(success=False, notes="", next_step=None)


def test_decision_embedded_in_prose():
    decision = decode_decision(
        'Let me retry. {"current_step": {"tool": "echo", "prompt": "again"}}'
    )
    assert decision == ContinueStep(notes="", tool="echo", instruction="again")


@pytest.mark.parametrize(
    "reply",
    [
        '{"current_step": {"notes_to_future_self": "no prompt"}}',
        '{"current_step": {"completed": true}}',
        '{"something": "else"}',
        "[1, 2, 3]",
        'Broken {"current_step": {"tool": }',
    ],
)
def test_unparseable_decisions(reply, caplog):
    with caplog.at_level(logging.WARNING):
        decision = decode_decision(reply)
    assert isinstance(decision, Unparseable)
    assert decision.raw == reply.strip()
    assert "Unparseable decision reply" in caplog.text


# ---------------------------------------------------------------------------
# Selector replies
# ---------------------------------------------------------------------------

def test_tool_choice():
    assert decode_tool_choice('{"tool": " echo ", "prompt": "say hi"}') == ToolChoice(tool="echo")


@pytest.mark.parametrize("value", ["null", '"null"', '"None"', '""'])
def test_tool_choice_none_values(value):
    assert decode_tool_choice(f'{{"tool": {value}}}').tool is None


@pytest.mark.parametrize("reply", ["nothing", '{"prompt": "x"}', '{"tool": 3}'])
def test_tool_choice_malformed(reply):
    assert decode_tool_choice(reply) is None


def test_arguments_wrapped_and_bare():
    assert decode_arguments('{"args": {"a": 1, "b": null}}') == {"a": 1}
    assert decode_arguments('{"a": 1}') == {"a": 1}
    # "args" next to other keys is an ordinary parameter.
    assert decode_arguments('{"args": {"x": 1}, "mode": "y"}') == {"args": {"x": 1}, "mode": "y"}


def test_arguments_must_be_object():
    with pytest.raises(ModelDecisionUnparseable):
        decode_arguments("[1, 2]")
    with pytest.raises(ModelDecisionUnparseable):
        decode_arguments("no arguments")
