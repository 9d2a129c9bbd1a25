import logging

import pytest

from react_rag.agent.output_parser import parse_react_output
from react_rag.types import ActionStep, FinalAnswerStep, IncompleteStep


def test_action_with_json_query() -> None:
    parsed = parse_react_output(
        'Thought: I need the refund policy\nAction: search_documents\nAction Input: {"query": "refund policy"}'
    )

    assert isinstance(parsed, ActionStep)
    assert parsed.thought == "I need the refund policy"
    assert parsed.action == "search_documents"
    assert parsed.action_input == "refund policy"


def test_final_answer_extracts_thought_and_multiline_answer() -> None:
    parsed = parse_react_output(
        "Thought: I have enough information\nFinal Answer: Refunds take 14 days.\nContact support for more."
    )

    assert isinstance(parsed, FinalAnswerStep)
    assert parsed.thought == "I have enough information"
    assert parsed.answer == "Refunds take 14 days.\nContact support for more."


def test_final_answer_wins_over_action_block() -> None:
    parsed = parse_react_output(
        'Thought: done\nAction: search_documents\nAction Input: {"query": "x"}\nFinal Answer: 42'
    )

    assert isinstance(parsed, FinalAnswerStep)
    assert parsed.answer == "42"


def test_markers_are_case_insensitive() -> None:
    parsed = parse_react_output('thought: hmm\naction: search_documents\naction input: {"query": "abc"}')

    assert isinstance(parsed, ActionStep)
    assert parsed.action_input == "abc"


def test_plain_text_action_input_is_kept_verbatim() -> None:
    parsed = parse_react_output("Action: search_documents\nAction Input: vacation days per year")

    assert isinstance(parsed, ActionStep)
    assert parsed.thought == ""
    assert parsed.action_input == "vacation days per year"


def test_json_without_query_key_keeps_raw_text() -> None:
    parsed = parse_react_output('Action: search_documents\nAction Input: {"q": "abc"}')

    assert isinstance(parsed, ActionStep)
    assert parsed.action_input == '{"q": "abc"}'


def test_malformed_json_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="react_rag.agent.output_parser"):
        parsed = parse_react_output('Action: search_documents\nAction Input: {"query": "abc"')

    assert isinstance(parsed, ActionStep)
    assert parsed.action_input == '{"query": "abc"'
    assert "Malformed JSON" in caplog.text


def test_action_without_input_line_is_incomplete() -> None:
    parsed = parse_react_output("Thought: let me look\nAction: search_documents")

    assert isinstance(parsed, IncompleteStep)
    assert parsed.text == "Thought: let me look\nAction: search_documents"


@pytest.mark.parametrize("value", [None, "", 42, ["Final Answer: x"]])
def test_empty_or_non_string_input_is_incomplete(value: object) -> None:
    parsed = parse_react_output(value)

    assert isinstance(parsed, IncompleteStep)
    assert parsed.text == ""


def test_free_text_is_incomplete_and_trimmed() -> None:
    parsed = parse_react_output("   The answer is simply yes.  \n")

    assert isinstance(parsed, IncompleteStep)
    assert parsed.text == "The answer is simply yes."


def test_parsed_steps_serialize_for_trace() -> None:
    parsed = parse_react_output('Action: search_documents\nAction Input: {"query": "abc"}')

    assert parsed.to_dict() == {
        "type": "action",
        "thought": "",
        "action": "search_documents",
        "actionInput": "abc",
    }
