from react_rag.agent.output_parser import parse_react_output
from react_rag.agent.react_loop import SEARCH_ACTION, build_react_system_prompt
from react_rag.types import ActionStep, FinalAnswerStep


def test_prompt_keeps_workspace_instructions_first() -> None:
    prompt = build_react_system_prompt("You are the billing assistant.")

    assert prompt.startswith("You are the billing assistant.\n")


def test_prompt_describes_tool_and_format() -> None:
    prompt = build_react_system_prompt("")

    assert f"Tool: {SEARCH_ACTION}" in prompt
    assert 'Parameters: {"query": "search query string"}' in prompt
    for marker in ("Thought:", "Action:", "Action Input:", "Final Answer:"):
        assert marker in prompt
    assert "no relevant documents were found" in prompt


def test_prompt_examples_parse_as_documented() -> None:
    prompt = build_react_system_prompt("")
    action_example = prompt.split("You must use the following format for EVERY response:\n\n")[1].split("\n\n")[0]
    answer_example = prompt.split("either search again or give your final answer:\n\n")[1].split("\n\n")[0]

    action = parse_react_output(action_example)
    answer = parse_react_output(answer_example)

    assert isinstance(action, ActionStep)
    assert action.action == SEARCH_ACTION
    assert action.action_input == "your search query"
    assert isinstance(answer, FinalAnswerStep)
