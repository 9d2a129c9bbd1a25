"""Parser turning a free-text ReAct completion into a typed step."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from react_rag.types import ActionStep, FinalAnswerStep, IncompleteStep, ParsedOutput

logger = logging.getLogger(__name__)

_FINAL_ANSWER = re.compile(r"Final\s*Answer\s*:\s*([\s\S]*?)$", re.IGNORECASE)
_ACTION = re.compile(
    r"Action\s*:\s*(\S+)\s*\n\s*Action\s*Input\s*:\s*([\s\S]*?)$", re.IGNORECASE
)
_THOUGHT = re.compile(
    r"Thought\s*:\s*([\s\S]*?)(?=\n\s*(?:Action|Final\s*Answer)\s*:)", re.IGNORECASE
)


def parse_react_output(text: Any) -> ParsedOutput:
    """Classify one completion as an action, a final answer, or incomplete.

    Expected shapes::

        Thought: <reasoning>
        Action: search_documents
        Action Input: {"query": "search query"}

        Thought: <reasoning>
        Final Answer: <response>

    A `Final Answer:` marker wins over an action block when both are present.
    """

    if not text or not isinstance(text, str):
        return IncompleteStep(text=text if isinstance(text, str) else "")

    trimmed = text.strip()

    final_match = _FINAL_ANSWER.search(trimmed)
    if final_match:
        return FinalAnswerStep(
            thought=_extract_thought(trimmed),
            answer=final_match.group(1).strip(),
        )

    action_match = _ACTION.search(trimmed)
    if action_match:
        return ActionStep(
            thought=_extract_thought(trimmed),
            action=action_match.group(1).strip(),
            action_input=_parse_action_input(action_match.group(2).strip()),
        )

    return IncompleteStep(text=trimmed)


def _extract_thought(text: str) -> str:
    match = _THOUGHT.search(text)
    return match.group(1).strip() if match else ""


def _parse_action_input(raw: str) -> str:
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        # Plain-text inputs are normal; only log when JSON was clearly intended.
        if raw.startswith("{"):
            logger.warning(
                "Malformed JSON in Action Input: raw=%r error=%s", raw[:200], exc
            )
        return raw

    if isinstance(payload, dict):
        query = payload.get("query")
        if isinstance(query, str) and query:
            return query
    return raw
