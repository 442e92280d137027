import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import OpenAI

from agents.errors import ReasoningServiceError
from agents.outcomes import CandidateQuery, ToolInvocation
from agents.tools import ToolName

logger = logging.getLogger(__name__)

_SCOPED_PATIENT_RE = re.compile(r"patient_id = '([^']+)'")


@dataclass
class ReasoningTurn:
    """One reply of the reasoning service, split into tool calls and the final answer."""
    message: Dict[str, Any]
    tool_invocations: List[ToolInvocation] = field(default_factory=list)
    final_answer: Optional[CandidateQuery] = None


class ReasoningServiceClient:
    def __init__(self, api_key=None, model='gpt-4o-mini', timeout=30):
        self.model = model
        if api_key:
            self.client = OpenAI(api_key=api_key, timeout=timeout)
            self.mock_mode = False
        else:
            self.client = None
            self.mock_mode = True
            logger.warning("OPENAI_API_KEY not found. Reasoning service running in MOCK mode.")

    @classmethod
    def from_config(cls, config):
        return cls(api_key=config.OPENAI_API_KEY, model=config.SQL_GENERATOR_MODEL)

    def complete(self, messages, tools, force_final=False):
        """
        Sends the whole conversation with the tool schema and returns the parsed turn.
        With force_final the service must call finalize_answer.
        """
        if self.mock_mode:
            return self._mock_complete(messages)

        if force_final:
            tool_choice = {"type": "function", "function": {"name": ToolName.FINALIZE_ANSWER.value}}
        else:
            tool_choice = "auto"

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                tools=tools,
                tool_choice=tool_choice,
            )
        except Exception as e:
            raise ReasoningServiceError(str(e)) from e

        if not response.choices:
            raise ReasoningServiceError("Reasoning service returned no choices")
        return parse_message(response.choices[0].message)

    def _mock_complete(self, messages):
        # Canned answer: latest results, scoped when the system prompt names a patient
        system = messages[0].get('content', '') if messages else ''
        match = _SCOPED_PATIENT_RE.search(system)
        sql = "SELECT parameter_name, result_value, unit, test_date FROM lab_results"
        if match:
            sql += f" WHERE patient_id = '{match.group(1)}'"
        sql += " ORDER BY test_date DESC"
        arguments = {
            "sql": sql,
            "explanation": "Mock: latest lab results.",
            "confidence": "low",
        }
        call = {
            "id": "mock_call_1",
            "type": "function",
            "function": {"name": ToolName.FINALIZE_ANSWER.value, "arguments": json.dumps(arguments)},
        }
        return ReasoningTurn(
            message={"role": "assistant", "content": None, "tool_calls": [call]},
            final_answer=CandidateQuery.from_params(arguments, call_id=call["id"]),
        )


def parse_message(message):
    """
    Converts an OpenAI chat message into a ReasoningTurn. The first finalize_answer
    call becomes the final answer; every other call is a tool invocation.
    """
    tool_calls = getattr(message, 'tool_calls', None) or []
    history_entry = {"role": "assistant", "content": getattr(message, 'content', None)}
    if tool_calls:
        history_entry["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.function.name, "arguments": tc.function.arguments},
            }
            for tc in tool_calls
        ]

    invocations = []
    final_answer = None
    for tc in tool_calls:
        params, parse_error = _parse_arguments(tc.function.arguments)
        if (tc.function.name == ToolName.FINALIZE_ANSWER.value
                and final_answer is None and parse_error is None):
            final_answer = CandidateQuery.from_params(params, call_id=tc.id)
            continue
        invocations.append(ToolInvocation(
            name=tc.function.name, params=params, call_id=tc.id, parse_error=parse_error,
        ))

    return ReasoningTurn(message=history_entry, tool_invocations=invocations, final_answer=final_answer)


def _parse_arguments(arguments):
    if not arguments:
        return {}, None
    try:
        params = json.loads(arguments)
    except (TypeError, ValueError) as e:
        return {}, f"arguments are not valid JSON ({e})"
    if not isinstance(params, dict):
        return {}, "arguments must be a JSON object"
    return params, None
