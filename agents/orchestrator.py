"""
Agent loop: drives the reasoning service through tool calls until it declares
a final query, validates that query, and turns the outcome into a FinalDecision.

    Init -> Iterating -> ToolCall / FinalAnswer -> Iterating | Validating
    Validating -> Success | RetryOnce | ForcedCompletion | Failure
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List

from agents.errors import ReasoningServiceError
from agents.outcomes import (
    API_ERROR, NO_FINAL_QUERY, TIMEOUT, VALIDATION_FAILED, to_json,
)
from agents.prompts import (
    FORCED_COMPLETION_MESSAGE, NUDGE_MESSAGE, VALIDATION_FEEDBACK_MESSAGE, build_system_prompt,
)
from agents.recorder import IterationRecorder
from agents.tools import TOOL_DEFINITIONS, ToolDispatcher

logger = logging.getLogger(__name__)

SLOW_REASONING_MS = 10000
SLOW_TOOL_MS = 5000


@dataclass
class ConversationState:
    """Per-request conversation. Owned by one orchestrator run and never shared."""
    max_iterations: int
    timeout_ms: int
    started_at: float
    messages: List[Dict[str, Any]] = field(default_factory=list)
    iteration: int = 1
    retry_count: int = 0

    def add(self, message):
        self.messages.append(message)

    def elapsed_ms(self, now):
        return int((now - self.started_at) * 1000)

    def deadline_passed(self, now):
        return self.elapsed_ms(now) > self.timeout_ms


def strip_trailing_comment(sql):
    """Drops a `-- comment` written after the final semicolon."""
    if not sql:
        return sql
    last = sql.rfind(';')
    if last != -1 and sql[last + 1:].strip().startswith('--'):
        return sql[:last + 1]
    return sql


class AgentLoopOrchestrator:
    def __init__(self, reasoning, search_tool, exploratory_tool, validator, audit_logger=None,
                 max_iterations=5, timeout_ms=120000, clock=time.monotonic):
        self.reasoning = reasoning
        self.dispatcher = ToolDispatcher(search_tool, exploratory_tool)
        self.validator = validator
        self.audit_logger = audit_logger
        self.max_iterations = max_iterations
        self.timeout_ms = timeout_ms
        self.clock = clock

    def run(self, question, schema_context, selected_patient_id=None, patient_count=0,
            user_identifier=None):
        request_id = str(uuid.uuid4())
        state = ConversationState(
            max_iterations=self.max_iterations,
            timeout_ms=self.timeout_ms,
            started_at=self.clock(),
        )
        recorder = IterationRecorder()
        state.add({
            "role": "system",
            "content": build_system_prompt(
                schema_context, selected_patient_id, self.max_iterations,
                row_limit=self.validator.default_row_limit,
                max_joins=self.validator.max_joins,
                max_subqueries=self.validator.max_subqueries,
            ),
        })
        state.add({"role": "user", "content": question})
        logger.info("[%s] Starting SQL generation (patient_count=%s, patient_selected=%s)",
                    request_id, patient_count, bool(selected_patient_id))

        decision = self._loop(state, recorder, request_id, selected_patient_id, patient_count)

        duration_ms = state.elapsed_ms(self.clock())
        if decision.ok:
            logger.info("[%s] SQL generated in %s ms (iterations=%s, forced=%s)",
                        request_id, duration_ms, decision.iteration_count, decision.forced_completion)
        else:
            logger.warning("[%s] SQL generation failed: %s (violation=%s)",
                           request_id, decision.error_code, decision.violation_code)
        if self.audit_logger is not None:
            self.audit_logger.log(decision, request_id, question,
                                  user_identifier=user_identifier, duration_ms=duration_ms)
        return decision

    def _loop(self, state, recorder, request_id, selected_patient_id, patient_count):
        while state.iteration <= state.max_iterations:
            if state.deadline_passed(self.clock()):
                logger.warning("[%s] Deadline passed before iteration %s", request_id, state.iteration)
                return recorder.failure(TIMEOUT, state.iteration - 1)

            try:
                turn = self._call_reasoning(state, request_id)
            except ReasoningServiceError as e:
                logger.error("[%s] Reasoning service call failed: %s", request_id, e)
                return recorder.failure(API_ERROR, state.iteration)

            self._dispatch_tools(state, recorder, turn, request_id, selected_patient_id, patient_count)

            if turn.final_answer is not None:
                decision = self._validate(state, recorder, turn.final_answer,
                                          selected_patient_id, patient_count, forced=False)
                if decision is not None:
                    return decision
                # Corrective retry: same iteration number
                continue

            if not turn.tool_invocations:
                state.add({"role": "user", "content": NUDGE_MESSAGE})
            state.iteration += 1

        return self._force_completion(state, recorder, request_id, selected_patient_id, patient_count)

    def _force_completion(self, state, recorder, request_id, selected_patient_id, patient_count):
        logger.warning("[%s] Max iterations (%s) reached, forcing completion", request_id, state.max_iterations)
        state.add({"role": "user", "content": FORCED_COMPLETION_MESSAGE})

        while True:
            if state.deadline_passed(self.clock()):
                return recorder.failure(TIMEOUT, state.iteration, forced_completion=True)
            try:
                turn = self._call_reasoning(state, request_id, force_final=True)
            except ReasoningServiceError as e:
                logger.error("[%s] Forced completion failed: %s", request_id, e)
                return recorder.failure(NO_FINAL_QUERY, state.iteration, forced_completion=True)

            self._dispatch_tools(state, recorder, turn, request_id, selected_patient_id, patient_count)
            if turn.final_answer is None:
                return recorder.failure(NO_FINAL_QUERY, state.iteration, forced_completion=True)

            decision = self._validate(state, recorder, turn.final_answer,
                                      selected_patient_id, patient_count, forced=True)
            if decision is not None:
                return decision

    def _call_reasoning(self, state, request_id, force_final=False):
        started = self.clock()
        turn = self.reasoning.complete(state.messages, TOOL_DEFINITIONS, force_final=force_final)
        elapsed_ms = int((self.clock() - started) * 1000)
        if elapsed_ms > SLOW_REASONING_MS:
            logger.warning("[%s] Slow reasoning service call: %s ms (iteration %s)",
                           request_id, elapsed_ms, state.iteration)
        state.add(turn.message)
        return turn

    def _dispatch_tools(self, state, recorder, turn, request_id, selected_patient_id, patient_count):
        for invocation in turn.tool_invocations:
            started = self.clock()
            outcome = self.dispatcher.dispatch(invocation, selected_patient_id, patient_count)
            duration_ms = int((self.clock() - started) * 1000)
            if duration_ms > SLOW_TOOL_MS:
                logger.warning("[%s] Slow tool execution: %s took %s ms", request_id, invocation.name, duration_ms)
            if not outcome.ok:
                logger.info("[%s] Tool %s failed: %s", request_id, invocation.name, outcome.message)

            recorder.record_tool(state.iteration, invocation, outcome, duration_ms)
            state.add({
                "role": "tool",
                "tool_call_id": invocation.call_id,
                "content": outcome.to_message_content(),
            })

    def _validate(self, state, recorder, candidate, selected_patient_id, patient_count, forced):
        """
        Returns the terminal decision, or None when a corrective retry was granted.
        """
        sql = strip_trailing_comment(candidate.sql)
        outcome = self.validator.validate_candidate(sql, selected_patient_id, patient_count)
        recorder.record_validation(state.iteration, candidate, outcome, state.retry_count, forced=forced)

        if outcome.valid:
            return recorder.success(candidate, outcome.sql, state.iteration, forced_completion=forced)

        if state.retry_count >= 1:
            return recorder.failure(VALIDATION_FAILED, state.iteration,
                                    forced_completion=forced, validation=outcome)

        state.retry_count += 1
        state.add({
            "role": "tool",
            "tool_call_id": candidate.call_id,
            "content": to_json({
                "error": "Validation failed",
                "violation_code": outcome.violation_code,
                "violations": outcome.violation_dicts(),
                "message": VALIDATION_FEEDBACK_MESSAGE,
            }),
        })
        return None
