import itertools
import unittest
from unittest.mock import MagicMock
from agents.errors import ReasoningServiceError, ToolExecutionError
from agents.orchestrator import AgentLoopOrchestrator, ConversationState, strip_trailing_comment
from agents.outcomes import CandidateQuery, ToolInvocation
from agents.prompts import NUDGE_MESSAGE, FORCED_COMPLETION_MESSAGE
from agents.reasoning import ReasoningTurn
from agents.validator import SqlSafetyValidator

SCOPED_SQL = "SELECT * FROM lab_results WHERE patient_id = 'A' LIMIT 50"
LEAKING_SQL = "SELECT * FROM lab_results WHERE patient_id = 'A' OR patient_id = 'B'"


def turn(*calls, final=None):
    invocations = [
        ToolInvocation(name=name, params=params, call_id=f"call_{i}")
        for i, (name, params) in enumerate(calls)
    ]
    final_answer = None
    if final is not None:
        final_answer = CandidateQuery(sql=final, explanation="Lab results.", confidence='high', call_id='final')
    return ReasoningTurn(message={"role": "assistant", "content": None},
                         tool_invocations=invocations, final_answer=final_answer)


def search(term):
    return ('search_similar_names', {"search_term": term})


class TestAgentLoopOrchestrator(unittest.TestCase):
    def setUp(self):
        self.reasoning = MagicMock()
        self.search_tool = MagicMock()
        self.search_tool.search.return_value = {"search_term": "x", "matches_found": 1,
                                                "matches": [{"name": "Vitamin D", "similarity": 0.9}]}
        self.exploratory_tool = MagicMock()
        self.audit_logger = MagicMock()
        self.validator = SqlSafetyValidator(policy_path=None)

    def orchestrator(self, max_iterations=5, timeout_ms=120000, clock=None):
        return AgentLoopOrchestrator(
            self.reasoning, self.search_tool, self.exploratory_tool, self.validator, self.audit_logger,
            max_iterations=max_iterations, timeout_ms=timeout_ms, clock=clock or (lambda: 0.0),
        )

    def messages(self):
        return self.reasoning.complete.call_args[0][0]

    def test_single_patient_search_then_finalize(self):
        self.reasoning.complete.return_value = turn(
            search("vitamin d"),
            final="SELECT * FROM lab_results WHERE parameter_name = 'Vitamin D' LIMIT 50",
        )

        decision = self.orchestrator().run("show my vitamin D", "schema", None, patient_count=1)

        self.assertTrue(decision.ok)
        self.assertEqual(decision.sql, "SELECT * FROM lab_results WHERE parameter_name = 'Vitamin D' LIMIT 50")
        self.assertEqual(decision.iteration_count, 1)
        self.assertFalse(decision.forced_completion)
        self.search_tool.search.assert_called_once_with("vitamin d", None)
        self.assertEqual([r.kind for r in decision.iteration_trace], ['tool', 'validation'])
        self.assertIn("Vitamin D", decision.iteration_trace[0].result_preview)

    def test_system_message_carries_patient_scope(self):
        self.reasoning.complete.return_value = turn(final=SCOPED_SQL)

        self.orchestrator().run("glucose", "### lab_results", 'A', patient_count=2)

        system = self.messages()[0]
        self.assertEqual(system["role"], "system")
        self.assertIn("### lab_results", system["content"])
        self.assertIn("patient_id = 'A'", system["content"])
        self.assertEqual(self.messages()[1], {"role": "user", "content": "glucose"})

    def test_missing_filter_corrected_on_retry(self):
        self.reasoning.complete.side_effect = [
            turn(final="SELECT * FROM lab_results LIMIT 50"),
            turn(final=SCOPED_SQL),
        ]

        decision = self.orchestrator().run("show my labs", "schema", 'A', patient_count=2)

        self.assertTrue(decision.ok)
        self.assertEqual(decision.sql, SCOPED_SQL)
        self.assertEqual(decision.iteration_count, 1)
        first, second = decision.iteration_trace
        self.assertEqual(first.violation_code, 'MISSING_PATIENT_FILTER')
        self.assertEqual(first.retry_count, 0)
        self.assertEqual(second.retry_count, 1)
        feedback = [m for m in self.messages() if m.get("role") == "tool"]
        self.assertEqual(feedback[0]["tool_call_id"], "final")
        self.assertIn("MISSING_PATIENT_FILTER", feedback[0]["content"])

    def test_second_validation_failure_is_terminal(self):
        self.reasoning.complete.return_value = turn(final=LEAKING_SQL)

        decision = self.orchestrator().run("compare with B", "schema", 'A', patient_count=2)

        self.assertFalse(decision.ok)
        self.assertEqual(decision.error_code, 'VALIDATION_FAILED')
        self.assertEqual(decision.violation_code, 'CROSS_PATIENT_LEAK')
        self.assertEqual(self.reasoning.complete.call_count, 2)
        self.assertIsNone(decision.to_response().get('sql'))
        self.assertEqual(decision.to_response()['error']['code'], 'VALIDATION_FAILED')

    def test_retry_does_not_consume_an_iteration(self):
        self.reasoning.complete.side_effect = [
            turn(final="SELECT * FROM lab_results LIMIT 50"),
            turn(final=SCOPED_SQL),
        ]

        decision = self.orchestrator(max_iterations=1).run("labs", "schema", 'A', patient_count=2)

        self.assertTrue(decision.ok)
        self.assertFalse(decision.forced_completion)

    def test_timeout_before_first_call(self):
        ticks = itertools.chain([0.0], itertools.repeat(5.0))

        decision = self.orchestrator(timeout_ms=1000, clock=lambda: next(ticks)).run(
            "labs", "schema", None, patient_count=1)

        self.assertFalse(decision.ok)
        self.assertEqual(decision.error_code, 'TIMEOUT')
        self.reasoning.complete.assert_not_called()

    def test_deadline_checked_between_iterations(self):
        now = [0.0]

        def slow_turn(*args, **kwargs):
            now[0] += 0.6
            return turn(search("glucose"))

        self.reasoning.complete.side_effect = slow_turn

        decision = self.orchestrator(timeout_ms=1000, clock=lambda: now[0]).run(
            "glucose", "schema", 'A', patient_count=2)

        self.assertFalse(decision.ok)
        self.assertEqual(decision.error_code, 'TIMEOUT')
        self.assertEqual(decision.iteration_count, 2)
        self.assertEqual(self.reasoning.complete.call_count, 2)
        self.assertEqual([r.kind for r in decision.iteration_trace], ['tool', 'tool'])

    def test_forced_completion(self):
        self.reasoning.complete.side_effect = [
            turn(search("glucose")),
            turn(search("glucose fasting")),
            turn(final=SCOPED_SQL),
        ]

        decision = self.orchestrator(max_iterations=2).run("glucose", "schema", 'A', patient_count=2)

        self.assertTrue(decision.ok)
        self.assertTrue(decision.forced_completion)
        self.assertEqual(decision.iteration_count, 3)
        self.assertTrue(decision.to_response()['metadata']['forced_completion'])
        calls = self.reasoning.complete.call_args_list
        self.assertEqual([c[1]['force_final'] for c in calls], [False, False, True])
        self.assertIn({"role": "user", "content": FORCED_COMPLETION_MESSAGE}, self.messages())

    def test_no_final_query_after_forced_round(self):
        self.reasoning.complete.return_value = turn()

        decision = self.orchestrator(max_iterations=2).run("hello", "schema", None, patient_count=1)

        self.assertFalse(decision.ok)
        self.assertEqual(decision.error_code, 'NO_FINAL_QUERY')
        self.assertEqual(self.reasoning.complete.call_count, 3)
        nudges = [m for m in self.messages() if m.get("content") == NUDGE_MESSAGE]
        self.assertEqual(len(nudges), 2)

    def test_forced_round_service_error(self):
        self.reasoning.complete.side_effect = [turn(), ReasoningServiceError("boom")]

        decision = self.orchestrator(max_iterations=1).run("hello", "schema", None, patient_count=1)

        self.assertEqual(decision.error_code, 'NO_FINAL_QUERY')

    def test_reasoning_service_error(self):
        self.reasoning.complete.side_effect = ReasoningServiceError("rate limited")

        decision = self.orchestrator().run("labs", "schema", None, patient_count=1)

        self.assertFalse(decision.ok)
        self.assertEqual(decision.error_code, 'API_ERROR')
        self.assertEqual(decision.iteration_count, 1)

    def test_tool_failure_does_not_stop_loop(self):
        self.search_tool.search.side_effect = ToolExecutionError("search_term must be a non-empty string")
        self.reasoning.complete.side_effect = [
            turn(search("")),
            turn(final="SELECT * FROM lab_results"),
        ]

        decision = self.orchestrator().run("labs", "schema", None, patient_count=1)

        self.assertTrue(decision.ok)
        self.assertEqual(decision.iteration_count, 2)
        self.assertEqual(decision.iteration_trace[0].error, "search_term must be a non-empty string")
        tool_messages = [m for m in self.messages() if m.get("role") == "tool"]
        self.assertEqual(tool_messages[0]["tool_call_id"], "call_0")
        self.assertIn("error", tool_messages[0]["content"])

    def test_trailing_comment_stripped(self):
        self.reasoning.complete.return_value = turn(final="SELECT * FROM lab_results; -- latest first")

        decision = self.orchestrator().run("labs", "schema", None, patient_count=1)

        self.assertEqual(decision.sql, "SELECT * FROM lab_results LIMIT 50")

    def test_audit_logged_once_per_request(self):
        self.reasoning.complete.return_value = turn(final=SCOPED_SQL)

        decision = self.orchestrator().run("labs", "schema", 'A', patient_count=2, user_identifier='user-1')

        self.audit_logger.log.assert_called_once()
        args, kwargs = self.audit_logger.log.call_args
        self.assertIs(args[0], decision)
        self.assertEqual(args[2], "labs")
        self.assertEqual(kwargs['user_identifier'], 'user-1')

    def test_response_hides_confidence_and_trace(self):
        self.reasoning.complete.return_value = turn(final=SCOPED_SQL)

        response = self.orchestrator().run("labs", "schema", 'A', patient_count=2).to_response()

        self.assertEqual(set(response), {"ok", "sql", "explanation", "metadata"})
        self.assertEqual(response["metadata"], {"iteration_count": 1, "forced_completion": False})


class TestConversationHelpers(unittest.TestCase):
    def test_deadline(self):
        state = ConversationState(max_iterations=5, timeout_ms=1000, started_at=10.0)
        self.assertFalse(state.deadline_passed(10.5))
        self.assertTrue(state.deadline_passed(11.5))
        self.assertEqual(state.iteration, 1)
        self.assertEqual(state.retry_count, 0)

    def test_strip_trailing_comment(self):
        self.assertEqual(strip_trailing_comment("SELECT 1; -- done"), "SELECT 1;")
        self.assertEqual(strip_trailing_comment("SELECT 1 -- inline"), "SELECT 1 -- inline")
        self.assertEqual(strip_trailing_comment("SELECT 1;"), "SELECT 1;")

if __name__ == '__main__':
    unittest.main()
