import unittest
from unittest.mock import MagicMock, patch
import pandas as pd
from agents.errors import ToolExecutionError
from agents.outcomes import ToolInvocation, ToolOutcome
from agents.tools import (
    SimilaritySearchTool, ExploratoryQueryTool, ToolDispatcher, ToolName, TOOL_DEFINITIONS,
)
from agents.validator import SqlSafetyValidator

class TestSimilaritySearchTool(unittest.TestCase):
    def setUp(self):
        self.tool = SimilaritySearchTool(default_limit=20, similarity_threshold=0.3)

    @patch('agents.tools.db')
    def test_search_returns_ranked_matches(self, mock_db):
        conn = mock_db.engine.begin.return_value.__enter__.return_value
        conn.execute.return_value.mappings.return_value.all.return_value = [
            {"parameter_name": "Vitamin D, 25-Hydroxy", "similarity": 0.8123},
            {"parameter_name": "Витамин D (25-OH)", "similarity": 0.41},
        ]

        result = self.tool.search("vitamin d")

        self.assertEqual(result['matches_found'], 2)
        self.assertEqual(result['matches'][0], {"name": "Vitamin D, 25-Hydroxy", "similarity": 0.812})
        # Threshold applied first, within the same transaction
        threshold_call, search_call = conn.execute.call_args_list
        self.assertIn("pg_trgm.similarity_threshold", str(threshold_call[0][0]))
        self.assertEqual(threshold_call[0][1], {"threshold": "0.3"})
        self.assertEqual(search_call[0][1], {"search_term": "vitamin d", "limit": 20})
        self.assertIn("ORDER BY similarity DESC, names.parameter_name ASC", str(search_call[0][0]))

    @patch('agents.tools.db')
    def test_search_no_matches_is_success(self, mock_db):
        conn = mock_db.engine.begin.return_value.__enter__.return_value
        conn.execute.return_value.mappings.return_value.all.return_value = []

        result = self.tool.search("zzz")

        self.assertEqual(result, {"search_term": "zzz", "matches_found": 0, "matches": []})

    @patch('agents.tools.db')
    def test_search_limit_clamped(self, mock_db):
        conn = mock_db.engine.begin.return_value.__enter__.return_value
        conn.execute.return_value.mappings.return_value.all.return_value = []

        self.tool.search("glucose", limit=500)

        self.assertEqual(conn.execute.call_args_list[1][0][1]["limit"], 50)

    def test_search_requires_term(self):
        with self.assertRaises(ToolExecutionError):
            self.tool.search("  ")
        with self.assertRaises(ToolExecutionError):
            self.tool.search(None)


class TestExploratoryQueryTool(unittest.TestCase):
    def setUp(self):
        self.validator = SqlSafetyValidator(policy_path=None)
        self.tool = ExploratoryQueryTool(self.validator, row_limit=20, statement_timeout_ms=5000)

    @patch('agents.tools.pd.read_sql')
    @patch('agents.tools.db')
    def test_exploration_cap_overrides_requested_limit(self, mock_db, mock_read_sql):
        mock_read_sql.return_value = pd.DataFrame([
            {"parameter_name": "Glucose", "result_value": "5.1", "reference_upper": 5.6},
            {"parameter_name": "HbA1c", "result_value": "5.4", "reference_upper": float('nan')},
        ])

        outcome = self.tool.run("SELECT * FROM lab_results LIMIT 500", "check value formats", patient_count=1)

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.payload['query_executed'], "SELECT * FROM lab_results LIMIT 20")
        self.assertEqual(str(mock_read_sql.call_args[0][0]), "SELECT * FROM lab_results LIMIT 20")
        self.assertEqual(outcome.payload['row_count'], 2)
        self.assertEqual(outcome.payload['fields'], ["parameter_name", "result_value", "reference_upper"])
        self.assertIsNone(outcome.payload['rows'][1]['reference_upper'])
        self.assertEqual(outcome.payload['reasoning'], "check value formats")

    @patch('agents.tools.pd.read_sql')
    @patch('agents.tools.db')
    def test_runs_read_only_with_statement_timeout(self, mock_db, mock_read_sql):
        mock_read_sql.return_value = pd.DataFrame([])
        conn = mock_db.engine.connect.return_value.__enter__.return_value

        self.tool.run("SELECT unit FROM lab_results", "units", patient_count=1)

        statements = [str(c[0][0]) for c in conn.execute.call_args_list]
        self.assertEqual(statements[0], "SET TRANSACTION READ ONLY")
        self.assertIn("statement_timeout", statements[1])
        self.assertEqual(conn.execute.call_args_list[1][0][1], {"timeout": "5000"})

    @patch('agents.tools.pd.read_sql')
    def test_validation_failure_is_tool_failure(self, mock_read_sql):
        outcome = self.tool.run("SELECT * FROM lab_results", "peek", selected_patient_id='A', patient_count=2)

        self.assertFalse(outcome.ok)
        self.assertIn("MISSING_PATIENT_FILTER", outcome.message)
        self.assertEqual(outcome.payload['violations'][0]['code'], "MISSING_PATIENT_FILTER")
        mock_read_sql.assert_not_called()

    @patch('agents.tools.pd.read_sql')
    def test_unsafe_sql_never_executed(self, mock_read_sql):
        outcome = self.tool.run("DELETE FROM lab_results", "oops", patient_count=1)

        self.assertFalse(outcome.ok)
        mock_read_sql.assert_not_called()


class TestToolDispatcher(unittest.TestCase):
    def setUp(self):
        self.search_tool = MagicMock()
        self.exploratory_tool = MagicMock()
        self.dispatcher = ToolDispatcher(self.search_tool, self.exploratory_tool)

    def test_dispatch_search(self):
        self.search_tool.search.return_value = {"matches_found": 0, "matches": []}
        invocation = ToolInvocation(name='search_similar_names', params={"search_term": "ldl", "limit": 5})

        outcome = self.dispatcher.dispatch(invocation)

        self.assertTrue(outcome.ok)
        self.search_tool.search.assert_called_once_with("ldl", 5)

    def test_dispatch_exploratory_passes_scope(self):
        self.exploratory_tool.run.return_value = ToolOutcome.success({"rows": []})
        invocation = ToolInvocation(name='run_exploratory_query', params={"sql": "SELECT 1", "reasoning": "r"})

        self.dispatcher.dispatch(invocation, selected_patient_id='A', patient_count=2)

        self.exploratory_tool.run.assert_called_once_with("SELECT 1", "r", selected_patient_id='A', patient_count=2)

    def test_unknown_tool(self):
        outcome = self.dispatcher.dispatch(ToolInvocation(name='drop_everything'))
        self.assertFalse(outcome.ok)
        self.assertIn("Unknown tool", outcome.message)

    def test_bad_arguments(self):
        outcome = self.dispatcher.dispatch(ToolInvocation(name='search_similar_names', parse_error='bad json'))
        self.assertFalse(outcome.ok)
        self.search_tool.search.assert_not_called()

    def test_tool_errors_become_failures(self):
        self.search_tool.search.side_effect = ToolExecutionError("search_term must be a non-empty string")
        outcome = self.dispatcher.dispatch(ToolInvocation(name='search_similar_names', params={}))
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.message, "search_term must be a non-empty string")

        self.exploratory_tool.run.side_effect = RuntimeError("connection reset")
        outcome = self.dispatcher.dispatch(ToolInvocation(name='run_exploratory_query', params={"sql": "SELECT 1"}))
        self.assertFalse(outcome.ok)
        self.assertIn("connection reset", outcome.to_message_content())

    def test_tool_definitions_cover_every_tool(self):
        names = {d["function"]["name"] for d in TOOL_DEFINITIONS}
        self.assertEqual(names, {t.value for t in ToolName})

if __name__ == '__main__':
    unittest.main()
