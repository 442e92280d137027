import logging
import math
from enum import Enum

import pandas as pd
from sqlalchemy import text

from database import db
from agents.errors import ToolExecutionError
from agents.outcomes import ToolOutcome
from agents.validator import apply_row_limit

logger = logging.getLogger(__name__)

MAX_SEARCH_LIMIT = 50


class ToolName(Enum):
    SEARCH_SIMILAR_NAMES = 'search_similar_names'
    RUN_EXPLORATORY_QUERY = 'run_exploratory_query'
    FINALIZE_ANSWER = 'finalize_answer'

    @classmethod
    def parse(cls, name):
        try:
            return cls(name)
        except ValueError:
            return None


# OpenAI function-calling schemas
TOOL_DEFINITIONS = [
    {
        "type": "function",
        "function": {
            "name": ToolName.SEARCH_SIMILAR_NAMES.value,
            "description": (
                "Fuzzy search over recorded lab parameter names (e.g. 'hba1c', 'vit d'). "
                "Returns the closest names with a similarity score. Use it before filtering "
                "on parameter_name when you are unsure of the exact spelling."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "search_term": {"type": "string", "description": "Text to match against parameter names."},
                    "limit": {"type": "integer", "description": "Maximum number of matches (default 20, max 50)."},
                },
                "required": ["search_term"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": ToolName.RUN_EXPLORATORY_QUERY.value,
            "description": (
                "Runs a read-only SELECT to preview data (units, value formats, date ranges). "
                "At most 20 rows are returned. The same safety and patient rules as the final query apply."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "sql": {"type": "string", "description": "A single SELECT or WITH statement."},
                    "reasoning": {"type": "string", "description": "What you want to learn from this query."},
                },
                "required": ["sql", "reasoning"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": ToolName.FINALIZE_ANSWER.value,
            "description": "Declares the final SQL query that answers the user's question.",
            "parameters": {
                "type": "object",
                "properties": {
                    "sql": {"type": "string", "description": "The final SELECT or WITH statement."},
                    "explanation": {"type": "string", "description": "Plain-language explanation of the query."},
                    "confidence": {"type": "string", "enum": ["high", "medium", "low"]},
                },
                "required": ["sql", "explanation", "confidence"],
            },
        },
    },
]

SIMILARITY_SEARCH_SQL = """
SELECT names.parameter_name, similarity(names.parameter_name, :search_term) AS similarity
FROM (SELECT DISTINCT parameter_name FROM lab_results) AS names
WHERE names.parameter_name % :search_term
ORDER BY similarity DESC, names.parameter_name ASC
LIMIT :limit
"""


class SimilaritySearchTool:
    """Trigram search over lab_results.parameter_name (requires the pg_trgm extension)."""

    def __init__(self, default_limit=20, similarity_threshold=0.3):
        self.default_limit = default_limit
        self.similarity_threshold = similarity_threshold

    def _clamp_limit(self, limit):
        try:
            limit = int(limit) if limit is not None else self.default_limit
        except (TypeError, ValueError):
            limit = self.default_limit
        return max(1, min(limit, MAX_SEARCH_LIMIT))

    def search(self, search_term, limit=None):
        if not isinstance(search_term, str) or not search_term.strip():
            raise ToolExecutionError("search_term must be a non-empty string")
        search_term = search_term.strip()
        limit = self._clamp_limit(limit)

        # The threshold only lives for this transaction
        with db.engine.begin() as conn:
            conn.execute(
                text("SELECT set_config('pg_trgm.similarity_threshold', :threshold, true)"),
                {"threshold": str(self.similarity_threshold)},
            )
            rows = conn.execute(
                text(SIMILARITY_SEARCH_SQL),
                {"search_term": search_term, "limit": limit},
            ).mappings().all()

        matches = [
            {"name": row["parameter_name"], "similarity": round(float(row["similarity"]), 3)}
            for row in rows
        ]
        return {
            "search_term": search_term,
            "matches_found": len(matches),
            "matches": matches,
        }


class ExploratoryQueryTool:
    """
    Validated preview queries. The SQL goes through the same safety and scope
    checks as a final answer, its outer LIMIT is tightened to the exploration
    cap, and it runs in a read-only transaction with a statement timeout.
    """

    def __init__(self, validator, row_limit=20, statement_timeout_ms=5000):
        self.validator = validator
        self.row_limit = row_limit
        self.statement_timeout_ms = statement_timeout_ms

    def run(self, sql, reasoning, selected_patient_id=None, patient_count=0):
        if not isinstance(sql, str) or not sql.strip():
            raise ToolExecutionError("sql must be a non-empty string")

        validation = self.validator.validate_candidate(sql, selected_patient_id, patient_count)
        if not validation.valid:
            return ToolOutcome(
                ok=False,
                payload={"violations": validation.violation_dicts()},
                message=f"Query rejected ({validation.violation_code}): {validation.message}",
            )

        executed_sql = apply_row_limit(validation.sql, self.row_limit)
        df = self._execute(executed_sql)
        # NaN is not valid JSON
        rows = [
            {key: (None if isinstance(value, float) and math.isnan(value) else value) for key, value in row.items()}
            for row in df.to_dict(orient='records')
        ]
        return ToolOutcome.success({
            "rows": rows,
            "row_count": len(rows),
            "fields": list(df.columns),
            "reasoning": reasoning or '',
            "query_executed": executed_sql,
        })

    def _execute(self, sql):
        with db.engine.connect() as conn:
            with conn.begin():
                conn.execute(text("SET TRANSACTION READ ONLY"))
                conn.execute(
                    text("SELECT set_config('statement_timeout', :timeout, true)"),
                    {"timeout": str(self.statement_timeout_ms)},
                )
                return pd.read_sql(text(sql), conn)


class ToolDispatcher:
    """
    Routes a ToolInvocation to its tool. Exceptions never escape: every
    failure becomes a ToolOutcome failure fed back to the reasoning service.
    """

    def __init__(self, search_tool, exploratory_tool):
        self.search_tool = search_tool
        self.exploratory_tool = exploratory_tool

    def dispatch(self, invocation, selected_patient_id=None, patient_count=0):
        if invocation.parse_error:
            return ToolOutcome.failure(f"Invalid tool arguments: {invocation.parse_error}")

        tool = ToolName.parse(invocation.name)
        params = invocation.params or {}
        try:
            if tool is ToolName.SEARCH_SIMILAR_NAMES:
                return ToolOutcome.success(
                    self.search_tool.search(params.get('search_term'), params.get('limit'))
                )
            if tool is ToolName.RUN_EXPLORATORY_QUERY:
                return self.exploratory_tool.run(
                    params.get('sql'), params.get('reasoning'),
                    selected_patient_id=selected_patient_id,
                    patient_count=patient_count,
                )
            if tool is ToolName.FINALIZE_ANSWER:
                return ToolOutcome.failure(
                    "finalize_answer is handled by the orchestrator and cannot be dispatched"
                )
            return ToolOutcome.failure(f"Unknown tool: {invocation.name}")
        except ToolExecutionError as e:
            return ToolOutcome.failure(str(e))
        except Exception as e:
            logger.warning("Tool %s failed: %s", invocation.name, e)
            return ToolOutcome.failure(f"Tool execution failed: {e}")
