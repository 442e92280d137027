import json
import logging
import os
import re

import yaml
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from database import db
from agents.outcomes import ValidationOutcome, Violation
from agents.patient_scope import validate_patient_scope, PATIENT_COLUMNS, PATIENT_TABLES
from agents.sql_text import (
    strip_comments, strip_trailing_semicolons, mask_string_literals, tokenize,
    enclosing_paren, is_word, unquote_literal,
)

logger = logging.getLogger(__name__)

# Whole-word, case-insensitive
FORBIDDEN_KEYWORDS = [
    'INSERT', 'UPDATE', 'DELETE', 'MERGE', 'TRUNCATE',
    'ALTER', 'DROP', 'CREATE', 'GRANT', 'REVOKE',
    'COPY', 'CALL', 'DO', 'EXECUTE', 'PREPARE', 'DEALLOCATE',
    'VACUUM', 'ANALYZE', 'CLUSTER', 'REFRESH', 'REINDEX', 'CHECKPOINT',
    'SET', 'RESET', 'SHOW', 'COMMENT', 'DISCARD', 'LOAD',
    'SECURITY LABEL', 'LISTEN', 'UNLISTEN', 'NOTIFY',
]

FORBIDDEN_PATTERNS = {
    r'\bINTO\b': 'INTO',
    r'\bLOCK\b': 'LOCK',
    r'\bFOR\s+(?:NO\s+KEY\s+)?UPDATE\b': 'FOR UPDATE',
    r'\bFOR\s+(?:KEY\s+)?SHARE\b': 'FOR SHARE',
    r'\bWITH\s+TIES\b': 'WITH TIES',
    r'\bpg_temp\b': 'pg_temp',
    r'\bpg_toast\b': 'pg_toast',
}

# Prefix match: 'query_to_' also covers query_to_xml_and_xmlschema
FORBIDDEN_FUNCTIONS = [
    'pg_sleep', 'pg_read_file', 'pg_read_binary_file',
    'pg_ls_dir', 'pg_stat_file', 'pg_write_', 'pg_log_',
    'pg_terminate_backend', 'pg_cancel_backend', 'pg_reload_conf',
    'set_config', 'lo_import', 'lo_export', 'dblink',
    'query_to_', 'table_to_', 'cursor_to_', 'schema_to_', 'database_to_', 'ts_stat',
]

# Plan nodes that write or lock rows
FORBIDDEN_PLAN_NODES = ('ModifyTable', 'LockRows')

_STATEMENT_START_RE = re.compile(r'^\s*(SELECT|WITH)\b', re.I)
_NAMED_PLACEHOLDER_RE = re.compile(r'(?<!:):[a-z_]\w*', re.I)
_POSITIONAL_PLACEHOLDER_RE = re.compile(r'\$\d+')
_QUESTION_PLACEHOLDER_RE = re.compile(r'\?(?!\w)')
_DOLLAR_QUOTE_RE = re.compile(r'\$\w*\$')
_ESCAPE_STRING_RE = re.compile(r"(?<![\w$])(?:[Ee]|[Uu]&)'")
_JOIN_RE = re.compile(r'\bJOIN\b', re.I)
_SUBQUERY_OPEN_RE = re.compile(r'\(\s*(?:SELECT|WITH)\b', re.I)
_AGGREGATE_RE = re.compile(r'\b(COUNT|SUM|AVG|MIN|MAX|STDDEV|VARIANCE|ARRAY_AGG|STRING_AGG)\s*\(', re.I)
_OUTER_LIMIT_RE = re.compile(r'\bLIMIT\s+(\d+|ALL)\b(\s+OFFSET\s+\d+(?:\s+ROWS?)?)?\s*$', re.I)
_OUTER_FETCH_RE = re.compile(r'\bFETCH\s+(?:FIRST|NEXT)\s+(\d+)?\s*ROWS?\s+ONLY\s*$', re.I)
_EMBEDDED_QUERY_RE = re.compile(r'^\s*\(?\s*(SELECT|WITH|TABLE|VALUES)\b', re.I)


def apply_row_limit(sql, max_rows):
    """
    Makes sure the outer statement returns at most `max_rows` rows.

    A trailing LIMIT (or FETCH FIRST n ROWS ONLY) above the cap, and LIMIT
    ALL, is rewritten to the cap, a smaller one is kept, and a statement
    without one gets `LIMIT max_rows` appended. A LIMIT inside a subquery
    does not bound the outer statement.
    """
    sql = strip_trailing_semicolons(sql)
    fetch = _OUTER_FETCH_RE.search(sql)
    if fetch:
        # FETCH FIRST ROW ONLY means one row
        if fetch.group(1) is None or int(fetch.group(1)) <= max_rows:
            return sql
        return f"{sql[:fetch.start(1)]}{max_rows}{sql[fetch.end(1):]}"

    match = _OUTER_LIMIT_RE.search(sql)
    if not match:
        return f"{sql} LIMIT {max_rows}"

    value = match.group(1)
    limit = max_rows if value.upper() == 'ALL' else min(int(value), max_rows)
    offset = match.group(2) or ''
    return f"{sql[:match.start()]}LIMIT {limit}{offset}"


def subquery_depth(masked_sql):
    max_depth = 0
    stack = []
    for i, ch in enumerate(masked_sql):
        if ch == '(':
            is_subquery = _SUBQUERY_OPEN_RE.match(masked_sql, i) is not None
            stack.append(is_subquery)
            max_depth = max(max_depth, sum(stack))
        elif ch == ')' and stack:
            stack.pop()
    return max_depth


def _plan_node_types(node):
    yield node.get('Node Type')
    for child in node.get('Plans') or []:
        yield from _plan_node_types(child)


class ExplainPlanCheck:
    """
    Second validation layer: asks PostgreSQL for the plan of a query that
    passed the pattern checks, inside a read-only transaction with a short
    statement timeout, and rejects plans that write or lock rows. A query
    PostgreSQL cannot plan is rejected too.
    """

    def __init__(self, engine=None, statement_timeout_ms=1000):
        self.engine = engine
        self.statement_timeout_ms = statement_timeout_ms

    def check(self, sql):
        """Returns a Violation, or None when the plan is read-only."""
        try:
            plan = self._explain(sql)
        except SQLAlchemyError as e:
            reason = str(getattr(e, 'orig', None) or e).strip().splitlines()[0]
            logger.warning("EXPLAIN failed for validated SQL: %s", reason)
            return Violation('EXPLAIN_VALIDATION_FAILED', f"EXPLAIN failed: {reason}")

        if isinstance(plan, str):
            plan = json.loads(plan)
        if not plan or not isinstance(plan, list) or not isinstance(plan[0], dict) or 'Plan' not in plan[0]:
            return Violation('EXPLAIN_VALIDATION_FAILED', 'EXPLAIN returned an empty plan.')

        node_types = list(_plan_node_types(plan[0]['Plan']))
        blocked = [n for n in node_types if n in FORBIDDEN_PLAN_NODES]
        if blocked:
            return Violation(
                'EXPLAIN_VALIDATION_FAILED',
                f"Query plan contains non-read-only operation: {blocked[0]}.",
                blocked[0],
            )
        return None

    def _explain(self, sql):
        engine = self.engine or db.engine
        with engine.connect() as conn:
            with conn.begin():
                conn.execute(text("SET TRANSACTION READ ONLY"))
                conn.execute(
                    text("SELECT set_config('statement_timeout', :timeout, true)"),
                    {"timeout": str(self.statement_timeout_ms)},
                )
                return conn.execute(text(f"EXPLAIN (FORMAT JSON) {sql}")).scalar()


class SqlSafetyValidator:
    """
    Pattern-based gate admitting only a single read-only SELECT/WITH statement.

    Anything ambiguous is rejected. Rules can be extended with a YAML policy
    file; the compiled-in lists are always enforced.
    """

    def __init__(self, policy_path='policies.yaml', default_row_limit=50,
                 max_joins=5, max_subqueries=2, max_aggregates=10, plan_check=None):
        self.policy_path = policy_path
        self.plan_check = plan_check
        self.policies = self._load_policies()

        limits = self.policies.get('limits', {})
        self.default_row_limit = int(limits.get('default_row_limit', default_row_limit))
        self.max_joins = int(limits.get('max_joins', max_joins))
        self.max_subqueries = int(limits.get('max_subqueries', max_subqueries))
        self.max_aggregates = int(limits.get('max_aggregates', max_aggregates))

        self.forbidden_keywords = _merge(FORBIDDEN_KEYWORDS, self.policies.get('forbidden_keywords'))
        self.forbidden_functions = _merge(FORBIDDEN_FUNCTIONS, self.policies.get('forbidden_functions'))
        self.forbidden_patterns = dict(FORBIDDEN_PATTERNS)
        for pattern in self.policies.get('forbidden_patterns') or []:
            self.forbidden_patterns[pattern] = pattern
        self.patient_columns = tuple(_merge(PATIENT_COLUMNS, self.policies.get('patient_columns')))
        self.patient_tables = dict(PATIENT_TABLES)
        for table, column in (self.policies.get('patient_tables') or {}).items():
            self.patient_tables.setdefault(str(table).lower(), str(column).lower())

    def _load_policies(self):
        if not self.policy_path or not os.path.exists(self.policy_path):
            return {}
        with open(self.policy_path, 'r') as f:
            return yaml.safe_load(f) or {}

    @classmethod
    def from_config(cls, config):
        return cls(
            policy_path=config.SQL_POLICY_PATH,
            default_row_limit=config.SQL_DEFAULT_ROW_LIMIT,
            max_joins=config.SQLGEN_MAX_JOINS,
            max_subqueries=config.SQLGEN_MAX_SUBQUERIES,
            max_aggregates=config.SQLGEN_MAX_AGG_FUNCS,
            plan_check=ExplainPlanCheck(statement_timeout_ms=config.SQL_EXPLAIN_TIMEOUT_MS)
            if config.SQL_EXPLAIN_CHECK else None,
        )

    def validate(self, sql):
        """
        Safety stage. Returns the comment-free SQL with an enforced outer LIMIT,
        or the list of violations.
        """
        if not isinstance(sql, str) or not sql.strip():
            return ValidationOutcome.reject([Violation('EMPTY_QUERY', 'No SQL was provided.')])

        cleaned = strip_trailing_semicolons(strip_comments(sql))
        if any(token.kind == 'unterminated' for token in tokenize(cleaned)):
            return ValidationOutcome.reject([
                Violation('UNTERMINATED_LITERAL', 'Query contains an unterminated string literal.')
            ])
        masked = mask_string_literals(cleaned)

        violations = []
        if not _STATEMENT_START_RE.match(masked):
            violations.append(Violation('INVALID_STATEMENT_TYPE', 'Query must start with SELECT or WITH.'))
        violations.extend(self._check_multiple_statements(masked))
        violations.extend(self._check_forbidden_keywords(masked))
        violations.extend(self._check_forbidden_patterns(masked))
        violations.extend(self._check_forbidden_functions(masked))
        violations.extend(self._check_quoting(masked))
        violations.extend(self._check_embedded_queries(cleaned))
        violations.extend(self._check_placeholders(cleaned, masked))
        violations.extend(self._check_complexity(masked))

        if violations:
            logger.info("SQL rejected by safety stage: %s", [v.code for v in violations])
            return ValidationOutcome.reject(violations)

        return ValidationOutcome.accept(apply_row_limit(cleaned, self.default_row_limit))

    def validate_candidate(self, sql, selected_patient_id, patient_count):
        """
        Safety stage, then the patient-scope stage when the database holds more
        than one patient, then the EXPLAIN plan check when one is configured.
        """
        safety = self.validate(sql)
        if not safety.valid:
            return safety
        scope = validate_patient_scope(safety.sql, selected_patient_id, patient_count,
                                       patient_columns=self.patient_columns,
                                       patient_tables=self.patient_tables)
        if not scope.valid or self.plan_check is None:
            return scope

        violation = self.plan_check.check(scope.sql)
        if violation is not None:
            logger.info("SQL rejected by plan check: %s", violation.message)
            return ValidationOutcome.reject([violation])
        return scope

    def _check_multiple_statements(self, masked):
        if ';' in masked:
            return [Violation('MULTI_STATEMENT', 'Only a single statement is allowed.')]
        if masked.count('(') != masked.count(')'):
            return [Violation('UNBALANCED_PARENTHESES', 'Parentheses are not balanced.')]
        return []

    def _check_forbidden_keywords(self, masked):
        violations = []
        for keyword in self.forbidden_keywords:
            pattern = r'\b' + r'\s+'.join(re.escape(part) for part in keyword.split()) + r'\b'
            if re.search(pattern, masked, re.I):
                violations.append(Violation('FORBIDDEN_KEYWORD', f"Keyword '{keyword}' is not allowed.", keyword))
        return violations

    def _check_forbidden_patterns(self, masked):
        violations = []
        for pattern, label in self.forbidden_patterns.items():
            if re.search(pattern, masked, re.I):
                violations.append(Violation('FORBIDDEN_PATTERN', f"'{label}' is not allowed.", label))
        return violations

    def _check_forbidden_functions(self, masked):
        violations = []
        for func in self.forbidden_functions:
            if re.search(r'\b' + re.escape(func), masked, re.I):
                violations.append(Violation('FORBIDDEN_FUNCTION', f"Function '{func}' is not allowed.", func))
        return violations

    def _check_quoting(self, masked):
        violations = []
        if _DOLLAR_QUOTE_RE.search(masked):
            violations.append(Violation('DOLLAR_QUOTING', 'Dollar-quoted strings are not allowed.'))
        if _ESCAPE_STRING_RE.search(masked):
            violations.append(Violation('ESCAPE_STRING_SYNTAX', "Escape string literals (E'...', U&'...') are not allowed."))
        return violations

    def _check_embedded_queries(self, cleaned):
        """String arguments that carry a query or name a patient table, e.g. query_to_xml('select ...')."""
        tokens = tokenize(cleaned)
        for i, token in enumerate(tokens):
            if token.kind != 'string' or i == 0 or tokens[i - 1].kind not in ('lparen', 'comma'):
                continue
            open_index = enclosing_paren(tokens, i)
            if not open_index:
                continue
            func = tokens[open_index - 1]
            if func.kind not in ('word', 'quoted') or is_word(func, 'IN', 'VALUES', 'ANY', 'ALL', 'ARRAY'):
                continue
            value = unquote_literal(token)
            name = value.strip().replace('"', '').lower().split('.')[-1]
            if _EMBEDDED_QUERY_RE.match(value) or name in self.patient_tables:
                return [Violation(
                    'EMBEDDED_QUERY',
                    f"String argument to {func.value}() holds a query or a table name; reference tables directly.",
                    func.value,
                )]
        return []

    def _check_placeholders(self, cleaned, masked):
        violations = []
        if _NAMED_PLACEHOLDER_RE.search(cleaned):
            violations.append(Violation('PLACEHOLDER_SYNTAX', 'Named placeholders are not allowed; inline the values.', ':placeholder'))
        if _POSITIONAL_PLACEHOLDER_RE.search(cleaned):
            violations.append(Violation('PLACEHOLDER_SYNTAX', 'Positional placeholders are not allowed; inline the values.', '$N'))
        if _QUESTION_PLACEHOLDER_RE.search(masked):
            violations.append(Violation('PLACEHOLDER_SYNTAX', 'Question-mark placeholders are not allowed; inline the values.', '?'))
        return violations

    def _check_complexity(self, masked):
        violations = []

        join_count = len(_JOIN_RE.findall(masked))
        if join_count > self.max_joins:
            violations.append(Violation('TOO_MANY_JOINS', f"Query uses {join_count} joins (max {self.max_joins})."))

        depth = subquery_depth(masked)
        if depth > self.max_subqueries:
            violations.append(Violation('SUBQUERY_TOO_DEEP', f"Subqueries nested {depth} deep (max {self.max_subqueries})."))

        agg_count = len(_AGGREGATE_RE.findall(masked))
        if agg_count > self.max_aggregates:
            violations.append(Violation('TOO_MANY_AGGREGATES', f"Query uses {agg_count} aggregate functions (max {self.max_aggregates})."))

        return violations


def _merge(defaults, extra):
    merged = list(defaults)
    for item in extra or []:
        if item not in merged:
            merged.append(item)
    return merged
