"""
Patient-scope validation.

Applied to safety-validated SQL whenever the database holds more than one
patient. Each check is a pure function over the SQL text and runs in this
order:

1. set operations (UNION / INTERSECT / EXCEPT)
2. always-true disjunctions
3. presence of `patient_id = '<selected>'` (or `IN (...)`)
4. exclusivity: no other literal in any patient_id predicate
5. the scoping predicate must not be sidestepped by an OR branch
6. every reference to a patient table, in every SELECT of the statement,
   carries its own filter on the selected patient

All checks work on tokens, never on a parse tree, and reject when unsure.
"""

from collections import namedtuple

from agents.outcomes import ValidationOutcome, Violation
from agents.sql_text import (
    strip_comments, tokenize, unquote_literal, identifier_name, is_word,
    matching_paren, enclosing_paren,
)

PATIENT_COLUMNS = ('patient_id',)

SET_OPERATION_NOT_ALLOWED = 'SET_OPERATION_NOT_ALLOWED'
TAUTOLOGY_NOT_ALLOWED = 'TAUTOLOGY_NOT_ALLOWED'
MISSING_PATIENT_FILTER = 'MISSING_PATIENT_FILTER'
CROSS_PATIENT_LEAK = 'CROSS_PATIENT_LEAK'
PATIENT_FILTER_BYPASSABLE = 'PATIENT_FILTER_BYPASSABLE'

SET_OPERATORS = ('UNION', 'INTERSECT', 'EXCEPT')
COMPARISON_OPS = ('=', '<>', '!=', '<', '>', '<=', '>=')
FILTER_CLAUSES = ('WHERE', 'ON', 'HAVING')
CLAUSE_TERMINATORS = (
    'GROUP', 'ORDER', 'LIMIT', 'OFFSET', 'FETCH', 'HAVING', 'WINDOW', 'WHERE',
    'JOIN', 'LEFT', 'RIGHT', 'INNER', 'FULL', 'CROSS', 'NATURAL', 'SELECT', 'FROM',
)
CONDITIONAL_WORDS = ('CASE', 'WHEN', 'THEN', 'ELSE', 'END')
TERM_BOUNDARIES = ('AND', 'OR') + FILTER_CLAUSES + CLAUSE_TERMINATORS + CONDITIONAL_WORDS

PatientPredicate = namedtuple('PatientPredicate', 'column operator literals operand_kind start end qualifier index')


def _normalize_id(value):
    # patient_id is a case-sensitive text column
    return str(value).strip()


def _tokens(sql):
    return tokenize(strip_comments(sql))


# 1. Set operations

def check_set_operations(sql):
    for token in _tokens(sql):
        if is_word(token, *SET_OPERATORS):
            return Violation(
                SET_OPERATION_NOT_ALLOWED,
                f"{token.value.upper()} is not allowed: each combined query would need its own patient filter.",
                token.value.upper(),
            )
    return None


# 2. Tautologies

def _strip_casts(term):
    """Drops `::type` and `::type[]` suffixes."""
    result = []
    i = 0
    while i < len(term):
        if term[i].kind == 'op' and term[i].value == '::':
            i += 2
            while i < len(term) and term[i].kind == 'op' and term[i].value in ('[', ']'):
                i += 1
            continue
        result.append(term[i])
        i += 1
    return result


def _strip_outer_parens(term):
    while len(term) >= 2 and term[0].kind == 'lparen' and term[-1].kind == 'rparen' \
            and term[-1].depth == term[0].depth:
        # Only strip when the first paren closes at the very end
        inner_depth = term[0].depth
        closes_early = any(t.kind == 'rparen' and t.depth == inner_depth for t in term[1:-1])
        if closes_early:
            break
        term = term[1:-1]
    return term


def _literal_operand(term, i):
    """(value, is_number, next_index) for a literal at term[i], with optional unary minus."""
    negative = False
    if i < len(term) and term[i].kind == 'op' and term[i].value in ('-', '+'):
        negative = term[i].value == '-'
        i += 1
    if i < len(term) and term[i].kind in ('string', 'number'):
        value = unquote_literal(term[i])
        if term[i].kind == 'number':
            return (('-' if negative else '') + value, True, i + 1)
        if not negative:
            return (value, False, i + 1)
    return None


def _literal_list(term, i):
    """[(value, is_number), ...] for a parenthesised list of literals filling term[i:], else None."""
    if i >= len(term) or term[i].kind != 'lparen' or term[-1].kind != 'rparen':
        return None
    members = []
    j = i + 1
    while j < len(term) - 1:
        operand = _literal_operand(term, j)
        if operand is None:
            return None
        members.append(operand[:2])
        j = operand[2]
        if term[j].kind == 'comma':
            j += 1
        elif j != len(term) - 1:
            return None
    return members or None


def _compare(left, op, right):
    """Evaluates a comparison between two literals; ambiguous comparisons count as true."""
    (lval, lnum), (rval, rnum) = left, right
    if lnum or rnum:
        try:
            lval, rval = float(lval), float(rval)
        except ValueError:
            return True
    elif op not in ('=', '<>', '!='):
        # String ordering depends on collation
        return True
    return {
        '=': lval == rval,
        '<>': lval != rval,
        '!=': lval != rval,
        '<': lval < rval,
        '>': lval > rval,
        '<=': lval <= rval,
        '>=': lval >= rval,
    }[op]


def _is_always_true(term):
    term = _strip_outer_parens(_strip_casts(term))
    if not term:
        return False
    values = [t.value.upper() if t.kind == 'word' else t.value for t in term]

    if values == ['TRUE'] or values == ['NOT', 'FALSE']:
        return True
    if len(term) == 1 and term[0].kind == 'number':
        return float(term[0].value) != 0
    if len(term) >= 2 and is_word(term[-2], 'LIKE', 'ILIKE') and term[-1].kind == 'string' \
            and unquote_literal(term[-1]) and set(unquote_literal(term[-1])) == {'%'}:
        return True
    if len(term) == 4 and term[0].kind in ('string', 'number') and values[1:] == ['IS', 'NOT', 'NULL']:
        return True
    if values in (['NULL', 'IS', 'NULL'], ['NULL', 'IS', 'NOT', 'DISTINCT', 'FROM', 'NULL']):
        return True

    left = _literal_operand(term, 0)
    if left is not None:
        value, is_number, i = left
        if i < len(term) and term[i].kind == 'op' and term[i].value in COMPARISON_OPS:
            right = _literal_operand(term, i + 1)
            if right is not None and right[2] == len(term):
                return _compare((value, is_number), term[i].value, right[:2])

        negated = values[i:i + 1] == ['NOT']
        j = i + 1 if negated else i
        if values[j:j + 1] == ['IN']:
            members = _literal_list(term, j + 1)
            if members is not None:
                found = any(_compare((value, is_number), '=', member) for member in members)
                return found != negated
        if values[j:j + 1] == ['BETWEEN']:
            low = _literal_operand(term, j + 1)
            if low is not None and low[2] < len(term) and is_word(term[low[2]], 'AND'):
                high = _literal_operand(term, low[2] + 1)
                if high is not None and high[2] == len(term):
                    inside = _compare((value, is_number), '>=', low[:2]) and \
                        _compare((value, is_number), '<=', high[:2])
                    return inside != negated

    # Column compared with itself
    for i, token in enumerate(term):
        if token.kind == 'op' and token.value in ('=', '<=', '>='):
            lhs = [t.value.lower() for t in term[:i]]
            rhs = [t.value.lower() for t in term[i + 1:]]
            if lhs and lhs == rhs and all(t.kind in ('word', 'quoted', 'dot') for t in term[:i]):
                return True
            break
    return False


def _boolean_term(tokens, index, step):
    """Tokens of the boolean term next to the OR at `index`, walking left (-1) or right (+1)."""
    depth = tokens[index].depth
    term = []
    i = index + step
    while 0 <= i < len(tokens):
        token = tokens[i]
        if token.depth < depth or (token.depth == depth and token.kind in ('comma', 'semicolon')):
            break
        if token.depth == depth and is_word(token, *TERM_BOUNDARIES) \
                and not (is_word(token, 'AND') and _closes_between(tokens, i, depth)):
            break
        term.append(token)
        i += step
    if step < 0:
        term.reverse()
    return term


def _closes_between(tokens, and_index, depth):
    """True when the AND at `and_index` belongs to `x BETWEEN a AND b`."""
    i = and_index - 1
    while i >= 0 and tokens[i].depth >= depth:
        token = tokens[i]
        if token.depth == depth:
            if is_word(token, 'BETWEEN'):
                return True
            if is_word(token, *TERM_BOUNDARIES) or token.kind in ('comma', 'semicolon'):
                return False
        i -= 1
    return False


def check_tautologies(sql):
    tokens = _tokens(sql)
    for index, token in enumerate(tokens):
        if not is_word(token, 'OR'):
            continue
        for step in (-1, 1):
            term = _boolean_term(tokens, index, step)
            if _is_always_true(term):
                text = ' '.join(t.value for t in term)
                return Violation(
                    TAUTOLOGY_NOT_ALLOWED,
                    f"Always-true condition '{text}' in an OR clause would disable the patient filter.",
                    text,
                )
    return None


# 3-4. Patient predicates

def _is_patient_column(tokens, i, patient_columns):
    name = identifier_name(tokens[i])
    if name not in patient_columns:
        return False
    nxt = tokens[i + 1] if i + 1 < len(tokens) else None
    if nxt is not None and nxt.kind in ('dot', 'lparen'):
        return False
    prev = tokens[i - 1] if i > 0 else None
    return not is_word(prev, 'AS')


def _read_operator(tokens, i):
    """(operator, next_index) for a comparison starting at tokens[i], or (None, i)."""
    if i >= len(tokens):
        return None, i
    token = tokens[i]
    if token.kind == 'op' and token.value in COMPARISON_OPS + ('~', '~*', '!~', '!~*'):
        return token.value, i + 1

    words = []
    j = i
    while j < len(tokens) and tokens[j].kind == 'word' and len(words) < 4:
        words.append(tokens[j].value.upper())
        j += 1
    phrase = ' '.join(words)
    for candidate in ('IS NOT DISTINCT FROM', 'IS DISTINCT FROM', 'NOT BETWEEN', 'NOT SIMILAR TO',
                      'SIMILAR TO', 'NOT ILIKE', 'NOT LIKE', 'NOT IN', 'BETWEEN', 'ILIKE', 'LIKE', 'IN', 'IS'):
        if phrase == candidate or phrase.startswith(candidate + ' '):
            return candidate, i + len(candidate.split())
    return None, i


def _group_literals(tokens, start, end):
    return tuple(unquote_literal(t) for t in tokens[start:end] if t.kind in ('string', 'number'))


def _read_operand(tokens, i):
    """(operand_kind, literals, end_index_exclusive) for the operand starting at tokens[i]."""
    if i >= len(tokens):
        return 'none', (), i
    token = tokens[i]

    value = None
    if token.kind in ('string', 'number'):
        value, j = unquote_literal(token), i + 1
    elif token.kind == 'op' and token.value == '-' and i + 1 < len(tokens) and tokens[i + 1].kind == 'number':
        value, j = '-' + tokens[i + 1].value, i + 2
    if value is not None:
        while j + 1 < len(tokens) and tokens[j].kind == 'op' and tokens[j].value == '::':
            j += 2
        return 'literal', (value,), j

    if token.kind == 'lparen':
        close = matching_paren(tokens, i)
        end = close + 1 if close is not None else len(tokens)
        if i + 1 < len(tokens) and is_word(tokens[i + 1], 'SELECT', 'WITH'):
            return 'subquery', (), end
        return 'list', _group_literals(tokens, i + 1, end - 1), end

    if is_word(token, 'ANY', 'ALL', 'SOME', 'ARRAY'):
        j = i + 1
        if j < len(tokens) and tokens[j].kind == 'lparen':
            close = matching_paren(tokens, j)
            end = close + 1 if close is not None else len(tokens)
            if j + 1 < len(tokens) and is_word(tokens[j + 1], 'SELECT', 'WITH'):
                return 'subquery', (), end
            return 'array', _group_literals(tokens, j + 1, end - 1), end
        if j < len(tokens) and tokens[j].value == '[':
            end = j
            while end < len(tokens) and tokens[end].value != ']':
                end += 1
            return 'array', _group_literals(tokens, j + 1, end), min(end + 1, len(tokens))

    if is_word(token, 'NULL', 'TRUE', 'FALSE'):
        return 'none', (), i + 1
    return 'expression', (), i + 1


def _column_start(tokens, i):
    """Index of the first token of a possibly alias-qualified column reference ending at i."""
    start = i
    while start >= 2 and tokens[start - 1].kind == 'dot' and tokens[start - 2].kind in ('word', 'quoted'):
        start -= 2
    return start


def find_patient_predicates(sql, patient_columns=PATIENT_COLUMNS):
    """Every comparison involving a patient column, in either operand order."""
    tokens = _tokens(sql)
    columns = tuple(c.lower() for c in patient_columns)
    predicates = []

    for i in range(len(tokens)):
        if not _is_patient_column(tokens, i, columns):
            continue
        column = identifier_name(tokens[i])
        start = _column_start(tokens, i)
        qualifier = identifier_name(tokens[i - 2]) if start < i else None

        j = i + 1
        while j + 1 < len(tokens) and tokens[j].kind == 'op' and tokens[j].value == '::':
            j += 2
        operator, k = _read_operator(tokens, j)
        if operator is not None:
            kind, literals, end = _read_operand(tokens, k)
            if operator in ('BETWEEN', 'NOT BETWEEN') and end < len(tokens) and is_word(tokens[end], 'AND'):
                _, upper, end = _read_operand(tokens, end + 1)
                literals = literals + upper
            predicates.append(PatientPredicate(column, operator, literals, kind, start, end, qualifier, i))
            continue

        # Literal on the left: 'A' = patient_id
        if start >= 2 and tokens[start - 1].kind == 'op' and tokens[start - 1].value in COMPARISON_OPS:
            k = start - 2
            while k >= 1 and tokens[k - 1].kind == 'op' and tokens[k - 1].value == '::':
                k -= 2
            if tokens[k].kind in ('string', 'number'):
                predicates.append(PatientPredicate(
                    column, tokens[start - 1].value, (unquote_literal(tokens[k]),), 'literal', k, i + 1,
                    qualifier, i,
                ))
            elif tokens[k].kind in ('word', 'quoted', 'rparen'):
                predicates.append(PatientPredicate(
                    column, tokens[start - 1].value, (), 'expression', k, i + 1, qualifier, i,
                ))

    return predicates


def _scoping_predicates(predicates, selected_patient_id):
    selected = _normalize_id(selected_patient_id)
    return [
        p for p in predicates
        if p.operator in ('=', 'IN') and p.operand_kind in ('literal', 'list')
        and selected in {_normalize_id(v) for v in p.literals}
    ]


def check_patient_filter_presence(sql, selected_patient_id, patient_columns=PATIENT_COLUMNS):
    column = patient_columns[0]
    if selected_patient_id is None or str(selected_patient_id).strip() == '':
        return Violation(
            MISSING_PATIENT_FILTER,
            'Multiple patients exist but no patient is selected; the query cannot be scoped.',
        )
    predicates = find_patient_predicates(sql, patient_columns)
    if not _scoping_predicates(predicates, selected_patient_id):
        return Violation(
            MISSING_PATIENT_FILTER,
            f"Query must filter by the selected patient: add WHERE {column} = '{selected_patient_id}'.",
        )
    return None


def check_patient_exclusivity(sql, selected_patient_id, patient_columns=PATIENT_COLUMNS):
    selected = _normalize_id(selected_patient_id)
    offending = []
    for predicate in find_patient_predicates(sql, patient_columns):
        for literal in predicate.literals:
            if _normalize_id(literal) != selected and literal not in offending:
                offending.append(literal)
    if offending:
        names = ', '.join(f"'{v}'" for v in offending)
        return Violation(
            CROSS_PATIENT_LEAK,
            f"Query references other patient identifiers ({names}); only '{selected_patient_id}' is allowed.",
            names,
        )
    return None


# 5. Bypassable filter

ROW_FILTER_CLAUSES = ('WHERE', 'HAVING')
CONTEXT_ANCHORS = ('SELECT', 'FROM', 'JOIN', 'AS', 'WITH', 'ON')
SAFE_GROUP_PREFIXES = ('AND', 'OR', 'WHERE', 'HAVING', 'IN', 'AS', 'FROM', 'JOIN')


def _scan_level(tokens, start, end, depth):
    """
    Walks outward from the unit tokens[start:end] at one nesting depth.

    Returns (anchor, ok): the nearest clause keyword to the left (None when
    the enclosing parenthesis or the statement start comes first) and whether
    the unit is joined to its neighbours by AND only.
    """
    anchor = None
    i = start - 1
    while i >= 0 and tokens[i].depth >= depth:
        token = tokens[i]
        if token.depth == depth:
            if is_word(token, 'OR', *CONDITIONAL_WORDS):
                return None, False
            if is_word(token, *(FILTER_CLAUSES + CONTEXT_ANCHORS)):
                anchor = token
                break
        i -= 1

    i = end
    while i < len(tokens) and tokens[i].depth >= depth:
        token = tokens[i]
        if token.depth == depth:
            if is_word(token, 'OR', *CONDITIONAL_WORDS):
                return anchor, False
            if is_word(token, *CLAUSE_TERMINATORS) or token.kind == 'comma':
                break
        i += 1
    return anchor, True


def _is_conjunctive(tokens, predicate):
    """
    True when the predicate restricts the rows of the statement: it sits in a
    WHERE/HAVING clause joined by AND only, and every enclosing group is
    itself such a condition, an IN subquery, a derived table or a CTE body.
    """
    start, end = predicate.start, predicate.end
    if start > 0 and is_word(tokens[start - 1], 'NOT'):
        return False
    if end < len(tokens) and (tokens[end].kind == 'op' and tokens[end].value in COMPARISON_OPS
                              or is_word(tokens[end], 'IS')):
        return False

    depth = tokens[start].depth
    unit_is_group = False
    while True:
        anchor, ok = _scan_level(tokens, start, end, depth)
        if not ok:
            return False
        if anchor is not None:
            if is_word(anchor, *ROW_FILTER_CLAUSES):
                if depth == 0:
                    return True
            else:
                # Derived tables and CTE bodies are filtered as a whole; select
                # lists and join conditions do not restrict the outer rows.
                return unit_is_group and is_word(anchor, 'FROM', 'JOIN', 'AS', 'WITH')
        elif depth == 0:
            return False

        open_index = enclosing_paren(tokens, start)
        if open_index is None:
            return False
        before = tokens[open_index - 1] if open_index > 0 else None
        if before is not None and before.kind in ('word', 'quoted') and not is_word(before, *SAFE_GROUP_PREFIXES):
            # NOT (...), EXISTS (...), function arguments
            return False
        close_index = matching_paren(tokens, open_index)
        start = open_index
        end = close_index + 1 if close_index is not None else len(tokens)
        depth = tokens[open_index].depth
        unit_is_group = True


def check_filter_not_bypassable(sql, selected_patient_id, patient_columns=PATIENT_COLUMNS):
    tokens = _tokens(sql)
    scoping = _scoping_predicates(find_patient_predicates(sql, patient_columns), selected_patient_id)
    if any(_is_conjunctive(tokens, predicate) for predicate in scoping):
        return None
    return Violation(
        PATIENT_FILTER_BYPASSABLE,
        f"The {patient_columns[0]} filter must be combined with the rest of the WHERE clause using AND, "
        "not OR, NOT or CASE, and must not sit in the select list.",
    )


# 6. Table references

# Table -> column that identifies the patient a row belongs to
PATIENT_TABLES = {'lab_results': 'patient_id', 'patients': 'id'}

JOIN_WORDS = ('JOIN', 'LEFT', 'RIGHT', 'FULL', 'INNER', 'CROSS', 'NATURAL', 'OUTER', 'LATERAL', 'ONLY')
FROM_LIST_END = ('WHERE', 'GROUP', 'HAVING', 'ORDER', 'LIMIT', 'OFFSET', 'FETCH', 'WINDOW', 'FOR')
ALIAS_STOP_WORDS = JOIN_WORDS + FROM_LIST_END + ('ON', 'USING', 'TABLESAMPLE', 'AS')
KEYWORD_VALUES = ('NULL', 'TRUE', 'FALSE')
JOIN_FILTER_CLAUSES = ROW_FILTER_CLAUSES + ('ON',)

QueryBlock = namedtuple('QueryBlock', 'start end depth parent refs')
# key is the alias (or the bare table name); None when the reference cannot be resolved
TableRef = namedtuple('TableRef', 'table key column name_index alias_index using')
ColumnRef = namedtuple('ColumnRef', 'qualifier column index start')


def _is_join_word(tokens, i):
    if is_word(tokens[i], 'LEFT', 'RIGHT') and i + 1 < len(tokens) and tokens[i + 1].kind == 'lparen':
        # left(x, 3)
        return False
    return is_word(tokens[i], *JOIN_WORDS)


def _close_of(tokens, open_index, end):
    close = matching_paren(tokens, open_index)
    return end if close is None else close


def _from_list(tokens, start, end, depth):
    """Token range of the FROM list of the SELECT at tokens[start], or (None, None)."""
    for i in range(start + 1, end):
        token = tokens[i]
        if token.depth == depth and is_word(token, 'FROM') and not is_word(tokens[i - 1], 'DISTINCT'):
            j = i + 1
            while j < end and not (tokens[j].depth == depth and is_word(tokens[j], *FROM_LIST_END)):
                j += 1
            return i + 1, j
    return None, None


def _next_item(tokens, i, end, depth, stop_words=()):
    while i < end:
        token = tokens[i]
        if token.depth == depth and (token.kind == 'comma' or _is_join_word(tokens, i)
                                     or is_word(token, *stop_words)):
            return i
        i += 1
    return end


def _read_alias(tokens, i, end):
    if i < end and is_word(tokens[i], 'AS'):
        i += 1
    if i < end and tokens[i].kind in ('word', 'quoted') and not is_word(tokens[i], *ALIAS_STOP_WORDS):
        alias_index = i
        i += 1
        if i < end and tokens[i].kind == 'lparen':
            # Column alias list
            i = _close_of(tokens, i, end) + 1
        return identifier_name(tokens[alias_index]), alias_index, i
    return None, None, i


def _table_refs(tokens, start, end, depth, patient_tables):
    """Every FROM / JOIN item of one SELECT, in order."""
    refs = []
    i, end = _from_list(tokens, start, end, depth)
    if i is None:
        return refs

    while i < end:
        token = tokens[i]
        if token.kind == 'comma' or _is_join_word(tokens, i):
            i += 1
            continue
        if is_word(token, 'ON'):
            i = _next_item(tokens, i + 1, end, depth)
            continue
        if is_word(token, 'USING') and refs and i + 1 < end and tokens[i + 1].kind == 'lparen':
            close = _close_of(tokens, i + 1, end)
            columns = tuple(identifier_name(t) for t in tokens[i + 2:close] if t.kind in ('word', 'quoted'))
            refs[-1] = refs[-1]._replace(using=columns)
            i = close + 1
            continue

        table = name_index = None
        if token.kind == 'lparen':
            close = _close_of(tokens, i, end)
            if not (i + 1 < len(tokens) and is_word(tokens[i + 1], 'SELECT', 'WITH')):
                # Parenthesised join or VALUES list: patient tables inside cannot be resolved
                for j in range(i + 1, close):
                    name = identifier_name(tokens[j])
                    if name in patient_tables and not (j + 1 < len(tokens) and tokens[j + 1].kind == 'dot'):
                        refs.append(TableRef(name, None, patient_tables[name], j, None, ()))
            i = close + 1
        elif token.kind in ('word', 'quoted'):
            j = i
            while j + 2 < end and tokens[j + 1].kind == 'dot' and tokens[j + 2].kind in ('word', 'quoted'):
                j += 2
            i = j + 1
            if i < end and tokens[i].kind == 'lparen':
                # Set-returning function
                i = _close_of(tokens, i, end) + 1
            else:
                table, name_index = identifier_name(tokens[j]), j
        else:
            i += 1
            continue

        alias, alias_index, i = _read_alias(tokens, i, end)
        refs.append(TableRef(table, alias or table, patient_tables.get(table), name_index, alias_index, ()))
        i = _next_item(tokens, i, end, depth, ('ON', 'USING'))
    return refs


def _query_blocks(tokens, patient_tables):
    """One QueryBlock per SELECT, outermost first; parent is the index of the enclosing block."""
    spans = []
    for i, token in enumerate(tokens):
        if is_word(token, 'SELECT'):
            end = i + 1
            while end < len(tokens) and tokens[end].depth >= token.depth:
                end += 1
            spans.append((i, end, token.depth))

    blocks = []
    for start, end, depth in spans:
        parent = None
        for k, (s, e, d) in enumerate(spans):
            if d < depth and s < start < e and (parent is None or d > spans[parent][2]):
                parent = k
        blocks.append(QueryBlock(start, end, depth, parent,
                                 _table_refs(tokens, start, end, depth, patient_tables)))
    return blocks


def _owner(blocks, tokens, index):
    """Index of the innermost block whose own level contains tokens[index]."""
    owner = None
    for k, block in enumerate(blocks):
        if block.start <= index < block.end and block.depth <= tokens[index].depth:
            if owner is None or block.depth > blocks[owner].depth:
                owner = k
    return owner


def _resolve(blocks, k, qualifier, column):
    """The patient-table reference a column belongs to, or None when unsure."""
    while k is not None:
        block = blocks[k]
        if qualifier is None:
            # Unqualified columns are only bound inside their own SELECT
            matches = [r for r in block.refs if r.column == column]
            return matches[0] if len(matches) == 1 else None
        matches = [r for r in block.refs if r.key == qualifier]
        if matches:
            return matches[0] if len(matches) == 1 and matches[0].column == column else None
        k = block.parent
    return None


def _restricts_rows(tokens, start, end, block_depth, clauses):
    """
    True when tokens[start:end] is an AND-joined condition of one of `clauses`
    at the block's own level, possibly wrapped in plain parentheses.
    """
    if start > 0 and is_word(tokens[start - 1], 'NOT'):
        return False
    if end < len(tokens) and (tokens[end].kind == 'op' and tokens[end].value in COMPARISON_OPS
                              or is_word(tokens[end], 'IS')):
        return False

    depth = tokens[start].depth
    while True:
        anchor, ok = _scan_level(tokens, start, end, depth)
        if not ok:
            return False
        if depth <= block_depth:
            return anchor is not None and is_word(anchor, *clauses)
        if anchor is not None:
            return False
        open_index = enclosing_paren(tokens, start)
        if open_index is None:
            return False
        before = tokens[open_index - 1] if open_index > 0 else None
        if before is not None and before.kind != 'lparen' \
                and not is_word(before, 'AND', 'OR', 'WHERE', 'HAVING', 'ON'):
            return False
        close_index = matching_paren(tokens, open_index)
        start = open_index
        end = close_index + 1 if close_index is not None else len(tokens)
        depth = tokens[open_index].depth


def _plain_identifier(token):
    return token is not None and token.kind in ('word', 'quoted') and not is_word(token, *KEYWORD_VALUES)


def _column_before(tokens, i):
    """ColumnRef ending just before tokens[i], or None."""
    j = i - 1
    if j < 0 or not _plain_identifier(tokens[j]):
        return None
    start = _column_start(tokens, j)
    if start > 0 and tokens[start - 1].kind in ('op', 'dot'):
        return None
    qualifier = identifier_name(tokens[j - 2]) if start < j else None
    return ColumnRef(qualifier, identifier_name(tokens[j]), j, start)


def _column_after(tokens, i):
    """(ColumnRef, end_index) for the column starting at tokens[i + 1], or None."""
    j = i + 1
    if j >= len(tokens) or not _plain_identifier(tokens[j]):
        return None
    k = j
    while k + 2 < len(tokens) and tokens[k + 1].kind == 'dot' and _plain_identifier(tokens[k + 2]):
        k += 2
    nxt = tokens[k + 1] if k + 1 < len(tokens) else None
    if nxt is not None and nxt.kind in ('op', 'lparen', 'dot'):
        return None
    qualifier = identifier_name(tokens[k - 2]) if k > j else None
    return ColumnRef(qualifier, identifier_name(tokens[k]), k, j), k + 1


def _column_equalities(tokens):
    """(left, right, start, end) for every `[alias.]column = [alias.]column` comparison."""
    pairs = []
    for i, token in enumerate(tokens):
        if token.kind != 'op' or token.value != '=':
            continue
        left = _column_before(tokens, i)
        right = _column_after(tokens, i)
        if left is not None and right is not None:
            pairs.append((left, right[0], left.start, right[1]))
    return pairs


def _unlisted_references(tokens, blocks, patient_tables):
    """Patient table names used anywhere other than as a parsed FROM / JOIN item."""
    listed = set()
    for block in blocks:
        for ref in block.refs:
            listed.update(i for i in (ref.name_index, ref.alias_index) if i is not None)
    unlisted = []
    for i, token in enumerate(tokens):
        if identifier_name(token) not in patient_tables or i in listed:
            continue
        if i + 1 < len(tokens) and tokens[i + 1].kind == 'dot':
            # Column qualifier
            continue
        if i > 0 and is_word(tokens[i - 1], 'AS') and not (i + 1 < len(tokens) and is_word(tokens[i + 1], 'AS')):
            # Output column alias
            continue
        unlisted.append(token.value)
    return unlisted


def find_unscoped_references(sql, selected_patient_id, patient_tables=PATIENT_TABLES):
    """
    Names (alias or table) of patient-table references that are not limited to
    the selected patient.

    A reference is limited when its own SELECT has an AND-joined WHERE/HAVING
    condition `ref.column = '<selected>'`, or an AND-joined WHERE/HAVING/ON
    equality (or USING) ties its column to a reference that is already
    limited, in the same SELECT or an enclosing one.
    """
    tokens = _tokens(sql)
    tables = {name.lower(): column.lower() for name, column in patient_tables.items()}
    blocks = _query_blocks(tokens, tables)
    selected = _normalize_id(selected_patient_id)
    unscoped = _unlisted_references(tokens, blocks, tables)

    seeds = {}
    for predicate in find_patient_predicates(sql, tuple(set(tables.values()))):
        if predicate.operator not in ('=', 'IN') or predicate.operand_kind not in ('literal', 'list') \
                or not predicate.literals or any(_normalize_id(v) != selected for v in predicate.literals):
            continue
        k = _owner(blocks, tokens, predicate.index)
        if k is None or not _restricts_rows(tokens, predicate.start, predicate.end,
                                            blocks[k].depth, ROW_FILTER_CLAUSES):
            continue
        ref = _resolve(blocks, k, predicate.qualifier, predicate.column)
        if ref is not None and ref in blocks[k].refs:
            seeds.setdefault(k, set()).add(ref)

    links = {}
    for left, right, start, end in _column_equalities(tokens):
        k = _owner(blocks, tokens, left.index)
        if k is None or not _restricts_rows(tokens, start, end, blocks[k].depth, JOIN_FILTER_CLAUSES):
            continue
        a = _resolve(blocks, k, left.qualifier, left.column)
        b = _resolve(blocks, k, right.qualifier, right.column)
        if a is not None and b is not None:
            links.setdefault(k, []).append((a, b))
    for k, block in enumerate(blocks):
        for position, ref in enumerate(block.refs):
            if ref.column and ref.column in ref.using:
                links.setdefault(k, []).extend(
                    (ref, earlier) for earlier in block.refs[:position] if earlier.column == ref.column
                )

    scoped = set()
    for k, block in enumerate(blocks):
        local = [r for r in block.refs if r.column]
        reached = set(seeds.get(k, ()))
        changed = True
        while changed:
            changed = False
            for a, b in links.get(k, ()):
                for source, target in ((a, b), (b, a)):
                    if (source in reached or source in scoped) and target in local and target not in reached:
                        reached.add(target)
                        changed = True
        scoped |= reached
        unscoped.extend(r.key or r.table for r in local if r not in reached)
    return list(dict.fromkeys(unscoped))


def check_table_references(sql, selected_patient_id, patient_tables=PATIENT_TABLES):
    unscoped = find_unscoped_references(sql, selected_patient_id, patient_tables)
    if unscoped:
        names = ', '.join(unscoped)
        return Violation(
            PATIENT_FILTER_BYPASSABLE,
            f"Every reference to a patient table needs its own filter on '{selected_patient_id}' "
            f"in the WHERE clause of its SELECT; not filtered: {names}.",
            names,
        )
    return None


def validate_patient_scope(sql, selected_patient_id, patient_count, patient_columns=PATIENT_COLUMNS,
                           patient_tables=PATIENT_TABLES):
    """
    Scope stage. Skipped for a database with zero or one patient; otherwise
    returns the first violation found, or the unchanged SQL.
    """
    if patient_count is None or patient_count <= 1:
        return ValidationOutcome.accept(sql)

    violation = check_set_operations(sql) or check_tautologies(sql)
    if violation is None:
        violation = check_patient_filter_presence(sql, selected_patient_id, patient_columns)
    if violation is None:
        violation = check_patient_exclusivity(sql, selected_patient_id, patient_columns)
    if violation is None:
        violation = check_filter_not_bypassable(sql, selected_patient_id, patient_columns)
    if violation is None:
        violation = check_table_references(sql, selected_patient_id, patient_tables)

    if violation is not None:
        return ValidationOutcome.reject([violation])
    return ValidationOutcome.accept(sql)
