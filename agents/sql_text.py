"""
Lexical helpers shared by the safety and patient-scope validators.

Nothing here parses SQL grammar. The tokenizer only knows enough to tell
string literals, quoted identifiers, words, numbers, operators and
parentheses apart, and to track parenthesis depth.
"""

import re
from collections import namedtuple

Token = namedtuple('Token', 'kind value start end depth')

_BLOCK_COMMENT_RE = re.compile(r'/\*.*?\*/', re.S)
_LINE_COMMENT_RE = re.compile(r'--[^\n]*')
_TRAILING_SEMICOLONS_RE = re.compile(r'(?:\s*;)+\s*$')

_TOKEN_RE = re.compile(r"""
    (?P<string>'(?:[^']|'')*')
  | (?P<unterminated>')
  | (?P<quoted>"(?:[^"]|"")*")
  | (?P<number>\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)
  | (?P<word>[A-Za-z_][A-Za-z0-9_$]*)
  | (?P<op>::|<>|!=|<=|>=|\|\||!~\*|!~|~\*|[=<>+\-*/%~!@\#^&|?:\[\]])
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<comma>,)
  | (?P<dot>\.)
  | (?P<semicolon>;)
  | (?P<space>\s+)
  | (?P<other>.)
""", re.X | re.S)


def strip_comments(sql):
    """Removes block and line comments. The stripped text is what gets validated and executed."""
    if not isinstance(sql, str):
        return ''
    cleaned = _BLOCK_COMMENT_RE.sub(' ', sql)
    cleaned = _LINE_COMMENT_RE.sub(' ', cleaned)
    return cleaned


def strip_trailing_semicolons(sql):
    return _TRAILING_SEMICOLONS_RE.sub('', sql).strip()


def tokenize(sql):
    """
    Splits SQL into tokens, skipping whitespace.

    Depth is the parenthesis nesting level of the token: an opening
    parenthesis carries the depth outside it, tokens inside carry one more,
    and the closing parenthesis is back at the outer depth.
    """
    tokens = []
    depth = 0
    for match in _TOKEN_RE.finditer(sql):
        kind = match.lastgroup
        if kind == 'space':
            continue
        value = match.group()
        if kind == 'rparen':
            depth -= 1
        tokens.append(Token(kind, value, match.start(), match.end(), depth))
        if kind == 'lparen':
            depth += 1
    return tokens


def mask_string_literals(sql):
    """
    Replaces the contents of every string literal with spaces, keeping offsets
    intact, so keyword checks never fire on data values.
    """
    parts = []
    last = 0
    for token in tokenize(sql):
        if token.kind == 'string':
            parts.append(sql[last:token.start + 1])
            parts.append(' ' * (len(token.value) - 2))
            last = token.end - 1
    parts.append(sql[last:])
    return ''.join(parts)


def unquote_literal(token):
    """Value of a string or number token, as text."""
    if token.kind == 'string':
        return token.value[1:-1].replace("''", "'")
    return token.value


def identifier_name(token):
    """Lower-cased identifier for a word or double-quoted token, else None."""
    if token.kind == 'word':
        return token.value.lower()
    if token.kind == 'quoted':
        return token.value[1:-1].replace('""', '"').lower()
    return None


def is_word(token, *words):
    return token is not None and token.kind == 'word' and token.value.upper() in words


def matching_paren(tokens, index):
    """Index of the closing parenthesis for the opening one at `index`, or None."""
    depth = tokens[index].depth
    for j in range(index + 1, len(tokens)):
        if tokens[j].kind == 'rparen' and tokens[j].depth == depth:
            return j
    return None


def enclosing_paren(tokens, index):
    """Index of the opening parenthesis around tokens[index], or None at the top level."""
    depth = tokens[index].depth
    for j in range(index - 1, -1, -1):
        if tokens[j].kind == 'lparen' and tokens[j].depth == depth - 1:
            return j
    return None
