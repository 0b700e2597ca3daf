"""
Grammar layer for GEL.

The grammar lives in gel.lark and is compiled once into an LALR parser with
lark's contextual lexer, so free-text terminals (format string text, XML,
SQL, templates) are only tried where the grammar expects them. The parser
returns a lark Tree; gel_transformer turns it into immutable AST nodes.

Parsing is all-or-nothing: the first mismatch raises GelSyntaxError with the
line, column and the construct(s) expected there.
"""
import re
from pathlib import Path
from typing import List, Optional

from lark import Lark, Tree
from lark.exceptions import UnexpectedInput, UnexpectedToken

from gel.gel_errors import GelSyntaxError

GRAMMAR_PATH = Path(__file__).with_name("gel.lark")

_parser: Optional[Lark] = None

# Human names for terminals in "expected ..." messages. String terminals
# (keywords and punctuation) are described by their text.
_TERMINAL_DESCRIPTIONS = {
    'NAME': "an identifier",
    'ALIAS_NAME': "an alias name",
    'NUMBER': "a number",
    'STRING': "a string",
    '_FSTRING_START': "a format string",
    'UNIT': "'()'",
    'RANGE': "a range",
    'INFIX_OP': "an operator",
    'HTTP_VERB': "GET, POST, PUT, PATCH or DELETE",
    'LOG_LEVEL': "DEBUG, INFO, WARN or ERROR",
    '_NL': "newline",
    '$END': "end of input",
    '_FSTRING_END': "'\"'",
    'FSTRING_TEXT': "format string text",
    'XML_OPEN': "an XML element",
    'XML_TAG_TEXT': "XML attributes",
    'XML_CLOSE': "a closing XML tag",
    'XML_TEXT': "XML content",
    'XML_SPECIAL': "XML content",
    'SQL_TEXT': "SQL text",
    'SQL_CASE': "SQL text",
    'SQL_CASE_END': "'END'",
    'TEMPLATE_TEXT': "text",
}
_IGNORED = frozenset({'WS', 'COMMENT'})

_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_STRING_RE = re.compile(r'"(?:[^"\\]|\\.)*"')


def _load_parser() -> Lark:
    global _parser
    if _parser is None:
        grammar = GRAMMAR_PATH.read_text(encoding="utf-8")
        _parser = Lark(
            grammar,
            start=["program", "template"],
            parser="lalr",
            lexer="contextual",
            propagate_positions=True,
            maybe_placeholders=False,
        )
    return _parser


def parse(source: str) -> Tree:
    """Parses a whole GEL program."""
    try:
        return _load_parser().parse(source, start="program")
    except UnexpectedInput as e:
        raise _syntax_error(source, e) from None


def parse_template(text: str) -> Tree:
    """Parses free text with `{expr}` placeholders (runtime interpolation)."""
    try:
        return _load_parser().parse(text, start="template")
    except UnexpectedInput as e:
        raise _syntax_error(text, e) from None


def _line_col(text: str, pos: int):
    line = text.count("\n", 0, pos) + 1
    return line, pos - (text.rfind("\n", 0, pos) + 1) + 1


def _describe_found(text: str, pos: int) -> str:
    if pos >= len(text):
        return "end of input"
    ch = text[pos]
    if ch in "\r\n":
        return "newline"
    m = _WORD_RE.match(text, pos)
    if m:
        return repr(m.group(0))
    return repr(ch)


def _describe_terminal(name: str) -> str:
    if name in _TERMINAL_DESCRIPTIONS:
        return _TERMINAL_DESCRIPTIONS[name]
    try:
        pattern = _load_parser().get_terminal(name).pattern
    except KeyError:
        return name.lower()
    if pattern.type == 'str':
        return repr(pattern.value)
    return name.lower()


def _expected_at(text: str, pos: int, e: UnexpectedInput) -> List[str]:
    if text.startswith("(*", pos):
        return ["'*)' to close the comment"]
    quote = pos + 1 if text.startswith('f"', pos) else pos
    if text.startswith('"', quote) and not _STRING_RE.match(text, quote):
        return ["'\"' to close the string"]
    names = getattr(e, 'expected', None) or getattr(e, 'allowed', None) or ()
    return sorted({_describe_terminal(n) for n in names if n not in _IGNORED})


def _syntax_error(text: str, e: UnexpectedInput) -> GelSyntaxError:
    pos = getattr(e, 'pos_in_stream', None)
    if isinstance(e, UnexpectedToken) and e.token.type == '$END':
        pos = len(text)
    if pos is None or pos < 0:
        pos = len(text)
    line, col = _line_col(text, pos)
    expected = _expected_at(text, pos, e)
    if len(expected) > 1:
        wanted = ", ".join(expected[:-1]) + " or " + expected[-1]
    else:
        wanted = expected[0] if expected else "something else"
    message = f"expected {wanted}, found {_describe_found(text, pos)}"
    return GelSyntaxError(message, line=line, col=col, expected=expected)
