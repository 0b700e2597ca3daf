"""
Transforms the lark parse tree into the immutable GEL AST (gel_datatypes).

Besides the one-to-one mapping of rules to node classes, this pass does the
checks that need a whole construct in view: folding the flat infix chain,
validating string escapes, SOAP XML fragments and `query!` statements.
"""
from xml.parsers.expat import ExpatError

import sqlparse
import xmltodict
from lark import Token, Transformer, v_args
from lark.exceptions import VisitError
from sqlparse import tokens as T

from gel.gel_datatypes import (
    Program, Let, LetFn, Alias, If, For, Body, Catch, Log,
    Http, Soap, Query, Json, ClassRef, NewClass, Static,
    InfixExpr, Call, Dict, Number, Bool, Null, Unit,
    NormalString, FormatString, Template, Identifier, AliasName,
    DottedAccess, Range,
)
from gel.gel_errors import GelError, GelSyntaxError

SQL_KINDS = ("SELECT", "INSERT", "UPDATE", "DELETE")
# Placeholder styles: generic is sqlite/ODBC `?`, postgres is `$n` or `%s`,
# mssql is `@name`.
SQL_DIALECTS = ("generic", "postgres", "mssql")

# Keywords that open a clause and must be followed by something of their own.
_SQL_CLAUSES = frozenset({
    "FROM", "WHERE", "GROUP BY", "ORDER BY", "HAVING", "LIMIT", "OFFSET",
    "UNION", "UNION ALL", "SET", "VALUES", "INTO", "ON",
})
_SQL_OPENERS = {"INSERT": "INTO", "DELETE": "FROM"}
# Stands in for `{expr}` placeholders while checking XML and SQL.
_XML_PLACEHOLDER = "_"
_SQL_PLACEHOLDER = "_gel_"

_STRING_ESCAPES = {'"': '"', '\\': '\\', 'n': '\n', 't': '\t', 'r': '\r', '{': '{', '}': '}'}


def _meta_loc(meta, tag: str):
    if meta is None or meta.empty:
        return None
    return {'line': meta.line, 'col': meta.column, 'tag': tag}


def _token_loc(token: Token, tag: str):
    return {'line': token.line, 'col': token.column, 'tag': tag}


def _unescape(text: str, token: Token, offset: int = 0) -> str:
    """Resolves backslash escapes; `offset` is where `text` starts inside the token."""
    out = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == '\\':
            nxt = text[i + 1] if i + 1 < len(text) else ''
            if nxt not in _STRING_ESCAPES:
                before = token.value[:offset + i]
                line = token.line + before.count("\n")
                col = (token.column + len(before)) if "\n" not in before else len(before) - before.rfind("\n")
                raise GelSyntaxError(f"expected a valid escape sequence, found '\\{nxt}'",
                                     line=line, col=col, expected=["a valid escape sequence"])
            out.append(_STRING_ESCAPES[nxt])
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _significant(statement):
    for tok in statement.flatten():
        if tok.is_whitespace or tok.ttype in T.Comment or tok.match(T.Punctuation, ';'):
            continue
        yield tok


def _count_params(tokens, dialect: str) -> int:
    if dialect == "postgres":
        numbered = [int(t.value[1:]) for t in tokens
                    if t.ttype in T.Name.Placeholder and t.value[1:].isdigit() and t.value.startswith("$")]
        pyformat = sum(1 for t in tokens if t.ttype in T.Name.Placeholder and t.value == "%s")
        return max(numbered, default=0) + pyformat
    if dialect == "mssql":
        return len({t.value.lower() for t in tokens
                    if t.ttype in T.Name and t.value.startswith("@") and not t.value.startswith("@@")})
    return sum(1 for t in tokens if t.ttype in T.Name.Placeholder and t.value == "?")


@v_args(meta=True)
class GelTransformer(Transformer):
    def __init__(self, sql_dialect: str = "generic"):
        super().__init__()
        if sql_dialect not in SQL_DIALECTS:
            raise ValueError(f"unknown SQL dialect {sql_dialect!r}; expected one of {', '.join(SQL_DIALECTS)}")
        self.sql_dialect = sql_dialect

    def transform(self, tree):
        try:
            return super().transform(tree)
        except VisitError as e:
            if isinstance(e.orig_exc, GelError):
                raise e.orig_exc from None
            raise

    @staticmethod
    def _error(loc, message: str, expected=None):
        loc = loc or {}
        return GelSyntaxError(message, line=loc.get('line', 1), col=loc.get('col', 1), expected=expected)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def NUMBER(self, token):
        return Number(int(token), loc=_token_loc(token, 'number'))

    def STRING(self, token):
        return NormalString(_unescape(token.value[1:-1], token, 1), loc=_token_loc(token, 'string'))

    def UNIT(self, token):
        return Unit(loc=_token_loc(token, 'unit'))

    def RANGE(self, token):
        start, end = token.value.split("..")
        return Range(int(start), int(end), loc=_token_loc(token, 'range'))

    def FSTRING_TEXT(self, token):
        return _unescape(token.value, token)

    def ESC_LBRACE(self, token):
        return "{"

    def ESC_RBRACE(self, token):
        return "}"

    def _name(self, token: Token):
        root, *attrs = token.value.split(".")
        if root[0].isupper():
            node = AliasName(root, loc=_token_loc(token, 'alias-ident'))
        else:
            node = Identifier(root, loc=_token_loc(token, 'ident'))
        if attrs:
            return DottedAccess(node, tuple(attrs), loc=_token_loc(token, 'dotted'))
        return node

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def program(self, meta, children):
        return Program(tuple(children), loc=_meta_loc(meta, 'program'))

    def block(self, meta, children):
        return tuple(children)

    def let(self, meta, children):
        name, *params, value = children
        if "." in name:
            raise self._error(_token_loc(name, 'let'), f"expected a binding name, found {name.value!r}",
                              expected=["a binding name"])
        if params:
            return LetFn(name.value, tuple(p.value for p in params), value, loc=_meta_loc(meta, 'letfn'))
        return Let(name.value, value, loc=_meta_loc(meta, 'let'))

    def alias(self, meta, children):
        name, ref = children
        path = ".".join((ref.root,) + ref.attrs)
        return Alias(name.value, path, loc=_meta_loc(meta, 'alias'))

    def if_stmt(self, meta, children):
        cond, then_branch, *rest = children
        return If(cond, then_branch, rest[0] if rest else None, loc=_meta_loc(meta, 'if'))

    def for_stmt(self, meta, children):
        var, source, body = children
        return For(var.value, source, body, loc=_meta_loc(meta, 'for'))

    def body(self, meta, children):
        statements, *catches = children
        if len(catches) > 1:
            raise self._error(catches[1].loc, "expected 'end' (only one catch is allowed per body)",
                              expected=["'end'"])
        return Body(statements, catches[0] if catches else None, loc=_meta_loc(meta, 'body'))

    def catch(self, meta, children):
        name, statements = children
        return Catch(name.value, statements, loc=_meta_loc(meta, 'catch'))

    def log(self, meta, children):
        level, message = children
        return Log(level.value, message, loc=_meta_loc(meta, 'log'))

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def expr(self, meta, children):
        """Folds `v op v op v` strictly left to right; all operators bind alike."""
        left = children[0]
        for i in range(1, len(children), 2):
            op = children[i]
            left = InfixExpr(left, op.value, children[i + 1], loc=_token_loc(op, 'op'))
        return left

    def call(self, meta, children):
        callee, *args = children
        return Call(callee, tuple(args), loc=_meta_loc(meta, 'call'))

    def name_ref(self, meta, children):
        return self._name(children[0])

    def true(self, meta, children):
        return Bool(True, loc=_meta_loc(meta, 'bool'))

    def false(self, meta, children):
        return Bool(False, loc=_meta_loc(meta, 'bool'))

    def null(self, meta, children):
        return Null(loc=_meta_loc(meta, 'null'))

    def dict(self, meta, children):
        return Dict(tuple(children), loc=_meta_loc(meta, 'dict'))

    def pair(self, meta, children):
        key, value = children
        return (key.value, value)

    def fstring(self, meta, children):
        return FormatString(self._segments(children), loc=_meta_loc(meta, 'fstring'))

    def fstring_field(self, meta, children):
        return children[0]

    xml_tag_field = xml_field = sql_field = template_field = fstring_field

    @staticmethod
    def _segments(parts) -> tuple:
        """Flattens nested parts and merges adjacent text."""
        out = []
        stack = list(reversed(parts))
        while stack:
            part = stack.pop()
            if isinstance(part, list):
                stack.extend(reversed(part))
                continue
            if isinstance(part, str):
                part = str(part)
                if out and isinstance(out[-1], str):
                    out[-1] += part
                    continue
            out.append(part)
        return tuple(out)

    # ------------------------------------------------------------------
    # Capability forms
    # ------------------------------------------------------------------

    def http(self, meta, children):
        verb, target, body = children
        if isinstance(target, Token):
            target = self._name(target)
        return Http(verb.value, target, body, loc=_meta_loc(meta, 'http'))

    def soap(self, meta, children):
        endpoint, *sections = children
        parts = {'header': None, 'body': None}
        for section, template in sections:
            try:
                xmltodict.parse(template.literal_text(_XML_PLACEHOLDER))
            except ExpatError as e:
                raise self._error(template.loc, f"malformed XML in soap {section}: {e}",
                                  expected=["well-formed XML"]) from e
            parts[section] = template
        return Soap(endpoint.value, parts['header'], parts['body'], loc=_meta_loc(meta, 'soap'))

    def soap_header(self, meta, children):
        return ('header', children[0])

    def soap_body(self, meta, children):
        return ('body', children[0])

    def xml(self, meta, children):
        return Template(self._segments(children), loc=_meta_loc(meta, 'template'))

    def xml_element(self, meta, children):
        return list(children)

    def sql(self, meta, children):
        return Template(self._segments(children), loc=_meta_loc(meta, 'template'))

    def sql_case(self, meta, children):
        parts = list(children)
        if not (isinstance(parts[-1], Token) and parts[-1].type == 'SQL_CASE_END'):
            # Closed by a lowercase `end`, which the grammar filters out.
            parts.append("end")
        return parts

    def query(self, meta, children):
        datasource, sql, *args = children
        loc = _meta_loc(meta, 'query')
        kind = self._check_sql(sql, args, loc)
        return Query(datasource.value, kind, sql, tuple(args) or None, loc=loc)

    def _check_sql(self, sql: Template, args, loc) -> str:
        literal = sql.literal_text(_SQL_PLACEHOLDER)
        statements = [s for s in sqlparse.parse(literal) if s.token_first(skip_cm=True) is not None]
        if len(statements) > 1:
            raise self._error(loc, f"expected one SQL statement per query, found {len(statements)}",
                              expected=["one SQL statement"])
        kind = statements[0].get_type() if statements else "UNKNOWN"
        if kind not in SQL_KINDS:
            first = statements[0].token_first(skip_cm=True).value if statements else ""
            raise self._error(loc, f"query must start with {', '.join(SQL_KINDS)}; found '{first}'",
                              expected=list(SQL_KINDS))

        tokens = list(_significant(statements[0]))
        self._check_sql_shape(tokens, loc)

        given = len(args)
        if given == 1 and isinstance(args[0], Unit):
            given = 0
        wanted = _count_params(tokens, self.sql_dialect)
        if wanted != given:
            raise self._error(loc, f"expected {wanted} parameters but got {given}")
        return kind

    def _check_sql_shape(self, tokens, loc):
        depth = 0
        for i, tok in enumerate(tokens):
            word = " ".join(tok.normalized.split()) if tok.is_keyword else None
            nxt = tokens[i + 1] if i + 1 < len(tokens) else None
            nxt_word = " ".join(nxt.normalized.split()) if nxt is not None and nxt.is_keyword else None
            if tok.ttype in T.Keyword.DML or word in _SQL_CLAUSES:
                allowed = _SQL_OPENERS.get(word)
                if nxt is None or (nxt_word in _SQL_CLAUSES and nxt_word != allowed):
                    found = "end of statement" if nxt is None else repr(nxt.value)
                    raise self._error(loc, f"malformed SQL: expected an expression after {word!r}, found {found}",
                                      expected=["an SQL expression"])
            if tok.match(T.Punctuation, '('):
                depth += 1
            elif tok.match(T.Punctuation, ')'):
                depth -= 1
                if depth < 0:
                    break
        if depth != 0:
            raise self._error(loc, "malformed SQL: unbalanced parentheses", expected=["')'"])

    def json(self, meta, children):
        return Json(children[0].value, loc=_meta_loc(meta, 'json'))

    def new(self, meta, children):
        target, *args = children
        if not args:
            loc = {'line': meta.end_line, 'col': meta.end_column, 'tag': 'new'}
            raise self._error(loc, "expected at least one constructor argument (use () for none)",
                              expected=["a constructor argument"])
        return NewClass(target, tuple(args), loc=_meta_loc(meta, 'new'))

    def static(self, meta, children):
        target, *args = children
        return Static(target, tuple(args), loc=_meta_loc(meta, 'static'))

    def class_ref(self, meta, children):
        token = children[0]
        root, *attrs = token.value.split(".")
        if token.type == 'ALIAS_NAME':
            return ClassRef(root, tuple(attrs), True, loc=_meta_loc(meta, 'class-ref'))
        return ClassRef(token.value, (), False, loc=_meta_loc(meta, 'class-ref'))

    def template(self, meta, children):
        return Template(self._segments(children), loc=_meta_loc(meta, 'template'))
