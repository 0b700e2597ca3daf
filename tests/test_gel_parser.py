import pytest

from gel.gel_parser import parse, parse_template
from gel.gel_transformer import GelTransformer
from gel.gel_datatypes import (
    Program, Let, LetFn, Alias, If, For, Body, Catch, Log,
    Http, Soap, Query, Json, ClassRef, NewClass, Static,
    InfixExpr, Call, Dict, Number, Bool, Null, Unit,
    NormalString, FormatString, Template, Identifier, AliasName,
    DottedAccess, Range,
)
from gel.gel_errors import GelSyntaxError


def ast(src: str) -> Program:
    return GelTransformer().transform(parse(src))


def stmt(src: str):
    program = ast(src)
    assert len(program.statements) == 1, program.statements
    return program.statements[0]


def assert_syntax_error(src: str, contains: str | None = None) -> GelSyntaxError:
    with pytest.raises(GelSyntaxError) as excinfo:
        ast(src)
    if contains is not None:
        assert contains in str(excinfo.value), str(excinfo.value)
    return excinfo.value


# --- Determinism and locations ---

def test_parsing_is_deterministic():
    src = """
        alias A = class java.util.ArrayList
        let add x y = do x + y end
        for i in 1..3 do log! INFO f"{i}" end
        add 2 3
    """
    assert ast(src) == ast(src)


def test_nodes_carry_line_and_col():
    program = ast("let x = 1\n  y")
    assert program.statements[0].loc['line'] == 1
    assert program.statements[1].loc == {'line': 2, 'col': 3, 'tag': 'ident'}


def test_empty_and_blank_programs():
    assert ast("") == Program(())
    assert ast("\n\n  \n") == Program(())


# --- Literals and expressions ---

def test_atoms():
    assert stmt("42") == Number(42)
    assert stmt("-7") == Number(-7)
    assert stmt("true") == Bool(True)
    assert stmt("false") == Bool(False)
    assert stmt("null") == Null()
    assert stmt("()") == Unit()
    assert stmt("( )") == Unit()
    assert stmt('"hi"') == NormalString("hi")
    assert stmt("x") == Identifier("x")
    assert stmt("Foo") == AliasName("Foo")


def test_string_escapes():
    assert stmt(r'"a\"b\\c\nd\te\{f\}"') == NormalString('a"b\\c\nd\te{f}')


def test_unknown_escape_is_an_error():
    assert_syntax_error(r'"bad \q"', "escape")


def test_format_string_segments():
    node = stmt('f"hello {name}!"')
    assert node == FormatString(("hello ", Identifier("name"), "!"))


def test_format_string_placeholder_can_hold_calls_and_nested_format_strings():
    node = stmt('f"{greet name} / {f"n={n}"}"')
    assert node.segments[0] == Call(Identifier("greet"), (Identifier("name"),))
    assert node.segments[2] == FormatString(("n=", Identifier("n")))


def test_range_literal():
    assert stmt("1..3") == Range(1, 3)
    assert stmt("5 .. 1") == Range(5, 1)


def test_infix_chain_is_flat_left_to_right():
    assert stmt("2 == 3 + 1") == InfixExpr(InfixExpr(Number(2), "==", Number(3)), "+", Number(1))
    assert stmt("1 + 2 * 3") == InfixExpr(InfixExpr(Number(1), "+", Number(2)), "*", Number(3))


def test_two_char_operators_are_not_split():
    assert stmt("a <= b").op == "<="
    assert stmt("a != b").op == "!="
    assert stmt("a >= b").op == ">="


def test_negative_literal_after_operator():
    assert stmt("7 / -2") == InfixExpr(Number(7), "/", Number(-2))


def test_minus_sign_binding():
    # A `-` directly before a digit and after a space is a negative argument.
    assert stmt("f -1") == Call(Identifier("f"), (Number(-1),))
    assert stmt("n - 1") == InfixExpr(Identifier("n"), "-", Number(1))
    assert stmt("n-1") == InfixExpr(Identifier("n"), "-", Number(1))
    assert stmt("7 -1") == InfixExpr(Number(7), "-", Number(1))


def test_call_by_juxtaposition():
    assert stmt('f 1 "a" x') == Call(Identifier("f"), (Number(1), NormalString("a"), Identifier("x")))


def test_call_with_unit_argument():
    assert stmt("now ()") == Call(Identifier("now"), (Unit(),))


def test_call_arguments_are_atoms_only():
    # The second name is an argument, not a nested call.
    assert stmt("f g 1") == Call(Identifier("f"), (Identifier("g"), Number(1)))


def test_call_result_inside_infix():
    node = stmt("n * fact m")
    assert node == InfixExpr(Identifier("n"), "*", Call(Identifier("fact"), (Identifier("m"),)))


def test_dotted_access():
    assert stmt("user.address.city") == DottedAccess(Identifier("user"), ("address", "city"))
    assert stmt("M.pi") == DottedAccess(AliasName("M"), ("pi",))


def test_dict_literal_keeps_source_order_and_duplicates():
    node = stmt('{"a": 1, "b": x + 1, "a": 3,}')
    assert node == Dict((
        ("a", Number(1)),
        ("b", InfixExpr(Identifier("x"), "+", Number(1))),
        ("a", Number(3)),
    ))


def test_dict_literal_may_span_lines():
    node = stmt('{\n  "a": 1,\n  "b": 2\n}')
    assert [k for k, _ in node.pairs] == ["a", "b"]


def test_no_parenthesised_grouping():
    assert_syntax_error("(1 + 2)", "'()'")


# --- Comments ---

def test_comments_are_whitespace():
    assert stmt("(* lead *) 1 + (* mid *) 2") == InfixExpr(Number(1), "+", Number(2))


def test_comments_do_not_nest():
    # The first '*)' closes the comment, leaving a stray '*)'.
    assert_syntax_error("(* a (* b *) c *)")


def test_unterminated_comment():
    assert_syntax_error("1 (* never closed", "'*)'")


# --- Statements ---

def test_let_and_function_let():
    assert stmt("let x = 1") == Let("x", Number(1))
    node = stmt("let add x y = do x + y end")
    assert isinstance(node, LetFn)
    assert node.name == "add" and node.params == ("x", "y")
    assert node.body == Body((InfixExpr(Identifier("x"), "+", Identifier("y")),))


def test_let_with_body_value():
    node = stmt("let r = do\n  1\n  2\nend")
    assert node == Let("r", Body((Number(1), Number(2))))


def test_alias_statement():
    assert stmt("alias A = class java.util.ArrayList") == Alias("A", "java.util.ArrayList")


def test_alias_requires_uppercase_name():
    assert_syntax_error("alias a = class x.Y", "alias name")


def test_if_on_one_line():
    node = stmt("if c then a else b end")
    assert node == If(Identifier("c"), (Identifier("a"),), (Identifier("b"),))


def test_if_without_else():
    node = stmt("if c then\n  a\nend")
    assert node == If(Identifier("c"), (Identifier("a"),), None)


def test_for_over_range_and_expression():
    node = stmt("for i in 1..3 do log! INFO f\"{i}\" end")
    assert node.var == "i"
    assert node.source == Range(1, 3)
    assert node.body.statements == (Log("INFO", FormatString((Identifier("i"),))),)
    assert stmt("for x in xs do x end").source == Identifier("xs")


def test_body_with_catch():
    node = stmt("do\n  risky 1\ncatch e\n  log! ERROR f\"caught {e}\"\nend")
    assert node.statements == (Call(Identifier("risky"), (Number(1),)),)
    assert node.catch == Catch("e", (Log("ERROR", FormatString(("caught ", Identifier("e")))),))


def test_catch_inline_with_nested_body():
    node = stmt('do risky 1 catch e do log! ERROR f"caught {e}" end end')
    assert isinstance(node.catch.statements[0], Body)


def test_only_one_catch_per_body():
    assert_syntax_error("do\n a\ncatch e\n b\ncatch f\n c\nend", "only one catch")


def test_log_levels():
    assert stmt('log! WARN "careful"') == Log("WARN", NormalString("careful"))
    assert_syntax_error('log! TRACE "x"', "DEBUG")


def test_statements_need_separators():
    assert_syntax_error("let x = 1 let y = 2", "newline")


# --- Keyword guard ---

def test_reserved_words_are_not_identifiers():
    err = assert_syntax_error("let end = 1", "found 'end'")
    assert (err.line, err.col) == (1, 5)
    assert "an identifier" in err.expected
    err = assert_syntax_error("let x = catch", "found 'catch'")
    assert (err.line, err.col) == (1, 9)
    assert "a number" in err.expected


def test_dotted_names_cannot_be_bound():
    assert_syntax_error("let a.b = 1", "binding name")


def test_keyword_prefixes_are_identifiers():
    assert stmt("let ending = 1") == Let("ending", Number(1))
    assert stmt("iffy") == Identifier("iffy")
    assert stmt("do_it 1") == Call(Identifier("do_it"), (Number(1),))


def test_legacy_nothing_is_an_ordinary_identifier():
    assert stmt("nothing") == Identifier("nothing")


def test_capability_words_without_bang_are_identifiers():
    assert stmt("json") == Identifier("json")
    assert stmt("text \"raw\"") == Call(Identifier("text"), (NormalString("raw"),))


# --- Capability forms ---

def test_http_form():
    node = stmt('http! POST "https://api.test/items" do\n  timeout 500\n  json {"a": 1}\nend')
    assert isinstance(node, Http)
    assert node.verb == "POST"
    assert node.target == NormalString("https://api.test/items")
    assert len(node.body.statements) == 2


def test_http_target_may_be_identifier_or_format_string():
    assert stmt("http! GET url do end").target == Identifier("url")
    assert isinstance(stmt('http! GET f"{base}/x" do end').target, FormatString)


def test_http_rejects_unknown_verb():
    assert_syntax_error('http! FETCH "x" do end', "GET")


def test_soap_form_with_placeholders():
    src = (
        'soap! "http://svc/ws" do\n'
        '  header <auth><token>{tok}</token></auth>\n'
        '  body <GetUser id="{uid}"><Detail/></GetUser>\n'
        'end'
    )
    node = stmt(src)
    assert isinstance(node, Soap)
    assert node.endpoint == "http://svc/ws"
    assert node.header.segments == ("<auth><token>", Identifier("tok"), "</token></auth>")
    assert node.body.segments == ('<GetUser id="', Identifier("uid"), '"><Detail/></GetUser>')


def test_soap_literal_braces():
    node = stmt('soap! "e" do\n  body <a>{{x}}</a>\nend')
    assert node.body == Template(("<a>{x}</a>",))
    assert node.header is None


def test_soap_last_duplicate_section_wins():
    node = stmt('soap! "e" do\n  body <a/>\n  body <b/>\nend')
    assert node.body == Template(("<b/>",))


def test_soap_malformed_xml_is_a_syntax_error():
    assert_syntax_error('soap! "e" do\n  body <a x=1></a>\nend', "malformed XML")


def test_soap_unclosed_element():
    assert_syntax_error('soap! "e" do\n  body <a><b></a>\nend')


def test_query_form():
    node = stmt("query! db do SELECT name FROM users WHERE id = ? end uid")
    assert isinstance(node, Query)
    assert node.datasource == "db"
    assert node.kind == "SELECT"
    assert node.sql.literal_text().strip() == "SELECT name FROM users WHERE id = ?"
    assert node.params == (Identifier("uid"),)


def test_query_kinds():
    assert stmt("query! db do insert into t values (?) end 1").kind == "INSERT"
    assert stmt("query! db do UPDATE t SET a = 1 end").kind == "UPDATE"
    assert stmt("query! db do DELETE FROM t end").kind == "DELETE"
    assert stmt("query! db do WITH x AS (SELECT 1) SELECT * FROM x end").kind == "SELECT"


def test_query_rejects_other_statements():
    assert_syntax_error("query! db do DROP TABLE t end", "SELECT")


def test_query_end_inside_sql_string_does_not_close():
    node = stmt("query! db do SELECT 'the end' AS x end")
    assert "'the end'" in node.sql.literal_text()


def test_query_end_must_be_a_whole_word():
    node = stmt("query! db do SELECT vendor FROM t end")
    assert "vendor" in node.sql.literal_text()


def test_query_parameter_count_must_match():
    assert_syntax_error("query! db do SELECT * FROM t WHERE a = ? end", "expected 1 parameters but got 0")
    assert_syntax_error("query! db do SELECT * FROM t end 1", "expected 0 parameters but got 1")


def test_query_unit_counts_as_no_parameters():
    node = stmt("query! db do SELECT 1 end ()")
    assert node.params == (Unit(),)


def test_query_question_mark_in_sql_string_is_not_a_parameter():
    assert stmt("query! db do SELECT '?' AS q end").params is None


def test_query_placeholders_are_template_segments():
    node = stmt("query! db do SELECT * FROM {table} end")
    assert Identifier("table") in node.sql.segments


def test_json_form():
    assert stmt("json! settings") == Json("settings")


def test_new_and_static_forms():
    assert stmt("new! A ()") == NewClass(ClassRef("A", (), True), (Unit(),))
    assert stmt("new! java.util.ArrayList 10") == NewClass(ClassRef("java.util.ArrayList"), (Number(10),))
    assert stmt("static! M.pi") == Static(ClassRef("M", ("pi",), True), ())
    assert stmt("static! M.max 1 2") == Static(ClassRef("M", ("max",), True), (Number(1), Number(2)))


def test_new_requires_an_argument():
    assert_syntax_error("new! A", "constructor argument")


# --- Syntax error details ---

def test_syntax_error_position_and_expected():
    err = assert_syntax_error("let = 1")
    assert (err.line, err.col) == (1, 5)
    assert "an identifier" in err.expected
    assert str(err).startswith("SyntaxError: expected ")
    assert err.kind == "SyntaxError"


def test_syntax_error_on_later_line():
    err = assert_syntax_error("let x = 1\nif x then\n  1\n")
    assert err.line == 4


def test_unterminated_string():
    assert_syntax_error('"abc', "close the string")


# --- Templates ---

def test_parse_template():
    node = GelTransformer().transform(parse_template("Hi {name}, {{literal}}"))
    assert node == Template(("Hi ", Identifier("name"), ", {literal}"))


# --- SQL checking ---

def test_query_case_end_nests_inside_sql():
    node = stmt("query! db do SELECT CASE WHEN a THEN 1 end FROM t end")
    assert node.sql.literal_text().strip() == "SELECT CASE WHEN a THEN 1 end FROM t"
    node = stmt("query! db do SELECT CASE WHEN a THEN 1 ELSE 2 END AS x FROM t end")
    assert "END AS x FROM t" in node.sql.literal_text()


def test_query_nested_case_expressions():
    src = "query! db do SELECT case when a then case when b then 1 end else 2 end FROM t end"
    node = stmt(src)
    assert node.sql.literal_text().strip().endswith("else 2 end FROM t")


def test_query_sql_comment_is_not_a_parameter():
    node = stmt("query! db do SELECT x FROM t -- why?\nend")
    assert node.params is None


def test_query_rejects_malformed_statements():
    assert_syntax_error("query! db do SELECT FROM WHERE ?? end 1 2", "malformed SQL")
    assert_syntax_error("query! db do SELECT * FROM end", "malformed SQL")
    assert_syntax_error("query! db do SELECT count(x FROM t end", "unbalanced")


def test_query_allows_insert_into_and_delete_from():
    assert stmt("query! db do INSERT INTO t (a) VALUES (?) end 1").kind == "INSERT"
    assert stmt("query! db do DELETE FROM t WHERE a = ? end 1").kind == "DELETE"


def test_query_rejects_more_than_one_statement():
    assert_syntax_error("query! db do SELECT 1; SELECT 2 end", "one SQL statement")


def test_query_trailing_semicolon_is_one_statement():
    assert stmt("query! db do SELECT 1; end").kind == "SELECT"


def dialect_ast(src: str, dialect: str) -> Program:
    return GelTransformer(dialect).transform(parse(src))


def test_query_postgres_placeholders():
    node = dialect_ast("query! db do SELECT * FROM t WHERE a = $1 OR b = $1 OR c = $2 end x y", "postgres")
    assert len(node.statements[0].params) == 2
    node = dialect_ast("query! db do SELECT * FROM t WHERE a = %s end x", "postgres")
    assert node.statements[0].params == (Identifier("x"),)
    with pytest.raises(GelSyntaxError, match="expected 0 parameters but got 1"):
        dialect_ast("query! db do SELECT * FROM t WHERE a = ? end x", "postgres")


def test_query_mssql_placeholders_count_distinct_names():
    node = dialect_ast("query! db do SELECT * FROM t WHERE a = @id OR b = @id OR c = @name end 1 2", "mssql")
    assert len(node.statements[0].params) == 2


def test_unknown_dialect():
    with pytest.raises(ValueError, match="unknown SQL dialect"):
        GelTransformer("oracle")
