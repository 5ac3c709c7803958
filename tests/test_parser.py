"""Test the recursive-descent parser."""
import pytest

from lexer import DelphiParseError, Lexer
from parser import (
    AddSub,
    Assignment,
    FieldDecl,
    IntLiteral,
    LvalueRef,
    MethodHeader,
    MethodOrStaticCall,
    MulDiv,
    Parens,
    Parser,
    ProcCall,
    VisibilitySection,
)


def parse(text: str):
    tokens = Lexer(text, "<test>").tokenize()
    return Parser(tokens, "<test>", text.splitlines()).parse()


def parse_main(body: str):
    return parse(f"begin {body} end.").block.statements


class TestProgramStructure:
    """Tests for top-level sections."""

    def test_minimal_program(self):
        """Test a program with only a main block."""
        program = parse("begin end.")
        assert program.block.statements == []
        assert program.type_section is None
        assert program.var_section is None
        assert program.method_impl_section is None

    def test_program_header_name(self, counter_program):
        """Test the optional program header is recorded."""
        program = parse(counter_program)
        assert program.name == "CounterDemo"

    def test_counter_program_sections(self, counter_program):
        """Test type, var and implementation sections of the counter demo."""
        program = parse(counter_program)
        decl = program.type_section.decls[0]
        assert decl.name == "TCounter"
        private, public = decl.members
        assert isinstance(private, VisibilitySection)
        assert private.visibility == "private"
        assert isinstance(private.members[0], FieldDecl)
        assert [m.kind for m in public.members] == ["constructor", "procedure", "function"]
        assert program.var_section.decls[0].names == ["c"]
        impls = program.method_impl_section.impls
        assert [(i.kind, i.method_name, i.is_function) for i in impls] == [
            ("constructor", "Create", False),
            ("procedure", "Inc", False),
            ("function", "GetValue", True),
        ]
        assert impls[0].param_names == ["start"]

    def test_repeated_sections_are_merged(self):
        """Test sections may repeat and are merged in order."""
        program = parse("var a: Integer; var b, c: Integer; begin end.")
        assert [d.names for d in program.var_section.decls] == [["a"], ["b", "c"]]

    def test_param_groups(self):
        """Test grouped formal parameters flatten in order."""
        program = parse(
            "type T = class procedure P(a, b: Integer; c: Integer); end; begin end."
        )
        header = program.type_section.decls[0].members[0]
        assert isinstance(header, MethodHeader)
        assert header.param_names == ["a", "b", "c"]

    def test_function_requires_result_type(self):
        """Test a function header without a result type is rejected."""
        with pytest.raises(DelphiParseError, match="without a result type"):
            parse("type T = class function F; end; begin end.")

    def test_missing_final_dot(self):
        """Test the closing '.' is required."""
        with pytest.raises(DelphiParseError, match="Expected token DOT but found EOF"):
            parse("begin end")


class TestStatements:
    """Tests for statement forms."""

    def test_assignment(self):
        """Test a simple assignment."""
        (stmt,) = parse_main("x := 1")
        assert isinstance(stmt, Assignment)
        assert stmt.target.parts == ["x"]
        assert isinstance(stmt.expression, IntLiteral)

    def test_field_assignment(self):
        """Test a dotted assignment target."""
        (stmt,) = parse_main("c.value := 3")
        assert stmt.target.parts == ["c", "value"]

    def test_deep_lvalue_is_left_to_evaluator(self):
        """Test a multi-dot assignment target still parses."""
        (stmt,) = parse_main("a.b.c := 3")
        assert stmt.target.text == "a.b.c"

    def test_procedure_call(self):
        """Test builtin-style procedure calls with and without args."""
        first, second = parse_main("writeln; writeln(1, 2)")
        assert isinstance(first, ProcCall) and first.args == []
        assert isinstance(second, ProcCall) and len(second.args) == 2

    def test_method_call_statement(self):
        """Test a dotted call without parentheses is a method call."""
        (stmt,) = parse_main("c.Inc")
        assert isinstance(stmt, MethodOrStaticCall)
        assert (stmt.left, stmt.member, stmt.args) == ("c", "Inc", [])

    def test_empty_statements_allowed(self):
        """Test stray semicolons produce no statements."""
        assert len(parse_main(";; x := 1;;")) == 1


class TestExpressions:
    """Tests for expression precedence and forms."""

    def test_precedence(self):
        """Test '*' binds tighter than '+'."""
        (stmt,) = parse_main("x := 1 + 2 * 3")
        expr = stmt.expression
        assert isinstance(expr, AddSub) and expr.op == "+"
        assert isinstance(expr.right, MulDiv) and expr.right.op == "*"

    def test_left_associative(self):
        """Test subtraction associates to the left."""
        (stmt,) = parse_main("x := 10 - 3 - 2")
        expr = stmt.expression
        assert isinstance(expr.left, AddSub)
        assert isinstance(expr.right, IntLiteral) and expr.right.value == 2

    def test_div_keyword_aliases_slash(self):
        """Test 'div' produces the same node as '/'."""
        (stmt,) = parse_main("x := 7 div 2")
        assert isinstance(stmt.expression, MulDiv)
        assert stmt.expression.op == "/"

    def test_parens(self):
        """Test parenthesised expressions."""
        (stmt,) = parse_main("x := (1 + 2) * 3")
        assert isinstance(stmt.expression.left, Parens)

    def test_call_in_expression(self):
        """Test a dotted name with parentheses is a call expression."""
        (stmt,) = parse_main("c := TCounter.Create(5)")
        assert isinstance(stmt.expression, MethodOrStaticCall)
        assert stmt.expression.left == "TCounter"

    def test_field_reference_without_parens(self):
        """Test a dotted name without parentheses is a field read."""
        (stmt,) = parse_main("x := c.value")
        assert isinstance(stmt.expression, LvalueRef)

    def test_literal_out_of_range(self):
        """Test literals beyond the 32-bit range are rejected."""
        with pytest.raises(DelphiParseError, match="out of range"):
            parse_main("x := 2147483648")

    def test_source_location(self):
        """Test nodes carry line and stripped statement text."""
        program = parse("begin\n   x := 1\nend.")
        loc = program.block.statements[0].location
        assert loc.line == 2
        assert loc.statement == "x := 1"
