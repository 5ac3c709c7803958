from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

import numpy as np

from lexer import DelphiParseError, Token


INT_LITERAL_MAX = int(np.iinfo(np.int32).max)

VISIBILITY_TOKENS = ("PUBLIC", "PRIVATE", "PROTECTED")
METHOD_KIND_TOKENS = ("CONSTRUCTOR", "DESTRUCTOR", "PROCEDURE", "FUNCTION")


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


class Statement(Node):
    pass


class Expression(Node):
    pass


# ---- Declarations ----


@dataclass
class FieldDecl(Node):
    names: List[str]
    type_name: str


@dataclass
class FormalParam(Node):
    names: List[str]
    type_name: str


@dataclass
class MethodHeader(Node):
    kind: str  # constructor | destructor | procedure | function
    name: str
    params: List[FormalParam] = field(default_factory=list)
    return_type: Optional[str] = None

    @property
    def param_names(self) -> List[str]:
        return [name for group in self.params for name in group.names]


MemberDecl = Union[FieldDecl, MethodHeader]


@dataclass
class VisibilitySection(Node):
    visibility: str  # public | private | protected
    members: List[MemberDecl]


@dataclass
class TypeDecl(Node):
    name: str
    members: List[Union[VisibilitySection, FieldDecl, MethodHeader]]


@dataclass
class TypeSection(Node):
    decls: List[TypeDecl]


@dataclass
class VarDecl(Node):
    names: List[str]
    type_name: str


@dataclass
class VarSection(Node):
    decls: List[VarDecl]


@dataclass
class Block(Node):
    statements: List[Statement]


@dataclass
class MethodImpl(Node):
    class_name: str
    method_name: str
    is_function: bool
    params: List[FormalParam]
    body: Block
    kind: str = "procedure"
    return_type: Optional[str] = None

    @property
    def param_names(self) -> List[str]:
        return [name for group in self.params for name in group.names]


@dataclass
class MethodImplSection(Node):
    impls: List[MethodImpl]


@dataclass
class Program(Node):
    block: Block
    type_section: Optional[TypeSection] = None
    var_section: Optional[VarSection] = None
    method_impl_section: Optional[MethodImplSection] = None
    name: Optional[str] = None


# ---- Statements and expressions ----


@dataclass
class Lvalue(Node):
    parts: List[str]

    @property
    def text(self) -> str:
        return ".".join(self.parts)


@dataclass
class Assignment(Statement):
    target: Lvalue
    expression: Expression


@dataclass
class ProcCall(Statement):
    name: str
    args: List[Expression]


@dataclass
class MethodOrStaticCall(Statement, Expression):
    left: str
    member: str
    args: List[Expression]


@dataclass
class IntLiteral(Expression):
    value: int


@dataclass
class LvalueRef(Expression):
    target: Lvalue


@dataclass
class AddSub(Expression):
    op: str
    left: Expression
    right: Expression


@dataclass
class MulDiv(Expression):
    op: str
    left: Expression
    right: Expression


@dataclass
class Parens(Expression):
    expression: Expression


class Parser:
    def __init__(
        self,
        tokens: List[Token],
        filename: str,
        source_lines: List[str],
    ):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.index = 0

    def parse(self) -> Program:
        start = self._peek()
        name: Optional[str] = None
        if self._match("PROGRAM"):
            name = self._consume("IDENT").value
            self._consume("SEMI")

        type_decls: List[TypeDecl] = []
        var_decls: List[VarDecl] = []
        impls: List[MethodImpl] = []
        type_loc: Optional[SourceLocation] = None
        var_loc: Optional[SourceLocation] = None
        impl_loc: Optional[SourceLocation] = None
        # Sections may repeat and interleave; each kind is merged in source order.
        while self._peek().type != "BEGIN":
            token = self._peek()
            if token.type == "TYPE":
                type_loc = type_loc or self._location_from_token(token)
                type_decls.extend(self._parse_type_section())
            elif token.type == "VAR":
                var_loc = var_loc or self._location_from_token(token)
                var_decls.extend(self._parse_var_section())
            elif token.type in METHOD_KIND_TOKENS:
                impl_loc = impl_loc or self._location_from_token(token)
                impls.append(self._parse_method_impl())
            else:
                raise DelphiParseError(
                    f"Expected section or 'begin' but found {token.type} at line {token.line}"
                )

        block = self._parse_block()
        self._consume("DOT")
        self._consume("EOF")
        return Program(
            location=self._location_from_token(start),
            block=block,
            type_section=TypeSection(location=type_loc, decls=type_decls) if type_loc else None,
            var_section=VarSection(location=var_loc, decls=var_decls) if var_loc else None,
            method_impl_section=MethodImplSection(location=impl_loc, impls=impls) if impl_loc else None,
            name=name,
        )

    # ---- sections ----

    def _parse_type_section(self) -> List[TypeDecl]:
        self._consume("TYPE")
        decls: List[TypeDecl] = [self._parse_type_decl()]
        while self._peek().type == "IDENT":
            decls.append(self._parse_type_decl())
        return decls

    def _parse_type_decl(self) -> TypeDecl:
        name_token = self._consume("IDENT")
        self._consume("EQUALS")
        self._consume("CLASS")
        members: List[Union[VisibilitySection, FieldDecl, MethodHeader]] = []
        while self._peek().type != "END":
            token = self._peek()
            if token.type in VISIBILITY_TOKENS:
                self.index += 1
                section_members: List[MemberDecl] = []
                while self._peek().type not in VISIBILITY_TOKENS and self._peek().type != "END":
                    section_members.append(self._parse_member_decl())
                members.append(
                    VisibilitySection(
                        location=self._location_from_token(token),
                        visibility=token.type.lower(),
                        members=section_members,
                    )
                )
                continue
            members.append(self._parse_member_decl())
        self._consume("END")
        self._consume("SEMI")
        return TypeDecl(location=self._location_from_token(name_token), name=name_token.value, members=members)

    def _parse_member_decl(self) -> MemberDecl:
        token = self._peek()
        if token.type in METHOD_KIND_TOKENS:
            return self._parse_method_header()
        if token.type == "IDENT":
            names = self._parse_id_list()
            self._consume("COLON")
            type_name = self._consume("IDENT").value
            self._consume("SEMI")
            return FieldDecl(location=self._location_from_token(token), names=names, type_name=type_name)
        raise DelphiParseError(f"Unexpected token {token.type} in class body at line {token.line}")

    def _parse_method_header(self) -> MethodHeader:
        kind_token = self._peek()
        self.index += 1
        kind = kind_token.type.lower()
        name = self._consume("IDENT").value
        params = self._parse_formal_params()
        return_type = self._parse_return_type(kind, kind_token)
        self._consume("SEMI")
        return MethodHeader(
            location=self._location_from_token(kind_token),
            kind=kind,
            name=name,
            params=params,
            return_type=return_type,
        )

    def _parse_var_section(self) -> List[VarDecl]:
        self._consume("VAR")
        decls: List[VarDecl] = []
        while True:
            first = self._peek()
            names = self._parse_id_list()
            self._consume("COLON")
            type_name = self._consume("IDENT").value
            self._consume("SEMI")
            decls.append(VarDecl(location=self._location_from_token(first), names=names, type_name=type_name))
            if self._peek().type != "IDENT":
                break
        return decls

    def _parse_method_impl(self) -> MethodImpl:
        kind_token = self._peek()
        self.index += 1
        kind = kind_token.type.lower()
        class_name = self._consume("IDENT").value
        self._consume("DOT")
        method_name = self._consume("IDENT").value
        params = self._parse_formal_params()
        return_type = self._parse_return_type(kind, kind_token)
        self._consume("SEMI")
        body = self._parse_block()
        self._consume("SEMI")
        return MethodImpl(
            location=self._location_from_token(kind_token),
            class_name=class_name,
            method_name=method_name,
            is_function=kind == "function",
            params=params,
            body=body,
            kind=kind,
            return_type=return_type,
        )

    def _parse_formal_params(self) -> List[FormalParam]:
        params: List[FormalParam] = []
        if not self._match("LPAREN"):
            return params
        if self._peek().type != "RPAREN":
            while True:
                first = self._peek()
                names = self._parse_id_list()
                self._consume("COLON")
                type_name = self._consume("IDENT").value
                params.append(FormalParam(location=self._location_from_token(first), names=names, type_name=type_name))
                if not self._match("SEMI"):
                    break
        self._consume("RPAREN")
        return params

    def _parse_return_type(self, kind: str, kind_token: Token) -> Optional[str]:
        if kind != "function":
            return None
        if not self._match("COLON"):
            raise DelphiParseError(f"Function declared without a result type at line {kind_token.line}")
        return self._consume("IDENT").value

    def _parse_id_list(self) -> List[str]:
        names = [self._consume("IDENT").value]
        while self._match("COMMA"):
            names.append(self._consume("IDENT").value)
        return names

    # ---- statements ----

    def _parse_block(self) -> Block:
        start = self._consume("BEGIN")
        statements = self._parse_statements(stop_tokens={"END"})
        self._consume("END")
        return Block(location=self._location_from_token(start), statements=statements)

    def _parse_statements(self, stop_tokens: Iterable[str]) -> List[Statement]:
        statements: List[Statement] = []
        while self._peek().type not in stop_tokens:
            if self._match("SEMI"):
                continue
            statements.append(self._parse_statement())
            if self._peek().type not in stop_tokens:
                self._consume("SEMI")
        return statements

    def _parse_statement(self) -> Statement:
        token = self._peek()
        if token.type != "IDENT":
            raise DelphiParseError(f"Unexpected token {token.type} at start of statement at line {token.line}")
        location = self._location_from_token(token)
        lvalue = self._parse_lvalue()
        if self._match("ASSIGN"):
            expr = self._parse_expression()
            return Assignment(location=location, target=lvalue, expression=expr)
        if len(lvalue.parts) == 1:
            args = self._parse_actual_params() if self._peek().type == "LPAREN" else []
            return ProcCall(location=location, name=lvalue.parts[0], args=args)
        if len(lvalue.parts) == 2:
            args = self._parse_actual_params() if self._peek().type == "LPAREN" else []
            return MethodOrStaticCall(location=location, left=lvalue.parts[0], member=lvalue.parts[1], args=args)
        raise DelphiParseError(f"Expected ':=' after '{lvalue.text}' at line {token.line}")

    def _parse_lvalue(self) -> Lvalue:
        first = self._consume("IDENT")
        parts = [first.value]
        while self._match("DOT"):
            parts.append(self._consume("IDENT").value)
        return Lvalue(location=self._location_from_token(first), parts=parts)

    def _parse_actual_params(self) -> List[Expression]:
        self._consume("LPAREN")
        args: List[Expression] = []
        if self._peek().type != "RPAREN":
            while True:
                args.append(self._parse_expression())
                if not self._match("COMMA"):
                    break
        self._consume("RPAREN")
        return args

    # ---- expressions ----

    def _parse_expression(self) -> Expression:
        expr = self._parse_term()
        while self._peek().type in ("PLUS", "MINUS"):
            op_token = self._peek()
            self.index += 1
            right = self._parse_term()
            expr = AddSub(location=self._location_from_token(op_token), op=op_token.value, left=expr, right=right)
        return expr

    def _parse_term(self) -> Expression:
        expr = self._parse_factor()
        while self._peek().type in ("STAR", "SLASH", "DIV"):
            op_token = self._peek()
            self.index += 1
            op = "*" if op_token.type == "STAR" else "/"
            right = self._parse_factor()
            expr = MulDiv(location=self._location_from_token(op_token), op=op, left=expr, right=right)
        return expr

    def _parse_factor(self) -> Expression:
        token = self._peek()
        if token.type == "NUMBER":
            self.index += 1
            value = int(token.value)
            if value > INT_LITERAL_MAX:
                raise DelphiParseError(f"Integer literal {token.value} out of range at line {token.line}")
            return IntLiteral(location=self._location_from_token(token), value=value)
        if token.type == "LPAREN":
            self._consume("LPAREN")
            expr = self._parse_expression()
            self._consume("RPAREN")
            return Parens(location=self._location_from_token(token), expression=expr)
        if token.type == "IDENT":
            lvalue = self._parse_lvalue()
            if len(lvalue.parts) == 2 and self._peek().type == "LPAREN":
                args = self._parse_actual_params()
                return MethodOrStaticCall(
                    location=lvalue.location, left=lvalue.parts[0], member=lvalue.parts[1], args=args
                )
            return LvalueRef(location=lvalue.location, target=lvalue)
        raise DelphiParseError(f"Unexpected token {token.type} in expression at line {token.line}")

    # ---- token helpers ----

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise DelphiParseError(f"Expected token {token_type} but found {token.type} at line {token.line}")
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)
