from __future__ import annotations
from dataclasses import dataclass
from typing import List


class DelphiError(Exception):
    """Base class for interpreter errors."""


class DelphiParseError(DelphiError):
    """Raised when lexing or parsing fails."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


KEYWORDS = {
    "PROGRAM",
    "TYPE",
    "CLASS",
    "END",
    "VAR",
    "BEGIN",
    "CONSTRUCTOR",
    "DESTRUCTOR",
    "PROCEDURE",
    "FUNCTION",
    "PUBLIC",
    "PRIVATE",
    "PROTECTED",
    "DIV",
}

DIGITS = frozenset("0123456789")

SYMBOLS = {
    "(": "LPAREN",
    ")": "RPAREN",
    ",": "COMMA",
    ";": "SEMI",
    ".": "DOT",
    "=": "EQUALS",
    "+": "PLUS",
    "-": "MINUS",
    "*": "STAR",
    "/": "SLASH",
}


class Lexer:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        symbols = SYMBOLS
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch in " \t\r\n":
                _advance()
                continue
            if ch == "{":
                self._consume_brace_comment()
                continue
            if ch == "(" and self._peek_at(1) == "*":
                self._consume_paren_comment()
                continue
            if ch == "/" and self._peek_at(1) == "/":
                self._consume_line_comment()
                continue
            if ch == ":":
                line, col = self.line, self.column
                _advance()
                if not self._eof and self._peek() == "=":
                    _advance()
                    tokens_append(Token("ASSIGN", ":=", line, col))
                else:
                    tokens_append(Token("COLON", ":", line, col))
                continue
            if ch in symbols:
                tokens_append(Token(symbols[ch], ch, self.line, self.column))
                _advance()
                continue
            if ch in DIGITS:
                tokens_append(self._consume_number())
                continue
            if self._is_identifier_start(ch):
                tokens_append(self._consume_identifier())
                continue
            raise DelphiParseError(
                f"Unexpected character '{ch}' at {self.filename}:{self.line}:{self.column}"
            )
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_brace_comment(self) -> None:
        line, col = self.line, self.column
        self._advance()  # consume '{'
        while not self._eof:
            if self._peek() == "}":
                self._advance()
                return
            self._advance()
        raise DelphiParseError(f"Unterminated comment at {self.filename}:{line}:{col}")

    def _consume_paren_comment(self) -> None:
        line, col = self.line, self.column
        self._advance()
        self._advance()
        while not self._eof:
            if self._peek() == "*" and self._peek_at(1) == ")":
                self._advance()
                self._advance()
                return
            self._advance()
        raise DelphiParseError(f"Unterminated comment at {self.filename}:{line}:{col}")

    def _consume_line_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        digits: List[str] = []
        text = self.text
        n = len(text)
        while self.index < n and text[self.index] in DIGITS:
            digits.append(text[self.index])
            self._advance()
        if self.index < n and self._is_identifier_start(text[self.index]):
            raise DelphiParseError(
                f"Malformed number at {self.filename}:{line}:{col}"
            )
        return Token("NUMBER", "".join(digits), line, col)

    def _consume_identifier(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and self._is_identifier_part(text[self.index]):
            chars.append(text[self.index])
            _advance()
        value = "".join(chars)
        upper = value.upper()
        # Keywords are case-insensitive; identifiers keep their spelling.
        token_type: str = upper if upper in KEYWORDS else "IDENT"
        return Token(token_type, value, line, col)

    def _is_identifier_start(self, ch: str) -> bool:
        return ch == "_" or ("a" <= ch <= "z") or ("A" <= ch <= "Z")

    def _is_identifier_part(self, ch: str) -> bool:
        return self._is_identifier_start(ch) or ch in DIGITS

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _peek_at(self, offset: int) -> str:
        i = self.index + offset
        return self.text[i] if i < len(self.text) else ""

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
