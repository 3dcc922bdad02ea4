"""
Lexer / Tokenizer for the .per compiler.

Converts .per source text into a stream of tokens for the parser.
Handles keywords (plus their Go/Rust-flavoured aliases), identifiers,
decimal and hex integer literals, string literals, operators, punctuation
and significant newlines.

`asm { ... }` blocks are captured raw: the braces and everything between
them become a single ASM_BLOCK token so the parser never has to understand
NVM mnemonics.
"""

from __future__ import annotations
import enum
from dataclasses import dataclass
from typing import List, Dict, Optional

from .errors import LexerError


# ──────────────────────────────────────────────
# Token types
# ──────────────────────────────────────────────

class TokenType(enum.Enum):
    # Literals
    INT_LITERAL = "INT_LITERAL"
    STRING_LITERAL = "STRING_LITERAL"
    ASM_BLOCK = "ASM_BLOCK"

    # Identifier
    IDENT = "IDENT"

    # Keywords
    KW_PACKAGE = "package"
    KW_IMPORT = "import"
    KW_FUNC = "func"
    KW_VAR = "var"
    KW_IF = "if"
    KW_ELSE = "else"
    KW_FOR = "for"
    KW_RETURN = "return"
    KW_ASM = "asm"

    # Operators
    PLUS = "+"
    MINUS = "-"
    STAR = "*"
    SLASH = "/"
    PERCENT = "%"
    AMP = "&"
    BANG = "!"
    ASSIGN = "="
    EQ = "=="
    NEQ = "!="
    LT = "<"
    GT = ">"
    LE = "<="
    GE = ">="
    AND = "&&"
    OR = "||"
    CONCAT = "++"
    ARROW = "->"
    DOT = "."

    # Punctuation
    LPAREN = "("
    RPAREN = ")"
    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"
    SEMI = ";"
    COMMA = ","
    COLON = ":"

    # Special
    NEWLINE = "NEWLINE"
    EOF = "EOF"


# ──────────────────────────────────────────────
# Token data class
# ──────────────────────────────────────────────

@dataclass
class Token:
    type: TokenType
    value: str | int
    line: int
    col: int

    def __repr__(self):
        return f"Token({self.type.name}, {self.value!r}, L{self.line}:{self.col})"


# ──────────────────────────────────────────────
# Keyword map
# ──────────────────────────────────────────────
# `pub` is deliberately absent: it stays an IDENT and the parser treats it
# as a marker only in front of `func`.

KEYWORDS: Dict[str, TokenType] = {
    "package": TokenType.KW_PACKAGE,
    "import": TokenType.KW_IMPORT,
    "use": TokenType.KW_IMPORT,
    "func": TokenType.KW_FUNC,
    "fn": TokenType.KW_FUNC,
    "var": TokenType.KW_VAR,
    "let": TokenType.KW_VAR,
    "if": TokenType.KW_IF,
    "else": TokenType.KW_ELSE,
    "for": TokenType.KW_FOR,
    "while": TokenType.KW_FOR,
    "loop": TokenType.KW_FOR,
    "return": TokenType.KW_RETURN,
    "asm": TokenType.KW_ASM,
}


# ──────────────────────────────────────────────
# Operator tables (longest match first)
# ──────────────────────────────────────────────

MULTI_CHAR_OPS = [
    ("<=", TokenType.LE),
    (">=", TokenType.GE),
    ("==", TokenType.EQ),
    ("!=", TokenType.NEQ),
    ("&&", TokenType.AND),
    ("||", TokenType.OR),
    ("++", TokenType.CONCAT),
    ("->", TokenType.ARROW),
]

SINGLE_CHAR_OPS: Dict[str, TokenType] = {
    "+": TokenType.PLUS,
    "-": TokenType.MINUS,
    "*": TokenType.STAR,
    "/": TokenType.SLASH,
    "%": TokenType.PERCENT,
    "&": TokenType.AMP,
    "!": TokenType.BANG,
    "=": TokenType.ASSIGN,
    "<": TokenType.LT,
    ">": TokenType.GT,
    ".": TokenType.DOT,
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
    "{": TokenType.LBRACE,
    "}": TokenType.RBRACE,
    "[": TokenType.LBRACKET,
    "]": TokenType.RBRACKET,
    ";": TokenType.SEMI,
    ",": TokenType.COMMA,
    ":": TokenType.COLON,
}

STRING_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "\\": "\\", '"': '"'}


# ──────────────────────────────────────────────
# Lexer
# ──────────────────────────────────────────────

class Lexer:
    """Tokenizes .per source into a list of Tokens."""

    def __init__(self, source: str, filename: str = "<input>"):
        self.source = source
        self.filename = filename
        self.pos = 0
        self.line = 1
        self.col = 1
        self.tokens: List[Token] = []

    def _error(self, message: str, line: Optional[int] = None,
               col: Optional[int] = None) -> LexerError:
        line = line or self.line
        col = col or self.col
        lines = self.source.splitlines()
        src = lines[line - 1] if 0 < line <= len(lines) else None
        return LexerError(message, self.filename, line, col, src)

    def _peek(self, offset: int = 0) -> str:
        i = self.pos + offset
        return self.source[i] if i < len(self.source) else "\0"

    def _advance(self) -> str:
        ch = self.source[self.pos]
        self.pos += 1
        if ch == "\n":
            self.line += 1
            self.col = 1
        else:
            self.col += 1
        return ch

    def _skip_whitespace(self):
        # Newlines are significant and handled by tokenize()
        while self.pos < len(self.source) and self.source[self.pos] in " \t\r":
            self._advance()

    def _skip_line_comment(self):
        while self.pos < len(self.source) and self.source[self.pos] != "\n":
            self._advance()

    def _read_number(self) -> Token:
        start_line, start_col = self.line, self.col
        start_pos = self.pos

        # Hex: 0x...
        if self._peek() == "0" and self._peek(1) in "xX":
            self._advance()
            self._advance()
            while self.pos < len(self.source) and self.source[self.pos] in "0123456789abcdefABCDEF_":
                self._advance()
            text = self.source[start_pos + 2:self.pos].replace("_", "")
            if not text:
                raise self._error("hex literal has no digits", start_line, start_col)
            return Token(TokenType.INT_LITERAL, int(text, 16), start_line, start_col)

        while self.pos < len(self.source) and self.source[self.pos].isdigit():
            self._advance()
        text = self.source[start_pos:self.pos]
        return Token(TokenType.INT_LITERAL, int(text), start_line, start_col)

    def _read_string_literal(self) -> Token:
        start_line, start_col = self.line, self.col
        self._advance()  # opening "
        chars: List[str] = []
        while self.pos < len(self.source) and self._peek() not in '"\n':
            if self._peek() == "\\":
                self._advance()
                if self.pos >= len(self.source):
                    break
                esc = self._advance()
                chars.append(STRING_ESCAPES.get(esc, esc))
            else:
                chars.append(self._advance())
        if self.pos >= len(self.source) or self._peek() != '"':
            raise self._error("unterminated string literal", start_line, start_col)
        self._advance()  # closing "
        return Token(TokenType.STRING_LITERAL, "".join(chars), start_line, start_col)

    def _read_asm_block(self, start_line: int, start_col: int) -> Token:
        """Capture everything between the braces of `asm { ... }` verbatim."""
        self._advance()  # {
        depth = 1
        start_pos = self.pos
        while self.pos < len(self.source):
            ch = self._peek()
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    body = self.source[start_pos:self.pos]
                    self._advance()  # }
                    return Token(TokenType.ASM_BLOCK, body, start_line, start_col)
            self._advance()
        raise self._error("unterminated asm block", start_line, start_col)

    def _read_identifier_or_keyword(self) -> Token:
        start_line, start_col = self.line, self.col
        start_pos = self.pos

        while self.pos < len(self.source) and (self.source[self.pos].isalnum() or self.source[self.pos] == "_"):
            self._advance()

        text = self.source[start_pos:self.pos]

        if text == "asm":
            # Look past blanks and newlines for a brace-delimited body
            i = self.pos
            while i < len(self.source) and self.source[i] in " \t\r\n":
                i += 1
            if i < len(self.source) and self.source[i] == "{":
                while self.pos < i:
                    self._advance()
                return self._read_asm_block(start_line, start_col)

        if text in KEYWORDS:
            return Token(KEYWORDS[text], text, start_line, start_col)

        return Token(TokenType.IDENT, text, start_line, start_col)

    def tokenize(self) -> List[Token]:
        """Tokenize the entire source and return a list of tokens."""
        self.tokens = []

        while self.pos < len(self.source):
            self._skip_whitespace()
            if self.pos >= len(self.source):
                break

            ch = self._peek()

            if ch == "\n":
                self.tokens.append(Token(TokenType.NEWLINE, "\\n", self.line, self.col))
                self._advance()
                continue

            # Line comments: // and #
            if (ch == "/" and self._peek(1) == "/") or ch == "#":
                self._skip_line_comment()
                continue

            if ch.isdigit():
                self.tokens.append(self._read_number())
                continue

            if ch == '"':
                self.tokens.append(self._read_string_literal())
                continue

            if ch.isalpha() or ch == "_":
                self.tokens.append(self._read_identifier_or_keyword())
                continue

            matched = False
            for op_str, op_type in MULTI_CHAR_OPS:
                if self.source[self.pos:self.pos + len(op_str)] == op_str:
                    start_line, start_col = self.line, self.col
                    for _ in op_str:
                        self._advance()
                    self.tokens.append(Token(op_type, op_str, start_line, start_col))
                    matched = True
                    break

            if matched:
                continue

            if ch in SINGLE_CHAR_OPS:
                start_line, start_col = self.line, self.col
                self._advance()
                self.tokens.append(Token(SINGLE_CHAR_OPS[ch], ch, start_line, start_col))
                continue

            raise self._error(f"unexpected character: {ch!r}")

        self.tokens.append(Token(TokenType.EOF, "", self.line, self.col))
        return self.tokens
