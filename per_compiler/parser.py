"""
Recursive-descent parser for the .per compiler.

Parses a token stream from the Lexer into the AST defined in ast_nodes.
Grammar summary:

  program    := 'package' IDENT imports function*
  imports    := ('import' (STRING | '(' STRING* ')'))*
  function   := ['pub'] 'func' IDENT '(' params ')' [['->'] IDENT] block
  params     := [IDENT [':'] [IDENT] (',' IDENT [':'] [IDENT])*]
  block      := '{' statement* '}'

  statement  := 'var' IDENT [':'] ['[' INT ']'] [IDENT] ['=' expr]
              | IDENT '=' expr | IDENT '[' expr ']' '=' expr
              | '*' unary '=' expr
              | 'if' expr block ['else' (block | if)]
              | 'for' [expr] block
              | 'return' [expr]
              | 'asm' (ASM_BLOCK | STRING)
              | expr

Statements are separated by newlines or ';'.  Operator precedence, lowest
first: ||, &&, equality, comparison, additive (+ - ++), multiplicative,
unary (- ! & *), primary.
"""

from __future__ import annotations
import logging
from typing import List, Optional
from .lexer import Token, TokenType
from .ast_nodes import *
from .errors import ParseError

log = logging.getLogger(__name__)


class Parser:
    """Recursive descent parser producing an AST from tokens."""

    def __init__(self, tokens: List[Token], source: str = "",
                 filename: str = "<input>"):
        self.tokens = tokens
        self.source = source
        self.filename = filename
        self.pos = 0
        self._lines = source.splitlines()

    # ── Helpers ─────────────────────────────

    def _cur(self) -> Token:
        return self.tokens[self.pos]

    def _peek(self, offset: int = 0) -> Token:
        i = self.pos + offset
        if i < len(self.tokens):
            return self.tokens[i]
        return self.tokens[-1]  # EOF

    def _at(self, *types: TokenType) -> bool:
        return self._cur().type in types

    def _advance(self) -> Token:
        tok = self.tokens[self.pos]
        if self.pos < len(self.tokens) - 1:
            self.pos += 1
        return tok

    def _error(self, message: str, tok: Optional[Token] = None) -> ParseError:
        tok = tok or self._cur()
        src = self._lines[tok.line - 1] if 0 < tok.line <= len(self._lines) else None
        return ParseError(message, self.filename, tok.line, tok.col, src)

    def _describe(self, tok: Token) -> str:
        if tok.type == TokenType.EOF:
            return "end of file"
        if tok.type == TokenType.NEWLINE:
            return "newline"
        return f"{tok.type.name} {tok.value!r}"

    def _expect(self, ttype: TokenType, msg: str = "") -> Token:
        if self._cur().type != ttype:
            if not msg:
                msg = f"expected {ttype.value!r}"
            raise self._error(f"{msg}, found {self._describe(self._cur())}")
        return self._advance()

    def _match(self, *types: TokenType) -> Optional[Token]:
        if self._cur().type in types:
            return self._advance()
        return None

    def _skip_newlines(self):
        while self._at(TokenType.NEWLINE):
            self._advance()

    def _skip_separators(self):
        while self._at(TokenType.NEWLINE, TokenType.SEMI):
            self._advance()

    # ── Top-level parsing ─────────────────────

    def parse(self) -> Program:
        """Parse the full token stream into a Program AST."""
        self._skip_separators()
        start = self._expect(TokenType.KW_PACKAGE, "expected 'package' declaration")
        name_tok = self._expect(TokenType.IDENT, "expected package name")
        prog = Program(package=name_tok.value, file=self.filename,
                       line=start.line, col=start.col)
        self._skip_separators()

        while self._at(TokenType.KW_IMPORT):
            prog.imports.extend(self._parse_import())
            self._skip_separators()

        while not self._at(TokenType.EOF):
            prog.functions.append(self._parse_function())
            self._skip_separators()

        log.debug("parsed %s: %d imports, %d functions",
                  self.filename, len(prog.imports), len(prog.functions))
        return prog

    def _parse_import(self) -> List[Import]:
        self._expect(TokenType.KW_IMPORT)
        imports = []
        if self._match(TokenType.LPAREN):
            self._skip_separators()
            while not self._at(TokenType.RPAREN):
                tok = self._expect(TokenType.STRING_LITERAL, "expected import path string")
                imports.append(Import(path=tok.value, line=tok.line, col=tok.col))
                self._skip_separators()
            self._expect(TokenType.RPAREN)
        else:
            tok = self._expect(TokenType.STRING_LITERAL, "expected import path string")
            imports.append(Import(path=tok.value, line=tok.line, col=tok.col))
        return imports

    def _parse_function(self) -> Function:
        is_pub = False
        if self._at(TokenType.IDENT) and self._cur().value == "pub":
            self._advance()
            is_pub = True

        start = self._expect(TokenType.KW_FUNC, "expected 'func'")
        name_tok = self._expect(TokenType.IDENT, "expected function name")
        name = name_tok.value

        self._expect(TokenType.LPAREN)
        params = self._parse_param_list()
        self._expect(TokenType.RPAREN)

        return_type = None
        if self._match(TokenType.ARROW):
            return_type = self._expect(TokenType.IDENT, "expected return type").value
        elif self._at(TokenType.IDENT):
            return_type = self._advance().value

        self._skip_newlines()
        body = self._parse_block()

        return Function(name=name, params=params, return_type=return_type,
                        body=body, is_exported=is_pub or name[:1].isupper(),
                        file=self.filename, line=start.line, col=start.col)

    def _parse_param_list(self) -> List[Parameter]:
        params: List[Parameter] = []
        self._skip_newlines()
        while not self._at(TokenType.RPAREN):
            tok = self._expect(TokenType.IDENT, "expected parameter name")
            self._match(TokenType.COLON)
            type_name = None
            if self._at(TokenType.IDENT):
                type_name = self._advance().value
            params.append(Parameter(name=tok.value, type_name=type_name,
                                    line=tok.line, col=tok.col))
            if not self._match(TokenType.COMMA):
                break
            self._skip_newlines()
        self._skip_newlines()
        return params

    # ── Statements ────────────────────────────

    def _parse_block(self) -> List[ASTNode]:
        self._expect(TokenType.LBRACE)
        self._skip_separators()
        stmts: List[ASTNode] = []
        while not self._at(TokenType.RBRACE):
            if self._at(TokenType.EOF):
                raise self._error("expected '}', found end of file")
            stmts.append(self._parse_statement())
            self._skip_separators()
        self._expect(TokenType.RBRACE)
        return stmts

    def _parse_statement(self) -> ASTNode:
        tok = self._cur()

        if self._at(TokenType.KW_VAR):
            return self._parse_var_decl()
        if self._at(TokenType.KW_IF):
            return self._parse_if()
        if self._at(TokenType.KW_FOR):
            return self._parse_for()
        if self._at(TokenType.KW_RETURN):
            return self._parse_return()
        if self._at(TokenType.KW_ASM, TokenType.ASM_BLOCK):
            return self._parse_asm()

        if self._at(TokenType.STAR):
            stmt = self._try_pointer_assignment()
            if stmt is not None:
                return stmt

        if self._at(TokenType.IDENT):
            nxt = self._peek(1)
            if nxt.type == TokenType.ASSIGN:
                self._advance()
                self._advance()
                value = self._parse_expr()
                return Assignment(name=tok.value, value=value,
                                  line=tok.line, col=tok.col)
            if nxt.type == TokenType.LBRACKET:
                stmt = self._try_array_assignment()
                if stmt is not None:
                    return stmt

        expr = self._parse_expr()
        return ExprStatement(expr=expr, line=tok.line, col=tok.col)

    def _try_pointer_assignment(self) -> Optional[PointerAssignment]:
        saved = self.pos
        tok = self._advance()  # *
        target = self._parse_unary()
        if self._match(TokenType.ASSIGN):
            value = self._parse_expr()
            return PointerAssignment(target=target, value=value,
                                     line=tok.line, col=tok.col)
        self.pos = saved
        return None

    def _try_array_assignment(self) -> Optional[ArrayAssignment]:
        saved = self.pos
        tok = self._advance()  # name
        self._advance()        # [
        index = self._parse_expr()
        self._expect(TokenType.RBRACKET)
        if self._match(TokenType.ASSIGN):
            value = self._parse_expr()
            return ArrayAssignment(name=tok.value, index=index, value=value,
                                   line=tok.line, col=tok.col)
        self.pos = saved
        return None

    def _parse_var_decl(self) -> ASTNode:
        start = self._advance()  # var / let
        name = self._expect(TokenType.IDENT, "expected variable name").value
        self._match(TokenType.COLON)

        if self._match(TokenType.LBRACKET):
            size_tok = self._expect(TokenType.INT_LITERAL, "expected array size")
            self._expect(TokenType.RBRACKET)
            element_type = None
            if self._at(TokenType.IDENT):
                element_type = self._advance().value
            if size_tok.value <= 0:
                raise self._error("array size must be positive", size_tok)
            return ArrayDecl(name=name, size=size_tok.value,
                             element_type=element_type,
                             line=start.line, col=start.col)

        type_name = None
        if self._at(TokenType.IDENT):
            type_name = self._advance().value

        value = None
        if self._match(TokenType.ASSIGN):
            value = self._parse_expr()

        return VarDecl(name=name, type_name=type_name, value=value,
                       line=start.line, col=start.col)

    def _parse_if(self) -> IfStmt:
        start = self._expect(TokenType.KW_IF)
        condition = self._parse_expr()
        self._skip_newlines()
        then_body = self._parse_block()

        # `else` may sit on the line after the closing brace
        saved = self.pos
        self._skip_newlines()
        else_body = None
        if self._match(TokenType.KW_ELSE):
            self._skip_newlines()
            if self._at(TokenType.KW_IF):
                else_body = [self._parse_if()]
            else:
                else_body = self._parse_block()
        else:
            self.pos = saved

        return IfStmt(condition=condition, then_body=then_body,
                      else_body=else_body, line=start.line, col=start.col)

    def _parse_for(self) -> ForStmt:
        start = self._expect(TokenType.KW_FOR)
        condition = None
        if not self._at(TokenType.LBRACE):
            condition = self._parse_expr()
        self._skip_newlines()
        body = self._parse_block()
        return ForStmt(condition=condition, body=body,
                       line=start.line, col=start.col)

    def _parse_return(self) -> ReturnStmt:
        start = self._expect(TokenType.KW_RETURN)
        value = None
        if not self._at(TokenType.NEWLINE, TokenType.RBRACE,
                        TokenType.SEMI, TokenType.EOF):
            value = self._parse_expr()
        return ReturnStmt(value=value, line=start.line, col=start.col)

    def _parse_asm(self) -> InlineAsm:
        tok = self._advance()
        if tok.type == TokenType.ASM_BLOCK:
            return InlineAsm(code=tok.value, line=tok.line, col=tok.col)
        code = self._expect(TokenType.STRING_LITERAL,
                            "expected '{' or string after 'asm'")
        return InlineAsm(code=code.value, line=tok.line, col=tok.col)

    # ── Expression parsing (precedence climbing) ──

    def _parse_expr(self) -> Expression:
        return self._parse_logical_or()

    def _binary(self, next_level, *ops: TokenType) -> Expression:
        left = next_level()
        while self._at(*ops):
            tok = self._advance()
            self._skip_newlines()
            right = next_level()
            left = BinaryOp(op=tok.value, left=left, right=right,
                            line=tok.line, col=tok.col)
        return left

    def _parse_logical_or(self) -> Expression:
        return self._binary(self._parse_logical_and, TokenType.OR)

    def _parse_logical_and(self) -> Expression:
        return self._binary(self._parse_equality, TokenType.AND)

    def _parse_equality(self) -> Expression:
        return self._binary(self._parse_comparison, TokenType.EQ, TokenType.NEQ)

    def _parse_comparison(self) -> Expression:
        return self._binary(self._parse_additive, TokenType.LT, TokenType.LE,
                            TokenType.GT, TokenType.GE)

    def _parse_additive(self) -> Expression:
        return self._binary(self._parse_multiplicative, TokenType.PLUS,
                            TokenType.MINUS, TokenType.CONCAT)

    def _parse_multiplicative(self) -> Expression:
        return self._binary(self._parse_unary, TokenType.STAR,
                            TokenType.SLASH, TokenType.PERCENT)

    def _parse_unary(self) -> Expression:
        """Parse unary prefix operators: -, !, &, *"""
        tok = self._cur()

        if self._match(TokenType.MINUS):
            return UnaryOp(op="-", operand=self._parse_unary(),
                           line=tok.line, col=tok.col)
        if self._match(TokenType.BANG):
            return UnaryOp(op="!", operand=self._parse_unary(),
                           line=tok.line, col=tok.col)
        if self._match(TokenType.AMP):
            return AddressOf(operand=self._parse_unary(),
                             line=tok.line, col=tok.col)
        if self._match(TokenType.STAR):
            return Deref(operand=self._parse_unary(),
                         line=tok.line, col=tok.col)

        return self._parse_primary()

    def _parse_args(self) -> List[Expression]:
        self._expect(TokenType.LPAREN)
        args: List[Expression] = []
        self._skip_newlines()
        while not self._at(TokenType.RPAREN):
            args.append(self._parse_expr())
            self._skip_newlines()
            if not self._match(TokenType.COMMA):
                break
            self._skip_newlines()
        self._expect(TokenType.RPAREN, "expected ')' after arguments")
        return args

    def _parse_primary(self) -> Expression:
        tok = self._cur()

        if self._match(TokenType.INT_LITERAL):
            return IntLiteral(value=tok.value, line=tok.line, col=tok.col)

        if self._match(TokenType.STRING_LITERAL):
            lit = StringLiteral(value=tok.value, line=tok.line, col=tok.col)
            if self._match(TokenType.LBRACKET):
                index = self._parse_expr()
                self._expect(TokenType.RBRACKET)
                return StringIndex(string=lit, index=index,
                                   line=tok.line, col=tok.col)
            return lit

        if self._match(TokenType.IDENT):
            name = tok.value

            if self._match(TokenType.DOT):
                member = self._expect(TokenType.IDENT, "expected name after '.'")
                args: List[Expression] = []
                if self._at(TokenType.LPAREN):
                    args = self._parse_args()
                return ModuleCall(module=name, name=member.value, args=args,
                                  line=tok.line, col=tok.col)

            if self._at(TokenType.LPAREN):
                return Call(name=name, args=self._parse_args(),
                            line=tok.line, col=tok.col)

            if self._match(TokenType.LBRACKET):
                index = self._parse_expr()
                self._expect(TokenType.RBRACKET)
                return ArrayAccess(name=name, index=index,
                                   line=tok.line, col=tok.col)

            return Identifier(name=name, line=tok.line, col=tok.col)

        if self._match(TokenType.LPAREN):
            self._skip_newlines()
            expr = self._parse_expr()
            self._skip_newlines()
            self._expect(TokenType.RPAREN)
            return expr

        raise self._error(f"expected expression, found {self._describe(tok)}")
