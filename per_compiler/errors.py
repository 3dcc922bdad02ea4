"""
Diagnostics for the .per compiler.

Every frontend and code-generation failure is a CompileError carrying the
phase that raised it, the file, a 1-based line/column and, when known, the
offending source line. The CLI prints them with a rustc-style layout:

    error: unexpected character: '@'
      --> hello.per:3:9
       3 |
         | var x = @
         |         ^ lexer error
"""

from __future__ import annotations
import enum
from typing import Optional

from rich.console import Console
from rich.markup import escape


class ErrorKind(enum.Enum):
    LEXER = "lexer error"
    PARSER = "parser error"
    MODULE = "module error"
    CODEGEN = "codegen error"


class CompileError(Exception):
    """Base class for all user-facing compile failures."""

    kind: ErrorKind = ErrorKind.CODEGEN

    def __init__(self, message: str, file: str = "<input>", line: int = 1,
                 col: int = 1, source_line: Optional[str] = None):
        self.message = message
        self.file = file
        self.line = max(line, 1)
        self.col = max(col, 1)
        self.source_line = source_line
        super().__init__(f"{file}:{self.line}:{self.col}: {message}")

    def with_source_line(self, source_line: str) -> CompileError:
        self.source_line = source_line
        return self

    def render(self) -> str:
        """Return the diagnostic as plain text (no colour)."""
        out = [f"error: {self.message}",
               f"  --> {self.file}:{self.line}:{self.col}"]
        if self.source_line is not None:
            out.append(f"{self.line:4} |")
            out.append(f"     | {self.source_line}")
            out.append(f"     | {' ' * (self.col - 1)}^ {self.kind.value}")
        return "\n".join(out)

    def display(self, console: Optional[Console] = None):
        """Print the diagnostic with a coloured banner."""
        console = console or Console(stderr=True, highlight=False)
        console.print(f"[bold red]error[/]: {escape(self.message)}")
        console.print(f"  [bold blue]-->[/] {escape(self.file)}:{self.line}:{self.col}")
        if self.source_line is not None:
            console.print(f"[bold blue]{self.line:4} |[/]")
            console.print(f"[bold blue]     |[/] {escape(self.source_line)}")
            console.print(f"[bold blue]     |[/] {' ' * (self.col - 1)}"
                          f"[bold red]^[/] {self.kind.value}")
        console.print()


class LexerError(CompileError):
    kind = ErrorKind.LEXER


class ParseError(CompileError):
    kind = ErrorKind.PARSER


class ModuleError(CompileError):
    kind = ErrorKind.MODULE


class CodeGenError(CompileError):
    kind = ErrorKind.CODEGEN

    def __init__(self, message: str, node=None, file: str = "<input>"):
        line = getattr(node, "line", 1) if node is not None else 1
        col = getattr(node, "col", 1) if node is not None else 1
        super().__init__(message, file, line, col)


class ToolchainError(Exception):
    """The external assembler/linker could not produce an executable."""

    def __init__(self, message: str, asm_path: Optional[str] = None):
        self.asm_path = asm_path
        if asm_path:
            message = f"{message} (assembly kept at {asm_path})"
        super().__init__(message)
