"""
ELF backend: x86-64 AT&T assembly for gcc.

Translates the AST into GNU assembler text and links it with the host
C compiler driver (non-PIE, against libc).

Register usage convention:
  - rax: accumulator, every expression leaves its value here
  - rcx: right operand of a binary operation (popped from the stack)
  - rdi, rsi, rdx, rcx, r8, r9: call arguments, spilled to the frame on entry
  - rbp: frame pointer; locals and parameters live at negative offsets

Binary operations evaluate the right operand first, push it, evaluate the
left operand, then pop the right operand into rcx.  The stdio runtime is a
set of thunks (`stdio_Print`, `stdio_Println`, ...) that realign rsp and
call printf/scanf/putchar/getchar/fgets/fflush/strlen.
"""

from __future__ import annotations
import logging
import os
import subprocess
from pathlib import Path
from typing import List, Optional

from .ast_nodes import *
from .errors import CodeGenError, ToolchainError
from .symbols import (FrameLayout, FunctionUnit, SymbolTable, cap_constant,
                      mangle, stdio_target)

log = logging.getLogger(__name__)

ARG_REGS = ["%rdi", "%rsi", "%rdx", "%rcx", "%r8", "%r9"]

_SETCC = {"==": "sete", "!=": "setne", "<": "setl", "<=": "setle",
          ">": "setg", ">=": "setge"}


def escape_asm_string(text: str) -> str:
    """Escape a string for a GNU as `.string` directive."""
    out = []
    for ch in text.encode("utf-8"):
        if ch == 0x5C:
            out.append("\\\\")
        elif ch == 0x22:
            out.append('\\"')
        elif ch == 0x0A:
            out.append("\\n")
        elif ch == 0x09:
            out.append("\\t")
        elif ch == 0x0D:
            out.append("\\r")
        elif 0x20 <= ch < 0x7F:
            out.append(chr(ch))
        else:
            out.append(f"\\{ch:03o}")
    return "".join(out)


class AsmGenerator:
    """Generates x86-64 AT&T assembly from a Program."""

    def __init__(self):
        self._lines: List[str] = []
        self._strings: List[str] = []
        self._label_counter = 0
        self._symbols: Optional[SymbolTable] = None
        self._unit: Optional[FunctionUnit] = None
        self._frame: Optional[FrameLayout] = None
        self._arrays: set = set()

    # ── Label generation ──────────────────────

    def _label(self) -> str:
        label = f".L{self._label_counter}"
        self._label_counter += 1
        return label

    # ── Output helpers ────────────────────────

    def _emit(self, instr: str, operands: str = ""):
        if operands:
            self._lines.append(f"    {instr:<8}{operands}")
        else:
            self._lines.append(f"    {instr}")

    def _emit_label(self, label: str):
        self._lines.append(f"{label}:")

    def _string_label(self, text: str) -> str:
        idx = len(self._strings)
        self._strings.append(text)
        return f".LS{idx}"

    def _error(self, message: str, node: ASTNode) -> CodeGenError:
        return CodeGenError(message, node, self._unit.function.file)

    # ── Main generation entry point ───────────

    def generate(self, program: Program) -> str:
        """Generate the complete assembly file for `program`."""
        self._symbols = SymbolTable(program, native=True)
        self._lines.append("    .text")

        for unit in self._symbols.emission_order():
            if unit.is_main and self._symbols.uses_stdio:
                self._gen_stdio_runtime()
            self._gen_function(unit)

        if self._strings:
            self._lines.append("")
            self._lines.append("    .section .rodata")
            for i, text in enumerate(self._strings):
                self._lines.append(f".LS{i}:")
                self._lines.append(f'    .string "{escape_asm_string(text)}"')

        self._lines.append("")
        self._lines.append('    .section .note.GNU-stack,"",@progbits')
        return "\n".join(self._lines) + "\n"

    # ── Function generation ───────────────────

    def _gen_function(self, unit: FunctionUnit):
        func = unit.function
        self._unit = unit
        self._frame = FrameLayout(func)
        self._arrays = set()
        log.debug("elf: emitting %s (frame %d bytes)", unit.symbol, self._frame.size)

        self._lines.append("")
        self._emit(".globl", unit.symbol)
        self._emit_label(unit.symbol)
        self._emit("pushq", "%rbp")
        self._emit("movq", "%rsp, %rbp")
        if self._frame.size:
            self._emit("subq", f"${self._frame.size}, %rsp")

        for i, param in enumerate(func.params):
            offset = self._frame.allocate(param.name)
            self._emit("movq", f"{ARG_REGS[i]}, {offset}(%rbp)")

        for stmt in func.body:
            self._gen_statement(stmt)

        self._emit("movl", "$0, %eax")
        self._emit("leave")
        self._emit("ret")

    # ── Statement generation ──────────────────

    def _gen_statement(self, stmt: ASTNode):
        if isinstance(stmt, VarDecl):
            if stmt.value is not None:
                self._gen_expr(stmt.value)
                offset = self._frame.allocate(stmt.name)
                self._emit("movq", f"%rax, {offset}(%rbp)")
            else:
                offset = self._frame.allocate(stmt.name)
                self._emit("movq", f"$0, {offset}(%rbp)")
            self._arrays.discard(stmt.name)
        elif isinstance(stmt, ArrayDecl):
            base = self._frame.allocate_array(stmt.name, stmt.size)
            self._arrays.add(stmt.name)
            for i in range(stmt.size):
                self._emit("movq", f"$0, {base + 8 * i}(%rbp)")
        elif isinstance(stmt, Assignment):
            offset = self._scalar_offset(stmt.name, stmt)
            self._gen_expr(stmt.value)
            self._emit("movq", f"%rax, {offset}(%rbp)")
        elif isinstance(stmt, ArrayAssignment):
            base = self._array_base(stmt.name, stmt)
            self._gen_expr(stmt.value)
            self._emit("pushq", "%rax")
            self._gen_element_address(base, stmt.index)
            self._emit("popq", "%rcx")
            self._emit("movq", "%rcx, (%rax)")
        elif isinstance(stmt, PointerAssignment):
            self._gen_expr(stmt.value)
            self._emit("pushq", "%rax")
            self._gen_expr(stmt.target)
            self._emit("popq", "%rcx")
            self._emit("movq", "%rcx, (%rax)")
        elif isinstance(stmt, IfStmt):
            self._gen_if(stmt)
        elif isinstance(stmt, ForStmt):
            self._gen_for(stmt)
        elif isinstance(stmt, ReturnStmt):
            if stmt.value is not None:
                self._gen_expr(stmt.value)
            else:
                self._emit("movl", "$0, %eax")
            self._emit("leave")
            self._emit("ret")
        elif isinstance(stmt, ExprStatement):
            self._gen_expr(stmt.expr)
        elif isinstance(stmt, InlineAsm):
            raise self._error("inline assembly is only supported on the NVM target", stmt)
        else:
            raise self._error(f"unsupported statement {type(stmt).__name__}", stmt)

    def _gen_if(self, stmt: IfStmt):
        else_label = self._label()
        end_label = self._label()
        self._gen_expr(stmt.condition)
        self._emit("testq", "%rax, %rax")
        self._emit("je", else_label)
        for s in stmt.then_body:
            self._gen_statement(s)
        self._emit("jmp", end_label)
        self._emit_label(else_label)
        for s in stmt.else_body or []:
            self._gen_statement(s)
        self._emit_label(end_label)

    def _gen_for(self, stmt: ForStmt):
        loop_label = self._label()
        end_label = self._label()
        self._emit_label(loop_label)
        if stmt.condition is not None:
            self._gen_expr(stmt.condition)
            self._emit("testq", "%rax, %rax")
            self._emit("je", end_label)
        for s in stmt.body:
            self._gen_statement(s)
        self._emit("jmp", loop_label)
        self._emit_label(end_label)

    # ── Variable helpers ──────────────────────

    def _scalar_offset(self, name: str, node: ASTNode) -> int:
        offset = self._frame.lookup(name)
        if offset is None:
            raise self._error(f"undefined variable '{name}'", node)
        if name in self._arrays:
            raise self._error(f"cannot assign to array '{name}'", node)
        return offset

    def _array_base(self, name: str, node: ASTNode) -> int:
        base = self._frame.lookup(name)
        if base is None:
            raise self._error(f"undefined variable '{name}'", node)
        if name not in self._arrays:
            raise self._error(f"'{name}' is not an array", node)
        return base

    def _gen_element_address(self, base: int, index: Expression):
        """rax = rbp + base + index*8"""
        self._gen_expr(index)
        self._emit("imulq", "$8, %rax")
        self._emit("addq", f"${base}, %rax")
        self._emit("addq", "%rbp, %rax")

    # ── Expression generation ─────────────────
    # Convention: the result is left in rax

    def _gen_expr(self, expr: Expression):
        if isinstance(expr, IntLiteral):
            if not -2**63 <= expr.value < 2**63:
                raise self._error(f"integer literal {expr.value} does not fit in 64 bits", expr)
            if -2**31 <= expr.value < 2**31:
                self._emit("movq", f"${expr.value}, %rax")
            else:
                self._emit("movabsq", f"${expr.value}, %rax")
        elif isinstance(expr, StringLiteral):
            self._emit("leaq", f"{self._string_label(expr.value)}(%rip), %rax")
        elif isinstance(expr, Identifier):
            self._gen_identifier(expr)
        elif isinstance(expr, BinaryOp):
            self._gen_binary_op(expr)
        elif isinstance(expr, UnaryOp):
            self._gen_expr(expr.operand)
            if expr.op == "-":
                self._emit("negq", "%rax")
            else:
                self._emit("testq", "%rax, %rax")
                self._emit("sete", "%al")
                self._emit("movzbq", "%al, %rax")
        elif isinstance(expr, Call):
            symbol = self._symbols.resolve_call(expr, self._unit)
            self._gen_call(symbol, expr.args)
        elif isinstance(expr, ModuleCall):
            self._gen_module_call(expr)
        elif isinstance(expr, ArrayAccess):
            base = self._array_base(expr.name, expr)
            self._gen_element_address(base, expr.index)
            self._emit("movq", "(%rax), %rax")
        elif isinstance(expr, StringIndex):
            if not isinstance(expr.string, StringLiteral):
                raise self._error("only string literals can be indexed", expr)
            label = self._string_label(expr.string.value)
            self._gen_expr(expr.index)
            self._emit("leaq", f"{label}(%rip), %rcx")
            self._emit("addq", "%rax, %rcx")
            self._emit("movzbq", "(%rcx), %rax")
        elif isinstance(expr, AddressOf):
            if not isinstance(expr.operand, Identifier):
                raise self._error("'&' can only be applied to a variable", expr)
            offset = self._frame.lookup(expr.operand.name)
            if offset is None:
                raise self._error(f"undefined variable '{expr.operand.name}'", expr)
            self._emit("leaq", f"{offset}(%rbp), %rax")
        elif isinstance(expr, Deref):
            self._gen_expr(expr.operand)
            self._emit("movq", "(%rax), %rax")
        else:
            raise self._error(f"unsupported expression {type(expr).__name__}", expr)

    def _gen_identifier(self, ident: Identifier):
        offset = self._frame.lookup(ident.name)
        if offset is None:
            value = cap_constant(ident)
            if value is None:
                raise self._error(f"undefined variable '{ident.name}'", ident)
            self._emit("movq", f"${value}, %rax")
        elif ident.name in self._arrays:
            self._emit("leaq", f"{offset}(%rbp), %rax")
        else:
            self._emit("movq", f"{offset}(%rbp), %rax")

    def _gen_binary_op(self, op: BinaryOp):
        if op.op == "++":
            raise self._error("string concatenation ('++') is not supported", op)

        self._gen_expr(op.right)
        self._emit("pushq", "%rax")
        self._gen_expr(op.left)
        self._emit("popq", "%rcx")

        if op.op == "+":
            self._emit("addq", "%rcx, %rax")
        elif op.op == "-":
            self._emit("subq", "%rcx, %rax")
        elif op.op == "*":
            self._emit("imulq", "%rcx, %rax")
        elif op.op == "/":
            self._emit("cqto")
            self._emit("idivq", "%rcx")
        elif op.op == "%":
            self._emit("cqto")
            self._emit("idivq", "%rcx")
            self._emit("movq", "%rdx, %rax")
        elif op.op in _SETCC:
            self._emit("cmpq", "%rcx, %rax")
            self._emit(_SETCC[op.op], "%al")
            self._emit("movzbq", "%al, %rax")
        elif op.op in ("&&", "||"):
            # Both sides are evaluated; each is normalised to 0/1 first
            self._emit("testq", "%rax, %rax")
            self._emit("setne", "%al")
            self._emit("movzbq", "%al, %rax")
            self._emit("testq", "%rcx, %rcx")
            self._emit("setne", "%cl")
            self._emit("movzbq", "%cl, %rcx")
            self._emit("andq" if op.op == "&&" else "orq", "%rcx, %rax")
        else:
            raise self._error(f"unsupported operator '{op.op}'", op)

    def _gen_call(self, symbol: str, args: List[Expression]):
        for arg in reversed(args):
            self._gen_expr(arg)
            self._emit("pushq", "%rax")
        for i in range(len(args)):
            self._emit("popq", ARG_REGS[i])
        self._emit("call", symbol)

    def _gen_module_call(self, call: ModuleCall):
        value = cap_constant(call)
        if value is not None:
            self._emit("movq", f"${value}, %rax")
            return
        symbol = self._symbols.resolve_module_call(call, self._unit)
        if call.module == "stdio":
            symbol = mangle("stdio", stdio_target(call.name, call.args))
        self._gen_call(symbol, call.args)

    # ── stdio runtime thunks ──────────────────

    def _thunk_start(self, name: str):
        symbol = mangle("stdio", name)
        self._lines.append("")
        self._emit(".globl", symbol)
        self._emit_label(symbol)
        self._emit("pushq", "%rbp")
        self._emit("movq", "%rsp, %rbp")

    def _thunk_end(self, zero_result: bool = True):
        if zero_result:
            self._emit("xorl", "%eax, %eax")
        self._emit("leave")
        self._emit("ret")

    def _gen_printf_thunk(self, name: str, fmt: str):
        self._thunk_start(name)
        self._emit("andq", "$-16, %rsp")
        self._emit("movq", "%rdi, %rsi")
        self._emit("leaq", f"{self._string_label(fmt)}(%rip), %rdi")
        self._emit("xorl", "%eax, %eax")
        self._emit("call", "printf@PLT")
        self._thunk_end()

    def _gen_stdio_runtime(self):
        self._gen_printf_thunk("Println", "%ld\n")
        self._gen_printf_thunk("Print", "%ld")
        self._gen_printf_thunk("PrintStr", "%s")
        self._gen_printf_thunk("PrintlnStr", "%s\n")

        self._thunk_start("PrintChar")
        self._emit("andq", "$-16, %rsp")
        self._emit("movl", "%edi, %edi")
        self._emit("call", "putchar@PLT")
        self._thunk_end()

        self._thunk_start("ReadInt")
        self._emit("subq", "$16, %rsp")
        self._emit("andq", "$-16, %rsp")
        self._emit("movq", "$0, -8(%rbp)")
        self._emit("leaq", f"{self._string_label('%ld')}(%rip), %rdi")
        self._emit("leaq", "-8(%rbp), %rsi")
        self._emit("xorl", "%eax, %eax")
        self._emit("call", "scanf@PLT")
        self._emit("movq", "-8(%rbp), %rax")
        self._thunk_end(zero_result=False)

        self._thunk_start("ReadChar")
        self._emit("andq", "$-16, %rsp")
        self._emit("call", "getchar@PLT")
        self._emit("cltq")
        self._thunk_end(zero_result=False)

        self._thunk_start("ReadLine")
        self._emit("pushq", "%rbx")
        self._emit("subq", "$8, %rsp")
        self._emit("andq", "$-16, %rsp")
        self._emit("movq", "%rdi, %rbx")
        self._emit("movq", "%rsi, %rdx")
        self._emit("movq", "stdin@GOTPCREL(%rip), %rax")
        self._emit("movq", "(%rax), %rsi")
        self._emit("call", "fgets@PLT")
        self._emit("testq", "%rax, %rax")
        self._emit("je", ".LReadLine_fail")
        self._emit("movq", "%rbx, %rdi")
        self._emit("call", "strlen@PLT")
        self._emit("jmp", ".LReadLine_end")
        self._emit_label(".LReadLine_fail")
        self._emit("xorl", "%eax, %eax")
        self._emit_label(".LReadLine_end")
        self._emit("movq", "-8(%rbp), %rbx")
        self._thunk_end(zero_result=False)

        self._thunk_start("Flush")
        self._emit("andq", "$-16, %rsp")
        self._emit("movq", "stdout@GOTPCREL(%rip), %rax")
        self._emit("movq", "(%rax), %rdi")
        self._emit("call", "fflush@PLT")
        self._thunk_end()


# ──────────────────────────────────────────────
# Toolchain driver
# ──────────────────────────────────────────────

def assemble_and_link(asm_text: str, output: str | os.PathLike, cc: str = "gcc",
                      keep_asm: bool = False, timeout: int = 120) -> Path:
    """Write `<output>.s` and link it with `cc -o output output.s -no-pie`.

    The assembly file is removed on success unless `keep_asm` is set, and is
    always kept when the toolchain fails.
    """
    output = Path(output)
    asm_path = output.with_name(output.name + ".s")
    asm_path.write_text(asm_text, encoding="utf-8")

    cmd = [cc, "-o", str(output), str(asm_path), "-no-pie"]
    log.info("running: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        raise ToolchainError(f"assembler driver '{cc}' not found", str(asm_path))
    except subprocess.TimeoutExpired:
        raise ToolchainError(f"'{cc}' timed out after {timeout}s", str(asm_path))

    if result.returncode != 0:
        detail = (result.stderr or result.stdout).strip()
        raise ToolchainError(f"'{cc}' failed with exit code {result.returncode}: {detail}",
                             str(asm_path))

    if not keep_asm:
        asm_path.unlink()
    return output
