"""
Native byte backend: x86-64 machine code without an external assembler.

Produces raw code for one flat `.text` blob plus the information an image
writer needs (entry offset, symbol offsets, import call sites).  Two
runtimes exist for the stdio shims:

  - "windows": KERNEL32 GetStdHandle/WriteFile/ReadFile/ExitProcess through
    the IAT, consumed by pe_writer
  - "linux":   raw `syscall` read/write/exit, consumed by elf_writer

Internal calls use the System V argument registers on both platforms; the
Windows shims translate to the Win64 convention (rcx, rdx, r8, r9, 32 bytes
of shadow space, fifth argument at [rsp+0x20]) when they call KERNEL32.

Shim frame layout (rbp-relative):
  [rbp-0x20 .. rbp)  32-byte character buffer, filled high-to-low by itoa
  [rbp-0x28]         standard handle (Windows)
  [rbp-0x30]         bytes written / read (Windows)
  [rbp-0x38]         saved first argument
  [rbp-0x40]         saved second argument
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .ast_nodes import *
from .errors import CodeGenError
from .symbols import (FrameLayout, FunctionUnit, SymbolTable, cap_constant,
                      mangle, stdio_target)
from .x86 import *

log = logging.getLogger(__name__)

ARG_REGS = [RDI, RSI, RDX, RCX, R8, R9]

# Placeholder immediates left in `call [rip+disp32]` until the PE writer
# patches the recorded site with the real IAT displacement.
IMPORT_SENTINELS: Dict[str, int] = {
    "GetStdHandle": 0x20000000,
    "WriteFile": 0x20080000,
    "ExitProcess": 0x10000000,
    "ReadFile": 0x20100000,
}

STD_INPUT_HANDLE = -10
STD_OUTPUT_HANDLE = -11

SYS_READ, SYS_WRITE, SYS_EXIT = 0, 1, 60

_CC = {"==": CC_E, "!=": CC_NE, "<": CC_L, "<=": CC_LE, ">": CC_G, ">=": CC_GE}

# Shim locals
BUF_END = 0x00
BUF_START = -0x20
HANDLE_SLOT = -0x28
COUNT_SLOT = -0x30
ARG1_SLOT = -0x38
ARG2_SLOT = -0x40
SHIM_FRAME = 0x70


@dataclass
class MachineCode:
    """Output of the byte backend."""
    code: bytes
    entry_offset: int
    symbols: Dict[str, int] = field(default_factory=dict)
    # (offset of the disp32 field, import name)
    import_sites: List[Tuple[int, str]] = field(default_factory=list)
    imports: List[str] = field(default_factory=list)


class X64CodeGenerator:
    """Generates raw x86-64 machine code from a Program."""

    def __init__(self, platform: str = "windows"):
        if platform not in ("windows", "linux"):
            raise ValueError(f"unknown platform {platform!r}")
        self.platform = platform
        self.asm = X86Emitter()
        self._symbols: Optional[SymbolTable] = None
        self._unit: Optional[FunctionUnit] = None
        self._frame: Optional[FrameLayout] = None
        self._arrays: set = set()
        self._func_labels: Dict[str, Label] = {}
        self._imports: List[str] = []

    @property
    def windows(self) -> bool:
        return self.platform == "windows"

    def _error(self, message: str, node: ASTNode) -> CodeGenError:
        return CodeGenError(message, node, self._unit.function.file)

    def _func_label(self, symbol: str) -> Label:
        if symbol not in self._func_labels:
            self._func_labels[symbol] = self.asm.new_label(symbol)
        return self._func_labels[symbol]

    # ── Main generation entry point ───────────

    def generate(self, program: Program) -> MachineCode:
        self._symbols = SymbolTable(program, native=True)
        if self.windows and self._symbols.uses_stdio:
            self._imports = ["GetStdHandle", "WriteFile", "ExitProcess"]
            if self._symbols.uses_stdio_reads():
                self._imports.append("ReadFile")

        offsets: Dict[str, int] = {}
        for unit in self._symbols.emission_order():
            if unit.is_main and self._symbols.uses_stdio:
                self._gen_stdio_runtime(offsets)
            offsets[unit.symbol] = self.asm.pos
            self._gen_function(unit)

        self.asm.check_labels()
        log.debug("x64/%s: %d bytes, %d import sites", self.platform,
                  self.asm.pos, len(self.asm.import_sites))
        return MachineCode(code=bytes(self.asm.code),
                           entry_offset=offsets["main"],
                           symbols=offsets,
                           import_sites=list(self.asm.import_sites),
                           imports=list(self._imports))

    def _call_import(self, name: str):
        self.asm.call_import(name, IMPORT_SENTINELS[name])

    # ── Function generation ───────────────────

    def _gen_function(self, unit: FunctionUnit):
        a = self.asm
        func = unit.function
        self._unit = unit
        self._frame = FrameLayout(func)
        self._arrays = set()
        log.debug("x64: emitting %s at %#x (frame %d bytes)",
                  unit.symbol, a.pos, self._frame.size)

        a.bind(self._func_label(unit.symbol))
        a.push(RBP)
        a.mov(RBP, RSP)
        if self._frame.size:
            a.alu_imm(ALU_SUB, RSP, self._frame.size)

        for i, param in enumerate(func.params):
            a.mov_store(RBP, self._frame.allocate(param.name), ARG_REGS[i])

        for stmt in func.body:
            self._gen_statement(stmt)

        a.alu(ALU_XOR, RAX, RAX)
        self._gen_return()

    def _gen_return(self):
        """Leave the current function with the value in rax."""
        a = self.asm
        if not self._unit.is_main:
            a.leave()
            a.ret()
        elif self.windows and self._symbols.uses_stdio:
            a.mov(RCX, RAX)
            a.alu_imm(ALU_AND, RSP, -16)
            a.alu_imm(ALU_SUB, RSP, 0x20)
            self._call_import("ExitProcess")
        elif self.windows:
            a.leave()
            a.ret()
        else:
            a.mov(RDI, RAX)
            a.mov_imm32(RAX, SYS_EXIT)
            a.syscall()

    # ── Statement generation ──────────────────

    def _gen_statement(self, stmt: ASTNode):
        a = self.asm
        if isinstance(stmt, VarDecl):
            if stmt.value is not None:
                self._gen_expr(stmt.value)
                a.mov_store(RBP, self._frame.allocate(stmt.name), RAX)
            else:
                a.mov_store_imm(RBP, self._frame.allocate(stmt.name), 0)
            self._arrays.discard(stmt.name)
        elif isinstance(stmt, ArrayDecl):
            base = self._frame.allocate_array(stmt.name, stmt.size)
            self._arrays.add(stmt.name)
            for i in range(stmt.size):
                a.mov_store_imm(RBP, base + 8 * i, 0)
        elif isinstance(stmt, Assignment):
            offset = self._scalar_offset(stmt.name, stmt)
            self._gen_expr(stmt.value)
            a.mov_store(RBP, offset, RAX)
        elif isinstance(stmt, ArrayAssignment):
            base = self._array_base(stmt.name, stmt)
            self._gen_expr(stmt.value)
            a.push(RAX)
            self._gen_element_address(base, stmt.index)
            a.pop(RCX)
            a.mov_store(RAX, 0, RCX)
        elif isinstance(stmt, PointerAssignment):
            self._gen_expr(stmt.value)
            a.push(RAX)
            self._gen_expr(stmt.target)
            a.pop(RCX)
            a.mov_store(RAX, 0, RCX)
        elif isinstance(stmt, IfStmt):
            else_label = a.new_label("else")
            end_label = a.new_label("endif")
            self._gen_expr(stmt.condition)
            a.test(RAX, RAX)
            a.jcc(CC_E, else_label)
            for s in stmt.then_body:
                self._gen_statement(s)
            a.jmp(end_label)
            a.bind(else_label)
            for s in stmt.else_body or []:
                self._gen_statement(s)
            a.bind(end_label)
        elif isinstance(stmt, ForStmt):
            head = a.new_label("loop")
            end_label = a.new_label("endloop")
            a.bind(head)
            if stmt.condition is not None:
                self._gen_expr(stmt.condition)
                a.test(RAX, RAX)
                a.jcc(CC_E, end_label)
            for s in stmt.body:
                self._gen_statement(s)
            a.jmp(head)
            a.bind(end_label)
        elif isinstance(stmt, ReturnStmt):
            if stmt.value is not None:
                self._gen_expr(stmt.value)
            else:
                a.alu(ALU_XOR, RAX, RAX)
            self._gen_return()
        elif isinstance(stmt, ExprStatement):
            self._gen_expr(stmt.expr)
        elif isinstance(stmt, InlineAsm):
            raise self._error("inline assembly is only supported on the NVM target", stmt)
        else:
            raise self._error(f"unsupported statement {type(stmt).__name__}", stmt)

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
        a = self.asm
        self._gen_expr(index)
        a.imul_imm8(RAX, RAX, 8)
        a.alu_imm(ALU_ADD, RAX, base)
        a.alu(ALU_ADD, RAX, RBP)

    def _gen_string_address(self, text: str):
        """Embed `text` inline behind a jump and load its address into rax."""
        a = self.asm
        skip = a.new_label("str_end")
        a.jmp(skip)
        data = a.pos
        a.emit_bytes(text.encode("utf-8") + b"\0")
        a.bind(skip)
        a.lea_rip(RAX, data)

    # ── Expression generation ─────────────────
    # Convention: the result is left in rax

    def _gen_expr(self, expr: Expression):
        a = self.asm
        if isinstance(expr, IntLiteral):
            if not -2**63 <= expr.value < 2**63:
                raise self._error(f"integer literal {expr.value} does not fit in 64 bits", expr)
            a.mov_imm64(RAX, expr.value)
        elif isinstance(expr, StringLiteral):
            self._gen_string_address(expr.value)
        elif isinstance(expr, Identifier):
            offset = self._frame.lookup(expr.name)
            if offset is None:
                value = cap_constant(expr)
                if value is None:
                    raise self._error(f"undefined variable '{expr.name}'", expr)
                a.mov_imm64(RAX, value)
            elif expr.name in self._arrays:
                a.lea(RAX, RBP, offset)
            else:
                a.mov_load(RAX, RBP, offset)
        elif isinstance(expr, BinaryOp):
            self._gen_binary_op(expr)
        elif isinstance(expr, UnaryOp):
            self._gen_expr(expr.operand)
            if expr.op == "-":
                a.neg(RAX)
            else:
                a.test(RAX, RAX)
                a.setcc(CC_E, RAX)
                a.movzx_byte(RAX, RAX)
        elif isinstance(expr, Call):
            symbol = self._symbols.resolve_call(expr, self._unit)
            self._gen_call(symbol, expr.args)
        elif isinstance(expr, ModuleCall):
            value = cap_constant(expr)
            if value is not None:
                a.mov_imm64(RAX, value)
                return
            symbol = self._symbols.resolve_module_call(expr, self._unit)
            if expr.module == "stdio":
                symbol = mangle("stdio", stdio_target(expr.name, expr.args))
            self._gen_call(symbol, expr.args)
        elif isinstance(expr, ArrayAccess):
            base = self._array_base(expr.name, expr)
            self._gen_element_address(base, expr.index)
            a.mov_load(RAX, RAX, 0)
        elif isinstance(expr, StringIndex):
            if not isinstance(expr.string, StringLiteral):
                raise self._error("only string literals can be indexed", expr)
            self._gen_expr(expr.index)
            a.push(RAX)
            self._gen_string_address(expr.string.value)
            a.pop(RCX)
            a.alu(ALU_ADD, RAX, RCX)
            a.movzx_load_byte(RAX, RAX, 0)
        elif isinstance(expr, AddressOf):
            if not isinstance(expr.operand, Identifier):
                raise self._error("'&' can only be applied to a variable", expr)
            offset = self._frame.lookup(expr.operand.name)
            if offset is None:
                raise self._error(f"undefined variable '{expr.operand.name}'", expr)
            a.lea(RAX, RBP, offset)
        elif isinstance(expr, Deref):
            self._gen_expr(expr.operand)
            a.mov_load(RAX, RAX, 0)
        else:
            raise self._error(f"unsupported expression {type(expr).__name__}", expr)

    def _gen_binary_op(self, op: BinaryOp):
        a = self.asm
        if op.op == "++":
            raise self._error("string concatenation ('++') is not supported", op)

        self._gen_expr(op.right)
        a.push(RAX)
        self._gen_expr(op.left)
        a.pop(RCX)

        if op.op == "+":
            a.alu(ALU_ADD, RAX, RCX)
        elif op.op == "-":
            a.alu(ALU_SUB, RAX, RCX)
        elif op.op == "*":
            a.imul(RAX, RCX)
        elif op.op in ("/", "%"):
            a.cqo()
            a.idiv(RCX)
            if op.op == "%":
                a.mov(RAX, RDX)
        elif op.op in _CC:
            a.alu(ALU_CMP, RAX, RCX)
            a.setcc(_CC[op.op], RAX)
            a.movzx_byte(RAX, RAX)
        elif op.op in ("&&", "||"):
            a.test(RAX, RAX)
            a.setcc(CC_NE, RAX)
            a.movzx_byte(RAX, RAX)
            a.test(RCX, RCX)
            a.setcc(CC_NE, RCX)
            a.movzx_byte(RCX, RCX)
            a.alu(ALU_AND if op.op == "&&" else ALU_OR, RAX, RCX)
        else:
            raise self._error(f"unsupported operator '{op.op}'", op)

    def _gen_call(self, symbol: str, args: List[Expression]):
        a = self.asm
        for arg in reversed(args):
            self._gen_expr(arg)
            a.push(RAX)
        for i in range(len(args)):
            a.pop(ARG_REGS[i])
        a.call(self._func_label(symbol))

    # ── stdio runtime shims ───────────────────

    def _shim_start(self, offsets: Dict[str, int], name: str,
                    std_handle: int = STD_OUTPUT_HANDLE):
        """Label, frame, saved arguments and (Windows) the standard handle."""
        a = self.asm
        symbol = mangle("stdio", name)
        offsets[symbol] = a.pos
        a.bind(self._func_label(symbol))
        a.push(RBP)
        a.mov(RBP, RSP)
        a.alu_imm(ALU_SUB, RSP, SHIM_FRAME)
        a.alu_imm(ALU_AND, RSP, -16)
        a.mov_store(RBP, ARG1_SLOT, RDI)
        a.mov_store(RBP, ARG2_SLOT, RSI)
        if self.windows:
            a.mov_imm32(RCX, std_handle & 0xFFFFFFFF)
            self._call_import("GetStdHandle")
            a.mov_store(RBP, HANDLE_SLOT, RAX)
            a.mov_load(RDI, RBP, ARG1_SLOT)
            a.mov_load(RSI, RBP, ARG2_SLOT)

    def _shim_end(self, zero_result: bool = True):
        a = self.asm
        if zero_result:
            a.alu(ALU_XOR, RAX, RAX)
        a.leave()
        a.ret()

    def _emit_write(self):
        """Write r8 bytes at rsi to standard output."""
        a = self.asm
        if self.windows:
            a.mov(RDX, RSI)
            a.mov_load(RCX, RBP, HANDLE_SLOT)
            a.lea(R9, RBP, COUNT_SLOT)
            a.mov_store_imm(RSP, 0x20, 0)
            self._call_import("WriteFile")
        else:
            a.mov(RDX, R8)
            a.mov_imm32(RAX, SYS_WRITE)
            a.mov_imm32(RDI, 1)
            a.syscall()

    def _emit_read(self):
        """Read up to r8 bytes from standard input into rsi; count in rax (0 on failure)."""
        a = self.asm
        if self.windows:
            a.mov_store_imm(RBP, COUNT_SLOT, 0)
            a.mov(RDX, RSI)
            a.mov_load(RCX, RBP, HANDLE_SLOT)
            a.lea(R9, RBP, COUNT_SLOT)
            a.mov_store_imm(RSP, 0x20, 0)
            self._call_import("ReadFile")
            a.mov_load(RAX, RBP, COUNT_SLOT)
        else:
            ok = a.new_label("read_ok")
            a.mov(RDX, R8)
            a.mov_imm32(RAX, SYS_READ)
            a.mov_imm32(RDI, 0)
            a.syscall()
            a.test(RAX, RAX)
            a.jcc(CC_NS, ok)
            a.alu(ALU_XOR, RAX, RAX)
            a.bind(ok)

    def _emit_newline(self):
        a = self.asm
        a.mov_store_byte_imm(RBP, -1, 0x0A)
        a.lea(RSI, RBP, -1)
        a.mov_imm32(R8, 1)
        self._emit_write()

    def _gen_itoa_shim(self, offsets: Dict[str, int], name: str, newline: bool):
        """Print the signed value in rdi as decimal, digits built high-to-low."""
        a = self.asm
        self._shim_start(offsets, name)
        a.mov(RAX, RDI)
        a.lea(RSI, RBP, BUF_END)
        if newline:
            a.dec(RSI)
            a.mov_store_byte_imm(RSI, 0, 0x0A)

        positive = a.new_label("itoa_pos")
        a.alu(ALU_XOR, R11, R11)
        a.test(RAX, RAX)
        a.jcc(CC_NS, positive)
        a.mov_imm32(R11, 1)
        a.neg(RAX)
        a.bind(positive)

        # Unsigned division keeps INT64_MIN printable after the negation
        digits = a.new_label("itoa_loop")
        a.mov_imm32(RCX, 10)
        a.bind(digits)
        a.alu(ALU_XOR, RDX, RDX)
        a.div(RCX)
        a.alu_byte_imm(ALU_ADD, RDX, ord("0"))
        a.dec(RSI)
        a.mov_store_byte(RSI, 0, RDX)
        a.test(RAX, RAX)
        a.jcc(CC_NE, digits)

        unsigned = a.new_label("itoa_unsigned")
        a.test(R11, R11)
        a.jcc(CC_E, unsigned)
        a.dec(RSI)
        a.mov_store_byte_imm(RSI, 0, ord("-"))
        a.bind(unsigned)

        a.mov(R8, RBP)
        a.alu(ALU_SUB, R8, RSI)
        self._emit_write()
        self._shim_end()

    def _gen_print_str_shim(self, offsets: Dict[str, int], name: str, newline: bool):
        a = self.asm
        self._shim_start(offsets, name)
        scan = a.new_label("strlen")
        found = a.new_label("strlen_done")
        a.mov(RCX, RDI)
        a.bind(scan)
        a.cmp_byte_mem_imm(RCX, 0, 0)
        a.jcc(CC_E, found)
        a.inc(RCX)
        a.jmp(scan)
        a.bind(found)
        a.mov(R8, RCX)
        a.alu(ALU_SUB, R8, RDI)
        a.mov(RSI, RDI)
        self._emit_write()
        if newline:
            self._emit_newline()
        self._shim_end()

    def _gen_print_char_shim(self, offsets: Dict[str, int]):
        a = self.asm
        self._shim_start(offsets, "PrintChar")
        a.mov(RAX, RDI)
        a.mov_store_byte(RBP, -1, RAX)
        a.lea(RSI, RBP, -1)
        a.mov_imm32(R8, 1)
        self._emit_write()
        self._shim_end()

    def _gen_read_int_shim(self, offsets: Dict[str, int]):
        a = self.asm
        self._shim_start(offsets, "ReadInt", STD_INPUT_HANDLE)
        a.lea(RSI, RBP, BUF_START)
        a.mov_imm32(R8, 20)
        self._emit_read()

        done = a.new_label("readint_done")
        digits = a.new_label("readint_digits")
        finish = a.new_label("readint_end")
        a.lea(RSI, RBP, BUF_START)
        a.mov(RCX, RSI)
        a.alu(ALU_ADD, RCX, RAX)          # rcx = end of input
        a.alu(ALU_XOR, RAX, RAX)
        a.alu(ALU_XOR, R11, R11)
        a.alu(ALU_CMP, RSI, RCX)
        a.jcc(CC_AE, done)
        a.cmp_byte_mem_imm(RSI, 0, ord("-"))
        a.jcc(CC_NE, digits)
        a.mov_imm32(R11, 1)
        a.inc(RSI)
        a.bind(digits)
        a.alu(ALU_CMP, RSI, RCX)
        a.jcc(CC_AE, done)
        a.movzx_load_byte(RDX, RSI, 0)
        a.alu_imm(ALU_SUB, RDX, ord("0"))
        a.alu_imm(ALU_CMP, RDX, 9)
        a.jcc(CC_A, done)
        a.imul_imm8(RAX, RAX, 10)
        a.alu(ALU_ADD, RAX, RDX)
        a.inc(RSI)
        a.jmp(digits)
        a.bind(done)
        a.test(R11, R11)
        a.jcc(CC_E, finish)
        a.neg(RAX)
        a.bind(finish)
        self._shim_end(zero_result=False)

    def _gen_read_char_shim(self, offsets: Dict[str, int]):
        a = self.asm
        self._shim_start(offsets, "ReadChar", STD_INPUT_HANDLE)
        a.lea(RSI, RBP, BUF_START)
        a.mov_imm32(R8, 1)
        self._emit_read()
        eof = a.new_label("readchar_eof")
        finish = a.new_label("readchar_end")
        a.test(RAX, RAX)
        a.jcc(CC_LE, eof)
        a.movzx_load_byte(RAX, RBP, BUF_START)
        a.jmp(finish)
        a.bind(eof)
        a.mov_imm64(RAX, -1)
        a.bind(finish)
        self._shim_end(zero_result=False)

    def _gen_read_line_shim(self, offsets: Dict[str, int]):
        """ReadLine(buf, max): at most max-1 bytes, NUL-terminated; returns the count."""
        a = self.asm
        self._shim_start(offsets, "ReadLine", STD_INPUT_HANDLE)
        finish = a.new_label("readline_end")
        a.alu(ALU_XOR, RAX, RAX)
        a.test(RSI, RSI)
        a.jcc(CC_LE, finish)
        a.mov(R8, RSI)
        a.dec(R8)
        a.mov(RSI, RDI)
        self._emit_read()
        a.mov_load(RDI, RBP, ARG1_SLOT)
        a.alu(ALU_ADD, RDI, RAX)
        a.mov_store_byte_imm(RDI, 0, 0)
        a.bind(finish)
        self._shim_end(zero_result=False)

    def _gen_flush_shim(self, offsets: Dict[str, int]):
        # Output is unbuffered
        a = self.asm
        symbol = mangle("stdio", "Flush")
        offsets[symbol] = a.pos
        a.bind(self._func_label(symbol))
        a.alu(ALU_XOR, RAX, RAX)
        a.ret()

    def _gen_stdio_runtime(self, offsets: Dict[str, int]):
        self._gen_itoa_shim(offsets, "Println", newline=True)
        self._gen_itoa_shim(offsets, "Print", newline=False)
        self._gen_print_str_shim(offsets, "PrintStr", newline=False)
        self._gen_print_str_shim(offsets, "PrintlnStr", newline=True)
        self._gen_print_char_shim(offsets)
        if not self.windows or "ReadFile" in self._imports:
            self._gen_read_int_shim(offsets)
            self._gen_read_char_shim(offsets)
            self._gen_read_line_shim(offsets)
        self._gen_flush_shim(offsets)
