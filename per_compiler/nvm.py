"""
NVM backend: bytecode for the Novaria stack VM.

Image format:

  0x00  "NVM0"
  0x04  CALL32 func_main ; HALT
  ....  one block per function, labelled func_<symbol>, in emission order
  ....  __print_int (only when a Print/Println needs it)
  ....  string data passed to novaria calls, NUL-terminated

Every value is a signed 32-bit word.  Operands of PUSH32 and of the
absolute control-flow instructions are big-endian; control-flow targets are
offsets into the image, magic included.

Calling convention:
  - the caller pushes the arguments right-to-left and executes CALL32,
    which gives the callee a fresh frame of 256 local slots
  - the callee's prologue pops them into slots 0..n-1 (first argument is
    on top of the shared operand stack)
  - every call leaves exactly one value on the operand stack

Jump and call targets are written as zero placeholders, recorded with their
position and patched in one pass at the end; a label that is never bound is
a warning and its placeholders stay zero.
"""

from __future__ import annotations
import enum
import logging
import re
import struct
from typing import Dict, List, Optional, Tuple

from .ast_nodes import *
from .errors import CodeGenError
from .symbols import FunctionUnit, SymbolTable, cap_constant

log = logging.getLogger(__name__)

MAGIC = b"NVM0"
SLOT_COUNT = 256
# __print_int keeps its value, power of ten and return value in these slots
PRINT_VALUE_SLOT = 250
PRINT_POWER_SLOT = 251
PRINT_RESULT_SLOT = 255
MAX_USER_SLOTS = PRINT_VALUE_SLOT

PRINT_INT = "__print_int"


# ──────────────────────────────────────────────
# Instruction set
# ──────────────────────────────────────────────

class Op(enum.IntEnum):
    HALT = 0x00
    NOP = 0x01
    PUSH32 = 0x02
    POP = 0x04
    DUP = 0x05
    SWAP = 0x06
    ADD = 0x10
    SUB = 0x11
    MUL = 0x12
    DIV = 0x13
    MOD = 0x14
    CMP = 0x20
    EQ = 0x21
    NEQ = 0x22
    GT = 0x23
    LT = 0x24
    JMP32 = 0x30
    JZ32 = 0x31
    JNZ32 = 0x32
    CALL32 = 0x33
    RET = 0x34
    LOAD = 0x40
    STORE = 0x41
    LOAD_ABS = 0x44
    STORE_ABS = 0x45
    SYSCALL = 0x50
    BREAK = 0x51


# Operand bytes following each opcode
OPERAND_SIZES: Dict[Op, int] = {op: 0 for op in Op}
OPERAND_SIZES.update({
    Op.PUSH32: 4,
    Op.JMP32: 4, Op.JZ32: 4, Op.JNZ32: 4, Op.CALL32: 4,
    Op.LOAD: 1, Op.STORE: 1,
    Op.SYSCALL: 1,
})

BRANCH_OPS = (Op.JMP32, Op.JZ32, Op.JNZ32, Op.CALL32)


def instruction_size(op: Op) -> int:
    return 1 + OPERAND_SIZES[op]


class Syscall(enum.IntEnum):
    EXIT = 0x00
    EXEC = 0x01
    OPEN = 0x02
    READ = 0x03
    WRITE = 0x04
    CREATE = 0x05
    DELETE = 0x06
    CAP_CHECK = 0x07
    CAP_SPAWN = 0x08
    MSG_SEND = 0x0A
    MSG_RECEIVE = 0x0B
    PORT_IN = 0x0C
    PORT_OUT = 0x0D
    GET_LOCAL_ADDR = 0x0E
    PRINT = 0x0F


# (values popped, values pushed) for each host call
SYSCALL_EFFECTS: Dict[Syscall, Tuple[int, int]] = {
    Syscall.EXIT: (1, 0),
    Syscall.EXEC: (1, 1),
    Syscall.OPEN: (1, 1),
    Syscall.READ: (3, 1),
    Syscall.WRITE: (3, 1),
    Syscall.CREATE: (3, 1),
    Syscall.DELETE: (1, 1),
    Syscall.CAP_CHECK: (1, 1),
    Syscall.CAP_SPAWN: (2, 1),
    Syscall.MSG_SEND: (2, 1),
    Syscall.MSG_RECEIVE: (0, 1),
    Syscall.PORT_IN: (1, 1),
    Syscall.PORT_OUT: (2, 0),
    Syscall.GET_LOCAL_ADDR: (1, 1),
    Syscall.PRINT: (1, 0),
}

# novaria.<name>(...) lowers straight to a host call
NOVARIA_SYSCALLS: Dict[str, Syscall] = {
    "Exit": Syscall.EXIT,
    "Exec": Syscall.EXEC,
    "FileOpen": Syscall.OPEN,
    "FileRead": Syscall.READ,
    "FileWrite": Syscall.WRITE,
    "FileCreate": Syscall.CREATE,
    "FileDelete": Syscall.DELETE,
    "CapCheck": Syscall.CAP_CHECK,
    "CapSpawn": Syscall.CAP_SPAWN,
    "MsgSend": Syscall.MSG_SEND,
    "MsgReceive": Syscall.MSG_RECEIVE,
    "PortInByte": Syscall.PORT_IN,
    "PortOutByte": Syscall.PORT_OUT,
}


def syscall_by_name(name: str) -> Optional[Syscall]:
    """Look a host call up by its table name (case-insensitive, `SYS_` optional)."""
    key = name.upper()
    if key.startswith("SYS_"):
        key = key[4:]
    return Syscall.__members__.get(key)


def function_label(symbol: str) -> str:
    return f"func_{symbol}"


# Mnemonics accepted inside asm { } blocks
INLINE_ASM_OPS: Dict[str, Op] = {
    "push": Op.PUSH32, "pop": Op.POP, "dup": Op.DUP, "swap": Op.SWAP,
    "add": Op.ADD, "sub": Op.SUB, "mul": Op.MUL, "div": Op.DIV, "mod": Op.MOD,
    "eq": Op.EQ, "neq": Op.NEQ, "gt": Op.GT, "lt": Op.LT,
    "load": Op.LOAD, "store": Op.STORE,
    "load_abs": Op.LOAD_ABS, "store_abs": Op.STORE_ABS,
    "syscall": Op.SYSCALL, "ret": Op.RET,
    "nop": Op.NOP, "halt": Op.HALT, "break": Op.BREAK,
}

_ASM_VAR = re.compile(r"\$\((\w+)\)")

_COMPARE_OPS = {"==": Op.EQ, "!=": Op.NEQ, ">": Op.GT, "<": Op.LT}
# a <= b is !(a > b), a >= b is !(a < b)
_NEGATED_COMPARE_OPS = {"<=": Op.GT, ">=": Op.LT}
_ARITH_OPS = {"+": Op.ADD, "-": Op.SUB, "*": Op.MUL, "/": Op.DIV, "%": Op.MOD}


# ──────────────────────────────────────────────
# Code generator
# ──────────────────────────────────────────────

class NVMCodeGenerator:
    """Compiles a Program into an NVM image.

    After `generate`, `labels` maps every bound label to its image offset
    (used for the text listing) and `warnings` holds the non-fatal issues.
    """

    def __init__(self):
        self.code = bytearray()
        self.labels: Dict[str, int] = {}
        self.warnings: List[str] = []
        self._fixups: List[Tuple[int, str]] = []
        self._label_counter = 0
        self._symbols: Optional[SymbolTable] = None
        self._unit: Optional[FunctionUnit] = None
        self._slots: Dict[str, int] = {}
        self._arrays: Dict[str, int] = {}
        self._strings: Dict[str, str] = {}
        # string constant -> statement list that declared it
        self._string_blocks: Dict[str, List[ASTNode]] = {}
        self._block: List[ASTNode] = []
        self._next_slot = 0
        self._needs_print_int = False
        # (label, bytes) placed after the code, NUL-terminated
        self._data: List[Tuple[str, bytes]] = []

    # ── Emission ──────────────────────────────

    @property
    def pos(self) -> int:
        return len(self.code)

    def _op(self, op: Op):
        self.code.append(op)

    def _push(self, value: int):
        self.code.append(Op.PUSH32)
        self.code += struct.pack(">i", value)

    def _load(self, slot: int):
        self.code += bytes([Op.LOAD, slot])

    def _store(self, slot: int):
        self.code += bytes([Op.STORE, slot])

    def _syscall(self, number: int):
        self.code += bytes([Op.SYSCALL, number & 0xFF])

    def _jump(self, op: Op, label: str):
        self.code.append(op)
        self._fixups.append((self.pos, label))
        self.code += bytes(4)

    def _push_label(self, label: str):
        """PUSH32 of a label's image offset, patched with the jumps."""
        self._jump(Op.PUSH32, label)

    def _bind(self, label: str):
        if label in self.labels:
            raise ValueError(f"label {label!r} bound twice")
        self.labels[label] = self.pos

    def _new_label(self, kind: str) -> str:
        self._label_counter += 1
        return f"{kind}_{self._label_counter}"

    def _warn(self, message: str):
        log.warning(message)
        self.warnings.append(message)

    def _error(self, message: str, node: ASTNode) -> CodeGenError:
        return CodeGenError(message, node, self._unit.function.file)

    # ── Main generation entry point ───────────

    def generate(self, program: Program) -> bytes:
        """Return the complete image, magic included."""
        self._symbols = SymbolTable(program)
        self.code = bytearray(MAGIC)

        self._jump(Op.CALL32, function_label("main"))
        self._op(Op.HALT)

        for unit in self._symbols.emission_order():
            self._gen_function(unit)

        if self._needs_print_int:
            self._gen_print_int()

        for label, data in self._data:
            self._bind(label)
            self.code += data + b"\0"

        self._patch()
        log.debug("nvm: %d bytes, %d labels", len(self.code), len(self.labels))
        return bytes(self.code)

    def _patch(self):
        for site, label in self._fixups:
            target = self.labels.get(label)
            if target is None:
                self._warn(f"unresolved label '{label}' at offset {site - 1:#06x}")
                continue
            self.code[site:site + 4] = struct.pack(">I", target)

    # ── Function generation ───────────────────

    def _gen_function(self, unit: FunctionUnit):
        func = unit.function
        self._unit = unit
        self._slots = {}
        self._arrays = {}
        self._strings = {}
        self._string_blocks = {}
        self._next_slot = 0
        log.debug("nvm: emitting %s at %#06x", unit.symbol, self.pos)

        self._bind(function_label(unit.symbol))
        for param in func.params:
            self._store(self._allocate(param.name, 1, param))

        self._gen_block(func.body)

        if unit.is_main:
            self._push(0)
            self._syscall(Syscall.EXIT)
        self._push(0)
        self._op(Op.RET)

    def _allocate(self, name: str, count: int, node: ASTNode) -> int:
        slot = self._next_slot
        if slot + count > MAX_USER_SLOTS:
            raise self._error(
                f"'{self._unit.symbol}' needs more than {MAX_USER_SLOTS} local slots", node)
        self._next_slot += count
        self._slots[name] = slot
        self._strings.pop(name, None)
        return slot

    # ── Statement generation ──────────────────

    def _gen_block(self, stmts: List[ASTNode]):
        outer, self._block = self._block, stmts
        for stmt in stmts:
            self._gen_statement(stmt)
        self._block = outer

    def _gen_statement(self, stmt: ASTNode):
        if isinstance(stmt, VarDecl):
            self._gen_var_decl(stmt)
        elif isinstance(stmt, ArrayDecl):
            base = self._allocate(stmt.name, stmt.size, stmt)
            self._arrays[stmt.name] = stmt.size
            for i in range(stmt.size):
                self._push(0)
                self._store(base + i)
        elif isinstance(stmt, Assignment):
            if stmt.name in self._strings and stmt.name not in self._slots:
                if not isinstance(stmt.value, StringLiteral):
                    raise self._error(f"'{stmt.name}' holds a string constant", stmt)
                # Substitution follows emission order, which matches run
                # order only inside the declaring block
                if self._string_blocks.get(stmt.name) is not self._block:
                    raise self._error(
                        f"string constant '{stmt.name}' can only be reassigned in the "
                        f"block that declares it on the NVM target", stmt)
                self._strings[stmt.name] = stmt.value.value
                return
            slot = self._scalar_slot(stmt.name, stmt)
            self._gen_expr(stmt.value)
            self._store(slot)
        elif isinstance(stmt, ArrayAssignment):
            self._gen_array_store(stmt)
        elif isinstance(stmt, PointerAssignment):
            self._gen_expr(stmt.value)
            self._gen_expr(stmt.target)
            self._op(Op.STORE_ABS)
        elif isinstance(stmt, IfStmt):
            self._gen_if(stmt)
        elif isinstance(stmt, ForStmt):
            self._gen_for(stmt)
        elif isinstance(stmt, ReturnStmt):
            if stmt.value is not None:
                self._gen_expr(stmt.value)
            else:
                self._push(0)
            self._op(Op.RET)
        elif isinstance(stmt, ExprStatement):
            self._gen_expr(stmt.expr)
            self._op(Op.POP)
        elif isinstance(stmt, InlineAsm):
            self._gen_inline_asm(stmt)
        else:
            raise self._error(f"unsupported statement {type(stmt).__name__}", stmt)

    def _gen_var_decl(self, stmt: VarDecl):
        if isinstance(stmt.value, StringLiteral):
            # Compile-time string: no slot, only usable by Print and asm
            self._slots.pop(stmt.name, None)
            self._arrays.pop(stmt.name, None)
            self._strings[stmt.name] = stmt.value.value
            self._string_blocks[stmt.name] = self._block
            return
        if stmt.value is not None:
            self._gen_expr(stmt.value)
        else:
            self._push(0)
        slot = self._allocate(stmt.name, 1, stmt)
        self._arrays.pop(stmt.name, None)
        self._store(slot)

    def _gen_if(self, stmt: IfStmt):
        end_label = self._new_label("endif")
        self._gen_expr(stmt.condition)
        if stmt.else_body is None:
            self._jump(Op.JZ32, end_label)
            self._gen_block(stmt.then_body)
        else:
            else_label = self._new_label("else")
            self._jump(Op.JZ32, else_label)
            self._gen_block(stmt.then_body)
            self._jump(Op.JMP32, end_label)
            self._bind(else_label)
            self._gen_block(stmt.else_body)
        self._bind(end_label)

    def _gen_for(self, stmt: ForStmt):
        loop_label = self._new_label("loop")
        end_label = self._new_label("endloop")
        self._bind(loop_label)
        if stmt.condition is not None:
            self._gen_expr(stmt.condition)
            self._jump(Op.JZ32, end_label)
        self._gen_block(stmt.body)
        self._jump(Op.JMP32, loop_label)
        self._bind(end_label)

    # ── Variable helpers ──────────────────────

    def _scalar_slot(self, name: str, node: ASTNode) -> int:
        slot = self._slots.get(name)
        if slot is None:
            raise self._error(f"undefined variable '{name}'", node)
        if name in self._arrays:
            raise self._error(f"cannot assign to array '{name}'", node)
        return slot

    def _array_base(self, name: str, node: ASTNode) -> int:
        base = self._slots.get(name)
        if base is None:
            raise self._error(f"undefined variable '{name}'", node)
        if name not in self._arrays:
            raise self._error(f"'{name}' is not an array", node)
        return base

    def _constant_index(self, name: str, index: Expression) -> Optional[int]:
        if isinstance(index, IntLiteral) and 0 <= index.value < self._arrays[name]:
            return index.value
        return None

    def _gen_local_address(self, slot: int):
        self._push(slot)
        self._syscall(Syscall.GET_LOCAL_ADDR)

    def _gen_element_address(self, base: int, index: Expression):
        self._gen_local_address(base)
        self._gen_expr(index)
        self._op(Op.ADD)

    def _gen_array_store(self, stmt: ArrayAssignment):
        base = self._array_base(stmt.name, stmt)
        self._gen_expr(stmt.value)
        i = self._constant_index(stmt.name, stmt.index)
        if i is not None:
            self._store(base + i)
        else:
            self._gen_element_address(base, stmt.index)
            self._op(Op.STORE_ABS)

    # ── Expression generation ─────────────────
    # Convention: every expression leaves exactly one value on the stack

    def _gen_expr(self, expr: Expression):
        if isinstance(expr, IntLiteral):
            if not -2**31 <= expr.value < 2**31:
                raise self._error(
                    f"integer literal {expr.value} does not fit in 32 bits", expr)
            self._push(expr.value)
        elif isinstance(expr, StringLiteral):
            raise self._error("string values are not supported on the NVM target", expr)
        elif isinstance(expr, Identifier):
            self._gen_identifier(expr)
        elif isinstance(expr, BinaryOp):
            self._gen_binary_op(expr)
        elif isinstance(expr, UnaryOp):
            self._gen_expr(expr.operand)
            if expr.op == "-":
                self._push(0)
                self._op(Op.SWAP)
                self._op(Op.SUB)
            else:
                self._push(0)
                self._op(Op.EQ)
        elif isinstance(expr, Call):
            symbol = self._symbols.resolve_call(expr, self._unit)
            self._gen_call(symbol, expr.args)
        elif isinstance(expr, ModuleCall):
            self._gen_module_call(expr)
        elif isinstance(expr, ArrayAccess):
            if expr.name in self._strings and expr.name not in self._slots:
                self._gen_string_index(self._strings[expr.name], expr.index, expr)
                return
            base = self._array_base(expr.name, expr)
            i = self._constant_index(expr.name, expr.index)
            if i is not None:
                self._load(base + i)
            else:
                self._gen_element_address(base, expr.index)
                self._op(Op.LOAD_ABS)
        elif isinstance(expr, StringIndex):
            text = self._string_value(expr.string)
            if text is None:
                raise self._error("only string literals can be indexed", expr)
            self._gen_string_index(text, expr.index, expr)
        elif isinstance(expr, AddressOf):
            if not isinstance(expr.operand, Identifier):
                raise self._error("'&' can only be applied to a variable", expr)
            slot = self._slots.get(expr.operand.name)
            if slot is None:
                raise self._error(f"undefined variable '{expr.operand.name}'", expr)
            self._gen_local_address(slot)
        elif isinstance(expr, Deref):
            self._gen_expr(expr.operand)
            self._op(Op.LOAD_ABS)
        else:
            raise self._error(f"unsupported expression {type(expr).__name__}", expr)

    def _string_value(self, expr: Expression) -> Optional[str]:
        """Text of a string literal or compile-time string variable."""
        if isinstance(expr, StringLiteral):
            return expr.value
        if (isinstance(expr, Identifier) and expr.name in self._strings
                and expr.name not in self._slots):
            return self._strings[expr.name]
        return None

    def _gen_string_index(self, text: str, index: Expression, node: ASTNode):
        if not isinstance(index, IntLiteral):
            raise self._error("strings can only be indexed by an integer literal", node)
        data = text.encode("utf-8")
        if not 0 <= index.value < len(data):
            raise self._error(
                f"string index {index.value} out of range (length {len(data)})", node)
        self._push(data[index.value])

    def _gen_identifier(self, ident: Identifier):
        slot = self._slots.get(ident.name)
        if slot is None:
            if ident.name in self._strings:
                raise self._error(
                    f"string constant '{ident.name}' can only be printed or "
                    f"used in inline assembly", ident)
            value = cap_constant(ident)
            if value is None:
                raise self._error(f"undefined variable '{ident.name}'", ident)
            self._push(value)
        elif ident.name in self._arrays:
            self._gen_local_address(slot)
        else:
            self._load(slot)

    def _gen_binary_op(self, op: BinaryOp):
        if op.op == "++":
            raise self._error("string concatenation ('++') is not supported", op)

        self._gen_expr(op.left)
        self._gen_expr(op.right)

        if op.op in _ARITH_OPS:
            self._op(_ARITH_OPS[op.op])
        elif op.op in _COMPARE_OPS:
            self._op(_COMPARE_OPS[op.op])
        elif op.op in _NEGATED_COMPARE_OPS:
            self._op(_NEGATED_COMPARE_OPS[op.op])
            self._push(0)
            self._op(Op.EQ)
        elif op.op in ("&&", "||"):
            # Normalise both sides to 0/1
            self._push(0)
            self._op(Op.NEQ)
            self._op(Op.SWAP)
            self._push(0)
            self._op(Op.NEQ)
            if op.op == "&&":
                self._op(Op.MUL)
            else:
                self._op(Op.ADD)
                self._push(0)
                self._op(Op.NEQ)
        else:
            raise self._error(f"unsupported operator '{op.op}'", op)

    def _gen_call(self, symbol: str, args: List[Expression]):
        for arg in reversed(args):
            self._gen_expr(arg)
        self._jump(Op.CALL32, function_label(symbol))

    def _gen_module_call(self, call: ModuleCall):
        value = cap_constant(call)
        if value is not None:
            self._push(value)
            return
        symbol = self._symbols.resolve_module_call(call, self._unit)
        if call.module == "stdio":
            self._gen_stdio_call(call)
        elif call.module == "novaria" and call.name == "FileCreateStr":
            self._gen_file_create_str(call)
        elif call.module == "novaria" and call.name in NOVARIA_SYSCALLS:
            number = NOVARIA_SYSCALLS[call.name]
            for arg in reversed(call.args):
                self._gen_syscall_arg(arg)
            self._syscall(number)
            if SYSCALL_EFFECTS[number][1] == 0:
                self._push(0)
        else:
            self._gen_call(symbol, call.args)

    # ── novaria lowering ──────────────────────

    def _data_label(self, data: bytes) -> str:
        for label, existing in self._data:
            if existing == data:
                return label
        label = self._new_label("str")
        self._data.append((label, data))
        return label

    def _gen_syscall_arg(self, arg: Expression):
        """Strings go to the data area and pass their image offset."""
        text = self._string_value(arg)
        if text is None:
            self._gen_expr(arg)
        else:
            self._push_label(self._data_label(text.encode("utf-8")))

    def _gen_file_create_str(self, call: ModuleCall):
        path, content = call.args
        text = self._string_value(content)
        if text is None:
            raise self._error(
                "'novaria.FileCreateStr' needs a string literal or string constant "
                "as its content", call)
        data = text.encode("utf-8")
        # CREATE(path, buffer, count): count deepest, path on top
        self._push(len(data))
        self._push_label(self._data_label(data))
        self._gen_syscall_arg(path)
        self._syscall(Syscall.CREATE)

    # ── stdio lowering ────────────────────────

    def _print_bytes(self, data: bytes):
        for b in data:
            self._push(b)
            self._syscall(Syscall.PRINT)

    def _gen_stdio_call(self, call: ModuleCall):
        name = call.name
        newline = name in ("Println", "PrintlnStr")

        if name in ("Print", "Println", "PrintStr", "PrintlnStr"):
            text = self._string_value(call.args[0])
            if text is not None:
                self._print_bytes(text.encode("utf-8"))
            elif name in ("PrintStr", "PrintlnStr"):
                raise self._error(
                    f"'stdio.{name}' needs a string literal or string constant on "
                    f"the NVM target", call)
            else:
                self._gen_expr(call.args[0])
                self._needs_print_int = True
                self._jump(Op.CALL32, PRINT_INT)
                self._op(Op.POP)
            if newline:
                self._print_bytes(b"\n")
        elif name == "PrintChar":
            self._gen_expr(call.args[0])
            self._syscall(Syscall.PRINT)
        elif name == "Flush":
            pass
        else:
            raise self._error(f"'stdio.{name}' is not available on the NVM target", call)
        self._push(0)

    def _gen_print_int(self):
        """Print the signed value on top of the stack in decimal; returns it."""
        value, power, result = PRINT_VALUE_SLOT, PRINT_POWER_SLOT, PRINT_RESULT_SLOT
        self._bind(PRINT_INT)
        self._op(Op.DUP)
        self._store(result)
        self._store(value)

        self._load(value)
        self._push(0)
        self._op(Op.LT)
        self._jump(Op.JZ32, "__print_int_nonneg")
        self._print_bytes(b"-")
        self._push(0)
        self._load(value)
        self._op(Op.SUB)
        self._store(value)

        self._bind("__print_int_nonneg")
        self._load(value)
        self._push(0)
        self._op(Op.EQ)
        self._jump(Op.JZ32, "__print_int_nonzero")
        self._print_bytes(b"0")
        self._load(result)
        self._op(Op.RET)

        # Largest power of ten with value / power < 10
        self._bind("__print_int_nonzero")
        self._push(1)
        self._store(power)
        self._bind("__print_int_scale")
        self._load(value)
        self._load(power)
        self._op(Op.DIV)
        self._push(10)
        self._op(Op.LT)
        self._jump(Op.JNZ32, "__print_int_digits")
        self._load(power)
        self._push(10)
        self._op(Op.MUL)
        self._store(power)
        self._jump(Op.JMP32, "__print_int_scale")

        self._bind("__print_int_digits")
        self._load(power)
        self._push(0)
        self._op(Op.GT)
        self._jump(Op.JZ32, "__print_int_done")
        self._load(value)
        self._load(power)
        self._op(Op.DIV)
        self._push(ord("0"))
        self._op(Op.ADD)
        self._syscall(Syscall.PRINT)
        self._load(value)
        self._load(power)
        self._op(Op.MOD)
        self._store(value)
        self._load(power)
        self._push(10)
        self._op(Op.DIV)
        self._store(power)
        self._jump(Op.JMP32, "__print_int_digits")

        self._bind("__print_int_done")
        self._load(result)
        self._op(Op.RET)

    # ── Inline assembly ───────────────────────

    def _gen_inline_asm(self, stmt: InlineAsm):
        def interpolate(m):
            name = m.group(1)
            if name in self._strings and name not in self._slots:
                return self._strings[name]
            return m.group(0)

        code = _ASM_VAR.sub(interpolate, stmt.code)
        for raw in code.splitlines():
            text = raw.split(";", 1)[0].strip()
            if not text:
                continue
            parts = text.split(None, 1)
            if _ASM_VAR.fullmatch(parts[0]):
                # A bare $(x) loads the local
                self._load(self._asm_local(parts[0], stmt))
                continue

            mnemonic = parts[0].lower()
            operand = parts[1].strip() if len(parts) > 1 else None

            op = INLINE_ASM_OPS.get(mnemonic)
            if op is None:
                raise self._error(f"unsupported inline assembly instruction '{parts[0]}'", stmt)

            if op == Op.PUSH32:
                if operand is None:
                    raise self._error("'push' needs an operand", stmt)
                if _ASM_VAR.fullmatch(operand):
                    self._load(self._asm_local(operand, stmt))
                else:
                    self._push(self._asm_int(operand, -2**31, 2**31 - 1, stmt))
            elif op in (Op.LOAD, Op.STORE):
                if operand is None:
                    raise self._error(f"'{mnemonic}' needs a slot operand", stmt)
                if _ASM_VAR.fullmatch(operand):
                    slot = self._asm_local(operand, stmt)
                else:
                    slot = self._asm_int(operand, 0, SLOT_COUNT - 1, stmt)
                self.code += bytes([op, slot])
            elif op == Op.SYSCALL:
                if operand is None:
                    raise self._error("'syscall' needs a name or number", stmt)
                self._syscall(self._asm_syscall(operand, stmt))
            else:
                if operand is not None:
                    raise self._error(f"'{mnemonic}' takes no operand", stmt)
                self._op(op)

    def _asm_local(self, text: str, node: ASTNode) -> int:
        name = _ASM_VAR.fullmatch(text).group(1)
        slot = self._slots.get(name)
        if slot is None:
            raise self._error(f"undefined variable '{name}' in inline assembly", node)
        return slot

    def _asm_int(self, text: str, low: int, high: int, node: ASTNode) -> int:
        try:
            value = int(text, 0)
        except ValueError:
            raise self._error(f"invalid inline assembly operand '{text}'", node)
        if not low <= value <= high:
            raise self._error(f"inline assembly operand {value} out of range", node)
        return value

    def _asm_syscall(self, text: str, node: ASTNode) -> int:
        if text[:1].isdigit():
            return self._asm_int(text, 0, 255, node)
        number = syscall_by_name(text)
        if number is None:
            self._warn(f"{self._unit.function.file}:{node.line}: unknown syscall "
                       f"'{text}' in inline assembly, using 0")
            return 0
        return number
