"""
Rules shared by every backend: symbol mangling, emission order, call
resolution, native frame layout and the NovariaOS capability constants.

Backends never look functions up on their own; they ask a SymbolTable so
that all three targets agree on which calls are legal.
"""

from __future__ import annotations
import dataclasses
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from .ast_nodes import *
from .errors import CodeGenError

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────

CAP_CONSTANTS: Dict[str, int] = {
    "CAP_FS_READ": 1,
    "CAP_FS_WRITE": 2,
    "CAP_FS_CREATE": 4,
    "CAP_FS_DELETE": 8,
    "CAP_DRV_ACCESS": 16,
    "CAP_CAPS_MGMT": 32,
    "CAP_ALL": 65535,
}

# stdio runtime functions and their arity
STDIO_FUNCTIONS: Dict[str, int] = {
    "Print": 1,
    "Println": 1,
    "PrintStr": 1,
    "PrintlnStr": 1,
    "PrintChar": 1,
    "ReadInt": 0,
    "ReadChar": 0,
    "ReadLine": 2,
    "Flush": 0,
}

STDIO_READ_FUNCTIONS = ("ReadInt", "ReadChar", "ReadLine")

MAX_REGISTER_ARGS = 6
NATIVE_SLOT_SIZE = 8


def mangle(module: Optional[str], name: str) -> str:
    """Module functions become `<module>_<function>`; user functions keep their name."""
    return f"{module}_{name}" if module else name


def stdio_target(name: str, args: List[Expression]) -> str:
    """Print/Println with a string literal argument print the string."""
    if args and isinstance(args[0], StringLiteral):
        if name == "Print":
            return "PrintStr"
        if name == "Println":
            return "PrintlnStr"
    return name


def iter_nodes(node) -> Iterator[ASTNode]:
    """Depth-first walk over a node (or list of nodes) and everything below it."""
    if isinstance(node, list):
        for item in node:
            yield from iter_nodes(item)
        return
    if not isinstance(node, ASTNode):
        return
    yield node
    for f in dataclasses.fields(node):
        value = getattr(node, f.name)
        if isinstance(value, (list, ASTNode)):
            yield from iter_nodes(value)


# ──────────────────────────────────────────────
# Function units and the symbol table
# ──────────────────────────────────────────────

@dataclass
class FunctionUnit:
    """One function to emit, with its final symbol."""
    function: Function
    module: Optional[str] = None

    @property
    def symbol(self) -> str:
        return mangle(self.module, self.function.name)

    @property
    def is_main(self) -> bool:
        return self.module is None and self.function.name == "main"


class SymbolTable:
    """Call resolution and emission order for one Program."""

    def __init__(self, program: Program, native: bool = False):
        self.program = program
        self.native = native
        self.user: Dict[str, Function] = {}
        for func in program.functions:
            if func.name in self.user:
                raise CodeGenError(f"function '{func.name}' is defined twice",
                                   func, func.file)
            self.user[func.name] = func
        self.main = self._find_main()

    def _find_main(self) -> Function:
        main = self.user.get("main")
        if main is None:
            raise CodeGenError("no 'main' function defined", self.program,
                               self.program.file)
        if main.params:
            raise CodeGenError("'main' must not take parameters", main, main.file)
        return main

    @property
    def uses_stdio(self) -> bool:
        return "stdio" in self.program.modules

    def uses_stdio_reads(self) -> bool:
        funcs = list(self.program.functions)
        for name, module in self.program.modules.items():
            if name != "stdio":
                funcs.extend(module.functions)
        for func in funcs:
            for node in iter_nodes(func.body):
                if (isinstance(node, ModuleCall) and node.module == "stdio"
                        and node.name in STDIO_READ_FUNCTIONS):
                    return True
        return False

    # ── Emission order ─────────────────────────

    def _module_units(self, module: Module) -> List[FunctionUnit]:
        """Exported functions plus the private helpers they reach, in declaration order."""
        by_name = {f.name: f for f in module.functions}
        wanted = set()
        pending = [f.name for f in module.functions if f.is_exported]
        while pending:
            name = pending.pop()
            if name in wanted:
                continue
            wanted.add(name)
            for node in iter_nodes(by_name[name].body):
                if isinstance(node, Call) and node.name in by_name:
                    pending.append(node.name)
        return [FunctionUnit(f, module.name) for f in module.functions
                if f.name in wanted]

    def emission_order(self) -> List[FunctionUnit]:
        """Modules (by name), then user functions, then main.

        Native backends skip the `stdio` module; its functions are replaced by
        runtime shims that the backend emits just before main.
        """
        units: List[FunctionUnit] = []
        for name in sorted(self.program.modules):
            if self.native and name == "stdio":
                continue
            units.extend(self._module_units(self.program.modules[name]))
        units.extend(FunctionUnit(f) for f in self.program.functions
                     if f.name != "main")
        units.append(FunctionUnit(self.main))
        return units

    # ── Call resolution ────────────────────────

    def _check_arity(self, func: Function, args: List[Expression], node: ASTNode,
                     file: str, display: str):
        if len(args) != len(func.params):
            raise CodeGenError(
                f"'{display}' expects {len(func.params)} argument(s), got {len(args)}",
                node, file)
        if self.native and len(args) > MAX_REGISTER_ARGS:
            raise CodeGenError(
                f"'{display}' takes {len(args)} arguments; at most "
                f"{MAX_REGISTER_ARGS} are supported on native targets", node, file)

    def resolve_call(self, call: Call, unit: FunctionUnit) -> str:
        """Resolve a bare call; inside a module it binds to the same module first."""
        file = unit.function.file
        if unit.module is not None:
            module = self.program.modules[unit.module]
            func = module.find(call.name)
            if func is not None:
                self._check_arity(func, call.args, call, file, call.name)
                return mangle(unit.module, call.name)
        func = self.user.get(call.name)
        if func is None:
            raise CodeGenError(f"undefined function '{call.name}'", call, file)
        self._check_arity(func, call.args, call, file, call.name)
        return call.name

    def resolve_module_call(self, call: ModuleCall, unit: FunctionUnit) -> str:
        file = unit.function.file
        module = self.program.modules.get(call.module)
        if module is None:
            raise CodeGenError(f"module '{call.module}' is not imported", call, file)
        func = module.find(call.name)
        display = f"{call.module}.{call.name}"
        if func is None:
            raise CodeGenError(f"undefined function '{display}'", call, file)
        if not func.is_exported:
            raise CodeGenError(f"function '{display}' is not exported", call, file)
        self._check_arity(func, call.args, call, file, display)
        return mangle(call.module, call.name)


def cap_constant(expr: Expression) -> Optional[int]:
    """Value of `CAP_*` or `novaria.CAP_*` used as an expression, else None."""
    if isinstance(expr, Identifier):
        return CAP_CONSTANTS.get(expr.name)
    if (isinstance(expr, ModuleCall) and expr.module == "novaria"
            and not expr.args and expr.name in CAP_CONSTANTS):
        return CAP_CONSTANTS[expr.name]
    return None


# ──────────────────────────────────────────────
# Native frame layout
# ──────────────────────────────────────────────

def _body_slots(stmts: List[ASTNode]) -> int:
    total = 0
    for stmt in stmts:
        if isinstance(stmt, VarDecl):
            total += NATIVE_SLOT_SIZE
        elif isinstance(stmt, ArrayDecl):
            total += NATIVE_SLOT_SIZE * stmt.size
        elif isinstance(stmt, IfStmt):
            total += _body_slots(stmt.then_body)
            total += _body_slots(stmt.else_body or [])
        elif isinstance(stmt, ForStmt):
            total += _body_slots(stmt.body)
    return total


def frame_size(func: Function) -> int:
    """Bytes reserved below rbp: 8 per parameter and scalar, 8*N per array, 16-aligned."""
    size = NATIVE_SLOT_SIZE * len(func.params) + _body_slots(func.body)
    return (size + 15) & ~15


class FrameLayout:
    """Hands out descending rbp-relative offsets in declaration order."""

    def __init__(self, func: Function):
        self.size = frame_size(func)
        self.offset = 0
        self.vars: Dict[str, int] = {}

    def allocate(self, name: str) -> int:
        self.offset -= NATIVE_SLOT_SIZE
        self.vars[name] = self.offset
        return self.offset

    def allocate_array(self, name: str, size: int) -> int:
        """Reserve `size` slots; element i lives at base + 8*i."""
        self.offset -= NATIVE_SLOT_SIZE * size
        self.vars[name] = self.offset
        return self.offset

    def lookup(self, name: str) -> Optional[int]:
        return self.vars.get(name)
