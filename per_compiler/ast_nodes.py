"""
AST Node definitions for the .per compiler.

Defines the Abstract Syntax Tree produced by the parser and consumed by
every backend. The tree is read-only once parsing (and module loading)
has finished.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union


# ──────────────────────────────────────────────
# Base AST node
# ──────────────────────────────────────────────

@dataclass
class ASTNode:
    """Base class for all AST nodes."""
    line: int = 0
    col: int = 0


# ──────────────────────────────────────────────
# Top-level: Program / Module / Function
# ──────────────────────────────────────────────

@dataclass
class Import(ASTNode):
    """import "path" """
    path: str = ""

    @property
    def module_name(self) -> str:
        """Last path component: `import "sys/stdio"` binds `stdio`."""
        return self.path.rstrip("/").split("/")[-1]


@dataclass
class Parameter(ASTNode):
    """Function parameter. The type tag is recorded but never checked."""
    name: str = ""
    type_name: Optional[str] = None


@dataclass
class Function(ASTNode):
    name: str = ""
    params: List[Parameter] = field(default_factory=list)
    return_type: Optional[str] = None
    body: List[ASTNode] = field(default_factory=list)
    is_exported: bool = False
    file: str = "<input>"


@dataclass
class Module(ASTNode):
    """A loaded import: its functions in declaration order."""
    name: str = ""
    functions: List[Function] = field(default_factory=list)
    file: str = ""

    def find(self, name: str) -> Optional[Function]:
        for func in self.functions:
            if func.name == name:
                return func
        return None


@dataclass
class Program(ASTNode):
    """Root node: the user's package plus every loaded module."""
    package: str = "main"
    imports: List[Import] = field(default_factory=list)
    functions: List[Function] = field(default_factory=list)
    modules: Dict[str, Module] = field(default_factory=dict)
    file: str = "<input>"


# ──────────────────────────────────────────────
# Statements
# ──────────────────────────────────────────────

@dataclass
class VarDecl(ASTNode):
    """var name [type] [= value]"""
    name: str = ""
    type_name: Optional[str] = None
    value: Optional[Expression] = None


@dataclass
class ArrayDecl(ASTNode):
    """var name [size] [type]"""
    name: str = ""
    size: int = 0
    element_type: Optional[str] = None


@dataclass
class Assignment(ASTNode):
    name: str = ""
    value: Expression = None  # type: ignore


@dataclass
class ArrayAssignment(ASTNode):
    """name[index] = value"""
    name: str = ""
    index: Expression = None  # type: ignore
    value: Expression = None  # type: ignore


@dataclass
class PointerAssignment(ASTNode):
    """*target = value"""
    target: Expression = None  # type: ignore
    value: Expression = None   # type: ignore


@dataclass
class IfStmt(ASTNode):
    condition: Expression = None  # type: ignore
    then_body: List[ASTNode] = field(default_factory=list)
    else_body: Optional[List[ASTNode]] = None


@dataclass
class ForStmt(ASTNode):
    """for [cond] { body }. No condition means loop forever."""
    condition: Optional[Expression] = None
    body: List[ASTNode] = field(default_factory=list)


@dataclass
class ReturnStmt(ASTNode):
    value: Optional[Expression] = None


@dataclass
class ExprStatement(ASTNode):
    """Expression used as a statement (usually a call)."""
    expr: Expression = None  # type: ignore


@dataclass
class InlineAsm(ASTNode):
    """asm { ... } or asm "..." (NVM only)."""
    code: str = ""


# ──────────────────────────────────────────────
# Expressions
# ──────────────────────────────────────────────

Expression = Union[
    "IntLiteral", "StringLiteral", "Identifier",
    "BinaryOp", "UnaryOp", "Call", "ModuleCall",
    "ArrayAccess", "StringIndex", "AddressOf", "Deref",
]


@dataclass
class IntLiteral(ASTNode):
    value: int = 0


@dataclass
class StringLiteral(ASTNode):
    value: str = ""


@dataclass
class Identifier(ASTNode):
    name: str = ""


@dataclass
class BinaryOp(ASTNode):
    """Binary operation: left op right."""
    op: str = ""              # + - * / % == != < <= > >= && || ++
    left: Expression = None   # type: ignore
    right: Expression = None  # type: ignore


@dataclass
class UnaryOp(ASTNode):
    op: str = ""              # - or !
    operand: Expression = None  # type: ignore


@dataclass
class Call(ASTNode):
    """Call of a function in the same package (or module)."""
    name: str = ""
    args: List[Expression] = field(default_factory=list)


@dataclass
class ModuleCall(ASTNode):
    """module.Function(args) or module.CONSTANT."""
    module: str = ""
    name: str = ""
    args: List[Expression] = field(default_factory=list)


@dataclass
class ArrayAccess(ASTNode):
    name: str = ""
    index: Expression = None  # type: ignore


@dataclass
class StringIndex(ASTNode):
    """"text"[index]"""
    string: Expression = None  # type: ignore
    index: Expression = None   # type: ignore


@dataclass
class AddressOf(ASTNode):
    """&name"""
    operand: Expression = None  # type: ignore


@dataclass
class Deref(ASTNode):
    """*expr"""
    operand: Expression = None  # type: ignore
