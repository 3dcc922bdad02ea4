"""
perc: compiler for the .per language
====================================
A small imperative language compiled ahead of time to three targets:
native x86-64 ELF (through gcc), native x86-64 PE (raw bytes, no external
tools) and the Novaria stack VM (NVM).

Architecture:
    ┌──────────┐    ┌──────────┐    ┌──────────┐    ┌──────────┐    ┌──────────────────┐
    │ .per     │───>│  Lexer   │───>│  Parser  │───>│ Modules  │───>│ Code generators  │
    │ source   │    │ (tokens) │    │  (AST)   │    │ (imports)│    │ elf / pe / nvm   │
    └──────────┘    └──────────┘    └──────────┘    └──────────┘    └──────────────────┘

    - lexer.py:       hand-written scanner, keywords and aliases
    - parser.py:      recursive descent into the dataclass AST (ast_nodes.py)
    - modules.py:     import resolution against the source dir and stdlib/
    - symbols.py:     mangling, emission order, call checks, frame layout
    - codegen_elf.py: AT&T assembly + stdio thunks, linked by gcc
    - codegen_x64.py: raw machine code via x86.py, wrapped by pe_writer.py
                      (Windows) or elf_writer.py (Linux, --elf-raw)
    - nvm.py:         NVM bytecode; nvm_asm.py prints/reads its text form,
                      nvm_vm.py runs it
"""

from __future__ import annotations
import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

__version__ = "0.4.0"
__author__ = "perc contributors"

from .errors import (CompileError, LexerError, ParseError, ModuleError,
                     CodeGenError, ToolchainError)
from .lexer import Lexer, Token, TokenType
from .ast_nodes import *
from .parser import Parser
from .modules import ModuleLoader, load_modules
from .codegen_elf import AsmGenerator, assemble_and_link
from .codegen_x64 import MachineCode, X64CodeGenerator
from .pe_writer import PEWriter
from .elf_writer import ELFWriter
from .nvm import NVMCodeGenerator
from .nvm_asm import Assembler, AssemblerError, assemble, disassemble

log = logging.getLogger(__name__)

TARGET_PROFILES: Dict[str, Dict[str, str]] = {
    "elf": {
        "extension": "",
        "output": "executable",
        "description": "x86-64 Linux executable, assembled and linked by gcc",
    },
    "pe": {
        "extension": ".exe",
        "output": "binary",
        "description": "x86-64 Windows console executable (PE32+)",
    },
    "nvm-code": {
        "extension": ".asm",
        "output": "text",
        "description": "NVM assembly listing",
    },
    "novaria": {
        "extension": ".bin",
        "output": "binary",
        "description": "NVM bytecode image for NovariaOS",
    },
    "elf-raw": {
        "extension": "",
        "output": "binary",
        "description": "static x86-64 Linux executable, no external tools",
    },
}


def attach_source_line(err: CompileError, source: Optional[str] = None) -> CompileError:
    """Fill in the offending source line when the error does not carry one."""
    if err.source_line is not None:
        return err
    if source is None:
        path = Path(err.file)
        if not path.is_file():
            return err
        source = path.read_text(encoding="utf-8")
    lines = source.splitlines()
    if 1 <= err.line <= len(lines):
        err.with_source_line(lines[err.line - 1])
    return err


def parse_program(source: str, filename: str = "<input>",
                  base_dir: Optional[Union[str, Path]] = None,
                  search_dirs: Optional[Iterable[Union[str, Path]]] = None) -> Program:
    """Lex, parse and load every imported module."""
    tokens = Lexer(source, filename).tokenize()
    program = Parser(tokens, source, filename).parse()
    if base_dir is None:
        base_dir = Path(filename).parent if filename != "<input>" else Path(".")
    return load_modules(program, base_dir, search_dirs)


def compile_source(source: str, *, filename: str = "<input>", target: str = "elf",
                   base_dir: Optional[Union[str, Path]] = None,
                   search_dirs: Optional[Iterable[Union[str, Path]]] = None
                   ) -> Union[str, bytes]:
    """Compile .per source for one target.

    Full pipeline: Lexer -> Parser -> ModuleLoader -> code generator.

    Args:
        source: program text.
        filename: name used in diagnostics and to find sibling modules.
        target: one of TARGET_PROFILES.
        base_dir: directory searched first for imports (default: the
            directory of `filename`).
        search_dirs: extra module directories (-I).

    Returns:
        'elf' and 'nvm-code' return text (AT&T assembly, NVM listing);
        'pe', 'novaria' and 'elf-raw' return the finished image bytes.
    """
    if target not in TARGET_PROFILES:
        raise ValueError(f"unknown target {target!r}")

    try:
        program = parse_program(source, filename, base_dir, search_dirs)

        if target == "elf":
            return AsmGenerator().generate(program)
        if target == "pe":
            return PEWriter().build(X64CodeGenerator("windows").generate(program))
        if target == "elf-raw":
            return ELFWriter().build(X64CodeGenerator("linux").generate(program))

        gen = NVMCodeGenerator()
        image = gen.generate(program)
        if target == "nvm-code":
            return disassemble(image, gen.labels)
        return image
    except CompileError as e:
        raise attach_source_line(e, source if e.file == filename else None)
