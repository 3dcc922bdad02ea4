#!/usr/bin/env python3
"""
perc: compiler CLI for the .per language

Usage:
    perc <source.per> [--elf | --pe | --nvm-code | --novaria | --elf-raw]
                      [-o output] [--cc gcc] [--keep-asm] [-I dir] [-v | -q]

Targets:
    --elf       x86-64 Linux executable via gcc (default off Windows)
    --pe        x86-64 Windows .exe, written directly (default on Windows)
    --nvm-code  NVM assembly listing (.asm)
    --novaria   NVM bytecode image (.bin)
    --elf-raw   static x86-64 Linux executable, written directly

The output name is the source name without .per/.nl plus the target's
extension, unless -o is given.

Examples:
    perc hello.per                     # ./hello
    perc hello.per --pe                # hello.exe
    perc kernel_task.per --novaria     # kernel_task.bin
    perc hello.per --tokens            # dump tokens and exit
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from per_compiler import (TARGET_PROFILES, __version__, attach_source_line,
                          compile_source, parse_program)
from per_compiler.codegen_elf import assemble_and_link
from per_compiler.errors import CompileError, ToolchainError
from per_compiler.lexer import Lexer
from per_compiler.nvm_asm import AssemblerError

log = logging.getLogger("perc")

SOURCE_SUFFIXES = (".per", ".nl")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def default_target() -> str:
    return "pe" if os.name == "nt" else "elf"


def default_output(source: str, target: str) -> str:
    """Strip .per/.nl and append the target's extension."""
    path = Path(source)
    stem = path.with_suffix("") if path.suffix in SOURCE_SUFFIXES else path
    return str(stem) + TARGET_PROFILES[target]["extension"]


def setup_logging(verbosity: int = 0, quiet: bool = False,
                  log_file: Optional[str] = None):
    """Rich console handler at the chosen level, plus an optional DEBUG log file."""
    if quiet:
        console_level = logging.ERROR
    elif verbosity >= 2:
        console_level = logging.DEBUG
    elif verbosity == 1:
        console_level = logging.INFO
    else:
        console_level = logging.WARNING

    console = RichHandler(
        level=console_level,
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
    )
    handlers = [console]
    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(fh)

    logging.basicConfig(level=logging.DEBUG if log_file else console_level,
                        format="%(message)s", handlers=handlers, force=True)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="perc",
        description="Compiler for the .per language (ELF, PE and NVM targets)",
        epilog="Targets: " + ", ".join(TARGET_PROFILES.keys()),
    )
    parser.add_argument("source", help="Input .per source file")

    targets = parser.add_mutually_exclusive_group()
    for name in TARGET_PROFILES:
        targets.add_argument(f"--{name}", dest="target", action="store_const",
                             const=name, help=TARGET_PROFILES[name]["description"])

    parser.add_argument("-o", "--output", help="Output file (default: derived from source)")
    parser.add_argument("--cc", default="gcc",
                        help="Assembler/linker driver for --elf (default: gcc)")
    parser.add_argument("--keep-asm", action="store_true",
                        help="Keep the intermediate .s file (--elf)")
    parser.add_argument("-I", "--stdlib-dir", action="append", default=[], metavar="DIR",
                        help="Extra module search directory (repeatable)")
    parser.add_argument("--tokens", action="store_true",
                        help="Dump token stream and exit (debug)")
    parser.add_argument("--ast", action="store_true",
                        help="Dump AST and exit (debug)")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="More log output (-vv for debug)")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Only report errors")
    parser.add_argument("--log-file", help="Also write a DEBUG log to this file")
    parser.add_argument("--version", action="version", version=f"perc {__version__}")
    return parser


def write_output(result, target: str, output: str, args) -> str:
    if target == "elf":
        assemble_and_link(result, output, cc=args.cc, keep_asm=args.keep_asm)
    elif isinstance(result, bytes):
        Path(output).write_bytes(result)
        if target == "elf-raw":
            os.chmod(output, 0o755)
    else:
        Path(output).write_text(result, encoding="utf-8")
    return output


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    setup_logging(args.verbose, args.quiet, args.log_file)
    err_console = Console(stderr=True, highlight=False)

    target = args.target or default_target()
    output = args.output or default_output(args.source, target)

    try:
        source = Path(args.source).read_text(encoding="utf-8")
    except OSError as e:
        err_console.print(f"[bold red]error[/]: cannot read {escape(args.source)}: "
                          f"{escape(e.strerror or str(e))}")
        return 1

    log.info("source: %s", args.source)
    log.info("target: %s (%s)", target, TARGET_PROFILES[target]["description"])

    try:
        # Token dump mode
        if args.tokens:
            for tok in Lexer(source, args.source).tokenize():
                print(tok)
            return 0

        # AST dump mode
        if args.ast:
            _print_ast(parse_program(source, args.source, search_dirs=args.stdlib_dir))
            return 0

        result = compile_source(source, filename=args.source, target=target,
                                search_dirs=args.stdlib_dir)
        write_output(result, target, output, args)
        log.info("wrote %s (%s)", output, TARGET_PROFILES[target]["output"])

    except CompileError as e:
        attach_source_line(e, source if e.file == args.source else None).display(err_console)
        return 1
    except (AssemblerError, ToolchainError) as e:
        err_console.print(f"[bold red]error[/]: {escape(str(e))}")
        return 1
    except Exception as e:
        err_console.print(f"[bold red]internal compiler error[/]: {escape(str(e))}")
        if args.verbose:
            log.exception("internal compiler error")
        return 2

    print(f"Compilation successful: {output}")
    return 0


def _print_ast(node, indent=0):
    """Pretty-print an AST node tree (debug helper)."""
    prefix = "  " * indent
    if hasattr(node, '__dataclass_fields__'):
        print(f"{prefix}{type(node).__name__} ({node.line}:{node.col}):")
        for fname in node.__dataclass_fields__:
            if fname in ("line", "col"):
                continue
            val = getattr(node, fname)
            if isinstance(val, dict):
                print(f"{prefix}  {fname}:")
                for item in val.values():
                    _print_ast(item, indent + 2)
            elif isinstance(val, list):
                print(f"{prefix}  {fname}:")
                for item in val:
                    _print_ast(item, indent + 2)
            elif hasattr(val, '__dataclass_fields__'):
                print(f"{prefix}  {fname}:")
                _print_ast(val, indent + 2)
            elif val is not None:
                print(f"{prefix}  {fname}: {val!r}")
    else:
        print(f"{prefix}{node!r}")


if __name__ == "__main__":
    sys.exit(main())
