"""
Import resolution for the .per compiler.

Each `import "name"` is looked up, in order, at:

  1. <source-dir>/name.per
  2. every extra directory given with -I / --stdlib-dir
  3. stdlib/name.per relative to the working directory
  4. the stdlib/ directory bundled with this package

The first hit wins. Loaded modules are parsed with the same frontend,
their own imports are followed recursively, and every module ends up in
the root Program's `modules` map keyed by the last path component.
"""

from __future__ import annotations
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Set

from .ast_nodes import Module, Program
from .errors import ModuleError
from .lexer import Lexer
from .parser import Parser

log = logging.getLogger(__name__)

BUNDLED_STDLIB = Path(__file__).parent / "stdlib"
SOURCE_SUFFIX = ".per"


class ModuleLoader:
    """Resolves and parses every module reachable from a root Program."""

    def __init__(self, base_dir: Path | str,
                 search_dirs: Optional[Iterable[Path | str]] = None):
        self.base_dir = Path(base_dir)
        self.search_dirs = [Path(d) for d in (search_dirs or [])]
        self.seen: Set[str] = set()

    def candidates(self, path: str) -> List[Path]:
        filename = path + SOURCE_SUFFIX
        dirs = [self.base_dir, *self.search_dirs, Path("stdlib"), BUNDLED_STDLIB]
        return [d / filename for d in dirs]

    def resolve(self, path: str) -> Path:
        candidates = self.candidates(path)
        for cand in candidates:
            if cand.is_file():
                log.debug("module %r -> %s", path, cand)
                return cand
        raise ModuleError(f"could not find module '{path}'",
                          str(candidates[0]), 1, 1, f'import "{path}"')

    def load(self, program: Program) -> Program:
        """Attach every transitively imported module to `program`."""
        for imp in program.imports:
            name = imp.module_name
            if name in self.seen:
                continue
            self.seen.add(name)

            module_file = self.resolve(imp.path)
            source = module_file.read_text(encoding="utf-8")
            tokens = Lexer(source, str(module_file)).tokenize()
            module_ast = Parser(tokens, source, str(module_file)).parse()

            self.load(module_ast)
            program.modules.update(module_ast.modules)
            program.modules[name] = Module(name=name,
                                           functions=module_ast.functions,
                                           file=str(module_file),
                                           line=imp.line, col=imp.col)
            log.info("loaded module %s (%d functions) from %s",
                     name, len(module_ast.functions), module_file)
        return program


def load_modules(program: Program, base_dir: Path | str,
                 search_dirs: Optional[Iterable[Path | str]] = None) -> Program:
    return ModuleLoader(base_dir, search_dirs).load(program)
