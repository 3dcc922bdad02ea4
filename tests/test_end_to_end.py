"""
End-to-end tests: build real executables and run them.

The gcc-linked ELF target needs gcc; both ELF targets need an x86-64 Linux
host.  The same programs also run on the NVM interpreter so every backend
is held to the same expected output.
"""

import platform
import shutil
import subprocess
import sys

import pytest

from per_compiler import compile_source
from per_compiler.codegen_elf import assemble_and_link
from per_compiler.errors import CodeGenError
from per_compiler.nvm_vm import execute

LINUX_X64 = sys.platform.startswith("linux") and platform.machine() in ("x86_64", "AMD64")
needs_linux = pytest.mark.skipif(not LINUX_X64, reason="needs an x86-64 Linux host")
needs_gcc = pytest.mark.skipif(not (LINUX_X64 and shutil.which("gcc")),
                               reason="needs gcc on x86-64 Linux")

# (name, source, expected stdout)
PROGRAMS = [
    ("println", 'package main\nimport "stdio"\nfunc main(){ stdio.Println(42) }\n', "42\n"),
    ("loop", 'package main\nimport "stdio"\n'
             "func main(){ var x = 0; for x < 3 { stdio.Println(x); x = x + 1 } }\n",
     "0\n1\n2\n"),
    ("if_else", 'package main\nimport "stdio"\n'
                'func main(){ if 1 == 1 { stdio.PrintlnStr("yes") } else { stdio.PrintlnStr("no") } }\n',
     "yes\n"),
    ("call", 'package main\nimport "stdio"\n'
             "func add(a int, b int) int { return a + b }\n"
             "func main(){ stdio.Println(add(2, 3)) }\n", "5\n"),
    ("itoa", 'package main\nimport "stdio"\nfunc main() {\n'
             "    stdio.Println(-1000000000)\n    stdio.Println(-1)\n    stdio.Println(0)\n"
             "    stdio.Println(1)\n    stdio.Println(10)\n    stdio.Println(1000000000)\n}\n",
     "-1000000000\n-1\n0\n1\n10\n1000000000\n"),
    ("arrays", '''package main
import "stdio"
func main() {
    var a [5]int
    var i = 0
    while i < 5 {
        a[i] = i * i
        i = i + 1
    }
    var p = &i
    *p = 0
    var sum = 0
    for i < 5 { sum = sum + a[i]; i = i + 1 }
    stdio.Print(sum)
    stdio.PrintChar(10)
    stdio.PrintStr("ok")
    stdio.Println("!")
}
''', "30\nok!\n"),
    ("string_var", 'package main\nimport "stdio"\n'
                   'func main() { var s = "a"; stdio.PrintlnStr(s); s = "b"; stdio.PrintlnStr(s) }\n',
     "a\nb\n"),
]

IDS = [name for name, _, _ in PROGRAMS]


def _run(path, stdin=""):
    return subprocess.run([str(path)], input=stdin, capture_output=True, text=True, timeout=30)


@pytest.mark.parametrize("name,source,expected", PROGRAMS, ids=IDS)
def test_nvm(name, source, expected):
    vm = execute(compile_source(source, target="novaria"))
    assert vm.output.decode() == expected
    assert vm.exit_code == 0


@needs_gcc
@pytest.mark.parametrize("name,source,expected", PROGRAMS, ids=IDS)
def test_elf(tmp_path, name, source, expected):
    exe = assemble_and_link(compile_source(source, target="elf"), tmp_path / name)
    result = _run(exe)
    assert result.stdout == expected
    assert result.returncode == 0
    assert not (tmp_path / f"{name}.s").exists()


@needs_linux
@pytest.mark.parametrize("name,source,expected", PROGRAMS, ids=IDS)
def test_elf_raw(tmp_path, name, source, expected):
    exe = tmp_path / name
    exe.write_bytes(compile_source(source, target="elf-raw"))
    exe.chmod(0o755)
    result = _run(exe)
    assert result.stdout == expected
    assert result.returncode == 0


class TestNativeOnly:
    READER = '''package main
import "stdio"
func main() {
    var n = stdio.ReadInt()
    stdio.Println(n * 2)
    var c = stdio.ReadChar()
    stdio.Println(c)
}
'''

    @needs_gcc
    def test_module_symbol(self, tmp_path):
        (tmp_path / "math.per").write_text(
            "package math\npub func Square(n int) int { return n * n }\n")
        asm = compile_source('package main\nimport "stdio"\nimport "math"\n'
                             "func main(){ stdio.Println(math.Square(7)) }\n",
                             filename=str(tmp_path / "main.per"), target="elf")
        assert ".globl  math_Square" in asm
        exe = assemble_and_link(asm, tmp_path / "main")
        assert _run(exe).stdout == "49\n"

    @needs_gcc
    def test_exit_status_from_main(self, tmp_path):
        exe = assemble_and_link(compile_source("package main\nfunc main() { return 7 }\n"),
                                tmp_path / "seven")
        assert _run(exe).returncode == 7

    @needs_linux
    def test_raw_exit_status(self, tmp_path):
        exe = tmp_path / "seven"
        exe.write_bytes(compile_source("package main\nfunc main() { return 7 }\n",
                                       target="elf-raw"))
        exe.chmod(0o755)
        assert _run(exe).returncode == 7

    @needs_linux
    def test_raw_reads(self, tmp_path):
        exe = tmp_path / "reader"
        exe.write_bytes(compile_source(self.READER, target="elf-raw"))
        exe.chmod(0o755)
        assert _run(exe, "21\n").stdout == "42\n-1\n"

    LOOP_STRING = ('package main\nimport "stdio"\nfunc main() {\n'
                   '    var s = "a"\n    var i = 0\n'
                   '    for i < 2 { stdio.PrintlnStr(s); s = "b"; i = i + 1 }\n}\n')

    @needs_linux
    def test_string_reassigned_in_loop(self, tmp_path):
        exe = tmp_path / "strings"
        exe.write_bytes(compile_source(self.LOOP_STRING, target="elf-raw"))
        exe.chmod(0o755)
        assert _run(exe).stdout == "a\nb\n"
        # NVM string constants are resolved at compile time
        with pytest.raises(CodeGenError, match="can only be reassigned"):
            compile_source(self.LOOP_STRING, target="novaria")

    @needs_gcc
    def test_keep_asm(self, tmp_path):
        assemble_and_link(compile_source("package main\nfunc main() {}\n"),
                          tmp_path / "empty", keep_asm=True)
        assert (tmp_path / "empty.s").is_file()
