"""
NVM backend tests.

Programs are compiled to an NVM image and run on the reference interpreter
(per_compiler.nvm_vm); assertions are on the printed bytes, the exit code
and the host-call side effects.  Image-level checks cover the header,
label patching and the local slot budget.
"""

import struct

import pytest

from per_compiler import compile_source, parse_program
from per_compiler.errors import CodeGenError
from per_compiler.nvm import (BRANCH_OPS, MAGIC, NOVARIA_SYSCALLS, Op, SYSCALL_EFFECTS,
                              NVMCodeGenerator, Syscall, function_label, instruction_size,
                              syscall_by_name)
from per_compiler.nvm_vm import StopReason, execute


def _compile(source: str):
    """Return (image, generator) for a program."""
    gen = NVMCodeGenerator()
    image = gen.generate(parse_program(source))
    return image, gen


def _run(body: str, imports=("stdio",), **kwargs):
    """Compile `func main() { body }` and run it; returns the finished VM."""
    header = "package main\n" + "".join(f'import "{m}"\n' for m in imports)
    image, _ = _compile(f"{header}func main() {{\n{body}\n}}\n")
    vm = execute(image, max_steps=1_000_000, **kwargs)
    assert vm.stop_reason in (StopReason.EXIT, StopReason.HALT), vm.error
    return vm


def _out(body: str, **kwargs) -> str:
    return _run(body, **kwargs).output.decode()


def _instructions(image: bytes):
    """(offset, op) for each instruction after the magic."""
    pc = len(MAGIC)
    while pc < len(image):
        op = Op(image[pc])
        yield pc, op
        pc += instruction_size(op)


# ─── Instruction set tables ──────────────────────────────────────

class TestTables:
    def test_opcode_values(self):
        assert Op.PUSH32 == 0x02 and Op.CALL32 == 0x33 and Op.SYSCALL == 0x50
        assert instruction_size(Op.PUSH32) == 5
        assert instruction_size(Op.LOAD) == 2
        assert instruction_size(Op.ADD) == 1

    def test_canonical_syscalls(self):
        assert Syscall.EXIT == 0x00 and Syscall.PORT_OUT == 0x0D
        assert Syscall.GET_LOCAL_ADDR == 0x0E and Syscall.PRINT == 0x0F
        assert set(SYSCALL_EFFECTS) == set(Syscall)

    def test_syscall_by_name(self):
        assert syscall_by_name("print") == Syscall.PRINT
        assert syscall_by_name("SYS_EXIT") == Syscall.EXIT
        assert syscall_by_name("bogus") is None

    def test_novaria_names(self):
        assert NOVARIA_SYSCALLS["PortOutByte"] == Syscall.PORT_OUT
        assert NOVARIA_SYSCALLS["MsgReceive"] == Syscall.MSG_RECEIVE


# ─── Image layout ────────────────────────────────────────────────

class TestImage:
    def test_header(self):
        image, gen = _compile("package main\nfunc main() {}\n")
        assert image[:4] == MAGIC
        assert image[4] == Op.CALL32
        assert struct.unpack(">I", image[5:9])[0] == gen.labels[function_label("main")]
        assert image[9] == Op.HALT

    def test_main_epilogue_exits(self):
        image, gen = _compile("package main\nfunc main() {}\n")
        start = gen.labels["func_main"]
        assert image[start:] == (bytes([Op.PUSH32]) + struct.pack(">i", 0)
                                 + bytes([Op.SYSCALL, Syscall.EXIT])
                                 + bytes([Op.PUSH32]) + struct.pack(">i", 0)
                                 + bytes([Op.RET]))

    def test_branch_targets_patched(self):
        source = '''package main
import "stdio"
func fib(n int) int {
    if n < 2 { return n }
    return fib(n - 1) + fib(n - 2)
}
func main() {
    var i = 0
    for i < 5 {
        if i % 2 == 0 { stdio.Println(fib(i)) } else { stdio.Print(i) }
        i = i + 1
    }
}
'''
        image, gen = _compile(source)
        boundaries = {pc for pc, _ in _instructions(image)}
        branches = 0
        for pc, op in _instructions(image):
            if op in BRANCH_OPS:
                target = struct.unpack(">I", image[pc + 1:pc + 5])[0]
                assert target in boundaries, f"{op.name} at {pc:#x} -> {target:#x}"
                branches += 1
        assert branches > 5
        assert gen.warnings == []

    def test_function_order(self):
        image, gen = _compile("package main\nfunc main() { b() }\nfunc a() {}\nfunc b() {}\n")
        assert gen.labels["func_a"] < gen.labels["func_b"] < gen.labels["func_main"]

    def test_print_int_only_when_needed(self):
        _, gen = _compile('package main\nimport "stdio"\nfunc main() { stdio.Println("x") }\n')
        assert "__print_int" not in gen.labels
        _, gen = _compile('package main\nimport "stdio"\nfunc main() { stdio.Println(1) }\n')
        assert "__print_int" in gen.labels

    def test_unresolved_label_warns(self):
        gen = NVMCodeGenerator()
        gen.code = bytearray(MAGIC)
        gen._jump(Op.JMP32, "nowhere")
        gen._patch()
        assert gen.warnings == ["unresolved label 'nowhere' at offset 0x0004"]
        assert gen.code[5:9] == bytes(4)


# ─── Running programs ────────────────────────────────────────────

class TestPrinting:
    def test_println_negative(self):
        vm = _run("stdio.Println(-7)")
        assert vm.output == b"-7\n"
        assert vm.exit_code == 0
        assert vm.stop_reason == StopReason.EXIT

    @pytest.mark.parametrize("value", [-1000000000, -1, 0, 1, 10, 1000000000, 2147483647])
    def test_itoa(self, value):
        assert _out(f"stdio.Println({value})") == f"{value}\n"

    def test_strings(self):
        assert _out('stdio.Println("Hello, World!")') == "Hello, World!\n"
        assert _out('stdio.PrintStr("a")\nstdio.PrintlnStr("b")') == "ab\n"

    def test_print_without_newline(self):
        assert _out("stdio.Print(1)\nstdio.Print(2)") == "12"

    def test_print_char(self):
        assert _out("stdio.PrintChar(72)\nstdio.PrintChar(105)\nstdio.Flush()") == "Hi"

    def test_string_constant(self):
        assert _out('var greeting = "hey"\nstdio.Println(greeting)') == "hey\n"

    def test_string_index(self):
        assert _out('stdio.PrintChar("abc"[1])\nvar s = "xyz"\nstdio.PrintChar(s[2])') == "bz"

    def test_string_constant_reassigned_in_place(self):
        body = 'var s = "a"\nstdio.PrintlnStr(s)\ns = "b"\nstdio.PrintlnStr(s)'
        assert _out(body) == "a\nb\n"

    def test_string_constant_local_to_loop_body(self):
        body = ('var i = 0\nfor i < 2 {\n var s = "a"\n stdio.PrintStr(s)\n'
                ' s = "b"\n stdio.PrintStr(s)\n i = i + 1\n}')
        assert _out(body) == "abab"


class TestScenarios:
    def test_loop(self):
        assert _out("var x = 0; for x < 3 { stdio.Println(x); x = x + 1 }") == "0\n1\n2\n"

    def test_if_else(self):
        assert _out('if 1 == 1 { stdio.PrintlnStr("yes") } else { stdio.PrintlnStr("no") }') \
            == "yes\n"

    def test_call(self):
        image, _ = _compile('package main\nimport "stdio"\n'
                            "func add(a int, b int) int { return a + b }\n"
                            "func main() { stdio.Println(add(2, 3)) }\n")
        assert execute(image).output == b"5\n"

    def test_module_call(self, tmp_path):
        (tmp_path / "math.per").write_text(
            "package math\npub func Square(n int) int { return n * n }\n")
        out = compile_source('package main\nimport "stdio"\nimport "math"\n'
                             "func main() { stdio.Println(math.Square(7)) }\n",
                             filename=str(tmp_path / "main.per"), target="novaria")
        assert execute(out).output == b"49\n"


class TestSemantics:
    def test_argument_order(self):
        image, _ = _compile('package main\nimport "stdio"\n'
                            "func sub(a int, b int) int { return a - b }\n"
                            "func main() { stdio.Println(sub(10, 3)) }\n")
        assert execute(image).output == b"7\n"

    def test_recursion(self):
        image, _ = _compile('package main\nimport "stdio"\n'
                            "func fact(n int) int {\n if n <= 1 { return 1 }\n"
                            " return n * fact(n - 1)\n}\n"
                            "func main() { stdio.Println(fact(10)) }\n")
        assert execute(image).output == b"3628800\n"

    def test_truncating_division(self):
        assert _out("stdio.Println(-7 / 2)\nstdio.Println(-7 % 2)") == "-3\n-1\n"

    def test_comparisons(self):
        body = "\n".join(f"stdio.Print({e})" for e in
                         ("1 < 2", "2 < 1", "2 <= 2", "3 <= 2", "2 >= 2", "1 >= 2",
                          "1 == 1", "1 != 1", "2 > 1"))
        assert _out(body) == "101010101"

    def test_logic(self):
        body = "\n".join(f"stdio.Print({e})" for e in
                         ("5 && 3", "5 && 0", "0 || 7", "0 || 0", "!0", "!9", "-(-4)"))
        assert _out(body) == "1010104"

    def test_else_if_chain(self):
        body = ("var x = 2\nif x == 1 { stdio.Print(1) } else if x == 2 { stdio.Print(2) }"
                " else { stdio.Print(3) }")
        assert _out(body) == "2"

    def test_infinite_loop_times_out(self):
        image, _ = _compile("package main\nfunc main() { for { } }\n")
        vm = execute(image, max_steps=500)
        assert vm.stop_reason == StopReason.TIMEOUT

    def test_cap_constants(self):
        assert _out("stdio.Println(CAP_FS_DELETE)\nstdio.Println(novaria.CAP_ALL)",
                    imports=("stdio", "novaria")) == "8\n65535\n"


class TestMemory:
    def test_array_constant_and_dynamic_index(self):
        body = ("var a [4]int\nvar i = 0\nfor i < 4 { a[i] = i * i; i = i + 1 }\n"
                "a[0] = 9\nstdio.Println(a[0] + a[1] + a[2] + a[3])")
        assert _out(body) == "23\n"

    def test_address_of_and_deref(self):
        body = "var x = 1\nvar p = &x\n*p = 42\nstdio.Println(x)\nstdio.Println(*p)"
        assert _out(body) == "42\n42\n"

    def test_array_passed_by_address(self):
        image, _ = _compile('package main\nimport "stdio"\n'
                            "func fill(p int, n int) int {\n var i = 0\n"
                            " for i < n { *(p + i) = i + 1; i = i + 1 }\n return 0\n}\n"
                            "func main() {\n var buf [3]int\n fill(buf, 3)\n"
                            " stdio.Println(buf[0] * 100 + buf[1] * 10 + buf[2])\n}\n")
        assert execute(image).output == b"123\n"

    def test_vga_text(self):
        vm = _run("*0xB8000 = 72\n*(0xB8000 + 1) = 105", imports=())
        assert vm.vga_text() == "Hi"


class TestNovaria:
    def test_exit_code(self):
        vm = _run("novaria.Exit(3)\nstdio.Println(1)", imports=("stdio", "novaria"))
        assert vm.exit_code == 3
        assert vm.output == b""

    def test_cap_check(self):
        body = "stdio.Print(novaria.CapCheck(CAP_FS_READ))\nstdio.Print(novaria.CapCheck(CAP_FS_WRITE))"
        vm = _run(body, imports=("stdio", "novaria"), capabilities=1)
        assert vm.output == b"10"

    def test_ports(self):
        body = "novaria.PortOutByte(0x3F8, 65)\nstdio.Println(novaria.PortInByte(0x60))"
        image, _ = _compile('package main\nimport "stdio"\nimport "novaria"\n'
                            f"func main() {{\n{body}\n}}\n")
        from per_compiler.nvm_vm import NVM
        vm = NVM(image)
        vm.ports[0x60] = 0x1C
        vm.run()
        assert vm.port_writes == [(0x3F8, 65)]
        assert vm.output == b"28\n"

    def test_messages(self):
        from per_compiler.nvm_vm import NVM
        image, _ = _compile('package main\nimport "stdio"\nimport "novaria"\n'
                            "func main() {\n novaria.MsgSend(7, 99)\n"
                            " stdio.Println(novaria.MsgReceive())\n"
                            " stdio.Println(novaria.MsgReceive())\n}\n")
        vm = NVM(image)
        vm.inbox = [5]
        vm.run()
        assert vm.sent == [(7, 99)]
        assert vm.output == b"5\n0\n"

    def _push_before(self, image: bytes, syscall: Syscall, back: int = 1) -> int:
        """Operand of the PUSH32 `back` instructions before SYSCALL `syscall`."""
        site = image.index(bytes([Op.SYSCALL, syscall]))
        start = site - 5 * back
        assert image[start] == Op.PUSH32
        return struct.unpack(">i", image[start + 1:start + 5])[0]

    def test_string_path_in_data_area(self):
        image, gen = _compile('package main\nimport "novaria"\n'
                              'func main() { novaria.FileDelete("log.txt") }\n')
        address = self._push_before(image, Syscall.DELETE)
        assert address == len(image) - len(b"log.txt\0")
        assert image[address:] == b"log.txt\0"
        assert address in gen.labels.values()
        assert gen.warnings == []

    def test_string_constant_path_shared(self):
        image, _ = _compile('package main\nimport "novaria"\nfunc main() {\n'
                            ' var path = "/bin/sh"\n novaria.Exec(path)\n'
                            ' novaria.FileOpen("/bin/sh")\n}\n')
        address = self._push_before(image, Syscall.EXEC)
        assert self._push_before(image, Syscall.OPEN) == address
        assert image[address:address + 8] == b"/bin/sh\0"
        assert image.count(b"/bin/sh\0") == 1

    def test_file_create_str(self):
        image, _ = _compile('package main\nimport "novaria"\n'
                            'func main() { novaria.FileCreateStr("a.txt", "hi") }\n')
        path = self._push_before(image, Syscall.CREATE, 1)
        content = self._push_before(image, Syscall.CREATE, 2)
        assert self._push_before(image, Syscall.CREATE, 3) == 2
        assert image[path:path + 6] == b"a.txt\0"
        assert image[content:content + 3] == b"hi\0"

    def test_data_area_listing_reassembles(self):
        from per_compiler.nvm_asm import assemble, disassemble
        image, gen = _compile('package main\nimport "novaria"\n'
                              'func main() { novaria.FileCreateStr("out.log", "0123") }\n')
        assert assemble(disassemble(image, gen.labels)) == image

    def test_unhosted_syscall_stops_with_error(self):
        image, _ = _compile('package main\nimport "novaria"\n'
                            'func main() { novaria.FileDelete(1) }\n')
        vm = execute(image)
        assert vm.stop_reason == StopReason.ERROR
        assert "DELETE is not provided by this host" in vm.error


class TestInlineAsm:
    def test_locals_and_arithmetic(self):
        body = "var x = 5\nasm {\n push $(x)\n push 10\n add\n store $(x)\n}\nstdio.Println(x)"
        assert _out(body) == "15\n"

    def test_bare_variable_loads(self):
        body = "var c = 65\nasm {\n $(c)\n syscall PRINT\n}"
        assert _out(body) == "A"

    def test_bare_variable_keeps_case(self):
        body = "var Count = 65\nasm {\n $(Count)\n syscall PRINT\n push $(Count)\n syscall PRINT\n}"
        assert _out(body) == "AA"

    def test_string_substitution(self):
        body = 'var call = "PRINT"\nasm {\n push 66   ; B\n syscall $(call)\n}'
        assert _out(body) == "B"

    def test_numeric_syscall(self):
        assert _out("asm {\n push 67\n syscall 0x0F\n}") == "C"

    def test_string_form(self):
        assert _out('asm "push 68"\nasm "syscall print"') == "D"

    def test_unknown_syscall_warns(self):
        image, gen = _compile("package main\nfunc main() {\n asm {\n nop\n syscall frobnicate\n }\n}\n")
        assert gen.warnings == ["<input>:3: unknown syscall 'frobnicate' in inline assembly, using 0"]
        assert bytes([Op.SYSCALL, 0]) in image

    def test_unknown_mnemonic(self):
        with pytest.raises(CodeGenError, match="unsupported inline assembly instruction 'jump'"):
            _compile("package main\nfunc main() {\n asm { jump 4 }\n}\n")

    def test_operand_checks(self):
        with pytest.raises(CodeGenError, match="'add' takes no operand"):
            _compile("package main\nfunc main() {\n asm { add 1 }\n}\n")
        with pytest.raises(CodeGenError, match="out of range"):
            _compile("package main\nfunc main() {\n asm { load 300 }\n}\n")
        with pytest.raises(CodeGenError, match="undefined variable 'q' in inline assembly"):
            _compile("package main\nfunc main() {\n asm { push $(q) }\n}\n")

    def test_break_stops(self):
        image, _ = _compile("package main\nfunc main() {\n asm { break }\n}\n")
        assert execute(image).stop_reason == StopReason.BREAK


class TestErrors:
    def _error(self, body: str, imports=("stdio",)) -> CodeGenError:
        header = "package main\n" + "".join(f'import "{m}"\n' for m in imports)
        with pytest.raises(CodeGenError) as info:
            _compile(f"{header}func main() {{\n{body}\n}}\n")
        return info.value

    def test_literal_too_wide(self):
        assert "does not fit in 32 bits" in self._error("var x = 0x1_0000_0000").message

    def test_string_value(self):
        assert "string values are not supported" in self._error('var x = 1 + "a"').message

    def test_string_constant_in_arithmetic(self):
        err = self._error('var s = "a"\nvar x = s + 1')
        assert "can only be printed or used in inline assembly" in err.message
        assert err.line == 5

    def test_string_index_needs_literal(self):
        assert "integer literal" in self._error('var i = 0\nvar c = "abc"[i]').message
        assert "out of range" in self._error('var c = "abc"[3]').message

    def test_concat(self):
        assert "'++'" in self._error('stdio.Println("a" ++ "b")').message

    def test_reads_unavailable(self):
        err = self._error("var n = stdio.ReadInt()")
        assert err.message == "'stdio.ReadInt' is not available on the NVM target"

    def test_print_str_needs_string(self):
        assert "needs a string literal" in self._error("stdio.PrintStr(5)").message

    def test_string_constant_reassigned_in_loop(self):
        err = self._error('var s = "a"\nvar i = 0\n'
                          'for i < 2 { stdio.PrintlnStr(s); s = "b"; i = i + 1 }')
        assert "can only be reassigned in the block that declares it" in err.message
        assert err.line == 6

    def test_string_constant_reassigned_in_branch(self):
        err = self._error('var s = "a"\nif 1 == 1 { s = "b" }\nstdio.PrintlnStr(s)')
        assert "can only be reassigned" in err.message

    def test_file_create_str_needs_string_content(self):
        err = self._error("novaria.FileCreateStr(1, 2)", imports=("novaria",))
        assert "needs a string literal or string constant as its content" in err.message

    def test_slot_budget(self):
        err = self._error("var big [251]int", imports=())
        assert err.message == "'main' needs more than 250 local slots"


# ─── Text listing ────────────────────────────────────────────────

class TestListing:
    def test_nvm_code_target(self):
        text = compile_source('package main\nimport "stdio"\nfunc main() { stdio.Println(1) }\n',
                              target="nvm-code")
        lines = text.splitlines()
        assert lines[0].startswith("; NVM image, ")
        assert lines[1] == ".magic NVM0"
        assert lines[2].split()[:2] == ["CALL32", "func_main"]
        assert "func_main:" in lines
        assert "__print_int:" in lines
